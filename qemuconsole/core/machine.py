from dataclasses import dataclass, field
from dataclasses_json import dataclass_json
from typing import Dict, Optional, List
import logging
import os
import uuid

from .errors import VMNotFound

logger = logging.getLogger(__name__)

QMP_SOCKET_DIR = '/tmp/qmp_sockets'

@dataclass
class DisplayConfig:
    type: str = "vnc"  # "vnc" or "spice"
    address: str = "127.0.0.1"
    password: Optional[str] = None
    port: Optional[int] = None

    def to_dict(self):
        return {
            "type": self.type,
            "address": self.address,
            "password": self.password,
            "port": self.port,
        }

    @staticmethod
    def from_dict(data):
        display_type = data.get("type", "vnc")
        if display_type not in ("vnc", "spice"):
            logger.warning(f"Unknown display type '{display_type}', falling back to VNC")
            display_type = "vnc"

        display = DisplayConfig(
            type=display_type,
            address=data.get("address", "127.0.0.1"),
            password=data.get("password") or None,
        )
        if "port" in data:
            display.port = int(data["port"]) if data["port"] else None
        return display

@dataclass
class SerialConfig:
    type: str = "pty"  # "pty" or "unix"
    path: Optional[str] = None  # socket path for "unix"; pty paths are asked from QEMU
    chardev: str = "serial0"

    def to_dict(self):
        return {
            "type": self.type,
            "path": self.path,
            "chardev": self.chardev,
        }

    @staticmethod
    def from_dict(data):
        return SerialConfig(
            type=data.get("type", "pty"),
            path=data.get("path"),
            chardev=data.get("chardev", "serial0"),
        )

@dataclass_json
@dataclass
class VMConfig:
    name: str
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    display: DisplayConfig = field(default_factory=lambda: DisplayConfig())
    serial: Optional[SerialConfig] = field(default_factory=lambda: SerialConfig())
    qmp_socket: Optional[str] = None

    def __post_init__(self):
        if not self.qmp_socket:
            # Same naming as the sockets created when QEMU is launched
            safe_name = self.name.replace(" ", "_")
            self.qmp_socket = os.path.join(QMP_SOCKET_DIR, f"{safe_name}.qmp")

    def to_dict(self):
        return {
            'name': self.name,
            'uuid': self.uuid,
            'display': self.display.to_dict(),
            'serial': self.serial.to_dict() if self.serial else None,
            'qmp_socket': self.qmp_socket,
        }

    @staticmethod
    def create_from_dict(data: Dict) -> 'VMConfig':
        """Create a VMConfig from a registry entry."""
        config_data = data.copy()

        if 'display' in config_data:
            config_data['display'] = DisplayConfig.from_dict(config_data['display'] or {})
        elif 'vnc_port' in config_data:  # Legacy support
            config_data['display'] = DisplayConfig(type="vnc", port=config_data.pop('vnc_port'))
        else:
            config_data['display'] = DisplayConfig()

        if 'serial' in config_data:
            serial = config_data['serial']
            config_data['serial'] = SerialConfig.from_dict(serial) if serial else None

        known = {'name', 'uuid', 'display', 'serial', 'qmp_socket'}
        return VMConfig(**{key: value for key, value in config_data.items() if key in known})

class VMRegistry:
    """VMs whose consoles can be opened, keyed by uuid."""

    def __init__(self, config_manager):
        self.config_manager = config_manager
        self.vms: Dict[str, VMConfig] = {}
        self.load_vm_configs()

    def load_vm_configs(self):
        """Load VM configurations from file."""
        self.vms = {}
        data = self.config_manager.load_vm_configs()
        # Handle both old (dict) and new (list) formats
        entries = data.values() if isinstance(data, dict) else data
        for vm_data in entries:
            try:
                vm_config = VMConfig.create_from_dict(vm_data)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping invalid VM config {vm_data!r}: {e}")
                continue
            self.vms[vm_config.uuid] = vm_config
        logger.info(f"Loaded {len(self.vms)} VM configurations")

    def save_vm_configs(self):
        """Save VM configurations to file."""
        data = [vm.to_dict() for vm in self.vms.values()]
        self.config_manager.save_vm_configs(data)
        logger.info(f"Saved {len(self.vms)} VM configurations")

    def get_vm(self, vm_id: str) -> VMConfig:
        """Look a VM up by uuid, or by name for older registries."""
        vm = self.vms.get(vm_id)
        if vm is None:
            vm = next((vm for vm in self.vms.values() if vm.name == vm_id), None)
        if vm is None:
            raise VMNotFound(f"VM not found: {vm_id}")
        return vm

    def get_all_vms(self) -> List[Dict]:
        return [vm.to_dict() for vm in self.vms.values()]
