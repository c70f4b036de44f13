"""Backend collaborator for console windows.

``ConsoleBackend`` is everything a console window asks of the host: where the
graphical console of a VM is reachable and a pull-based serial console.
``QemuConsoleBackend`` answers from the VM registry, QEMU's monitor socket
and a websockify proxy per VM.
"""
import logging
import os
import socket
from typing import Dict, List, Optional, Union

import eventlet

from .errors import BackendError, SerialConsoleError
from .machine import VMConfig, VMRegistry
from .models import ConsoleEndpoint, ProtocolVariant, SerialConsoleInfo
from .proxy import ProxyManager
from .qmp_client import QMPClient, QMPError

logger = logging.getLogger(__name__)

READ_SIZE = 4096

WILDCARD_HOSTS = ('', '0.0.0.0', '::', '[::]')


class ConsoleBackend:
    """Operations a console window needs from the host"""

    def get_console_endpoint(self, vm_id: str) -> ConsoleEndpoint:
        raise NotImplementedError

    def stop_console_proxy(self, vm_id: str):
        raise NotImplementedError

    def get_serial_console_info(self, vm_id: str) -> SerialConsoleInfo:
        raise NotImplementedError

    def open_serial_console(self, vm_id: str) -> SerialConsoleInfo:
        raise NotImplementedError

    def close_serial_console(self, vm_id: str):
        raise NotImplementedError

    def read_serial_console(self, vm_id: str) -> bytes:
        raise NotImplementedError

    def write_serial_console(self, vm_id: str, data: bytes):
        raise NotImplementedError

    def is_serial_console_connected(self, vm_id: str) -> bool:
        raise NotImplementedError


class SerialSession:
    """An open serial chardev: a pty device or a unix socket, non-blocking."""

    def __init__(self, vm_id: str, path: str, kind: str = "pty"):
        self.vm_id = vm_id
        self.path = path
        self.kind = kind
        self._fd: Optional[int] = None
        self._sock: Optional[socket.socket] = None

    def open(self):
        if self.kind == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(self.path)
            except OSError:
                sock.close()
                raise
            sock.setblocking(False)
            self._sock = sock
        else:
            self._fd = os.open(self.path, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)

    def read(self, size: int = READ_SIZE) -> bytes:
        try:
            if self._sock is not None:
                data = self._sock.recv(size)
                if not data:
                    raise SerialConsoleError("Serial socket closed by QEMU")
                return data
            return os.read(self._fd, size)
        except BlockingIOError:
            # Nothing pending
            return b''

    def write(self, data: bytes):
        view = memoryview(data)
        while view:
            try:
                if self._sock is not None:
                    sent = self._sock.send(view)
                else:
                    sent = os.write(self._fd, view)
            except BlockingIOError:
                eventlet.sleep(0.01)
                continue
            view = view[sent:]

    def close(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError as e:
                logger.debug(f"Error closing serial device {self.path}: {e}")
            self._fd = None


class QemuConsoleBackend(ConsoleBackend):
    def __init__(self, registry: VMRegistry, proxy_manager: Optional[ProxyManager] = None,
                 read_size: int = READ_SIZE):
        self.registry = registry
        self.proxy_manager = proxy_manager or ProxyManager()
        self.read_size = read_size
        self.serial_sessions: Dict[str, SerialSession] = {}

    def list_vms(self) -> List[Dict]:
        return self.registry.get_all_vms()

    def _qmp(self, vm: VMConfig) -> QMPClient:
        return QMPClient(vm.qmp_socket)

    def _is_running(self, vm: VMConfig) -> bool:
        try:
            with self._qmp(vm) as qmp:
                status = qmp.query_status()
        except QMPError as e:
            logger.debug(f"VM {vm.name} is not reachable over QMP: {e}")
            return False
        return bool(status.get('running')) or status.get('status') == 'running'

    def _display_target(self, vm: VMConfig):
        """Host and port QEMU is actually serving the display on"""
        display = vm.display
        host, port = display.address, display.port
        try:
            if display.type == ProtocolVariant.SPICE.value:
                with self._qmp(vm) as qmp:
                    info = qmp.query_spice()
                port = info.get('port') or port
            else:
                with self._qmp(vm) as qmp:
                    info = qmp.query_vnc()
                port = info.get('service') or port
            if info.get('enabled') is False:
                raise BackendError(f"{display.type.upper()} display is not enabled for VM {vm.name}")
            host = info.get('host') or host
        except QMPError as e:
            logger.warning(f"Could not query display of VM {vm.name}, using configured port: {e}")

        if not port:
            raise BackendError(f"VM {vm.name} has no display port")
        if host in WILDCARD_HOSTS:
            host = '127.0.0.1'
        return host.strip('[]'), int(port)

    def get_console_endpoint(self, vm_id: str) -> ConsoleEndpoint:
        vm = self.registry.get_vm(vm_id)
        target_host, target_port = self._display_target(vm)
        ws_port = self.proxy_manager.start_proxy(vm.uuid, target_host, target_port)
        return ConsoleEndpoint(
            host=self.proxy_manager.host,
            port=ws_port,
            password=vm.display.password,
            variant=ProtocolVariant(vm.display.type),
        )

    def stop_console_proxy(self, vm_id: str):
        vm = self.registry.get_vm(vm_id)
        self.proxy_manager.stop_proxy(vm.uuid)

    def _serial_path(self, vm: VMConfig) -> str:
        serial = vm.serial
        if serial is None:
            return ""
        if serial.type == "unix":
            return serial.path or ""
        try:
            with self._qmp(vm) as qmp:
                chardevs = qmp.query_chardev()
        except QMPError as e:
            logger.debug(f"Could not query chardevs of VM {vm.name}: {e}")
            return ""
        for chardev in chardevs:
            filename = chardev.get('filename', '')
            if chardev.get('label') == serial.chardev and filename.startswith('pty:'):
                return filename[len('pty:'):]
        # Fall back to the first pty chardev
        for chardev in chardevs:
            filename = chardev.get('filename', '')
            if filename.startswith('pty:'):
                return filename[len('pty:'):]
        return ""

    def get_serial_console_info(self, vm_id: str) -> SerialConsoleInfo:
        vm = self.registry.get_vm(vm_id)
        active = self._is_running(vm)
        return SerialConsoleInfo(active=active, path=self._serial_path(vm) if active else "", vm_name=vm.name)

    def open_serial_console(self, vm_id: str) -> SerialConsoleInfo:
        info = self.get_serial_console_info(vm_id)
        if not info.active:
            raise SerialConsoleError("VM is not running")
        if not info.path:
            raise SerialConsoleError("No serial console found for VM")

        existing = self.serial_sessions.pop(vm_id, None)
        if existing is not None:
            existing.close()

        vm = self.registry.get_vm(vm_id)
        session = SerialSession(vm_id, info.path, vm.serial.type)
        try:
            session.open()
        except OSError as e:
            raise SerialConsoleError(f"Failed to open {info.path}: {e}")
        self.serial_sessions[vm_id] = session
        logger.info(f"Serial console opened for VM {vm_id} ({info.vm_name}) at {info.path}")
        return info

    def _session(self, vm_id: str) -> SerialSession:
        session = self.serial_sessions.get(vm_id)
        if session is None:
            raise SerialConsoleError("No active serial console for this VM")
        return session

    def close_serial_console(self, vm_id: str):
        session = self.serial_sessions.pop(vm_id, None)
        if session is None:
            raise SerialConsoleError("No active serial console for this VM")
        session.close()
        logger.info(f"Serial console closed for VM {vm_id}")

    def read_serial_console(self, vm_id: str) -> bytes:
        try:
            return self._session(vm_id).read(self.read_size)
        except OSError as e:
            raise SerialConsoleError(f"Failed to read from console: {e}")

    def write_serial_console(self, vm_id: str, data: Union[str, bytes]):
        if isinstance(data, str):
            data = data.encode('utf-8')
        try:
            self._session(vm_id).write(data)
        except OSError as e:
            raise SerialConsoleError(f"Failed to write to console: {e}")

    def is_serial_console_connected(self, vm_id: str) -> bool:
        return vm_id in self.serial_sessions

    def close_all(self):
        for vm_id in list(self.serial_sessions):
            self.serial_sessions.pop(vm_id).close()
