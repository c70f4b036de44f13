import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Default config directory setup
DEFAULT_CONFIG_DIR = Path.home() / '.config' / 'qemuconsole'

class ConfigManager:
    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR

        # Config files
        self.config_file = self.config_dir / 'config.json'
        self.vm_file = self.config_dir / 'vm.json'
        self.logs_dir = self.config_dir / 'logs'
        self.screenshots_dir = self.config_dir / 'screenshots'

        # Initialize
        self.ensure_config_dir()
        self.config = self.load_config()

    def ensure_config_dir(self):
        """Create config directory and subdirectories if they don't exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file or create default if not exists."""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    loaded_config = json.load(f)
                    # Merge with defaults to ensure all required keys exist
                    return self._merge_configs(DEFAULT_CONFIG, loaded_config)
            else:
                # Save default config if no config exists
                with open(self.config_file, 'w') as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
                logger.info(f"Created new config file at {self.config_file}")
                return self._merge_configs(DEFAULT_CONFIG, {})
        except (OSError, ValueError) as e:
            logger.error(f"Error loading config: {e}")
            logger.info("Using default configuration")
            return self._merge_configs(DEFAULT_CONFIG, {})

    def load_vm_configs(self) -> Any:
        """Load the registry of VMs whose consoles can be opened."""
        try:
            if self.vm_file.exists():
                with open(self.vm_file, 'r') as f:
                    return json.load(f)
            return []
        except (OSError, ValueError) as e:
            logger.error(f"Error loading VM configs: {e}")
            return []

    def save_vm_configs(self, vm_configs: Any):
        """Save VM configurations to file."""
        with open(self.vm_file, 'w') as f:
            json.dump(vm_configs, f, indent=4)

    def section(self, name: str) -> Dict[str, Any]:
        """Return one config section, falling back to its defaults."""
        return self.config.get(name, DEFAULT_CONFIG.get(name, {}))

    @staticmethod
    def _merge_configs(default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge loaded config with defaults."""
        merged = {
            key: ConfigManager._merge_configs(value, {}) if isinstance(value, dict) else value
            for key, value in default.items()
        }

        for key, value in loaded.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = ConfigManager._merge_configs(merged[key], value)
            else:
                merged[key] = value

        return merged

# Default configuration template
DEFAULT_CONFIG = {
    "web_interface": {
        "host": "0.0.0.0",
        "port": 5000,
        "debug": False
    },
    "console": {
        "max_reconnect_attempts": 5,
        "reconnect_base_delay_ms": 1000,
        "reconnect_max_delay_ms": 16000,
        "library_load_timeout": 10.0,
        "surface_probe_delays": [0.5, 1.5, 3.0],
        "quality_level": 6,
        "compression_level": 2,
        "frame_interval": 1 / 30
    },
    "serial": {
        "poll_interval": 0.1,
        "liveness_interval": 2.0,
        "read_size": 4096
    },
    "proxy": {
        "host": "127.0.0.1",
        "start_port": 6080,
        "port_range": 100
    }
}

_config_manager: Optional[ConfigManager] = None

def get_config_manager(config_dir: Optional[Path] = None) -> ConfigManager:
    """Return the process-wide config manager, creating it on first use."""
    global _config_manager
    if _config_manager is None or (config_dir is not None and Path(config_dir) != _config_manager.config_dir):
        _config_manager = ConfigManager(config_dir)
    return _config_manager
