import json

from qemuconsole.config.manager import DEFAULT_CONFIG, ConfigManager, get_config_manager
from qemuconsole.core.machine import VMConfig, VMRegistry
from qemuconsole.core.errors import VMNotFound

import pytest


class TestConfigManager:
    def test_creates_default_config(self, tmp_path):
        manager = ConfigManager(tmp_path)

        assert manager.config_file.exists()
        assert manager.logs_dir.is_dir()
        assert manager.config == DEFAULT_CONFIG
        assert manager.section('console')['max_reconnect_attempts'] == 5

    def test_merges_user_values_with_defaults(self, tmp_path):
        (tmp_path / 'config.json').write_text(json.dumps({
            'console': {'max_reconnect_attempts': 3},
            'proxy': {'start_port': 7000},
        }))
        manager = ConfigManager(tmp_path)

        assert manager.section('console')['max_reconnect_attempts'] == 3
        assert manager.section('console')['reconnect_max_delay_ms'] == 16000
        assert manager.section('proxy') == {'host': '127.0.0.1', 'start_port': 7000, 'port_range': 100}

    def test_merge_does_not_touch_defaults(self, tmp_path):
        (tmp_path / 'config.json').write_text(json.dumps({'serial': {'poll_interval': 0.5}}))
        ConfigManager(tmp_path)
        assert DEFAULT_CONFIG['serial']['poll_interval'] == 0.1

    def test_invalid_config_falls_back_to_defaults(self, tmp_path):
        (tmp_path / 'config.json').write_text("{not json")
        manager = ConfigManager(tmp_path)
        assert manager.config == DEFAULT_CONFIG

    def test_vm_configs_round_trip(self, tmp_path):
        manager = ConfigManager(tmp_path)
        assert manager.load_vm_configs() == []

        manager.save_vm_configs([{'name': 'debian'}])
        assert manager.load_vm_configs() == [{'name': 'debian'}]

    def test_get_config_manager_follows_directory(self, tmp_path):
        first = get_config_manager(tmp_path / 'a')
        assert get_config_manager() is first
        assert get_config_manager(tmp_path / 'b') is not first


class TestVMRegistry:
    def test_loads_registry(self, tmp_path):
        manager = ConfigManager(tmp_path)
        manager.save_vm_configs([
            {'name': 'debian vm', 'uuid': 'vm-1', 'display': {'type': 'spice', 'port': '5930'}},
            {'name': 'legacy', 'uuid': 'vm-2', 'vnc_port': 5905, 'cpu': 'host'},
            {'uuid': 'broken'},
        ])
        registry = VMRegistry(manager)

        debian = registry.get_vm('vm-1')
        assert debian.display.type == 'spice'
        assert debian.display.port == 5930
        assert debian.qmp_socket == '/tmp/qmp_sockets/debian_vm.qmp'
        assert registry.get_vm('legacy').display.port == 5905
        assert len(registry.get_all_vms()) == 2

    def test_lookup_by_name(self, tmp_path):
        manager = ConfigManager(tmp_path)
        manager.save_vm_configs([{'name': 'debian', 'uuid': 'vm-1'}])
        registry = VMRegistry(manager)

        assert registry.get_vm('debian').uuid == 'vm-1'
        with pytest.raises(VMNotFound):
            registry.get_vm('windows')

    def test_unknown_display_type_falls_back_to_vnc(self):
        vm = VMConfig.create_from_dict({'name': 'x', 'display': {'type': 'sdl'}})
        assert vm.display.type == 'vnc'

    def test_save_round_trip(self, tmp_path):
        manager = ConfigManager(tmp_path)
        manager.save_vm_configs([{'name': 'debian', 'uuid': 'vm-1', 'serial': None}])
        registry = VMRegistry(manager)
        registry.save_vm_configs()

        saved = manager.load_vm_configs()[0]
        assert saved['uuid'] == 'vm-1'
        assert saved['serial'] is None
        assert saved['display']['type'] == 'vnc'
