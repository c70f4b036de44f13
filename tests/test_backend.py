import socket
import time
from unittest.mock import MagicMock, patch

import pytest

from qemuconsole.config.manager import ConfigManager
from qemuconsole.core.backend import QemuConsoleBackend
from qemuconsole.core.errors import BackendError, SerialConsoleError, VMNotFound
from qemuconsole.core.machine import VMRegistry
from qemuconsole.core.models import ProtocolVariant
from qemuconsole.core.qmp_client import QMPError


@pytest.fixture
def serial_socket(tmp_path):
    path = str(tmp_path / "serial.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen(1)
    yield server, path
    server.close()


@pytest.fixture
def registry(tmp_path, serial_socket):
    config_manager = ConfigManager(tmp_path / "config")
    config_manager.save_vm_configs([
        {"name": "debian", "uuid": "vm-1",
         "display": {"type": "vnc", "port": 5901, "password": "pw"},
         "serial": {"type": "pty", "chardev": "serial0"},
         "qmp_socket": "/tmp/debian.qmp"},
        {"name": "windows", "uuid": "vm-2", "display": {"type": "spice", "port": 5930}},
        {"name": "router", "uuid": "vm-3", "display": {"type": "vnc"},
         "serial": {"type": "unix", "path": serial_socket[1]}},
    ])
    return VMRegistry(config_manager)


@pytest.fixture
def proxy_manager():
    proxies = MagicMock()
    proxies.host = "127.0.0.1"
    proxies.start_proxy.return_value = 6081
    return proxies


@pytest.fixture
def qmp():
    """Patched QMP client whose query methods answer from a dict of command -> reply"""
    replies = {}

    def execute(command):
        reply = replies.get(command)
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise QMPError(f"QMP socket unavailable for {command}")
        return reply

    with patch('qemuconsole.core.backend.QMPClient') as client_cls:
        qmp_client = client_cls.return_value.__enter__.return_value
        for method in ('query_status', 'query_vnc', 'query_spice', 'query_chardev'):
            command = method.replace('_', '-')
            getattr(qmp_client, method).side_effect = lambda command=command: execute(command)
        yield replies


@pytest.fixture
def backend(registry, proxy_manager, qmp):
    backend = QemuConsoleBackend(registry, proxy_manager)
    yield backend
    backend.close_all()


class TestConsoleEndpoint:
    def test_vnc_endpoint_goes_through_proxy(self, backend, proxy_manager, qmp):
        qmp['query-vnc'] = {'enabled': True, 'host': '0.0.0.0', 'service': '5902'}

        endpoint = backend.get_console_endpoint("vm-1")

        proxy_manager.start_proxy.assert_called_once_with("vm-1", "127.0.0.1", 5902)
        assert endpoint.host == "127.0.0.1"
        assert endpoint.port == 6081
        assert endpoint.password == "pw"
        assert endpoint.variant == ProtocolVariant.VNC

    def test_spice_endpoint(self, backend, proxy_manager, qmp):
        qmp['query-spice'] = {'enabled': True, 'host': '127.0.0.1', 'port': 5931}

        endpoint = backend.get_console_endpoint("windows")

        proxy_manager.start_proxy.assert_called_once_with("vm-2", "127.0.0.1", 5931)
        assert endpoint.variant == ProtocolVariant.SPICE
        assert endpoint.password is None

    def test_configured_port_when_qmp_unavailable(self, backend, proxy_manager):
        backend.get_console_endpoint("vm-1")
        proxy_manager.start_proxy.assert_called_once_with("vm-1", "127.0.0.1", 5901)

    def test_disabled_display(self, backend, qmp):
        qmp['query-vnc'] = {'enabled': False}
        with pytest.raises(BackendError):
            backend.get_console_endpoint("vm-1")

    def test_missing_port(self, backend):
        with pytest.raises(BackendError, match="no display port"):
            backend.get_console_endpoint("vm-3")

    def test_unknown_vm(self, backend):
        with pytest.raises(VMNotFound):
            backend.get_console_endpoint("nope")

    def test_stop_console_proxy(self, backend, proxy_manager):
        backend.stop_console_proxy("debian")
        proxy_manager.stop_proxy.assert_called_once_with("vm-1")


class TestSerialConsole:
    def test_info_for_running_vm(self, backend, qmp):
        qmp['query-status'] = {'running': True, 'status': 'running'}
        qmp['query-chardev'] = [
            {'label': 'compat_monitor0', 'filename': 'unix:/tmp/monitor.sock'},
            {'label': 'serial0', 'filename': 'pty:/dev/pts/5'},
        ]

        info = backend.get_serial_console_info("vm-1")

        assert info.active
        assert info.path == "/dev/pts/5"
        assert info.vm_name == "debian"

    def test_info_for_stopped_vm(self, backend):
        info = backend.get_serial_console_info("vm-1")
        assert not info.active
        assert info.path == ""

    def test_open_requires_running_vm(self, backend):
        with pytest.raises(SerialConsoleError, match="not running"):
            backend.open_serial_console("vm-1")

    def test_open_requires_serial_device(self, backend, qmp):
        qmp['query-status'] = {'running': True}
        qmp['query-chardev'] = []
        with pytest.raises(SerialConsoleError, match="No serial console"):
            backend.open_serial_console("vm-1")

    def test_unix_socket_round_trip(self, backend, qmp, serial_socket):
        server, path = serial_socket
        qmp['query-status'] = {'running': True}

        info = backend.open_serial_console("vm-3")
        peer, _ = server.accept()
        try:
            assert info.path == path
            assert backend.is_serial_console_connected("vm-3")
            assert backend.read_serial_console("vm-3") == b''

            peer.sendall(b"login: ")
            data = b''
            for _ in range(200):
                data += backend.read_serial_console("vm-3")
                if data:
                    break
                time.sleep(0.01)
            assert data == b"login: "

            backend.write_serial_console("vm-3", "root\r")
            assert peer.recv(64) == b"root\r"
        finally:
            peer.close()

        backend.close_serial_console("vm-3")
        assert not backend.is_serial_console_connected("vm-3")

    def test_close_unknown_session(self, backend):
        with pytest.raises(SerialConsoleError, match="No active serial console"):
            backend.close_serial_console("vm-1")

    def test_read_unknown_session(self, backend):
        with pytest.raises(SerialConsoleError):
            backend.read_serial_console("vm-1")
