import json
from unittest.mock import MagicMock, patch

import pytest

from qemuconsole.core.qmp_client import QMPClient, QMPError

GREETING = b'{"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}}\n'
CAPABILITIES_OK = b'{"return": {}}\n'


@pytest.fixture
def fake_socket():
    sock = MagicMock()
    with patch('qemuconsole.core.qmp_client.socket.socket', return_value=sock):
        yield sock


def sent_commands(sock):
    return [json.loads(call.args[0].decode('utf-8'))['execute'] for call in sock.sendall.call_args_list]


class TestQMPClient:
    def test_connect_negotiates_capabilities(self, fake_socket):
        fake_socket.recv.side_effect = [GREETING, CAPABILITIES_OK]
        client = QMPClient("/tmp/vm.qmp")

        assert client.connect()
        assert client.connected
        fake_socket.connect.assert_called_once_with("/tmp/vm.qmp")
        assert sent_commands(fake_socket) == ["qmp_capabilities"]

    def test_invalid_greeting(self, fake_socket):
        fake_socket.recv.side_effect = [b'{"hello": 1}\n']
        client = QMPClient("/tmp/vm.qmp")

        assert not client.connect()
        assert client.socket is None

    def test_query_skips_events(self, fake_socket):
        fake_socket.recv.side_effect = [
            GREETING,
            CAPABILITIES_OK,
            b'{"event": "RESUME", "data": {}}\n{"return": {"running": true, "status": "running"}}\n',
        ]
        with QMPClient("/tmp/vm.qmp") as client:
            status = client.query_status()

        assert status == {"running": True, "status": "running"}
        assert sent_commands(fake_socket) == ["qmp_capabilities", "query-status"]
        fake_socket.close.assert_called_once()

    def test_reply_split_across_reads(self, fake_socket):
        fake_socket.recv.side_effect = [
            GREETING,
            CAPABILITIES_OK,
            b'{"return": {"enabled": true, "host": "127.0.0.1",',
            b' "service": "5901"}}\n',
        ]
        client = QMPClient("/tmp/vm.qmp")
        assert client.query_vnc()["service"] == "5901"

    def test_error_reply(self, fake_socket):
        fake_socket.recv.side_effect = [
            GREETING,
            CAPABILITIES_OK,
            b'{"error": {"class": "GenericError", "desc": "SPICE support is disabled"}}\n',
        ]
        client = QMPClient("/tmp/vm.qmp")
        with pytest.raises(QMPError, match="SPICE support is disabled"):
            client.query_spice()

    def test_unreachable_socket(self, fake_socket):
        fake_socket.connect.side_effect = FileNotFoundError("no such socket")
        client = QMPClient("/tmp/missing.qmp")

        with pytest.raises(QMPError, match="unavailable"):
            client.query_chardev()

    def test_connection_closed_before_reply(self, fake_socket):
        fake_socket.recv.side_effect = [GREETING, CAPABILITIES_OK, b'']
        client = QMPClient("/tmp/vm.qmp")
        with pytest.raises(QMPError, match="No response"):
            client.execute("query-status")
