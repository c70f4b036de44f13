import pytest

from qemuconsole.config.manager import ConfigManager
from qemuconsole.core.errors import BackendError, VMNotFound
from qemuconsole.web import websocket
from qemuconsole.web.app import create_app, socketio

from .conftest import FakeBackend


class WebBackend(FakeBackend):
    def list_vms(self):
        return [{'name': 'debian', 'uuid': 'vm-1'}]

    def get_serial_console_info(self, vm_id):
        if vm_id != 'vm-1':
            raise VMNotFound(f"VM not found: {vm_id}")
        return super().get_serial_console_info(vm_id)


@pytest.fixture
def web_backend():
    backend = WebBackend()
    # Keep the graphical side from dialing out
    backend.endpoint_error = BackendError("VM has no display port")
    return backend


@pytest.fixture
def app(tmp_path, web_backend):
    app = create_app(ConfigManager(tmp_path), backend=web_backend)
    app.config['TESTING'] = True
    yield app
    for sid in list(websocket.console_windows):
        websocket.unmount(sid)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sio(app):
    sio = socketio.test_client(app)
    yield sio
    if sio.is_connected():
        sio.disconnect()


def events(sio, name):
    return [message['args'][0] for message in sio.get_received() if message['name'] == name]


class TestRoutes:
    def test_list_vms(self, client):
        response = client.get('/api/vms')
        assert response.status_code == 200
        assert response.get_json() == [{'name': 'debian', 'uuid': 'vm-1'}]

    def test_serial_info(self, client):
        response = client.get('/api/vms/vm-1/serial')
        assert response.get_json() == {'active': True, 'path': '/dev/pts/7', 'vm_name': 'debian'}

    def test_unknown_vm_is_404(self, client):
        response = client.get('/api/vms/nope/serial')
        assert response.status_code == 404
        assert response.get_json() == {'error': 'VM not found: nope'}

    def test_screenshot_without_window(self, client):
        response = client.get('/api/consoles/missing/screenshot')
        assert response.status_code == 404


class TestSocketHandlers:
    def test_open_requires_vm_id(self, sio):
        sio.emit('console_open', {})
        notices = events(sio, 'console_notice')
        assert notices == [{'level': 'error', 'message': 'No VM ID provided'}]

    def test_actions_need_open_window(self, sio):
        sio.emit('console_reconnect')
        notices = events(sio, 'console_notice')
        assert notices == [{'level': 'error', 'message': 'Console not open'}]

    def test_open_reports_endpoint_failure(self, sio, web_backend):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        received = sio.get_received()

        notices = [m['args'][0] for m in received if m['name'] == 'console_notice']
        states = [m['args'][0] for m in received if m['name'] == 'console_state']
        assert {'level': 'error', 'message': 'Failed to get console info: VM has no display port'} in notices
        assert states[-1]['vm_id'] == 'vm-1'
        assert states[-1]['state'] is None
        assert web_backend.count('get_console_endpoint') == 1
        assert len(websocket.console_windows) == 1

    def test_serial_round_trip(self, sio, web_backend):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        sio.emit('console_view', {'view': 'serial'})
        sio.emit('serial_open')
        sio.get_received()

        for key in ('l', 's'):
            sio.emit('serial_key', {'key': key})
        statuses = events(sio, 'serial_status')
        assert statuses[-1]['pending'] == 'ls'

        sio.emit('serial_key', {'key': 'Enter'})
        assert web_backend.writes[-1] == b'ls\r'

    def test_unknown_view(self, sio):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        sio.get_received()
        sio.emit('console_view', {'view': 'sound'})
        assert events(sio, 'console_notice') == [{'level': 'error', 'message': 'Unknown view: sound'}]

    def test_events_without_payload(self, sio):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        sio.get_received()

        for event in ('console_view', 'console_scale_mode', 'console_key', 'console_pointer',
                      'console_resize', 'console_shortcut', 'console_special_keys',
                      'serial_key', 'serial_input', 'serial_write'):
            sio.emit(event)

        received = sio.get_received()
        notices = [m['args'][0]['message'] for m in received if m['name'] == 'console_notice']
        assert "Unknown view: None" in notices
        assert "Unknown scale mode: None" in notices
        assert [m['args'][0]['pending'] for m in received if m['name'] == 'serial_status'] == ['', '']

    def test_close_request_stops_proxy(self, sio, web_backend):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        sio.get_received()
        sio.emit('console_close_requested')

        assert events(sio, 'console_closed') == [{'vm_id': 'vm-1'}]
        assert web_backend.count('stop_console_proxy') == 1
        assert websocket.console_windows == {}

    def test_disconnect_keeps_proxy(self, sio, web_backend):
        sio.emit('console_open', {'vm_id': 'vm-1'})
        sio.disconnect()

        assert websocket.console_windows == {}
        assert web_backend.count('stop_console_proxy') == 0
