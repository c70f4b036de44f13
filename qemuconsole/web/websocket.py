import base64
import hashlib
import logging
from typing import Dict, Optional

import eventlet
from flask import current_app, request
from flask_socketio import emit

from .app import socketio
from ..core.display import RenderSurface
from ..core.errors import NoActiveSession
from ..core.models import ConsoleView
from ..core.window import ConsoleWindow

logger = logging.getLogger(__name__)

# Console windows by Socket.IO session id
console_windows: Dict[str, ConsoleWindow] = {}


class FrameStreamer:
    """Pushes JPEG frames of a window's graphical console to one client."""

    def __init__(self, window: ConsoleWindow, sid: str, interval: float = 1 / 30):
        self.window = window
        self.sid = sid
        self.interval = interval
        self.container = None
        self._active = False
        self._last_serial = None
        self._last_digest = None
        self._gt = None

    def start(self):
        if self._active:
            return
        self._active = True
        self._gt = eventlet.spawn(self._send_frames)

    def stop(self):
        self._active = False
        gt, self._gt = self._gt, None
        if gt is not None and gt is not eventlet.getcurrent():
            gt.kill()

    def _send_frames(self):
        while self._active:
            try:
                if self.window.active_view == ConsoleView.GRAPHICAL:
                    surface = self.window.graphical.get_render_surface()
                    if surface is not None:
                        self._send(surface)
            except Exception as e:
                logger.error(f"Error streaming frames for {self.window.vm_id}: {e}", exc_info=True)
            eventlet.sleep(self.interval)

    def _send(self, surface: RenderSurface):
        if surface.serial == self._last_serial:
            return
        self._last_serial = surface.serial
        data = surface.encode_jpeg(self.container)
        if data is None:
            return
        digest = hashlib.md5(data).hexdigest()
        if digest == self._last_digest:
            return
        self._last_digest = digest
        width, height = surface.size
        socketio.emit('console_frame', {
            'vm_id': self.window.vm_id,
            'frame': base64.b64encode(data).decode('utf-8'),
            'width': width,
            'height': height,
            'viewport': surface.viewport.to_dict(),
        }, to=self.sid)


frame_streamers: Dict[str, FrameStreamer] = {}


def _window(sid: str) -> Optional[ConsoleWindow]:
    window = console_windows.get(sid)
    if window is None:
        logger.warning(f'No console window for session {sid}')
        emit('console_notice', {'level': 'error', 'message': 'Console not open'})
    return window


def _serial_status(window: ConsoleWindow) -> Dict:
    return {
        'connected': window.serial.connected,
        'indicator': window.serial.indicator,
        'pending': window.serial.buffer.pending,
    }


def _bind_events(window: ConsoleWindow, sid: str):
    def send(event, data):
        socketio.emit(event, data, to=sid)

    window.on('notice', lambda level, message: send('console_notice', {'level': level, 'message': message}))
    window.on('fullscreen', lambda enabled: send('console_fullscreen', {'enabled': enabled}))
    window.on('view', lambda view: send('console_state', window.status()))
    window.graphical.on('state', lambda state: send('console_state', window.status()))
    window.graphical.on('reconnecting', lambda attempt, max_attempts, delay_ms: send('console_reconnecting', {
        'attempt': attempt,
        'max_attempts': max_attempts,
        'delay_ms': delay_ms,
    }))
    window.serial.on('output', lambda text: send('serial_output', {'data': text}))
    window.serial.on('cleared', lambda: send('serial_output', {'data': '', 'cleared': True}))
    window.serial.on('status', lambda connected, indicator: send('serial_status', _serial_status(window)))


def unmount(sid: str):
    streamer = frame_streamers.pop(sid, None)
    if streamer is not None:
        streamer.stop()
    window = console_windows.pop(sid, None)
    if window is not None:
        window.unmount()


@socketio.on('connect')
def handle_connect():
    """Handle new socket connections."""
    logger.info('Client connected')


@socketio.on('disconnect')
def handle_disconnect():
    """The page went away; keep the VM's proxy for other windows."""
    unmount(request.sid)
    logger.info('Client disconnected')


@socketio.on('console_open')
def handle_console_open(data):
    vm_id = (data or {}).get('vm_id')
    sid = request.sid
    if not vm_id:
        emit('console_notice', {'level': 'error', 'message': 'No VM ID provided'})
        return

    # One window per client session
    unmount(sid)

    config_manager = current_app.config_manager
    window = ConsoleWindow(
        vm_id,
        current_app.console_backend,
        console_config=config_manager.section('console'),
        serial_config=config_manager.section('serial'),
        screenshots_dir=config_manager.screenshots_dir,
    )
    console_windows[sid] = window
    _bind_events(window, sid)

    streamer = FrameStreamer(window, sid, config_manager.section('console').get('frame_interval', 1 / 30))
    frame_streamers[sid] = streamer

    logger.info(f'Opening console window for VM {vm_id}')
    window.open()
    streamer.start()
    emit('console_state', window.status())


@socketio.on('console_view')
def handle_console_view(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        try:
            window.select_view(ConsoleView(data.get('view')))
        except ValueError:
            emit('console_notice', {'level': 'error', 'message': f"Unknown view: {data.get('view')}"})


@socketio.on('console_reconnect')
def handle_console_reconnect(data=None):
    window = _window(request.sid)
    if window:
        window.reconnect()


@socketio.on('console_scale_mode')
def handle_console_scale_mode(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        try:
            window.set_scale_mode(data.get('mode'))
        except ValueError:
            emit('console_notice', {'level': 'error', 'message': f"Unknown scale mode: {data.get('mode')}"})
            return
        emit('console_state', window.status())


@socketio.on('console_special_keys')
def handle_console_special_keys(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        window.send_special_keys(data.get('combo', ''))


@socketio.on('console_fullscreen')
def handle_console_fullscreen(data=None):
    window = _window(request.sid)
    if window:
        window.toggle_fullscreen()


@socketio.on('console_screenshot')
def handle_console_screenshot(data=None):
    window = _window(request.sid)
    if window:
        path = window.screenshot()
        if path is not None:
            emit('console_screenshot', {'path': str(path), 'filename': path.name})


@socketio.on('console_resize')
def handle_console_resize(data=None):
    data = data or {}
    sid = request.sid
    window = _window(sid)
    if window:
        width, height = int(data.get('width', 0)), int(data.get('height', 0))
        window.graphical.set_container_size(width, height)
        streamer = frame_streamers.get(sid)
        if streamer is not None:
            streamer.container = (width, height)


@socketio.on('console_pointer')
def handle_console_pointer(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        window.graphical.send_pointer(int(data.get('x', 0)), int(data.get('y', 0)), int(data.get('buttons', 0)))


@socketio.on('console_key')
def handle_console_key(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        window.graphical.send_key(data.get('key', ''), bool(data.get('down', True)), data.get('code'))


@socketio.on('console_shortcut')
def handle_console_shortcut(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        action = window.handle_shortcut(data.get('key', ''), bool(data.get('ctrl', False)))
        if action == 'close':
            unmount(request.sid)
            emit('console_closed', {'vm_id': window.vm_id})


@socketio.on('console_close_requested')
def handle_console_close_requested(data=None):
    sid = request.sid
    window = console_windows.get(sid)
    if window is None:
        return
    window.request_close()
    unmount(sid)
    emit('console_closed', {'vm_id': window.vm_id})


@socketio.on('serial_open')
def handle_serial_open(data=None):
    window = _window(request.sid)
    if window:
        window.serial.open()


@socketio.on('serial_close')
def handle_serial_close(data=None):
    window = _window(request.sid)
    if window:
        window.serial.close()


@socketio.on('serial_key')
def handle_serial_key(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        window.serial.handle_key(data.get('key', ''), bool(data.get('ctrl', False)))
        emit('serial_status', _serial_status(window))


@socketio.on('serial_input')
def handle_serial_input(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        window.serial.type_text(data.get('text', ''))
        emit('serial_status', _serial_status(window))


@socketio.on('serial_write')
def handle_serial_write(data=None):
    data = data or {}
    window = _window(request.sid)
    if window:
        try:
            window.serial.write(data.get('data', ''))
        except NoActiveSession as e:
            emit('console_notice', {'level': 'error', 'message': str(e)})


@socketio.on('serial_clear')
def handle_serial_clear(data=None):
    window = _window(request.sid)
    if window:
        window.serial.clear()
