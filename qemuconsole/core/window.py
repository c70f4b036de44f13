"""One console window: a graphical console and a serial console for a VM.

The window fetches the endpoint once when opened and keeps it for its whole
life. Tearing down the VM's proxy only happens on an actual close request;
``unmount()`` releases the sessions of this window and nothing else.
"""
import logging
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .display import GraphicalConsole
from .errors import BackendError, NoActiveSession
from .models import ConsoleEndpoint, ConsoleView, ScaleMode
from .serial import SerialConsole

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Console not connected"


class ConsoleWindow:
    """Listeners: ``notice(level, message)``, ``fullscreen(enabled)``,
    ``view(view)`` and ``closed()``. Graphical and serial listeners are
    reached through ``graphical.on()`` and ``serial.on()``.
    """

    def __init__(self, vm_id: str, backend, loader=None, scheduler=None,
                 console_config: Optional[Dict[str, Any]] = None,
                 serial_config: Optional[Dict[str, Any]] = None,
                 screenshots_dir: Optional[Path] = None,
                 vm_name: Optional[str] = None):
        self.vm_id = vm_id
        self.vm_name = vm_name or vm_id
        self.backend = backend
        self.screenshots_dir = Path(screenshots_dir) if screenshots_dir else Path.cwd()

        console_config = console_config or {}
        serial_config = serial_config or {}
        self.graphical = GraphicalConsole(
            loader=loader,
            scheduler=scheduler,
            max_attempts=console_config.get('max_reconnect_attempts', 5),
            base_delay_ms=console_config.get('reconnect_base_delay_ms', 1000),
            max_delay_ms=console_config.get('reconnect_max_delay_ms', 16000),
            probe_delays=console_config.get('surface_probe_delays', (0.5, 1.5, 3.0)),
            quality_level=console_config.get('quality_level', 6),
            compression_level=console_config.get('compression_level', 2),
        )
        self.serial = SerialConsole(
            vm_id, backend,
            scheduler=scheduler,
            poll_interval=serial_config.get('poll_interval', 0.1),
            liveness_interval=serial_config.get('liveness_interval', 2.0),
        )

        self.endpoint: Optional[ConsoleEndpoint] = None
        self.active_view = ConsoleView.GRAPHICAL
        self.fullscreen = False
        self.opened = False
        self.closed = False
        self._proxy_released = False
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

        self.graphical.on('connected', lambda: self.notify('success', "Console connected"))
        self.graphical.on('disconnected', lambda: self.notify('error', "Console disconnected"))
        self.graphical.on('error', lambda message: self.notify('error', f"Console error: {message}"))
        self.serial.on('notice', self.notify)

    def on(self, event: str, callback: Callable):
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in console window '{event}' listener: {e}", exc_info=True)

    def notify(self, level: str, message: str):
        """Surface a user-visible message"""
        log = logger.error if level == 'error' else logger.info
        log(f"[{self.vm_name}] {message}")
        self._emit('notice', level, message)

    def open(self) -> bool:
        """Fetch the endpoint and start both consoles; later calls do nothing."""
        if self.opened or self.closed:
            return self.opened
        self.opened = True

        info = self.serial.start()
        if info is not None and info.vm_name:
            self.vm_name = info.vm_name

        try:
            self.endpoint = self.backend.get_console_endpoint(self.vm_id)
        except BackendError as e:
            logger.error(f"Failed to get console endpoint for VM {self.vm_id}: {e}")
            self.notify('error', f"Failed to get console info: {e}")
            return True

        logger.info(f"Opening {self.endpoint.variant.value} console for VM {self.vm_id} "
                    f"via {self.endpoint.url}")
        self.graphical.connect(self.endpoint)
        return True

    def select_view(self, view: ConsoleView):
        view = ConsoleView(view)
        if view != self.active_view:
            self.active_view = view
            self._emit('view', view)

    def _active_is_live(self) -> bool:
        if self.active_view == ConsoleView.SERIAL:
            return self.serial.connected
        return self.graphical.is_live

    def set_scale_mode(self, mode: ScaleMode):
        mode = ScaleMode(mode)
        if not self.graphical.is_live:
            self.notify('error', NOT_CONNECTED)
            return None
        viewport = self.graphical.set_scale_mode(mode)
        self.notify('success', f"Display mode: {mode.label}")
        return viewport

    def toggle_fullscreen(self) -> bool:
        if not self.fullscreen and not self._active_is_live():
            self.notify('error', NOT_CONNECTED)
            return self.fullscreen
        self.fullscreen = not self.fullscreen
        self._emit('fullscreen', self.fullscreen)
        return self.fullscreen

    def capture_screenshot(self) -> Optional[bytes]:
        """PNG bytes of the graphical console, or None with an error notice"""
        surface = self.graphical.get_render_surface() if self.active_view == ConsoleView.GRAPHICAL else None
        if surface is None:
            self.notify('error', NOT_CONNECTED)
            return None
        try:
            return surface.encode_png()
        except (OSError, ValueError) as e:
            self.notify('error', f"Failed to capture screenshot: {e}")
            return None

    def screenshot_filename(self) -> str:
        return f"{self.vm_name or 'vm'}-screenshot-{int(time.time() * 1000)}.png"

    def screenshot(self) -> Optional[Path]:
        """Save a PNG of the graphical console and return its path"""
        data = self.capture_screenshot()
        if data is None:
            return None
        path = self.screenshots_dir / self.screenshot_filename()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            self.notify('error', f"Failed to save screenshot: {e}")
            return None
        self.notify('success', "Screenshot saved")
        return path

    def send_special_keys(self, combo: str) -> bool:
        if self.active_view != ConsoleView.GRAPHICAL:
            self.notify('error', NOT_CONNECTED)
            return False
        try:
            self.graphical.send_special_keys(combo)
        except NoActiveSession as e:
            self.notify('error', str(e))
            return False
        except ValueError as e:
            self.notify('error', str(e))
            return False
        return True

    def reconnect(self) -> bool:
        try:
            self.graphical.reconnect()
        except NoActiveSession:
            # Nothing connected yet; try the endpoint from scratch
            if self.endpoint is None:
                self.notify('error', NOT_CONNECTED)
                return False
            self.graphical.connect(self.endpoint)
        return True

    def handle_shortcut(self, key: str, ctrl: bool = False) -> Optional[str]:
        """Window shortcuts; returns the action taken, if any."""
        if key == 'F11':
            self.toggle_fullscreen()
            return 'fullscreen'
        if key == 'F10':
            self.screenshot()
            return 'screenshot'
        if key == 'Escape' and self.fullscreen:
            self.toggle_fullscreen()
            return 'fullscreen'
        if key == 'Escape' or (ctrl and key.lower() == 'w'):
            self.request_close()
            return 'close'
        return None

    def request_close(self):
        """The host window is really closing: release the proxy, then unmount."""
        if self._proxy_released:
            return
        self._proxy_released = True
        try:
            self.backend.stop_console_proxy(self.vm_id)
            logger.info(f"Stopped websockify proxy on window close for VM {self.vm_id}")
        except BackendError as e:
            logger.error(f"Failed to stop console proxy for VM {self.vm_id}: {e}")
        self.unmount()
        self._emit('closed')

    def unmount(self):
        """Dispose both sessions; the VM's proxy is left running"""
        if self.closed:
            return
        self.closed = True
        self.graphical.dispose()
        self.serial.dispose()
        logger.info(f"Console window for VM {self.vm_id} unmounted")

    def status(self) -> Dict[str, Any]:
        state = self.graphical.state
        retry = self.graphical.connection.retry if self.graphical.connection else None
        return {
            'vm_id': self.vm_id,
            'vm_name': self.vm_name,
            'view': self.active_view.value,
            'variant': self.endpoint.variant.value if self.endpoint else None,
            'state': state.value if state else None,
            'attempt': retry.attempt_count if retry else 0,
            'max_attempts': retry.max_attempts if retry else 0,
            'scale_mode': self.graphical.scale_mode.value,
            'fullscreen': self.fullscreen,
            'serial_connected': self.serial.connected,
            'serial_indicator': self.serial.indicator,
        }
