import io
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from .connection import Attempt, ConsoleConnection, MAX_RECONNECT_ATTEMPTS, BASE_DELAY_MS, MAX_DELAY_MS
from .errors import CredentialFailure, NoActiveSession, TransportFailure
from .loader import ProtocolLoader, protocol_loader
from .models import ConnectionState, ConsoleEndpoint, ProtocolVariant, ScaleMode
from .scheduler import Timer, default_scheduler

logger = logging.getLogger(__name__)

# Mapping from KeyboardEvent.key to VNC key codes
# VNC uses X11 keysym values for key codes
KEY_EVENT_MAP = {
    "Control": 0xffe3,  # XK_Control_L
    "Shift": 0xffe1,    # XK_Shift_L
    "Alt": 0xffe9,      # XK_Alt_L
    "Meta": 0xffeb,     # XK_Super_L
    "Enter": 0xff0d,    # XK_Return
    "Escape": 0xff1b,   # XK_Escape
    "ArrowUp": 0xff52,  # XK_Up
    "ArrowDown": 0xff54, # XK_Down
    "ArrowLeft": 0xff51, # XK_Left
    "ArrowRight": 0xff53, # XK_Right
    "Backspace": 0xff08, # XK_BackSpace
    "Delete": 0xffff,   # XK_Delete
    "Home": 0xff50,     # XK_Home
    "End": 0xff57,      # XK_End
    "PageUp": 0xff55,   # XK_Page_Up
    "PageDown": 0xff56, # XK_Page_Down
    "Insert": 0xff63,   # XK_Insert
    "Tab": 0xff09,      # XK_Tab
    " ": 0x0020,        # XK_space
    # Function keys
    "F1": 0xffbe, "F2": 0xffbf, "F3": 0xffc0, "F4": 0xffc1,
    "F5": 0xffc2, "F6": 0xffc3, "F7": 0xffc4, "F8": 0xffc5,
    "F9": 0xffc6, "F10": 0xffc7, "F11": 0xffc8, "F12": 0xffc9,
}

# Physical key codes sent alongside the keysym
KEY_CODE_MAP = {
    "Control": "ControlLeft",
    "Alt": "AltLeft",
    "Shift": "ShiftLeft",
    " ": "Space",
}

MODIFIERS = ("Control", "Alt")

SPECIAL_KEY_COMBOS = {
    "ctrl-alt-del": MODIFIERS + ("Delete",),
    "ctrl-alt-backspace": MODIFIERS + ("Backspace",),
}
SPECIAL_KEY_COMBOS.update({f"ctrl-alt-f{n}": MODIFIERS + (f"F{n}",) for n in range(1, 13)})

KeyEvent = Tuple[int, str, bool]

def keysym_for(key: str) -> Optional[int]:
    """Map a KeyboardEvent.key to an X11 keysym"""
    if len(key) == 1:
        return ord(key)
    return KEY_EVENT_MAP.get(key)

def key_sequence(combo: str) -> List[KeyEvent]:
    """Down/up events for a combo: modifiers down, key down, key up, modifiers up."""
    keys = SPECIAL_KEY_COMBOS.get(combo.lower())
    if keys is None:
        raise ValueError(f"Unknown key combination: {combo}")
    events = [(KEY_EVENT_MAP[key], KEY_CODE_MAP.get(key, key), True) for key in keys]
    events += [(keysym, code, False) for keysym, code, _ in reversed(events)]
    return events


@dataclass(frozen=True)
class Viewport:
    """How the remote framebuffer is fitted into the viewer container."""
    scale_viewport: bool
    resize_session: bool
    object_fit: str
    scrollable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scale_viewport': self.scale_viewport,
            'resize_session': self.resize_session,
            'object_fit': self.object_fit,
            'scrollable': self.scrollable,
        }

VIEWPORTS = {
    ScaleMode.SCALE: Viewport(scale_viewport=True, resize_session=False, object_fit="contain", scrollable=False),
    ScaleMode.FIT: Viewport(scale_viewport=False, resize_session=False, object_fit="none", scrollable=True),
    ScaleMode.STRETCH: Viewport(scale_viewport=True, resize_session=True, object_fit="fill", scrollable=False),
}

def viewport_for(mode: ScaleMode, variant: ProtocolVariant) -> Viewport:
    viewport = VIEWPORTS[ScaleMode(mode)]
    if variant != ProtocolVariant.VNC and viewport.resize_session:
        # Only the framebuffer variant can be told to resize its display
        viewport = Viewport(viewport.scale_viewport, False, viewport.object_fit, viewport.scrollable)
    return viewport

def fit_frame(frame: np.ndarray, viewport: Viewport, container: Optional[Tuple[int, int]]) -> np.ndarray:
    """Scale an RGB frame into a (width, height) container per the viewport"""
    if container is None or not viewport.scale_viewport:
        return frame
    container_w, container_h = container
    height, width = frame.shape[:2]
    if container_w <= 0 or container_h <= 0 or width == 0 or height == 0:
        return frame

    if viewport.object_fit == "fill":
        size = (container_w, container_h)
    else:
        factor = min(container_w / width, container_h / height)
        size = (max(1, int(round(width * factor))), max(1, int(round(height * factor))))

    if size == (width, height):
        return frame
    interpolation = cv2.INTER_AREA if size[0] < width else cv2.INTER_LINEAR
    return cv2.resize(frame, size, interpolation=interpolation)


class RenderSurface:
    """The live render target of a graphical session."""

    def __init__(self, client: Any, viewport: Viewport):
        self._client = client
        self.viewport = viewport

    @property
    def frame(self) -> Optional[np.ndarray]:
        return self._client.surface

    @property
    def serial(self) -> int:
        return getattr(self._client, 'frame_serial', 0)

    @property
    def size(self) -> Tuple[int, int]:
        frame = self.frame
        if frame is None:
            return (0, 0)
        return (frame.shape[1], frame.shape[0])

    def snapshot(self) -> Image.Image:
        """Copy of the current framebuffer at native size"""
        return Image.fromarray(np.array(self.frame, copy=True))

    def render(self, container: Optional[Tuple[int, int]] = None) -> np.ndarray:
        return fit_frame(self.frame, self.viewport, container)

    def encode_png(self) -> bytes:
        buffer = io.BytesIO()
        self.snapshot().save(buffer, format='PNG')
        return buffer.getvalue()

    def encode_jpeg(self, container: Optional[Tuple[int, int]] = None, quality: int = 85) -> Optional[bytes]:
        frame = self.render(container)
        success, encoded = cv2.imencode('.jpg', cv2.cvtColor(frame, cv2.COLOR_RGB2BGR),
                                        [int(cv2.IMWRITE_JPEG_QUALITY), quality])
        if not success:
            logger.warning("Failed to encode frame as JPEG")
            return None
        return encoded.tobytes()


class _Session:
    """A protocol client bound to one connection attempt."""

    def __init__(self, client: Any):
        self.client = client
        self.timers: List[Timer] = []

    def close(self):
        for timer in self.timers:
            timer.cancel()
        self.timers = []
        self.client.disconnect()


class GraphicalConsole:
    """Binds a VNC or SPICE client to the reconnecting state machine.

    Listeners are registered with ``on()`` and carried over to every
    connection made by ``connect()``.
    """

    def __init__(self, loader: Optional[ProtocolLoader] = None, scheduler=None,
                 scale_mode: ScaleMode = ScaleMode.SCALE,
                 max_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 base_delay_ms: int = BASE_DELAY_MS,
                 max_delay_ms: int = MAX_DELAY_MS,
                 probe_delays: Sequence[float] = (0.5, 1.5, 3.0),
                 quality_level: int = 6,
                 compression_level: int = 2):
        self._loader = loader or protocol_loader
        self._scheduler = scheduler or default_scheduler
        self.scale_mode = ScaleMode(scale_mode)
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.probe_delays = tuple(probe_delays)
        self.quality_level = quality_level
        self.compression_level = compression_level
        self.container: Optional[Tuple[int, int]] = None

        self.endpoint: Optional[ConsoleEndpoint] = None
        self.connection: Optional[ConsoleConnection] = None
        self.disposed = False
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    def on(self, event: str, callback: Callable):
        self._listeners[event].append(callback)
        if self.connection is not None:
            self.connection.on(event, callback)

    @property
    def state(self) -> Optional[ConnectionState]:
        return self.connection.state if self.connection else None

    @property
    def client(self) -> Any:
        session = self.connection.session if self.connection else None
        return session.client if session else None

    @property
    def is_live(self) -> bool:
        return self.connection is not None and self.connection.is_connected and self.client is not None

    @property
    def viewport(self) -> Viewport:
        variant = self.endpoint.variant if self.endpoint else ProtocolVariant.VNC
        return viewport_for(self.scale_mode, variant)

    def connect(self, endpoint: ConsoleEndpoint):
        """Start a new reconnecting session to the endpoint"""
        if self.connection is not None:
            self.connection.dispose()
        self.disposed = False
        self.endpoint = endpoint
        self.connection = ConsoleConnection(
            self._open_session,
            scheduler=self._scheduler,
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            name=f"{endpoint.variant.value} console {endpoint.host}:{endpoint.port}",
        )
        for event, callbacks in self._listeners.items():
            for callback in callbacks:
                self.connection.on(event, callback)
        self.connection.start()

    def _open_session(self, attempt: Attempt) -> _Session:
        endpoint = self.endpoint
        constructor = self._loader.load(endpoint.variant)

        client = constructor()
        session = _Session(client)
        self._wire_events(client, attempt, endpoint.variant)

        if hasattr(client, 'quality_level'):
            client.quality_level = self.quality_level
        if hasattr(client, 'compression_level'):
            client.compression_level = self.compression_level
        if hasattr(client, 'view_only'):
            client.view_only = False
        self._apply_viewport(client)

        logger.info(f"Connecting to {endpoint.variant.value} console via websockify: "
                    f"{endpoint.url} (attempt {attempt.number})")
        client.connect(endpoint.url, password=endpoint.password)

        # Some clients never report success; a surface showing up counts too
        for delay in self.probe_delays:
            session.timers.append(self._scheduler.call_later(delay, self._probe_surface, attempt, client))
        return session

    def _wire_events(self, client: Any, attempt: Attempt, variant: ProtocolVariant):
        client.on('connect', lambda *args: attempt.connected("protocol"))
        client.on('disconnect', lambda clean=False, reason=None: attempt.closed(clean, reason))
        client.on('credentialsrequired',
                  lambda *args: attempt.fail(CredentialFailure("Credentials required")))
        client.on('securityfailure',
                  lambda reason=None: attempt.fail(CredentialFailure(f"Security failure: {reason}")))
        fallback = f"{variant.value.upper()} connection error"
        client.on('error', lambda message=None: attempt.fail(TransportFailure(message or fallback)))

    def _probe_surface(self, attempt: Attempt, client: Any):
        if client.surface is not None and attempt.current:
            logger.info("Display surface detected - connection successful")
            attempt.connected("surface")

    def _apply_viewport(self, client: Any) -> Viewport:
        viewport = self.viewport
        client.scale_viewport = viewport.scale_viewport
        client.resize_session = viewport.resize_session
        if hasattr(client, 'object_fit'):
            client.object_fit = viewport.object_fit
        if viewport.resize_session and self.container and hasattr(client, 'request_desktop_size'):
            client.request_desktop_size(*self.container)
        return viewport

    def set_scale_mode(self, mode: ScaleMode) -> Viewport:
        """Re-apply viewport parameters to the live client without reconnecting"""
        self.scale_mode = ScaleMode(mode)
        client = self.client
        if client is not None:
            return self._apply_viewport(client)
        return self.viewport

    def set_container_size(self, width: int, height: int):
        self.container = (int(width), int(height))
        client = self.client
        if client is not None and self.viewport.resize_session and hasattr(client, 'request_desktop_size'):
            client.request_desktop_size(*self.container)

    def reconnect(self):
        if self.connection is None:
            raise NoActiveSession("Console not connected")
        self.connection.reconnect()

    def send_special_keys(self, combo: str):
        """Inject a key combination such as ctrl-alt-del"""
        if not self.is_live:
            raise NoActiveSession("Console not connected")
        client = self.client
        for keysym, code, down in key_sequence(combo):
            client.send_key(keysym, code, down)
        logger.info(f"Sent {combo} to {self.endpoint.variant.value} console")

    def send_key(self, key: str, down: bool, code: Optional[str] = None):
        """Forward a single keyboard event from the viewer"""
        if not self.is_live:
            return
        keysym = keysym_for(key)
        if keysym is None:
            logger.warning(f"No key mapping for '{key}' (code: {code})")
            return
        self.client.send_key(keysym, code or KEY_CODE_MAP.get(key, key), down)

    def send_pointer(self, x: int, y: int, button_mask: int):
        client = self.client
        if self.is_live and hasattr(client, 'send_pointer'):
            client.send_pointer(x, y, button_mask)

    def get_render_surface(self) -> Optional[RenderSurface]:
        client = self.client
        if not self.is_live or client.surface is None:
            return None
        return RenderSurface(client, self.viewport)

    def dispose(self):
        """Stop the client and cancel pending reconnects. Idempotent."""
        if self.disposed:
            return
        self.disposed = True
        if self.connection is not None:
            self.connection.dispose()
