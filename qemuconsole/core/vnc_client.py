import struct
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import eventlet
import numpy as np
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives.ciphers import Cipher, modes
from eventlet.semaphore import Semaphore

from .transport import TransportClosed, WebSocketTransport

logger = logging.getLogger(__name__)

def vnc_auth_response(password: str, challenge: bytes) -> bytes:
    """DES-encrypt the 16 byte server challenge with the password as key"""
    key = password.encode('latin-1', errors='replace')[:8].ljust(8, b'\x00')
    # RFB takes the key bits of each byte in reverse order
    key = bytes(int(f'{byte:08b}'[::-1], 2) for byte in key)
    # Triple DES with one 8 byte key is single DES
    encryptor = Cipher(TripleDES(key), modes.ECB()).encryptor()
    return encryptor.update(challenge) + encryptor.finalize()

class VNCError(Exception):
    """VNC-specific exceptions"""
    pass

class VNCSecurityError(VNCError):
    """Server refused our security handshake"""
    pass

class VNCClient:
    """RFB client speaking to a websockify proxy, driven by an eventlet green thread.

    Emits ``connect``, ``disconnect(clean, reason)``, ``credentialsrequired``,
    ``securityfailure(reason)`` and ``error(message)``.
    """

    # VNC message types
    FRAMEBUFFER_UPDATE = 0
    SET_COLOUR_MAP_ENTRIES = 1
    BELL = 2
    SERVER_CUT_TEXT = 3

    # Client message types
    SET_PIXEL_FORMAT = 0
    SET_ENCODINGS = 2
    FRAMEBUFFER_UPDATE_REQUEST = 3
    KEY_EVENT = 4
    POINTER_EVENT = 5
    CLIENT_CUT_TEXT = 6
    SET_DESKTOP_SIZE = 251

    # Encoding types
    RAW_ENCODING = 0
    COPY_RECT_ENCODING = 1
    DESKTOP_SIZE_ENCODING = -223
    EXTENDED_DESKTOP_SIZE_ENCODING = -308
    QUALITY_LEVEL_BASE = -32
    COMPRESSION_LEVEL_BASE = -256

    # Security types
    SECURITY_NONE = 1
    SECURITY_VNC_AUTH = 2

    def __init__(self, transport_factory: Callable[[str], WebSocketTransport] = WebSocketTransport):
        self._transport_factory = transport_factory
        self.transport: Optional[WebSocketTransport] = None
        self.url: Optional[str] = None
        self.password: Optional[str] = None
        self.connected = False
        self.width = 0
        self.height = 0
        self.name = ""

        # Viewport hints, applied by the console adapter
        self.scale_viewport = False
        self.resize_session = False
        self.quality_level = 6
        self.compression_level = 2
        self.view_only = False

        self.frame_serial = 0
        self._framebuffer: Optional[np.ndarray] = None
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._send_lock = Semaphore()
        self._reader = None
        self._closing = False
        self._screen_id = 0
        self._extended_desktop_size = False

    def on(self, event: str, callback: Callable):
        """Register an event callback"""
        self._handlers[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in list(self._handlers.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in VNC '{event}' handler: {e}", exc_info=True)

    @property
    def surface(self) -> Optional[np.ndarray]:
        """Current framebuffer as an RGB array, None until the first update"""
        return self._framebuffer

    def connect(self, url: str, password: Optional[str] = None):
        """Start connecting in the background; outcome is reported through events"""
        self.url = url
        self.password = password
        self._closing = False
        self.transport = self._transport_factory(url)
        self._reader = eventlet.spawn(self._run)

    def _run(self):
        clean = False
        reason = None
        try:
            self.transport.open()
            self._do_handshake()
            self._do_security()
            self._do_client_init()

            self.connected = True
            logger.info(f"VNC connection established to '{self.name}' ({self.width}x{self.height})")
            self._emit('connect')

            self._request_framebuffer_update(0, 0, self.width, self.height, incremental=False)
            while not self._closing:
                self._read_server_message()

        except VNCSecurityError as e:
            logger.error(f"Security negotiation failed: {e}")
            clean = True
            reason = str(e)
            self._emit('securityfailure', reason)
        except (TransportClosed, OSError, VNCError, struct.error) as e:
            clean = self._closing or (self.transport is not None and self.transport.closed_cleanly)
            reason = str(e)
            if not self._closing:
                logger.warning(f"VNC connection to {self.url} lost: {e}")
        except Exception as e:
            reason = str(e)
            logger.error(f"Error in VNC session {self.url}: {e}", exc_info=True)
            self._emit('error', reason)
        finally:
            self.connected = False
            if self.transport is not None:
                self.transport.close()
            self._emit('disconnect', clean or self._closing, reason)

    def _do_handshake(self):
        """Perform VNC version handshake"""
        version = self.transport.recv_exact(12).decode('ascii', errors='replace')
        logger.debug(f"Server version: {version.strip()}")
        if not version.startswith('RFB '):
            raise VNCError(f"Unexpected server version: {version!r}")

        # Send client version (RFB 003.008)
        self.transport.send(b'RFB 003.008\n')

    def _read_reason(self) -> str:
        reason_length = struct.unpack('!I', self.transport.recv_exact(4))[0]
        return self.transport.recv_exact(reason_length).decode('utf-8', errors='replace')

    def _do_security(self):
        """Handle VNC security negotiation"""
        num_types = struct.unpack('!B', self.transport.recv_exact(1))[0]
        if num_types == 0:
            raise VNCSecurityError(f"Connection failed: {self._read_reason()}")

        security_types = list(self.transport.recv_exact(num_types))
        logger.debug(f"Available security types: {security_types}")

        # Prefer None if available, otherwise VNC auth
        if self.SECURITY_NONE in security_types:
            self.transport.send(struct.pack('!B', self.SECURITY_NONE))
        elif self.SECURITY_VNC_AUTH in security_types:
            if not self.password:
                self._closing = True
                self._emit('credentialsrequired')
                raise VNCError("VNC authentication required but no password provided")
            self.transport.send(struct.pack('!B', self.SECURITY_VNC_AUTH))
            challenge = self.transport.recv_exact(16)
            self.transport.send(vnc_auth_response(self.password, challenge))
        else:
            raise VNCSecurityError(f"No supported security types: {security_types}")

        result = struct.unpack('!I', self.transport.recv_exact(4))[0]
        if result != 0:
            raise VNCSecurityError(self._read_reason() or "Authentication failed")

    def _do_client_init(self):
        """Initialize client and get server info"""
        # Send client initialization (shared=1)
        self.transport.send(struct.pack('!B', 1))

        # width(2) + height(2) + pixel_format(16) + name_length(4)
        server_init = self.transport.recv_exact(24)
        (self.width, self.height, _pixel_format, name_length) = struct.unpack('!HH16sI', server_init)
        if name_length > 0:
            self.name = self.transport.recv_exact(name_length).decode('utf-8', errors='ignore')

        self._set_pixel_format()
        self._set_encodings()

    def _set_pixel_format(self):
        """Set pixel format to 32-bit little-endian BGRX"""
        pixel_format = struct.pack('!BBBBHHHBBBxxx',
            32,  # bits-per-pixel
            24,  # depth
            0,   # big-endian-flag
            1,   # true-colour-flag
            255, # red-max
            255, # green-max
            255, # blue-max
            16,  # red-shift
            8,   # green-shift
            0    # blue-shift
        )
        self._send(struct.pack('!Bxxx', self.SET_PIXEL_FORMAT) + pixel_format)

    def _set_encodings(self):
        """Set supported encodings"""
        encodings = [
            self.COPY_RECT_ENCODING,
            self.RAW_ENCODING,
            self.DESKTOP_SIZE_ENCODING,
            self.EXTENDED_DESKTOP_SIZE_ENCODING,
            self.QUALITY_LEVEL_BASE + self.quality_level,
            self.COMPRESSION_LEVEL_BASE + self.compression_level,
        ]
        message = struct.pack('!BxH', self.SET_ENCODINGS, len(encodings))
        for encoding in encodings:
            message += struct.pack('!i', encoding)
        self._send(message)

    def _send(self, message: bytes):
        with self._send_lock:
            self.transport.send(message)

    def _request_framebuffer_update(self, x: int, y: int, width: int, height: int, incremental: bool = True):
        """Request a framebuffer update"""
        self._send(struct.pack('!BBHHHH',
            self.FRAMEBUFFER_UPDATE_REQUEST,
            1 if incremental else 0,
            x, y, width, height
        ))

    def _read_server_message(self):
        msg_type = struct.unpack('!B', self.transport.recv_exact(1))[0]

        if msg_type == self.FRAMEBUFFER_UPDATE:
            _padding, num_rects = struct.unpack('!BH', self.transport.recv_exact(3))
            self._read_framebuffer_update(num_rects)
            self._request_framebuffer_update(0, 0, self.width, self.height, incremental=True)
        elif msg_type == self.SET_COLOUR_MAP_ENTRIES:
            _padding, _first, count = struct.unpack('!BHH', self.transport.recv_exact(5))
            self.transport.recv_exact(count * 6)
        elif msg_type == self.BELL:
            logger.debug("Bell")
        elif msg_type == self.SERVER_CUT_TEXT:
            length = struct.unpack('!xxxI', self.transport.recv_exact(7))[0]
            self.transport.recv_exact(length)
        else:
            raise VNCError(f"Unexpected message type: {msg_type}")

    def _ensure_framebuffer(self):
        if self._framebuffer is None or self._framebuffer.shape[:2] != (self.height, self.width):
            self._framebuffer = np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def _read_framebuffer_update(self, num_rects: int):
        """Apply one framebuffer update message to the local framebuffer"""
        self._ensure_framebuffer()

        for rect_idx in range(num_rects):
            x, y, w, h, encoding = struct.unpack('!HHHHi', self.transport.recv_exact(12))
            logger.debug(f"Rectangle {rect_idx}: ({x},{y}) {w}x{h} encoding={encoding}")

            if encoding == self.RAW_ENCODING:
                pixel_data = self.transport.recv_exact(w * h * 4)
                if y + h > self.height or x + w > self.width:
                    logger.warning(f"Rectangle bounds exceed framebuffer: ({x},{y}) {w}x{h}")
                    continue
                pixel_array = np.frombuffer(pixel_data, dtype=np.uint8).reshape((h, w, 4))
                # BGRX to RGB
                self._framebuffer[y:y+h, x:x+w] = pixel_array[:, :, 2::-1]

            elif encoding == self.COPY_RECT_ENCODING:
                src_x, src_y = struct.unpack('!HH', self.transport.recv_exact(4))
                region = self._framebuffer[src_y:src_y+h, src_x:src_x+w].copy()
                self._framebuffer[y:y+region.shape[0], x:x+region.shape[1]] = region

            elif encoding == self.DESKTOP_SIZE_ENCODING:
                self._resize_framebuffer(w, h)

            elif encoding == self.EXTENDED_DESKTOP_SIZE_ENCODING:
                num_screens = struct.unpack('!Bxxx', self.transport.recv_exact(4))[0]
                screens = self.transport.recv_exact(num_screens * 16)
                self._extended_desktop_size = True
                if num_screens:
                    self._screen_id = struct.unpack('!I', screens[:4])[0]
                if (w, h) != (self.width, self.height):
                    self._resize_framebuffer(w, h)

            else:
                raise VNCError(f"Unsupported encoding: {encoding}")

        self.frame_serial += 1

    def _resize_framebuffer(self, width: int, height: int):
        logger.info(f"Resolution changed from {self.width}x{self.height} to {width}x{height}")
        self.width = width
        self.height = height
        self._ensure_framebuffer()

    def request_desktop_size(self, width: int, height: int) -> bool:
        """Ask the server to resize its desktop; only when resize_session is on"""
        if not self.connected or not self.resize_session or not self._extended_desktop_size:
            return False
        if (width, height) == (self.width, self.height) or width <= 0 or height <= 0:
            return False
        message = struct.pack('!BxHHBx', self.SET_DESKTOP_SIZE, width, height, 1)
        message += struct.pack('!IHHHHI', self._screen_id, 0, 0, width, height, 0)
        try:
            self._send(message)
            return True
        except Exception as e:
            logger.error(f"Failed to request desktop size: {e}")
            return False

    def send_key(self, keysym: int, code: Optional[str], down: bool):
        """Send a key event"""
        if not self.connected or self.view_only:
            return

        try:
            self._send(struct.pack('!BBxxI', self.KEY_EVENT, 1 if down else 0, keysym))
        except Exception as e:
            logger.error(f"Failed to send key event: {e}")

    def send_pointer(self, x: int, y: int, button_mask: int):
        """Send a pointer (mouse) event"""
        if not self.connected or self.view_only:
            return

        try:
            # Clamp coordinates
            x = max(0, min(x, self.width - 1))
            y = max(0, min(y, self.height - 1))
            self._send(struct.pack('!BBHH', self.POINTER_EVENT, button_mask, x, y))
        except Exception as e:
            logger.error(f"Failed to send pointer event: {e}")

    def disconnect(self):
        """Disconnect from VNC server"""
        self._closing = True
        self.connected = False
        if self.transport is not None:
            self.transport.close()
        logger.info(f"Disconnected from VNC server {self.url}")
