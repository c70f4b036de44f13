import struct
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

import eventlet
import numpy as np
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from eventlet.semaphore import Semaphore

from .transport import TransportClosed, WebSocketTransport

logger = logging.getLogger(__name__)

class SpiceError(Exception):
    """SPICE-specific exceptions"""
    pass

class SpiceLinkError(SpiceError):
    """The server rejected a channel link"""

    def __init__(self, code: int):
        self.code = code
        super().__init__(LINK_ERRORS.get(code, f"Link error {code}"))

    @property
    def permission_denied(self) -> bool:
        return self.code in (SPICE_LINK_ERR_PERMISSION_DENIED, SPICE_LINK_ERR_NEED_SECURED)

SPICE_MAGIC = b'REDQ'
SPICE_VERSION_MAJOR = 2
SPICE_VERSION_MINOR = 2
SPICE_TICKET_PUBKEY_BYTES = 162

# Channel types
SPICE_CHANNEL_MAIN = 1
SPICE_CHANNEL_INPUTS = 3

# Link errors
SPICE_LINK_ERR_OK = 0
SPICE_LINK_ERR_NEED_SECURED = 5
SPICE_LINK_ERR_PERMISSION_DENIED = 7

LINK_ERRORS = {
    1: "Link error",
    2: "Invalid magic",
    3: "Invalid data",
    4: "Version mismatch",
    5: "Secure connection required",
    6: "Unsecure connection required",
    7: "Permission denied",
    8: "Bad connection id",
    9: "Channel not available",
}

# Messages common to all channels
SPICE_MSG_SET_ACK = 3
SPICE_MSG_PING = 4
SPICE_MSG_DISCONNECTING = 6
SPICE_MSGC_ACK_SYNC = 1
SPICE_MSGC_ACK = 2
SPICE_MSGC_PONG = 3

# Main channel
SPICE_MSG_MAIN_INIT = 103
SPICE_MSG_MAIN_AGENT_CONNECTED = 107
SPICE_MSG_MAIN_AGENT_DISCONNECTED = 108
SPICE_MSGC_MAIN_ATTACH_CHANNELS = 104

# Inputs channel
SPICE_MSGC_INPUTS_KEY_DOWN = 101
SPICE_MSGC_INPUTS_KEY_UP = 102

DATA_HEADER = struct.Struct('<QHII')

# Display area created once the main channel is initialised
DEFAULT_SURFACE_SIZE = (1024, 768)

# PC scancodes for KeyboardEvent.code values; extended keys are 0x100 + code
SCANCODES = {
    "ControlLeft": 0x1d, "ControlRight": 0x11d,
    "AltLeft": 0x38, "AltRight": 0x138,
    "ShiftLeft": 0x2a, "ShiftRight": 0x36,
    "Backspace": 0x0e, "Tab": 0x0f, "Enter": 0x1c, "Escape": 0x01, "Space": 0x39,
    "Delete": 0x153, "Insert": 0x152, "Home": 0x147, "End": 0x14f,
    "PageUp": 0x149, "PageDown": 0x151,
    "ArrowUp": 0x148, "ArrowDown": 0x150, "ArrowLeft": 0x14b, "ArrowRight": 0x14d,
    "F1": 0x3b, "F2": 0x3c, "F3": 0x3d, "F4": 0x3e, "F5": 0x3f, "F6": 0x40,
    "F7": 0x41, "F8": 0x42, "F9": 0x43, "F10": 0x44, "F11": 0x57, "F12": 0x58,
}

def scancode_message(scancode: int, down: bool) -> int:
    """Encode a scancode the way the inputs channel expects it"""
    if scancode < 0x100:
        return scancode if down else scancode | 0x80
    code = 0xe0 | ((scancode - 0x100) << 8)
    return code if down else code | 0x8000


def encrypt_ticket(pub_key: bytes, password: Optional[str]) -> bytes:
    """RSA-OAEP encrypt the NUL terminated password with the server's ticket key"""
    try:
        public_key = serialization.load_der_public_key(pub_key)
    except ValueError as e:
        raise SpiceError(f"Invalid ticket public key: {e}")
    ticket = (password or '').encode('utf-8') + b'\x00'
    return public_key.encrypt(ticket, padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA1()),
        algorithm=hashes.SHA1(),
        label=None,
    ))


class SpiceChannel:
    """One linked SPICE channel over its own WebSocket."""

    def __init__(self, transport: WebSocketTransport, channel_type: int, connection_id: int = 0):
        self.transport = transport
        self.channel_type = channel_type
        self.connection_id = connection_id
        self._serial = 0
        self._ack_window = 0
        self._unacked = 0
        self._send_lock = Semaphore()

    def link(self, password: Optional[str] = None):
        """Run the link handshake and ticket exchange"""
        self.transport.open()

        # No capabilities: legacy ticket auth and full data headers
        link_mess = struct.pack('<IBBIII', self.connection_id, self.channel_type, 0, 0, 0, 18)
        header = SPICE_MAGIC + struct.pack('<III', SPICE_VERSION_MAJOR, SPICE_VERSION_MINOR, len(link_mess))
        self.transport.send(header + link_mess)

        magic, major, _minor, size = struct.unpack('<4sIII', self.transport.recv_exact(16))
        if magic != SPICE_MAGIC:
            raise SpiceError(f"Invalid link reply magic {magic!r}")
        if major != SPICE_VERSION_MAJOR:
            raise SpiceLinkError(4)
        reply = self.transport.recv_exact(size)
        error = struct.unpack('<I', reply[:4])[0]
        if error != SPICE_LINK_ERR_OK:
            raise SpiceLinkError(error)

        pub_key = reply[4:4 + SPICE_TICKET_PUBKEY_BYTES]
        self.transport.send(encrypt_ticket(pub_key, password))

        result = struct.unpack('<I', self.transport.recv_exact(4))[0]
        if result != SPICE_LINK_ERR_OK:
            raise SpiceLinkError(result)
        logger.debug(f"SPICE channel {self.channel_type} linked")

    def send(self, msg_type: int, payload: bytes = b''):
        with self._send_lock:
            self._serial += 1
            self.transport.send(DATA_HEADER.pack(self._serial, msg_type, len(payload), 0) + payload)

    def read_message(self) -> Tuple[int, bytes]:
        """Read one message, answering the protocol housekeeping ones"""
        _serial, msg_type, size, _sub_list = DATA_HEADER.unpack(self.transport.recv_exact(DATA_HEADER.size))
        payload = self.transport.recv_exact(size) if size else b''

        if msg_type == SPICE_MSG_SET_ACK:
            generation, window = struct.unpack('<II', payload[:8])
            self._ack_window = window
            self._unacked = 0
            self.send(SPICE_MSGC_ACK_SYNC, struct.pack('<I', generation))
        elif msg_type == SPICE_MSG_PING:
            ping_id, timestamp = struct.unpack('<IQ', payload[:12])
            self.send(SPICE_MSGC_PONG, struct.pack('<IQ', ping_id, timestamp))
        elif msg_type == SPICE_MSG_DISCONNECTING:
            raise TransportClosed("Server is disconnecting")

        if self._ack_window:
            self._unacked += 1
            if self._unacked >= self._ack_window:
                self._unacked = 0
                self.send(SPICE_MSGC_ACK)

        return msg_type, payload

    def close(self):
        self.transport.close()


class SpiceMainConn:
    """SPICE session: main channel plus an inputs channel for keys.

    Emits ``disconnect(clean, reason)``, ``securityfailure(reason)``,
    ``error(message)`` and ``agent(connected)``. There is no explicit success
    event; a display surface appears once the main channel is initialised.
    """

    def __init__(self, transport_factory: Callable[[str], WebSocketTransport] = WebSocketTransport):
        self._transport_factory = transport_factory
        self.url: Optional[str] = None
        self.password: Optional[str] = None
        self.session_id: Optional[int] = None
        self.agent_connected = False
        self.connected = False

        self.scale_viewport = False
        self.resize_session = False
        self.object_fit = "contain"

        self.frame_serial = 0
        self._surface: Optional[np.ndarray] = None
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._main: Optional[SpiceChannel] = None
        self._inputs: Optional[SpiceChannel] = None
        self._reader = None
        self._closing = False

    def on(self, event: str, callback: Callable):
        self._handlers[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in list(self._handlers.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in SPICE '{event}' handler: {e}", exc_info=True)

    @property
    def surface(self) -> Optional[np.ndarray]:
        return self._surface

    def connect(self, url: str, password: Optional[str] = None):
        self.url = url
        self.password = password
        self._closing = False
        self._main = SpiceChannel(self._transport_factory(url), SPICE_CHANNEL_MAIN)
        self._reader = eventlet.spawn(self._run)

    def _run(self):
        clean = False
        reason = None
        try:
            self._main.link(self.password)
            self.connected = True
            logger.info(f"SPICE main channel linked to {self.url}")
            while not self._closing:
                msg_type, payload = self._main.read_message()
                self._handle_main_message(msg_type, payload)

        except SpiceLinkError as e:
            reason = str(e)
            if e.permission_denied:
                clean = True
                logger.error(f"SPICE security failure: {e}")
                self._emit('securityfailure', reason)
            else:
                logger.error(f"SPICE link failed: {e}")
                self._emit('error', reason)
        except (TransportClosed, OSError, SpiceError, struct.error) as e:
            reason = str(e)
            clean = self._closing
            if not self._closing:
                logger.warning(f"SPICE connection to {self.url} lost: {e}")
                self._emit('error', reason)
        except Exception as e:
            reason = str(e)
            logger.error(f"Error in SPICE session {self.url}: {e}", exc_info=True)
            self._emit('error', reason)
        finally:
            self.connected = False
            self._close_channels()
            self._emit('disconnect', clean or self._closing, reason)

    def _handle_main_message(self, msg_type: int, payload: bytes):
        if msg_type == SPICE_MSG_MAIN_INIT:
            (self.session_id, _display_hint, _mouse_modes, _mouse_mode,
             agent_connected, _agent_tokens, _mm_time, _ram_hint) = struct.unpack('<8I', payload[:32])
            logger.info(f"SPICE session {self.session_id} initialised")
            self._main.send(SPICE_MSGC_MAIN_ATTACH_CHANNELS)
            width, height = DEFAULT_SURFACE_SIZE
            self._surface = np.zeros((height, width, 3), dtype=np.uint8)
            self.frame_serial += 1
            self._set_agent(bool(agent_connected))
            eventlet.spawn_n(self._open_inputs)
        elif msg_type == SPICE_MSG_MAIN_AGENT_CONNECTED:
            self._set_agent(True)
        elif msg_type == SPICE_MSG_MAIN_AGENT_DISCONNECTED:
            self._set_agent(False)

    def _set_agent(self, connected: bool):
        if connected != self.agent_connected:
            self.agent_connected = connected
            self._emit('agent', connected)

    def _open_inputs(self):
        channel = SpiceChannel(self._transport_factory(self.url), SPICE_CHANNEL_INPUTS, self.session_id or 0)
        try:
            channel.link(self.password)
        except Exception as e:
            logger.warning(f"SPICE inputs channel unavailable: {e}")
            channel.close()
            return
        if self._closing:
            channel.close()
            return
        self._inputs = channel
        try:
            while not self._closing:
                channel.read_message()
        except Exception as e:
            if not self._closing:
                logger.warning(f"SPICE inputs channel closed: {e}")
        finally:
            if self._inputs is channel:
                self._inputs = None
            channel.close()

    def send_key(self, keysym: int, code: Optional[str], down: bool):
        """Send a key by its KeyboardEvent code; the keysym is unused by SPICE"""
        scancode = SCANCODES.get(code or "")
        if scancode is None or self._inputs is None:
            logger.debug(f"Dropping SPICE key {code!r}")
            return
        msg_type = SPICE_MSGC_INPUTS_KEY_DOWN if down else SPICE_MSGC_INPUTS_KEY_UP
        try:
            self._inputs.send(msg_type, struct.pack('<I', scancode_message(scancode, down)))
        except Exception as e:
            logger.error(f"Failed to send SPICE key event: {e}")

    def _close_channels(self):
        for channel in (self._inputs, self._main):
            if channel is not None:
                channel.close()
        self._inputs = None

    def disconnect(self):
        self._closing = True
        self.connected = False
        self._close_channels()
        logger.info(f"Disconnected from SPICE server {self.url}")
