import logging
from typing import Optional, Sequence

from websockify.websocket import WebSocket, WebSocketWantReadError, WebSocketWantWriteError

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


class TransportClosed(Exception):
    """The WebSocket was closed while data was still expected"""


class WebSocketTransport:
    """Byte-stream view over a websockify WebSocket client connection.

    websockify's WebSocket is written for non-blocking sockets: a read that
    ends inside a frame raises ``WebSocketWantReadError`` and a short write
    raises ``WebSocketWantWriteError``. On our blocking sockets both only mean
    "call again".
    """

    def __init__(self, url: str, protocols: Sequence[str] = ('binary',)):
        self.url = url
        self.protocols = list(protocols)
        self.ws: Optional[WebSocket] = None
        self._buffer = b''

    def open(self):
        logger.info(f"Opening WebSocket connection to {self.url}")
        self.ws = WebSocket()
        while True:
            try:
                self.ws.connect(self.url, protocols=self.protocols)
                break
            except WebSocketWantReadError:
                # Handshake response split across reads
                continue
        self._queue_buffered_frames()

    def _queue_buffered_frames(self):
        # Frames that came in with the handshake response are left undecoded
        # by connect(); recv() would otherwise block on the socket for them
        ws = self.ws
        while ws._recv_buffer:
            frame = ws._decode_hybi(ws._recv_buffer)
            if frame is None:
                break
            ws._recv_buffer = ws._recv_buffer[frame['length']:]
            ws._recv_queue.append(frame)

    def _recv_chunk(self, ws: WebSocket) -> Optional[bytes]:
        while True:
            try:
                return ws.recv()
            except WebSocketWantReadError:
                # Partial frame or only control frames so far
                continue

    def recv_exact(self, size: int) -> bytes:
        """Receive exactly size bytes, spanning WebSocket messages as needed"""
        while len(self._buffer) < size:
            if self.ws is None:
                raise TransportClosed("WebSocket not open")
            chunk = self._recv_chunk(self.ws)
            if chunk is None:
                raise TransportClosed(f"WebSocket closed while waiting for {size} bytes")
            self._buffer += chunk
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def send(self, data: bytes):
        if self.ws is None:
            raise TransportClosed("WebSocket not open")
        while True:
            try:
                self.ws.send(data)
                return
            except WebSocketWantWriteError:
                # websockify keeps the unsent tail; it wants the same bytes again
                continue

    @property
    def closed_cleanly(self) -> bool:
        return self.ws is not None and getattr(self.ws, 'close_code', None) == NORMAL_CLOSURE

    def close(self):
        ws, self.ws = self.ws, None
        self._buffer = b''
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket {self.url}: {e}")
