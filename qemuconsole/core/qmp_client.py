import socket
import json
import logging
from typing import Dict, Optional, Any, List

logger = logging.getLogger(__name__)

class QMPError(Exception):
    """QMP command failed or the monitor is unreachable"""
    pass

class QMPClient:
    """QEMU Monitor Protocol client for console discovery queries."""

    def __init__(self, socket_path: str):
        self.socket_path = socket_path
        self.socket = None
        self.connected = False
        self._buffer = b''

    def connect(self, timeout: float = 5.0) -> bool:
        """Connect to QEMU QMP socket."""
        try:
            self.socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self.socket.settimeout(timeout)
            self.socket.connect(self.socket_path)

            # Read initial greeting
            greeting = self._read_response()
            if not greeting or 'QMP' not in greeting:
                logger.error(f"Invalid QMP greeting: {greeting}")
                self.disconnect()
                return False

            # Enable QMP capabilities
            self._send_command({"execute": "qmp_capabilities"})
            response = self._read_response()

            if response and 'return' in response:
                self.connected = True
                logger.info(f"Connected to QMP socket: {self.socket_path}")
                return True
            else:
                logger.error(f"Failed to enable QMP capabilities: {response}")
                self.disconnect()
                return False

        except OSError as e:
            logger.error(f"Failed to connect to QMP socket {self.socket_path}: {e}")
            self.disconnect()
            return False

    def disconnect(self):
        """Disconnect from QMP socket."""
        self.connected = False
        self._buffer = b''
        if self.socket:
            try:
                self.socket.close()
            except OSError:
                pass
            self.socket = None

    def _send_command(self, command: Dict[str, Any]) -> bool:
        """Send a command to QEMU."""
        if not self.socket:
            return False

        try:
            message = json.dumps(command) + '\n'
            self.socket.sendall(message.encode('utf-8'))
            return True
        except OSError as e:
            logger.error(f"Failed to send QMP command: {e}")
            return False

    def _read_response(self) -> Optional[Dict[str, Any]]:
        """Read one JSON message from QEMU."""
        if not self.socket:
            return None

        try:
            while b'\n' not in self._buffer:
                data = self.socket.recv(4096)
                if not data:
                    break
                self._buffer += data

            while self._buffer:
                line, _, self._buffer = self._buffer.partition(b'\n')
                if line.strip():
                    try:
                        return json.loads(line.decode('utf-8'))
                    except json.JSONDecodeError:
                        continue
        except OSError as e:
            logger.error(f"Failed to read QMP response: {e}")

        return None

    def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Execute a QMP command and return its 'return' value."""
        if not self.connected:
            if not self.connect():
                raise QMPError(f"QMP socket {self.socket_path} unavailable")

        request: Dict[str, Any] = {"execute": command}
        if arguments:
            request["arguments"] = arguments
        if not self._send_command(request):
            raise QMPError(f"Failed to send '{command}'")

        while True:
            response = self._read_response()
            if response is None:
                raise QMPError(f"No response to '{command}'")
            if 'event' in response:
                # Asynchronous events may arrive before the reply
                logger.debug(f"QMP event while waiting for '{command}': {response['event']}")
                continue
            if 'error' in response:
                error = response['error']
                raise QMPError(f"QMP command '{command}' failed: {error.get('desc', error)}")
            if 'return' in response:
                return response['return']
            logger.error(f"Unexpected QMP response for '{command}': {response}")
            raise QMPError(f"Unexpected response to '{command}'")

    def query_status(self) -> Dict[str, Any]:
        return self.execute("query-status")

    def query_vnc(self) -> Dict[str, Any]:
        return self.execute("query-vnc")

    def query_spice(self) -> Dict[str, Any]:
        return self.execute("query-spice")

    def query_chardev(self) -> List[Dict[str, Any]]:
        return self.execute("query-chardev")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
