"""Serial console driven by polling the backend.

The backend has no streaming primitive: output is pulled on a fixed
interval while the console is open, and a slower liveness poll refreshes the
connected indicator. Nothing reconnects automatically; a closed console
stays closed until ``open()`` is called again.
"""
import codecs
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Union

from .errors import NoActiveSession
from .models import SerialBuffer, SerialConsoleInfo
from .scheduler import Timer, default_scheduler

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
LIVENESS_INTERVAL = 2.0

ETX = '\x03'  # Ctrl+C
EOT = '\x04'  # Ctrl+D
FORM_FEED = '\x0c'  # Ctrl+L
ESC = '\x1b'
ERASE = '\b \b'


class SerialConsole:
    """Serial console of one VM.

    Listeners: ``output(text)``, ``cleared()``, ``status(connected)`` and
    ``notice(level, message)``.
    """

    def __init__(self, vm_id: str, backend, scheduler=None,
                 poll_interval: float = POLL_INTERVAL,
                 liveness_interval: float = LIVENESS_INTERVAL):
        self.vm_id = vm_id
        self.backend = backend
        self._scheduler = scheduler or default_scheduler
        self.poll_interval = poll_interval
        self.liveness_interval = liveness_interval

        self.buffer = SerialBuffer()
        # Keeps multi-byte characters split across reads intact
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self.info: Optional[SerialConsoleInfo] = None
        self.connected = False
        self.indicator = False
        self.disposed = False

        self._poll_timer: Optional[Timer] = None
        self._liveness_timer: Optional[Timer] = None
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    def on(self, event: str, callback: Callable):
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in serial '{event}' listener: {e}", exc_info=True)

    @property
    def polling(self) -> bool:
        return self._poll_timer is not None

    def start(self) -> Optional[SerialConsoleInfo]:
        """Fetch serial info and begin the liveness poll"""
        self.disposed = False
        info = self.refresh_info()
        if self._liveness_timer is None:
            self._liveness_timer = self._scheduler.call_every(self.liveness_interval, self._check_liveness)
        self._check_liveness()
        if self.indicator and not self.connected:
            # Opened earlier by another window; resume pulling output
            self._set_connected(True)
            self._start_polling()
        return info

    def refresh_info(self) -> Optional[SerialConsoleInfo]:
        try:
            self.info = self.backend.get_serial_console_info(self.vm_id)
        except Exception as e:
            logger.warning(f"Could not get serial console info for VM {self.vm_id}: {e}")
            self.info = None
        return self.info

    def open(self) -> bool:
        """Open the serial console and start pulling its output"""
        if self.disposed:
            return False
        try:
            self.backend.open_serial_console(self.vm_id)
        except Exception as e:
            logger.error(f"Failed to open serial console for VM {self.vm_id}: {e}")
            self._set_connected(False)
            self._emit('notice', 'error', f"Failed to connect: {e}")
            return False

        logger.info(f"Serial console connected for VM {self.vm_id}")
        self._decoder.reset()
        self._set_connected(True)
        self._start_polling()
        self._emit('notice', 'success', "Serial console connected")
        return True

    def close(self):
        """Stop polling and close the backend console. Idempotent."""
        self._stop_polling()
        if not self.connected:
            return
        self._set_connected(False)
        try:
            self.backend.close_serial_console(self.vm_id)
        except Exception as e:
            logger.warning(f"Failed to close serial console for VM {self.vm_id}: {e}")
            self._emit('notice', 'error', f"Failed to disconnect: {e}")
            return
        logger.info(f"Serial console disconnected for VM {self.vm_id}")
        self._emit('notice', 'success', "Serial console disconnected")

    def write(self, data: Union[str, bytes]):
        """Send bytes to the VM right away"""
        if not self.connected:
            raise NoActiveSession("Serial console not connected")
        if isinstance(data, str):
            data = data.encode('utf-8')
        try:
            self.backend.write_serial_console(self.vm_id, data)
        except Exception as e:
            logger.error(f"Failed to write to serial console for VM {self.vm_id}: {e}")
            self._emit('notice', 'error', f"Failed to write: {e}")

    def handle_key(self, key: str, ctrl: bool = False) -> bool:
        """Translate one key press; returns False when the key is not handled."""
        if not self.connected:
            return False

        if key == 'Enter':
            line, self.buffer.pending = self.buffer.pending, ''
            self.write(line + '\r')
        elif key == 'Backspace':
            if not self.buffer.pending:
                return False
            self.buffer.pending = self.buffer.pending[:-1]
            self.write(ERASE)
        elif key == 'Tab':
            self.write('\t')
        elif key == 'Escape':
            self.write(ESC)
        elif ctrl and key.lower() == 'c':
            self.write(ETX)
            self.buffer.reset_pending()
        elif ctrl and key.lower() == 'd':
            self.write(EOT)
        elif ctrl and key.lower() == 'l':
            self.write(FORM_FEED)
            self.clear()
        elif len(key) == 1 and not ctrl:
            # Echoed locally, sent with the line on Enter
            self.buffer.pending += key
        else:
            return False
        return True

    def type_text(self, text: str):
        """Feed typed text through the line editor, one character at a time"""
        for char in text:
            if char in ('\r', '\n'):
                self.handle_key('Enter')
            else:
                self.handle_key(char)

    def clear(self):
        """Clear the local output buffer only"""
        self.buffer.clear()
        self._emit('cleared')

    def _start_polling(self):
        self._stop_polling()
        self._poll_timer = self._scheduler.call_every(self.poll_interval, self._poll_output)

    def _stop_polling(self):
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _poll_output(self):
        try:
            data = self.backend.read_serial_console(self.vm_id)
        except Exception as e:
            # Nothing new this tick
            logger.debug(f"Serial read failed for VM {self.vm_id}: {e}")
            return
        if not data:
            return
        if isinstance(data, bytes):
            data = self._decoder.decode(data)
            if not data:
                return
        self.buffer.append(data)
        self._emit('output', data)

    def _check_liveness(self):
        try:
            alive = bool(self.backend.is_serial_console_connected(self.vm_id))
        except Exception as e:
            logger.debug(f"Serial liveness check failed for VM {self.vm_id}: {e}")
            return
        if alive != self.indicator:
            self.indicator = alive
            self._emit('status', self.connected, alive)

    def _set_connected(self, connected: bool):
        changed = connected != self.connected
        self.connected = connected
        self.indicator = connected
        if changed:
            self._emit('status', self.connected, self.indicator)

    def dispose(self):
        """Cancel both polls; the backend console is left as it is"""
        if self.disposed:
            return
        self.disposed = True
        self._stop_polling()
        if self._liveness_timer is not None:
            self._liveness_timer.cancel()
            self._liveness_timer = None
