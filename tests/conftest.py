from typing import Callable, List, Optional

import numpy as np
import pytest

from qemuconsole.core.errors import LoadFailed, SerialConsoleError
from qemuconsole.core.models import ConsoleEndpoint, ProtocolVariant, SerialConsoleInfo


class FakeTimer:
    def __init__(self, due: float, fn: Callable, args, interval: Optional[float] = None):
        self.due = due
        self.fn = fn
        self.args = args
        self.interval = interval
        self.fired = False
        self.cancelled = False

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    @property
    def active(self) -> bool:
        return not self.cancelled and not (self.fired and not self.periodic)

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock standing in for the eventlet scheduler."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay, fn, *args):
        timer = FakeTimer(self.now + delay, fn, args)
        self.timers.append(timer)
        return timer

    def call_every(self, interval, fn, *args):
        timer = FakeTimer(self.now + interval, fn, args, interval=interval)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if timer.active]

    def advance(self, seconds: float):
        target = self.now + seconds
        while True:
            due = [timer for timer in self.pending if timer.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = max(self.now, timer.due)
            timer.fired = True
            if timer.periodic:
                timer.due += timer.interval
            timer.fn(*timer.args)
        self.now = target


class FakeClient:
    """Protocol client with the capability interface, driven by the test."""

    def __init__(self):
        self.handlers = {}
        self.url = None
        self.password = None
        self.connect_calls = 0
        self.disconnected = False
        self.keys = []
        self.pointer = []
        self.desktop_sizes = []
        self.surface = None
        self.frame_serial = 0
        self.scale_viewport = None
        self.resize_session = None
        self.quality_level = None
        self.compression_level = None
        self.view_only = None

    def on(self, event, callback):
        self.handlers.setdefault(event, []).append(callback)

    def fire(self, event, *args):
        for callback in self.handlers.get(event, []):
            callback(*args)

    def connect(self, url, password=None):
        self.url = url
        self.password = password
        self.connect_calls += 1

    def disconnect(self):
        self.disconnected = True

    def send_key(self, keysym, code, down):
        self.keys.append((keysym, code, down))

    def send_pointer(self, x, y, button_mask):
        self.pointer.append((x, y, button_mask))

    def request_desktop_size(self, width, height):
        self.desktop_sizes.append((width, height))
        return True

    def show_frame(self, width=64, height=48):
        self.surface = np.full((height, width, 3), 128, dtype=np.uint8)
        self.frame_serial += 1


class FakeLoader:
    """Synchronous loader that hands out FakeClients and records them."""

    def __init__(self, fail: Optional[str] = None):
        self.fail = fail
        self.clients: List[FakeClient] = []
        self.loads = 0

    def load(self, variant):
        self.loads += 1
        if self.fail:
            raise LoadFailed(self.fail)

        def construct():
            client = FakeClient()
            self.clients.append(client)
            return client
        return construct

    @property
    def client(self) -> FakeClient:
        return self.clients[-1]


class FakeBackend:
    """Backend recording every call; serial output is fed through ``output``."""

    def __init__(self, endpoint: Optional[ConsoleEndpoint] = None):
        self.endpoint = endpoint or ConsoleEndpoint("127.0.0.1", 6080, None, ProtocolVariant.VNC)
        self.calls = []
        self.writes: List[bytes] = []
        self.output: List[bytes] = []
        self.serial_open = False
        self.open_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.endpoint_error: Optional[Exception] = None

    def get_console_endpoint(self, vm_id):
        self.calls.append(('get_console_endpoint', vm_id))
        if self.endpoint_error:
            raise self.endpoint_error
        return self.endpoint

    def stop_console_proxy(self, vm_id):
        self.calls.append(('stop_console_proxy', vm_id))

    def get_serial_console_info(self, vm_id):
        self.calls.append(('get_serial_console_info', vm_id))
        return SerialConsoleInfo(active=True, path="/dev/pts/7", vm_name="debian")

    def open_serial_console(self, vm_id):
        self.calls.append(('open_serial_console', vm_id))
        if self.open_error:
            raise self.open_error
        self.serial_open = True
        return self.get_serial_console_info(vm_id)

    def close_serial_console(self, vm_id):
        self.calls.append(('close_serial_console', vm_id))
        if not self.serial_open:
            raise SerialConsoleError("No active serial console for this VM")
        self.serial_open = False

    def read_serial_console(self, vm_id):
        if self.read_error:
            raise self.read_error
        return self.output.pop(0) if self.output else b''

    def write_serial_console(self, vm_id, data):
        self.writes.append(data)

    def is_serial_console_connected(self, vm_id):
        return self.serial_open

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def backend():
    return FakeBackend()
