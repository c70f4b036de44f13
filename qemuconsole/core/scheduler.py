import logging
from typing import Callable

import eventlet
from eventlet import greenthread

logger = logging.getLogger(__name__)


class Timer:
    """Handle for a scheduled green thread. Cancelling is idempotent."""

    def __init__(self, periodic: bool = False):
        self.periodic = periodic
        self.fired = False
        self.cancelled = False
        self._gt = None

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        gt = self._gt
        self._gt = None
        if gt is None or gt is greenthread.getcurrent():
            # A callback cancelling its own timer just stops it from rescheduling
            return
        if self.fired and not self.periodic:
            return
        gt.kill()

    @property
    def active(self) -> bool:
        return not self.cancelled and not (self.fired and not self.periodic)


class EventletScheduler:
    """Timers for the console components, run as eventlet green threads."""

    def call_later(self, delay: float, fn: Callable, *args) -> Timer:
        timer = Timer()

        def _run():
            if timer.cancelled:
                return
            timer.fired = True
            fn(*args)

        timer._gt = eventlet.spawn_after(delay, _run)
        return timer

    def call_every(self, interval: float, fn: Callable, *args) -> Timer:
        timer = Timer(periodic=True)

        def _loop():
            while not timer.cancelled:
                eventlet.sleep(interval)
                if timer.cancelled:
                    break
                timer.fired = True
                try:
                    fn(*args)
                except Exception as e:
                    logger.error(f"Periodic task {getattr(fn, '__name__', fn)} failed: {e}", exc_info=True)

        timer._gt = eventlet.spawn(_loop)
        return timer


default_scheduler = EventletScheduler()
