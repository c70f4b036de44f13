"""Reconnecting state machine for one live console session.

``ConsoleConnection`` owns the ConnectionState and RetryState of a session.
It does not know any protocol: it asks an *opener* to build a session for
each attempt and the opener reports back through the ``Attempt`` it was
given. Events reported through an attempt that is no longer current (torn
down, superseded by a reconnect, or after disposal) are ignored.

Listeners: ``state(state)``, ``connected()``, ``disconnected()``,
``error(message)`` and ``reconnecting(attempt, max_attempts, delay_ms)``.
``disconnected`` and ``error`` only fire when the connection gives up;
failures that will be retried fire ``reconnecting`` instead.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .errors import ConsoleError, FailureKind
from .models import ConnectionState, RetryState
from .scheduler import Timer, default_scheduler

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 16000


def backoff_delay_ms(attempt: int, base_ms: int = BASE_DELAY_MS, cap_ms: int = MAX_DELAY_MS) -> int:
    """Exponential backoff: 1s, 2s, 4s, 8s, 16s, capped."""
    return min(base_ms * (2 ** attempt), cap_ms)


class Attempt:
    """One connect attempt; the opener reports outcomes through it."""

    def __init__(self, connection: 'ConsoleConnection', number: int):
        self._connection = connection
        self.number = number
        self.finished = False

    @property
    def current(self) -> bool:
        return self._connection._attempt is self and not self._connection.disposed

    def connected(self, source: str = "protocol"):
        self._connection._on_connected(self, source)

    def closed(self, clean: bool = True, reason: Optional[str] = None):
        self._connection._on_closed(self, clean, reason)

    def fail(self, error: ConsoleError):
        """Report a failure carried as a console error; its kind decides the retry"""
        self._connection._on_failed(self, str(error), error.kind)


class ConsoleConnection:
    def __init__(self, opener: Callable[[Attempt], Any], scheduler=None,
                 max_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 base_delay_ms: int = BASE_DELAY_MS,
                 max_delay_ms: int = MAX_DELAY_MS,
                 name: str = "console"):
        self._opener = opener
        self._scheduler = scheduler or default_scheduler
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.name = name

        self.state = ConnectionState.CONNECTING
        self.retry = RetryState(max_attempts=max_attempts)
        self.error_message: Optional[str] = None
        self.disposed = False

        self._session: Any = None
        self._attempt: Optional[Attempt] = None
        self._retry_timer: Optional[Timer] = None
        self._started = False
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    def on(self, event: str, callback: Callable):
        self._listeners[event].append(callback)

    @property
    def session(self) -> Any:
        return self._session

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and not self.disposed

    def start(self):
        """Begin the first attempt. Later calls are ignored."""
        if self._started or self.disposed:
            return
        self._started = True
        self._begin_attempt()

    def reconnect(self):
        """Manual reconnect: forget earlier failures and try again right away."""
        if self.disposed:
            logger.warning(f"Ignoring reconnect on disposed {self.name} connection")
            return
        logger.info(f"Manual reconnect requested for {self.name}")
        self._started = True
        self._cancel_retry_timer()
        self.retry.reset()
        self._begin_attempt()

    def dispose(self):
        """Cancel pending retries and release the session. Safe to call twice."""
        if self.disposed:
            return
        self.disposed = True
        self._cancel_retry_timer()
        self._teardown_session()
        self._listeners.clear()
        logger.info(f"Disposed {self.name} connection")

    def _begin_attempt(self):
        # Teardown of the previous attempt completes before the new one starts
        self._teardown_session()
        attempt = Attempt(self, self.retry.attempt_count + 1)
        self._attempt = attempt
        self.error_message = None
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting {self.name} (attempt {attempt.number})")

        try:
            session = self._opener(attempt)
        except ConsoleError as e:
            self._on_failed(attempt, str(e), e.kind)
            return
        except Exception as e:
            logger.error(f"Failed to create {self.name} session: {e}", exc_info=True)
            self._on_failed(attempt, str(e) or "Connection failed", FailureKind.CONSTRUCTION)
            return

        if attempt.current:
            self._session = session
        else:
            self._close_session(session)

    def _on_connected(self, attempt: Attempt, source: str):
        if not attempt.current or attempt.finished:
            return
        if self.state == ConnectionState.CONNECTED:
            # First success signal wins
            return
        self.retry.reset()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"{self.name} connected ({source})")
        self._emit('connected')

    def _on_closed(self, attempt: Attempt, clean: bool, reason: Optional[str]):
        if not attempt.current or attempt.finished:
            return
        if clean:
            attempt.finished = True
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"{self.name} disconnected cleanly")
            self._emit('disconnected')
        else:
            self._fail(attempt, reason or "Connection closed unexpectedly", FailureKind.TRANSPORT,
                       ConnectionState.DISCONNECTED)

    def _on_failed(self, attempt: Attempt, message: str, kind: FailureKind):
        if not attempt.current or attempt.finished:
            return
        self._fail(attempt, message, kind, ConnectionState.ERROR)

    def _fail(self, attempt: Attempt, message: str, kind: FailureKind, state: ConnectionState):
        attempt.finished = True
        self.error_message = message
        self._set_state(state)

        if kind.retryable and not self.retry.exhausted:
            delay = backoff_delay_ms(self.retry.attempt_count, self.base_delay_ms, self.max_delay_ms)
            self.retry.last_delay_ms = delay
            self.retry.attempt_count += 1
            logger.warning(f"{self.name} failed ({message}); reconnect {self.retry.attempt_count}/"
                           f"{self.retry.max_attempts} in {delay}ms")
            self._retry_timer = self._scheduler.call_later(delay / 1000.0, self._retry_fired)
            self._emit('reconnecting', self.retry.attempt_count, self.retry.max_attempts, delay)
            return

        if kind.retryable:
            logger.error(f"{self.name} giving up after {self.retry.attempt_count} reconnect attempts")
        else:
            logger.error(f"{self.name} failed ({kind.value}): {message}")
        if state == ConnectionState.ERROR:
            self._emit('error', message)
        else:
            self._emit('disconnected')

    def _retry_fired(self):
        self._retry_timer = None
        if self.disposed:
            return
        self._begin_attempt()

    def _cancel_retry_timer(self):
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _teardown_session(self):
        self._attempt = None
        session, self._session = self._session, None
        if session is not None:
            self._close_session(session)

    def _close_session(self, session: Any):
        try:
            session.close()
        except Exception as e:
            logger.warning(f"Error closing {self.name} session: {e}")

    def _set_state(self, state: ConnectionState):
        if state == self.state:
            return
        logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self._emit('state', state)

    def _emit(self, event: str, *args):
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in {self.name} '{event}' listener: {e}", exc_info=True)
