"""Process-wide loader for console protocol client implementations.

Each protocol variant maps to a fetch function that returns a client
constructor. The first ``load()`` for a variant runs the fetch in a green
thread bounded by a timeout; callers arriving while it is in flight wait on
the same result, and later callers get the cached constructor (or the cached
failure) without fetching again.
"""
import importlib
import logging
from functools import partial
from typing import Any, Callable, Dict, Optional

import eventlet
from eventlet import event

from .errors import LoadFailed
from .models import ProtocolVariant

logger = logging.getLogger(__name__)

ClientConstructor = Callable[..., Any]

# Capability interface every protocol client must provide
REQUIRED_CAPABILITIES = ('connect', 'disconnect', 'send_key', 'on')

DEFAULT_CLIENT_PATHS = {
    ProtocolVariant.VNC: 'qemuconsole.core.vnc_client:VNCClient',
    ProtocolVariant.SPICE: 'qemuconsole.core.spice_client:SpiceMainConn',
}

DEFAULT_LOAD_TIMEOUT = 10.0


def import_client(path: str) -> ClientConstructor:
    """Resolve a ``module:attribute`` path to a client constructor."""
    module_name, _, attribute = path.partition(':')
    if not attribute:
        raise LoadFailed(f"Invalid client path '{path}'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise LoadFailed(f"{attribute} not found after loading {module_name}")


def check_conforming(constructor: Any, variant: ProtocolVariant) -> ClientConstructor:
    if not callable(constructor):
        raise LoadFailed(f"{variant.value} client is not callable")
    missing = [name for name in REQUIRED_CAPABILITIES if not hasattr(constructor, name)]
    if missing:
        raise LoadFailed(f"{variant.value} client is missing {', '.join(missing)}")
    return constructor


class ProtocolLoader:
    def __init__(self, fetchers: Optional[Dict[Any, Callable[[], Any]]] = None,
                 timeout: float = DEFAULT_LOAD_TIMEOUT):
        if fetchers is None:
            fetchers = {variant: partial(import_client, path) for variant, path in DEFAULT_CLIENT_PATHS.items()}
        self._fetchers = {ProtocolVariant(variant): fetch for variant, fetch in fetchers.items()}
        self.timeout = timeout
        self._loaded: Dict[ProtocolVariant, ClientConstructor] = {}
        self._failures: Dict[ProtocolVariant, LoadFailed] = {}
        self._pending: Dict[ProtocolVariant, event.Event] = {}

    def is_loaded(self, variant) -> bool:
        return ProtocolVariant(variant) in self._loaded

    def load(self, variant) -> ClientConstructor:
        """Return the client constructor for ``variant``, fetching it at most once."""
        variant = ProtocolVariant(variant)

        # Already loaded
        if variant in self._loaded:
            return self._loaded[variant]

        # Failed earlier in this process
        if variant in self._failures:
            raise self._failures[variant]

        # Already loading
        pending = self._pending.get(variant)
        if pending is None:
            if variant not in self._fetchers:
                raise LoadFailed(f"No client registered for {variant.value}")
            pending = event.Event()
            self._pending[variant] = pending
            eventlet.spawn_n(self._fetch, variant, pending)

        return pending.wait()

    def _fetch(self, variant: ProtocolVariant, pending: event.Event):
        logger.info(f"Loading {variant.value} protocol client")
        try:
            with eventlet.Timeout(self.timeout, LoadFailed(f"{variant.value} client load timeout")):
                constructor = self._fetchers[variant]()
            constructor = check_conforming(constructor, variant)
        except LoadFailed as e:
            self._fail(variant, pending, e)
        except Exception as e:
            self._fail(variant, pending, LoadFailed(f"Failed to load {variant.value} client: {e}"))
        else:
            self._loaded[variant] = constructor
            self._pending.pop(variant, None)
            logger.info(f"{variant.value} protocol client loaded successfully")
            pending.send(constructor)

    def _fail(self, variant: ProtocolVariant, pending: event.Event, error: LoadFailed):
        logger.error(f"Protocol client load failed: {error}")
        self._failures[variant] = error
        self._pending.pop(variant, None)
        pending.send_exception(error)


# Shared by every console window in the process
protocol_loader = ProtocolLoader()
