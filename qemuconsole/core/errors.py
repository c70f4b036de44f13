from enum import Enum


class FailureKind(str, Enum):
    """Why a console attempt failed; decides whether it is retried."""
    LOAD = "load"
    CREDENTIAL = "credential"
    TRANSPORT = "transport"
    CONSTRUCTION = "construction"

    @property
    def retryable(self) -> bool:
        return self is FailureKind.TRANSPORT


class ConsoleError(Exception):
    """Base class for console errors"""
    kind = FailureKind.CONSTRUCTION


class LoadFailed(ConsoleError):
    """The protocol client library could not be loaded"""
    kind = FailureKind.LOAD


class CredentialFailure(ConsoleError):
    """Password rejected or security negotiation failed"""
    kind = FailureKind.CREDENTIAL


class TransportFailure(ConsoleError):
    """Socket dropped or closed uncleanly"""
    kind = FailureKind.TRANSPORT


class NoActiveSession(ConsoleError):
    """An action needs a live console session and there is none"""


class BackendError(Exception):
    """The VM backend could not satisfy a console request"""


class VMNotFound(BackendError):
    pass


class SerialConsoleError(BackendError):
    pass


class ProxyError(BackendError):
    """The WebSocket proxy for a VM could not be started"""
