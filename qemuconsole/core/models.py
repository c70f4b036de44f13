from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dataclasses_json import dataclass_json


class ProtocolVariant(str, Enum):
    VNC = "vnc"
    SPICE = "spice"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ScaleMode(str, Enum):
    SCALE = "scale"
    FIT = "fit"
    STRETCH = "stretch"

    @property
    def label(self) -> str:
        return {
            ScaleMode.SCALE: "Scale to Window",
            ScaleMode.FIT: "1:1 Pixel Mapping",
            ScaleMode.STRETCH: "Stretch to Fill",
        }[self]


class ConsoleView(str, Enum):
    GRAPHICAL = "graphical"
    SERIAL = "serial"


@dataclass_json
@dataclass(frozen=True)
class ConsoleEndpoint:
    """Where one connection attempt goes. Built fresh for every (re)connect."""
    host: str
    port: int
    password: Optional[str] = None
    variant: ProtocolVariant = ProtocolVariant.VNC

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass
class RetryState:
    attempt_count: int = 0
    max_attempts: int = 5
    last_delay_ms: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def reset(self):
        self.attempt_count = 0
        self.last_delay_ms = 0


@dataclass_json
@dataclass
class SerialConsoleInfo:
    active: bool
    path: str = ""
    vm_name: str = ""


@dataclass
class SerialBuffer:
    """Serial output accumulated so far plus the line being typed locally."""
    output: str = ""
    pending: str = ""

    def append(self, text: str):
        self.output += text

    def clear(self):
        self.output = ""

    def reset_pending(self):
        self.pending = ""

    @property
    def display(self) -> str:
        # Local echo of the pending line after the remote output
        return self.output + self.pending
