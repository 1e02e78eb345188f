from dataclasses import dataclass
from enum import Enum, auto

'''
Typed events decoded from the lines the S4 sends over its USB serial connection.

The S4 interleaves unsolicited packets (stroke start/end, pulley pulses, pings) with
replies to the register reads that the poller writes. Every line, pushed or polled,
becomes one of the ProtocolEvent variants below so that a single reducer can consume
the whole stream in arrival order.
'''

WIDTH_LIMITS = {1: 0xFF, 2: 0xFFFF, 3: 0xFFFFFF}


class StrokePhase(Enum):
    DRIVE_START = auto()    # SS: pulley acceleration detected
    DRIVE_END = auto()      # SE: pulley deceleration detected


class ResetSource(Enum):
    HANDSHAKE = auto()      # _WR_ hardware type reply to the USB request
    KEYPAD = auto()         # AKR: reset key held on the monitor


@dataclass(frozen=True)
class ProtocolEvent:
    pass


@dataclass(frozen=True)
class MemoryValue(ProtocolEvent):
    address: str    # three hex digits, upper case, e.g. '055'
    width: int      # bytes: 1 (IDS), 2 (IDD) or 3 (IDT)
    value: int

    def __post_init__(self):
        limit = WIDTH_LIMITS.get(self.width)
        if limit is None:
            raise ValueError(f"Unsupported register width {self.width} for address {self.address}")
        if not 0 <= self.value <= limit:
            raise ValueError(f"Value {self.value} does not fit a {self.width} byte register")


@dataclass(frozen=True)
class StrokeEdge(ProtocolEvent):
    phase: StrokePhase


@dataclass(frozen=True)
class HeartRatePulse(ProtocolEvent):
    bpm: int


@dataclass(frozen=True)
class MonitorReset(ProtocolEvent):
    source: ResetSource = ResetSource.HANDSHAKE


@dataclass(frozen=True)
class PulleyPulse(ProtocolEvent):
    count: int      # pulses in the last 25ms; the pins on the pulley trigger these


@dataclass(frozen=True)
class Ping(ProtocolEvent):
    pass


@dataclass(frozen=True)
class Acknowledge(ProtocolEvent):
    pass


@dataclass(frozen=True)
class ErrorReply(ProtocolEvent):
    pass


@dataclass(frozen=True)
class ModelInfo(ProtocolEvent):
    model: str      # 4 or 5
    firmware: str   # e.g. '02.10'
