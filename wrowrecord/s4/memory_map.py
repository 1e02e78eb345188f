import logging

from dataclasses import dataclass
from enum import Enum, auto
from types import MappingProxyType
from typing import Iterator, Mapping

logger = logging.getLogger(__name__)

'''
The METRIC_MAP details where the S4 keeps each metric that is recorded, how many bytes the datum
occupies, the numerical base of its encoding, its byte order, and the scale that converts the raw
register units into physical units.

Raw register values are stored as received. Scaling is applied only when a value is read out
(MetricSpec.to_physical), so a correction to this table does not require re-deriving any stored values.

Notes:
(*) The Water Rower S4 S5 USB Protocol Iss 1 04 specs suggest that double digit data is stored little
    endian for directly measured data and big endian for computed data. It appears to be exactly the
    opposite, so distance and speed are big endian and the 500m pace is little endian.
(*) The clock display registers (1E0-1E3) hold decimal digits, i.e. the hex text '59' means 59 seconds.
(*) stroke_average (142) and stroke_pull (143) are measured in number of 25ms periods.
(*) The time components are sent in separate packets so they are requested most significant first.
    The hours and minutes are least volatile and so are least likely to change over the short period
    between requesting and receiving all of the components.
'''


class MetricKind(Enum):
    DISTANCE = auto()
    SPEED = auto()
    STROKE_RATE = auto()
    STROKE_COUNT = auto()
    PACE_500M = auto()
    STROKE_TIME_AVG = auto()
    PULL_TIME_AVG = auto()
    HEART_RATE = auto()
    CLOCK_HOURS = auto()
    CLOCK_MINUTES = auto()
    CLOCK_SECONDS = auto()
    CLOCK_TENTHS = auto()


CLOCK_KINDS = (
    MetricKind.CLOCK_HOURS,
    MetricKind.CLOCK_MINUTES,
    MetricKind.CLOCK_SECONDS,
    MetricKind.CLOCK_TENTHS,
)


@dataclass(frozen=True)
class MetricSpec:
    kind: MetricKind
    width: int              # bytes
    scale: float
    unit: str
    base: int = 16
    endian: str = 'big'

    def to_physical(self, raw: int) -> float | None:
        """
        Convert a raw register value into physical units.
        Args:
            raw (int): The unsigned value decoded from the hex digits of the S4 reply.
        Returns:
            float: The value in self.unit.
            None: If a decimal register holds a digit above 9 (not a valid reading).
        """
        value = self._swap_bytes(raw) if self.endian == 'little' else raw
        if self.base == 10:
            digits = f"{value:0{self.width * 2}X}"
            if not digits.isdigit():
                return None
            value = int(digits, 10)
        return value * self.scale

    def _swap_bytes(self, raw: int) -> int:
        return int.from_bytes(raw.to_bytes(self.width, 'big'), 'little')


# Ordered for polling: the clock components first and most significant first.
METRIC_MAP: Mapping[str, MetricSpec] = MappingProxyType({
    '1E3': MetricSpec(MetricKind.CLOCK_HOURS, 1, 3600, 's', base=10),          # hours 0-9
    '1E2': MetricSpec(MetricKind.CLOCK_MINUTES, 1, 60, 's', base=10),          # minutes 0-59
    '1E1': MetricSpec(MetricKind.CLOCK_SECONDS, 1, 1, 's', base=10),           # seconds 0-59
    '1E0': MetricSpec(MetricKind.CLOCK_TENTHS, 1, 0.1, 's', base=10),          # tenths of seconds 0-9
    '055': MetricSpec(MetricKind.DISTANCE, 2, 1, 'm'),                         # distance in metres since reset
    '14A': MetricSpec(MetricKind.SPEED, 2, 0.01, 'm/s'),                       # instantaneous speed in cm/s (148 holds the total)
    '1A9': MetricSpec(MetricKind.STROKE_RATE, 1, 1, 'spm'),                    # strokes per min (integer only)
    '140': MetricSpec(MetricKind.STROKE_COUNT, 2, 1, 'strokes'),               # total strokes since reset
    '1A5': MetricSpec(MetricKind.PACE_500M, 2, 1, 's/500m', endian='little'),  # 500m pace, only when displayed on the monitor
    '142': MetricSpec(MetricKind.STROKE_TIME_AVG, 1, 0.025, 's'),              # average time for a whole stroke
    '143': MetricSpec(MetricKind.PULL_TIME_AVG, 1, 0.025, 's'),                # average time for a pull (acc to dec)
    '1A0': MetricSpec(MetricKind.HEART_RATE, 1, 1, 'bpm'),                     # heart rate from the S4 receiver
})

HEART_RATE_ADDRESS = '1A0'


class MetricMap:
    def __init__(self, table: Mapping[str, MetricSpec] = METRIC_MAP):
        self._table = MappingProxyType(dict(table))
        self._by_kind = {spec.kind: address for address, spec in self._table.items()}

    def lookup(self, address: str) -> MetricSpec | None:
        return self._table.get(address.upper())

    def address_of(self, kind: MetricKind) -> str:
        """
        Gets the S4 memory address for a metric kind.
        Raises:
            ValueError: If the kind has not been configured in the table.
        """
        address = self._by_kind.get(kind)
        if address is None:
            logger.error(f"Metric {kind.name} has not been configured in the metric map.")
            raise ValueError(f"Metric {kind.name} not found in metric map")
        return address

    def poll_addresses(self) -> Iterator[tuple[str, int]]:
        for address, spec in self._table.items():
            yield address, spec.width

    def __contains__(self, address: str) -> bool:
        return address.upper() in self._table

    def __len__(self) -> int:
        return len(self._table)
