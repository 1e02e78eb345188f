import logging

from collections import Counter
from enum import Enum, auto
from typing import Any

from wrowrecord.config import SamplingPolicy
from wrowrecord.rows.row_samples import WorkoutSample
from wrowrecord.s4.memory_map import MetricMap, MetricKind, CLOCK_KINDS
from wrowrecord.s4.s4_events import (
    ProtocolEvent,
    MemoryValue,
    StrokeEdge,
    StrokePhase,
    HeartRatePulse,
    MonitorReset,
)

logger = logging.getLogger(__name__)

'''
The SessionAggregator folds the ordered stream of S4 events into the best-known value of every
recorded metric and decides when a WorkoutSample is emitted.

It only trusts the S4 after a MonitorReset (the _WR_ handshake reply or the reset key): registers
read before then may still hold values from a previous workout. Each MonitorReset starts a new
session from a fully cleared state.

Register values are kept raw. They are scaled through the MetricMap only when a sample is taken.
'''

# Multiplier from the WaterRower docs: the ratio is the recovery time over the drive time,
# with the drive time weighted by 1.25.
STROKE_RATIO_MODIFIER = 1.25


class SessionState(Enum):
    IDLE = auto()
    ACTIVE = auto()


class SessionAggregator:
    def __init__(self, policy: SamplingPolicy | str = SamplingPolicy.ON_SECOND, metric_map: MetricMap | None = None,
                 wait_for_first_stroke: bool = False, finish_after_stalls: int = 0):
        self.policy = SamplingPolicy(policy)
        self.metric_map = metric_map or MetricMap()
        self.wait_for_first_stroke = wait_for_first_stroke
        self.finish_after_stalls = finish_after_stalls    # 0 never finishes
        self.state: SessionState = SessionState.IDLE
        self.session_index = 0
        self.ignored: Counter[str] = Counter()
        self._data_logger = logging.getLogger('s4data')
        self._zero_state()

    def _zero_state(self) -> None:
        self._raw: dict[MetricKind, int] = {}
        self.heart_rate: int | None = None
        self.stroke_count = 0
        self.elapsed = 0.0                  # seconds with 1 decimal place, never decreases within a session
        self._rowing = not self.wait_for_first_stroke
        self._last_clock_reading: float | None = None
        self._clock_stalls = 0
        self.finished = False
        self._last_boundary = 0             # last whole second emitted under the on_second policy
        self._last_emitted_strokes = 0
        self._emitted = 0
        self._dirty = False
        self._logger_cache: dict[str, Any] = {}

    @property
    def samples_emitted(self) -> int:
        return self._emitted

    def apply(self, event: ProtocolEvent) -> WorkoutSample | None:
        """
        Apply one event to the session state.
        Args:
            event (ProtocolEvent): The next event in the order it was decoded.
        Returns:
            WorkoutSample: If the event met the sampling condition of the configured policy.
            None: Otherwise.
        """
        if isinstance(event, MonitorReset):
            self._start_session(event)
            return None

        if self.state == SessionState.IDLE:
            self.ignored['idle'] += 1
            return None

        match event:
            case MemoryValue(address=address, value=value):
                return self._apply_memory_value(address, value)

            case StrokeEdge(phase=StrokePhase.DRIVE_START):
                if not self._rowing:
                    logger.info(f"First stroke of session {self.session_index} detected")
                self._rowing = True
                self.stroke_count += 1
                self._dirty = True
                self._log_s4data('stroke_count', self.stroke_count)
                if self.policy == SamplingPolicy.ON_STROKE:
                    return self._emit()

            case HeartRatePulse(bpm=bpm):
                # The S4 refreshes heart rate far faster than the sampling cadence, so never sample on it
                self._set_heart_rate(bpm)

            case _:
                pass    # drive ends, pings, pulley pulses, acknowledgements and model info carry no metrics
        return None

    def flush(self) -> WorkoutSample | None:
        '''
        Emit the current state if it has changed since the last sample. Never emits a sample that
        would repeat the elapsed second (on_second) or stroke count (on_stroke) of an earlier one.
        '''
        if self.state != SessionState.ACTIVE or not self._dirty or not self._rowing:
            return None
        if self._emitted and not self._cadence_advanced():
            return None
        if self.policy == SamplingPolicy.ON_SECOND:
            self._last_boundary = max(self._last_boundary, int(self.elapsed))
        return self._emit()

    def _start_session(self, event: MonitorReset) -> None:
        if self.state == SessionState.ACTIVE:
            logger.info(f"S4 reset ({event.source.name}) ends session {self.session_index} after {self._emitted} samples")
        self._zero_state()
        self.session_index += 1
        self.state = SessionState.ACTIVE
        logger.info(f"Session {self.session_index} started ({event.source.name})")

    def _apply_memory_value(self, address: str, value: int) -> WorkoutSample | None:
        spec = self.metric_map.lookup(address)
        if spec is None:
            # The S4 streams many registers that are not recorded
            self.ignored['unknown_address'] += 1
            return None

        if spec.kind == MetricKind.HEART_RATE:
            self._set_heart_rate(value)
            return None

        self._raw[spec.kind] = value
        self._dirty = True
        self._log_s4data(spec.kind.name.lower(), value)

        if spec.kind == MetricKind.STROKE_COUNT:
            # Strokes missed while disconnected are recovered from the S4 counter; it never lowers ours
            self.stroke_count = max(self.stroke_count, value)
        elif spec.kind in (MetricKind.CLOCK_SECONDS, MetricKind.CLOCK_TENTHS):
            # Components are polled most significant first, so the clock is complete on seconds/tenths
            reading = self._compute_elapsed_time()
            if spec.kind == MetricKind.CLOCK_TENTHS and reading is not None:
                self._check_clock_stall(reading)
            if self.policy == SamplingPolicy.ON_SECOND and int(self.elapsed) > self._last_boundary:
                self._last_boundary = int(self.elapsed)
                if self._rowing:
                    return self._emit()
        return None

    def _set_heart_rate(self, bpm: int) -> None:
        self.heart_rate = bpm
        self._dirty = True
        self._log_s4data('heart_rate', bpm)

    def _compute_elapsed_time(self) -> float | None:
        compiled_time = 0.0
        for kind in CLOCK_KINDS:
            component = self._physical(kind)
            if component is None and kind in self._raw:
                logger.debug(f"Ignoring clock reading with an invalid {kind.name} component")
                return None
            compiled_time += component or 0
        # The seconds can tick on between the components being fetched, which makes the clock
        # appear to jump backwards. Never let the elapsed time go backwards within a session.
        reading = round(compiled_time, 1)
        self.elapsed = max(self.elapsed, reading)
        return reading

    def _check_clock_stall(self, reading: float) -> None:
        '''
        The S4 stops its display clock when the workout ends, so a clock that has started and then
        reads the same for finish_after_stalls complete readings in a row finishes the session.
        '''
        if self._rowing and reading > 0 and reading == self._last_clock_reading:
            self._clock_stalls += 1
        else:
            self._clock_stalls = 0
        self._last_clock_reading = reading

        if self.finish_after_stalls and self._clock_stalls >= self.finish_after_stalls and not self.finished:
            self.finished = True
            logger.info(f"S4 clock stopped at {reading}s; session {self.session_index} finished")

    def _cadence_advanced(self) -> bool:
        if self.policy == SamplingPolicy.ON_SECOND:
            return int(self.elapsed) > self._last_boundary
        return self.stroke_count > self._last_emitted_strokes

    def _physical(self, kind: MetricKind) -> float | None:
        raw = self._raw.get(kind)
        if raw is None:
            return None
        spec = self.metric_map.lookup(self.metric_map.address_of(kind))
        return spec.to_physical(raw) if spec else None

    def snapshot(self) -> WorkoutSample:
        distance = self._physical(MetricKind.DISTANCE)
        speed = self._physical(MetricKind.SPEED)
        stroke_rate = self._physical(MetricKind.STROKE_RATE)
        pace = self._physical(MetricKind.PACE_500M)
        stroke_time = self._physical(MetricKind.STROKE_TIME_AVG)
        pull_time = self._physical(MetricKind.PULL_TIME_AVG)

        if not stroke_rate and stroke_time:
            stroke_rate = round(60 / stroke_time, 1)

        # The S4 stores the 500m pace only while it is the displayed intensity unit
        if not pace and speed:
            pace = 500 / speed

        stroke_ratio = None
        if stroke_time is not None and pull_time:
            stroke_ratio = round((stroke_time - pull_time) / (pull_time * STROKE_RATIO_MODIFIER), 2)

        return WorkoutSample(
            elapsed=int(self.elapsed),
            distance=int(distance) if distance is not None else None,
            speed=round(speed, 2) if speed is not None else None,
            stroke_rate=stroke_rate,
            heart_rate=self.heart_rate,
            stroke_count=self.stroke_count,
            pace_500m=round(pace) if pace is not None else None,
            stroke_ratio=stroke_ratio,
            session=self.session_index,
        )

    def _emit(self) -> WorkoutSample:
        sample = self.snapshot()
        self._emitted += 1
        self._dirty = False
        self._last_emitted_strokes = self.stroke_count
        return sample

    def _log_s4data(self, name: str, value: Any) -> None:
        '''
        Logs changes in metric values to the s4data logger defined in logging.conf.
        Primarily of use for debugging, e.g. by watching the values change at the terminal like:
        less +F logs/wrowrecord_s4_data.log
        '''
        if not self._data_logger.isEnabledFor(logging.DEBUG):
            return

        oldvalue = self._logger_cache.get(name)
        if oldvalue is None:
            self._data_logger.debug(f"{name} initialised at: {value!r}")
        elif oldvalue != value:
            self._data_logger.debug(f"{name} updated to: {value!r} from {oldvalue!r}")
        self._logger_cache[name] = value
