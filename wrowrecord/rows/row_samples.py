from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class WorkoutSample:
    elapsed: int                        # whole seconds on the S4 clock at emission
    distance: int | None = None         # metres
    speed: float | None = None          # metres per second
    stroke_rate: float | None = None    # strokes per minute
    heart_rate: int | None = None       # bpm
    stroke_count: int | None = None
    pace_500m: int | None = None        # seconds per 500 metres
    stroke_ratio: float | None = None   # recovery time over drive time
    session: int = 0                    # index of the session (reset) the values belong to
    timestamp: float | None = None      # session-relative seconds, stamped by the recorder


@dataclass
class MetricStats:
    '''Running min/avg/max of the non-zero values of one column.'''
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def add(self, value: float | None) -> None:
        if not value or value <= 0:
            return
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def average(self) -> float | None:
        return self.total / self.count if self.count else None


@dataclass
class SessionTotals:
    '''Totals of one session, i.e. the rows between two S4 resets.'''
    session: int
    time_secs: int = 0
    distance_m: int = 0
    stroke_count: int = 0


@dataclass
class WorkoutSummary:
    date_time_start: datetime | None = None
    date_time_end: datetime | None = None
    model: str | None = None
    firmware: str | None = None
    datapoints: int = 0
    sessions: list[SessionTotals] = field(default_factory=list)
    pace_500m: MetricStats = field(default_factory=MetricStats)
    stroke_rate: MetricStats = field(default_factory=MetricStats)
    stroke_ratio: MetricStats = field(default_factory=MetricStats)
    heart_rate: MetricStats = field(default_factory=MetricStats)

    def add(self, sample: WorkoutSample) -> None:
        '''
        The S4 counters restart at zero after a reset, so the totals are kept per session and summed.
        '''
        self.datapoints += 1
        if not self.sessions or self.sessions[-1].session != sample.session:
            self.sessions.append(SessionTotals(sample.session))
        totals = self.sessions[-1]
        totals.time_secs = max(totals.time_secs, sample.elapsed)
        if sample.distance is not None:
            totals.distance_m = sample.distance
        if sample.stroke_count is not None:
            totals.stroke_count = sample.stroke_count
        self.pace_500m.add(sample.pace_500m)
        self.stroke_rate.add(sample.stroke_rate)
        self.stroke_ratio.add(sample.stroke_ratio)
        self.heart_rate.add(sample.heart_rate)

    @property
    def total_time_secs(self) -> int:
        return sum(s.time_secs for s in self.sessions)

    @property
    def total_distance_m(self) -> int:
        return sum(s.distance_m for s in self.sessions)

    @property
    def total_stroke_count(self) -> int:
        return sum(s.stroke_count for s in self.sessions)

    def duration_hms(self) -> str:
        secs = self.total_time_secs
        return f"{secs // 3600:02}:{secs % 3600 // 60:02}:{secs % 60:02}"
