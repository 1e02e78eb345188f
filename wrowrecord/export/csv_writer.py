import csv
import logging
import threading

from datetime import datetime
from pathlib import Path
from typing import TextIO

from wrowrecord.rows.row_samples import WorkoutSample, WorkoutSummary, MetricStats

logger = logging.getLogger(__name__)

DEFAULT_WORKOUT_DIR = "./workouts"
WORKOUT_DATA_FILE = "workout_data.csv"
META_DATA_FILE = "meta_data.csv"
DIR_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"
META_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

WORKOUT_DATA_HEADER = [
    "Time in Seconds",
    "Distance in Meters",
    "Seconds per 500 Meters",
    "Stroke Count",
    "Strokes per Minute",
    "Stroke Ratio",
    "Heart Rate",
    "Speed in Meters per Second",
    "Session Time",
    "Session",
]


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def sample_to_row(sample: WorkoutSample) -> list[str]:
    return [
        _cell(sample.elapsed),
        _cell(sample.distance),
        _cell(sample.pace_500m),
        _cell(sample.stroke_count),
        _cell(sample.stroke_rate),
        _cell(sample.stroke_ratio),
        _cell(sample.heart_rate),
        _cell(sample.speed),
        _cell(sample.timestamp),
        _cell(sample.session),
    ]


def summary_to_rows(summary: WorkoutSummary) -> list[list[str]]:
    def stats_rows(label: str, stats: MetricStats) -> list[list[str]]:
        return [
            [f"{label} (min)", _cell(stats.minimum)],
            [f"{label} (avg)", _cell(stats.average)],
            [f"{label} (max)", _cell(stats.maximum)],
        ]

    def when(value: datetime | None) -> str:
        return value.strftime(META_TIME_FORMAT) if value else ""

    rows = [
        ["Date and Time of Start", when(summary.date_time_start)],
        ["Date and Time of End", when(summary.date_time_end)],
        ["WaterRower Model", _cell(summary.model)],
        ["Firmware Version", _cell(summary.firmware)],
        ["Number of Data Points", _cell(summary.datapoints)],
        ["Number of Sessions", _cell(len(summary.sessions))],
        ["Total Time in Seconds", _cell(summary.total_time_secs)],
        ["Total Distance in Meters", _cell(summary.total_distance_m)],
        ["Total Stroke Count", _cell(summary.total_stroke_count)],
    ]
    rows += stats_rows("Seconds per 500 Meters", summary.pace_500m)
    rows += stats_rows("Strokes per Minute", summary.stroke_rate)
    rows += stats_rows("Stroke Ratio", summary.stroke_ratio)
    rows += stats_rows("Heart Rate", summary.heart_rate)
    return rows


class CsvWorkoutSink:
    '''
    Writes one workout into its own directory, named after the time recording started:
    workout_data.csv gets a row per sample as it arrives and meta_data.csv gets the summary at the end.
    '''

    def __init__(self, workout_dir: str | Path = DEFAULT_WORKOUT_DIR, started: datetime | None = None):
        started = started or datetime.now()
        self.path = Path(workout_dir) / started.strftime(DIR_TIME_FORMAT)
        self._file: TextIO | None = None
        self._writer = None
        self._lock = threading.Lock()
        self.rows = 0

    def open(self) -> "CsvWorkoutSink":
        self.path.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path / WORKOUT_DATA_FILE, "w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file)
        self._writer.writerow(WORKOUT_DATA_HEADER)
        self._file.flush()
        logger.info(f"Writing workout data to {self.path / WORKOUT_DATA_FILE}")
        return self

    def append_row(self, sample: WorkoutSample) -> bool:
        with self._lock:
            if self._writer is None or self._file is None:
                logger.warning("Workout data file is not open; row not written")
                return False
            try:
                self._writer.writerow(sample_to_row(sample))
                self._file.flush()
            except OSError as e:
                logger.error(f"Failed to write workout row: {e}")
                return False
            self.rows += 1
            return True

    def write_summary(self, summary: WorkoutSummary) -> Path:
        meta_path = self.path / META_DATA_FILE
        self.path.mkdir(parents=True, exist_ok=True)
        with open(meta_path, "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerows(summary_to_rows(summary))
        logger.info(f"Workout meta data written to {meta_path}")
        return meta_path

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
            self._file = None
            self._writer = None

    def __enter__(self) -> "CsvWorkoutSink":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
