import csv
from datetime import datetime

from wrowrecord.export.csv_writer import (
    CsvWorkoutSink,
    WORKOUT_DATA_FILE,
    WORKOUT_DATA_HEADER,
    META_DATA_FILE,
)
from wrowrecord.rows.row_samples import WorkoutSample, WorkoutSummary

STARTED = datetime(2024, 3, 9, 7, 5, 30)


def read_csv(path):
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.reader(f))


def test_workout_directory_named_after_start_time(tmp_path):
    sink = CsvWorkoutSink(tmp_path, started=STARTED)
    assert sink.path == tmp_path / "2024-03-09_07-05-30"


def test_rows_written_under_header(tmp_path):
    with CsvWorkoutSink(tmp_path, started=STARTED) as sink:
        assert sink.append_row(WorkoutSample(
            elapsed=61, distance=250, speed=3.456, stroke_rate=27.0, heart_rate=142, stroke_count=30,
            pace_500m=145, stroke_ratio=1.9, timestamp=61.4,
        ))
        assert sink.append_row(WorkoutSample(elapsed=62, stroke_count=30, timestamp=62.0))
    rows = read_csv(sink.path / WORKOUT_DATA_FILE)
    assert rows[0] == WORKOUT_DATA_HEADER
    assert rows[1] == ["61", "250", "145", "30", "27.00", "1.90", "142", "3.46", "61.40", "0"]
    # Metrics not yet reported by the S4 are left empty
    assert rows[2] == ["62", "", "", "30", "", "", "", "", "62.00", "0"]
    assert sink.rows == 2


def test_append_row_refused_when_not_open(tmp_path):
    sink = CsvWorkoutSink(tmp_path, started=STARTED)
    assert not sink.append_row(WorkoutSample(elapsed=1))
    with sink:
        pass
    assert not sink.append_row(WorkoutSample(elapsed=1))


def test_summary_written_as_key_value_rows(tmp_path):
    summary = WorkoutSummary(date_time_start=STARTED, date_time_end=datetime(2024, 3, 9, 7, 35, 30),
                             model='4', firmware='02.10')
    summary.add(WorkoutSample(elapsed=1, distance=4, stroke_count=1, heart_rate=120, pace_500m=150))
    summary.add(WorkoutSample(elapsed=2, distance=9, stroke_count=2, heart_rate=130, pace_500m=140))

    sink = CsvWorkoutSink(tmp_path, started=STARTED)
    meta_path = sink.write_summary(summary)
    assert meta_path == sink.path / META_DATA_FILE

    meta = dict(read_csv(meta_path))
    assert meta["Date and Time of Start"] == "2024-03-09 07:05:30"
    assert meta["WaterRower Model"] == "4"
    assert meta["Firmware Version"] == "02.10"
    assert meta["Number of Data Points"] == "2"
    assert meta["Number of Sessions"] == "1"
    assert meta["Total Distance in Meters"] == "9"
    assert meta["Total Stroke Count"] == "2"
    assert meta["Heart Rate (min)"] == "120"
    assert meta["Heart Rate (avg)"] == "125.00"
    assert meta["Heart Rate (max)"] == "130"
    assert meta["Stroke Ratio (avg)"] == ""
