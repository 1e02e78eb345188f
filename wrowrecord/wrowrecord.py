import logging
import logging.config
import pathlib
import os
import signal
import sys

import click

from wrowrecord.config import (
    SessionConfig,
    SamplingPolicy,
    HANDSHAKE_TIMEOUT,
    HANDSHAKE_RETRIES,
    SINK_QUEUE_CAPACITY,
    FINISH_STALL_READS,
)
from wrowrecord.errors import WRowRecordError
from wrowrecord.export.csv_writer import CsvWorkoutSink, DEFAULT_WORKOUT_DIR
from wrowrecord.s4.s4_session import RowingSession, SessionResult
from wrowrecord.s4.transport import SerialTransport, ReplayTransport, Transport

PROJECT_ROOT = pathlib.Path(__file__).parent.parent.absolute()
DEFAULT_LOGGING_CONF = PROJECT_ROOT / 'config' / 'logging.conf'
LOG_DIR = PROJECT_ROOT / 'logs'

logger = logging.getLogger(__name__)


def setup_logging(config_path: pathlib.Path | None, debug: bool) -> None:
    '''
    Load the logging configuration. The file handlers in logging.conf write into the logs
    directory, which is passed in as the logdir default.
    '''
    if config_path is not None and config_path.exists():
        os.makedirs(LOG_DIR, exist_ok=True)
        logging.config.fileConfig(str(config_path), defaults={'logdir': LOG_DIR.as_posix()},
                                  disable_existing_loggers=False)
    else:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(name)s] [%(levelname)s] %(message)s')
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger('s4data').setLevel(logging.DEBUG)


def run_session(session: RowingSession, sink: CsvWorkoutSink) -> SessionResult:
    """Run a session until it ends, stopping it cleanly on Ctrl+C or SIGTERM."""
    def stop_session(signal_received, frame):
        click.echo("\n### Stopping workout recording ...")
        session.stop()

    previous = {sig: signal.signal(sig, stop_session) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = session.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    sink.write_summary(result.summary)
    return result


def report(result: SessionResult, sink: CsvWorkoutSink) -> None:
    summary = result.summary
    click.echo(f"--- Session ended:             {result.end_reason}")
    click.echo(f"--- WaterRower Model:          {summary.model or 'unknown'}")
    click.echo(f"--- Firmware Version:          {summary.firmware or 'unknown'}")
    click.echo(f"--- Workout Duration:          {summary.duration_hms()}")
    click.echo(f"--- Total Distance in Meters:  {summary.total_distance_m}")
    click.echo(f"--- Data Points:               {result.samples_written}")
    if result.samples_dropped or result.samples_lost:
        click.echo(f"!!! Samples not recorded:      {result.samples_dropped + result.samples_lost}")
    if result.frames_dropped:
        logger.info(f"Malformed S4 lines dropped: {result.frames_dropped}")
    click.echo(f"--- Workout data written to:   {sink.path}")


def record_workout(transport: Transport, config: SessionConfig, workout_dir: str, poll: bool = True,
                   capture_path: pathlib.Path | None = None) -> SessionResult:
    config.validate()
    with CsvWorkoutSink(workout_dir) as sink:
        capture = open(capture_path, 'wb') if capture_path else None
        try:
            session = RowingSession(transport, sink, config, poll=poll, capture=capture)
            result = run_session(session, sink)
        finally:
            if capture is not None:
                capture.close()
    report(result, sink)
    return result


policy_option = click.option(
    '--policy', type=click.Choice([p.value for p in SamplingPolicy]), default=SamplingPolicy.ON_SECOND.value,
    show_default=True, help="Emit a CSV row per elapsed second or per stroke")
workout_dir_option = click.option(
    '-w', '--workout-dir', type=click.Path(file_okay=False), default=DEFAULT_WORKOUT_DIR, show_default=True,
    help="Directory to store workouts' data")
wait_option = click.option(
    '--wait-for-stroke/--no-wait-for-stroke', default=True, show_default=True,
    help="Start writing rows at the first stroke rather than at the handshake")
finish_option = click.option(
    '--finish-after', type=int, default=FINISH_STALL_READS, show_default=True,
    help="Unchanged S4 clock readings in a row that end the workout; 0 records until stopped")


@click.group()
@click.option('-d', '--debug', is_flag=True, default=False, help="Prints debug information during runtime")
@click.option('--log-config', type=click.Path(dir_okay=False, path_type=pathlib.Path), default=DEFAULT_LOGGING_CONF,
              show_default=True, help="logging.config file; falls back to console logging when absent")
def cli(debug, log_config):
    """
    WaterRower S4 workout recorder
    """
    setup_logging(log_config, debug)


@cli.command()
@click.option('-s', '--serial-dev', default=None, help="Serial device for WaterRower communication (searched for when omitted)")
@workout_dir_option
@policy_option
@click.option('--handshake-timeout', type=float, default=HANDSHAKE_TIMEOUT, show_default=True)
@click.option('--handshake-retries', type=int, default=HANDSHAKE_RETRIES, show_default=True)
@click.option('--queue-capacity', type=int, default=SINK_QUEUE_CAPACITY, show_default=True)
@click.option('--reset/--no-reset', default=False, help="Reset the S4 after connecting")
@click.option('--capture', type=click.Path(dir_okay=False, path_type=pathlib.Path), default=None,
              help="Also save the raw S4 byte stream for later replay")
@wait_option
@finish_option
def record(serial_dev, workout_dir, policy, handshake_timeout, handshake_retries, queue_capacity, reset, capture,
           wait_for_stroke, finish_after):
    """
    Record a workout from the S4 until it finishes, Ctrl+C or the monitor disconnects
    """
    config = SessionConfig(
        sampling_policy=policy,
        handshake_timeout=handshake_timeout,
        handshake_retries=handshake_retries,
        sink_queue_capacity=queue_capacity,
        reset_on_start=reset,
        wait_for_first_stroke=wait_for_stroke,
        finish_after_stalls=finish_after,
    )
    click.echo("\n### Initializing WaterRower workout recording ...")
    try:
        record_workout(SerialTransport(serial_dev), config, workout_dir, capture_path=capture)
    except WRowRecordError as e:
        logger.error(f"Recording failed: {e}")
        click.echo(f"!!! {e}", err=True)
        sys.exit(1)
    click.echo("\n### Bye!")


@cli.command()
@click.argument('capture', type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path))
@workout_dir_option
@policy_option
@click.option('--chunk-size', type=int, default=64, show_default=True, help="Bytes handed to the decoder per read")
@wait_option
@finish_option
def replay(capture, workout_dir, policy, chunk_size, wait_for_stroke, finish_after):
    """
    Rebuild the workout CSV files from a raw capture made with record --capture
    """
    config = SessionConfig(sampling_policy=policy, wait_for_first_stroke=wait_for_stroke, finish_after_stalls=finish_after)
    try:
        record_workout(ReplayTransport(capture, chunk_size), config, workout_dir, poll=False)
    except WRowRecordError as e:
        logger.error(f"Replay failed: {e}")
        click.echo(f"!!! {e}", err=True)
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
