import logging
import queue
import threading
import time

from collections import deque
from copy import deepcopy
from dataclasses import replace
from typing import Protocol

from wrowrecord.config import SINK_QUEUE_CAPACITY, SINK_PUT_TIMEOUT, SINK_RETRY_DELAY
from wrowrecord.rows.row_samples import WorkoutSample, WorkoutSummary
from wrowrecord.rows.session_aggregator import SessionAggregator

logger = logging.getLogger(__name__)

WRITER_POLL = 0.1       # How often the writer thread checks for the stop event when the queue is empty
WRITER_MIN_BACKOFF = 0.05  # Shortest pause before retrying a sink that keeps failing, whatever retry_delay is


class WorkoutSink(Protocol):
    def append_row(self, sample: WorkoutSample) -> bool: ...


class SessionRecorder:
    '''
    Hands the samples emitted by the SessionAggregator to a sink without letting a slow or failing
    sink stall the thread that decodes the S4 stream.

    Samples go onto a bounded queue served by a writer thread. A failed write is retried once; if it
    fails again the sample waits at the head of an ordered backlog and is retried later. While the
    backlog is full the writer stops taking from the queue, so the queue fills and on_sample() blocks
    the producer for at most put_timeout before giving up on that sample.
    '''

    def __init__(self, sink: WorkoutSink, aggregator: SessionAggregator | None = None,
                 capacity: int = SINK_QUEUE_CAPACITY, put_timeout: float = SINK_PUT_TIMEOUT,
                 retry_delay: float = SINK_RETRY_DELAY):
        self._sink = sink
        self._aggregator = aggregator
        self.capacity = capacity
        self.put_timeout = put_timeout
        self.retry_delay = retry_delay
        self._queue: queue.Queue[WorkoutSample] = queue.Queue(maxsize=capacity)
        self._backlog: deque[WorkoutSample] = deque()
        self._stop_event = threading.Event()
        self._writer_thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.summary = WorkoutSummary()
        self.accepted = 0
        self.written = 0
        self.dropped = 0
        self.lost = 0
        self.sink_failures = 0

    def start(self) -> None:
        if self._writer_thread and self._writer_thread.is_alive():
            return
        self._stop_event.clear()
        self._writer_thread = threading.Thread(target=self._run_writer, daemon=True, name="SessionRecorderWriter")
        self._writer_thread.start()
        logger.debug("Session recorder writer thread started.")

    def on_sample(self, sample: WorkoutSample) -> bool:
        """
        Stamp a sample with its session-relative time and queue it for the sink.
        Returns:
            bool: True if the sample was accepted, False if the queue stayed full for put_timeout.
        """
        # The S4 clock, not the wall clock, so rows do not depend on processing delays
        timestamp = self._aggregator.elapsed if self._aggregator is not None else float(sample.elapsed)
        stamped = replace(sample, timestamp=timestamp)
        try:
            self._queue.put(stamped, timeout=self.put_timeout)
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.error(f"Sink queue full for {self.put_timeout}s; sample at {stamped.elapsed}s was not recorded")
            return False

        with self._lock:
            self.accepted += 1
            self.summary.add(stamped)
        return True

    def close(self) -> None:
        '''Stop the writer and write out everything still queued. Samples the sink still refuses are counted as lost.'''
        self._stop_event.set()
        if self._writer_thread is not None:
            self._writer_thread.join()
            self._writer_thread = None

        while True:
            try:
                self._backlog.append(self._queue.get_nowait())
            except queue.Empty:
                break

        if not self._write_backlog():
            self.lost += len(self._backlog)
            logger.error(f"{len(self._backlog)} samples could not be written before the session closed")
            self._backlog.clear()

        logger.info(f"Session recorder closed: {self.written} written, {self.dropped} dropped, {self.lost} lost")

    def get_summary(self) -> WorkoutSummary:
        with self._lock:
            return deepcopy(self.summary)

    @property
    def backlog(self) -> int:
        return len(self._backlog)

    def _run_writer(self) -> None:
        while not self._stop_event.is_set():
            if len(self._backlog) < self.capacity:
                try:
                    self._backlog.append(self._queue.get(timeout=WRITER_POLL))
                except queue.Empty:
                    pass

            if self._backlog and not self._write_backlog():
                # Sink is still down, so give it time to recover before trying the head of the backlog again
                self._stop_event.wait(max(self.retry_delay, WRITER_MIN_BACKOFF))

    def _write_backlog(self) -> bool:
        while self._backlog:
            if not self._write(self._backlog[0]):
                return False
            self._backlog.popleft()
            self.written += 1
        return True

    def _write(self, sample: WorkoutSample) -> bool:
        for attempt in (1, 2):
            try:
                if self._sink.append_row(sample):
                    return True
                logger.warning(f"Sink refused the row for {sample.elapsed}s (attempt {attempt})")
            except Exception as e:
                logger.warning(f"Sink error writing the row for {sample.elapsed}s (attempt {attempt}): {e}")
            self.sink_failures += 1
            if attempt == 1:
                time.sleep(self.retry_delay)
        return False
