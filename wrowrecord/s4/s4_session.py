import logging
import threading
import time

from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import BinaryIO, Callable

from wrowrecord.config import SessionConfig
from wrowrecord.errors import HandshakeError, TransportError
from wrowrecord.rows.row_samples import WorkoutSummary
from wrowrecord.rows.session_aggregator import SessionAggregator
from wrowrecord.rows.session_recorder import SessionRecorder, WorkoutSink
from wrowrecord.s4.memory_map import MetricMap
from wrowrecord.s4.s4_events import (
    ProtocolEvent,
    MonitorReset,
    ResetSource,
    ModelInfo,
    ErrorReply,
)
from wrowrecord.s4.s4if import (
    FrameScanner,
    FrameDecoder,
    USB_REQUEST,
    RESET_REQUEST,
    EXIT_REQUEST,
    MODEL_INFORMATION_REQUEST,
    build_request,
    read_request,
)
from wrowrecord.s4.transport import Transport

logger = logging.getLogger(__name__)

'''
One recording session against an S4 monitor.

The session thread reads the transport and drives FrameScanner -> FrameDecoder -> SessionAggregator
synchronously and in order: the order in which register values are applied is what makes the
last-write-wins state correct, so frames are never processed in parallel.

Two other threads support it:
1) the poller, which only writes register read requests to the S4 and never touches session state,
2) the SessionRecorder writer, which takes samples off a bounded queue and hands them to the sink.
'''


class HandshakeState(Enum):
    PENDING = auto()
    AWAITING_ACK = auto()
    CONNECTED = auto()
    FAILED = auto()


class Handshake:
    '''
    USB -> _WR_ exchange with a bounded number of attempts.

    The caller drives it: begin() gives the first request to write, on_event() is fed every decoded event
    and poll() is called periodically. poll() returns the request to write again when an attempt has timed
    out and attempts remain, and moves to FAILED once they are used up. Time comes from the injected clock
    so the retry policy can be tested without a serial device.
    '''

    def __init__(self, timeout: float, retries: int, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.max_attempts = retries + 1
        self._clock = clock
        self.state = HandshakeState.PENDING
        self.attempts = 0
        self._deadline: float | None = None

    def begin(self) -> bytes:
        return self._attempt()

    def on_event(self, event: ProtocolEvent) -> bool:
        if self.state == HandshakeState.AWAITING_ACK and event == MonitorReset(ResetSource.HANDSHAKE):
            self.state = HandshakeState.CONNECTED
            logger.info(f"S4 acknowledged the USB handshake on attempt {self.attempts}")
        return self.state == HandshakeState.CONNECTED

    def poll(self) -> bytes | None:
        if self.state != HandshakeState.AWAITING_ACK or self._clock() < self._deadline:
            return None
        if self.attempts >= self.max_attempts:
            self.state = HandshakeState.FAILED
            logger.error(f"S4 did not acknowledge the USB handshake after {self.attempts} attempts")
            return None
        logger.warning(f"Timeout waiting for S4 handshake reply {self.timeout}s; retrying ({self.attempts + 1}/{self.max_attempts})")
        return self._attempt()

    def _attempt(self) -> bytes:
        self.attempts += 1
        self.state = HandshakeState.AWAITING_ACK
        self._deadline = self._clock() + self.timeout
        return build_request(USB_REQUEST)

    @property
    def connected(self) -> bool:
        return self.state == HandshakeState.CONNECTED

    @property
    def failed(self) -> bool:
        return self.state == HandshakeState.FAILED


@dataclass
class SessionResult:
    end_reason: str
    sessions: int = 0
    samples_emitted: int = 0
    samples_written: int = 0
    samples_dropped: int = 0
    samples_lost: int = 0
    frames_dropped: dict[str, int] = field(default_factory=dict)
    events_ignored: dict[str, int] = field(default_factory=dict)
    resyncs: int = 0
    summary: WorkoutSummary = field(default_factory=WorkoutSummary)


class RowingSession:
    def __init__(self, transport: Transport, sink: WorkoutSink, config: SessionConfig | None = None,
                 metric_map: MetricMap | None = None, poll: bool = True, capture: BinaryIO | None = None):
        # Configuration errors surface here, before the transport is touched
        self.config = (config or SessionConfig()).validate()
        self.transport = transport
        self.metric_map = metric_map or MetricMap()
        self.poll = poll
        self.capture = capture
        self.scanner = FrameScanner(self.config.max_frame_length)
        self.decoder = FrameDecoder()
        self.aggregator = SessionAggregator(
            self.config.sampling_policy,
            self.metric_map,
            wait_for_first_stroke=self.config.wait_for_first_stroke,
            finish_after_stalls=self.config.finish_after_stalls,
        )
        self.recorder = SessionRecorder(
            sink,
            aggregator=self.aggregator,
            capacity=self.config.sink_queue_capacity,
            put_timeout=self.config.sink_put_timeout,
            retry_delay=self.config.sink_retry_delay,
        )
        self.handshake = Handshake(self.config.handshake_timeout, self.config.handshake_retries)
        self._stop_event = threading.Event()
        self._poller_thread: threading.Thread | None = None

    def stop(self) -> None:
        logger.info("Stop requested for the rowing session.")
        self._stop_event.set()

    def run(self) -> SessionResult:
        """
        Open the transport, complete the handshake and record until stop() is called or the S4 goes away.
        Returns:
            SessionResult: Counters and the workout summary of the session.
        Raises:
            HandshakeError: If the S4 did not acknowledge the handshake within the retry budget.
            TransportError: If the transport could not be opened, or closed during the handshake.
        """
        with ExitStack() as stack:
            self.transport.open()
            stack.callback(self._close_transport)
            self.recorder.start()
            stack.callback(self._close_recorder)

            if self._perform_handshake():
                self.recorder.summary.date_time_start = datetime.now()

                if self.config.reset_on_start:
                    logger.debug("Sending reset request to S4.")
                    self.transport.write(build_request(RESET_REQUEST))
                self.transport.write(build_request(MODEL_INFORMATION_REQUEST))

                if self.poll:
                    self._start_poller()
                    stack.callback(self._stop_poller)

                if self.config.wait_for_first_stroke:
                    logger.info("Waiting for first stroke to begin recording...")
                end_reason = self._record()
            else:
                end_reason = "stopped"
        return self._result(end_reason)

    def _perform_handshake(self) -> bool:
        '''Returns True once the S4 has acknowledged, False if the session was stopped first.'''
        logger.info("Initiating communication with S4 monitor.")
        self.transport.write(self.handshake.begin())
        while not self.handshake.connected:
            if self._stop_event.is_set():
                return False
            data = self.transport.read()
            if data is None:
                raise TransportError("S4 closed the connection during the handshake")
            self._process(data)
            if self.handshake.connected:
                break
            retry = self.handshake.poll()
            if retry:
                self.transport.write(retry)
            elif self.handshake.failed:
                raise HandshakeError(self.handshake.attempts)
        return True

    def _record(self) -> str:
        logger.info("Recording workout...")
        while not self._stop_event.is_set():
            if self.aggregator.finished:
                logger.info("Workout finished on the S4.")
                return "finished"
            data = self.transport.read()
            if data is None:
                logger.info("S4 stream ended.")
                return "disconnected"
            self._process(data)
        return "stopped"

    def _process(self, data: bytes) -> None:
        if not data:
            return
        if self.capture is not None:
            self.capture.write(data)
        for frame in self.scanner.feed(data):
            event = self.decoder.decode(frame)
            if event is None:
                continue
            self._observe(event)
            sample = self.aggregator.apply(event)
            if sample is not None:
                self.recorder.on_sample(sample)

    def _observe(self, event: ProtocolEvent) -> None:
        self.handshake.on_event(event)
        match event:
            case ModelInfo(model=model, firmware=firmware):
                self.recorder.summary.model = model
                self.recorder.summary.firmware = firmware
                logger.info(f"WaterRower model S{model}, firmware {firmware}")
            case ErrorReply():
                logger.warning("Received error packet from S4")
            case _:
                pass

    def _start_poller(self) -> None:
        self._poller_thread = threading.Thread(target=self._run_poller, daemon=True, name="S4PollerThread")
        self._poller_thread.start()
        logger.debug("S4 register poller started.")

    def _run_poller(self) -> None:
        requests = [read_request(address, width) for address, width in self.metric_map.poll_addresses()]
        while not self._stop_event.is_set():
            for request in requests:
                if self._stop_event.is_set():
                    return
                try:
                    self.transport.write(request)
                except TransportError as e:
                    logger.error(f"Stopping S4 register poller: {e}")
                    return
                self._stop_event.wait(self.config.poll_interval)

    def _stop_poller(self) -> None:
        self._stop_event.set()
        if self._poller_thread is not None:
            self._poller_thread.join()
            self._poller_thread = None

    def _close_recorder(self) -> None:
        sample = self.aggregator.flush()
        if sample is not None:
            self.recorder.on_sample(sample)
        self.recorder.close()
        self.recorder.summary.date_time_end = datetime.now()

    def _close_transport(self) -> None:
        try:
            self.transport.write(build_request(EXIT_REQUEST))
        except TransportError as e:
            logger.warning(f"Could not send EXIT to the S4: {e}")
        self.transport.close()

    def _result(self, end_reason: str) -> SessionResult:
        return SessionResult(
            end_reason=end_reason,
            sessions=self.aggregator.session_index,
            samples_emitted=self.aggregator.samples_emitted,
            samples_written=self.recorder.written,
            samples_dropped=self.recorder.dropped,
            samples_lost=self.recorder.lost,
            frames_dropped=dict(self.decoder.dropped),
            events_ignored=dict(self.aggregator.ignored),
            resyncs=self.scanner.resyncs,
            summary=self.recorder.get_summary(),
        )
