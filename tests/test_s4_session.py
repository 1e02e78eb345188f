import pytest

from conftest import FakeSink, FakeTransport, s4_stream
from wrowrecord.config import SessionConfig
from wrowrecord.errors import ConfigError, HandshakeError, TransportError
from wrowrecord.s4.s4_events import MonitorReset, ResetSource
from wrowrecord.s4.s4_session import Handshake, HandshakeState, RowingSession
from wrowrecord.s4.transport import ReplayTransport

WORKOUT = s4_stream(
    "PING",
    "IDD0550999",       # stale register from the previous workout
    "_WR_",
    "IV40210",
    "IDD0550064",
    "IDS1E101",
    "SS",
    "IDS1A048",
    "GARBAGE",
    "SE",
    "IDD0550070",
    "IDS1E102",
    "IDS1E004",
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_handshake_retries_are_bounded():
    clock = FakeClock()
    handshake = Handshake(timeout=2.0, retries=2, clock=clock)
    assert handshake.begin() == b"USB\r\n"
    assert handshake.state == HandshakeState.AWAITING_ACK

    clock.now += 1.9
    assert handshake.poll() is None

    clock.now += 0.2
    assert handshake.poll() == b"USB\r\n"
    assert handshake.attempts == 2

    clock.now += 2.0
    assert handshake.poll() == b"USB\r\n"
    assert handshake.attempts == 3

    clock.now += 2.0
    assert handshake.poll() is None
    assert handshake.failed
    assert handshake.attempts == 3


def test_handshake_connects_on_wr_reply_only():
    handshake = Handshake(timeout=2.0, retries=0, clock=FakeClock())
    handshake.begin()
    assert not handshake.on_event(MonitorReset(ResetSource.KEYPAD))
    assert handshake.on_event(MonitorReset(ResetSource.HANDSHAKE))
    assert handshake.connected
    assert handshake.poll() is None


def test_session_records_replayed_workout():
    sink = FakeSink()
    transport = ReplayTransport(WORKOUT, chunk_size=7)
    session = RowingSession(transport, sink, poll=False)
    result = session.run()

    assert result.end_reason == "disconnected"
    assert result.sessions == 1
    assert [(row.elapsed, row.distance, row.heart_rate, row.stroke_count) for row in sink.rows] == [
        (1, 100, None, 0),
        (2, 112, 72, 1),
    ]
    assert result.samples_emitted == result.samples_written == 2
    assert result.frames_dropped == {'unknown_tag': 1}
    assert result.events_ignored['idle'] == 2
    assert result.summary.model == '4'
    assert result.summary.firmware == '02.10'
    assert result.summary.date_time_start <= result.summary.date_time_end
    assert transport.written == [b"USB\r\n", b"IV?\r\n", b"EXIT\r\n"]


def test_session_flushes_pending_changes_on_close():
    sink = FakeSink()
    transport = ReplayTransport(s4_stream("_WR_", "IDS1E101", "IDD0550064"))
    RowingSession(transport, sink, poll=False).run()
    assert [(row.elapsed, row.distance) for row in sink.rows] == [(1, None)]

    sink = FakeSink()
    transport = ReplayTransport(s4_stream("_WR_", "IDD0550064"))
    RowingSession(transport, sink, poll=False).run()
    assert [(row.elapsed, row.distance) for row in sink.rows] == [(0, 100)]


def test_session_sends_reset_when_configured():
    transport = ReplayTransport(s4_stream("_WR_"))
    RowingSession(transport, FakeSink(), SessionConfig(reset_on_start=True), poll=False).run()
    assert transport.written == [b"USB\r\n", b"RESET\r\n", b"IV?\r\n", b"EXIT\r\n"]


def test_session_captures_raw_stream(tmp_path):
    capture = tmp_path / "capture.bin"
    with open(capture, 'wb') as f:
        RowingSession(ReplayTransport(WORKOUT, chunk_size=5), FakeSink(), poll=False, capture=f).run()
    assert capture.read_bytes() == WORKOUT


def test_handshake_failure_raises_after_cleanup():
    transport = FakeTransport()
    config = SessionConfig(handshake_timeout=0.01, handshake_retries=1)
    with pytest.raises(HandshakeError) as exc_info:
        RowingSession(transport, FakeSink(), config, poll=False).run()
    assert exc_info.value.attempts == 2
    assert transport.written == [b"USB\r\n", b"USB\r\n", b"EXIT\r\n"]
    assert transport.closed


def test_stream_ending_during_handshake():
    transport = ReplayTransport(s4_stream("PING", "IDD0550064"))
    with pytest.raises(TransportError):
        RowingSession(transport, FakeSink(), poll=False).run()


def test_invalid_config_fails_before_transport_is_opened():
    transport = FakeTransport()
    with pytest.raises(ConfigError):
        RowingSession(transport, FakeSink(), SessionConfig(sampling_policy="hourly"))
    assert not transport.opened


def test_stop_ends_session_and_poller():
    session = None

    def stop_once_polled(transport):
        if b"IRD055\r\n" in transport.written:
            session.stop()

    sink = FakeSink()
    transport = FakeTransport([s4_stream("_WR_", "IDD0550064", "IDS1E101")], on_idle=stop_once_polled)
    session = RowingSession(transport, sink, SessionConfig(poll_interval=0))
    result = session.run()

    assert result.end_reason == "stopped"
    assert sink.elapsed == [1]
    assert transport.written[0] == b"USB\r\n"
    assert transport.written[-1] == b"EXIT\r\n"
    assert b"IRD055\r\n" in transport.written
    assert transport.closed


def test_stop_during_handshake():
    session = None

    def stop(transport):
        session.stop()

    transport = FakeTransport(on_idle=stop)
    session = RowingSession(transport, FakeSink(), poll=False)
    result = session.run()
    assert result.end_reason == "stopped"
    assert result.sessions == 0
    assert transport.closed


def test_stopped_clock_ends_session_as_finished():
    stalled = ["IDS1E101", "IDS1E004"] * 4
    transport = ReplayTransport(s4_stream("_WR_", "SS", *stalled, "IDS1E102"), chunk_size=1)
    sink = FakeSink()
    result = RowingSession(transport, sink, SessionConfig(finish_after_stalls=3), poll=False).run()

    assert result.end_reason == "finished"
    assert sink.elapsed == [1]
    assert transport.written[-1] == b"EXIT\r\n"


def test_session_waits_for_first_stroke_when_configured():
    sink = FakeSink()
    config = SessionConfig(wait_for_first_stroke=True)
    result = RowingSession(ReplayTransport(WORKOUT, chunk_size=7), sink, config, poll=False).run()
    assert result.end_reason == "disconnected"
    assert [(row.elapsed, row.distance, row.stroke_count) for row in sink.rows] == [(2, 112, 1)]


def test_keypad_reset_starts_a_new_session_in_the_summary():
    transport = ReplayTransport(s4_stream(
        "_WR_", "IDS1E210", "IDD05507D0", "IDS1E100", "AKR", "IDD05500C8", "IDS1E130"))
    sink = FakeSink()
    result = RowingSession(transport, sink, poll=False).run()

    assert result.sessions == 2
    assert [(row.session, row.elapsed, row.distance) for row in sink.rows] == [(1, 600, 2000), (2, 30, 200)]
    summary = result.summary
    assert [(s.session, s.time_secs, s.distance_m) for s in summary.sessions] == [(1, 600, 2000), (2, 30, 200)]
    assert summary.total_time_secs == 630
    assert summary.total_distance_m == 2200
