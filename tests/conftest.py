import threading

import pytest

from wrowrecord.config import SamplingPolicy
from wrowrecord.rows.session_aggregator import SessionAggregator
from wrowrecord.s4.s4if import FrameScanner, FrameDecoder


class FakeSink:
    '''Records rows in memory. The first `failures` calls to append_row fail, by returning False or raising.'''

    def __init__(self, failures: int = 0, raise_errors: bool = False):
        self.failures = failures
        self.raise_errors = raise_errors
        self.rows = []
        self.calls = 0
        self.gate = threading.Event()
        self.gate.set()
        self.entered = threading.Event()

    def append_row(self, sample) -> bool:
        self.calls += 1
        self.entered.set()
        self.gate.wait(5)
        if self.failures:
            self.failures -= 1
            if self.raise_errors:
                raise OSError("disk full")
            return False
        self.rows.append(sample)
        return True

    @property
    def elapsed(self):
        return [row.elapsed for row in self.rows]


class FakeTransport:
    '''
    Hands out the given chunks, then b"" (read timeout) until stopped. on_idle is called on each
    empty read so a test can react to what has been written so far.
    '''

    def __init__(self, chunks=(), on_idle=None):
        self.chunks = list(chunks)
        self.on_idle = on_idle
        self.written = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self):
        self.opened = True

    def read(self):
        if self.chunks:
            return self.chunks.pop(0)
        if self.on_idle is not None:
            self.on_idle(self)
        return b""

    def write(self, data):
        with self._lock:
            self.written.append(data)

    def close(self):
        self.closed = True


def s4_stream(*lines: str) -> bytes:
    return b"".join(line.encode('ascii') + b"\r\n" for line in lines)


@pytest.fixture
def scanner():
    return FrameScanner()


@pytest.fixture
def decoder():
    return FrameDecoder()


@pytest.fixture
def aggregator():
    return SessionAggregator(SamplingPolicy.ON_SECOND)


@pytest.fixture
def stroke_aggregator():
    return SessionAggregator(SamplingPolicy.ON_STROKE)


@pytest.fixture
def sink():
    return FakeSink()
