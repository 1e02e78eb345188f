# ---------------------------------------------------------------------------
# Packet handling for the WaterRower S4 USB serial protocol
# (Water Rower S4 S5 USB Protocol Iss 1 04)
# ---------------------------------------------------------------------------

import logging
import re

from collections import Counter
from typing import Iterator

from wrowrecord.s4.memory_map import HEART_RATE_ADDRESS
from wrowrecord.s4.s4_events import (
    ProtocolEvent,
    MemoryValue,
    StrokeEdge,
    StrokePhase,
    HeartRatePulse,
    MonitorReset,
    ResetSource,
    PulleyPulse,
    Ping,
    Acknowledge,
    ErrorReply,
    ModelInfo,
)
from wrowrecord.config import MAX_FRAME_LENGTH

logger = logging.getLogger(__name__)

# Packet identifiers as specified in Water Rower S4 S5 USB Protocol Iss 1 04.pdf.

# ACH values = Ascii coded hexadecimal
# REQUEST sent from PC to device
# RESPONSE sent from device to PC

USB_REQUEST = "USB"                # First packet to be sent in order to instruct S4 to establish communications
MODEL_INFORMATION_REQUEST = "IV?"  # Request Model Information
READ_MEMORY_REQUEST = "IR"         # Read a memory location IR+(S=Single,D=Double,T=Triple) + XXX (XXX is in ACH format)
RESET_REQUEST = "RESET"            # Request the rowing computer to reset (equivalent to user holding on button for 2 secs)
EXIT_REQUEST = "EXIT"              # Application is exiting, stop sending packets

WR_RESPONSE = "_WR_"               # Hardware Type response to acknowledge USB_REQUEST and initiate sending packets
MODEL_INFORMATION_RESPONSE = "IV"  # IV+Model(4 or 5)+Firmware Version High+Firmware Version Low (e.g for Firmware 02.10, High is 02, low is 10)
READ_MEMORY_RESPONSE = "ID"        # Value from a memory location ID +(type) + XXX + Y3 Y2 Y1
STROKE_START_RESPONSE = "SS"       # Start of stroke (just a packet - no data)
STROKE_END_RESPONSE = "SE"         # End of stroke (just a packet - no data)
PULSE_COUNT_RESPONSE = "P"         # Pulse Count XX in the last 25mS, ACH value
OK_RESPONSE = "OK"                 # Packet Accepted - Sent in cases where no other reply would otherwise be given.
PING_RESPONSE = "PING"             # Ping sent once per second while no rowing is occuring
ERROR_RESPONSE = "ERROR"           # Unknown packet recieved.
KEYPAD_RESET_RESPONSE = "AKR"      # RESET key pressed on the S4

LINE_TERMINATOR = b"\r\n"

SIZE_MAP = {
    1: {'request': 'IRS', 'response': 'IDS'},
    2: {'request': 'IRD', 'response': 'IDD'},
    3: {'request': 'IRT', 'response': 'IDT'},
    }

RESPONSE_WIDTHS = {entry['response']: width for width, entry in SIZE_MAP.items()}

# Single packets that carry no data
LITERAL_EVENTS = {
    STROKE_START_RESPONSE: StrokeEdge(StrokePhase.DRIVE_START),
    STROKE_END_RESPONSE: StrokeEdge(StrokePhase.DRIVE_END),
    WR_RESPONSE: MonitorReset(ResetSource.HANDSHAKE),
    KEYPAD_RESET_RESPONSE: MonitorReset(ResetSource.KEYPAD),
    PING_RESPONSE: Ping(),
    OK_RESPONSE: Acknowledge(),
    ERROR_RESPONSE: ErrorReply(),
}

HEX_DIGITS = re.compile(r"[0-9A-Fa-f]+")
MODEL_DIGITS = re.compile(r"[0-9]{5}")


def build_request(command: str) -> bytes:
    return command.upper().encode('ascii') + LINE_TERMINATOR


def read_request(address: str, width: int) -> bytes:
    """
    Builds the packet requesting a read of an S4 memory register.
    Args:
        address (str): The three hex digit register address (e.g. '055').
        width (int): The number of bytes to read (1, 2 or 3).
    Raises:
        ValueError: If the width or address is invalid.
    """
    if width not in SIZE_MAP:
        raise ValueError(f"Unsupported register width: {width}")
    if len(address) != 3 or not HEX_DIGITS.fullmatch(address):
        raise ValueError(f"Invalid register address: {address!r}")
    return build_request(SIZE_MAP[width]['request'] + address)


class FrameScanner:
    '''
    Splits the raw byte stream from the S4 into lines.

    The S4 terminates every packet with CR LF. The transport may deliver arbitrary chunks,
    so anything after the last terminator is kept until the next feed(). A run of bytes longer
    than max_frame_length without a terminator is treated as line noise: it is discarded up to
    the next terminator and scanning resumes from there.
    '''

    def __init__(self, max_frame_length: int = MAX_FRAME_LENGTH):
        self.max_frame_length = max_frame_length
        self._buffer = bytearray()
        self._discarding = False
        self.resyncs = 0

    def feed(self, data: bytes) -> Iterator[bytes]:
        if data:
            self._buffer.extend(data)
        return self._frames()

    def _frames(self) -> Iterator[bytes]:
        while True:
            match = re.search(rb"[\r\n]", self._buffer)
            if match is None:
                self._check_overlength()
                return

            end = match.start()
            frame = bytes(self._buffer[:end])
            # Consume the frame together with the whole run of terminator bytes
            stop = end
            while stop < len(self._buffer) and self._buffer[stop] in b"\r\n":
                stop += 1
            del self._buffer[:stop]

            if self._discarding:
                self._discarding = False
                continue
            if len(frame) > self.max_frame_length:
                self._resync(len(frame))
                continue
            if frame:
                yield frame

    def _check_overlength(self) -> None:
        if len(self._buffer) > self.max_frame_length:
            if not self._discarding:
                self._resync(len(self._buffer))
                self._discarding = True
            self._buffer.clear()

    def _resync(self, length: int) -> None:
        self.resyncs += 1
        logger.warning(f"Discarded {length} bytes of over-length S4 input; resynchronising on the next line terminator.")

    def reset(self) -> None:
        self._buffer.clear()
        self._discarding = False

    @property
    def pending(self) -> int:
        return len(self._buffer)


class FrameDecoder:
    '''
    Decodes S4 lines into ProtocolEvents.

    Malformed lines (unknown tag, wrong length, non-hex digits, non-ascii bytes) produce no event.
    They are counted in self.dropped by reason rather than raised: the S4 emits the occasional
    garbled packet during normal operation.
    '''

    def __init__(self):
        self.dropped: Counter[str] = Counter()
        self.decoded = 0

    def decode(self, frame: bytes) -> ProtocolEvent | None:
        try:
            cmd = frame.strip().decode('ascii')
        except UnicodeDecodeError:
            return self._drop('undecodable', frame)

        if not cmd:
            return self._drop('bad_length', frame)

        event = LITERAL_EVENTS.get(cmd)
        if event is None:
            if cmd.startswith(READ_MEMORY_RESPONSE):
                event = self._read_reply(cmd)
            elif cmd.startswith(MODEL_INFORMATION_RESPONSE):
                event = self._model_reply(cmd)
            elif cmd.startswith(PULSE_COUNT_RESPONSE):
                event = self._pulse_reply(cmd)
            else:
                return self._drop('unknown_tag', cmd)

        if event is not None:
            self.decoded += 1
        return event

    def _read_reply(self, cmd: str) -> ProtocolEvent | None:
        width = RESPONSE_WIDTHS.get(cmd[:3])
        if width is None:
            return self._drop('unknown_tag', cmd)

        # ID + type + 3 address digits + 2 digits per byte
        if len(cmd) != 6 + 2 * width:
            return self._drop('bad_length', cmd)

        payload = cmd[3:]
        if not HEX_DIGITS.fullmatch(payload):
            return self._drop('bad_charset', cmd)

        address = payload[:3].upper()
        value = int(payload[3:], 16)

        if address == HEART_RATE_ADDRESS and width == 1:
            return HeartRatePulse(bpm=value)
        return MemoryValue(address=address, width=width, value=value)

    def _model_reply(self, cmd: str) -> ProtocolEvent | None:
        if len(cmd) != 7:
            return self._drop('bad_length', cmd)
        digits = cmd[2:]
        if not MODEL_DIGITS.fullmatch(digits):
            return self._drop('bad_charset', cmd)
        return ModelInfo(model=digits[0], firmware=f"{digits[1:3]}.{digits[3:5]}")

    def _pulse_reply(self, cmd: str) -> ProtocolEvent | None:
        if len(cmd) != 3:
            return self._drop('bad_length', cmd)
        if not HEX_DIGITS.fullmatch(cmd[1:]):
            return self._drop('bad_charset', cmd)
        return PulleyPulse(count=int(cmd[1:], 16))

    def _drop(self, reason: str, cmd: str | bytes) -> None:
        self.dropped[reason] += 1
        logger.debug(f"Dropped S4 line ({reason}): {cmd!r}")
        return None

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


def decode_stream(chunks, scanner: FrameScanner | None = None, decoder: FrameDecoder | None = None) -> Iterator[ProtocolEvent]:
    '''Decodes an iterable of byte chunks into the ordered sequence of events.'''
    scanner = scanner or FrameScanner()
    decoder = decoder or FrameDecoder()
    for chunk in chunks:
        for frame in scanner.feed(chunk):
            event = decoder.decode(frame)
            if event is not None:
                yield event
