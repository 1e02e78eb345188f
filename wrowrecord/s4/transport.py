import logging
import threading
import time

from pathlib import Path
from typing import Protocol

import serial
import serial.tools.list_ports

from wrowrecord.errors import SerialNotConnectedError, TransportError

logger = logging.getLogger(__name__)

S4_PORT_DESCRIPTION = "WR-S4"   # The S4 enumerates as a USB CDC device with this in its description
SERIAL_BAUDRATE = 19200
SERIAL_READ_TIMEOUT = 0.01      # The maximum time allowed for each serial read. Reads typically take ~0.0015 and almost always <0.005
SERIAL_READ_SIZE = 1024
PORT_SCAN_ATTEMPTS = 12
PORT_SCAN_RETRY_DELAY = 5


class Transport(Protocol):
    def open(self) -> None: ...

    def read(self) -> bytes | None: ...

    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


def find_port(attempts: int = PORT_SCAN_ATTEMPTS, delay: float = PORT_SCAN_RETRY_DELAY) -> str:
    """
    Searches the serial ports for an S4 monitor.
    Returns:
        str: The device path of the first port whose description names the S4.
    Raises:
        TransportError: If no S4 port was found after the given number of attempts.
    """
    logger.info("Searching for serial port...")
    for attempt in range(1, attempts + 1):
        for port in serial.tools.list_ports.comports():
            if S4_PORT_DESCRIPTION in (port.description or ""):
                logger.info(f"Serial port found: {port.device}")
                return port.device

        if attempt < attempts:
            logger.warning(f"Serial port not found in {attempt} of {attempts} attempts; retrying in {delay}s")
            time.sleep(delay)
    raise TransportError(f"No serial port with description containing {S4_PORT_DESCRIPTION!r} was found")


class SerialTransport:
    '''
    pyserial connection to the S4.

    read() returns b"" when nothing arrived within the read timeout and None once the
    device has gone away, which the session treats as the end of the stream.
    '''

    def __init__(self, port: str | None = None, baudrate: int = SERIAL_BAUDRATE, timeout: float = SERIAL_READ_TIMEOUT):
        self._port = port
        self._serial = serial.Serial()
        self._serial.baudrate = baudrate
        self._serial.timeout = timeout
        self._serial_lock = threading.RLock()    # the poller writes while the session thread reads

    @property
    def port(self) -> str | None:
        return self._port

    @property
    def is_open(self) -> bool:
        with self._serial_lock:
            return self._serial.is_open

    def open(self) -> None:
        if self._port is None:
            self._port = find_port()
        with self._serial_lock:
            self._serial.port = self._port
            try:
                logger.debug(f"Attempting to open serial port {self._port}...")
                self._serial.open()
            except serial.SerialException as e:
                logger.error(f"Error encountered opening serial port {self._port}: {e}")
                raise TransportError(f"Could not open serial port {self._port}: {e}") from e
        logger.info(f"Serial port {self._port} open.")

    def read(self) -> bytes | None:
        if not self.is_open:
            return None
        try:
            # The read timeout stops this from holding the lock while the poller needs to write
            with self._serial_lock:
                waiting = self._serial.in_waiting
                return self._serial.read(max(1, min(waiting, SERIAL_READ_SIZE)))
        except (serial.SerialException, OSError) as e:
            # Unplugging the S4 surfaces as a plain OSError (EIO) from the in_waiting ioctl on POSIX
            logger.error(f"Serial read communication error: {e}. Treating the S4 as disconnected.")
            return None

    def write(self, data: bytes) -> None:
        with self._serial_lock:
            if not self._serial.is_open:
                raise SerialNotConnectedError("Serial port is not connected.")
            try:
                self._serial.write(data)
                self._serial.flush()
            except (serial.SerialException, OSError) as e:
                logger.error(f"Serial write communication error: {e}")
                raise TransportError(f"Serial write failed: {e}") from e

    def close(self) -> None:
        logger.debug("Closing serial communications with S4.")
        with self._serial_lock:
            if self._serial.is_open:
                try:
                    self._serial.close()
                except serial.SerialException as e:
                    logger.warning(f"Exception closing serial: {e}")


class ReplayTransport:
    '''
    Plays back a captured S4 byte stream in fixed size chunks, then reports end of stream.
    Writes are recorded rather than sent anywhere.
    '''

    def __init__(self, source: bytes | str | Path, chunk_size: int = 64):
        if isinstance(source, (str, Path)):
            self._data = Path(source).read_bytes()
        else:
            self._data = bytes(source)
        self.chunk_size = max(1, chunk_size)
        self._offset = 0
        self._open = False
        self.written: list[bytes] = []

    def open(self) -> None:
        self._offset = 0
        self._open = True

    def read(self) -> bytes | None:
        if not self._open or self._offset >= len(self._data):
            return None
        chunk = self._data[self._offset:self._offset + self.chunk_size]
        self._offset += len(chunk)
        return chunk

    def write(self, data: bytes) -> None:
        if not self._open:
            raise SerialNotConnectedError("Replay transport is not open.")
        self.written.append(bytes(data))

    def close(self) -> None:
        self._open = False
