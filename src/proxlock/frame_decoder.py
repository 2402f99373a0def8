"""Rangefinder frame decoder.

The door-side LiDAR emits fixed 9-byte frames over a serial link:

    0x59 0x59 | dist_lo dist_hi | str_lo str_hi | temp_lo temp_hi | checksum

Distance is in centimetres, the checksum is the low byte of the sum of the
eight preceding bytes. The link is noisy (partial frames, stale buffered
frames, flipped bits), so a read attempt flushes what is already buffered,
scans for a fresh header and only trusts frames whose checksum and range
both hold. Anything else ends in ``NO_READING`` once the time budget is spent.
"""

import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import serial

from proxlock.errors import ProxlockError
from proxlock.models import NO_READING

logger = logging.getLogger(__name__)

FRAME_HEADER = 0x59
FRAME_LENGTH = 9
MAX_DISTANCE_CM = 1200

DEFAULT_READ_TIMEOUT = 1.5
DEFAULT_SETTLE_TIME = 0.05


class FrameError(ProxlockError, ValueError):
    """Bytes do not form a valid frame."""
    pass


class ChecksumError(FrameError):
    """Frame checksum does not match its contents."""
    pass


class SerialStream(Protocol):
    """The subset of ``serial.Serial`` the decoder relies on."""

    def reset_input_buffer(self) -> None:
        ...

    def read(self, size: int = 1) -> bytes:
        ...


@dataclass(frozen=True)
class Frame:
    """One decoded sensor frame."""
    distance: int
    strength: int
    temperature_raw: int

    @property
    def temperature_c(self) -> float:
        return self.temperature_raw / 8 - 256


def frame_checksum(data: bytes) -> int:
    """Low byte of the sum of the given bytes."""
    return sum(data) & 0xFF


def build_frame(distance: int, strength: int = 0, temperature_raw: int = 0) -> bytes:
    """Encode a frame the way the sensor does (used by simulators and tests)."""
    body = bytes([FRAME_HEADER, FRAME_HEADER]) + struct.pack(
        "<HHH", distance, strength, temperature_raw
    )
    return body + bytes([frame_checksum(body)])


def parse_frame(frame: bytes) -> Frame:
    """Decode a complete 9-byte frame.

    Raises:
        FrameError: Wrong length or missing header
        ChecksumError: Checksum byte does not match
    """
    if len(frame) != FRAME_LENGTH:
        raise FrameError(f"expected {FRAME_LENGTH} bytes, got {len(frame)}")
    if frame[0] != FRAME_HEADER or frame[1] != FRAME_HEADER:
        raise FrameError("missing frame header")
    expected = frame_checksum(frame[:-1])
    if frame[-1] != expected:
        raise ChecksumError(f"checksum {frame[-1]:#04x} != {expected:#04x}")
    distance, strength, temperature = struct.unpack("<HHH", frame[2:8])
    return Frame(distance=distance, strength=strength, temperature_raw=temperature)


def is_plausible(distance: int) -> bool:
    """Zero and over-range values mean sensor fault or nothing in the field."""
    return 0 < distance < MAX_DISTANCE_CM


def open_sensor(port: str, baudrate: int = 115200, read_timeout: float = 0.05) -> serial.Serial:
    """Open the rangefinder's serial port.

    A short per-read timeout keeps ``read`` from blocking past the decoder's
    time budget.
    """
    return serial.Serial(port=port, baudrate=baudrate, timeout=read_timeout)


class FrameDecoder:
    """Produces one distance reading per access attempt."""

    def __init__(
        self,
        stream: SerialStream,
        timeout: float = DEFAULT_READ_TIMEOUT,
        settle: float = DEFAULT_SETTLE_TIME,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.stream = stream
        self.timeout = timeout
        self.settle = settle
        self._clock = clock
        self._sleep = sleep

    def _read_rest(self, count: int, deadline: float) -> bytes | None:
        """Read the body of a frame once its header was seen."""
        buf = bytearray()
        while len(buf) < count:
            if self._clock() >= deadline:
                return None
            chunk = self.stream.read(count - len(buf))
            if chunk:
                buf.extend(chunk)
        return bytes(buf)

    def read_distance(self) -> int:
        """Return a validated distance in cm, or ``NO_READING``.

        Never raises: serial faults and timeouts both end in ``NO_READING``,
        which callers must treat as "too far".
        """
        try:
            return self._scan()
        except serial.SerialException as e:
            logger.error(f"Sensor read failed: {e}")
            return NO_READING

    def _scan(self) -> int:
        self.stream.reset_input_buffer()
        self._sleep(self.settle)

        deadline = self._clock() + self.timeout
        rejected = 0
        prev: int | None = None

        while self._clock() < deadline:
            chunk = self.stream.read(1)
            if not chunk:
                continue
            byte = chunk[0]

            if prev == FRAME_HEADER and byte == FRAME_HEADER:
                prev = None
                rest = self._read_rest(FRAME_LENGTH - 2, deadline)
                if rest is None:
                    break
                try:
                    frame = parse_frame(bytes([FRAME_HEADER, FRAME_HEADER]) + rest)
                except FrameError as e:
                    rejected += 1
                    logger.debug(f"Dropped frame: {e}")
                    continue
                if is_plausible(frame.distance):
                    return frame.distance
                rejected += 1
                logger.debug(f"Dropped implausible distance {frame.distance}")
                continue

            prev = byte

        logger.warning(
            f"No sensor reading within {self.timeout:.2f}s ({rejected} frames rejected)"
        )
        return NO_READING
