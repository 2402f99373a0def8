"""Tests for the rangefinder frame decoder."""

import pytest
import serial

from proxlock.frame_decoder import (
    MAX_DISTANCE_CM,
    ChecksumError,
    FrameDecoder,
    FrameError,
    build_frame,
    parse_frame,
)
from proxlock.models import NO_READING


class FakeSerial:
    """Serial port with bytes already buffered and bytes still to arrive."""

    def __init__(self, incoming: bytes = b"", stale: bytes = b""):
        self._incoming = incoming
        self._data = bytearray(stale + incoming)
        self.resets = 0

    def reset_input_buffer(self) -> None:
        self.resets += 1
        self._data = bytearray(self._incoming)

    def read(self, size: int = 1) -> bytes:
        chunk = bytes(self._data[:size])
        del self._data[:size]
        return chunk


class BrokenSerial(FakeSerial):
    def read(self, size: int = 1) -> bytes:
        raise serial.SerialException("device disconnected")


def corrupt(frame: bytes) -> bytes:
    bad = bytearray(frame)
    bad[-1] ^= 0xFF
    return bytes(bad)


def decoder_for(stream, timeout=0.05):
    return FrameDecoder(stream, timeout=timeout, settle=0, sleep=lambda s: None)


class TestParseFrame:
    """Test single-frame decoding."""

    def test_valid_frame(self):
        frame = parse_frame(build_frame(50, strength=300, temperature_raw=2560))
        assert frame.distance == 50
        assert frame.strength == 300
        assert frame.temperature_c == 64.0

    def test_little_endian_distance(self):
        raw = bytes([0x59, 0x59, 0x2C, 0x01, 0, 0, 0, 0])
        frame = parse_frame(raw + bytes([sum(raw) & 0xFF]))
        assert frame.distance == 300

    def test_checksum_mismatch(self):
        with pytest.raises(ChecksumError):
            parse_frame(corrupt(build_frame(50)))

    def test_wrong_length(self):
        with pytest.raises(FrameError):
            parse_frame(build_frame(50)[:8])

    def test_missing_header(self):
        frame = bytearray(build_frame(50))
        frame[0] = 0x00
        with pytest.raises(FrameError):
            parse_frame(bytes(frame))


class TestFrameDecoder:
    """Test stream scanning."""

    def test_clean_frame(self):
        assert decoder_for(FakeSerial(build_frame(42))).read_distance() == 42

    def test_skips_leading_noise(self):
        stream = FakeSerial(b"\x00\x12\x59\x34\xff" + build_frame(77))
        assert decoder_for(stream).read_distance() == 77

    def test_flushes_stale_frames(self):
        """Frames buffered before the attempt are not used."""
        stream = FakeSerial(incoming=build_frame(70), stale=build_frame(30) * 3)
        assert decoder_for(stream).read_distance() == 70
        assert stream.resets == 1

    def test_settles_before_scanning(self):
        slept = []
        decoder = FrameDecoder(FakeSerial(build_frame(42)), timeout=0.05, settle=0.02, sleep=slept.append)
        decoder.read_distance()
        assert slept == [0.02]

    def test_corrupted_checksum_never_yields_distance(self):
        stream = FakeSerial(corrupt(build_frame(50)) * 4)
        assert decoder_for(stream).read_distance() == NO_READING

    def test_recovers_after_corrupted_frame(self):
        stream = FakeSerial(corrupt(build_frame(50)) + build_frame(60))
        assert decoder_for(stream).read_distance() == 60

    def test_zero_distance_rejected(self):
        assert decoder_for(FakeSerial(build_frame(0))).read_distance() == NO_READING

    def test_over_range_rejected(self):
        stream = FakeSerial(build_frame(MAX_DISTANCE_CM) + build_frame(65535))
        assert decoder_for(stream).read_distance() == NO_READING

    def test_implausible_then_valid(self):
        stream = FakeSerial(build_frame(0) + build_frame(88))
        assert decoder_for(stream).read_distance() == 88

    def test_partial_frame_times_out(self):
        stream = FakeSerial(build_frame(50)[:5])
        assert decoder_for(stream).read_distance() == NO_READING

    def test_silent_line_times_out(self):
        assert decoder_for(FakeSerial()).read_distance() == NO_READING

    def test_serial_fault_is_no_reading(self):
        assert decoder_for(BrokenSerial(build_frame(50))).read_distance() == NO_READING

    def test_timeout_is_bounded(self):
        ticks = iter(range(1000))
        decoder = FrameDecoder(
            FakeSerial(),
            timeout=5,
            settle=0,
            clock=lambda: next(ticks),
            sleep=lambda s: None,
        )
        assert decoder.read_distance() == NO_READING
