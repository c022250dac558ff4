"""LD06 packet decoding for Planpose capture.

The LD06 streams fixed 47-byte frames over a 230400 baud UART:

    0x54 0x2C | speed u16 | start u16 | 12 x (distance u16, confidence u8)
              | stop u16 | timestamp u16 | crc u8

All multi-byte fields are little-endian. Angles are in centidegrees and the
twelve samples of a frame are spread linearly between the start and stop
angle. The trailing byte is a CRC-8 (polynomial 0x4D, init 0) over the 46
bytes that precede it.

The decoder is a small synchronous state machine. It holds on to partial
frames between calls, so a transport can hand it chunks of any size in
arrival order.
"""
from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

HEADER = 0x54
VER_LEN = 0x2C
FRAME_SIZE = 47
POINTS_PER_FRAME = 12
CRC_POLY = 0x4D

_HEAD_FORMAT = "<BBHH"
_POINT_FORMAT = "<HB"
_TAIL_FORMAT = "<HHB"


class MalformedPacket(ValueError):
    """Frame failed length, header or CRC validation."""


def _build_crc_table() -> Tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ CRC_POLY) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
        table.append(crc)
    return tuple(table)


CRC_TABLE = _build_crc_table()


def crc8(data: bytes) -> int:
    """CRC-8 as used by the LD06 (poly 0x4D, no reflection)."""
    crc = 0
    for b in data:
        crc = CRC_TABLE[(crc ^ b) & 0xFF]
    return crc


@dataclass(frozen=True)
class Measurement:
    """Single range/bearing sample."""
    angle_deg: float
    distance_mm: int
    confidence: int
    timestamp: float = field(default_factory=time.time)

    @property
    def distance_m(self) -> float:
        return self.distance_mm / 1000.0

    def to_point(self) -> Tuple[float, float]:
        """Cartesian point in the sensor frame (0 deg along +y, clockwise)."""
        a = math.radians(self.angle_deg)
        r = self.distance_m
        return (math.sin(a) * r, math.cos(a) * r)


def measurements_to_points(samples: Sequence[Measurement]) -> np.ndarray:
    """Nx2 array of sensor-frame points."""
    if not samples:
        return np.zeros((0, 2))
    angles = np.radians([m.angle_deg for m in samples])
    r = np.array([m.distance_mm for m in samples], dtype=float) / 1000.0
    return np.column_stack((np.sin(angles) * r, np.cos(angles) * r))


class DecoderState(Enum):
    """Frame synchronisation state."""
    SYNC0 = 0
    SYNC1 = 1
    SYNC2 = 2


class PacketDecoder:
    """Byte-level LD06 frame decoder.

    Feed raw bytes in the order they were received; complete, valid frames
    come back as measurements. Corrupted frames are dropped and counted.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._state = DecoderState.SYNC0
        self._frame = bytearray()
        self.frames_decoded = 0
        self.corrupted_packets = 0

    @property
    def state(self) -> DecoderState:
        return self._state

    def reset(self):
        """Drop any partial frame and resynchronise."""
        self._state = DecoderState.SYNC0
        self._frame.clear()

    def feed(self, data: bytes) -> List[Measurement]:
        """Consume bytes and return measurements from every completed frame."""
        out: List[Measurement] = []
        for measurements in self.iter_frames(data):
            out.extend(measurements)
        return out

    def iter_frames(self, data: bytes) -> Iterator[List[Measurement]]:
        """Consume bytes, yielding the measurements of each valid frame.

        Frames are yielded as soon as they complete, so ``corrupted_packets``
        only counts bad frames up to the one just yielded. Consume the whole
        iterator; bytes after the point where it is abandoned are not read.
        """
        for b in data:
            if self._state is DecoderState.SYNC0:
                if b == HEADER:
                    self._frame = bytearray((b,))
                    self._state = DecoderState.SYNC1
            elif self._state is DecoderState.SYNC1:
                if b == VER_LEN:
                    self._frame.append(b)
                    self._state = DecoderState.SYNC2
                else:
                    self._state = DecoderState.SYNC0
                    self._frame.clear()
            else:
                self._frame.append(b)
                if len(self._frame) == FRAME_SIZE:
                    frame = bytes(self._frame)
                    self.reset()
                    try:
                        measurements = self.decode_frame(frame)
                    except MalformedPacket as e:
                        self.corrupted_packets += 1
                        logger.debug(f"Dropping frame: {e}")
                        continue
                    yield measurements

    def decode_frame(self, frame: bytes) -> List[Measurement]:
        """Decode one complete frame.

        Raises:
            MalformedPacket: wrong length, header or checksum
        """
        if len(frame) != FRAME_SIZE:
            raise MalformedPacket(f"expected {FRAME_SIZE} bytes, got {len(frame)}")
        if frame[0] != HEADER or frame[1] != VER_LEN:
            raise MalformedPacket(f"bad header {frame[0]:#04x} {frame[1]:#04x}")
        crc = crc8(frame[:FRAME_SIZE - 1])
        if crc != frame[FRAME_SIZE - 1]:
            raise MalformedPacket(
                f"crc mismatch: computed {crc:#04x}, frame has {frame[FRAME_SIZE - 1]:#04x}"
            )

        _, _, _speed, start = struct.unpack_from(_HEAD_FORMAT, frame, 0)
        stop, _sensor_ts, _ = struct.unpack_from(_TAIL_FORMAT, frame, 6 + 3 * POINTS_PER_FRAME)

        start_deg = start / 100.0
        stop_deg = stop / 100.0
        if stop_deg < start_deg:
            stop_deg += 360.0
        step = (stop_deg - start_deg) / (POINTS_PER_FRAME - 1)

        now = self._clock()
        measurements = []
        for i in range(POINTS_PER_FRAME):
            distance, confidence = struct.unpack_from(_POINT_FORMAT, frame, 6 + 3 * i)
            angle = (start_deg + step * i) % 360.0
            measurements.append(Measurement(angle, distance, confidence, now))

        self.frames_decoded += 1
        return measurements

    def iter_measurements(self, chunks: Iterable[bytes]) -> Iterator[Measurement]:
        """Decode a stream of byte chunks lazily."""
        for chunk in chunks:
            for measurements in self.iter_frames(chunk):
                yield from measurements


def encode_frame(
    start_deg: float,
    stop_deg: float,
    points: Sequence[Tuple[int, int]],
    speed: int = 3600,
    sensor_timestamp: int = 0,
    crc: Optional[int] = None,
) -> bytes:
    """Build an LD06 frame.

    Args:
        start_deg: Angle of the first sample
        stop_deg: Angle of the last sample (may be below start_deg on wrap)
        points: Twelve (distance_mm, confidence) pairs
        speed: Rotation speed in deg/s
        sensor_timestamp: Sensor clock in ms (wraps at 30000)
        crc: Override the checksum byte, for producing corrupt frames
    """
    if len(points) != POINTS_PER_FRAME:
        raise ValueError(f"need {POINTS_PER_FRAME} points, got {len(points)}")

    body = bytearray(struct.pack(
        _HEAD_FORMAT, HEADER, VER_LEN, speed & 0xFFFF,
        int(round(start_deg * 100)) % 36000,
    ))
    for distance, confidence in points:
        body += struct.pack(_POINT_FORMAT, int(distance) & 0xFFFF, int(confidence) & 0xFF)
    body += struct.pack("<HH", int(round(stop_deg * 100)) % 36000, sensor_timestamp & 0xFFFF)
    body.append(crc8(body) if crc is None else crc & 0xFF)
    return bytes(body)
