"""Sweep records and sweep assembly.

A Rotation is one full revolution of the sensor: its measurements, the
gyroscope samples recorded while it was collected, and optionally an absolute
heading fixed from outside (e.g. a fused rotation-vector sensor).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional

from .packet_decoder import Measurement, PacketDecoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImuSample:
    """Single gyroscope sample."""
    timestamp: float
    gyro_x: float = 0.0
    gyro_y: float = 0.0
    gyro_z: float = 0.0  # rad/s, positive = CCW when viewed from above


@dataclass(frozen=True)
class OrientationSample:
    """Rotation-vector quaternion reported by a fused orientation sensor."""
    w: float
    x: float
    y: float
    z: float
    timestamp: float = 0.0
    accuracy: Optional[float] = None

    def yaw_degrees(self) -> float:
        """Heading around the vertical axis, in [-180, 180)."""
        yaw = math.atan2(
            2.0 * (self.w * self.z + self.x * self.y),
            1.0 - 2.0 * (self.y * self.y + self.z * self.z),
        )
        deg = math.degrees(yaw) % 360.0
        if deg >= 180.0:
            deg -= 360.0
        return deg


@dataclass(frozen=True)
class Rotation:
    """One sweep of measurements plus its orientation inputs."""
    measurements: List[Measurement]
    start: float
    gyroscope: List[ImuSample] = field(default_factory=list)
    gyroscope_orientation: Optional[float] = None
    corrupted_packets: int = 0

    @property
    def end(self) -> float:
        if self.measurements:
            return self.measurements[-1].timestamp
        return self.start

    def __len__(self) -> int:
        return len(self.measurements)


class RotationAssembler:
    """Group a measurement stream into sweeps.

    A sweep closes when the bearing wraps from the end of the circle back to
    its start. Sweeps shorter than ``min_points`` are treated as partial (the
    first one after connecting usually is) and discarded.
    """

    WRAP_HIGH = 300.0
    WRAP_LOW = 60.0

    def __init__(self, decoder: Optional[PacketDecoder] = None, min_points: int = 10):
        self.decoder = decoder
        self.min_points = min_points
        self._current: List[Measurement] = []
        self._gyro: List[ImuSample] = []
        self._orientation: Optional[float] = None
        self._last_angle: Optional[float] = None
        self._corrupted_seen = decoder.corrupted_packets if decoder else 0
        self.rotations_emitted = 0
        self.rotations_dropped = 0

    def add_gyroscope(self, samples: Iterable[ImuSample]):
        """Attach gyroscope samples to the sweep being collected."""
        self._gyro.extend(samples)

    def set_orientation(self, orientation_deg: Optional[float]):
        """Fix an absolute heading for the sweep being collected."""
        self._orientation = orientation_deg

    def add(self, measurement: Measurement) -> Optional[Rotation]:
        """Add a measurement; return the completed sweep when it wraps."""
        completed = None
        if (
            self._last_angle is not None
            and self._last_angle > self.WRAP_HIGH
            and measurement.angle_deg < self.WRAP_LOW
        ):
            completed = self._close()
        self._current.append(measurement)
        self._last_angle = measurement.angle_deg
        return completed

    def feed(self, data: bytes) -> List[Rotation]:
        """Decode raw bytes and return every sweep they complete.

        Frames are handed over one at a time so a checksum failure is charged
        to the sweep that was being collected when the bad frame arrived.
        """
        if self.decoder is None:
            raise RuntimeError("RotationAssembler was created without a decoder")
        rotations = []
        for frame in self.decoder.iter_frames(data):
            for m in frame:
                rotation = self.add(m)
                if rotation is not None:
                    rotations.append(rotation)
        return rotations

    def iter_rotations(self, measurements: Iterable[Measurement]) -> Iterator[Rotation]:
        for m in measurements:
            rotation = self.add(m)
            if rotation is not None:
                yield rotation

    def flush(self) -> Optional[Rotation]:
        """Close whatever has been collected so far."""
        if not self._current:
            return None
        return self._close()

    def _close(self) -> Optional[Rotation]:
        measurements = self._current
        corrupted = 0
        if self.decoder is not None:
            corrupted = self.decoder.corrupted_packets - self._corrupted_seen
            self._corrupted_seen = self.decoder.corrupted_packets

        rotation = None
        if len(measurements) >= self.min_points:
            rotation = Rotation(
                measurements=measurements,
                start=measurements[0].timestamp,
                gyroscope=self._gyro,
                gyroscope_orientation=self._orientation,
                corrupted_packets=corrupted,
            )
            self.rotations_emitted += 1
            if corrupted:
                logger.debug(f"Rotation {self.rotations_emitted} had {corrupted} corrupted packets")
        else:
            self.rotations_dropped += 1
            logger.debug(f"Discarding partial rotation with {len(measurements)} points")

        self._current = []
        self._gyro = []
        self._orientation = None
        return rotation


def split_rotations(
    measurements: Iterable[Measurement],
    min_points: int = 10,
    on_rotation: Optional[Callable[[Rotation], None]] = None,
) -> List[Rotation]:
    """Split a finite measurement sequence into sweeps, including the tail."""
    assembler = RotationAssembler(min_points=min_points)
    rotations = []
    for rotation in assembler.iter_rotations(measurements):
        rotations.append(rotation)
        if on_rotation:
            on_rotation(rotation)
    tail = assembler.flush()
    if tail is not None:
        rotations.append(tail)
        if on_rotation:
            on_rotation(tail)
    return rotations
