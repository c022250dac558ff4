"""Gyroscope heading integration.

Integrates the vertical angular velocity (gyro_z, rad/s) into an absolute
heading. The heading can be overwritten at any time with an externally known
value, which resets accumulated drift; integration then continues from the
new value.
"""
from __future__ import annotations

import dataclasses
import math
from typing import List, Optional, Sequence

from capture.rotation import ImuSample, Rotation

TWO_PI = 2.0 * math.pi


def normalize_radians(angle: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    value = angle % TWO_PI
    if value > math.pi:
        value -= TWO_PI
    return value


def normalize_degrees(angle: float) -> float:
    """Wrap an angle into [-180, 180)."""
    value = angle % 360.0
    if value >= 180.0:
        value -= 360.0
    return value


class OrientationTracker:
    """Running heading from gyroscope samples."""

    def __init__(self):
        self._orientation_rad = 0.0
        self._orientation_deg = 0.0
        self._last_timestamp: Optional[float] = None

    @property
    def orientation_deg(self) -> float:
        return self._orientation_deg

    @property
    def orientation_rad(self) -> float:
        return self._orientation_rad

    @property
    def last_timestamp(self) -> Optional[float]:
        return self._last_timestamp

    def integrate(
        self,
        samples: Sequence[ImuSample],
        start_timestamp: Optional[float] = None,
    ) -> float:
        """Integrate samples ordered by timestamp.

        Args:
            samples: Gyroscope samples
            start_timestamp: Beginning of the first integration window; defaults
                to the last integrated sample, then to the first new sample

        Returns:
            Heading in degrees, [-180, 180)
        """
        if not samples:
            return self._orientation_deg

        previous = start_timestamp
        if previous is None:
            previous = self._last_timestamp
        if previous is None:
            previous = samples[0].timestamp

        updated = self._orientation_rad
        for sample in samples:
            dt = sample.timestamp - previous
            if dt != 0:
                updated += sample.gyro_z * dt
            previous = sample.timestamp

        self._last_timestamp = previous
        self._orientation_rad = normalize_radians(updated)
        self._orientation_deg = normalize_degrees(math.degrees(self._orientation_rad))
        return self._orientation_deg

    def apply(self, orientation_deg: float, last_timestamp: Optional[float] = None):
        """Replace the heading with an absolute value."""
        self._orientation_deg = normalize_degrees(orientation_deg)
        self._orientation_rad = normalize_radians(math.radians(self._orientation_deg))
        if last_timestamp is not None:
            self._last_timestamp = last_timestamp

    def reset(self):
        self._orientation_rad = 0.0
        self._orientation_deg = 0.0
        self._last_timestamp = None


def with_orientation(rotations: Sequence[Rotation]) -> List[Rotation]:
    """Give every recorded rotation a heading.

    A stored heading is adopted as is. Otherwise the rotation's gyroscope
    samples are integrated from where the previous rotation's samples ended,
    and a rotation without samples inherits the previous heading.
    """
    tracker = OrientationTracker()
    current = 0.0
    previous_ts: Optional[float] = None
    result = []

    for rotation in rotations:
        last_gyro_ts = rotation.gyroscope[-1].timestamp if rotation.gyroscope else None

        if rotation.gyroscope_orientation is not None:
            orientation = normalize_degrees(rotation.gyroscope_orientation)
            tracker.apply(orientation, last_gyro_ts if last_gyro_ts is not None else previous_ts)
        elif not rotation.gyroscope:
            orientation = current
        else:
            start = previous_ts if previous_ts is not None else rotation.gyroscope[0].timestamp
            orientation = tracker.integrate(rotation.gyroscope, start)

        current = orientation
        if last_gyro_ts is not None:
            previous_ts = last_gyro_ts
        result.append(dataclasses.replace(rotation, gyroscope_orientation=orientation))

    return result
