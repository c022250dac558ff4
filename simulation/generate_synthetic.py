"""Synthetic lidar data generator for Planpose.

This module generates synthetic LD06 sweeps, raw byte streams and gyroscope
traces from a floor plan polygon, for development, testing and replay
through the localization pipeline.

Features:
- Floor plans from vertex lists (rectangle and L-shape presets)
- Sweeps at a known pose (position, orientation, scale)
- Range noise, dropouts and low-confidence returns
- Packetisation into valid LD06 frames, optionally with corrupted frames
- Gyroscope traces for heading integration

Bearings use the sensor convention: 0 deg along +y, clockwise positive.

Usage:
    python -m simulation.generate_synthetic --out sessions/synthetic --rotations 5
"""
from __future__ import annotations

import argparse
import json
import math
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from capture.packet_decoder import POINTS_PER_FRAME, Measurement, encode_frame
from capture.rotation import ImuSample


@dataclass
class Wall:
    """A wall segment defined by two endpoints."""
    x1: float
    y1: float
    x2: float
    y2: float

    def ray_intersection(self, ox: float, oy: float, dx: float, dy: float) -> Optional[float]:
        """Find intersection distance from ray origin to wall.

        Args:
            ox, oy: Ray origin
            dx, dy: Ray direction (normalized)

        Returns:
            Distance to intersection, or None if no intersection
        """
        wx = self.x2 - self.x1
        wy = self.y2 - self.y1

        # Solve: origin + t*dir = wall_start + s*wall_dir
        denom = dx * wy - dy * wx
        if abs(denom) < 1e-9:
            return None  # Parallel

        t = ((self.x1 - ox) * wy - (self.y1 - oy) * wx) / denom
        s = ((self.x1 - ox) * dy - (self.y1 - oy) * dx) / denom

        if t > 0 and 0 <= s <= 1:
            return t
        return None


@dataclass
class Room:
    """Floor plan polygon for simulation."""
    vertices: List[Tuple[float, float]] = field(default_factory=list)

    @classmethod
    def rectangle(cls, width: float = 10.0, height: float = 8.0, center: Tuple[float, float] = (0, 0)) -> "Room":
        """Create a rectangular room."""
        cx, cy = center
        hw, hh = width / 2, height / 2
        return cls(vertices=[
            (cx - hw, cy - hh),
            (cx + hw, cy - hh),
            (cx + hw, cy + hh),
            (cx - hw, cy + hh),
        ])

    @classmethod
    def l_shaped(cls, width: float = 10.0, height: float = 8.0) -> "Room":
        """Create an L-shaped room with the top-right quarter missing."""
        hw, hh = width / 2, height / 2
        return cls(vertices=[
            (-hw, -hh),
            (hw, -hh),
            (hw, 0.0),
            (0.0, 0.0),
            (0.0, hh),
            (-hw, hh),
        ])

    @property
    def walls(self) -> List[Wall]:
        n = len(self.vertices)
        return [
            Wall(*self.vertices[i], *self.vertices[(i + 1) % n])
            for i in range(n)
        ]

    def cast_ray(self, ox: float, oy: float, bearing_deg: float, max_range: float = 12.0) -> float:
        """Distance to the nearest wall along a bearing (0 = +y, clockwise)."""
        rad = math.radians(bearing_deg)
        dx = math.sin(rad)
        dy = math.cos(rad)

        min_dist = max_range
        for wall in self.walls:
            dist = wall.ray_intersection(ox, oy, dx, dy)
            if dist is not None and dist < min_dist:
                min_dist = dist
        return min_dist


@dataclass
class LidarNoise:
    """LiDAR simulation noise parameters."""
    range_noise_stddev: float = 0.0  # meters
    dropout_rate: float = 0.0  # probability of a zero-confidence return
    confidence: int = 230
    low_confidence: int = 40


def synthetic_measurements(
    room: Room,
    x: float,
    y: float,
    orientation: float,
    scale: float = 1.0,
    step_deg: float = 1.0,
    noise: Optional[LidarNoise] = None,
    rng: Optional[np.random.Generator] = None,
    timestamp: float = 0.0,
) -> List[Measurement]:
    """One sweep as seen from a pose.

    The pose follows the estimator convention: a sensor bearing ``a`` looks
    along floor plan bearing ``a - orientation``, and floor plan distances
    are ``scale`` times sensor distances.
    """
    noise = noise or LidarNoise()
    if rng is None:
        rng = np.random.default_rng()

    out = []
    for a in np.arange(0.0, 360.0, step_deg):
        d = room.cast_ray(x, y, a - orientation) / scale
        confidence = noise.confidence
        if noise.range_noise_stddev > 0:
            d += rng.normal(0.0, noise.range_noise_stddev)
        if noise.dropout_rate > 0 and rng.random() < noise.dropout_rate:
            confidence = noise.low_confidence
        out.append(Measurement(float(a), max(0, int(d * 1000)), confidence, timestamp))
    return out


def packetize(
    measurements: Sequence[Measurement],
    sensor_timestamp: int = 0,
    frame_interval_ms: int = 3,
    corrupt_every: int = 0,
) -> bytes:
    """Pack measurements into LD06 frames, twelve at a time.

    Trailing measurements that do not fill a frame are dropped. With
    ``corrupt_every`` set, every n-th frame gets a wrong checksum.
    """
    stream = bytearray()
    frames = len(measurements) // POINTS_PER_FRAME
    for i in range(frames):
        chunk = measurements[i * POINTS_PER_FRAME:(i + 1) * POINTS_PER_FRAME]
        frame = encode_frame(
            chunk[0].angle_deg,
            chunk[-1].angle_deg,
            [(m.distance_mm, m.confidence) for m in chunk],
            sensor_timestamp=(sensor_timestamp + i * frame_interval_ms) % 30000,
        )
        if corrupt_every and (i + 1) % corrupt_every == 0:
            frame = frame[:-1] + bytes([(frame[-1] + 1) & 0xFF])
        stream += frame
    return bytes(stream)


def gyro_trace(
    start: float,
    duration: float,
    yaw_rate: float,
    rate_hz: float = 100.0,
    noise_stddev: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> List[ImuSample]:
    """Constant-rate rotation about the vertical axis, in rad/s."""
    if rng is None:
        rng = np.random.default_rng()
    n = int(round(duration * rate_hz)) + 1
    samples = []
    for i in range(n):
        z = yaw_rate
        if noise_stddev > 0:
            z += rng.normal(0.0, noise_stddev)
        samples.append(ImuSample(timestamp=start + i / rate_hz, gyro_z=float(z)))
    return samples


@dataclass
class SyntheticSession:
    """Generator for multi-rotation byte streams."""

    room: Room = field(default_factory=Room.rectangle)
    noise: LidarNoise = field(default_factory=LidarNoise)
    step_deg: float = 1.0
    corrupt_every: int = 0
    seed: Optional[int] = None

    def generate(self, poses: Sequence[Tuple[float, float, float]]) -> bytes:
        """Byte stream with one sweep per (x, y, orientation) pose."""
        rng = np.random.default_rng(self.seed)
        stream = bytearray()
        for i, (x, y, orientation) in enumerate(poses):
            sweep = synthetic_measurements(
                self.room, x, y, orientation,
                step_deg=self.step_deg, noise=self.noise, rng=rng,
            )
            stream += packetize(sweep, sensor_timestamp=i * 100, corrupt_every=self.corrupt_every)
        return bytes(stream)

    def save(self, out_dir: str, poses: Sequence[Tuple[float, float, float]]) -> str:
        """Write stream.bin, floor_plan.json and poses.json to out_dir."""
        os.makedirs(out_dir, exist_ok=True)
        with open(os.path.join(out_dir, "stream.bin"), "wb") as f:
            f.write(self.generate(poses))
        with open(os.path.join(out_dir, "floor_plan.json"), "w") as f:
            json.dump([list(v) for v in self.room.vertices], f, indent=2)
        with open(os.path.join(out_dir, "poses.json"), "w") as f:
            json.dump([{"x": x, "y": y, "orientation": o} for x, y, o in poses], f, indent=2)
        return out_dir


def walk_poses(
    n: int,
    start: Tuple[float, float] = (0.0, 0.0),
    step: Tuple[float, float] = (0.2, 0.1),
    orientation: float = 30.0,
    turn: float = 0.0,
) -> List[Tuple[float, float, float]]:
    """Poses moving along a straight line."""
    return [
        (start[0] + i * step[0], start[1] + i * step[1], (orientation + i * turn) % 360.0)
        for i in range(n)
    ]


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Generate a synthetic LD06 session")
    parser.add_argument("--out", required=True, help="Output directory")
    parser.add_argument("--rotations", type=int, default=5, help="Number of sweeps")
    parser.add_argument("--room", choices=["rectangle", "l_shaped"], default="rectangle")
    parser.add_argument("--width", type=float, default=6.0)
    parser.add_argument("--height", type=float, default=4.0)
    parser.add_argument("--orientation", type=float, default=30.0, help="Sensor orientation (deg)")
    parser.add_argument("--noise", type=float, default=0.01, help="Range noise stddev (m)")
    parser.add_argument("--corrupt-every", type=int, default=0, help="Corrupt every n-th frame")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    if args.room == "l_shaped":
        room = Room.l_shaped(args.width, args.height)
    else:
        room = Room.rectangle(args.width, args.height)

    session = SyntheticSession(
        room=room,
        noise=LidarNoise(range_noise_stddev=args.noise),
        corrupt_every=args.corrupt_every,
        seed=args.seed,
    )
    poses = walk_poses(args.rotations, start=(-0.5, -0.5), orientation=args.orientation)
    session.save(args.out, poses)
    print(f"Wrote {args.rotations} rotations to {args.out}")
