"""Straight-line feature extraction from a single lidar sweep.

Two interchangeable extractors are provided:
1. CLUSTER - walk the samples in bearing order and grow a running
   least-squares fit, splitting on angular gaps and on points that leave
   the fitted line
2. RANSAC - repeatedly fit the line with the most inliers from random pairs
   and remove its inliers from the pool

Lines from either extractor can be merged (forward pass, neighbouring
lines with similar orientation), filtered against adaptive length / support
thresholds, and resampled back into measurements so that pose estimation can
run on line features instead of raw returns.

Orientation follows the sensor's bearing convention: 0 deg along +y,
clockwise positive, taken modulo 180 because a line has no direction.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from capture.packet_decoder import Measurement, measurements_to_points

Point = Tuple[float, float]

# Regression slopes are treated as unusable when the x spread is this small
# relative to the y spread.
VERTICAL_RATIO = 1e-4


class LineAlgorithm(Enum):
    """Line extraction strategy."""
    CLUSTER = "cluster"
    RANSAC = "ransac"


@dataclass(frozen=True)
class LineFeature:
    """Line segment supported by a set of samples."""
    start: Point
    end: Point
    orientation: float  # degrees, [0, 180)
    length: float
    point_count: int

    @property
    def midpoint(self) -> Point:
        return ((self.start[0] + self.end[0]) / 2, (self.start[1] + self.end[1]) / 2)


@dataclass
class AdaptiveFilterParams:
    """Thresholds for filter_adaptive."""
    enabled: bool = True
    length_percentile: float = 75.0
    length_factor: float = 0.5
    length_min: float = 0.2
    length_max: float = 1.0
    inliers_percentile: float = 75.0
    inliers_factor: float = 0.5
    inliers_min: float = 3
    inliers_max: float = 10

    @classmethod
    def from_config(cls, config) -> "AdaptiveFilterParams":
        return cls(
            enabled=config.adaptive,
            length_percentile=config.length_percentile,
            length_factor=config.length_factor,
            length_min=config.length_min_m,
            length_max=config.length_max_m,
            inliers_percentile=config.inliers_percentile,
            inliers_factor=config.inliers_factor,
            inliers_min=config.inliers_min,
            inliers_max=config.inliers_max,
        )


class AdaptiveStats(NamedTuple):
    """Raw percentiles of line length and support."""
    length: float
    inliers: float


def angle_diff180(a: float, b: float) -> float:
    """Smallest difference between two undirected orientations, in degrees."""
    d = abs(a - b) % 180.0
    return min(d, 180.0 - d)


def _orientation(direction: np.ndarray) -> float:
    return math.degrees(math.atan2(direction[0], direction[1])) % 180.0


def _feature(origin: np.ndarray, direction: np.ndarray, points: np.ndarray) -> LineFeature:
    """Span the extreme projections of points on the line through origin."""
    t = (points - origin) @ direction
    start = origin + t.min() * direction
    end = origin + t.max() * direction
    return LineFeature(
        start=(float(start[0]), float(start[1])),
        end=(float(end[0]), float(end[1])),
        orientation=_orientation(direction),
        length=float(np.hypot(*(end - start))),
        point_count=len(points),
    )


class _RunningFit:
    """Incremental least-squares fit of y on x."""

    def __init__(self):
        self.points: List[Point] = []
        self._sx = self._sy = 0.0
        self._sxx = self._sxy = self._syy = 0.0

    def __len__(self):
        return len(self.points)

    def add(self, p: Point):
        x, y = p
        self.points.append(p)
        self._sx += x
        self._sy += y
        self._sxx += x * x
        self._sxy += x * y
        self._syy += y * y

    def slope_intercept(self) -> Tuple[float, float]:
        """Slope and intercept, NaN when the fit is undefined or near-vertical."""
        n = len(self.points)
        if n < 2:
            return math.nan, math.nan
        mx = self._sx / n
        my = self._sy / n
        cxx = self._sxx - n * mx * mx
        cxy = self._sxy - n * mx * my
        cyy = self._syy - n * my * my
        if cxx <= 1e-12 or cxx <= VERTICAL_RATIO * cyy:
            return math.nan, math.nan
        slope = cxy / cxx
        return slope, my - slope * mx

    def secant(self) -> Optional[np.ndarray]:
        if len(self.points) < 2:
            return None
        d = np.subtract(self.points[-1], self.points[0])
        norm = np.hypot(*d)
        if norm == 0:
            return None
        return d / norm

    def distance(self, p: Point) -> float:
        """Perpendicular distance of p to the current fit."""
        slope, intercept = self.slope_intercept()
        if math.isfinite(slope):
            return abs(slope * p[0] - p[1] + intercept) / math.hypot(slope, 1.0)
        d = self.secant()
        if d is None:
            return 0.0
        rel = np.subtract(p, self.points[0])
        return float(abs(rel[0] * d[1] - rel[1] * d[0]))

    def direction(self) -> np.ndarray:
        slope, _ = self.slope_intercept()
        if math.isfinite(slope):
            d = np.array([1.0, slope])
            return d / np.hypot(*d)
        d = self.secant()
        return d if d is not None else np.array([0.0, 1.0])


@dataclass
class LineDetector:
    """Extract line features from filtered measurements."""

    distance_threshold: float = 0.02  # meters - max distance from line to be inlier
    min_points: int = 5
    angle_tolerance: float = 5.0  # degrees - merge lines closer than this
    gap_tolerance: float = 3.0  # degrees - bearing gap that splits clusters
    algorithm: LineAlgorithm = LineAlgorithm.CLUSTER
    merge: bool = True
    ransac_trials: int = 100

    @classmethod
    def from_config(cls, config) -> "LineDetector":
        return cls(
            distance_threshold=config.distance_threshold_m,
            min_points=config.min_points,
            angle_tolerance=config.angle_tolerance_deg,
            gap_tolerance=config.gap_tolerance_deg,
            algorithm=LineAlgorithm(config.algorithm),
            merge=config.merge,
        )

    def detect(
        self,
        samples: Sequence[Measurement],
        rng: Optional[np.random.Generator] = None,
    ) -> List[LineFeature]:
        """Extract lines with the configured algorithm.

        Args:
            samples: Filtered measurements of one sweep
            rng: Random source for RANSAC (ignored by CLUSTER)
        """
        if self.algorithm is LineAlgorithm.RANSAC:
            lines = self.detect_ransac(samples, rng)
        else:
            lines = self.detect_cluster(samples)

        if self.merge:
            lines = merge_lines(lines, self.angle_tolerance)
        return lines

    def detect_cluster(self, samples: Sequence[Measurement]) -> List[LineFeature]:
        ordered = sorted(samples, key=lambda m: m.angle_deg)
        lines: List[LineFeature] = []
        cluster = _RunningFit()
        prev_angle = None

        for m in ordered:
            p = m.to_point()
            if len(cluster) and (
                m.angle_deg - prev_angle > self.gap_tolerance
                or cluster.distance(p) > self.distance_threshold
            ):
                self._close_cluster(cluster, lines)
                cluster = _RunningFit()
            cluster.add(p)
            prev_angle = m.angle_deg

        self._close_cluster(cluster, lines)
        return lines

    def _close_cluster(self, cluster: _RunningFit, lines: List[LineFeature]):
        if len(cluster) < self.min_points or len(cluster) < 2:
            return
        points = np.asarray(cluster.points, dtype=float)
        lines.append(_feature(points.mean(axis=0), cluster.direction(), points))

    def detect_ransac(
        self,
        samples: Sequence[Measurement],
        rng: Optional[np.random.Generator] = None,
    ) -> List[LineFeature]:
        if rng is None:
            rng = np.random.default_rng()

        points = measurements_to_points(samples)
        lines: List[LineFeature] = []
        needed = max(self.min_points, 2)

        while len(points) >= needed:
            best_mask = None
            best_count = 0
            best_origin = best_direction = None

            for _ in range(self.ransac_trials):
                i, j = rng.choice(len(points), size=2, replace=False)
                d = points[j] - points[i]
                norm = np.hypot(*d)
                if norm == 0:
                    continue
                d = d / norm
                rel = points - points[i]
                mask = np.abs(rel[:, 0] * d[1] - rel[:, 1] * d[0]) <= self.distance_threshold
                count = int(mask.sum())
                if count > best_count:
                    best_mask, best_count = mask, count
                    best_origin, best_direction = points[i], d

            if best_mask is None or best_count < self.min_points:
                break

            lines.append(_feature(best_origin, best_direction, points[best_mask]))
            points = points[~best_mask]

        return lines


def _join(a: LineFeature, b: LineFeature) -> LineFeature:
    rad = math.radians(a.orientation)
    direction = np.array([math.sin(rad), math.cos(rad)])
    origin = np.asarray(a.start, dtype=float)
    ends = np.array([a.start, a.end, b.start, b.end], dtype=float)
    t = (ends - origin) @ direction
    start = origin + t.min() * direction
    end = origin + t.max() * direction
    return LineFeature(
        start=(float(start[0]), float(start[1])),
        end=(float(end[0]), float(end[1])),
        orientation=a.orientation,
        length=float(np.hypot(*(end - start))),
        point_count=a.point_count + b.point_count,
    )


def merge_lines(lines: Sequence[LineFeature], angle_tolerance: float) -> List[LineFeature]:
    """Forward merge: each line is folded into its predecessor when parallel."""
    if len(lines) < 2 or angle_tolerance <= 0:
        return list(lines)

    merged = [lines[0]]
    for line in lines[1:]:
        if angle_diff180(merged[-1].orientation, line.orientation) <= angle_tolerance:
            merged[-1] = _join(merged[-1], line)
        else:
            merged.append(line)
    return merged


def filter_adaptive(
    lines: Sequence[LineFeature],
    params: AdaptiveFilterParams,
) -> Tuple[List[LineFeature], AdaptiveStats]:
    """Drop lines that are short or weakly supported relative to the sweep.

    Returns:
        Kept lines and the raw length / support percentiles
    """
    if not lines:
        return [], AdaptiveStats(0.0, 0.0)

    lengths = np.array([line.length for line in lines])
    counts = np.array([line.point_count for line in lines], dtype=float)
    stats = AdaptiveStats(
        float(np.percentile(lengths, params.length_percentile, method="weibull")),
        float(np.percentile(counts, params.inliers_percentile, method="weibull")),
    )
    if not params.enabled:
        return list(lines), stats

    min_length = min(max(params.length_factor * stats.length, params.length_min), params.length_max)
    min_inliers = min(max(params.inliers_factor * stats.inliers, params.inliers_min), params.inliers_max)
    kept = [
        line for line in lines
        if line.length >= min_length and line.point_count >= min_inliers
    ]
    return kept, stats


def as_measurements(
    lines: Sequence[LineFeature],
    timestamp: float = 0.0,
) -> List[Measurement]:
    """Resample lines into full-confidence measurements.

    Each line yields max(point_count, 2) evenly spaced samples, so line
    features carry roughly the same weight in pose scoring as the raw
    returns they replaced.
    """
    out: List[Measurement] = []
    for line in lines:
        n = max(line.point_count, 2)
        xs = np.linspace(line.start[0], line.end[0], n)
        ys = np.linspace(line.start[1], line.end[1], n)
        for x, y in zip(xs, ys):
            angle = math.degrees(math.atan2(x, y)) % 360.0
            distance = int(round(math.hypot(x, y) * 1000))
            out.append(Measurement(angle, distance, 255, timestamp))
    return out


def detect_lines(
    samples: Sequence[Measurement],
    rng: Optional[np.random.Generator] = None,
    **kwargs,
) -> List[LineFeature]:
    """Convenience function for line extraction.

    Args:
        samples: Filtered measurements
        rng: Random source for RANSAC
        **kwargs: Parameters for LineDetector
    """
    return LineDetector(**kwargs).detect(samples, rng=rng)
