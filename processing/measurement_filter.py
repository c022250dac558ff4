"""Signal-quality filtering of lidar measurements.

Three independent tests are applied to every sample:
1. confidence at or above a threshold
2. range at or above a minimum (the sensor's own housing and the operator
   show up as very close returns)
3. isolation: a sample needs a minimum number of other samples within a
   radius, which removes single stray returns
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from scipy.spatial import cKDTree

from capture.packet_decoder import Measurement, measurements_to_points


@dataclass
class MeasurementFilter:
    """Reject low-confidence, too-close and isolated samples."""

    confidence_threshold: int = 210
    min_distance_m: float = 0.5
    isolation_distance_m: float = 0.75  # 0 disables the isolation test
    min_neighbours: int = 2

    @classmethod
    def from_config(cls, config) -> "MeasurementFilter":
        return cls(
            confidence_threshold=config.confidence_threshold,
            min_distance_m=config.min_distance_m,
            isolation_distance_m=config.isolation_distance_m,
            min_neighbours=config.min_neighbours,
        )

    def neighbour_counts(self, samples: Sequence[Measurement]) -> np.ndarray:
        """Number of other samples within the isolation distance of each sample."""
        points = measurements_to_points(samples)
        if len(points) == 0:
            return np.zeros(0, dtype=int)
        tree = cKDTree(points)
        counts = tree.query_ball_point(
            points, r=self.isolation_distance_m, return_length=True
        )
        # Each point finds itself.
        return np.asarray(counts, dtype=int) - 1

    def apply(self, samples: Sequence[Measurement]) -> List[Measurement]:
        if not samples:
            return []

        confidence = np.array([m.confidence for m in samples])
        distance = np.array([m.distance_mm for m in samples], dtype=float) / 1000.0
        keep = (confidence >= self.confidence_threshold) & (distance >= self.min_distance_m)

        if self.isolation_distance_m > 0 and self.min_neighbours > 0:
            keep &= self.neighbour_counts(samples) >= self.min_neighbours

        return [m for m, k in zip(samples, keep) if k]


def apply_filters(
    samples: Sequence[Measurement],
    confidence_threshold: int,
    min_distance_m: float,
    isolation_distance_m: float,
    min_neighbours: int,
) -> List[Measurement]:
    """Convenience function for one-off filtering."""
    return MeasurementFilter(
        confidence_threshold=confidence_threshold,
        min_distance_m=min_distance_m,
        isolation_distance_m=isolation_distance_m,
        min_neighbours=min_neighbours,
    ).apply(samples)
