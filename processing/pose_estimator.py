"""Pose search against a floor plan occupancy grid.

A pose maps sensor-frame points onto the floor plan:

    world = R(orientation) @ point * scale + (x, y)

with R a counter-clockwise rotation, as in the 2D pose transforms used
elsewhere in the processing package. A pose is scored by how many
transformed samples land inside the floor plan, optionally minus a penalty
for every sample that lands outside.

GridPoseEstimator is the exhaustive correlative search: every orientation,
scale and cell-aligned translation is scored and the best one wins. The
particle filter lives in particle_filter.py and shares the helpers here.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from capture.packet_decoder import Measurement, measurements_to_points

from .occupancy_grid import OccupancyGrid

logger = logging.getLogger(__name__)


class PoseAlgorithm(Enum):
    """Pose search strategy."""
    EXHAUSTIVE = "exhaustive"
    PARTICLE = "particle"


class EstimationCancelled(Exception):
    """Estimate abandoned because the caller cancelled it."""


@dataclass(frozen=True)
class PoseEstimate:
    """Alignment of a sweep onto the floor plan."""
    orientation: float  # degrees, [0, 360)
    scale: float
    x: float
    y: float

    @property
    def translation(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class EstimateResult:
    """Outcome of one pose search."""
    estimate: Optional[PoseEstimate]
    combinations: int
    duration_ms: float
    score: float  # -1 when there was nothing to score

    @property
    def found(self) -> bool:
        return self.estimate is not None


def rotation_matrix(orientation_deg: float) -> np.ndarray:
    rad = math.radians(orientation_deg)
    c, s = math.cos(rad), math.sin(rad)
    return np.array([[c, -s], [s, c]])


def transform_points(points: np.ndarray, pose: PoseEstimate) -> np.ndarray:
    """Map Nx2 sensor-frame points into floor plan coordinates."""
    if len(points) == 0:
        return points
    R = rotation_matrix(pose.orientation)
    return (R @ points.T).T * pose.scale + np.array([pose.x, pose.y])


def score_pose(
    samples: Sequence[Measurement],
    grid: OccupancyGrid,
    pose: PoseEstimate,
    miss_penalty: float = 0.0,
) -> float:
    """Hits minus penalised misses for a single pose."""
    world = transform_points(measurements_to_points(samples), pose)
    if len(world) == 0:
        return 0.0
    hits = int(grid.occupied(world[:, 0], world[:, 1]).sum())
    return hits - miss_penalty * (len(world) - hits)


def orientation_candidates(
    step: float,
    span: float = 360.0,
    prior: Optional[PoseEstimate] = None,
) -> List[float]:
    """Orientations to try, in search order.

    Without a prior (or with a span of a full turn) the whole circle is
    stepped from 0. With a prior the window of width ``span`` centred on the
    prior's orientation is stepped from its low edge and wrapped into
    [0, 360). The window is returned in ascending order so a window that
    crosses north is searched 0 first, the same as the full circle.
    """
    if step <= 0:
        raise ValueError(f"orientation step must be positive, got {step}")
    if prior is None or span >= 360.0:
        return [float(o) for o in np.arange(0.0, 360.0, step)]

    low = prior.orientation - span / 2
    n = int(math.floor(span / step + 1e-9)) + 1
    return sorted((low + k * step) % 360.0 for k in range(n))


def scale_candidates(scale_range: Tuple[float, float], step: float) -> List[float]:
    low, high = scale_range
    if step <= 0 or high <= low:
        return [float(low)]
    return [float(s) for s in np.arange(low, high + 1e-6, step)]


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


@dataclass
class GridPoseEstimator:
    """Exhaustive search over orientation, scale and translation.

    Ties are resolved by search order: orientation, then scale, then y, then
    x, first found wins. A prior only narrows the orientation window.
    """

    orientation_step: float = 2.0  # degrees
    orientation_span: float = 90.0  # degrees, used only with a prior
    scale_range: Tuple[float, float] = (0.8, 1.2)
    scale_step: float = 0.025
    miss_penalty: float = 0.0

    @classmethod
    def from_config(cls, config) -> "GridPoseEstimator":
        return cls(
            orientation_step=config.orientation_step_deg,
            orientation_span=config.orientation_span_deg,
            scale_range=config.scale_range,
            scale_step=config.scale_step,
            miss_penalty=config.miss_penalty,
        )

    def estimate(
        self,
        samples: Sequence[Measurement],
        grid: OccupancyGrid,
        prior: Optional[PoseEstimate] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EstimateResult:
        """Find the best pose for a sweep.

        Raises:
            EstimationCancelled: cancel_event was set during the search
        """
        started = time.perf_counter()
        if not samples:
            return EstimateResult(None, 0, _elapsed_ms(started), -1)

        offsets = measurements_to_points(samples)
        n = len(offsets)
        ox, oy = grid.origin
        tx = ox + np.arange(grid.width + 1) * grid.cell_size
        ty = oy + np.arange(grid.height + 1) * grid.cell_size
        shape = (len(ty), len(tx), n)

        best_score = -math.inf
        best: Optional[PoseEstimate] = None
        combinations = 0

        for orientation in orientation_candidates(self.orientation_step, self.orientation_span, prior):
            if cancel_event is not None and cancel_event.is_set():
                raise EstimationCancelled(f"cancelled after {combinations} combinations")

            rotated = offsets @ rotation_matrix(orientation).T
            for scale in scale_candidates(self.scale_range, self.scale_step):
                local = rotated * scale
                wx = np.broadcast_to(tx[None, :, None] + local[None, None, :, 0], shape)
                wy = np.broadcast_to(ty[:, None, None] + local[None, None, :, 1], shape)
                hits = grid.occupied(wx, wy).sum(axis=2)
                scores = hits - self.miss_penalty * (n - hits)
                combinations += scores.size

                # argmax takes the first maximum in row-major order: y, then x
                iy, ix = np.unravel_index(np.argmax(scores), scores.shape)
                score = float(scores[iy, ix])
                if score > best_score:
                    best_score = score
                    best = PoseEstimate(orientation, scale, float(tx[ix]), float(ty[iy]))

        duration = _elapsed_ms(started)
        if best_score <= 0:
            logger.debug(f"No alignment found after {combinations} combinations")
            return EstimateResult(None, combinations, duration, max(best_score, 0.0))

        logger.debug(
            f"Best pose {best} score={best_score} "
            f"({combinations} combinations, {duration:.0f}ms)"
        )
        return EstimateResult(best, combinations, duration, best_score)


def estimate_pose(
    samples: Sequence[Measurement],
    grid: OccupancyGrid,
    prior: Optional[PoseEstimate] = None,
    **kwargs,
) -> EstimateResult:
    """Convenience function for a one-off exhaustive search.

    Args:
        samples: Measurements of one sweep
        grid: Floor plan grid
        prior: Previous estimate narrowing the orientation window
        **kwargs: Parameters for GridPoseEstimator
    """
    return GridPoseEstimator(**kwargs).estimate(samples, grid, prior=prior)
