"""Particle filter pose search.

Particles start uniformly over the floor plan envelope with random
orientation. Each iteration scores every particle, turns scores into
weights, and resamples with the low-variance (systematic) scheme, jittering
the copies. Scale is not estimated and stays at 1.0.

All particles of an iteration are scored together as one array operation;
iterations are sequential because resampling needs every weight.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from capture.packet_decoder import Measurement, measurements_to_points

from .occupancy_grid import OccupancyGrid
from .pose_estimator import EstimateResult, EstimationCancelled, PoseEstimate

logger = logging.getLogger(__name__)

WEIGHT_EPSILON = 1e-6
ORIENTATION_JITTER = 2.0  # degrees


@dataclass
class ParticlePoseEstimator:
    """Monte Carlo pose search."""

    particle_count: int = 200
    iterations: int = 5
    miss_penalty: float = 0.0

    @classmethod
    def from_config(cls, particles, pose) -> "ParticlePoseEstimator":
        return cls(
            particle_count=particles.particle_count,
            iterations=particles.iterations,
            miss_penalty=pose.miss_penalty,
        )

    def score(
        self,
        offsets: np.ndarray,
        grid: OccupancyGrid,
        xs: np.ndarray,
        ys: np.ndarray,
        orientations: np.ndarray,
    ) -> np.ndarray:
        """Score N particles against M sensor-frame offsets."""
        rad = np.radians(orientations)[:, None]
        c, s = np.cos(rad), np.sin(rad)
        px = offsets[None, :, 0]
        py = offsets[None, :, 1]
        wx = c * px - s * py + xs[:, None]
        wy = s * px + c * py + ys[:, None]
        hits = grid.occupied(wx, wy).sum(axis=1)
        return hits - self.miss_penalty * (offsets.shape[0] - hits)

    def estimate(
        self,
        samples: Sequence[Measurement],
        grid: OccupancyGrid,
        rng: Optional[np.random.Generator] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> EstimateResult:
        """Run the filter on one sweep.

        Args:
            samples: Measurements of one sweep
            grid: Floor plan grid
            rng: Random source; pass a seeded generator for repeatable runs
            cancel_event: Checked between iterations

        Raises:
            EstimationCancelled: cancel_event was set
        """
        started = time.perf_counter()
        if not samples:
            return EstimateResult(None, 0, (time.perf_counter() - started) * 1000.0, -1)
        if rng is None:
            rng = np.random.default_rng()

        offsets = measurements_to_points(samples)
        n = self.particle_count
        min_x, min_y, max_x, max_y = grid.extent
        half_cell = grid.cell_size / 2

        xs = rng.uniform(min_x, max_x, n)
        ys = rng.uniform(min_y, max_y, n)
        orientations = rng.uniform(0.0, 360.0, n)
        weights = np.full(n, 1.0 / n)

        for iteration in range(self.iterations):
            if cancel_event is not None and cancel_event.is_set():
                raise EstimationCancelled(f"cancelled at iteration {iteration}")

            scores = self.score(offsets, grid, xs, ys, orientations)
            weights = np.maximum(scores, 0.0) + WEIGHT_EPSILON
            weights /= weights.sum()

            # Low-variance resampling: one offset, N evenly spaced pointers
            r = rng.uniform(0.0, 1.0 / n)
            pointers = r + np.arange(n) / n
            idx = np.minimum(np.searchsorted(np.cumsum(weights), pointers, side="left"), n - 1)

            xs = xs[idx] + rng.uniform(-half_cell, half_cell, n)
            ys = ys[idx] + rng.uniform(-half_cell, half_cell, n)
            orientations = (orientations[idx] + rng.uniform(-ORIENTATION_JITTER, ORIENTATION_JITTER, n)) % 360.0

        scores = self.score(offsets, grid, xs, ys, orientations)
        best = int(np.argmax(scores))
        best_score = float(scores[best])
        duration = (time.perf_counter() - started) * 1000.0
        combinations = n * self.iterations

        if best_score <= 0:
            logger.debug(f"Particle filter found no alignment ({combinations} evaluations)")
            return EstimateResult(None, combinations, duration, max(best_score, 0.0))

        estimate = PoseEstimate(float(orientations[best]), 1.0, float(xs[best]), float(ys[best]))
        logger.debug(f"Particle filter best {estimate} score={best_score} ({duration:.0f}ms)")
        return EstimateResult(estimate, combinations, duration, best_score)
