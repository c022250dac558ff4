"""Localization pipeline for Planpose.

A LocalizationSession turns rotations into poses:
1. Filter measurements (confidence, range, isolation)
2. Optionally extract line features and resample them into measurements
3. Search for the pose against the floor plan occupancy grid
4. Smooth the position across sweeps
5. Track the gyroscope heading alongside

Sessions carry state between sweeps (previous estimate, smoothed position,
heading), so rotations of one session are processed strictly in order.
submit() runs them on a single worker; a newer rotation cancels the one in
flight instead of queueing behind it.

Usage:
    python -m processing.pipeline --stream capture.bin --floor-plan plan.json
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from capture.config import LocalizerConfig, load_config
from capture.packet_decoder import Measurement, PacketDecoder
from capture.rotation import Rotation, RotationAssembler

from .line_detector import AdaptiveFilterParams, LineDetector, as_measurements, filter_adaptive
from .measurement_filter import MeasurementFilter
from .occupancy_grid import OccupancyGrid
from .orientation_tracker import OrientationTracker, with_orientation
from .particle_filter import ParticlePoseEstimator
from .pose_estimator import EstimateResult, EstimationCancelled, GridPoseEstimator, PoseAlgorithm, PoseEstimate
from .position_filter import PositionFilter

logger = logging.getLogger(__name__)

SCORE_HISTORY = 50


@dataclass
class LocalizationResult:
    """Outcome of processing one rotation."""

    raw_count: int
    filtered_count: int
    pose_input_count: int
    line_count: int = 0
    line_stats: Optional[Tuple[float, float]] = None
    estimate: Optional[PoseEstimate] = None
    position: Optional[Tuple[float, float]] = None  # smoothed
    score: float = -1
    combinations: int = 0
    estimate_ms: float = 0.0
    heading_deg: Optional[float] = None
    corrupted_packets: int = 0

    @property
    def combinations_per_second(self) -> float:
        if self.estimate_ms <= 0:
            return 0.0
        return self.combinations * 1000.0 / self.estimate_ms

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        def convert_value(v):
            """Convert numpy types to Python native types."""
            if isinstance(v, (np.bool_, np.integer)):
                return int(v)
            elif isinstance(v, np.floating):
                return float(v)
            elif isinstance(v, dict):
                return {k: convert_value(vv) for k, vv in v.items()}
            elif isinstance(v, (list, tuple)):
                return [convert_value(vv) for vv in v]
            return v

        return convert_value(asdict(self))


@dataclass
class LocalizationSession:
    """Per-session localization state and stages."""

    config: LocalizerConfig = field(default_factory=LocalizerConfig)
    grid: Optional[OccupancyGrid] = None
    rng: Optional[np.random.Generator] = None

    measurement_filter: MeasurementFilter = field(init=False)
    line_detector: LineDetector = field(init=False)
    adaptive: AdaptiveFilterParams = field(init=False)
    grid_estimator: GridPoseEstimator = field(init=False)
    particle_estimator: ParticlePoseEstimator = field(init=False)
    orientation: OrientationTracker = field(default_factory=OrientationTracker)
    position_filter: PositionFilter = field(init=False)
    last_estimate: Optional[PoseEstimate] = None
    scores: deque = field(default_factory=lambda: deque(maxlen=SCORE_HISTORY))

    def __post_init__(self):
        cfg = self.config
        self.measurement_filter = MeasurementFilter.from_config(cfg.filter)
        self.line_detector = LineDetector.from_config(cfg.lines)
        self.adaptive = AdaptiveFilterParams.from_config(cfg.lines)
        self.grid_estimator = GridPoseEstimator.from_config(cfg.pose)
        self.particle_estimator = ParticlePoseEstimator.from_config(cfg.particles, cfg.pose)
        self.position_filter = PositionFilter(cfg.smoothing.alpha)
        if self.rng is None:
            self.rng = np.random.default_rng(cfg.particles.seed)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._submit_lock = threading.Lock()
        self._inflight_cancel: Optional[threading.Event] = None

    @property
    def algorithm(self) -> PoseAlgorithm:
        return PoseAlgorithm(self.config.pose.algorithm)

    @property
    def score_average(self) -> Optional[float]:
        """Mean score of the recent estimates that had data."""
        if not self.scores:
            return None
        return float(np.mean(self.scores))

    def set_floor_plan(self, vertices: Sequence[Tuple[float, float]]):
        """Build the grid for a new floor plan and forget the previous pose."""
        self.grid = OccupancyGrid.from_polygon(vertices, self.config.grid.cell_size_m)
        self.reset()
        logger.info(f"Floor plan set: {len(vertices)} vertices")

    def reset(self):
        """Forget cross-sweep state."""
        self.last_estimate = None
        self.position_filter.reset()
        self.orientation.reset()
        self.scores.clear()

    def prepare(self, measurements: Sequence[Measurement]) -> Tuple[List[Measurement], LocalizationResult]:
        """Filter a sweep and optionally replace it with resampled line features."""
        filtered = self.measurement_filter.apply(measurements)
        result = LocalizationResult(
            raw_count=len(measurements),
            filtered_count=len(filtered),
            pose_input_count=len(filtered),
        )
        if not self.config.lines.enabled:
            return filtered, result

        lines = self.line_detector.detect(filtered, rng=self.rng)
        lines, stats = filter_adaptive(lines, self.adaptive)
        result.line_count = len(lines)
        result.line_stats = tuple(stats)
        pose_input = as_measurements(lines)
        result.pose_input_count = len(pose_input)
        return pose_input, result

    def _track_heading(self, rotation: Rotation) -> Optional[float]:
        if rotation.gyroscope_orientation is not None:
            last_ts = rotation.gyroscope[-1].timestamp if rotation.gyroscope else None
            self.orientation.apply(rotation.gyroscope_orientation, last_ts)
            return self.orientation.orientation_deg
        if rotation.gyroscope:
            return self.orientation.integrate(rotation.gyroscope)
        return None

    def estimate(
        self,
        samples: Sequence[Measurement],
        cancel_event: Optional[threading.Event] = None,
    ) -> EstimateResult:
        if self.grid is None:
            raise RuntimeError("No floor plan set")
        if self.algorithm is PoseAlgorithm.PARTICLE:
            return self.particle_estimator.estimate(
                samples, self.grid, rng=self.rng, cancel_event=cancel_event
            )
        prior = self.last_estimate if self.config.pose.use_prior else None
        return self.grid_estimator.estimate(
            samples, self.grid, prior=prior, cancel_event=cancel_event
        )

    def process_rotation(
        self,
        rotation: Rotation,
        cancel_event: Optional[threading.Event] = None,
    ) -> LocalizationResult:
        """Run one rotation through every stage.

        The heading is tracked before the pose search so a cancelled search
        still accounts for the rotation's gyroscope interval.

        Raises:
            EstimationCancelled: cancel_event was set during pose search
        """
        heading = self._track_heading(rotation)
        samples, result = self.prepare(rotation.measurements)
        result.corrupted_packets = rotation.corrupted_packets
        result.heading_deg = heading

        estimate = self.estimate(samples, cancel_event=cancel_event)
        result.score = estimate.score
        result.combinations = estimate.combinations
        result.estimate_ms = estimate.duration_ms
        if estimate.score >= 0:
            self.scores.append(estimate.score)

        if estimate.estimate is not None:
            result.estimate = estimate.estimate
            self.last_estimate = estimate.estimate
            if self.config.smoothing.enabled:
                result.position = self.position_filter.update(estimate.estimate.translation)
            else:
                result.position = estimate.estimate.translation

        return result

    def submit(self, rotation: Rotation) -> "Future[LocalizationResult]":
        """Process a rotation in the background, superseding any in-flight one.

        The returned future raises EstimationCancelled if a newer rotation is
        submitted before this one finishes its pose search. The gyroscope
        samples of a superseded rotation are still integrated.
        """
        with self._submit_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="localize")
            if self._inflight_cancel is not None and not self._inflight_cancel.is_set():
                self._inflight_cancel.set()
                logger.debug("Superseding in-flight estimate")
            cancel = threading.Event()
            self._inflight_cancel = cancel
            return self._executor.submit(self._run_submitted, rotation, cancel)

    def _run_submitted(self, rotation: Rotation, cancel: threading.Event) -> LocalizationResult:
        if cancel.is_set():
            self._track_heading(rotation)
            raise EstimationCancelled("superseded before start")
        return self.process_rotation(rotation, cancel_event=cancel)

    def close(self):
        """Cancel pending work and stop the worker."""
        with self._submit_lock:
            if self._inflight_cancel is not None:
                self._inflight_cancel.set()
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "LocalizationSession":
        return self

    def __exit__(self, *exc):
        self.close()

    def replay(self, rotations: Sequence[Rotation]) -> List[LocalizationResult]:
        """Process recorded rotations in order, reconstructing headings first."""
        self.orientation.reset()
        return [self.process_rotation(r) for r in with_orientation(rotations)]


def rotations_from_stream(
    chunks: Iterable[bytes],
    min_points: int = 10,
) -> List[Rotation]:
    """Decode a raw LD06 byte stream into rotations."""
    assembler = RotationAssembler(PacketDecoder(), min_points=min_points)
    rotations = []
    for chunk in chunks:
        rotations.extend(assembler.feed(chunk))
    tail = assembler.flush()
    if tail is not None:
        rotations.append(tail)
    return rotations


def _read_chunks(path: str, size: int = 4096) -> Iterable[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(size)
            if not chunk:
                return
            yield chunk


def run(stream_path: str, floor_plan: Sequence[Tuple[float, float]],
        config: Optional[LocalizerConfig] = None) -> List[LocalizationResult]:
    """Localize every rotation of a recorded byte stream."""
    config = config or LocalizerConfig()
    rotations = rotations_from_stream(_read_chunks(stream_path), config.lidar.min_rotation_points)
    session = LocalizationSession(config=config)
    session.set_floor_plan(floor_plan)
    return session.replay(rotations)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Localize a recorded LD06 byte stream against a floor plan"
    )
    parser.add_argument("--stream", required=True, help="Raw LD06 byte stream file")
    parser.add_argument(
        "--floor-plan",
        required=True,
        help="JSON file with a list of [x, y] vertices in meters",
    )
    parser.add_argument("--config", help="Localizer configuration JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    with open(args.floor_plan) as f:
        vertices = [tuple(v) for v in json.load(f)]

    start = time.time()
    results = run(args.stream, vertices, load_config(args.config))

    print("\n" + "=" * 60)
    print("LOCALIZATION SUMMARY")
    print("=" * 60)
    for i, r in enumerate(results):
        if r.estimate is None:
            print(f"{i:4d}: no estimate (score {r.score})")
        else:
            e = r.estimate
            print(
                f"{i:4d}: x={r.position[0]:.2f} y={r.position[1]:.2f} "
                f"orientation={e.orientation:.1f} scale={e.scale:.3f} score={r.score:.0f}"
            )
    print(f"Rotations: {len(results)}")
    print(f"Time: {time.time() - start:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
