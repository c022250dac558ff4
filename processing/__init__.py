"""Planpose localization package.

This package turns decoded LD06 sweeps into sensor poses on a known floor
plan.

Modules:
- pipeline: Per-session orchestration
- measurement_filter: Confidence, range and isolation filtering
- line_detector: CLUSTER / RANSAC line features
- occupancy_grid: Quadtree floor plan index
- pose_estimator: Exhaustive pose search and shared pose helpers
- particle_filter: Particle filter pose search
- orientation_tracker: Gyroscope heading integration
- position_filter: Position smoothing
"""

from .pipeline import LocalizationSession, LocalizationResult, rotations_from_stream, run
from .measurement_filter import MeasurementFilter, apply_filters
from .line_detector import (
    AdaptiveFilterParams,
    AdaptiveStats,
    LineAlgorithm,
    LineDetector,
    LineFeature,
    angle_diff180,
    as_measurements,
    detect_lines,
    filter_adaptive,
    merge_lines,
)
from .occupancy_grid import OccupancyGrid, InvalidInput, Empty, Full, Quad
from .pose_estimator import (
    EstimateResult,
    EstimationCancelled,
    GridPoseEstimator,
    PoseAlgorithm,
    PoseEstimate,
    estimate_pose,
    score_pose,
)
from .particle_filter import ParticlePoseEstimator
from .orientation_tracker import OrientationTracker, normalize_degrees, normalize_radians, with_orientation
from .position_filter import PositionFilter

__all__ = [
    # Pipeline
    "LocalizationSession",
    "LocalizationResult",
    "rotations_from_stream",
    "run",
    # Filtering
    "MeasurementFilter",
    "apply_filters",
    # Lines
    "AdaptiveFilterParams",
    "AdaptiveStats",
    "LineAlgorithm",
    "LineDetector",
    "LineFeature",
    "angle_diff180",
    "as_measurements",
    "detect_lines",
    "filter_adaptive",
    "merge_lines",
    # Grid
    "OccupancyGrid",
    "InvalidInput",
    "Empty",
    "Full",
    "Quad",
    # Pose search
    "EstimateResult",
    "EstimationCancelled",
    "GridPoseEstimator",
    "PoseAlgorithm",
    "PoseEstimate",
    "estimate_pose",
    "score_pose",
    "ParticlePoseEstimator",
    # Orientation
    "OrientationTracker",
    "normalize_degrees",
    "normalize_radians",
    "with_orientation",
    # Smoothing
    "PositionFilter",
]
