"""Configuration settings for the localizer."""

from dataclasses import dataclass, field, fields
from typing import Optional, Tuple
import json
import os


@dataclass
class LidarConfig:
    """LD06 serial transport configuration."""
    device: str = "/dev/ttyUSB0"
    baudrate: int = 230400
    read_size: int = 512  # bytes per serial read
    queue_size: int = 64  # buffered chunks before the reader blocks
    min_rotation_points: int = 10
    enabled: bool = True


@dataclass
class FilterConfig:
    """Measurement rejection thresholds."""
    confidence_threshold: int = 210
    min_distance_m: float = 0.5
    isolation_distance_m: float = 0.75
    min_neighbours: int = 2


@dataclass
class LineConfig:
    """Line feature extraction."""
    enabled: bool = False
    algorithm: str = "cluster"  # cluster or ransac
    distance_threshold_m: float = 0.02
    min_points: int = 5
    angle_tolerance_deg: float = 5.0
    gap_tolerance_deg: float = 3.0
    merge: bool = True
    adaptive: bool = True
    length_percentile: float = 75.0
    length_factor: float = 0.5
    length_min_m: float = 0.2
    length_max_m: float = 1.0
    inliers_percentile: float = 75.0
    inliers_factor: float = 0.5
    inliers_min: int = 3
    inliers_max: int = 10


@dataclass
class GridConfig:
    """Floor plan occupancy grid."""
    cell_size_m: float = 0.1


@dataclass
class PoseConfig:
    """Pose search."""
    algorithm: str = "exhaustive"  # exhaustive or particle
    orientation_step_deg: float = 2.0
    orientation_span_deg: float = 90.0
    scale_min: float = 0.8
    scale_max: float = 1.2
    scale_step: float = 0.025
    miss_penalty: float = 0.0
    use_prior: bool = True

    @property
    def scale_range(self) -> Tuple[float, float]:
        return (self.scale_min, self.scale_max)


@dataclass
class ParticleConfig:
    """Particle filter."""
    particle_count: int = 200
    iterations: int = 5
    seed: Optional[int] = None


@dataclass
class SmoothingConfig:
    """Position smoothing across sweeps."""
    enabled: bool = True
    alpha: float = 0.2


@dataclass
class LocalizerConfig:
    """Main localizer configuration."""
    lidar: LidarConfig = field(default_factory=LidarConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    lines: LineConfig = field(default_factory=LineConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    pose: PoseConfig = field(default_factory=PoseConfig)
    particles: ParticleConfig = field(default_factory=ParticleConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "LocalizerConfig":
        """Build a configuration, ignoring unknown sections and keys."""
        config = cls()
        for section in fields(config):
            if section.name not in data:
                continue
            target = getattr(config, section.name)
            known = {f.name for f in fields(target)}
            for k, v in data[section.name].items():
                if k in known:
                    setattr(target, k, v)
        return config

    @classmethod
    def from_file(cls, path: str) -> "LocalizerConfig":
        """Load configuration from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            section.name: {
                f.name: getattr(getattr(self, section.name), f.name)
                for f in fields(getattr(self, section.name))
            }
            for section in fields(self)
        }

    def save(self, path: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# Default config file locations
DEFAULT_CONFIG_PATHS = [
    "/etc/planpose/localizer.json",
    os.path.expanduser("~/.config/planpose/localizer.json"),
    "./localizer_config.json",
]


def load_config(path: Optional[str] = None) -> LocalizerConfig:
    """Load configuration from file or return defaults."""
    if path and os.path.exists(path):
        return LocalizerConfig.from_file(path)

    for p in DEFAULT_CONFIG_PATHS:
        if os.path.exists(p):
            return LocalizerConfig.from_file(p)

    return LocalizerConfig()
