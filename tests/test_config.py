"""Tests for localizer configuration module."""

import json
import os
import tempfile

from capture import config as config_module
from capture.config import (
    FilterConfig,
    GridConfig,
    LidarConfig,
    LineConfig,
    LocalizerConfig,
    ParticleConfig,
    PoseConfig,
    SmoothingConfig,
    load_config,
)


class TestSectionDefaults:
    """Tests for the section dataclasses."""

    def test_lidar_defaults(self):
        config = LidarConfig()
        assert config.device == "/dev/ttyUSB0"
        assert config.baudrate == 230400
        assert config.queue_size == 64
        assert config.enabled is True

    def test_filter_defaults(self):
        config = FilterConfig()
        assert config.confidence_threshold == 210
        assert config.min_distance_m == 0.5
        assert config.isolation_distance_m == 0.75
        assert config.min_neighbours == 2

    def test_line_defaults(self):
        config = LineConfig()
        assert config.enabled is False
        assert config.algorithm == "cluster"
        assert config.length_min_m == 0.2
        assert config.inliers_max == 10

    def test_pose_scale_range(self):
        config = PoseConfig(scale_min=0.9, scale_max=1.1)
        assert config.scale_range == (0.9, 1.1)
        assert PoseConfig().algorithm == "exhaustive"

    def test_other_defaults(self):
        assert GridConfig().cell_size_m == 0.1
        assert ParticleConfig().seed is None
        assert SmoothingConfig().alpha == 0.2


class TestLocalizerConfig:
    """Tests for LocalizerConfig."""

    def test_default_nested_configs(self, sample_config):
        assert isinstance(sample_config.lidar, LidarConfig)
        assert isinstance(sample_config.filter, FilterConfig)
        assert isinstance(sample_config.lines, LineConfig)
        assert isinstance(sample_config.pose, PoseConfig)
        assert isinstance(sample_config.particles, ParticleConfig)

    def test_to_dict(self, sample_config):
        d = sample_config.to_dict()
        assert set(d) == {"lidar", "filter", "lines", "grid", "pose", "particles", "smoothing"}
        assert d["lidar"]["baudrate"] == 230400
        assert d["pose"]["orientation_span_deg"] == 90.0
        assert "scale_range" not in d["pose"]

    def test_from_dict_partial(self, sample_config_dict):
        config = LocalizerConfig.from_dict(sample_config_dict)
        assert config.lidar.device == "/dev/ttyUSB1"
        assert config.filter.confidence_threshold == 100
        assert config.filter.min_distance_m == 0.3
        assert config.pose.algorithm == "particle"
        assert config.particles.particle_count == 500
        assert config.particles.seed == 7
        # Unspecified values keep their defaults
        assert config.filter.isolation_distance_m == 0.75
        assert config.grid.cell_size_m == 0.1

    def test_from_dict_ignores_unknown_keys(self):
        config = LocalizerConfig.from_dict({"grid": {"cell_size_m": 0.05, "bogus": True}})
        assert config.grid.cell_size_m == 0.05
        assert not hasattr(config.grid, "bogus")

    def test_from_dict_ignores_derived_properties(self):
        config = LocalizerConfig.from_dict({"pose": {"scale_range": [0.5, 2.0], "scale_min": 0.9}})
        assert config.pose.scale_min == 0.9
        assert config.pose.scale_range == (0.9, config.pose.scale_max)

    def test_from_file(self, sample_config_dict):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(sample_config_dict, f)
            f.flush()

            config = LocalizerConfig.from_file(f.name)
            assert config.lidar.device == "/dev/ttyUSB1"
            assert config.smoothing.enabled is True

            os.unlink(f.name)

    def test_save_and_load_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = os.path.join(tmpdir, "nested", "config.json")

            original = LocalizerConfig()
            original.lidar.device = "/dev/test"
            original.lines.enabled = True
            original.particles.seed = 3
            original.save(config_path)

            loaded = LocalizerConfig.from_file(config_path)
            assert loaded.lidar.device == "/dev/test"
            assert loaded.lines.enabled is True
            assert loaded.particles.seed == 3
            assert loaded.to_dict() == original.to_dict()


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_nonexistent_returns_defaults(self, monkeypatch):
        monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATHS", [])
        config = load_config("/nonexistent/path.json")
        assert isinstance(config, LocalizerConfig)
        assert config.lidar.device == "/dev/ttyUSB0"

    def test_load_existing_file(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({"pose": {"miss_penalty": 0.5}}, f)
            f.flush()

            config = load_config(f.name)
            assert config.pose.miss_penalty == 0.5

            os.unlink(f.name)

    def test_falls_back_to_default_paths(self, monkeypatch, tmp_path):
        path = tmp_path / "localizer.json"
        path.write_text(json.dumps({"grid": {"cell_size_m": 0.2}}))
        monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATHS", [str(tmp_path / "missing.json"), str(path)])
        assert load_config().grid.cell_size_m == 0.2
