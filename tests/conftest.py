"""Pytest configuration and shared fixtures."""

import math
import sys
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--hardware",
        action="store_true",
        default=False,
        help="Run tests that require a physical LD06 lidar",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "hardware: marks tests as requiring hardware (run with --hardware)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that run a full pose search"
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --hardware flag is provided."""
    if config.getoption("--hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="need --hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


@pytest.fixture
def mock_serial():
    """Mock serial.Serial for LiDAR driver tests."""
    with pytest.importorskip("unittest.mock").patch("serial.Serial") as mock:
        mock_instance = MagicMock()
        mock_instance.is_open = True
        mock_instance.in_waiting = 0
        mock.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def rng():
    """Seeded random source."""
    return np.random.default_rng(0)


@pytest.fixture
def square():
    """2m x 2m floor plan centred on the origin."""
    return [(-1.0, -1.0), (1.0, -1.0), (1.0, 1.0), (-1.0, 1.0)]


@pytest.fixture
def rectangle():
    """2m x 1m floor plan centred on the origin."""
    return [(-1.0, -0.5), (1.0, -0.5), (1.0, 0.5), (-1.0, 0.5)]


@pytest.fixture
def make_measurement():
    """Build a measurement from a sensor-frame point."""
    from capture.packet_decoder import Measurement

    def _make(x, y, confidence=255, timestamp=0.0):
        angle = math.degrees(math.atan2(x, y)) % 360.0
        return Measurement(angle, int(round(math.hypot(x, y) * 1000)), confidence, timestamp)

    return _make


@pytest.fixture
def sample_config():
    """Create a default LocalizerConfig."""
    from capture.config import LocalizerConfig
    return LocalizerConfig()


@pytest.fixture
def sample_config_dict():
    """Partial configuration as dictionary."""
    return {
        "lidar": {
            "device": "/dev/ttyUSB1",
            "baudrate": 230400,
        },
        "filter": {
            "confidence_threshold": 100,
            "min_distance_m": 0.3,
        },
        "pose": {
            "algorithm": "particle",
            "orientation_step_deg": 5.0,
        },
        "particles": {
            "particle_count": 500,
            "seed": 7,
        },
        "unknown_section": {"anything": 1},
    }


@pytest.fixture
def lidar_driver(request):
    """Real LD06 driver with --hardware."""
    if not request.config.getoption("--hardware"):
        pytest.skip("need --hardware option to run")
    from capture.lidar_driver import LD06Driver
    driver = LD06Driver()
    if not driver.connect():
        pytest.skip("Could not connect to LiDAR hardware")
    yield driver
    driver.disconnect()
