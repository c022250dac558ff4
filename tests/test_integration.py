"""Integration tests for the localization pipeline.

These tests run simulated LD06 byte streams through decoding, rotation
assembly, filtering and pose search together.
"""

import dataclasses
import json
import math
import threading

import pytest

from capture.config import LocalizerConfig
from capture.packet_decoder import PacketDecoder
from capture.rotation import Rotation, RotationAssembler
from processing.pipeline import LocalizationResult, LocalizationSession, main, rotations_from_stream, run
from processing.pose_estimator import EstimationCancelled, PoseAlgorithm
from simulation.generate_synthetic import Room, SyntheticSession, gyro_trace, synthetic_measurements
from tests.mocks import simulated_stream

ROOM = Room.rectangle(4.0, 3.0)
TRUE_POSE = (0.2, 0.1, 30.0)


def _circular_diff(a, b):
    d = abs(a - b) % 360.0
    return min(d, 360.0 - d)


def _assert_true_pose(estimate):
    """The room is symmetric under a half turn, so either alignment is correct."""
    assert estimate is not None
    if _circular_diff(estimate.orientation, 30.0) < 1e-6:
        assert estimate.translation == pytest.approx((0.2, 0.1), abs=1e-6)
    else:
        assert _circular_diff(estimate.orientation, 210.0) < 1e-6
        assert estimate.translation == pytest.approx((-0.2, -0.1), abs=1e-6)


def _chunks(data, size=1000):
    return [data[i:i + size] for i in range(0, len(data), size)]


@pytest.fixture
def fast_config():
    """Coarse exhaustive search that still resolves TRUE_POSE exactly."""
    config = LocalizerConfig()
    config.pose.orientation_step_deg = 10.0
    config.pose.scale_min = 1.0
    config.pose.scale_max = 1.0
    config.pose.use_prior = False
    return config


@pytest.fixture
def rotations():
    """Three recorded rotations at TRUE_POSE."""
    stream = SyntheticSession(room=ROOM, step_deg=5.0, seed=0).generate([TRUE_POSE] * 3)
    return rotations_from_stream(_chunks(stream))


@pytest.fixture
def session(fast_config):
    session = LocalizationSession(config=fast_config)
    session.set_floor_plan(ROOM.vertices)
    yield session
    session.close()


class TestRotationsFromStream:
    """Tests for decoding recorded streams."""

    def test_clean_stream(self, rotations):
        assert len(rotations) == 3
        assert all(len(r) == 72 for r in rotations)
        assert all(r.corrupted_packets == 0 for r in rotations)

    def test_corrupted_frames_counted(self):
        rotations = rotations_from_stream(_chunks(simulated_stream(rotations=3, corrupt_every=5)))
        assert len(rotations) == 3
        assert all(len(r) == 360 - 6 * 12 for r in rotations)
        assert [r.corrupted_packets for r in rotations] == [6, 6, 6]

    def test_chunk_size_does_not_matter(self):
        stream = simulated_stream(rotations=2)
        a = rotations_from_stream(_chunks(stream, 47))
        b = rotations_from_stream([stream])
        assert [len(r) for r in a] == [len(r) for r in b]


class TestLocalizationSession:
    """Tests for per-session processing."""

    def test_requires_floor_plan(self, fast_config, rotations):
        with pytest.raises(RuntimeError):
            LocalizationSession(config=fast_config).process_rotation(rotations[0])

    def test_process_rotation(self, session, rotations):
        result = session.process_rotation(rotations[0])
        assert isinstance(result, LocalizationResult)
        assert result.raw_count == 72
        assert result.filtered_count == 72
        assert result.pose_input_count == 72
        assert result.score > 60
        assert result.combinations == 36 * 41 * 31
        assert result.combinations_per_second > 0
        _assert_true_pose(result.estimate)
        assert result.position == pytest.approx(result.estimate.translation)
        assert result.heading_deg is None

    def test_replay(self, session, rotations):
        results = session.replay(rotations)
        assert len(results) == 3
        for r in results:
            _assert_true_pose(r.estimate)
        assert session.last_estimate == results[-1].estimate
        assert session.score_average == pytest.approx(results[0].score)
        # No gyroscope data: every rotation inherits a zero heading
        assert [r.heading_deg for r in results] == [0.0, 0.0, 0.0]

    def test_replay_integrates_gyroscope(self, session, rotations):
        with_gyro = [
            dataclasses.replace(rotations[0], gyroscope=gyro_trace(0.0, 1.0, 0.5, rate_hz=10)),
            rotations[1],
            dataclasses.replace(rotations[2], gyroscope=gyro_trace(2.0, 1.0, -0.5, rate_hz=10)),
        ]
        headings = [r.heading_deg for r in session.replay(with_gyro)]
        assert headings[0] == pytest.approx(math.degrees(0.5))
        assert headings[1] == pytest.approx(math.degrees(0.5))
        # Integration resumes from t=1.0, so the gap to t=2.0 counts too
        assert headings[2] == pytest.approx(math.degrees(0.5 - 1.0))

    def test_smoothing_blends_positions(self, session):
        near = Rotation(synthetic_measurements(ROOM, 0.2, 0.1, 30.0, step_deg=5.0), 0.0)
        moved = Rotation(synthetic_measurements(ROOM, 0.6, 0.1, 30.0, step_deg=5.0), 1.0)
        first = session.process_rotation(near)
        second = session.process_rotation(moved)
        assert first.position == pytest.approx(first.estimate.translation)
        expected = [
            0.8 * a + 0.2 * b
            for a, b in zip(first.estimate.translation, second.estimate.translation)
        ]
        assert second.position == pytest.approx(expected)
        assert abs(abs(second.estimate.x) - 0.6) < 1e-6

    def test_smoothing_disabled(self, fast_config):
        fast_config.smoothing.enabled = False
        session = LocalizationSession(config=fast_config)
        session.set_floor_plan(ROOM.vertices)
        result = session.process_rotation(Rotation(synthetic_measurements(ROOM, *TRUE_POSE, step_deg=5.0), 0.0))
        assert result.position == result.estimate.translation
        assert not session.position_filter.is_seeded

    def test_set_floor_plan_resets(self, session, rotations):
        session.process_rotation(rotations[0])
        assert session.last_estimate is not None
        session.set_floor_plan(Room.rectangle(5.0, 5.0).vertices)
        assert session.last_estimate is None
        assert session.position_filter.value is None
        assert session.score_average is None

    def test_empty_rotation(self, session):
        result = session.process_rotation(Rotation([], 0.0))
        assert result.estimate is None
        assert result.score == -1
        assert session.score_average is None

    def test_line_features(self, fast_config):
        fast_config.lines.enabled = True
        session = LocalizationSession(config=fast_config)
        samples, result = session.prepare(synthetic_measurements(ROOM, *TRUE_POSE, step_deg=1.0))
        assert result.raw_count == 360
        assert result.line_count >= 3
        assert result.line_stats is not None
        assert result.pose_input_count == len(samples) > 0
        assert all(m.confidence == 255 for m in samples)

    def test_particle_algorithm(self, fast_config, rotations):
        fast_config.pose.algorithm = "particle"
        fast_config.particles.particle_count = 100
        fast_config.particles.iterations = 2
        fast_config.particles.seed = 3
        session = LocalizationSession(config=fast_config)
        session.set_floor_plan(ROOM.vertices)
        assert session.algorithm is PoseAlgorithm.PARTICLE
        result = session.process_rotation(rotations[0])
        assert result.combinations == 200
        assert result.score >= 0

    def test_to_dict_is_json_serializable(self, session, rotations):
        result = session.process_rotation(rotations[0])
        d = result.to_dict()
        json.dumps(d)
        assert d["estimate"]["scale"] == 1.0
        assert d["raw_count"] == 72


class TestSubmit:
    """Tests for background processing."""

    def test_submit_returns_result(self, session, rotations):
        future = session.submit(rotations[0])
        _assert_true_pose(future.result(timeout=30).estimate)

    def test_newer_rotation_supersedes(self, session, rotations, monkeypatch):
        gate = threading.Event()
        started = threading.Event()
        original = session.process_rotation

        def gated(rotation, cancel_event=None):
            started.set()
            gate.wait(5.0)
            return original(rotation, cancel_event=cancel_event)

        monkeypatch.setattr(session, "process_rotation", gated)
        first = session.submit(rotations[0])
        assert started.wait(5.0)
        second = session.submit(rotations[1])
        gate.set()

        with pytest.raises(EstimationCancelled):
            first.result(timeout=30)
        _assert_true_pose(second.result(timeout=30).estimate)

    def test_queued_rotation_cancelled_before_start(self, session, rotations, monkeypatch):
        gate = threading.Event()
        original = session.process_rotation

        def gated(rotation, cancel_event=None):
            gate.wait(5.0)
            return original(rotation, cancel_event=cancel_event)

        monkeypatch.setattr(session, "process_rotation", gated)
        first = session.submit(rotations[0])
        queued = session.submit(rotations[1])
        last = session.submit(rotations[2])
        gate.set()

        with pytest.raises(EstimationCancelled):
            queued.result(timeout=30)
        assert last.result(timeout=30).estimate is not None
        assert first.exception(timeout=30) is None or isinstance(first.exception(), EstimationCancelled)

    def test_superseded_rotation_still_advances_heading(self, session, rotations, monkeypatch):
        turning = dataclasses.replace(rotations[0], gyroscope=gyro_trace(0.0, 1.0, 1.0, rate_hz=10))
        still = dataclasses.replace(rotations[1], gyroscope=gyro_trace(1.0, 1.0, 0.0, rate_hz=10))
        gate = threading.Event()
        started = threading.Event()
        original = session.process_rotation

        def gated(rotation, cancel_event=None):
            started.set()
            gate.wait(5.0)
            return original(rotation, cancel_event=cancel_event)

        monkeypatch.setattr(session, "process_rotation", gated)
        first = session.submit(turning)
        assert started.wait(5.0)
        second = session.submit(still)
        gate.set()

        with pytest.raises(EstimationCancelled):
            first.result(timeout=30)
        assert second.result(timeout=30).heading_deg == pytest.approx(57.29578, abs=1e-3)

    def test_queued_rotation_still_advances_heading(self, session, rotations, monkeypatch):
        turning = dataclasses.replace(rotations[1], gyroscope=gyro_trace(0.0, 1.0, 1.0, rate_hz=10))
        still = dataclasses.replace(rotations[2], gyroscope=gyro_trace(1.0, 1.0, 0.0, rate_hz=10))
        gate = threading.Event()
        original = session.process_rotation

        def gated(rotation, cancel_event=None):
            gate.wait(5.0)
            return original(rotation, cancel_event=cancel_event)

        monkeypatch.setattr(session, "process_rotation", gated)
        session.submit(rotations[0])
        queued = session.submit(turning)
        last = session.submit(still)
        gate.set()

        with pytest.raises(EstimationCancelled):
            queued.result(timeout=30)
        assert last.result(timeout=30).heading_deg == pytest.approx(57.29578, abs=1e-3)

    def test_context_manager_closes(self, fast_config, rotations):
        with LocalizationSession(config=fast_config) as session:
            session.set_floor_plan(ROOM.vertices)
            session.submit(rotations[0]).result(timeout=30)
        assert session._executor is None


class TestDriverToSession:
    """Rotations assembled from a byte stream feed a session directly."""

    def test_stream_rotations(self, session):
        assembler = RotationAssembler(PacketDecoder())
        stream = SyntheticSession(room=ROOM, step_deg=5.0).generate([TRUE_POSE] * 3)
        results = []
        for chunk in _chunks(stream, 100):
            for rotation in assembler.feed(chunk):
                results.append(session.process_rotation(rotation))
        assert len(results) == 2
        for r in results:
            _assert_true_pose(r.estimate)


class TestCommandLine:
    """Tests for the replay entry point."""

    @pytest.fixture
    def recording(self, tmp_path, fast_config):
        SyntheticSession(room=ROOM, step_deg=5.0, seed=1).save(str(tmp_path), [TRUE_POSE] * 2)
        config_path = tmp_path / "config.json"
        fast_config.save(str(config_path))
        return tmp_path, config_path

    def test_run(self, recording, fast_config):
        out_dir, _ = recording
        with open(out_dir / "floor_plan.json") as f:
            vertices = [tuple(v) for v in json.load(f)]
        results = run(str(out_dir / "stream.bin"), vertices, fast_config)
        assert len(results) == 2
        for r in results:
            _assert_true_pose(r.estimate)

    def test_main(self, recording, capsys):
        out_dir, config_path = recording
        code = main([
            "--stream", str(out_dir / "stream.bin"),
            "--floor-plan", str(out_dir / "floor_plan.json"),
            "--config", str(config_path),
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "LOCALIZATION SUMMARY" in out
        assert "Rotations: 2" in out
        assert "no estimate" not in out
