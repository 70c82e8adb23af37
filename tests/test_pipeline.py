"""
Tests for the stacking pipeline.

Tests cover:
- End-to-end runs on in-memory frames (stages, progress, result)
- Validation errors (frame count, dimensions, calibration sizes)
- Calibration, quality weighting and alignment stages
- Cancellation, reset and background runs

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import threading

import numpy as np
import pytest

from skystack import pipeline as pipeline_module
from skystack.config import AdvancedOptions, CalibrationFrames, StackStage, resolve_detection_options
from skystack.errors import FrameReadError
from skystack.pipeline import StackingSession


@pytest.fixture
def identical_frames(memory_source):
    frame = np.arange(16, dtype=np.float32).reshape(4, 4)
    return frame, memory_source({"a.fits": frame, "b.fits": frame.copy()})


@pytest.fixture
def star_frames(memory_source, synthetic_star_field, star_positions):
    """Three star fields, the last two shifted by whole pixels."""
    positions = star_positions(15, seed=2)
    shifts = [(0.0, 0.0), (3.0, -2.0), (-4.0, 1.0)]
    frames = {
        f"light_{i}.fits": synthetic_star_field(positions - shift, seed=30 + i)
        for i, shift in enumerate(shifts)
    }
    return positions, memory_source(frames)


class TestBasicRun:
    """Tests for a minimal successful run."""

    def test_identical_frames_average(self, identical_frames):
        frame, source = identical_frames
        session = StackingSession(frame_source=source)
        result = session.stack(["a.fits", "b.fits"], method="average", alignment_mode="none")

        assert result is not None
        np.testing.assert_array_equal(result.pixels, frame)
        assert result.frame_count == 2
        assert (result.width, result.height) == (4, 4)
        assert result.rgba.shape == (4, 4, 4)
        assert result.method == "average"
        assert result.alignment_results is None
        assert result.quality_metrics is None
        assert session.result is result
        assert session.error is None
        assert session.is_stacking is False
        assert session.progress.stage is StackStage.DONE

    def test_stage_sequence(self, identical_frames):
        _, source = identical_frames
        snapshots = []
        session = StackingSession(frame_source=source, on_progress=snapshots.append)
        session.stack(["a.fits", "b.fits"])

        stages = []
        for snapshot in snapshots:
            if not stages or stages[-1] is not snapshot.stage:
                stages.append(snapshot.stage)
        assert stages == [StackStage.LOADING, StackStage.STACKING, StackStage.RENDERING, StackStage.DONE]
        assert snapshots[0].message == "Loading frame 1/2: a.fits"
        assert snapshots[-1].message.startswith("Done - 2 frames in ")

    def test_yield_between_units_of_work(self, identical_frames):
        _, source = identical_frames
        yields = []
        session = StackingSession(frame_source=source, yield_control=lambda: yields.append(1))
        session.stack(["a.fits", "b.fits"])
        assert len(yields) >= 4

    def test_reset(self, identical_frames):
        _, source = identical_frames
        session = StackingSession(frame_source=source)
        session.stack(["a.fits", "b.fits"])
        session.reset()
        assert session.result is None
        assert session.progress is None
        assert session.error is None


class TestValidation:
    """Tests for fatal run errors."""

    def test_too_few_frames(self, memory_source):
        source = memory_source({"a.fits": np.zeros((4, 4))})
        session = StackingSession(frame_source=source)
        assert session.stack(["a.fits"]) is None
        assert session.error == "At least 2 frames are required for stacking"
        assert source.loaded == []
        assert session.is_stacking is False

    def test_dimension_mismatch(self, memory_source, monkeypatch):
        """Mismatched sizes abort before any combiner runs."""
        def fail(*args, **kwargs):
            raise AssertionError("combiner must not run")

        monkeypatch.setattr(pipeline_module, "combine_frames", fail)
        source = memory_source({"a.fits": np.zeros((4, 4)), "b.fits": np.zeros((5, 4))})
        session = StackingSession(frame_source=source)

        assert session.stack(["a.fits", "b.fits"]) is None
        assert session.error == "Dimension mismatch: b.fits is 4×5, expected 4×4"
        assert session.result is None
        assert session.is_stacking is False

    def test_unreadable_light(self, memory_source):
        source = memory_source({"a.fits": np.zeros((4, 4)), "b.fits": None})
        session = StackingSession(frame_source=source)
        assert session.stack(["a.fits", "b.fits"]) is None
        assert session.error == "Failed to read image data from b.fits"

    def test_source_exception_reported(self, memory_source):
        """A frame source that raises gives the same read error."""
        source = memory_source({"a.fits": np.zeros((4, 4))})
        session = StackingSession(frame_source=source)
        assert session.stack(["a.fits", "missing.fits"]) is None
        assert session.error == "Failed to read image data from missing.fits"

    def test_read_error_message(self):
        error = FrameReadError("b.fits", "truncated")
        assert str(error) == "Failed to read image data from b.fits"
        assert error.frame_name == "b.fits"
        assert isinstance(error, OSError)

    def test_invalid_request(self, identical_frames):
        _, source = identical_frames
        session = StackingSession(frame_source=source)
        assert session.stack(["a.fits", "b.fits"], sigma=-1.0) is None
        assert "sigma must be positive" in session.error
        assert source.loaded == []


class TestCalibrationStage:
    """Tests for master frames and per-light calibration."""

    def test_dark_subtracted(self, memory_source, constant_frame):
        source = memory_source({
            "a.fits": constant_frame(10.0),
            "b.fits": constant_frame(12.0),
            "dark.fits": constant_frame(4.0),
        })
        session = StackingSession(frame_source=source)
        result = session.stack(["a.fits", "b.fits"], calibration=CalibrationFrames(dark_path="dark.fits"))
        np.testing.assert_allclose(result.pixels, 7.0)

    def test_master_dark_and_flat(self, memory_source, constant_frame):
        flat = constant_frame(1.0)
        flat[0, 0] = 3.0  # mean 1.125
        source = memory_source({
            "a.fits": constant_frame(110.0),
            "b.fits": constant_frame(110.0),
            "d1.fits": constant_frame(10.0),
            "d2.fits": constant_frame(10.0),
            "d3.fits": constant_frame(900.0),
            "f1.fits": flat,
            "f2.fits": flat.copy(),
        })
        snapshots = []
        session = StackingSession(frame_source=source, on_progress=snapshots.append)
        calibration = CalibrationFrames(
            dark_paths=["d1.fits", "d2.fits", "d3.fits"], flat_paths=["f1.fits", "f2.fits"]
        )
        result = session.stack(["a.fits", "b.fits"], calibration=calibration)

        # median dark = 10; master flat = flat / 1.125
        assert result.pixels[1, 1] == pytest.approx(100.0 * 1.125, rel=1e-5)
        assert result.pixels[0, 0] == pytest.approx(100.0 * 1.125 / 3.0, rel=1e-5)
        messages = [s.message for s in snapshots if s.stage is StackStage.CALIBRATING]
        assert "Building master dark from 3 frames..." in messages
        assert "Building master flat from 2 frames..." in messages

    def test_unreadable_calibration_skipped(self, memory_source, constant_frame):
        source = memory_source({"a.fits": constant_frame(10.0), "b.fits": constant_frame(10.0)})
        session = StackingSession(frame_source=source)
        result = session.stack(["a.fits", "b.fits"], calibration=CalibrationFrames(dark_path="missing.fits"))
        assert result is not None
        np.testing.assert_allclose(result.pixels, 10.0)

    def test_calibration_size_mismatch(self, memory_source, constant_frame):
        source = memory_source({
            "a.fits": constant_frame(10.0),
            "b.fits": constant_frame(10.0),
            "dark.fits": constant_frame(1.0, height=3, width=3),
        })
        session = StackingSession(frame_source=source)
        assert session.stack(["a.fits", "b.fits"], calibration=CalibrationFrames(dark_path="dark.fits")) is None
        assert session.error == "Dark frame size (9) does not match image size (16)"

    def test_master_flat_with_bias(self, memory_source):
        """Bias is removed from every flat before the master flat is normalized."""
        vignette = np.ones((4, 4), dtype=np.float32)
        vignette[2:] = 0.5
        frames = {
            "a.fits": 1000.0 * vignette,
            "b.fits": 1000.0 * vignette,
            "f1.fits": vignette * 10000.0 + 500.0,
            "f2.fits": vignette * 10000.0 + 500.0,
            "bias.fits": np.full((4, 4), 500.0, dtype=np.float32),
        }
        session = StackingSession(frame_source=memory_source(frames))
        from_list = session.stack(
            ["a.fits", "b.fits"],
            calibration=CalibrationFrames(flat_paths=["f1.fits", "f2.fits"], bias_path="bias.fits"),
        )
        from_single = session.stack(
            ["a.fits", "b.fits"],
            calibration=CalibrationFrames(flat_path="f1.fits", bias_path="bias.fits"),
        )

        # normalized flat = vignette / 0.75
        np.testing.assert_allclose(from_list.pixels, 750.0, rtol=1e-5)
        np.testing.assert_allclose(from_list.pixels, from_single.pixels, rtol=1e-5)

    def test_calibration_list_size_mismatch(self, memory_source, constant_frame):
        """Frames of a master list are checked one by one against the lights."""
        source = memory_source({
            "a.fits": constant_frame(10.0),
            "b.fits": constant_frame(10.0),
            "d1.fits": constant_frame(1.0),
            "d2.fits": constant_frame(1.0, height=3, width=3),
        })
        session = StackingSession(frame_source=source)
        calibration = CalibrationFrames(dark_paths=["d1.fits", "d2.fits"])
        assert session.stack(["a.fits", "b.fits"], calibration=calibration) is None
        assert session.error == "Dark frame size (9) does not match image size (16)"


class TestQualityAndAlignment:
    """Tests for the evaluating and aligning stages."""

    def test_weighted_uses_quality(self, star_frames):
        _, source = star_frames
        session = StackingSession(frame_source=source)
        result = session.stack(sorted(source.frames), method="weighted")

        assert result is not None
        assert len(result.quality_metrics) == 3
        assert all(m.star_count > 0 for m in result.quality_metrics)
        assert all(0 <= m.score <= 100 for m in result.quality_metrics)

    def test_quality_flag_without_weighting(self, identical_frames):
        _, source = identical_frames
        snapshots = []
        session = StackingSession(frame_source=source, on_progress=snapshots.append)
        result = session.stack(["a.fits", "b.fits"], enable_quality_eval=True)
        assert len(result.quality_metrics) == 2
        assert any(s.stage is StackStage.EVALUATING for s in snapshots)

    def test_translation_alignment(self, star_frames):
        positions, source = star_frames
        snapshots = []
        session = StackingSession(frame_source=source, on_progress=snapshots.append)
        result = session.stack(sorted(source.frames), method="median", alignment_mode="translation")

        reference, *others = result.alignment_results
        assert reference.matched_stars == -1
        assert reference.filename == "light_0.fits"
        assert all(a.matched_stars >= 10 for a in others)
        assert all(a.fallback_used == "none" for a in others)

        # Stars of the shifted frames land back on the reference grid
        x, y = np.round(positions[0]).astype(int)
        ref = source.frames["light_0.fits"]
        assert result.pixels[y, x] == pytest.approx(ref[y, x], rel=0.05)

        aligning = [s for s in snapshots if s.stage is StackStage.ALIGNING]
        assert aligning[0].message == "Detecting reference stars..."
        assert all(s.total == 2 for s in aligning)

    def test_advanced_detection_options(self, star_frames):
        _, source = star_frames
        session = StackingSession(frame_source=source)
        advanced = AdvancedOptions(detection=resolve_detection_options("fast"))
        result = session.stack(sorted(source.frames), alignment_mode="full", advanced=advanced)
        assert result is not None
        assert all(a.matched_stars >= 3 for a in result.alignment_results[1:])


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_mid_run(self, star_frames):
        _, source = star_frames
        session = StackingSession(frame_source=source)

        def on_progress(snapshot):
            if snapshot.stage is StackStage.ALIGNING:
                session.cancel()

        session.on_progress = on_progress
        result = session.stack(sorted(source.frames), alignment_mode="translation")

        assert result is None
        assert session.result is None
        assert session.error is None
        assert session.is_stacking is False
        assert session.progress is None

    def test_cancel_background_run(self, identical_frames):
        _, source = identical_frames
        gate = threading.Event()
        session = StackingSession(frame_source=source, yield_control=gate.wait)
        with session:
            future = session.start(["a.fits", "b.fits"])
            session.cancel()
            gate.set()
            assert future.result(timeout=10) is None
        assert session.error is None
        assert session.is_stacking is False

    def test_background_run_result(self, identical_frames):
        frame, source = identical_frames
        with StackingSession(frame_source=source) as session:
            result = session.start(["a.fits", "b.fits"], method="median").result(timeout=10)
        np.testing.assert_array_equal(result.pixels, frame)

    def test_start_validation_error(self, identical_frames):
        _, source = identical_frames
        session = StackingSession(frame_source=source)
        assert session.start(["a.fits"]).result() is None
        assert session.error == "At least 2 frames are required for stacking"
