"""
Tests for the calibration module.

Tests cover:
- Dark and bias subtraction
- Flat normalization and guarded division
- Full calibration order and pass-through
- Master dark / master flat creation

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from skystack.calibration import (
    apply_flat,
    calibrate_frame,
    create_master_dark,
    create_master_flat,
    normalize_flat,
    subtract_bias,
    subtract_dark,
)


class TestSubtraction:
    """Tests for dark and bias subtraction."""

    def test_subtract_dark(self):
        """Dark is removed element-wise."""
        light = np.array([10, 20, 30], dtype=np.float32)
        dark = np.array([1, 2, 3], dtype=np.float32)
        np.testing.assert_allclose(subtract_dark(light, dark), [9, 18, 27])

    def test_subtract_bias_returns_float32(self):
        """Integer inputs give a float32 result."""
        out = subtract_bias(np.array([100, 200], dtype=np.uint16), np.array([50, 50]))
        assert out.dtype == np.float32
        np.testing.assert_allclose(out, [50, 150])

    def test_negative_values_allowed(self):
        """Subtraction is not clipped at zero."""
        out = subtract_dark(np.array([5.0]), np.array([8.0]))
        assert out[0] == pytest.approx(-3.0)


class TestNormalizeFlat:
    """Tests for flat normalization."""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_unit_mean(self, seed):
        """Normalized flat has mean 1 over positive samples."""
        rng = np.random.default_rng(seed)
        flat = rng.uniform(0.2, 5.0, (32, 32)).astype(np.float32)
        normalized = normalize_flat(flat)
        assert normalized.mean() == pytest.approx(1.0, rel=1e-5)

    def test_ignores_non_positive_and_nan(self):
        """Zeros, negatives and NaN do not enter the mean."""
        flat = np.array([2.0, 2.0, 0.0, -4.0, np.nan], dtype=np.float32)
        normalized = normalize_flat(flat)
        np.testing.assert_allclose(normalized[:2], [1.0, 1.0])
        assert normalized[3] == pytest.approx(-2.0)

    def test_no_valid_samples(self):
        """Mean defaults to 1 when no sample is positive."""
        flat = np.zeros(4, dtype=np.float32)
        np.testing.assert_array_equal(normalize_flat(flat), flat)


class TestApplyFlat:
    """Tests for flat-field division."""

    def test_division(self):
        light = np.array([10.0, 10.0])
        flat = np.array([0.5, 2.0])
        np.testing.assert_allclose(apply_flat(light, flat), [20.0, 5.0])

    def test_small_flat_values_left_unchanged(self):
        """Pixels with flat <= epsilon keep their light value."""
        light = np.array([10.0, 10.0, 10.0])
        flat = np.array([0.0, 0.01, 1.0])
        np.testing.assert_allclose(apply_flat(light, flat), [10.0, 10.0, 10.0])


class TestCalibrateFrame:
    """Tests for full frame calibration."""

    def test_pass_through(self):
        """With no calibration frame the light itself is returned."""
        light = np.arange(16, dtype=np.float32).reshape(4, 4)
        assert calibrate_frame(light) is light

    def test_empty_frames_are_missing(self):
        """Empty arrays count as absent frames."""
        light = np.ones((2, 2), dtype=np.float32)
        empty = np.zeros(0, dtype=np.float32)
        assert calibrate_frame(light, dark=empty, flat=empty, bias=empty) is light

    def test_dark_and_flat(self):
        """(light - dark) / normalize(flat)."""
        light = np.array([110.0, 210.0], dtype=np.float32)
        dark = np.array([10.0, 10.0], dtype=np.float32)
        flat = np.array([1.0, 3.0], dtype=np.float32)  # normalizes to 0.5, 1.5
        out = calibrate_frame(light, dark=dark, flat=flat)
        np.testing.assert_allclose(out, [200.0, 200.0 / 1.5], rtol=1e-6)

    def test_bias_removed_from_flat(self):
        """Bias is subtracted from the flat before normalization."""
        light = np.array([100.0, 100.0], dtype=np.float32)
        flat = np.array([12.0, 22.0], dtype=np.float32)
        bias = np.array([2.0, 2.0], dtype=np.float32)  # flat - bias = 10, 20 -> 2/3, 4/3
        out = calibrate_frame(light, flat=flat, bias=bias)
        np.testing.assert_allclose(out, [150.0, 75.0], rtol=1e-6)

    def test_bias_only(self):
        """Bias alone is subtracted from the light."""
        light = np.array([100.0], dtype=np.float32)
        out = calibrate_frame(light, bias=np.array([40.0], dtype=np.float32))
        np.testing.assert_allclose(out, [60.0])

    def test_dark_with_bias_does_not_subtract_bias_twice(self):
        """A dark already contains the bias level."""
        light = np.array([100.0], dtype=np.float32)
        out = calibrate_frame(
            light, dark=np.array([30.0], dtype=np.float32), bias=np.array([20.0], dtype=np.float32)
        )
        np.testing.assert_allclose(out, [70.0])


class TestMasterFrames:
    """Tests for master dark and master flat."""

    def test_master_dark_median_rejects_hot_pixel(self):
        """Per-pixel median removes a transient outlier."""
        darks = [np.full((3, 3), 10.0, dtype=np.float32) for _ in range(4)]
        darks[2][1, 1] = 5000.0
        master = create_master_dark(darks)
        assert master.dtype == np.float32
        np.testing.assert_allclose(master, 10.0)

    def test_master_dark_upper_median(self):
        """Even counts take the upper median."""
        darks = [np.array([v], dtype=np.float32) for v in (1.0, 2.0, 3.0, 4.0)]
        assert create_master_dark(darks)[0] == pytest.approx(3.0)

    def test_master_dark_single_is_copy(self):
        dark = np.ones((2, 2), dtype=np.float32)
        master = create_master_dark([dark])
        np.testing.assert_array_equal(master, dark)
        assert master is not dark

    def test_master_dark_empty(self):
        assert create_master_dark([]).size == 0

    def test_master_flat_mean_and_normalized(self):
        """Master flat is the mean of the flats, normalized to unit mean."""
        flats = [
            np.array([1.0, 3.0], dtype=np.float32),
            np.array([3.0, 5.0], dtype=np.float32),
        ]
        master = create_master_flat(flats)  # mean = [2, 4] -> [2/3, 4/3]
        np.testing.assert_allclose(master, [2 / 3, 4 / 3], rtol=1e-6)
        assert master.mean() == pytest.approx(1.0)

    def test_master_flat_empty(self):
        assert create_master_flat([]).size == 0
