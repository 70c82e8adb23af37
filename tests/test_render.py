"""
Tests for the render module (auto-stretch and preview).

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from skystack.render import (
    AsinhRenderer,
    StretchRange,
    asinh_stretch,
    compute_auto_stretch,
    render_preview,
    to_rgba,
)


class TestAutoStretch:
    """Tests for STF parameter estimation."""

    def test_constant_data_default(self):
        assert compute_auto_stretch(np.full((8, 8), 5.0)) == StretchRange()

    def test_empty_and_nan(self):
        assert compute_auto_stretch(np.zeros(0)) == StretchRange()
        assert compute_auto_stretch(np.full(4, np.nan)) == StretchRange()

    def test_sky_background(self):
        """Dark sky with a few bright stars maps the median to a dim level."""
        rng = np.random.default_rng(0)
        plane = (100 + rng.normal(0, 2, (64, 64))).astype(np.float32)
        plane[10, 10] = plane[30, 40] = 5000.0
        stretch = compute_auto_stretch(plane)

        assert 0 <= stretch.black_point < 0.03
        assert stretch.white_point == 1.0
        assert 0.001 <= stretch.midtone <= 0.999


class TestAsinhStretch:
    """Tests for the display curve."""

    def test_range_and_monotonic(self):
        plane = np.linspace(0, 1000, 101, dtype=np.float32)
        out = asinh_stretch(plane)
        assert out[0] == 0.0
        assert out[-1] == pytest.approx(1.0)
        assert np.all(np.diff(out) >= 0)

    def test_constant_gives_mid_grey(self):
        np.testing.assert_array_equal(asinh_stretch(np.full((3, 3), 7.0)), 0.5)

    def test_black_point_clips(self):
        plane = np.linspace(0, 100, 11, dtype=np.float32)
        out = asinh_stretch(plane, black_point=0.5)
        np.testing.assert_array_equal(out[:6], 0.0)


class TestPreview:
    """Tests for RGBA rendering."""

    def test_rgba_layout(self):
        rgba = to_rgba(np.array([[0.0, 1.0], [0.5, 0.25]]))
        assert rgba.shape == (2, 2, 4)
        assert rgba.dtype == np.uint8
        assert tuple(rgba[0, 1]) == (255, 255, 255, 255)
        assert tuple(rgba[1, 0, :3]) == (128, 128, 128)
        assert np.all(rgba[..., 3] == 255)

    def test_render_preview_grey(self):
        rgba = render_preview(np.full((4, 4), 3.0, dtype=np.float32))
        assert np.all(rgba[..., :3] == 128)

    def test_renderer_protocol(self):
        renderer = AsinhRenderer()
        plane = np.arange(100, dtype=np.float32).reshape(10, 10)
        rgba = renderer.render(plane, renderer.auto_stretch(plane))
        assert rgba.shape == (10, 10, 4)
        assert rgba[-1, -1, 0] == 255
