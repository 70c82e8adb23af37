"""
Tests for FITS and preview I/O.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import imageio.v3 as iio
import numpy as np
import pytest
from astropy.io import fits

from skystack.io import FitsFrameSource, read_dimensions, read_fits, write_fits, write_preview


class TestFits:
    """Tests for FITS reading and writing."""

    def test_write_then_read(self, tmp_path):
        data = np.arange(12, dtype=np.float32).reshape(3, 4)
        path = tmp_path / "out" / "master.fits"
        write_fits(path, data)

        loaded = read_fits(path)
        assert loaded.dtype == np.float32
        np.testing.assert_array_equal(loaded, data)
        assert read_dimensions(path) == (4, 3)

    def test_unsigned_16bit_scaling(self, tmp_path):
        """BZERO = 32768 data comes back in the physical 0..65535 range."""
        data = np.array([[0, 1000], [40000, 65535]], dtype=np.uint16)
        path = tmp_path / "light.fits"
        fits.PrimaryHDU(data=data).writeto(path)

        np.testing.assert_array_equal(read_fits(path), data.astype(np.float32))

    def test_singleton_axis_dropped(self, tmp_path):
        path = tmp_path / "cube.fits"
        fits.PrimaryHDU(data=np.ones((1, 5, 6), dtype=np.float32)).writeto(path)
        assert read_fits(path).shape == (5, 6)

    def test_rejects_cube(self, tmp_path):
        path = tmp_path / "rgb.fits"
        fits.PrimaryHDU(data=np.ones((3, 5, 6), dtype=np.float32)).writeto(path)
        with pytest.raises(ValueError, match="Expected a 2D image"):
            read_fits(path)

    def test_no_overwrite_by_default(self, tmp_path):
        path = tmp_path / "master.fits"
        write_fits(path, np.zeros((2, 2)))
        with pytest.raises(OSError):
            write_fits(path, np.ones((2, 2)))
        write_fits(path, np.ones((2, 2)), overwrite=True)
        np.testing.assert_array_equal(read_fits(path), 1.0)

    def test_frame_source(self, tmp_path):
        path = tmp_path / "light.fits"
        write_fits(path, np.zeros((7, 9)))
        frame = FitsFrameSource().load(str(path))
        assert (frame.width, frame.height) == (9, 7)
        assert frame.pixels.shape == (7, 9)


class TestPreview:
    """Tests for the PNG preview."""

    def test_write_png(self, tmp_path):
        rgba = np.zeros((4, 5, 4), dtype=np.uint8)
        rgba[..., 3] = 255
        rgba[1, 2, :3] = 200
        path = tmp_path / "preview.png"
        write_preview(path, rgba)

        np.testing.assert_array_equal(iio.imread(path), rgba)
