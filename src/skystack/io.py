"""
Frame sources and FITS I/O.

Handles:
- The frame source protocol used by the stacking pipeline
- FITS reading with BZERO/BSCALE applied, as float32 planes
- FITS and PNG output of stacking results

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

logger = logging.getLogger(__name__)


@dataclass
class LoadedFrame:
    """Pixel plane returned by a frame source."""

    pixels: np.ndarray = field(repr=False)
    width: int
    height: int


class FrameSource(Protocol):
    """Loads a named frame; may raise or return None on failure."""

    def load(self, path: str) -> LoadedFrame | None: ...


def read_fits(path: str | Path, dtype: np.dtype = np.float32) -> np.ndarray:
    """
    Read the primary image of a FITS file.

    Parameters
    ----------
    path : str or Path
        Path to the FITS file.
    dtype : np.dtype, default np.float32
        Output data type.

    Returns
    -------
    np.ndarray
        2D array of shape (NAXIS2, NAXIS1).

    Raises
    ------
    ValueError
        If the primary HDU holds no 2D image.

    Notes
    -----
    astropy applies ``physical = stored * BSCALE + BZERO`` on read, so
    unsigned 16-bit data stored with BZERO = 32768 comes back in 0..65535.
    A leading axis of length 1 (NAXIS3 = 1) is dropped.
    """
    with fits.open(path) as hdul:
        data = hdul[0].data
        if data is None:
            raise ValueError(f"No image data in primary HDU of {path}")
        data = np.squeeze(data.astype(dtype))
    if data.ndim != 2:
        raise ValueError(f"Expected a 2D image in {path}, got shape {data.shape}")
    return data


def read_dimensions(path: str | Path) -> tuple[int, int]:
    """Return (width, height) from the FITS header without loading data."""
    with fits.open(path) as hdul:
        header = hdul[0].header
        return int(header.get("NAXIS1", 0)), int(header.get("NAXIS2", 0))


def write_fits(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> None:
    """
    Write a float plane as a FITS primary HDU.

    Parameters
    ----------
    path : str or Path
        Output path (parent directories are created).
    data : np.ndarray
        Image data to write.
    header : fits.Header, optional
        Header to include. A minimal header is created if not provided.
    overwrite : bool, default False
        Whether to overwrite an existing file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    hdu = fits.PrimaryHDU(data=np.asarray(data, dtype=np.float32), header=header or fits.Header())
    hdu.writeto(path, overwrite=overwrite)
    logger.info("Wrote FITS: %s", path)


def write_preview(path: str | Path, rgba: np.ndarray) -> None:
    """Write an RGBA uint8 preview image (format from the extension)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    iio.imwrite(path, rgba)
    logger.info("Wrote preview: %s", path)


class FitsFrameSource:
    """Frame source reading FITS files from disk."""

    def load(self, path: str) -> LoadedFrame:
        data = read_fits(path)
        height, width = data.shape
        logger.debug("Loaded %s (%dx%d)", path, width, height)
        return LoadedFrame(pixels=data, width=width, height=height)
