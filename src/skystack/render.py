"""
Display rendering of stacked planes.

Provides a PixInsight-style screen transfer function (STF) estimate and an
asinh grayscale preview as 8-bit RGBA. Black and white points are expressed
as fractions of the finite data extent.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

logger = logging.getLogger(__name__)

MAX_STRETCH_SAMPLES = 50000
MAD_SCALE = 1.4826  # MAD to Gaussian sigma
ASINH_SOFTENING = 10.0


@dataclass(frozen=True)
class StretchRange:
    """Auto-stretch result, all values in [0, 1] of the data extent."""

    black_point: float = 0.0
    white_point: float = 1.0
    midtone: float = 0.5


class Renderer(Protocol):
    """Maps a float plane to a displayable RGBA image."""

    def auto_stretch(self, plane: np.ndarray) -> StretchRange: ...

    def render(self, plane: np.ndarray, stretch: StretchRange) -> np.ndarray: ...


def _finite_extent(plane: np.ndarray) -> tuple[float, float] | None:
    finite = plane[np.isfinite(plane)]
    if finite.size == 0:
        return None
    return float(finite.min()), float(finite.max())


def compute_auto_stretch(
    plane: np.ndarray,
    shadows_clipping: float = -2.8,
    target_background: float = 0.25,
) -> StretchRange:
    """
    Estimate STF black point and midtone balance.

    Parameters
    ----------
    plane : np.ndarray
        Linear image.
    shadows_clipping : float, default -2.8
        Black point offset from the median, in normalized sigmas.
    target_background : float, default 0.25
        Display level the median should map to.

    Returns
    -------
    StretchRange
        The default range (0, 1, 0.5) for empty or constant data.

    Notes
    -----
    Median and MAD are computed on at most 50 000 strided finite samples
    (upper medians). The white point is always 1.
    """
    data = np.asarray(plane, dtype=np.float32).ravel()
    extent = _finite_extent(data) if data.size else None
    if extent is None or extent[1] == extent[0]:
        return StretchRange()
    raw_min, raw_max = extent
    span = raw_max - raw_min

    stride = max(1, data.size // MAX_STRETCH_SAMPLES)
    samples = data[::stride]
    samples = np.sort(samples[np.isfinite(samples)].astype(np.float64))
    if samples.size == 0:
        return StretchRange()
    median = samples[samples.size // 2]
    deviations = np.sort(np.abs(samples - median))
    mad = deviations[deviations.size // 2]

    median_norm = (median - raw_min) / span
    mad_norm = mad * MAD_SCALE / span
    black = max(0.0, median_norm + shadows_clipping * mad_norm)

    x = median_norm - black
    midtone = 0.5
    if 0 < x < 1:
        t = target_background
        midtone = (t * x - x) / (2 * t * x - t - x)
        midtone = min(0.999, max(0.001, midtone))

    return StretchRange(black_point=float(black), white_point=1.0, midtone=float(midtone))


def asinh_stretch(
    plane: np.ndarray,
    black_point: float = 0.0,
    white_point: float = 1.0,
) -> np.ndarray:
    """
    Asinh display stretch between extent-relative black and white points.

    Returns a float32 array in [0, 1]; constant data maps to 0.5.
    """
    data = np.asarray(plane, dtype=np.float32)
    extent = _finite_extent(data) if data.size else None
    if extent is None or extent[1] == extent[0]:
        return np.full(data.shape, 0.5, dtype=np.float32)

    raw_min, raw_max = extent
    span = raw_max - raw_min
    bp = raw_min + black_point * span
    wp = raw_min + white_point * span
    with np.errstate(invalid="ignore", divide="ignore"):
        v = np.clip((data.astype(np.float64) - bp) / (wp - bp), 0.0, 1.0)
    v = np.nan_to_num(v, nan=0.0)
    v = np.arcsinh(v * ASINH_SOFTENING) / np.arcsinh(ASINH_SOFTENING)
    return np.clip(v, 0.0, 1.0).astype(np.float32)


def to_rgba(normalized: np.ndarray) -> np.ndarray:
    """Grayscale [0, 1] plane to opaque uint8 RGBA of shape (h, w, 4)."""
    gray = np.round(np.clip(normalized, 0, 1) * 255).astype(np.uint8)
    rgba = np.empty(gray.shape + (4,), dtype=np.uint8)
    rgba[..., :3] = gray[..., None]
    rgba[..., 3] = 255
    return rgba


def render_preview(plane: np.ndarray, stretch: StretchRange | None = None) -> np.ndarray:
    """Auto-stretched asinh grayscale preview of a 2D plane (uint8 RGBA)."""
    if stretch is None:
        stretch = compute_auto_stretch(plane)
    return to_rgba(asinh_stretch(plane, stretch.black_point, stretch.white_point))


class AsinhRenderer:
    """Default display renderer: STF black point, asinh curve, grayscale."""

    def __init__(self, shadows_clipping: float = -2.8, target_background: float = 0.25):
        self.shadows_clipping = shadows_clipping
        self.target_background = target_background

    def auto_stretch(self, plane: np.ndarray) -> StretchRange:
        return compute_auto_stretch(plane, self.shadows_clipping, self.target_background)

    def render(self, plane: np.ndarray, stretch: StretchRange) -> np.ndarray:
        return render_preview(plane, stretch)
