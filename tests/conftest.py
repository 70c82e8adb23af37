"""
Pytest configuration and fixtures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from skystack.io import LoadedFrame


def render_stars(positions, height=160, width=160, sigma=1.5, amplitudes=None,
                 background=100.0, noise=1.0, seed=0):
    """
    Render Gaussian point sources on a flat noisy background.

    Parameters
    ----------
    positions : array-like of (x, y)
        Star centres in pixels.
    amplitudes : array-like, optional
        Peak heights; decreasing from 3000 to 800 by default so the
        brightness order follows `positions`.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    if amplitudes is None:
        amplitudes = np.linspace(3000, 800, len(positions))
    rng = np.random.default_rng(seed)

    image = np.full((height, width), background, dtype=np.float64)
    if noise > 0:
        image += rng.normal(0, noise, (height, width))

    yy, xx = np.mgrid[0:height, 0:width]
    for (x0, y0), amplitude in zip(positions, amplitudes):
        image += amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))
    return image.astype(np.float32)


def scattered_positions(n, height=160, width=160, margin=24, min_separation=16, seed=1):
    """Random star positions with a minimum pairwise separation."""
    rng = np.random.default_rng(seed)
    points = []
    while len(points) < n:
        candidate = rng.uniform((margin, margin), (width - margin, height - margin))
        if all(np.hypot(*(candidate - p)) >= min_separation for p in points):
            points.append(candidate)
    return np.array(points)


class InMemoryFrameSource:
    """Frame source serving arrays from a dict; unknown paths raise KeyError."""

    def __init__(self, frames=None):
        self.frames = dict(frames or {})
        self.loaded = []

    def load(self, path):
        self.loaded.append(path)
        pixels = self.frames[path]
        if pixels is None:
            return None
        height, width = np.shape(pixels)
        return LoadedFrame(pixels=np.asarray(pixels, dtype=np.float32), width=width, height=height)


@pytest.fixture
def synthetic_star_field():
    """Factory for Gaussian star fields (see `render_stars`)."""
    return render_stars


@pytest.fixture
def star_positions():
    """Factory for well-separated random star positions."""
    return scattered_positions


@pytest.fixture
def constant_frame():
    """Create a constant float32 frame."""
    def _create(value, height=4, width=4):
        return np.full((height, width), value, dtype=np.float32)

    return _create


@pytest.fixture
def memory_source():
    """Factory for an in-memory frame source."""
    return InMemoryFrameSource
