"""
Utility functions for the skystack pipeline.

Includes:
- Plane shape normalization
- Version info
- Duration formatting

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import platform
import sys

import numpy as np

__version__ = "0.3.0"
__version_info__ = {
    "major": 0,
    "minor": 3,
    "patch": 0,
    "status": "stable",
    "date": "2026-10-18",
}


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"skystack v{__version__} | Astrophotography stacking core"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return (
        f"{platform.system()} {platform.release()} / Python "
        f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    )


def as_plane(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
) -> np.ndarray:
    """
    Return `pixels` as a float32 plane of shape (height, width).

    Parameters
    ----------
    pixels : np.ndarray
        2D plane, or flat row-major buffer of width*height samples.
    width, height : int, optional
        Plane size. Mandatory for flat buffers, checked for 2D input.

    Returns
    -------
    np.ndarray
        float32 view or copy of the data.

    Raises
    ------
    ValueError
        If the size does not match the buffer.
    """
    plane = np.asarray(pixels, dtype=np.float32)
    if plane.ndim == 1:
        if width is None or height is None:
            raise ValueError("width and height are required for flat pixel buffers")
        if plane.size != width * height:
            raise ValueError(
                f"Buffer has {plane.size} samples, expected {width}x{height}={width * height}"
            )
        return plane.reshape(height, width)
    if plane.ndim != 2:
        raise ValueError(f"Expected a 2D plane, got shape {plane.shape}")
    if (width is not None and plane.shape[1] != width) or (
        height is not None and plane.shape[0] != height
    ):
        raise ValueError(f"Plane has shape {plane.shape}, expected ({height}, {width})")
    return plane


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Parameters
    ----------
    seconds : float
        Duration in seconds.

    Returns
    -------
    str
        Formatted string like "2h 15m 30s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes}m {seconds % 60:.0f}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m {seconds % 60:.0f}s"
