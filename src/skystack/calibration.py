"""
Frame calibration: dark, bias and flat-field correction, master frames.

All functions work element-wise on planes of identical size (2D planes or
flat buffers) and return new float32 arrays; size agreement is checked by
the caller.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

# Flat pixels at or below this normalized level are left uncorrected
FLAT_EPSILON = 0.01


def _present(frame: np.ndarray | None) -> bool:
    return frame is not None and np.size(frame) > 0


def subtract_dark(light: np.ndarray, dark: np.ndarray) -> np.ndarray:
    """Subtract a (master) dark frame from a light frame."""
    return (np.asarray(light, dtype=np.float32) - np.asarray(dark, dtype=np.float32)).astype(
        np.float32
    )


def subtract_bias(light: np.ndarray, bias: np.ndarray) -> np.ndarray:
    """Subtract a bias frame from a light frame."""
    return (np.asarray(light, dtype=np.float32) - np.asarray(bias, dtype=np.float32)).astype(
        np.float32
    )


def normalize_flat(flat: np.ndarray) -> np.ndarray:
    """
    Normalize a flat field to unit mean.

    The mean is taken over finite, strictly positive samples only; it
    defaults to 1 when the flat has no such sample.

    Parameters
    ----------
    flat : np.ndarray
        Flat-field frame.

    Returns
    -------
    np.ndarray
        Normalized flat (float32).
    """
    flat = np.asarray(flat, dtype=np.float32)
    valid = flat[np.isfinite(flat) & (flat > 0)]
    mean = float(np.mean(valid, dtype=np.float64)) if valid.size else 1.0
    if mean == 0:
        mean = 1.0
    return (flat / np.float32(mean)).astype(np.float32)


def apply_flat(
    light: np.ndarray,
    normalized_flat: np.ndarray,
    epsilon: float = FLAT_EPSILON,
) -> np.ndarray:
    """
    Divide a light frame by a normalized flat.

    Pixels where the flat is at or below `epsilon` are copied unchanged,
    which protects vignetted corners and dead pixels from blowing up.
    """
    light = np.asarray(light, dtype=np.float32)
    normalized_flat = np.asarray(normalized_flat, dtype=np.float32)
    out = light.copy()
    np.divide(light, normalized_flat, out=out, where=normalized_flat > epsilon)
    return out


def calibrate_frame(
    light: np.ndarray,
    dark: np.ndarray | None = None,
    flat: np.ndarray | None = None,
    bias: np.ndarray | None = None,
) -> np.ndarray:
    """
    Calibrate a light frame: ``(light - dark) / normalize(flat - bias)``.

    Parameters
    ----------
    light : np.ndarray
        Raw light frame.
    dark : np.ndarray, optional
        Master dark (already includes the bias level).
    flat : np.ndarray, optional
        Master flat (not yet normalized).
    bias : np.ndarray, optional
        Master bias. Removed from the flat when a flat is given, and from
        the light only when neither dark nor flat is given.

    Returns
    -------
    np.ndarray
        Calibrated frame. With no calibration frame at all, `light` itself
        is returned.

    Notes
    -----
    Empty arrays are treated as missing frames.
    """
    has_dark, has_flat, has_bias = _present(dark), _present(flat), _present(bias)
    if not (has_dark or has_flat or has_bias):
        return light

    result = np.asarray(light, dtype=np.float32)

    if has_dark:
        result = subtract_dark(result, dark)

    if has_flat:
        flat_base = subtract_bias(flat, bias) if has_bias else flat
        result = apply_flat(result, normalize_flat(flat_base))
    elif has_bias and not has_dark:
        result = subtract_bias(result, bias)

    return result


def create_master_dark(frames: list[np.ndarray]) -> np.ndarray:
    """
    Combine dark frames into a master dark by per-pixel median.

    Parameters
    ----------
    frames : list[np.ndarray]
        Dark frames of identical size.

    Returns
    -------
    np.ndarray
        Master dark (float32). Empty when `frames` is empty.

    Notes
    -----
    The median is found by selection (`np.partition`) rather than a full
    sort. For an even count the upper median (index ``N // 2``) is used.
    """
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float32)
    if len(frames) == 1:
        return np.array(frames[0], dtype=np.float32, copy=True)

    cube = np.stack([np.asarray(f, dtype=np.float32) for f in frames], axis=0)
    k = len(frames) // 2
    master = np.partition(cube, k, axis=0)[k]
    logger.info("Master dark from %d frames", len(frames))
    return master.astype(np.float32)


def create_master_flat(frames: list[np.ndarray]) -> np.ndarray:
    """
    Combine flat frames into a normalized master flat (per-pixel mean).

    Parameters
    ----------
    frames : list[np.ndarray]
        Flat frames of identical size.

    Returns
    -------
    np.ndarray
        Master flat with unit mean (float32). Empty when `frames` is empty.
    """
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float32)
    if len(frames) == 1:
        return normalize_flat(frames[0])

    acc = np.zeros(np.shape(frames[0]), dtype=np.float64)
    for frame in frames:
        acc += np.asarray(frame, dtype=np.float64)
    logger.info("Master flat from %d frames", len(frames))
    return normalize_flat((acc / len(frames)).astype(np.float32))
