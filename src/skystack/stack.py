"""
Pixel combination (stacking) algorithms.

Every combiner takes N >= 1 same-shape planes and returns a float32 plane of
that shape. Rejection methods process the image in horizontal chunks so the
working cube stays O(n_frames x chunk_rows x width).

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from typing import Iterator, Sequence

import numpy as np
from astropy.stats import sigma_clip

from .config import STACK_METHODS

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_ROWS = 64


def _as_planes(
    frames: Sequence[np.ndarray] | np.ndarray,
) -> tuple[list[np.ndarray], tuple[int, ...]]:
    """Return 2D views of the frames and the original frame shape."""
    if isinstance(frames, np.ndarray) and frames.ndim >= 2:
        frame_list = [frames[i] for i in range(frames.shape[0])]
    else:
        frame_list = list(frames)
    if len(frame_list) == 0:
        raise ValueError("Empty frame list")

    shape = np.shape(frame_list[0])
    for i, frame in enumerate(frame_list):
        if np.shape(frame) != shape:
            raise ValueError(f"Frame {i} has shape {np.shape(frame)}, expected {shape}")

    if len(shape) == 1:
        # Flat pixel buffers are handled as a single row
        frame_list = [np.asarray(f).reshape(1, -1) for f in frame_list]
    else:
        frame_list = [np.asarray(f) for f in frame_list]
    return frame_list, shape


def _iter_chunks(
    frame_list: list[np.ndarray],
    chunk_rows: int,
) -> Iterator[tuple[int, int, np.ndarray]]:
    """Yield (row_start, row_end, cube) with cube shape (n_frames, rows, width)."""
    height, width = frame_list[0].shape
    chunk_rows = max(1, int(chunk_rows))
    n_chunks = (height + chunk_rows - 1) // chunk_rows
    for chunk_idx in range(n_chunks):
        row_start = chunk_idx * chunk_rows
        row_end = min(row_start + chunk_rows, height)
        cube = np.empty((len(frame_list), row_end - row_start, width), dtype=np.float64)
        for i, frame in enumerate(frame_list):
            cube[i] = frame[row_start:row_end]
        yield row_start, row_end, cube


def stack_average(frames: Sequence[np.ndarray] | np.ndarray) -> np.ndarray:
    """
    Arithmetic mean of the frames.

    Parameters
    ----------
    frames : list[np.ndarray] or np.ndarray
        Planes of identical shape, or a cube (n_frames, height, width).

    Returns
    -------
    np.ndarray
        Mean plane (float32).
    """
    frame_list, shape = _as_planes(frames)
    acc = np.zeros(frame_list[0].shape, dtype=np.float64)
    for frame in frame_list:
        acc += frame
    return (acc / len(frame_list)).astype(np.float32).reshape(shape)


def stack_median(
    frames: Sequence[np.ndarray] | np.ndarray,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Per-pixel median.

    Uses linear-time selection (`np.partition`) of index ``N // 2``, i.e.
    the upper median when N is even.
    """
    frame_list, shape = _as_planes(frames)
    k = len(frame_list) // 2
    out = np.empty(frame_list[0].shape, dtype=np.float32)
    for row_start, row_end, cube in _iter_chunks(frame_list, chunk_rows):
        out[row_start:row_end] = np.partition(cube, k, axis=0)[k]
    return out.reshape(shape)


def stack_sigma_clip(
    frames: Sequence[np.ndarray] | np.ndarray,
    sigma: float = 2.5,
    maxiters: int = 3,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Sigma-clipped mean.

    Parameters
    ----------
    frames : list[np.ndarray] or np.ndarray
        Planes of identical shape.
    sigma : float, default 2.5
        Rejection threshold in standard deviations.
    maxiters : int, default 3
        Maximum clipping iterations (stops earlier once nothing changes).
    chunk_rows : int, default 64
        Rows processed at a time.

    Returns
    -------
    np.ndarray
        Mean of the surviving samples (float32).

    Notes
    -----
    Samples deviating from the per-pixel median by more than ``sigma``
    population standard deviations are rejected (astropy `sigma_clip`).
    A median centre lets a single outlier among few frames be rejected,
    which a mean centre cannot do for N = 3. If every sample of a pixel
    ends up rejected, the plain mean of all samples is used.
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")
    frame_list, shape = _as_planes(frames)
    n_frames = len(frame_list)
    out = np.empty(frame_list[0].shape, dtype=np.float32)
    n_rejected = 0

    for row_start, row_end, cube in _iter_chunks(frame_list, chunk_rows):
        clipped = sigma_clip(
            cube,
            sigma=sigma,
            maxiters=maxiters,
            cenfunc="median",
            stdfunc="std",
            axis=0,
            masked=True,
            copy=False,
        )
        mask = np.ma.getmaskarray(clipped)
        kept = n_frames - mask.sum(axis=0)
        sums = np.where(mask, 0.0, cube).sum(axis=0)
        plain = cube.mean(axis=0)
        out[row_start:row_end] = np.where(kept > 0, sums / np.maximum(kept, 1), plain)
        n_rejected += int(mask.sum())

    logger.debug(
        "Sigma clip (sigma=%.2f): rejected %d of %d samples",
        sigma, n_rejected, n_frames * out.size,
    )
    return out.reshape(shape)


def stack_winsorized_sigma_clip(
    frames: Sequence[np.ndarray] | np.ndarray,
    sigma: float = 2.5,
    maxiters: int = 3,
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
) -> np.ndarray:
    """
    Winsorized sigma-clipped mean.

    Out-of-band samples are clamped to ``mean +/- sigma * std`` instead of
    being discarded, so every pixel always averages exactly N samples.
    Iteration stops after `maxiters` passes or once no sample changes.
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")
    frame_list, shape = _as_planes(frames)
    out = np.empty(frame_list[0].shape, dtype=np.float32)

    for row_start, row_end, cube in _iter_chunks(frame_list, chunk_rows):
        for _ in range(maxiters):
            mean = cube.mean(axis=0)
            std = cube.std(axis=0)
            lower = mean - sigma * std
            upper = mean + sigma * std
            clamped = np.clip(cube, lower, upper)
            if np.array_equal(clamped, cube):
                break
            cube = clamped
        out[row_start:row_end] = cube.mean(axis=0)

    return out.reshape(shape)


def stack_min(frames: Sequence[np.ndarray] | np.ndarray) -> np.ndarray:
    """Per-pixel minimum."""
    frame_list, shape = _as_planes(frames)
    out = np.array(frame_list[0], dtype=np.float32, copy=True)
    for frame in frame_list[1:]:
        np.minimum(out, frame, out=out)
    return out.reshape(shape)


def stack_max(frames: Sequence[np.ndarray] | np.ndarray) -> np.ndarray:
    """Per-pixel maximum."""
    frame_list, shape = _as_planes(frames)
    out = np.array(frame_list[0], dtype=np.float32, copy=True)
    for frame in frame_list[1:]:
        np.maximum(out, frame, out=out)
    return out.reshape(shape)


def stack_weighted_average(
    frames: Sequence[np.ndarray] | np.ndarray,
    weights: Sequence[float],
) -> np.ndarray:
    """
    Weighted mean ``sum(w_i * f_i) / sum(w_i)``.

    Parameters
    ----------
    frames : list[np.ndarray] or np.ndarray
        Planes of identical shape.
    weights : sequence of float
        One weight per frame (e.g. from quality scores).

    Returns
    -------
    np.ndarray
        Weighted mean (float32). Falls back to the plain average when the
        weights sum to zero.
    """
    frame_list, shape = _as_planes(frames)
    if len(frame_list) != len(weights):
        raise ValueError("Number of frames must match number of weights")

    weights = np.asarray(weights, dtype=np.float64)
    total = float(weights.sum())
    if total == 0:
        logger.warning("All frame weights are zero, using plain average")
        return stack_average(frame_list).reshape(shape)

    acc = np.zeros(frame_list[0].shape, dtype=np.float64)
    for frame, weight in zip(frame_list, weights):
        if weight != 0:
            acc += weight * frame.astype(np.float64)
    return (acc / total).astype(np.float32).reshape(shape)


def combine_frames(
    frames: Sequence[np.ndarray] | np.ndarray,
    method: str = "average",
    sigma: float = 2.5,
    weights: Sequence[float] | None = None,
) -> np.ndarray:
    """
    Combine frames with the named method.

    Parameters
    ----------
    frames : list[np.ndarray] or np.ndarray
        Aligned, calibrated planes.
    method : str, default "average"
        One of average, median, sigma, min, max, winsorized, weighted.
        Unknown names fall back to average.
    sigma : float, default 2.5
        Threshold for the sigma and winsorized methods.
    weights : sequence of float, optional
        Per-frame weights for the weighted method; without them the
        weighted method degrades to average.

    Returns
    -------
    np.ndarray
        Combined plane (float32).
    """
    if method not in STACK_METHODS:
        logger.warning("Unknown stacking method %r, using average", method)
        method = "average"

    n_frames = len(frames)
    logger.info("Combining %d frames with method=%s", n_frames, method)

    if method == "median":
        return stack_median(frames)
    if method == "sigma":
        return stack_sigma_clip(frames, sigma=sigma)
    if method == "winsorized":
        return stack_winsorized_sigma_clip(frames, sigma=sigma)
    if method == "min":
        return stack_min(frames)
    if method == "max":
        return stack_max(frames)
    if method == "weighted":
        if weights is None:
            logger.warning("Weighted stacking requested without weights, using average")
            return stack_average(frames)
        return stack_weighted_average(frames, weights)
    return stack_average(frames)
