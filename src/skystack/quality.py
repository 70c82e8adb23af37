"""
Frame quality assessment for weighted stacking.

Metrics are derived from the background model and the star detections of
each frame, then folded into a 0-100 score. All metrics are transparent
and deterministic.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Sequence

import numpy as np

from .config import (
    PROFILE_PRESETS,
    DetectedStar,
    DetectionProfile,
    FrameQualityMetrics,
    QualityOptions,
)
from .detection import detect_stars, detect_stars_chunked, estimate_background
from .runtime import DetectionRuntime
from .utils import as_plane

logger = logging.getLogger(__name__)

# Background samples used for the median metric
BACKGROUND_SAMPLES = 10000

# Stars needed before FWHM dispersion lowers the roundness metric
MIN_STARS_FOR_ROUNDNESS = 5


def _upper_median(values: np.ndarray) -> float:
    if values.size == 0:
        return 0.0
    return float(np.partition(values, values.size // 2)[values.size // 2])


def compute_score(
    star_count: int,
    fwhm: float,
    snr: float,
    roundness: float,
    options: QualityOptions,
) -> int:
    """
    Combine the frame metrics into a 0-100 quality score.

    Parameters
    ----------
    star_count : int
        Number of detections.
    fwhm : float
        Median FWHM in pixels (0 when no star).
    snr : float
        Median peak over background noise.
    roundness : float
        Consistency of the FWHM across stars, in [0, 1].
    options : QualityOptions
        Weights (normalized to unit sum) and thresholds.

    Returns
    -------
    int
        Rounded weighted score.

    Notes
    -----
    - fwhm: 100 at `fwhm_best`, 0 at `fwhm_worst`, 50 when unknown
    - snr: ``20 * log10(snr)`` (dB)
    - stars: ``star_count_scale`` points per star
    - roundness: ``100 * roundness``

    Each partial score is clamped to [0, 100].
    """
    if fwhm > 0:
        span = options.fwhm_worst - options.fwhm_best
        fwhm_score = float(np.clip(100 * (1 - (fwhm - options.fwhm_best) / span), 0, 100))
    else:
        fwhm_score = 50.0
    snr_score = float(np.clip(20 * np.log10(snr), 0, 100)) if snr > 0 else 0.0
    star_score = min(100.0, star_count * options.star_count_scale)
    round_score = float(np.clip(roundness * 100, 0, 100))

    weights = np.array([
        options.weight_fwhm, options.weight_snr, options.weight_star_count, options.weight_roundness,
    ])
    weights = weights / weights.sum()
    total = weights @ np.array([fwhm_score, snr_score, star_score, round_score])
    return int(np.floor(total + 0.5))


def _build_metrics(
    stars: Sequence[DetectedStar],
    background: np.ndarray,
    noise: float,
    options: QualityOptions,
) -> FrameQualityMetrics:
    flat_bg = background.ravel()
    step = max(1, flat_bg.size // BACKGROUND_SAMPLES)
    background_median = _upper_median(flat_bg[::step])

    star_count = len(stars)
    fwhms = np.array([s.fwhm for s in stars], dtype=np.float64)
    median_fwhm = _upper_median(fwhms)

    snr = 0.0
    if star_count > 0 and noise > 0:
        snr = _upper_median(np.array([s.peak for s in stars], dtype=np.float64)) / noise

    roundness = 1.0
    if star_count >= MIN_STARS_FOR_ROUNDNESS:
        mean = fwhms.mean()
        cv = fwhms.std() / mean if mean > 0 else 0.0
        roundness = float(np.clip(1 - cv, 0, 1))

    return FrameQualityMetrics(
        background_median=background_median,
        background_noise=float(noise),
        snr=float(snr),
        star_count=star_count,
        median_fwhm=median_fwhm,
        roundness=roundness,
        score=compute_score(star_count, median_fwhm, snr, roundness, options),
        stars=list(stars),
    )


def evaluate_frame_quality(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    options: QualityOptions | None = None,
    runtime: DetectionRuntime | None = None,
) -> FrameQualityMetrics:
    """
    Compute quality metrics for one frame.

    Parameters
    ----------
    pixels : np.ndarray
        Calibrated plane (height, width) or flat buffer.
    width, height : int, optional
        Required for flat buffers.
    options : QualityOptions, optional
        Scoring parameters, detector options (legacy preset by default) and
        optional pre-detected stars.
    runtime : DetectionRuntime, optional
        Runs the chunked detector and reports progress
        (background, detect-stars, score, done).

    Returns
    -------
    FrameQualityMetrics
        Metrics and score of the frame.

    Raises
    ------
    StackingCancelled
        If the runtime's token is cancelled.
    """
    options = options or QualityOptions()
    plane = as_plane(pixels, width, height)
    detection = options.detection or PROFILE_PRESETS[DetectionProfile.LEGACY]

    if runtime is not None:
        runtime.checkpoint()
        runtime.report(0.05, "background")
    background, noise = estimate_background(
        plane, mesh_size=options.background_mesh_size, sigma_clip_iters=options.background_clip_iters
    )

    if options.stars:
        stars = options.stars
    elif runtime is not None:
        runtime.report(0.25, "detect-stars")
        detector_runtime = replace(
            runtime, on_progress=lambda p, stage: runtime.report(0.25 + 0.7 * p, stage)
        )
        stars = detect_stars_chunked(plane, options=detection, runtime=detector_runtime)
    else:
        stars = detect_stars(plane, options=detection)

    if runtime is not None:
        runtime.report(0.95, "score")
    metrics = _build_metrics(stars, background, noise, options)
    if runtime is not None:
        runtime.report(1.0, "done")

    logger.debug(
        "Quality: stars=%d fwhm=%.2f snr=%.1f roundness=%.2f score=%d",
        metrics.star_count, metrics.median_fwhm, metrics.snr, metrics.roundness, metrics.score,
    )
    return metrics


def evaluate_frames(
    frames: Sequence[np.ndarray],
    width: int | None = None,
    height: int | None = None,
    options: QualityOptions | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    runtime: DetectionRuntime | None = None,
) -> list[FrameQualityMetrics]:
    """
    Evaluate a batch of frames.

    `on_progress(done, total)` is called after each frame. With a runtime,
    control is yielded between frames.
    """
    results = []
    total = len(frames)
    for i, frame in enumerate(frames):
        if runtime is not None:
            runtime.checkpoint()
        results.append(evaluate_frame_quality(frame, width, height, options, runtime))
        if on_progress is not None:
            on_progress(i + 1, total)
        if runtime is not None and i + 1 < total:
            runtime.step()
    return results


def quality_to_weights(metrics: Sequence[FrameQualityMetrics]) -> list[float]:
    """
    Convert quality metrics to stacking weights in [0, 1].

    Scores are divided by the best score. All weights are 1 when every
    score is 0.
    """
    if len(metrics) == 0:
        return []
    scores = [m.score for m in metrics]
    best = max(scores)
    if best == 0:
        return [1.0] * len(scores)
    return [s / best for s in scores]
