"""
Star detection on single-channel float32 planes.

Two independent detectors are provided:

- legacy: mesh background without clipping, threshold-only segmentation
  with 4-connectivity, flux-weighted centroid and a radial second-moment
  FWHM. Kept for backward compatibility and as a reference.
- modern (fast / balanced / accurate presets): clipped mesh background,
  optional Gaussian matched filter, 4/8-connected segmentation, peak-seeded
  deblending, moment-based shape measurement and acceptance cuts.

`detect_stars_chunked` runs the modern detector in row chunks, yielding
control and polling a cancellation token between chunks.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import ndimage

from .config import (
    PROFILE_PRESETS,
    DetectedStar,
    DetectionProfile,
    StarDetectionOptions,
)
from .runtime import DetectionRuntime
from .utils import as_plane

logger = logging.getLogger(__name__)

EPS = 1e-8
FWHM_FACTOR = 2.3548  # FWHM / sigma for a Gaussian profile
MAD_TO_SIGMA = 0.6744897501960817
FLAG_DEBLENDED = 1 << 0

LEGACY_MAX_FWHM = 20.0
LEGACY_FWHM_WINDOW = 10  # Half-size of the second-moment window (pixels)


# =============================================================================
# BACKGROUND
# =============================================================================


def _robust_stats(values: np.ndarray, sigma_clip_iters: int) -> tuple[float, float]:
    """
    Median and MAD-based sigma of `values`, with optional 3-sigma clipping.

    The median is the upper median ``v[n // 2]`` of the sorted samples.
    Clipping stops early if it would keep fewer than
    ``max(8, floor(0.35 * n))`` samples.
    """
    if values.size == 0:
        return 0.0, 0.0

    work = np.sort(values.astype(np.float64))
    for iteration in range(sigma_clip_iters + 1):
        n = work.size
        median = float(work[n // 2])
        abs_dev = np.abs(work - median)
        mad = float(np.partition(abs_dev, n // 2)[n // 2])
        sigma = mad / MAD_TO_SIGMA if mad > 0 else 0.0
        if iteration == sigma_clip_iters or sigma <= 0:
            return median, sigma

        lower = median - 3 * sigma
        upper = median + 3 * sigma
        clipped = work[(work >= lower) & (work <= upper)]
        if clipped.size < max(8, int(np.floor(n * 0.35))):
            return median, sigma
        work = clipped

    return 0.0, 0.0


def estimate_background(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    mesh_size: int = 64,
    sigma_clip_iters: int = 2,
) -> tuple[np.ndarray, float]:
    """
    Estimate a smooth background map and the global noise level.

    Parameters
    ----------
    pixels : np.ndarray
        Plane (height, width) or flat buffer of width*height samples.
    width, height : int, optional
        Required for flat buffers.
    mesh_size : int, default 64
        Grid cell size in pixels.
    sigma_clip_iters : int, default 2
        Robust clipping iterations per cell.

    Returns
    -------
    tuple[np.ndarray, float]
        (background, noise). background is float32 of shape (height, width);
        noise is the median of the positive cell sigmas (1.0 if none).

    Notes
    -----
    The image is split into ``ceil(w/mesh) x ceil(h/mesh)`` cells (border
    cells may be smaller). Each cell gets a robust median and MAD-based
    sigma over its finite samples. The background at pixel p is bilinearly
    interpolated between cell medians at ``f = (p + 0.5)/mesh - 0.5``; the
    base cell index is clamped, so the outer half-cells are linearly
    extrapolated from the two nearest cells.
    """
    plane = as_plane(pixels, width, height)
    height, width = plane.shape
    mesh_size = max(1, int(mesh_size))
    nx = max(1, -(-width // mesh_size))
    ny = max(1, -(-height // mesh_size))

    medians = np.zeros((ny, nx), dtype=np.float64)
    sigmas = np.zeros((ny, nx), dtype=np.float64)
    for my in range(ny):
        for mx in range(nx):
            cell = plane[my * mesh_size:(my + 1) * mesh_size, mx * mesh_size:(mx + 1) * mesh_size]
            values = cell[np.isfinite(cell)]
            medians[my, mx], sigmas[my, mx] = _robust_stats(values, sigma_clip_iters)

    fy = (np.arange(height) + 0.5) / mesh_size - 0.5
    my0 = np.clip(np.floor(fy).astype(np.int64), 0, ny - 1)
    my1 = np.minimum(ny - 1, my0 + 1)
    ty = (fy - my0)[:, None]

    fx = (np.arange(width) + 0.5) / mesh_size - 0.5
    mx0 = np.clip(np.floor(fx).astype(np.int64), 0, nx - 1)
    mx1 = np.minimum(nx - 1, mx0 + 1)
    tx = (fx - mx0)[None, :]

    v00 = medians[np.ix_(my0, mx0)]
    v10 = medians[np.ix_(my0, mx1)]
    v01 = medians[np.ix_(my1, mx0)]
    v11 = medians[np.ix_(my1, mx1)]
    background = (
        v00 * (1 - tx) * (1 - ty)
        + v10 * tx * (1 - ty)
        + v01 * (1 - tx) * ty
        + v11 * tx * ty
    ).astype(np.float32)

    valid_sigmas = np.sort(sigmas[np.isfinite(sigmas) & (sigmas > 0)])
    noise = float(valid_sigmas[valid_sigmas.size // 2]) if valid_sigmas.size else 1.0
    if not np.isfinite(noise) or noise <= 0:
        noise = 1.0

    logger.debug(
        "Background: %dx%d mesh (%d px cells), noise=%.4g", nx, ny, mesh_size, noise
    )
    return background, noise


# =============================================================================
# MATCHED FILTER
# =============================================================================


def gaussian_kernel_1d(sigma: float) -> np.ndarray:
    """Normalized 1D Gaussian kernel with radius ``max(1, ceil(3 sigma))``."""
    sigma = max(0.3, float(sigma))
    radius = max(1, int(np.ceil(sigma * 3)))
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(offsets ** 2) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def matched_filter(
    plane: np.ndarray,
    fwhm: float,
    runtime: DetectionRuntime | None = None,
) -> np.ndarray:
    """
    Separable Gaussian smoothing with clamped (nearest) edges.

    With a runtime, both passes run in row chunks; the vertical pass reads a
    halo of kernel radius around each chunk so the result is identical to
    the whole-image convolution.
    """
    kernel = gaussian_kernel_1d(fwhm / FWHM_FACTOR)
    radius = kernel.size // 2
    height = plane.shape[0]

    if runtime is None:
        temp = ndimage.convolve1d(plane, kernel, axis=1, mode="nearest")
        return ndimage.convolve1d(temp, kernel, axis=0, mode="nearest").astype(np.float32)

    temp = np.empty_like(plane, dtype=np.float32)
    for row_start in range(0, height, runtime.chunk_rows):
        row_end = min(height, row_start + runtime.chunk_rows)
        temp[row_start:row_end] = ndimage.convolve1d(
            plane[row_start:row_end], kernel, axis=1, mode="nearest"
        )
        runtime.step()

    output = np.empty_like(temp)
    for row_start in range(0, height, runtime.chunk_rows):
        row_end = min(height, row_start + runtime.chunk_rows)
        halo_start = max(0, row_start - radius)
        halo_end = min(height, row_end + radius)
        block = ndimage.convolve1d(temp[halo_start:halo_end], kernel, axis=0, mode="nearest")
        output[row_start:row_end] = block[row_start - halo_start:row_end - halo_start]
        runtime.step()
    return output


# =============================================================================
# MEASUREMENT
# =============================================================================


def _measure_star(
    ys: np.ndarray,
    xs: np.ndarray,
    bgsub: np.ndarray,
    noise: float,
    deblended: bool,
) -> DetectedStar | None:
    """Moment-based measurement on the background-subtracted plane (clamped at 0)."""
    if ys.size == 0:
        return None
    values = np.maximum(bgsub[ys, xs].astype(np.float64), 0.0)
    flux = float(values.sum())
    if flux <= 0:
        return None

    x = xs.astype(np.float64)
    y = ys.astype(np.float64)
    cx = float((x * values).sum() / flux)
    cy = float((y * values).sum() / flux)
    peak = float(values.max())

    dx = x - cx
    dy = y - cy
    sxx = float((dx * dx * values).sum() / flux)
    syy = float((dy * dy * values).sum() / flux)
    sxy = float((dx * dy * values).sum() / flux)

    trace = sxx + syy
    det_term = max(0.0, trace * trace / 4 - (sxx * syy - sxy * sxy))
    lambda1 = max(EPS, trace / 2 + np.sqrt(det_term))
    lambda2 = max(EPS, trace / 2 - np.sqrt(det_term))
    sigma_major = np.sqrt(lambda1)
    sigma_minor = np.sqrt(lambda2)
    fwhm = FWHM_FACTOR * np.sqrt((lambda1 + lambda2) / 2)
    roundness = float(np.clip(sigma_minor / (sigma_major + EPS), 0.0, 1.0))

    area = int(ys.size)
    mean_flux = flux / max(1, area)
    return DetectedStar(
        cx=cx,
        cy=cy,
        flux=flux,
        peak=peak,
        area=area,
        fwhm=float(fwhm),
        roundness=roundness,
        ellipticity=1.0 - roundness,
        theta=float(0.5 * np.arctan2(2 * sxy, sxx - syy)),
        snr=float(flux / (np.sqrt(area) * max(EPS, noise))),
        sharpness=float(peak / (mean_flux + EPS)),
        flags=FLAG_DEBLENDED if deblended else 0,
    )


def _accept_star(
    star: DetectedStar,
    options: StarDetectionOptions,
    width: int,
    height: int,
) -> bool:
    if star.area < options.min_area or star.area > options.max_area:
        return False
    if star.fwhm < options.min_fwhm or star.fwhm > options.max_fwhm:
        return False
    if star.ellipticity > options.max_ellipticity:
        return False
    if star.sharpness < options.min_sharpness or star.sharpness > options.max_sharpness:
        return False
    if options.peak_max is not None and star.peak > options.peak_max:
        return False
    if star.snr < options.snr_min:
        return False
    return _inside_margin(star.cx, star.cy, options.border_margin, width, height)


def _inside_margin(cx: float, cy: float, margin: int, width: int, height: int) -> bool:
    return margin <= cx < width - margin and margin <= cy < height - margin


# =============================================================================
# DEBLENDING
# =============================================================================


def _split_component(
    ys: np.ndarray,
    xs: np.ndarray,
    detect: np.ndarray,
    local_max: np.ndarray,
    local_flux: np.ndarray,
    options: StarDetectionOptions,
) -> list[tuple[np.ndarray, np.ndarray, bool]]:
    """
    Split a connected component around its brightest local maxima.

    Parameters
    ----------
    ys, xs : np.ndarray
        Pixel coordinates of the component.
    detect : np.ndarray
        Detection image.
    local_max : np.ndarray
        3x3 maximum filter of the detection image.
    local_flux : np.ndarray
        3x3 sum of the positive part of the detection image.
    options : StarDetectionOptions
        Deblending knobs.

    Returns
    -------
    list of (ys, xs, deblended)
        The whole component when no split applies.
    """
    whole = [(ys, xs, False)]
    if options.deblend_n_levels <= 1:
        return whole

    values = detect[ys, xs]
    total_flux = float(np.maximum(values, 0).sum())
    if total_flux <= 0:
        return whole

    # A pixel is a peak when no 3x3 neighbour is strictly brighter
    peak_idx = np.flatnonzero(values >= local_max[ys, xs])
    if peak_idx.size <= 1:
        return whole

    order = np.argsort(-values[peak_idx], kind="stable")
    candidates = peak_idx[order[:options.deblend_n_levels]]
    min_flux = options.deblend_min_contrast * total_flux
    seeds = [i for i in candidates if local_flux[ys[i], xs[i]] >= min_flux]
    if len(seeds) <= 1:
        return whole

    seed_y = ys[seeds].astype(np.float64)
    seed_x = xs[seeds].astype(np.float64)
    d2 = (ys[:, None] - seed_y[None, :]) ** 2 + (xs[:, None] - seed_x[None, :]) ** 2
    owner = np.argmin(d2, axis=1)  # first seed wins ties

    parts = []
    for seed in range(len(seeds)):
        member = owner == seed
        if np.maximum(values[member], 0).sum() >= min_flux:
            parts.append((ys[member], xs[member], True))
    return parts if len(parts) > 1 else whole


# =============================================================================
# DETECTORS
# =============================================================================


def _structure(connectivity: int) -> np.ndarray:
    return ndimage.generate_binary_structure(2, 1 if connectivity == 4 else 2)


def detect_stars_legacy(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    options: StarDetectionOptions | None = None,
) -> list[DetectedStar]:
    """
    Reference threshold-only detector.

    Parameters
    ----------
    pixels : np.ndarray
        Plane (height, width) or flat buffer.
    width, height : int, optional
        Required for flat buffers.
    options : StarDetectionOptions, optional
        Uses sigma_threshold, max_stars, min_area, max_area, border_margin
        and mesh_size; the background is never clipped.

    Returns
    -------
    list[DetectedStar]
        Stars sorted by flux (brightest first), extended shape fields left
        at their neutral defaults.

    Notes
    -----
    Components are 4-connected groups of pixels at or above
    ``sigma_threshold * noise`` that reach inside the border margin. The
    FWHM comes from the flux-weighted radial second moment of the
    component pixels lying within +/-10 px of the centroid.
    """
    if options is None:
        options = PROFILE_PRESETS[DetectionProfile.LEGACY]
    plane = as_plane(pixels, width, height)
    height, width = plane.shape
    margin = options.border_margin

    background, noise = estimate_background(plane, mesh_size=options.mesh_size, sigma_clip_iters=0)
    bgsub = plane - background
    threshold = options.sigma_threshold * noise

    labels, n_labels = ndimage.label(bgsub >= threshold, structure=_structure(4))
    if n_labels == 0 or height <= 2 * margin or width <= 2 * margin:
        return []

    seeded = np.unique(labels[margin:height - margin, margin:width - margin])
    seeded = seeded[seeded > 0]
    components = ndimage.value_indices(labels, ignore_value=0)

    stars: list[DetectedStar] = []
    for label in seeded:
        ys, xs = components[int(label)]
        area = int(ys.size)
        if area < options.min_area or area > options.max_area:
            continue

        values = bgsub[ys, xs].astype(np.float64)
        flux = float(values.sum())
        cx = float((xs * values).sum() / flux) if flux > 0 else 0.0
        cy = float((ys * values).sum() / flux) if flux > 0 else 0.0
        peak = max(0.0, float(values.max()))

        window = (
            (ys >= max(0, int(np.floor(cy)) - LEGACY_FWHM_WINDOW))
            & (ys <= min(height - 1, int(np.ceil(cy)) + LEGACY_FWHM_WINDOW))
            & (xs >= max(0, int(np.floor(cx)) - LEGACY_FWHM_WINDOW))
            & (xs <= min(width - 1, int(np.ceil(cx)) + LEGACY_FWHM_WINDOW))
        )
        r2 = (xs[window] - cx) ** 2 + (ys[window] - cy) ** 2
        sum_r2 = float((r2 * values[window]).sum())
        sigma2 = sum_r2 / flux if flux > 0 else 1.0
        fwhm = FWHM_FACTOR * np.sqrt(max(0.1, sigma2))
        if fwhm > LEGACY_MAX_FWHM:
            continue
        if not _inside_margin(cx, cy, margin, width, height):
            continue

        stars.append(DetectedStar(cx=cx, cy=cy, flux=flux, peak=peak, area=area, fwhm=float(fwhm)))

    stars.sort(key=lambda s: s.flux, reverse=True)
    logger.debug("Legacy detector: %d components, %d stars kept", len(seeded), len(stars))
    return stars[:options.max_stars]


def detect_stars_modern(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    options: StarDetectionOptions | None = None,
    runtime: DetectionRuntime | None = None,
) -> list[DetectedStar]:
    """
    Parametrised detector (fast / balanced / accurate presets).

    Parameters
    ----------
    pixels : np.ndarray
        Plane (height, width) or flat buffer.
    width, height : int, optional
        Required for flat buffers.
    options : StarDetectionOptions, optional
        Detector knobs (balanced preset when None).
    runtime : DetectionRuntime, optional
        When given, work runs in row chunks with progress reports
        (background, subtract-background, filter, segment, sort, done),
        cooperative yields and cancellation checks.

    Returns
    -------
    list[DetectedStar]
        Accepted stars sorted by flux (brightest first), at most
        ``options.max_stars``.

    Raises
    ------
    StackingCancelled
        If the runtime's token is cancelled.
    """
    if options is None:
        options = PROFILE_PRESETS[DetectionProfile.BALANCED]
    plane = as_plane(pixels, width, height)
    height, width = plane.shape
    margin = options.border_margin
    chunk_rows = runtime.chunk_rows if runtime is not None else height or 1

    def report(fraction: float, stage: str) -> None:
        if runtime is not None:
            runtime.report(fraction, stage)
            runtime.checkpoint()

    report(0.02, "background")
    background, noise = estimate_background(
        plane, mesh_size=options.mesh_size, sigma_clip_iters=options.sigma_clip_iters
    )

    bgsub = np.empty_like(plane, dtype=np.float32)
    for row_start in range(0, height, chunk_rows):
        row_end = min(height, row_start + chunk_rows)
        bgsub[row_start:row_end] = plane[row_start:row_end] - background[row_start:row_end]
        if runtime is not None:
            runtime.report(0.04 + ((row_end - 1) / max(1, height - 1)) * 0.16, "subtract-background")
            runtime.step()
    del background

    report(0.22, "filter")
    if options.apply_matched_filter and options.filter_fwhm > 0:
        detect = matched_filter(bgsub, options.filter_fwhm, runtime)
    else:
        detect = bgsub

    threshold = options.sigma_threshold * max(noise, EPS)
    report(0.4, "segment")

    mask = np.zeros(detect.shape, dtype=bool)
    if height > 2 * margin and width > 2 * margin:
        inner = (slice(margin, height - margin), slice(margin, width - margin))
        mask[inner] = detect[inner] >= threshold
    labels, n_labels = ndimage.label(mask, structure=_structure(options.connectivity))

    if options.deblend_n_levels > 1 and n_labels > 0:
        local_max = ndimage.maximum_filter(detect, size=3, mode="constant", cval=-np.inf)
        local_flux = ndimage.correlate(
            np.maximum(detect, 0).astype(np.float64), np.ones((3, 3)), mode="constant", cval=0.0
        )
    else:
        local_max = local_flux = None

    components = ndimage.value_indices(labels, ignore_value=0) if n_labels else {}
    objects = ndimage.find_objects(labels) if n_labels else []
    # Labels are numbered in scan order, so top rows are non-decreasing
    top_rows = [sl[0].start for sl in objects]

    stars: list[DetectedStar] = []
    span = max(1, height - 2 * margin)
    label_idx = 0
    for row_start in range(margin, max(margin, height - margin), chunk_rows):
        row_end = min(height - margin, row_start + chunk_rows)
        while label_idx < n_labels and top_rows[label_idx] < row_end:
            ys, xs = components[label_idx + 1]
            if local_max is None:
                parts = [(ys, xs, False)]
            else:
                parts = _split_component(ys, xs, detect, local_max, local_flux, options)
            for part_ys, part_xs, deblended in parts:
                star = _measure_star(part_ys, part_xs, bgsub, noise, deblended)
                if star is not None and _accept_star(star, options, width, height):
                    stars.append(star)
            label_idx += 1
        if runtime is not None:
            runtime.report(0.4 + ((row_end - margin) / span) * 0.52, "segment")
            runtime.step()

    report(0.94, "sort")
    stars.sort(key=lambda s: s.flux, reverse=True)
    stars = stars[:options.max_stars]
    if runtime is not None:
        runtime.report(1.0, "done")

    logger.debug(
        "Detector (%s): noise=%.4g threshold=%.4g components=%d stars=%d",
        options.profile.value, noise, threshold, n_labels, len(stars),
    )
    return stars


def detect_stars(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    options: StarDetectionOptions | None = None,
) -> list[DetectedStar]:
    """
    Detect stars synchronously.

    The legacy detector is used unless `options` selects another profile.
    """
    if options is None:
        options = PROFILE_PRESETS[DetectionProfile.LEGACY]
    if options.profile is DetectionProfile.LEGACY:
        return detect_stars_legacy(pixels, width, height, options)
    return detect_stars_modern(pixels, width, height, options)


def detect_stars_chunked(
    pixels: np.ndarray,
    width: int | None = None,
    height: int | None = None,
    options: StarDetectionOptions | None = None,
    runtime: DetectionRuntime | None = None,
) -> list[DetectedStar]:
    """
    Detect stars in row chunks, yielding between chunks.

    Parameters
    ----------
    pixels : np.ndarray
        Plane (height, width) or flat buffer.
    width, height : int, optional
        Required for flat buffers.
    options : StarDetectionOptions, optional
        Defaults to the balanced preset. A legacy profile runs the legacy
        detector in one piece.
    runtime : DetectionRuntime, optional
        Cancellation token, progress callback, chunk size and yield hook.

    Returns
    -------
    list[DetectedStar]
        Accepted stars, brightest first.

    Raises
    ------
    StackingCancelled
        When cancellation is observed at a chunk or stage boundary.
    """
    if options is None:
        options = PROFILE_PRESETS[DetectionProfile.BALANCED]
    if runtime is None:
        runtime = DetectionRuntime()

    if options.profile is DetectionProfile.LEGACY:
        runtime.report(0.1, "legacy-start")
        runtime.step()
        stars = detect_stars_legacy(pixels, width, height, options)
        runtime.report(1.0, "done")
        return stars

    return detect_stars_modern(pixels, width, height, options, runtime)
