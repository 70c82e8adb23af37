"""
Frame alignment (registration) for stacking.

Two automatic modes are supported:

- translation: offset voting between the brightest stars of both frames
- full: triangle asterism matching followed by a bounded RANSAC over the
  best triangle correspondences and a least-squares affine refit

All transforms map TARGET pixel coordinates onto REFERENCE coordinates, so
resampling a target frame with `apply_transform` puts it on the reference
grid. Frame 0 of a stack is the reference and is never moved.

Manual control points (1, 2 or 3 star pairs) bypass matching entirely.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Sequence

import numpy as np
from skimage.transform import AffineTransform, warp

from .config import (
    IDENTITY_MATRIX,
    PROFILE_PRESETS,
    AlignmentMode,
    AlignmentOptions,
    AlignmentTransform,
    DetectedStar,
    DetectionProfile,
    StarDetectionOptions,
)
from .detection import detect_stars, detect_stars_chunked
from .runtime import DetectionRuntime
from .utils import as_plane

logger = logging.getLogger(__name__)

EPS = 1e-10


def _positions(stars: Sequence[DetectedStar], limit: int | None = None) -> np.ndarray:
    """Return an (n, 2) array of (cx, cy) for the first `limit` stars."""
    selected = stars[:limit] if limit is not None else stars
    if len(selected) == 0:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array([(s.cx, s.cy) for s in selected], dtype=np.float64)


def _nearest(points: np.ndarray, candidates: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Distance to and index of the nearest candidate for every point."""
    d = np.hypot(
        points[:, None, 0] - candidates[None, :, 0],
        points[:, None, 1] - candidates[None, :, 1],
    )
    idx = np.argmin(d, axis=1)
    return d[np.arange(points.shape[0]), idx], idx


def _apply_matrix(matrix: Sequence[float], points: np.ndarray) -> np.ndarray:
    a, b, tx, c, d, ty = matrix
    x, y = points[:, 0], points[:, 1]
    return np.column_stack((a * x + b * y + tx, c * x + d * y + ty))


# =============================================================================
# TRANSFORM ESTIMATION
# =============================================================================


def fit_affine(src: np.ndarray, dst: np.ndarray) -> tuple[float, ...]:
    """
    Least-squares affine fit mapping `src` points onto `dst` points.

    Parameters
    ----------
    src, dst : np.ndarray
        Paired points, shape (n, 2).

    Returns
    -------
    tuple[float, ...]
        (a, b, tx, c, d, ty). Identity for fewer than 3 pairs or when the
        normal-equation matrix is singular (collinear points).

    Notes
    -----
    Both output coordinates share the 3x3 normal matrix of the basis
    ``[x, y, 1]``, so a single matrix is factored for two right-hand sides.
    The system is solved numerically with `np.linalg.solve` rather than by
    an explicit cofactor inverse; the determinant guard keeps the same
    singular-matrix fallback.
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if src.shape[0] < 3:
        return IDENTITY_MATRIX

    basis = np.column_stack((src, np.ones(src.shape[0])))
    normal = basis.T @ basis
    if abs(np.linalg.det(normal)) < EPS:
        return IDENTITY_MATRIX

    coeffs = np.linalg.solve(normal, basis.T @ dst)
    (a, c), (b, d), (tx, ty) = coeffs
    return (float(a), float(b), float(tx), float(c), float(d), float(ty))


def compute_translation(
    ref_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    options: AlignmentOptions | None = None,
) -> AlignmentTransform:
    """
    Estimate a pure translation by offset voting.

    Parameters
    ----------
    ref_stars, target_stars : sequence of DetectedStar
        Detections sorted brightest first.
    options : AlignmentOptions, optional
        Uses search_radius, translation_top_stars and vote_tolerance.

    Returns
    -------
    AlignmentTransform
        Identity with zero matches and infinite RMS when fewer than 3 stars
        exist on either side or no vote is plausible.

    Notes
    -----
    Every pair of bright stars casts a vote ``(dx, dy) = ref - target``
    bounded by ``10 * search_radius``. The vote with the most neighbours
    within ``vote_tolerance`` on both axes wins and its neighbourhood is
    averaged. Matched stars are the target stars landing within
    `search_radius` of a reference star after the shift.
    """
    options = options or AlignmentOptions()
    if len(ref_stars) < 3 or len(target_stars) < 3:
        return AlignmentTransform.identity(rms_error=np.inf)

    ref = _positions(ref_stars, options.translation_top_stars)
    target = _positions(target_stars, options.translation_top_stars)

    votes = (ref[:, None, :] - target[None, :, :]).reshape(-1, 2)
    bound = options.search_radius * 10
    votes = votes[(np.abs(votes[:, 0]) < bound) & (np.abs(votes[:, 1]) < bound)]
    if votes.shape[0] == 0:
        return AlignmentTransform.identity(rms_error=np.inf)

    tol = options.vote_tolerance
    close = (np.abs(votes[:, None, 0] - votes[None, :, 0]) < tol) & (
        np.abs(votes[:, None, 1] - votes[None, :, 1]) < tol
    )
    best = int(np.argmax(close.sum(axis=1)))
    tx, ty = votes[close[best]].mean(axis=0)

    dist, _ = _nearest(target + (tx, ty), ref)
    matched = dist < options.search_radius
    n_matched = int(matched.sum())
    rms = float(np.sqrt(np.mean(dist[matched] ** 2))) if n_matched else np.inf

    logger.debug("Translation: dx=%.2f dy=%.2f matched=%d rms=%.3f", tx, ty, n_matched, rms)
    return AlignmentTransform(
        matrix=(1.0, 0.0, float(tx), 0.0, 1.0, float(ty)),
        matched_stars=n_matched,
        rms_error=rms,
    )


def _build_triangles(
    points: np.ndarray,
    max_triangles: int,
    min_side: float,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Triangle descriptors from bright star positions.

    Returns (indices (m, 3), ratios (m, 2)) with ratios
    ``(shortest/longest, middle/longest)``.
    """
    n = points.shape[0]
    if n < 3:
        return np.zeros((0, 3), dtype=np.int64), np.zeros((0, 2))

    idx = np.array(list(combinations(range(n), 3)), dtype=np.int64)
    p0, p1, p2 = points[idx[:, 0]], points[idx[:, 1]], points[idx[:, 2]]
    sides = np.sort(
        np.column_stack((
            np.hypot(*(p0 - p1).T),
            np.hypot(*(p0 - p2).T),
            np.hypot(*(p1 - p2).T),
        )),
        axis=1,
    )
    keep = sides[:, 2] >= min_side
    idx, sides = idx[keep][:max_triangles], sides[keep][:max_triangles]
    ratios = sides[:, :2] / sides[:, 2:3]
    return idx, ratios


def _order_by_angle(points: np.ndarray) -> np.ndarray:
    """Order triangle vertices by angle around their centroid."""
    centre = points.mean(axis=0)
    angles = np.arctan2(points[:, 1] - centre[1], points[:, 0] - centre[0])
    return points[np.argsort(angles, kind="stable")]


def _score(
    matrix: Sequence[float],
    target: np.ndarray,
    ref: np.ndarray,
    threshold: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Inlier mask, residuals and nearest reference index of mapped target stars."""
    dist, nearest = _nearest(_apply_matrix(matrix, target), ref)
    return dist < threshold, dist, nearest


def compute_full_alignment(
    ref_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    options: AlignmentOptions | None = None,
) -> AlignmentTransform:
    """
    Estimate an affine transform by triangle matching and RANSAC.

    Parameters
    ----------
    ref_stars, target_stars : sequence of DetectedStar
        Detections sorted brightest first.
    options : AlignmentOptions, optional
        Triangle, tolerance and RANSAC knobs.

    Returns
    -------
    AlignmentTransform
        Best transform with its inlier count and RMS. Identity with zero
        matches and infinite RMS when no triangle matches.

    Notes
    -----
    1. Up to `max_triangles` descriptors per frame from the brightest
       `triangle_top_stars` stars, skipping triangles smaller than
       `min_triangle_side`.
    2. Pairs with L1 ratio difference below `tolerance_ratio`, best first.
    3. For each of the first `max_ransac_iterations` pairs, vertices are
       ordered by angle around the centroid and an affine is fitted.
       Inliers are target stars landing within `inlier_threshold` px of a
       reference star. Most inliers wins, ties go to the lower RMS.
    4. The winner is refitted on all its inlier pairs.
    """
    options = options or AlignmentOptions()
    if len(ref_stars) < 3 or len(target_stars) < 3:
        return AlignmentTransform.identity(rms_error=np.inf)

    ref_tri_pts = _positions(ref_stars, options.triangle_top_stars)
    tgt_tri_pts = _positions(target_stars, options.triangle_top_stars)
    ref_idx, ref_ratios = _build_triangles(ref_tri_pts, options.max_triangles, options.min_triangle_side)
    tgt_idx, tgt_ratios = _build_triangles(tgt_tri_pts, options.max_triangles, options.min_triangle_side)
    if ref_idx.shape[0] == 0 or tgt_idx.shape[0] == 0:
        return AlignmentTransform.identity(rms_error=np.inf)

    diff = np.abs(ref_ratios[:, None, :] - tgt_ratios[None, :, :]).sum(axis=2)
    ri, ti = np.nonzero(diff < options.tolerance_ratio)
    if ri.size == 0:
        return AlignmentTransform.identity(rms_error=np.inf)
    order = np.argsort(diff[ri, ti], kind="stable")
    ri, ti = ri[order], ti[order]

    ref = _positions(ref_stars, options.inlier_top_stars)
    target = _positions(target_stars, options.inlier_top_stars)

    best_matrix = IDENTITY_MATRIX
    best_inliers = 0
    best_rms = np.inf
    n_trials = min(ri.size, options.max_ransac_iterations)
    for trial in range(n_trials):
        ref_tri = _order_by_angle(ref_tri_pts[ref_idx[ri[trial]]])
        tgt_tri = _order_by_angle(tgt_tri_pts[tgt_idx[ti[trial]]])
        matrix = fit_affine(tgt_tri, ref_tri)

        inliers, dist, _ = _score(matrix, target, ref, options.inlier_threshold)
        n_inliers = int(inliers.sum())
        rms = float(np.sqrt(np.mean(dist[inliers] ** 2))) if n_inliers else np.inf
        if n_inliers > best_inliers or (n_inliers == best_inliers and n_inliers > 0 and rms < best_rms):
            best_matrix, best_inliers, best_rms = matrix, n_inliers, rms

    if best_inliers >= 3:
        inliers, _, nearest = _score(best_matrix, target, ref, options.inlier_threshold)
        src, dst = target[inliers], ref[nearest[inliers]]
        if src.shape[0] >= 3:
            best_matrix = fit_affine(src, dst)
            residual = np.hypot(*(dst - _apply_matrix(best_matrix, src)).T)
            best_rms = float(np.sqrt(np.mean(residual ** 2)))
            best_inliers = int(src.shape[0])

    logger.debug(
        "Full alignment: %d triangle matches, %d trials, inliers=%d rms=%.3f",
        ri.size, n_trials, best_inliers, best_rms,
    )
    return AlignmentTransform(matrix=best_matrix, matched_stars=best_inliers, rms_error=best_rms)


def build_manual_transform(
    ref_points: Sequence[tuple[float, float]],
    target_points: Sequence[tuple[float, float]],
) -> tuple[tuple[float, ...], int] | None:
    """
    Transform from paired control points (target onto reference).

    Parameters
    ----------
    ref_points, target_points : sequence of (x, y)
        Paired by index; only the first three pairs are used.

    Returns
    -------
    tuple or None
        (matrix, n_pairs_used), or None when no pair exists or the points
        are degenerate.

    Notes
    -----
    - 1 pair: translation.
    - 2 pairs: similarity (uniform scale, rotation, translation).
    - 3 pairs: exact affine.
    """
    n = min(len(ref_points), len(target_points), 3)
    if n == 0:
        return None
    ref = np.asarray(ref_points[:n], dtype=np.float64).reshape(n, 2)
    tgt = np.asarray(target_points[:n], dtype=np.float64).reshape(n, 2)

    if n == 1:
        tx, ty = ref[0] - tgt[0]
        return (1.0, 0.0, float(tx), 0.0, 1.0, float(ty)), 1

    if n == 2:
        tv = tgt[1] - tgt[0]
        rv = ref[1] - ref[0]
        t_norm, r_norm = np.hypot(*tv), np.hypot(*rv)
        if t_norm < EPS or r_norm < EPS:
            return None
        scale = r_norm / t_norm
        theta = np.arctan2(rv[1], rv[0]) - np.arctan2(tv[1], tv[0])
        a, b = scale * np.cos(theta), -scale * np.sin(theta)
        c, d = scale * np.sin(theta), scale * np.cos(theta)
        tx = ref[0, 0] - (a * tgt[0, 0] + b * tgt[0, 1])
        ty = ref[0, 1] - (c * tgt[0, 0] + d * tgt[0, 1])
        return (float(a), float(b), float(tx), float(c), float(d), float(ty)), 2

    basis = np.column_stack((tgt, np.ones(3)))
    if abs(np.linalg.det(basis)) < EPS:
        return None
    coeff_x = np.linalg.solve(basis, ref[:, 0])
    coeff_y = np.linalg.solve(basis, ref[:, 1])
    return tuple(float(v) for v in (*coeff_x, *coeff_y)), 3


# =============================================================================
# RESAMPLING
# =============================================================================


def apply_transform(
    pixels: np.ndarray,
    width: int | None,
    height: int | None,
    transform: AlignmentTransform,
) -> np.ndarray:
    """
    Resample a target frame onto the reference grid.

    Parameters
    ----------
    pixels : np.ndarray
        Target plane (height, width) or flat buffer.
    width, height : int
        Plane size (required for flat buffers).
    transform : AlignmentTransform
        Target-to-reference transform.

    Returns
    -------
    np.ndarray
        New float32 array with the shape of `pixels`. Output pixels mapping
        outside the target frame are 0.

    Notes
    -----
    skimage `warp` expects the output-to-input map, hence the inverse of the
    target-to-reference affine. Interpolation is bilinear (order=1).
    Identity and near-singular matrices return a plain copy.
    """
    plane = as_plane(pixels, width, height)
    out_shape = np.shape(pixels)
    if transform.is_identity:
        return plane.copy().reshape(out_shape)

    matrix = transform.as_3x3()
    if abs(np.linalg.det(matrix[:2, :2])) < EPS:
        logger.warning("Singular alignment matrix, frame left unaligned")
        return plane.copy().reshape(out_shape)

    warped = warp(
        plane,
        AffineTransform(matrix=matrix).inverse,
        order=1,
        mode="constant",
        cval=0.0,
        preserve_range=True,
    )
    return warped.astype(np.float32).reshape(out_shape)


# =============================================================================
# FRAME ALIGNMENT
# =============================================================================


def _detect(
    plane: np.ndarray,
    detection: StarDetectionOptions,
    runtime: DetectionRuntime | None,
) -> list[DetectedStar]:
    if runtime is not None:
        return detect_stars_chunked(plane, options=detection, runtime=runtime)
    return detect_stars(plane, options=detection)


def align_frame(
    ref_pixels: np.ndarray,
    target_pixels: np.ndarray,
    width: int | None,
    height: int | None,
    mode: AlignmentMode,
    options: AlignmentOptions | None = None,
    runtime: DetectionRuntime | None = None,
    ref_stars: list[DetectedStar] | None = None,
) -> tuple[np.ndarray, AlignmentTransform]:
    """
    Align a target frame onto a reference frame.

    Parameters
    ----------
    ref_pixels, target_pixels : np.ndarray
        Reference and target planes of identical size.
    width, height : int
        Plane size (required for flat buffers).
    mode : {"none", "translation", "full"}
        Alignment model.
    options : AlignmentOptions, optional
        Tolerances, detector options, star overrides and manual points.
    runtime : DetectionRuntime, optional
        Runs detection in cancellable chunks.
    ref_stars : list[DetectedStar], optional
        Reference detections computed once by the caller; skips detection
        on the reference side.

    Returns
    -------
    tuple[np.ndarray, AlignmentTransform]
        (aligned plane, transform). Failures are not errors: the target is
        returned as an unaligned copy with an identity transform, zero
        matches and ``fallback_used="identity"``.

    Raises
    ------
    StackingCancelled
        If the runtime's token is cancelled during detection.
    """
    if mode == "none":
        return target_pixels, AlignmentTransform.identity()

    options = options or AlignmentOptions()

    if options.manual_ref_points and options.manual_target_points:
        manual = build_manual_transform(options.manual_ref_points, options.manual_target_points)
        if manual is not None:
            matrix, n_pairs = manual
            transform = AlignmentTransform(
                matrix=matrix, matched_stars=n_pairs, fallback_used=f"manual-{n_pairs}star",
            )
            logger.info("Manual registration from %d control point(s)", n_pairs)
            return apply_transform(target_pixels, width, height, transform), transform
        logger.warning("Degenerate manual control points, using star matching")

    detection = options.detection or PROFILE_PRESETS[DetectionProfile.BALANCED]
    ref_override = options.ref_stars is not None
    target_override = options.target_stars is not None

    if ref_override:
        ref_list = options.ref_stars
    elif ref_stars is not None:
        ref_list = ref_stars
    else:
        ref_list = _detect(as_plane(ref_pixels, width, height), detection, runtime)

    if target_override:
        target_list = options.target_stars
    else:
        target_list = _detect(as_plane(target_pixels, width, height), detection, runtime)

    usage = {
        (True, True): "both", (True, False): "ref", (False, True): "target",
    }.get((ref_override, target_override), "none")
    counts = (len(ref_list), len(target_list))

    if mode == "translation":
        transform = compute_translation(ref_list, target_list, options)
    else:
        transform = compute_full_alignment(ref_list, target_list, options)
        if transform.matched_stars < options.min_matches and options.fallback_to_translation:
            retry = compute_translation(ref_list, target_list, options)
            if retry.matched_stars >= options.min_matches:
                logger.info("Full alignment failed, translation fallback matched %d stars",
                            retry.matched_stars)
                retry.fallback_used = "translation"
                transform = retry

    transform.detection_counts = counts
    transform.override_usage = usage

    if transform.matched_stars < options.min_matches:
        logger.warning(
            "Alignment failed (%d matches, ref=%d target=%d stars), frame left unaligned",
            transform.matched_stars, counts[0], counts[1],
        )
        failed = AlignmentTransform.identity(
            fallback_used="identity", detection_counts=counts, override_usage=usage,
        )
        return as_plane(target_pixels, width, height).copy().reshape(np.shape(target_pixels)), failed

    return apply_transform(target_pixels, width, height, transform), transform
