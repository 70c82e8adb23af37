"""
Configuration dataclasses and records for the skystack pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal

import numpy as np

StackMethod = Literal["average", "median", "sigma", "min", "max", "winsorized", "weighted"]
STACK_METHODS: tuple[str, ...] = (
    "average", "median", "sigma", "min", "max", "winsorized", "weighted",
)

AlignmentMode = Literal["none", "translation", "full"]
ALIGNMENT_MODES: tuple[str, ...] = ("none", "translation", "full")

FallbackKind = Literal[
    "none", "translation", "identity", "manual-1star", "manual-2star", "manual-3star",
]
OverrideUsage = Literal["none", "ref", "target", "both"]


class StackStage(Enum):
    """Pipeline stages, in execution order."""

    LOADING = "loading"
    CALIBRATING = "calibrating"
    EVALUATING = "evaluating"
    ALIGNING = "aligning"
    STACKING = "stacking"
    RENDERING = "rendering"
    DONE = "done"


class DetectionProfile(Enum):
    """Star detector presets."""

    LEGACY = "legacy"  # Threshold-only reference detector
    FAST = "fast"
    BALANCED = "balanced"
    ACCURATE = "accurate"


# --- Star detection ---------------------------------------------------------


@dataclass(frozen=True)
class StarDetectionOptions:
    """
    Knobs of the star detector.

    Defaults are those of the legacy profile; use `resolve_detection_options`
    to obtain one of the tuned presets.
    """

    profile: DetectionProfile = DetectionProfile.LEGACY

    sigma_threshold: float = 5.0
    """Detection threshold in units of the global background noise."""

    max_stars: int = 200
    """Keep at most this many stars (brightest first)."""

    min_area: int = 3
    max_area: int = 500
    """Accepted component size in pixels."""

    border_margin: int = 10
    """Pixels closer than this to the edge are never segmented."""

    mesh_size: int = 64
    """Background mesh cell size in pixels."""

    sigma_clip_iters: int = 0
    """Robust clipping iterations per background cell."""

    apply_matched_filter: bool = False
    filter_fwhm: float = 2.2
    """Gaussian matched filter (FWHM in pixels)."""

    deblend_n_levels: int = 1
    deblend_min_contrast: float = 0.2
    """Peak-seeded deblending; 1 level disables it."""

    connectivity: Literal[4, 8] = 4

    min_fwhm: float = 0.3
    max_fwhm: float = 20.0
    max_ellipticity: float = 1.0
    min_sharpness: float = 0.0
    max_sharpness: float = 1e9
    peak_max: float | None = None
    """Optional saturation cut on the background-subtracted peak."""

    snr_min: float = 0.0

    def validate(self) -> None:
        """Validate detection parameters."""
        if self.sigma_threshold <= 0:
            raise ValueError(f"sigma_threshold must be positive, got {self.sigma_threshold}")
        if self.max_stars < 1:
            raise ValueError(f"max_stars must be >= 1, got {self.max_stars}")
        if self.min_area < 1 or self.max_area < self.min_area:
            raise ValueError(
                f"area bounds must satisfy 1 <= min_area <= max_area, got "
                f"{self.min_area}..{self.max_area}"
            )
        if self.border_margin < 0:
            raise ValueError(f"border_margin must be >= 0, got {self.border_margin}")
        if self.mesh_size < 4:
            raise ValueError(f"mesh_size must be >= 4, got {self.mesh_size}")
        if self.sigma_clip_iters < 0:
            raise ValueError(f"sigma_clip_iters must be >= 0, got {self.sigma_clip_iters}")
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.deblend_n_levels < 1:
            raise ValueError(f"deblend_n_levels must be >= 1, got {self.deblend_n_levels}")
        if not 0.0 <= self.deblend_min_contrast <= 1.0:
            raise ValueError(
                f"deblend_min_contrast must be in [0, 1], got {self.deblend_min_contrast}"
            )
        if self.min_fwhm < 0 or self.max_fwhm < self.min_fwhm:
            raise ValueError(f"invalid FWHM bounds {self.min_fwhm}..{self.max_fwhm}")


PROFILE_PRESETS: dict[DetectionProfile, StarDetectionOptions] = {
    DetectionProfile.LEGACY: StarDetectionOptions(),
    DetectionProfile.FAST: StarDetectionOptions(
        profile=DetectionProfile.FAST,
        sigma_threshold=6.0,
        max_stars=160,
        min_area=4,
        max_area=550,
        border_margin=12,
        mesh_size=96,
        sigma_clip_iters=1,
        apply_matched_filter=False,
        filter_fwhm=2.4,
        deblend_n_levels=8,
        deblend_min_contrast=0.12,
        connectivity=8,
        min_fwhm=0.7,
        max_fwhm=12.0,
        max_ellipticity=0.7,
        min_sharpness=0.3,
        max_sharpness=12.0,
        snr_min=2.5,
    ),
    DetectionProfile.BALANCED: StarDetectionOptions(
        profile=DetectionProfile.BALANCED,
        sigma_threshold=5.0,
        max_stars=220,
        min_area=3,
        max_area=600,
        border_margin=10,
        mesh_size=64,
        sigma_clip_iters=2,
        apply_matched_filter=True,
        filter_fwhm=2.2,
        deblend_n_levels=16,
        deblend_min_contrast=0.08,
        connectivity=8,
        min_fwhm=0.6,
        max_fwhm=11.0,
        max_ellipticity=0.65,
        min_sharpness=0.25,
        max_sharpness=18.0,
        snr_min=2.0,
    ),
    DetectionProfile.ACCURATE: StarDetectionOptions(
        profile=DetectionProfile.ACCURATE,
        sigma_threshold=4.5,
        max_stars=320,
        min_area=3,
        max_area=800,
        border_margin=8,
        mesh_size=48,
        sigma_clip_iters=3,
        apply_matched_filter=True,
        filter_fwhm=2.0,
        deblend_n_levels=32,
        deblend_min_contrast=0.05,
        connectivity=8,
        min_fwhm=0.5,
        max_fwhm=10.0,
        max_ellipticity=0.55,
        min_sharpness=0.2,
        max_sharpness=24.0,
        snr_min=1.8,
    ),
}


def resolve_detection_options(
    profile: DetectionProfile | str = DetectionProfile.LEGACY,
    **overrides,
) -> StarDetectionOptions:
    """
    Build detection options from a profile preset plus explicit overrides.

    Parameters
    ----------
    profile : DetectionProfile or str, default legacy
        Preset to start from.
    **overrides
        Field values replacing the preset's (None values are ignored).

    Returns
    -------
    StarDetectionOptions
        Validated options.
    """
    profile = DetectionProfile(profile)
    options = PROFILE_PRESETS[profile]
    changes = {k: v for k, v in overrides.items() if v is not None}
    if changes:
        options = replace(options, **changes)
    options.validate()
    return options


@dataclass(frozen=True)
class DetectedStar:
    """A detected point source."""

    cx: float
    cy: float
    flux: float
    peak: float
    area: int
    fwhm: float
    roundness: float = 1.0
    ellipticity: float = 0.0
    theta: float = 0.0
    snr: float = 0.0
    sharpness: float = 0.0
    flags: int = 0  # bit 0: produced by deblending


# --- Alignment --------------------------------------------------------------

IDENTITY_MATRIX: tuple[float, ...] = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


@dataclass
class AlignmentTransform:
    """
    Affine transform mapping target-frame coordinates onto the reference.

    ``matrix = (a, b, tx, c, d, ty)`` with ``x' = a*x + b*y + tx`` and
    ``y' = c*x + d*y + ty``.
    """

    matrix: tuple[float, ...] = IDENTITY_MATRIX
    matched_stars: int = 0
    rms_error: float = 0.0
    fallback_used: FallbackKind = "none"
    detection_counts: tuple[int, int] = (0, 0)
    """Star counts (reference, target) used for matching."""
    override_usage: OverrideUsage = "none"

    @classmethod
    def identity(cls, rms_error: float = 0.0, **kwargs) -> AlignmentTransform:
        """Identity transform with zero matches."""
        return cls(matrix=IDENTITY_MATRIX, matched_stars=0, rms_error=rms_error, **kwargs)

    @property
    def is_identity(self) -> bool:
        return tuple(float(v) for v in self.matrix) == IDENTITY_MATRIX

    def as_3x3(self) -> np.ndarray:
        """Return the homogeneous 3x3 matrix."""
        a, b, tx, c, d, ty = self.matrix
        return np.array([[a, b, tx], [c, d, ty], [0.0, 0.0, 1.0]], dtype=np.float64)


@dataclass
class AlignmentOptions:
    """Alignment knobs. Defaults reproduce the reference tolerances."""

    search_radius: float = 20.0
    """Translation vote window is 10x this; residual matching uses it as is."""

    translation_top_stars: int = 50
    vote_tolerance: float = 2.0

    triangle_top_stars: int = 30
    max_triangles: int = 500
    min_triangle_side: float = 10.0
    tolerance_ratio: float = 0.01
    max_ransac_iterations: int = 100
    inlier_threshold: float = 3.0
    inlier_top_stars: int = 50
    min_matches: int = 3

    fallback_to_translation: bool = False
    """Retry a failed full alignment in translation mode."""

    detection: StarDetectionOptions | None = None
    """Detector used on both frames (balanced preset when None)."""

    ref_stars: list[DetectedStar] | None = None
    target_stars: list[DetectedStar] | None = None
    """Star lists overriding detection on either side."""

    manual_ref_points: list[tuple[float, float]] | None = None
    manual_target_points: list[tuple[float, float]] | None = None
    """Paired control points (by index); 1, 2 or 3 pairs are used."""

    def validate(self) -> None:
        """Validate alignment parameters."""
        if self.search_radius <= 0:
            raise ValueError(f"search_radius must be positive, got {self.search_radius}")
        if self.tolerance_ratio <= 0:
            raise ValueError(f"tolerance_ratio must be positive, got {self.tolerance_ratio}")
        if self.max_ransac_iterations < 1:
            raise ValueError(
                f"max_ransac_iterations must be >= 1, got {self.max_ransac_iterations}"
            )
        if self.inlier_threshold <= 0:
            raise ValueError(f"inlier_threshold must be positive, got {self.inlier_threshold}")
        if self.min_matches < 1:
            raise ValueError(f"min_matches must be >= 1, got {self.min_matches}")
        if (self.manual_ref_points is None) != (self.manual_target_points is None):
            raise ValueError("manual_ref_points and manual_target_points go together")


# --- Quality ----------------------------------------------------------------


@dataclass
class QualityOptions:
    """Frame quality scoring parameters."""

    weight_fwhm: float = 0.4
    weight_snr: float = 0.3
    weight_star_count: float = 0.15
    weight_roundness: float = 0.15

    fwhm_best: float = 1.5
    fwhm_worst: float = 7.5
    star_count_scale: float = 2.0
    """Score points per detected star (capped at 100)."""

    background_mesh_size: int = 64
    background_clip_iters: int = 2
    """Background model used for the median and noise metrics."""

    detection: StarDetectionOptions | None = None
    """Detector options (legacy preset when None)."""

    stars: list[DetectedStar] | None = None
    """Pre-detected stars; skips detection."""

    def validate(self) -> None:
        """Validate quality parameters."""
        weights = (self.weight_fwhm, self.weight_snr, self.weight_star_count, self.weight_roundness)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"quality weights must be >= 0 with a positive sum, got {weights}")
        if self.fwhm_worst <= self.fwhm_best:
            raise ValueError(
                f"fwhm_worst must exceed fwhm_best, got {self.fwhm_best}..{self.fwhm_worst}"
            )


@dataclass
class FrameQualityMetrics:
    """Quality metrics of a single frame."""

    background_median: float
    background_noise: float
    snr: float
    star_count: int
    median_fwhm: float
    roundness: float
    score: int  # 0..100
    stars: list[DetectedStar] = field(default_factory=list, repr=False)


# --- Pipeline ---------------------------------------------------------------


@dataclass
class FrameInput:
    """A light frame to stack."""

    filepath: str
    filename: str = ""

    def __post_init__(self) -> None:
        if not self.filename:
            self.filename = self.filepath.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass
class CalibrationFrames:
    """
    Calibration frame locations.

    Lists take precedence over single paths: a master dark (median) and a
    master flat (mean, normalized) are derived from them.
    """

    dark_path: str | None = None
    flat_path: str | None = None
    bias_path: str | None = None
    dark_paths: list[str] = field(default_factory=list)
    flat_paths: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.dark_path or self.flat_path or self.bias_path
            or self.dark_paths or self.flat_paths
        )


@dataclass
class AdvancedOptions:
    """Optional per-stage overrides."""

    detection: StarDetectionOptions | None = None
    alignment: AlignmentOptions | None = None
    quality: QualityOptions | None = None


@dataclass
class StackRequest:
    """Parameters of a stacking run."""

    method: StackMethod = "average"
    sigma: float = 2.5
    """Clipping threshold for the 'sigma' and 'winsorized' methods."""

    alignment_mode: AlignmentMode = "none"
    enable_quality_eval: bool = False
    """Evaluate frame quality even when the method is not 'weighted'."""

    calibration: CalibrationFrames | None = None
    advanced: AdvancedOptions | None = None

    @property
    def needs_quality(self) -> bool:
        return self.enable_quality_eval or self.method == "weighted"

    def validate(self) -> None:
        """Validate request parameters."""
        if self.method not in STACK_METHODS:
            raise ValueError(f"method must be one of {STACK_METHODS}, got {self.method!r}")
        if self.alignment_mode not in ALIGNMENT_MODES:
            raise ValueError(
                f"alignment_mode must be one of {ALIGNMENT_MODES}, got {self.alignment_mode!r}"
            )
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")
        if self.advanced is not None:
            if self.advanced.detection is not None:
                self.advanced.detection.validate()
            if self.advanced.alignment is not None:
                self.advanced.alignment.validate()
            if self.advanced.quality is not None:
                self.advanced.quality.validate()


@dataclass(frozen=True)
class StackProgress:
    """Immutable progress snapshot; replaced on every update."""

    stage: StackStage
    current: float
    total: int
    message: str = ""

    @property
    def fraction(self) -> float:
        return min(1.0, self.current / self.total) if self.total > 0 else 0.0


@dataclass
class FrameAlignment:
    """Alignment diagnostics of one frame (reference has matched_stars = -1)."""

    filename: str
    matched_stars: int
    rms_error: float
    detected_ref_stars: int = 0
    detected_target_stars: int = 0
    fallback_used: FallbackKind = "none"


@dataclass
class StackResult:
    """
    Result of a stacking run.

    Created once, at completion; a cancelled or failed run has no result.
    """

    pixels: np.ndarray = field(repr=False)
    """Linear composite, float32, shape (height, width)."""

    rgba: np.ndarray = field(repr=False)
    """Display preview, uint8, shape (height, width, 4)."""

    width: int
    height: int
    frame_count: int
    method: StackMethod
    duration_s: float
    alignment_mode: AlignmentMode
    alignment_results: list[FrameAlignment] | None = None
    quality_metrics: list[FrameQualityMetrics] | None = None
