"""
skystack - Calibration, registration and stacking core for astrophotography.

Builds a master image from a series of single-channel light frames:
dark/flat/bias calibration, star detection, translation or affine
registration, frame quality scoring and pixel combination, driven by a
cancellable, progress-reporting pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from skystack import StackingSession
>>> with StackingSession() as session:
...     result = session.stack(["l1.fits", "l2.fits", "l3.fits"],
...                            method="sigma", alignment_mode="full")
>>> result.pixels.shape

Example (cancellable run)
-------------------------
>>> session = StackingSession(on_progress=print)
>>> future = session.start(paths, method="weighted", alignment_mode="translation")
>>> session.cancel()  # future resolves to None, session.error stays None
"""

from .config import (
    ALIGNMENT_MODES,
    PROFILE_PRESETS,
    STACK_METHODS,
    AdvancedOptions,
    AlignmentOptions,
    AlignmentTransform,
    CalibrationFrames,
    DetectedStar,
    DetectionProfile,
    FrameAlignment,
    FrameInput,
    FrameQualityMetrics,
    QualityOptions,
    StackProgress,
    StackRequest,
    StackResult,
    StackStage,
    StarDetectionOptions,
    resolve_detection_options,
)
from .errors import FrameReadError, FrameValidationError, StackingCancelled, StackingError
from .utils import __version__, __version_info__, get_version_banner

# Primary entry point
from .pipeline import StackingSession

# Calibration
from .calibration import (
    apply_flat,
    calibrate_frame,
    create_master_dark,
    create_master_flat,
    normalize_flat,
    subtract_bias,
    subtract_dark,
)

# Star detection
from .detection import (
    detect_stars,
    detect_stars_chunked,
    detect_stars_legacy,
    detect_stars_modern,
    estimate_background,
)

# Alignment
from .align import (
    align_frame,
    apply_transform,
    build_manual_transform,
    compute_full_alignment,
    compute_translation,
    fit_affine,
)

# Quality
from .quality import compute_score, evaluate_frame_quality, evaluate_frames, quality_to_weights

# Stacking
from .stack import (
    combine_frames,
    stack_average,
    stack_max,
    stack_median,
    stack_min,
    stack_sigma_clip,
    stack_weighted_average,
    stack_winsorized_sigma_clip,
)

# Runtime, I/O and rendering
from .io import FitsFrameSource, LoadedFrame, read_fits, write_fits, write_preview
from .render import AsinhRenderer, StretchRange, compute_auto_stretch, render_preview
from .runtime import CancellationToken, DetectionRuntime

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config and records
    "ALIGNMENT_MODES",
    "STACK_METHODS",
    "PROFILE_PRESETS",
    "AdvancedOptions",
    "AlignmentOptions",
    "AlignmentTransform",
    "CalibrationFrames",
    "DetectedStar",
    "DetectionProfile",
    "FrameAlignment",
    "FrameInput",
    "FrameQualityMetrics",
    "QualityOptions",
    "StackProgress",
    "StackRequest",
    "StackResult",
    "StackStage",
    "StarDetectionOptions",
    "resolve_detection_options",
    # Errors
    "StackingError",
    "FrameValidationError",
    "FrameReadError",
    "StackingCancelled",
    # Pipeline
    "StackingSession",
    # Calibration
    "apply_flat",
    "calibrate_frame",
    "create_master_dark",
    "create_master_flat",
    "normalize_flat",
    "subtract_bias",
    "subtract_dark",
    # Detection
    "detect_stars",
    "detect_stars_chunked",
    "detect_stars_legacy",
    "detect_stars_modern",
    "estimate_background",
    # Alignment
    "align_frame",
    "apply_transform",
    "build_manual_transform",
    "compute_full_alignment",
    "compute_translation",
    "fit_affine",
    # Quality
    "compute_score",
    "evaluate_frame_quality",
    "evaluate_frames",
    "quality_to_weights",
    # Stacking
    "combine_frames",
    "stack_average",
    "stack_max",
    "stack_median",
    "stack_min",
    "stack_sigma_clip",
    "stack_weighted_average",
    "stack_winsorized_sigma_clip",
    # Runtime, I/O, rendering
    "CancellationToken",
    "DetectionRuntime",
    "FitsFrameSource",
    "LoadedFrame",
    "read_fits",
    "write_fits",
    "write_preview",
    "AsinhRenderer",
    "StretchRange",
    "compute_auto_stretch",
    "render_preview",
]
