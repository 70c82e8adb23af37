"""
Command-line interface for the skystack pipeline.

Usage:
    python -m skystack stack <frame.fits> <frame.fits> ... [options]
    skystack stack <frame.fits> ... [options]
    skystack detect <frame.fits> [options]

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import numpy as np

from .cli_output import (
    StackProgressDisplay,
    print_banner,
    print_error,
    print_info,
    print_metric,
    print_path,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .config import (
    ALIGNMENT_MODES,
    STACK_METHODS,
    AdvancedOptions,
    AlignmentOptions,
    CalibrationFrames,
    DetectionProfile,
    FrameInput,
    QualityOptions,
    resolve_detection_options,
)
from .io import FitsFrameSource, read_fits, write_fits, write_preview
from .pipeline import StackingSession
from .quality import evaluate_frame_quality
from .utils import format_duration, get_platform_info, get_version, get_version_banner

logger = logging.getLogger(__name__)

PROFILE_NAMES = [p.value for p in DetectionProfile]


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def build_calibration(
    darks: list[str] | None,
    flats: list[str] | None,
    bias: str | None,
) -> CalibrationFrames | None:
    """
    Map repeated --dark/--flat options to calibration frames.

    A single file is used as is; several files are combined into a master.
    """
    darks, flats = darks or [], flats or []
    if not (darks or flats or bias):
        return None
    return CalibrationFrames(
        dark_path=darks[0] if len(darks) == 1 else None,
        dark_paths=darks if len(darks) > 1 else [],
        flat_path=flats[0] if len(flats) == 1 else None,
        flat_paths=flats if len(flats) > 1 else [],
        bias_path=bias,
    )


def run_stack(args: argparse.Namespace) -> int:
    """Execute the `stack` command."""
    detection = resolve_detection_options(args.profile, sigma_threshold=args.sigma_threshold)
    advanced = AdvancedOptions(
        detection=detection,
        alignment=AlignmentOptions(fallback_to_translation=args.fallback_translation),
        quality=QualityOptions(),
    )
    frames = [FrameInput(str(Path(f))) for f in args.files]
    display = StackProgressDisplay(quiet=args.quiet)

    if not args.quiet:
        print_banner(get_version())
        print_info(f"{len(frames)} frames, method={args.method}, align={args.align}")

    session = StackingSession(frame_source=FitsFrameSource(), on_progress=display)
    future = session.start(
        frames,
        method=args.method,
        sigma=args.sigma,
        alignment_mode=args.align,
        enable_quality_eval=args.quality,
        calibration=build_calibration(args.dark, args.flat, args.bias),
        advanced=advanced,
    )
    try:
        result = future.result()
    except KeyboardInterrupt:
        session.cancel()
        future.result()
        display.close()
        print_warning("Stacking cancelled")
        return 1
    finally:
        session.close()
    display.close()

    if result is None:
        print_error(f"Stacking failed: {session.error or 'cancelled'}")
        return 1

    out_path = Path(args.out)
    write_fits(out_path, result.pixels, overwrite=args.overwrite)
    preview_path = Path(args.preview) if args.preview else out_path.with_suffix(".png")
    write_preview(preview_path, result.rgba)

    if args.quiet:
        return 0

    lines = [
        f"Frames:    {result.frame_count}",
        f"Size:      {result.width} x {result.height}",
        f"Method:    {result.method}",
        f"Alignment: {result.alignment_mode}",
        f"Duration:  {format_duration(result.duration_s)}",
    ]
    if result.alignment_results:
        failed = [a.filename for a in result.alignment_results[1:] if a.matched_stars <= 0]
        lines.append(f"Unaligned: {len(failed)}")
        for failed_name in failed:
            print_warning(f"{failed_name}: alignment failed, stacked unaligned")
    if result.quality_metrics:
        scores = [m.score for m in result.quality_metrics]
        lines.append(f"Quality:   {min(scores)}..{max(scores)} (median {int(np.median(scores))})")
    print_summary_box(lines, title="Stack complete")
    print_path("Master", str(out_path))
    print_path("Preview", str(preview_path))
    return 0


def run_detect(args: argparse.Namespace) -> int:
    """Execute the `detect` command: star detection and quality on one frame."""
    detection = resolve_detection_options(
        args.profile, sigma_threshold=args.sigma_threshold, max_stars=args.max_stars
    )
    data = read_fits(args.file)
    metrics = evaluate_frame_quality(data, options=QualityOptions(detection=detection))

    print_success(f"{Path(args.file).name}: {metrics.star_count} stars ({args.profile})")
    print_metric("Background", f"{metrics.background_median:.1f}", "ADU")
    print_metric("Noise", f"{metrics.background_noise:.2f}", "ADU")
    print_metric("Median FWHM", f"{metrics.median_fwhm:.2f}", "px")
    print_metric("SNR", f"{metrics.snr:.1f}")
    print_metric("Roundness", f"{metrics.roundness:.2f}")
    print_metric("Score", metrics.score, "/ 100")
    for star in metrics.stars[:args.top]:
        print_info(
            f"({star.cx:8.2f}, {star.cy:8.2f})  flux={star.flux:10.1f}  "
            f"fwhm={star.fwhm:5.2f}  snr={star.snr:7.1f}"
        )
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="skystack",
        description="Calibrate, align and stack astronomical FITS frames",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"skystack {get_version()}",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Stack command
    stack_parser = subparsers.add_parser("stack", help="Stack light frames into a master")
    stack_parser.add_argument(
        "files",
        nargs="+",
        help="Light frames (FITS); the first one is the alignment reference",
    )
    stack_parser.add_argument(
        "--method",
        choices=STACK_METHODS,
        default="average",
        help="Combination method (default: average)",
    )
    stack_parser.add_argument(
        "--sigma",
        type=float,
        default=2.5,
        help="Clipping threshold for sigma/winsorized (default: 2.5)",
    )
    stack_parser.add_argument(
        "--align",
        choices=ALIGNMENT_MODES,
        default="none",
        help="Alignment mode (default: none)",
    )
    stack_parser.add_argument(
        "--fallback-translation",
        action="store_true",
        help="Retry failed full alignments in translation mode",
    )
    stack_parser.add_argument(
        "--quality",
        action="store_true",
        help="Evaluate frame quality (implied by --method weighted)",
    )
    stack_parser.add_argument(
        "--profile",
        choices=PROFILE_NAMES,
        default="balanced",
        help="Star detector profile for alignment and quality (default: balanced)",
    )
    stack_parser.add_argument(
        "--sigma-threshold",
        type=float,
        default=None,
        help="Override the detection threshold (noise sigmas)",
    )
    stack_parser.add_argument(
        "--dark",
        action="append",
        metavar="FILE",
        help="Dark frame; repeat to build a median master dark",
    )
    stack_parser.add_argument(
        "--flat",
        action="append",
        metavar="FILE",
        help="Flat frame; repeat to build a mean master flat",
    )
    stack_parser.add_argument("--bias", metavar="FILE", help="Bias frame")
    stack_parser.add_argument(
        "--out",
        default="stacked.fits",
        help="Output FITS file (default: stacked.fits)",
    )
    stack_parser.add_argument(
        "--preview",
        default=None,
        metavar="FILE",
        help="Preview image (default: output name with .png)",
    )
    stack_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output",
    )
    stack_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    stack_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress colored output (use logging only)",
    )

    # Detect command
    detect_parser = subparsers.add_parser("detect", help="Detect stars and score one frame")
    detect_parser.add_argument("file", help="FITS frame")
    detect_parser.add_argument(
        "--profile",
        choices=PROFILE_NAMES,
        default="balanced",
        help="Star detector profile (default: balanced)",
    )
    detect_parser.add_argument("--sigma-threshold", type=float, default=None)
    detect_parser.add_argument("--max-stars", type=int, default=None)
    detect_parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of brightest stars to list (default: 10)",
    )
    detect_parser.add_argument("-v", "--verbose", action="store_true")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    setup_terminal()
    logger.debug("%s on %s", get_version_banner(), get_platform_info())

    try:
        if args.command == "stack":
            return run_stack(args)
        if args.command == "detect":
            return run_detect(args)
    except (OSError, ValueError) as e:
        print_error(f"{args.command} failed: {e}")
        logger.debug("%s failed", args.command, exc_info=True)
        return 1

    parser.print_help()
    return 1
