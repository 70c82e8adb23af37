"""
Stacking pipeline orchestration.

`StackingSession` is the handle a caller keeps for a stacking run. It runs
the stages

    loading -> calibrating -> evaluating -> aligning -> stacking -> rendering -> done

publishing an immutable `StackProgress` snapshot at every transition and
inside per-frame loops, yielding control between units of work, and polling
a cancellation token at every stage boundary and frame step. A cancelled
run ends silently: no result and no error.

Example
-------
>>> session = StackingSession(on_progress=print)
>>> result = session.stack(["a.fits", "b.fits", "c.fits"], method="sigma",
...                        alignment_mode="full")

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Sequence

import numpy as np

from .align import align_frame
from .calibration import calibrate_frame, create_master_dark, create_master_flat, subtract_bias
from .config import (
    PROFILE_PRESETS,
    AdvancedOptions,
    AlignmentMode,
    AlignmentOptions,
    CalibrationFrames,
    DetectionProfile,
    FrameAlignment,
    FrameInput,
    FrameQualityMetrics,
    QualityOptions,
    StackMethod,
    StackProgress,
    StackRequest,
    StackResult,
    StackStage,
)
from .detection import detect_stars_chunked
from .errors import FrameReadError, FrameValidationError, StackingCancelled
from .io import FitsFrameSource, FrameSource
from .quality import evaluate_frame_quality, quality_to_weights
from .render import AsinhRenderer, Renderer
from .runtime import CancellationToken, DetectionRuntime, yield_to_scheduler
from .stack import combine_frames
from .utils import as_plane

logger = logging.getLogger(__name__)

MIN_FRAMES = 2


@dataclass
class _Run:
    request: StackRequest
    frames: list[FrameInput]
    token: CancellationToken


class StackingSession:
    """
    Explicit handle over one stacking run at a time.

    Parameters
    ----------
    frame_source : FrameSource, optional
        Loads frames by path (FITS from disk by default).
    renderer : Renderer, optional
        Builds the display preview (asinh STF by default).
    on_progress : callable, optional
        Receives every `StackProgress` snapshot.
    yield_control : callable, optional
        Called between units of work (default: ``time.sleep(0)``).
    chunk_rows : int, default 24
        Row chunk of the cancellable star detector.

    Attributes
    ----------
    is_stacking : bool
        True while a run is in progress.
    progress : StackProgress or None
        Latest snapshot (None when idle or after cancellation).
    result : StackResult or None
        Result of the last completed run.
    error : str or None
        Message of the last fatal error.
    """

    def __init__(
        self,
        frame_source: FrameSource | None = None,
        renderer: Renderer | None = None,
        on_progress: Callable[[StackProgress], None] | None = None,
        yield_control: Callable[[], None] = yield_to_scheduler,
        chunk_rows: int = 24,
    ):
        self.frame_source = frame_source or FitsFrameSource()
        self.renderer = renderer or AsinhRenderer()
        self.on_progress = on_progress
        self.yield_control = yield_control
        self.chunk_rows = chunk_rows

        self.is_stacking = False
        self.progress: StackProgress | None = None
        self.result: StackResult | None = None
        self.error: str | None = None

        self._lock = threading.Lock()
        self._token: CancellationToken | None = None
        self._executor: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stack(
        self,
        frames: Sequence[FrameInput | str],
        method: StackMethod = "average",
        sigma: float = 2.5,
        calibration: CalibrationFrames | None = None,
        alignment_mode: AlignmentMode = "none",
        enable_quality_eval: bool = False,
        advanced: AdvancedOptions | None = None,
    ) -> StackResult | None:
        """
        Run the pipeline and block until it ends.

        Parameters
        ----------
        frames : sequence of FrameInput or str
            Light frames; the first one is the alignment reference.
        method : str, default "average"
            average, median, sigma, min, max, winsorized or weighted.
        sigma : float, default 2.5
            Clipping threshold of the sigma and winsorized methods.
        calibration : CalibrationFrames, optional
            Dark, flat and bias frames.
        alignment_mode : {"none", "translation", "full"}
            Registration model.
        enable_quality_eval : bool, default False
            Evaluate frame quality even when the method is not weighted.
        advanced : AdvancedOptions, optional
            Detector, alignment and quality overrides.

        Returns
        -------
        StackResult or None
            None when the run failed (see `error`) or was cancelled.
        """
        run = self._prepare(
            frames,
            StackRequest(
                method=method,
                sigma=sigma,
                alignment_mode=alignment_mode,
                enable_quality_eval=enable_quality_eval,
                calibration=calibration,
                advanced=advanced,
            ),
        )
        return self._execute(run) if run is not None else None

    def start(self, frames: Sequence[FrameInput | str], **kwargs) -> Future:
        """
        Run the pipeline on a worker thread.

        Accepts the arguments of `stack`. The returned future resolves to
        the `StackResult` or None; it never raises for pipeline failures.
        """
        run = self._prepare(frames, StackRequest(**kwargs))
        if run is None:
            future: Future = Future()
            future.set_result(None)
            return future
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="skystack")
        return self._executor.submit(self._execute, run)

    def cancel(self) -> None:
        """Request cancellation of the current run."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self.is_stacking = False
            self.progress = None
        logger.info("Cancelled by user")

    def reset(self) -> None:
        """Clear the last result, progress and error."""
        with self._lock:
            self.result = None
            self.progress = None
            self.error = None

    def close(self) -> None:
        """Shut down the worker thread, if any."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> StackingSession:
        return self

    def __exit__(self, *exc) -> None:
        if self.is_stacking:
            self.cancel()
        self.close()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _prepare(self, frames: Sequence[FrameInput | str], request: StackRequest) -> _Run | None:
        inputs = [f if isinstance(f, FrameInput) else FrameInput(str(f)) for f in frames]

        if len(inputs) < MIN_FRAMES:
            self.error = "At least 2 frames are required for stacking"
            logger.warning("Insufficient frames for stacking: %d", len(inputs))
            return None
        try:
            request.validate()
        except ValueError as exc:
            self.error = str(exc)
            logger.error("Invalid stacking request: %s", exc)
            return None

        token = CancellationToken()
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = token
            self.is_stacking = True
            self.error = None
            self.result = None

        logger.info(
            "Starting: %d frames, method=%s, align=%s",
            len(inputs), request.method, request.alignment_mode,
        )
        return _Run(request=request, frames=inputs, token=token)

    def _execute(self, run: _Run) -> StackResult | None:
        try:
            result = self._pipeline(run)
        except StackingCancelled:
            logger.debug("Run stopped at a cancellation checkpoint")
            return None
        except Exception as exc:
            if run.token.cancelled:
                return None
            message = str(exc) or "Stacking failed"
            logger.error("Failed: %s", message, exc_info=logger.isEnabledFor(logging.DEBUG))
            with self._lock:
                self.error = message
            return None
        finally:
            with self._lock:
                if self._token is run.token:
                    self.is_stacking = False

        with self._lock:
            if run.token.cancelled:
                return None
            self.result = result
        self._emit(
            run.token, StackStage.DONE, result.frame_count, result.frame_count,
            f"Done - {result.frame_count} frames in {result.duration_s:.1f}s",
        )
        return result

    def _emit(
        self,
        token: CancellationToken,
        stage: StackStage,
        current: float,
        total: int,
        message: str,
    ) -> None:
        snapshot = StackProgress(stage=stage, current=current, total=total, message=message)
        with self._lock:
            if token.cancelled:
                return
            self.progress = snapshot
        if self.on_progress is not None:
            self.on_progress(snapshot)

    def _step(self, token: CancellationToken) -> None:
        self.yield_control()
        token.raise_if_cancelled()

    def _runtime(
        self,
        token: CancellationToken,
        on_progress: Callable[[float, str], None],
    ) -> DetectionRuntime:
        return DetectionRuntime(
            cancel_token=token,
            on_progress=on_progress,
            chunk_rows=self.chunk_rows,
            yield_control=self.yield_control,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _load_light(self, frame: FrameInput) -> tuple[np.ndarray, int, int]:
        try:
            loaded = self.frame_source.load(frame.filepath)
        except Exception as exc:
            raise FrameReadError(frame.filename, str(exc)) from exc
        if loaded is None or loaded.pixels is None:
            raise FrameReadError(frame.filename)
        return loaded.pixels, int(loaded.width), int(loaded.height)

    def _load_calibration(self, path: str, kind: str, pixel_count: int) -> np.ndarray | None:
        """Calibration frames are optional: unreadable ones are skipped."""
        try:
            loaded = self.frame_source.load(path)
        except Exception as exc:
            logger.warning("Skipping unreadable %s frame %s: %s", kind, path, exc)
            return None
        if loaded is None or loaded.pixels is None:
            logger.warning("Skipping unreadable %s frame %s", kind, path)
            return None
        pixels = np.asarray(loaded.pixels, dtype=np.float32)
        if pixels.size != pixel_count:
            raise FrameValidationError(
                f"{kind.capitalize()} frame size ({pixels.size}) does not match "
                f"image size ({pixel_count})"
            )
        return pixels.ravel()

    def _build_masters(
        self,
        calibration: CalibrationFrames,
        token: CancellationToken,
        pixel_count: int,
    ) -> dict[str, np.ndarray | None]:
        masters: dict[str, np.ndarray | None] = {"dark": None, "flat": None, "bias": None}
        plan = (
            ("bias", [], calibration.bias_path, None),
            ("dark", calibration.dark_paths, calibration.dark_path, create_master_dark),
            ("flat", calibration.flat_paths, calibration.flat_path, create_master_flat),
        )
        for step, (kind, paths, single, combine) in enumerate(plan):
            token.raise_if_cancelled()
            if paths:
                self._emit(token, StackStage.CALIBRATING, step, 3,
                           f"Building master {kind} from {len(paths)} frames...")
                self._step(token)
                bias = masters["bias"] if kind == "flat" else None
                frames = []
                for path in paths:
                    token.raise_if_cancelled()
                    pixels = self._load_calibration(path, kind, pixel_count)
                    if pixels is not None:
                        frames.append(subtract_bias(pixels, bias) if bias is not None else pixels)
                master = combine(frames)
                masters[kind] = master if master.size else None
                if bias is not None and masters[kind] is not None:
                    # bias already removed from each flat
                    masters["bias"] = None
            elif single:
                self._emit(token, StackStage.CALIBRATING, step, 3, f"Loading {kind} frame...")
                self._step(token)
                masters[kind] = self._load_calibration(single, kind, pixel_count)
        return masters

    def _pipeline(self, run: _Run) -> StackResult:
        request, frames, token = run.request, run.frames, run.token
        advanced = request.advanced or AdvancedOptions()
        n_frames = len(frames)
        start = time.perf_counter()

        # --- loading ---------------------------------------------------
        planes: list[np.ndarray] = []
        ref_width = ref_height = 0
        for i, frame in enumerate(frames):
            token.raise_if_cancelled()
            self._emit(token, StackStage.LOADING, i + 1, n_frames,
                       f"Loading frame {i + 1}/{n_frames}: {frame.filename}")
            self._step(token)

            pixels, width, height = self._load_light(frame)
            if i == 0:
                ref_width, ref_height = width, height
            elif (width, height) != (ref_width, ref_height):
                raise FrameValidationError(
                    f"Dimension mismatch: {frame.filename} is {width}×{height}, "
                    f"expected {ref_width}×{ref_height}"
                )
            try:
                planes.append(as_plane(pixels, width, height))
            except ValueError as exc:
                raise FrameReadError(frame.filename, str(exc)) from exc

        # --- calibrating -------------------------------------------------
        if request.calibration is not None and not request.calibration.is_empty:
            masters = self._build_masters(request.calibration, token, ref_width * ref_height)
            shaped = {
                k: (m.reshape(ref_height, ref_width) if m is not None else None)
                for k, m in masters.items()
            }
            if any(m is not None for m in shaped.values()):
                for i in range(n_frames):
                    token.raise_if_cancelled()
                    self._emit(token, StackStage.CALIBRATING, i + 1, n_frames,
                               f"Calibrating frame {i + 1}/{n_frames}: {frames[i].filename}")
                    planes[i] = calibrate_frame(
                        planes[i], shaped["dark"], shaped["flat"], shaped["bias"]
                    )
                    self._step(token)
            else:
                logger.warning("No calibration frame could be loaded, skipping calibration")

        # --- evaluating --------------------------------------------------
        quality_metrics: list[FrameQualityMetrics] | None = None
        weights: list[float] | None = None
        if request.needs_quality:
            quality_options = advanced.quality or QualityOptions()
            quality_options = replace(
                quality_options,
                detection=advanced.detection
                or quality_options.detection
                or PROFILE_PRESETS[DetectionProfile.BALANCED],
            )
            quality_metrics = []
            for i in range(n_frames):
                token.raise_if_cancelled()
                message = f"Evaluating frame {i + 1}/{n_frames}: {frames[i].filename}"
                self._emit(token, StackStage.EVALUATING, i + 1, n_frames, message)
                self._step(token)

                runtime = self._runtime(
                    token,
                    lambda p, _stage, i=i, message=message: self._emit(
                        token, StackStage.EVALUATING, i + p, n_frames, message
                    ),
                )
                quality_metrics.append(
                    evaluate_frame_quality(planes[i], options=quality_options, runtime=runtime)
                )
            weights = quality_to_weights(quality_metrics)
            logger.info("Quality scores: %s", [m.score for m in quality_metrics])

        # --- aligning ----------------------------------------------------
        alignment_results: list[FrameAlignment] | None = None
        if request.alignment_mode != "none":
            align_options = advanced.alignment or AlignmentOptions()
            align_options = replace(
                align_options,
                detection=advanced.detection
                or align_options.detection
                or PROFILE_PRESETS[DetectionProfile.BALANCED],
            )
            total = n_frames - 1

            ref_stars = align_options.ref_stars
            if ref_stars is None:
                self._emit(token, StackStage.ALIGNING, 0, total, "Detecting reference stars...")
                self._step(token)
                ref_stars = detect_stars_chunked(
                    planes[0],
                    options=align_options.detection,
                    runtime=self._runtime(token, lambda p, stage: None),
                )
                logger.info("Reference frame: %d stars", len(ref_stars))

            alignment_results = [
                FrameAlignment(filename=frames[0].filename, matched_stars=-1, rms_error=0.0)
            ]
            for i in range(1, n_frames):
                token.raise_if_cancelled()
                message = f"Aligning frame {i + 1}/{n_frames}: {frames[i].filename}"
                self._emit(token, StackStage.ALIGNING, i, total, message)
                self._step(token)

                runtime = self._runtime(
                    token,
                    lambda p, stage, i=i: self._emit(
                        token, StackStage.ALIGNING, i - 1 + p, total,
                        f"Aligning frame {i + 1}/{n_frames}: {stage}",
                    ),
                )
                planes[i], transform = align_frame(
                    planes[0], planes[i], ref_width, ref_height, request.alignment_mode,
                    options=align_options, runtime=runtime, ref_stars=ref_stars,
                )
                alignment_results.append(
                    FrameAlignment(
                        filename=frames[i].filename,
                        matched_stars=transform.matched_stars,
                        rms_error=transform.rms_error,
                        detected_ref_stars=transform.detection_counts[0],
                        detected_target_stars=transform.detection_counts[1],
                        fallback_used=transform.fallback_used,
                    )
                )
                logger.debug(
                    "%s: matched=%d rms=%.3f fallback=%s", frames[i].filename,
                    transform.matched_stars, transform.rms_error, transform.fallback_used,
                )

        # --- stacking ----------------------------------------------------
        token.raise_if_cancelled()
        self._emit(token, StackStage.STACKING, 0, 1,
                   f"Stacking {n_frames} frames ({request.method})...")
        self._step(token)
        if request.method == "weighted" and weights is None:
            weights = [1.0] * n_frames
        stacked = combine_frames(planes, request.method, request.sigma, weights)
        planes.clear()

        # --- rendering ---------------------------------------------------
        token.raise_if_cancelled()
        self._emit(token, StackStage.RENDERING, 0, 1, "Generating preview...")
        self._step(token)
        stretch = self.renderer.auto_stretch(stacked)
        rgba = self.renderer.render(stacked, stretch)

        duration = time.perf_counter() - start
        result = StackResult(
            pixels=stacked,
            rgba=rgba,
            width=ref_width,
            height=ref_height,
            frame_count=n_frames,
            method=request.method,
            duration_s=duration,
            alignment_mode=request.alignment_mode,
            alignment_results=alignment_results,
            quality_metrics=quality_metrics,
        )
        logger.info("Completed: %d frames in %.1fs", n_frames, duration)
        return result
