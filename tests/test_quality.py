"""
Tests for the quality module.

Tests cover:
- Score composition and weight normalization
- Frame metrics on synthetic star fields
- Progress reporting and cancellation
- Score to weight conversion

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from skystack.config import DetectedStar, FrameQualityMetrics, QualityOptions
from skystack.errors import StackingCancelled
from skystack.quality import (
    compute_score,
    evaluate_frame_quality,
    evaluate_frames,
    quality_to_weights,
)
from skystack.runtime import CancellationToken, DetectionRuntime


def _scored(score):
    return FrameQualityMetrics(
        background_median=0.0, background_noise=1.0, snr=0.0, star_count=0,
        median_fwhm=0.0, roundness=1.0, score=score,
    )


class TestComputeScore:
    """Tests for the 0-100 quality score."""

    def test_perfect_frame(self):
        assert compute_score(50, 1.5, 1e6, 1.0, QualityOptions()) == 100

    def test_no_star(self):
        """Unknown FWHM counts 50, roundness defaults to 1."""
        assert compute_score(0, 0.0, 0.0, 1.0, QualityOptions()) == 35

    def test_weighted_mix(self):
        # fwhm 50, snr 20 dB, stars 20, roundness 80
        assert compute_score(10, 4.5, 10.0, 0.8, QualityOptions()) == 41

    def test_weights_are_normalized(self):
        doubled = QualityOptions(
            weight_fwhm=0.8, weight_snr=0.6, weight_star_count=0.3, weight_roundness=0.3
        )
        assert compute_score(10, 4.5, 10.0, 0.8, doubled) == 41

    def test_partial_scores_clamped(self):
        """FWHM beyond the worst value and sub-unity SNR give 0, not negatives."""
        score = compute_score(0, 20.0, 0.5, 0.0, QualityOptions())
        assert score == 0

    def test_invalid_weights(self):
        with pytest.raises(ValueError):
            QualityOptions(weight_fwhm=-1.0).validate()


class TestEvaluateFrameQuality:
    """Tests for per-frame metrics."""

    def test_star_field_metrics(self, synthetic_star_field, star_positions):
        image = synthetic_star_field(star_positions(10))
        metrics = evaluate_frame_quality(image)

        assert metrics.star_count == 10
        assert len(metrics.stars) == 10
        assert metrics.background_median == pytest.approx(100.0, abs=1.0)
        assert metrics.background_noise == pytest.approx(1.0, rel=0.2)
        assert metrics.median_fwhm > 0
        assert metrics.snr > 100
        assert 0 <= metrics.score <= 100

    def test_blank_frame(self):
        rng = np.random.default_rng(0)
        image = (200 + rng.normal(0, 3, (96, 96))).astype(np.float32)
        metrics = evaluate_frame_quality(image)
        assert metrics.star_count == 0
        assert metrics.median_fwhm == 0.0
        assert metrics.snr == 0.0
        assert metrics.roundness == 1.0
        assert metrics.score == 35

    def test_sharper_frame_scores_higher(self, synthetic_star_field, star_positions):
        positions = star_positions(6, min_separation=30)
        sharp = evaluate_frame_quality(synthetic_star_field(positions, sigma=1.2))
        blurry = evaluate_frame_quality(synthetic_star_field(positions, sigma=3.0))

        assert sharp.star_count == blurry.star_count == 6
        assert sharp.median_fwhm < blurry.median_fwhm
        assert sharp.score > blurry.score

    def test_flat_buffer(self, synthetic_star_field, star_positions):
        image = synthetic_star_field(star_positions(5))
        metrics = evaluate_frame_quality(image.ravel(), 160, 160)
        assert metrics.star_count == 5

    def test_predetected_stars(self):
        """Supplied stars skip detection."""
        stars = [DetectedStar(cx=10.0 + i, cy=10.0, flux=100.0, peak=50.0, area=9, fwhm=2.0)
                 for i in range(3)]
        image = np.full((64, 64), 10.0, dtype=np.float32)
        metrics = evaluate_frame_quality(image, options=QualityOptions(stars=stars))
        assert metrics.star_count == 3
        assert metrics.median_fwhm == pytest.approx(2.0)
        assert metrics.snr == pytest.approx(50.0)  # noise defaults to 1 on a flat frame

    def test_progress_reports(self, synthetic_star_field, star_positions):
        reports = []
        runtime = DetectionRuntime(on_progress=lambda p, stage: reports.append((p, stage)))
        evaluate_frame_quality(synthetic_star_field(star_positions(4)), runtime=runtime)

        fractions = [p for p, _ in reports]
        assert fractions == sorted(fractions)
        assert reports[0] == (0.05, "background")
        assert reports[1] == (0.25, "detect-stars")
        assert reports[-2:] == [(0.95, "score"), (1.0, "done")]

    def test_cancelled(self, synthetic_star_field, star_positions):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(StackingCancelled):
            evaluate_frame_quality(
                synthetic_star_field(star_positions(4)), runtime=DetectionRuntime(cancel_token=token)
            )


class TestEvaluateFrames:
    """Tests for batch evaluation."""

    def test_progress_callback(self, synthetic_star_field, star_positions):
        frames = [synthetic_star_field(star_positions(4), seed=s) for s in range(2)]
        calls = []
        results = evaluate_frames(frames, on_progress=lambda done, total: calls.append((done, total)))
        assert len(results) == 2
        assert calls == [(1, 2), (2, 2)]


class TestQualityToWeights:
    """Tests for score to weight conversion."""

    def test_relative_to_best(self):
        weights = quality_to_weights([_scored(s) for s in (50, 100, 25)])
        assert weights == pytest.approx([0.5, 1.0, 0.25])

    def test_all_zero(self):
        assert quality_to_weights([_scored(0), _scored(0)]) == [1.0, 1.0]

    def test_empty(self):
        assert quality_to_weights([]) == []

