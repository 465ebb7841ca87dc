"""
Layer 2 — Sharpness Analyzer
Estimates motion/focus blur from sampled luminance.

Two measures are taken:
- Laplacian variance on a step-2 grid, reported for diagnostics
- Mean central-difference gradient on a step-4 grid, which drives the score
"""
import logging

import numpy as np

from detection_types import BlurDetectionResult, PixelBuffer
from .luminance import luminance

logger = logging.getLogger(__name__)

LAPLACIAN_STEP = 2
GRADIENT_STEP = 4

# Mean gradient magnitude (luminance units per 2 px)
GRADIENT_BLUR_THRESHOLD = 5.0    # Below this the frame is blurry
GRADIENT_SHARP_THRESHOLD = 25.0  # Above this the frame is fully sharp

BLURRY_SCORE_CEILING = 0.3


def laplacian_variance(pixels: np.ndarray, step: int = LAPLACIAN_STEP) -> float:
    """Variance of the 4-neighbour Laplacian sampled every `step` pixels."""
    height, width = pixels.shape[:2]
    if height < 3 or width < 3:
        return 0.0
    ys = np.arange(1, height - 1, step)
    xs = np.arange(1, width - 1, step)

    center = luminance(pixels[np.ix_(ys, xs)])
    up = luminance(pixels[np.ix_(ys - 1, xs)])
    down = luminance(pixels[np.ix_(ys + 1, xs)])
    left = luminance(pixels[np.ix_(ys, xs - 1)])
    right = luminance(pixels[np.ix_(ys, xs + 1)])

    laplacian = up + down + left + right - 4.0 * center
    return float(laplacian.var())


def mean_gradient(pixels: np.ndarray, step: int = GRADIENT_STEP) -> float:
    """Mean central-difference gradient magnitude sampled every `step` pixels."""
    height, width = pixels.shape[:2]
    if height < 3 or width < 3:
        return 0.0
    ys = np.arange(1, height - 1, step)
    xs = np.arange(1, width - 1, step)

    gx = luminance(pixels[np.ix_(ys, xs + 1)]) - luminance(pixels[np.ix_(ys, xs - 1)])
    gy = luminance(pixels[np.ix_(ys + 1, xs)]) - luminance(pixels[np.ix_(ys - 1, xs)])
    return float(np.sqrt(gx * gx + gy * gy).mean())


def gradient_to_score(gradient: float) -> float:
    """Map mean gradient to a 0..1 sharpness score (1 = sharp)."""
    if gradient < GRADIENT_BLUR_THRESHOLD:
        return BLURRY_SCORE_CEILING * gradient / GRADIENT_BLUR_THRESHOLD
    if gradient >= GRADIENT_SHARP_THRESHOLD:
        return 1.0
    span = GRADIENT_SHARP_THRESHOLD - GRADIENT_BLUR_THRESHOLD
    return BLURRY_SCORE_CEILING + (gradient - GRADIENT_BLUR_THRESHOLD) / span * (1 - BLURRY_SCORE_CEILING)


def detect_blur(buffer: PixelBuffer) -> BlurDetectionResult:
    """Score frame sharpness."""
    variance = laplacian_variance(buffer.data)
    gradient = mean_gradient(buffer.data)
    score = gradient_to_score(gradient)

    logger.debug(f"Blur: gradient={gradient:.2f} variance={variance:.1f} score={score:.2f}")

    return BlurDetectionResult(
        is_blurry=gradient < GRADIENT_BLUR_THRESHOLD,
        score=score,
        variance=variance
    )


def blur_status(result: BlurDetectionResult) -> str:
    """Human-readable sharpness label."""
    if result.score < 0.3:
        return "Very blurry"
    if result.score < 0.5:
        return "Slightly blurry"
    if result.score < 0.7:
        return "Acceptable"
    return "Sharp"
