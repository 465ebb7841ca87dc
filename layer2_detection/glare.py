"""
Layer 2 — Glare Analyzer
Finds specular reflections: very bright pixels with almost no colour.
White card stock is bright too, but a reflection washes out saturation.
"""
import logging

import numpy as np

from detection_types import GlareDetectionResult, PixelBuffer
from .luminance import luminance

logger = logging.getLogger(__name__)

SAMPLE_STEP = 2                 # Both axes, one pixel in four
BRIGHTNESS_THRESHOLD = 240
GLARE_BRIGHTNESS_THRESHOLD = 250
SATURATION_THRESHOLD = 0.1
GLARE_SCORE_THRESHOLD = 0.05
GLARE_RATIO_THRESHOLD = 0.02
GLARE_SCORE_SCALE = 10.0
HOTSPOT_MIN_SIZE = 100          # Glare pixels per reported hotspot


def detect_glare(buffer: PixelBuffer) -> GlareDetectionResult:
    """Measure glare on a step-2 grid."""
    sampled = buffer.data[::SAMPLE_STEP, ::SAMPLE_STEP, :3]
    sample_count = sampled.shape[0] * sampled.shape[1]
    if sample_count == 0:
        return GlareDetectionResult.empty()

    brightness = luminance(sampled)
    levels = np.clip(np.rint(brightness), 0, 255).astype(np.intp)
    histogram = np.bincount(levels.ravel(), minlength=256)

    bright = brightness > BRIGHTNESS_THRESHOLD
    bright_count = int(bright.sum())

    channel_max = sampled.max(axis=2).astype(np.float32)
    channel_min = sampled.min(axis=2).astype(np.float32)
    saturation = np.divide(channel_max - channel_min, channel_max,
                           out=np.zeros_like(channel_max), where=channel_max > 0)

    glare = bright & (brightness > GLARE_BRIGHTNESS_THRESHOLD) & (saturation < SATURATION_THRESHOLD)
    glare_count = int(glare.sum())
    glare_ratio = glare_count / sample_count

    raw_score = glare_ratio * GLARE_SCORE_SCALE
    has_glare = raw_score > GLARE_SCORE_THRESHOLD or glare_ratio > GLARE_RATIO_THRESHOLD

    logger.debug(f"Glare: bright={bright_count} glare={glare_count}/{sample_count} "
                 f"score={min(raw_score, 1.0):.3f}")

    return GlareDetectionResult(
        has_glare=has_glare,
        score=min(raw_score, 1.0),
        hotspot_count=glare_count // HOTSPOT_MIN_SIZE,
        brightness_histogram=histogram.tolist()
    )


def glare_status(result: GlareDetectionResult) -> str:
    """Human-readable glare label."""
    if result.score > 0.5:
        return "Severe glare detected"
    if result.score > 0.2:
        return "Moderate glare detected"
    if result.has_glare:
        return "Minor glare detected"
    return "No glare"
