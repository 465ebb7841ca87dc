"""
Layer 3 — Quality Aggregator
Fuses the stage results of one frame into a DetectionResult.
Pure: the only history it sees is the previous document bounds it is given.
"""
from typing import Optional

from config import DetectionConfig
from detection_types import (
    BlurDetectionResult,
    BoundingBox,
    DetectionResult,
    DocumentDetectionResult,
    FaceDetectionResult,
    GlareDetectionResult,
    QualityLevel,
)
from .motion import BoundsJitterFilter

# Quality weights
DOCUMENT_WEIGHT = 3.0
BLUR_WEIGHT = 2.0
GLARE_WEIGHT = 2.0
FACE_WEIGHT = 1.0

# Normalized score thresholds
FAIR_THRESHOLD = 0.4
GOOD_THRESHOLD = 0.65
EXCELLENT_THRESHOLD = 0.85


def quality_score(
    document: DocumentDetectionResult,
    blur: BlurDetectionResult,
    glare: GlareDetectionResult,
    face: FaceDetectionResult,
    config: DetectionConfig
) -> float:
    """Weighted, normalized 0..1 quality score."""
    score = 0.0
    max_score = DOCUMENT_WEIGHT
    if document.detected:
        score += min(document.confidence * DOCUMENT_WEIGHT, DOCUMENT_WEIGHT)

    if config.enable_blur_detection:
        max_score += BLUR_WEIGHT
        if not blur.is_blurry:
            score += blur.score * BLUR_WEIGHT

    if config.enable_glare_detection:
        max_score += GLARE_WEIGHT
        if not glare.has_glare:
            score += (1.0 - glare.score) * GLARE_WEIGHT

    if config.enable_face_detection:
        max_score += FACE_WEIGHT
        if face.detected:
            score += face.confidence * FACE_WEIGHT

    return score / max_score


def quality_level(score: float) -> QualityLevel:
    if score >= EXCELLENT_THRESHOLD:
        return QualityLevel.EXCELLENT
    if score >= GOOD_THRESHOLD:
        return QualityLevel.GOOD
    if score >= FAIR_THRESHOLD:
        return QualityLevel.FAIR
    return QualityLevel.POOR


def calculate_overall_quality(document, blur, glare, face, config: DetectionConfig) -> QualityLevel:
    return quality_level(quality_score(document, blur, glare, face, config))


def is_ready_for_capture(
    document: DocumentDetectionResult,
    blur: BlurDetectionResult,
    glare: GlareDetectionResult,
    is_moving: bool,
    config: DetectionConfig
) -> bool:
    """
    Capture readiness. Face presence is informational and never gates it:
    portraits on ID cards are small and the face check is unreliable there.
    """
    if not document.detected or document.confidence < config.min_document_confidence:
        return False
    if is_moving:
        return False
    if config.enable_blur_detection and blur.is_blurry:
        return False
    if config.enable_glare_detection and glare.has_glare:
        return False
    return True


def aggregate(
    document: DocumentDetectionResult,
    blur: BlurDetectionResult,
    glare: GlareDetectionResult,
    face: FaceDetectionResult,
    previous_bounds: Optional[BoundingBox],
    config: DetectionConfig,
    timestamp: float = 0.0,
    motion_filter: Optional[BoundsJitterFilter] = None
) -> DetectionResult:
    """
    Build the per-frame verdict.

    Args:
        document, blur, glare, face: Stage results (neutral results for disabled stages)
        previous_bounds: Document bounds of the previous analysed frame
        config: Active detection config
        timestamp: Frame time in ms
        motion_filter: Override for the config-derived jitter filter
    """
    if motion_filter is None:
        motion_filter = BoundsJitterFilter(config.motion_tolerance_px, config.enable_motion_gating)
    is_moving = motion_filter.is_moving(document.bounds, previous_bounds)

    return DetectionResult(
        document_detected=document.detected,
        document_confidence=document.confidence,
        document_bounds=document.bounds,
        is_blurry=blur.is_blurry,
        blur_score=blur.score,
        has_glare=glare.has_glare,
        glare_score=glare.score,
        face_detected=face.detected,
        face_confidence=face.confidence,
        face_bounds=face.bounds,
        is_moving=is_moving,
        ready_for_capture=is_ready_for_capture(document, blur, glare, is_moving, config),
        overall_quality=calculate_overall_quality(document, blur, glare, face, config),
        timestamp=timestamp
    )
