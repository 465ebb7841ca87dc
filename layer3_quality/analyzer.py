"""
Layer 3 — Frame Analyzer
Runs the enabled detection stages on one buffer and aggregates the results.

Stage failures never escape: a stage that raises is replaced by its neutral
result for that frame, so aggregation always succeeds.
"""
import logging
from typing import Callable, Optional

from config import DetectionConfig
from detection_types import (
    BlurDetectionResult,
    BoundingBox,
    DetectionResult,
    DocumentDetectionResult,
    FaceDetectionResult,
    GlareDetectionResult,
    PixelBuffer,
)
from error_handlers import StageFailureError, log_throttled
from layer2_detection import (
    FaceModelSession,
    FacePresenceDetector,
    NullFaceModel,
    detect_blur,
    detect_document,
    detect_glare,
)
from .aggregator import aggregate
from .motion import BoundsJitterFilter

logger = logging.getLogger(__name__)


class FrameAnalyzer:
    """
    Per-session stage orchestration.

    Holds the only cross-frame state of the analysis: the previous
    document bounds used by the jitter filter.
    """

    def __init__(
        self,
        config: DetectionConfig,
        face_session: Optional[FaceModelSession] = None,
        document_stage: Callable[[PixelBuffer], DocumentDetectionResult] = detect_document,
        blur_stage: Callable[[PixelBuffer], BlurDetectionResult] = detect_blur,
        glare_stage: Callable[[PixelBuffer], GlareDetectionResult] = detect_glare
    ):
        self.config = config
        self.face_session = face_session or FaceModelSession.ready(NullFaceModel())
        self.face_detector = FacePresenceDetector(self.face_session, config.min_face_confidence)
        self.motion_filter = BoundsJitterFilter(config.motion_tolerance_px, config.enable_motion_gating)

        self._document_stage = document_stage
        self._blur_stage = blur_stage
        self._glare_stage = glare_stage

        self.previous_bounds: Optional[BoundingBox] = None
        self.frames_analyzed = 0
        self.stage_failures = 0

    def _run_stage(self, name: str, stage, buffer: PixelBuffer, fallback):
        try:
            return stage(buffer)
        except Exception as e:
            self.stage_failures += 1
            error = StageFailureError(name, e)
            log_throttled(logger, logging.WARNING, f"stage-{name}", error.message)
            return fallback

    def analyze(self, buffer: PixelBuffer, timestamp: float = 0.0) -> DetectionResult:
        """Analyse one frame."""
        config = self.config

        if config.enable_document_detection:
            document = self._run_stage("document", self._document_stage, buffer,
                                       DocumentDetectionResult.empty())
        else:
            document = DocumentDetectionResult.disabled()

        blur = BlurDetectionResult.empty()
        if config.enable_blur_detection:
            blur = self._run_stage("blur", self._blur_stage, buffer, BlurDetectionResult.empty())

        glare = GlareDetectionResult.empty()
        if config.enable_glare_detection:
            glare = self._run_stage("glare", self._glare_stage, buffer, GlareDetectionResult.empty())

        # The face model is the expensive stage; skip it on empty frames
        face = FaceDetectionResult.empty()
        if config.enable_face_detection and document.detected and self.face_session.is_ready:
            face = self._run_stage("face", self.face_detector.detect, buffer,
                                   FaceDetectionResult.empty())

        result = aggregate(document, blur, glare, face, self.previous_bounds, config,
                           timestamp=timestamp, motion_filter=self.motion_filter)
        self.previous_bounds = document.bounds
        self.frames_analyzed += 1

        log_throttled(
            logger, logging.DEBUG, "summary",
            f"Detection: doc={result.document_detected} ({result.document_confidence:.2f}) "
            f"moving={result.is_moving} blurry={result.is_blurry} glare={result.has_glare} "
            f"ready={result.ready_for_capture} quality={result.overall_quality.value}"
        )
        return result

    def reset_motion_history(self):
        """Forget the previous bounds (new session, camera switch)."""
        self.previous_bounds = None
