"""
Layer 3 — Status Messages
One-line hints shown to the user for the current frame.
"""
from config import DetectionConfig
from detection_types import DetectionResult

POSITION_MESSAGE = "Position ID card in frame"
STEADY_MESSAGE = "Hold the document steady"
BLURRY_MESSAGE = "Hold camera still - image is blurry"
GLARE_MESSAGE = "Tilt document to reduce glare"
READY_MESSAGE = "Perfect! Hold still..."
ADJUSTING_MESSAGE = "Adjusting..."
CAPTURING_MESSAGE = "Capturing..."


def status_message(result: DetectionResult, config: DetectionConfig) -> str:
    """Most pressing problem first."""
    if not result.document_detected:
        return POSITION_MESSAGE
    if result.is_moving:
        return STEADY_MESSAGE
    if result.is_blurry and config.enable_blur_detection:
        return BLURRY_MESSAGE
    if result.has_glare and config.enable_glare_detection:
        return GLARE_MESSAGE
    if result.ready_for_capture:
        return READY_MESSAGE
    return ADJUSTING_MESSAGE
