"""
Error Handling System
Provides consistent error responses across all capture layers
"""
import logging
import time

logger = logging.getLogger(__name__)

# Repeated per-frame messages are logged at most once per key in this window
LOG_THROTTLE_SECONDS = 5.0

_last_logged = {}


class ScannerError(Exception):
    """Base exception for capture pipeline errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera / frame source
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to read frames before the source is opened"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to capture frame"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "reason": reason,
                "suggestion": "Check camera connection or restart the camera"
            }
        )


# Configuration Errors
class ConfigurationError(ScannerError):
    """Detection configuration errors"""
    pass


class InvalidConfigError(ConfigurationError):
    """A configuration value is out of range"""
    def __init__(self, field_name, value, reason):
        super().__init__(
            message=f"Invalid detection config value for '{field_name}': {value!r}",
            error_code="INVALID_CONFIG",
            details={
                "field": field_name,
                "value": value,
                "reason": reason
            }
        )


# Layer 2/3 Errors - Detection stages
class DetectionError(ScannerError):
    """Detection stage errors"""
    pass


class StageFailureError(DetectionError):
    """A detection stage raised while analysing a frame"""
    def __init__(self, stage, reason):
        super().__init__(
            message=f"Detection stage '{stage}' failed: {reason}",
            error_code="STAGE_FAILED",
            details={
                "stage": stage,
                "reason": str(reason)
            }
        )


class FaceModelError(DetectionError):
    """Face model errors"""
    pass


class FaceModelLoadError(FaceModelError):
    """Face model could not be loaded"""
    def __init__(self, model_name, reason):
        super().__init__(
            message=f"Failed to load face model '{model_name}'",
            error_code="FACE_MODEL_LOAD_FAILED",
            details={
                "model": model_name,
                "reason": str(reason),
                "suggestion": "Face detection is disabled for this session"
            }
        )


# Layer 4 / session Errors
class CaptureSessionError(ScannerError):
    """Capture session errors"""
    pass


class SessionNotStartedError(CaptureSessionError):
    """Operation requires a running capture session"""
    def __init__(self):
        super().__init__(
            message="No capture session is running",
            error_code="SESSION_NOT_STARTED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }


def log_throttled(log, level, key, message, now=None):
    """
    Log a message at most once per key every LOG_THROTTLE_SECONDS.

    Per-frame failures repeat at the sampling rate; this keeps the log readable
    while still reporting that something is wrong.

    Returns:
        bool: True if the message was emitted
    """
    now = time.monotonic() if now is None else now
    throttle_key = (log.name, level, key)
    last = _last_logged.get(throttle_key)
    if last is not None and now - last < LOG_THROTTLE_SECONDS:
        return False
    _last_logged[throttle_key] = now
    log.log(level, message)
    return True


def reset_log_throttle():
    """Forget throttle history (used between sessions and in tests)."""
    _last_logged.clear()
