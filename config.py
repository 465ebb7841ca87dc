"""
Detection Configuration
Thresholds and feature toggles for one capture session.
"""
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from error_handlers import InvalidConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionConfig:
    """Configuration for the capture-quality pipeline. Immutable per session."""
    # Readiness thresholds
    min_document_confidence: float = 0.5
    min_face_confidence: float = 0.4

    # Auto-capture timing
    auto_capture_delay_ms: float = 2000.0
    min_stable_frames: int = 2          # Ready frames before the countdown starts
    grace_period_frames: int = 5        # Consecutive bad frames that abort it

    # Sampling
    frame_rate_target: float = 8.0
    downscale: int = 2                  # 1 = native, 2 = half size, 4 = quarter size

    # Stage toggles
    enable_document_detection: bool = True
    enable_blur_detection: bool = True
    enable_glare_detection: bool = True
    enable_face_detection: bool = True

    # Motion gating on document bounds (off: edge-scan bounds jitter too much)
    enable_motion_gating: bool = False
    motion_tolerance_px: float = 5.0

    # Optional YuNet ONNX model; the Haar cascade is used when unset
    face_model_path: Optional[str] = None

    def validate(self) -> "DetectionConfig":
        """
        Check value ranges.

        Returns:
            DetectionConfig: self, for chaining

        Raises:
            InvalidConfigError: If a value is out of range
        """
        for name in ('min_document_confidence', 'min_face_confidence'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidConfigError(name, value, "must be within [0, 1]")

        if self.auto_capture_delay_ms < 0:
            raise InvalidConfigError('auto_capture_delay_ms', self.auto_capture_delay_ms,
                                     "must not be negative")
        if self.frame_rate_target <= 0:
            raise InvalidConfigError('frame_rate_target', self.frame_rate_target,
                                     "must be positive")
        if self.downscale < 1:
            raise InvalidConfigError('downscale', self.downscale, "must be at least 1")
        if self.min_stable_frames < 1:
            raise InvalidConfigError('min_stable_frames', self.min_stable_frames,
                                     "must be at least 1")
        if self.grace_period_frames < 1:
            raise InvalidConfigError('grace_period_frames', self.grace_period_frames,
                                     "must be at least 1")
        if self.motion_tolerance_px < 0:
            raise InvalidConfigError('motion_tolerance_px', self.motion_tolerance_px,
                                     "must not be negative")
        return self

    @property
    def frame_interval_ms(self) -> float:
        return 1000.0 / self.frame_rate_target

    def with_overrides(self, **overrides) -> "DetectionConfig":
        """Copy with some fields replaced, validated."""
        return replace(self, **overrides).validate()

    # -------------------- Presets --------------------

    @classmethod
    def for_document_front(cls, **overrides) -> "DetectionConfig":
        return cls().with_overrides(**overrides)

    @classmethod
    def for_document_back(cls, **overrides) -> "DetectionConfig":
        """The back of an ID carries no portrait."""
        return cls(enable_face_detection=False).with_overrides(**overrides)

    @classmethod
    def for_selfie(cls, **overrides) -> "DetectionConfig":
        return cls(enable_face_detection=True,
                   enable_glare_detection=False).with_overrides(**overrides)

    @classmethod
    def for_constrained_device(cls, **overrides) -> "DetectionConfig":
        """Lower rate, quarter-size frames, no face model (saves the model memory)."""
        return cls(frame_rate_target=3.0, downscale=4,
                   enable_face_detection=False).with_overrides(**overrides)

    @classmethod
    def from_env(cls, prefix: str = "CAPTURE_", base: Optional["DetectionConfig"] = None,
                 environ=None) -> "DetectionConfig":
        """
        Build a config from environment variables.

        Each field maps to PREFIX + upper-case field name, for example
        CAPTURE_FRAME_RATE_TARGET=5 or CAPTURE_ENABLE_FACE_DETECTION=0.
        """
        environ = os.environ if environ is None else environ
        base = base or cls()
        overrides = {}

        for f in fields(cls):
            key = prefix + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key]
            current = getattr(base, f.name)
            try:
                overrides[f.name] = _coerce(raw, current, f.name)
            except ValueError as e:
                raise InvalidConfigError(f.name, raw, str(e))
            logger.debug(f"Config override from {key}: {overrides[f.name]!r}")

        return replace(base, **overrides).validate()


def _coerce(raw: str, current, name: str):
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ('1', 'true', 'yes', 'on'):
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
        raise ValueError(f"expected a boolean, got {raw!r}")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if name == 'face_model_path':
        return raw or None
    return raw
