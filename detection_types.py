"""
Shared Types
Value objects passed between the sampling, detection, quality and
auto-capture layers.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class PixelBuffer:
    """One sampled frame: row-major RGB(A) uint8 pixels, shape (height, width, channels)."""
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        if self.data.ndim != 3 or self.data.shape[2] not in (3, 4):
            raise ValueError(f"Expected (H, W, 3|4) pixel data, got shape {self.data.shape}")
        if self.data.shape[0] != self.height or self.data.shape[1] != self.width:
            raise ValueError(
                f"Pixel data shape {self.data.shape[:2]} does not match {self.height}x{self.width}"
            )
        if self.data.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixel data, got {self.data.dtype}")

    @classmethod
    def from_array(cls, data: np.ndarray) -> "PixelBuffer":
        """Wrap an RGB(A) array as a read-only buffer."""
        view = data.view()
        view.flags.writeable = False
        return cls(width=view.shape[1], height=view.shape[0], data=view)

    @property
    def channels(self) -> int:
        return self.data.shape[2]

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in buffer-pixel coordinates."""
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Bounding box dimensions must be non-negative: {self.width}x{self.height}")

    @property
    def area(self) -> float:
        return self.width * self.height

    def corners(self) -> List[Point]:
        """Top-left, top-right, bottom-right, bottom-left."""
        return [
            Point(self.x, self.y),
            Point(self.x + self.width, self.y),
            Point(self.x + self.width, self.y + self.height),
            Point(self.x, self.y + self.height),
        ]

    def to_dict(self) -> Dict:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}


class LandmarkKind(Enum):
    RIGHT_EYE = "rightEye"
    LEFT_EYE = "leftEye"
    NOSE = "nose"
    MOUTH = "mouth"


@dataclass(frozen=True)
class FaceLandmark:
    kind: LandmarkKind
    position: Point


class QualityLevel(Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentDetectionResult:
    detected: bool
    confidence: float
    bounds: Optional[BoundingBox] = None
    corners: Optional[List[Point]] = None
    aspect_ratio: Optional[float] = None

    @classmethod
    def empty(cls) -> "DocumentDetectionResult":
        return cls(detected=False, confidence=0.0)

    @classmethod
    def disabled(cls) -> "DocumentDetectionResult":
        """Stand-in when document detection is switched off: always passes."""
        return cls(detected=True, confidence=1.0)


@dataclass(frozen=True)
class BlurDetectionResult:
    is_blurry: bool
    score: float      # 0..1, 1 = sharp
    variance: float   # Laplacian variance, diagnostic only

    @classmethod
    def empty(cls) -> "BlurDetectionResult":
        return cls(is_blurry=False, score=1.0, variance=0.0)


@dataclass(frozen=True)
class GlareDetectionResult:
    has_glare: bool
    score: float      # 0..1, 1 = severe
    hotspot_count: int
    brightness_histogram: List[int] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "GlareDetectionResult":
        return cls(has_glare=False, score=0.0, hotspot_count=0)


@dataclass(frozen=True)
class FaceDetectionResult:
    detected: bool
    confidence: float
    bounds: Optional[BoundingBox] = None
    landmarks: Optional[List[FaceLandmark]] = None
    weak_match: bool = False  # best candidate failed the confidence/size checks

    @classmethod
    def empty(cls) -> "FaceDetectionResult":
        return cls(detected=False, confidence=0.0)


# ---------------------------------------------------------------------------
# Per-frame verdict and auto-capture snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetectionResult:
    """
    Fused per-frame verdict.

    ready_for_capture and overall_quality are derived by the quality
    aggregator from the other fields and the active configuration.
    """
    document_detected: bool
    document_confidence: float
    document_bounds: Optional[BoundingBox]
    is_blurry: bool
    blur_score: float
    has_glare: bool
    glare_score: float
    face_detected: bool
    face_confidence: float
    face_bounds: Optional[BoundingBox]
    is_moving: bool
    ready_for_capture: bool
    overall_quality: QualityLevel
    timestamp: float

    def to_dict(self) -> Dict:
        """Status payload for the UI layer."""
        return {
            'documentDetected': self.document_detected,
            'documentConfidence': round(self.document_confidence, 4),
            'documentBounds': self.document_bounds.to_dict() if self.document_bounds else None,
            'isBlurry': self.is_blurry,
            'blurScore': round(self.blur_score, 4),
            'hasGlare': self.has_glare,
            'glareScore': round(self.glare_score, 4),
            'faceDetected': self.face_detected,
            'faceConfidence': round(self.face_confidence, 4),
            'faceBounds': self.face_bounds.to_dict() if self.face_bounds else None,
            'isMoving': self.is_moving,
            'readyForCapture': self.ready_for_capture,
            'overallQuality': self.overall_quality.value,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class AutoCaptureState:
    is_counting_down: bool
    countdown_progress: float
    remaining_ms: float
    should_capture: bool

    @classmethod
    def idle(cls, delay_ms: float) -> "AutoCaptureState":
        return cls(is_counting_down=False, countdown_progress=0.0,
                   remaining_ms=delay_ms, should_capture=False)

    def to_dict(self) -> Dict:
        return {
            'isCountingDown': self.is_counting_down,
            'countdownProgress': round(self.countdown_progress, 4),
            'remainingMs': round(self.remaining_ms, 1),
            'shouldCapture': self.should_capture,
        }


@dataclass(frozen=True)
class FrameData:
    """A sampled buffer plus the scheduler time (ms) it was taken at."""
    buffer: PixelBuffer
    timestamp: float
