"""
Layer 2 — Face Presence Detector
Wraps a pluggable face model and picks the face that looks like an ID portrait.

The model itself is a black box behind the FaceModel protocol. Loading is
owned by FaceModelSession so a slow or failed load never stalls the other
stages: until the session is READY the detector reports no face.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

from detection_types import BoundingBox, FaceDetectionResult, FaceLandmark, PixelBuffer
from error_handlers import FaceModelLoadError, log_throttled

logger = logging.getLogger(__name__)

MIN_FACE_AREA_RATIO = 0.02
MAX_FACE_AREA_RATIO = 0.25
DEFAULT_MAX_FACES = 5


@dataclass(frozen=True)
class FaceCandidate:
    """One raw face returned by a model, in buffer pixels."""
    bounds: BoundingBox
    confidence: float
    landmarks: Optional[List[FaceLandmark]] = None


class FaceModel(Protocol):
    """Anything that turns an RGB buffer into face candidates."""

    name: str

    def detect(self, buffer: PixelBuffer) -> List[FaceCandidate]:
        ...


class NullFaceModel:
    """Face detection switched off: never sees a face."""

    name = "null"

    def detect(self, buffer: PixelBuffer) -> List[FaceCandidate]:
        return []


class LoadState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class FaceModelSession:
    """
    Owns the face model's lifecycle for one capture session.

    A failed load is permanent until dispose(); callers just see is_ready False.
    """

    def __init__(self, factory: Callable[[], FaceModel], name: str = "face-model"):
        """
        Args:
            factory: Builds the model; may be slow (file I/O, network)
            name: Model name used in logs and errors
        """
        self._factory = factory
        self.name = name
        self._state = LoadState.UNINITIALIZED
        self._model: Optional[FaceModel] = None
        self._error: Optional[FaceModelLoadError] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def ready(cls, model: FaceModel) -> "FaceModelSession":
        """Session around an already-built model."""
        session = cls(lambda: model, name=getattr(model, 'name', type(model).__name__))
        session.load()
        return session

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is LoadState.READY

    @property
    def model(self) -> Optional[FaceModel]:
        """The loaded model, or None while not READY."""
        return self._model if self.is_ready else None

    @property
    def error(self) -> Optional[FaceModelLoadError]:
        return self._error

    def load(self) -> bool:
        """
        Load the model on the calling thread.

        Returns:
            bool: True if the model is ready
        """
        with self._lock:
            if self._state in (LoadState.READY, LoadState.FAILED, LoadState.LOADING):
                return self._state is LoadState.READY
            self._state = LoadState.LOADING

        logger.info(f"Loading face model '{self.name}'")
        try:
            model = self._factory()
        except Exception as e:
            with self._lock:
                self._error = FaceModelLoadError(self.name, e)
                self._state = LoadState.FAILED
            logger.warning(f"Face model '{self.name}' failed to load, face detection disabled: {e}")
            return False

        with self._lock:
            if self._state is not LoadState.LOADING:
                # Disposed while loading
                return False
            self._model = model
            self._state = LoadState.READY
        logger.info(f"Face model '{self.name}' ready")
        return True

    def load_async(self) -> threading.Thread:
        """Load on a background thread; the pipeline keeps running meanwhile."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.load, name=f"load-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until an async load finishes (tests and warm-up)."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self.is_ready

    def dispose(self):
        """Drop the model and forget any failure."""
        with self._lock:
            model = self._model
            self._model = None
            self._error = None
            self._state = LoadState.UNINITIALIZED
        close = getattr(model, 'close', None)
        if callable(close):
            close()
        logger.debug(f"Face model '{self.name}' disposed")


class FacePresenceDetector:
    """Selects the face on the document from the model's candidates."""

    def __init__(
        self,
        session: FaceModelSession,
        min_confidence: float = 0.4,
        min_area_ratio: float = MIN_FACE_AREA_RATIO,
        max_area_ratio: float = MAX_FACE_AREA_RATIO
    ):
        self.session = session
        self.min_confidence = min_confidence
        self.min_area_ratio = min_area_ratio
        self.max_area_ratio = max_area_ratio

    def _candidates(self, buffer: PixelBuffer) -> List[FaceCandidate]:
        model = self.session.model
        if model is None:
            return []
        try:
            return list(model.detect(buffer))
        except Exception as e:
            log_throttled(logger, logging.WARNING, "face-model",
                          f"Face model '{self.session.name}' failed on frame: {e}")
            return []

    def _in_area_band(self, candidate: FaceCandidate, frame_area: int) -> bool:
        ratio = candidate.bounds.area / frame_area
        return self.min_area_ratio <= ratio <= self.max_area_ratio

    def detect(self, buffer: PixelBuffer) -> FaceDetectionResult:
        """
        Best face for an ID photo.

        Candidates must pass the confidence floor and the 2%..25% area band.
        When none does, the strongest candidate is returned as a weak match.
        """
        candidates = self._candidates(buffer)
        if not candidates:
            return FaceDetectionResult.empty()

        frame_area = buffer.area
        qualifying = [
            c for c in candidates
            if c.confidence >= self.min_confidence and self._in_area_band(c, frame_area)
        ]

        weak = not qualifying
        pool = candidates if weak else qualifying
        best = max(pool, key=lambda c: c.confidence)

        return FaceDetectionResult(
            detected=True,
            confidence=best.confidence,
            bounds=best.bounds,
            landmarks=best.landmarks,
            weak_match=weak
        )

    def detect_all(self, buffer: PixelBuffer, max_faces: int = DEFAULT_MAX_FACES) -> List[FaceDetectionResult]:
        """Every candidate above the confidence floor, strongest first."""
        candidates = [c for c in self._candidates(buffer) if c.confidence >= self.min_confidence]
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return [
            FaceDetectionResult(detected=True, confidence=c.confidence,
                                bounds=c.bounds, landmarks=c.landmarks)
            for c in candidates[:max_faces]
        ]
