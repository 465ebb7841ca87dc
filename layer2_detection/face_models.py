"""
Layer 2 — Concrete Face Models
OpenCV-backed implementations of the FaceModel protocol.

- HaarCascadeFaceModel: ships with opencv-python, no download needed
- YuNetFaceModel: cv2.FaceDetectorYN with an ONNX model file, gives landmarks
"""
import logging
import math
import os
from typing import List

import cv2
import numpy as np

from config import DetectionConfig
from detection_types import BoundingBox, FaceLandmark, LandmarkKind, PixelBuffer, Point
from .face import FaceCandidate, FaceModelSession, NullFaceModel

logger = logging.getLogger(__name__)

HAAR_CASCADE_FILE = 'haarcascade_frontalface_default.xml'
# Reject-level weight at which confidence reaches ~0.63
HAAR_WEIGHT_SCALE = 4.0

YUNET_SCORE_THRESHOLD = 0.3
YUNET_NMS_THRESHOLD = 0.3
YUNET_TOP_K = 50


def _to_gray(buffer: PixelBuffer) -> np.ndarray:
    code = cv2.COLOR_RGBA2GRAY if buffer.channels == 4 else cv2.COLOR_RGB2GRAY
    return cv2.cvtColor(buffer.data, code)


def _to_bgr(buffer: PixelBuffer) -> np.ndarray:
    code = cv2.COLOR_RGBA2BGR if buffer.channels == 4 else cv2.COLOR_RGB2BGR
    return cv2.cvtColor(buffer.data, code)


def level_weight_to_confidence(weight: float) -> float:
    """Map a cascade level weight (unbounded, >0 for accepted windows) into 0..1."""
    return 1.0 - math.exp(-max(float(weight), 0.0) / HAAR_WEIGHT_SCALE)


class HaarCascadeFaceModel:
    """Frontal-face Haar cascade. No landmarks."""

    name = "haar-cascade"

    def __init__(self, cascade_path: str = None, scale_factor: float = 1.1,
                 min_neighbors: int = 5, min_size=(24, 24)):
        cascade_path = cascade_path or os.path.join(cv2.data.haarcascades, HAAR_CASCADE_FILE)
        self.classifier = cv2.CascadeClassifier(cascade_path)
        if self.classifier.empty():
            raise IOError(f"Could not load Haar cascade from {cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

    def detect(self, buffer: PixelBuffer) -> List[FaceCandidate]:
        gray = _to_gray(buffer)
        rects, _levels, weights = self.classifier.detectMultiScale3(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=self.min_size,
            outputRejectLevels=True
        )
        candidates = []
        for (x, y, w, h), weight in zip(rects, np.ravel(weights)):
            candidates.append(FaceCandidate(
                bounds=BoundingBox(float(x), float(y), float(w), float(h)),
                confidence=level_weight_to_confidence(weight)
            ))
        return candidates


# YuNet row layout: x, y, w, h, 5 landmark (x, y) pairs, score
_YUNET_SCORE_INDEX = 14


class YuNetFaceModel:
    """OpenCV YuNet detector (ONNX)."""

    name = "yunet"

    def __init__(self, model_path: str, score_threshold: float = YUNET_SCORE_THRESHOLD,
                 nms_threshold: float = YUNET_NMS_THRESHOLD, top_k: int = YUNET_TOP_K):
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"YuNet model not found: {model_path}")
        self.model_path = model_path
        self.detector = cv2.FaceDetectorYN.create(
            model_path,
            "",
            (320, 320),
            score_threshold=float(score_threshold),
            nms_threshold=float(nms_threshold),
            top_k=int(top_k)
        )
        self._input_size = (320, 320)

    def detect(self, buffer: PixelBuffer) -> List[FaceCandidate]:
        size = (buffer.width, buffer.height)
        if size != self._input_size:
            self.detector.setInputSize(size)
            self._input_size = size

        _, faces = self.detector.detect(_to_bgr(buffer))
        if faces is None:
            return []

        candidates = []
        for row in faces:
            x, y, w, h = (float(v) for v in row[:4])
            candidates.append(FaceCandidate(
                bounds=BoundingBox(x, y, max(w, 0.0), max(h, 0.0)),
                confidence=float(row[_YUNET_SCORE_INDEX]),
                landmarks=self._landmarks(row)
            ))
        return candidates

    @staticmethod
    def _landmarks(row) -> List[FaceLandmark]:
        pts = [Point(float(row[i]), float(row[i + 1])) for i in range(4, 14, 2)]
        right_eye, left_eye, nose, mouth_right, mouth_left = pts
        mouth = Point((mouth_right.x + mouth_left.x) / 2, (mouth_right.y + mouth_left.y) / 2)
        return [
            FaceLandmark(LandmarkKind.RIGHT_EYE, right_eye),
            FaceLandmark(LandmarkKind.LEFT_EYE, left_eye),
            FaceLandmark(LandmarkKind.NOSE, nose),
            FaceLandmark(LandmarkKind.MOUTH, mouth),
        ]


def create_face_model_session(config: DetectionConfig) -> FaceModelSession:
    """
    Session for the configured face model. Nothing is loaded yet.

    YuNet when a model path is set, the bundled Haar cascade otherwise,
    and the null model when face detection is disabled.
    """
    if not config.enable_face_detection:
        return FaceModelSession(NullFaceModel, name=NullFaceModel.name)

    if config.face_model_path:
        path = config.face_model_path
        return FaceModelSession(lambda: YuNetFaceModel(path), name=YuNetFaceModel.name)

    return FaceModelSession(HaarCascadeFaceModel, name=HaarCascadeFaceModel.name)
