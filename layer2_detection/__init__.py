"""
Layer 2 — Detection
Per-frame detection stages: document edges, sharpness, glare and the
optional face presence check. Every stage reads the same immutable buffer.
"""
from .document import detect_document, is_aspect_ratio_valid
from .sharpness import detect_blur, blur_status
from .glare import detect_glare, glare_status
from .face import (
    FaceCandidate,
    FaceModel,
    FaceModelSession,
    FacePresenceDetector,
    LoadState,
    NullFaceModel,
)
from .face_models import HaarCascadeFaceModel, YuNetFaceModel, create_face_model_session

__all__ = [
    'detect_document',
    'is_aspect_ratio_valid',
    'detect_blur',
    'blur_status',
    'detect_glare',
    'glare_status',
    'FaceCandidate',
    'FaceModel',
    'FaceModelSession',
    'FacePresenceDetector',
    'LoadState',
    'NullFaceModel',
    'HaarCascadeFaceModel',
    'YuNetFaceModel',
    'create_face_model_session'
]
