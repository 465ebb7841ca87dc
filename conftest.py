"""
Pytest configuration and fixtures for the ID capture tests.
"""
import pytest
import os
import sys

import cv2
import numpy as np

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(__file__))

from config import DetectionConfig  # noqa: E402
from detection_types import (  # noqa: E402
    BoundingBox,
    DetectionResult,
    PixelBuffer,
    QualityLevel,
)
from error_handlers import reset_log_throttle  # noqa: E402
from layer1_sampling import ManualTickScheduler  # noqa: E402

# Synthetic ID card placement on a 640x480 frame
CARD_LEFT, CARD_TOP, CARD_RIGHT, CARD_BOTTOM = 130, 120, 510, 360


def _noise(rng, shape, amplitude=15):
    return rng.integers(-amplitude, amplitude + 1, size=shape)


@pytest.fixture(autouse=True)
def _fresh_log_throttle():
    """Throttled log lines must not leak between tests."""
    reset_log_throttle()
    yield
    reset_log_throttle()


@pytest.fixture
def card_frame():
    """640x480 RGB frame: light card on a dark, slightly noisy background."""
    rng = np.random.default_rng(7)
    frame = 40 + _noise(rng, (480, 640, 1))
    frame = np.repeat(frame, 3, axis=2)
    card = 200 + _noise(rng, (CARD_BOTTOM - CARD_TOP, CARD_RIGHT - CARD_LEFT, 1))
    frame[CARD_TOP:CARD_BOTTOM, CARD_LEFT:CARD_RIGHT] = card
    return frame.astype(np.uint8)


@pytest.fixture
def card_buffer(card_frame):
    return PixelBuffer.from_array(card_frame)


@pytest.fixture
def gray_frame():
    """Uniformly lit, edge-free 640x480 gray field."""
    return np.full((480, 640, 3), 128, dtype=np.uint8)


@pytest.fixture
def gray_buffer(gray_frame):
    return PixelBuffer.from_array(gray_frame)


@pytest.fixture
def checkerboard():
    """High-contrast 6px checkerboard."""
    ys, xs = np.indices((480, 640))
    board = (((ys // 6) + (xs // 6)) % 2 * 255).astype(np.uint8)
    return np.dstack([board, board, board])


@pytest.fixture
def blurred_checkerboard(checkerboard):
    return cv2.blur(checkerboard, (15, 15))


@pytest.fixture
def glare_frame(card_frame):
    """Card frame with a blown-out white reflection on the card."""
    frame = card_frame.copy()
    frame[160:320, 200:400] = 255
    return frame


@pytest.fixture
def scheduler():
    return ManualTickScheduler()


@pytest.fixture
def config():
    return DetectionConfig()


@pytest.fixture
def make_result():
    """Factory for DetectionResult values fed to the controller."""
    def _make(ready=True, timestamp=0.0, **fields):
        values = dict(
            document_detected=ready,
            document_confidence=1.0 if ready else 0.0,
            document_bounds=BoundingBox(130, 120, 378, 238) if ready else None,
            is_blurry=False,
            blur_score=1.0,
            has_glare=False,
            glare_score=0.0,
            face_detected=False,
            face_confidence=0.0,
            face_bounds=None,
            is_moving=False,
            ready_for_capture=ready,
            overall_quality=QualityLevel.EXCELLENT if ready else QualityLevel.POOR,
            timestamp=timestamp,
        )
        values.update(fields)
        return DetectionResult(**values)
    return _make


@pytest.fixture
def app(card_frame):
    """Flask test application backed by a still frame and a manual scheduler."""
    from app import app as flask_app, capture_service
    from layer1_sampling import StaticFrameSource

    flask_app.config['TESTING'] = True
    saved = (capture_service.source_factory, capture_service.scheduler_factory,
                capture_service.base_config)
    capture_service.source_factory = lambda: StaticFrameSource(card_frame)
    capture_service.scheduler_factory = ManualTickScheduler
    capture_service.base_config = DetectionConfig(enable_face_detection=False)
    capture_service.last_capture = None

    yield flask_app

    capture_service.stop()
    (capture_service.source_factory, capture_service.scheduler_factory,
     capture_service.base_config) = saved
    capture_service.last_capture = None


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
