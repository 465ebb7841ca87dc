"""
Tests for Layer 2: document, sharpness, glare and face presence detection.
"""
import threading

import numpy as np
import pytest

from config import DetectionConfig
from detection_types import BoundingBox, LandmarkKind, PixelBuffer
from layer2_detection import (
    FaceCandidate,
    FaceModelSession,
    FacePresenceDetector,
    HaarCascadeFaceModel,
    LoadState,
    NullFaceModel,
    YuNetFaceModel,
    blur_status,
    create_face_model_session,
    detect_blur,
    detect_document,
    detect_glare,
    glare_status,
    is_aspect_ratio_valid,
)
from layer2_detection.document import longest_run
from layer2_detection.face_models import level_weight_to_confidence
from layer2_detection.sharpness import GRADIENT_BLUR_THRESHOLD, gradient_to_score


class FakeFaceModel:
    """Face model returning canned candidates."""

    name = "fake"

    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error
        self.calls = 0

    def detect(self, buffer):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.candidates)


def face(x, y, size, confidence):
    return FaceCandidate(bounds=BoundingBox(x, y, size, size), confidence=confidence)


class TestAspectRatio:
    """Test the ID-1 aspect ratio check."""

    def test_landscape_card_accepted(self):
        """Test the nominal ID-1 ratio passes."""
        assert is_aspect_ratio_valid(1.586)

    def test_portrait_card_accepted(self):
        """Test the rotated card passes."""
        assert is_aspect_ratio_valid(0.630)

    def test_square_rejected(self):
        """Test a square is not an ID card."""
        assert not is_aspect_ratio_valid(1.0)

    def test_tolerance_bounds(self):
        """Test the +/-30% band edges."""
        assert is_aspect_ratio_valid(1.586 * 1.29)
        assert not is_aspect_ratio_valid(1.586 * 1.35)


class TestLongestRun:
    """Test the edge-run helper."""

    def test_counts_consecutive_only(self):
        mask = np.array([1, 1, 0, 1, 1, 1, 0, 1], dtype=bool)
        assert longest_run(mask) == 3

    def test_empty_mask(self):
        assert longest_run(np.zeros(10, dtype=bool)) == 0


class TestDocumentDetector:
    """Test scan-line document detection."""

    def test_detects_card(self, card_buffer):
        """Test a light card on a dark background is found with full confidence."""
        result = detect_document(card_buffer)

        assert result.detected
        assert result.confidence == pytest.approx(1.0)
        assert result.bounds == BoundingBox(130, 120, 378, 238)
        assert result.aspect_ratio == pytest.approx(378 / 238)

    def test_corners_clockwise_from_top_left(self, card_buffer):
        """Test corners are TL, TR, BR, BL."""
        corners = detect_document(card_buffer).corners

        assert [(p.x, p.y) for p in corners] == [(130, 120), (508, 120), (508, 358), (130, 358)]

    def test_uniform_gray_not_detected(self, gray_buffer):
        """Test an edge-free field yields the empty result."""
        result = detect_document(gray_buffer)

        assert not result.detected
        assert result.confidence == 0
        assert result.bounds is None

    def test_scattered_edges_are_not_a_side(self):
        """Test isolated edge samples never add up to a boundary."""
        frame = np.full((480, 640, 3), 60, dtype=np.uint8)
        # Isolated bright dots: many edge samples, never two in a row
        frame[::4, ::8] = 220
        result = detect_document(PixelBuffer.from_array(frame))

        assert not result.detected

    def test_oversized_document_not_detected(self):
        """Test a card filling almost the whole frame fails the coverage band."""
        frame = np.full((480, 640, 3), 30, dtype=np.uint8)
        frame[12:470, 12:630] = 220
        result = detect_document(PixelBuffer.from_array(frame))

        assert not result.detected
        assert result.bounds is None
        assert result.confidence == pytest.approx(0.7)

    def test_square_document_loses_aspect_credit(self):
        """Test a square target is detected with reduced confidence."""
        frame = np.full((480, 640, 3), 30, dtype=np.uint8)
        frame[100:380, 180:460] = 220
        result = detect_document(PixelBuffer.from_array(frame))

        assert result.detected
        assert result.confidence == pytest.approx(0.7)

    def test_tiny_frame(self):
        """Test frames too small to scan give the empty result."""
        result = detect_document(PixelBuffer.from_array(np.zeros((12, 12, 3), dtype=np.uint8)))
        assert not result.detected


class TestSharpnessAnalyzer:
    """Test blur scoring."""

    def test_checkerboard_sharper_than_blurred_copy(self, checkerboard, blurred_checkerboard):
        """Test box-blurring strictly lowers the score."""
        sharp = detect_blur(PixelBuffer.from_array(checkerboard))
        blurred = detect_blur(PixelBuffer.from_array(blurred_checkerboard))

        assert sharp.score > blurred.score
        assert sharp.variance > blurred.variance
        assert not sharp.is_blurry

    def test_uniform_field_is_blurry(self, gray_buffer):
        """Test a featureless frame scores zero and is blurry."""
        result = detect_blur(gray_buffer)

        assert result.is_blurry
        assert result.score == 0
        assert result.variance == 0

    def test_noisy_card_is_sharp_enough(self, card_buffer):
        """Test the textured card frame is not blurry."""
        assert not detect_blur(card_buffer).is_blurry

    def test_score_mapping(self):
        """Test the piecewise gradient-to-score mapping."""
        assert gradient_to_score(0) == 0
        assert gradient_to_score(GRADIENT_BLUR_THRESHOLD) == pytest.approx(0.3)
        assert gradient_to_score(15.0) == pytest.approx(0.65)
        assert gradient_to_score(100.0) == 1.0

    def test_score_is_monotonic(self):
        """Test more gradient never lowers the score."""
        scores = [gradient_to_score(g) for g in np.linspace(0, 40, 81)]
        assert all(b >= a for a, b in zip(scores, scores[1:]))

    def test_blur_status_labels(self, gray_buffer, checkerboard):
        """Test human-readable labels at both ends."""
        assert blur_status(detect_blur(gray_buffer)) == "Very blurry"
        assert blur_status(detect_blur(PixelBuffer.from_array(checkerboard))) == "Sharp"


class TestGlareAnalyzer:
    """Test glare scoring."""

    def test_no_glare_on_matte_card(self, card_buffer):
        """Test a card without reflections has no glare."""
        result = detect_glare(card_buffer)

        assert not result.has_glare
        assert result.score == 0
        assert result.hotspot_count == 0

    def test_white_reflection_is_glare(self, glare_frame):
        """Test a blown-out white patch trips the glare check."""
        result = detect_glare(PixelBuffer.from_array(glare_frame))

        assert result.has_glare
        assert result.score == 1.0
        assert result.hotspot_count > 0
        assert glare_status(result) == "Severe glare detected"

    def test_bright_coloured_area_is_not_glare(self):
        """Test saturated bright pixels are content, not reflection."""
        frame = np.zeros((100, 100, 3), dtype=np.uint8)
        frame[...] = (255, 255, 225)  # cream: luminance ~252, saturation ~0.12
        result = detect_glare(PixelBuffer.from_array(frame))

        assert not result.has_glare

    def test_histogram_counts_sampled_pixels(self, gray_buffer):
        """Test the 256-bin histogram covers one pixel in four."""
        result = detect_glare(gray_buffer)

        assert len(result.brightness_histogram) == 256
        assert sum(result.brightness_histogram) == 320 * 240
        assert result.brightness_histogram[128] == 320 * 240

    def test_small_hotspot_below_thresholds(self):
        """Test a few glare pixels stay below the area threshold."""
        frame = np.full((200, 200, 3), 100, dtype=np.uint8)
        frame[:4, :4] = 255  # 4 sampled pixels of 10000
        result = detect_glare(PixelBuffer.from_array(frame))

        assert not result.has_glare
        assert result.score == pytest.approx(0.004)


class TestFaceModelSession:
    """Test face model load states."""

    def test_load_success(self):
        """Test a successful load makes the model available."""
        model = FakeFaceModel()
        session = FaceModelSession(lambda: model, name="fake")

        assert session.state is LoadState.UNINITIALIZED
        assert session.model is None
        assert session.load()
        assert session.is_ready
        assert session.model is model

    def test_failed_load_is_permanent(self):
        """Test a failed load is recorded and never retried."""
        attempts = []

        def factory():
            attempts.append(1)
            raise IOError("model file missing")

        session = FaceModelSession(factory, name="broken")
        assert not session.load()
        assert not session.load()

        assert session.state is LoadState.FAILED
        assert session.error.error_code == "FACE_MODEL_LOAD_FAILED"
        assert len(attempts) == 1

    def test_async_load_does_not_block(self):
        """Test load_async returns while the factory is still running."""
        release = threading.Event()

        def slow_factory():
            release.wait(5)
            return FakeFaceModel()

        session = FaceModelSession(slow_factory, name="slow")
        session.load_async()

        assert session.state is not LoadState.READY

        release.set()
        assert session.wait(5)

    def test_dispose_resets(self):
        """Test dispose drops the model."""
        session = FaceModelSession.ready(FakeFaceModel())
        session.dispose()

        assert session.state is LoadState.UNINITIALIZED
        assert session.model is None


class TestFacePresenceDetector:
    """Test face selection rules."""

    @pytest.fixture
    def buffer(self):
        return PixelBuffer.from_array(np.zeros((100, 100, 3), dtype=np.uint8))

    def detector(self, *candidates, error=None):
        session = FaceModelSession.ready(FakeFaceModel(list(candidates), error=error))
        return FacePresenceDetector(session, min_confidence=0.5)

    def test_picks_best_candidate_in_area_band(self, buffer):
        """Test the highest-confidence face with a plausible size wins."""
        detector = self.detector(
            face(0, 0, 60, 0.99),   # 36% of frame: too large
            face(10, 10, 20, 0.7),  # 4%
            face(50, 50, 25, 0.8),  # 6.25%
        )
        result = detector.detect(buffer)

        assert result.detected
        assert result.confidence == 0.8
        assert not result.weak_match

    def test_falls_back_to_weak_match(self, buffer):
        """Test the strongest candidate is reported when none qualifies."""
        detector = self.detector(face(0, 0, 60, 0.99), face(0, 0, 5, 0.3))
        result = detector.detect(buffer)

        assert result.detected
        assert result.weak_match
        assert result.confidence == 0.99

    def test_low_confidence_fails_floor(self, buffer):
        """Test a right-sized face under the floor is only a weak match."""
        result = self.detector(face(10, 10, 20, 0.2)).detect(buffer)

        assert result.weak_match

    def test_no_candidates(self, buffer):
        """Test no faces gives the empty result."""
        result = self.detector().detect(buffer)

        assert not result.detected
        assert result.confidence == 0

    def test_model_error_gives_empty_result(self, buffer):
        """Test a raising model never escapes the detector."""
        result = self.detector(error=RuntimeError("inference failed")).detect(buffer)
        assert not result.detected

    def test_unready_session_gives_empty_result(self, buffer):
        """Test nothing is detected before the model loads."""
        model = FakeFaceModel([face(10, 10, 20, 0.9)])
        session = FaceModelSession(lambda: model)
        result = FacePresenceDetector(session).detect(buffer)

        assert not result.detected
        assert model.calls == 0

    def test_detect_all(self, buffer):
        """Test detect_all lists faces above the floor, strongest first, capped."""
        detector = self.detector(*[face(i, i, 10, 0.5 + i / 100) for i in range(8)],
                                 face(0, 0, 10, 0.1))
        results = detector.detect_all(buffer, max_faces=5)

        assert len(results) == 5
        assert results[0].confidence == pytest.approx(0.57)
        assert all(r.confidence >= 0.5 for r in results)

    def test_null_model(self, buffer):
        """Test the null model never sees a face."""
        assert NullFaceModel().detect(buffer) == []


class TestFaceModels:
    """Test concrete model selection and helpers."""

    def test_session_for_disabled_face_detection(self):
        """Test the null model is used when face detection is off."""
        session = create_face_model_session(DetectionConfig(enable_face_detection=False))
        session.load()
        assert isinstance(session.model, NullFaceModel)

    def test_session_prefers_yunet_when_path_set(self):
        """Test a configured model path selects YuNet."""
        session = create_face_model_session(DetectionConfig(face_model_path="/nonexistent/yunet.onnx"))
        assert session.name == YuNetFaceModel.name

        # Missing file: the load fails and face detection stays off
        assert not session.load()
        assert session.state is LoadState.FAILED

    def test_session_defaults_to_haar(self):
        """Test the bundled cascade is the default model."""
        session = create_face_model_session(DetectionConfig())
        assert session.name == HaarCascadeFaceModel.name

    def test_haar_cascade_on_blank_frame(self, gray_buffer):
        """Test the cascade loads and finds nothing on a blank frame."""
        model = HaarCascadeFaceModel()
        assert model.detect(gray_buffer) == []

    def test_level_weight_mapping(self):
        """Test cascade weights map into 0..1, increasing."""
        assert level_weight_to_confidence(-3) == 0
        assert 0 < level_weight_to_confidence(2) < level_weight_to_confidence(6) < 1

    def test_yunet_landmarks_cover_every_kind(self):
        """Test the five YuNet points map onto eyes, nose and a merged mouth."""
        row = np.array([0, 0, 40, 40, 10, 20, 30, 20, 20, 30, 12, 40, 28, 40, 0.9])
        landmarks = YuNetFaceModel._landmarks(row)

        assert [lm.kind for lm in landmarks] == list(LandmarkKind)
        mouth = landmarks[-1].position
        assert (mouth.x, mouth.y) == (20, 40)
