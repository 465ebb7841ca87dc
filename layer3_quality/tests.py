"""
Tests for Layer 3: motion filter, readiness, quality and frame analysis.
"""
import pytest

from config import DetectionConfig
from detection_types import (
    BlurDetectionResult,
    BoundingBox,
    DocumentDetectionResult,
    FaceDetectionResult,
    GlareDetectionResult,
    QualityLevel,
)
from layer2_detection import FaceCandidate, FaceModelSession
from layer3_quality import (
    BoundsJitterFilter,
    FrameAnalyzer,
    aggregate,
    calculate_overall_quality,
    is_ready_for_capture,
    quality_score,
    status_message,
)
from layer3_quality.status import (
    ADJUSTING_MESSAGE,
    BLURRY_MESSAGE,
    GLARE_MESSAGE,
    POSITION_MESSAGE,
    READY_MESSAGE,
    STEADY_MESSAGE,
)

BOUNDS = BoundingBox(130, 120, 378, 238)


def document(detected=True, confidence=1.0, bounds=BOUNDS):
    return DocumentDetectionResult(detected=detected, confidence=confidence,
                                   bounds=bounds if detected else None)


def blur(is_blurry=False, score=0.9):
    return BlurDetectionResult(is_blurry=is_blurry, score=score, variance=100.0)


def glare(has_glare=False, score=0.0):
    return GlareDetectionResult(has_glare=has_glare, score=score, hotspot_count=0)


NO_FACE = FaceDetectionResult.empty()


class TestBoundsJitterFilter:
    """Test document motion detection."""

    def test_small_jitter_is_not_motion(self):
        """Test deltas within the tolerance are noise."""
        moved = BoundingBox(133, 118, 380, 240)
        assert not BoundsJitterFilter(5).is_moving(moved, BOUNDS)

    def test_large_shift_is_motion(self):
        """Test a shift beyond the tolerance is motion."""
        moved = BoundingBox(140, 120, 378, 238)
        assert BoundsJitterFilter(5).is_moving(moved, BOUNDS)

    def test_first_appearance_is_motion(self):
        """Test a document with no previous bounds counts as moving."""
        assert BoundsJitterFilter().is_moving(BOUNDS, None)

    def test_no_document_is_not_motion(self):
        assert not BoundsJitterFilter().is_moving(None, BOUNDS)

    def test_disabled_filter_never_reports_motion(self):
        moved = BoundingBox(300, 0, 10, 10)
        assert not BoundsJitterFilter(enabled=False).is_moving(moved, BOUNDS)


class TestReadiness:
    """Test the capture readiness rule."""

    def test_all_checks_pass(self, config):
        assert is_ready_for_capture(document(), blur(), glare(), False, config)

    def test_no_document(self, config):
        assert not is_ready_for_capture(document(detected=False), blur(), glare(), False, config)

    def test_low_document_confidence(self, config):
        """Test confidence under the configured minimum blocks capture."""
        assert not is_ready_for_capture(document(confidence=0.4), blur(), glare(), False, config)

    def test_blurry(self, config):
        assert not is_ready_for_capture(document(), blur(is_blurry=True), glare(), False, config)

    def test_glare(self, config):
        assert not is_ready_for_capture(document(), blur(), glare(has_glare=True), False, config)

    def test_moving(self, config):
        assert not is_ready_for_capture(document(), blur(), glare(), True, config)

    def test_disabled_stages_do_not_gate(self):
        """Test blur and glare are ignored when their stage is off."""
        config = DetectionConfig(enable_blur_detection=False, enable_glare_detection=False)
        assert is_ready_for_capture(document(), blur(is_blurry=True), glare(has_glare=True),
                                    False, config)

    def test_face_never_gates(self, config):
        """Test a missing face does not block capture."""
        result = aggregate(document(), blur(), glare(), NO_FACE, BOUNDS, config)
        assert not result.face_detected
        assert result.ready_for_capture


class TestQuality:
    """Test quality scoring."""

    def test_perfect_frame_is_excellent(self, config):
        face = FaceDetectionResult(detected=True, confidence=1.0)
        level = calculate_overall_quality(document(), blur(score=1.0), glare(), face, config)
        assert level is QualityLevel.EXCELLENT

    def test_empty_frame_is_poor(self, config):
        """Test nothing found scores only the glare-free share."""
        score = quality_score(document(detected=False, confidence=0.0),
                              blur(is_blurry=True, score=0.0), glare(), NO_FACE, config)
        assert score == pytest.approx(2 / 8)
        assert calculate_overall_quality(document(detected=False, confidence=0.0),
                                         blur(is_blurry=True, score=0.0), glare(),
                                         NO_FACE, config) is QualityLevel.POOR

    def test_disabled_stages_leave_the_denominator(self):
        """Test a disabled face stage does not cap the score."""
        config = DetectionConfig(enable_face_detection=False)
        score = quality_score(document(), blur(score=1.0), glare(), NO_FACE, config)
        assert score == pytest.approx(1.0)

    def test_better_inputs_never_lower_quality(self, config):
        """Test improving any one stage never lowers the score."""
        base = quality_score(document(confidence=0.6), blur(score=0.5), glare(score=0.01),
                             NO_FACE, config)

        assert quality_score(document(confidence=0.9), blur(score=0.5), glare(score=0.01),
                             NO_FACE, config) >= base
        assert quality_score(document(confidence=0.6), blur(score=0.8), glare(score=0.01),
                             NO_FACE, config) >= base
        assert quality_score(document(confidence=0.6), blur(score=0.5), glare(score=0.0),
                             NO_FACE, config) >= base
        assert quality_score(document(confidence=0.6), blur(score=0.5), glare(score=0.01),
                             FaceDetectionResult(detected=True, confidence=0.7), config) >= base

    @pytest.mark.parametrize("score,level", [
        (0.39, QualityLevel.POOR),
        (0.4, QualityLevel.FAIR),
        (0.65, QualityLevel.GOOD),
        (0.85, QualityLevel.EXCELLENT),
    ])
    def test_level_thresholds(self, score, level):
        from layer3_quality.aggregator import quality_level
        assert quality_level(score) is level


class TestAggregate:
    """Test verdict assembly."""

    def test_copies_stage_fields(self, config):
        result = aggregate(document(), blur(score=0.7), glare(score=0.01), NO_FACE, None,
                           config, timestamp=1234.0)

        assert result.document_bounds == BOUNDS
        assert result.blur_score == 0.7
        assert result.glare_score == 0.01
        assert result.timestamp == 1234.0

    def test_motion_gating_from_config(self):
        """Test motion gating blocks a freshly appeared document when enabled."""
        config = DetectionConfig(enable_motion_gating=True)
        result = aggregate(document(), blur(), glare(), NO_FACE, None, config)

        assert result.is_moving
        assert not result.ready_for_capture

    def test_motion_gating_off_by_default(self, config):
        moved = BoundingBox(0, 0, 50, 50)
        result = aggregate(document(bounds=moved), blur(), glare(), NO_FACE, BOUNDS, config)
        assert not result.is_moving


class TestFrameAnalyzer:
    """Test stage orchestration."""

    def test_card_frame_is_ready(self, card_buffer, config):
        result = FrameAnalyzer(config).analyze(card_buffer, timestamp=10.0)

        assert result.document_detected
        assert result.ready_for_capture
        assert result.overall_quality in (QualityLevel.GOOD, QualityLevel.EXCELLENT)
        assert result.timestamp == 10.0

    def test_gray_frame_is_poor(self, gray_buffer, config):
        """Test a uniform field: no document, blurry, no glare, poor quality."""
        result = FrameAnalyzer(config).analyze(gray_buffer)

        assert not result.document_detected
        assert result.is_blurry
        assert not result.has_glare
        assert not result.ready_for_capture
        assert result.overall_quality is QualityLevel.POOR

    def test_failing_stage_uses_neutral_result(self, card_buffer, config):
        """Test a raising stage is isolated and counted."""
        def broken(buffer):
            raise RuntimeError("stage exploded")

        analyzer = FrameAnalyzer(config, glare_stage=broken)
        result = analyzer.analyze(card_buffer)

        assert not result.has_glare
        assert result.glare_score == 0
        assert result.document_detected
        assert analyzer.stage_failures == 1

    def test_failing_document_stage_means_no_document(self, card_buffer, config):
        def broken(buffer):
            raise ValueError("bad frame")

        result = FrameAnalyzer(config, document_stage=broken).analyze(card_buffer)
        assert not result.document_detected
        assert not result.ready_for_capture

    def test_disabled_stages_are_not_run(self, card_buffer):
        """Test switched-off stages are never called."""
        calls = []

        def spy(buffer):
            calls.append(buffer)
            raise AssertionError("should not run")

        config = DetectionConfig(enable_document_detection=False, enable_blur_detection=False,
                                 enable_glare_detection=False, enable_face_detection=False)
        analyzer = FrameAnalyzer(config, document_stage=spy, blur_stage=spy, glare_stage=spy)
        result = analyzer.analyze(card_buffer)

        assert calls == []
        assert result.document_detected
        assert result.ready_for_capture

    def test_face_skipped_without_document(self, gray_buffer, config):
        """Test the face model is not run when no document was found."""
        model = FakeCountingModel()
        analyzer = FrameAnalyzer(config, FaceModelSession.ready(model))
        analyzer.analyze(gray_buffer)

        assert model.calls == 0

    def test_face_run_on_document(self, card_buffer, config):
        model = FakeCountingModel(FaceCandidate(BoundingBox(200, 180, 90, 90), 0.9))
        result = FrameAnalyzer(config, FaceModelSession.ready(model)).analyze(card_buffer)

        assert model.calls == 1
        assert result.face_detected
        assert result.face_confidence == 0.9

    def test_tracks_previous_bounds(self, card_buffer, config):
        analyzer = FrameAnalyzer(config)
        analyzer.analyze(card_buffer)
        assert analyzer.previous_bounds == BOUNDS
        assert analyzer.frames_analyzed == 1

        analyzer.reset_motion_history()
        assert analyzer.previous_bounds is None


class FakeCountingModel:
    name = "counting"

    def __init__(self, *candidates):
        self.candidates = list(candidates)
        self.calls = 0

    def detect(self, buffer):
        self.calls += 1
        return self.candidates


class TestStatusMessage:
    """Test hint priority."""

    @pytest.fixture
    def result(self, make_result):
        return make_result

    def test_no_document(self, result, config):
        assert status_message(result(ready=False), config) == POSITION_MESSAGE

    def test_moving_before_blur(self, result, config):
        message = status_message(result(ready=False, document_detected=True,
                                        is_moving=True, is_blurry=True), config)
        assert message == STEADY_MESSAGE

    def test_blur_before_glare(self, result, config):
        message = status_message(result(ready=False, document_detected=True,
                                        is_blurry=True, has_glare=True), config)
        assert message == BLURRY_MESSAGE

    def test_glare(self, result, config):
        message = status_message(result(ready=False, document_detected=True, has_glare=True), config)
        assert message == GLARE_MESSAGE

    def test_ready(self, result, config):
        assert status_message(result(ready=True), config) == READY_MESSAGE

    def test_adjusting(self, result, config):
        """Test a found document that is not ready for another reason."""
        message = status_message(result(ready=False, document_detected=True), config)
        assert message == ADJUSTING_MESSAGE
