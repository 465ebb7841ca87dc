"""
Tests for the capture coordinator, the HTTP service, configuration and errors.
"""
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

import numpy as np
import pytest

from config import DetectionConfig
from coordinator import CaptureCoordinator
from error_handlers import (
    CameraNotFoundError,
    FrameCaptureError,
    InvalidConfigError,
    SessionNotStartedError,
    handle_error,
    log_throttled,
)
from layer1_sampling import ManualTickScheduler, RealtimeTickScheduler, StaticFrameSource
from layer3_quality import CAPTURING_MESSAGE, POSITION_MESSAGE


class StalledExecutor:
    """Accepts work and never finishes it."""

    def __init__(self):
        self.submitted = 0
        self.args = []

    def submit(self, fn, *args):
        self.submitted += 1
        self.args.append(args)
        return Future()


class HoldingExecutor:
    """Starts work immediately and lets the test decide when it finishes."""

    def __init__(self):
        self.futures = []

    def submit(self, fn, *args):
        future = Future()
        future.set_running_or_notify_cancel()
        self.futures.append(future)
        return future

    @property
    def in_flight(self):
        return sum(1 for f in self.futures if not f.done())


class OverlapCountingSource(StaticFrameSource):
    """Slow reads that count how often two threads were inside at once."""

    def __init__(self, frame):
        super().__init__(frame)
        self.active = 0
        self.overlaps = 0
        self._count_lock = threading.Lock()

    def read_frame(self):
        with self._count_lock:
            self.active += 1
            if self.active > 1:
                self.overlaps += 1
        try:
            time.sleep(0.005)
            return super().read_frame()
        finally:
            with self._count_lock:
                self.active -= 1


@pytest.fixture
def session_config():
    return DetectionConfig(enable_face_detection=False)


def make_coordinator(frame, scheduler, config, **kwargs):
    return CaptureCoordinator(StaticFrameSource(frame), scheduler, config=config, **kwargs)


class TestCaptureCoordinator:
    """Test the live session loop end to end on a manual clock."""

    def test_auto_capture_fires_on_steady_card(self, card_frame, scheduler, session_config):
        """Test a steady, sharp card is captured once at full resolution."""
        captured = []
        coordinator = make_coordinator(card_frame, scheduler, session_config,
                                       capture_handler=captured.append)
        coordinator.start()
        scheduler.advance(1500)
        assert captured == []
        assert coordinator.auto_capture_state().is_counting_down

        scheduler.advance(1500)
        assert len(captured) == 1
        assert captured[0].shape == card_frame.shape
        assert coordinator.last_message == CAPTURING_MESSAGE

        scheduler.advance(3000)
        assert len(captured) == 1

    def test_status_listener(self, card_frame, scheduler, session_config):
        seen = []
        coordinator = make_coordinator(
            card_frame, scheduler, session_config,
            on_status=lambda result, state, message: seen.append((result, message))
        )
        coordinator.start()
        scheduler.run_ticks(20)

        assert seen
        result, message = seen[-1]
        assert result.document_detected
        assert message == "Perfect! Hold still..."

    def test_empty_scene_never_captures(self, gray_frame, scheduler, session_config):
        captured = []
        coordinator = make_coordinator(gray_frame, scheduler, session_config,
                                       capture_handler=captured.append)
        coordinator.start()
        scheduler.advance(5000)

        assert captured == []
        assert coordinator.last_message == POSITION_MESSAGE
        assert coordinator.status()["detection"]["overallQuality"] == "poor"

    def test_frames_dropped_while_analysis_pending(self, card_frame, scheduler, session_config):
        """Test frames arriving during a pending analysis are dropped, not queued."""
        executor = StalledExecutor()
        coordinator = make_coordinator(card_frame, scheduler, session_config, executor=executor)
        coordinator.start()
        scheduler.run_ticks(120)

        assert executor.submitted == 1
        assert coordinator.dropped_frames >= 10
        assert coordinator.is_analysis_pending

    def test_executor_results_delivered_on_tick(self, card_frame, scheduler, session_config):
        """Test worker results are handed back through the scheduler."""
        executor = ThreadPoolExecutor(max_workers=1)
        coordinator = make_coordinator(card_frame, scheduler, session_config, executor=executor)
        coordinator.start()
        scheduler.tick()
        executor.shutdown(wait=True)

        assert coordinator.last_result is None
        scheduler.tick()
        assert coordinator.last_result is not None
        assert coordinator.last_result.document_detected
        coordinator.stop()

    def test_frame_in_analysis_unchanged_by_later_frames(self, gray_frame, card_frame,
                                                         scheduler, session_config):
        """Test frames sampled during a pending analysis do not touch its pixels."""
        executor = StalledExecutor()
        source = StaticFrameSource([gray_frame, card_frame])
        coordinator = CaptureCoordinator(source, scheduler, config=session_config, executor=executor)
        coordinator.start()
        scheduler.run_ticks(60)

        buffer, _ = executor.args[0]
        assert coordinator.dropped_frames > 0
        assert len(np.unique(buffer.data)) == 1

    def test_restart_discards_analysis_from_stopped_session(self, card_frame, scheduler,
                                                            session_config, make_result):
        """Test an analysis outliving stop() is never fed to the next session."""
        executor = HoldingExecutor()
        coordinator = make_coordinator(card_frame, scheduler, session_config, executor=executor)
        coordinator.start()
        scheduler.tick()
        assert len(executor.futures) == 1

        coordinator.stop()
        coordinator.start()
        scheduler.run_ticks(40)
        # The old analysis still occupies the worker
        assert len(executor.futures) == 1
        assert coordinator.is_analysis_pending

        executor.futures[0].set_result(make_result(ready=True))
        for _ in range(40):
            scheduler.tick()
            assert executor.in_flight <= 1

        assert len(executor.futures) == 2
        assert coordinator.last_result is None
        assert coordinator.controller.state == 'idle'

    def test_stop_cancels_queued_analysis(self, card_frame, scheduler, session_config):
        """Test a not-yet-started analysis is cancelled and frees the next session."""
        executor = StalledExecutor()
        coordinator = make_coordinator(card_frame, scheduler, session_config, executor=executor)
        coordinator.start()
        scheduler.tick()
        coordinator.stop()

        assert not coordinator.is_analysis_pending
        coordinator.start()
        scheduler.run_ticks(5)
        assert executor.submitted == 2

    def test_manual_capture_never_reads_alongside_sampler(self, card_frame):
        """Test capture requests from another thread wait for the sampler's read."""
        source = OverlapCountingSource(card_frame)
        scheduler = RealtimeTickScheduler(refresh_hz=120)
        captured = []
        config = DetectionConfig(enable_face_detection=False, frame_rate_target=60)
        coordinator = CaptureCoordinator(source, scheduler, config=config,
                                         capture_handler=captured.append)
        scheduler.start()
        try:
            coordinator.start()
            for _ in range(30):
                coordinator.capture_now()
                coordinator.reset()
                time.sleep(0.005)
        finally:
            coordinator.stop()
            scheduler.stop()

        assert len(captured) >= 30
        assert source.reads > 30
        assert source.overlaps == 0

    def test_stop_is_safe_in_any_state(self, card_frame, scheduler, session_config):
        coordinator = make_coordinator(card_frame, scheduler, session_config)
        coordinator.stop()
        coordinator.start()
        scheduler.run_ticks(30)
        coordinator.stop()
        coordinator.stop()

        assert not coordinator.is_running
        assert scheduler.pending_count == 0

    def test_close_releases_source(self, card_frame, scheduler, session_config):
        coordinator = make_coordinator(card_frame, scheduler, session_config)
        coordinator.start()
        coordinator.close()

        assert coordinator.source.released

    def test_capture_now_requires_session(self, card_frame, scheduler, session_config):
        coordinator = make_coordinator(card_frame, scheduler, session_config)
        with pytest.raises(SessionNotStartedError):
            coordinator.capture_now()

    def test_manual_capture_and_reset(self, gray_frame, scheduler, session_config):
        """Test manual capture ignores quality, and reset allows another one."""
        coordinator = make_coordinator(gray_frame, scheduler, session_config)
        coordinator.start()

        assert coordinator.capture_now()
        assert coordinator.last_capture is not None
        assert not coordinator.capture_now()

        coordinator.reset()
        assert coordinator.last_capture is None
        assert coordinator.capture_now()

    def test_capture_read_failure_is_reported(self, card_frame, scheduler, session_config):
        """Test a failing full-resolution read is recorded, not raised."""
        class FlakySource(StaticFrameSource):
            def read_full_resolution(self):
                raise FrameCaptureError("sensor timeout")

        coordinator = CaptureCoordinator(FlakySource(card_frame), scheduler, config=session_config)
        coordinator.start()

        assert coordinator.capture_now()
        assert coordinator.last_capture is None
        assert coordinator.last_capture_error["error_code"] == "FRAME_CAPTURE_FAILED"

    def test_invalid_config_rejected(self, card_frame, scheduler):
        with pytest.raises(InvalidConfigError):
            make_coordinator(card_frame, scheduler, DetectionConfig(downscale=0))

    def test_status_payload(self, card_frame, scheduler, session_config):
        coordinator = make_coordinator(card_frame, scheduler, session_config)
        coordinator.start()
        scheduler.run_ticks(10)
        status = coordinator.status()

        assert status["running"]
        assert status["state"] in ("accumulating", "counting_down")
        assert status["detection"]["documentDetected"]
        assert status["faceModel"] == "uninitialized"
        json.dumps(status)


class TestDetectionConfig:
    """Test configuration validation, presets and environment loading."""

    def test_defaults_are_valid(self):
        config = DetectionConfig().validate()
        assert config.auto_capture_delay_ms == 2000
        assert config.frame_interval_ms == 125

    @pytest.mark.parametrize("field,value", [
        ("min_document_confidence", 1.5),
        ("auto_capture_delay_ms", -1),
        ("frame_rate_target", 0),
        ("downscale", 0),
        ("min_stable_frames", 0),
        ("grace_period_frames", 0),
    ])
    def test_out_of_range_values(self, field, value):
        with pytest.raises(InvalidConfigError) as exc_info:
            DetectionConfig().with_overrides(**{field: value})
        assert exc_info.value.details["field"] == field

    def test_presets(self):
        assert not DetectionConfig.for_document_back().enable_face_detection
        assert not DetectionConfig.for_selfie().enable_glare_detection
        constrained = DetectionConfig.for_constrained_device()
        assert constrained.downscale == 4
        assert constrained.frame_rate_target == 3

    def test_preset_overrides(self):
        config = DetectionConfig.for_document_front(auto_capture_delay_ms=500)
        assert config.auto_capture_delay_ms == 500

    def test_from_env(self):
        environ = {
            'CAPTURE_FRAME_RATE_TARGET': '5',
            'CAPTURE_ENABLE_FACE_DETECTION': 'false',
            'CAPTURE_MIN_STABLE_FRAMES': '3',
            'UNRELATED': 'x',
        }
        config = DetectionConfig.from_env(environ=environ)

        assert config.frame_rate_target == 5.0
        assert config.enable_face_detection is False
        assert config.min_stable_frames == 3

    def test_from_env_bad_value(self):
        with pytest.raises(InvalidConfigError):
            DetectionConfig.from_env(environ={'CAPTURE_ENABLE_BLUR_DETECTION': 'maybe'})


class TestErrorHandlers:
    """Test error responses and log throttling."""

    def test_scanner_error_response(self):
        response = handle_error(CameraNotFoundError(3))

        assert response["success"] is False
        assert response["error_code"] == "CAMERA_NOT_FOUND"

    def test_unexpected_error_response(self):
        response = handle_error(KeyError("boom"))

        assert response["error_code"] == "UNEXPECTED_ERROR"
        assert response["details"]["error_type"] == "KeyError"

    def test_log_throttled(self, caplog):
        log = logging.getLogger("throttle-test")
        with caplog.at_level(logging.WARNING):
            assert log_throttled(log, logging.WARNING, "k", "first", now=100.0)
            assert not log_throttled(log, logging.WARNING, "k", "second", now=102.0)
            assert log_throttled(log, logging.WARNING, "other", "third", now=102.0)
            assert log_throttled(log, logging.WARNING, "k", "fourth", now=106.0)

        assert "second" not in caplog.text
        assert "fourth" in caplog.text


class TestHealthAPI:
    """Test service discovery endpoints."""

    def test_health(self, client):
        response = client.get('/health')
        data = response.get_json()

        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["service"] == "id-capture-service"

    def test_api_status(self, client):
        data = client.get('/api/status').get_json()

        assert data["success"]
        assert data["running"] is False
        assert "document_back" in data["presets"]
        assert data["endpoints"]["capture"] == "/capture"


class TestCaptureAPI:
    """Test the capture session endpoints."""

    def _scheduler(self):
        from app import capture_service
        return capture_service.scheduler

    def test_status_requires_session(self, client):
        response = client.get('/detection_status')

        assert response.status_code == 409
        assert response.get_json()["error_code"] == "SESSION_NOT_STARTED"

    def test_start_and_status(self, client):
        response = client.post('/start_camera', json={})
        assert response.status_code == 200
        assert response.get_json()["success"]

        self._scheduler().run_ticks(20)
        data = client.get('/detection_status').get_json()

        assert data["success"]
        assert data["detection"]["documentDetected"]
        assert data["autoCapture"]["isCountingDown"]
        assert data["state"] == "counting_down"

    def test_auto_capture_then_download(self, client):
        client.post('/start_camera', json={"preset": "document_back"})
        self._scheduler().advance(3000)

        response = client.get('/last_capture.jpg')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.data[:2] == b'\xff\xd8'

        data = client.get('/detection_status').get_json()
        assert data["autoCapture"]["shouldCapture"]
        assert data["message"] == CAPTURING_MESSAGE

    def test_manual_capture(self, client):
        client.post('/start_camera')
        response = client.post('/capture')
        data = response.get_json()

        assert response.status_code == 200
        assert (data["width"], data["height"]) == (640, 480)

        again = client.post('/capture')
        assert again.status_code == 409
        assert again.get_json()["error_code"] == "ALREADY_CAPTURED"

    def test_reset_rearms(self, client):
        client.post('/start_camera')
        client.post('/capture')
        assert client.post('/reset').status_code == 200
        assert client.post('/capture').status_code == 200

    def test_capture_requires_session(self, client):
        assert client.post('/capture').status_code == 409
        assert client.post('/reset').status_code == 409

    def test_no_capture_yet(self, client):
        response = client.get('/last_capture.jpg')
        assert response.status_code == 404
        assert response.get_json()["error_code"] == "NO_CAPTURE"

    def test_unknown_preset(self, client):
        response = client.post('/start_camera', json={"preset": "passport_selfie"})
        assert response.status_code == 400
        assert response.get_json()["error_code"] == "INVALID_CONFIG"

    @pytest.mark.parametrize("overrides", [{"downscale": 0}, {"no_such_field": 1}])
    def test_bad_config(self, client, overrides):
        response = client.post('/start_camera', json={"config": overrides})
        assert response.status_code == 400

    def test_camera_missing(self, client):
        from app import capture_service

        def missing_camera():
            raise CameraNotFoundError(0)

        capture_service.source_factory = missing_camera
        response = client.post('/start_camera')

        assert response.status_code == 503
        assert response.get_json()["error_code"] == "CAMERA_NOT_FOUND"

    def test_stop_camera(self, client):
        client.post('/start_camera')
        assert client.post('/stop_camera').get_json()["success"]
        assert client.get('/detection_status').status_code == 409
        # Stopping twice is harmless
        assert client.post('/stop_camera').status_code == 200

    def test_start_twice_keeps_session(self, client):
        from app import capture_service

        client.post('/start_camera')
        first = capture_service.coordinator
        client.post('/start_camera')
        assert capture_service.coordinator is first


def test_pixel_buffer_rejects_wrong_shape():
    from detection_types import PixelBuffer

    with pytest.raises(ValueError):
        PixelBuffer.from_array(np.zeros((10, 10), dtype=np.uint8))
