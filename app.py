"""
ID Capture Web Application
Thin HTTP wrapper around one live capture session.

Provides REST API for:
- Starting/stopping the camera-backed capture session
- Live detection status and auto-capture countdown
- Manual capture, re-arming, and the last captured frame
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import dataclasses
import logging
import os
import threading

from config import DetectionConfig
from coordinator import CaptureCoordinator
from error_handlers import (
    CameraError,
    ConfigurationError,
    InvalidConfigError,
    ScannerError,
    SessionNotStartedError,
    handle_error
)
from layer1_sampling import CameraSettings, OpenCVFrameSource, RealtimeTickScheduler

# Setup logging
logging.basicConfig(
    level=logging.DEBUG if os.environ.get('CAPTURE_DEBUG') else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the verification front-end
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
CAMERA_USE_V4L2 = os.environ.get('CAMERA_USE_V4L2', '1') not in ('0', 'false', 'no')
CAMERA_WIDTH = int(os.environ.get('CAMERA_WIDTH', 1920))
CAMERA_HEIGHT = int(os.environ.get('CAMERA_HEIGHT', 1080))

PRESETS = {
    'document_front': DetectionConfig.for_document_front,
    'document_back': DetectionConfig.for_document_back,
    'selfie': DetectionConfig.for_selfie,
    'constrained_device': DetectionConfig.for_constrained_device,
}


def open_camera():
    """Default frame source: the local USB camera."""
    settings = CameraSettings(width=CAMERA_WIDTH, height=CAMERA_HEIGHT)
    source = OpenCVFrameSource(camera_index=CAMERA_INDEX, settings=settings,
                               use_v4l2=CAMERA_USE_V4L2)
    source.initialize()
    return source


class CaptureService:
    """
    Owns at most one CaptureCoordinator at a time.
    Route handlers go through here; the coordinator runs on the tick thread.
    """

    def __init__(self, base_config=None, source_factory=open_camera,
                 scheduler_factory=RealtimeTickScheduler):
        self.base_config = base_config or DetectionConfig()
        self.source_factory = source_factory
        self.scheduler_factory = scheduler_factory
        self.coordinator = None
        self.scheduler = None
        self.last_capture = None
        self.last_capture_color_order = "BGR"
        self._lock = threading.Lock()

    @property
    def is_running(self):
        return self.coordinator is not None and self.coordinator.is_running

    def build_config(self, preset=None, overrides=None):
        """
        Resolve the session config from a preset name and field overrides.

        Raises:
            InvalidConfigError: Unknown preset or field, or out-of-range value
        """
        overrides = dict(overrides or {})
        known = {f.name for f in dataclasses.fields(DetectionConfig)}
        for name in overrides:
            if name not in known:
                raise InvalidConfigError(name, overrides[name], "unknown config field")

        if preset is None:
            return self.base_config.with_overrides(**overrides)
        if preset not in PRESETS:
            raise InvalidConfigError('preset', preset, f"expected one of {sorted(PRESETS)}")
        return PRESETS[preset](**overrides)

    def start(self, preset=None, overrides=None):
        """
        Start a capture session (no-op if one is running).

        Raises:
            ConfigurationError: If the requested config is invalid
            CameraError: If the camera cannot be opened
        """
        with self._lock:
            if self.is_running:
                logger.debug("Capture session already running")
                return self.coordinator.status()

            config = self.build_config(preset, overrides)
            source = self.source_factory()
            scheduler = self.scheduler_factory()

            self.coordinator = CaptureCoordinator(
                source, scheduler, config=config, capture_handler=self._store_capture
            )
            self.scheduler = scheduler
            self.coordinator.start()
            if isinstance(scheduler, RealtimeTickScheduler):
                scheduler.start()
            return self.coordinator.status()

    def stop(self):
        """Stop the session and release the camera. Safe when nothing runs."""
        with self._lock:
            if self.coordinator is not None:
                self.coordinator.close()
            if isinstance(self.scheduler, RealtimeTickScheduler):
                self.scheduler.stop()
            self.coordinator = None
            self.scheduler = None

    def require_session(self):
        if not self.is_running:
            raise SessionNotStartedError()
        return self.coordinator

    def _store_capture(self, frame):
        self.last_capture = frame
        self.last_capture_color_order = self.coordinator.source.color_order

    def last_capture_jpeg(self):
        if self.last_capture is None:
            return None
        frame = self.last_capture
        if self.last_capture_color_order == "RGB":
            frame = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
        ok, buffer = cv2.imencode('.jpg', frame)
        if not ok:
            logger.error("JPEG encoding of last capture failed")
            return None
        return buffer.tobytes()


# Initialize capture service
logger.info("Starting application initialization")

capture_service = CaptureService(base_config=DetectionConfig.from_env())


# ============================================================================
# Flask Routes - Capture Session
# ============================================================================

@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Start the capture session; optional JSON {"preset": ..., "config": {...}}"""
    logger.info("Start camera request received")
    body = request.get_json(silent=True) or {}

    try:
        status = capture_service.start(preset=body.get('preset'), overrides=body.get('config'))
        logger.info("Camera start result: True")
        return jsonify({"success": True, "status": status})
    except ConfigurationError as e:
        return jsonify(handle_error(e)), 400
    except CameraError as e:
        return jsonify(handle_error(e)), 503
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    capture_service.stop()
    return jsonify({"success": True})


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Latest per-frame verdict, countdown and hint"""
    try:
        coordinator = capture_service.require_session()
    except ScannerError as e:
        return jsonify(handle_error(e)), 409

    status = coordinator.status()
    return jsonify({
        "success": True,
        "detection": status["detection"],
        "autoCapture": status["autoCapture"],
        "message": status["message"],
        "state": status["state"]
    })


@app.route('/capture', methods=['POST'])
def capture():
    """Manual capture, bypassing the stability countdown"""
    logger.info("Capture request received from client")
    try:
        coordinator = capture_service.require_session()
        fired = coordinator.capture_now()
    except ScannerError as e:
        return jsonify(handle_error(e)), 409

    if not fired:
        return jsonify({
            "success": False,
            "error": "A capture was already taken in this session",
            "error_code": "ALREADY_CAPTURED",
            "details": {"suggestion": "Call /reset endpoint first"}
        }), 409

    if coordinator.last_capture_error is not None:
        return jsonify(coordinator.last_capture_error), 500

    frame = coordinator.last_capture
    logger.info("Sending response to client: True")
    return jsonify({
        "success": True,
        "width": int(frame.shape[1]),
        "height": int(frame.shape[0]),
        "image_url": "/last_capture.jpg"
    })


@app.route('/reset', methods=['POST'])
def reset():
    """Re-arm auto-capture"""
    try:
        coordinator = capture_service.require_session()
    except ScannerError as e:
        return jsonify(handle_error(e)), 409
    coordinator.reset()
    return jsonify({"success": True, "status": coordinator.status()})


@app.route('/last_capture.jpg', methods=['GET'])
def last_capture():
    """Most recent captured frame as JPEG"""
    data = capture_service.last_capture_jpeg()
    if data is None:
        return jsonify({
            "success": False,
            "error": "No frame has been captured yet",
            "error_code": "NO_CAPTURE"
        }), 404
    return Response(data, mimetype='image/jpeg')


# ============================================================================
# API Endpoints for Microservice Communication
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "id-capture-service",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    session = capture_service.coordinator.status() if capture_service.is_running else None
    return jsonify({
        "success": True,
        "running": capture_service.is_running,
        "session": session,
        "config": dataclasses.asdict(capture_service.base_config),
        "presets": sorted(PRESETS),
        "endpoints": {
            "health": "/health",
            "start_camera": "/start_camera",
            "stop_camera": "/stop_camera",
            "detection_status": "/detection_status",
            "capture": "/capture",
            "reset": "/reset",
            "last_capture": "/last_capture.jpg"
        }
    })


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    logger.info(f"Camera device: /dev/video{CAMERA_INDEX}")
    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, debug=False, threaded=True)
