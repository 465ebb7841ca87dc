"""
Capture Coordinator
Thin coordinator for one live capture session across the four layers:

    Layer 1 (sampling) -> Layer 2/3 (detection + quality) -> Layer 4 (auto-capture)

Only one frame is analysed at a time. Frames that arrive while an analysis
is pending are dropped, not queued. Frame results reach the controller on
the scheduler's tick thread; manual captures come in on the caller's thread
and rely on the controller's lock and the source's read lock.
"""
import logging
from concurrent.futures import Executor, Future
from typing import Callable, Optional

import numpy as np

from config import DetectionConfig
from detection_types import AutoCaptureState, DetectionResult, FrameData
from error_handlers import SessionNotStartedError, handle_error
from layer1_sampling import FrameSampler, FrameSource, TickScheduler
from layer2_detection import FaceModelSession, LoadState, create_face_model_session
from layer3_quality import CAPTURING_MESSAGE, POSITION_MESSAGE, FrameAnalyzer, status_message
from layer4_auto_capture import AutoCaptureController

logger = logging.getLogger(__name__)

StatusListener = Callable[[DetectionResult, AutoCaptureState, str], None]
CaptureHandler = Callable[[np.ndarray], None]


class CaptureCoordinator:
    """
    Coordinates the capture pipeline for one frame source.
    """

    def __init__(
        self,
        source: FrameSource,
        scheduler: TickScheduler,
        config: Optional[DetectionConfig] = None,
        face_session: Optional[FaceModelSession] = None,
        capture_handler: Optional[CaptureHandler] = None,
        on_status: Optional[StatusListener] = None,
        executor: Optional[Executor] = None
    ):
        """
        Args:
            source: Live frame source
            scheduler: Tick scheduler shared by the sampler and the controller
            config: Detection config, validated here
            face_session: Face model session; built from config when omitted
            capture_handler: Receives the full-resolution frame on capture
            on_status: Receives (result, auto-capture state, message) per analysed frame
            executor: Optional single worker to run analysis off the tick thread
        """
        logger.info("Initializing CaptureCoordinator")

        self.source = source
        self.scheduler = scheduler
        self.config = (config or DetectionConfig()).validate()
        self.face_session = face_session or create_face_model_session(self.config)
        self.capture_handler = capture_handler
        self.on_status = on_status
        self.executor = executor

        # Layer 1: Sampling
        self.sampler = FrameSampler(
            source, scheduler,
            target_fps=self.config.frame_rate_target,
            downscale=self.config.downscale
        )

        # Layer 2/3: Detection and quality
        self.analyzer = FrameAnalyzer(self.config, self.face_session)

        # Layer 4: Auto-capture
        self.controller = AutoCaptureController(
            self.config, scheduler=scheduler, on_capture=self._handle_capture
        )

        self._running = False
        self._pending = False
        self._future: Optional[Future] = None
        # Bumped by stop(); results from an older session are discarded
        self._generation = 0
        self.dropped_frames = 0
        self.last_result: Optional[DetectionResult] = None
        self.last_message = POSITION_MESSAGE
        self.last_capture: Optional[np.ndarray] = None
        self.last_capture_error: Optional[dict] = None

        logger.info("CaptureCoordinator initialized successfully")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_analysis_pending(self) -> bool:
        return self._pending

    def start(self):
        """Start sampling. The face model loads in the background."""
        if self._running:
            logger.debug("Capture session already running")
            return

        if self.config.enable_face_detection and self.face_session.state is LoadState.UNINITIALIZED:
            self.face_session.load_async()

        self._running = True
        # An analysis left over from the previous session still occupies the worker
        self._pending = self._future is not None
        self.sampler.start(self._on_frame)
        logger.info("Capture session started")

    def stop(self):
        """
        Stop sampling and clear the auto-capture timer and counters.
        Safe to call in any state, repeatedly.
        """
        was_running = self._running
        self._running = False
        self._generation += 1
        if self._future is not None and self._future.cancel():
            self._future = None
        self._pending = self._future is not None
        self.sampler.stop()
        self.controller.cancel()
        if was_running:
            logger.info(f"Capture session stopped ({self.dropped_frames} frames dropped)")

    def close(self):
        """Stop and release the source and the face model."""
        self.stop()
        self.source.release()
        self.face_session.dispose()

    # -------------------- Frame flow --------------------

    def _on_frame(self, frame: FrameData):
        if not self._running:
            return
        if self._pending:
            self.dropped_frames += 1
            logger.debug("Analysis still pending, frame dropped")
            return

        self._pending = True
        if self.executor is None:
            self._deliver(self.analyzer.analyze(frame.buffer, frame.timestamp))
            return

        future = self.executor.submit(self.analyzer.analyze, frame.buffer, frame.timestamp)
        self._future = future
        generation = self._generation
        future.add_done_callback(lambda done: self._on_analysis_done(done, generation))

    def _on_analysis_done(self, future: Future, generation: int):
        # Worker thread: hand the result back to the tick thread
        self.scheduler.request_tick(lambda now_ms: self._deliver_future(future, generation))

    def _deliver_future(self, future: Future, generation: int):
        if future is not self._future:
            # Cancelled by stop()
            return
        self._future = None
        if generation != self._generation:
            self._pending = False
            logger.debug("Discarding analysis from a stopped session")
            return

        error = future.exception()
        if error is not None:
            self._pending = False
            logger.error(f"Frame analysis failed: {error}")
            return
        self._deliver(future.result())

    def _deliver(self, result: DetectionResult):
        self._pending = False
        if not self._running:
            return

        self.last_result = result
        self.controller.update(result)
        state = self.controller.snapshot()
        message = CAPTURING_MESSAGE if state.should_capture else status_message(result, self.config)
        self.last_message = message

        if self.on_status is not None:
            self.on_status(result, state, message)

    # -------------------- Capture --------------------

    def _handle_capture(self):
        """Controller fired: grab a full-resolution frame for the handler."""
        try:
            with self.source.read_lock:
                frame = self.source.read_full_resolution()
        except Exception as e:
            # No fatal errors in the live loop; the HTTP layer reports this
            self.last_capture_error = handle_error(e, "Capture failed reading full-resolution frame")
            return

        self.last_capture = frame
        self.last_capture_error = None
        logger.info(f"Captured frame - Shape: {frame.shape}")

        if self.capture_handler is not None:
            self.capture_handler(frame)

    def capture_now(self) -> bool:
        """
        Manual capture.

        Returns:
            bool: False if this session already captured

        Raises:
            SessionNotStartedError: If the session is not running
        """
        if not self._running:
            raise SessionNotStartedError()
        return self.controller.capture_now()

    def reset(self):
        """Re-arm auto-capture for a new attempt."""
        self.controller.reset()
        self.analyzer.reset_motion_history()
        self.last_capture = None
        self.last_capture_error = None
        self.last_message = POSITION_MESSAGE

    # -------------------- Status --------------------

    def auto_capture_state(self) -> AutoCaptureState:
        return self.controller.snapshot()

    def status(self) -> dict:
        """JSON-ready snapshot of the session."""
        return {
            "running": self._running,
            "state": self.controller.state,
            "message": self.last_message,
            "detection": self.last_result.to_dict() if self.last_result else None,
            "autoCapture": self.controller.snapshot().to_dict(),
            "fps": self.sampler.current_fps,
            "droppedFrames": self.dropped_frames,
            "faceModel": self.face_session.state.value,
            "captured": self.last_capture is not None,
        }
