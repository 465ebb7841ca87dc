"""
Layer 1 — Frame Sampler
Pulls scaled-down RGB buffers from a live source at a bounded rate.

Features:
- Self-throttles to the target FPS by scheduler clock
- Skips ticks silently while the source is not readable
- Reuses its scratch buffers; reallocates only when the size changes
- Every emitted buffer owns its pixels; later ticks never rewrite it
- Extraction failures count as "no frame this tick"
"""
import cv2
import logging
from typing import Callable, Optional, Tuple
import numpy as np

from detection_types import FrameData, PixelBuffer
from error_handlers import log_throttled
from .camera import FrameSource
from .scheduler import TickScheduler

logger = logging.getLogger(__name__)

FrameCallback = Callable[[FrameData], None]


class FrameSampler:
    """
    Lazily produces FrameData from a FrameSource, driven by a TickScheduler.
    """

    def __init__(
        self,
        source: FrameSource,
        scheduler: TickScheduler,
        target_fps: float = 8.0,
        downscale: int = 2
    ):
        """
        Args:
            source: Live frame source
            scheduler: Per-frame tick scheduler
            target_fps: Maximum frames emitted per second
            downscale: Integer shrink factor applied to native frames
        """
        if target_fps <= 0:
            raise ValueError(f"target_fps must be positive, got {target_fps}")
        if downscale < 1:
            raise ValueError(f"downscale must be >= 1, got {downscale}")

        self.source = source
        self.scheduler = scheduler
        self.target_fps = float(target_fps)
        self.downscale = int(downscale)
        self.frame_interval_ms = 1000.0 / self.target_fps

        self._on_frame: Optional[FrameCallback] = None
        self._tick_handle: Optional[int] = None
        self._running = False
        self._last_frame_ms: Optional[float] = None

        # Reused pixel storage
        self._resized: Optional[np.ndarray] = None
        self._rgb: Optional[np.ndarray] = None
        self.allocations = 0

        # FPS measurement
        self._fps_window_start: Optional[float] = None
        self._fps_frames = 0
        self.current_fps = 0.0
        self.frames_emitted = 0

        logger.debug(f"FrameSampler created: {self.target_fps} fps, downscale {self.downscale}")

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, on_frame: FrameCallback):
        """Begin sampling; on_frame receives every emitted FrameData."""
        if self._running:
            logger.debug("FrameSampler already running")
            return
        self._on_frame = on_frame
        self._running = True
        self._last_frame_ms = None
        self._fps_window_start = self.scheduler.now()
        self._fps_frames = 0
        self._schedule()
        logger.info("Frame sampling started")

    def stop(self):
        """Cancel pending scheduling and release buffers. Safe to call repeatedly."""
        was_running = self._running
        self._running = False
        if self._tick_handle is not None:
            self.scheduler.cancel_tick(self._tick_handle)
            self._tick_handle = None
        self._on_frame = None
        self._resized = None
        self._rgb = None
        self.current_fps = 0.0
        if was_running:
            logger.info("Frame sampling stopped")

    def _schedule(self):
        self._tick_handle = self.scheduler.request_tick(self._on_tick)

    def _on_tick(self, now_ms: float):
        self._tick_handle = None
        if not self._running:
            return

        try:
            if self._last_frame_ms is None or now_ms - self._last_frame_ms >= self.frame_interval_ms:
                frame = self.extract_frame(now_ms)
                if frame is not None:
                    self._last_frame_ms = now_ms
                    self._count_fps(now_ms)
                    self.frames_emitted += 1
                    if self._on_frame is not None:
                        self._on_frame(frame)
        finally:
            # The frame callback may have stopped us
            if self._running:
                self._schedule()

    def _count_fps(self, now_ms: float):
        self._fps_frames += 1
        window = now_ms - self._fps_window_start
        if window >= 1000.0:
            self.current_fps = round(self._fps_frames * 1000.0 / window, 1)
            self._fps_frames = 0
            self._fps_window_start = now_ms

    def scaled_size(self, native_width: int, native_height: int) -> Tuple[int, int]:
        return (max(1, native_width // self.downscale), max(1, native_height // self.downscale))

    def extract_frame(self, now_ms: Optional[float] = None) -> Optional[FrameData]:
        """
        Extract one downscaled RGB frame.

        Returns:
            FrameData or None if the source is not readable or extraction failed
        """
        with self.source.read_lock:
            readable = self.source.is_readable()
        if not readable:
            return None

        timestamp = self.scheduler.now() if now_ms is None else now_ms

        try:
            with self.source.read_lock:
                native = self.source.read_frame()
            buffer = self._to_buffer(native)
        except Exception as e:
            # Source torn down mid-frame, driver hiccup, etc.
            log_throttled(logger, logging.WARNING, "extract",
                          f"Frame extraction failed, skipping tick: {e}")
            return None

        return FrameData(buffer=buffer, timestamp=timestamp)

    def _to_buffer(self, native: np.ndarray) -> PixelBuffer:
        if native is None or native.ndim != 3 or native.shape[2] not in (3, 4):
            raise ValueError(f"Unsupported frame shape: {getattr(native, 'shape', None)}")

        height, width, channels = native.shape
        scaled_w, scaled_h = self.scaled_size(width, height)
        self._ensure_buffers(scaled_w, scaled_h, channels, native.dtype)

        if (scaled_w, scaled_h) == (width, height):
            np.copyto(self._resized, native)
        else:
            cv2.resize(native, (scaled_w, scaled_h), dst=self._resized,
                       interpolation=cv2.INTER_AREA)

        if self.source.color_order == "BGR":
            code = cv2.COLOR_BGRA2RGBA if channels == 4 else cv2.COLOR_BGR2RGB
            cv2.cvtColor(self._resized, code, dst=self._rgb)
            pixels = self._rgb
        else:
            pixels = self._resized

        # Scratch arrays are rewritten next tick; hand out a private copy
        return PixelBuffer.from_array(pixels.copy())

    def _ensure_buffers(self, width: int, height: int, channels: int, dtype):
        shape = (height, width, channels)
        if self._resized is not None and self._resized.shape == shape:
            return
        self._resized = np.empty(shape, dtype=dtype)
        self._rgb = np.empty(shape, dtype=dtype)
        self.allocations += 1
        logger.debug(f"Sampler buffers (re)allocated: {width}x{height}x{channels}")
