"""
Layer 1 — Frame Sources
Live image source abstraction plus the OpenCV camera implementation.
The pipeline only asks "is a frame decodable", "give me the current frame"
and "what is the native resolution".
"""
import cv2
import logging
import os
import threading
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)


class FrameSource:
    """Interface for a live video/image source."""

    # Channel order of arrays returned by read_frame()
    color_order = "BGR"

    def __init__(self):
        # Held around every device access; the tick thread and HTTP
        # requests both read from the same source
        self.read_lock = threading.RLock()

    def is_readable(self) -> bool:
        """True once the source can hand out decoded pixels."""
        raise NotImplementedError

    def read_frame(self) -> np.ndarray:
        """Return the current frame as an (H, W, 3|4) uint8 array."""
        raise NotImplementedError

    def native_size(self) -> Tuple[int, int]:
        """(width, height) of frames at native resolution."""
        raise NotImplementedError

    def read_full_resolution(self) -> np.ndarray:
        """Full-size copy of the current frame, for the actual capture."""
        return self.read_frame().copy()

    def release(self):
        """Release underlying resources."""
        pass


@dataclass(frozen=True)
class CameraSettings:
    """Requested capture mode. The driver may pick something close instead."""
    width: int = 1920
    height: int = 1080
    fps: int = 30
    fourcc: str = 'MJPG'
    buffer_size: int = 1  # keep only the newest frame queued


class OpenCVFrameSource(FrameSource):
    """
    USB camera behind cv2.VideoCapture, delivering BGR frames.

    Nothing is opened in the constructor; initialize() (or the context
    manager) opens the device and raises a CameraError on failure.
    """

    def __init__(self, camera_index: int = 0, settings: Optional[CameraSettings] = None,
                 use_v4l2: bool = True):
        super().__init__()
        self.camera_index = camera_index
        self.settings = settings or CameraSettings()
        self.use_v4l2 = use_v4l2
        self._capture: Optional[cv2.VideoCapture] = None
        self._decoded_once = False
        self._size = (0, 0)

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def initialize(self) -> bool:
        """
        Open the device and apply the requested settings.

        Raises:
            CameraNotFoundError: No such V4L2 device node
            CameraInitError: The device exists but could not be opened
        """
        if self.is_opened():
            return True

        if self.use_v4l2 and not os.path.exists(self.device_path):
            logger.error(f"No video device at {self.device_path}")
            raise CameraNotFoundError(self.camera_index)

        try:
            capture = (cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2) if self.use_v4l2
                       else cv2.VideoCapture(self.camera_index))
        except cv2.error as e:
            raise CameraInitError(self.camera_index, reason=str(e))
        if not capture.isOpened():
            capture.release()
            raise CameraInitError(self.camera_index, reason="VideoCapture did not open")

        s = self.settings
        for prop, value in (
            (cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*s.fourcc)),
            (cv2.CAP_PROP_FRAME_WIDTH, s.width),
            (cv2.CAP_PROP_FRAME_HEIGHT, s.height),
            (cv2.CAP_PROP_FPS, s.fps),
            (cv2.CAP_PROP_BUFFERSIZE, s.buffer_size),
        ):
            capture.set(prop, value)

        self._capture = capture
        self._decoded_once = False
        self._size = (int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
                      int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        logger.info(f"Camera {self.camera_index} open at {self._size[0]}x{self._size[1]}, "
                    f"{capture.get(cv2.CAP_PROP_FPS):.0f} fps requested {s.fps}")
        return True

    def is_opened(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    def is_readable(self) -> bool:
        """
        False until the first frame decodes. Warm-up is probed with grab()
        so an unready driver never raises.
        """
        if not self.is_opened():
            return False
        if not self._decoded_once:
            self._decoded_once = bool(self._capture.grab())
        return self._decoded_once

    def read_frame(self) -> np.ndarray:
        """
        Raises:
            CameraNotInitializedError: initialize() has not succeeded
            FrameCaptureError: The driver returned no frame
        """
        if self._capture is None:
            raise CameraNotInitializedError()
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise FrameCaptureError(reason=f"read() failed on {self.device_path}")
        self._decoded_once = True
        return frame

    def native_size(self) -> Tuple[int, int]:
        return self._size

    def release(self):
        with self.read_lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None
                logger.info(f"Camera {self.camera_index} released")
            self._decoded_once = False
            self._size = (0, 0)

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False



class StaticFrameSource(FrameSource):
    """
    Serves a fixed image (or a sequence of images, one per read).
    Used for replaying stills through the pipeline and in tests.
    """

    color_order = "RGB"

    def __init__(self, frames, color_order: str = "RGB", readable_after: int = 0):
        """
        Args:
            frames: One array or a list of arrays; the last one repeats
            color_order: "RGB" or "BGR"
            readable_after: Number of is_readable() probes that report False first
        """
        super().__init__()
        if isinstance(frames, np.ndarray):
            frames = [frames]
        if not frames:
            raise ValueError("StaticFrameSource needs at least one frame")
        self.frames = list(frames)
        self.color_order = color_order
        self._warmup = readable_after
        self._index = 0
        self.released = False
        self.reads = 0

    def is_readable(self) -> bool:
        if self.released:
            return False
        if self._warmup > 0:
            self._warmup -= 1
            return False
        return True

    def read_frame(self) -> np.ndarray:
        if self.released:
            raise CameraNotInitializedError()
        frame = self.frames[min(self._index, len(self.frames) - 1)]
        self._index += 1
        self.reads += 1
        return frame

    def native_size(self) -> Tuple[int, int]:
        frame = self.frames[min(self._index, len(self.frames) - 1)]
        return (frame.shape[1], frame.shape[0])

    def release(self):
        self.released = True
