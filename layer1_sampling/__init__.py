"""
Layer 1 — Sampling
Live frame sources, tick scheduling, and the throttled frame sampler that
feeds downscaled RGB buffers to the detection layer.
"""
from .camera import CameraSettings, FrameSource, OpenCVFrameSource, StaticFrameSource
from .scheduler import TickScheduler, ManualTickScheduler, RealtimeTickScheduler
from .sampler import FrameSampler

__all__ = [
    'CameraSettings',
    'FrameSource',
    'OpenCVFrameSource',
    'StaticFrameSource',
    'TickScheduler',
    'ManualTickScheduler',
    'RealtimeTickScheduler',
    'FrameSampler'
]
