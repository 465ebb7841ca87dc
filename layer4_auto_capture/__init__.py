"""
Layer 4 — Auto-Capture
Stability-gated countdown that fires a single capture per session.
"""
from .controller import AutoCaptureController, STATES

__all__ = [
    'AutoCaptureController',
    'STATES'
]
