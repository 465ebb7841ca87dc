"""
Layer 3 — Quality
Motion filtering, readiness and quality aggregation, stage orchestration
and user-facing status hints.
"""
from .motion import BoundsJitterFilter
from .aggregator import aggregate, calculate_overall_quality, is_ready_for_capture, quality_score
from .analyzer import FrameAnalyzer
from .status import status_message, CAPTURING_MESSAGE, POSITION_MESSAGE

__all__ = [
    'BoundsJitterFilter',
    'aggregate',
    'calculate_overall_quality',
    'is_ready_for_capture',
    'quality_score',
    'FrameAnalyzer',
    'status_message',
    'CAPTURING_MESSAGE',
    'POSITION_MESSAGE'
]
