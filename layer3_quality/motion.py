"""
Layer 3 — Motion Filter
Decides whether the document moved between two analysed frames.
Edge-scan bounds jitter by a few pixels even on a tripod, so small deltas
are treated as noise.
"""
import logging
from typing import Optional

from detection_types import BoundingBox

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_PX = 5.0


class BoundsJitterFilter:
    """Compares consecutive document bounds."""

    def __init__(self, tolerance_px: float = DEFAULT_TOLERANCE_PX, enabled: bool = True):
        self.tolerance_px = tolerance_px
        self.enabled = enabled

    def is_moving(self, current: Optional[BoundingBox], previous: Optional[BoundingBox]) -> bool:
        """
        True if the document moved beyond the tolerance.

        No document is not moving. A document with no previous bounds has
        just appeared and counts as moving.
        """
        if not self.enabled or current is None:
            return False
        if previous is None:
            return True

        deltas = (
            abs(current.x - previous.x),
            abs(current.y - previous.y),
            abs(current.width - previous.width),
            abs(current.height - previous.height),
        )
        moving = max(deltas) > self.tolerance_px
        if moving:
            logger.debug(f"Document moved: max delta {max(deltas):.1f}px")
        return moving
