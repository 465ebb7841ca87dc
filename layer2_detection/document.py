"""
Layer 2 — Document Detector
Scan-line edge search for an ID card in a sampled frame.

Each side is scanned inward from the frame border. A row (or column) is an
edge when a long enough unbroken run of its samples differs in luminance
from the samples one step further out. All four sides must be found.
"""
import logging
import math
from typing import Optional

import numpy as np

from detection_types import BoundingBox, DocumentDetectionResult, PixelBuffer
from .luminance import luminance

logger = logging.getLogger(__name__)

# ISO/IEC 7810 ID-1: 85.6mm x 53.98mm
ID_CARD_ASPECT_RATIO = 1.586
ASPECT_RATIO_TOLERANCE = 0.3

MIN_COVERAGE = 0.15
MAX_COVERAGE = 0.90

# Scan parameters
EDGE_MARGIN = 10            # First scan line, in pixels from the border
SCAN_STEP = 2
CROSS_AXIS_START = 0.1      # Cross-axis sampled over the central 80%
CROSS_AXIS_END = 0.9
EDGE_THRESHOLD = 35         # Luminance delta that counts as an edge sample
MIN_EDGE_RUN = 20           # Consecutive edge samples needed for a side

# Confidence weights
EDGES_CONFIDENCE = 0.4
COVERAGE_CONFIDENCE = 0.3
ASPECT_CONFIDENCE = 0.3


def is_aspect_ratio_valid(aspect_ratio: float) -> bool:
    """True if the ratio matches an ID-1 card in landscape or portrait."""
    min_ratio = ID_CARD_ASPECT_RATIO * (1 - ASPECT_RATIO_TOLERANCE)
    max_ratio = ID_CARD_ASPECT_RATIO * (1 + ASPECT_RATIO_TOLERANCE)
    return (min_ratio <= aspect_ratio <= max_ratio
            or 1 / max_ratio <= aspect_ratio <= 1 / min_ratio)


def longest_run(mask: np.ndarray) -> int:
    """Length of the longest run of True values in a 1-D boolean array."""
    if not mask.any():
        return 0
    padded = np.concatenate(([0], mask.astype(np.int8), [0]))
    changes = np.diff(padded)
    starts = np.flatnonzero(changes == 1)
    ends = np.flatnonzero(changes == -1)
    return int((ends - starts).max())


def _cross_positions(length: int) -> np.ndarray:
    start = math.ceil(length * CROSS_AXIS_START)
    return np.arange(start, length * CROSS_AXIS_END, SCAN_STEP).astype(np.intp)


def _find_edge(plane: np.ndarray, positions, outward: int, cross: np.ndarray) -> Optional[int]:
    """
    First scan line in `positions` whose samples form an edge.

    Args:
        plane: (lines, samples, channels) view; rows for top/bottom, columns for left/right
        positions: Scan line indices in scan order
        outward: Offset of the comparison line (-SCAN_STEP or +SCAN_STEP)
        cross: Sample indices along each line
    """
    if cross.size == 0:
        return None
    for pos in positions:
        current = luminance(plane[pos, cross])
        outer = luminance(plane[pos + outward, cross])
        edges = np.abs(outer - current) > EDGE_THRESHOLD
        if longest_run(edges) >= MIN_EDGE_RUN:
            return pos
    return None


def detect_document(buffer: PixelBuffer) -> DocumentDetectionResult:
    """
    Detect an ID card in the frame.

    Returns:
        DocumentDetectionResult: bounds, corners and aspect ratio are only
        filled in when the document is detected
    """
    width, height = buffer.width, buffer.height
    rows = buffer.data
    columns = buffer.data.transpose(1, 0, 2)

    xs = _cross_positions(width)
    ys = _cross_positions(height)

    top = _find_edge(rows, range(EDGE_MARGIN, math.ceil(height / 2), SCAN_STEP), -SCAN_STEP, xs)
    if top is None:
        return DocumentDetectionResult.empty()
    bottom = _find_edge(rows, range(height - EDGE_MARGIN, math.floor(height / 2), -SCAN_STEP),
                        SCAN_STEP, xs)
    if bottom is None:
        return DocumentDetectionResult.empty()
    left = _find_edge(columns, range(EDGE_MARGIN, math.ceil(width / 2), SCAN_STEP), -SCAN_STEP, ys)
    if left is None:
        return DocumentDetectionResult.empty()
    right = _find_edge(columns, range(width - EDGE_MARGIN, math.floor(width / 2), -SCAN_STEP),
                       SCAN_STEP, ys)
    if right is None:
        return DocumentDetectionResult.empty()

    doc_width = right - left
    doc_height = bottom - top
    if doc_width <= 0 or doc_height <= 0:
        return DocumentDetectionResult.empty()

    aspect_ratio = doc_width / doc_height
    coverage = (doc_width * doc_height) / buffer.area

    valid_coverage = MIN_COVERAGE <= coverage <= MAX_COVERAGE
    valid_aspect = is_aspect_ratio_valid(aspect_ratio)

    confidence = EDGES_CONFIDENCE
    if valid_coverage:
        confidence += COVERAGE_CONFIDENCE
    if valid_aspect:
        confidence += ASPECT_CONFIDENCE
    confidence = min(confidence, 1.0)

    logger.debug(f"Document edges t={top} b={bottom} l={left} r={right} "
                 f"coverage={coverage:.2f} aspect={aspect_ratio:.2f}")

    if not valid_coverage:
        return DocumentDetectionResult(detected=False, confidence=confidence)

    bounds = BoundingBox(x=left, y=top, width=doc_width, height=doc_height)
    return DocumentDetectionResult(
        detected=True,
        confidence=confidence,
        bounds=bounds,
        corners=bounds.corners(),
        aspect_ratio=aspect_ratio
    )
