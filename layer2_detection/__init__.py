"""
Layer 2 — Detection
Per-frame candidate extraction, corner resolution and the stability
state machine that decides when a detection is trustworthy enough to capture.
"""
from .candidates import (
    CandidateExtractor,
    DocumentEdgeExtractor,
    EdgeConfig,
    MarkerBlobExtractor,
    MarkerConfig,
    Strategy,
)
from .corners import CornerResolver
from .geometry import Point2D, Quadrilateral, RawCandidate, order_corners
from .stability import (
    DetectionState,
    Phase,
    StabilityConfig,
    StabilityTracker,
    TrackerEvent,
    advance,
)

__all__ = [
    'CandidateExtractor',
    'DocumentEdgeExtractor',
    'EdgeConfig',
    'MarkerBlobExtractor',
    'MarkerConfig',
    'Strategy',
    'CornerResolver',
    'Point2D',
    'Quadrilateral',
    'RawCandidate',
    'order_corners',
    'DetectionState',
    'Phase',
    'StabilityConfig',
    'StabilityTracker',
    'TrackerEvent',
    'advance',
]
