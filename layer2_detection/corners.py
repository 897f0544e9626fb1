"""
Layer 2 — Corner Resolution
Reduces a candidate set to one oriented quadrilateral.
"""
import logging
from typing import Sequence

from error_handlers import DegenerateGeometryError, InsufficientCandidatesError
from .geometry import (
    Quadrilateral,
    RawCandidate,
    candidates_to_array,
    extremal_indices,
    validate_quad,
)

logger = logging.getLogger(__name__)


class CornerResolver:
    """
    Picks the four extremal candidates as TL, TR, BR, BL.

    Only the extremes matter, so interior noise candidates (stray blobs,
    printed dots on the page) are ignored without extra filtering.
    """

    REQUIRED = 4

    def __init__(self, min_span_ratio: float = 0.3):
        """
        Args:
            min_span_ratio: Minimum top-edge width as a fraction of frame width
        """
        self.min_span_ratio = min_span_ratio

    def resolve(self, candidates: Sequence[RawCandidate], frame_width: float) -> Quadrilateral:
        """
        Args:
            candidates: Points from CandidateExtractor (single space)
            frame_width: Width of the frame the candidates came from

        Returns:
            Quadrilateral in the candidates' space

        Raises:
            InsufficientCandidatesError: Fewer than 4 candidates
            DegenerateGeometryError: Extremes do not form a usable quad
        """
        if len(candidates) < self.REQUIRED:
            raise InsufficientCandidatesError(len(candidates), self.REQUIRED)

        indices = extremal_indices(candidates_to_array(candidates))
        if len(set(indices)) < self.REQUIRED:
            # One point is extreme in two directions: a cluster, not a page
            raise DegenerateGeometryError("shared corner", {"indices": list(indices)})

        quad = Quadrilateral(*(candidates[i].point for i in indices))
        validate_quad(quad, frame_width, self.min_span_ratio)
        return quad
