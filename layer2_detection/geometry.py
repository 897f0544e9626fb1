"""
Layer 2 — Geometry Support
Point types, corner ordering, candidate matching and quadrilateral checks.

Raw candidates and resolved quadrilaterals are deliberately separate types:
a RawCandidate is only a blob center that passed the shape filters, while a
Quadrilateral has been ordered and validated.
"""
import math
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from error_handlers import DegenerateGeometryError
from layer1_capture.frames import Space

logger = logging.getLogger(__name__)

CORNER_NAMES = ('top-left', 'top-right', 'bottom-right', 'bottom-left')


@dataclass(frozen=True)
class Point2D:
    x: float
    y: float
    space: Space

    def scaled(self, factor: float, space: Space) -> "Point2D":
        return Point2D(self.x * factor, self.y * factor, space)

    def distance_to(self, other: "Point2D") -> float:
        if other.space != self.space:
            raise ValueError(f"Cannot compare {self.space.value} and {other.space.value} points")
        return math.hypot(self.x - other.x, self.y - other.y)

    def as_tuple(self) -> Tuple[float, float]:
        return (float(self.x), float(self.y))


@dataclass(frozen=True)
class RawCandidate:
    """A filtered blob center (or outline vertex); not yet a trusted corner."""
    point: Point2D
    area: float
    aspect_ratio: float
    fill_ratio: float

    def translated(self, dx: float, dy: float) -> "RawCandidate":
        p = self.point
        return RawCandidate(Point2D(p.x + dx, p.y + dy, p.space),
                            self.area, self.aspect_ratio, self.fill_ratio)


@dataclass(frozen=True)
class Quadrilateral:
    """Four geometrically ordered corners in a single resolution space."""
    tl: Point2D
    tr: Point2D
    br: Point2D
    bl: Point2D

    def __post_init__(self):
        spaces = {p.space for p in self.corners}
        if len(spaces) != 1:
            raise ValueError(f"Quadrilateral corners mix spaces: {sorted(s.value for s in spaces)}")

    @property
    def corners(self) -> Tuple[Point2D, Point2D, Point2D, Point2D]:
        return (self.tl, self.tr, self.br, self.bl)

    @property
    def space(self) -> Space:
        return self.tl.space

    @property
    def span(self) -> float:
        """Horizontal extent of the top edge."""
        return self.tr.x - self.tl.x

    @classmethod
    def from_array(cls, pts, space: Space) -> "Quadrilateral":
        """Build from a 4x2 array already in TL, TR, BR, BL order."""
        p = np.asarray(pts, dtype=np.float64).reshape(4, 2)
        return cls(*(Point2D(float(x), float(y), space) for x, y in p))

    @classmethod
    def from_rect(cls, rect, space: Space) -> "Quadrilateral":
        """Axis-aligned quadrilateral covering a Rect-like object."""
        x0, y0 = rect.x, rect.y
        x1, y1 = rect.x + rect.width, rect.y + rect.height
        return cls(Point2D(x0, y0, space), Point2D(x1, y0, space),
                   Point2D(x1, y1, space), Point2D(x0, y1, space))

    def as_array(self) -> np.ndarray:
        """4x2 float32 array in TL, TR, BR, BL order (OpenCV layout)."""
        return np.array([p.as_tuple() for p in self.corners], dtype=np.float32)

    def scaled(self, factor: float, space: Space) -> "Quadrilateral":
        return Quadrilateral(*(p.scaled(factor, space) for p in self.corners))

    def max_shift(self, other: "Quadrilateral") -> float:
        """Largest corner displacement between two quads in the same space."""
        return max(a.distance_to(b) for a, b in zip(self.corners, other.corners))

    def to_dict(self) -> dict:
        return {
            'space': self.space.value,
            'corners': {
                name: [round(p.x, 2), round(p.y, 2)]
                for name, p in zip(CORNER_NAMES, self.corners)
            }
        }


def candidates_to_array(candidates: Sequence[RawCandidate]) -> np.ndarray:
    return np.array([c.point.as_tuple() for c in candidates], dtype=np.float64).reshape(-1, 2)


def extremal_indices(pts: np.ndarray) -> Tuple[int, int, int, int]:
    """
    Indices of the TL, TR, BR, BL extremes of a point set.

    In image coordinates the corner nearest the origin minimizes x + y and
    the farthest maximizes it; x - y picks out the anti-diagonal pair.
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    s = pts[:, 0] + pts[:, 1]
    d = pts[:, 0] - pts[:, 1]
    return (int(np.argmin(s)), int(np.argmax(d)), int(np.argmax(s)), int(np.argmin(d)))


def order_corners(pts) -> np.ndarray:
    """Return a 4x2 float32 array ordered TL, TR, BR, BL."""
    p = np.asarray(pts, dtype=np.float32).reshape(-1, 2)
    return p[list(extremal_indices(p))].astype(np.float32)


def is_convex(pts) -> bool:
    """True for a strictly convex polygon given in boundary order."""
    p = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    n = len(p)
    if n < 3:
        return False
    signs = []
    for i in range(n):
        a, b, c = p[i], p[(i + 1) % n], p[(i + 2) % n]
        cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
        if abs(cross) < 1e-9:
            return False
        signs.append(cross > 0)
    return all(signs) or not any(signs)


def polygon_area(pts) -> float:
    p = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    x, y = p[:, 0], p[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def validate_quad(quad: Quadrilateral, frame_width: float, min_span_ratio: float = 0.3):
    """
    Raise DegenerateGeometryError unless quad is convex, non-degenerate and
    spans at least min_span_ratio of the frame width.
    """
    pts = quad.as_array()

    min_span = min_span_ratio * frame_width
    if quad.span < min_span:
        raise DegenerateGeometryError(
            "top edge too short",
            {"span": round(quad.span, 2), "min_span": round(min_span, 2)}
        )

    if polygon_area(pts) < 1.0:
        raise DegenerateGeometryError("zero area")

    if not is_convex(pts):
        raise DegenerateGeometryError("not convex")


def nearest_candidate(target: Point2D,
                      candidates: Iterable[RawCandidate],
                      max_distance: float) -> Optional[RawCandidate]:
    """Closest candidate to target within max_distance, or None."""
    best = None
    best_dist = max_distance
    for cand in candidates:
        dist = cand.point.distance_to(target)
        if dist <= best_dist:
            best, best_dist = cand, dist
    return best


def merge_close_candidates(candidates: Sequence[RawCandidate],
                           min_separation: float) -> List[RawCandidate]:
    """
    Collapse candidates closer than min_separation, keeping the larger blob.

    Tracing all contours reports a thresholded marker both by its outer
    border and by the hole adaptive thresholding leaves in its middle; both
    share a center.
    """
    kept: List[RawCandidate] = []
    for cand in sorted(candidates, key=lambda c: c.area, reverse=True):
        if all(cand.point.distance_to(k.point) >= min_separation for k in kept):
            kept.append(cand)
    return kept
