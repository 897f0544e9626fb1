"""
Layer 2 — Candidate Extraction
Turns one work-resolution frame into candidate corner points.

Two strategies, chosen per deployment:
- marker: solid black squares printed at the four page corners
- edge:   the physical page outline (largest 4-vertex contour)

Finding nothing is a normal outcome: an empty or short list is returned and
the stability tracker counts the frame as a miss.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from layer1_capture.frames import Frame
from .geometry import Point2D, RawCandidate, merge_close_candidates, order_corners

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    """Detection strategy."""
    MARKER = "marker"
    EDGE = "edge"
    HYBRID = "hybrid"  # edge outline per tick, markers confirm at capture


@dataclass
class MarkerConfig:
    """Marker-blob filter settings. Areas are fractions of the frame area."""
    blur_ksize: int = 3               # 0 disables the noise blur
    block_size: int = 21              # adaptive threshold neighborhood (odd)
    c: float = 15.0                   # constant subtracted from the local mean
    min_area_ratio: float = 0.0001    # drop speckle noise
    max_area_ratio: float = 0.01      # drop large dark regions such as QR codes
    aspect_range: Tuple[float, float] = (0.5, 2.0)
    min_fill_ratio: float = 0.7       # solidity: rejects sparse, gappy patterns
    merge_distance_ratio: float = 0.01  # of frame width


@dataclass
class EdgeConfig:
    """Document-outline settings."""
    blur_ksize: int = 5
    canny_low: float = 75.0
    canny_high: float = 200.0
    dilate_ksize: int = 3
    dilate_iterations: int = 1        # 0 disables gap bridging
    min_area_ratio: float = 0.15
    max_area_ratio: float = 0.98
    epsilon_ratio: float = 0.02       # polygon tolerance, fraction of perimeter


def to_gray(pixels: np.ndarray) -> np.ndarray:
    """Grayscale view of a BGR, BGRA or already single-channel image."""
    if pixels.ndim == 2:
        return pixels
    channels = pixels.shape[2]
    if channels == 1:
        return pixels[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(pixels, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(pixels, cv2.COLOR_BGR2GRAY)


def _odd(value: int) -> int:
    value = max(3, int(value))
    return value if value % 2 == 1 else value + 1


class MarkerBlobExtractor:
    """
    Finds solid dark squares and reports their bounding-box centers.
    """

    def __init__(self, config: Optional[MarkerConfig] = None):
        self.config = config or MarkerConfig()

    def binarize(self, pixels: np.ndarray) -> np.ndarray:
        """Inverted adaptive threshold: dark ink becomes foreground."""
        cfg = self.config
        gray = to_gray(pixels)

        if cfg.blur_ksize and cfg.blur_ksize > 1:
            k = _odd(cfg.blur_ksize)
            gray = cv2.GaussianBlur(gray, (k, k), 0)

        return cv2.adaptiveThreshold(
            gray,
            255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY_INV,
            _odd(cfg.block_size),
            cfg.c
        )

    def blobs_from_binary(self,
                          binary: np.ndarray,
                          space,
                          reference_area: float,
                          reference_width: float) -> List[RawCandidate]:
        """
        Filter contours of a binary image down to marker candidates.

        Args:
            binary: Foreground = 255
            space: Resolution space of the image
            reference_area: Area the size bounds are relative to
            reference_width: Width the merge distance is relative to
        """
        cfg = self.config
        min_area = reference_area * cfg.min_area_ratio
        max_area = reference_area * cfg.max_area_ratio
        aspect_lo, aspect_hi = cfg.aspect_range

        # All contours: markers are not necessarily outermost shapes
        contours, _ = cv2.findContours(binary, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

        candidates = []
        for contour in contours:
            area = cv2.contourArea(contour)
            if not (min_area < area < max_area):
                continue

            x, y, w, h = cv2.boundingRect(contour)
            if w == 0 or h == 0:
                continue

            aspect = w / float(h)
            if not (aspect_lo <= aspect <= aspect_hi):
                continue

            fill = area / float(w * h)
            if fill < cfg.min_fill_ratio:
                continue

            center = Point2D(x + w / 2.0, y + h / 2.0, space)
            candidates.append(RawCandidate(center, float(area), aspect, fill))

        merged = merge_close_candidates(candidates, cfg.merge_distance_ratio * reference_width)
        logger.debug(f"Marker blobs: {len(contours)} contours -> {len(candidates)} "
                     f"filtered -> {len(merged)} merged")
        return merged

    def extract(self,
                frame: Frame,
                reference_area: Optional[float] = None,
                reference_width: Optional[float] = None) -> List[RawCandidate]:
        """
        Marker candidates in a frame.

        reference_area/reference_width default to the frame's own; pass the
        full-frame values when the frame is a crop of a larger image.
        """
        binary = self.binarize(frame.pixels)
        return self.blobs_from_binary(
            binary,
            frame.space,
            reference_area if reference_area is not None else frame.area,
            reference_width if reference_width is not None else frame.width
        )


class DocumentEdgeExtractor:
    """
    Finds the page outline and reports its four vertices.
    """

    def __init__(self, config: Optional[EdgeConfig] = None):
        self.config = config or EdgeConfig()

    def edges(self, pixels: np.ndarray) -> np.ndarray:
        cfg = self.config
        gray = to_gray(pixels)

        if cfg.blur_ksize and cfg.blur_ksize > 1:
            k = _odd(cfg.blur_ksize)
            gray = cv2.GaussianBlur(gray, (k, k), 0)

        edges = cv2.Canny(gray, cfg.canny_low, cfg.canny_high)

        if cfg.dilate_iterations > 0:
            kernel = np.ones((cfg.dilate_ksize, cfg.dilate_ksize), np.uint8)
            edges = cv2.dilate(edges, kernel, iterations=cfg.dilate_iterations)

        return edges

    def extract(self, frame: Frame) -> List[RawCandidate]:
        cfg = self.config
        frame_area = float(frame.area)
        min_area = frame_area * cfg.min_area_ratio
        max_area = frame_area * cfg.max_area_ratio

        contours, _ = cv2.findContours(self.edges(frame.pixels), cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

        # Largest first; the first 4-vertex polygon wins
        contours = sorted(contours, key=cv2.contourArea, reverse=True)

        for contour in contours:
            area = cv2.contourArea(contour)
            if area < min_area:
                break
            if area > max_area:
                continue

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, cfg.epsilon_ratio * peri, True)
            if len(approx) != 4:
                continue

            x, y, w, h = cv2.boundingRect(approx)
            aspect = w / float(h) if h else 0.0
            fill = area / float(w * h) if w and h else 0.0

            logger.debug(f"Page outline: area {area:.0f} ({area / frame_area * 100:.1f}%)")
            # Emitted as TL, TR, BR, BL
            return [
                RawCandidate(Point2D(float(px), float(py), frame.space), float(area), aspect, fill)
                for px, py in order_corners(approx)
            ]

        logger.debug(f"Page outline: none of {len(contours)} contours is a large quadrilateral")
        return []


class CandidateExtractor:
    """
    Strategy dispatcher used by the capture loop.
    The hybrid strategy tracks the page outline per tick; its marker
    confirmation happens at capture resolution in the rectifier.
    """

    def __init__(self,
                 strategy=Strategy.MARKER,
                 marker_config: Optional[MarkerConfig] = None,
                 edge_config: Optional[EdgeConfig] = None):
        self.strategy = Strategy(strategy)
        self.markers = MarkerBlobExtractor(marker_config)
        self.outline = DocumentEdgeExtractor(edge_config)
        logger.info(f"CandidateExtractor initialized (strategy={self.strategy.value})")

    def extract(self, frame: Frame) -> List[RawCandidate]:
        if self.strategy is Strategy.MARKER:
            return self.markers.extract(frame)
        return self.outline.extract(frame)
