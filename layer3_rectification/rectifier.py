"""
Layer 3 — Rectification
Responsibility: Marker refinement at capture resolution, perspective
correction onto a fixed canvas, fax-style binarization.
Output: RectifiedImage (single-channel, 0/255)
"""
import cv2
import math
import numpy as np
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from error_handlers import DegenerateGeometryError, MarkerRefinementFailedError, RectificationError
from layer1_capture.frames import Frame
from layer2_detection.candidates import MarkerBlobExtractor, MarkerConfig, to_gray
from layer2_detection.geometry import CORNER_NAMES, Quadrilateral, nearest_candidate, validate_quad

logger = logging.getLogger(__name__)


@dataclass
class RectifierConfig:
    """Configuration for rectification."""
    # Output canvas (width, height)
    canvas_size: Tuple[int, int] = (1728, 2200)
    margin: float = 0.0               # px; > 0 insets the page, < 0 keeps a border

    # Warp
    border_value: int = 255           # blank paper outside the source quad

    # Fax effect
    threshold_block_size: int = 21
    threshold_c: float = 15.0

    # Marker refinement around each coarse corner
    refine_with_markers: bool = True
    search_radius_ratio: float = 0.08  # minimum window half-size, fraction of frame width
    max_match_ratio: float = 0.15      # max corner shift, fraction of frame width


@dataclass
class RectifiedImage:
    """Final binarized page. Ownership passes to the encoder/UI."""
    pixels: np.ndarray
    source_quad: Quadrilateral
    transform: np.ndarray
    refined: bool = False

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_dict(self) -> dict:
        """Metadata only; pixels are not serialized."""
        return {
            'width': self.width,
            'height': self.height,
            'refined': self.refined,
            'source_quad': self.source_quad.to_dict()
        }


def canvas_corners(canvas_size: Tuple[int, int], margin: float = 0.0) -> np.ndarray:
    """Destination TL, TR, BR, BL on the canvas."""
    w, h = canvas_size
    m = float(margin)
    return np.array([
        [m, m],
        [w - m, m],
        [w - m, h - m],
        [m, h - m]
    ], dtype=np.float32)


def perspective_matrix(quad: Quadrilateral,
                       canvas_size: Tuple[int, int],
                       margin: float = 0.0) -> np.ndarray:
    """3x3 homography taking quad (TL, TR, BR, BL) onto the canvas corners."""
    return cv2.getPerspectiveTransform(quad.as_array(), canvas_corners(canvas_size, margin))


def map_points(points, matrix: np.ndarray) -> np.ndarray:
    """Apply a homography to an Nx2 point array."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(pts, np.asarray(matrix, dtype=np.float64)).reshape(-1, 2)


class Rectifier:
    """
    Maps a capture-resolution quadrilateral onto the output canvas.
    """

    def __init__(self,
                 config: Optional[RectifierConfig] = None,
                 marker_config: Optional[MarkerConfig] = None):
        self.config = config or RectifierConfig()
        self.markers = MarkerBlobExtractor(marker_config)

        logger.info("Rectifier initialized")
        logger.debug(f"  Canvas: {self.config.canvas_size[0]}x{self.config.canvas_size[1]}, "
                     f"margin {self.config.margin}")
        logger.debug(f"  Marker refinement: {self.config.refine_with_markers}")

    def refine(self, frame: Frame, quad: Quadrilateral) -> Quadrilateral:
        """
        Snap each coarse corner to the nearest marker blob found at full
        resolution near it.

        Raises:
            MarkerRefinementFailedError: A corner has no marker within reach,
                or the snapped corners do not form a usable quad
        """
        cfg = self.config
        if quad.space != frame.space:
            raise ValueError(f"Quad is in {quad.space.value} space, frame in {frame.space.value}")

        width, height = frame.size
        max_distance = cfg.max_match_ratio * width
        radius = self.search_radius(frame)

        refined = []
        for name, corner in zip(CORNER_NAMES, quad.corners):
            cx, cy = int(round(corner.x)), int(round(corner.y))
            x0, y0 = max(0, cx - radius), max(0, cy - radius)
            x1, y1 = min(width, cx + radius + 1), min(height, cy + radius + 1)

            if x1 - x0 < 3 or y1 - y0 < 3:
                logger.warning(f"Refinement window for {name} corner is outside the frame")
                raise MarkerRefinementFailedError(name, radius)

            window = Frame(frame.pixels[y0:y1, x0:x1], frame.space, frame.timestamp)

            # Size filters stay relative to the whole frame, not the window
            found = [
                cand.translated(x0, y0)
                for cand in self.markers.extract(window, reference_area=frame.area, reference_width=width)
            ]

            match = nearest_candidate(corner, found, max_distance)
            if match is None:
                logger.warning(f"No marker near {name} corner ({len(found)} blobs in window)")
                raise MarkerRefinementFailedError(name, radius)

            if match.point in refined:
                logger.warning(f"{name} corner snapped to a marker already used by another corner")
                raise MarkerRefinementFailedError(name, radius)

            logger.debug(f"  {name}: ({corner.x:.1f}, {corner.y:.1f}) -> "
                         f"({match.point.x:.1f}, {match.point.y:.1f})")
            refined.append(match.point)

        result = Quadrilateral(*refined)
        try:
            validate_quad(result, width, min_span_ratio=0.0)
        except DegenerateGeometryError as e:
            logger.warning(f"Refined corners rejected: {e.message}")
            raise MarkerRefinementFailedError("all", radius) from e
        return result

    def search_radius(self, frame: Frame) -> int:
        """
        Half-size of the per-corner search window in pixels.

        Covers the match distance plus the side of the largest accepted
        marker, so a marker at the edge of reach is never clipped.
        """
        width = frame.width
        marker_side = math.sqrt(self.markers.config.max_area_ratio * frame.area)
        reach = self.config.max_match_ratio * width + marker_side
        return max(1, int(math.ceil(max(self.config.search_radius_ratio * width, reach))))

    def rectify(self, frame: Frame, quad: Quadrilateral, refine: Optional[bool] = None) -> RectifiedImage:
        """
        Produce the flattened, binarized page.

        Args:
            frame: Capture-resolution frame
            quad: Page corners in the same space as frame
            refine: Override config.refine_with_markers

        Returns:
            RectifiedImage

        Raises:
            MarkerRefinementFailedError: Refinement could not confirm a corner
            RectificationError: Warp or thresholding failed
        """
        cfg = self.config
        do_refine = cfg.refine_with_markers if refine is None else refine

        logger.info(f"Rectifying {frame.width}x{frame.height} frame "
                    f"(refine={do_refine})")

        if do_refine:
            quad = self.refine(frame, quad)
        elif quad.space != frame.space:
            raise ValueError(f"Quad is in {quad.space.value} space, frame in {frame.space.value}")

        try:
            matrix = perspective_matrix(quad, cfg.canvas_size, cfg.margin)

            border = (cfg.border_value,) * (frame.pixels.shape[2] if frame.pixels.ndim == 3 else 1)
            warped = cv2.warpPerspective(
                frame.pixels,
                matrix,
                tuple(cfg.canvas_size),
                flags=cv2.INTER_LINEAR,
                borderMode=cv2.BORDER_CONSTANT,
                borderValue=border
            )

            gray = to_gray(warped)
            binary = cv2.adaptiveThreshold(
                gray,
                255,
                cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                cv2.THRESH_BINARY,
                cfg.threshold_block_size,
                cfg.threshold_c
            )
        except cv2.error as e:
            logger.error(f"Rectification failed: {e}")
            raise RectificationError(e) from e

        logger.info(f"✓ Rectified to {binary.shape[1]}x{binary.shape[0]}")
        return RectifiedImage(binary, quad, matrix, do_refine)
