"""
Layer 1 — Display Mapping
Maps the on-screen guide box back into capture-resolution pixels.

The preview element scales the video with "object-fit: cover": the frame is
scaled up until it fills the display, and the overflow on one axis is cut off
equally on both sides. Undoing that gives the guide box in sensor pixels.
"""
import logging
from dataclasses import dataclass
from typing import Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle (x, y = top-left corner)."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @classmethod
    def from_dict(cls, data: dict) -> "Rect":
        return cls(
            x=float(data['x']),
            y=float(data['y']),
            width=float(data['width']),
            height=float(data['height'])
        )

    def to_dict(self) -> dict:
        return {
            'x': round(self.x, 2),
            'y': round(self.y, 2),
            'width': round(self.width, 2),
            'height': round(self.height, 2)
        }


def cover_transform(video_size: Tuple[int, int],
                    display_size: Tuple[int, int]) -> Tuple[float, float, float]:
    """
    Parameters of an object-fit: cover layout.

    Args:
        video_size: Native video (width, height)
        display_size: Displayed element (width, height)

    Returns:
        (scale, offset_x, offset_y): display = video * scale - offset
    """
    vw, vh = video_size
    dw, dh = display_size
    if vw <= 0 or vh <= 0 or dw <= 0 or dh <= 0:
        raise ValueError(f"Invalid sizes: video={video_size}, display={display_size}")

    scale = max(dw / float(vw), dh / float(vh))

    # Only one axis overflows; the other offset is zero
    offset_x = (vw * scale - dw) / 2.0
    offset_y = (vh * scale - dh) / 2.0
    return scale, offset_x, offset_y


def display_to_capture(rect: Rect,
                       video_size: Tuple[int, int],
                       display_size: Tuple[int, int]) -> Rect:
    """
    Convert a rectangle in display coordinates into capture coordinates.

    Args:
        rect: Rectangle relative to the displayed video element
        video_size: Native video (width, height)
        display_size: Displayed element (width, height)

    Returns:
        Rect: Same region in capture pixels, clamped to the video bounds
    """
    scale, offset_x, offset_y = cover_transform(video_size, display_size)
    vw, vh = video_size

    x0 = (rect.x + offset_x) / scale
    y0 = (rect.y + offset_y) / scale
    x1 = (rect.right + offset_x) / scale
    y1 = (rect.bottom + offset_y) / scale

    x0, x1 = max(0.0, x0), min(float(vw), x1)
    y0, y1 = max(0.0, y0), min(float(vh), y1)

    mapped = Rect(x0, y0, max(0.0, x1 - x0), max(0.0, y1 - y0))
    logger.debug(f"Guide box {rect} -> capture {mapped} (scale={scale:.3f}, "
                 f"offset=({offset_x:.1f}, {offset_y:.1f}))")
    return mapped
