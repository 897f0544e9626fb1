"""
Layer 1 — Frames
Frame containers tagged with their resolution space, and the reusable
work-resolution downscale buffer used by the detection loop.
"""
import cv2
import numpy as np
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


class Space(str, Enum):
    """Resolution space a frame or point belongs to."""
    WORK = "work"        # downscaled, used for per-tick detection
    CAPTURE = "capture"  # native sensor resolution, used once for rectification


@dataclass(frozen=True)
class Frame:
    """A raster at a point in time. Not retained across ticks."""
    pixels: np.ndarray
    space: Space = Space.CAPTURE
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return self.width, self.height


def work_scale(width: int, height: int, max_side: int) -> float:
    """
    Uniform scale factor (work_dim / capture_dim) that brings the longest
    side down to max_side. Frames already small enough are not upscaled.
    """
    longest = max(width, height)
    if longest <= 0:
        raise ValueError(f"Invalid frame size: {width}x{height}")
    return min(1.0, float(max_side) / float(longest))


class WorkBuffer:
    """
    Reusable downscale target for the detection loop.

    The same array is written every tick, so it is handed out through a
    scoped acquisition and refuses a second concurrent user.
    """

    def __init__(self, max_side: int = 800):
        self.max_side = max_side
        self._buffer: Optional[np.ndarray] = None
        self._in_use = False

    @property
    def in_use(self) -> bool:
        return self._in_use

    def _target_shape(self, frame: Frame) -> Tuple[Tuple[int, int], float]:
        scale = work_scale(frame.width, frame.height, self.max_side)
        w = max(1, int(round(frame.width * scale)))
        h = max(1, int(round(frame.height * scale)))
        return (w, h), scale

    @contextmanager
    def acquire(self, frame: Frame) -> Iterator[Tuple[Frame, float]]:
        """
        Downscale a capture frame into the buffer.

        Yields:
            (work_frame, scale) where scale = work_dim / capture_dim
        """
        if self._in_use:
            raise RuntimeError("Work buffer is already in use by another tick")

        self._in_use = True
        try:
            (w, h), scale = self._target_shape(frame)
            src = frame.pixels

            if scale >= 1.0:
                # No resize needed; detection never writes into its input
                yield Frame(src, Space.WORK, frame.timestamp), 1.0
                return

            shape = (h, w) + src.shape[2:]
            if self._buffer is None or self._buffer.shape != shape or self._buffer.dtype != src.dtype:
                logger.debug(f"Allocating work buffer {w}x{h}")
                self._buffer = np.empty(shape, dtype=src.dtype)

            cv2.resize(src, (w, h), dst=self._buffer, interpolation=cv2.INTER_AREA)
            yield Frame(self._buffer, Space.WORK, frame.timestamp), scale
        finally:
            self._in_use = False

    def release(self):
        """Drop the buffer (session teardown)."""
        self._buffer = None
