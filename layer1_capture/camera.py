"""
Layer 1 — Camera Handler
V4L2 frame source for the scan loop. Frames come out at the sensor's
native resolution; downscaling for detection happens in the work buffer.
"""
import cv2
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    CameraUnavailableError,
    FrameCaptureError,
)
from .frames import Frame, Space

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Requested capture mode. The driver clamps to the nearest it supports."""
    width: int = 3840
    height: int = 2160
    fps: int = 30
    codec: str = 'MJPG'
    buffer_size: int = 1      # one queued frame, so reads are never stale
    warmup_frames: int = 3    # discarded while auto exposure settles


class CameraHandler:
    """
    USB document camera.

    Usage:
        with CameraHandler(0) as camera:
            frame = camera.current_frame()
    """

    def __init__(self, camera_index: int = 0, config: Optional[CameraConfig] = None):
        self.camera_index = camera_index
        self.config = config or CameraConfig()
        self.camera: Optional[cv2.VideoCapture] = None
        self.resolution: Tuple[int, int] = (0, 0)
        self.fps = 0.0

        logger.info(f"CameraHandler created for {self.device_path}")

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def initialize(self) -> bool:
        """
        Open the device and apply the capture mode. Safe to call twice.

        Raises:
            CameraNotFoundError: No such device node
            CameraInitError: The device exists but cannot be opened or read
        """
        if self.is_opened():
            return True

        if not os.path.exists(self.device_path):
            logger.error(f"Camera device not found: {self.device_path}")
            raise CameraNotFoundError(self.camera_index)

        logger.info(f"Opening {self.device_path}")

        try:
            self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
            if not self.camera.isOpened():
                raise CameraInitError(self.camera_index, reason="Failed to open camera device")

            self._apply_mode()
            for _ in range(self.config.warmup_frames):
                self.camera.grab()
        except CameraUnavailableError:
            self._close_device()
            raise
        except cv2.error as e:
            logger.error(f"Camera initialization failed: {e}")
            self._close_device()
            raise CameraInitError(self.camera_index, reason=str(e))

        self.resolution = (int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH)),
                           int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        self.fps = self.camera.get(cv2.CAP_PROP_FPS)
        logger.info(f"✓ Camera ready: {self.resolution[0]}x{self.resolution[1]} @ {self.fps}fps")
        return True

    def _apply_mode(self):
        cfg = self.config
        self.camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg.codec))
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg.width)
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg.height)
        self.camera.set(cv2.CAP_PROP_FPS, cfg.fps)
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg.buffer_size)
        logger.debug(f"Requested {cfg.codec} {cfg.width}x{cfg.height} @ {cfg.fps}fps")

    def current_frame(self) -> Frame:
        """
        Returns:
            Frame: BGR pixels in capture space

        Raises:
            CameraNotInitializedError: initialize() has not succeeded
            FrameCaptureError: The driver returned no frame
        """
        if self.camera is None:
            raise CameraNotInitializedError()

        ok, pixels = self.camera.read()
        if not ok or pixels is None:
            raise FrameCaptureError()

        return Frame(pixels, Space.CAPTURE)

    def get_resolution(self) -> Tuple[int, int]:
        """Negotiated (width, height); (0, 0) while closed."""
        return self.resolution

    def is_opened(self) -> bool:
        return self.camera is not None and self.camera.isOpened()

    def _close_device(self):
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        self.resolution = (0, 0)

    def release(self):
        self._close_device()
        logger.info(f"{self.device_path} released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
