"""
Layer 1 — Capture
Camera frames at capture resolution, the work-resolution downscale buffer,
and display-to-capture coordinate mapping for the on-screen guide box.
"""
from .camera import CameraConfig, CameraHandler
from .display import Rect, cover_transform, display_to_capture
from .frames import Frame, Space, WorkBuffer, work_scale

__all__ = [
    'CameraConfig',
    'CameraHandler',
    'Frame',
    'Space',
    'WorkBuffer',
    'work_scale',
    'Rect',
    'cover_transform',
    'display_to_capture',
]
