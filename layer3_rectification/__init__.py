"""
Layer 3 — Rectification
Perspective correction of the detected page onto a fixed canvas,
followed by adaptive thresholding for a high-contrast archival image.
"""
from .rectifier import (
    RectifiedImage,
    Rectifier,
    RectifierConfig,
    canvas_corners,
    map_points,
    perspective_matrix,
)

__all__ = [
    'RectifiedImage',
    'Rectifier',
    'RectifierConfig',
    'canvas_corners',
    'map_points',
    'perspective_matrix',
]
