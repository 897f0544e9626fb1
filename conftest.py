"""
Pytest configuration and fixtures for the marker-scan tests.
Frames are drawn on the fly with OpenCV, so no test assets are required.
"""
import os
import sys

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

# Point the app at a camera that does not exist before it is imported
os.environ.setdefault('CAMERA_INDEX', '99')

from error_handlers import FrameCaptureError  # noqa: E402
from layer1_capture import Frame, Space  # noqa: E402
from layer4_auto_capture import ScanListener  # noqa: E402


MARKER_CENTERS = [(100, 100), (700, 100), (700, 900), (100, 900)]


def draw_markers(size=(800, 1000), centers=MARKER_CENTERS, side=40, background=255):
    """White BGR canvas (width, height) with solid black squares at centers."""
    w, h = size
    img = np.full((h, w, 3), background, np.uint8)
    half = side // 2
    for cx, cy in centers:
        cv2.rectangle(img, (cx - half, cy - half), (cx + half - 1, cy + half - 1), (0, 0, 0), -1)
    return img


def draw_page(size=(800, 800), corners=((150, 120), (650, 100), (680, 700), (120, 680)),
              background=40, page=235):
    """Bright page polygon on a dark background."""
    w, h = size
    img = np.full((h, w, 3), background, np.uint8)
    cv2.fillConvexPoly(img, np.array(corners, dtype=np.int32), (page, page, page))
    return img


class FrameListSource:
    """Frame source replaying a fixed list of images, repeating the last one."""

    def __init__(self, images):
        self.images = list(images)
        self.reads = 0

    def current_frame(self):
        idx = min(self.reads, len(self.images) - 1)
        self.reads += 1
        return Frame(self.images[idx], Space.CAPTURE)


class BrokenSource:
    """Camera that has stopped delivering frames."""

    def current_frame(self):
        raise FrameCaptureError()


class RecordingListener(ScanListener):
    def __init__(self):
        self.stable = []
        self.ready = []
        self.lost = 0
        self.failed = []

    def on_quad_stable(self, quad):
        self.stable.append(quad)

    def on_capture_ready(self, image):
        self.ready.append(image)

    def on_detection_lost(self):
        self.lost += 1

    def on_capture_failed(self, error):
        self.failed.append(error)


@pytest.fixture
def marker_image():
    """800x1000 page with four corner markers."""
    return draw_markers()


@pytest.fixture
def square_marker_image():
    """800x800 canvas with markers at (100,100),(700,100),(700,700),(100,700)."""
    return draw_markers(size=(800, 800), centers=[(100, 100), (700, 100), (700, 700), (100, 700)])


@pytest.fixture
def inset_marker_page():
    """
    Bright page on a dark desk with 30 px markers set 50 px inside its corners.
    Returns (image, page outline corners, marker centers).
    """
    outline = [(60, 60), (740, 60), (740, 940), (60, 940)]
    markers = [(110, 110), (690, 110), (690, 890), (110, 890)]
    img = draw_page(size=(800, 1000), corners=outline)
    for cx, cy in markers:
        cv2.rectangle(img, (cx - 15, cy - 15), (cx + 14, cy + 14), (0, 0, 0), -1)
    return img, outline, markers


@pytest.fixture
def blank_image():
    return np.full((1000, 800, 3), 255, np.uint8)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
