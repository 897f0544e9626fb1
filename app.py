"""
Document Scanner Web Application
Thin coordinator for the layered marker-scan pipeline.

Provides REST API for:
- Starting/stopping an auto-capture session on the local camera
- Live detection status (guide box color, lock progress)
- Manual shutter override with guide-box fallback
- Single-image detection for uploaded photos
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import logging
import numpy as np
import os
import threading

# Import layers
from layer1_capture import CameraHandler, Frame, Rect, Space
from layer2_detection import Phase
from layer4_auto_capture import CaptureConfig, CaptureOrchestrator, ScanListener

# Import error handling
from error_handlers import (
    CameraError,
    CameraNotInitializedError,
    DetectionError,
    ScannerError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=logging.DEBUG if os.environ.get('SCAN_DEBUG') else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the scanner front-end
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))


def guide_color(phase, event_color):
    """
    Guide box color for the UI.

    A re-lock after a failed capture turns red back to yellow; green
    (stable, capturing) is kept until the session reports otherwise.
    """
    if phase is Phase.LOCKING and event_color != "green":
        return "yellow"
    return event_color


class StatusListener(ScanListener):
    """Keeps the latest session events for the UI to poll."""

    def __init__(self):
        self.lock = threading.Lock()
        self.clear()

    def clear(self):
        self.guide_color = "white"
        self.image = None
        self.error = None

    def on_quad_stable(self, quad):
        with self.lock:
            self.guide_color = "green"

    def on_capture_ready(self, image):
        with self.lock:
            self.image = image
            self.error = None

    def on_detection_lost(self):
        with self.lock:
            self.guide_color = "white"

    def on_capture_failed(self, error):
        with self.lock:
            self.guide_color = "red"
            self.error = error.to_dict()


class ScanCoordinator:
    """
    Owns the camera and the one active scan session.
    The scan loop runs on a background thread; everything else only
    touches it through the cancellation token.
    """

    def __init__(self, camera_index, config=None):
        logger.info("Initializing ScanCoordinator")

        self.config = config or CaptureConfig.from_env()
        self.camera = CameraHandler(camera_index=camera_index)
        self.listener = StatusListener()
        self.orchestrator = CaptureOrchestrator(self.camera, self.config, listener=self.listener)
        self._thread = None
        self._lock = threading.Lock()

        logger.info("ScanCoordinator initialized successfully")

    def _spawn(self):
        self._thread = threading.Thread(target=self._loop, name="scan-loop", daemon=True)
        self._thread.start()

    def _join(self):
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    def _loop(self):
        try:
            result = self.orchestrator.run()
            logger.info(f"Scan loop finished: success={result.success}")
            if result.success:
                self.camera.release()
        except CameraError as e:
            with self.listener.lock:
                self.listener.error = handle_error(e)

    def _halt(self):
        """Signal the loop, wait for it, then reset the session from this thread."""
        self.orchestrator.token.cancel()
        self._join()
        self.orchestrator.stop()

    def start_scanning(self):
        """Open the camera and arm a fresh session."""
        with self._lock:
            self._halt()
            self.camera.initialize()
            self.listener.clear()
            self.orchestrator.start()
            self._spawn()
        return True

    def stop_scanning(self):
        """Close: cancel the loop and release the camera."""
        with self._lock:
            self._halt()
            self.camera.release()

    def manual_capture(self, guide_box=None, display_size=None):
        """Shutter button. Pauses the loop so only one thread reads the camera."""
        with self._lock:
            if not self.camera.is_opened():
                raise CameraNotInitializedError()

            self.orchestrator.token.cancel()
            self._join()

            # The loop is parked; this thread owns the session until it respawns
            self.orchestrator.token.reset()
            result = self.orchestrator.commit_manual(guide_box, display_size)
            if result.success:
                self.camera.release()
            elif self.orchestrator.active:
                self._spawn()
            else:
                self.orchestrator.token.cancel()
            return result

    def status(self):
        state = self.orchestrator.tracker.state
        with self.listener.lock:
            color = guide_color(state.phase, self.listener.guide_color)
            return {
                "phase": state.phase.value,
                "stable_count": state.stable_count,
                "miss_count": state.miss_count,
                "progress": round(self.orchestrator.tracker.progress, 3),
                "detections_seen": state.detections_seen,
                "quad": state.last_quad.to_dict() if state.last_quad and state.stable_count else None,
                "guide_color": color,
                "has_result": self.listener.image is not None,
                "error": self.listener.error,
            }

    def detect_image(self, pixels):
        """Single-frame detection on an uploaded image (no tracking)."""
        detector = CaptureOrchestrator(None, self.config)
        quad = detector.detect(Frame(pixels, Space.CAPTURE))
        return quad


# Initialize scan coordinator
logger.info("Starting application initialization")

scanner = ScanCoordinator(camera_index=CAMERA_INDEX)


# ============================================================================
# Flask Routes - Scan Session
# ============================================================================

@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Open the camera and start auto-capture"""
    logger.info("Start camera request received")

    try:
        success = scanner.start_scanning()
        return jsonify({"success": success})
    except CameraError as e:
        return jsonify(handle_error(e))


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop scanning and release the camera"""
    logger.info("Stop camera request received")
    scanner.stop_scanning()
    return jsonify({"success": True})


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Current tracker state for guide-box updates"""
    return jsonify({
        "success": True,
        "detection": scanner.status()
    })


@app.route('/capture', methods=['POST'])
def capture():
    """
    Manual shutter.

    Optional JSON body:
        {"guide_box": {"x":..,"y":..,"width":..,"height":..},
         "display_size": [width, height]}
    """
    logger.info("Manual capture request received")
    body = request.get_json(silent=True) or {}

    try:
        guide_box = Rect.from_dict(body['guide_box']) if body.get('guide_box') else None
        display_size = tuple(int(v) for v in body['display_size']) if body.get('display_size') else None
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({
            "success": False,
            "error": f"Invalid guide box: {e}",
            "error_code": "INVALID_GUIDE_BOX"
        }), 400

    try:
        result = scanner.manual_capture(guide_box, display_size)
        return jsonify(result.to_dict())
    except CameraError as e:
        return jsonify(handle_error(e))


@app.route('/api/result', methods=['GET'])
def api_result():
    """Last rectified page as PNG"""
    with scanner.listener.lock:
        image = scanner.listener.image

    if image is None:
        return jsonify({
            "success": False,
            "error": "No scan available",
            "error_code": "NO_RESULT"
        }), 404

    ok, buffer = cv2.imencode('.png', image.pixels)
    if not ok:
        return jsonify({
            "success": False,
            "error": "Could not encode scan",
            "error_code": "ENCODE_FAILED"
        }), 500
    return Response(buffer.tobytes(), mimetype='image/png')


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "marker-scan",
        "version": "1.0.0"
    })


@app.route("/api/detect", methods=["POST"])
def api_detect():
    """
    Detect the page corners in an uploaded image.

    Request:
        - multipart/form-data with 'image' field

    Response:
        {"success": true, "detected": true, "quad": {...}}
    """
    logger.info("API detect request received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    data = np.frombuffer(request.files['image'].read(), dtype=np.uint8)
    pixels = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if pixels is None:
        return jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400

    try:
        quad = scanner.detect_image(pixels)
    except DetectionError as e:
        response = handle_error(e)
        response["detected"] = False
        return jsonify(response), 422
    except ScannerError as e:
        return jsonify(handle_error(e)), 500

    return jsonify({
        "success": True,
        "detected": True,
        "quad": quad.to_dict()
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "camera_open": scanner.camera.is_opened(),
        "resolution": list(scanner.camera.get_resolution()),
        "strategy": scanner.orchestrator.strategy.value,
        "required_frames": scanner.config.stability.required_frames,
        "endpoints": {
            "health": "/health",
            "detect": "/api/detect",
            "result": "/api/result",
            "start_camera": "/start_camera",
            "stop_camera": "/stop_camera",
            "capture": "/capture",
            "detection_status": "/detection_status"
        }
    })


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    logger.info(f"Flask server starting (camera /dev/video{CAMERA_INDEX})")
    app.run(host='0.0.0.0', port=5000, debug=False, threaded=True)
