"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraUnavailableError(CameraError):
    """Camera cannot deliver frames; ends the scanning session"""
    def __init__(self, message=None, error_code="CAMERA_UNAVAILABLE", details=None):
        super().__init__(
            message=message or "Camera is not available",
            error_code=error_code,
            details=details or {
                "suggestion": "Check camera connection and permissions"
            }
        )


class CameraNotFoundError(CameraUnavailableError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraUnavailableError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraUnavailableError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(CameraUnavailableError):
    """Failed to capture frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


# Layer 2 Errors - Detection (routine, counted as misses)
class DetectionError(ScannerError):
    """Per-frame detection errors"""
    pass


class InsufficientCandidatesError(DetectionError):
    """Fewer usable candidate points than corners needed"""
    def __init__(self, found, required=4):
        super().__init__(
            message=f"Found {found} candidate points, need at least {required}",
            error_code="INSUFFICIENT_CANDIDATES",
            details={
                "found": found,
                "required": required,
                "suggestion": "Make sure all four corner markers are visible"
            }
        )


class DegenerateGeometryError(DetectionError):
    """Resolved corners do not form a usable quadrilateral"""
    def __init__(self, reason, details=None):
        super().__init__(
            message=f"Degenerate quadrilateral: {reason}",
            error_code="DEGENERATE_GEOMETRY",
            details={"reason": reason, **(details or {})}
        )


# Layer 3 Errors - Rectification (surface to the user, re-arm scanning)
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class MarkerRefinementFailedError(ProcessingError):
    """Full-resolution marker search could not confirm a coarse corner"""
    def __init__(self, corner, search_radius=None):
        super().__init__(
            message=f"No corner marker found near the {corner} corner",
            error_code="MARKER_REFINEMENT_FAILED",
            details={
                "corner": corner,
                "search_radius": search_radius,
                "suggestion": "Hold the document still and keep all markers in view"
            }
        )


class RectificationError(ProcessingError):
    """Perspective warp or thresholding failed"""
    def __init__(self, reason):
        super().__init__(
            message=f"Rectification failed: {reason}",
            error_code="RECTIFICATION_FAILED",
            details={
                "reason": str(reason),
                "suggestion": "Retake the scan"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
