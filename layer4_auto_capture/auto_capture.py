"""
Layer 4 — Auto-Capture Orchestration
Drives the per-frame scan loop and fires a single high-resolution capture.

Each tick:
1. Check the cancellation token (the only suspension point)
2. Pull a capture-resolution frame and downscale it into the work buffer
3. Extract candidates, resolve corners, feed the stability tracker
4. On FIRED, rectify against the same tick's full-resolution frame

Per-frame detection failures are misses, never errors. A failed capture
(refinement or warp) re-arms scanning with the camera still live.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

from error_handlers import (
    CameraUnavailableError,
    DetectionError,
    ProcessingError,
)
from layer1_capture.display import Rect, display_to_capture
from layer1_capture.frames import Frame, Space, WorkBuffer
from layer2_detection.candidates import CandidateExtractor, EdgeConfig, MarkerConfig, Strategy
from layer2_detection.corners import CornerResolver
from layer2_detection.geometry import Quadrilateral
from layer2_detection.stability import Phase, StabilityConfig, StabilityTracker, TrackerEvent
from layer3_rectification.rectifier import RectifiedImage, Rectifier, RectifierConfig

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Configuration for the capture loop. All thresholds are tuning values."""
    strategy: str = Strategy.MARKER.value
    work_max_side: int = 800           # longest side of detection frames
    tick_interval: float = 1.0 / 30.0  # seconds between ticks in run()
    min_span_ratio: float = 0.3        # quad top edge vs frame width

    marker: MarkerConfig = field(default_factory=MarkerConfig)
    edge: EdgeConfig = field(default_factory=EdgeConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    rectifier: RectifierConfig = field(default_factory=RectifierConfig)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "CaptureConfig":
        """Defaults overridden by SCAN_* environment variables."""
        env = os.environ if environ is None else environ
        cfg = cls()
        cfg.strategy = env.get('SCAN_STRATEGY', cfg.strategy)
        cfg.work_max_side = int(env.get('SCAN_WORK_MAX_SIDE', cfg.work_max_side))
        cfg.stability.required_frames = int(env.get('SCAN_REQUIRED_FRAMES', cfg.stability.required_frames))
        cfg.stability.miss_tolerance = int(env.get('SCAN_MISS_TOLERANCE', cfg.stability.miss_tolerance))
        if 'SCAN_REFINE_MARKERS' in env:
            cfg.rectifier.refine_with_markers = env['SCAN_REFINE_MARKERS'].lower() in ('1', 'true', 'yes')
        return cfg


@dataclass
class CaptureResult:
    """Result of a capture attempt."""
    success: bool
    image: Optional[RectifiedImage] = None
    quad: Optional[Quadrilateral] = None
    timestamp: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'success': self.success,
            'timestamp': self.timestamp,
            'error': self.error,
            'error_code': self.error_code,
            'metadata': self.metadata
        }
        if self.quad:
            result['quad'] = self.quad.to_dict()
        if self.image is not None:
            result['image'] = self.image.to_dict()
        return result


class CancellationToken:
    """Shared stop flag, set by session teardown and checked every tick."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def reset(self):
        self._event.clear()


class ScanListener:
    """
    UI notifications. Subclass and override what you need.
    """

    def on_quad_stable(self, quad: Quadrilateral):
        pass

    def on_capture_ready(self, image: RectifiedImage):
        pass

    def on_detection_lost(self):
        pass

    def on_capture_failed(self, error: ProcessingError):
        pass


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


class CaptureOrchestrator:
    """
    One scanning session over a frame source.

    The source only needs current_frame() -> Frame (capture resolution);
    CameraHandler is the production implementation.
    """

    def __init__(self,
                 source,
                 config: Optional[CaptureConfig] = None,
                 listener: Optional[ScanListener] = None,
                 token: Optional[CancellationToken] = None):
        self.source = source
        self.config = config or CaptureConfig()
        self.listener = listener or ScanListener()
        self.token = token or CancellationToken()

        cfg = self.config
        self.strategy = Strategy(cfg.strategy)
        self.extractor = CandidateExtractor(self.strategy, cfg.marker, cfg.edge)
        self.resolver = CornerResolver(cfg.min_span_ratio)
        self.tracker = StabilityTracker(cfg.stability)
        self.rectifier = Rectifier(cfg.rectifier, cfg.marker)
        self.work_buffer = WorkBuffer(cfg.work_max_side)

        # Markers only exist to be refined against in marker and hybrid modes
        self.refine = cfg.rectifier.refine_with_markers and self.strategy is not Strategy.EDGE

        self.ticks = 0
        self.last_result: Optional[CaptureResult] = None
        self.last_detection_error: Optional[DetectionError] = None

        logger.info("CaptureOrchestrator initialized")
        logger.debug(f"Config: {self.config}")

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return not self.token.cancelled and self.tracker.phase in (Phase.SCANNING, Phase.LOCKING)

    def start(self):
        """Begin a fresh session."""
        self.token.reset()
        self.tracker.start()
        self.ticks = 0
        self.last_result = None
        self.last_detection_error = None
        logger.info(f"Scan session started (strategy={self.strategy.value})")

    def resume(self):
        """Continue a paused session without clearing detection state."""
        if self.tracker.phase in (Phase.SCANNING, Phase.LOCKING):
            self.token.reset()

    def stop(self):
        """Cancel: abandon in-flight work, clear counters, go IDLE."""
        self.token.cancel()
        self.tracker.cancel()
        self.work_buffer.release()
        logger.info("Scan session stopped")

    # ------------------------------------------------------------------
    # Per-frame work
    # ------------------------------------------------------------------

    def detect(self, frame: Frame) -> Quadrilateral:
        """
        Detect the page in one capture-resolution frame.

        Returns:
            Quadrilateral in capture space

        Raises:
            InsufficientCandidatesError, DegenerateGeometryError
        """
        with self.work_buffer.acquire(frame) as (work, scale):
            candidates = self.extractor.extract(work)
            quad = self.resolver.resolve(candidates, work.width)
        return quad.scaled(1.0 / scale, Space.CAPTURE)

    def tick(self) -> Optional[CaptureResult]:
        """
        Process one frame.

        Returns:
            CaptureResult when a capture was attempted this tick, else None

        Raises:
            CameraUnavailableError: The source failed; the session is ended
        """
        if self.token.cancelled:
            return None
        if self.tracker.phase not in (Phase.SCANNING, Phase.LOCKING):
            return None

        try:
            frame = self.source.current_frame()
        except CameraUnavailableError as e:
            logger.error(f"Camera unavailable, ending session: {e.message}")
            self.stop()
            raise

        self.ticks += 1

        try:
            quad = self.detect(frame)
            self.last_detection_error = None
        except DetectionError as e:
            logger.debug(f"Tick {self.ticks}: {e.error_code} - {e.message}")
            self.last_detection_error = e
            quad = None

        event = self.tracker.update(quad)

        if event is TrackerEvent.LOST:
            self.listener.on_detection_lost()
        elif event is TrackerEvent.FIRED:
            return self._capture(frame, quad, refine=self.refine, mode='auto')

        return None

    def _capture(self, frame: Frame, quad: Quadrilateral, refine: bool, mode: str) -> CaptureResult:
        """Rectify and report. Failures re-arm scanning."""
        timestamp = _timestamp()
        self.listener.on_quad_stable(quad)

        metadata = {
            'mode': mode,
            'ticks': self.ticks,
            'stable_count': self.tracker.state.stable_count,
            'capture_size': list(frame.size),
            'strategy': self.strategy.value,
        }

        try:
            image = self.rectifier.rectify(frame, quad, refine=refine)
        except ProcessingError as e:
            logger.warning(f"Capture failed ({e.error_code}), re-arming scan")
            if not self.token.cancelled:
                self.tracker.rearm()
            self.listener.on_capture_failed(e)
            self.last_result = CaptureResult(
                success=False,
                quad=quad,
                timestamp=timestamp,
                error=e.message,
                error_code=e.error_code,
                metadata=metadata
            )
            return self.last_result

        if self.token.cancelled:
            # Stopped while rectifying: drop the image
            logger.info("Capture abandoned, session was cancelled")
            self.last_result = CaptureResult(
                success=False,
                quad=quad,
                timestamp=timestamp,
                error="Scan cancelled",
                error_code="SCAN_CANCELLED",
                metadata=metadata
            )
            return self.last_result

        # A successful capture ends the session
        self.token.cancel()
        self.listener.on_capture_ready(image)

        self.last_result = CaptureResult(
            success=True,
            image=image,
            quad=image.source_quad,
            timestamp=timestamp,
            metadata=metadata
        )
        logger.info(f"Capture complete ({mode}) after {self.ticks} ticks")
        return self.last_result

    # ------------------------------------------------------------------
    # Loops and overrides
    # ------------------------------------------------------------------

    def run(self, timeout_seconds: Optional[float] = None, max_ticks: Optional[int] = None) -> CaptureResult:
        """
        Tick until a capture succeeds, the session is cancelled, or a limit
        is hit. Starts a session if none is armed.

        Raises:
            CameraUnavailableError: The source failed
        """
        if self.tracker.phase is Phase.IDLE and not self.token.cancelled:
            self.start()

        started = time.monotonic()
        ticks = 0

        while not self.token.cancelled:
            if timeout_seconds is not None and time.monotonic() - started >= timeout_seconds:
                return CaptureResult(
                    success=False,
                    timestamp=_timestamp(),
                    error=f"Timeout after {timeout_seconds}s waiting for stable document",
                    error_code="SCAN_TIMEOUT"
                )
            if max_ticks is not None and ticks >= max_ticks:
                return CaptureResult(
                    success=False,
                    timestamp=_timestamp(),
                    error=f"No capture after {ticks} frames",
                    error_code="NO_CAPTURE"
                )

            result = self.tick()
            ticks += 1
            if result is not None and result.success:
                return result

            if self.config.tick_interval > 0:
                time.sleep(self.config.tick_interval)

        if self.last_result is not None and self.last_result.success:
            return self.last_result
        return CaptureResult(
            success=False,
            timestamp=_timestamp(),
            error="Scan cancelled",
            error_code="SCAN_CANCELLED"
        )

    def commit_manual(self,
                      guide_box: Optional[Rect] = None,
                      display_size: Optional[Tuple[int, int]] = None) -> CaptureResult:
        """
        Shutter button: capture now.

        Uses the last detection regardless of stability; with none, falls
        back to the on-screen guide box mapped into capture pixels.

        Raises:
            CameraUnavailableError: The source failed
        """
        frame = self.source.current_frame()
        if self.tracker.state.detections_seen > 0:
            quad = self.tracker.commit()
            logger.info(f"Manual capture with last of {self.tracker.state.detections_seen} detections")
            return self._capture(frame, quad, refine=self.refine, mode='manual')

        if guide_box is None or display_size is None:
            logger.info("Manual capture requested with nothing to commit")
            return CaptureResult(
                success=False,
                timestamp=_timestamp(),
                error="No document detected and no guide box supplied",
                error_code="NOTHING_TO_COMMIT"
            )

        region = display_to_capture(guide_box, frame.size, display_size)
        if region.width < 1 or region.height < 1:
            return CaptureResult(
                success=False,
                timestamp=_timestamp(),
                error="Guide box lies outside the video frame",
                error_code="EMPTY_GUIDE_BOX"
            )

        logger.info(f"Manual capture with guide box {region.to_dict()}")
        quad = Quadrilateral.from_rect(region, Space.CAPTURE)
        # No markers are known inside an arbitrary guide box
        return self._capture(frame, quad, refine=False, mode='guide_box')
