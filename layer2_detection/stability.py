"""
Layer 2 — Stability Tracking
Debounces per-frame detections and decides when to fire the capture.

Credit is instant and the penalty is delayed: every detection bumps the
stable count, but only a run of misses longer than the tolerance clears it.
Autofocus hunting or one blurred frame must not restart the count.

    IDLE --start--> SCANNING --detect--> LOCKING --N detections--> FIRED
                        ^                    |
                        +---- misses > tol --+
    cancel() -> IDLE from anywhere; rearm() -> SCANNING after a failed capture
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .geometry import Quadrilateral

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    LOCKING = "locking"
    FIRED = "fired"


class TrackerEvent(str, Enum):
    NONE = "none"
    LOCKING = "locking"  # first detection after scanning
    FIRED = "fired"      # stable long enough, capture now
    LOST = "lost"        # locked detection dropped after too many misses


@dataclass
class StabilityConfig:
    """Debounce settings."""
    required_frames: int = 15       # detections needed before firing
    miss_tolerance: int = 5         # misses absorbed before resetting
    max_corner_shift: Optional[float] = None  # pixels; None = ignore movement


@dataclass(frozen=True)
class DetectionState:
    phase: Phase = Phase.IDLE
    stable_count: int = 0
    miss_count: int = 0
    last_quad: Optional[Quadrilateral] = None
    detections_seen: int = 0  # every hit this session, kept when a lock drops


def advance(state: DetectionState,
            quad: Optional[Quadrilateral],
            config: StabilityConfig) -> Tuple[DetectionState, TrackerEvent]:
    """
    One tracker step.

    Args:
        state: Current state
        quad: Detected quadrilateral, or None for a miss
        config: Debounce settings

    Returns:
        (new_state, event)
    """
    if state.phase in (Phase.IDLE, Phase.FIRED):
        return state, TrackerEvent.NONE

    if quad is None:
        misses = state.miss_count + 1
        if misses <= config.miss_tolerance:
            return replace(state, miss_count=misses), TrackerEvent.NONE

        event = TrackerEvent.LOST if state.phase is Phase.LOCKING else TrackerEvent.NONE
        # The last quad survives so the manual shutter still has something to commit
        return replace(state, phase=Phase.SCANNING, stable_count=0, miss_count=misses), event

    seen = state.detections_seen + 1
    stable = state.stable_count + 1
    if (config.max_corner_shift is not None
            and state.last_quad is not None
            and quad.max_shift(state.last_quad) > config.max_corner_shift):
        # Document moved: this detection starts a new run
        stable = 1

    if stable >= config.required_frames:
        return DetectionState(Phase.FIRED, stable, 0, quad, seen), TrackerEvent.FIRED

    event = TrackerEvent.LOCKING if state.phase is Phase.SCANNING else TrackerEvent.NONE
    return DetectionState(Phase.LOCKING, stable, 0, quad, seen), event


class StabilityTracker:
    """
    Owner of the session's DetectionState.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        if self.config.required_frames < 1:
            raise ValueError("required_frames must be at least 1")
        if self.config.miss_tolerance < 0:
            raise ValueError("miss_tolerance must not be negative")
        self._state = DetectionState()

    @property
    def state(self) -> DetectionState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def progress(self) -> float:
        """Fraction of the required detections collected so far."""
        return min(1.0, self._state.stable_count / float(self.config.required_frames))

    def start(self):
        """Arm for a new session."""
        self._state = DetectionState(phase=Phase.SCANNING)
        logger.info(f"Tracker armed (need {self.config.required_frames} frames, "
                    f"miss tolerance {self.config.miss_tolerance})")

    def rearm(self):
        """Back to scanning after a failed capture; the camera stays live."""
        self._state = DetectionState(phase=Phase.SCANNING)
        logger.info("Tracker re-armed")

    def cancel(self):
        """Stop signal: clear everything."""
        if self._state.phase is not Phase.IDLE:
            logger.info(f"Tracker cancelled from {self._state.phase.value}")
        self._state = DetectionState()

    def update(self, quad: Optional[Quadrilateral]) -> TrackerEvent:
        """Feed one frame's outcome (quad or None)."""
        previous = self._state
        self._state, event = advance(previous, quad, self.config)

        if event is TrackerEvent.LOCKING:
            logger.debug("Detection acquired, locking")
        elif event is TrackerEvent.LOST:
            logger.info(f"Detection lost after {self._state.miss_count} misses "
                        f"(had {previous.stable_count} stable frames)")
        elif event is TrackerEvent.FIRED:
            logger.info(f"Stable for {self._state.stable_count} frames, firing capture")

        return event

    def commit(self) -> Optional[Quadrilateral]:
        """Manual override: the last detection regardless of stable count."""
        return self._state.last_quad
