"""
Capture session: drives detection, accumulation and the automatic solve.

States
  DETECTION   pattern is detected and shown, nothing is stored
  CAPTURING   full detections are stored (debounced) until the target count
  CALIBRATED  a report was produced and saved

Frame sourcing and any UI stay with the caller; the session only sees
materialised frames.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np
import cv2

from .calibration import run_and_save
from .config import CaptureConfig, PatternGeometry, SolverConfig
from .detection import PatternDetection, detect_pattern
from .errors import DegenerateFit
from .logger import get_logger
from .observations import ObservationStore
from .projection import get_projection
from .structures import CalibrationReport

logger = get_logger(__name__)


class CaptureState(Enum):
    DETECTION = "detection"
    CAPTURING = "capturing"
    CALIBRATED = "calibrated"


class SessionEvent(Enum):
    START_CAPTURE = "start_capture"
    CALIBRATION_SUCCEEDED = "calibration_succeeded"
    CALIBRATION_FAILED = "calibration_failed"


TRANSITIONS = {
    (CaptureState.DETECTION, SessionEvent.START_CAPTURE): CaptureState.CAPTURING,
    (CaptureState.CAPTURING, SessionEvent.START_CAPTURE): CaptureState.CAPTURING,
    (CaptureState.CALIBRATED, SessionEvent.START_CAPTURE): CaptureState.CAPTURING,
    (CaptureState.CAPTURING, SessionEvent.CALIBRATION_SUCCEEDED): CaptureState.CALIBRATED,
    (CaptureState.CAPTURING, SessionEvent.CALIBRATION_FAILED): CaptureState.DETECTION,
}


def next_state(state: CaptureState, event: SessionEvent) -> CaptureState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"No transition from {state.name} on {event.name}") from None


@dataclass(frozen=True, eq=False)
class FrameResult:
    detection: PatternDetection
    accepted: bool
    state: CaptureState
    report: Optional[CalibrationReport] = None


class CaptureSession:
    """
    One calibration pass over a frame source.

    live=False (closed image list): starts capturing right away, no
    debounce, target defaults to the number of images.
    live=True: starts in DETECTION and waits for start_capture().
    """

    def __init__(self, geometry: PatternGeometry, output_path,
                 capture_config: Optional[CaptureConfig] = None,
                 solver_config: Optional[SolverConfig] = None,
                 projection="fisheye", live: bool = True, frame_count: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.geometry = geometry
        self.output_path = output_path
        self.capture_config = capture_config or CaptureConfig()
        self.solver_config = solver_config or SolverConfig()
        self.projection = get_projection(projection)
        self.projection.validate(self.solver_config)
        self.live = live
        self.store = ObservationStore(geometry, clock=clock)
        self.report: Optional[CalibrationReport] = None

        target = self.capture_config.target_frames
        if target is None:
            target = frame_count if (not live and frame_count) else 10
        self.target_frames = target
        self.min_interval = self.capture_config.min_interval if live else 0.0
        self.state = CaptureState.DETECTION if live else CaptureState.CAPTURING

    def _fire(self, event: SessionEvent):
        new_state = next_state(self.state, event)
        if new_state is not self.state:
            logger.debug("State %s -> %s", self.state.name, new_state.name)
        self.state = new_state

    def start_capture(self):
        """Begin (or restart) a capture pass, discarding stored views."""
        self.store.reset()
        self.report = None
        self._fire(SessionEvent.START_CAPTURE)
        logger.info("Capturing %d views", self.target_frames)

    def preprocess(self, frame: np.ndarray) -> np.ndarray:
        if self.capture_config.flip_vertical:
            return cv2.flip(frame, 0)
        return frame

    def process_frame(self, frame: np.ndarray) -> FrameResult:
        frame = self.preprocess(frame)
        detection = detect_pattern(frame, self.geometry)

        accepted = False
        report = None
        if self.state is CaptureState.CAPTURING:
            accepted = self.store.try_add(detection, self.min_interval)
            if accepted:
                logger.info("%d/%d", self.store.count(), self.target_frames)
            if self.store.is_ready_for_solve(self.target_frames):
                report = self.calibrate()
        return FrameResult(detection=detection, accepted=accepted,
                           state=self.state, report=report)

    def finish(self) -> Optional[CalibrationReport]:
        """End of input: solve with whatever was accumulated."""
        if self.state is CaptureState.CAPTURING and self.store.count() > 0:
            return self.calibrate()
        return self.report

    def calibrate(self) -> Optional[CalibrationReport]:
        """
        Solve from a snapshot of the store.

        A degenerate fit returns the session to DETECTION and yields None;
        a persistence failure propagates.
        """
        observations = self.store.snapshot()
        try:
            report = run_and_save(
                self.output_path, observations, self.geometry, self.solver_config,
                projection=self.projection,
                write_extrinsics=self.capture_config.write_extrinsics,
                write_points=self.capture_config.write_points,
            )
        except DegenerateFit:
            self._fire(SessionEvent.CALIBRATION_FAILED)
            return None
        self.report = report
        self._fire(SessionEvent.CALIBRATION_SUCCEEDED)
        return report
