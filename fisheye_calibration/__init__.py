"""
Fisheye camera calibration (OpenCV)
- Pattern detection (chessboard, circle grids) and debounced view capture
- Joint nonlinear solve of intrinsics, fisheye distortion and view poses
- Reprojection error report and undistortion maps
- Outputs YAML/JSON calibration files
"""
from .config import CaptureConfig, PatternGeometry, PatternKind, SolverConfig
from .errors import (CalibrationError, ConfigurationError, DegenerateFit, DetectionMiss,
                     InsufficientData, PersistenceFailure)
from .projection import FisheyeProjection, PinholeProjection, ProjectionModel, get_projection
from .structures import CalibrationReport, CameraModel, ViewPose
from .detection import PatternDetection, detect_pattern
from .observations import Observation, ObservationSet, ObservationStore
from .solver import SolveResult, check_camera_model, solve_calibration
from .evaluation import ReprojectionErrors, compute_reprojection_errors
from .undistort import Undistorter
from .calibration import run_and_save, run_calibration
from .storage import load_calibration, read_image_list, save_calibration
from .session import CaptureSession, CaptureState, SessionEvent

__version__ = "1.0.0"

__all__ = [
    # Configuration
    'PatternGeometry',
    'PatternKind',
    'SolverConfig',
    'CaptureConfig',
    # Models
    'ProjectionModel',
    'FisheyeProjection',
    'PinholeProjection',
    'get_projection',
    'CameraModel',
    'ViewPose',
    'CalibrationReport',
    # Pipeline
    'PatternDetection',
    'detect_pattern',
    'Observation',
    'ObservationSet',
    'ObservationStore',
    'SolveResult',
    'solve_calibration',
    'check_camera_model',
    'ReprojectionErrors',
    'compute_reprojection_errors',
    'Undistorter',
    'run_calibration',
    'run_and_save',
    'save_calibration',
    'load_calibration',
    'read_image_list',
    'CaptureSession',
    'CaptureState',
    'SessionEvent',
    # Errors
    'CalibrationError',
    'DetectionMiss',
    'InsufficientData',
    'DegenerateFit',
    'PersistenceFailure',
    'ConfigurationError',
]
