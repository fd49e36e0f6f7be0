"""
One calibration run: solve, evaluate, report, and optionally persist.
"""
from typing import Optional

from .config import PatternGeometry, SolverConfig
from .errors import DegenerateFit
from .evaluation import compute_reprojection_errors
from .logger import get_logger
from .observations import ObservationSet
from .projection import get_projection
from .solver import solve_calibration
from .storage import calibration_timestamp, save_calibration
from .structures import CalibrationReport

logger = get_logger(__name__)


def run_calibration(observations: ObservationSet, geometry: PatternGeometry,
                    solver_config: Optional[SolverConfig] = None,
                    projection="fisheye") -> CalibrationReport:
    """
    Solve and evaluate; raises InsufficientData or DegenerateFit.
    """
    solver_config = solver_config or SolverConfig()
    projection = get_projection(projection)

    result = solve_calibration(observations, geometry, solver_config, projection)
    model = result.camera_model
    if not result.valid:
        logger.error("Calibration failed (K=%s, D=%s)",
                     model.camera_matrix.tolist(), model.dist_coeffs.tolist())
        raise DegenerateFit(model.camera_matrix, model.dist_coeffs)

    errors = compute_reprojection_errors(
        observations, geometry.object_points(), result.poses, model
    )
    logger.info("Calibration succeeded. avg reprojection error = %.2f", errors.total)
    return CalibrationReport(
        camera_model=model,
        poses=result.poses,
        per_view_errors=errors.per_view,
        avg_error=errors.total,
        rms=result.rms,
        image_size=observations.image_size,
        calibration_time=calibration_timestamp(),
    )


def run_and_save(output_path, observations: ObservationSet, geometry: PatternGeometry,
                 solver_config: Optional[SolverConfig] = None, projection="fisheye",
                 write_extrinsics: bool = False,
                 write_points: bool = False) -> CalibrationReport:
    """run_calibration() followed by save_calibration(); nothing is written on failure."""
    solver_config = solver_config or SolverConfig()
    report = run_calibration(observations, geometry, solver_config, projection)
    save_calibration(
        output_path, report, geometry, solver_config,
        write_extrinsics=write_extrinsics, write_points=write_points,
        observations=observations,
    )
    return report
