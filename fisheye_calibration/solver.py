"""
Camera-model solve.

Fits intrinsics, distortion coefficients and one pose per view to every
accumulated observation at once, minimising the stacked pixel residual
(observed - projected) with scipy's trust-region least squares.

Two stages:
  1. focal length, principal point and poses with distortion held at zero
  2. every free parameter jointly
With SolverConfig.recompute_extrinsic every pose is re-seeded by PnP from the
stage-2 model and stage 2 runs once more; the lower-cost fit is kept.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import cv2
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .config import PatternGeometry, SolverConfig
from .errors import InsufficientData
from .logger import get_logger
from .observations import ObservationSet
from .projection import ProjectionModel, get_projection
from .structures import CameraModel, ViewPose

logger = get_logger(__name__)

# Anything beyond this magnitude is treated as a diverged solve.
MAX_PARAMETER_MAGNITUDE = 1e6

# Normalised radius above which a point is left out of the pose initialisation
# (about 84 degrees off axis).
MAX_INIT_RADIUS = 10.0


@dataclass(frozen=True, eq=False)
class SolveResult:
    camera_model: CameraModel
    poses: Tuple[ViewPose, ...]
    rms: float
    valid: bool
    iterations: int


def initial_camera_matrix(projection: ProjectionModel, image_size,
                          config: SolverConfig) -> np.ndarray:
    w, h = image_size
    f = projection.initial_focal(image_size)
    K = np.eye(3)
    K[0, 0] = f * config.aspect_ratio if config.fix_aspect_ratio else f
    K[1, 1] = f
    K[0, 2] = w / 2.0 - 0.5
    K[1, 2] = h / 2.0 - 0.5
    return K


def check_camera_model(model: CameraModel) -> bool:
    """Sanity check of a fitted model: finite, positive focal lengths, sane magnitudes."""
    values = np.concatenate([model.camera_matrix.ravel(), model.dist_coeffs.ravel()])
    if not np.all(np.isfinite(values)):
        return False
    if model.fx <= 0 or model.fy <= 0:
        return False
    return bool(np.all(np.abs(values) <= MAX_PARAMETER_MAGNITUDE))


def estimate_pose(projection: ProjectionModel, object_points, image_points,
                  camera_matrix, dist_coeffs):
    """Board pose for one view from its pixels and the current intrinsics."""
    model = CameraModel(camera_matrix, dist_coeffs, projection)
    normalized = model.unproject(image_points)
    usable = np.all(np.isfinite(normalized), axis=1)
    usable &= np.linalg.norm(np.nan_to_num(normalized), axis=1) < MAX_INIT_RADIUS
    rvec, tvec = np.zeros(3), np.array([0.0, 0.0, 1.0])
    if usable.sum() < 4:
        logger.debug("Too few usable points for pose initialisation, using a frontal guess")
        return rvec, tvec
    try:
        ok, r, t = cv2.solvePnP(
            np.ascontiguousarray(object_points[usable], np.float64),
            np.ascontiguousarray(normalized[usable], np.float64),
            np.eye(3), None
        )
    except cv2.error as e:
        logger.debug("solvePnP failed: %s", e)
        return rvec, tvec
    if ok and np.all(np.isfinite(r)) and np.all(np.isfinite(t)):
        return r.reshape(3), t.reshape(3)
    return rvec, tvec


class ParameterLayout:
    """Maps the free camera parameters and poses to the optimisation vector."""

    def __init__(self, projection: ProjectionModel, config: SolverConfig,
                 base_matrix: np.ndarray, base_dist: np.ndarray, n_views: int,
                 hold_distortion: bool = False):
        self.projection = projection
        self.n_views = n_views
        self.aspect_ratio = config.aspect_ratio
        self.free_principal = not config.fix_principal_point
        self.free_skew = projection.supports_skew and not config.fix_skew and not hold_distortion

        pinned = np.array(projection.pinned_distortion(config), bool)
        if hold_distortion:
            pinned[:] = True
        self.dist_index = np.flatnonzero(~pinned)

        self.base_matrix = np.array(base_matrix, np.float64)
        self.base_dist = np.array(base_dist, np.float64).ravel()
        self.base_dist[pinned] = 0.0

        n_focal = 1 if self.aspect_ratio is not None else 2
        self.n_intrinsic = (n_focal + 2 * self.free_principal + int(self.free_skew)
                            + len(self.dist_index))

    @property
    def size(self) -> int:
        return self.n_intrinsic + 6 * self.n_views

    def pack(self, camera_matrix, dist_coeffs, poses) -> np.ndarray:
        K = np.asarray(camera_matrix, np.float64)
        params: List[float] = []
        if self.aspect_ratio is not None:
            params.append(K[1, 1])
        else:
            params += [K[0, 0], K[1, 1]]
        if self.free_principal:
            params += [K[0, 2], K[1, 2]]
        if self.free_skew:
            params.append(K[0, 1] / K[0, 0])
        params += list(np.asarray(dist_coeffs, np.float64).ravel()[self.dist_index])
        for rvec, tvec in poses:
            params += list(np.ravel(rvec)) + list(np.ravel(tvec))
        return np.array(params, np.float64)

    def unpack(self, x: np.ndarray):
        K = self.base_matrix.copy()
        if self.aspect_ratio is not None:
            K[0, 0] = self.aspect_ratio * x[0]
            K[1, 1] = x[0]
            i = 1
        else:
            K[0, 0], K[1, 1] = x[0], x[1]
            i = 2
        if self.free_principal:
            K[0, 2], K[1, 2] = x[i], x[i + 1]
            i += 2
        alpha = 0.0     # pinned skew stays at zero
        if self.free_skew:
            alpha = x[i]
            i += 1
        K[0, 1] = alpha * K[0, 0]

        D = self.base_dist.copy()
        D[self.dist_index] = x[i:i + len(self.dist_index)]
        i += len(self.dist_index)

        pose_block = x[i:].reshape(self.n_views, 6)
        poses = [(row[:3].copy(), row[3:].copy()) for row in pose_block]
        return K, D, poses

    def jacobian_sparsity(self, points_per_view: List[int]):
        # residuals of a view depend on the intrinsics and that view's pose only
        m = 2 * sum(points_per_view)
        A = lil_matrix((m, self.size), dtype=int)
        A[:, :self.n_intrinsic] = 1
        row = 0
        for v, count in enumerate(points_per_view):
            col = self.n_intrinsic + 6 * v
            A[row:row + 2 * count, col:col + 6] = 1
            row += 2 * count
        return A


def _residuals(x, layout: ParameterLayout, object_points, image_points):
    K, D, poses = layout.unpack(x)
    res = [
        (layout.projection.project(object_points, rvec, tvec, K, D) - observed).ravel()
        for (rvec, tvec), observed in zip(poses, image_points)
    ]
    return np.concatenate(res)


def _refine(layout: ParameterLayout, x0, object_points, image_points, config: SolverConfig):
    residuals = _residuals(x0, layout, object_points, image_points)
    if not np.all(np.isfinite(residuals)):
        logger.warning("Initial residuals are not finite, skipping refinement")
        return x0, None

    result = least_squares(
        _residuals, x0,
        args=(layout, object_points, image_points),
        jac='2-point',
        jac_sparsity=layout.jacobian_sparsity([len(p) for p in image_points]),
        method='trf',
        x_scale='jac',
        ftol=config.tolerance,
        xtol=config.tolerance,
        gtol=config.tolerance,
        max_nfev=config.max_iterations,
    )
    logger.debug("least_squares: status=%d nfev=%d cost=%.6g (%s)",
                 result.status, result.nfev, result.cost, result.message)
    return result.x, result


def solve_calibration(observations: ObservationSet, geometry: PatternGeometry,
                      config: Optional[SolverConfig] = None,
                      projection=None) -> SolveResult:
    """
    Fit a camera model and one ViewPose per observation.

    Raises InsufficientData for an empty observation set. A set too small
    to constrain every free parameter is still solved; the outcome is
    reported through SolveResult.valid.
    """
    config = config or SolverConfig()
    projection = get_projection(projection or "fisheye")
    projection.validate(config)

    n_views = len(observations)
    if n_views == 0:
        raise InsufficientData(count=0, required=1)

    object_points = geometry.object_points()
    image_points = [np.asarray(p, np.float64).reshape(-1, 2) for p in observations.image_points]
    for i, pts in enumerate(image_points):
        if len(pts) != geometry.point_count:
            raise ValueError(f"View {i} has {len(pts)} points, pattern has {geometry.point_count}")
    image_size = observations.image_size
    total_points = sum(len(p) for p in image_points)

    logger.info("Solving %s model from %d views (%d points)",
                projection.name, n_views, total_points)

    # --- 1) intrinsics and poses, distortion held at zero ---
    K = initial_camera_matrix(projection, image_size, config)
    D = projection.zero_distortion()
    poses = [estimate_pose(projection, object_points, pts, K, D) for pts in image_points]

    layout = ParameterLayout(projection, config, K, D, n_views, hold_distortion=True)
    x, _ = _refine(layout, layout.pack(K, D, poses), object_points, image_points, config)
    K, D, poses = layout.unpack(x)
    logger.debug("Stage 1: fx=%.3f fy=%.3f cx=%.3f cy=%.3f", K[0, 0], K[1, 1], K[0, 2], K[1, 2])

    # --- 2) joint refinement of every free parameter ---
    layout = ParameterLayout(projection, config, K, D, n_views)
    x, result = _refine(layout, layout.pack(K, D, poses), object_points, image_points, config)
    residuals = _residuals(x, layout, object_points, image_points)

    if config.recompute_extrinsic:
        # re-seed every pose from the full model and refine again, keep the better fit
        K, D, _ = layout.unpack(x)
        poses = [estimate_pose(projection, object_points, pts, K, D) for pts in image_points]
        x2, result2 = _refine(layout, layout.pack(K, D, poses), object_points, image_points,
                              config)
        residuals2 = _residuals(x2, layout, object_points, image_points)
        if np.all(np.isfinite(residuals2)) and np.sum(residuals2 ** 2) < np.sum(residuals ** 2):
            logger.debug("Re-seeded poses lowered the cost")
            x, result, residuals = x2, result2, residuals2
    K, D, poses = layout.unpack(x)

    rms = float(np.sqrt(np.sum(residuals ** 2) / total_points))

    model = CameraModel(camera_matrix=K, dist_coeffs=D, projection=projection)
    view_poses = tuple(ViewPose(rvec=r, tvec=t) for r, t in poses)
    valid = check_camera_model(model) and all(
        np.all(np.isfinite(p.as_row())) for p in view_poses
    )
    if not valid:
        logger.warning("Solve produced an out-of-range camera model")

    logger.info("RMS error reported by solver: %g", rms)
    return SolveResult(
        camera_model=model,
        poses=view_poses,
        rms=rms,
        valid=valid,
        iterations=result.nfev if result is not None else 0,
    )
