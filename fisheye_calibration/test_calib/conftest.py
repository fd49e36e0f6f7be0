import numpy as np
import cv2
import pytest

from fisheye_calibration.config import PatternGeometry
from fisheye_calibration.evaluation import compute_reprojection_errors
from fisheye_calibration.observations import ObservationSet
from fisheye_calibration.projection import FisheyeProjection
from fisheye_calibration.structures import CalibrationReport, CameraModel, ViewPose

IMAGE_SIZE = (640, 480)
TRUE_K = np.array([[300.0, 0.0, 322.0],
                   [0.0, 300.0, 236.0],
                   [0.0, 0.0, 1.0]])
TRUE_D = np.array([0.05, -0.01, 0.003, -0.001])


def board_poses(geometry: PatternGeometry, n: int):
    """Deterministic poses spreading the board over the field of view."""
    centre = geometry.object_points().mean(axis=0)
    poses = []
    for i in range(n):
        rvec = np.array([0.3 * np.sin(1.7 * i + 0.3), 0.3 * np.cos(1.3 * i), 0.1 * np.sin(0.7 * i)])
        R, _ = cv2.Rodrigues(rvec)
        position = np.array([0.06 * np.cos(0.9 * i), 0.045 * np.sin(1.1 * i), 0.2 + 0.02 * (i % 3)])
        tvec = position - R @ centre
        poses.append(ViewPose(rvec=rvec, tvec=tvec))
    return poses


def project_views(geometry: PatternGeometry, model: CameraModel, poses):
    obj = geometry.object_points()
    return [model.project(obj, pose) for pose in poses]


def synthetic_set(geometry, model, poses, image_size=IMAGE_SIZE) -> ObservationSet:
    return ObservationSet.from_points(project_views(geometry, model, poses), image_size)


@pytest.fixture
def geometry():
    return PatternGeometry(board_width=4, board_height=5, square_size=0.025)


@pytest.fixture
def true_model():
    return CameraModel(camera_matrix=TRUE_K, dist_coeffs=TRUE_D, projection=FisheyeProjection())


@pytest.fixture
def true_poses(geometry):
    return board_poses(geometry, 10)


@pytest.fixture
def observations(geometry, true_model, true_poses):
    return synthetic_set(geometry, true_model, true_poses)


@pytest.fixture
def report(geometry, true_model, true_poses, observations):
    errors = compute_reprojection_errors(observations, geometry.object_points(),
                                         true_poses, true_model)
    return CalibrationReport(
        camera_model=true_model,
        poses=true_poses,
        per_view_errors=errors.per_view,
        avg_error=errors.total,
        rms=errors.total,
        image_size=IMAGE_SIZE,
        calibration_time="Mon Jan  1 00:00:00 2024",
    )


def render_chessboard(geometry: PatternGeometry, square_px=40, margin=60):
    """White-bordered chessboard image and the pixel positions of its inner corners."""
    cols, rows = geometry.board_width + 1, geometry.board_height + 1
    h, w = 2 * margin + rows * square_px, 2 * margin + cols * square_px
    img = np.full((h, w), 255, np.uint8)
    for r in range(rows):
        for c in range(cols):
            if (r + c) % 2 == 0:
                y0, x0 = margin + r * square_px, margin + c * square_px
                img[y0:y0 + square_px, x0:x0 + square_px] = 0
    corners = np.array([
        (margin + (j + 1) * square_px - 0.5, margin + (i + 1) * square_px - 0.5)
        for i in range(geometry.board_height) for j in range(geometry.board_width)
    ])
    return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR), corners


def render_fisheye_view(geometry: PatternGeometry, model: CameraModel, pose: ViewPose,
                        image_size=IMAGE_SIZE):
    """Chessboard seen through `model` from `pose`, one ray per pixel, white background."""
    w, h = image_size
    s = geometry.square_size
    xs, ys = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    rays = model.unproject(np.stack([xs.ravel(), ys.ravel()], axis=1))
    rays = np.hstack([rays, np.ones((len(rays), 1))])

    # intersect every ray with the board plane z = 0 in board coordinates
    R, _ = cv2.Rodrigues(pose.rvec)
    d = rays @ R
    origin = R.T @ pose.tvec
    with np.errstate(divide="ignore", invalid="ignore"):
        lam = origin[2] / d[:, 2]
    board = lam[:, None] * d - origin
    X, Y = board[:, 0], board[:, 1]

    inside = (np.isfinite(lam) & (lam > 0)
              & (X >= -s) & (X < geometry.board_width * s)
              & (Y >= -s) & (Y < geometry.board_height * s))
    parity = (np.floor(np.nan_to_num(X) / s) + np.floor(np.nan_to_num(Y) / s)) % 2 == 0
    img = np.full(w * h, 255, np.uint8)
    img[inside & parity] = 0
    return cv2.cvtColor(img.reshape(h, w), cv2.COLOR_GRAY2BGR)
