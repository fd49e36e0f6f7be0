"""
Result records produced by a calibration run.
"""
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

from .projection import ProjectionModel, FisheyeProjection


def _frozen(array, dtype=np.float64, shape=None) -> np.ndarray:
    out = np.array(array, dtype=dtype)
    if shape is not None:
        out = out.reshape(shape)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class CameraModel:
    camera_matrix: np.ndarray               # 3x3, K[0, 1] = skew * fx
    dist_coeffs: np.ndarray                 # (k, ) distortion coefficients
    projection: ProjectionModel = field(default_factory=FisheyeProjection)

    def __post_init__(self):
        object.__setattr__(self, "camera_matrix", _frozen(self.camera_matrix, shape=(3, 3)))
        object.__setattr__(self, "dist_coeffs", _frozen(self.dist_coeffs).ravel())
        if self.dist_coeffs.size != self.projection.num_distortion_coeffs:
            raise ValueError(
                f"{self.projection.name} model expects {self.projection.num_distortion_coeffs} "
                f"distortion coefficients, got {self.dist_coeffs.size}"
            )

    @property
    def fx(self) -> float:
        return float(self.camera_matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.camera_matrix[1, 1])

    @property
    def cx(self) -> float:
        return float(self.camera_matrix[0, 2])

    @property
    def cy(self) -> float:
        return float(self.camera_matrix[1, 2])

    @property
    def skew(self) -> float:
        # alpha in the fisheye parameterisation
        return float(self.camera_matrix[0, 1] / self.camera_matrix[0, 0]) if self.fx else 0.0

    def project(self, object_points, pose: "ViewPose") -> np.ndarray:
        return self.projection.project(object_points, pose.rvec, pose.tvec,
                                       self.camera_matrix, self.dist_coeffs)

    def unproject(self, image_points) -> np.ndarray:
        return self.projection.unproject(image_points, self.camera_matrix, self.dist_coeffs)


@dataclass(frozen=True, eq=False)
class ViewPose:
    rvec: np.ndarray    # Rodrigues rotation vector (3, )
    tvec: np.ndarray    # translation (3, )

    def __post_init__(self):
        object.__setattr__(self, "rvec", _frozen(self.rvec).reshape(3))
        object.__setattr__(self, "tvec", _frozen(self.tvec).reshape(3))

    def as_row(self) -> np.ndarray:
        # 6-tuple used by the extrinsic_parameters section
        return np.concatenate([self.rvec, self.tvec])


@dataclass(frozen=True, eq=False)
class CalibrationReport:
    camera_model: CameraModel
    poses: Tuple[ViewPose, ...]
    per_view_errors: np.ndarray
    avg_error: float                # pooled RMS over every point of every view
    rms: float                      # RMS reported by the optimiser
    image_size: Tuple[int, int]
    calibration_time: str

    def __post_init__(self):
        object.__setattr__(self, "poses", tuple(self.poses))
        object.__setattr__(self, "per_view_errors", _frozen(self.per_view_errors).ravel())

    @property
    def frame_count(self) -> int:
        return len(self.poses)

    def extrinsics_matrix(self) -> np.ndarray:
        """(N, 6) rotation + translation per view."""
        if not self.poses:
            return np.zeros((0, 6))
        return np.stack([p.as_row() for p in self.poses], axis=0)
