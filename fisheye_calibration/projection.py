"""
Projection models (fisheye, pinhole)

Both variants expose the same capability so detection, solve, evaluation
and undistortion are written once:
- project / unproject points
- distortion coefficient layout and pinning
- new camera matrix and undistortion maps
- OpenCV flag bitmask used in the calibration file
"""
from abc import ABC, abstractmethod
from typing import Dict, Tuple

import numpy as np
import cv2

from .errors import ConfigurationError


class ProjectionModel(ABC):
    name = ""
    distortion_names: Tuple[str, ...] = ()
    supports_skew = False

    @property
    def num_distortion_coeffs(self) -> int:
        return len(self.distortion_names)

    def zero_distortion(self) -> np.ndarray:
        return np.zeros(self.num_distortion_coeffs, np.float64)

    def validate(self, config):
        """Reject options that make no sense for this model."""

    @abstractmethod
    def initial_focal(self, image_size) -> float:
        """Focal length the solve starts from."""

    @abstractmethod
    def pinned_distortion(self, config) -> Tuple[bool, ...]:
        """One flag per distortion coefficient, True when held at zero."""

    @abstractmethod
    def flags(self, config) -> int:
        ...

    @abstractmethod
    def options_from_flags(self, flags: int) -> Dict[str, bool]:
        ...

    @abstractmethod
    def flag_names(self, flags: int):
        ...

    @abstractmethod
    def project(self, object_points, rvec, tvec, camera_matrix, dist_coeffs) -> np.ndarray:
        """Project (N, 3) board points with one pose, returns (N, 2) pixels."""

    @abstractmethod
    def unproject(self, image_points, camera_matrix, dist_coeffs) -> np.ndarray:
        """Pixels (N, 2) to normalized, undistorted image coordinates (N, 2)."""

    @abstractmethod
    def estimate_new_camera_matrix(self, camera_matrix, dist_coeffs, image_size,
                                   balance=1.0, fov_scale=1.0) -> np.ndarray:
        ...

    @abstractmethod
    def init_undistort_map(self, camera_matrix, dist_coeffs, new_camera_matrix,
                           image_size, map_type=cv2.CV_16SC2):
        ...

    def __repr__(self):
        return f"{type(self).__name__}()"


def _as_points3(object_points) -> np.ndarray:
    return np.ascontiguousarray(object_points, np.float64).reshape(-1, 1, 3)


def _as_points2(image_points) -> np.ndarray:
    return np.ascontiguousarray(image_points, np.float64).reshape(-1, 1, 2)


def _as_vec3(v) -> np.ndarray:
    return np.ascontiguousarray(v, np.float64).reshape(3, 1)


def _image_size(image_size) -> Tuple[int, int]:
    return (int(image_size[0]), int(image_size[1]))


def fisheye_flag(const: str) -> int:
    """cv2.fisheye.CALIB_* constant; OpenCV 5 moved these onto cv2 itself."""
    value = getattr(cv2.fisheye, const, None)
    if value is None:
        value = getattr(cv2, const)
    return int(value)


class FisheyeProjection(ProjectionModel):
    """Equidistant fisheye model: theta_d = theta (1 + k1 th^2 + k2 th^4 + k3 th^6 + k4 th^8)."""
    name = "fisheye"
    distortion_names = ("k1", "k2", "k3", "k4")
    supports_skew = True

    _FLAG_OPTIONS = (
        ("recompute_extrinsic", "CALIB_RECOMPUTE_EXTRINSIC", "recompute_extrinsic"),
        ("fix_skew", "CALIB_FIX_SKEW", "fix_skew"),
        ("fix_k1", "CALIB_FIX_K1", "fix_k1"),
        ("fix_k2", "CALIB_FIX_K2", "fix_k2"),
        ("fix_k3", "CALIB_FIX_K3", "fix_k3"),
        ("fix_k4", "CALIB_FIX_K4", "fix_k4"),
        ("fix_principal_point", "CALIB_FIX_PRINCIPAL_POINT", "fix_principal_point"),
    )

    def validate(self, config):
        if config.zero_tangent_dist:
            raise ConfigurationError(
                "zero_tangent_dist", True, "the fisheye model has no tangential terms"
            )

    def initial_focal(self, image_size) -> float:
        return max(image_size) / np.pi

    def pinned_distortion(self, config):
        return config.fixed_coefficients

    def flags(self, config) -> int:
        flags = 0
        for option, const, _ in self._FLAG_OPTIONS:
            if getattr(config, option):
                flags |= fisheye_flag(const)
        return flags

    def options_from_flags(self, flags: int):
        return {option: bool(flags & fisheye_flag(const))
                for option, const, _ in self._FLAG_OPTIONS}

    def flag_names(self, flags: int):
        return [label for _, const, label in self._FLAG_OPTIONS
                if flags & fisheye_flag(const)]

    def project(self, object_points, rvec, tvec, camera_matrix, dist_coeffs):
        K = np.asarray(camera_matrix, np.float64)
        # cv2.fisheye reads skew from alpha, not from K[0, 1]
        alpha = K[0, 1] / K[0, 0] if K[0, 0] != 0 else 0.0
        projected, _ = cv2.fisheye.projectPoints(
            _as_points3(object_points), _as_vec3(rvec), _as_vec3(tvec),
            K, np.asarray(dist_coeffs, np.float64).reshape(4, 1), alpha=alpha
        )
        return projected.reshape(-1, 2)

    def unproject(self, image_points, camera_matrix, dist_coeffs):
        K = np.array(camera_matrix, np.float64)
        pts = np.array(image_points, np.float64).reshape(-1, 2)
        if K[0, 1] != 0:
            # undo the shear before cv2.fisheye.undistortPoints, which ignores it
            pts[:, 0] -= K[0, 1] * (pts[:, 1] - K[1, 2]) / K[1, 1]
            K[0, 1] = 0.0
        normalized = cv2.fisheye.undistortPoints(
            _as_points2(pts), K, np.asarray(dist_coeffs, np.float64).reshape(4, 1)
        )
        return normalized.reshape(-1, 2)

    def estimate_new_camera_matrix(self, camera_matrix, dist_coeffs, image_size,
                                   balance=1.0, fov_scale=1.0):
        size = _image_size(image_size)
        return cv2.fisheye.estimateNewCameraMatrixForUndistortRectify(
            np.asarray(camera_matrix, np.float64),
            np.asarray(dist_coeffs, np.float64).reshape(4, 1),
            size, np.eye(3), balance=balance, new_size=size, fov_scale=fov_scale
        )

    def init_undistort_map(self, camera_matrix, dist_coeffs, new_camera_matrix,
                           image_size, map_type=cv2.CV_16SC2):
        return cv2.fisheye.initUndistortRectifyMap(
            np.asarray(camera_matrix, np.float64),
            np.asarray(dist_coeffs, np.float64).reshape(4, 1),
            np.eye(3), np.asarray(new_camera_matrix, np.float64),
            _image_size(image_size), map_type
        )


class PinholeProjection(ProjectionModel):
    """Radial-tangential pinhole model (k1, k2, p1, p2, k3), no skew."""
    name = "pinhole"
    distortion_names = ("k1", "k2", "p1", "p2", "k3")
    supports_skew = False

    _FLAG_OPTIONS = (
        ("fix_aspect_ratio", "CALIB_FIX_ASPECT_RATIO", "fix_aspectRatio"),
        ("fix_principal_point", "CALIB_FIX_PRINCIPAL_POINT", "fix_principal_point"),
        ("zero_tangent_dist", "CALIB_ZERO_TANGENT_DIST", "zero_tangent_dist"),
        ("fix_k1", "CALIB_FIX_K1", "fix_k1"),
        ("fix_k2", "CALIB_FIX_K2", "fix_k2"),
        ("fix_k3", "CALIB_FIX_K3", "fix_k3"),
    )

    def validate(self, config):
        if config.fix_k4:
            raise ConfigurationError("fix_k4", True, "the pinhole model has no k4 term")

    def initial_focal(self, image_size) -> float:
        return float(max(image_size))

    def pinned_distortion(self, config):
        tangent = config.zero_tangent_dist
        return (config.fix_k1, config.fix_k2, tangent, tangent, config.fix_k3)

    def flags(self, config) -> int:
        flags = 0
        for option, const, _ in self._FLAG_OPTIONS:
            if getattr(config, option):
                flags |= getattr(cv2, const)
        return flags

    def options_from_flags(self, flags: int):
        # the aspect ratio value itself is stored separately
        return {option: bool(flags & getattr(cv2, const))
                for option, const, _ in self._FLAG_OPTIONS
                if option != "fix_aspect_ratio"}

    def flag_names(self, flags: int):
        return [label for _, const, label in self._FLAG_OPTIONS
                if flags & getattr(cv2, const)]

    def project(self, object_points, rvec, tvec, camera_matrix, dist_coeffs):
        projected, _ = cv2.projectPoints(
            _as_points3(object_points), _as_vec3(rvec), _as_vec3(tvec),
            np.asarray(camera_matrix, np.float64), np.asarray(dist_coeffs, np.float64)
        )
        return projected.reshape(-1, 2)

    def unproject(self, image_points, camera_matrix, dist_coeffs):
        normalized = cv2.undistortPoints(
            _as_points2(image_points), np.asarray(camera_matrix, np.float64),
            np.asarray(dist_coeffs, np.float64)
        )
        return normalized.reshape(-1, 2)

    def estimate_new_camera_matrix(self, camera_matrix, dist_coeffs, image_size,
                                   balance=1.0, fov_scale=1.0):
        size = _image_size(image_size)
        new_K, _ = cv2.getOptimalNewCameraMatrix(
            np.asarray(camera_matrix, np.float64), np.asarray(dist_coeffs, np.float64),
            size, balance, size
        )
        if fov_scale > 0:
            # same convention as the fisheye variant: f / fov_scale
            new_K[0, 0] /= fov_scale
            new_K[1, 1] /= fov_scale
        return new_K

    def init_undistort_map(self, camera_matrix, dist_coeffs, new_camera_matrix,
                           image_size, map_type=cv2.CV_16SC2):
        return cv2.initUndistortRectifyMap(
            np.asarray(camera_matrix, np.float64), np.asarray(dist_coeffs, np.float64),
            None, np.asarray(new_camera_matrix, np.float64),
            _image_size(image_size), map_type
        )


PROJECTIONS = {
    FisheyeProjection.name: FisheyeProjection,
    PinholeProjection.name: PinholeProjection,
}


def get_projection(model="fisheye") -> ProjectionModel:
    """Resolve a model name (or pass an instance through)."""
    if isinstance(model, ProjectionModel):
        return model
    try:
        return PROJECTIONS[model]()
    except KeyError:
        raise ConfigurationError("model", model, "must be fisheye or pinhole") from None
