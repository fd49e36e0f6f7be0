"""
Configuration records for a calibration run.

- PatternGeometry: the physical calibration target
- SolverConfig: which camera parameters are free and which are pinned
- CaptureConfig: how views are gathered and what gets written out
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .errors import ConfigurationError

# Minimum number of views a target frame count may request.
MIN_TARGET_FRAMES = 4


class PatternKind(Enum):
    CHESSBOARD = "chessboard"
    CIRCLES_GRID = "circles"
    ASYMMETRIC_CIRCLES_GRID = "acircles"

    @classmethod
    def from_name(cls, name: str) -> "PatternKind":
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(
                "pattern", name, "must be chessboard, circles or acircles"
            ) from None


@dataclass(frozen=True)
class PatternGeometry:
    board_width: int        # points per row (inner corners or circles)
    board_height: int       # number of rows
    square_size: float = 1.0
    kind: PatternKind = PatternKind.CHESSBOARD

    def __post_init__(self):
        validate_geometry(self)

    @property
    def pattern_size(self):
        # OpenCV order: (points per row, rows)
        return (self.board_width, self.board_height)

    @property
    def point_count(self) -> int:
        return self.board_width * self.board_height

    def object_points(self) -> np.ndarray:
        """
        3D pattern points on the z = 0 plane, row-major, shape (N, 3).

        Asymmetric circle grids shift odd rows by one spacing unit and use
        twice the spacing along a row.
        """
        rows, cols, s = self.board_height, self.board_width, self.square_size
        objp = np.zeros((rows * cols, 3), np.float64)
        jj, ii = np.meshgrid(np.arange(cols), np.arange(rows))
        if self.kind is PatternKind.ASYMMETRIC_CIRCLES_GRID:
            objp[:, 0] = ((2 * jj + ii % 2) * s).ravel()
        else:
            objp[:, 0] = (jj * s).ravel()
        objp[:, 1] = (ii * s).ravel()
        return objp


@dataclass(frozen=True)
class SolverConfig:
    """Pinned / free parameters of the camera-model solve."""
    aspect_ratio: Optional[float] = None    # pin fx/fy when set
    fix_principal_point: bool = False
    fix_skew: bool = False
    fix_k1: bool = False
    fix_k2: bool = False
    fix_k3: bool = False
    fix_k4: bool = False
    zero_tangent_dist: bool = False         # pinhole variant only
    recompute_extrinsic: bool = False
    max_iterations: int = 200
    tolerance: float = 1e-10

    def __post_init__(self):
        validate_solver_config(self)

    @property
    def fix_aspect_ratio(self) -> bool:
        return self.aspect_ratio is not None

    @property
    def fixed_coefficients(self):
        return (self.fix_k1, self.fix_k2, self.fix_k3, self.fix_k4)

    def flags(self, projection) -> int:
        """OpenCV-style bitmask of the pinned parameters."""
        return projection.flags(self)

    @classmethod
    def from_flags(cls, flags: int, projection, aspect_ratio=None, **kwargs):
        """Rebuild a config from a persisted bitmask."""
        return cls(aspect_ratio=aspect_ratio,
                   **projection.options_from_flags(flags), **kwargs)


@dataclass(frozen=True)
class CaptureConfig:
    target_frames: Optional[int] = None     # None: number of listed images
    delay_ms: float = 1000.0                # debounce between accepted views
    flip_vertical: bool = False
    write_extrinsics: bool = False
    write_points: bool = False
    show_undistorted: bool = False
    balance: float = 1.0

    def __post_init__(self):
        validate_capture_config(self)

    @property
    def min_interval(self) -> float:
        return self.delay_ms * 1e-3


# ----------------------------------
# Validation
# ----------------------------------
def validate_geometry(geometry: PatternGeometry):
    for name in ("board_width", "board_height"):
        value = getattr(geometry, name)
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
            raise ConfigurationError(name, value, "must be a positive integer")
    if not np.isfinite(geometry.square_size) or geometry.square_size <= 0:
        raise ConfigurationError("square_size", geometry.square_size, "must be positive")
    if not isinstance(geometry.kind, PatternKind):
        raise ConfigurationError("pattern", geometry.kind, "unknown pattern kind")


def validate_solver_config(config: SolverConfig):
    if config.aspect_ratio is not None:
        if not np.isfinite(config.aspect_ratio) or config.aspect_ratio <= 0:
            raise ConfigurationError("aspect_ratio", config.aspect_ratio, "must be positive")
    if config.max_iterations <= 0:
        raise ConfigurationError("max_iterations", config.max_iterations, "must be positive")
    if config.tolerance <= 0:
        raise ConfigurationError("tolerance", config.tolerance, "must be positive")


def validate_capture_config(config: CaptureConfig):
    if config.target_frames is not None and config.target_frames < MIN_TARGET_FRAMES:
        raise ConfigurationError(
            "frames", config.target_frames, f"must be at least {MIN_TARGET_FRAMES}"
        )
    if config.delay_ms < 0:
        raise ConfigurationError("delay", config.delay_ms, "must not be negative")
    if not 0.0 <= config.balance <= 1.0:
        raise ConfigurationError("balance", config.balance, "must lie in [0, 1]")
