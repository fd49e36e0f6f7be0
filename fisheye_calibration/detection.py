"""
Calibration pattern detection for a single image.

A miss is an ordinary outcome (board occluded, out of frame, blurred):
detect_pattern() reports it through PatternDetection.found and never
returns a partial point list.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import cv2

from .config import PatternGeometry, PatternKind
from .errors import DetectionMiss
from .logger import get_logger

logger = get_logger(__name__)

CHESSBOARD_FLAGS = cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE
SUBPIX_WINDOW = (11, 11)
SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.1)


@dataclass(frozen=True, eq=False)
class PatternDetection:
    found: bool
    points: Optional[np.ndarray]        # (N, 2) pixels, row-major pattern order
    image_size: Tuple[int, int]         # (w, h)

    def require(self) -> np.ndarray:
        """Return the points or raise DetectionMiss."""
        if not self.found:
            raise DetectionMiss()
        return self.points


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _find_points(gray, geometry: PatternGeometry):
    pattern_size = geometry.pattern_size
    if geometry.kind is PatternKind.CHESSBOARD:
        found, corners = cv2.findChessboardCorners(gray, pattern_size, flags=CHESSBOARD_FLAGS)
        if found:
            # refine corner locations
            corners = cv2.cornerSubPix(gray, corners, SUBPIX_WINDOW, (-1, -1), SUBPIX_CRITERIA)
        return found, corners
    if geometry.kind is PatternKind.CIRCLES_GRID:
        return cv2.findCirclesGrid(gray, pattern_size, flags=cv2.CALIB_CB_SYMMETRIC_GRID)
    return cv2.findCirclesGrid(gray, pattern_size, flags=cv2.CALIB_CB_ASYMMETRIC_GRID)


def detect_pattern(image: np.ndarray, geometry: PatternGeometry) -> PatternDetection:
    """Locate every pattern point of `geometry` in `image` (colour or gray)."""
    h, w = image.shape[:2]
    image_size = (int(w), int(h))
    miss = PatternDetection(found=False, points=None, image_size=image_size)

    gray = to_gray(image)
    found, points = _find_points(gray, geometry)
    if not found or points is None:
        logger.debug("Pattern not found in %dx%d frame", w, h)
        return miss

    points = np.asarray(points, np.float64).reshape(-1, 2)
    if len(points) != geometry.point_count:
        logger.debug("Discarding partial detection (%d of %d points)",
                     len(points), geometry.point_count)
        return miss
    return PatternDetection(found=True, points=points, image_size=image_size)


def draw_detection(image: np.ndarray, geometry: PatternGeometry,
                   detection: PatternDetection) -> np.ndarray:
    """Overlay detected points on a copy of the image (preview only)."""
    vis = image.copy()
    if detection.found:
        corners = detection.points.astype(np.float32).reshape(-1, 1, 2)
        cv2.drawChessboardCorners(vis, geometry.pattern_size, corners, True)
    return vis
