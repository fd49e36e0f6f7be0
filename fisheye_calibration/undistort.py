"""
Undistortion of frames with a fitted camera model.

Maps are built once per resolution and reused for every frame.
"""
from typing import Tuple

import numpy as np
import cv2

from .errors import DegenerateFit
from .logger import get_logger
from .solver import check_camera_model
from .structures import CameraModel

logger = get_logger(__name__)


class Undistorter:
    """
    Remap tables removing lens distortion for one image size.

    balance trades field of view (1.0 keeps every source pixel, black
    borders appear) against border-free output (0.0).
    """

    def __init__(self, camera_model: CameraModel, image_size: Tuple[int, int],
                 balance: float = 1.0, fov_scale: float = 1.0,
                 map_type: int = cv2.CV_16SC2):
        if not check_camera_model(camera_model):
            raise DegenerateFit(camera_model.camera_matrix, camera_model.dist_coeffs,
                                reason="cannot undistort with an invalid camera model")
        self.camera_model = camera_model
        self.image_size = (int(image_size[0]), int(image_size[1]))
        projection = camera_model.projection

        self.new_camera_matrix = np.asarray(projection.estimate_new_camera_matrix(
            camera_model.camera_matrix, camera_model.dist_coeffs, self.image_size,
            balance=balance, fov_scale=fov_scale
        ), np.float64)
        self.map1, self.map2 = projection.init_undistort_map(
            camera_model.camera_matrix, camera_model.dist_coeffs,
            self.new_camera_matrix, self.image_size, map_type
        )
        logger.debug("Undistortion maps built for %dx%d, new K=%s",
                     self.image_size[0], self.image_size[1],
                     np.array2string(self.new_camera_matrix, precision=3))

    def undistort(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        if (w, h) != self.image_size:
            raise ValueError(
                f"Frame is {w}x{h}, maps were built for "
                f"{self.image_size[0]}x{self.image_size[1]}"
            )
        return cv2.remap(image, self.map1, self.map2, interpolation=cv2.INTER_LINEAR,
                         borderMode=cv2.BORDER_CONSTANT)
