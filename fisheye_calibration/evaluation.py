"""
Reprojection error of a fitted camera model.
"""
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .observations import ObservationSet
from .structures import CameraModel, ViewPose


@dataclass(frozen=True, eq=False)
class ReprojectionErrors:
    per_view: np.ndarray    # RMS per view, same order as the observations
    total: float            # RMS pooled over every point of every view


def compute_reprojection_errors(observations: ObservationSet, object_points: np.ndarray,
                                poses: Sequence[ViewPose],
                                camera_model: CameraModel) -> ReprojectionErrors:
    """
    Project the board through each view's pose and compare with the detections.

    per-view error = sqrt(err^2 / n) with err the L2 norm over the view's points;
    the total is pooled over all points, not the mean of the per-view values.
    """
    if len(poses) != len(observations):
        raise ValueError(f"{len(poses)} poses for {len(observations)} observations")

    per_view = np.zeros(len(observations))
    total_err, total_points = 0.0, 0
    for i, (obs, pose) in enumerate(zip(observations, poses)):
        projected = camera_model.project(object_points, pose)
        err = np.linalg.norm(obs.image_points - projected)
        n = len(obs.image_points)
        per_view[i] = np.sqrt(err * err / n)
        total_err += err * err
        total_points += n

    total = float(np.sqrt(total_err / total_points)) if total_points else 0.0
    return ReprojectionErrors(per_view=per_view, total=total)
