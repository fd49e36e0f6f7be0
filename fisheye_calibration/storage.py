"""
Calibration file and image list I/O.

The calibration file is YAML for .yml/.yaml paths and JSON otherwise.
"""
import os
import glob
import json
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import cv2
import yaml

from .config import PatternGeometry, PatternKind, SolverConfig
from .errors import PersistenceFailure
from .logger import get_logger
from .observations import ObservationSet
from .projection import ProjectionModel, get_projection
from .structures import CalibrationReport, CameraModel

logger = get_logger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")
IMAGE_PATTERNS = ("*.jpg", "*.png")


@dataclass(frozen=True, eq=False)
class LoadedCalibration:
    camera_model: CameraModel
    image_size: Tuple[int, int]
    geometry: Optional[PatternGeometry]
    solver_config: SolverConfig
    flags: int
    avg_error: float
    per_view_errors: Optional[np.ndarray] = None
    calibration_time: str = ""


def calibration_timestamp() -> str:
    return time.strftime("%c")


def _is_yaml(path) -> bool:
    return os.path.splitext(str(path))[1].lower() in YAML_SUFFIXES


def calibration_to_dict(report: CalibrationReport, geometry: PatternGeometry,
                        solver_config: SolverConfig, write_extrinsics: bool = False,
                        observations: Optional[ObservationSet] = None) -> dict:
    model = report.camera_model
    projection = model.projection
    data = {
        "calibration_time": report.calibration_time,
        "nframes": report.frame_count,
        "image_width": int(report.image_size[0]),
        "image_height": int(report.image_size[1]),
        "board_width": int(geometry.board_width),
        "board_height": int(geometry.board_height),
        "square_size": float(geometry.square_size),
        "pattern": geometry.kind.value,
    }
    if solver_config.fix_aspect_ratio:
        data["aspectRatio"] = float(solver_config.aspect_ratio)
    data["flags"] = int(solver_config.flags(projection))
    data[f"{projection.name}_model"] = 1
    data["distortion_model"] = projection.name
    data["camera_matrix"] = model.camera_matrix.tolist()
    data["distortion_coefficients"] = model.dist_coeffs.reshape(-1, 1).tolist()
    data["avg_reprojection_error"] = float(report.avg_error)

    if write_extrinsics:
        data["per_view_reprojection_errors"] = [float(e) for e in report.per_view_errors]
        # a set of 6-tuples (rotation vector + translation vector) for each view
        data["extrinsic_parameters"] = report.extrinsics_matrix().tolist()
    if observations is not None and len(observations):
        data["image_points"] = [obs.image_points.tolist() for obs in observations]
    return data


def _serialise(data: dict, projection: ProjectionModel, yaml_format: bool) -> str:
    if not yaml_format:
        return json.dumps(data, indent=2)
    text = yaml.safe_dump(data, sort_keys=False)
    names = projection.flag_names(data["flags"])
    if names:
        text = "# flags: " + " ".join("+" + n for n in names) + "\n" + text
    return text


def save_calibration(path, report: CalibrationReport, geometry: PatternGeometry,
                     solver_config: SolverConfig, write_extrinsics: bool = False,
                     write_points: bool = False,
                     observations: Optional[ObservationSet] = None):
    """
    Write the report; raises PersistenceFailure when the file cannot be written.

    The file is serialised in memory and swapped in with os.replace(), so a
    failed save leaves any previous calibration at `path` untouched.
    """
    data = calibration_to_dict(
        report, geometry, solver_config, write_extrinsics=write_extrinsics,
        observations=observations if write_points else None,
    )
    try:
        text = _serialise(data, report.camera_model.projection, _is_yaml(path))
    except (yaml.YAMLError, TypeError, ValueError) as e:
        raise PersistenceFailure(path, str(e)) from e

    folder = os.path.dirname(os.path.abspath(str(path)))
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".calib-", suffix=".tmp", dir=folder)
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, str(path))
    except OSError as e:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise PersistenceFailure(path, str(e)) from e
    logger.info("Calibration saved to %s", path)


def load_calibration(path) -> LoadedCalibration:
    """Read a calibration file written by save_calibration()."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) if _is_yaml(path) else json.load(f)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise PersistenceFailure(path, str(e)) from e
    if not isinstance(data, dict):
        raise PersistenceFailure(path, "not a calibration file")

    try:
        projection: ProjectionModel = get_projection(data.get("distortion_model", "fisheye"))
        flags = int(data.get("flags", 0))
        aspect_ratio = data.get("aspectRatio")
        model = CameraModel(
            camera_matrix=np.array(data["camera_matrix"], np.float64),
            dist_coeffs=np.array(data["distortion_coefficients"], np.float64),
            projection=projection,
        )
        geometry = None
        if "board_width" in data and "board_height" in data:
            geometry = PatternGeometry(
                board_width=int(data["board_width"]),
                board_height=int(data["board_height"]),
                square_size=float(data.get("square_size", 1.0)),
                kind=PatternKind(data.get("pattern", PatternKind.CHESSBOARD.value)),
            )
        per_view = data.get("per_view_reprojection_errors")
        return LoadedCalibration(
            camera_model=model,
            image_size=(int(data["image_width"]), int(data["image_height"])),
            geometry=geometry,
            solver_config=SolverConfig.from_flags(flags, projection, aspect_ratio=aspect_ratio),
            flags=flags,
            avg_error=float(data.get("avg_reprojection_error", float("nan"))),
            per_view_errors=np.array(per_view, np.float64) if per_view is not None else None,
            calibration_time=str(data.get("calibration_time", "")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceFailure(path, f"malformed calibration file: {e}") from e


# ----------------------------------
# Image lists
# ----------------------------------
def _read_opencv_list(path: Path) -> List[str]:
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    try:
        if not fs.isOpened():
            return []
        node = fs.getFirstTopLevelNode()
        if node.empty() or not node.isSeq():
            return []
        return [node.at(i).string() for i in range(node.size())]
    finally:
        fs.release()


def read_image_list(path) -> List[str]:
    """
    Image paths from a folder, an OpenCV XML/YAML string list or a text file.

    Relative entries are resolved against the list file's folder. An
    OpenCV file without a string sequence yields an empty list.
    """
    p = Path(path)
    if p.is_dir():
        files = []
        for pattern in IMAGE_PATTERNS:
            files += glob.glob(os.path.join(str(p), pattern))
        return sorted(files)
    if not p.is_file():
        raise FileNotFoundError(f"Image list not found: {path}")

    if p.suffix.lower() in (".xml",) + YAML_SUFFIXES:
        try:
            entries = _read_opencv_list(p)
        except cv2.error as e:
            logger.debug("Not an OpenCV string list (%s): %s", p, e)
            entries = []
    else:
        with open(p, "r") as f:
            entries = [line.strip() for line in f]
        entries = [e for e in entries if e and not e.startswith("#")]

    base = p.parent
    return [e if os.path.isabs(e) else str(base / e) for e in entries if e]
