import dataclasses
import json

import numpy as np
import cv2
import pytest
import yaml

from fisheye_calibration.config import PatternGeometry, PatternKind, SolverConfig
from fisheye_calibration.errors import PersistenceFailure
from fisheye_calibration.storage import (calibration_to_dict, load_calibration,
                                         read_image_list, save_calibration)


@pytest.mark.parametrize("name", ["camera.yml", "camera.yaml", "camera.json"])
def test_round_trip(tmp_path, name, report, geometry):
    path = tmp_path / name
    config = SolverConfig(fix_skew=True, fix_k4=True)
    save_calibration(path, report, geometry, config)

    loaded = load_calibration(path)
    np.testing.assert_allclose(loaded.camera_model.camera_matrix, report.camera_model.camera_matrix)
    np.testing.assert_allclose(loaded.camera_model.dist_coeffs, report.camera_model.dist_coeffs)
    assert loaded.camera_model.projection.name == "fisheye"
    assert loaded.image_size == (640, 480)
    assert loaded.geometry == geometry
    assert loaded.solver_config == config
    assert loaded.avg_error == pytest.approx(report.avg_error)
    assert loaded.calibration_time == report.calibration_time
    assert loaded.per_view_errors is None


def test_file_format_follows_extension(tmp_path, report, geometry):
    save_calibration(tmp_path / "a.json", report, geometry, SolverConfig())
    save_calibration(tmp_path / "a.yml", report, geometry, SolverConfig())
    assert json.loads((tmp_path / "a.json").read_text())["nframes"] == 10
    assert yaml.safe_load((tmp_path / "a.yml").read_text())["nframes"] == 10


def test_yaml_starts_with_flag_comment(tmp_path, report, geometry):
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig(fix_skew=True, fix_k3=True))
    first = path.read_text().splitlines()[0]
    assert first == "# flags: +fix_skew +fix_k3"


def test_no_flag_comment_without_flags(tmp_path, report, geometry):
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig())
    assert not path.read_text().startswith("#")


def test_mandatory_keys(report, geometry):
    data = calibration_to_dict(report, geometry, SolverConfig())
    for key in ("calibration_time", "nframes", "image_width", "image_height",
                "board_width", "board_height", "square_size", "flags", "fisheye_model",
                "camera_matrix", "distortion_coefficients", "avg_reprojection_error"):
        assert key in data
    assert "aspectRatio" not in data
    assert "extrinsic_parameters" not in data
    assert "image_points" not in data
    assert np.array(data["distortion_coefficients"]).shape == (4, 1)


def test_optional_sections(tmp_path, report, geometry, observations):
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig(aspect_ratio=1.0),
                     write_extrinsics=True, write_points=True, observations=observations)
    data = yaml.safe_load(path.read_text())

    assert data["aspectRatio"] == 1.0
    assert np.array(data["extrinsic_parameters"]).shape == (10, 6)
    assert len(data["per_view_reprojection_errors"]) == 10
    assert np.array(data["image_points"]).shape == (10, 20, 2)

    loaded = load_calibration(path)
    assert loaded.solver_config.aspect_ratio == 1.0
    assert loaded.per_view_errors.shape == (10,)


def test_points_need_write_points(report, geometry, observations, tmp_path):
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig(), observations=observations)
    assert "image_points" not in yaml.safe_load(path.read_text())


def test_pattern_kind_is_kept(tmp_path, report):
    geometry = PatternGeometry(4, 5, 0.02, kind=PatternKind.ASYMMETRIC_CIRCLES_GRID)
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig())
    assert load_calibration(path).geometry.kind is PatternKind.ASYMMETRIC_CIRCLES_GRID


def test_unwritable_path(tmp_path, report, geometry):
    path = tmp_path / "missing" / "camera.yml"
    with pytest.raises(PersistenceFailure) as exc:
        save_calibration(path, report, geometry, SolverConfig())
    assert exc.value.path == str(path)


def test_unreadable_files(tmp_path):
    with pytest.raises(PersistenceFailure):
        load_calibration(tmp_path / "nothing.yml")
    broken = tmp_path / "broken.yml"
    broken.write_text("camera_matrix: [1, 2\n")
    with pytest.raises(PersistenceFailure):
        load_calibration(broken)
    partial = tmp_path / "partial.json"
    partial.write_text('{"image_width": 640}')
    with pytest.raises(PersistenceFailure):
        load_calibration(partial)


# ----------------------------------
# Image lists
# ----------------------------------
def _touch_images(folder, names):
    img = np.zeros((8, 8, 3), np.uint8)
    for n in names:
        cv2.imwrite(str(folder / n), img)


def test_image_list_from_folder(tmp_path):
    _touch_images(tmp_path, ["b.png", "a.jpg", "c.jpg"])
    (tmp_path / "notes.txt").write_text("x")
    paths = read_image_list(tmp_path)
    assert [p.rsplit("/", 1)[-1] for p in paths] == ["a.jpg", "b.png", "c.jpg"]


def test_image_list_from_text_file(tmp_path):
    lst = tmp_path / "list.txt"
    lst.write_text("# views\nleft01.jpg\n\n/abs/left02.jpg\n")
    assert read_image_list(lst) == [str(tmp_path / "left01.jpg"), "/abs/left02.jpg"]


def test_image_list_from_opencv_yaml(tmp_path):
    lst = tmp_path / "list.yml"
    lst.write_text('%YAML:1.0\n---\nimages:\n   - "left01.jpg"\n   - "left02.jpg"\n')
    assert read_image_list(lst) == [str(tmp_path / "left01.jpg"), str(tmp_path / "left02.jpg")]


def test_image_list_from_opencv_xml(tmp_path):
    lst = tmp_path / "list.xml"
    lst.write_text('<?xml version="1.0"?>\n<opencv_storage>\n'
                   '<images>\nleft01.jpg\nleft02.jpg\n</images>\n</opencv_storage>\n')
    assert read_image_list(lst) == [str(tmp_path / "left01.jpg"), str(tmp_path / "left02.jpg")]


def test_opencv_file_without_list_is_empty(tmp_path):
    lst = tmp_path / "calib.yml"
    lst.write_text("%YAML:1.0\n---\nimage_width: 640\n")
    assert read_image_list(lst) == []


def test_missing_image_list(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_image_list(tmp_path / "nope.txt")


def test_default_flags_round_trip_through_yaml(tmp_path, report, geometry):
    path = tmp_path / "camera.yml"
    save_calibration(path, report, geometry, SolverConfig())
    loaded = load_calibration(path)
    assert loaded.flags == 0
    assert loaded.solver_config == SolverConfig()


def test_numpy_board_sizes_are_written(tmp_path, report):
    geometry = PatternGeometry(np.int64(4), np.int64(5), 0.025)
    path = tmp_path / "camera.json"
    save_calibration(path, report, geometry, SolverConfig())
    data = json.loads(path.read_text())
    assert data["board_width"] == 4 and data["board_height"] == 5


@pytest.mark.parametrize("name", ["camera.yml", "camera.json"])
def test_failed_save_keeps_previous_file(tmp_path, report, geometry, name):
    path = tmp_path / name
    save_calibration(path, report, geometry, SolverConfig())
    before = path.read_text()

    broken = dataclasses.replace(report, calibration_time=object())
    with pytest.raises(PersistenceFailure):
        save_calibration(path, broken, geometry, SolverConfig())
    assert path.read_text() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == [name]
