import numpy as np
import cv2
import pytest

from fisheye_calibration.config import (CaptureConfig, PatternGeometry, PatternKind,
                                        SolverConfig)
from fisheye_calibration.errors import ConfigurationError
from fisheye_calibration.projection import (FisheyeProjection, PinholeProjection, fisheye_flag,
                                            get_projection)


@pytest.mark.parametrize("kind", list(PatternKind))
@pytest.mark.parametrize("width,height", [(4, 5), (9, 6), (1, 1), (3, 7)])
def test_object_points_count_order_and_plane(kind, width, height):
    geometry = PatternGeometry(width, height, square_size=0.5, kind=kind)
    pts = geometry.object_points()

    assert pts.shape == (width * height, 3)
    assert np.all(pts[:, 2] == 0)
    # row-major: y is constant along a row and grows row by row
    rows = pts.reshape(height, width, 3)
    assert np.allclose(rows[:, :, 1], np.arange(height)[:, None] * 0.5)
    assert np.all(np.diff(rows[:, :, 0], axis=1) > 0)


def test_chessboard_points_on_square_grid():
    pts = PatternGeometry(3, 2, square_size=0.025).object_points()
    expected = [(0, 0), (0.025, 0), (0.05, 0), (0, 0.025), (0.025, 0.025), (0.05, 0.025)]
    assert np.allclose(pts[:, :2], expected)


def test_asymmetric_grid_offsets_odd_rows():
    geometry = PatternGeometry(3, 3, square_size=1.0, kind=PatternKind.ASYMMETRIC_CIRCLES_GRID)
    rows = geometry.object_points().reshape(3, 3, 3)
    assert list(rows[0, :, 0]) == [0, 2, 4]
    assert list(rows[1, :, 0]) == [1, 3, 5]
    assert list(rows[2, :, 0]) == [0, 2, 4]


@pytest.mark.parametrize("kwargs", [
    dict(board_width=0, board_height=5),
    dict(board_width=4, board_height=-1),
    dict(board_width=4, board_height=5, square_size=0.0),
    dict(board_width=4, board_height=5, square_size=-0.1),
    dict(board_width=4.5, board_height=5),
])
def test_invalid_geometry_fails_fast(kwargs):
    with pytest.raises(ConfigurationError):
        PatternGeometry(**kwargs)


def test_pattern_kind_from_name():
    assert PatternKind.from_name("acircles") is PatternKind.ASYMMETRIC_CIRCLES_GRID
    with pytest.raises(ConfigurationError):
        PatternKind.from_name("charuco")


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        SolverConfig(aspect_ratio=0.0)


@pytest.mark.parametrize("kwargs", [
    dict(target_frames=3),
    dict(delay_ms=-1),
    dict(balance=1.5),
])
def test_invalid_capture_config(kwargs):
    with pytest.raises(ConfigurationError):
        CaptureConfig(**kwargs)


def test_target_frames_above_three_is_accepted():
    assert CaptureConfig(target_frames=4).target_frames == 4


def test_fisheye_flags_round_trip():
    projection = FisheyeProjection()
    config = SolverConfig(fix_skew=True, fix_k3=True, fix_k4=True, recompute_extrinsic=True)
    flags = config.flags(projection)

    restored = SolverConfig.from_flags(flags, projection)
    assert restored.fix_skew and restored.fix_k3 and restored.fix_k4
    assert restored.recompute_extrinsic
    assert not restored.fix_k1 and not restored.fix_principal_point
    assert projection.flag_names(flags) == ["recompute_extrinsic", "fix_skew", "fix_k3", "fix_k4"]


def test_pinhole_flags_round_trip():
    projection = PinholeProjection()
    config = SolverConfig(aspect_ratio=1.0, zero_tangent_dist=True, fix_k3=True)
    restored = SolverConfig.from_flags(config.flags(projection), projection, aspect_ratio=1.0)
    assert restored.zero_tangent_dist and restored.fix_k3
    assert restored.aspect_ratio == 1.0


def test_projection_specific_options_are_rejected():
    with pytest.raises(ConfigurationError):
        FisheyeProjection().validate(SolverConfig(zero_tangent_dist=True))
    with pytest.raises(ConfigurationError):
        PinholeProjection().validate(SolverConfig(fix_k4=True))
    with pytest.raises(ConfigurationError):
        get_projection("kannala")


def test_fisheye_flags_fall_back_to_top_level_constants(monkeypatch):
    # OpenCV 5 keeps the CALIB_* constants on cv2 only
    values = {const: fisheye_flag(const) for _, const, _ in FisheyeProjection._FLAG_OPTIONS}
    for const, value in values.items():
        monkeypatch.delattr(cv2.fisheye, const, raising=False)
        monkeypatch.setattr(cv2, const, value, raising=False)

    projection = FisheyeProjection()
    config = SolverConfig(fix_skew=True, fix_k1=True)
    flags = config.flags(projection)
    assert flags == values["CALIB_FIX_SKEW"] | values["CALIB_FIX_K1"]
    assert SolverConfig.from_flags(flags, projection) == config
    assert projection.flag_names(flags) == ["fix_skew", "fix_k1"]


def test_fisheye_flags_are_distinct_bits():
    values = [fisheye_flag(const) for _, const, _ in FisheyeProjection._FLAG_OPTIONS]
    assert all(v > 0 for v in values)
    assert len(set(values)) == len(values)
