#! /usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fisheye calibration command line.

example command line for calibration from a live feed:
    fisheye-calibrate --board_width 4 --board_height 5 --square 0.025 \
        --output camera.yml --write_points --write_extrinsics --preview

example command line for calibration from a list of stored images:
    fisheye-calibrate --board_width 4 --board_height 5 --square 0.025 \
        --output camera.yml image_list.xml

The input is a folder of images, an OpenCV XML/YAML string list, a text
file with one image per line, a video file (with --video) or a camera
index. Without input camera 0 is used.

Keys in the preview window:
    g         start capturing views
    u         toggle undistortion (after calibration)
    ESC, q    quit
"""
import os
import argparse
from typing import Iterator, List, Optional

import numpy as np
import cv2

from .config import CaptureConfig, PatternGeometry, PatternKind, SolverConfig
from .detection import draw_detection
from .errors import ConfigurationError, DegenerateFit, PersistenceFailure
from .logger import get_logger, parse_level, setup_logger
from .projection import get_projection
from .session import CaptureSession, CaptureState
from .storage import load_calibration, read_image_list
from .structures import CalibrationReport
from .undistort import Undistorter

logger = get_logger(__name__)

WINDOW_NAME = "Image View"
KEY_ESC = 27

EXIT_OK = 0
EXIT_CALIBRATION_FAILED = 1
EXIT_BAD_INPUT = 2
EXIT_PERSISTENCE = 3


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Fisheye camera calibration from a planar pattern",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    ap.add_argument("input", nargs="?", default=None,
                    help="Image folder / image list / video file / camera index")
    ap.add_argument("--board_width", type=int, required=True,
                    help="Inner corners (or circles) per board row")
    ap.add_argument("--board_height", type=int, required=True,
                    help="Inner corners (or circles) per board column")
    ap.add_argument("--pattern", choices=[k.value for k in PatternKind], default="chessboard",
                    help="Calibration pattern type")
    ap.add_argument("--square", type=float, default=1.0,
                    help="Square size in user-defined units (1 by default)")
    ap.add_argument("--frames", type=int, default=None,
                    help="Number of views to calibrate from "
                         "(default: number of listed images, 10 for live input)")
    ap.add_argument("--delay", type=float, default=1000.0,
                    help="Minimum delay in ms between accepted views (live input)")
    ap.add_argument("--output", default="out_camera_data.yml",
                    help="Output YAML/JSON file path")
    ap.add_argument("--write_points", action="store_true", help="Write detected feature points")
    ap.add_argument("--write_extrinsics", action="store_true",
                    help="Write extrinsic parameters and per-view errors")
    ap.add_argument("--model", choices=["fisheye", "pinhole"], default="fisheye",
                    help="Camera model type")
    ap.add_argument("--aspect_ratio", type=float, default=None, help="Fix aspect ratio (fx/fy)")
    ap.add_argument("--fix_principal_point", action="store_true",
                    help="Fix the principal point at the image center")
    ap.add_argument("--fix_skew", action="store_true", help="Fix skew at zero")
    for k in range(1, 5):
        ap.add_argument(f"--fix_k{k}", action="store_true", help=f"Fix k{k} at zero")
    ap.add_argument("--zero_tangent_dist", action="store_true",
                    help="Assume zero tangential distortion (pinhole model)")
    ap.add_argument("--recompute_extrinsic", action="store_true",
                    help="Recompute extrinsics once the intrinsics are initialised")
    ap.add_argument("--flip_vertical", action="store_true",
                    help="Flip captured images around the horizontal axis")
    ap.add_argument("--video", action="store_true",
                    help="Treat input as a video file, not an image list")
    ap.add_argument("--show_undistorted", action="store_true",
                    help="Show undistorted images after calibrating from an image list")
    ap.add_argument("--preview", action="store_true",
                    help="Show the detection preview window")
    ap.add_argument("--balance", type=float, default=1.0,
                    help="Undistortion balance between full FOV (1) and no border (0)")
    ap.add_argument("--log_level", default="info", help="debug, info, warning or error")
    return ap


def build_configs(args):
    """Map parsed arguments onto the configuration records (ConfigurationError on bad values)."""
    geometry = PatternGeometry(
        board_width=args.board_width,
        board_height=args.board_height,
        square_size=args.square,
        kind=PatternKind.from_name(args.pattern),
    )
    capture_config = CaptureConfig(
        target_frames=args.frames,
        delay_ms=args.delay,
        flip_vertical=args.flip_vertical,
        write_extrinsics=args.write_extrinsics,
        write_points=args.write_points,
        show_undistorted=args.show_undistorted,
        balance=args.balance,
    )
    solver_config = SolverConfig(
        aspect_ratio=args.aspect_ratio,
        fix_principal_point=args.fix_principal_point,
        fix_skew=args.fix_skew,
        fix_k1=args.fix_k1,
        fix_k2=args.fix_k2,
        fix_k3=args.fix_k3,
        fix_k4=args.fix_k4,
        zero_tangent_dist=args.zero_tangent_dist,
        recompute_extrinsic=args.recompute_extrinsic,
    )
    projection = get_projection(args.model)
    projection.validate(solver_config)
    return geometry, capture_config, solver_config, projection


# ----------------------------------
# Frame sources
# ----------------------------------
def iter_image_list(paths: List[str]) -> Iterator[np.ndarray]:
    for p in paths:
        img = cv2.imread(p, cv2.IMREAD_COLOR)
        if img is None:
            logger.warning("Unable to load image %s, skipping.", p)
            continue
        yield img


def iter_capture(capture: cv2.VideoCapture) -> Iterator[np.ndarray]:
    while True:
        ok, frame = capture.read()
        if not ok or frame is None:
            return
        yield frame


def open_capture(source: Optional[str]) -> cv2.VideoCapture:
    if source is None:
        return cv2.VideoCapture(0)
    if source.isdigit():
        return cv2.VideoCapture(int(source))
    return cv2.VideoCapture(source)


# ----------------------------------
# Preview
# ----------------------------------
def _overlay(view, session: CaptureSession, undistorting: bool):
    if session.state is CaptureState.CAPTURING:
        msg = f"{session.store.count()}/{session.target_frames}"
        if undistorting:
            msg += " Undist"
    elif session.state is CaptureState.CALIBRATED:
        msg = "Calibrated"
    else:
        msg = "Press 'g' to start"
    (tw, _), baseline = cv2.getTextSize(msg, 1, 1, 1)
    origin = (view.shape[1] - 2 * tw - 10, view.shape[0] - 2 * baseline - 10)
    color = (0, 255, 0) if session.state is CaptureState.CALIBRATED else (0, 0, 255)
    cv2.putText(view, msg, origin, 1, 1, color)
    return view


def run_frames(session: CaptureSession, frames: Iterator[np.ndarray], preview: bool = False,
               wait_ms: int = 50, balance: float = 1.0) -> Optional[CalibrationReport]:
    """Feed frames to the session until the input ends, it calibrates, or the user quits."""
    undistorter = None
    undistorting = False
    for frame in frames:
        result = session.process_frame(frame)

        if not preview:
            # calibrated, or a failed solve with nobody to restart capture
            if result.report is not None or session.state is CaptureState.DETECTION:
                break
            continue

        view = draw_detection(session.preprocess(frame), session.geometry, result.detection)
        if session.state is CaptureState.CALIBRATED and undistorting:
            if undistorter is None or undistorter.camera_model is not session.report.camera_model:
                undistorter = Undistorter(session.report.camera_model, session.report.image_size,
                                          balance=balance)
            view = undistorter.undistort(view)
        view = _overlay(view, session, undistorting)
        if result.accepted:
            view = cv2.bitwise_not(view)
        cv2.imshow(WINDOW_NAME, view)

        key = cv2.waitKey(wait_ms) & 0xFF
        if key in (KEY_ESC, ord('q')):
            break
        if key == ord('u') and session.state is CaptureState.CALIBRATED:
            undistorting = not undistorting
        if key == ord('g') and session.live:
            session.start_capture()
        if not session.live and session.state is not CaptureState.CAPTURING:
            break
    else:
        return session.finish()
    return session.report


def show_undistorted(paths: List[str], report: CalibrationReport, balance: float = 1.0):
    """Replay an image list through the undistortion maps."""
    undistorter = Undistorter(report.camera_model, report.image_size, balance=balance)
    for p in paths:
        view = cv2.imread(p, cv2.IMREAD_COLOR)
        if view is None:
            continue
        cv2.imshow(WINDOW_NAME, undistorter.undistort(view))
        key = cv2.waitKey(0) & 0xFF
        if key in (KEY_ESC, ord('q'), ord('Q')):
            break


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logger(parse_level(args.log_level))

    try:
        geometry, capture_config, solver_config, projection = build_configs(args)
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_BAD_INPUT

    image_list: List[str] = []
    if args.input and not args.video and not args.input.isdigit():
        try:
            image_list = read_image_list(args.input)
        except FileNotFoundError:
            image_list = []

    try:
        if image_list:
            logger.info("Found %d images in %s", len(image_list), args.input)
            session = CaptureSession(
                geometry, args.output, capture_config, solver_config, projection,
                live=False, frame_count=len(image_list),
            )
            report = run_frames(session, iter_image_list(image_list), preview=args.preview,
                                wait_ms=500, balance=capture_config.balance)
            if report is not None and capture_config.show_undistorted:
                show_undistorted(image_list, report, balance=capture_config.balance)
        else:
            capture = open_capture(args.input)
            if not capture.isOpened():
                logger.error("Could not initialize video capture (%s)", args.input or 0)
                return EXIT_BAD_INPUT
            session = CaptureSession(
                geometry, args.output, capture_config, solver_config, projection, live=True,
            )
            if not args.preview:
                # no keyboard without a window
                session.start_capture()
            try:
                report = run_frames(session, iter_capture(capture), preview=args.preview,
                                    balance=capture_config.balance)
            finally:
                capture.release()
    except PersistenceFailure as e:
        logger.error("%s", e)
        return EXIT_PERSISTENCE
    finally:
        if args.preview or args.show_undistorted:
            cv2.destroyAllWindows()

    if report is None:
        logger.error("Calibration failed.")
        return EXIT_CALIBRATION_FAILED
    logger.info("[DONE] Calibration completed successfully.")
    return EXIT_OK


# ----------------------------------
# Undistortion of stored images
# ----------------------------------
def build_undistort_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Undistort images with a saved calibration")
    ap.add_argument("calibration", help="Calibration YAML/JSON file")
    ap.add_argument("input", help="Image folder or image list")
    ap.add_argument("--output_dir", required=True, help="Folder for the undistorted images")
    ap.add_argument("--balance", type=float, default=1.0,
                    help="Balance between full FOV (1) and no border (0)")
    ap.add_argument("--log_level", default="info", help="debug, info, warning or error")
    return ap


def undistort_main(argv=None) -> int:
    args = build_undistort_parser().parse_args(argv)
    setup_logger(parse_level(args.log_level))

    try:
        calib = load_calibration(args.calibration)
        paths = read_image_list(args.input)
    except (PersistenceFailure, FileNotFoundError) as e:
        logger.error("%s", e)
        return EXIT_BAD_INPUT

    try:
        undistorter = Undistorter(calib.camera_model, calib.image_size, balance=args.balance)
    except DegenerateFit as e:
        logger.error("%s: %s", args.calibration, e)
        return EXIT_BAD_INPUT
    os.makedirs(args.output_dir, exist_ok=True)
    written = 0
    for p, img in zip(paths, (cv2.imread(p, cv2.IMREAD_COLOR) for p in paths)):
        if img is None:
            logger.warning("Unable to load image %s, skipping.", p)
            continue
        if (img.shape[1], img.shape[0]) != undistorter.image_size:
            logger.warning("%s does not match the calibrated resolution, skipping.", p)
            continue
        out = os.path.join(args.output_dir, os.path.basename(p))
        if not cv2.imwrite(out, undistorter.undistort(img)):
            logger.error("Could not write %s", out)
            return EXIT_PERSISTENCE
        written += 1
    logger.info("Wrote %d undistorted images to %s", written, args.output_dir)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
