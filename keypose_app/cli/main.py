"""
Command-line interface for the keypoint matching pipeline.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from keypose_app.config import MatcherConfig
from keypose_app.errors import KeyPoseError
from keypose_app.io.calib_io import load_calibration, save_pose_npz
from keypose_app.pipeline.keypoint_matcher import KeyPointMatcher

logger = logging.getLogger(__name__)


def _read_image(path: str) -> np.ndarray:
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        raise FileNotFoundError(f"Could not read image file: {path}")
    # Convert BGR to RGB
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def _load_config(path: Optional[str]) -> MatcherConfig:
    if path is None:
        return MatcherConfig()
    return MatcherConfig.from_yaml(path)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML file with MatcherConfig fields (default: built-in defaults)",
    )
    parser.add_argument(
        "--model",
        type=str,
        required=True,
        help="Learning data file",
    )
    parser.add_argument(
        "--binary",
        action="store_true",
        help="Use the binary learning data encoding instead of text",
    )
    parser.add_argument(
        "--image",
        type=str,
        required=True,
        help="Path to the input image",
    )
    parser.add_argument(
        "--roi",
        type=int,
        nargs=4,
        metavar=("X", "Y", "W", "H"),
        default=None,
        help="Restrict keypoint detection to this rectangle",
    )


def _cmd_build(args: argparse.Namespace) -> int:
    matcher = KeyPointMatcher(_load_config(args.config))
    model_path = Path(args.model)
    if args.append and model_path.exists():
        matcher.load_learning_data(str(model_path), binary=args.binary)

    image = _read_image(args.image)
    if args.points is not None:
        data = np.load(args.points)
        keypoints = [cv2.KeyPoint(float(u), float(v), 7.0) for u, v in data["points_2d"]]
        count = matcher.build_reference_with_points(image, keypoints, data["points_3d"])
    else:
        roi = tuple(args.roi) if args.roi else None
        count = matcher.build_reference(image, roi=roi)

    matcher.save_learning_data(
        str(model_path), binary=args.binary, include_images=not args.no_images
    )
    t = matcher.timings
    print(
        f"Learned {count} keypoints ({len(matcher.model)} in model, "
        f"{matcher.num_images} images) in {t.total_ms:.1f} ms"
    )
    print(f"Learning data saved to {model_path}")
    return 0


def _cmd_match(args: argparse.Namespace) -> int:
    matcher = KeyPointMatcher(_load_config(args.config))
    matcher.load_learning_data(args.model, binary=args.binary)
    image = _read_image(args.image)
    roi = tuple(args.roi) if args.roi else None

    if args.detect:
        result = matcher.match_point_and_detect(image, roi=roi, planar=not args.non_planar)
        print(
            f"Object {'present' if result.present else 'absent'}: "
            f"{result.num_matches} matches, mean distance {result.mean_distance:.3f}, "
            f"score {result.score:.3f}"
        )
        if result.bounding_box is not None:
            print(f"Bounding box (x, y, w, h): {result.bounding_box}")
    else:
        count = matcher.match_point(image, roi=roi)
        print(f"{count} matches")

    ids, counts = np.unique(matcher.matched_train_image_ids(), return_counts=True)
    for image_id, n in zip(ids, counts):
        print(f"  training image {image_id}: {n} matches")
    t = matcher.timings
    print(
        f"Detection {t.detection_ms:.1f} ms, extraction {t.extraction_ms:.1f} ms, "
        f"matching {t.matching_ms:.1f} ms"
    )
    return 0


def _cmd_pose(args: argparse.Namespace) -> int:
    config = _load_config(args.config)
    if args.seed is not None:
        config.ransac_seed = args.seed
    matcher = KeyPointMatcher(config)
    matcher.load_learning_data(args.model, binary=args.binary)
    cam = load_calibration(args.calib)
    image = _read_image(args.image)
    roi = tuple(args.roi) if args.roi else None

    pose = matcher.match_point_and_estimate_pose(image, cam, roi=roi)
    print(f"cMo:\n{pose.cMo}")
    print(
        f"{pose.num_inliers} inliers / {len(pose.outliers)} outliers, "
        f"mean reprojection error {pose.error:.3f} px"
    )
    if pose.covariance.size:
        print(f"Covariance:\n{pose.covariance}")
    t = matcher.timings
    print(
        f"Detection {t.detection_ms:.1f} ms, extraction {t.extraction_ms:.1f} ms, "
        f"matching {t.matching_ms:.1f} ms, pose {t.pose_ms:.1f} ms"
    )
    if args.output is not None:
        save_pose_npz(args.output, pose, cam)
        print(f"Pose saved to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Learn an object from training images and find it in new images"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Learn keypoints from a training image")
    _add_common(build)
    build.add_argument(
        "--points",
        type=str,
        default=None,
        help=".npz with `points_2d` (N, 2) and `points_3d` (N, 3) to learn with 3D coordinates",
    )
    build.add_argument(
        "--append",
        action="store_true",
        help="Append to the existing learning data file instead of overwriting it",
    )
    build.add_argument(
        "--no-images",
        action="store_true",
        help="Do not embed the training images in the learning data file",
    )
    build.set_defaults(func=_cmd_build)

    match = subparsers.add_parser("match", help="Match an image against learning data")
    _add_common(match)
    match.add_argument("--detect", action="store_true", help="Decide if the object is present")
    match.add_argument(
        "--non-planar",
        action="store_true",
        help="Locate the object with the fundamental matrix instead of a homography",
    )
    match.set_defaults(func=_cmd_match)

    pose = subparsers.add_parser("pose", help="Estimate the object pose in an image")
    _add_common(pose)
    pose.add_argument(
        "--calib",
        type=str,
        required=True,
        help=".npz file with the camera matrix K",
    )
    pose.add_argument("--seed", type=int, default=None, help="RANSAC seed")
    pose.add_argument("--output", type=str, default=None, help="Save the pose to this .npz")
    pose.set_defaults(func=_cmd_pose)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Usage:
        keypose build --model model.txt --image ref.png --points ref_points.npz
        keypose match --model model.txt --image query.png --detect
        keypose pose --model model.txt --image query.png --calib calibration.npz
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )
    try:
        return args.func(args)
    except KeyPoseError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
