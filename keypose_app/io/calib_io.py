"""
Camera intrinsics and pose I/O utilities (.npz files).
"""

from __future__ import annotations

import numpy as np

from keypose_app.errors import InvalidParameterError
from keypose_app.model.data_structures import CameraParameters, PoseResult


def save_calibration(output_path: str, cam: CameraParameters) -> None:
    """
    Save camera intrinsics to a .npz file.

    Args:
        output_path: Path where the calibration data will be saved (.npz file).
        cam: Camera intrinsics.
    """
    np.savez(output_path, K=cam.K, dist_coeffs=np.zeros(5))


def load_calibration(input_path: str) -> CameraParameters:
    """
    Load camera intrinsics from a .npz file.

    The file must hold an intrinsic matrix `K`. Distortion coefficients, if
    present, must be zero: images are expected to be undistorted already.

    Args:
        input_path: Path to the .npz file containing calibration data.

    Returns:
        CameraParameters built from K.
    """
    data = np.load(input_path)
    if "dist_coeffs" in data and np.any(data["dist_coeffs"] != 0):
        raise InvalidParameterError(
            f"{input_path} has non-zero distortion coefficients; undistort the images first"
        )
    return CameraParameters.from_K(data["K"])


def save_pose_npz(output_path: str, pose: PoseResult, cam: CameraParameters) -> None:
    """
    Serialize an estimated pose and camera intrinsics to a .npz file.

    Args:
        output_path: Path where the pose will be saved (.npz file).
        pose: Estimated pose.
        cam: Camera intrinsics used for the estimation.
    """
    np.savez(
        output_path,
        K=cam.K,
        cMo=pose.cMo,
        inliers=pose.inliers,
        outliers=pose.outliers,
        covariance=pose.covariance,
        error=pose.error,
    )


__all__ = ["save_calibration", "load_calibration", "save_pose_npz"]
