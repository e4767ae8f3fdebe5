"""
Nonlinear refinement of a single object pose by virtual visual servoing,
with optional covariance of the refined pose.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares

logger = logging.getLogger(__name__)

_IDENTITY_K = np.eye(3)


def pack_pose(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    Pack a pose into a 1D parameter vector.

    Args:
        R: Rotation matrix (3x3) from object to camera coordinates.
        t: Translation vector (3, 1) or (3,).

    Returns:
        Array [rvec[0], rvec[1], rvec[2], t[0], t[1], t[2]] where rvec is
        the theta-u (Rodrigues) rotation vector.
    """
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return np.concatenate([rvec.ravel(), np.asarray(t, dtype=np.float64).ravel()])


def unpack_pose(params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of `pack_pose`: returns (R (3x3), t (3, 1))."""
    R, _ = cv2.Rodrigues(np.asarray(params[:3], dtype=np.float64).reshape(3, 1))
    t = np.asarray(params[3:6], dtype=np.float64).reshape(3, 1)
    return R, t


def project_normalized(params: np.ndarray, object_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Project object points onto the normalized image plane (z = 1).

    Args:
        params: Pose vector from `pack_pose`.
        object_points: (N, 3) object-frame points.

    Returns:
        Tuple of (xy, jacobian) where:
        - xy: Projected points (N, 2).
        - jacobian: d(xy)/d(params), shape (2N, 6), rows ordered x0, y0, x1, ...
    """
    projected, jacobian = cv2.projectPoints(
        np.asarray(object_points, dtype=np.float64).reshape(-1, 1, 3),
        params[:3].reshape(3, 1),
        params[3:6].reshape(3, 1),
        _IDENTITY_K,
        None,
    )
    return projected.reshape(-1, 2), jacobian[:, :6]


def normalized_residuals(
    params: np.ndarray,
    object_points: np.ndarray,
    image_xy: np.ndarray,
) -> np.ndarray:
    """
    Residuals between projected and observed normalized coordinates.

    Returns:
        1D array of residuals (2 per point: [dx, dy]).
    """
    xy, _ = project_normalized(params, object_points)
    return (xy - image_xy).ravel()


def _residual_jacobian(
    params: np.ndarray,
    object_points: np.ndarray,
    image_xy: np.ndarray,
) -> np.ndarray:
    _, jacobian = project_normalized(params, object_points)
    return jacobian


def pose_covariance(jacobian: np.ndarray, residuals: np.ndarray) -> np.ndarray:
    """
    Covariance of the pose parameters linearized at the solution.

    Uses sigma^2 * (J^T J)^-1 with sigma^2 = r^T r / (2N - 6).

    Args:
        jacobian: (2N, 6) residual jacobian at the solution.
        residuals: (2N,) residuals at the solution.

    Returns:
        6x6 covariance matrix of (rvec, t).
    """
    dof = residuals.size - jacobian.shape[1]
    sigma2 = float(residuals @ residuals) / dof if dof > 0 else 0.0
    return sigma2 * np.linalg.pinv(jacobian.T @ jacobian)


def refine_pose_vvs(
    R: np.ndarray,
    t: np.ndarray,
    object_points: np.ndarray,
    image_xy: np.ndarray,
    compute_covariance: bool = False,
    max_nfev: int = 200,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Refine a pose by minimizing the normalized reprojection error.

    Args:
        R: Initial rotation (3x3).
        t: Initial translation (3, 1).
        object_points: (N, 3) object-frame points, N >= 3.
        image_xy: (N, 2) observed normalized image-plane coordinates.
        compute_covariance: Whether to linearize at the solution.
        max_nfev: Maximum number of function evaluations.

    Returns:
        Tuple of (R, t, covariance) where covariance is 6x6 or an empty
        (0, 0) array when not requested.
    """
    params = pack_pose(R, t)
    object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
    image_xy = np.asarray(image_xy, dtype=np.float64).reshape(-1, 2)

    result = least_squares(
        normalized_residuals,
        params,
        jac=_residual_jacobian,
        args=(object_points, image_xy),
        method="lm",
        max_nfev=max_nfev,
    )
    logger.debug(
        "[vvs] Done. Status=%d, nfev=%d, final_cost=%.3e",
        result.status,
        result.nfev,
        result.cost,
    )

    R_ref, t_ref = unpack_pose(result.x)
    if compute_covariance:
        covariance = pose_covariance(result.jac, result.fun)
    else:
        covariance = np.zeros((0, 0))
    return R_ref, t_ref, covariance


__all__ = [
    "pack_pose",
    "unpack_pose",
    "project_normalized",
    "normalized_residuals",
    "pose_covariance",
    "refine_pose_vvs",
]
