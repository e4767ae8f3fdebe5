"""
Locating the matched object in the query image with two-view RANSAC.
"""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

# (x, y, width, height) in pixels.
BoundingBox = Tuple[float, float, float, float]


def homography_ransac(
    train_pts: np.ndarray,
    query_pts: np.ndarray,
    reproj_threshold: float = 3.0,
) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """
    Estimate the train-to-query homography of a planar object using RANSAC.

    Args:
        train_pts: Points in the training image (N, 2).
        query_pts: Corresponding points in the query image (N, 2).
        reproj_threshold: Maximum transfer error in pixels for an inlier.

    Returns:
        Tuple of (H, inlier_mask) where:
        - H: Homography (3x3), or None if it could not be estimated.
        - inlier_mask: Boolean array (N,) indicating inlier correspondences.
    """
    if len(train_pts) < 4:
        return None, np.zeros(len(train_pts), dtype=bool)

    H, mask = cv2.findHomography(
        np.asarray(train_pts, dtype=np.float32),
        np.asarray(query_pts, dtype=np.float32),
        cv2.RANSAC,
        reproj_threshold,
    )
    if H is None:
        return None, np.zeros(len(train_pts), dtype=bool)
    # OpenCV returns an uint8 mask; boolean indexing needs a bool array.
    return H, mask.ravel().astype(bool)


def fundamental_matrix_ransac(
    train_pts: np.ndarray,
    query_pts: np.ndarray,
    reproj_threshold: float = 3.0,
    confidence: float = 0.99,
) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """
    Estimate the fundamental matrix of a non-planar object using RANSAC.

    Args:
        train_pts: Points in the training image (N, 2).
        query_pts: Corresponding points in the query image (N, 2).
        reproj_threshold: Maximum distance from a point to an epipolar line
                          for it to be considered an inlier.
        confidence: Confidence level for RANSAC.

    Returns:
        Tuple of (F, inlier_mask) where:
        - F: Fundamental matrix (3x3), or None if it could not be estimated.
        - inlier_mask: Boolean array (N,) indicating inlier correspondences.
    """
    if len(train_pts) < 8:
        return None, np.zeros(len(train_pts), dtype=bool)

    F, mask = cv2.findFundamentalMat(
        np.asarray(train_pts, dtype=np.float32),
        np.asarray(query_pts, dtype=np.float32),
        cv2.FM_RANSAC,
        reproj_threshold,
        confidence,
    )
    if F is None or mask is None:
        return None, np.zeros(len(train_pts), dtype=bool)
    return F[:3], mask.ravel().astype(bool)


def bounding_box(points: np.ndarray) -> Optional[BoundingBox]:
    """Axis-aligned (x, y, width, height) box around (N, 2) points, None if empty."""
    if len(points) == 0:
        return None
    x_min, y_min = np.min(points, axis=0)
    x_max, y_max = np.max(points, axis=0)
    return float(x_min), float(y_min), float(x_max - x_min), float(y_max - y_min)


def locate_object(
    train_pts: np.ndarray,
    query_pts: np.ndarray,
    planar: bool = True,
    reproj_threshold: float = 3.0,
) -> Tuple[Optional[BoundingBox], Optional[np.ndarray], np.ndarray]:
    """
    Find the region of the query image covered by the matched object.

    Args:
        train_pts: Matched points in the training images (N, 2).
        query_pts: Matched points in the query image (N, 2).
        planar: Use a homography (planar object) instead of the fundamental matrix.
        reproj_threshold: RANSAC threshold in pixels.

    Returns:
        Tuple of (box, center_of_gravity, inlier_mask). box and
        center_of_gravity are None when no geometric model was found.
    """
    if planar:
        model, mask = homography_ransac(train_pts, query_pts, reproj_threshold)
    else:
        model, mask = fundamental_matrix_ransac(train_pts, query_pts, reproj_threshold)

    if model is None or not mask.any():
        return None, None, mask

    inlier_pts = np.asarray(query_pts, dtype=np.float64)[mask]
    return bounding_box(inlier_pts), inlier_pts.mean(axis=0), mask


__all__ = [
    "homography_ransac",
    "fundamental_matrix_ransac",
    "bounding_box",
    "locate_object",
]
