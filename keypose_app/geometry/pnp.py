"""
Perspective-n-Point (PnP) pose estimation with RANSAC and refinement.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from keypose_app.ba.pose_refinement import pack_pose, refine_pose_vvs
from keypose_app.config import MatcherConfig, PoseMethod
from keypose_app.errors import (
    InsufficientCorrespondencesError,
    PoseNotFoundError,
    SizeMismatchError,
)
from keypose_app.model.data_structures import CameraParameters, PoseResult

logger = logging.getLogger(__name__)

# PnP requires at least 4 points
MIN_SAMPLE_SIZE = 4

PoseCheck = Callable[[np.ndarray], bool]


def project_points(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    object_points: np.ndarray,
) -> np.ndarray:
    """
    Project object points into image coordinates.

    Args:
        K: Intrinsic camera matrix (3x3).
        R: Rotation matrix (3x3) from object to camera coordinates.
        t: Translation vector (3, 1).
        object_points: (N, 3) object-frame points.

    Returns:
        Projected 2D points (N, 2).
    """
    if len(object_points) == 0:
        return np.zeros((0, 2))
    rvec, _ = cv2.Rodrigues(R)
    projected, _ = cv2.projectPoints(
        np.asarray(object_points, dtype=np.float64).reshape(-1, 1, 3),
        rvec,
        np.asarray(t, dtype=np.float64).reshape(3, 1),
        K,
        None,
    )
    return projected.reshape(-1, 2)


def depths(R: np.ndarray, t: np.ndarray, object_points: np.ndarray) -> np.ndarray:
    """Z coordinate of each object point in the camera frame."""
    return (R @ np.asarray(object_points, dtype=np.float64).T + t.reshape(3, 1))[2]


def reprojection_errors(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    object_points: np.ndarray,
    image_points: np.ndarray,
) -> np.ndarray:
    """Per-point pixel reprojection error (N,)."""
    projected = project_points(K, R, t, object_points)
    return np.linalg.norm(projected - image_points, axis=1)


def compute_pose_estimation_error(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    object_points: np.ndarray,
    image_points: np.ndarray,
) -> float:
    """Mean pixel reprojection error, 0.0 for an empty set."""
    if len(object_points) == 0:
        return 0.0
    return float(np.mean(reprojection_errors(K, R, t, object_points, image_points)))


def _is_degenerate(sample_2d: np.ndarray, sample_3d: np.ndarray) -> bool:
    """True for samples with repeated points or collinear image points."""
    for pts in (sample_2d, sample_3d):
        diffs = pts[:, None, :] - pts[None, :, :]
        dist = np.linalg.norm(diffs, axis=2)
        if np.any(dist[np.triu_indices(len(pts), k=1)] < 1e-9):
            return True
    # The first three image points fix the P3P solutions.
    a, b, c = sample_2d[:3]
    area = (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])
    return abs(area) < 1e-9


def _all_collinear(image_points: np.ndarray) -> bool:
    centred = image_points - image_points.mean(axis=0)
    scale = max(float(np.abs(centred).max()), 1.0)
    return np.linalg.matrix_rank(centred / scale, tol=1e-9) < 2


def solve_minimal_pose(
    K: np.ndarray,
    sample_3d: np.ndarray,
    sample_2d: np.ndarray,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Closed-form pose from exactly four correspondences (AP3P).

    Returns:
        (R, t) or None when the solver found no solution.
    """
    try:
        success, rvec, tvec = cv2.solvePnP(
            sample_3d.reshape(-1, 1, 3),
            sample_2d.reshape(-1, 1, 2),
            K,
            None,
            flags=cv2.SOLVEPNP_AP3P,
        )
    except cv2.error as e:
        logger.debug("[ransac] Minimal solver failed: %s", e)
        return None
    if not success or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
        return None
    R, _ = cv2.Rodrigues(rvec)
    return R, tvec.reshape(3, 1)


class RansacPoseEstimator:
    """
    RANSAC over minimal 4-point samples, followed by refinement on the inliers.

    With PoseMethod.OPENCV, candidates are scored by pixel reprojection
    error (`ransac_reprojection_error`) and the inliers are refined with
    Levenberg-Marquardt in OpenCV. With PoseMethod.VVS, candidates are
    scored by normalized image-plane error (`ransac_threshold`) and refined
    by virtual visual servoing, which can also produce the pose covariance.
    """

    def __init__(self, config: MatcherConfig) -> None:
        self.config = config
        # Configuration for which the covariance warning was last emitted.
        self._covariance_warning_key: Optional[Tuple[PoseMethod, bool]] = None

    def consensus_floor(self, n_correspondences: int) -> int:
        """Minimum inlier count for a candidate to be accepted."""
        if self.config.use_consensus_percentage:
            floor = int(self.config.ransac_consensus_percentage / 100.0 * n_correspondences)
        else:
            floor = int(self.config.ransac_min_inlier_count)
        # A pose is never accepted on fewer points than a minimal sample.
        return max(floor, MIN_SAMPLE_SIZE)

    def _warn_covariance_once(self) -> None:
        key = (self.config.pose_method, self.config.compute_covariance)
        if self._covariance_warning_key == key:
            return
        self._covariance_warning_key = key
        logger.warning(
            "[ransac] The covariance matrix can only be computed with the VVS pose method; "
            "returning an empty matrix"
        )

    def _inlier_mask(
        self,
        cam: CameraParameters,
        R: np.ndarray,
        t: np.ndarray,
        object_points: np.ndarray,
        image_points: np.ndarray,
        image_xy: np.ndarray,
    ) -> np.ndarray:
        if self.config.pose_method == PoseMethod.VVS:
            Xc = R @ object_points.T + t.reshape(3, 1)
            with np.errstate(divide="ignore", invalid="ignore"):
                xy = (Xc[:2] / Xc[2]).T
            err = np.linalg.norm(xy - image_xy, axis=1)
            thr = self.config.ransac_threshold
        else:
            err = reprojection_errors(cam.K, R, t, object_points, image_points)
            thr = self.config.ransac_reprojection_error
        in_front = depths(R, t, object_points) > 0
        return in_front & np.isfinite(err) & (err < thr)

    def estimate(
        self,
        image_points: np.ndarray,
        object_points: np.ndarray,
        cam: CameraParameters,
        rng: Optional[np.random.Generator] = None,
        pose_check: Optional[PoseCheck] = None,
    ) -> PoseResult:
        """
        Estimate the object pose from 2D/3D correspondences.

        Args:
            image_points: (N, 2) pixel coordinates in the query image.
            object_points: (N, 3) object-frame coordinates.
            cam: Camera intrinsics.
            rng: Generator used to draw samples; defaults to one seeded with
                 `config.ransac_seed`.
            pose_check: Optional callback on a candidate cMo (4x4) returning
                        False to reject it.

        Returns:
            PoseResult with every input correspondence classified as inlier
            or outlier.

        Raises:
            SizeMismatchError: Arrays of different lengths.
            InsufficientCorrespondencesError: Fewer than 4 distinct correspondences.
            PoseNotFoundError: No candidate reached the consensus floor.
        """
        start_time = time.perf_counter()
        image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
        n = len(image_points)
        if len(object_points) != n:
            raise SizeMismatchError(f"{n} image points but {len(object_points)} object points")

        n_distinct = len(np.unique(np.hstack([image_points, object_points]), axis=0))
        if n_distinct < MIN_SAMPLE_SIZE:
            raise InsufficientCorrespondencesError(
                f"Need at least {MIN_SAMPLE_SIZE} distinct correspondences, got {n_distinct}"
            )
        if _all_collinear(image_points):
            raise InsufficientCorrespondencesError(
                "All image points are collinear; no non-degenerate sample exists"
            )

        if rng is None:
            rng = np.random.default_rng(self.config.ransac_seed)

        K = cam.K
        image_xy = cam.pixel_to_meter(image_points)

        best_count = -1
        best_pose: Optional[Tuple[np.ndarray, np.ndarray]] = None
        best_mask = np.zeros(n, dtype=bool)

        for _ in range(self.config.ransac_iterations):
            idx = rng.choice(n, size=MIN_SAMPLE_SIZE, replace=False)
            sample_2d = image_points[idx]
            sample_3d = object_points[idx]
            if _is_degenerate(sample_2d, sample_3d):
                continue
            candidate = solve_minimal_pose(K, sample_3d, sample_2d)
            if candidate is None:
                continue
            R, t = candidate
            if pose_check is not None and not pose_check(_homogeneous(R, t)):
                continue

            mask = self._inlier_mask(cam, R, t, object_points, image_points, image_xy)
            count = int(mask.sum())
            # Strictly greater: the first candidate reaching a score is kept.
            if count > best_count:
                best_count = count
                best_pose = (R, t)
                best_mask = mask

        floor = self.consensus_floor(n)
        if best_pose is None or best_count < floor:
            raise PoseNotFoundError(
                f"Best consensus {max(best_count, 0)} of {n} correspondences is below {floor}"
            )
        logger.debug("[ransac] Best candidate: %d/%d inliers (floor %d)", best_count, n, floor)

        R, t = best_pose
        R_ref, t_ref, covariance = self._refine(cam, R, t, object_points[best_mask],
                                               image_points[best_mask], image_xy[best_mask])

        mask = self._inlier_mask(cam, R_ref, t_ref, object_points, image_points, image_xy)
        if int(mask.sum()) < best_count:
            # Refinement must not lose consensus; keep the sampled candidate.
            logger.debug("[ransac] Refinement reduced consensus; keeping the candidate pose")
            R_ref, t_ref, mask = R, t, best_mask

        inliers = np.flatnonzero(mask)
        outliers = np.flatnonzero(~mask)
        error = compute_pose_estimation_error(
            K, R_ref, t_ref, object_points[inliers], image_points[inliers]
        )
        elapsed_ms = (time.perf_counter() - start_time) * 1000.0
        logger.info(
            "[ransac] Pose found: %d inliers, %d outliers, mean error %.3f px, %.1f ms",
            len(inliers),
            len(outliers),
            error,
            elapsed_ms,
        )
        return PoseResult(
            R=R_ref,
            t=t_ref,
            inliers=inliers,
            outliers=outliers,
            covariance=covariance,
            error=error,
            elapsed_ms=elapsed_ms,
        )

    def _refine(
        self,
        cam: CameraParameters,
        R: np.ndarray,
        t: np.ndarray,
        object_points: np.ndarray,
        image_points: np.ndarray,
        image_xy: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        covariance = np.zeros((0, 0))
        if self.config.pose_method == PoseMethod.VVS:
            if len(object_points) < 3:
                return R, t, covariance
            return refine_pose_vvs(
                R,
                t,
                object_points,
                image_xy,
                compute_covariance=self.config.compute_covariance,
            )

        if self.config.compute_covariance:
            self._warn_covariance_once()
        if len(object_points) < MIN_SAMPLE_SIZE:
            return R, t, covariance
        params = pack_pose(R, t)
        rvec, tvec = cv2.solvePnPRefineLM(
            object_points.reshape(-1, 1, 3),
            image_points.reshape(-1, 1, 2),
            cam.K,
            None,
            params[:3].reshape(3, 1).copy(),
            params[3:6].reshape(3, 1).copy(),
        )
        R_ref, _ = cv2.Rodrigues(rvec)
        return R_ref, tvec.reshape(3, 1), covariance


def _homogeneous(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t.ravel()
    return T


__all__ = [
    "MIN_SAMPLE_SIZE",
    "project_points",
    "reprojection_errors",
    "compute_pose_estimation_error",
    "solve_minimal_pose",
    "RansacPoseEstimator",
]
