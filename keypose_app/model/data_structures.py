"""
Shared core data structures for the keypoint matching pipeline.

These dataclasses are intentionally simple containers used across:
- the reference model store
- match filtering
- RANSAC pose estimation and refinement
- learning data persistence
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np


@dataclass(eq=False)
class KeypointSet:
    """
    Keypoints stored as parallel arrays, row i describing keypoint i.

    Orientation, scale, response and octave are carried along untouched so
    that a learned model round-trips through persistence; only `points` and
    `image_ids` are interpreted by the pipeline.
    """

    # (N, 2) float32 sub-pixel (u, v) locations.
    points: np.ndarray
    sizes: np.ndarray
    angles: np.ndarray
    responses: np.ndarray
    octaves: np.ndarray
    # (N,) int32 id of the training (or query) image that owns the keypoint.
    image_ids: np.ndarray

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float32).reshape(-1, 2)
        self.sizes = np.asarray(self.sizes, dtype=np.float32).ravel()
        self.angles = np.asarray(self.angles, dtype=np.float32).ravel()
        self.responses = np.asarray(self.responses, dtype=np.float32).ravel()
        self.octaves = np.asarray(self.octaves, dtype=np.int32).ravel()
        self.image_ids = np.asarray(self.image_ids, dtype=np.int32).ravel()

    @classmethod
    def empty(cls) -> "KeypointSet":
        return cls.from_points(np.zeros((0, 2), dtype=np.float32))

    @classmethod
    def from_points(cls, points: np.ndarray, image_id: int = -1) -> "KeypointSet":
        """Build a keypoint set from bare pixel locations."""
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        n = len(points)
        return cls(
            points=points,
            sizes=np.ones(n, dtype=np.float32),
            angles=np.full(n, -1.0, dtype=np.float32),
            responses=np.zeros(n, dtype=np.float32),
            octaves=np.zeros(n, dtype=np.int32),
            image_ids=np.full(n, image_id, dtype=np.int32),
        )

    @classmethod
    def from_cv(
        cls,
        keypoints: Sequence[cv2.KeyPoint],
        image_id: Optional[int] = None,
    ) -> "KeypointSet":
        """
        Convert a list of cv2.KeyPoint into a KeypointSet.

        Args:
            keypoints: OpenCV keypoints.
            image_id: If given, overrides each keypoint's class_id.

        Returns:
            KeypointSet with one row per keypoint.
        """
        n = len(keypoints)
        points = np.array([kp.pt for kp in keypoints], dtype=np.float32).reshape(n, 2)
        if image_id is None:
            image_ids = [kp.class_id for kp in keypoints]
        else:
            image_ids = [image_id] * n
        return cls(
            points=points,
            sizes=[kp.size for kp in keypoints],
            angles=[kp.angle for kp in keypoints],
            responses=[kp.response for kp in keypoints],
            octaves=[kp.octave for kp in keypoints],
            image_ids=image_ids,
        )

    def to_cv(self) -> List[cv2.KeyPoint]:
        """Convert back to a list of cv2.KeyPoint (class_id carries the image id)."""
        return [
            cv2.KeyPoint(
                float(self.points[i, 0]),
                float(self.points[i, 1]),
                float(self.sizes[i]),
                float(self.angles[i]),
                float(self.responses[i]),
                int(self.octaves[i]),
                int(self.image_ids[i]),
            )
            for i in range(len(self))
        ]

    def subset(self, indices: np.ndarray) -> "KeypointSet":
        """Select rows by index array or boolean mask."""
        return KeypointSet(
            points=self.points[indices],
            sizes=self.sizes[indices],
            angles=self.angles[indices],
            responses=self.responses[indices],
            octaves=self.octaves[indices],
            image_ids=self.image_ids[indices],
        )

    def concatenate(self, other: "KeypointSet") -> "KeypointSet":
        return KeypointSet(
            points=np.vstack([self.points, other.points]),
            sizes=np.concatenate([self.sizes, other.sizes]),
            angles=np.concatenate([self.angles, other.angles]),
            responses=np.concatenate([self.responses, other.responses]),
            octaves=np.concatenate([self.octaves, other.octaves]),
            image_ids=np.concatenate([self.image_ids, other.image_ids]),
        )

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeypointSet):
            return NotImplemented
        return (
            np.array_equal(self.points, other.points)
            and np.array_equal(self.sizes, other.sizes)
            and np.array_equal(self.angles, other.angles)
            and np.array_equal(self.responses, other.responses)
            and np.array_equal(self.octaves, other.octaves)
            and np.array_equal(self.image_ids, other.image_ids)
        )


@dataclass(frozen=True)
class TrainingImageRecord:
    """A training image and the contiguous train index range [start, stop) it contributed."""

    image_id: int
    start: int
    stop: int

    def __len__(self) -> int:
        return self.stop - self.start

    def contains(self, train_idx: int) -> bool:
        return self.start <= train_idx < self.stop


@dataclass(eq=False)
class MatchSet:
    """
    Raw or filtered correspondences between query and train descriptors.

    `second_distance` holds the distance of the second nearest train
    descriptor for the same query index, or NaN when only one neighbour was
    searched (k=1).
    """

    query_idx: np.ndarray
    train_idx: np.ndarray
    distance: np.ndarray
    second_distance: np.ndarray
    # True when the k=2 pass ran and `second_distance` is meaningful.
    knn: bool = False

    def __post_init__(self) -> None:
        self.query_idx = np.asarray(self.query_idx, dtype=np.int64).ravel()
        self.train_idx = np.asarray(self.train_idx, dtype=np.int64).ravel()
        self.distance = np.asarray(self.distance, dtype=np.float64).ravel()
        self.second_distance = np.asarray(self.second_distance, dtype=np.float64).ravel()

    @classmethod
    def empty(cls, knn: bool = False) -> "MatchSet":
        return cls(
            query_idx=np.zeros(0, dtype=np.int64),
            train_idx=np.zeros(0, dtype=np.int64),
            distance=np.zeros(0),
            second_distance=np.zeros(0),
            knn=knn,
        )

    @classmethod
    def from_dmatches(cls, matches: Sequence, knn: bool = False) -> "MatchSet":
        """
        Build a MatchSet from OpenCV matcher output.

        Args:
            matches: Either a flat list of cv2.DMatch (k=1) or a list of
                     k-NN candidate lists (k=2). Query indices with no
                     candidate are skipped; a single candidate gets a NaN
                     second distance.
            knn: Whether `matches` is k-NN output.

        Returns:
            MatchSet with one row per query keypoint that got a match.
        """
        query_idx, train_idx, distance, second = [], [], [], []
        for item in matches:
            if knn:
                if len(item) == 0:
                    continue
                best = item[0]
                second.append(item[1].distance if len(item) > 1 else np.nan)
            else:
                best = item
                second.append(np.nan)
            query_idx.append(best.queryIdx)
            train_idx.append(best.trainIdx)
            distance.append(best.distance)
        return cls(
            query_idx=np.array(query_idx, dtype=np.int64),
            train_idx=np.array(train_idx, dtype=np.int64),
            distance=np.array(distance, dtype=np.float64),
            second_distance=np.array(second, dtype=np.float64),
            knn=knn,
        )

    def subset(self, indices: np.ndarray) -> "MatchSet":
        """Select rows by index array or boolean mask."""
        return MatchSet(
            query_idx=self.query_idx[indices],
            train_idx=self.train_idx[indices],
            distance=self.distance[indices],
            second_distance=self.second_distance[indices],
            knn=self.knn,
        )

    def as_pairs(self) -> set:
        """Set of (query_idx, train_idx) pairs, handy for comparing filter outputs."""
        return set(zip(self.query_idx.tolist(), self.train_idx.tolist()))

    def __len__(self) -> int:
        return int(self.query_idx.shape[0])


@dataclass
class CameraParameters:
    """Pinhole intrinsics without distortion: focal ratios (px, py) and principal point (u0, v0)."""

    px: float
    py: float
    u0: float
    v0: float

    @classmethod
    def from_K(cls, K: np.ndarray) -> "CameraParameters":
        K = np.asarray(K, dtype=np.float64)
        return cls(px=float(K[0, 0]), py=float(K[1, 1]), u0=float(K[0, 2]), v0=float(K[1, 2]))

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [
                [self.px, 0.0, self.u0],
                [0.0, self.py, self.v0],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    def pixel_to_meter(self, uv: np.ndarray) -> np.ndarray:
        """Convert (N, 2) pixel coordinates to normalized image-plane coordinates."""
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        x = (uv[:, 0] - self.u0) / self.px
        y = (uv[:, 1] - self.v0) / self.py
        return np.stack([x, y], axis=1)

    def meter_to_pixel(self, xy: np.ndarray) -> np.ndarray:
        """Convert (N, 2) normalized image-plane coordinates to pixels."""
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        u = xy[:, 0] * self.px + self.u0
        v = xy[:, 1] * self.py + self.v0
        return np.stack([u, v], axis=1)


@dataclass
class PoseResult:
    """Object-to-camera transform with the inlier/outlier split of the input correspondences."""

    # Rotation (3x3) and translation (3x1) from object to camera coordinates.
    R: np.ndarray
    t: np.ndarray
    # Indices into the correspondences handed to the estimator.
    inliers: np.ndarray
    outliers: np.ndarray
    # 6x6 covariance of (rvec, t), or an empty (0, 0) matrix when not computed.
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    # Mean reprojection error (pixels) over the inliers.
    error: float = 0.0
    elapsed_ms: float = 0.0

    @property
    def rvec(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self.R)
        return rvec.reshape(3)

    @property
    def cMo(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.R
        T[:3, 3] = self.t.ravel()
        return T

    @property
    def num_inliers(self) -> int:
        return int(len(self.inliers))


@dataclass
class StageTimings:
    """Elapsed milliseconds per pipeline stage for the last call."""

    detection_ms: float = 0.0
    extraction_ms: float = 0.0
    matching_ms: float = 0.0
    pose_ms: float = 0.0

    @property
    def total_ms(self) -> float:
        return self.detection_ms + self.extraction_ms + self.matching_ms + self.pose_ms


@dataclass
class DetectionResult:
    """Presence decision for a query image, with the located region when found."""

    present: bool
    mean_distance: float
    score: float
    num_matches: int
    # (x, y, width, height) of the detected region in the query image.
    bounding_box: Optional[Tuple[float, float, float, float]] = None
    center_of_gravity: Optional[np.ndarray] = None
    pose: Optional[PoseResult] = None


__all__ = [
    "KeypointSet",
    "TrainingImageRecord",
    "MatchSet",
    "CameraParameters",
    "PoseResult",
    "StageTimings",
    "DetectionResult",
]
