"""
Keypoint matching pipeline: learning a reference model from training
images, then matching query images against it to detect the object and
estimate its pose.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from keypose_app.config import MatcherConfig
from keypose_app.errors import PreconditionError, SizeMismatchError
from keypose_app.features.adapter import FeatureAdapter, OpenCVFeatureAdapter
from keypose_app.features.keypoints import FeatureRegistry, Rect
from keypose_app.features.matching import filter_matches
from keypose_app.geometry.localization import bounding_box, locate_object
from keypose_app.geometry.pnp import PoseCheck, RansacPoseEstimator
from keypose_app.io.learning_io import load_learning_data, save_learning_data
from keypose_app.model.data_structures import (
    CameraParameters,
    DetectionResult,
    KeypointSet,
    MatchSet,
    PoseResult,
    StageTimings,
)
from keypose_app.model.reference_model import ReferenceModel
from keypose_app.pipeline.detection import decide_presence

logger = logging.getLogger(__name__)


class KeyPointMatcher:
    """
    Learns reference keypoints and matches query images against them.

    Training side state lives in `model` (a ReferenceModel). Query side
    state (keypoints, descriptors, matches, RANSAC inliers, timings) belongs
    to the last query call and is replaced by the next one. A re-entrant
    lock serializes queries with model mutations.
    """

    def __init__(
        self,
        config: Optional[MatcherConfig] = None,
        adapter: Optional[FeatureAdapter] = None,
        model: Optional[ReferenceModel] = None,
        registry: Optional[FeatureRegistry] = None,
    ) -> None:
        self.config = config if config is not None else MatcherConfig()
        self.registry = registry if registry is not None else FeatureRegistry()
        self._custom_adapter = adapter is not None
        self._adapter_settings: Optional[Tuple] = None
        self.adapter = adapter if adapter is not None else self._default_adapter()
        self.model = model if model is not None else ReferenceModel()
        self.pose_estimator = RansacPoseEstimator(self.config)
        self._lock = threading.RLock()
        self._reset_query_state()

    def _feature_settings(self) -> Tuple:
        c = self.config
        return (
            tuple(c.detector_names),
            tuple(c.extractor_names),
            c.matcher_name,
            c.use_brute_force_cross_check,
        )

    def _default_adapter(self) -> OpenCVFeatureAdapter:
        settings = self._feature_settings()
        adapter = OpenCVFeatureAdapter(
            detector_names=self.config.detector_names,
            extractor_names=self.config.extractor_names,
            matcher_name=self.config.matcher_name,
            cross_check=self.config.use_brute_force_cross_check,
            registry=self.registry,
        )
        self._adapter_settings = settings
        return adapter

    def set_config(self, config: MatcherConfig) -> None:
        """Swap the configuration; the default OpenCV adapter is rebuilt to match."""
        with self._lock:
            self.config = config
            if not self._custom_adapter:
                self.adapter = self._default_adapter()
            self.pose_estimator = RansacPoseEstimator(config)

    def _sync_with_config(self) -> None:
        """Pick up edits made to `config` in place or by assignment."""
        if self.pose_estimator.config is not self.config:
            self.pose_estimator = RansacPoseEstimator(self.config)
        if self._custom_adapter or self._adapter_settings == self._feature_settings():
            return
        logger.info("[pipeline] Feature settings changed; rebuilding the OpenCV adapter")
        self.adapter = self._default_adapter()

    def _reset_query_state(self) -> None:
        self._query_keypoints = KeypointSet.empty()
        self._query_descriptors = np.zeros((0, 0), dtype=np.uint8)
        self._raw_matches = MatchSet.empty()
        self._matches = MatchSet.empty()
        self._ransac_inliers = np.zeros((0, 2))
        self._ransac_outliers = np.zeros((0, 2))
        self._last_pose: Optional[PoseResult] = None
        self._timings = StageTimings()

    @contextmanager
    def _timed(self, stage: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            setattr(self._timings, f"{stage}_ms", elapsed_ms)

    # ------------------------------------------------------------------
    # Last query results
    # ------------------------------------------------------------------
    @property
    def query_keypoints(self) -> KeypointSet:
        return self._query_keypoints

    @property
    def query_descriptors(self) -> np.ndarray:
        view = self._query_descriptors.view()
        view.flags.writeable = False
        return view

    @property
    def raw_matches(self) -> MatchSet:
        return self._raw_matches

    @property
    def matches(self) -> MatchSet:
        """Filtered matches of the last query."""
        return self._matches

    @property
    def ransac_inliers(self) -> np.ndarray:
        """(K, 2) query pixel locations of the RANSAC inliers."""
        return self._ransac_inliers

    @property
    def ransac_outliers(self) -> np.ndarray:
        return self._ransac_outliers

    @property
    def last_pose(self) -> Optional[PoseResult]:
        return self._last_pose

    @property
    def timings(self) -> StageTimings:
        t = self._timings
        return StageTimings(t.detection_ms, t.extraction_ms, t.matching_ms, t.pose_ms)

    @property
    def num_images(self) -> int:
        return len(self.model.records)

    def matched_points(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Pixel locations of the filtered matches.

        Returns:
            Tuple of (train_pts, query_pts), both (N, 2); row i of one is
            matched with row i of the other.
        """
        train_pts = self.model.keypoints.points[self._matches.train_idx]
        query_pts = self._query_keypoints.points[self._matches.query_idx]
        return train_pts, query_pts

    def matched_train_image_ids(self) -> np.ndarray:
        """Training image id of the train side of each filtered match."""
        return np.asarray(self.model.image_id_of(self._matches.train_idx), dtype=np.int64)

    def get_covariance_matrix(self) -> np.ndarray:
        """Covariance of the last pose, empty (0, 0) when it was not computed."""
        if self._last_pose is None:
            return np.zeros((0, 0))
        return self._last_pose.covariance

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def _detect_and_extract(
        self, image: np.ndarray, roi: Optional[Rect] = None
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        self._sync_with_config()
        with self._timed("detection"):
            keypoints = self.adapter.detect(image, roi)
        with self._timed("extraction"):
            keypoints, descriptors = self.adapter.extract(image, keypoints)
        return keypoints, descriptors

    def build_reference(
        self,
        image: np.ndarray,
        roi: Optional[Rect] = None,
        append: bool = True,
    ) -> int:
        """
        Learn the keypoints of a training image (2D only, no object points).

        Args:
            image: Training image.
            roi: Optional rectangle (x, y, width, height) to learn from.
            append: Add to the model instead of replacing it.

        Returns:
            Number of keypoints learned.
        """
        with self._lock:
            self._timings = StageTimings()
            keypoints, descriptors = self._detect_and_extract(image, roi)
            if not append:
                self.model.clear()
            record = self.model.append(keypoints, descriptors, image=image)
            logger.info(
                "[pipeline] Learned %d keypoints from training image %d",
                len(record),
                record.image_id,
            )
            return len(record)

    def build_reference_with_points(
        self,
        image: np.ndarray,
        keypoints: Sequence[cv2.KeyPoint],
        object_points: np.ndarray,
        append: bool = True,
    ) -> int:
        """
        Learn given training keypoints together with their object-frame points.

        Keypoints the extractor cannot describe are dropped along with their
        object points.

        Args:
            image: Training image.
            keypoints: Training keypoints, e.g. from `adapter.detect`.
            object_points: (N, 3) object-frame points aligned with `keypoints`.
            append: Add to the model instead of replacing it.

        Returns:
            Number of keypoints learned.
        """
        object_points = np.asarray(object_points, dtype=np.float32).reshape(-1, 3)
        if len(object_points) != len(keypoints):
            raise SizeMismatchError(
                f"{len(keypoints)} keypoints but {len(object_points)} object points"
            )

        with self._lock:
            self._timings = StageTimings()
            self._sync_with_config()
            # class_id tracks which input keypoints survive extraction.
            tagged = [
                cv2.KeyPoint(kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave, i)
                for i, kp in enumerate(keypoints)
            ]
            with self._timed("extraction"):
                kept, descriptors = self.adapter.extract(image, tagged)
            kept_idx = np.array([kp.class_id for kp in kept], dtype=np.int64)

            if not append:
                self.model.clear()
            record = self.model.append(
                kept,
                descriptors,
                object_points=object_points[kept_idx],
                image=image,
            )
            logger.info(
                "[pipeline] Learned %d of %d keypoints with 3D points from training image %d",
                len(record),
                len(keypoints),
                record.image_id,
            )
            return len(record)

    def save_learning_data(
        self,
        path: Union[str, Path],
        binary: bool = False,
        include_images: bool = True,
    ) -> None:
        with self._lock:
            save_learning_data(self.model, path, binary=binary, include_images=include_images)

    def load_learning_data(
        self,
        path: Union[str, Path],
        binary: bool = False,
        append: bool = False,
    ) -> None:
        with self._lock:
            load_learning_data(self.model, path, binary=binary, append=append)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------
    def _match_query(self, image: np.ndarray, roi: Optional[Rect]) -> MatchSet:
        self._reset_query_state()
        if len(self.model) == 0:
            raise PreconditionError("The reference model is empty; call build_reference first")

        keypoints, descriptors = self._detect_and_extract(image, roi)
        self._query_keypoints = KeypointSet.from_cv(keypoints, image_id=-1)
        self._query_descriptors = descriptors

        k = 2 if self.config.use_knn else 1
        with self._timed("matching"):
            self._raw_matches = self.adapter.match(self.model.descriptors, descriptors, k)
            self._matches = filter_matches(
                self._raw_matches,
                self.config.filter_type,
                factor=self.config.matching_factor_threshold,
                ratio=self.config.matching_ratio_threshold,
            )
        logger.debug(
            "[pipeline] %d query keypoints, %d raw matches, %d after filtering",
            len(keypoints),
            len(self._raw_matches),
            len(self._matches),
        )
        return self._matches

    def match_point(self, image: np.ndarray, roi: Optional[Rect] = None) -> int:
        """
        Match a query image against the reference model.

        Returns:
            Number of matches surviving the filter.
        """
        with self._lock:
            return len(self._match_query(image, roi))

    def _estimate_pose(
        self,
        matches: MatchSet,
        cam: CameraParameters,
        rng: Optional[np.random.Generator],
        pose_check: Optional[PoseCheck],
    ) -> PoseResult:
        with_3d = np.flatnonzero(self.model.has_point[matches.train_idx])
        image_points = self._query_keypoints.points[matches.query_idx[with_3d]]
        object_points = self.model.object_points[matches.train_idx[with_3d]]

        with self._timed("pose"):
            pose = self.pose_estimator.estimate(
                image_points, object_points, cam, rng=rng, pose_check=pose_check
            )

        # Re-index on the filtered matches; matches without 3D are outliers.
        inlier_mask = np.zeros(len(matches), dtype=bool)
        inlier_mask[with_3d[pose.inliers]] = True
        pose.inliers = np.flatnonzero(inlier_mask)
        pose.outliers = np.flatnonzero(~inlier_mask)

        query_pts = self._query_keypoints.points[matches.query_idx]
        self._ransac_inliers = query_pts[inlier_mask].astype(np.float64)
        self._ransac_outliers = query_pts[~inlier_mask].astype(np.float64)
        self._last_pose = pose
        return pose

    def match_point_and_estimate_pose(
        self,
        image: np.ndarray,
        cam: CameraParameters,
        roi: Optional[Rect] = None,
        rng: Optional[np.random.Generator] = None,
        pose_check: Optional[PoseCheck] = None,
    ) -> PoseResult:
        """
        Match a query image and estimate the object pose.

        Args:
            image: Query image.
            cam: Camera intrinsics of the query image.
            roi: Optional rectangle (x, y, width, height) to search in.
            rng: Generator for RANSAC sampling.
            pose_check: Optional callback vetoing candidate poses.

        Returns:
            PoseResult whose inliers/outliers index `self.matches`.
        """
        with self._lock:
            matches = self._match_query(image, roi)
            return self._estimate_pose(matches, cam, rng, pose_check)

    def match_point_and_detect(
        self,
        image: np.ndarray,
        roi: Optional[Rect] = None,
        planar: bool = True,
    ) -> DetectionResult:
        """
        Match a query image and decide whether the object is present.

        When present, the object region is located from the matches with a
        homography (planar object) or a fundamental matrix (non-planar).
        """
        with self._lock:
            matches = self._match_query(image, roi)
            decision = decide_presence(
                matches.distance,
                self.config.detection_method,
                self.config.detection_threshold,
                self.config.detection_score,
            )
            result = DetectionResult(
                present=decision.present,
                mean_distance=decision.mean_distance,
                score=decision.score,
                num_matches=len(matches),
            )
            if decision.present:
                train_pts, query_pts = self.matched_points()
                box, center, _ = locate_object(train_pts, query_pts, planar=planar)
                result.bounding_box = box
                result.center_of_gravity = center
            return result

    def match_point_detect_and_estimate_pose(
        self,
        image: np.ndarray,
        cam: CameraParameters,
        roi: Optional[Rect] = None,
        rng: Optional[np.random.Generator] = None,
        pose_check: Optional[PoseCheck] = None,
    ) -> DetectionResult:
        """
        Match, decide presence and, when present, estimate the pose.

        The bounding box and centre of gravity are those of the RANSAC inliers.
        """
        with self._lock:
            matches = self._match_query(image, roi)
            decision = decide_presence(
                matches.distance,
                self.config.detection_method,
                self.config.detection_threshold,
                self.config.detection_score,
            )
            result = DetectionResult(
                present=decision.present,
                mean_distance=decision.mean_distance,
                score=decision.score,
                num_matches=len(matches),
            )
            if not decision.present:
                return result

            result.pose = self._estimate_pose(matches, cam, rng, pose_check)
            result.bounding_box = bounding_box(self._ransac_inliers)
            if len(self._ransac_inliers) > 0:
                result.center_of_gravity = self._ransac_inliers.mean(axis=0)
            return result


__all__ = ["KeyPointMatcher"]
