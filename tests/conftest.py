from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
import pytest

from keypose_app.features.matching import match_descriptors
from keypose_app.model.data_structures import CameraParameters, MatchSet


@pytest.fixture
def cam() -> CameraParameters:
    return CameraParameters(px=800.0, py=800.0, u0=320.0, v0=240.0)


def make_pose(rvec=(0.1, -0.2, 0.05), t=(0.1, -0.05, 4.0)) -> Tuple[np.ndarray, np.ndarray]:
    R, _ = cv2.Rodrigues(np.array(rvec, dtype=np.float64).reshape(3, 1))
    return R, np.array(t, dtype=np.float64).reshape(3, 1)


def project(cam: CameraParameters, R: np.ndarray, t: np.ndarray, X: np.ndarray) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(R)
    uv, _ = cv2.projectPoints(X.reshape(-1, 1, 3), rvec, t, cam.K, None)
    return uv.reshape(-1, 2)


def make_scene(
    cam: CameraParameters,
    n_inliers: int,
    n_outliers: int,
    seed: int = 0,
):
    """
    Non-planar object points seen under a known pose, with the last
    `n_outliers` image points pushed 40-120 px away from their projection.
    """
    rng = np.random.default_rng(seed)
    R, t = make_pose()
    X = rng.uniform(-0.5, 0.5, size=(n_inliers + n_outliers, 3))
    uv = project(cam, R, t, X)

    outlier_idx = np.arange(n_inliers, n_inliers + n_outliers)
    angles = rng.uniform(0, 2 * np.pi, size=n_outliers)
    radii = rng.uniform(40, 120, size=n_outliers)
    uv[outlier_idx] += np.stack([np.cos(angles), np.sin(angles)], axis=1) * radii[:, None]
    return uv, X, R, t, outlier_idx


class FakeAdapter:
    """
    Deterministic FeatureAdapter for synthetic images.

    Each image is a small uint8 array filled with a constant "tag"; the
    adapter returns the keypoints and descriptors registered for that tag.
    Matching uses the real brute-force L2 matcher.
    """

    def __init__(self) -> None:
        self._scenes: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        self.extract_calls = 0

    def add_image(self, tag: int, points: np.ndarray, descriptors: np.ndarray) -> np.ndarray:
        self._scenes[tag] = (
            np.asarray(points, dtype=np.float32),
            np.asarray(descriptors, dtype=np.float32),
        )
        return np.full((8, 8), tag, dtype=np.uint8)

    def detect(self, image: np.ndarray, roi=None) -> List[cv2.KeyPoint]:
        points, _ = self._scenes[int(image[0, 0])]
        keypoints = []
        for u, v in points:
            if roi is not None:
                x, y, w, h = roi
                if not (x <= u < x + w and y <= v < y + h):
                    continue
            keypoints.append(cv2.KeyPoint(float(u), float(v), 7.0))
        return keypoints

    def extract(self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]):
        self.extract_calls += 1
        points, descriptors = self._scenes[int(image[0, 0])]
        rows = []
        for kp in keypoints:
            dist = np.linalg.norm(points - np.array(kp.pt, dtype=np.float32), axis=1)
            rows.append(int(np.argmin(dist)))
        width = descriptors.shape[1]
        return list(keypoints), descriptors[rows].reshape(-1, width)

    def match(self, train_descriptors: np.ndarray, query_descriptors: np.ndarray, k: int) -> MatchSet:
        return match_descriptors(train_descriptors, query_descriptors, matcher_name="BruteForce", k=k)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()
