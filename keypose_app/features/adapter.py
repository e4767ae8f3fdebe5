"""
Detector / extractor / matcher capability consumed by the pipeline.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from keypose_app.errors import InvalidParameterError
from keypose_app.features.keypoints import (
    FeatureRegistry,
    Rect,
    detect_keypoints,
    extract_descriptors,
)
from keypose_app.features.matching import MATCHER_NAMES, match_descriptors
from keypose_app.model.data_structures import MatchSet


class FeatureAdapter(Protocol):
    """Anything able to detect, describe and match keypoints."""

    def detect(self, image: np.ndarray, roi: Optional[Rect] = None) -> List[cv2.KeyPoint]:
        ...

    def extract(
        self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        ...

    def match(self, train_descriptors: np.ndarray, query_descriptors: np.ndarray, k: int) -> MatchSet:
        ...


class OpenCVFeatureAdapter:
    """FeatureAdapter backed by OpenCV features2d, configured by name."""

    def __init__(
        self,
        detector_names: Sequence[str] = ("ORB",),
        extractor_names: Sequence[str] = ("ORB",),
        matcher_name: str = "BruteForce-Hamming",
        cross_check: bool = False,
        registry: Optional[FeatureRegistry] = None,
    ) -> None:
        self.registry = registry if registry is not None else FeatureRegistry()
        self.detector_names = list(detector_names)
        self.extractor_names = list(extractor_names)
        self.matcher_name = matcher_name
        self.cross_check = cross_check
        # Fail now on unknown names rather than on the first image.
        for name in self.detector_names:
            self.registry.detector(name)
        extractors = [self.registry.extractor(name) for name in self.extractor_names]
        if not extractors:
            raise InvalidParameterError("At least one extractor is required")
        if len({e.descriptorType() for e in extractors}) != 1:
            raise InvalidParameterError(
                f"Extractors {self.extractor_names} produce different descriptor types"
            )
        if matcher_name not in MATCHER_NAMES:
            raise InvalidParameterError(f"Unknown matcher: {matcher_name}")

    def detect(self, image: np.ndarray, roi: Optional[Rect] = None) -> List[cv2.KeyPoint]:
        detectors = [self.registry.detector(name) for name in self.detector_names]
        return detect_keypoints(image, detectors, roi=roi)

    def extract(
        self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        extractors = [self.registry.extractor(name) for name in self.extractor_names]
        return extract_descriptors(image, keypoints, extractors)

    def match(self, train_descriptors: np.ndarray, query_descriptors: np.ndarray, k: int) -> MatchSet:
        return match_descriptors(
            train_descriptors,
            query_descriptors,
            matcher_name=self.matcher_name,
            k=k,
            cross_check=self.cross_check,
        )


__all__ = ["FeatureAdapter", "OpenCVFeatureAdapter"]
