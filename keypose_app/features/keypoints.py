"""
Keypoint detection and descriptor extraction.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from keypose_app.errors import InvalidParameterError

logger = logging.getLogger(__name__)

# (x, y, width, height) in pixels.
Rect = Tuple[int, int, int, int]


# Factory attribute names in cv2; some are missing from OpenCV builds
# that moved them to contrib.
_DETECTOR_FACTORIES = {
    "ORB": "ORB_create",
    "SIFT": "SIFT_create",
    "AKAZE": "AKAZE_create",
    "KAZE": "KAZE_create",
    "BRISK": "BRISK_create",
    "FAST": "FastFeatureDetector_create",
    "GFTT": "GFTTDetector_create",
    "MSER": "MSER_create",
    "SimpleBlob": "SimpleBlobDetector_create",
    "Agast": "AgastFeatureDetector_create",
}

_EXTRACTOR_FACTORIES = {
    "ORB": "ORB_create",
    "SIFT": "SIFT_create",
    "AKAZE": "AKAZE_create",
    "KAZE": "KAZE_create",
    "BRISK": "BRISK_create",
}


def _available(factory_names: Dict[str, str]) -> Dict[str, Callable[[], cv2.Feature2D]]:
    factories = {}
    for name, attr in factory_names.items():
        factory = getattr(cv2, attr, None)
        if factory is None:
            logger.debug("[features] %s is not available in this OpenCV build", name)
            continue
        factories[name] = factory
    return factories


def _default_detectors() -> Dict[str, Callable[[], cv2.Feature2D]]:
    return _available(_DETECTOR_FACTORIES)


def _default_extractors() -> Dict[str, Callable[[], cv2.Feature2D]]:
    return _available(_EXTRACTOR_FACTORIES)


class FeatureRegistry:
    """
    Named detector and extractor factories.

    One registry is built per matcher at startup; instances are created on
    demand and cached, so a detector configured through `detector()` keeps
    its parameters for the lifetime of the registry.
    """

    def __init__(
        self,
        detectors: Optional[Dict[str, Callable[[], cv2.Feature2D]]] = None,
        extractors: Optional[Dict[str, Callable[[], cv2.Feature2D]]] = None,
    ) -> None:
        self._detector_factories = dict(detectors or _default_detectors())
        self._extractor_factories = dict(extractors or _default_extractors())
        self._detectors: Dict[str, cv2.Feature2D] = {}
        self._extractors: Dict[str, cv2.Feature2D] = {}

    def register_detector(self, name: str, factory: Callable[[], cv2.Feature2D]) -> None:
        self._detector_factories[name] = factory
        self._detectors.pop(name, None)

    def register_extractor(self, name: str, factory: Callable[[], cv2.Feature2D]) -> None:
        self._extractor_factories[name] = factory
        self._extractors.pop(name, None)

    @property
    def detector_names(self) -> List[str]:
        return sorted(self._detector_factories)

    @property
    def extractor_names(self) -> List[str]:
        return sorted(self._extractor_factories)

    def detector(self, name: str) -> cv2.Feature2D:
        if name not in self._detectors:
            if name not in self._detector_factories:
                raise InvalidParameterError(
                    f"Unknown or unavailable detector {name!r}; available: {self.detector_names}"
                )
            self._detectors[name] = self._detector_factories[name]()
        return self._detectors[name]

    def extractor(self, name: str) -> cv2.Feature2D:
        if name not in self._extractors:
            if name not in self._extractor_factories:
                raise InvalidParameterError(
                    f"Unknown or unavailable extractor {name!r}; available: {self.extractor_names}"
                )
            self._extractors[name] = self._extractor_factories[name]()
        return self._extractors[name]


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert an RGB image to grayscale; grayscale input is returned as is."""
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def roi_mask(shape: Tuple[int, ...], roi: Optional[Rect]) -> Optional[np.ndarray]:
    """
    Build a detection mask keeping only the pixels inside `roi`.

    Args:
        shape: Image shape (H, W) or (H, W, C).
        roi: Rectangle (x, y, width, height), or None for the whole image.

    Returns:
        uint8 mask (H, W), or None when no ROI is given.
    """
    if roi is None:
        return None
    x, y, w, h = (int(round(v)) for v in roi)
    if w <= 0 or h <= 0:
        raise InvalidParameterError(f"Region of interest must have a positive size, got {roi}")
    mask = np.zeros(shape[:2], dtype=np.uint8)
    mask[max(y, 0) : max(y + h, 0), max(x, 0) : max(x + w, 0)] = 255
    return mask


def detect_keypoints(
    image: np.ndarray,
    detectors: Iterable[cv2.Feature2D],
    roi: Optional[Rect] = None,
) -> List[cv2.KeyPoint]:
    """
    Detect keypoints with one or more detectors.

    Args:
        image: Input image (H, W, 3) or (H, W), dtype=uint8.
        detectors: Detectors whose keypoints are concatenated in order.
        roi: Optional rectangle (x, y, width, height) restricting detection.

    Returns:
        List of cv2.KeyPoint objects with class_id reset to -1.
    """
    gray = to_gray(image)
    mask = roi_mask(gray.shape, roi)

    keypoints: List[cv2.KeyPoint] = []
    for detector in detectors:
        keypoints.extend(detector.detect(gray, mask))

    for kp in keypoints:
        kp.class_id = -1
    return keypoints


def extract_descriptors(
    image: np.ndarray,
    keypoints: Sequence[cv2.KeyPoint],
    extractors: Union[cv2.Feature2D, Sequence[cv2.Feature2D]],
) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
    """
    Compute descriptors for the given keypoints.

    With several extractors, each one describes the same keypoints and the
    descriptors are concatenated column-wise; only keypoints described by
    every extractor are kept. The extractors must share a descriptor type.

    Args:
        image: Input image (H, W, 3) or (H, W), dtype=uint8.
        keypoints: Keypoints to describe.
        extractors: OpenCV descriptor extractor, or a sequence of them.

    Returns:
        Tuple of (keypoints, descriptors) where:
        - keypoints: Keypoints that could be described, in input order. The
          extractors may drop some (e.g. too close to the border).
        - descriptors: Array (N, D) aligned with the returned keypoints,
          dtype=float32 (SIFT) or uint8 (ORB).
    """
    if isinstance(extractors, cv2.Feature2D):
        extractors = [extractors]
    dtypes = {np.dtype(_descriptor_dtype(e)) for e in extractors}
    if len(dtypes) != 1:
        raise InvalidParameterError("Extractors must all produce the same descriptor type")
    dtype = dtypes.pop()
    width = sum(e.descriptorSize() for e in extractors)

    gray = to_gray(image)
    if len(keypoints) == 0:
        return [], np.zeros((0, width), dtype=dtype)

    # class_id carries the input index through compute(), which may drop
    # or reorder keypoints.
    tagged = [
        cv2.KeyPoint(kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave, i)
        for i, kp in enumerate(keypoints)
    ]
    rows_per_extractor = []
    described = {}
    for j, extractor in enumerate(extractors):
        kept, descriptors = extractor.compute(gray, tagged)
        if j == 0:
            described = {kp.class_id: kp for kp in kept}
        if descriptors is None:
            descriptors = np.zeros((0, extractor.descriptorSize()), dtype=dtype)
        rows_per_extractor.append(
            ({kp.class_id: row for kp, row in zip(kept, descriptors)}, descriptors.shape[1])
        )

    survivors = [
        i for i in range(len(keypoints)) if all(i in rows for rows, _ in rows_per_extractor)
    ]
    if len(survivors) != len(keypoints):
        logger.debug(
            "[features] Extractors dropped %d of %d keypoints",
            len(keypoints) - len(survivors),
            len(keypoints),
        )
    if not survivors:
        return [], np.zeros((0, sum(w for _, w in rows_per_extractor)), dtype=dtype)

    descriptors = np.hstack(
        [np.vstack([rows[i] for i in survivors]) for rows, _ in rows_per_extractor]
    ).astype(dtype, copy=False)
    kept = []
    for i in survivors:
        kp = described[i]
        kept.append(
            cv2.KeyPoint(kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave,
                         keypoints[i].class_id)
        )
    return kept, descriptors


def _descriptor_dtype(extractor: cv2.Feature2D) -> np.dtype:
    return np.float32 if extractor.descriptorType() == cv2.CV_32F else np.uint8


__all__ = [
    "FeatureRegistry",
    "roi_mask",
    "to_gray",
    "detect_keypoints",
    "extract_descriptors",
]
