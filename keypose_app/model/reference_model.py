"""
Reference model store: the accumulated training keypoints, descriptors,
object-frame 3D points and training image ids.
"""

from __future__ import annotations

import copy
import logging
from typing import Dict, List, Optional, Sequence, Union

import cv2
import numpy as np

from keypose_app.errors import InvalidParameterError, SizeMismatchError
from keypose_app.model.data_structures import KeypointSet, TrainingImageRecord

logger = logging.getLogger(__name__)

KeypointsLike = Union[KeypointSet, Sequence[cv2.KeyPoint]]


def _read_only(array: np.ndarray) -> np.ndarray:
    view = array.view()
    view.flags.writeable = False
    return view


def _as_keypoint_set(keypoints: KeypointsLike) -> KeypointSet:
    if isinstance(keypoints, KeypointSet):
        return keypoints
    return KeypointSet.from_cv(list(keypoints))


class ReferenceModel:
    """
    Append-only store of everything learned from the training images.

    Row i of `keypoints`, `descriptors`, `object_points` and `has_point`
    always describes the same training keypoint. Appending never renumbers
    existing rows, and training image ids are strictly increasing and never
    handed out twice by the same store.
    """

    def __init__(self) -> None:
        self._next_image_id = 0
        self.clear()

    def clear(self) -> None:
        """Drop all learned data. Image ids already handed out stay retired."""
        self._keypoints = KeypointSet.empty()
        self._descriptors: Optional[np.ndarray] = None
        self._object_points = np.zeros((0, 3), dtype=np.float32)
        self._has_point = np.zeros(0, dtype=bool)
        self._records: List[TrainingImageRecord] = []
        self._images: Dict[int, np.ndarray] = {}

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def keypoints(self) -> KeypointSet:
        return self._keypoints

    @property
    def descriptors(self) -> np.ndarray:
        if self._descriptors is None:
            return _read_only(np.zeros((0, 0), dtype=np.uint8))
        return _read_only(self._descriptors)

    @property
    def descriptor_dtype(self) -> Optional[np.dtype]:
        return None if self._descriptors is None else self._descriptors.dtype

    @property
    def descriptor_width(self) -> int:
        return 0 if self._descriptors is None else int(self._descriptors.shape[1])

    @property
    def object_points(self) -> np.ndarray:
        """(N, 3) object-frame points; rows where `has_point` is False are zeros."""
        return _read_only(self._object_points)

    @property
    def has_point(self) -> np.ndarray:
        return _read_only(self._has_point)

    @property
    def has_3d_points(self) -> bool:
        return bool(self._has_point.any())

    @property
    def records(self) -> List[TrainingImageRecord]:
        return list(self._records)

    @property
    def image_ids(self) -> List[int]:
        return [record.image_id for record in self._records]

    @property
    def images(self) -> Dict[int, np.ndarray]:
        return dict(self._images)

    @property
    def next_image_id(self) -> int:
        return self._next_image_id

    def __len__(self) -> int:
        return len(self._keypoints)

    def image_id_of(self, train_idx: Union[int, np.ndarray]) -> Union[int, np.ndarray]:
        """Training image id that contributed the given train index (or indices)."""
        ids = self._keypoints.image_ids[train_idx]
        if np.ndim(ids) == 0:
            return int(ids)
        return ids

    def record_of(self, image_id: int) -> TrainingImageRecord:
        for record in self._records:
            if record.image_id == image_id:
                return record
        raise KeyError(image_id)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def append(
        self,
        keypoints: KeypointsLike,
        descriptors: np.ndarray,
        object_points: Optional[np.ndarray] = None,
        image_id: Optional[int] = None,
        image: Optional[np.ndarray] = None,
    ) -> TrainingImageRecord:
        """
        Add one training image worth of keypoints to the model.

        Args:
            keypoints: Training keypoints (KeypointSet or cv2.KeyPoint list).
            descriptors: (N, D) descriptors aligned with `keypoints`.
            object_points: Optional (N, 3) object-frame points; rows holding
                           NaN mark keypoints without 3D information.
            image_id: Explicit id, must not be lower than `next_image_id`.
                      Defaults to `next_image_id`.
            image: Optional training image kept for persistence.

        Returns:
            The TrainingImageRecord describing the appended range.

        Raises:
            SizeMismatchError: Collection lengths or descriptor widths disagree.
            InvalidParameterError: Reused image id or descriptor dtype change.
        """
        kps = _as_keypoint_set(keypoints)
        desc = np.asarray(descriptors)
        n = len(kps)
        if desc.ndim == 1 and desc.size == 0:
            desc = desc.reshape(0, self.descriptor_width)
        if desc.ndim != 2 or desc.shape[0] != n:
            raise SizeMismatchError(
                f"{n} keypoints but descriptors have shape {desc.shape}"
            )

        if object_points is None:
            pts = np.zeros((n, 3), dtype=np.float32)
            present = np.zeros(n, dtype=bool)
        else:
            pts = np.asarray(object_points, dtype=np.float32)
            if pts.ndim != 2 or pts.shape != (n, 3):
                raise SizeMismatchError(
                    f"{n} keypoints but object points have shape {pts.shape}"
                )
            present = ~np.isnan(pts).any(axis=1)
            pts = np.where(present[:, None], pts, 0.0).astype(np.float32)

        if self._descriptors is not None and n > 0:
            if desc.shape[1] != self._descriptors.shape[1]:
                raise SizeMismatchError(
                    f"Descriptor width {desc.shape[1]} does not match the "
                    f"model width {self._descriptors.shape[1]}"
                )
            if desc.dtype != self._descriptors.dtype:
                raise InvalidParameterError(
                    f"Descriptor type {desc.dtype} does not match the model "
                    f"type {self._descriptors.dtype}"
                )

        if image_id is None:
            image_id = self._next_image_id
        elif image_id < self._next_image_id:
            raise InvalidParameterError(
                f"Image id {image_id} already used; next free id is {self._next_image_id}"
            )

        start = len(self._keypoints)
        kps = KeypointSet(
            points=kps.points,
            sizes=kps.sizes,
            angles=kps.angles,
            responses=kps.responses,
            octaves=kps.octaves,
            image_ids=np.full(n, image_id, dtype=np.int32),
        )
        self._keypoints = self._keypoints.concatenate(kps)
        # Only rows fix the descriptor width and type; empty images do not.
        if n > 0:
            if self._descriptors is None:
                self._descriptors = desc.copy()
            else:
                self._descriptors = np.vstack([self._descriptors, desc])
        self._object_points = np.vstack([self._object_points, pts])
        self._has_point = np.concatenate([self._has_point, present])

        record = TrainingImageRecord(image_id=int(image_id), start=start, stop=start + n)
        self._records.append(record)
        if image is not None:
            self._images[int(image_id)] = np.ascontiguousarray(image, dtype=np.uint8)
        self._next_image_id = int(image_id) + 1

        logger.debug(
            "[store] Appended image %d: %d keypoints (%d with 3D), model size %d",
            image_id,
            n,
            int(present.sum()),
            len(self),
        )
        return record

    def extend(self, other: "ReferenceModel") -> List[TrainingImageRecord]:
        """
        Append every training image of `other`, with fresh image ids.

        The compatibility of descriptors is checked before anything is
        written, so a failure leaves this model untouched.
        """
        if self._descriptors is not None and other._descriptors is not None:
            if other.descriptor_width != self.descriptor_width:
                raise SizeMismatchError(
                    f"Descriptor width {other.descriptor_width} does not match "
                    f"the model width {self.descriptor_width}"
                )
            if other.descriptor_dtype != self.descriptor_dtype:
                raise InvalidParameterError(
                    f"Descriptor type {other.descriptor_dtype} does not match "
                    f"the model type {self.descriptor_dtype}"
                )

        added = []
        for record in other.records:
            rows = slice(record.start, record.stop)
            idx = np.arange(record.start, record.stop)
            pts = other._object_points[rows].copy()
            pts[~other._has_point[rows]] = np.nan
            added.append(
                self.append(
                    other.keypoints.subset(idx),
                    other.descriptors[rows],
                    object_points=pts,
                    image=other._images.get(record.image_id),
                )
            )
        return added

    def replace_with(self, other: "ReferenceModel") -> None:
        """Take over the content of `other` (used by non-appending loads)."""
        self._keypoints = other._keypoints
        self._descriptors = other._descriptors
        self._object_points = other._object_points
        self._has_point = other._has_point
        self._records = list(other._records)
        self._images = dict(other._images)
        self._next_image_id = max(self._next_image_id, other._next_image_id)

    def copy(self) -> "ReferenceModel":
        return copy.deepcopy(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReferenceModel):
            return NotImplemented
        if self.descriptor_dtype != other.descriptor_dtype and len(self) > 0:
            return False
        return (
            self._keypoints == other._keypoints
            and np.array_equal(self.descriptors, other.descriptors)
            and np.array_equal(self._object_points, other._object_points)
            and np.array_equal(self._has_point, other._has_point)
            and self._records == other._records
            and self._images.keys() == other._images.keys()
            and all(np.array_equal(img, other._images[k]) for k, img in self._images.items())
        )


__all__ = ["ReferenceModel"]
