import cv2
import numpy as np
import pytest

from keypose_app.errors import InvalidParameterError, SizeMismatchError
from keypose_app.model.data_structures import KeypointSet
from keypose_app.model.reference_model import ReferenceModel


def _batch(n, width=32, seed=0, with_points=True):
    rng = np.random.default_rng(seed)
    kps = KeypointSet.from_points(rng.uniform(0, 100, size=(n, 2)))
    desc = rng.integers(0, 256, size=(n, width), dtype=np.uint8)
    pts = rng.uniform(-1, 1, size=(n, 3)).astype(np.float32) if with_points else None
    return kps, desc, pts


def test_append_keeps_collections_aligned():
    model = ReferenceModel()
    kps, desc, pts = _batch(10)
    record = model.append(kps, desc, pts)

    assert len(model) == 10
    assert model.descriptors.shape == (10, 32)
    assert model.object_points.shape == (10, 3)
    assert model.has_point.all()
    assert (record.image_id, record.start, record.stop) == (0, 0, 10)


def test_second_append_does_not_renumber():
    model = ReferenceModel()
    kps_a, desc_a, pts_a = _batch(5, seed=1)
    kps_b, desc_b, pts_b = _batch(7, seed=2)
    model.append(kps_a, desc_a, pts_a)
    record_b = model.append(kps_b, desc_b, pts_b)

    assert record_b.image_id == 1
    assert (record_b.start, record_b.stop) == (5, 12)
    np.testing.assert_array_equal(model.descriptors[:5], desc_a)
    np.testing.assert_array_equal(model.descriptors[5:], desc_b)
    assert model.image_id_of(4) == 0
    assert model.image_id_of(5) == 1
    np.testing.assert_array_equal(model.image_id_of(np.array([0, 11])), [0, 1])


def test_descriptor_count_mismatch_leaves_store_unchanged():
    model = ReferenceModel()
    kps, desc, pts = _batch(5)
    model.append(kps, desc, pts)
    before = model.copy()

    kps2, desc2, _ = _batch(4, seed=3)
    with pytest.raises(SizeMismatchError):
        model.append(kps2, desc2[:3])
    assert model == before


def test_object_point_count_mismatch_leaves_store_unchanged():
    model = ReferenceModel()
    kps, desc, pts = _batch(6)
    with pytest.raises(SizeMismatchError):
        model.append(kps, desc, pts[:5])
    assert len(model) == 0
    assert model.records == []


def test_descriptor_width_mismatch():
    model = ReferenceModel()
    kps, desc, _ = _batch(3, width=32)
    model.append(kps, desc)
    kps2, desc2, _ = _batch(3, width=64, seed=5)
    with pytest.raises(SizeMismatchError):
        model.append(kps2, desc2)
    assert len(model) == 3


def test_missing_object_points_are_flagged():
    model = ReferenceModel()
    kps, desc, pts = _batch(4)
    pts[1] = np.nan
    model.append(kps, desc, pts)

    np.testing.assert_array_equal(model.has_point, [True, False, True, True])
    np.testing.assert_array_equal(model.object_points[1], [0, 0, 0])
    assert model.has_3d_points


def test_without_object_points():
    model = ReferenceModel()
    kps, desc, _ = _batch(4, with_points=False)
    model.append(kps, desc)
    assert not model.has_3d_points


def test_image_ids_are_never_reused():
    model = ReferenceModel()
    kps, desc, _ = _batch(2)
    model.append(kps, desc, image_id=5)
    with pytest.raises(InvalidParameterError):
        model.append(kps, desc, image_id=3)
    record = model.append(kps, desc)
    assert record.image_id == 6

    model.clear()
    assert len(model) == 0
    assert model.append(kps, desc).image_id == 7


def test_views_are_read_only():
    model = ReferenceModel()
    kps, desc, pts = _batch(3)
    model.append(kps, desc, pts)
    with pytest.raises(ValueError):
        model.descriptors[0, 0] = 1
    with pytest.raises(ValueError):
        model.object_points[0, 0] = 1.0


def test_append_accepts_opencv_keypoints():
    model = ReferenceModel()
    keypoints = [cv2.KeyPoint(10.5, 20.25, 5.0, 30.0, 0.5, 1, -1), cv2.KeyPoint(1.0, 2.0, 3.0)]
    desc = np.zeros((2, 16), dtype=np.uint8)
    model.append(keypoints, desc, image_id=2)

    np.testing.assert_allclose(model.keypoints.points[0], [10.5, 20.25])
    assert model.keypoints.angles[0] == pytest.approx(30.0)
    np.testing.assert_array_equal(model.keypoints.image_ids, [2, 2])
    back = model.keypoints.to_cv()
    assert back[0].class_id == 2
    assert back[0].octave == 1


def test_extend_renumbers_image_ids():
    first = ReferenceModel()
    second = ReferenceModel()
    kps, desc, pts = _batch(3, seed=7)
    first.append(kps, desc, pts)
    second.append(*_batch(2, seed=8))
    second.append(*_batch(4, seed=9))

    records = first.extend(second)

    assert [r.image_id for r in records] == [1, 2]
    assert len(first) == 9
    np.testing.assert_array_equal(first.descriptors[3:], second.descriptors)
    np.testing.assert_array_equal(first.image_id_of(np.arange(3, 9)), [1, 1, 2, 2, 2, 2])


def test_empty_image_does_not_fix_descriptor_width():
    model = ReferenceModel()
    model.append(*_batch(0, width=64))
    assert model.descriptor_width == 0

    other = ReferenceModel()
    other.append(*_batch(5, width=32, seed=3))
    model.extend(other)

    assert len(model) == 5
    assert model.descriptor_width == 32
    assert model.image_ids == [0, 1]


def test_extend_checks_width_before_writing():
    model = ReferenceModel()
    model.append(*_batch(4, width=32))
    before = model.copy()

    other = ReferenceModel()
    other.append(*_batch(0, width=32))
    other.append(*_batch(3, width=64, seed=1))

    with pytest.raises(SizeMismatchError):
        model.extend(other)
    assert model == before
    assert len(model.records) == 1
