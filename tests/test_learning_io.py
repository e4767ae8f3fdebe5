import numpy as np
import pytest

from keypose_app.errors import CorruptFormatError
from keypose_app.io.learning_io import load_learning_data, save_learning_data
from keypose_app.model.data_structures import KeypointSet
from keypose_app.model.reference_model import ReferenceModel


def _populated_model(dtype=np.uint8, width=32):
    rng = np.random.default_rng(42)
    model = ReferenceModel()
    for n, with_image in ((6, True), (4, False)):
        kps = KeypointSet(
            points=rng.uniform(0, 640, size=(n, 2)),
            sizes=rng.uniform(1, 30, size=n),
            angles=rng.uniform(0, 360, size=n),
            responses=rng.uniform(0, 1, size=n),
            octaves=rng.integers(0, 8, size=n),
            image_ids=np.zeros(n),
        )
        if dtype == np.uint8:
            desc = rng.integers(0, 256, size=(n, width), dtype=np.uint8)
        else:
            desc = rng.normal(size=(n, width)).astype(np.float32)
        pts = rng.uniform(-1, 1, size=(n, 3)).astype(np.float32)
        pts[0] = np.nan
        image = rng.integers(0, 256, size=(12, 16, 3), dtype=np.uint8) if with_image else None
        model.append(kps, desc, pts, image=image)
    return model


@pytest.mark.parametrize("binary", [True, False])
@pytest.mark.parametrize("dtype", [np.uint8, np.float32])
def test_round_trip(tmp_path, binary, dtype):
    model = _populated_model(dtype=dtype)
    path = tmp_path / ("model.bin" if binary else "model.txt")

    save_learning_data(model, path, binary=binary, include_images=True)
    loaded = ReferenceModel()
    load_learning_data(loaded, path, binary=binary)

    assert loaded == model
    assert loaded.descriptor_dtype == np.dtype(dtype)
    assert list(loaded.images) == [0]


def test_round_trip_without_images(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.bin"
    save_learning_data(model, path, binary=True, include_images=False)

    loaded = ReferenceModel()
    load_learning_data(loaded, path, binary=True)

    assert loaded.images == {}
    assert loaded.keypoints == model.keypoints
    np.testing.assert_array_equal(loaded.descriptors, model.descriptors)


def test_round_trip_empty_model(tmp_path):
    path = tmp_path / "empty.txt"
    save_learning_data(ReferenceModel(), path)
    loaded = ReferenceModel()
    load_learning_data(loaded, path)
    assert len(loaded) == 0
    assert loaded == ReferenceModel()


def test_load_replaces_content(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.txt"
    save_learning_data(model, path)

    target = ReferenceModel()
    target.append(KeypointSet.from_points(np.zeros((2, 2))), np.zeros((2, 32), dtype=np.uint8))
    load_learning_data(target, path, append=False)

    assert len(target) == len(model)
    assert target.image_ids == [0, 1]


def test_load_append_renumbers_images(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.bin"
    save_learning_data(model, path, binary=True)

    target = _populated_model()
    load_learning_data(target, path, binary=True, append=True)

    assert len(target) == 2 * len(model)
    assert target.image_ids == [0, 1, 2, 3]
    np.testing.assert_array_equal(target.descriptors[len(model):], model.descriptors)
    np.testing.assert_array_equal(target.has_point[len(model):], model.has_point)
    assert sorted(target.images) == [0, 2]


def test_truncated_binary_file_is_rejected_without_side_effects(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.bin"
    save_learning_data(model, path, binary=True)
    data = path.read_bytes()
    path.write_bytes(data[: len(data) // 2])

    target = _populated_model(width=32)
    before = target.copy()
    with pytest.raises(CorruptFormatError):
        load_learning_data(target, path, binary=True)
    assert target == before


def test_bad_magic_is_rejected(tmp_path):
    path = tmp_path / "model.bin"
    path.write_bytes(b"NOPE" + b"\x00" * 64)
    with pytest.raises(CorruptFormatError):
        load_learning_data(ReferenceModel(), path, binary=True)


def test_malformed_text_header_is_rejected(tmp_path):
    path = tmp_path / "model.txt"
    path.write_text("format_version 1\ntrain_count many\n")
    with pytest.raises(CorruptFormatError):
        load_learning_data(ReferenceModel(), path)


def test_inconsistent_text_counts_are_rejected(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.txt"
    save_learning_data(model, path, include_images=False)
    lines = path.read_text().splitlines()
    lines[1] = "train_count 11"
    path.write_text("\n".join(lines) + "\n")

    target = ReferenceModel()
    with pytest.raises(CorruptFormatError):
        load_learning_data(target, path)
    assert len(target) == 0


def test_truncated_text_file_is_rejected(tmp_path):
    model = _populated_model()
    path = tmp_path / "model.txt"
    save_learning_data(model, path, include_images=False)
    lines = path.read_text().splitlines()
    path.write_text("\n".join(lines[:-3]) + "\n")

    with pytest.raises(CorruptFormatError):
        load_learning_data(ReferenceModel(), path)
