"""
Learning data I/O: saving and loading a ReferenceModel in binary or text form.

Layout (both modes, in order):
    header       format_version, train_count, descriptor_dtype, descriptor_width,
                 has_3d_points, has_images, image_count
    records      image_count x (image_id, start, stop)
    descriptors  train_count x descriptor_width values
    keypoints    train_count x (u, v, size, angle, response, octave, image_id)
    points       train_count x (X, Y, Z, present)          [if has_3d_points]
    images       image_id, height, width, channels, pixels [if has_images]

Binary mode is little-endian with fixed-width fields after the magic
bytes b"KPLD". Text mode writes one `key value` line per header field and
one whitespace-separated line per record; floats are written with enough
digits to be parsed back to the same float32.
"""

from __future__ import annotations

import base64
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, TextIO, Tuple, Union

import numpy as np

from keypose_app.errors import CorruptFormatError, KeyPoseError
from keypose_app.model.data_structures import KeypointSet, TrainingImageRecord
from keypose_app.model.reference_model import ReferenceModel

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
MAGIC = b"KPLD"

_DTYPES = {"uint8": np.dtype("<u1"), "float32": np.dtype("<f4")}
# version, train_count, dtype code, width, has_3d, has_images, image_count
_HEADER = struct.Struct("<IQBIBBI")
_RECORD = struct.Struct("<iQQ")
_IMAGE = struct.Struct("<iIII")
_KEYPOINT_DTYPE = np.dtype(
    [
        ("u", "<f4"),
        ("v", "<f4"),
        ("size", "<f4"),
        ("angle", "<f4"),
        ("response", "<f4"),
        ("octave", "<i4"),
        ("image_id", "<i4"),
    ]
)
_POINT_DTYPE = np.dtype([("xyz", "<f4", (3,)), ("present", "u1")])


def _dtype_name(model: ReferenceModel) -> str:
    dtype = model.descriptor_dtype
    if dtype is None:
        return "uint8"
    for name, candidate in _DTYPES.items():
        if dtype == candidate:
            return name
    raise KeyPoseError(f"Unsupported descriptor type: {dtype}")


def _float_text(values: np.ndarray) -> str:
    # repr of the float64 value of a float32 parses back to the same float32.
    return " ".join(repr(float(v)) for v in values)


# ----------------------------------------------------------------------
# Save
# ----------------------------------------------------------------------
def save_learning_data(
    model: ReferenceModel,
    path: Union[str, Path],
    binary: bool = False,
    include_images: bool = True,
) -> None:
    """
    Serialize a reference model.

    Args:
        model: Model to save.
        path: Output file.
        binary: Binary (True) or text (False) encoding.
        include_images: Embed the stored training images.
    """
    images = model.images if include_images else {}
    if binary:
        with open(path, "wb") as f:
            _write_binary(f, model, images)
    else:
        with open(path, "w") as f:
            _write_text(f, model, images)
    logger.info(
        "[store] Saved %d keypoints from %d images to %s (%s)",
        len(model),
        len(model.records),
        path,
        "binary" if binary else "text",
    )


def _header_values(model: ReferenceModel, images: Dict[int, np.ndarray]) -> Tuple:
    return (
        FORMAT_VERSION,
        len(model),
        _dtype_name(model),
        model.descriptor_width,
        int(model.has_3d_points),
        int(bool(images)),
        len(model.records),
    )


def _keypoint_table(model: ReferenceModel) -> np.ndarray:
    kps = model.keypoints
    table = np.zeros(len(kps), dtype=_KEYPOINT_DTYPE)
    table["u"] = kps.points[:, 0]
    table["v"] = kps.points[:, 1]
    table["size"] = kps.sizes
    table["angle"] = kps.angles
    table["response"] = kps.responses
    table["octave"] = kps.octaves
    table["image_id"] = kps.image_ids
    return table


def _write_binary(f: BinaryIO, model: ReferenceModel, images: Dict[int, np.ndarray]) -> None:
    version, count, dtype_name, width, has_3d, has_images, n_images = _header_values(model, images)
    f.write(MAGIC)
    f.write(
        _HEADER.pack(
            version,
            count,
            list(_DTYPES).index(dtype_name),
            width,
            has_3d,
            has_images,
            n_images,
        )
    )
    for record in model.records:
        f.write(_RECORD.pack(record.image_id, record.start, record.stop))
    if count > 0:
        f.write(np.ascontiguousarray(model.descriptors, dtype=_DTYPES[dtype_name]).tobytes())
    f.write(_keypoint_table(model).tobytes())
    if has_3d:
        points = np.zeros(count, dtype=_POINT_DTYPE)
        points["xyz"] = model.object_points
        points["present"] = model.has_point
        f.write(points.tobytes())
    if has_images:
        f.write(struct.pack("<I", len(images)))
        for image_id, image in sorted(images.items()):
            h, w = image.shape[:2]
            c = image.shape[2] if image.ndim == 3 else 0
            f.write(_IMAGE.pack(image_id, h, w, c))
            f.write(np.ascontiguousarray(image, dtype=np.uint8).tobytes())


def _write_text(f: TextIO, model: ReferenceModel, images: Dict[int, np.ndarray]) -> None:
    version, count, dtype_name, width, has_3d, has_images, n_images = _header_values(model, images)
    f.write(f"format_version {version}\n")
    f.write(f"train_count {count}\n")
    f.write(f"descriptor_dtype {dtype_name}\n")
    f.write(f"descriptor_width {width}\n")
    f.write(f"has_3d_points {has_3d}\n")
    f.write(f"has_images {has_images}\n")
    f.write(f"image_count {n_images}\n")

    for record in model.records:
        f.write(f"{record.image_id} {record.start} {record.stop}\n")

    descriptors = model.descriptors
    for row in descriptors[:count]:
        if dtype_name == "uint8":
            f.write(" ".join(str(int(v)) for v in row) + "\n")
        else:
            f.write(_float_text(row) + "\n")

    kps = model.keypoints
    for i in range(count):
        floats = [kps.points[i, 0], kps.points[i, 1], kps.sizes[i], kps.angles[i], kps.responses[i]]
        f.write(f"{_float_text(np.array(floats))} {int(kps.octaves[i])} {int(kps.image_ids[i])}\n")

    if has_3d:
        for xyz, present in zip(model.object_points, model.has_point):
            f.write(f"{_float_text(xyz)} {int(present)}\n")

    if has_images:
        f.write(f"{len(images)}\n")
        for image_id, image in sorted(images.items()):
            h, w = image.shape[:2]
            c = image.shape[2] if image.ndim == 3 else 0
            encoded = base64.b64encode(np.ascontiguousarray(image, dtype=np.uint8).tobytes())
            f.write(f"{image_id} {h} {w} {c} {encoded.decode('ascii')}\n")


# ----------------------------------------------------------------------
# Load
# ----------------------------------------------------------------------
def load_learning_data(
    model: ReferenceModel,
    path: Union[str, Path],
    binary: bool = False,
    append: bool = False,
) -> None:
    """
    Deserialize learning data into `model`.

    The file is parsed completely into a fresh model before `model` is
    touched, so a corrupt file leaves `model` unchanged.

    Args:
        model: Model to fill.
        path: Input file.
        binary: Binary (True) or text (False) encoding.
        append: Append to the current content (image ids renumbered after
                the current ones) instead of replacing it.

    Raises:
        CorruptFormatError: Malformed header, inconsistent counts or truncated file.
    """
    try:
        if binary:
            with open(path, "rb") as f:
                loaded = _read_binary(f.read())
        else:
            with open(path, "r") as f:
                loaded = _read_text(f.read())
    except CorruptFormatError:
        raise
    except (ValueError, IndexError, struct.error, UnicodeDecodeError, KeyPoseError) as e:
        raise CorruptFormatError(f"Cannot parse learning data {path}: {e}") from e

    if append:
        model.extend(loaded)
    else:
        model.replace_with(loaded)
    logger.info(
        "[store] Loaded %d keypoints from %d images from %s; model size %d",
        len(loaded),
        len(loaded.records),
        path,
        len(model),
    )


def _build_model(
    header: Dict[str, int],
    dtype_name: str,
    records: List[TrainingImageRecord],
    descriptors: np.ndarray,
    keypoints: np.ndarray,
    points: np.ndarray,
    images: Dict[int, np.ndarray],
) -> ReferenceModel:
    count = header["train_count"]
    expected = 0
    for record in records:
        if record.start != expected or record.stop < record.start:
            raise CorruptFormatError("Training image records are not contiguous")
        expected = record.stop
    if expected != count:
        raise CorruptFormatError(f"Records cover {expected} keypoints, header says {count}")
    for record in records:
        ids = keypoints["image_id"][record.start : record.stop]
        if np.any(ids != record.image_id):
            raise CorruptFormatError(f"Keypoint image ids disagree with record {record.image_id}")
    unknown = set(images) - {record.image_id for record in records}
    if unknown:
        raise CorruptFormatError(f"Images {sorted(unknown)} have no training record")

    model = ReferenceModel()
    for record in records:
        rows = slice(record.start, record.stop)
        kps = KeypointSet(
            points=np.stack([keypoints["u"][rows], keypoints["v"][rows]], axis=1),
            sizes=keypoints["size"][rows],
            angles=keypoints["angle"][rows],
            responses=keypoints["response"][rows],
            octaves=keypoints["octave"][rows],
            image_ids=keypoints["image_id"][rows],
        )
        if header["has_3d_points"]:
            pts = points["xyz"][rows].astype(np.float32)
            pts[points["present"][rows] == 0] = np.nan
        else:
            pts = None
        model.append(
            kps,
            descriptors[rows].astype(_DTYPES[dtype_name].newbyteorder("=")),
            object_points=pts,
            image_id=record.image_id,
            image=images.get(record.image_id),
        )
    return model


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        if self.offset + n > len(self.data):
            raise CorruptFormatError(
                f"Truncated file: need {n} bytes at offset {self.offset}, "
                f"{len(self.data) - self.offset} left"
            )
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def unpack(self, fmt: struct.Struct) -> Tuple:
        return fmt.unpack(self.take(fmt.size))

    def array(self, dtype: np.dtype, count: int) -> np.ndarray:
        return np.frombuffer(self.take(dtype.itemsize * count), dtype=dtype, count=count)


def _read_binary(data: bytes) -> ReferenceModel:
    reader = _Reader(data)
    if reader.take(len(MAGIC)) != MAGIC:
        raise CorruptFormatError("Missing learning data magic bytes")
    version, count, dtype_code, width, has_3d, has_images, n_images = reader.unpack(_HEADER)
    if version != FORMAT_VERSION:
        raise CorruptFormatError(f"Unsupported format version {version}")
    if dtype_code >= len(_DTYPES):
        raise CorruptFormatError(f"Unknown descriptor type code {dtype_code}")
    dtype_name = list(_DTYPES)[dtype_code]
    header = {
        "train_count": count,
        "descriptor_width": width,
        "has_3d_points": has_3d,
        "has_images": has_images,
    }

    records = [TrainingImageRecord(*reader.unpack(_RECORD)) for _ in range(n_images)]
    descriptors = reader.array(_DTYPES[dtype_name], count * width).reshape(count, width)
    keypoints = reader.array(_KEYPOINT_DTYPE, count)
    points = reader.array(_POINT_DTYPE, count) if has_3d else np.zeros(0, dtype=_POINT_DTYPE)

    images: Dict[int, np.ndarray] = {}
    if has_images:
        (n_stored,) = reader.unpack(struct.Struct("<I"))
        for _ in range(n_stored):
            image_id, h, w, c = reader.unpack(_IMAGE)
            shape = (h, w, c) if c else (h, w)
            images[image_id] = reader.array(np.dtype("u1"), int(np.prod(shape))).reshape(shape).copy()

    if reader.offset != len(data):
        raise CorruptFormatError(f"{len(data) - reader.offset} unexpected trailing bytes")
    return _build_model(header, dtype_name, records, descriptors, keypoints, points, images)


def _lines(text: str) -> Iterator[List[str]]:
    for line in text.splitlines():
        if line.strip():
            yield line.split()


def _next(lines: Iterator[List[str]], what: str) -> List[str]:
    try:
        return next(lines)
    except StopIteration:
        raise CorruptFormatError(f"Truncated file while reading {what}") from None


def _read_text(text: str) -> ReferenceModel:
    lines = _lines(text)
    header: Dict[str, int] = {}
    dtype_name = ""
    for key in (
        "format_version",
        "train_count",
        "descriptor_dtype",
        "descriptor_width",
        "has_3d_points",
        "has_images",
        "image_count",
    ):
        fields = _next(lines, "header")
        if len(fields) != 2 or fields[0] != key:
            raise CorruptFormatError(f"Expected header field {key!r}, got {' '.join(fields)!r}")
        if key == "descriptor_dtype":
            if fields[1] not in _DTYPES:
                raise CorruptFormatError(f"Unknown descriptor type {fields[1]!r}")
            dtype_name = fields[1]
        else:
            header[key] = int(fields[1])
    if header["format_version"] != FORMAT_VERSION:
        raise CorruptFormatError(f"Unsupported format version {header['format_version']}")

    count = header["train_count"]
    width = header["descriptor_width"]

    def row(what: str, n_fields: int) -> List[str]:
        fields = _next(lines, what)
        if len(fields) != n_fields:
            raise CorruptFormatError(f"Expected {n_fields} fields in {what}, got {len(fields)}")
        return fields

    records = []
    for _ in range(header["image_count"]):
        image_id, start, stop = (int(v) for v in row("records", 3))
        records.append(TrainingImageRecord(image_id, start, stop))

    descriptors = np.zeros((count, width), dtype=_DTYPES[dtype_name])
    for i in range(count):
        values = row("descriptors", width)
        if dtype_name == "uint8":
            descriptors[i] = [int(v) for v in values]
        else:
            descriptors[i] = [float(v) for v in values]

    keypoints = np.zeros(count, dtype=_KEYPOINT_DTYPE)
    for i in range(count):
        u, v, size, angle, response, octave, image_id = row("keypoints", 7)
        keypoints[i] = (float(u), float(v), float(size), float(angle), float(response), int(octave), int(image_id))

    points = np.zeros(count if header["has_3d_points"] else 0, dtype=_POINT_DTYPE)
    for i in range(len(points)):
        x, y, z, present = row("object points", 4)
        points[i] = ((float(x), float(y), float(z)), int(present))

    images: Dict[int, np.ndarray] = {}
    if header["has_images"]:
        (n_stored,) = (int(v) for v in row("image count", 1))
        for _ in range(n_stored):
            image_id, h, w, c, encoded = row("images", 5)
            h, w, c = int(h), int(w), int(c)
            shape = (h, w, c) if c else (h, w)
            pixels = np.frombuffer(base64.b64decode(encoded, validate=True), dtype=np.uint8)
            if pixels.size != int(np.prod(shape)):
                raise CorruptFormatError(f"Image {image_id} has {pixels.size} pixels, expected {shape}")
            images[int(image_id)] = pixels.reshape(shape).copy()

    extra = next(lines, None)
    if extra is not None:
        raise CorruptFormatError(f"Unexpected trailing content: {' '.join(extra)[:40]!r}")
    return _build_model(header, dtype_name, records, descriptors, keypoints, points, images)


__all__ = ["FORMAT_VERSION", "save_learning_data", "load_learning_data"]
