"""
Back-projection of image points onto known planar faces of the object,
used to attach 3D coordinates to training keypoints.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import cv2
import numpy as np

from keypose_app.errors import InvalidParameterError
from keypose_app.geometry.pnp import project_points
from keypose_app.model.data_structures import CameraParameters


def compute_3d(
    uv: np.ndarray,
    polygon: np.ndarray,
    cam: CameraParameters,
    cMo: np.ndarray,
) -> np.ndarray:
    """
    Intersect the viewing ray of a pixel with the plane of a polygon.

    Args:
        uv: Pixel coordinates (2,).
        polygon: (M, 3) object-frame vertices, M >= 3, not collinear.
        cam: Camera intrinsics.
        cMo: Object-to-camera transform (4x4).

    Returns:
        The intersection point (3,) in object coordinates.
    """
    polygon = np.asarray(polygon, dtype=np.float64).reshape(-1, 3)
    if len(polygon) < 3:
        raise InvalidParameterError("A polygon needs at least 3 vertices to define a plane")

    R = cMo[:3, :3]
    t = cMo[:3, 3]
    verts_c = (R @ polygon.T).T + t

    normal = np.cross(verts_c[1] - verts_c[0], verts_c[2] - verts_c[0])
    if np.linalg.norm(normal) < 1e-12:
        raise InvalidParameterError("Polygon vertices are collinear")
    d = -normal @ verts_c[0]

    x, y = cam.pixel_to_meter(np.asarray(uv).reshape(1, 2))[0]
    ray = np.array([x, y, 1.0])
    denom = normal @ ray
    if abs(denom) < 1e-12:
        raise InvalidParameterError("Viewing ray is parallel to the polygon plane")
    Z = -d / denom
    point_c = Z * ray
    return R.T @ (point_c - t)


def compute_3d_for_points_in_polygons(
    cMo: np.ndarray,
    cam: CameraParameters,
    points_2d: np.ndarray,
    polygons: Sequence[np.ndarray],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Attach 3D coordinates to the image points lying on a visible polygon.

    Each polygon is projected with `cMo`; a point inside a projected polygon
    is back-projected onto that polygon's plane. The first polygon
    containing a point wins.

    Args:
        cMo: Object-to-camera transform (4x4) of the training image.
        cam: Camera intrinsics.
        points_2d: (N, 2) pixel coordinates, e.g. training keypoints.
        polygons: Object-frame polygons, each (M, 3).

    Returns:
        Tuple of (kept_indices, points_3d) where:
        - kept_indices: Indices into `points_2d` that fell inside a polygon.
        - points_3d: (K, 3) object-frame coordinates of those points.
    """
    points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    R = cMo[:3, :3]
    t = cMo[:3, 3].reshape(3, 1)

    contours: List[np.ndarray] = [
        project_points(cam.K, R, t, np.asarray(poly, dtype=np.float64)).astype(np.float32)
        for poly in polygons
    ]

    kept: List[int] = []
    points_3d: List[np.ndarray] = []
    for i, (u, v) in enumerate(points_2d):
        for poly, contour in zip(polygons, contours):
            if cv2.pointPolygonTest(contour.reshape(-1, 1, 2), (float(u), float(v)), False) >= 0:
                kept.append(i)
                points_3d.append(compute_3d(np.array([u, v]), poly, cam, cMo))
                break

    if not kept:
        return np.zeros(0, dtype=np.int64), np.zeros((0, 3))
    return np.array(kept, dtype=np.int64), np.vstack(points_3d)


__all__ = ["compute_3d", "compute_3d_for_points_in_polygons"]
