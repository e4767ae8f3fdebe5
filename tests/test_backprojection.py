import cv2
import numpy as np
import pytest

from keypose_app.errors import InvalidParameterError
from keypose_app.geometry.backprojection import compute_3d, compute_3d_for_points_in_polygons
from keypose_app.geometry.pnp import project_points


@pytest.fixture
def cMo():
    R, _ = cv2.Rodrigues(np.array([[0.3], [0.0], [0.0]]))
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = [0.0, 0.0, 5.0]
    return T


SQUARE = np.array([[-1.0, -1.0, 0.0], [1.0, -1.0, 0.0], [1.0, 1.0, 0.0], [-1.0, 1.0, 0.0]])


def _project(cam, cMo, X):
    return project_points(cam.K, cMo[:3, :3], cMo[:3, 3].reshape(3, 1), X)


def test_compute_3d_recovers_point_on_plane(cam, cMo):
    X = np.array([[0.4, -0.3, 0.0]])
    uv = _project(cam, cMo, X)[0]
    np.testing.assert_allclose(compute_3d(uv, SQUARE, cam, cMo), X[0], atol=1e-9)


def test_points_outside_polygons_are_dropped(cam, cMo):
    X = np.array([[0.5, 0.5, 0.0], [3.0, 0.0, 0.0], [-0.9, 0.2, 0.0]])
    uv = _project(cam, cMo, X)

    kept, points_3d = compute_3d_for_points_in_polygons(cMo, cam, uv, [SQUARE])

    assert kept.tolist() == [0, 2]
    np.testing.assert_allclose(points_3d, X[[0, 2]], atol=1e-9)


def test_nothing_inside(cam, cMo):
    uv = _project(cam, cMo, np.array([[5.0, 5.0, 0.0]]))
    kept, points_3d = compute_3d_for_points_in_polygons(cMo, cam, uv, [SQUARE])
    assert kept.size == 0
    assert points_3d.shape == (0, 3)


def test_degenerate_polygon(cam, cMo):
    line = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    with pytest.raises(InvalidParameterError):
        compute_3d(np.array([320.0, 240.0]), line, cam, cMo)
    with pytest.raises(InvalidParameterError):
        compute_3d(np.array([320.0, 240.0]), SQUARE[:2], cam, cMo)
