import cv2
import numpy as np

from conftest import make_pose
from keypose_app.ba.pose_refinement import (
    normalized_residuals,
    pack_pose,
    pose_covariance,
    refine_pose_vvs,
    unpack_pose,
)


def _scene(n=30, seed=0):
    rng = np.random.default_rng(seed)
    R, t = make_pose()
    X = rng.uniform(-0.5, 0.5, size=(n, 3))
    Xc = (R @ X.T + t).T
    xy = Xc[:, :2] / Xc[:, 2:3]
    return R, t, X, xy


def test_pack_unpack_round_trip():
    R, t = make_pose(rvec=(0.3, 0.2, -0.1), t=(1.0, 2.0, 3.0))
    params = pack_pose(R, t)
    assert params.shape == (6,)
    R_back, t_back = unpack_pose(params)
    np.testing.assert_allclose(R_back, R, atol=1e-12)
    np.testing.assert_allclose(t_back, t)


def test_residuals_vanish_at_true_pose():
    R, t, X, xy = _scene()
    res = normalized_residuals(pack_pose(R, t), X, xy)
    assert res.shape == (2 * len(X),)
    np.testing.assert_allclose(res, 0.0, atol=1e-12)


def test_perturbed_pose_converges():
    R, t, X, xy = _scene()
    dR, _ = cv2.Rodrigues(np.array([[0.02], [-0.01], [0.015]]))
    R0 = dR @ R
    t0 = t + np.array([[0.03], [-0.02], [0.1]])

    R_ref, t_ref, cov = refine_pose_vvs(R0, t0, X, xy)

    np.testing.assert_allclose(R_ref, R, atol=1e-6)
    np.testing.assert_allclose(t_ref, t, atol=1e-6)
    assert cov.shape == (0, 0)


def test_covariance_with_noise():
    R, t, X, xy = _scene(n=50, seed=1)
    rng = np.random.default_rng(2)
    noisy = xy + rng.normal(scale=2e-4, size=xy.shape)

    R_ref, t_ref, cov = refine_pose_vvs(R, t, X, noisy, compute_covariance=True)

    assert cov.shape == (6, 6)
    np.testing.assert_allclose(cov, cov.T, atol=1e-15)
    assert np.all(np.diag(cov) > 0)
    np.testing.assert_allclose(t_ref, t, atol=1e-2)


def test_covariance_is_zero_without_residual():
    jac = np.random.default_rng(3).normal(size=(20, 6))
    cov = pose_covariance(jac, np.zeros(20))
    np.testing.assert_array_equal(cov, np.zeros((6, 6)))
