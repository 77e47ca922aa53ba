import cv2
import numpy as np
import pytest

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.geometry import (
    exp_map,
    inverse_transform,
    line_interaction,
    line_params,
    numerical_interaction,
    point_interaction,
    pose_error,
    pose_from_rvec_tvec,
    project,
    transform_points,
    velocity_twist,
)
from hybrid_pose_tracker.features.contour import LinePrimitive, make_sites


def _pose():
    return pose_from_rvec_tvec(np.array([0.1, -0.2, 0.05]), np.array([0.02, -0.01, 0.7]))


def test_exp_map_zero_is_identity():
    assert np.array_equal(exp_map(np.zeros(6)), np.eye(4))


def test_exp_map_pure_rotation_matches_rodrigues():
    w = np.array([0.0, 0.3, -0.1])
    T = exp_map(np.concatenate([np.zeros(3), w]))
    R, _ = cv2.Rodrigues(w.reshape(3, 1))
    assert np.allclose(T[:3, :3], R)
    assert np.allclose(T[:3, 3], 0.0)


def test_exp_map_small_velocity_is_first_order():
    v = np.array([1e-4, -2e-4, 3e-4, 1e-4, 2e-4, -1e-4])
    T = exp_map(v)
    assert np.allclose(T[:3, 3], v[:3], atol=1e-7)


def test_inverse_transform_roundtrip():
    T = _pose()
    assert np.allclose(inverse_transform(T) @ T, np.eye(4), atol=1e-12)


def test_velocity_twist_maps_object_motion():
    cMo = _pose()
    cVo = velocity_twist(cMo)
    assert cVo.shape == (6, 6)
    assert np.allclose(cVo[3:, :3], 0.0)
    assert np.allclose(cVo[:3, :3], cMo[:3, :3])


def test_point_interaction_matches_finite_differences():
    cMo = _pose()
    X = np.array([[0.03, -0.02, 0.0], [-0.05, 0.04, 0.01]])

    def residual(T):
        return project(transform_points(T, X)).reshape(-1)

    pc = transform_points(cMo, X)
    xy = project(pc)
    L = point_interaction(xy[:, 0], xy[:, 1], pc[:, 2])
    assert L.shape == (4, 6)
    assert np.allclose(L, numerical_interaction(residual, cMo), atol=1e-5)


def test_line_params_normal_angle():
    rho, theta = line_params(np.array([0.0, 0.1]), np.array([1.0, 0.1]))
    assert np.isclose(np.cos(theta) * 0.5 + np.sin(theta) * 0.1, rho)
    assert np.isclose(abs(np.sin(theta)), 1.0)


def test_line_interaction_degenerate_segment():
    p = np.array([0.1, 0.1])
    with pytest.raises(ValueError):
        line_interaction(p, 1.0, p.copy(), 1.0)


def test_line_jacobian_matches_finite_differences():
    cam = CameraParameters(px=600.0, py=600.0, u0=320.0, v0=240.0)
    cMo = _pose()
    p1 = np.array([-0.08, -0.05, 0.0])
    p2 = np.array([0.07, 0.04, 0.0])
    truth = pose_from_rvec_tvec(np.array([0.11, -0.19, 0.06]), np.array([0.021, -0.012, 0.69]))
    s = np.linspace(0.1, 0.9, 5)[:, None]
    uv = cam.meter_to_pixel(project(transform_points(truth, p1 + s * (p2 - p1))))
    prim = LinePrimitive(name="l", site_lists=[make_sites(uv)], p1=p1, p2=p2)

    L, e = prim.compute_interaction(cMo, cam)
    L_num = numerical_interaction(lambda T: prim.compute_interaction(T, cam)[1], cMo)
    assert L.shape == (5, 6)
    assert e.shape == (5,)
    assert np.allclose(L, L_num, atol=1e-5)


def test_pose_error():
    a = _pose()
    b = a.copy()
    b[:3, 3] += np.array([0.003, 0.0, 0.004])
    dt, dr = pose_error(a, b)
    assert np.isclose(dt, 0.005)
    assert dr < 1e-6
