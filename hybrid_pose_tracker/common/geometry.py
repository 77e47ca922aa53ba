"""Rigid-motion helpers: exponential map, velocity twist and image-plane interaction matrices.

Velocities are 6-vectors (vx, vy, vz, wx, wy, wz) expressed in the camera frame.
A camera moving by velocity ``v`` during one unit of time turns ``cMo`` into
``exp_map(v)^-1 @ cMo``; every interaction matrix below follows that convention.
"""

from typing import Callable, Tuple

import cv2
import numpy as np


def skew(w: np.ndarray) -> np.ndarray:
    wx, wy, wz = float(w[0]), float(w[1]), float(w[2])
    return np.array([[0.0, -wz, wy], [wz, 0.0, -wx], [-wy, wx, 0.0]], dtype=np.float64)


def make_transform(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = np.asarray(R, dtype=np.float64).reshape(3, 3)
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def pose_from_rvec_tvec(rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return make_transform(R, tvec)


def inverse_transform(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    return make_transform(R.T, -R.T @ t)


def exp_map(v: np.ndarray) -> np.ndarray:
    """Map a velocity twist applied for unit time to the rigid displacement it produces."""
    v = np.asarray(v, dtype=np.float64).reshape(6)
    u = v[3:]
    theta = float(np.linalg.norm(u))
    R, _ = cv2.Rodrigues(u.reshape(3, 1))
    if theta < 1e-12:
        return make_transform(R, v[:3])
    s = np.sin(theta)
    c = np.cos(theta)
    sinc = s / theta
    mcosc = (1.0 - c) / (theta * theta)
    msinc = (1.0 - sinc) / (theta * theta)
    V = sinc * np.eye(3) + mcosc * skew(u) + msinc * np.outer(u, u)
    return make_transform(R, V @ v[:3])


def velocity_twist(cMo: np.ndarray) -> np.ndarray:
    """Twist matrix mapping an object-frame velocity to the camera frame."""
    R = cMo[:3, :3]
    t = cMo[:3, 3]
    cVo = np.zeros((6, 6), dtype=np.float64)
    cVo[:3, :3] = R
    cVo[:3, 3:] = skew(t) @ R
    cVo[3:, 3:] = R
    return cVo


def transform_points(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 3)
    return pts @ T[:3, :3].T + T[:3, 3]


def project(pts_cam: np.ndarray) -> np.ndarray:
    pts_cam = np.asarray(pts_cam, dtype=np.float64).reshape(-1, 3)
    return pts_cam[:, :2] / pts_cam[:, 2:3]


def point_interaction(x: np.ndarray, y: np.ndarray, Z: np.ndarray) -> np.ndarray:
    """Stacked 2N x 6 interaction matrix of normalized image points (x, y) at depth Z."""
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    iz = 1.0 / np.asarray(Z, dtype=np.float64).reshape(-1)
    zero = np.zeros_like(x)
    L = np.empty((2 * x.size, 6), dtype=np.float64)
    L[0::2] = np.stack([-iz, zero, x * iz, x * y, -(1.0 + x * x), y], axis=1)
    L[1::2] = np.stack([zero, -iz, y * iz, 1.0 + y * y, -x * y, -x], axis=1)
    return L


def line_params(p1: np.ndarray, p2: np.ndarray) -> Tuple[float, float]:
    """(rho, theta) of the image line through p1 and p2, theta being the normal angle."""
    d = np.asarray(p2, dtype=np.float64) - np.asarray(p1, dtype=np.float64)
    theta = float(np.arctan2(d[1], d[0]) + 0.5 * np.pi)
    rho = float(np.cos(theta) * p1[0] + np.sin(theta) * p1[1])
    return rho, theta


def line_interaction(
    p1: np.ndarray, z1: float, p2: np.ndarray, z2: float
) -> Tuple[float, float, np.ndarray, np.ndarray]:
    """(rho, theta) of a projected 3D segment together with their 1 x 6 interaction rows."""
    rho, theta = line_params(p1, p2)
    L1 = point_interaction(p1[0], p1[1], z1)
    L2 = point_interaction(p2[0], p2[1], z2)
    dx = float(p2[0] - p1[0])
    dy = float(p2[1] - p1[1])
    n2 = dx * dx + dy * dy
    if n2 < 1e-18:
        raise ValueError("degenerate projected segment")
    L_theta = (dx * (L2[1] - L1[1]) - dy * (L2[0] - L1[0])) / n2
    ct = np.cos(theta)
    st = np.sin(theta)
    L_rho = (-st * p1[0] + ct * p1[1]) * L_theta + ct * L1[0] + st * L1[1]
    return rho, theta, L_rho, L_theta


def numerical_interaction(
    residual_fn: Callable[[np.ndarray], np.ndarray], cMo: np.ndarray, step: float = 1e-6
) -> np.ndarray:
    """Central-difference interaction matrix of ``residual_fn`` around ``cMo``."""
    cols = []
    for k in range(6):
        dv = np.zeros(6, dtype=np.float64)
        dv[k] = step
        e_plus = residual_fn(inverse_transform(exp_map(dv)) @ cMo)
        e_minus = residual_fn(inverse_transform(exp_map(-dv)) @ cMo)
        cols.append((np.asarray(e_plus) - np.asarray(e_minus)) / (2.0 * step))
    return np.stack(cols, axis=1)


def rotation_error_deg(R_a: np.ndarray, R_b: np.ndarray) -> float:
    rvec, _ = cv2.Rodrigues(np.asarray(R_a, dtype=np.float64).T @ np.asarray(R_b, dtype=np.float64))
    return float(np.degrees(np.linalg.norm(rvec)))


def pose_error(cMo_a: np.ndarray, cMo_b: np.ndarray) -> Tuple[float, float]:
    """Translation distance and rotation angle (degrees) between two poses."""
    dt = float(np.linalg.norm(cMo_a[:3, 3] - cMo_b[:3, 3]))
    return dt, rotation_error_deg(cMo_a[:3, :3], cMo_b[:3, :3])
