"""Synthetic planar target: six model lines sampled by edge sites plus a grid of tracked points.

Measurements are exact projections at the ground-truth pose, optionally
corrupted by pixel noise and gross outliers, so a tracker started from a
perturbed pose should land back on the ground truth.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.geometry import make_transform, pose_from_rvec_tvec
from hybrid_pose_tracker.features.contour import Face, GeometricFeatureSet, LinePrimitive, make_sites
from hybrid_pose_tracker.features.points import PlanarPointGroup, PointFeatureSet

TARGET_HALF = 0.1
SITES_PER_LINE = (4, 4, 3, 3, 3, 3)
POINT_GRID = (6, 5)


@dataclass
class SyntheticScene:
    cam: CameraParameters
    cMo_true: np.ndarray
    cMo_init: np.ndarray
    contours: GeometricFeatureSet
    points: PointFeatureSet


def default_camera() -> CameraParameters:
    return CameraParameters(px=600.0, py=600.0, u0=320.0, v0=240.0, width=640, height=480)


def ground_truth_pose() -> np.ndarray:
    return pose_from_rvec_tvec(np.array([0.12, -0.08, 0.03]), np.array([0.01, -0.02, 0.6]))


def perturb_pose(
    cMo: np.ndarray,
    angle_deg: float = 2.0,
    axis: Sequence[float] = (0.2, 0.1, 1.0),
    dt: Sequence[float] = (0.0, 0.0, 0.005),
) -> np.ndarray:
    a = np.asarray(axis, dtype=np.float64)
    a = a / np.linalg.norm(a)
    R, _ = cv2.Rodrigues((a * np.radians(angle_deg)).reshape(3, 1))
    return make_transform(R, dt) @ cMo


def target_lines(half: float = TARGET_HALF) -> List[Tuple[np.ndarray, np.ndarray]]:
    h = float(half)
    corners = np.array([[-h, -h, 0.0], [h, -h, 0.0], [h, h, 0.0], [-h, h, 0.0]])
    lines = [(corners[i], corners[(i + 1) % 4]) for i in range(4)]
    lines.append((np.array([-h, 0.0, 0.0]), np.array([h, 0.0, 0.0])))
    lines.append((np.array([0.0, -h, 0.0]), np.array([0.0, h, 0.0])))
    return lines


def target_points(half: float = TARGET_HALF, grid: Tuple[int, int] = POINT_GRID) -> np.ndarray:
    xs = np.linspace(-0.75 * half, 0.75 * half, grid[0])
    ys = np.linspace(-0.6 * half, 0.6 * half, grid[1])
    gx, gy = np.meshgrid(xs, ys)
    return np.stack([gx.ravel(), gy.ravel(), np.zeros(gx.size)], axis=1)


def _to_pixels(cam: CameraParameters, cMo: np.ndarray, pts: np.ndarray) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(cMo[:3, :3])
    uv, _ = cv2.projectPoints(np.asarray(pts, dtype=np.float64).reshape(-1, 1, 3), rvec, cMo[:3, 3], cam.K, None)
    return uv.reshape(-1, 2)


def build_scene(
    angle_deg: float = 2.0,
    noise_px: float = 0.0,
    outliers: int = 0,
    seed: Optional[int] = None,
    cam: Optional[CameraParameters] = None,
) -> SyntheticScene:
    cam = cam or default_camera()
    rng = np.random.default_rng(seed)
    cMo_true = ground_truth_pose()
    cMo_init = perturb_pose(cMo_true, angle_deg=angle_deg)

    contours = GeometricFeatureSet()
    contours.add_face(Face(face_id=0, center=np.zeros(3), normal=np.array([0.0, 0.0, -1.0])))
    for i, ((p1, p2), n) in enumerate(zip(target_lines(), SITES_PER_LINE)):
        s = np.linspace(0.15, 0.85, n)[:, None]
        uv = _to_pixels(cam, cMo_true, p1 + s * (p2 - p1))
        if noise_px > 0.0:
            uv = uv + rng.normal(0.0, noise_px, size=uv.shape)
        contours.add(LinePrimitive(name=f"line{i}", face_ids=[0], site_lists=[make_sites(uv)], p1=p1, p2=p2))

    points = PointFeatureSet()
    group = points.add(PlanarPointGroup("target", np.zeros(3), np.array([0.0, 0.0, 1.0])))
    h = TARGET_HALF
    group.outline = np.array([[-h, -h, 0.0], [h, -h, 0.0], [h, h, 0.0], [-h, h, 0.0]])
    obj = target_points()
    uv_true = _to_pixels(cam, cMo_true, obj)
    group.reset_points(np.arange(obj.shape[0]), uv_true, cam, cMo_true)
    uv = uv_true.copy()
    if noise_px > 0.0:
        uv = uv + rng.normal(0.0, noise_px, size=uv.shape)
    if outliers > 0:
        idx = rng.choice(uv.shape[0], size=min(int(outliers), uv.shape[0]), replace=False)
        uv[idx] += rng.choice([-1.0, 1.0], size=(idx.size, 2)) * 20.0
    group.update_measurements(group.ids, uv, cam)

    return SyntheticScene(cam=cam, cMo_true=cMo_true, cMo_init=cMo_init, contours=contours, points=points)


def plane_texture(size: int = 256, seed: Optional[int] = 0) -> np.ndarray:
    """Smooth random gray texture, corner-rich enough for pyramidal LK."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=(size, size), dtype=np.uint8)
    img = cv2.GaussianBlur(img, (0, 0), 2.0)
    return cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)


def render_plane(
    cam: CameraParameters, cMo: np.ndarray, texture: np.ndarray, half: float = TARGET_HALF
) -> np.ndarray:
    """Image of the square ``[-half, half]^2`` of the plane z=0 carrying ``texture``, black elsewhere."""
    th, tw = texture.shape[:2]
    S = np.array(
        [[2.0 * half / (tw - 1), 0.0, -half], [0.0, 2.0 * half / (th - 1), -half], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )
    P = np.column_stack([cMo[:3, 0], cMo[:3, 1], cMo[:3, 3]])
    H = cam.K @ P @ S
    return cv2.warpPerspective(texture, H, cam.size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT)


def textured_sequence(
    cam: CameraParameters,
    cMo: np.ndarray,
    frames: int,
    step_deg: float = 0.3,
    step_t: Sequence[float] = (0.002, -0.001, 0.002),
    seed: Optional[int] = 0,
) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """Rendered frames of the textured target drifting by a constant motion; returns (images, poses)."""
    texture = plane_texture(seed=seed)
    poses = [np.array(cMo, dtype=np.float64)]
    for _ in range(1, int(frames)):
        poses.append(perturb_pose(poses[-1], angle_deg=step_deg, dt=step_t))
    return [render_plane(cam, p, texture) for p in poses], poses
