from dataclasses import dataclass, fields
from enum import Enum
from typing import Tuple

import cv2
import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters


class OptimizationMethod(Enum):
    GAUSS_NEWTON = "gauss_newton"
    LEVENBERG_MARQUARDT = "levenberg_marquardt"


@dataclass
class TrackerConfig:
    threshold_contour: float = 2.0
    threshold_point: float = 2.0
    lambda_gain: float = 0.8
    max_iter: int = 200
    max_iter_point_only: int = 30
    optimization: OptimizationMethod = OptimizationMethod.GAUSS_NEWTON
    free_dof: Tuple[int, int, int, int, int, int] = (1, 1, 1, 1, 1, 1)
    contour_share: float = 0.35
    point_share: float = 0.65
    mu_init: float = 0.01
    mu_max: float = 1.0
    convergence_tol: float = 1e-8
    compute_covariance: bool = False
    border_margin_px: float = 10.0
    site_outlier_weight: float = 0.5
    reinit_mean_weight: float = 0.8
    point_outlier_weight: float = 0.5
    point_percent_good: float = 0.6
    min_points_per_group: int = 4
    min_rows: int = 4
    angle_appear_deg: float = 65.0
    angle_disappear_deg: float = 75.0

    @property
    def minimal_parameterization(self) -> bool:
        return all(int(d) == 1 for d in self.free_dof)

    @property
    def oJo(self) -> np.ndarray:
        return np.diag(np.asarray(self.free_dof, dtype=np.float64))

    def validate(self) -> "TrackerConfig":
        if self.threshold_contour <= 0.0 or self.threshold_point <= 0.0:
            raise ValueError("robust thresholds must be positive")
        if self.lambda_gain <= 0.0:
            raise ValueError("lambda_gain must be positive")
        if self.max_iter <= 0 or self.max_iter_point_only <= 0:
            raise ValueError("iteration caps must be positive")
        for name in ("contour_share", "point_share"):
            share = float(getattr(self, name))
            if share < 0.0 or share > 1.0:
                raise ValueError(f"{name} must lie in [0, 1], got {share}")
        if len(self.free_dof) != 6:
            raise ValueError("free_dof needs one flag per pose parameter")
        if self.mu_init <= 0.0 or self.mu_max <= self.mu_init:
            raise ValueError("damping must satisfy 0 < mu_init < mu_max")
        return self


def _read_node(fs: cv2.FileStorage, name: str, current):
    node = fs.getNode(name)
    if node.empty():
        return current
    if isinstance(current, OptimizationMethod):
        return OptimizationMethod(node.string().strip().lower())
    if isinstance(current, bool):
        return bool(int(node.real()))
    if isinstance(current, int):
        return int(node.real())
    if isinstance(current, tuple):
        if node.isSeq():
            return tuple(int(node.at(i).real()) for i in range(node.size()))
        mat = node.mat()
        if mat is None:
            raise RuntimeError(f"Config node '{name}' must be a sequence or a matrix")
        return tuple(int(v) for v in np.asarray(mat).reshape(-1))
    return float(node.real())


def load_tracker_config(path: str) -> TrackerConfig:
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise RuntimeError(f"Cannot open tracker config: {path}")
    cfg = TrackerConfig()
    try:
        for f in fields(TrackerConfig):
            setattr(cfg, f.name, _read_node(fs, f.name, getattr(cfg, f.name)))
    finally:
        fs.release()
    return cfg.validate()


def load_camera_parameters(path: str) -> CameraParameters:
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise RuntimeError(f"Cannot open camera file: {path}")
    try:
        values = {}
        for key in ("px", "py", "u0", "v0", "width", "height"):
            node = fs.getNode(key)
            if node.empty():
                raise RuntimeError(f"Camera file {path} lacks '{key}'")
            values[key] = node.real()
    finally:
        fs.release()
    return CameraParameters(
        px=float(values["px"]),
        py=float(values["py"]),
        u0=float(values["u0"]),
        v0=float(values["v0"]),
        width=int(values["width"]),
        height=int(values["height"]),
    )
