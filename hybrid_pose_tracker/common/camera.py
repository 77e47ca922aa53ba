from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass
class CameraParameters:
    px: float
    py: float
    u0: float
    v0: float
    width: int = 640
    height: int = 480

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [[self.px, 0.0, self.u0], [0.0, self.py, self.v0], [0.0, 0.0, 1.0]], dtype=np.float64
        )

    def pixel_to_meter(self, uv: np.ndarray) -> np.ndarray:
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        x = (uv[:, 0] - self.u0) / self.px
        y = (uv[:, 1] - self.v0) / self.py
        return np.stack([x, y], axis=1)

    def meter_to_pixel(self, xy: np.ndarray) -> np.ndarray:
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        u = xy[:, 0] * self.px + self.u0
        v = xy[:, 1] * self.py + self.v0
        return np.stack([u, v], axis=1)

    def near_border(self, uv: np.ndarray, margin: float) -> bool:
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        if uv.size == 0:
            return False
        m = float(margin)
        return bool(
            np.any(uv[:, 0] < m)
            or np.any(uv[:, 0] > self.width - 1 - m)
            or np.any(uv[:, 1] < m)
            or np.any(uv[:, 1] > self.height - 1 - m)
        )

    @property
    def size(self) -> Tuple[int, int]:
        return int(self.width), int(self.height)
