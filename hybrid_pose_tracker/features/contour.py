import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.errors import InteractionMatrixError
from hybrid_pose_tracker.common.geometry import (
    line_interaction,
    numerical_interaction,
    project,
    transform_points,
)

logger = logging.getLogger(__name__)


class SiteState(Enum):
    NO_SUPPRESSION = 0
    CONTRAST = 1
    THRESHOLD = 2
    M_ESTIMATOR = 3
    TOO_NEAR = 4


@dataclass
class ContourSite:
    u: float
    v: float
    state: SiteState = SiteState.NO_SUPPRESSION


def make_sites(uv: np.ndarray) -> List[ContourSite]:
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    return [ContourSite(u=float(p[0]), v=float(p[1])) for p in uv]


def _line_rows(xy: np.ndarray, rho: float, theta: float) -> np.ndarray:
    ct = np.cos(theta)
    st = np.sin(theta)
    return rho - (xy[:, 0] * ct + xy[:, 1] * st)


@dataclass(eq=False)
class ContourPrimitive:
    """Shared bookkeeping of the model contours tracked through their edge sites."""

    name: str
    face_ids: List[int] = field(default_factory=list)
    tracked: bool = True
    visible: bool = True
    reinit: bool = False
    site_lists: List[List[ContourSite]] = field(default_factory=list)
    mean_weights: List[float] = field(default_factory=list)

    kind = "primitive"

    @property
    def feature_count(self) -> int:
        return int(sum(len(s) for s in self.site_lists))

    @property
    def mean_weight(self) -> float:
        if not self.mean_weights:
            return 1.0
        return float(min(self.mean_weights))

    def sites(self) -> Iterator[ContourSite]:
        for lst in self.site_lists:
            yield from lst

    def site_pixels(self) -> np.ndarray:
        pts = [(s.u, s.v) for s in self.sites()]
        return np.asarray(pts, dtype=np.float64).reshape(-1, 2)

    def site_meters(self, cam: CameraParameters, index: int) -> np.ndarray:
        pts = [(s.u, s.v) for s in self.site_lists[index]]
        return cam.pixel_to_meter(np.asarray(pts, dtype=np.float64).reshape(-1, 2))

    def close_to_image_border(self, cam: CameraParameters, margin: float) -> bool:
        return cam.near_border(self.site_pixels(), margin)

    def compute_interaction(self, cMo: np.ndarray, cam: CameraParameters) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError


@dataclass(eq=False)
class LinePrimitive(ContourPrimitive):
    p1: np.ndarray = field(default_factory=lambda: np.zeros(3))
    p2: np.ndarray = field(default_factory=lambda: np.zeros(3))

    kind = "line"

    def __post_init__(self) -> None:
        if not self.site_lists:
            self.site_lists = [[]]

    def projected_line(self, cMo: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        pc = transform_points(cMo, np.stack([self.p1, self.p2]))
        if np.any(pc[:, 2] <= 1e-9):
            raise InteractionMatrixError(f"line '{self.name}' crosses the camera plane")
        return project(pc), pc[:, 2]

    def compute_interaction(self, cMo: np.ndarray, cam: CameraParameters) -> Tuple[np.ndarray, np.ndarray]:
        xy_img, z = self.projected_line(cMo)
        try:
            rho, theta, L_rho, L_theta = line_interaction(xy_img[0], z[0], xy_img[1], z[1])
        except ValueError as exc:
            raise InteractionMatrixError(f"line '{self.name}': {exc}") from exc
        xy = self.site_meters(cam, 0)
        alpha = xy[:, 0] * np.sin(theta) - xy[:, 1] * np.cos(theta)
        L = L_rho[None, :] + alpha[:, None] * L_theta[None, :]
        e = _line_rows(xy, rho, theta)
        return L, e


@dataclass(eq=False)
class CylinderPrimitive(ContourPrimitive):
    """Cylinder tracked through its two silhouette (limb) lines, one site list per limb."""

    p1: np.ndarray = field(default_factory=lambda: np.zeros(3))
    p2: np.ndarray = field(default_factory=lambda: np.zeros(3))
    radius: float = 0.0

    kind = "cylinder"

    def __post_init__(self) -> None:
        while len(self.site_lists) < 2:
            self.site_lists.append([])

    def limbs(self, cMo: np.ndarray) -> List[Tuple[np.ndarray, np.ndarray]]:
        a, b = transform_points(cMo, np.stack([self.p1, self.p2]))
        axis = b - a
        d = axis / max(float(np.linalg.norm(axis)), 1e-12)
        foot = a - float(np.dot(a, d)) * d
        q = -foot
        h = float(np.linalg.norm(q))
        r = float(self.radius)
        if h <= r:
            raise InteractionMatrixError(f"camera inside cylinder '{self.name}'")
        qh = q / h
        wh = np.cross(d, qh)
        along = (r * r / h) * qh
        across = r * np.sqrt(1.0 - (r * r) / (h * h)) * wh
        out = []
        for u in (along + across, along - across):
            ends = np.stack([a + u, b + u])
            if np.any(ends[:, 2] <= 1e-9):
                raise InteractionMatrixError(f"cylinder '{self.name}' crosses the camera plane")
            xy = project(ends)
            out.append((xy[0], xy[1]))
        return out

    def _residuals(self, cMo: np.ndarray, xy_lists: Sequence[np.ndarray]) -> np.ndarray:
        rows = []
        for (q1, q2), xy in zip(self.limbs(cMo), xy_lists):
            d = q2 - q1
            theta = float(np.arctan2(d[1], d[0]) + 0.5 * np.pi)
            rho = float(np.cos(theta) * q1[0] + np.sin(theta) * q1[1])
            rows.append(_line_rows(xy, rho, theta))
        return np.concatenate(rows)

    def compute_interaction(self, cMo: np.ndarray, cam: CameraParameters) -> Tuple[np.ndarray, np.ndarray]:
        xy_lists = [self.site_meters(cam, i) for i in range(2)]
        e = self._residuals(cMo, xy_lists)
        L = numerical_interaction(lambda T: self._residuals(T, xy_lists), cMo)
        return L, e


@dataclass(eq=False)
class CirclePrimitive(ContourPrimitive):
    center: np.ndarray = field(default_factory=lambda: np.zeros(3))
    normal: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 1.0]))
    radius: float = 0.0

    kind = "circle"

    def __post_init__(self) -> None:
        if not self.site_lists:
            self.site_lists = [[]]

    def conic(self, cMo: np.ndarray) -> np.ndarray:
        """Image conic (normalized coordinates) of the circle seen from ``cMo``."""
        c = transform_points(cMo, self.center)[0]
        n = cMo[:3, :3] @ np.asarray(self.normal, dtype=np.float64)
        n = n / max(float(np.linalg.norm(n)), 1e-12)
        nc = float(np.dot(n, c))
        if abs(nc) < 1e-12:
            raise InteractionMatrixError(f"circle '{self.name}' is seen edge-on")
        Q = nc * nc * np.eye(3) - nc * (np.outer(n, c) + np.outer(c, n))
        Q += (float(np.dot(c, c)) - float(self.radius) ** 2) * np.outer(n, n)
        return Q

    def _residuals(self, cMo: np.ndarray, xy: np.ndarray) -> np.ndarray:
        Q = self.conic(cMo)
        m = np.hstack([xy, np.ones((xy.shape[0], 1))])
        Qm = m @ Q.T
        alg = np.einsum("ij,ij->i", m, Qm)
        grad = 2.0 * np.linalg.norm(Qm[:, :2], axis=1)
        if np.any(grad < 1e-15):
            raise InteractionMatrixError(f"circle '{self.name}' has a degenerate site")
        return alg / grad

    def compute_interaction(self, cMo: np.ndarray, cam: CameraParameters) -> Tuple[np.ndarray, np.ndarray]:
        xy = self.site_meters(cam, 0)
        e = self._residuals(cMo, xy)
        L = numerical_interaction(lambda T: self._residuals(T, xy), cMo)
        return L, e


@dataclass(eq=False)
class Face:
    """Model face used for visibility; a face appears below one angle and disappears above another."""

    face_id: int
    center: np.ndarray
    normal: np.ndarray
    visible: bool = False

    def view_angle_deg(self, cMo: np.ndarray) -> float:
        c = transform_points(cMo, self.center)[0]
        n = cMo[:3, :3] @ np.asarray(self.normal, dtype=np.float64).reshape(3)
        den = float(np.linalg.norm(n)) * float(np.linalg.norm(c))
        if den < 1e-12:
            return 180.0
        cos_a = float(np.clip(np.dot(n, -c) / den, -1.0, 1.0))
        return float(np.degrees(np.arccos(cos_a)))


class GeometricFeatureSet:
    """Contour primitives per pyramid level, in a stable insertion order."""

    def __init__(self, scales: Optional[Sequence[bool]] = None) -> None:
        self.scales: List[bool] = list(scales) if scales is not None else [True]
        self.levels: Dict[int, List[ContourPrimitive]] = {i: [] for i in range(len(self.scales))}
        self.faces: Dict[int, Face] = {}
        self.appearing_faces: Set[int] = set()

    def _check_level(self, level: int) -> None:
        if level < 0 or level >= len(self.scales) or not self.scales[level]:
            raise ValueError(f"pyramid level {level} is not used")

    def add(self, primitive: ContourPrimitive, level: int = 0) -> ContourPrimitive:
        self._check_level(level)
        self.levels[level].append(primitive)
        return primitive

    def primitives(self, level: int = 0) -> List[ContourPrimitive]:
        self._check_level(level)
        return self.levels[level]

    def active(self, level: int = 0) -> List[ContourPrimitive]:
        return [p for p in self.primitives(level) if p.tracked and p.visible]

    def is_appearing(self, face_id: int) -> bool:
        return face_id in self.appearing_faces

    def add_face(self, face: Face) -> Face:
        self.faces[face.face_id] = face
        return face

    def update_visibility(self, cMo: np.ndarray, angle_appear_deg: float, angle_disappear_deg: float) -> Set[int]:
        """Refresh face visibility from ``cMo``; returns the faces that just became visible."""
        self.appearing_faces = set()
        for face in self.faces.values():
            limit = angle_disappear_deg if face.visible else angle_appear_deg
            now = face.view_angle_deg(cMo) < limit
            if now and not face.visible:
                self.appearing_faces.add(face.face_id)
            face.visible = now
        for prims in self.levels.values():
            for prim in prims:
                known = [self.faces[i] for i in prim.face_ids if i in self.faces]
                if known:
                    prim.visible = any(f.visible for f in known)
        if self.appearing_faces:
            logger.debug("faces appearing: %s", sorted(self.appearing_faces))
        return self.appearing_faces

    def clear(self) -> None:
        for level in self.levels:
            self.levels[level] = []
        self.faces = {}
        self.appearing_faces.clear()
        logger.debug("contour features cleared")
