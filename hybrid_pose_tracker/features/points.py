import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.errors import InteractionMatrixError
from hybrid_pose_tracker.common.geometry import (
    inverse_transform,
    point_interaction,
    project,
    transform_points,
)

logger = logging.getLogger(__name__)


class PointGroup:
    """Tracked 2D points lying on one model surface.

    Reference points are kept in the object frame once lifted, so the group
    can re-anchor itself on whatever pose a solve starts from.
    """

    kind = "points"

    def __init__(self, name: str, min_points: int = 4) -> None:
        self.name = name
        self.min_points = int(min_points)
        self.tracked = True
        self.visible = True
        self.ids = np.zeros(0, dtype=np.int64)
        self.obj_pts = np.zeros((0, 3), dtype=np.float64)
        self.cur_xy = np.zeros((0, 2), dtype=np.float64)
        self.initial_count = 0
        self.c0Mo = np.eye(4, dtype=np.float64)
        self.outline: Optional[np.ndarray] = None

    @property
    def count(self) -> int:
        return int(self.ids.size)

    @property
    def has_enough_points(self) -> bool:
        return self.count >= self.min_points

    @property
    def usable(self) -> bool:
        return self.tracked and self.visible and self.has_enough_points

    def _lift(self, xy: np.ndarray, cMo: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError

    def reset_points(self, ids: Sequence[int], uv: np.ndarray, cam: CameraParameters, cMo: np.ndarray) -> int:
        """Replace the tracked points by new detections observed at pose ``cMo``."""
        ids = np.asarray(ids, dtype=np.int64).reshape(-1)
        xy = cam.pixel_to_meter(uv)
        keep, obj = self._lift(xy, cMo)
        self.ids = ids[keep]
        self.obj_pts = obj[keep]
        self.cur_xy = xy[keep]
        self.initial_count = self.count
        self.c0Mo = np.array(cMo, dtype=np.float64)
        return self.count

    def update_measurements(self, ids: Sequence[int], uv: np.ndarray, cam: CameraParameters) -> int:
        """Keep only the points still reported by the tracker and store their new positions."""
        ids = np.asarray(ids, dtype=np.int64).reshape(-1)
        xy = cam.pixel_to_meter(uv)
        lookup = {int(i): k for k, i in enumerate(ids)}
        keep = np.array([int(i) in lookup for i in self.ids], dtype=bool)
        self.ids = self.ids[keep]
        self.obj_pts = self.obj_pts[keep]
        self.cur_xy = np.array([xy[lookup[int(i)]] for i in self.ids], dtype=np.float64).reshape(-1, 2)
        return self.count

    def begin_solve(self, c0Mo: np.ndarray) -> None:
        self.c0Mo = np.array(c0Mo, dtype=np.float64)

    def predict(self, ctTc0: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        pts = transform_points(ctTc0 @ self.c0Mo, self.obj_pts)
        if np.any(pts[:, 2] <= 1e-9):
            raise InteractionMatrixError(f"point group '{self.name}' has points behind the camera")
        return project(pts), pts[:, 2]

    def compute_interaction(self, ctTc0: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        xy, z = self.predict(ctTc0)
        L = point_interaction(xy[:, 0], xy[:, 1], z)
        e = (xy - self.cur_xy).reshape(-1)
        return L, e

    def remove_outliers(self, weights: np.ndarray, threshold: float) -> int:
        w = np.asarray(weights, dtype=np.float64).reshape(-1, 2)
        keep = np.all(w >= float(threshold), axis=1)
        removed = int(np.count_nonzero(~keep))
        self.ids = self.ids[keep]
        self.obj_pts = self.obj_pts[keep]
        self.cur_xy = self.cur_xy[keep]
        if removed:
            logger.debug("group %s dropped %d outlier points", self.name, removed)
        return self.count


class PlanarPointGroup(PointGroup):
    """Points on a planar face, transported between views by the plane-induced homography."""

    kind = "plane"

    def __init__(self, name: str, plane_point: np.ndarray, plane_normal: np.ndarray, min_points: int = 4) -> None:
        super().__init__(name, min_points)
        n = np.asarray(plane_normal, dtype=np.float64).reshape(3)
        self.normal = n / max(float(np.linalg.norm(n)), 1e-12)
        self.offset = float(np.dot(self.normal, np.asarray(plane_point, dtype=np.float64).reshape(3)))
        self.homography = np.eye(3, dtype=np.float64)
        self.ref_xy = np.zeros((0, 2), dtype=np.float64)
        self.n0 = self.normal.copy()
        self.d0 = self.offset

    def _plane_in(self, cMo: np.ndarray) -> Tuple[np.ndarray, float]:
        n = cMo[:3, :3] @ self.normal
        d = self.offset + float(np.dot(n, cMo[:3, 3]))
        return n, d

    def _lift(self, xy: np.ndarray, cMo: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        n, d = self._plane_in(cMo)
        rays = np.hstack([xy, np.ones((xy.shape[0], 1))])
        den = rays @ n
        with np.errstate(divide="ignore", invalid="ignore"):
            z = d / den
        keep = np.isfinite(z) & (z > 1e-9)
        pts_c = rays * np.where(keep, z, 0.0)[:, None]
        return keep, transform_points(inverse_transform(cMo), pts_c)

    def begin_solve(self, c0Mo: np.ndarray) -> None:
        super().begin_solve(c0Mo)
        self.n0, self.d0 = self._plane_in(self.c0Mo)
        if abs(self.d0) < 1e-12:
            raise InteractionMatrixError(f"plane of group '{self.name}' passes through the camera")
        if self.count:
            self.ref_xy = project(transform_points(self.c0Mo, self.obj_pts))
        else:
            self.ref_xy = np.zeros((0, 2), dtype=np.float64)

    def compute_homography(self, ctTc0: np.ndarray) -> np.ndarray:
        R = ctTc0[:3, :3]
        t = ctTc0[:3, 3]
        self.homography = R + np.outer(t, self.n0) / self.d0
        return self.homography

    def predict(self, ctTc0: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        H = self.compute_homography(ctTc0)
        ref = np.hstack([self.ref_xy, np.ones((self.ref_xy.shape[0], 1))])
        p = ref @ H.T
        if np.any(np.abs(p[:, 2]) < 1e-12):
            raise InteractionMatrixError(f"homography of group '{self.name}' is degenerate")
        xy = p[:, :2] / p[:, 2:3]
        n_t = ctTc0[:3, :3] @ self.n0
        d_t = self.d0 + float(np.dot(n_t, ctTc0[:3, 3]))
        z = d_t / (np.hstack([xy, np.ones((xy.shape[0], 1))]) @ n_t)
        if np.any(~np.isfinite(z)) or np.any(z <= 1e-9):
            raise InteractionMatrixError(f"point group '{self.name}' has points behind the camera")
        return xy, z


class CylinderPointGroup(PointGroup):
    """Points on the mantle of a cylinder, lifted by ray/cylinder intersection."""

    kind = "cylinder"

    def __init__(self, name: str, p1: np.ndarray, p2: np.ndarray, radius: float, min_points: int = 4) -> None:
        super().__init__(name, min_points)
        self.p1 = np.asarray(p1, dtype=np.float64).reshape(3)
        self.p2 = np.asarray(p2, dtype=np.float64).reshape(3)
        self.radius = float(radius)

    def _lift(self, xy: np.ndarray, cMo: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        a, b = transform_points(cMo, np.stack([self.p1, self.p2]))
        d = (b - a) / max(float(np.linalg.norm(b - a)), 1e-12)
        rays = np.hstack([xy, np.ones((xy.shape[0], 1))])
        # |(s*ray - a) x d|^2 = r^2, solved for the nearest positive s
        rp = rays - np.outer(rays @ d, d)
        ap = a - float(np.dot(a, d)) * d
        qa = np.einsum("ij,ij->i", rp, rp)
        qb = -2.0 * (rp @ ap)
        qc = float(np.dot(ap, ap)) - self.radius ** 2
        disc = qb * qb - 4.0 * qa * qc
        keep = (disc >= 0.0) & (qa > 1e-15)
        root = np.sqrt(np.where(keep, disc, 0.0))
        with np.errstate(divide="ignore", invalid="ignore"):
            s = np.where(keep, (-qb - root) / (2.0 * qa), 0.0)
        keep &= s > 1e-9
        pts_c = rays * s[:, None]
        return keep, transform_points(inverse_transform(cMo), pts_c)


class PointFeatureSet:
    """All point groups, iterated in insertion order."""

    def __init__(self, min_points: int = 4) -> None:
        self.min_points = int(min_points)
        self.groups: List[PointGroup] = []

    def add(self, group: PointGroup) -> PointGroup:
        group.min_points = self.min_points
        self.groups.append(group)
        return group

    def group(self, name: str) -> Optional[PointGroup]:
        for g in self.groups:
            if g.name == name:
                return g
        return None

    def usable_groups(self) -> List[PointGroup]:
        return [g for g in self.groups if g.usable]

    def point_count(self) -> int:
        return int(sum(g.count for g in self.usable_groups()))

    def row_count(self) -> int:
        return 2 * self.point_count()

    def offsets(self) -> List[Tuple[PointGroup, int]]:
        out = []
        shift = 0
        for g in self.usable_groups():
            out.append((g, shift))
            shift += 2 * g.count
        return out

    def begin_solve(self, c0Mo: np.ndarray) -> None:
        for g in self.usable_groups():
            g.begin_solve(c0Mo)

    def fill(self, ctTc0: np.ndarray, L: np.ndarray, e: np.ndarray, offsets: List[Tuple[PointGroup, int]]) -> None:
        for g, shift in offsets:
            rows = 2 * g.count
            try:
                L_g, e_g = g.compute_interaction(ctTc0)
            except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
                raise InteractionMatrixError(f"Cannot compute interaction matrix of '{g.name}': {exc}") from exc
            L[shift : shift + rows] = L_g
            e[shift : shift + rows] = e_g

    def post_tracking(
        self, weights: np.ndarray, offsets: List[Tuple[PointGroup, int]], outlier_weight: float, percent_good: float
    ) -> bool:
        """Drop down-weighted points; True when too few survive and the points must be re-detected."""
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
        initial = 0
        current = 0
        for g in self.groups:
            if g.tracked and g.visible:
                initial += g.initial_count
        for g, shift in offsets:
            current += g.remove_outliers(weights[shift : shift + 2 * g.count], outlier_weight)
        if initial == 0:
            return False
        needs_reinit = float(current) < float(percent_good) * float(initial)
        if needs_reinit:
            logger.warning("point features degraded: %d of %d left", current, initial)
        return needs_reinit

    def clear(self) -> None:
        self.groups = []
