import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.common.errors import InsufficientDataError, InteractionMatrixError
from hybrid_pose_tracker.features.contour import ContourPrimitive, GeometricFeatureSet, SiteState
from hybrid_pose_tracker.features.points import PointFeatureSet, PointGroup

logger = logging.getLogger(__name__)

RELIABLE = 1.0
APPEARING = 0.2
SUSPECT = 0.2
NEAR_BORDER = 0.1


@dataclass
class ResidualBundle:
    L: np.ndarray
    e: np.ndarray

    def __post_init__(self) -> None:
        if self.L.shape[0] != self.e.shape[0]:
            raise ValueError(f"interaction rows {self.L.shape[0]} != residual rows {self.e.shape[0]}")

    @property
    def rows(self) -> int:
        return int(self.e.shape[0])

    @classmethod
    def empty(cls, rows: int) -> "ResidualBundle":
        return cls(L=np.zeros((rows, 6), dtype=np.float64), e=np.zeros(rows, dtype=np.float64))


@dataclass
class ContourLayout:
    """Row offsets of the tracked, visible primitives of one level, fixed for one solve."""

    level: int
    offsets: List[Tuple[ContourPrimitive, int]] = field(default_factory=list)
    rows: int = 0


def check_rows(contour_rows: int, point_rows: int, min_rows: int = 4) -> None:
    usable = (contour_rows if contour_rows >= min_rows else 0) + (point_rows if point_rows >= min_rows else 0)
    if contour_rows + point_rows < min_rows or usable < min_rows:
        raise InsufficientDataError(
            f"not enough data: {contour_rows} contour rows, {point_rows} point rows"
        )


class ResidualAssembler:
    def __init__(
        self,
        contours: GeometricFeatureSet,
        points: PointFeatureSet,
        cam: CameraParameters,
        cfg: TrackerConfig,
    ) -> None:
        self.contours = contours
        self.points = points
        self.cam = cam
        self.cfg = cfg

    def layout(self, level: int = 0) -> ContourLayout:
        out = ContourLayout(level=level)
        n = 0
        for prim in self.contours.active(level):
            out.offsets.append((prim, n))
            n += prim.feature_count
        out.rows = n
        logger.debug("level %d: %d contour rows from %d primitives", level, n, len(out.offsets))
        return out

    def point_layout(self) -> List[Tuple[PointGroup, int]]:
        return self.points.offsets()

    def count_rows(self, level: int = 0) -> Tuple[ContourLayout, List[Tuple[PointGroup, int]]]:
        layout = self.layout(level)
        point_offsets = self.point_layout()
        check_rows(layout.rows, self.points.row_count(), self.cfg.min_rows)
        return layout, point_offsets

    def primitive_factor(self, prim: ContourPrimitive) -> float:
        if any(self.contours.is_appearing(face_id) for face_id in prim.face_ids):
            return APPEARING
        if prim.close_to_image_border(self.cam, self.cfg.border_margin_px):
            return NEAR_BORDER
        return RELIABLE

    def attenuation(self, layout: ContourLayout) -> np.ndarray:
        factor = np.ones(layout.rows, dtype=np.float64)
        for prim, offset in layout.offsets:
            fac = self.primitive_factor(prim)
            for i, site in enumerate(prim.sites()):
                factor[offset + i] = fac if site.state == SiteState.NO_SUPPRESSION else SUSPECT
        return factor

    def fill_contours(self, layout: ContourLayout, cMo: np.ndarray) -> ResidualBundle:
        bundle = ResidualBundle.empty(layout.rows)
        for prim, offset in layout.offsets:
            L, e = prim.compute_interaction(cMo, self.cam)
            rows = prim.feature_count
            if L.shape != (rows, 6) or e.shape != (rows,):
                raise InteractionMatrixError(
                    f"{prim.kind} '{prim.name}' produced {e.shape[0]} rows, expected {rows}"
                )
            bundle.L[offset : offset + rows] = L
            bundle.e[offset : offset + rows] = e
        return bundle

    def fill_points(self, offsets: List[Tuple[PointGroup, int]], ctTc0: np.ndarray) -> ResidualBundle:
        rows = int(sum(2 * g.count for g, _ in offsets))
        bundle = ResidualBundle.empty(rows)
        self.points.fill(ctTc0, bundle.L, bundle.e, offsets)
        return bundle
