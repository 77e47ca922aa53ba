import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import numpy as np

from hybrid_pose_tracker.assembler import ResidualAssembler
from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.common.errors import TrackingError
from hybrid_pose_tracker.features.contour import ContourPrimitive, GeometricFeatureSet
from hybrid_pose_tracker.features.points import PointFeatureSet
from hybrid_pose_tracker.reconcile import post_tracking
from hybrid_pose_tracker.solver import PoseSolver, SolveResult

logger = logging.getLogger(__name__)


class PointSource(Protocol):
    def refresh(self, frame, points: PointFeatureSet, cam: CameraParameters, cMo: np.ndarray) -> None:
        ...

    def reinit(self, frame, points: PointFeatureSet, cam: CameraParameters, cMo: np.ndarray) -> None:
        ...


class SiteTracker(Protocol):
    def track_sites(self, frame, contours: GeometricFeatureSet, level: int) -> None:
        ...

    def update_sites(self, frame, contours: GeometricFeatureSet, cMo: np.ndarray) -> None:
        ...

    def init_sites(self, frame, primitives: List[ContourPrimitive], cMo: np.ndarray) -> None:
        ...

    def reinit_sites(self, frame, contours: GeometricFeatureSet, cMo: np.ndarray) -> None:
        ...


@dataclass
class TrackResult:
    valid: bool
    reason: str
    cMo: np.ndarray
    iterations: int = 0
    residue: float = 0.0
    needs_reinit: bool = False
    covariance: Optional[np.ndarray] = None
    solve: Optional[SolveResult] = None
    flagged: List[str] = field(default_factory=list)


class HybridPoseTracker:
    """Frame-by-frame pose tracking from model contours and tracked points.

    The image processing itself is left to two collaborators: ``point_source``
    keeps the point groups fed with correspondences and ``site_tracker`` moves
    the contour sites along their normals. Either may be omitted when the
    caller fills the feature sets by hand.
    """

    def __init__(
        self,
        cam: CameraParameters,
        cfg: Optional[TrackerConfig] = None,
        contours: Optional[GeometricFeatureSet] = None,
        points: Optional[PointFeatureSet] = None,
        point_source: Optional[PointSource] = None,
        site_tracker: Optional[SiteTracker] = None,
        level: int = 0,
    ) -> None:
        self.cam = cam
        self.cfg = (cfg or TrackerConfig()).validate()
        self.contours = contours if contours is not None else GeometricFeatureSet()
        self.points = points if points is not None else PointFeatureSet(self.cfg.min_points_per_group)
        self.point_source = point_source
        self.site_tracker = site_tracker
        self.level = int(level)
        self.assembler = ResidualAssembler(self.contours, self.points, cam, self.cfg)
        self.solver = PoseSolver(self.assembler, self.cfg)
        self.cMo = np.eye(4, dtype=np.float64)
        self.last: Optional[SolveResult] = None

    def set_pose(self, cMo: np.ndarray, frame=None) -> None:
        self.cMo = np.array(cMo, dtype=np.float64).reshape(4, 4)
        self.contours.update_visibility(self.cMo, self.cfg.angle_appear_deg, self.cfg.angle_disappear_deg)
        if self.site_tracker is not None:
            self.site_tracker.reinit_sites(frame, self.contours, self.cMo)
        if self.point_source is not None:
            self.point_source.reinit(frame, self.points, self.cam, self.cMo)

    def reset(self) -> None:
        self.cMo = np.eye(4, dtype=np.float64)
        self.contours.clear()
        self.points.clear()
        self.last = None

    def _solve(self, frame) -> SolveResult:
        cMo = self.cMo
        if self.point_source is not None:
            self.point_source.refresh(frame, self.points, self.cam, cMo)
        if self.points.point_count() >= self.cfg.min_points_per_group:
            pre = self.solver.solve(cMo, self.level, use_contours=False, max_iter=self.cfg.max_iter_point_only)
            cMo = pre.cMo
        if self.site_tracker is not None:
            self.site_tracker.track_sites(frame, self.contours, self.level)
        return self.solver.solve(cMo, self.level)

    def track(self, frame=None) -> TrackResult:
        try:
            result = self._solve(frame)
        except TrackingError as exc:
            logger.warning("tracking failed (%s): %s", exc.reason, exc)
            return TrackResult(valid=False, reason=exc.reason, cMo=self.cMo.copy())

        self.cMo = result.cMo
        self.last = result
        rec = post_tracking(result, self.points, self.cfg)
        self.contours.update_visibility(self.cMo, self.cfg.angle_appear_deg, self.cfg.angle_disappear_deg)
        if self.site_tracker is not None:
            self.site_tracker.update_sites(frame, self.contours, self.cMo)
            if rec.flagged:
                self.site_tracker.init_sites(frame, rec.flagged, self.cMo)
        if rec.needs_reinit:
            logger.info("point features degraded, reinitializing")
            if self.point_source is not None:
                self.point_source.reinit(frame, self.points, self.cam, self.cMo)
            if self.site_tracker is not None:
                self.site_tracker.reinit_sites(frame, self.contours, self.cMo)

        return TrackResult(
            valid=True,
            reason="ok",
            cMo=self.cMo.copy(),
            iterations=result.iterations,
            residue=result.residue,
            needs_reinit=rec.needs_reinit,
            covariance=result.covariance,
            solve=result,
            flagged=[p.name for p in rec.flagged],
        )
