import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np

from hybrid_pose_tracker.assembler import ContourLayout
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.features.contour import ContourPrimitive, SiteState
from hybrid_pose_tracker.features.points import PointFeatureSet
from hybrid_pose_tracker.solver import SolveResult

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    needs_reinit: bool = False
    flagged: List[ContourPrimitive] = field(default_factory=list)


def reconcile_contours(layout: ContourLayout, w_contour: np.ndarray, cfg: TrackerConfig) -> List[ContourPrimitive]:
    """Push the estimator verdict back onto the sites and flag primitives whose mean weight degraded."""
    w_contour = np.asarray(w_contour, dtype=np.float64).reshape(-1)
    if w_contour.shape[0] != layout.rows:
        raise ValueError(f"{w_contour.shape[0]} contour weights for {layout.rows} rows")
    flagged = []
    for prim, offset in layout.offsets:
        row = offset
        means = []
        for sites in prim.site_lists:
            w = w_contour[row : row + len(sites)]
            for site, wi in zip(sites, w):
                if wi < cfg.site_outlier_weight:
                    site.state = SiteState.M_ESTIMATOR
            means.append(float(np.mean(w)) if len(sites) else 1.0)
            row += len(sites)
        prim.mean_weights = means
        if prim.mean_weight < cfg.reinit_mean_weight:
            prim.reinit = True
            flagged.append(prim)
    if flagged:
        logger.warning("%d contour primitive(s) flagged for reinitialization", len(flagged))
    return flagged


def post_tracking(result: SolveResult, points: PointFeatureSet, cfg: TrackerConfig) -> Reconciliation:
    out = Reconciliation()
    out.flagged = reconcile_contours(result.layout, result.w_contour, cfg)
    if result.point_offsets:
        out.needs_reinit = points.post_tracking(
            result.w_point, result.point_offsets, cfg.point_outlier_weight, cfg.point_percent_good
        )
    return out
