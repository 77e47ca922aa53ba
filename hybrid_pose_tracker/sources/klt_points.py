import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from hybrid_pose_tracker.common.camera import CameraParameters
from hybrid_pose_tracker.common.geometry import project, transform_points
from hybrid_pose_tracker.features.points import PointFeatureSet, PointGroup

logger = logging.getLogger(__name__)


@dataclass
class KltConfig:
    max_corners: int = 300
    quality_level: float = 0.01
    min_distance: float = 8.0
    block_size: int = 7
    win_size: int = 21
    max_level: int = 3
    fb_max_px: float = 1.0
    erode_px: int = 3


def to_gray(frame: np.ndarray) -> np.ndarray:
    if frame is None:
        raise ValueError("point tracking needs an image")
    if frame.ndim == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    return frame


def polygon_mask(uv: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Filled 8-bit mask of an image polygon; ``size`` is (width, height)."""
    w, h = size
    mask = np.zeros((h, w), dtype=np.uint8)
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    if uv.shape[0] >= 3:
        cv2.fillPoly(mask, [np.round(uv).astype(np.int32).reshape(-1, 1, 2)], 255)
    return mask


def group_mask(group: PointGroup, cam: CameraParameters, cMo: np.ndarray, erode_px: int = 0) -> np.ndarray:
    """Detection mask of a group: its projected outline, or the whole image when it has none."""
    h, w = int(cam.height), int(cam.width)
    if group.outline is None:
        return np.full((h, w), 255, dtype=np.uint8)
    pts = transform_points(cMo, group.outline)
    if np.any(pts[:, 2] <= 1e-9):
        return np.zeros((h, w), dtype=np.uint8)
    m = polygon_mask(cam.meter_to_pixel(project(pts)), (w, h))
    if erode_px > 0:
        k = 2 * int(erode_px) + 1
        m = cv2.erode(m, np.ones((k, k), dtype=np.uint8))
    return m


class KltPointSource:
    """Pyramidal Lucas-Kanade point source for the point groups.

    Corners are detected inside each group's projected outline and tracked
    frame to frame; a track survives only if the backward flow lands within
    ``fb_max_px`` of where it started.
    """

    def __init__(self, cfg: Optional[KltConfig] = None) -> None:
        self.cfg = cfg or KltConfig()
        self.prev_gray = None
        self.tracks: Dict[str, Tuple[np.ndarray, np.ndarray]] = {}
        self.next_id = 1

    def _lk_params(self) -> Dict:
        return dict(
            winSize=(int(self.cfg.win_size), int(self.cfg.win_size)),
            maxLevel=int(self.cfg.max_level),
            criteria=(cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01),
        )

    def track_points(self, prev_gray: np.ndarray, gray: np.ndarray, uv: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        uv = np.asarray(uv, dtype=np.float32).reshape(-1, 2)
        if uv.shape[0] == 0:
            return np.zeros(0, dtype=bool), uv
        params = self._lk_params()
        p0 = uv.reshape(-1, 1, 2)
        p1, st1, _ = cv2.calcOpticalFlowPyrLK(prev_gray, gray, p0, None, **params)
        p0_back, st0, _ = cv2.calcOpticalFlowPyrLK(gray, prev_gray, p1, None, **params)
        fb = np.linalg.norm((p0 - p0_back).reshape(-1, 2), axis=1)
        keep = (st1.reshape(-1) == 1) & (st0.reshape(-1) == 1) & (fb < float(self.cfg.fb_max_px))
        return keep, p1.reshape(-1, 2)

    def detect(self, gray: np.ndarray, mask: np.ndarray) -> np.ndarray:
        corners = cv2.goodFeaturesToTrack(
            gray,
            int(self.cfg.max_corners),
            float(self.cfg.quality_level),
            float(self.cfg.min_distance),
            mask=mask,
            blockSize=int(self.cfg.block_size),
        )
        if corners is None:
            return np.zeros((0, 2), dtype=np.float64)
        return corners.reshape(-1, 2).astype(np.float64)

    def reinit(self, frame, points: PointFeatureSet, cam: CameraParameters, cMo: np.ndarray) -> None:
        gray = to_gray(frame)
        self.tracks = {}
        for g in points.groups:
            if not (g.tracked and g.visible):
                continue
            uv = self.detect(gray, group_mask(g, cam, cMo, self.cfg.erode_px))
            ids = np.arange(self.next_id, self.next_id + uv.shape[0], dtype=np.int64)
            self.next_id += uv.shape[0]
            g.reset_points(ids, uv, cam, cMo)
            self.tracks[g.name] = (g.ids.copy(), cam.meter_to_pixel(g.cur_xy).astype(np.float32))
            logger.debug("group %s: %d corners", g.name, g.count)
        self.prev_gray = gray
        logger.info("point tracks initialized: %d", points.point_count())

    def refresh(self, frame, points: PointFeatureSet, cam: CameraParameters, cMo: np.ndarray) -> None:
        gray = to_gray(frame)
        if self.prev_gray is None or self.prev_gray.shape != gray.shape:
            self.reinit(frame, points, cam, cMo)
            return
        for g in points.groups:
            ids, uv = self.tracks.get(g.name, (np.zeros(0, dtype=np.int64), np.zeros((0, 2), dtype=np.float32)))
            alive = np.isin(ids, g.ids)
            ids, uv = ids[alive], uv[alive]
            keep, uv1 = self.track_points(self.prev_gray, gray, uv)
            ids, uv1 = ids[keep], uv1[keep]
            self.tracks[g.name] = (ids, uv1)
            g.update_measurements(ids, uv1, cam)
        self.prev_gray = gray
