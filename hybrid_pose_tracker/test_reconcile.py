import numpy as np
import pytest

from hybrid_pose_tracker.assembler import ContourLayout
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.common.geometry import make_transform
from hybrid_pose_tracker.features.contour import CylinderPrimitive, LinePrimitive, SiteState, make_sites
from hybrid_pose_tracker.features.points import PlanarPointGroup, PointFeatureSet
from hybrid_pose_tracker.reconcile import reconcile_contours
from hybrid_pose_tracker.synthetic import default_camera


def _line(name, n):
    uv = [[300.0 + 5 * i, 200.0] for i in range(n)]
    return LinePrimitive(name=name, site_lists=[make_sites(uv)], p1=np.zeros(3), p2=np.array([0.1, 0.0, 0.0]))


def test_low_weights_mark_sites_and_flag_primitive():
    good = _line("good", 4)
    bad = _line("bad", 4)
    layout = ContourLayout(level=0, offsets=[(good, 0), (bad, 4)], rows=8)
    w = np.array([1.0, 0.9, 0.95, 0.4, 0.3, 0.2, 1.0, 0.9])

    flagged = reconcile_contours(layout, w, TrackerConfig())
    assert flagged == [bad]
    assert good.reinit is False
    assert bad.reinit is True
    assert good.mean_weight == pytest.approx(0.8125)
    assert [s.state for s in good.site_lists[0]][-1] == SiteState.M_ESTIMATOR
    assert [s.state for s in bad.site_lists[0]][:2] == [SiteState.M_ESTIMATOR] * 2
    assert bad.site_lists[0][2].state == SiteState.NO_SUPPRESSION


def test_cylinder_flagged_by_one_limb():
    cyl = CylinderPrimitive(
        name="cyl",
        site_lists=[make_sites([[300.0, 200.0], [300.0, 220.0]]), make_sites([[340.0, 200.0], [340.0, 220.0]])],
        p1=np.zeros(3),
        p2=np.array([0.0, 0.1, 0.0]),
        radius=0.02,
    )
    layout = ContourLayout(level=0, offsets=[(cyl, 0)], rows=4)
    flagged = reconcile_contours(layout, np.array([1.0, 1.0, 0.6, 0.7]), TrackerConfig())
    assert flagged == [cyl]
    assert cyl.mean_weights == pytest.approx([1.0, 0.65])


def test_primitive_without_sites_is_healthy():
    empty = _line("empty", 0)
    layout = ContourLayout(level=0, offsets=[(empty, 0)], rows=0)
    assert reconcile_contours(layout, np.zeros(0), TrackerConfig()) == []
    assert empty.mean_weight == 1.0


def test_weight_count_mismatch():
    layout = ContourLayout(level=0, offsets=[(_line("l", 2), 0)], rows=2)
    with pytest.raises(ValueError):
        reconcile_contours(layout, np.ones(3), TrackerConfig())


def _points(n):
    cam = default_camera()
    cMo = make_transform(np.eye(3), [0.0, 0.0, 0.5])
    points = PointFeatureSet()
    g = points.add(PlanarPointGroup("p", np.zeros(3), np.array([0.0, 0.0, 1.0])))
    uv = np.array([[250.0 + 12 * i, 200.0 + 3 * i] for i in range(n)])
    g.reset_points(np.arange(n), uv, cam, cMo)
    return points, g


def test_point_health_check_keeps_enough_points():
    points, g = _points(10)
    w = np.ones(20)
    w[0] = 0.2
    w[7] = 0.1
    offsets = points.offsets()
    assert points.post_tracking(w, offsets, 0.5, 0.6) is False
    assert g.count == 8


def test_point_health_check_requests_reinit():
    points, g = _points(10)
    w = np.ones(20)
    w[:10] = 0.0
    offsets = points.offsets()
    assert points.post_tracking(w, offsets, 0.5, 0.6) is True
    assert g.count == 5
