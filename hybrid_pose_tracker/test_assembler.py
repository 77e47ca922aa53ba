import numpy as np
import pytest

from hybrid_pose_tracker.assembler import (
    APPEARING,
    NEAR_BORDER,
    RELIABLE,
    SUSPECT,
    ResidualAssembler,
    check_rows,
)
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.common.errors import InsufficientDataError
from hybrid_pose_tracker.features.contour import GeometricFeatureSet, LinePrimitive, SiteState, make_sites
from hybrid_pose_tracker.features.points import PointFeatureSet
from hybrid_pose_tracker.synthetic import build_scene, default_camera


def _line(name, uv, face_ids=(0,)):
    return LinePrimitive(
        name=name,
        face_ids=list(face_ids),
        site_lists=[make_sites(uv)],
        p1=np.array([-0.05, 0.0, 0.0]),
        p2=np.array([0.05, 0.0, 0.0]),
    )


def test_row_counts_match_per_modality():
    scene = build_scene()
    asm = ResidualAssembler(scene.contours, scene.points, scene.cam, TrackerConfig())
    layout, offsets = asm.count_rows(0)
    assert layout.rows == 20
    assert [off for _, off in layout.offsets] == [0, 4, 8, 11, 14, 17]

    factor = asm.attenuation(layout)
    contour = asm.fill_contours(layout, scene.cMo_init)
    assert contour.L.shape == (20, 6)
    assert contour.rows == factor.shape[0] == 20

    scene.points.begin_solve(scene.cMo_init)
    points = asm.fill_points(offsets, np.eye(4))
    assert points.L.shape == (60, 6)
    assert points.rows == scene.points.row_count() == 60


def test_residuals_vanish_at_ground_truth():
    scene = build_scene()
    asm = ResidualAssembler(scene.contours, scene.points, scene.cam, TrackerConfig())
    layout, offsets = asm.count_rows(0)
    assert np.allclose(asm.fill_contours(layout, scene.cMo_true).e, 0.0, atol=1e-10)
    scene.points.begin_solve(scene.cMo_true)
    assert np.allclose(asm.fill_points(offsets, np.eye(4)).e, 0.0, atol=1e-10)
    assert not np.allclose(asm.fill_contours(layout, scene.cMo_init).e, 0.0, atol=1e-6)


def test_attenuation_factors():
    cam = default_camera()
    contours = GeometricFeatureSet()
    contours.appearing_faces = {1}
    border = contours.add(_line("border", [[3.0, 100.0], [40.0, 100.0]], face_ids=(2,)))
    appearing = contours.add(_line("appearing", [[200.0, 200.0], [260.0, 200.0]], face_ids=(1,)))
    stable = contours.add(_line("stable", [[300.0, 300.0], [360.0, 300.0]], face_ids=(0,)))
    asm = ResidualAssembler(contours, PointFeatureSet(), cam, TrackerConfig())

    assert asm.primitive_factor(border) == NEAR_BORDER == 0.1
    assert asm.primitive_factor(appearing) == APPEARING == 0.2
    assert asm.primitive_factor(stable) == RELIABLE == 1.0

    stable.site_lists[0][1].state = SiteState.CONTRAST
    factor = asm.attenuation(asm.layout(0))
    assert factor.tolist() == [0.1, 0.1, 0.2, 0.2, 1.0, SUSPECT]


def test_hidden_and_untracked_primitives_are_skipped():
    scene = build_scene()
    prims = scene.contours.primitives(0)
    prims[0].visible = False
    prims[1].tracked = False
    asm = ResidualAssembler(scene.contours, scene.points, scene.cam, TrackerConfig())
    layout = asm.layout(0)
    assert layout.rows == 12
    assert layout.offsets[0][0] is prims[2]


def test_check_rows():
    check_rows(4, 0)
    check_rows(0, 8)
    with pytest.raises(InsufficientDataError):
        check_rows(3, 0)
    with pytest.raises(InsufficientDataError):
        check_rows(2, 2)


def test_inactive_level_rejected():
    contours = GeometricFeatureSet(scales=[True, False])
    with pytest.raises(ValueError):
        contours.add(_line("l", [[100.0, 100.0]]), level=1)
    with pytest.raises(ValueError):
        contours.primitives(2)
