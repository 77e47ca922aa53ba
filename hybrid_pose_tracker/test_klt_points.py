import cv2
import numpy as np
import pytest

from hybrid_pose_tracker.apps.run_klt_points import build_point_tracker, draw_pose, track_sequence
from hybrid_pose_tracker.common.config import TrackerConfig
from hybrid_pose_tracker.common.geometry import make_transform, pose_error
from hybrid_pose_tracker.features.points import PlanarPointGroup, PointFeatureSet
from hybrid_pose_tracker.sources.klt_points import KltConfig, KltPointSource, group_mask, polygon_mask, to_gray
from hybrid_pose_tracker.sources.source_frames import source_frames
from hybrid_pose_tracker.synthetic import TARGET_HALF, default_camera, ground_truth_pose, textured_sequence


def _texture(seed=0):
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=(480, 640), dtype=np.uint8)
    return cv2.GaussianBlur(img, (5, 5), 1.5)


def _scene():
    cam = default_camera()
    cMo = make_transform(np.eye(3), [0.0, 0.0, 0.5])
    points = PointFeatureSet()
    g = points.add(PlanarPointGroup("plane", np.zeros(3), np.array([0.0, 0.0, 1.0])))
    g.outline = np.array([[-0.1, -0.1, 0.0], [0.1, -0.1, 0.0], [0.1, 0.1, 0.0], [-0.1, 0.1, 0.0]])
    return cam, cMo, points, g


def test_group_mask_covers_projected_outline():
    cam, cMo, _, g = _scene()
    m = group_mask(g, cam, cMo)
    assert m[240, 320] == 255
    assert m[10, 10] == 0
    assert 200 * 200 < np.count_nonzero(m) < 260 * 260


def test_detect_then_track_shift():
    cam, cMo, points, g = _scene()
    frame0 = _texture()
    frame1 = np.roll(frame0, shift=(1, 2), axis=(0, 1))
    source = KltPointSource()

    source.reinit(cv2.cvtColor(frame0, cv2.COLOR_GRAY2BGR), points, cam, cMo)
    assert g.count > 20
    assert g.initial_count == g.count
    before = dict(zip(g.ids.tolist(), cam.meter_to_pixel(g.cur_xy)))
    m = group_mask(g, cam, cMo, source.cfg.erode_px)
    for uv in before.values():
        assert m[int(round(uv[1])), int(round(uv[0]))] == 255

    source.refresh(frame1, points, cam, cMo)
    assert g.count >= 0.8 * len(before)
    after = cam.meter_to_pixel(g.cur_xy)
    shift = np.array([after[i] - before[pid] for i, pid in enumerate(g.ids.tolist())])
    assert np.allclose(np.median(shift, axis=0), [2.0, 1.0], atol=0.1)


def test_refresh_without_history_detects():
    cam, cMo, points, g = _scene()
    source = KltPointSource()
    source.refresh(_texture(1), points, cam, cMo)
    assert g.count > 0
    assert source.prev_gray is not None


def test_missing_frame():
    with pytest.raises(ValueError):
        to_gray(None)


def test_polygon_mask():
    m = polygon_mask(np.array([[10.0, 10.0], [50.0, 10.0], [50.0, 30.0], [10.0, 30.0]]), (64, 48))
    assert m.shape == (48, 64)
    assert m[20, 30] == 255
    assert m[40, 30] == 0
    assert not polygon_mask(np.zeros((2, 2)), (64, 48)).any()


def test_source_frames_reads_sorted_folder(tmp_path):
    for i in (2, 0, 1):
        cv2.imwrite(str(tmp_path / f"frame_{i:03d}.png"), np.full((8, 8, 3), 10 * i, dtype=np.uint8))
    frames = list(source_frames(str(tmp_path)))
    assert [int(f[0, 0, 0]) for f in frames] == [0, 10, 20]


def test_source_frames_missing_inputs(tmp_path):
    with pytest.raises(RuntimeError):
        next(source_frames(str(tmp_path)))
    with pytest.raises(RuntimeError):
        next(source_frames(str(tmp_path / "missing.mp4")))


def test_tracker_follows_rendered_plane():
    cam = default_camera()
    frames, poses = textured_sequence(cam, ground_truth_pose(), frames=4)
    tracker = build_point_tracker(cam, TrackerConfig(), TARGET_HALF, KltConfig(erode_px=8))

    results = []
    for idx, frame, res in track_sequence(tracker, frames, poses[0]):
        if idx == 0:
            assert res is None
            assert tracker.points.point_count() > 40
            continue
        results.append((idx, res))

    assert len(results) == 3
    for idx, res in results:
        assert res.valid
        dt, dr = pose_error(res.cMo, poses[idx])
        assert dt < 2e-3
        assert dr < 0.5
    moved, _ = pose_error(poses[0], poses[-1])
    final, _ = pose_error(tracker.cMo, poses[-1])
    assert final < 0.25 * moved

    out = draw_pose(frames[-1], tracker, results[-1][1])
    assert out.shape == (cam.height, cam.width, 3)
