import cv2
import numpy as np
import pytest

from hybrid_pose_tracker.common.config import (
    OptimizationMethod,
    TrackerConfig,
    load_camera_parameters,
    load_tracker_config,
)


def test_defaults():
    cfg = TrackerConfig()
    assert cfg.threshold_contour == 2.0
    assert cfg.threshold_point == 2.0
    assert cfg.lambda_gain == 0.8
    assert cfg.max_iter == 200
    assert cfg.max_iter_point_only == 30
    assert (cfg.contour_share, cfg.point_share) == (0.35, 0.65)
    assert cfg.optimization == OptimizationMethod.GAUSS_NEWTON
    assert cfg.minimal_parameterization


def test_partial_dof_is_not_minimal():
    cfg = TrackerConfig(free_dof=(1, 1, 1, 0, 0, 1))
    assert not cfg.minimal_parameterization
    assert np.array_equal(np.diag(cfg.oJo), [1, 1, 1, 0, 0, 1])


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lambda_gain": 0.0},
        {"threshold_point": -1.0},
        {"max_iter": 0},
        {"contour_share": 1.5},
        {"free_dof": (1, 1, 1)},
        {"mu_init": 2.0},
    ],
)
def test_validate_rejects(kwargs):
    with pytest.raises(ValueError):
        TrackerConfig(**kwargs).validate()


def test_load_tracker_config(tmp_path):
    path = str(tmp_path / "tracker.yaml")
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_WRITE)
    fs.write("lambda_gain", 0.5)
    fs.write("max_iter", 40)
    fs.write("optimization", "levenberg_marquardt")
    fs.write("compute_covariance", 1)
    fs.write("free_dof", np.array([1, 1, 1, 1, 1, 0], dtype=np.int32).reshape(-1, 1))
    fs.release()

    cfg = load_tracker_config(path)
    assert cfg.lambda_gain == 0.5
    assert cfg.max_iter == 40
    assert isinstance(cfg.max_iter, int)
    assert cfg.optimization == OptimizationMethod.LEVENBERG_MARQUARDT
    assert cfg.compute_covariance is True
    assert cfg.threshold_contour == 2.0


def test_load_tracker_config_missing_file(tmp_path):
    with pytest.raises(RuntimeError):
        load_tracker_config(str(tmp_path / "nope.yaml"))


def test_load_camera_parameters(tmp_path):
    path = str(tmp_path / "cam.yaml")
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_WRITE)
    for key, value in (("px", 600.0), ("py", 610.0), ("u0", 320.0), ("v0", 240.0), ("width", 640), ("height", 480)):
        fs.write(key, value)
    fs.release()

    cam = load_camera_parameters(path)
    assert cam.py == 610.0
    assert cam.size == (640, 480)
    uv = np.array([[320.0, 240.0], [920.0, 850.0]])
    assert np.allclose(cam.pixel_to_meter(uv), [[0.0, 0.0], [1.0, 1.0]])
    assert np.allclose(cam.meter_to_pixel(cam.pixel_to_meter(uv)), uv)
