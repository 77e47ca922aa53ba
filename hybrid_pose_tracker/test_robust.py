import numpy as np

from hybrid_pose_tracker.common.robust import TUKEY_C, TukeyEstimator, lower_median, tukey_weights


def test_lower_median_even_count_takes_lower_value():
    assert lower_median(np.array([4.0, 1.0, 3.0, 2.0])) == 2.0
    assert lower_median(np.array([5.0, 1.0, 3.0])) == 3.0
    assert lower_median(np.zeros(0)) == 0.0


def test_tukey_weights_bounds():
    w = tukey_weights(np.array([0.0, 0.5 * TUKEY_C, TUKEY_C, 2.0 * TUKEY_C]), 1.0)
    assert w[0] == 1.0
    assert np.isclose(w[1], 0.75 ** 2)
    assert w[2] == 0.0
    assert w[3] == 0.0
    assert np.all((w >= 0.0) & (w <= 1.0))


def test_estimator_rejects_gross_outlier():
    rng = np.random.default_rng(3)
    r = rng.normal(0.0, 0.01, size=50)
    r[7] = 1.0
    est = TukeyEstimator(threshold=1e-3)
    w = est.weights(r)
    assert w.shape == r.shape
    assert w[7] == 0.0
    assert np.median(np.delete(w, 7)) > 0.9


def test_estimator_scale_is_floored_by_threshold():
    est = TukeyEstimator(threshold=0.5)
    w = est.weights(np.full(10, 1e-6))
    assert est.sigma == 0.5
    assert np.allclose(w, 1.0)


def test_estimator_history_restarts_at_iteration_zero():
    est = TukeyEstimator(threshold=0.01)
    est.set_iteration(0)
    est.weights(np.ones(5))
    est.set_iteration(1)
    est.weights(np.ones(5))
    assert len(est.sigma_history) == 2
    est.set_iteration(0)
    assert est.sigma_history == []


def test_estimator_empty_input():
    assert TukeyEstimator(0.1).weights(np.zeros(0)).shape == (0,)
