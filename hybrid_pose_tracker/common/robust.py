from typing import List

import numpy as np

TUKEY_C = 4.6851
MAD_TO_SIGMA = 1.4826


def lower_median(values: np.ndarray) -> float:
    v = np.sort(np.asarray(values, dtype=np.float64).reshape(-1))
    if v.size == 0:
        return 0.0
    return float(v[int(np.ceil(v.size / 2.0)) - 1])


def tukey_weights(norm_res: np.ndarray, sigma: float) -> np.ndarray:
    c = TUKEY_C * float(sigma)
    u = np.asarray(norm_res, dtype=np.float64) / c
    u2 = u * u
    w = (1.0 - u2) ** 2
    w[u2 > 1.0] = 0.0
    return w


class TukeyEstimator:
    """Tukey biweight M-estimator with a median-absolute-deviation scale.

    The scale is re-estimated from the residuals handed in at every call and
    floored at ``threshold`` (normalized image units), so that it never drops
    below the measurement noise level.
    """

    def __init__(self, threshold: float) -> None:
        self.threshold = float(threshold)
        self.iteration = 0
        self.sigma = float(threshold)
        self.sigma_history: List[float] = []

    def set_iteration(self, iteration: int) -> None:
        self.iteration = int(iteration)
        if self.iteration == 0:
            self.sigma_history = []

    def weights(self, residuals: np.ndarray) -> np.ndarray:
        r = np.asarray(residuals, dtype=np.float64).reshape(-1)
        if r.size == 0:
            return np.zeros(0, dtype=np.float64)
        med = lower_median(r)
        norm_res = np.abs(r - med)
        sigma = MAD_TO_SIGMA * lower_median(norm_res)
        if sigma < self.threshold:
            sigma = self.threshold
        self.sigma = float(sigma)
        self.sigma_history.append(self.sigma)
        return tukey_weights(norm_res, sigma)
