"""Fused virtual-visual-servoing solve over contour and point residuals.

Each iteration recomputes both residual blocks at the current pose, weights
them with one Tukey estimator per modality, fuses the weights with the
per-site reliability factors and the modality shares, and moves the camera
along the Gauss-Newton (or damped Levenberg-Marquardt) velocity. The pose is
updated on SE(3) through the exponential map, relative to the pose frozen at
the start of the solve.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from hybrid_pose_tracker.assembler import (
    ContourLayout,
    ResidualAssembler,
    ResidualBundle,
    check_rows,
)
from hybrid_pose_tracker.common.config import OptimizationMethod, TrackerConfig
from hybrid_pose_tracker.common.errors import DivergedError, InsufficientDataError
from hybrid_pose_tracker.common.geometry import exp_map, inverse_transform, velocity_twist
from hybrid_pose_tracker.common.robust import TukeyEstimator
from hybrid_pose_tracker.features.points import PointGroup

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    iteration: int
    mu: float
    residue: float
    accepted: bool
    cMo: np.ndarray


@dataclass
class SolveContext:
    cMo: np.ndarray
    c0Mo: np.ndarray
    ctTc0: np.ndarray
    mu: float
    iteration: int = 0
    residue: float = 0.0
    residue_prev: float = -1.0
    retry: bool = False
    cMo_prev: Optional[np.ndarray] = None
    ctTc0_prev: Optional[np.ndarray] = None
    error_prev: Optional[np.ndarray] = None
    w_prev: Optional[np.ndarray] = None
    residues_prev: Tuple[float, float] = (-1.0, 0.0)
    history: List[IterationRecord] = field(default_factory=list)

    @classmethod
    def start(cls, cMo: np.ndarray, mu: float) -> "SolveContext":
        c0Mo = np.array(cMo, dtype=np.float64)
        return cls(cMo=c0Mo.copy(), c0Mo=c0Mo, ctTc0=np.eye(4, dtype=np.float64), mu=float(mu))


@dataclass
class SolveResult:
    cMo: np.ndarray
    iterations: int
    residue: float
    w_contour: np.ndarray
    w_point: np.ndarray
    fused: np.ndarray
    layout: ContourLayout
    point_offsets: List[Tuple[PointGroup, int]]
    shares: Tuple[float, float]
    residual_mean_contour: float = 0.0
    residual_mean_point: float = 0.0
    covariance: Optional[np.ndarray] = None
    history: List[IterationRecord] = field(default_factory=list)


def modality_shares(contour_rows: int, point_rows: int, cfg: TrackerConfig) -> Tuple[float, float]:
    if contour_rows < cfg.min_rows:
        return 0.0, 1.0
    if point_rows < cfg.min_rows:
        return 1.0, 0.0
    return float(cfg.contour_share), float(cfg.point_share)


def fuse_weights(
    w_contour: np.ndarray, factor: np.ndarray, contour_share: float, w_point: np.ndarray, point_share: float
) -> np.ndarray:
    return np.concatenate([w_contour * factor * contour_share, w_point * point_share])


def weighted_residue(weights: np.ndarray, error: np.ndarray) -> float:
    den = float(np.sum(weights))
    if den <= 0.0:
        raise InsufficientDataError("every residual row was rejected by the robust estimator")
    return float(np.sqrt(np.sum(weights * error * error) / den))


def compose_update(ctx: SolveContext, v: np.ndarray) -> None:
    ctx.ctTc0 = inverse_transform(exp_map(v)) @ ctx.ctTc0
    ctx.cMo = ctx.ctTc0 @ ctx.c0Mo


def covariance_vvs(error: np.ndarray, L: np.ndarray, weights: np.ndarray) -> np.ndarray:
    W = np.diag(weights)
    Js = -L
    WJ = W @ Js
    Wb = W @ error
    dp = np.linalg.pinv(WJ) @ Wb
    sigma2 = (float(Wb @ Wb) - float((WJ @ dp) @ Wb)) / float(L.shape[0])
    JtWJ = Js.T @ W @ Js
    return np.linalg.pinv(JtWJ, JtWJ.shape[1] * np.finfo(np.float64).eps) * sigma2


class PoseSolver:
    def __init__(self, assembler: ResidualAssembler, cfg: TrackerConfig) -> None:
        self.assembler = assembler
        self.cfg = cfg

    def _project_jacobian(self, L: np.ndarray, cMo: np.ndarray) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        if self.cfg.minimal_parameterization:
            return L, None
        cVo = velocity_twist(cMo)
        return L @ cVo @ self.cfg.oJo, cVo

    def velocity(self, L: np.ndarray, r: np.ndarray, cMo: np.ndarray, mu: Optional[float]) -> np.ndarray:
        J, cVo = self._project_jacobian(L, cMo)
        JtJ = J.T @ J
        Jtr = J.T @ r
        if mu is not None:
            JtJ = JtJ + mu * np.eye(JtJ.shape[0])
        rcond = JtJ.shape[0] * np.finfo(np.float64).eps
        v = -self.cfg.lambda_gain * (np.linalg.pinv(JtJ, rcond) @ Jtr)
        if cVo is not None:
            v = cVo @ v
        return v

    def solve(
        self,
        cMo: np.ndarray,
        level: int = 0,
        use_contours: bool = True,
        use_points: bool = True,
        max_iter: Optional[int] = None,
    ) -> SolveResult:
        cfg = self.cfg
        asm = self.assembler
        max_iter = int(cfg.max_iter if max_iter is None else max_iter)
        lm = cfg.optimization == OptimizationMethod.LEVENBERG_MARQUARDT

        layout = asm.layout(level) if use_contours else ContourLayout(level=level)
        point_offsets = asm.point_layout() if use_points else []
        n_c = layout.rows
        n_p = int(sum(2 * g.count for g, _ in point_offsets))
        check_rows(n_c, n_p, cfg.min_rows)

        contour_share, point_share = modality_shares(n_c, n_p, cfg)
        if contour_share == 0.0:
            layout = ContourLayout(level=level)
        if point_share == 0.0:
            point_offsets = []
        use_c = bool(layout.offsets)
        use_p = bool(point_offsets)
        n_c = layout.rows
        n_p = int(sum(2 * g.count for g, _ in point_offsets))

        ctx = SolveContext.start(cMo, cfg.mu_init)
        if use_p:
            asm.points.begin_solve(ctx.c0Mo)
        factor = asm.attenuation(layout) if use_c else np.zeros(0)

        robust_c = TukeyEstimator(cfg.threshold_contour / asm.cam.px)
        robust_p = TukeyEstimator(cfg.threshold_point / asm.cam.px)
        w_c = np.ones(n_c, dtype=np.float64)
        w_p = np.ones(n_p, dtype=np.float64)
        fused = np.ones(n_c + n_p, dtype=np.float64)
        mean_c = 0.0
        mean_p = 0.0
        last_error = np.zeros(n_c + n_p)
        last_L = np.zeros((n_c + n_p, 6))
        last_w = fused.copy()
        last_pose = ctx.cMo.copy()

        while abs(ctx.residue - ctx.residue_prev) >= cfg.convergence_tol and ctx.iteration < max_iter:
            bundle_c = asm.fill_contours(layout, ctx.cMo) if use_c else ResidualBundle.empty(0)
            bundle_p = asm.fill_points(point_offsets, ctx.ctTc0) if use_p else ResidualBundle.empty(0)
            error = np.concatenate([bundle_c.e, bundle_p.e])

            if lm and ctx.iteration > 0 and ctx.error_prev is not None:
                if float(np.mean(error * error)) > float(np.mean(ctx.error_prev * ctx.error_prev)):
                    ctx.mu *= 10.0
                    if ctx.mu > cfg.mu_max:
                        raise DivergedError(f"Optimization diverged (mu={ctx.mu:g})")
                    logger.warning("iter %d step rejected, mu -> %g", ctx.iteration, ctx.mu)
                    ctx.cMo = ctx.cMo_prev.copy()
                    ctx.ctTc0 = ctx.ctTc0_prev.copy()
                    fused = ctx.w_prev.copy()
                    ctx.residue_prev, ctx.residue = ctx.residues_prev
                    ctx.retry = True
                    ctx.history.append(IterationRecord(ctx.iteration, ctx.mu, ctx.residue, False, ctx.cMo.copy()))
                    ctx.iteration += 1
                    continue

            if use_c:
                mean_c = float(np.mean(np.abs(bundle_c.e)))
                robust_c.set_iteration(ctx.iteration)
                w_c = robust_c.weights(bundle_c.e)
            if use_p:
                mean_p = float(np.mean(np.abs(bundle_p.e)))
                robust_p.set_iteration(ctx.iteration)
                w_p = robust_p.weights(bundle_p.e)
            fused = fuse_weights(w_c, factor, contour_share, w_p, point_share)

            ctx.residues_prev = (ctx.residue_prev, ctx.residue)
            ctx.residue_prev = ctx.residue
            ctx.residue = weighted_residue(fused, error)

            L = np.vstack([bundle_c.L, bundle_p.L])
            last_error = error
            last_L = self._project_jacobian(L, ctx.cMo)[0] if cfg.compute_covariance else L
            last_w = fused.copy()
            last_pose = ctx.cMo.copy()

            Lw = L * fused[:, None]
            rw = error * fused
            if lm:
                v = self.velocity(Lw, rw, ctx.cMo, ctx.mu)
                if ctx.iteration != 0 and not ctx.retry:
                    ctx.mu /= 10.0
                ctx.error_prev = error.copy()
                ctx.w_prev = fused.copy()
            else:
                v = self.velocity(Lw, rw, ctx.cMo, None)
            ctx.retry = False

            ctx.cMo_prev = ctx.cMo.copy()
            ctx.ctTc0_prev = ctx.ctTc0.copy()
            compose_update(ctx, v)
            ctx.history.append(IterationRecord(ctx.iteration, ctx.mu, ctx.residue, True, ctx.cMo.copy()))
            logger.debug("iter %d residue %.3e mu %g", ctx.iteration, ctx.residue, ctx.mu)
            ctx.iteration += 1

        covariance = None
        if cfg.compute_covariance:
            covariance = covariance_vvs(last_error, last_L, last_w)
            logger.debug("covariance computed at pose\n%s", last_pose)

        logger.info(
            "solve done: %d iterations, residue %.3e, rows %d contour / %d point",
            ctx.iteration,
            ctx.residue,
            n_c,
            n_p,
        )
        return SolveResult(
            cMo=ctx.cMo,
            iterations=ctx.iteration,
            residue=ctx.residue,
            w_contour=w_c,
            w_point=w_p,
            fused=fused,
            layout=layout,
            point_offsets=point_offsets,
            shares=(contour_share, point_share),
            residual_mean_contour=mean_c,
            residual_mean_point=mean_p,
            covariance=covariance,
            history=ctx.history,
        )
