"""
Restricted maximum likelihood for two variance components.

The marginal model is y ~ N(Xβ, V) with V = σ²_g Z Z' + σ²_e I. With
φ = (σ²_g, σ²_e) and the REML projection

    P = V⁻¹ - V⁻¹X (X'V⁻¹X)⁻¹ X'V⁻¹

the REML log-likelihood is

    ℓ(φ) = -½ [ (n - p) log 2π + log|V| + log|X'V⁻¹X| + y'Py ]

and, because V is linear in φ with ∂V/∂σ²_g = ZZ' and ∂V/∂σ²_e = I,

    score_i            = -½ tr(P V_i) + ½ y'P V_i P y
    expected info_ij   =  ½ tr(P V_i P V_j)
    observed info_ij   = -½ tr(P V_i P V_j) + y'P V_i P V_j P y

Estimation is Fisher scoring from method-of-moments starting values, with
step halving on the log-likelihood and projection onto σ²_g >= 0,
σ²_e > 0.

References:
    Harville, D. A. (1977). Maximum likelihood approaches to variance
    component estimation and to related problems. JASA 72(358), 320-338.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from pysplitplot.core.exceptions import ConvergenceError
from pysplitplot.mixed._gls import GLSResult, solve_gls
from pysplitplot.mixed._random_effects import (
    GroupStructure, marginal_inverse, marginal_log_det,
)

# Index of each component in φ
GROUP, RESIDUAL = 0, 1

_MAX_HALVINGS = 30


@dataclass(frozen=True)
class REMLState:
    """Everything derived from one evaluation at φ = (σ²_g, σ²_e).

    Attributes:
        group_variance: σ²_g.
        residual_variance: σ²_e.
        gls: GLS solve at this φ.
        P: REML projection matrix (n, n).
        PZ: P Z (n, m).
        log_likelihood: REML log-likelihood.
        score: Gradient of ℓ w.r.t. φ (2,).
        expected_info: Expected information (2, 2).
        observed_info: Negative Hessian of ℓ (2, 2).
    """
    group_variance: float
    residual_variance: float
    gls: GLSResult
    P: NDArray
    PZ: NDArray
    log_likelihood: float
    score: NDArray
    expected_info: NDArray
    observed_info: NDArray


@dataclass(frozen=True)
class VarianceEstimate:
    """Converged REML variance components.

    Attributes:
        group_variance: σ̂²_g.
        residual_variance: σ̂²_e.
        free: Which components were estimated (False = held fixed).
        n_iter: Scoring iterations performed.
        final_change: Relative change at the last iteration.
        start: Method-of-moments starting values.
    """
    group_variance: float
    residual_variance: float
    free: tuple[bool, bool]
    n_iter: int
    final_change: float
    start: tuple[float, float]


def reml_log_likelihood(
    X: NDArray,
    y: NDArray,
    groups: GroupStructure,
    group_variance: float,
    residual_variance: float,
) -> float:
    """REML log-likelihood at φ (no derivatives)."""
    n, p = X.shape
    Vinv = marginal_inverse(groups, group_variance, residual_variance)
    gls = solve_gls(X, y, Vinv)
    return _log_likelihood(n, p, groups, group_variance, residual_variance, gls)


def _log_likelihood(n, p, groups, group_variance, residual_variance, gls) -> float:
    log_det_V = marginal_log_det(groups, group_variance, residual_variance)
    return -0.5 * (
        (n - p) * np.log(2.0 * np.pi)
        + log_det_V
        + gls.log_det_XtVinvX
        + gls.wrss
    )


def reml_state(
    X: NDArray,
    y: NDArray,
    groups: GroupStructure,
    group_variance: float,
    residual_variance: float,
) -> REMLState:
    """Evaluate ℓ, its score and both information matrices at φ."""
    n, p = X.shape
    Z = groups.Z

    Vinv = marginal_inverse(groups, group_variance, residual_variance)
    gls = solve_gls(X, y, Vinv)
    P = Vinv - gls.Vinv_X @ gls.cov_beta @ gls.Vinv_X.T
    P = 0.5 * (P + P.T)
    PZ = P @ Z
    ZtPZ = Z.T @ PZ

    Py = gls.Vinv_residual
    ZtPy = Z.T @ Py

    score = np.array([
        -0.5 * float(np.sum(Z * PZ)) + 0.5 * float(ZtPy @ ZtPy),
        -0.5 * float(np.trace(P)) + 0.5 * float(Py @ Py),
    ])

    expected = 0.5 * np.array([
        [float(np.sum(ZtPZ * ZtPZ)), float(np.sum(PZ * PZ))],
        [float(np.sum(PZ * PZ)), float(np.sum(P * P))],
    ])

    # a_i = V_i P y
    a = np.column_stack([Z @ ZtPy, Py])
    quadratic = a.T @ (P @ a)
    observed = quadratic - expected
    observed = 0.5 * (observed + observed.T)

    return REMLState(
        group_variance=group_variance,
        residual_variance=residual_variance,
        gls=gls,
        P=P,
        PZ=PZ,
        log_likelihood=_log_likelihood(n, p, groups, group_variance, residual_variance, gls),
        score=score,
        expected_info=expected,
        observed_info=observed,
    )


def moment_estimates(
    X: NDArray,
    y: NDArray,
    groups: GroupStructure,
) -> tuple[float, float]:
    """One-way ANOVA (method-of-moments) estimates on OLS residuals.

    σ²_e is the within-group mean square; σ²_g is (MSB - MSW) / n₀ with
    n₀ = (n - Σn_i²/n) / (m - 1), truncated at zero.
    """
    n = len(y)
    m = groups.n_groups
    if X.shape[1]:
        beta, *_ = np.linalg.lstsq(X, y, rcond=None)
        r = y - X @ beta
    else:
        r = y.copy()

    sizes = groups.sizes
    means = np.bincount(groups.group_ids, weights=r, minlength=m) / sizes
    ssw = float(np.sum((r - means[groups.group_ids]) ** 2))
    ssb = float(np.sum(sizes * (means - r.mean()) ** 2))

    floor = _residual_floor(y)
    residual = ssw / (n - m) if n > m else float(np.var(r))
    residual = max(residual, floor)

    n0 = (n - float(np.sum(sizes ** 2)) / n) / (m - 1)
    group = max((ssb / (m - 1) - residual) / n0, 0.0) if n0 > 0 else 0.0
    return group, residual


def _residual_floor(y: NDArray) -> float:
    return 1e-10 * max(float(np.var(y)), np.finfo(np.float64).tiny)


def _relative_change(old: NDArray, new: NDArray) -> float:
    scale = 1e-6 * max(float(np.sum(np.abs(old))), np.finfo(np.float64).tiny)
    return float(np.max(np.abs(new - old) / np.maximum(np.abs(old), scale)))


def _scoring_step(state: REMLState, active: NDArray) -> NDArray:
    """Fisher scoring direction over the active components (zero elsewhere)."""
    info = state.expected_info[np.ix_(active, active)]
    step = np.zeros(2)
    try:
        step[active] = np.linalg.solve(info, state.score[active])
    except np.linalg.LinAlgError:
        step[active] = np.linalg.lstsq(info, state.score[active], rcond=None)[0]
    return step


def estimate_variance_components(
    X: NDArray,
    y: NDArray,
    groups: GroupStructure,
    *,
    tol: float = 1e-8,
    max_iter: int = 200,
    group_variance: float | None = None,
) -> VarianceEstimate:
    """Fisher scoring for the REML estimates of (σ²_g, σ²_e).

    Args:
        X: Full-column-rank fixed effects design (n, p).
        y: Response (n,).
        groups: Grouping structure.
        tol: Converged when the relative change of every estimated
            component falls below tol.
        max_iter: Iteration cap; 0 means no iteration is attempted.
        group_variance: If given, σ²_g is held at this value and only σ²_e
            is estimated.

    Returns:
        VarianceEstimate.

    Raises:
        ConvergenceError: If tol is not met within max_iter iterations
            (reason 'max_iterations'), or no step halving improves the
            likelihood away from a stationary point (reason 'line_search').
    """
    free = np.array([group_variance is None, True])
    start_group, start_residual = moment_estimates(X, y, groups)
    if group_variance is not None:
        start_group = float(group_variance)
    phi = np.array([start_group, start_residual])
    floor = _residual_floor(y)

    def project(candidate: NDArray) -> NDArray:
        out = candidate.copy()
        out[~free] = phi[~free]
        out[GROUP] = max(out[GROUP], 0.0)
        out[RESIDUAL] = max(out[RESIDUAL], floor)
        return out

    log_lik = reml_log_likelihood(X, y, groups, *phi)
    change = np.inf

    def converged(iteration: int, final_change: float) -> VarianceEstimate:
        return VarianceEstimate(
            group_variance=float(phi[GROUP]),
            residual_variance=float(phi[RESIDUAL]),
            free=(bool(free[GROUP]), bool(free[RESIDUAL])),
            n_iter=iteration,
            final_change=final_change,
            start=(start_group, start_residual),
        )

    def failure(message: str, iterations: int, final_change: float, reason: str):
        return ConvergenceError(
            f"{message} (last relative change {final_change:.3g}, "
            f"tolerance {tol:.3g}); last estimates: group variance "
            f"{phi[GROUP]:.6g}, residual variance {phi[RESIDUAL]:.6g}",
            iterations=iterations,
            final_change=float(final_change),
            reason=reason,
            threshold=tol,
            group_variance=float(phi[GROUP]),
            residual_variance=float(phi[RESIDUAL]),
        )

    for iteration in range(1, max_iter + 1):
        state = reml_state(X, y, groups, *phi)
        step = _scoring_step(state, free)
        # σ²_g pinned at zero and pushed outward: rescore without it
        if free[GROUP] and phi[GROUP] == 0.0 and step[GROUP] < 0.0:
            step = _scoring_step(state, np.array([False, True]))

        t = 1.0
        for _ in range(_MAX_HALVINGS):
            trial = project(phi + t * step)
            trial_ll = reml_log_likelihood(X, y, groups, *trial)
            if np.isfinite(trial_ll) and trial_ll >= log_lik - 1e-12 * abs(log_lik):
                break
            t *= 0.5
        else:
            # No halving improved ℓ: stationary up to rounding only if the
            # full scoring step is itself negligible
            full_change = _relative_change(phi, project(phi + step))
            if full_change < np.sqrt(tol):
                return converged(iteration, full_change)
            raise failure(
                f"REML line search failed at iteration {iteration}",
                iteration, full_change, 'line_search',
            )

        change = _relative_change(phi, trial)
        phi, log_lik = trial, trial_ll

        if change < tol:
            return converged(iteration, change)

    raise failure(
        f"REML did not converge after {max_iter} iterations",
        max_iter, change, 'max_iterations',
    )


def variance_parameter_covariance(state: REMLState, free: tuple[bool, bool]) -> NDArray:
    """Asymptotic covariance of the estimated components.

    Inverse observed information when it is positive definite (the usual
    case at an interior optimum), otherwise inverse expected information.
    Returned over the free components only.
    """
    idx = np.flatnonzero(np.asarray(free))
    observed = state.observed_info[np.ix_(idx, idx)]
    if np.all(np.isfinite(observed)) and np.all(np.linalg.eigvalsh(observed) > 0):
        return np.linalg.inv(observed)
    expected = state.expected_info[np.ix_(idx, idx)]
    try:
        return np.linalg.inv(expected)
    except np.linalg.LinAlgError:
        return np.linalg.pinv(expected)
