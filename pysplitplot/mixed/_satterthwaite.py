"""
Satterthwaite degrees of freedom for fixed-effect contrasts.

For a single contrast l (a row vector), the approximate denominator df is

    ν = 2 [l C l']² / (g' A g),    g_i = l (∂C/∂φ_i) l'

where C(φ) = (X'V(φ)⁻¹X)⁻¹ is the covariance of β̂, φ are the estimated
variance components and A = Var(φ̂) is the inverse REML information.
Because V is linear in φ, the derivative is exact:

    ∂C/∂φ_i = C X'V⁻¹ V_i V⁻¹X C

For a multi-row contrast L (an F test with q numerator df), L C L' is
diagonalised, each eigen-direction gets its own ν_m, and the pieces are
combined as

    E = Σ ν_m / (ν_m - 2),    ν = 2E / (E - q)

(any ν_m <= 2 gives ν = 2).

References:
    Kuznetsova, A., Brockhoff, P. B., & Christensen, R. H. B. (2017).
    lmerTest Package: Tests in Linear Mixed Effects Models.
    Journal of Statistical Software, 82(13), 1-26.
    Fai, A. H.-T., & Cornelius, P. L. (1996). Approximate F-tests of
    multiple degree of freedom hypotheses in generalized least squares
    analyses of unbalanced split-plot experiments. J. Stat. Comput.
    Simul. 54(4), 363-378.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from pysplitplot.mixed._random_effects import GroupStructure
from pysplitplot.mixed._reml import GROUP, RESIDUAL, REMLState


def covariance_gradients(
    state: REMLState,
    groups: GroupStructure,
    free: tuple[bool, bool],
) -> list[NDArray]:
    """∂C/∂φ_i for every free component, each (p, p)."""
    W = state.gls.Vinv_X
    C = state.gls.cov_beta
    grads = []
    if free[GROUP]:
        ZtW = groups.Z.T @ W
        grads.append(C @ (ZtW.T @ ZtW) @ C)
    if free[RESIDUAL]:
        grads.append(C @ (W.T @ W) @ C)
    return grads


def contrast_df(
    l: NDArray,
    C: NDArray,
    dC: list[NDArray],
    A: NDArray,
    fallback: float,
) -> float:
    """Satterthwaite df for one contrast row l.

    Falls back to ``fallback`` (the residual df) when the variance of the
    contrast does not depend on the variance components.
    """
    var = float(l @ C @ l)
    g = np.array([float(l @ d @ l) for d in dC])
    denom = float(g @ A @ g) if len(g) else 0.0
    if not (np.isfinite(denom) and denom > 0.0 and var > 0.0):
        return float(fallback)
    return max(2.0 * var ** 2 / denom, 1.0)


def combine_df(nu: NDArray, tol: float = 1e-8) -> float:
    """Denominator df of an F statistic from the df of its eigen-directions."""
    nu = np.asarray(nu, dtype=np.float64)
    if len(nu) == 1:
        return float(nu[0])
    if np.all(np.abs(np.diff(nu)) < tol * np.maximum(1.0, np.abs(nu[1:]))):
        return float(np.mean(nu))
    if np.any(nu <= 2.0):
        return 2.0
    E = float(np.sum(nu / (nu - 2.0)))
    q = len(nu)
    return 2.0 * E / (E - q)


def f_test_df(
    L: NDArray,
    C: NDArray,
    dC: list[NDArray],
    A: NDArray,
    fallback: float,
) -> float:
    """Satterthwaite denominator df for the F test of L β = 0.

    Args:
        L: Contrast matrix (q, p) with linearly independent rows.
        C: Covariance of β̂ (p, p).
        dC: Gradients of C w.r.t. the free variance components.
        A: Covariance of the free variance components.
        fallback: df used when a direction has no variance-component
            dependence (the residual df).
    """
    L = np.atleast_2d(L)
    M = L @ C @ L.T
    _, U = np.linalg.eigh(0.5 * (M + M.T))
    directions = U.T @ L
    nu = np.array([
        contrast_df(direction, C, dC, A, fallback) for direction in directions
    ])
    return combine_df(nu)


def coefficient_df(
    C: NDArray,
    dC: list[NDArray],
    A: NDArray,
    fallback: float,
) -> NDArray:
    """Satterthwaite df for each coefficient's t test (unit contrasts)."""
    p = C.shape[0]
    eye = np.eye(p)
    return np.array([contrast_df(eye[k], C, dC, A, fallback) for k in range(p)])
