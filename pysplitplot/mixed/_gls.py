"""
Generalized least squares at fixed variance components.

For a given V⁻¹, solves

    β̂ = (X'V⁻¹X)⁻¹ X'V⁻¹y

through the Cholesky factor R of X'V⁻¹X = R'R. The cross-products are kept
so that nested sub-models (the sequential ANOVA) can be fitted from the
same quantities without touching the n x n matrix again.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from pysplitplot.core.exceptions import NumericalError


@dataclass(frozen=True)
class GLSResult:
    """Result from a GLS solve.

    Attributes:
        beta: Fixed effects estimates (p,).
        cov_beta: (X'V⁻¹X)⁻¹, the covariance of β̂ (p, p).
        R: Upper Cholesky factor of X'V⁻¹X (p, p).
        Vinv_X: V⁻¹X (n, p).
        Vinv_residual: V⁻¹(y - Xβ̂) (n,), equal to P y.
        XtVinvX: X'V⁻¹X (p, p).
        XtVinvy: X'V⁻¹y (p,).
        ytVinvy: y'V⁻¹y.
        wrss: Weighted residual sum of squares (y - Xβ̂)'V⁻¹(y - Xβ̂).
        log_det_XtVinvX: log|X'V⁻¹X|.
        marginal_fitted: Xβ̂ (n,).
    """
    beta: NDArray
    cov_beta: NDArray
    R: NDArray
    Vinv_X: NDArray
    Vinv_residual: NDArray
    XtVinvX: NDArray
    XtVinvy: NDArray
    ytVinvy: float
    wrss: float
    log_det_XtVinvX: float
    marginal_fitted: NDArray


def solve_gls(X: NDArray, y: NDArray, Vinv: NDArray) -> GLSResult:
    """Solve the GLS problem for a full-column-rank X.

    Args:
        X: Fixed effects design matrix (n, p), full column rank.
        y: Response vector (n,).
        Vinv: Inverse marginal covariance (n, n).

    Returns:
        GLSResult with all estimates.

    Raises:
        NumericalError: If X'V⁻¹X is not positive definite.
    """
    p = X.shape[1]
    Vinv_X = Vinv @ X
    Vinv_y = Vinv @ y
    XtVinvX = X.T @ Vinv_X
    XtVinvX = 0.5 * (XtVinvX + XtVinvX.T)
    XtVinvy = X.T @ Vinv_y
    ytVinvy = float(y @ Vinv_y)

    if p == 0:
        R = np.zeros((0, 0))
        beta = np.zeros(0)
        cov_beta = np.zeros((0, 0))
        log_det = 0.0
    else:
        try:
            R = sla.cholesky(XtVinvX, lower=False)
        except np.linalg.LinAlgError as e:
            raise NumericalError(
                f"X'V⁻¹X is not positive definite ({p} columns); "
                f"the design matrix is numerically rank-deficient: {e}"
            ) from e
        beta = sla.cho_solve((R, False), XtVinvy)
        cov_beta = sla.cho_solve((R, False), np.eye(p))
        cov_beta = 0.5 * (cov_beta + cov_beta.T)
        log_det = 2.0 * float(np.sum(np.log(np.abs(np.diag(R)))))

    marginal_fitted = X @ beta
    Vinv_residual = Vinv_y - Vinv_X @ beta
    wrss = float((y - marginal_fitted) @ Vinv_residual)

    return GLSResult(
        beta=beta,
        cov_beta=cov_beta,
        R=R,
        Vinv_X=Vinv_X,
        Vinv_residual=Vinv_residual,
        XtVinvX=XtVinvX,
        XtVinvy=XtVinvy,
        ytVinvy=ytVinvy,
        wrss=wrss,
        log_det_XtVinvX=log_det,
        marginal_fitted=marginal_fitted,
    )


def nested_wrss(gls: GLSResult, columns: list[int]) -> float:
    """Weighted RSS of the sub-model using only ``columns`` of X, with V
    held fixed.

    WRSS = y'V⁻¹y - b_c' (X_c'V⁻¹X_c)⁻¹ b_c, with b = X'V⁻¹y.
    """
    if not columns:
        return gls.ytVinvy
    idx = np.asarray(columns)
    A = gls.XtVinvX[np.ix_(idx, idx)]
    b = gls.XtVinvy[idx]
    c, low = sla.cho_factor(A, lower=False)
    return float(gls.ytVinvy - b @ sla.cho_solve((c, low), b))
