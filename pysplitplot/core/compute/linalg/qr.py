"""
Order-preserving rank reduction of a design matrix.

Column-pivoted QR picks the numerically largest column first, which makes
the set of dropped columns depend on scaling. Here columns are visited in
their given order and a column is kept only if it adds a direction not
already spanned by the columns kept before it. Among duplicated columns
the later one is therefore always the one dropped.
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class ColumnSelection:
    """
    Result of order-preserving rank reduction.

    Attributes:
        kept: Indices of retained columns, ascending
        dropped: Indices of aliased columns, ascending
        rank: Numerical rank (len(kept))
        residual_norms: Relative norm of each column's component orthogonal
            to the kept columns before it (1.0 = orthogonal, 0.0 = aliased)
    """
    kept: tuple[int, ...]
    dropped: tuple[int, ...]
    rank: int
    residual_norms: NDArray[np.floating[Any]]


def select_independent_columns(
    X: NDArray[np.floating[Any]],
    tol: float = 1e-7,
) -> ColumnSelection:
    """
    Greedy, order-preserving selection of linearly independent columns.

    Columns are scaled to unit length. For each column in turn, the
    unpivoted QR (LAPACK via NumPy) of the kept columns followed by the
    candidate gives |R_jj|, the relative norm of the candidate's component
    orthogonal to the kept columns. A column whose value falls below
    ``tol`` is a linear combination of earlier kept columns and is dropped.
    Only independent columns precede the candidate, so no reflector is
    built from a numerically zero remainder.

    Args:
        X: Design matrix (n x p)
        tol: Relative residual norm below which a column counts as aliased

    Returns:
        ColumnSelection describing kept and dropped columns
    """
    X = np.asarray(X, dtype=np.float64)
    n, p = X.shape
    norms = np.linalg.norm(X, axis=0)
    kept: list[int] = []
    dropped: list[int] = []
    residual_norms = np.zeros(p, dtype=np.float64)

    for j in range(p):
        if norms[j] == 0.0 or len(kept) == n:
            dropped.append(j)
            continue

        cols = kept + [j]
        R = np.linalg.qr(X[:, cols] / norms[cols], mode='r')
        residual = float(abs(R[-1, -1]))
        residual_norms[j] = residual
        if residual < tol:
            dropped.append(j)
        else:
            kept.append(j)

    return ColumnSelection(
        kept=tuple(kept),
        dropped=tuple(dropped),
        rank=len(kept),
        residual_norms=residual_norms,
    )
