"""
Sequential (Type I) ANOVA for a fitted mixed model.

Terms are added in design order with V held at the full-model REML
estimate:

    SS(term_k) ∝ WRSS(terms 1..k-1) - WRSS(terms 1..k)

where WRSS is the V⁻¹-weighted residual sum of squares of the nested GLS
fit. With X'V⁻¹X = R'R (R upper triangular, columns in design order), the
hypothesis tested for term k is L β = 0 with L the rows of R belonging to
the term, so that

    L C L' = I,    F = ||(R β̂)_k||² / df_k = ΔWRSS_k / df_k

Sum Sq and Mean Sq are reported on the response scale, as lmerTest does:
Mean Sq = F σ̂²_e and Sum Sq = Mean Sq · df.

The intercept is always fitted first and is not a row of the table.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pysplitplot.mixed._common import AnovaTableRow
from pysplitplot.mixed._gls import GLSResult, nested_wrss
from pysplitplot.mixed._satterthwaite import f_test_df


def sequential_anova(
    gls: GLSResult,
    residual_variance: float,
    intercept_columns: list[int],
    term_columns: list[tuple[str, list[int]]],
    dC: list[NDArray],
    A: NDArray,
    fallback_df: float,
) -> list[AnovaTableRow]:
    """
    Type I table with Satterthwaite denominator df.

    Args:
        gls: GLS solve of the full (rank-reduced) model.
        residual_variance: σ̂²_e, used to put sums of squares on the
            response scale.
        intercept_columns: Reduced-X indices of the intercept (empty if the
            design has none).
        term_columns: (term label, reduced-X indices) per term, in design
            order. A term whose columns were all aliased has no indices.
        dC: Gradients of Cov(β̂) w.r.t. the free variance components.
        A: Covariance of the free variance components.
        fallback_df: Denominator df used when a contrast carries no
            variance-component dependence (n - rank).

    Returns:
        One AnovaTableRow per term.
    """
    C = gls.cov_beta
    columns_so_far = list(intercept_columns)
    wrss_prev = nested_wrss(gls, columns_so_far)

    rows: list[AnovaTableRow] = []
    for term, cols in term_columns:
        df = len(cols)
        if df == 0:
            rows.append(AnovaTableRow(
                term=term, df=0, sum_sq=0.0, mean_sq=0.0,
                f_value=None, den_df=None, p_value=None,
            ))
            continue

        columns_so_far.extend(cols)
        wrss = nested_wrss(gls, columns_so_far)
        delta = max(wrss_prev - wrss, 0.0)
        wrss_prev = wrss

        f_value = delta / df
        L = gls.R[cols, :]
        den_df = f_test_df(L, C, dC, A, fallback_df)
        p_value = float(stats.f.sf(f_value, df, den_df))
        mean_sq = f_value * residual_variance

        rows.append(AnovaTableRow(
            term=term,
            df=df,
            sum_sq=mean_sq * df,
            mean_sq=mean_sq,
            f_value=f_value,
            den_df=den_df,
            p_value=p_value,
        ))

    return rows
