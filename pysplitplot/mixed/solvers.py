"""
Solver entry point for split-plot mixed models.

Public API:
    fit(): fit y = Xβ + Zu + e with one random intercept per whole plot,
        by REML, with Satterthwaite t tests and a sequential ANOVA
"""

from __future__ import annotations

import warnings
from typing import Sequence

import numpy as np
from scipy import stats

from pysplitplot.core.compute.linalg import select_independent_columns
from pysplitplot.core.compute.timing import Timer
from pysplitplot.core.exceptions import (
    InsufficientDataError,
    RankDeficiencyError,
    RankDeficiencyWarning,
    ValidationError,
)
from pysplitplot.core.result import Result
from pysplitplot.core.validation import (
    check_choice,
    check_non_negative_int,
    check_positive,
)
from pysplitplot.mixed._anova import sequential_anova
from pysplitplot.mixed._common import MixedFitParams, VarCompSummary
from pysplitplot.mixed._contrasts import CODINGS, build_model_matrix
from pysplitplot.mixed._random_effects import build_group_structure, group_effects
from pysplitplot.mixed._reml import (
    GROUP,
    estimate_variance_components,
    reml_state,
    variance_parameter_covariance,
)
from pysplitplot.mixed._satterthwaite import coefficient_df, covariance_gradients
from pysplitplot.mixed.dataset import Dataset
from pysplitplot.mixed.design import DesignSpecification
from pysplitplot.mixed.solution import FittedModel


def fit(
    dataset: Dataset,
    design: DesignSpecification | str,
    grouping_key: str | Sequence[str],
    *,
    coding: str = 'sum',
    tol: float = 1e-8,
    max_iter: int = 200,
    rank_tol: float = 1e-7,
    max_rank_deficiency: int | None = None,
    group_variance: float | None = None,
) -> FittedModel:
    """Fit a split-plot linear mixed model.

    The model is y = Xβ + Zu + e with u ~ N(0, σ²_g I) one intercept per
    whole-plot unit and e ~ N(0, σ²_e I). Variance components are estimated
    by REML (Fisher scoring), fixed effects by GLS at the estimates.

    Args:
        dataset: Observations to fit.
        design: Ordered fixed-effect terms, or a formula string accepted by
            DesignSpecification.from_formula.
        grouping_key: Column name, or sequence of column names, whose
            value tuple identifies the whole-plot unit.
        coding: Categorical coding, 'sum' (default) or 'reference'.
        tol: Relative change in both variance components below which the
            REML iteration has converged. Default 1e-8.
        max_iter: REML iteration cap. Default 200. 0 always raises
            ConvergenceError.
        rank_tol: Relative residual norm below which a design column counts
            as a linear combination of earlier columns. Default 1e-7.
        max_rank_deficiency: Number of aliased columns tolerated. None
            (default) tolerates any number as long as one column remains.
        group_variance: Hold σ²_g at this value instead of estimating it.
            0 reduces the fit to ordinary least squares.

    Returns:
        FittedModel with fixed effects, variance components, BLUPs, the
        sequential ANOVA table and R-style summary().

    Raises:
        ValidationError: Invalid option values or dataset.
        MalformedDesignError: The design does not fit the dataset, or a
            grouping-key component is absent or missing.
        InsufficientDataError: Fewer than two groups, or no residual df.
        RankDeficiencyError: More aliased columns than tolerated.
        ConvergenceError: REML did not converge within max_iter.

    Examples:
        >>> model = fit(ds, "A + B + I(A^2) + C(W) + A:C(W)", ['A', 'B', 'rep'])
        >>> print(model.anova().summary())
    """
    timer = Timer()
    timer.start()

    if not isinstance(dataset, Dataset):
        raise ValidationError(
            f"dataset: expected a Dataset, got {type(dataset).__name__}"
        )
    check_choice(coding, CODINGS, 'coding')
    check_positive(tol, 'tol')
    check_non_negative_int(max_iter, 'max_iter')
    check_positive(rank_tol, 'rank_tol')
    if max_rank_deficiency is not None:
        check_non_negative_int(max_rank_deficiency, 'max_rank_deficiency')
    if group_variance is not None:
        if isinstance(group_variance, bool) \
                or not isinstance(group_variance, (int, float, np.number)) \
                or not np.isfinite(group_variance) or group_variance < 0:
            raise ValidationError(
                f"group_variance: must be a finite number >= 0, got {group_variance!r}"
            )
        group_variance = float(group_variance)

    if isinstance(design, str):
        design = DesignSpecification.from_formula(design)

    with timer.section('setup'):
        design.validate(dataset)
        groups = build_group_structure(dataset, grouping_key)
        if groups.n_groups < 2:
            raise InsufficientDataError(
                f"at least 2 groups are required to separate the group "
                f"variance from the residual, got {groups.n_groups} "
                f"(grouping key {groups.grouping_key})",
                n_groups=groups.n_groups,
                n_obs=dataset.n,
                required=2,
            )
        mm = build_model_matrix(dataset, design, coding=coding)

    with timer.section('rank_reduction'):
        selection = select_independent_columns(mm.X, tol=rank_tol)
        dropped_names = tuple(mm.column_names[j] for j in selection.dropped)
        if selection.rank == 0 or (
            max_rank_deficiency is not None
            and len(selection.dropped) > max_rank_deficiency
        ):
            allowed = 'none left' if selection.rank == 0 else f"at most {max_rank_deficiency}"
            raise RankDeficiencyError(
                f"design matrix has rank {selection.rank} of {mm.p} columns "
                f"({allowed}); aliased columns: {list(dropped_names)}",
                rank=selection.rank,
                expected_rank=mm.p,
                dropped_columns=dropped_names,
            )
        residual_df = dataset.n - selection.rank
        if residual_df < 1:
            raise InsufficientDataError(
                f"{dataset.n} observations leave no residual degrees of "
                f"freedom for {selection.rank} fixed effects",
                n_groups=groups.n_groups,
                n_obs=dataset.n,
                required=selection.rank + 1,
            )
        kept = list(selection.kept)
        X = mm.X[:, kept]

    warn_list: list[str] = []
    if dropped_names:
        msg = (
            f"design matrix is rank deficient ({selection.rank} of {mm.p} "
            f"columns); dropped aliased columns: {', '.join(dropped_names)}"
        )
        warnings.warn(msg, RankDeficiencyWarning, stacklevel=2)
        warn_list.append(msg)

    with timer.section('reml'):
        estimate = estimate_variance_components(
            X, dataset.y, groups,
            tol=tol, max_iter=max_iter, group_variance=group_variance,
        )
        state = reml_state(
            X, dataset.y, groups,
            estimate.group_variance, estimate.residual_variance,
        )
        gls = state.gls
        A = variance_parameter_covariance(state, estimate.free)

    if estimate.free[GROUP] and estimate.group_variance == 0.0:
        warn_list.append("boundary (singular) fit: group variance estimated as 0")

    # Reduced-X positions of the intercept and of each term
    position = {orig: pos for pos, orig in enumerate(kept)}
    intercept_cols = [position[0]] if mm.has_intercept and 0 in position else []
    term_columns = []
    for term in mm.term_names:
        sl = mm.term_slices[term]
        term_columns.append(
            (term, [position[j] for j in range(sl.start, sl.stop) if j in position])
        )

    with timer.section('satterthwaite'):
        dC = covariance_gradients(state, groups, estimate.free)
        se_kept = np.sqrt(np.diag(gls.cov_beta))
        df_kept = coefficient_df(gls.cov_beta, dC, A, residual_df)
        t_kept = gls.beta / se_kept
        p_kept = 2.0 * stats.t.sf(np.abs(t_kept), df_kept)

    with timer.section('anova'):
        table = sequential_anova(
            gls, estimate.residual_variance, intercept_cols, term_columns,
            dC, A, residual_df,
        )

    with timer.section('blups'):
        u = group_effects(groups, estimate.group_variance, gls.Vinv_residual)
        fitted = gls.marginal_fitted + u[groups.group_ids]
        residuals = dataset.y - fitted

    with timer.section('model_fit'):
        ll = state.log_likelihood
        n_params = selection.rank + sum(estimate.free)
        aic = -2.0 * ll + 2.0 * n_params
        bic = -2.0 * ll + np.log(dataset.n) * n_params

    timer.stop()

    def padded(values):
        out = np.full(mm.p, np.nan)
        out[kept] = values
        out.flags.writeable = False
        return out

    var_comps = (
        VarCompSummary(
            group=groups.name,
            variance=estimate.group_variance,
            std_dev=float(np.sqrt(estimate.group_variance)),
            estimated=estimate.free[GROUP],
        ),
        VarCompSummary(
            group='Residual',
            variance=estimate.residual_variance,
            std_dev=float(np.sqrt(estimate.residual_variance)),
        ),
    )

    params = MixedFitParams(
        coefficients=padded(gls.beta),
        coefficient_names=mm.column_names,
        se=padded(se_kept),
        df_satterthwaite=padded(df_kept),
        t_values=padded(t_kept),
        p_values=padded(p_kept),
        cov_beta=gls.cov_beta,
        group_variance=estimate.group_variance,
        residual_variance=estimate.residual_variance,
        var_components=var_comps,
        var_components_cov=A,
        grouping_key=groups.grouping_key,
        anova_table=tuple(table),
        log_likelihood=ll,
        aic=aic,
        bic=bic,
        n_obs=dataset.n,
        n_groups=groups.n_groups,
        rank=selection.rank,
        dropped_columns=dropped_names,
        coding=coding,
        n_iter=estimate.n_iter,
        final_change=estimate.final_change,
        random_effects=dict(zip(groups.labels, u.tolist())),
        fitted_values=fitted,
        marginal_fitted=gls.marginal_fitted,
        residuals=residuals,
    )

    result = Result(
        params=params,
        info={
            'method': 'REML',
            'optimizer': 'fisher_scoring',
            'converged': True,
            'n_iter': estimate.n_iter,
            'final_change': estimate.final_change,
            'start': estimate.start,
            'free_components': estimate.free,
            'design': str(design),
            'kept_columns': tuple(mm.column_names[j] for j in kept),
            'dropped_columns': dropped_names,
        },
        timing=timer.result(),
        backend_name='cpu_reml_scoring',
        warnings=tuple(warn_list),
    )

    return FittedModel(_result=result)
