"""
Solution wrappers for split-plot mixed models.

FittedModel wraps Result[MixedFitParams] and provides R-style summary
output, property accessors for common quantities and the sequential
ANOVA table. AnovaTable is the Type I table with Satterthwaite's
denominator df, as printed by lmerTest::anova(model, type = 1).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pysplitplot.core.result import Result
from pysplitplot.mixed._common import (
    AnovaTableRow, CoefficientRow, MixedFitParams, VarCompSummary,
)

if TYPE_CHECKING:
    import pandas as pd

_SIGNIF_CODES = "Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1"


def _significance_stars(p: float | None) -> str:
    """Return significance stars like R."""
    if p is None or not np.isfinite(p):
        return ' '
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    elif p < 0.1:
        return '.'
    else:
        return ' '


def _format_pvalue(p: float | None) -> str:
    """Format p-value like R."""
    if p is None or not np.isfinite(p):
        return 'NA'
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'


@dataclass(frozen=True)
class AnovaTable:
    """
    Sequential (Type I) ANOVA table with Satterthwaite denominator df.

    Rows follow the term order of the design; the intercept has no row.
    Index by term name or iterate the rows.
    """
    rows: tuple[AnovaTableRow, ...]
    n_obs: int = 0

    @property
    def terms(self) -> tuple[str, ...]:
        return tuple(row.term for row in self.rows)

    def __getitem__(self, term: str) -> AnovaTableRow:
        for row in self.rows:
            if row.term == term:
                return row
        raise KeyError(f"no term {term!r} in table; terms: {list(self.terms)}")

    def __contains__(self, term: str) -> bool:
        return term in self.terms

    def __iter__(self) -> Iterator[AnovaTableRow]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def to_dataframe(self) -> 'pd.DataFrame':
        """Table as a pandas DataFrame indexed by term (needs pandas)."""
        import pandas as pd

        return pd.DataFrame(
            {
                'Sum Sq': [r.sum_sq for r in self.rows],
                'Mean Sq': [r.mean_sq for r in self.rows],
                'NumDF': [r.df for r in self.rows],
                'DenDF': [np.nan if r.den_df is None else r.den_df for r in self.rows],
                'F value': [np.nan if r.f_value is None else r.f_value for r in self.rows],
                'Pr(>F)': [np.nan if r.p_value is None else r.p_value for r in self.rows],
            },
            index=pd.Index(self.terms, name='term'),
        )

    def summary(self) -> str:
        """R-style table matching lmerTest::anova(model, type = 1)."""
        width = max([20] + [len(t) + 1 for t in self.terms])
        lines = [
            "Type I Analysis of Variance Table with Satterthwaite's method",
            f"{'':<{width}} {'Sum Sq':>12} {'Mean Sq':>12} {'NumDF':>6} "
            f"{'DenDF':>9} {'F value':>10} {'Pr(>F)':>10}",
        ]
        for row in self.rows:
            if row.f_value is None:
                lines.append(
                    f"{row.term:<{width}} {row.sum_sq:>12.4f} {row.mean_sq:>12.4f} "
                    f"{row.df:>6d} {'NA':>9} {'NA':>10} {'NA':>10}"
                )
                continue
            lines.append(
                f"{row.term:<{width}} {row.sum_sq:>12.4f} {row.mean_sq:>12.4f} "
                f"{row.df:>6d} {row.den_df:>9.3f} {row.f_value:>10.4f} "
                f"{_format_pvalue(row.p_value):>10} {_significance_stars(row.p_value)}"
            )
        lines.append("---")
        lines.append(_SIGNIF_CODES)
        return '\n'.join(lines)

    def __repr__(self) -> str:
        return f"AnovaTable(type=I, terms={list(self.terms)})"


class FittedModel:
    """Solution wrapper for a fitted split-plot mixed model.

    Provides R-style summary output matching lmerTest::summary(),
    property accessors for fixed effects, variance components, BLUPs
    and the sequential ANOVA table.
    """

    def __init__(self, _result: Result[MixedFitParams]):
        self._result = _result

    @property
    def params(self) -> MixedFitParams:
        return self._result.params

    @property
    def info(self) -> dict[str, Any]:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂ (NaN for aliased columns)."""
        return self.params.coefficients

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        return self.params.coefficient_names

    @property
    def fixef(self) -> dict[str, float]:
        """Estimable fixed effects as name → value dict."""
        return {
            name: float(b)
            for name, b in zip(self.params.coefficient_names, self.params.coefficients)
            if np.isfinite(b)
        }

    @property
    def se(self) -> NDArray:
        return self.params.se

    @property
    def t_values(self) -> NDArray:
        return self.params.t_values

    @property
    def p_values(self) -> NDArray:
        """p-values for fixed effects (Satterthwaite df)."""
        return self.params.p_values

    @property
    def df_satterthwaite(self) -> NDArray:
        return self.params.df_satterthwaite

    @property
    def coefficient_table(self) -> tuple[CoefficientRow, ...]:
        p = self.params
        return tuple(
            CoefficientRow(
                name=name,
                estimate=float(p.coefficients[i]),
                std_error=float(p.se[i]),
                df=float(p.df_satterthwaite[i]),
                t_value=float(p.t_values[i]),
                p_value=float(p.p_values[i]),
            )
            for i, name in enumerate(p.coefficient_names)
        )

    def confint(self, level: float = 0.95) -> dict[str, tuple[float, float]]:
        """Satterthwaite t confidence intervals for the estimable fixed effects."""
        if not 0.0 < level < 1.0:
            raise ValueError(f"level must be in (0, 1), got {level}")
        p = self.params
        q = stats.t.ppf(0.5 + level / 2.0, p.df_satterthwaite)
        out = {}
        for i, name in enumerate(p.coefficient_names):
            if np.isfinite(p.coefficients[i]):
                half = float(q[i] * p.se[i])
                out[name] = (float(p.coefficients[i]) - half, float(p.coefficients[i]) + half)
        return out

    @property
    def dropped_columns(self) -> tuple[str, ...]:
        """Design columns removed as linear combinations of earlier ones."""
        return self.params.dropped_columns

    @property
    def rank(self) -> int:
        return self.params.rank

    @property
    def residual_df(self) -> int:
        """n - rank(X)."""
        return self.params.n_obs - self.params.rank

    # --- Variance components ---

    @property
    def group_variance(self) -> float:
        return self.params.group_variance

    @property
    def residual_variance(self) -> float:
        return self.params.residual_variance

    @property
    def variance_ratio(self) -> float:
        """σ²_g / σ²_e."""
        return self.params.group_variance / self.params.residual_variance

    @property
    def icc(self) -> float:
        """Intraclass correlation σ²_g / (σ²_g + σ²_e)."""
        g, e = self.params.group_variance, self.params.residual_variance
        return g / (g + e)

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    @property
    def var_components_cov(self) -> NDArray:
        """Asymptotic covariance of the estimated variance components."""
        return self.params.var_components_cov

    @property
    def ranef(self) -> dict[tuple, float]:
        """Predicted group effects (BLUPs), keyed by grouping-key tuple."""
        return self.params.random_effects

    # --- Model fit ---

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def fitted_values(self) -> NDArray:
        """Conditional fitted values Xβ̂ + Zû."""
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    @property
    def n_obs(self) -> int:
        return self.params.n_obs

    @property
    def n_groups(self) -> int:
        return self.params.n_groups

    @property
    def n_iter(self) -> int:
        return self.params.n_iter

    # --- Tests ---

    def anova(self) -> AnovaTable:
        """Sequential (Type I) ANOVA table."""
        return AnovaTable(rows=self.params.anova_table, n_obs=self.params.n_obs)

    # --- Summary ---

    def summary(self) -> str:
        """R-style summary matching lmerTest::summary(lmer(...))."""
        params = self.params

        lines = []
        lines.append("Linear mixed model fit by REML. t-tests use Satterthwaite's method")
        lines.append("")
        lines.append(f"REML criterion at convergence: {-2 * params.log_likelihood:.1f}")
        lines.append(f"AIC: {params.aic:.1f}, BIC: {params.bic:.1f}")
        lines.append("")

        lines.append("Random effects:")
        lines.append(f" {'Groups':<20s} {'Name':<12s} {'Variance':>10s} {'Std.Dev.':>10s}")
        for vc in params.var_components:
            name = '' if vc.group == 'Residual' else '(Intercept)'
            fixed = '' if vc.estimated else '  (fixed)'
            lines.append(
                f" {vc.group:<20s} {name:<12s} {vc.variance:10.4f} "
                f"{vc.std_dev:10.4f}{fixed}"
            )
        lines.append(
            f"Number of obs: {params.n_obs}, groups: "
            f"{':'.join(params.grouping_key)}, {params.n_groups}"
        )
        lines.append("")

        lines.append("Fixed effects:")
        width = max([15] + [len(n) for n in params.coefficient_names])
        lines.append(
            f" {'':>{width}s} {'Estimate':>10s} {'Std. Error':>10s} "
            f"{'df':>10s} {'t value':>10s} {'Pr(>|t|)':>10s}"
        )
        for row in self.coefficient_table:
            if not np.isfinite(row.estimate):
                lines.append(f" {row.name:>{width}s} {'NA':>10s}")
                continue
            lines.append(
                f" {row.name:>{width}s} {row.estimate:10.4f} "
                f"{row.std_error:10.4f} {row.df:10.2f} "
                f"{row.t_value:10.3f} {_format_pvalue(row.p_value):>10s} "
                f"{_significance_stars(row.p_value)}"
            )
        lines.append("---")
        lines.append(_SIGNIF_CODES)

        if params.dropped_columns:
            lines.append("")
            lines.append(
                f"fixed-effect model matrix is rank deficient so dropping "
                f"{len(params.dropped_columns)} column(s): "
                f"{', '.join(params.dropped_columns)}"
            )

        return '\n'.join(lines)

    def __repr__(self) -> str:
        return (
            f"FittedModel(REML, "
            f"n={self.params.n_obs}, "
            f"groups={self.params.n_groups}, "
            f"fixed={self.params.rank}/{len(self.params.coefficients)})"
        )
