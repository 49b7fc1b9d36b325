"""
Common data types for split-plot mixed models.

Contains the frozen parameter payloads that go inside Result[P] envelopes.
Each payload is a plain frozen container; all computation happens in solvers.

References:
    Kuznetsova, A., Brockhoff, P. B., & Christensen, R. H. B. (2017).
    lmerTest Package: Tests in Linear Mixed Effects Models.
    Journal of Statistical Software, 82(13), 1-26.
"""

from dataclasses import dataclass

from numpy.typing import NDArray


@dataclass(frozen=True)
class VarCompSummary:
    """Variance component summary.

    Attributes:
        group: Grouping factor name (e.g. 'plot'), or 'Residual'.
        variance: Estimated variance.
        std_dev: Standard deviation (sqrt of variance).
        estimated: False when the component was held fixed by the caller.
    """
    group: str
    variance: float
    std_dev: float
    estimated: bool = True


@dataclass(frozen=True)
class CoefficientRow:
    """One fixed effect with its Satterthwaite t test.

    Aliased columns carry NaN in every numeric field.
    """
    name: str
    estimate: float
    std_error: float
    df: float
    t_value: float
    p_value: float


@dataclass(frozen=True)
class AnovaTableRow:
    """One row of a sequential ANOVA table.

    A term whose columns were all aliased by earlier terms has df 0 and
    no F statistic, denominator df or p-value.
    """
    term: str
    df: int
    sum_sq: float
    mean_sq: float
    f_value: float | None
    den_df: float | None
    p_value: float | None


@dataclass(frozen=True)
class MixedFitParams:
    """
    Parameter payload for a fitted split-plot mixed model.

    Coefficient arrays span every column of the design matrix, in design
    order; columns dropped as aliased carry NaN.
    """
    # Fixed effects
    coefficients: NDArray              # β̂ (p,)
    coefficient_names: tuple[str, ...]
    se: NDArray                        # standard errors of β̂ (p,)
    df_satterthwaite: NDArray          # Satterthwaite df per fixed effect (p,)
    t_values: NDArray                  # β̂ / se (p,)
    p_values: NDArray                  # from t-distribution with Satt. df (p,)
    cov_beta: NDArray                  # (rank, rank), kept columns only

    # Variance components
    group_variance: float              # σ²_g
    residual_variance: float           # σ²_e
    var_components: tuple[VarCompSummary, ...]
    var_components_cov: NDArray        # covariance of the free components
    grouping_key: tuple[str, ...]

    # Sequential tests
    anova_table: tuple[AnovaTableRow, ...]

    # Model fit
    log_likelihood: float              # REML criterion, -½ of deviance
    aic: float
    bic: float
    n_obs: int
    n_groups: int
    rank: int
    dropped_columns: tuple[str, ...]
    coding: str

    # Convergence
    n_iter: int
    final_change: float

    # Random effects (BLUPs), group label -> value
    random_effects: dict[tuple, float]

    # Predictions
    fitted_values: NDArray             # Xβ̂ + Zû (n,)
    marginal_fitted: NDArray           # Xβ̂ (n,)
    residuals: NDArray                 # y - fitted (n,)
