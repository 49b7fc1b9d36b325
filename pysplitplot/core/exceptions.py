"""
Exception hierarchy for pysplitplot.

All exceptions inherit from SplitPlotError so callers can catch any
library-specific failure in one place. A fit either returns a complete
result or raises exactly one of these.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages are actionable with actual vs expected values
    - Never catch and re-raise with less information
"""


class SplitPlotError(Exception):
    """Base exception for all pysplitplot errors."""
    pass


class ValidationError(SplitPlotError):
    """
    Input validation failed.

    Raised when user-provided inputs fail validation checks, before any
    numerical work begins.
    """
    pass


class DimensionError(ValidationError):
    """
    Array dimensions are incorrect or inconsistent.

    Raised when dataset columns have different lengths or an array has
    the wrong number of dimensions.
    """
    pass


class MalformedDesignError(ValidationError):
    """
    The design specification does not fit the dataset.

    Raised when a term references a covariate absent from the dataset,
    uses a covariate in a role it cannot play (e.g. squaring a label
    column), when a formula cannot be parsed, or when a grouping-key
    component is missing on some observation.

    Attributes:
        covariate: Name of the offending covariate, if any
    """

    def __init__(self, message: str, covariate: str | None = None):
        super().__init__(message)
        self.covariate = covariate


class InsufficientDataError(ValidationError):
    """
    Too few groups or observations to estimate the model.

    Attributes:
        n_groups: Number of distinct groups found
        n_obs: Number of observations
        required: Minimum count that was not met
    """

    def __init__(
        self,
        message: str,
        n_groups: int | None = None,
        n_obs: int | None = None,
        required: int | None = None,
    ):
        super().__init__(message)
        self.n_groups = n_groups
        self.n_obs = n_obs
        self.required = required


class NumericalError(SplitPlotError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during fitting.
    """
    pass


class RankDeficiencyError(NumericalError):
    """
    Fixed-effect design matrix lost more columns than tolerated.

    Attributes:
        rank: Numerical rank of the design matrix
        expected_rank: Number of columns requested by the design
        dropped_columns: Names of the aliased columns, in design order
    """

    def __init__(
        self,
        message: str,
        rank: int | None = None,
        expected_rank: int | None = None,
        dropped_columns: tuple[str, ...] = (),
    ):
        super().__init__(message)
        self.rank = rank
        self.expected_rank = expected_rank
        self.dropped_columns = dropped_columns


class ConvergenceError(NumericalError):
    """
    REML iteration failed to converge.

    Raised when the variance-component iteration does not meet its
    tolerance within the iteration cap. Never replaced by a silently
    returned non-converged result.

    Attributes:
        iterations: Number of iterations completed
        final_change: Last relative change in the variance components
        reason: Why convergence failed (e.g. 'max_iterations')
        threshold: The convergence threshold that was not met
        group_variance: Last between-group variance estimate
        residual_variance: Last residual variance estimate
    """

    def __init__(
        self,
        message: str,
        iterations: int,
        final_change: float | None = None,
        reason: str | None = None,
        threshold: float | None = None,
        group_variance: float | None = None,
        residual_variance: float | None = None,
    ):
        super().__init__(message)
        self.iterations = iterations
        self.final_change = final_change
        self.reason = reason
        self.threshold = threshold
        self.group_variance = group_variance
        self.residual_variance = residual_variance


class RankDeficiencyWarning(UserWarning):
    """Aliased fixed-effect columns were dropped during fitting."""
    pass
