"""
Core infrastructure for pysplitplot.

Shared abstractions used by the mixed-model fitter.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute: Timing and rank-reduction primitives
"""

from pysplitplot.core.result import Result
from pysplitplot.core.exceptions import (
    SplitPlotError,
    ValidationError,
    DimensionError,
    MalformedDesignError,
    InsufficientDataError,
    NumericalError,
    RankDeficiencyError,
    ConvergenceError,
    RankDeficiencyWarning,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "SplitPlotError",
    "ValidationError",
    "DimensionError",
    "MalformedDesignError",
    "InsufficientDataError",
    "NumericalError",
    "RankDeficiencyError",
    "ConvergenceError",
    "RankDeficiencyWarning",
]
