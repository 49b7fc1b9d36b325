"""
Generic result container for pysplitplot computations.

Every fit returns its domain payload inside a Result envelope, so timing,
run metadata and non-fatal warnings travel with the estimates in one
immutable object.

Design decisions:
    - Generic over parameter payload P
    - info dict for run metadata (iterations, convergence, dropped columns)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True); nothing survives a fit call but the result
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope.

    Attributes:
        params: Domain-specific parameters (coefficients, variances, ...)
        info: Structured metadata (method, iterations, diagnostics)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the routine that produced this result
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> Result(
        ...     params=payload,
        ...     info={'method': 'REML', 'converged': True, 'n_iter': 7},
        ...     timing={'total_seconds': 0.02, 'reml': 0.015},
        ...     backend_name='cpu_reml_scoring',
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
