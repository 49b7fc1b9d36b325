"""
Contrast coding and fixed-effect model matrix construction.

Turns a DesignSpecification into numeric columns, term by term and in
order. Continuous factors contribute their value or its square.
A categorical factor contributes k-1 contrast columns when its margin
(the term with that factor removed, or the intercept for a main effect)
was already fitted, and k indicator columns otherwise:

    - Sum-to-zero coding (default): one column per level except the last,
      which is coded -1 in every column.
    - Reference coding: one indicator per level except the last, which is
      the reference (all zeros).

Contrasts only appear alongside their margin, so both codings span the
same column space after every term and give the same fitted values and
tests; they differ only in the coefficients. Products of factors are
element-wise products of all column pairs.
"""

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from pysplitplot.mixed.dataset import Dataset, sorted_levels
from pysplitplot.mixed.design import DesignSpecification, Factor, Transform

INTERCEPT = '(Intercept)'

CODINGS = ('sum', 'reference')


@dataclass(frozen=True)
class ModelMatrix:
    """
    Encoded design matrix with the metadata needed for sequential tests.

    Attributes:
        X: (n, p) float64 design matrix (intercept first, if any)
        column_names: p column labels
        term_names: ordered term labels (intercept excluded)
        term_slices: term label -> column slice in X (intercept included
            under '(Intercept)')
        coding: 'sum' or 'reference'
        factor_levels: categorical covariate -> ordered distinct levels
        has_intercept: whether column 0 is an intercept
    """
    X: NDArray[np.floating[Any]]
    column_names: tuple[str, ...]
    term_names: tuple[str, ...]
    term_slices: dict[str, slice]
    coding: str
    factor_levels: dict[str, list[Any]]
    has_intercept: bool

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]


def encode_sum(values: NDArray, levels: list[Any]) -> NDArray:
    """
    Sum-to-zero (deviation) coding for a single factor.

    Args:
        values: 1D array of labels
        levels: ordered distinct levels; the last one is coded -1

    Returns:
        (n, k-1) float64 matrix
    """
    n = len(values)
    X = np.zeros((n, len(levels) - 1), dtype=np.float64)
    is_last = _level_mask(values, levels[-1])
    for j, level in enumerate(levels[:-1]):
        X[_level_mask(values, level), j] = 1.0
        X[is_last, j] = -1.0
    return X


def encode_reference(values: NDArray, levels: list[Any]) -> NDArray:
    """
    Reference (treatment) coding with the last level as the baseline.

    Args:
        values: 1D array of labels
        levels: ordered distinct levels; the last one gets no column

    Returns:
        (n, k-1) float64 indicator matrix
    """
    n = len(values)
    X = np.zeros((n, len(levels) - 1), dtype=np.float64)
    for j, level in enumerate(levels[:-1]):
        X[_level_mask(values, level), j] = 1.0
    return X


def encode_indicator(values: NDArray, levels: list[Any]) -> NDArray:
    """(n, k) indicator matrix, one column per level."""
    X = np.zeros((len(values), len(levels)), dtype=np.float64)
    for j, level in enumerate(levels):
        X[_level_mask(values, level), j] = 1.0
    return X


def _level_mask(values: NDArray, level: Any) -> NDArray:
    return np.fromiter((v == level for v in values), dtype=bool, count=len(values))


def interaction_columns(X_a: NDArray, X_b: NDArray) -> NDArray:
    """
    Element-wise product of all column pairs from X_a and X_b.

    Columns of X_a vary slowest.

    Returns:
        (n, p_a * p_b) interaction columns
    """
    n = X_a.shape[0]
    p_a = X_a.shape[1]
    p_b = X_b.shape[1]
    X_int = np.empty((n, p_a * p_b), dtype=np.float64)

    col = 0
    for i in range(p_a):
        for j in range(p_b):
            X_int[:, col] = X_a[:, i] * X_b[:, j]
            col += 1

    return X_int


def _factor_block(
    factor: Factor,
    dataset: Dataset,
    coding: str,
    factor_levels: dict[str, list[Any]],
    contrasts: bool = True,
) -> tuple[NDArray, list[str]]:
    """Columns and labels contributed by one factor.

    A categorical factor gets k-1 contrast columns when ``contrasts`` is
    set and k indicator columns otherwise.
    """
    values = dataset.column(factor.covariate)

    if factor.transform is Transform.IDENTITY:
        return values.astype(np.float64).reshape(-1, 1), [factor.name]
    if factor.transform is Transform.SQUARE:
        return (values.astype(np.float64) ** 2).reshape(-1, 1), [factor.name]

    levels = factor_levels.get(factor.covariate)
    if levels is None:
        levels = sorted_levels(values)
        factor_levels[factor.covariate] = levels
    # Continuous columns used as labels compare as floats
    if values.dtype != object:
        values = values.astype(np.float64)
    if not contrasts:
        labels = [f"{factor.covariate}[{level}]" for level in levels]
        return encode_indicator(values, levels), labels
    encode = encode_sum if coding == 'sum' else encode_reference
    labels = [f"{factor.covariate}[{level}]" for level in levels[:-1]]
    return encode(values, levels), labels


def build_model_matrix(
    dataset: Dataset,
    design: DesignSpecification,
    coding: str = 'sum',
) -> ModelMatrix:
    """
    Evaluate every term of the design against the dataset, in order.

    Args:
        dataset: Validated dataset (the design must already be validated
            against it)
        design: Ordered design specification
        coding: 'sum' or 'reference'

    Returns:
        ModelMatrix with the full design matrix and metadata
    """
    if coding not in CODINGS:
        raise ValueError(f"coding must be one of {CODINGS}, got {coding!r}")

    n = dataset.n
    columns: list[NDArray] = []
    column_names: list[str] = []
    term_slices: dict[str, slice] = {}
    factor_levels: dict[str, list[Any]] = {}
    col_offset = 0

    if design.intercept:
        columns.append(np.ones((n, 1), dtype=np.float64))
        column_names.append(INTERCEPT)
        term_slices[INTERCEPT] = slice(0, 1)
        col_offset = 1

    # Factor sets fitted so far; the empty set stands for the intercept
    fitted: set[frozenset] = {frozenset()} if design.intercept else set()

    for term_name, term in zip(design.term_names, design.terms):
        block, labels = None, None
        for factor in term.factors:
            margin = frozenset(f for f in term.factors if f != factor)
            next_block, next_labels = _factor_block(
                factor, dataset, coding, factor_levels,
                contrasts=margin in fitted,
            )
            if block is None:
                block, labels = next_block, next_labels
            else:
                block = interaction_columns(block, next_block)
                labels = [f"{a}:{b}" for a in labels for b in next_labels]
        fitted.add(frozenset(term.factors))

        ncols = block.shape[1]
        columns.append(block)
        column_names.extend(labels)
        term_slices[term_name] = slice(col_offset, col_offset + ncols)
        col_offset += ncols

    X = np.hstack(columns) if columns else np.empty((n, 0), dtype=np.float64)
    X.flags.writeable = False

    return ModelMatrix(
        X=X,
        column_names=tuple(column_names),
        term_names=design.term_names,
        term_slices=term_slices,
        coding=coding,
        factor_levels=factor_levels,
        has_intercept=design.intercept,
    )
