"""
Random-intercept structure for a single grouping factor.

This module handles:
1. Resolving the grouping-key tuple of each observation into group ids
2. Building the random effects design matrix Z (one indicator per group)
3. The marginal covariance V = σ²_g Z Z' + σ²_e I, its inverse and
   log-determinant, in closed form

Z'Z is diagonal (the group sizes n_i), so by the Woodbury identity

    V⁻¹ = (I - Z D Z') / σ²_e,    D = diag(σ²_g / (σ²_e + n_i σ²_g))

and V has eigenvalues σ²_e (multiplicity n - m) and σ²_e + n_i σ²_g.
No n x n factorization is ever needed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from pysplitplot.mixed.dataset import Dataset, normalize_grouping_key


@dataclass(frozen=True)
class GroupStructure:
    """Grouping of observations into whole-plot units.

    Attributes:
        grouping_key: Column names forming the key.
        labels: Distinct key tuples, in order of first appearance.
        group_ids: Index into ``labels`` for each observation, shape (n,).
        sizes: Observations per group, shape (m,).
        Z: Indicator design matrix, shape (n, m).
    """
    grouping_key: tuple[str, ...]
    labels: tuple[tuple, ...]
    group_ids: NDArray
    sizes: NDArray
    Z: NDArray

    @property
    def n_groups(self) -> int:
        return len(self.labels)

    @property
    def name(self) -> str:
        return ':'.join(self.grouping_key)


def build_group_structure(
    dataset: Dataset,
    grouping_key: str | Sequence[str],
) -> GroupStructure:
    """Resolve group labels and build Z.

    Raises:
        MalformedDesignError: If a key component is absent or missing
            on some observation.
    """
    key = normalize_grouping_key(grouping_key)
    row_labels = dataset.group_labels(key)

    index: dict[tuple, int] = {}
    group_ids = np.empty(dataset.n, dtype=np.intp)
    for i, label in enumerate(row_labels):
        group_ids[i] = index.setdefault(label, len(index))

    m = len(index)
    Z = np.zeros((dataset.n, m), dtype=np.float64)
    Z[np.arange(dataset.n), group_ids] = 1.0
    sizes = np.bincount(group_ids, minlength=m).astype(np.float64)

    for arr in (group_ids, sizes, Z):
        arr.flags.writeable = False

    return GroupStructure(
        grouping_key=key,
        labels=tuple(index),
        group_ids=group_ids,
        sizes=sizes,
        Z=Z,
    )


def shrinkage_weights(
    groups: GroupStructure,
    group_variance: float,
    residual_variance: float,
) -> NDArray:
    """D = σ²_g / (σ²_e + n_i σ²_g) per group."""
    return group_variance / (residual_variance + groups.sizes * group_variance)


def marginal_inverse(
    groups: GroupStructure,
    group_variance: float,
    residual_variance: float,
) -> NDArray:
    """V⁻¹ for V = σ²_g Z Z' + σ²_e I, shape (n, n)."""
    d = shrinkage_weights(groups, group_variance, residual_variance)
    Z = groups.Z
    n = Z.shape[0]
    return (np.eye(n) - (Z * d) @ Z.T) / residual_variance


def marginal_log_det(
    groups: GroupStructure,
    group_variance: float,
    residual_variance: float,
) -> float:
    """log|V| from the closed-form eigenvalues."""
    n = groups.Z.shape[0]
    m = groups.n_groups
    return float(
        (n - m) * np.log(residual_variance)
        + np.sum(np.log(residual_variance + groups.sizes * group_variance))
    )


def group_effects(
    groups: GroupStructure,
    group_variance: float,
    Vinv_residual: NDArray,
) -> NDArray:
    """BLUPs of the random intercepts: û = σ²_g Z' V⁻¹ (y - Xβ̂), shape (m,)."""
    return group_variance * (groups.Z.T @ Vinv_residual)
