"""
Dataset and Observation types for split-plot data.

A Dataset is a columnar, read-only table: one response column, named
continuous covariates (factor levels, measured as numbers) and named
categorical covariates (labels). Any column can serve as a component of
the grouping key that identifies the whole-plot unit of an observation.

Usage:
    ds = Dataset.from_records(rows, response='y',
                              continuous=['temp', 'time'],
                              categorical=['recipe', 'rep'])
    ds = Dataset.from_dataframe(df, response='y', continuous=[...])
    ds = Dataset.from_arrays(y, continuous={'x': x}, categorical={'g': g})
"""

from __future__ import annotations

from dataclasses import dataclass
from numbers import Real
from types import MappingProxyType
from typing import Any, Hashable, Iterable, Iterator, Mapping, Sequence, TYPE_CHECKING

import numpy as np
from numpy.typing import ArrayLike, NDArray

from pysplitplot.core.exceptions import MalformedDesignError, ValidationError
from pysplitplot.core.validation import (
    check_1d,
    check_array,
    check_consistent_length,
    check_finite,
    check_min_samples,
)

if TYPE_CHECKING:
    import pandas as pd


@dataclass(frozen=True, eq=False)
class Observation:
    """One subplot measurement.

    Attributes:
        response: Measured response value.
        continuous: Covariate name -> numeric value (NaN if missing).
        categorical: Covariate name -> label (None if missing).
        group: Grouping-key tuple of the whole-plot unit, or () when the
            row was produced without a grouping key.
    """
    response: float
    continuous: Mapping[str, float]
    categorical: Mapping[str, Hashable]
    group: tuple = ()


def is_missing(value: Any) -> bool:
    """True for None and for floating NaN."""
    if value is None:
        return True
    if isinstance(value, (float, np.floating)):
        return bool(np.isnan(value))
    return False


def _to_float(value: Any) -> float:
    return np.nan if is_missing(value) else value


@dataclass(frozen=True)
class Dataset:
    """Validated, immutable split-plot dataset.

    Construct via the factory classmethods, not directly.

    Attributes:
        response_name: Name of the response column.
        y: Response values (n,), finite float64.
        continuous: Name -> float64 column (n,); NaN marks a missing value.
        categorical: Name -> object column (n,); None marks a missing value.
        n: Number of observations.
    """
    response_name: str
    y: NDArray
    continuous: Mapping[str, NDArray]
    categorical: Mapping[str, NDArray]
    n: int

    # === Construction ===

    @classmethod
    def from_arrays(
        cls,
        y: ArrayLike,
        *,
        continuous: Mapping[str, ArrayLike] | None = None,
        categorical: Mapping[str, ArrayLike] | None = None,
        response_name: str = 'y',
    ) -> Dataset:
        """Construct from a response array and named covariate arrays.

        Raises:
            ValidationError: If the response is missing, non-numeric or
                non-finite, or a continuous column is non-numeric.
            DimensionError: If columns have different lengths.
        """
        continuous = dict(continuous or {})
        categorical = dict(categorical or {})

        overlap = set(continuous) & set(categorical)
        if overlap:
            raise ValidationError(
                f"columns declared both continuous and categorical: {sorted(overlap)}"
            )
        if response_name in continuous or response_name in categorical:
            raise ValidationError(
                f"response '{response_name}' is also declared as a covariate"
            )

        y_raw = np.asarray(y)
        if y_raw.dtype == object:
            y_raw = np.array([_to_float(v) for v in y_raw.ravel()])
        y_arr = check_array(y_raw, response_name)
        check_1d(y_arr, response_name)
        check_min_samples(y_arr, 1, response_name)
        check_finite(y_arr, response_name)

        cont_cols: dict[str, NDArray] = {}
        for name, values in continuous.items():
            raw = np.asarray(values)
            if raw.dtype == object:
                raw = np.array([_to_float(v) for v in raw.ravel()])
            col = check_array(raw, name)
            check_1d(col, name)
            if np.any(np.isinf(col)):
                raise ValidationError(f"{name}: contains infinite values")
            col = col.copy()
            col.flags.writeable = False
            cont_cols[name] = col

        cat_cols: dict[str, NDArray] = {}
        for name, values in categorical.items():
            raw = list(np.asarray(values, dtype=object).ravel())
            col = np.empty(len(raw), dtype=object)
            col[:] = [None if is_missing(v) else v for v in raw]
            col.flags.writeable = False
            cat_cols[name] = col

        arrays = [y_arr, *cont_cols.values(), *cat_cols.values()]
        names = (response_name, *cont_cols, *cat_cols)
        check_consistent_length(*arrays, names=names)

        y_arr = y_arr.copy()
        y_arr.flags.writeable = False

        return cls(
            response_name=response_name,
            y=y_arr,
            continuous=MappingProxyType(cont_cols),
            categorical=MappingProxyType(cat_cols),
            n=len(y_arr),
        )

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        *,
        response: str,
        continuous: Sequence[str] = (),
        categorical: Sequence[str] = (),
    ) -> Dataset:
        """Construct from an iterable of row mappings (e.g. csv.DictReader rows
        after type conversion). Absent keys are treated as missing values."""
        rows = list(records)
        y = [_to_float(row.get(response)) for row in rows]
        return cls.from_arrays(
            np.array(y, dtype=np.float64),
            continuous={
                name: np.array([_to_float(row.get(name)) for row in rows], dtype=np.float64)
                for name in continuous
            },
            categorical={
                name: [row.get(name) for row in rows] for name in categorical
            },
            response_name=response,
        )

    @classmethod
    def from_dataframe(
        cls,
        df: 'pd.DataFrame',
        *,
        response: str,
        continuous: Sequence[str] = (),
        categorical: Sequence[str] = (),
    ) -> Dataset:
        """Construct from a pandas DataFrame.

        Raises:
            MalformedDesignError: If a named column is absent from df.
        """
        for name in (response, *continuous, *categorical):
            if name not in df.columns:
                raise MalformedDesignError(
                    f"DataFrame has no column '{name}'. "
                    f"Available: {list(df.columns)}",
                    covariate=name,
                )
        return cls.from_arrays(
            df[response].to_numpy(),
            continuous={name: df[name].to_numpy() for name in continuous},
            categorical={
                name: df[name].astype(object).where(df[name].notna(), None).to_numpy()
                for name in categorical
            },
            response_name=response,
        )

    # === Access ===

    def __len__(self) -> int:
        return self.n

    def __contains__(self, name: str) -> bool:
        return name in self.continuous or name in self.categorical

    @property
    def covariate_names(self) -> tuple[str, ...]:
        return (*self.continuous, *self.categorical)

    def column(self, name: str) -> NDArray:
        """Return a covariate column by name.

        Raises:
            MalformedDesignError: If no such covariate exists.
        """
        if name in self.continuous:
            return self.continuous[name]
        if name in self.categorical:
            return self.categorical[name]
        raise MalformedDesignError(
            f"Dataset has no covariate '{name}'. "
            f"Available: {list(self.covariate_names)}",
            covariate=name,
        )

    def group_labels(self, grouping_key: str | Sequence[str]) -> list[tuple]:
        """Resolve the grouping-key tuple of every observation.

        Args:
            grouping_key: One column name or a sequence of column names.

        Raises:
            MalformedDesignError: If a key component is not a column or is
                missing on some observation.
        """
        key = normalize_grouping_key(grouping_key)
        columns = [self.column(name) for name in key]
        for name, col in zip(key, columns):
            missing = [i for i, v in enumerate(col) if is_missing(v)]
            if missing:
                raise MalformedDesignError(
                    f"grouping-key component '{name}' is missing on "
                    f"{len(missing)} observation(s), first at row {missing[0]}",
                    covariate=name,
                )
        return [tuple(_plain(col[i]) for col in columns) for i in range(self.n)]

    @property
    def observations(self) -> Iterator[Observation]:
        """Iterate the rows as Observation objects, in dataset order.

        No grouping key is attached here, so every ``group`` is ``()``; use
        iter_observations(grouping_key) for rows carrying their group label.
        """
        return self.iter_observations()

    def iter_observations(
        self, grouping_key: str | Sequence[str] | None = None,
    ) -> Iterator[Observation]:
        """Iterate the rows as Observation objects with their group label.

        Raises:
            MalformedDesignError: If a key component is not a column or is
                missing on some observation.
        """
        labels = self.group_labels(grouping_key) if grouping_key is not None else None
        for i in range(self.n):
            yield self._row(i, labels[i] if labels is not None else ())

    def observation(self, i: int, grouping_key: str | Sequence[str] | None = None) -> Observation:
        group = ()
        if grouping_key is not None:
            key = normalize_grouping_key(grouping_key)
            group = tuple(_plain(self.column(name)[i]) for name in key)
        return self._row(i, group)

    def _row(self, i: int, group: tuple) -> Observation:
        return Observation(
            response=float(self.y[i]),
            continuous=MappingProxyType(
                {name: float(col[i]) for name, col in self.continuous.items()}
            ),
            categorical=MappingProxyType(
                {name: col[i] for name, col in self.categorical.items()}
            ),
            group=group,
        )

    def __repr__(self) -> str:
        return (
            f"Dataset(n={self.n}, response={self.response_name!r}, "
            f"continuous={list(self.continuous)}, "
            f"categorical={list(self.categorical)})"
        )


def normalize_grouping_key(grouping_key: str | Sequence[str]) -> tuple[str, ...]:
    """Turn a column name or sequence of names into a non-empty tuple."""
    if isinstance(grouping_key, str):
        return (grouping_key,)
    key = tuple(grouping_key)
    if not key or not all(isinstance(name, str) for name in key):
        raise MalformedDesignError(
            f"grouping key must be a column name or a non-empty sequence of "
            f"column names, got {grouping_key!r}"
        )
    return key


def _plain(value: Any) -> Any:
    """Unwrap numpy scalars so labels compare and print like Python values."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def sorted_levels(values: Iterable[Any]) -> list[Any]:
    """Distinct non-missing values in natural order.

    Numbers sort numerically; anything else sorts by its string form.
    """
    distinct = {_plain(v) for v in values if not is_missing(v)}
    if all(isinstance(v, Real) and not isinstance(v, bool) for v in distinct):
        return sorted(distinct)
    return sorted(distinct, key=str)
