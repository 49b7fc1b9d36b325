"""
Fixed-effect design specification.

A DesignSpecification is an ordered list of terms. Each term is a product
of one or more factors, and each factor applies a transform (identity,
square or categorical indicator coding) to one covariate. Term order is
part of the design: the sequential ANOVA attributes sums of squares
in exactly this order.

    >>> spec = DesignSpecification.from_formula("A + B + I(A^2) + C(W) + A:C(W)")
    >>> [t.name for t in spec.terms]
    ['A', 'B', 'A^2', 'W', 'A:W']
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from itertools import combinations
from typing import Sequence

import numpy as np

from pysplitplot.core.exceptions import MalformedDesignError
from pysplitplot.mixed.dataset import Dataset, is_missing


class Transform(str, enum.Enum):
    """How a covariate enters a term."""
    IDENTITY = 'identity'
    SQUARE = 'square'
    CATEGORICAL = 'categorical'


@dataclass(frozen=True)
class Factor:
    """One covariate transform inside a term."""
    covariate: str
    transform: Transform = Transform.IDENTITY

    @property
    def name(self) -> str:
        if self.transform is Transform.SQUARE:
            return f"{self.covariate}^2"
        return self.covariate

    @property
    def formula(self) -> str:
        """Formula spelling, accepted back by DesignSpecification.from_formula."""
        if self.transform is Transform.SQUARE:
            return f"I({self.covariate}^2)"
        if self.transform is Transform.CATEGORICAL:
            return f"C({self.covariate})"
        return self.covariate

    @property
    def is_categorical(self) -> bool:
        return self.transform is Transform.CATEGORICAL


def linear(covariate: str) -> Factor:
    """Identity transform of a continuous covariate."""
    return Factor(covariate, Transform.IDENTITY)


def quadratic(covariate: str) -> Factor:
    """Square of a continuous covariate."""
    return Factor(covariate, Transform.SQUARE)


def categorical(covariate: str) -> Factor:
    """Indicator coding of a covariate's distinct levels."""
    return Factor(covariate, Transform.CATEGORICAL)


@dataclass(frozen=True)
class Term:
    """A product of factors, e.g. ``A:C`` or ``A^2``.

    Attributes:
        factors: The factors multiplied together, in order.
    """
    factors: tuple[Factor, ...]

    def __post_init__(self):
        if not self.factors:
            raise MalformedDesignError("a term needs at least one factor")
        for factor in self.factors:
            if not isinstance(factor, Factor):
                raise MalformedDesignError(
                    f"term factors must be Factor instances, got {factor!r}"
                )

    @classmethod
    def of(cls, *factors: Factor | str) -> Term:
        """Build a term; bare strings are taken as linear factors."""
        return cls(tuple(f if isinstance(f, Factor) else linear(f) for f in factors))

    @property
    def name(self) -> str:
        return ':'.join(f.name for f in self.factors)

    @property
    def formula(self) -> str:
        return ':'.join(f.formula for f in self.factors)

    @property
    def covariates(self) -> tuple[str, ...]:
        return tuple(f.covariate for f in self.factors)

    def __str__(self) -> str:
        return self.formula


# term   := factor (':' factor)*
# factor := NAME | I(NAME^2) | C(NAME)
_NAME = r'[A-Za-z_][A-Za-z0-9_.]*'
_SQUARE_RE = re.compile(rf'^I\(\s*({_NAME})\s*(?:\^|\*\*)\s*2\s*\)$')
_CATEGORICAL_RE = re.compile(rf'^C\(\s*({_NAME})\s*\)$')
_LINEAR_RE = re.compile(rf'^({_NAME})$')


def _parse_factor(text: str) -> Factor:
    text = text.strip()
    match = _SQUARE_RE.match(text)
    if match:
        return quadratic(match.group(1))
    match = _CATEGORICAL_RE.match(text)
    if match:
        return categorical(match.group(1))
    match = _LINEAR_RE.match(text)
    if match:
        return linear(match.group(1))
    raise MalformedDesignError(f"cannot parse factor {text!r}")


@dataclass(frozen=True)
class DesignSpecification:
    """Ordered fixed-effect terms plus an optional intercept.

    Attributes:
        terms: Terms in sequential (Type I) order.
        intercept: Whether the model includes an intercept column.
    """
    terms: tuple[Term, ...]
    intercept: bool = True

    def __post_init__(self):
        formulas = [t.formula for t in self.terms]
        duplicates = sorted({f for f in formulas if formulas.count(f) > 1})
        if duplicates:
            raise MalformedDesignError(f"duplicate terms in design: {duplicates}")
        if not self.terms and not self.intercept:
            raise MalformedDesignError("design has neither terms nor an intercept")

    @classmethod
    def of(cls, *terms: Term | Factor | str, intercept: bool = True) -> DesignSpecification:
        """Build from terms; a Factor or bare string becomes a one-factor term."""
        built = []
        for t in terms:
            if isinstance(t, Term):
                built.append(t)
            else:
                built.append(Term.of(t))
        return cls(tuple(built), intercept=intercept)

    @classmethod
    def from_formula(cls, formula: str) -> DesignSpecification:
        """Parse a right-hand-side formula.

        ``+`` separates terms, ``:`` separates factors in a term,
        ``I(x^2)`` squares a covariate, ``C(x)`` codes it as categorical,
        and ``1`` / ``0`` / ``-1`` keep or remove the intercept. A leading
        ``response ~`` is ignored.

        Raises:
            MalformedDesignError: On any unparseable piece.
        """
        if not isinstance(formula, str):
            raise MalformedDesignError(f"formula must be a string, got {type(formula).__name__}")
        rhs = formula.split('~', 1)[1] if '~' in formula else formula
        rhs = rhs.strip()
        if not rhs:
            raise MalformedDesignError("empty formula")

        intercept = True
        terms: list[Term] = []
        # '-1' is the only subtraction accepted
        pieces = re.split(r'(?<!\^)\s*([+-])\s*', rhs)
        sign = '+'
        for piece in pieces:
            if piece in ('+', '-'):
                sign = piece
                continue
            piece = piece.strip()
            if not piece:
                continue
            if piece in ('0', '1'):
                if piece == '0' or sign == '-':
                    intercept = False
                continue
            if sign == '-':
                raise MalformedDesignError(f"cannot remove term {piece!r}; only '-1' is supported")
            terms.append(Term(tuple(_parse_factor(f) for f in piece.split(':'))))

        return cls(tuple(terms), intercept=intercept)

    @classmethod
    def response_surface(
        cls,
        continuous: Sequence[str],
        categorical_factors: Sequence[str] = (),
        *,
        quadratic_terms: bool = True,
        interactions: bool = True,
        cross_categorical: bool = True,
        intercept: bool = True,
    ) -> DesignSpecification:
        """Second-order response surface in the continuous factors, crossed
        with categorical factors.

        Order: linear terms, squares, continuous two-way interactions,
        categorical main effects, continuous-by-categorical interactions.
        """
        terms: list[Term] = [Term.of(linear(x)) for x in continuous]
        if quadratic_terms:
            terms += [Term.of(quadratic(x)) for x in continuous]
        if interactions:
            terms += [Term.of(linear(a), linear(b)) for a, b in combinations(continuous, 2)]
        terms += [Term.of(categorical(c)) for c in categorical_factors]
        if cross_categorical:
            for c in categorical_factors:
                terms += [Term.of(linear(x), categorical(c)) for x in continuous]
        return cls(tuple(terms), intercept=intercept)

    # === Queries ===

    @property
    def term_names(self) -> tuple[str, ...]:
        """Display names; terms whose short names collide (``A`` and
        ``C(A)``) fall back to their formula spelling."""
        short = [t.name for t in self.terms]
        return tuple(
            t.formula if short.count(t.name) > 1 else t.name
            for t in self.terms
        )

    @property
    def covariates(self) -> tuple[str, ...]:
        """Distinct covariates referenced, in first-use order."""
        seen: dict[str, None] = {}
        for t in self.terms:
            for name in t.covariates:
                seen.setdefault(name, None)
        return tuple(seen)

    def reordered(self, order: Sequence[str]) -> DesignSpecification:
        """Same terms in a new order, given as term names."""
        by_name = dict(zip(self.term_names, self.terms))
        if sorted(order) != sorted(by_name):
            raise MalformedDesignError(
                f"reordering must name every term exactly once: "
                f"got {list(order)}, have {list(by_name)}"
            )
        return DesignSpecification(tuple(by_name[n] for n in order), intercept=self.intercept)

    def validate(self, dataset: Dataset) -> None:
        """Check every factor against the dataset.

        Raises:
            MalformedDesignError: If a covariate is absent, a label column is
                used as a number, or a referenced covariate has missing values.
        """
        for term in self.terms:
            for factor in term.factors:
                name = factor.covariate
                if name not in dataset:
                    raise MalformedDesignError(
                        f"term '{term.name}' references covariate '{name}', "
                        f"which is not in the dataset. "
                        f"Available: {list(dataset.covariate_names)}",
                        covariate=name,
                    )
                if not factor.is_categorical and name not in dataset.continuous:
                    raise MalformedDesignError(
                        f"term '{term.name}' uses categorical covariate '{name}' "
                        f"as a number; wrap it as C({name})",
                        covariate=name,
                    )

        for name in self.covariates:
            col = dataset.column(name)
            if col.dtype == object:
                n_missing = sum(1 for v in col if is_missing(v))
            else:
                n_missing = int(np.sum(np.isnan(col)))
            if n_missing:
                raise MalformedDesignError(
                    f"covariate '{name}' has {n_missing} missing value(s)",
                    covariate=name,
                )

    def __str__(self) -> str:
        parts = (['1'] if self.intercept else ['0']) + [t.formula for t in self.terms]
        return ' + '.join(parts)
