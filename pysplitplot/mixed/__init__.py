"""
Split-plot mixed models: one random intercept per whole-plot unit.

Public API:
    fit()                 REML fit with Satterthwaite tests
    Dataset, Observation  validated input data
    DesignSpecification   ordered fixed-effect terms (formula or builder)
    Term, Factor          building blocks of a design
    FittedModel           result wrapper
    AnovaTable            sequential (Type I) ANOVA table
"""

from pysplitplot.mixed.dataset import Dataset, Observation
from pysplitplot.mixed.design import (
    DesignSpecification, Factor, Term, Transform,
    categorical, linear, quadratic,
)
from pysplitplot.mixed.solvers import fit
from pysplitplot.mixed.solution import AnovaTable, FittedModel

__all__ = [
    "fit",
    "Dataset",
    "Observation",
    "DesignSpecification",
    "Term",
    "Factor",
    "Transform",
    "linear",
    "quadratic",
    "categorical",
    "FittedModel",
    "AnovaTable",
]
