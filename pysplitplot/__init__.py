"""
pysplitplot: REML mixed models for split-plot response-surface experiments.

Fits a linear mixed model with one random intercept per whole-plot unit
and reports GLS fixed effects, Satterthwaite t tests and a sequential
ANOVA table.

Submodules:
    core: Result envelope, exceptions, validation, numerical primitives
    mixed: Dataset, design specification and the REML fitter
"""

__version__ = "0.1.0"

from pysplitplot import core
from pysplitplot import mixed
from pysplitplot.mixed import (
    AnovaTable,
    Dataset,
    DesignSpecification,
    FittedModel,
    Observation,
    fit,
)

__all__ = [
    "__version__",
    "core",
    "mixed",
    "fit",
    "Dataset",
    "Observation",
    "DesignSpecification",
    "FittedModel",
    "AnovaTable",
]
