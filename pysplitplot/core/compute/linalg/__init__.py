"""Linear algebra helpers."""

from pysplitplot.core.compute.linalg.qr import ColumnSelection, select_independent_columns

__all__ = ["ColumnSelection", "select_independent_columns"]
