"""Numerical building blocks shared across pysplitplot."""
