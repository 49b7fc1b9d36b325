"""
Shared fixtures for split-plot mixed model tests.

Provides datasets with known structure: an exactly solvable random
intercept layout, a replicated split-plot response-surface experiment and
a larger random-intercept regression.
"""

import numpy as np
import pytest

from pysplitplot.mixed import Dataset


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def three_plots(rng):
    """3 groups x 9 observations, y = 1 + 2x + u_g + e.

    x = 0..8 within every group. Group effects and noise are constructed
    so that the REML estimates are exactly σ²_g = 1.0, σ²_e = 0.5 and the
    slope estimate is exactly 2.0:

        - e is orthogonal to the group indicators and to x, with
          Σe² / 23 = 0.5 (23 = 27 - 3 groups - 1 slope)
        - u = c (-1, 0, 1) with 9 c² - 0.5 = 9, i.e. MSB - MSW = 9 σ²_g
    """
    n_groups, n_per = 3, 9
    n = n_groups * n_per
    group = np.repeat(np.array(['p1', 'p2', 'p3'], dtype=object), n_per)
    x = np.tile(np.arange(n_per, dtype=float), n_groups)

    G = np.zeros((n, n_groups))
    G[np.arange(n), np.repeat(np.arange(n_groups), n_per)] = 1.0
    basis = np.column_stack([G, x])
    raw = rng.standard_normal(n)
    coef, *_ = np.linalg.lstsq(basis, raw, rcond=None)
    e = raw - basis @ coef
    e *= np.sqrt(0.5 * 23 / np.sum(e ** 2))

    c = np.sqrt(1.0 + 0.5 / n_per)
    u = c * np.array([-1.0, 0.0, 1.0])
    y = 1.0 + 2.0 * x + np.repeat(u, n_per) + e

    return {
        'dataset': Dataset.from_arrays(
            y, continuous={'x': x}, categorical={'plot': group},
        ),
        'y': y, 'x': x, 'u': u, 'e': e,
    }


@pytest.fixture
def split_plot(rng):
    """Replicated split-plot response-surface experiment.

    Whole plots: continuous factors A, B on a 3x3 grid (-1, 0, 1), two
    replicates, so 18 whole plots identified by (A, B, rep). Subplots:
    a three-level qualitative factor W in every whole plot. 54 runs.
    """
    levels = np.array([-1.0, 0.0, 1.0])
    rows = []
    for rep in ('r1', 'r2'):
        for a in levels:
            for b in levels:
                for w in ('w1', 'w2', 'w3'):
                    rows.append((a, b, rep, w))

    A = np.array([r[0] for r in rows])
    B = np.array([r[1] for r in rows])
    rep = np.array([r[2] for r in rows], dtype=object)
    W = np.array([r[3] for r in rows], dtype=object)
    n = len(rows)

    plot_ids = {}
    plot = np.array([plot_ids.setdefault((r[0], r[1], r[2]), len(plot_ids)) for r in rows])
    u = rng.normal(0.0, 1.0, size=len(plot_ids))
    w_effect = {'w1': -0.5, 'w2': 0.0, 'w3': 0.5}

    y = (
        10.0 + 1.5 * A - 0.8 * B + 0.6 * A ** 2 - 0.4 * B ** 2 + 0.3 * A * B
        + np.array([w_effect[w] for w in W]) + 0.4 * A * np.where(W == 'w3', 1.0, 0.0)
        + u[plot] + rng.normal(0.0, 0.5, size=n)
    )

    return {
        'dataset': Dataset.from_arrays(
            y,
            continuous={'A': A, 'B': B},
            categorical={'W': W, 'rep': rep},
        ),
        'grouping_key': ('A', 'B', 'rep'),
        'n_plots': len(plot_ids),
        'y': y, 'A': A, 'B': B, 'W': W, 'rep': rep,
    }


@pytest.fixture
def correlated_covariates(rng):
    """Random intercept regression with correlated covariates.

    24 groups x 6 observations. x1 and x2 are correlated so sequential
    sums of squares depend on term order. W is a 3-level label.
    """
    n_groups, n_per = 24, 6
    n = n_groups * n_per
    group = np.repeat(np.arange(n_groups), n_per)
    x1 = rng.standard_normal(n)
    x2 = 0.6 * x1 + 0.8 * rng.standard_normal(n)
    W = rng.choice(np.array(['lo', 'mid', 'hi'], dtype=object), size=n)
    w_effect = {'lo': -1.0, 'mid': 0.0, 'hi': 1.0}
    u = rng.normal(0.0, 1.2, size=n_groups)
    y = (
        3.0 + 1.0 * x1 + 0.5 * x2
        + np.array([w_effect[w] for w in W])
        + 0.3 * x1 * np.where(W == 'hi', 1.0, 0.0)
        + u[group] + rng.normal(0.0, 0.7, size=n)
    )
    return {
        'dataset': Dataset.from_arrays(
            y,
            continuous={'x1': x1, 'x2': x2},
            categorical={'W': W, 'group': group},
        ),
        'n_groups': n_groups,
        'y': y, 'x1': x1, 'x2': x2, 'W': W, 'group': group,
    }
