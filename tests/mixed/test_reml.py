"""Tests for the REML likelihood, its derivatives and Fisher scoring."""

import numpy as np
import pytest

from pysplitplot.core.exceptions import ConvergenceError
from pysplitplot.mixed import _reml
from pysplitplot.mixed import Dataset, DesignSpecification
from pysplitplot.mixed._contrasts import build_model_matrix
from pysplitplot.mixed._random_effects import (
    build_group_structure,
    group_effects,
    marginal_inverse,
    marginal_log_det,
)
from pysplitplot.mixed._reml import (
    estimate_variance_components,
    moment_estimates,
    reml_log_likelihood,
    reml_state,
    variance_parameter_covariance,
)


def _problem(data, formula, key):
    ds = data['dataset']
    X = build_model_matrix(ds, DesignSpecification.from_formula(formula)).X
    return X, ds.y, build_group_structure(ds, key)


class TestGroupStructure:

    def test_labels_first_appearance(self, split_plot):
        groups = build_group_structure(split_plot['dataset'], split_plot['grouping_key'])
        assert groups.n_groups == split_plot['n_plots']
        assert groups.labels[0] == (-1.0, -1.0, 'r1')
        assert groups.labels[1] == (-1.0, 0.0, 'r1')
        np.testing.assert_array_equal(groups.sizes, 3.0)
        np.testing.assert_array_equal(groups.Z.sum(axis=1), 1.0)
        assert groups.name == 'A:B:rep'

    def test_closed_form_inverse(self, three_plots):
        groups = build_group_structure(three_plots['dataset'], 'plot')
        Z = groups.Z
        V = 1.3 * Z @ Z.T + 0.4 * np.eye(Z.shape[0])
        np.testing.assert_allclose(
            marginal_inverse(groups, 1.3, 0.4), np.linalg.inv(V), atol=1e-10,
        )
        np.testing.assert_allclose(
            marginal_log_det(groups, 1.3, 0.4), np.linalg.slogdet(V)[1], rtol=1e-10,
        )

    def test_zero_group_variance(self, three_plots):
        groups = build_group_structure(three_plots['dataset'], 'plot')
        n = groups.Z.shape[0]
        np.testing.assert_allclose(marginal_inverse(groups, 0.0, 2.0), np.eye(n) / 2.0)
        assert np.all(group_effects(groups, 0.0, np.ones(n)) == 0.0)


class TestDerivatives:

    @pytest.fixture
    def problem(self, correlated_covariates):
        return _problem(correlated_covariates, "x1 + x2 + C(W)", 'group')

    def test_score_matches_finite_difference(self, problem):
        X, y, groups = problem
        phi = np.array([0.9, 0.6])
        state = reml_state(X, y, groups, *phi)
        h = 1e-6
        for i in range(2):
            step = np.zeros(2)
            step[i] = h
            numeric = (
                reml_log_likelihood(X, y, groups, *(phi + step))
                - reml_log_likelihood(X, y, groups, *(phi - step))
            ) / (2 * h)
            np.testing.assert_allclose(state.score[i], numeric, rtol=1e-5)

    def test_observed_info_matches_finite_difference(self, problem):
        X, y, groups = problem
        phi = np.array([0.9, 0.6])
        h = 1e-5
        hessian = np.empty((2, 2))
        for i in range(2):
            step = np.zeros(2)
            step[i] = h
            up = reml_state(X, y, groups, *(phi + step)).score
            down = reml_state(X, y, groups, *(phi - step)).score
            hessian[:, i] = (up - down) / (2 * h)
        state = reml_state(X, y, groups, *phi)
        np.testing.assert_allclose(
            state.observed_info, -hessian,
            rtol=1e-4, atol=1e-6 * np.abs(hessian).max(),
        )

    def test_expected_info_positive_definite(self, problem):
        X, y, groups = problem
        state = reml_state(X, y, groups, 0.9, 0.6)
        assert np.all(np.linalg.eigvalsh(state.expected_info) > 0)

    def test_log_likelihood_consistent(self, problem):
        X, y, groups = problem
        state = reml_state(X, y, groups, 0.9, 0.6)
        assert state.log_likelihood == pytest.approx(
            reml_log_likelihood(X, y, groups, 0.9, 0.6)
        )


class TestEstimation:

    def test_exact_balanced_solution(self, three_plots):
        X, y, groups = _problem(three_plots, "x", 'plot')
        est = estimate_variance_components(X, y, groups)
        assert est.group_variance == pytest.approx(1.0, rel=1e-6)
        assert est.residual_variance == pytest.approx(0.5, rel=1e-6)
        assert est.free == (True, True)
        assert est.n_iter >= 1

    def test_moment_estimates_exact_when_balanced(self, three_plots):
        X, y, groups = _problem(three_plots, "x", 'plot')
        group, residual = moment_estimates(X, y, groups)
        # Within-group df here is n - m = 24 rather than 23
        assert residual == pytest.approx(0.5 * 23 / 24, rel=1e-10)
        assert group > 0.0

    def test_score_vanishes_at_optimum(self, correlated_covariates):
        X, y, groups = _problem(correlated_covariates, "x1 + x2 + C(W)", 'group')
        est = estimate_variance_components(X, y, groups)
        state = reml_state(X, y, groups, est.group_variance, est.residual_variance)
        scale = np.abs(np.diag(state.expected_info)) ** 0.5
        assert np.all(np.abs(state.score) / scale < 1e-4)

    def test_fixed_group_variance(self, correlated_covariates):
        X, y, groups = _problem(correlated_covariates, "x1 + x2", 'group')
        est = estimate_variance_components(X, y, groups, group_variance=0.0)
        beta, *_ = np.linalg.lstsq(X, y, rcond=None)
        rss = float(np.sum((y - X @ beta) ** 2))
        assert est.group_variance == 0.0
        assert est.free == (False, True)
        assert est.residual_variance == pytest.approx(rss / (len(y) - X.shape[1]), rel=1e-7)

    def test_boundary_estimate(self, rng):
        # Group means exactly zero: no between-group signal at all
        n_groups, n_per = 6, 5
        group = np.repeat(np.arange(n_groups), n_per)
        e = rng.standard_normal(n_groups * n_per)
        e -= np.bincount(group, weights=e)[group] / n_per
        ds = Dataset.from_arrays(e, categorical={'g': group})
        X = np.ones((len(e), 1))
        est = estimate_variance_components(X, ds.y, build_group_structure(ds, 'g'))
        assert est.group_variance == 0.0
        assert est.residual_variance > 0.0

    def test_max_iter_zero_raises(self, three_plots):
        X, y, groups = _problem(three_plots, "x", 'plot')
        with pytest.raises(ConvergenceError) as exc_info:
            estimate_variance_components(X, y, groups, max_iter=0)
        e = exc_info.value
        assert e.iterations == 0
        assert e.reason == 'max_iterations'
        assert e.group_variance >= 0.0
        assert e.residual_variance > 0.0

    @pytest.fixture
    def flat_elsewhere(self, monkeypatch):
        """Make every point except the first one evaluated infeasible."""
        real = _reml.reml_log_likelihood
        first = []

        def patched(X, y, groups, group_variance, residual_variance):
            if not first:
                first.append((group_variance, residual_variance))
            if (group_variance, residual_variance) == first[0]:
                return real(X, y, groups, group_variance, residual_variance)
            return -np.inf

        monkeypatch.setattr(_reml, 'reml_log_likelihood', patched)

    def test_failed_line_search_raises(self, three_plots, flat_elsewhere):
        X, y, groups = _problem(three_plots, "x", 'plot')
        with pytest.raises(ConvergenceError) as exc_info:
            estimate_variance_components(X, y, groups)
        e = exc_info.value
        assert e.reason == 'line_search'
        assert e.iterations == 1
        # The moment seed is about 4% away from the optimum
        assert e.final_change > 0.01

    def test_failed_line_search_near_optimum_converges(self, three_plots, flat_elsewhere):
        X, y, groups = _problem(three_plots, "x", 'plot')
        est = estimate_variance_components(X, y, groups, tol=0.1)
        assert est.n_iter == 1
        assert est.final_change < np.sqrt(0.1)

    def test_parameter_covariance(self, correlated_covariates):
        X, y, groups = _problem(correlated_covariates, "x1 + x2", 'group')
        est = estimate_variance_components(X, y, groups)
        state = reml_state(X, y, groups, est.group_variance, est.residual_variance)
        A = variance_parameter_covariance(state, est.free)
        assert A.shape == (2, 2)
        assert np.all(np.linalg.eigvalsh(A) > 0)
        A_fixed = variance_parameter_covariance(state, (False, True))
        assert A_fixed.shape == (1, 1)
