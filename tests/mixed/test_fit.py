"""End-to-end tests for fit(): estimates, error taxonomy and rank handling."""

import numpy as np
import pytest
from scipy import stats

from pysplitplot.core.exceptions import (
    ConvergenceError,
    InsufficientDataError,
    MalformedDesignError,
    RankDeficiencyError,
    RankDeficiencyWarning,
    ValidationError,
)
from pysplitplot.mixed import Dataset, DesignSpecification, fit
from pysplitplot.mixed._contrasts import build_model_matrix


class TestKnownSolution:
    """3 plots x 9 runs with REML estimates σ²_g = 1.0, σ²_e = 0.5."""

    def test_variance_components(self, three_plots):
        model = fit(three_plots['dataset'], "x", 'plot')
        assert model.group_variance == pytest.approx(1.0, rel=1e-6)
        assert model.residual_variance == pytest.approx(0.5, rel=1e-6)
        assert model.variance_ratio == pytest.approx(2.0, rel=1e-5)
        assert model.icc == pytest.approx(2.0 / 3.0, rel=1e-5)

    def test_fixed_effects(self, three_plots):
        model = fit(three_plots['dataset'], "x", 'plot')
        assert model.fixef['x'] == pytest.approx(2.0, rel=1e-8)
        assert model.fixef['(Intercept)'] == pytest.approx(1.0, rel=1e-8)
        lo, hi = model.confint(0.95)['x']
        assert lo < 2.0 < hi

    def test_within_plot_slope_df(self, three_plots):
        # Within-plot contrast: df = 27 - 3 plots - 1 slope
        model = fit(three_plots['dataset'], "x", 'plot')
        assert model.df_satterthwaite[1] == pytest.approx(23.0, rel=1e-4)
        assert model.anova()['x'].den_df == pytest.approx(23.0, rel=1e-4)

    def test_blups_shrink_group_means(self, three_plots):
        model = fit(three_plots['dataset'], "x", 'plot')
        shrink = 9.0 / 9.5
        u = three_plots['u']
        for label, expected in zip([('p1',), ('p2',), ('p3',)], u):
            assert model.ranef[label] == pytest.approx(shrink * expected, abs=1e-6)

    def test_fitted_plus_residuals(self, three_plots):
        model = fit(three_plots['dataset'], "x", 'plot')
        np.testing.assert_allclose(
            model.fitted_values + model.residuals, three_plots['y'], rtol=1e-12,
        )

    def test_result_metadata(self, three_plots):
        model = fit(three_plots['dataset'], "x", 'plot')
        assert model.info['method'] == 'REML'
        assert model.info['converged']
        assert model.n_iter == model.info['n_iter'] >= 1
        assert 'reml' in model.timing and 'total_seconds' in model.timing
        assert model.n_obs == 27
        assert model.n_groups == 3


class TestOLSEquivalence:
    """Holding σ²_g at 0 reduces REML + GLS to ordinary least squares."""

    FORMULA = "x1 + x2 + C(W) + x1:C(W)"

    def test_coefficients_and_variance(self, correlated_covariates):
        ds = correlated_covariates['dataset']
        model = fit(ds, self.FORMULA, 'group', group_variance=0.0)
        X = build_model_matrix(ds, DesignSpecification.from_formula(self.FORMULA)).X
        beta, *_ = np.linalg.lstsq(X, ds.y, rcond=None)
        rss = float(np.sum((ds.y - X @ beta) ** 2))
        n, p = X.shape

        np.testing.assert_allclose(model.coefficients, beta, rtol=1e-6, atol=1e-10)
        assert model.residual_variance == pytest.approx(rss / (n - p), rel=1e-6)
        assert model.group_variance == 0.0
        np.testing.assert_allclose(model.df_satterthwaite, n - p, rtol=1e-6)

    def test_sequential_f_tests(self, correlated_covariates):
        ds = correlated_covariates['dataset']
        model = fit(ds, self.FORMULA, 'group', group_variance=0.0)
        mm = build_model_matrix(ds, DesignSpecification.from_formula(self.FORMULA))
        n, p = mm.X.shape

        def rss(stop):
            X = mm.X[:, :stop]
            beta, *_ = np.linalg.lstsq(X, ds.y, rcond=None)
            return float(np.sum((ds.y - X @ beta) ** 2))

        sigma2 = rss(p) / (n - p)
        table = model.anova()
        for term in mm.term_names:
            sl = mm.term_slices[term]
            ss = rss(sl.start) - rss(sl.stop)
            df = sl.stop - sl.start
            f_value = ss / df / sigma2
            row = table[term]
            assert row.df == df
            assert row.sum_sq == pytest.approx(ss, rel=1e-6)
            assert row.f_value == pytest.approx(f_value, rel=1e-6)
            assert row.den_df == pytest.approx(n - p, rel=1e-6)
            assert row.p_value == pytest.approx(
                stats.f.sf(f_value, df, n - p), rel=1e-5, abs=1e-12,
            )


class TestConsistency:

    def test_large_sample_recovers_coefficients(self):
        rng = np.random.default_rng(7)
        n_groups, n_per = 40, 20
        n = n_groups * n_per
        group = np.repeat(np.arange(n_groups), n_per)
        x = rng.standard_normal(n)
        y = 1.0 + 2.0 * x + rng.standard_normal(n)
        ds = Dataset.from_arrays(y, continuous={'x': x}, categorical={'g': group})

        model = fit(ds, "x", 'g')
        assert abs(model.fixef['x'] - 2.0) < 0.15
        assert abs(model.fixef['(Intercept)'] - 1.0) < 0.15
        assert abs(model.residual_variance - 1.0) < 0.15
        assert model.group_variance < 0.1

    def test_error_shrinks_as_sample_grows(self):
        rng = np.random.default_rng(11)
        mean_errors = []
        for n_groups in (5, 45, 405):
            errors = []
            for _ in range(10):
                group = np.repeat(np.arange(n_groups), 2)
                x = rng.standard_normal(group.size)
                y = 1.0 + 2.0 * x + rng.standard_normal(group.size)
                ds = Dataset.from_arrays(y, continuous={'x': x}, categorical={'g': group})
                model = fit(ds, "x", 'g')
                errors.append(np.hypot(
                    model.fixef['(Intercept)'] - 1.0, model.fixef['x'] - 2.0,
                ))
            mean_errors.append(np.mean(errors))
        # Error scales like 1/sqrt(n): a factor of 3 per step
        assert mean_errors[0] > mean_errors[1] > mean_errors[2]
        assert mean_errors[2] < 0.1


class TestSplitPlot:

    def test_response_surface_fit(self, split_plot):
        design = DesignSpecification.response_surface(['A', 'B'], ['W'])
        model = fit(split_plot['dataset'], design, split_plot['grouping_key'])
        assert model.n_groups == 18
        assert model.rank == len(model.coefficients) == 12
        assert model.dropped_columns == ()
        assert model.warnings == () or all('boundary' in w for w in model.warnings)
        table = model.anova()
        assert table.terms == ('A', 'B', 'A^2', 'B^2', 'A:B', 'W', 'A:W', 'B:W')
        # Whole-plot terms are tested against fewer df than subplot terms
        assert table['A'].den_df < table['W'].den_df
        assert table['A'].p_value < 0.05

    def test_exact_denominator_df_balanced(self, split_plot):
        model = fit(split_plot['dataset'], "A + B + C(W)", split_plot['grouping_key'])
        assert model.group_variance > 0.0
        table = model.anova()
        # Whole-plot terms: 18 plots - 3 whole-plot parameters
        assert table['A'].den_df == pytest.approx(15.0, rel=1e-6)
        assert table['B'].den_df == pytest.approx(15.0, rel=1e-6)
        # Subplot term: 54 runs - 18 plots - 2 W contrasts
        assert table['W'].df == 2
        assert table['W'].den_df == pytest.approx(34.0, rel=1e-6)
        assert model.df_satterthwaite[1] == pytest.approx(15.0, rel=1e-6)
        assert model.df_satterthwaite[3] == pytest.approx(34.0, rel=1e-6)

    def test_composite_grouping_key(self, split_plot):
        ds = split_plot['dataset']
        model = fit(ds, "A + C(W)", ('A', 'B', 'rep'))
        assert model.n_groups == 18
        assert len(model.ranef) == 18
        assert (-1.0, -1.0, 'r1') in model.ranef


class TestRankDeficiency:

    FORMULA = "A + I(A^2) + C(A) + B"

    def test_aliased_columns_dropped_with_warning(self, split_plot):
        with pytest.warns(RankDeficiencyWarning, match="A\\[-1.0\\]"):
            model = fit(split_plot['dataset'], self.FORMULA, split_plot['grouping_key'])
        assert model.dropped_columns == ('A[-1.0]', 'A[0.0]')
        assert model.rank == 4
        assert any('rank deficient' in w for w in model.warnings)
        assert np.isnan(model.coefficients[3]) and np.isnan(model.se[3])
        assert 'A[0.0]' not in model.fixef

        row = model.anova()['C(A)']
        assert row.df == 0
        assert row.f_value is None and row.p_value is None and row.den_df is None

    def test_later_duplicate_dropped(self, split_plot):
        d = split_plot
        ds = Dataset.from_arrays(
            d['y'],
            continuous={'A': d['A'], 'A2': 2.0 * d['A']},
            categorical={'rep': d['rep'], 'B': d['B']},
        )
        key = ('A', 'B', 'rep')
        with pytest.warns(RankDeficiencyWarning):
            first = fit(ds, "A + A2", key)
        with pytest.warns(RankDeficiencyWarning):
            second = fit(ds, "A2 + A", key)
        assert first.dropped_columns == ('A2',)
        assert second.dropped_columns == ('A',)
        np.testing.assert_allclose(first.fitted_values, second.fitted_values, rtol=1e-8)

    def test_tolerance_exceeded(self, split_plot):
        with pytest.raises(RankDeficiencyError) as exc_info:
            fit(
                split_plot['dataset'], self.FORMULA, split_plot['grouping_key'],
                max_rank_deficiency=1,
            )
        e = exc_info.value
        assert e.rank == 4
        assert e.expected_rank == 6
        assert e.dropped_columns == ('A[-1.0]', 'A[0.0]')

    def test_within_tolerance(self, split_plot):
        with pytest.warns(RankDeficiencyWarning):
            model = fit(
                split_plot['dataset'], self.FORMULA, split_plot['grouping_key'],
                max_rank_deficiency=2,
            )
        assert model.rank == 4

    def test_no_columns_left(self):
        ds = Dataset.from_arrays(
            [1.0, 2.0, 3.0, 4.0],
            continuous={'z': [0.0, 0.0, 0.0, 0.0]},
            categorical={'g': ['a', 'a', 'b', 'b']},
        )
        with pytest.raises(RankDeficiencyError):
            fit(ds, "0 + z", 'g')


class TestErrors:

    def test_single_group(self, three_plots):
        d = three_plots
        ds = Dataset.from_arrays(
            d['y'], continuous={'x': d['x']}, categorical={'plot': ['p'] * 27},
        )
        with pytest.raises(InsufficientDataError) as exc_info:
            fit(ds, "x", 'plot')
        assert exc_info.value.n_groups == 1
        assert exc_info.value.required == 2

    def test_no_residual_df(self):
        ds = Dataset.from_arrays(
            [1.0, 2.0], continuous={'x': [0.0, 1.0]}, categorical={'g': ['a', 'b']},
        )
        with pytest.raises(InsufficientDataError):
            fit(ds, "x", 'g')

    def test_max_iter_zero(self, three_plots):
        with pytest.raises(ConvergenceError) as exc_info:
            fit(three_plots['dataset'], "x", 'plot', max_iter=0)
        assert exc_info.value.iterations == 0

    def test_absent_covariate(self, three_plots):
        with pytest.raises(MalformedDesignError):
            fit(three_plots['dataset'], "x + temp", 'plot')

    def test_absent_grouping_column(self, three_plots):
        with pytest.raises(MalformedDesignError):
            fit(three_plots['dataset'], "x", 'block')

    def test_missing_grouping_component(self, three_plots):
        d = three_plots
        plot = list(d['dataset'].column('plot'))
        plot[4] = None
        ds = Dataset.from_arrays(
            d['y'], continuous={'x': d['x']}, categorical={'plot': plot},
        )
        with pytest.raises(MalformedDesignError, match="missing"):
            fit(ds, "x", 'plot')

    def test_bad_formula(self, three_plots):
        with pytest.raises(MalformedDesignError):
            fit(three_plots['dataset'], "x + log(x)", 'plot')

    @pytest.mark.parametrize("options", [
        {'coding': 'helmert'},
        {'tol': 0.0},
        {'max_iter': -1},
        {'rank_tol': -1e-7},
        {'max_rank_deficiency': -1},
        {'group_variance': -1.0},
        {'group_variance': np.nan},
    ])
    def test_invalid_options(self, three_plots, options):
        with pytest.raises(ValidationError):
            fit(three_plots['dataset'], "x", 'plot', **options)

    def test_not_a_dataset(self, three_plots):
        with pytest.raises(ValidationError):
            fit({'y': [1.0]}, "x", 'plot')
