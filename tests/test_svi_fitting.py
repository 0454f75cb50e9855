"""
Tests for the grid search + Levenberg-Marquardt curve fitting engine.
"""

import pytest
import numpy as np

from volsmile import config
from volsmile.data_feed import generate_svi_quotes
from volsmile.errors import InvalidInputError, UnsolvableError
from volsmile.options import OptionRecord
from volsmile.smile import SmileGraph
from volsmile.surface_builder import build_smiles
from volsmile.svi import SVICurveParameters, has_butterfly_arbitrage, svi_variance
from volsmile.svi_fitting import (
    FitResult,
    Impatience,
    SearchDimension,
    _SVIProblem,
    arbitrage_scan_bounds,
    derive_search_ranges,
    fit_svi_curve,
    fit_svi_smile,
    grid_points,
)

from conftest import RATE, quotes_on_curve


def _curve_data(params, n=15):
    k = np.linspace(-0.3, 0.2, n)
    return k, svi_variance(params, k)


class TestSearchRanges:

    def test_ranges_follow_data(self):
        k = np.array([-0.2, -0.1, 0.0, 0.1, 0.2])
        w = np.array([0.05, 0.04, 0.035, 0.038, 0.045])
        ranges = derive_search_ranges(k, w, steps=4)

        assert ranges.b.stop == pytest.approx(4.0 * 0.015 / 0.4)
        assert ranges.b.start == pytest.approx(ranges.b.stop / 4)
        assert -1 < ranges.p.start < ranges.p.stop < 1
        assert ranges.m.start == pytest.approx(-0.2)
        assert ranges.m.stop == pytest.approx(0.2)
        assert ranges.o.start == pytest.approx(0.05 * 0.4)
        assert ranges.o.stop == pytest.approx(2.0 * 0.4)

    def test_b_capped_below_lee_bound(self):
        k = np.array([-0.01, 0.0, 0.01])
        w = np.array([1.0, 0.1, 1.0])
        assert derive_search_ranges(k, w, steps=3).b.stop == pytest.approx(1.99)

    def test_degenerate_moneyness_range(self):
        """All quotes at one strike still give a usable grid."""
        k = np.zeros(5)
        w = np.full(5, 0.04)
        ranges = derive_search_ranges(k, w, steps=3)
        assert ranges.o.start > 0
        assert ranges.b.stop == pytest.approx(1e-3)

    def test_planned_points(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        assert derive_search_ranges(k, w, steps=4).planned_points() == 4**4

    def test_needs_two_steps(self):
        with pytest.raises(InvalidInputError):
            derive_search_ranges(np.array([0.0, 0.1]), np.array([0.1, 0.1]), steps=1)


class TestImpatience:

    def test_grows_on_each_advance_without_improvement(self):
        imp = Impatience()
        imp.begin_step(3)
        assert imp.advance(3) == pytest.approx(1.25)
        imp.begin_step(3)
        assert imp.advance(3) == pytest.approx(1.25**2)

    def test_grows_to_cap(self):
        imp = Impatience()
        for _ in range(20):
            imp.begin_step(0)
            imp.advance(0)
        assert imp.multipliers[0] == pytest.approx(4.0)

    def test_dimensions_grow_independently(self):
        imp = Impatience()
        imp.begin_step(3)
        imp.advance(3)
        assert imp.multipliers == [1.0, 1.0, 1.0, 1.25]

    def test_improvement_holds_next_step(self):
        """After reset() the next advance keeps the base step."""
        imp = Impatience()
        for dim in range(4):
            imp.begin_step(dim)
            imp.advance(dim)
        imp.begin_step(3)
        imp.reset()
        assert imp.multipliers == [1.0] * 4
        assert imp.advance(3) == 1.0
        assert imp.advance(0) == 1.0

    def test_restart(self):
        imp = Impatience()
        imp.begin_step(1)
        imp.advance(1)
        imp.restart(1)
        assert imp.multipliers[1] == 1.0

    def test_disabled_never_grows(self):
        imp = Impatience(enabled=False)
        imp.begin_step(0)
        assert imp.advance(0) == 1.0

    def test_disabled_on_small_grids(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        assert not Impatience.for_ranges(derive_search_ranges(k, w, steps=4)).enabled
        assert Impatience.for_ranges(derive_search_ranges(k, w, steps=5)).enabled


class TestGridPoints:

    def test_full_walk_without_impatience(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        ranges = derive_search_ranges(k, w, steps=3)
        points = list(grid_points(ranges, Impatience(enabled=False)))
        assert len(points) == 3**4
        assert len(set(points)) == len(points)

    def test_o_varies_fastest(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        ranges = derive_search_ranges(k, w, steps=3)
        first, second = list(grid_points(ranges, Impatience(enabled=False)))[:2]
        assert first[:3] == second[:3]
        assert second[3] > first[3]

    def test_impatient_walk_covers_every_dimension(self):
        """
        With no improvement at all, each sweep of 6 planned points lands
        on 5: steps of 1.25, 1.56 and 1.95 base steps, then the stop bound.
        """
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        ranges = derive_search_ranges(k, w, steps=6)
        points = list(grid_points(ranges, Impatience(enabled=True)))

        assert len(points) == 5**4
        assert len(set(points)) == len(points)
        for i, dim in enumerate(ranges.dimensions()):
            values = [pt[i] for pt in points]
            assert min(values) == pytest.approx(dim.start)
            assert max(values) == pytest.approx(dim.stop)
            assert len(set(values)) == 5

    def test_improvement_keeps_full_grid(self):
        """A new best after every point keeps every step at its base size."""
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        ranges = derive_search_ranges(k, w, steps=6)
        impatience = Impatience(enabled=True)

        visited = 0
        for _ in grid_points(ranges, impatience):
            visited += 1
            impatience.reset()
        assert visited == ranges.planned_points()

    def test_dimension_planned_steps(self):
        assert SearchDimension("x", 0.0, 1.0, 0.25).planned_steps == 5


class TestSVIProblem:

    @pytest.fixture
    def problem(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        return _SVIProblem(k, w, forward_price=100.0, scan_low=1.0, scan_high=195.0,
                           scan_resolution=150, invalid_loss=999.0)

    def test_jacobian_matches_finite_differences(self, problem):
        x = np.array([0.11, -0.35, 0.01, 0.16])
        assert problem.curve(x) is not None

        h = 1e-6
        numeric = np.empty((problem.k.size, 4))
        for j in range(4):
            up, down = x.copy(), x.copy()
            up[j] += h
            down[j] -= h
            numeric[:, j] = (problem.residuals(up) - problem.residuals(down)) / (2 * h)

        np.testing.assert_allclose(problem.jacobian(x), numeric, atol=1e-7)

    def test_solves_a_in_closed_form(self, problem):
        """Residuals of the best `a` always sum to zero."""
        x = np.array([0.11, -0.35, 0.01, 0.16])
        assert np.sum(problem.residuals(x)) == pytest.approx(0.0, abs=1e-12)

    def test_invalid_trial_is_penalised(self, problem):
        x = np.array([0.1, 1.5, 0.0, 0.15])
        assert problem.curve(x) is None
        np.testing.assert_array_equal(problem.residuals(x), np.full(problem.k.size, 999.0))
        jac = problem.jacobian(x)
        assert jac.shape == (problem.k.size, 4)
        assert not jac.any()


class TestScanBounds:

    def test_default_bounds(self):
        assert arbitrage_scan_bounds(80.0, 120.0) == (1.0, pytest.approx(180.0))

    def test_low_priced_underlying(self):
        low, high = arbitrage_scan_bounds(0.4, 0.6)
        assert low == pytest.approx(0.4 / 1.5)
        assert high == pytest.approx(0.9)

    @pytest.mark.parametrize("multiplier", [1.0, 0.5])
    def test_multiplier_must_widen(self, multiplier):
        with pytest.raises(InvalidInputError):
            arbitrage_scan_bounds(80.0, 120.0, multiplier)

    def test_strikes_must_be_ordered(self):
        with pytest.raises(InvalidInputError):
            arbitrage_scan_bounds(120.0, 80.0)


class TestFitting:

    def test_recovers_known_curve(self):
        true = SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15)
        k, w = _curve_data(true)
        result = fit_svi_curve(k, w, forward_price=100.0, highest_strike=130.0, steps=3)

        assert isinstance(result, FitResult)
        assert result.sse < 1e-8
        assert result.rmse == pytest.approx(np.sqrt(result.sse / k.size))
        np.testing.assert_allclose(svi_variance(result.params, k), w, atol=1e-4)

    def test_fitted_curve_is_arbitrage_free(self):
        true = SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15)
        k, w = _curve_data(true)
        result = fit_svi_curve(k, w, forward_price=100.0, highest_strike=130.0, steps=3)
        assert not has_butterfly_arbitrage(result.params, 1.0, 195.0, 100.0)

    def test_counts_search_effort(self):
        k, w = _curve_data(SVICurveParameters(0.01, 0.1, -0.4, 0.0, 0.15))
        result = fit_svi_curve(k, w, forward_price=100.0, highest_strike=130.0, steps=3)
        assert result.grid_points == result.planned_points == 3**4
        assert 0 < result.refinements <= result.grid_points

    def test_too_few_observations(self):
        with pytest.raises(InvalidInputError):
            fit_svi_curve(np.array([0.0, 0.1, 0.2]), np.array([0.04, 0.04, 0.05]),
                          forward_price=100.0, highest_strike=120.0)

    def test_mismatched_lengths(self):
        with pytest.raises(InvalidInputError):
            fit_svi_curve(np.zeros(5), np.zeros(4), forward_price=100.0, highest_strike=120.0)

    def test_no_valid_curve(self):
        """Variance far below the floor everywhere: nothing to find."""
        k = np.linspace(-0.2, 0.2, 6)
        w = np.full(6, 1e-6)
        with pytest.raises(UnsolvableError, match="No SVI curve found"):
            fit_svi_curve(k, w, forward_price=100.0, highest_strike=120.0, steps=3)

    def test_fit_smile(self, smile):
        result = fit_svi_smile(smile, steps=3)
        assert result.sse < 1e-6
        assert not smile.has_been_fit

    def test_default_grid_on_noisy_quotes(self):
        """The full-size impatient search still visits most of its grid."""
        noisy = build_smiles(generate_svi_quotes(maturities=[0.25], noise_std=0.002, seed=7))[0]
        clean = build_smiles(generate_svi_quotes(maturities=[0.25], noise_std=0.0))[0]
        result = fit_svi_smile(noisy)

        assert result.planned_points == config.FIT_GRID_STEPS**4
        assert result.grid_points >= 0.4 * result.planned_points
        assert result.refinements > 0

        k, w = clean.observations()
        T = clean.years_to_expiry
        np.testing.assert_allclose(np.sqrt(svi_variance(result.params, k) / T),
                                   np.sqrt(w / T), atol=3e-3)

    def test_low_priced_underlying(self, true_params):
        """Strikes well below 1 still get an arbitrage scan covering the data."""
        smile = SmileGraph(rate=RATE)
        for quote in quotes_on_curve(true_params, strikes=np.linspace(0.4, 0.6, 9), spot=0.5):
            smile.try_insert(OptionRecord(quote, rate=RATE))
        result = smile.fit(steps=3)

        low, high = arbitrage_scan_bounds(smile.lowest_observed_strike,
                                          smile.highest_observed_strike)
        assert low < smile.lowest_observed_strike
        assert not has_butterfly_arbitrage(result.params, low, high, smile.forward_price)
        np.testing.assert_allclose(
            smile.implied_volatility_at_strike([o.strike for o in smile.options]),
            [o.implied_volatility for o in smile.options],
            atol=2e-3,
        )

    def test_fit_small_smile(self):
        with pytest.raises(UnsolvableError):
            fit_svi_smile(SmileGraph())
