"""
Tests for the SVI curve model and its butterfly arbitrage scan.
"""

import pytest
import numpy as np
from volsmile.errors import InvalidInputError, UnsolvableError
from volsmile.svi import (
    SVICurveParameters,
    butterfly_density,
    check_svi_parameters,
    has_butterfly_arbitrage,
    svi_implied_vol,
    svi_total_variance,
    svi_variance,
    svi_variance_derivatives,
)


VALID = dict(a=0.04, b=0.1, p=-0.3, m=0.0, o=0.1)


class TestSVIParameters:

    def test_valid_parameters(self):
        params = SVICurveParameters(**VALID)
        assert params.as_tuple() == (0.04, 0.1, -0.3, 0.0, 0.1)

    def test_minimum_variance(self):
        params = SVICurveParameters(**VALID)
        expected = 0.04 + 0.1 * 0.1 * np.sqrt(1 - 0.09)
        assert params.minimum_variance == pytest.approx(expected)

    def test_wing_slopes(self):
        left, right = SVICurveParameters(**VALID).wing_slopes
        assert left == pytest.approx(0.13)
        assert right == pytest.approx(0.07)

    @pytest.mark.parametrize("override", [
        dict(b=-0.1),
        dict(p=1.0),
        dict(p=-1.0),
        dict(o=0.0),
        dict(a=-0.5),                 # minimum variance below the floor
        dict(b=1.5, p=0.5),           # right wing slope 2.25
        dict(b=2.5, p=0.0),           # both wings too steep
        dict(b=0.0),                  # flat wings, slope 0 is excluded
        dict(a=np.nan),
        dict(m=np.inf),
    ])
    def test_invalid_parameters(self, override):
        values = dict(VALID, **override)
        with pytest.raises(UnsolvableError):
            SVICurveParameters(**values)
        with pytest.raises(UnsolvableError):
            check_svi_parameters(**values)

    def test_unchecked_construction(self):
        """validate=False builds a candidate that would otherwise be refused."""
        params = SVICurveParameters(0.04, 1.5, 0.5, 0.0, 0.1, validate=False)
        assert params.wing_slopes[1] == pytest.approx(2.25)

    def test_dict_round_trip(self):
        params = SVICurveParameters(**VALID)
        assert SVICurveParameters.from_dict(params.to_dict()) == params

    def test_frozen(self):
        params = SVICurveParameters(**VALID)
        with pytest.raises(AttributeError):
            params.a = 1.0


class TestSVIEvaluation:

    def test_total_variance_positive_atm(self):
        """Total variance at ATM (k=0) should be positive for valid params."""
        w = svi_variance(SVICurveParameters(**VALID), 0.0)
        assert isinstance(w, float)
        assert w == pytest.approx(0.04 + 0.1 * 0.1)

    def test_total_variance_symmetric_wings(self):
        """With p=0 and m=0 the curve is symmetric around zero."""
        params = SVICurveParameters(a=0.04, b=0.1, p=0.0, m=0.0, o=0.1)
        k = np.linspace(-0.3, 0.3, 101)
        w = svi_variance(params, k)
        np.testing.assert_allclose(w, w[::-1], atol=1e-12)

    def test_negative_p_creates_skew(self):
        """Negative p lifts the left wing above the right."""
        params = SVICurveParameters(a=0.04, b=0.1, p=-0.5, m=0.0, o=0.1)
        w = svi_variance(params, np.array([-0.2, 0.0, 0.2]))
        assert w[0] > w[2] > w[1]

    def test_matches_closed_form(self):
        k = np.linspace(-1, 1, 21)
        params = SVICurveParameters(**VALID)
        np.testing.assert_allclose(
            svi_variance(params, k),
            svi_total_variance(k, 0.04, 0.1, -0.3, 0.0, 0.1),
        )

    def test_non_finite_log_moneyness(self):
        with pytest.raises(InvalidInputError):
            svi_variance(SVICurveParameters(**VALID), np.array([0.0, np.nan]))

    def test_floor_breach_at_query_point(self):
        """An unchecked curve dipping below the floor fails at evaluation."""
        params = SVICurveParameters(-0.05, 0.1, 0.0, 0.0, 0.1, validate=False)
        with pytest.raises(UnsolvableError):
            svi_variance(params, 0.0)

    def test_derivatives_match_finite_differences(self):
        params = SVICurveParameters(**VALID)
        k = np.linspace(-0.5, 0.5, 11)
        h = 1e-5
        first, second = svi_variance_derivatives(params, k)
        w_up = svi_variance(params, k + h)
        w_dn = svi_variance(params, k - h)
        w_0 = svi_variance(params, k)
        np.testing.assert_allclose(first, (w_up - w_dn) / (2 * h), rtol=1e-6, atol=1e-9)
        np.testing.assert_allclose(second, (w_up - 2 * w_0 + w_dn) / h**2, rtol=1e-3, atol=1e-4)

    def test_implied_vol_from_total_variance(self):
        """IV = sqrt(w/T) should be consistent."""
        params = SVICurveParameters(**VALID)
        k = np.array([-0.1, 0.0, 0.1])
        T = 0.25
        np.testing.assert_allclose(
            svi_implied_vol(k, T, params), np.sqrt(svi_variance(params, k) / T)
        )

    def test_implied_vol_needs_positive_time(self):
        with pytest.raises(InvalidInputError):
            svi_implied_vol(0.0, 0.0, SVICurveParameters(**VALID))


class TestButterflyArbitrage:

    def test_valid_curve_is_arbitrage_free(self):
        params = SVICurveParameters(**VALID)
        assert has_butterfly_arbitrage(params, 1.0, 150.0, 100.0) is False

    def test_density_positive_on_valid_curve(self):
        params = SVICurveParameters(**VALID)
        g = butterfly_density(params, np.linspace(-1, 0.5, 50))
        assert np.all(g > 0)

    def test_lee_violation_detected(self):
        """A right wing steeper than 2 produces negative density far out."""
        params = SVICurveParameters(0.04, 1.5, 0.5, 0.0, 0.1, validate=False)
        assert has_butterfly_arbitrage(params, 1.0, 1000.0, 100.0) is True

    def test_coarse_scan_still_sees_wing(self):
        params = SVICurveParameters(0.04, 1.5, 0.5, 0.0, 0.1, validate=False)
        assert has_butterfly_arbitrage(params, 1.0, 1000.0, 100.0, resolution=1)

    @pytest.mark.parametrize("low, high, forward, resolution", [
        (0.0, 150.0, 100.0, 10),
        (150.0, 100.0, 100.0, 10),
        (1.0, 150.0, 0.0, 10),
        (1.0, 150.0, 100.0, 0),
    ])
    def test_bad_scan_arguments(self, low, high, forward, resolution):
        with pytest.raises(InvalidInputError):
            has_butterfly_arbitrage(SVICurveParameters(**VALID), low, high, forward, resolution)
