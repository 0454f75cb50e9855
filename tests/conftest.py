"""
Shared test fixtures and pytest configuration.
"""

from datetime import datetime, timedelta, timezone

import pytest
import numpy as np

from volsmile.black_scholes import bs_price
from volsmile.options import OptionQuote, OptionRecord
from volsmile.smile import SmileGraph
from volsmile.svi import SVICurveParameters, svi_variance


NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
SPOT = 100.0
RATE = 0.06
T = 0.25
STRIKES = np.arange(80.0, 120.0 + 1e-9, 2.5)


def make_quote(strike, price, option_type="call", spot=SPOT, T=T, instrument_id=""):
    """Quote expiring T years after NOW."""
    expiry = NOW + timedelta(days=T * 365)
    return OptionQuote.from_expiry(strike, price, spot, option_type, expiry, NOW,
                                   instrument_id=instrument_id)


def quotes_on_curve(params, T=T, strikes=STRIKES, spot=SPOT, rate=RATE):
    """Out-of-the-money quotes priced exactly off an SVI curve."""
    forward = spot * np.exp(rate * T)
    quotes = []
    for K in strikes:
        k = np.log(K / forward)
        iv = np.sqrt(svi_variance(params, k) / T)
        option_type = "put" if K < forward else "call"
        price = bs_price(spot, K, T, rate, iv, option_type)
        quotes.append(make_quote(float(K), float(price), option_type, spot=spot, T=T,
                                 instrument_id=f"TEST-{K:g}-{option_type[0].upper()}"))
    return quotes


@pytest.fixture(autouse=True)
def set_random_seed():
    """Ensure test reproducibility."""
    np.random.seed(42)
    yield


@pytest.fixture
def true_params():
    return SVICurveParameters(a=0.01, b=0.1, p=-0.4, m=0.0, o=0.15)


@pytest.fixture
def curve_quotes(true_params):
    return quotes_on_curve(true_params)


@pytest.fixture
def smile(curve_quotes):
    """Unfit smile holding every curve quote."""
    graph = SmileGraph(rate=RATE)
    for quote in curve_quotes:
        graph.try_insert(OptionRecord(quote, rate=RATE))
    return graph


@pytest.fixture(scope="session")
def fitted_smile():
    """Smile fitted once per session on a small grid. Do not mutate."""
    params = SVICurveParameters(a=0.01, b=0.1, p=-0.4, m=0.0, o=0.15)
    graph = SmileGraph(rate=RATE)
    for quote in quotes_on_curve(params):
        graph.try_insert(OptionRecord(quote, rate=RATE))
    graph.fit(steps=3)
    return graph
