"""
Option quotes and the records that wrap them inside a smile.

OptionQuote is the immutable market observation. OptionRecord adds the
two derived values every smile needs, implied volatility and total
implied variance, solved lazily and cached after the first success.
Records are frozen: neither the quote nor the rate can change under a
cached value.

Time to expiry is always computed against an explicit reference time
(`now`) passed in by the caller. Nothing here reads the wall clock.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import cached_property

import numpy as np

from . import config
from .black_scholes import implied_vol
from .errors import InvalidInputError, VolSmileError


def year_fraction(start: datetime, end: datetime) -> float:
    """Year fraction between two datetimes (ACT/365 by default)."""
    return (end - start).total_seconds() / (config.DAYS_PER_YEAR * 24 * 3600)


def _normalise_option_type(option_type: str) -> str:
    kind = str(option_type).lower()
    if kind in ("c", "call"):
        return "call"
    if kind in ("p", "put"):
        return "put"
    raise InvalidInputError(f"Unknown option_type: {option_type}. Use 'call' or 'put'.")


@dataclass(frozen=True)
class OptionQuote:
    """One market quote, as converted from upstream data."""

    strike: float
    price: float
    spot: float
    option_type: str
    expiry: datetime
    years_to_expiry: float
    instrument_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "option_type", _normalise_option_type(self.option_type))

    @classmethod
    def from_expiry(
        cls,
        strike: float,
        price: float,
        spot: float,
        option_type: str,
        expiry: datetime,
        now: datetime,
        instrument_id: str = "",
    ) -> "OptionQuote":
        """Build a quote, deriving years to expiry from the reference time."""
        return cls(
            strike=float(strike),
            price=float(price),
            spot=float(spot),
            option_type=option_type,
            expiry=expiry,
            years_to_expiry=year_fraction(now, expiry),
            instrument_id=str(instrument_id),
        )


@dataclass(frozen=True)
class OptionRecord:
    """
    A quote admitted to a smile, with memoised implied vol and variance.

    Parameters
    ----------
    quote : the underlying market quote
    rate : risk-free rate used for the IV inversion (default: config.RISK_FREE_RATE)
    """

    quote: OptionQuote
    rate: float = config.RISK_FREE_RATE

    @property
    def strike(self) -> float:
        return self.quote.strike

    @property
    def expiry(self) -> datetime:
        return self.quote.expiry

    @property
    def years_to_expiry(self) -> float:
        return self.quote.years_to_expiry

    @property
    def instrument_id(self) -> str:
        return self.quote.instrument_id

    @cached_property
    def implied_volatility(self) -> float:
        q = self.quote
        try:
            iv = implied_vol(q.price, q.spot, q.strike, q.years_to_expiry,
                             self.rate, q.option_type)
        except VolSmileError as err:
            raise type(err)(
                f"Failed calculating implied volatility for instrument "
                f"{q.instrument_id or '<unnamed>'}: {err}"
            ) from err
        return float(iv)

    @cached_property
    def total_implied_variance(self) -> float:
        return self.implied_volatility**2 * self.quote.years_to_expiry

    def log_moneyness(self, forward_price: float) -> float:
        """ln(K / F) against the given forward."""
        if not forward_price > 0:
            raise InvalidInputError(f"forward_price must be > 0 (found {forward_price})")
        return float(np.log(self.quote.strike / forward_price))
