"""
Smile graphs: one expiry's worth of options and the curve fitted to them.

A SmileGraph is built empty, filled one option at a time through
try_insert (which refuses anything that can't be priced or belongs to
another expiry), checked with is_valid, and then fit. A failed insert
or a failed fit leaves the smile exactly as it was.
"""

import math
from datetime import datetime
from typing import List, Optional, Tuple

import numpy as np

from . import config
from .errors import (
    ExpiredOptionError,
    InternalError,
    InvalidInputError,
    UnsolvableError,
    VolSmileError,
)
from .logging import get_logger
from .options import OptionRecord
from .svi import SVICurveParameters, svi_variance

logger = get_logger(__name__)


class SmileGraph:
    """
    Implied volatility against strike for a set of options sharing one expiry.

    Parameters
    ----------
    min_options : options needed before fitting (default: config.SMILE_MIN_OPTIONS)
    rate : carry used for the forward price (default: config.RISK_FREE_RATE)
    """

    def __init__(self, min_options: int = None, rate: float = None):
        self.min_options = config.SMILE_MIN_OPTIONS if min_options is None else min_options
        self.rate = config.RISK_FREE_RATE if rate is None else rate

        self.options: List[OptionRecord] = []
        self.expiry: Optional[datetime] = None
        self.years_to_expiry: Optional[float] = None

        self.highest_observed_strike = -math.inf
        self.lowest_observed_strike = math.inf
        self.highest_observed_implied_volatility = -math.inf

        self.svi_curve_parameters: Optional[SVICurveParameters] = None
        self.fit_error: Optional[float] = None
        self.has_been_fit = False

        self._forward_price: Optional[float] = None

    def __len__(self) -> int:
        return len(self.options)

    def __repr__(self) -> str:
        expiry = self.expiry.isoformat() if self.expiry else None
        return (f"SmileGraph(expiry={expiry}, options={len(self.options)}, "
                f"has_been_fit={self.has_been_fit})")

    # ── membership ───────────────────────────────────────────────────────

    def try_insert(self, option: OptionRecord) -> None:
        """
        Insert an option. It must share the expiry of those already inserted.

        Raises
        ------
        ExpiredOptionError : the quote has no time left
        InvalidInputError : expiry differs from the smile's
        UnsolvableError / InvalidInputError : implied vol or total
            variance could not be computed
        """
        if option.years_to_expiry <= 0:
            raise ExpiredOptionError(
                f"Option {option.instrument_id} has already expired "
                f"(T={option.years_to_expiry})"
            )

        if self.options and option.expiry != self.expiry:
            raise InvalidInputError(
                f"Cannot mix options with different expiries "
                f"({option.expiry.isoformat()} != {self.expiry.isoformat()})"
            )

        try:
            implied_volatility = option.implied_volatility
            total_implied_variance = option.total_implied_variance
        except VolSmileError as err:
            raise type(err)(f"Calculating total implied variance failed: {err}") from err
        if not total_implied_variance > 0:
            raise UnsolvableError(
                f"Option {option.instrument_id} has non-positive total implied "
                f"variance ({total_implied_variance})"
            )

        if not self.options:
            self.expiry = option.expiry
            self.years_to_expiry = option.years_to_expiry

        self.highest_observed_strike = max(self.highest_observed_strike, option.strike)
        self.lowest_observed_strike = min(self.lowest_observed_strike, option.strike)
        self.highest_observed_implied_volatility = max(
            self.highest_observed_implied_volatility, implied_volatility
        )

        self.options.append(option)

    def is_valid(self) -> bool:
        """True once enough options have been inserted to attempt a fit."""
        return len(self.options) >= self.min_options

    # ── derived data ─────────────────────────────────────────────────────

    @property
    def forward_price(self) -> float:
        """
        Forward of the underlying at this expiry.

        Every member shares spot and expiry, so this is computed once
        from the first option and cached.
        """
        if self._forward_price is None:
            if not self.options:
                raise InternalError("Forward price requested for a smile with no options")
            first = self.options[0]
            self._forward_price = float(
                first.quote.spot * np.exp(self.rate * first.years_to_expiry)
            )
        return self._forward_price

    def observations(self) -> Tuple[np.ndarray, np.ndarray]:
        """(log-moneyness, total implied variance) arrays over all members."""
        if not self.options:
            raise InternalError("Observations requested for a smile with no options")
        forward = self.forward_price
        k = np.array([o.log_moneyness(forward) for o in self.options])
        w = np.array([o.total_implied_variance for o in self.options])
        return k, w

    # ── fitting ──────────────────────────────────────────────────────────

    def fit(self, **engine_options):
        """
        Fit an arbitrage-checked SVI curve to the members.

        Keyword arguments are passed through to svi_fitting.fit_svi_smile.
        On failure the smile is left unfit and the error propagates.

        Returns
        -------
        FitResult
        """
        from .svi_fitting import fit_svi_smile

        if not self.is_valid():
            raise UnsolvableError(
                f"Smile needs at least {self.min_options} options to fit "
                f"(has {len(self.options)})"
            )

        result = fit_svi_smile(self, **engine_options)
        self.svi_curve_parameters = result.params
        self.fit_error = result.sse
        self.has_been_fit = True
        logger.info("Smile %s fit with error of %.3g", self.expiry, result.sse)
        return result

    def restore_fit(self, params: SVICurveParameters, fit_error: float = None) -> None:
        """Install previously fitted parameters without re-fitting."""
        self.svi_curve_parameters = params
        self.fit_error = fit_error
        self.has_been_fit = True

    def implied_volatility_at_strike(self, strike):
        """
        Implied volatility read off the fitted curve.

            sigma(K) = sqrt(w(ln(K / F)) / T)

        Accepts a scalar or an array of strikes.
        """
        if not self.has_been_fit or self.svi_curve_parameters is None:
            raise InvalidInputError("Smile has not been fit")

        strikes = np.asarray(strike, dtype=float)
        if np.any(strikes <= 0):
            raise InvalidInputError("strike must be > 0")

        k = np.log(strikes / self.forward_price)
        w = svi_variance(self.svi_curve_parameters, k)
        iv = np.sqrt(np.asarray(w) / self.years_to_expiry)
        return float(iv) if iv.ndim == 0 else iv
