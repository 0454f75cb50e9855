"""
Black-Scholes pricing, greeks, and implied volatility inversion.

Everything here is closed-form except the IV solver, which expands an
upper bound and then bisects. Option price is strictly increasing in
volatility for T > 0, which is all the bisection relies on.

No dividends: the underlyings this is built for (crypto index options)
don't pay any, and the forward only carries the risk-free rate.

Invalid inputs raise InvalidInputError naming the argument at fault;
T <= 0 raises ExpiredOptionError. Nothing silently returns NaN.

References:
    Black, F. & Scholes, M. (1973). The Pricing of Options and Corporate Liabilities.
    Hull, J.C. (2018). Options, Futures, and Other Derivatives. 10th ed.
"""

import math
from typing import Tuple

import numpy as np
from scipy.stats import norm

from . import config
from .errors import ExpiredOptionError, InvalidInputError, UnsolvableError


# ════════════════════════════════════════════════════════════════════════
#  INPUT VALIDATION
# ════════════════════════════════════════════════════════════════════════

def _require_finite(value: float, name: str) -> None:
    if not math.isfinite(value):
        raise InvalidInputError(f"{name} must be finite (found {value})")


def _require_positive(value: float, name: str) -> None:
    _require_finite(value, name)
    if value <= 0:
        raise InvalidInputError(f"{name} must be > 0 (found {value})")


def _require_unexpired(T: float) -> None:
    _require_finite(T, "T")
    if T <= 0:
        raise ExpiredOptionError(f"option has already expired (T={T})")


def _validate(S: float, K: float, T: float, r: float, sigma: float) -> None:
    _require_positive(S, "S")
    _require_positive(K, "K")
    _require_unexpired(T)
    _require_finite(r, "r")
    _require_positive(sigma, "sigma")


def _is_call(option_type: str) -> bool:
    kind = option_type.lower()
    if kind in ("c", "call"):
        return True
    if kind in ("p", "put"):
        return False
    raise InvalidInputError(f"Unknown option_type: {option_type}. Use 'call' or 'put'.")


# ════════════════════════════════════════════════════════════════════════
#  PRICING
# ════════════════════════════════════════════════════════════════════════

def d1(S: float, K: float, T: float, r: float, sigma: float) -> float:
    """
    Compute d1 in the Black-Scholes formula.

    Parameters
    ----------
    S : spot price
    K : strike price
    T : time to expiry in years
    r : risk-free rate (annualized, continuous compounding)
    sigma : volatility (annualized)

    Returns
    -------
    float
    """
    _validate(S, K, T, r, sigma)
    return (np.log(S / K) + (r + 0.5 * sigma**2) * T) / (sigma * np.sqrt(T))


def d2(d1_value: float, sigma: float, T: float) -> float:
    """Compute d2 = d1 - sigma * sqrt(T) from an already computed d1."""
    _require_finite(d1_value, "d1")
    _require_positive(sigma, "sigma")
    _require_unexpired(T)
    return d1_value - sigma * np.sqrt(T)


def call_price(S: float, K: float, T: float, r: float, sigma: float) -> float:
    """
    European call price under Black-Scholes.

    Returns
    -------
    float : theoretical call price
    """
    _d1 = d1(S, K, T, r, sigma)
    _d2 = d2(_d1, sigma, T)
    return S * norm.cdf(_d1) - K * np.exp(-r * T) * norm.cdf(_d2)


def put_price(S: float, K: float, T: float, r: float, sigma: float) -> float:
    """
    European put price under Black-Scholes.

        P = K * e^{-rT} * N(-d2) - S * N(-d1)
    """
    _d1 = d1(S, K, T, r, sigma)
    _d2 = d2(_d1, sigma, T)
    return K * np.exp(-r * T) * norm.cdf(-_d2) - S * norm.cdf(-_d1)


def bs_price(S: float, K: float, T: float, r: float, sigma: float,
             option_type: str = "call") -> float:
    """Dispatch to call_price or put_price based on option_type."""
    if _is_call(option_type):
        return call_price(S, K, T, r, sigma)
    return put_price(S, K, T, r, sigma)


def price_bounds(S: float, K: float, T: float, r: float,
                 option_type: str = "call") -> Tuple[float, float]:
    """
    Model-free price range implied by put-call parity.

    A call is worth at least S - K*e^{-rT} (buy spot, borrow the
    discounted strike) and never more than the spot itself. A put is
    worth at least K*e^{-rT} - S and never more than the discounted
    strike. Any quote outside these is stale or corrupted.

    Returns
    -------
    (lower, upper) : tuple of floats
    """
    _require_positive(S, "S")
    _require_positive(K, "K")
    _require_unexpired(T)
    _require_finite(r, "r")

    strike_value_now = K * np.exp(-r * T)
    if _is_call(option_type):
        return max(S - strike_value_now, 0.0), S
    return max(strike_value_now - S, 0.0), strike_value_now


# ════════════════════════════════════════════════════════════════════════
#  GREEKS
# ════════════════════════════════════════════════════════════════════════

def delta(S: float, K: float, T: float, r: float, sigma: float,
          option_type: str = "call") -> float:
    """
    Option delta: dV/dS.

    Call delta is in [0, 1]; put delta is in [-1, 0].
    """
    _d1 = d1(S, K, T, r, sigma)
    if _is_call(option_type):
        return norm.cdf(_d1)
    return norm.cdf(_d1) - 1.0


def gamma(S: float, K: float, T: float, r: float, sigma: float) -> float:
    """
    Option gamma: d²V/dS².

    Same for calls and puts (by put-call parity). Peaks at ATM
    and increases as T → 0.
    """
    _d1 = d1(S, K, T, r, sigma)
    return norm.pdf(_d1) / (S * sigma * np.sqrt(T))


def vega(S: float, K: float, T: float, r: float, sigma: float) -> float:
    """
    Option vega: dV/dσ.

    Returns the sensitivity per 1 unit (100%) change in vol.
    Divide by 100 to get sensitivity per 1% vol change.
    """
    _d1 = d1(S, K, T, r, sigma)
    return S * norm.pdf(_d1) * np.sqrt(T)


def theta(S: float, K: float, T: float, r: float, sigma: float,
          option_type: str = "call") -> float:
    """
    Option theta: -dV/dT (time decay per year).

    Divide by 365 for daily theta.
    """
    _d1 = d1(S, K, T, r, sigma)
    _d2 = d2(_d1, sigma, T)

    # common term: time decay from gamma
    time_decay = -(S * norm.pdf(_d1) * sigma) / (2 * np.sqrt(T))

    if _is_call(option_type):
        return time_decay - r * K * np.exp(-r * T) * norm.cdf(_d2)
    return time_decay + r * K * np.exp(-r * T) * norm.cdf(-_d2)


def rho(S: float, K: float, T: float, r: float, sigma: float,
        option_type: str = "call") -> float:
    """
    Option rho: dV/dr, per 1 unit (100%) change in the rate.
    """
    _d2 = d2(d1(S, K, T, r, sigma), sigma, T)
    if _is_call(option_type):
        return K * T * np.exp(-r * T) * norm.cdf(_d2)
    return -K * T * np.exp(-r * T) * norm.cdf(-_d2)


# ════════════════════════════════════════════════════════════════════════
#  IMPLIED VOLATILITY
# ════════════════════════════════════════════════════════════════════════

def implied_vol(
    market_price: float,
    S: float,
    K: float,
    T: float,
    r: float,
    option_type: str = "call",
    tol: float = None,
    max_iter: int = None,
) -> float:
    """
    Compute implied volatility by inverting Black-Scholes.

    Two phases:
      1. bound expansion: start from [0, 2.0] and double the upper
         bound until the model price there reaches the market price
      2. bisection: halve the bracket until it is no wider than tol,
         then return its midpoint

    Before searching, the quote is checked against the put-call parity
    bounds (see price_bounds). A price outside them has no solution and
    usually means stale data, so it fails fast with the reason.

    Parameters
    ----------
    market_price : observed option price
    S : spot price
    K : strike
    T : time to expiry (years)
    r : risk-free rate
    option_type : "call" or "put"
    tol : bracket width to stop at (default: config.IV_SOLVER_TOLERANCE)
    max_iter : cap on each phase (default: config.IV_SOLVER_MAX_ITERATIONS)

    Returns
    -------
    float : implied volatility

    Raises
    ------
    InvalidInputError : non-positive price/spot/strike, non-finite rate
    ExpiredOptionError : T <= 0
    UnsolvableError : price outside parity bounds, or a phase ran out
                      of iterations
    """
    if tol is None:
        tol = config.IV_SOLVER_TOLERANCE
    if max_iter is None:
        max_iter = config.IV_SOLVER_MAX_ITERATIONS

    _require_positive(market_price, "market_price")
    lower_price, upper_price = price_bounds(S, K, T, r, option_type)
    kind = "Call" if _is_call(option_type) else "Put"

    if market_price < lower_price:
        raise UnsolvableError(
            f"{kind} option price mathematically impossibly low "
            f"({market_price} < {lower_price}) (Is the data stale?)"
        )
    if market_price > upper_price:
        raise UnsolvableError(
            f"{kind} option price too high ({market_price} > {upper_price})"
        )

    vol_lower = 0.0
    vol_upper = config.IV_SOLVER_INITIAL_UPPER

    iterations = 0
    while bs_price(S, K, T, r, vol_upper, option_type) < market_price:
        vol_upper *= 2.0
        iterations += 1
        if iterations > max_iter:
            raise UnsolvableError(
                f"Cannot bracket a root: model price stays below {market_price} "
                f"up to vol={vol_upper}"
            )

    iterations = 0
    while vol_upper - vol_lower > tol:
        midpoint = 0.5 * (vol_lower + vol_upper)
        if bs_price(S, K, T, r, midpoint, option_type) > market_price:
            vol_upper = midpoint
        else:
            vol_lower = midpoint

        iterations += 1
        if iterations > max_iter:
            raise UnsolvableError(
                "Too many iterations when finding implied volatility "
                f"(bracket [{vol_lower}, {vol_upper}])"
            )

    return 0.5 * (vol_lower + vol_upper)
