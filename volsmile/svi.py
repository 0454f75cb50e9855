"""
Stochastic Volatility Inspired (SVI) parameterization.

The raw SVI model (Gatheral, 2004) parameterizes total implied variance
w(k) as a function of log-moneyness k = ln(K/F):

    w(k) = a + b * (p * (k - m) + sqrt((k - m)^2 + o^2))

where:
    a = overall variance level
    b = slope of the wings
    p = rotation / skew (-1 < p < 1)
    m = translation (shifts the minimum)
    o = curvature / ATM smile

This module provides:
    1. The validated parameter set (SVICurveParameters)
    2. Total variance evaluation with a degenerate-variance floor
    3. Analytic first and second derivatives in k
    4. A discretized butterfly arbitrage scan (Gatheral's g function)

The scan is a necessary check only: it looks at finitely many strikes
of a single expiry, so it says nothing about calendar arbitrage.

References:
    Gatheral, J. (2004). A parsimonious arbitrage-free implied volatility
    parameterization with application to the valuation of volatility derivatives.
    Gatheral, J. & Jacquier, A. (2014). Arbitrage-free SVI volatility surfaces.
    Lee, R. (2004). The moment formula for implied volatility at extreme strikes.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Tuple, Union

import numpy as np

from . import config
from .errors import InvalidInputError, UnsolvableError

ArrayLike = Union[float, np.ndarray]


# ════════════════════════════════════════════════════════════════════════
#  PARAMETERS
# ════════════════════════════════════════════════════════════════════════

def check_svi_parameters(a: float, b: float, p: float, m: float, o: float) -> None:
    """
    Raise UnsolvableError unless (a, b, p, m, o) is a usable raw SVI curve.

    Conditions:
      - every value finite
      - b >= 0, -1 < p < 1, o > 0
      - minimum total variance a + b*o*sqrt(1 - p^2) at or above the floor
      - both wing slopes b(1 - p) and b(1 + p) strictly inside (0, 2),
        Lee's moment formula bound
    """
    values = {"a": a, "b": b, "p": p, "m": m, "o": o}
    for name, value in values.items():
        if not math.isfinite(value):
            raise UnsolvableError(f"SVI parameter {name} must be finite (found {value})")

    if b < 0:
        raise UnsolvableError(f"SVI parameter b must be >= 0 (found {b})")
    if not -1.0 < p < 1.0:
        raise UnsolvableError(f"SVI parameter p must be in (-1, 1) (found {p})")
    if o <= 0:
        raise UnsolvableError(f"SVI parameter o must be > 0 (found {o})")

    min_variance = a + b * o * math.sqrt(1.0 - p * p)
    if min_variance < config.SVI_MIN_VARIANCE:
        raise UnsolvableError(
            f"SVI minimum variance {min_variance} below floor {config.SVI_MIN_VARIANCE} "
            f"(a={a}, b={b}, p={p}, m={m}, o={o})"
        )

    for side, slope in (("left", b * (1.0 - p)), ("right", b * (1.0 + p))):
        if not 0.0 < slope < config.SVI_MAX_WING_SLOPE:
            raise UnsolvableError(
                f"SVI {side} wing slope {slope} outside (0, {config.SVI_MAX_WING_SLOPE}) "
                f"(a={a}, b={b}, p={p})"
            )


@dataclass(frozen=True)
class SVICurveParameters:
    """
    One raw SVI curve. Immutable; a new fit replaces the whole object.

    Validated on construction unless validate=False, which builds an
    unchecked candidate (useful for probing invalid curves).
    """

    a: float
    b: float
    p: float
    m: float
    o: float
    validate: bool = field(default=True, repr=False, compare=False)

    def __post_init__(self):
        if self.validate:
            check_svi_parameters(self.a, self.b, self.p, self.m, self.o)

    @property
    def minimum_variance(self) -> float:
        return self.a + self.b * self.o * math.sqrt(max(1.0 - self.p * self.p, 0.0))

    @property
    def wing_slopes(self) -> Tuple[float, float]:
        """(left, right) asymptotic slopes of w(k)."""
        return self.b * (1.0 - self.p), self.b * (1.0 + self.p)

    def as_tuple(self) -> Tuple[float, float, float, float, float]:
        return self.a, self.b, self.p, self.m, self.o

    def to_dict(self) -> Dict[str, float]:
        return {"a": self.a, "b": self.b, "p": self.p, "m": self.m, "o": self.o}

    @classmethod
    def from_dict(cls, values: Dict[str, float]) -> "SVICurveParameters":
        return cls(
            a=float(values["a"]),
            b=float(values["b"]),
            p=float(values["p"]),
            m=float(values["m"]),
            o=float(values["o"]),
        )


# ════════════════════════════════════════════════════════════════════════
#  SVI EVALUATION
# ════════════════════════════════════════════════════════════════════════

def svi_total_variance(k: ArrayLike, a: float, b: float, rho: float,
                       m: float, sigma: float) -> ArrayLike:
    """
    Raw closed form of SVI total implied variance w(k), no floor applied.

    Parameters
    ----------
    k : log-moneyness, k = ln(K/F)
    a, b, rho, m, sigma : SVI parameters

    Returns
    -------
    total implied variance w(k) = sigma_BS^2 * T
    """
    return a + b * (rho * (k - m) + np.sqrt((k - m)**2 + sigma**2))


def svi_variance(params: SVICurveParameters, log_moneyness: ArrayLike) -> ArrayLike:
    """
    Total variance of the curve at the given log-moneyness.

    Raises UnsolvableError if any value falls below the variance floor.
    Valid parameters never do; this catches curves that are only
    degenerate at particular query points.
    """
    k = np.asarray(log_moneyness, dtype=float)
    if not np.all(np.isfinite(k)):
        raise InvalidInputError("log_moneyness must be finite")

    w = svi_total_variance(k, params.a, params.b, params.p, params.m, params.o)
    if np.any(w < config.SVI_MIN_VARIANCE):
        raise UnsolvableError(
            f"SVI variance below {config.SVI_MIN_VARIANCE} is impossible "
            f"(a={params.a}, b={params.b}, p={params.p}, m={params.m}, o={params.o})"
        )
    return float(w) if w.ndim == 0 else w


def svi_variance_derivatives(params: SVICurveParameters,
                             log_moneyness: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
    """
    Analytic dw/dk and d²w/dk² of the SVI curve.

        w'(k)  = b * (p + (k - m) / sqrt((k - m)^2 + o^2))
        w''(k) = b * o^2 / ((k - m)^2 + o^2)^(3/2)
    """
    x = np.asarray(log_moneyness, dtype=float) - params.m
    root = np.sqrt(x**2 + params.o**2)
    first = params.b * (params.p + x / root)
    second = params.b * params.o**2 / root**3
    return first, second


def butterfly_density(params: SVICurveParameters, log_moneyness: ArrayLike) -> ArrayLike:
    """
    Gatheral's g(k); the curve admits butterfly arbitrage wherever g < 0.

        g(k) = (1 - k w' / (2w))^2 - (w'^2 / 4) * (1/w + 1/4) + w'' / 2
    """
    k = np.asarray(log_moneyness, dtype=float)
    w = svi_variance(params, k)
    w1, w2 = svi_variance_derivatives(params, k)

    part1 = (1.0 - k * w1 / (2.0 * w))**2
    part2 = (w1**2 / 4.0) * (1.0 / w + 0.25)
    part3 = w2 / 2.0
    return part1 - part2 + part3


def has_butterfly_arbitrage(
    params: SVICurveParameters,
    strike_low: float,
    strike_high: float,
    forward_price: float,
    resolution: int = None,
) -> bool:
    """
    Scan resolution + 1 equally spaced strikes for butterfly arbitrage.

    Parameters
    ----------
    params : curve to check
    strike_low, strike_high : scan bounds (absolute strikes)
    forward_price : forward used to convert strikes to log-moneyness
    resolution : number of intervals (default: config.ARBITRAGE_SCAN_RESOLUTION)

    Returns
    -------
    bool : True if g(k) < 0 at any scanned strike
    """
    if resolution is None:
        resolution = config.ARBITRAGE_SCAN_RESOLUTION

    if not strike_low > 0:
        raise InvalidInputError(f"strike_low must be > 0 (found {strike_low})")
    if not strike_high > strike_low:
        raise InvalidInputError(
            f"strike_high must exceed strike_low (found {strike_high} <= {strike_low})"
        )
    if not forward_price > 0:
        raise InvalidInputError(f"forward_price must be > 0 (found {forward_price})")
    if int(resolution) < 1:
        raise InvalidInputError(f"resolution must be >= 1 (found {resolution})")

    strikes = np.linspace(strike_low, strike_high, int(resolution) + 1)
    g = butterfly_density(params, np.log(strikes / forward_price))
    return bool(np.any(g < 0.0))


def svi_implied_vol(k: ArrayLike, T: float, params: SVICurveParameters) -> ArrayLike:
    """
    Convert SVI total variance to implied volatility.

    sigma_BS = sqrt(w(k) / T)
    """
    if not T > 0:
        raise InvalidInputError(f"T must be > 0 (found {T})")
    return np.sqrt(svi_variance(params, k) / T)
