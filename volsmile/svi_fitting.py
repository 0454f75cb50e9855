"""
SVI curve fitting: adaptive grid search plus Levenberg-Marquardt.

Fitting all five raw SVI parameters with a single local least-squares
run is badly conditioned; the answer depends heavily on the starting
point. So the search is split:

    1. `a` only shifts the curve vertically. For fixed (b, p, m, o) the
       best `a` is the mean of (observed - raw) total variance, so it is
       solved in closed form instead of searched.
    2. The remaining four dimensions are walked on a coarse grid whose
       extents come from the data (see derive_search_ranges).
    3. Each grid point that passes the parameter checks and the
       butterfly arbitrage scan seeds a local Levenberg-Marquardt run
       over (b, p, m, o), again with `a` solved at every trial.
    4. A refined curve replaces the best one only if it beats it by a
       clear margin (config.FIT_REQUIRED_IMPROVEMENT).

Grid steps speed up ("impatience") while nothing better turns up and
snap back to their base size the moment something does. Each dimension
keeps its own multiplier: it grows when the block of points swept
since that dimension last advanced brought no improvement, and starts
from 1x at the beginning of every sweep. Every sweep still ends on its
stop bound. On a small grid impatience is switched off, since skipping
points there risks stepping over the optimum.

The objective is the plain sum of squared total-variance residuals;
every option is weighted equally.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from . import config
from .errors import InvalidInputError, UnsolvableError
from .logging import get_logger
from .svi import SVICurveParameters, has_butterfly_arbitrage

logger = get_logger(__name__)

_EPS = 1e-12

GridPoint = Tuple[float, float, float, float]


# ════════════════════════════════════════════════════════════════════════
#  SEARCH SPACE
# ════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SearchDimension:
    """One searched parameter: walk from start to stop in base steps of `step`."""

    name: str
    start: float
    stop: float
    step: float

    @property
    def planned_steps(self) -> int:
        if self.step <= 0:
            return 1
        return int(round((self.stop - self.start) / self.step)) + 1


@dataclass(frozen=True)
class SearchRanges:
    b: SearchDimension
    p: SearchDimension
    m: SearchDimension
    o: SearchDimension

    def dimensions(self) -> Tuple[SearchDimension, ...]:
        return self.b, self.p, self.m, self.o

    def planned_points(self) -> int:
        total = 1
        for dim in self.dimensions():
            total *= dim.planned_steps
        return total


def derive_search_ranges(
    log_moneyness: np.ndarray,
    total_variance: np.ndarray,
    steps: int = None,
) -> SearchRanges:
    """
    Build the (b, p, m, o) grid from the observed smile.

    b : (0, b_max], b_max ~ factor * range(w) / range(k), the observed
        wing steepness, capped below Lee's bound
    p : interior of (-1, 1)
    m : the observed log-moneyness range
    o : a fraction to a small multiple of the log-moneyness range

    Parameters
    ----------
    log_moneyness, total_variance : observed smile
    steps : planned points per dimension (default: config.FIT_GRID_STEPS)
    """
    if steps is None:
        steps = config.FIT_GRID_STEPS
    if steps < 2:
        raise InvalidInputError(f"steps must be >= 2 (found {steps})")

    k = np.asarray(log_moneyness, dtype=float)
    w = np.asarray(total_variance, dtype=float)

    k_mid = 0.5 * (k.max() + k.min())
    k_range = max(float(k.max() - k.min()), config.FIT_MIN_LOG_MONEYNESS_RANGE)
    w_range = float(w.max() - w.min())

    b_max = float(np.clip(config.FIT_B_RANGE_FACTOR * w_range / k_range,
                          config.FIT_B_MIN_UPPER, config.FIT_B_MAX_UPPER))
    b_step = b_max / steps

    p_step = 2.0 / (steps + 1)

    m_start = k_mid - 0.5 * k_range
    m_stop = k_mid + 0.5 * k_range

    o_low, o_high = config.FIT_O_RANGE
    o_start = o_low * k_range
    o_stop = o_high * k_range

    return SearchRanges(
        b=SearchDimension("b", b_step, b_max, b_step),
        p=SearchDimension("p", -1.0 + p_step, 1.0 - p_step, p_step),
        m=SearchDimension("m", m_start, m_stop, (m_stop - m_start) / (steps - 1)),
        o=SearchDimension("o", o_start, o_stop, (o_stop - o_start) / (steps - 1)),
    )


@dataclass
class Impatience:
    """
    Per-dimension step multipliers for the grid walk (b, p, m, o order).

    When a dimension advances, its multiplier grows by `growth` (up to
    `maximum`) unless reset() was called since its previous advance,
    i.e. unless the points swept under its current value improved on the
    best fit. reset() puts every multiplier back to 1x.
    """

    growth: float = config.IMPATIENCE_GROWTH
    maximum: float = config.IMPATIENCE_MAX
    enabled: bool = True
    multipliers: List[float] = field(default_factory=lambda: [1.0] * 4)
    _improved: List[bool] = field(default_factory=lambda: [False] * 4, repr=False)

    def restart(self, dim: int) -> None:
        """Start a fresh sweep of `dim` at its base step."""
        self.multipliers[dim] = 1.0

    def begin_step(self, dim: int) -> None:
        self._improved[dim] = False

    def advance(self, dim: int) -> float:
        """Multiplier for the step `dim` is about to take."""
        if self.enabled and not self._improved[dim]:
            self.multipliers[dim] = min(self.multipliers[dim] * self.growth, self.maximum)
        return self.multipliers[dim]

    def reset(self) -> None:
        self.multipliers = [1.0] * len(self.multipliers)
        self._improved = [True] * len(self._improved)

    @classmethod
    def for_ranges(cls, ranges: SearchRanges) -> "Impatience":
        return cls(enabled=ranges.planned_points() >= config.IMPATIENCE_MIN_PLANNED_POINTS)


def _walk(dim: SearchDimension, index: int, impatience: Impatience) -> Iterator[float]:
    impatience.restart(index)
    value = dim.start
    while True:
        impatience.begin_step(index)
        yield value
        if dim.step <= 0 or value >= dim.stop - _EPS:
            return
        # a long stride never jumps over the stop bound, it lands on it
        value = min(value + dim.step * impatience.advance(index), dim.stop)


def grid_points(ranges: SearchRanges, impatience: Impatience) -> Iterator[GridPoint]:
    """
    Yield (b, p, m, o) candidates, o varying fastest.

    Multipliers are read each time a dimension advances, so a reset()
    the caller makes between yields takes effect on the very next step.
    Ends once every dimension has reached its stop bound.
    """
    b_dim, p_dim, m_dim, o_dim = ranges.dimensions()
    for b in _walk(b_dim, 0, impatience):
        for p in _walk(p_dim, 1, impatience):
            for m in _walk(m_dim, 2, impatience):
                for o in _walk(o_dim, 3, impatience):
                    yield b, p, m, o


# ════════════════════════════════════════════════════════════════════════
#  LEAST SQUARES PROBLEM
# ════════════════════════════════════════════════════════════════════════

def _raw_variance(k: np.ndarray, b: float, p: float, m: float, o: float) -> np.ndarray:
    d = k - m
    return b * (p * d + np.sqrt(d * d + o * o))


class _SVIProblem:
    """
    Residuals and Jacobian over x = (b, p, m, o), `a` solved per trial.

    Trials that give invalid parameters or butterfly arbitrage return a
    flat FIT_INVALID_LOSS residual (and zero Jacobian) so the optimiser
    backs off instead of aborting.
    """

    def __init__(
        self,
        log_moneyness: np.ndarray,
        total_variance: np.ndarray,
        forward_price: float,
        scan_low: float,
        scan_high: float,
        scan_resolution: int,
        invalid_loss: float,
    ):
        self.k = log_moneyness
        self.w = total_variance
        self.forward_price = forward_price
        self.scan_low = scan_low
        self.scan_high = scan_high
        self.scan_resolution = scan_resolution
        self.invalid_loss = invalid_loss

        self._last_x: Optional[np.ndarray] = None
        self._last_curve: Optional[SVICurveParameters] = None

    def curve(self, x) -> Optional[SVICurveParameters]:
        """Valid, arbitrage-free curve for x (with fitted `a`), else None."""
        x = np.asarray(x, dtype=float)
        if self._last_x is not None and np.array_equal(x, self._last_x):
            return self._last_curve

        b, p, m, o = (float(v) for v in x)
        a = float(np.mean(self.w - _raw_variance(self.k, b, p, m, o)))
        try:
            params = SVICurveParameters(a, b, p, m, o)
            if has_butterfly_arbitrage(params, self.scan_low, self.scan_high,
                                       self.forward_price, self.scan_resolution):
                params = None
        except UnsolvableError:
            params = None

        self._last_x = x.copy()
        self._last_curve = params
        return params

    def residuals(self, x) -> np.ndarray:
        params = self.curve(x)
        if params is None:
            return np.full(self.k.shape, self.invalid_loss)
        b, p, m, o = params.b, params.p, params.m, params.o
        return params.a + _raw_variance(self.k, b, p, m, o) - self.w

    def jacobian(self, x) -> np.ndarray:
        params = self.curve(x)
        if params is None:
            return np.zeros((self.k.size, 4))

        b, p, m, o = params.b, params.p, params.m, params.o
        d = self.k - m
        s = np.sqrt(d * d + o * o)

        jac = np.column_stack([
            p * d + s,          # dw/db
            b * d,              # dw/dp
            b * (-p - d / s),   # dw/dm
            b * o / s,          # dw/do
        ])
        # a = mean(w - raw) moves with every parameter; differentiating
        # through it removes each column's mean
        return jac - jac.mean(axis=0)


# ════════════════════════════════════════════════════════════════════════
#  FITTING
# ════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FitResult:
    params: SVICurveParameters
    sse: float
    rmse: float
    grid_points: int
    refinements: int
    planned_points: int


def arbitrage_scan_bounds(
    lowest_strike: float,
    highest_strike: float,
    scan_multiplier: float = None,
) -> Tuple[float, float]:
    """
    Absolute strike range checked for butterfly arbitrage.

    Normally [config.ARBITRAGE_SCAN_LOWEST_STRIKE, multiplier * highest].
    The lower end drops to lowest / multiplier for underlyings priced
    near or below 1, so the scan always covers both wings of the data.
    """
    if scan_multiplier is None:
        scan_multiplier = config.ARBITRAGE_SCAN_STRIKE_MULTIPLIER
    if not scan_multiplier > 1:
        raise InvalidInputError(f"scan_multiplier must be > 1 (found {scan_multiplier})")
    if not 0 < lowest_strike <= highest_strike:
        raise InvalidInputError(
            f"strikes must satisfy 0 < lowest <= highest (found {lowest_strike}, {highest_strike})"
        )
    low = min(config.ARBITRAGE_SCAN_LOWEST_STRIKE, lowest_strike / scan_multiplier)
    return low, scan_multiplier * highest_strike


def _refine(problem: _SVIProblem, seed: GridPoint,
            max_evaluations: int) -> Optional[Tuple[SVICurveParameters, float]]:
    result = least_squares(
        problem.residuals,
        np.asarray(seed, dtype=float),
        jac=problem.jacobian,
        method="lm",
        max_nfev=max_evaluations,
    )
    if not result.success:
        logger.debug("Local refinement from %s did not converge: %s", seed, result.message)
        return None

    params = problem.curve(result.x)
    if params is None:
        return None
    sse = float(np.sum(problem.residuals(result.x) ** 2))
    return params, sse


def fit_svi_curve(
    log_moneyness: np.ndarray,
    total_variance: np.ndarray,
    forward_price: float,
    highest_strike: float,
    lowest_strike: float = None,
    steps: int = None,
    required_improvement: float = None,
    scan_resolution: int = None,
    scan_multiplier: float = None,
    max_evaluations: int = None,
) -> FitResult:
    """
    Find SVI parameters minimising sum((w_model(k_i) - w_i)^2).

    Parameters
    ----------
    log_moneyness : k_i = ln(K_i / F)
    total_variance : observed total implied variance w_i
    forward_price : forward used for the arbitrage scan
    highest_strike : highest observed strike
    lowest_strike : lowest observed strike (default: recovered from the
                    smallest log-moneyness). The scan range comes from
                    arbitrage_scan_bounds.
    steps : grid points per dimension (default: config.FIT_GRID_STEPS)
    required_improvement : fractional SSE gain to count as a new best
                           (default: config.FIT_REQUIRED_IMPROVEMENT)
    scan_resolution : arbitrage scan intervals (default: config.ARBITRAGE_SCAN_RESOLUTION)
    scan_multiplier : (default: config.ARBITRAGE_SCAN_STRIKE_MULTIPLIER)
    max_evaluations : LM function evaluation budget per seed
                      (default: config.FIT_LOCAL_MAX_EVALUATIONS)

    Returns
    -------
    FitResult

    Raises
    ------
    InvalidInputError : mismatched or too few observations
    UnsolvableError : no grid point produced a valid, converged curve
    """
    if required_improvement is None:
        required_improvement = config.FIT_REQUIRED_IMPROVEMENT
    if scan_resolution is None:
        scan_resolution = config.ARBITRAGE_SCAN_RESOLUTION
    if scan_multiplier is None:
        scan_multiplier = config.ARBITRAGE_SCAN_STRIKE_MULTIPLIER
    if max_evaluations is None:
        max_evaluations = config.FIT_LOCAL_MAX_EVALUATIONS

    k = np.asarray(log_moneyness, dtype=float)
    w = np.asarray(total_variance, dtype=float)
    if k.shape != w.shape or k.ndim != 1:
        raise InvalidInputError("log_moneyness and total_variance must be 1D and the same length")
    # LM needs at least as many residuals as free parameters
    if k.size < 4:
        raise InvalidInputError(f"need at least 4 observations to fit SVI (found {k.size})")
    if not forward_price > 0:
        raise InvalidInputError(f"forward_price must be > 0 (found {forward_price})")
    if lowest_strike is None:
        lowest_strike = float(forward_price * np.exp(k.min()))

    scan_low, scan_high = arbitrage_scan_bounds(lowest_strike, highest_strike, scan_multiplier)
    problem = _SVIProblem(
        log_moneyness=k,
        total_variance=w,
        forward_price=forward_price,
        scan_low=scan_low,
        scan_high=scan_high,
        scan_resolution=scan_resolution,
        invalid_loss=config.FIT_INVALID_LOSS,
    )

    ranges = derive_search_ranges(k, w, steps)
    impatience = Impatience.for_ranges(ranges)
    logger.debug("Searching %d planned grid points (impatience %s)",
                 ranges.planned_points(), "on" if impatience.enabled else "off")

    best: Optional[SVICurveParameters] = None
    best_sse = np.inf
    n_points = 0
    n_refined = 0

    for point in grid_points(ranges, impatience):
        n_points += 1

        if problem.curve(point) is None:
            continue

        refined = _refine(problem, point, max_evaluations)
        if refined is None:
            continue
        n_refined += 1

        params, sse = refined
        if best is None or sse < best_sse * (1.0 - required_improvement):
            best, best_sse = params, sse
            impatience.reset()
            logger.debug("New best SVI fit %s with error %.3g", params, sse)

    if best is None:
        raise UnsolvableError(
            f"No SVI curve found: none of {n_points} grid points gave a valid, "
            f"arbitrage-free, converged fit"
        )

    return FitResult(
        params=best,
        sse=best_sse,
        rmse=float(np.sqrt(best_sse / k.size)),
        grid_points=n_points,
        refinements=n_refined,
        planned_points=ranges.planned_points(),
    )


def fit_svi_smile(smile, **kwargs) -> FitResult:
    """
    Fit a populated SmileGraph. Keyword arguments go to fit_svi_curve.

    Does not modify the smile; SmileGraph.fit stores the result.
    """
    if not smile.is_valid():
        raise UnsolvableError(
            f"Smile needs at least {smile.min_options} options to fit (has {len(smile)})"
        )
    k, w = smile.observations()
    return fit_svi_curve(
        k, w,
        forward_price=smile.forward_price,
        highest_strike=smile.highest_observed_strike,
        lowest_strike=smile.lowest_observed_strike,
        **kwargs,
    )
