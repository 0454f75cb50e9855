"""
Surface construction: from loose option quotes to a set of fitted smiles,
and from fitted smiles to tables and grids suitable for plotting.

Real chains don't line up across expiries: short-dated options have
dense strikes, long-dated ones sparse, and a handful of quotes in any
batch will be stale or unpriceable. So the pipeline works one expiry at
a time and drops what it can't use instead of failing the batch:

    1. Group quotes by expiry into SmileGraphs (build_smiles). Quotes
       the smile refuses are logged and skipped; smiles with too few
       options to fit are dropped.
    2. Fit every smile (fit_smiles). Smiles are independent, so they
       are fitted in parallel worker processes.
    3. Read the fitted curves back out as pandas tables or as a
       (strike, maturity) grid for the 3D charts.
"""

import os
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from . import config
from .errors import InvalidInputError, VolSmileError
from .logging import get_logger
from .options import OptionQuote, OptionRecord
from .smile import SmileGraph

logger = get_logger(__name__)


# ════════════════════════════════════════════════════════════════════════
#  GROUPING
# ════════════════════════════════════════════════════════════════════════

def build_smiles(
    quotes: Iterable[OptionQuote],
    rate: float = None,
    min_options: int = None,
) -> List[SmileGraph]:
    """
    Group quotes into one SmileGraph per expiry, sorted by expiry.

    Parameters
    ----------
    quotes : converted market quotes, any expiry mix
    rate : carry for IV inversion and forwards (default: config.RISK_FREE_RATE)
    min_options : smallest smile kept (default: config.SMILE_MIN_OPTIONS)
    """
    if rate is None:
        rate = config.RISK_FREE_RATE

    by_expiry = defaultdict(list)
    for quote in quotes:
        by_expiry[quote.expiry].append(quote)

    smiles = []
    for expiry in sorted(by_expiry):
        smile = SmileGraph(min_options=min_options, rate=rate)
        for quote in by_expiry[expiry]:
            try:
                smile.try_insert(OptionRecord(quote, rate=rate))
            except VolSmileError as err:
                logger.warning("Skipping %s: %s", quote.instrument_id or quote.strike, err)

        if smile.is_valid():
            smiles.append(smile)
        else:
            logger.warning(
                "Dropping smile for %s: %d usable options, need %d",
                expiry, len(smile), smile.min_options,
            )

    return smiles


# ════════════════════════════════════════════════════════════════════════
#  FITTING
# ════════════════════════════════════════════════════════════════════════

def _fit_one(smile: SmileGraph, engine_options: dict) -> SmileGraph:
    # runs in a worker process; the fitted copy is sent back
    smile.fit(**engine_options)
    return smile


def fit_smiles(
    smiles: List[SmileGraph],
    max_workers: Optional[int] = None,
    **engine_options,
) -> List[SmileGraph]:
    """
    Fit each smile independently and return the ones that fit.

    Parameters
    ----------
    smiles : smiles to fit
    max_workers : worker processes (default: os.cpu_count()). 1 fits
                  in the calling process and updates the smiles in place.
    **engine_options : passed to SmileGraph.fit

    Returns
    -------
    list of fitted SmileGraph, in input order. With more than one worker
    these are the copies returned by the workers, not the inputs.
    """
    if max_workers is None:
        max_workers = os.cpu_count() or 1
    if max_workers < 1:
        raise InvalidInputError(f"max_workers must be >= 1 (found {max_workers})")

    fitted = []
    if max_workers == 1 or len(smiles) <= 1:
        for smile in smiles:
            try:
                fitted.append(_fit_one(smile, engine_options))
            except VolSmileError as err:
                logger.warning("Failed to fit smile for %s: %s", smile.expiry, err)
        return fitted

    with ProcessPoolExecutor(max_workers=min(max_workers, len(smiles))) as pool:
        futures = [pool.submit(_fit_one, smile, engine_options) for smile in smiles]
        for smile, future in zip(smiles, futures):
            try:
                fitted.append(future.result())
            except VolSmileError as err:
                logger.warning("Failed to fit smile for %s: %s", smile.expiry, err)

    return fitted


# ════════════════════════════════════════════════════════════════════════
#  TABLES
# ════════════════════════════════════════════════════════════════════════

def smiles_to_frame(smiles: Iterable[SmileGraph]) -> pd.DataFrame:
    """One row per smile: expiry, size, forward and fitted SVI parameters."""
    rows = []
    for smile in smiles:
        params = smile.svi_curve_parameters if smile.has_been_fit else None
        row = {
            "expiry": smile.expiry,
            "T": smile.years_to_expiry,
            "n_options": len(smile),
            "forward": smile.forward_price,
            "has_been_fit": smile.has_been_fit,
            "fit_error": smile.fit_error,
            "atm_iv": smile.implied_volatility_at_strike(smile.forward_price) if params else np.nan,
        }
        for name in ("a", "b", "p", "m", "o"):
            row[name] = getattr(params, name) if params else np.nan
        rows.append(row)

    columns = ["expiry", "T", "n_options", "forward", "has_been_fit", "fit_error",
               "atm_iv", "a", "b", "p", "m", "o"]
    return pd.DataFrame(rows, columns=columns)


def smile_to_frame(smile: SmileGraph) -> pd.DataFrame:
    """One row per option: strike, observed IV and (if fit) the curve's IV."""
    forward = smile.forward_price
    df = pd.DataFrame({
        "instrument_id": [o.instrument_id for o in smile.options],
        "strike": [o.strike for o in smile.options],
        "option_type": [o.quote.option_type for o in smile.options],
        "price": [o.quote.price for o in smile.options],
        "log_moneyness": [o.log_moneyness(forward) for o in smile.options],
        "iv": [o.implied_volatility for o in smile.options],
        "total_variance": [o.total_implied_variance for o in smile.options],
    })
    if smile.has_been_fit:
        df["fitted_iv"] = smile.implied_volatility_at_strike(df["strike"].values)
    else:
        df["fitted_iv"] = np.nan
    return df.sort_values("strike").reset_index(drop=True)


# ════════════════════════════════════════════════════════════════════════
#  SURFACE GRID
# ════════════════════════════════════════════════════════════════════════

def build_surface_grid(
    smiles: Iterable[SmileGraph],
    n_k: int = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Evaluate every fitted smile on one shared strike axis.

    The strike axis spans the lowest to highest observed strike across
    all fitted smiles. Each smile's row is read straight off its SVI
    curve, so no interpolation between quotes is needed along strike.

    Parameters
    ----------
    smiles : smiles to stack; unfit ones are ignored
    n_k : number of strike points (default: config.SURFACE_K_POINTS)

    Returns
    -------
    K_grid : 1D strikes (n_k)
    T_grid : 1D maturities, ascending (n_t)
    K_mesh, T_mesh : 2D meshgrids (n_t x n_k)
    IV_mesh : 2D implied vols (n_t x n_k)
    """
    if n_k is None:
        n_k = config.SURFACE_K_POINTS

    fitted = sorted((s for s in smiles if s.has_been_fit), key=lambda s: s.years_to_expiry)
    if not fitted:
        raise InvalidInputError("No fitted smiles to build a surface from")

    K_min = min(s.lowest_observed_strike for s in fitted)
    K_max = max(s.highest_observed_strike for s in fitted)
    if K_max - K_min < 1e-9:
        K_min, K_max = K_min * 0.95, K_max * 1.05

    K_grid = np.linspace(K_min, K_max, n_k)
    T_grid = np.array([s.years_to_expiry for s in fitted])
    K_mesh, T_mesh = np.meshgrid(K_grid, T_grid)
    IV_mesh = np.vstack([s.implied_volatility_at_strike(K_grid) for s in fitted])

    return K_grid, T_grid, K_mesh, T_mesh, IV_mesh


def compute_surface_statistics(smiles: Iterable[SmileGraph]) -> dict:
    """
    Summary statistics over a set of smiles.

    Returns
    -------
    dict with keys:
        n_smiles       : number of smiles
        n_fitted       : number that have been fit
        n_options      : total options across smiles
        strike_range   : (min, max) observed strike
        T_range        : (min, max) years to expiry
        iv_range       : (min, max) observed implied vol
        mean_fit_error : mean SSE over fitted smiles
        atm_iv_mean    : mean fitted IV at the forward
        skew_proxy     : mean fitted IV(0.9 F) - IV(1.1 F)
    """
    smiles = list(smiles)
    if not smiles:
        raise InvalidInputError("No smiles to summarise")

    fitted = [s for s in smiles if s.has_been_fit]
    ivs = [o.implied_volatility for s in smiles for o in s.options]

    stats = {
        "n_smiles": len(smiles),
        "n_fitted": len(fitted),
        "n_options": sum(len(s) for s in smiles),
        "strike_range": (min(s.lowest_observed_strike for s in smiles),
                         max(s.highest_observed_strike for s in smiles)),
        "T_range": (min(s.years_to_expiry for s in smiles),
                    max(s.years_to_expiry for s in smiles)),
        "iv_range": (min(ivs), max(ivs)),
    }

    if fitted:
        errors = [s.fit_error for s in fitted if s.fit_error is not None]
        stats["mean_fit_error"] = float(np.mean(errors)) if errors else np.nan
        stats["atm_iv_mean"] = float(np.mean(
            [s.implied_volatility_at_strike(s.forward_price) for s in fitted]
        ))
        stats["skew_proxy"] = float(np.mean([
            s.implied_volatility_at_strike(0.9 * s.forward_price)
            - s.implied_volatility_at_strike(1.1 * s.forward_price)
            for s in fitted
        ]))
    else:
        stats["mean_fit_error"] = np.nan
        stats["atm_iv_mean"] = np.nan
        stats["skew_proxy"] = np.nan

    return stats
