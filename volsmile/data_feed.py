"""
Option quote ingestion: raw venue records and synthetic chains.

Two sources, same output (a list of OptionQuote):
    1. Raw records: Deribit-style instrument/ticker dicts, as saved to
       JSON by an upstream fetcher. Conversion is per quote: a record
       with missing fields or an unknown currency is logged and dropped,
       the rest of the batch carries on.
    2. Synthetic: quotes priced off known SVI curves (offline,
       reproducible, and the fitted curve should come straight back).

Fetching from the venue over HTTP is not done here; point
load_market_data at whatever the fetcher wrote.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from . import config
from .black_scholes import bs_price
from .errors import UnusableDataError, VolSmileError
from .logging import get_logger
from .options import OptionQuote
from .svi import svi_total_variance

logger = get_logger(__name__)

# prices on coin-margined venues are quoted in the base coin
_COIN_CURRENCIES = ("BTC", "ETH")


# ════════════════════════════════════════════════════════════════════════
#  RAW RECORDS
# ════════════════════════════════════════════════════════════════════════

def _field(record: dict, key: str, instrument: str):
    value = record.get(key)
    if value is None:
        raise UnusableDataError(f"Instrument {instrument} is missing field '{key}'")
    return value


def _number(record: dict, key: str, instrument: str) -> float:
    value = _field(record, key, instrument)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise UnusableDataError(
            f"Instrument {instrument} has non-numeric '{key}': {value!r}"
        ) from None


def quote_from_record(record: dict, now: datetime) -> OptionQuote:
    """
    Convert one raw option record into an OptionQuote.

    Expected layout (Deribit get_instruments + ticker):
        instrument_name, strike, option_type, expiration_timestamp (ms),
        base_currency, ticker_data: {mark_price, index_price}

    The mark price is used as the option price. Coin-quoted marks are
    converted to USD with the index price, which is also the spot.

    Parameters
    ----------
    record : raw instrument dict
    now : reference time for years-to-expiry

    Raises
    ------
    UnusableDataError : missing/non-numeric fields or unknown currency
    """
    instrument = str(record.get("instrument_name") or record.get("instrument_id") or "<unknown>")
    ticker = _field(record, "ticker_data", instrument)

    mark = _number(ticker, "mark_price", instrument)
    index_price = _number(ticker, "index_price", instrument)
    strike = _number(record, "strike", instrument)
    expiry_ms = _number(record, "expiration_timestamp", instrument)

    currency = str(_field(record, "base_currency", instrument)).upper()
    if currency == "USD":
        price = mark
    elif currency in _COIN_CURRENCIES:
        price = mark * index_price
    else:
        raise UnusableDataError(f"Instrument {instrument} has unknown currency {currency}")

    expiry = datetime.fromtimestamp(expiry_ms / 1000.0, tz=timezone.utc)
    try:
        return OptionQuote.from_expiry(
            strike=strike,
            price=price,
            spot=index_price,
            option_type=_field(record, "option_type", instrument),
            expiry=expiry,
            now=now,
            instrument_id=instrument,
        )
    except VolSmileError as err:
        raise UnusableDataError(f"Instrument {instrument}: {err}") from err


def convert_records(
    records: Iterable[dict],
    now: datetime,
) -> Tuple[List[OptionQuote], List[Tuple[str, str]]]:
    """
    Convert a batch of raw records, dropping the ones that fail.

    Returns
    -------
    quotes : converted quotes, in input order
    failures : (instrument, reason) for every dropped record
    """
    quotes = []
    failures = []
    for record in records:
        try:
            quotes.append(quote_from_record(record, now))
        except UnusableDataError as err:
            instrument = str(record.get("instrument_name", "<unknown>"))
            logger.warning("Dropping quote %s: %s", instrument, err)
            failures.append((instrument, str(err)))
    return quotes, failures


def load_market_data(path=None) -> List[dict]:
    """
    Read raw option records from a JSON file.

    Accepts either {"options": [...]} or a bare list of records.
    """
    path = Path(path) if path is not None else config.MARKET_DATA_FILE
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("options", [])
    if not isinstance(data, list):
        raise UnusableDataError(f"{path} does not contain a list of option records")
    return data


# ════════════════════════════════════════════════════════════════════════
#  SYNTHETIC DATA (SVI)
# ════════════════════════════════════════════════════════════════════════

def generate_svi_quotes(
    spot: float = None,
    maturities: Optional[Sequence[float]] = None,
    strikes: Optional[np.ndarray] = None,
    now: Optional[datetime] = None,
    seed: Optional[int] = None,
    noise_std: float = None,
    rate: float = None,
) -> List[OptionQuote]:
    """
    Generate out-of-the-money quotes whose implied vols lie on known SVI curves.

    For each maturity T the annualised config.SYNTHETIC_SVI curve is
    scaled to total variance (a and b times T), read off at each
    strike's log-moneyness against the forward, and priced with
    Black-Scholes. Puts below the forward, calls at or above it.

    Parameters
    ----------
    spot : underlying price (default: config.SYNTHETIC_SPOT)
    maturities : years to expiry (default: config.SYNTHETIC_MATURITIES)
    strikes : absolute strikes (default: config.SYNTHETIC_MONEYNESS range
              in config.SYNTHETIC_STRIKE_STEP steps)
    now : reference time, expiries are now + T (default: 2025-01-01 UTC)
    seed : random seed for noise (default: config.SEED)
    noise_std : relative IV noise (default: config.SYNTHETIC_NOISE_STD)
    rate : carry rate (default: config.RISK_FREE_RATE)

    Returns
    -------
    list of OptionQuote
    """
    if spot is None:
        spot = config.SYNTHETIC_SPOT
    if maturities is None:
        maturities = config.SYNTHETIC_MATURITIES
    if strikes is None:
        low, high = config.SYNTHETIC_MONEYNESS
        strikes = np.arange(spot * low, spot * high + 1e-9, config.SYNTHETIC_STRIKE_STEP)
    if now is None:
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    if noise_std is None:
        noise_std = config.SYNTHETIC_NOISE_STD
    if rate is None:
        rate = config.RISK_FREE_RATE

    np.random.seed(config.SEED if seed is None else seed)
    svi = config.SYNTHETIC_SVI

    quotes = []
    for T in maturities:
        expiry = now + timedelta(days=T * config.DAYS_PER_YEAR)
        forward = spot * np.exp(rate * T)

        for K in strikes:
            k = np.log(K / forward)
            w = svi_total_variance(k, svi["a"] * T, svi["b"] * T, svi["rho"], svi["m"], svi["sigma"])
            iv = np.sqrt(w / T)
            if noise_std > 0:
                iv *= 1.0 + np.random.normal(0, noise_std)

            option_type = "put" if K < forward else "call"
            price = bs_price(spot, K, T, rate, iv, option_type)

            quotes.append(OptionQuote.from_expiry(
                strike=float(K),
                price=float(price),
                spot=spot,
                option_type=option_type,
                expiry=expiry,
                now=now,
                instrument_id=f"SYN-{expiry:%d%b%y}-{K:g}-{option_type[0].upper()}",
            ))

    return quotes
