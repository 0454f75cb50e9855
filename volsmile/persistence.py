"""
JSON persistence for smile graphs.

A saved smile carries its member quotes and, if it was fit, the SVI
parameters. Loading re-admits the quotes (re-deriving implied vols and
bounds, which is cheap) and restores the curve as-is. It never re-fits.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

from . import config
from .errors import InternalError
from .logging import get_logger
from .options import OptionQuote, OptionRecord
from .smile import SmileGraph
from .svi import SVICurveParameters

logger = get_logger(__name__)

FORMAT_VERSION = 1


def _quote_to_record(quote: OptionQuote) -> dict:
    return {
        "instrument_id": quote.instrument_id,
        "strike": quote.strike,
        "price": quote.price,
        "spot": quote.spot,
        "option_type": quote.option_type,
        "expiry": quote.expiry.isoformat(),
        "years_to_expiry": quote.years_to_expiry,
    }


def _quote_from_record(record: dict) -> OptionQuote:
    return OptionQuote(
        strike=float(record["strike"]),
        price=float(record["price"]),
        spot=float(record["spot"]),
        option_type=record["option_type"],
        expiry=datetime.fromisoformat(record["expiry"]),
        years_to_expiry=float(record["years_to_expiry"]),
        instrument_id=record.get("instrument_id", ""),
    )


def smile_to_record(smile: SmileGraph) -> dict:
    """Serialisable dict for one smile."""
    params = smile.svi_curve_parameters if smile.has_been_fit else None
    return {
        "expiry": smile.expiry.isoformat() if smile.expiry else None,
        "years_to_expiry": smile.years_to_expiry,
        "rate": smile.rate,
        "min_options": smile.min_options,
        "forward_price": smile.forward_price if smile.options else None,
        "highest_observed_strike": smile.highest_observed_strike if smile.options else None,
        "lowest_observed_strike": smile.lowest_observed_strike if smile.options else None,
        "highest_observed_implied_volatility": (
            smile.highest_observed_implied_volatility if smile.options else None
        ),
        "has_been_fit": smile.has_been_fit,
        "fit_error": smile.fit_error,
        "svi_curve_parameters": params.to_dict() if params is not None else None,
        "options": [_quote_to_record(o.quote) for o in smile.options],
    }


def smile_from_record(record: dict) -> SmileGraph:
    """
    Rebuild a smile from smile_to_record output, restoring any fit.

    Raises InternalError if the rebuilt smile disagrees with the saved
    forward price, which would mean the record was edited or corrupted.
    """
    smile = SmileGraph(min_options=record.get("min_options"), rate=record.get("rate"))
    for quote_record in record.get("options", []):
        smile.try_insert(OptionRecord(_quote_from_record(quote_record), rate=smile.rate))

    saved_forward = record.get("forward_price")
    if saved_forward is not None and smile.options:
        if abs(smile.forward_price - saved_forward) > 1e-9 * max(1.0, abs(saved_forward)):
            raise InternalError(
                f"Rebuilt forward {smile.forward_price} does not match saved {saved_forward}"
            )

    params = record.get("svi_curve_parameters")
    if record.get("has_been_fit") and params is not None:
        smile.restore_fit(SVICurveParameters.from_dict(params), record.get("fit_error"))
    return smile


def save_smiles(smiles: Iterable[SmileGraph], path=None) -> Path:
    """Write smiles to a JSON file, creating the directory if needed."""
    path = Path(path) if path is not None else config.SMILE_DATA_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        "version": FORMAT_VERSION,
        "smile_graphs": [smile_to_record(s) for s in smiles],
    }
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
    logger.info("Saved %d smile graphs to %s", len(payload["smile_graphs"]), path)
    return path


def load_smiles(path=None) -> List[SmileGraph]:
    """Read smiles written by save_smiles."""
    path = Path(path) if path is not None else config.SMILE_DATA_FILE
    with open(path, encoding="utf-8") as fh:
        payload = json.load(fh)
    return [smile_from_record(r) for r in payload.get("smile_graphs", [])]
