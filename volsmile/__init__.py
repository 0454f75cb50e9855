"""
volsmile
========
Arbitrage-checked SVI volatility smiles from option quotes.

Modules:
    black_scholes      - Pricing, greeks, implied vol bisection
    svi                - Raw SVI curve, parameter checks, butterfly scan
    options            - Option quotes and memoised IV / total variance
    smile              - SmileGraph: one expiry's options and its curve
    svi_fitting        - Grid search + Levenberg-Marquardt curve fitting
    data_feed          - Raw quote conversion and synthetic chains
    surface_builder    - Grouping, parallel fitting, tables and grids
    persistence        - JSON save / load of fitted smiles
    visualization      - 2D/3D charting (matplotlib + plotly)
    errors             - Exception hierarchy
    logging            - Package logger setup
    config             - Global constants and defaults
"""

from .errors import (
    ExpiredOptionError,
    InternalError,
    InvalidInputError,
    UnsolvableError,
    UnusableDataError,
    VolSmileError,
)
from .options import OptionQuote, OptionRecord
from .smile import SmileGraph
from .svi import SVICurveParameters

__version__ = "0.3.0"
__author__ = "Leo"

__all__ = [
    "ExpiredOptionError",
    "InternalError",
    "InvalidInputError",
    "OptionQuote",
    "OptionRecord",
    "SVICurveParameters",
    "SmileGraph",
    "UnsolvableError",
    "UnusableDataError",
    "VolSmileError",
]
