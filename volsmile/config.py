"""
Global configuration for the smile fitting pipeline.

Keeps all magic numbers in one place. Most functions take these as
keyword defaults (None -> value from here), so callers can override
per call without touching this file.
"""

from pathlib import Path


# ── paths ────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
OUTPUT_DIR = PROJECT_ROOT / "output"

MARKET_DATA_FILE = DATA_DIR / "market-data.json"
SMILE_DATA_FILE = DATA_DIR / "smile-graph-data.json"


# ── market assumptions ───────────────────────────────────────────────────
# carry used for both the forward price and the IV inversion. futures on
# the crypto venues typically imply 5-8% depending on expiry.
RISK_FREE_RATE = 0.06
DAYS_PER_YEAR = 365.0           # ACT/365 year fractions


# ── implied vol solver ───────────────────────────────────────────────────
IV_SOLVER_TOLERANCE = 1e-4      # absolute, on the vol axis
IV_SOLVER_INITIAL_UPPER = 2.0   # first upper bracket (200% vol)
IV_SOLVER_MAX_ITERATIONS = 64   # for both bound expansion and bisection


# ── SVI model ────────────────────────────────────────────────────────────
SVI_MIN_VARIANCE = 1e-4         # total variance floor
SVI_MAX_WING_SLOPE = 2.0        # Lee's moment formula bound on b(1 +/- p)


# ── smiles ───────────────────────────────────────────────────────────────
SMILE_MIN_OPTIONS = 5           # fewer points underdetermine a 5-param curve


# ── butterfly arbitrage scan ─────────────────────────────────────────────
ARBITRAGE_SCAN_LOWEST_STRIKE = 1.0        # lowered to min strike / multiplier below this
ARBITRAGE_SCAN_STRIKE_MULTIPLIER = 1.5   # upper bound = this * max strike, must be > 1
ARBITRAGE_SCAN_RESOLUTION = 150


# ── curve fitting ────────────────────────────────────────────────────────
FIT_GRID_STEPS = 6              # planned points per searched dimension
FIT_REQUIRED_IMPROVEMENT = 0.01 # new best must beat old by 1%
FIT_INVALID_LOSS = 999.0        # residual for invalid / arbitrageable trials
FIT_B_RANGE_FACTOR = 4.0        # b_max = factor * range(w) / range(k)
FIT_B_MIN_UPPER = 1e-3
FIT_B_MAX_UPPER = 1.99          # keeps b(1 +/- p) under Lee's bound at p=0
FIT_O_RANGE = (0.05, 2.0)       # o spans these multiples of range(k)
FIT_MIN_LOG_MONEYNESS_RANGE = 0.01
FIT_LOCAL_MAX_EVALUATIONS = 200 # Levenberg-Marquardt budget per seed

IMPATIENCE_GROWTH = 1.25
IMPATIENCE_MAX = 4.0
IMPATIENCE_MIN_PLANNED_POINTS = 500


# ── synthetic data ───────────────────────────────────────────────────────
SYNTHETIC_SPOT = 100.0
SYNTHETIC_MATURITIES = [0.08, 0.25, 0.50, 1.0]
SYNTHETIC_MONEYNESS = (0.80, 1.20)   # strike range as a fraction of spot
SYNTHETIC_STRIKE_STEP = 2.5
# annualised raw SVI, scaled by T per expiry (a and b scale, the rest don't)
SYNTHETIC_SVI = {
    "a": 0.03,
    "b": 0.25,
    "rho": -0.45,
    "m": 0.02,
    "sigma": 0.20,
}
SYNTHETIC_NOISE_STD = 0.0       # relative IV noise; 0 keeps quotes exact
SEED = 42


# ── visualization ────────────────────────────────────────────────────────
DARK_BG = "#0c0c16"
GRID_COLOR_ALPHA = 0.12
DPI = 200
FIG_WIDTH_3D = 14
FIG_HEIGHT_3D = 9
FIG_WIDTH_2D = 12
FIG_HEIGHT_2D = 6
COLORMAP = "viridis"
SMILE_CURVE_POINTS = 200        # resolution of fitted curves on charts
SURFACE_K_POINTS = 80           # strike axis of the stacked surface grid

# camera angles for 3D surface (matplotlib)
ELEV = 25
AZIM = -55

# plotly camera
PLOTLY_CAMERA = dict(eye=dict(x=1.85, y=-1.55, z=0.85))

SKEW_COLORS = ["#ff6b6b", "#ffd93d", "#6bcb77", "#4d96ff", "#b388ff"]
