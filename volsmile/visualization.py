"""
Visualization module: fitted smile charts and stacked 3D surfaces.

Two backends:
    - matplotlib: static PNGs, one per smile, plus the 3D surface
    - plotly: interactive HTML with every smile on one chart, and a
      rotatable surface with hover tooltips

Curves are drawn from SmileGraph.implied_volatility_at_strike only;
the raw quotes appear as markers so the quality of the fit is visible
at a glance. Both backends share the dark theme in config.
"""

from pathlib import Path
from typing import Iterable, List

import numpy as np

import matplotlib
matplotlib.use("Agg")  # non-interactive backend for server/CI environments
import matplotlib.pyplot as plt
from mpl_toolkits.mplot3d import Axes3D  # noqa: F401 (needed for 3d projection)

import plotly.graph_objects as go

from . import config
from .errors import InvalidInputError
from .smile import SmileGraph


def _curve_strikes(smile: SmileGraph, n_points: int = None) -> np.ndarray:
    if n_points is None:
        n_points = config.SMILE_CURVE_POINTS
    return np.linspace(smile.lowest_observed_strike, smile.highest_observed_strike, n_points)


def _require_fitted(smile: SmileGraph) -> None:
    if not smile.has_been_fit:
        raise InvalidInputError(f"Smile for {smile.expiry} has not been fit")


def _label(smile: SmileGraph) -> str:
    return f"{smile.expiry:%d %b %Y} (T={smile.years_to_expiry:.2f}y)"


def _style_axes_2d(fig, ax) -> None:
    fig.patch.set_facecolor(config.DARK_BG)
    ax.set_facecolor(config.DARK_BG)
    ax.tick_params(colors="white", labelsize=10)
    ax.grid(True, alpha=config.GRID_COLOR_ALPHA, color="white")
    for spine in ax.spines.values():
        spine.set_color("#333355")


# ════════════════════════════════════════════════════════════════════════
#  MATPLOTLIB: SINGLE SMILE (static PNG)
# ════════════════════════════════════════════════════════════════════════

def plot_smile_matplotlib(
    smile: SmileGraph,
    title: str = None,
    output_path=None,
) -> Path:
    """
    Render one fitted smile as a PNG: observed IVs and the SVI curve.

    Parameters
    ----------
    smile : a fitted SmileGraph
    title : chart title (default: "Implied Volatility Smile, <expiry>")
    output_path : where to save (default: config.OUTPUT_DIR / "smile-<date>.png")

    Returns
    -------
    Path of the written file
    """
    _require_fitted(smile)
    if title is None:
        title = f"Implied Volatility Smile, {smile.expiry:%d %b %Y}"
    if output_path is None:
        output_path = config.OUTPUT_DIR / f"smile-{smile.expiry:%Y-%m-%d}.png"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    strikes = _curve_strikes(smile)
    fitted_iv = smile.implied_volatility_at_strike(strikes)
    observed_K = [o.strike for o in smile.options]
    observed_iv = [o.implied_volatility * 100 for o in smile.options]

    fig, ax = plt.subplots(figsize=(config.FIG_WIDTH_2D, config.FIG_HEIGHT_2D))
    _style_axes_2d(fig, ax)

    ax.plot(strikes, fitted_iv * 100, color=config.SKEW_COLORS[3],
            linewidth=2.2, label="SVI fit")
    ax.scatter(observed_K, observed_iv, color=config.SKEW_COLORS[0],
               s=22, zorder=3, label="Observed")

    # forward line
    F = smile.forward_price
    ax.axvline(F, color="white", alpha=0.35, linestyle="--", linewidth=1)
    ylim = ax.get_ylim()
    ax.text(F, ylim[1] * 0.97, f" F ≈ {F:,.0f}", color="white", alpha=0.6, fontsize=10)

    ax.set_xlabel("Strike (K)", fontsize=13, color="white")
    ax.set_ylabel("Implied Volatility (σ) %", fontsize=13, color="white")
    ax.set_title(title, fontsize=17, fontweight="bold", color="white")

    ax.legend(loc="upper right", fontsize=10, facecolor="#191930",
              edgecolor="#ffffff30", labelcolor="white")

    plt.tight_layout()
    plt.savefig(output_path, dpi=config.DPI, bbox_inches="tight",
                facecolor=config.DARK_BG, edgecolor="none")
    plt.close(fig)
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  MATPLOTLIB: 3D SURFACE (static PNG)
# ════════════════════════════════════════════════════════════════════════

def plot_surface_matplotlib(
    K_mesh: np.ndarray,
    T_mesh: np.ndarray,
    IV_mesh: np.ndarray,
    title: str = None,
    output_path=None,
) -> Path:
    """
    Render the stacked SVI surface as a PNG.

    Parameters
    ----------
    K_mesh, T_mesh, IV_mesh : 2D arrays from surface_builder.build_surface_grid
    title : chart title
    output_path : default config.OUTPUT_DIR / "vol_surface_3d.png"
    """
    if title is None:
        title = "Implied Volatility Surface (SVI)"
    if output_path is None:
        output_path = config.OUTPUT_DIR / "vol_surface_3d.png"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig = plt.figure(figsize=(config.FIG_WIDTH_3D, config.FIG_HEIGHT_3D))
    ax = fig.add_subplot(111, projection="3d")

    # a single expiry can't form a surface; draw it as a ribbon line
    if IV_mesh.shape[0] < 2:
        ax.plot(K_mesh[0], T_mesh[0], IV_mesh[0] * 100, color=config.SKEW_COLORS[3])
        surf = None
    else:
        surf = ax.plot_surface(
            K_mesh, T_mesh, IV_mesh * 100,
            cmap=config.COLORMAP,
            edgecolor="none",
            alpha=0.95,
            antialiased=True,
        )

    ax.set_xlabel("Strike (K)", fontsize=13, labelpad=12, color="white")
    ax.set_ylabel("Time to Maturity (T)", fontsize=13, labelpad=12, color="white")
    ax.set_zlabel("Implied Volatility (σ) %", fontsize=13, labelpad=12, color="white")
    ax.set_title(title, fontsize=18, fontweight="bold", color="white", pad=20)

    ax.set_facecolor(config.DARK_BG)
    fig.patch.set_facecolor(config.DARK_BG)
    for axis in ["x", "y", "z"]:
        ax.tick_params(axis=axis, colors="white", labelsize=9)
    for pane_axis in (ax.xaxis, ax.yaxis, ax.zaxis):
        pane_axis.pane.fill = False
        pane_axis.pane.set_edgecolor("#333355")
    ax.grid(True, alpha=0.15, color="white")

    ax.view_init(elev=config.ELEV, azim=config.AZIM)

    if surf is not None:
        cbar = fig.colorbar(surf, ax=ax, shrink=0.55, aspect=15, pad=0.08)
        cbar.set_label("Implied Vol (%)", fontsize=11, color="white")
        cbar.ax.tick_params(colors="white", labelsize=9)

    plt.tight_layout()
    plt.savefig(output_path, dpi=config.DPI, bbox_inches="tight",
                facecolor=config.DARK_BG, edgecolor="none")
    plt.close(fig)
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  PLOTLY: ALL SMILES (interactive HTML)
# ════════════════════════════════════════════════════════════════════════

def plot_smiles_plotly(
    smiles: Iterable[SmileGraph],
    title: str = None,
    output_path=None,
) -> Path:
    """Render every fitted smile, with its quotes, on one interactive chart."""
    fitted: List[SmileGraph] = [s for s in smiles if s.has_been_fit]
    if not fitted:
        raise InvalidInputError("No fitted smiles to plot")
    if title is None:
        title = "Implied Volatility Smiles by Expiry"
    if output_path is None:
        output_path = config.OUTPUT_DIR / "smiles.html"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig = go.Figure()
    for i, smile in enumerate(fitted):
        color = config.SKEW_COLORS[i % len(config.SKEW_COLORS)]
        label = _label(smile)
        strikes = _curve_strikes(smile)

        fig.add_trace(go.Scatter(
            x=strikes, y=smile.implied_volatility_at_strike(strikes),
            mode="lines", name=label, legendgroup=label,
            line=dict(color=color, width=2.5),
            hovertemplate="K=%{x:,.0f}  IV=%{y:.1%}<extra></extra>",
        ))
        fig.add_trace(go.Scatter(
            x=[o.strike for o in smile.options],
            y=[o.implied_volatility for o in smile.options],
            mode="markers", name=f"{label} quotes", legendgroup=label,
            showlegend=False,
            marker=dict(color=color, size=6, opacity=0.8),
            text=[o.instrument_id for o in smile.options],
            hovertemplate="%{text}<br>K=%{x:,.0f}  IV=%{y:.1%}<extra></extra>",
        ))

    fig.update_layout(
        title=dict(text=f"<b>{title}</b>", font=dict(size=20, color="white"), x=0.5),
        xaxis=dict(
            title=dict(text="Strike (K)", font=dict(size=14, color="#ddd")),
            tickfont=dict(size=11, color="#ccc"),
            gridcolor="rgba(200,200,200,0.1)",
        ),
        yaxis=dict(
            title=dict(text="Implied Volatility (σ)", font=dict(size=14, color="#ddd")),
            tickformat=".0%",
            tickfont=dict(size=11, color="#ccc"),
            gridcolor="rgba(200,200,200,0.1)",
        ),
        plot_bgcolor=config.DARK_BG,
        paper_bgcolor=config.DARK_BG,
        font=dict(color="white"),
        legend=dict(
            x=0.70, y=0.97, bgcolor="rgba(25,25,45,0.85)",
            bordercolor="rgba(255,255,255,0.15)", borderwidth=1,
            font=dict(size=12),
            title=dict(text="Expiry", font=dict(size=12, color="#ccc")),
        ),
        width=1000, height=550,
        margin=dict(l=60, r=30, t=60, b=50),
    )

    fig.write_html(str(output_path))
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  PLOTLY: 3D SURFACE (interactive HTML)
# ════════════════════════════════════════════════════════════════════════

def plot_surface_plotly(
    K_grid: np.ndarray,
    T_grid: np.ndarray,
    IV_mesh: np.ndarray,
    title: str = None,
    output_path=None,
) -> Path:
    """Render the stacked SVI surface as interactive HTML."""
    if title is None:
        title = "Implied Volatility Surface (SVI)"
    if output_path is None:
        output_path = config.OUTPUT_DIR / "vol_surface_3d.html"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    def _axis(text, **extra):
        return dict(
            title=dict(text=text, font=dict(size=14, color="#ddd")),
            tickfont=dict(size=10, color="#ccc"),
            gridcolor=f"rgba(200,200,200,{config.GRID_COLOR_ALPHA})",
            backgroundcolor=config.DARK_BG,
            **extra,
        )

    fig = go.Figure(data=[go.Surface(
        x=K_grid, y=T_grid, z=IV_mesh,
        colorscale=config.COLORMAP.capitalize(),
        showscale=True,
        colorbar=dict(
            title=dict(text="IV (σ)", font=dict(size=13, color="white")),
            thickness=18, len=0.55, tickformat=".0%",
            tickfont=dict(color="white", size=11),
        ),
        lighting=dict(ambient=0.45, diffuse=0.65, specular=0.25, roughness=0.6),
        opacity=0.97,
        hovertemplate="Strike: %{x:,.0f}<br>T: %{y:.3f}y<br>IV: %{z:.1%}<extra></extra>",
    )])

    fig.update_layout(
        title=dict(text=f"<b>{title}</b>", font=dict(size=22, color="white"), x=0.5),
        scene=dict(
            xaxis=_axis("Strike (K)"),
            yaxis=_axis("Time to Maturity (T)"),
            zaxis=_axis("Implied Vol (σ)", tickformat=".0%"),
            camera=config.PLOTLY_CAMERA,
            bgcolor=config.DARK_BG,
        ),
        paper_bgcolor=config.DARK_BG,
        font=dict(color="white"),
        width=1100, height=750,
        margin=dict(l=10, r=10, t=60, b=10),
    )

    fig.write_html(str(output_path))
    return output_path
