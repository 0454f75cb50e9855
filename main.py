#!/usr/bin/env python3
"""
main.py: Run the smile fitting pipeline.

Usage:
    python main.py build-surface                          # synthetic (default)
    python main.py build-surface --source data/raw.json   # saved venue records
    python main.py build-graphs                           # charts from saved smiles
"""

import argparse
import logging
import sys
import time
from datetime import datetime, timezone

import numpy as np

from volsmile import config
from volsmile.data_feed import convert_records, generate_svi_quotes, load_market_data
from volsmile.errors import VolSmileError
from volsmile.logging import configure_logging
from volsmile.persistence import load_smiles, save_smiles
from volsmile.surface_builder import (
    build_smiles, build_surface_grid, compute_surface_statistics,
    fit_smiles, smiles_to_frame,
)
from volsmile.visualization import (
    plot_smile_matplotlib, plot_smiles_plotly,
    plot_surface_matplotlib, plot_surface_plotly,
)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Fit arbitrage-checked SVI volatility smiles.")
    p.add_argument("--verbose", "-v", action="store_true", help="log fit progress")
    sub = p.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build-surface", help="fit smiles and save them")
    build.add_argument("--source", default="synthetic",
                       help="'synthetic' or a JSON file of raw option records")
    build.add_argument("--now", type=str, default=None,
                       help="reference time (ISO 8601, UTC if no offset) for raw records, default: current UTC")
    build.add_argument("--workers", type=int, default=None)
    build.add_argument("--steps", type=int, default=None,
                       help="grid points per searched dimension")
    build.add_argument("--output", type=str, default=None,
                       help=f"default: {config.SMILE_DATA_FILE}")

    graphs = sub.add_parser("build-graphs", help="chart previously saved smiles")
    graphs.add_argument("--input", type=str, default=None,
                        help=f"default: {config.SMILE_DATA_FILE}")
    graphs.add_argument("--no-html", action="store_true")

    return p.parse_args(argv)


def _load_quotes(args):
    if args.source == "synthetic":
        return generate_svi_quotes()

    now = datetime.fromisoformat(args.now) if args.now else datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    quotes, failures = convert_records(load_market_data(args.source), now)
    if failures:
        print(f"       Dropped {len(failures)} unusable records")
    return quotes


def build_surface(args) -> None:
    print("[1/3] Loading option quotes...")
    quotes = _load_quotes(args)
    smiles = build_smiles(quotes)
    print(f"       Quotes: {len(quotes)}")
    print(f"       Smiles with enough options: {len(smiles)}")
    if not smiles:
        raise VolSmileError("No usable smiles in the input")

    print("\n[2/3] Fitting SVI curves...")
    engine_options = {}
    if args.steps is not None:
        engine_options["steps"] = args.steps
    fitted = fit_smiles(smiles, max_workers=args.workers, **engine_options)
    print(f"       Fitted: {len(fitted)} / {len(smiles)}")

    table = smiles_to_frame(fitted)
    if not table.empty:
        print(table[["expiry", "T", "n_options", "atm_iv", "fit_error"]]
              .to_string(index=False, float_format=lambda x: f"{x:.4g}"))

    print("\n[3/3] Saving smiles...")
    path = save_smiles(fitted, args.output)
    print(f"       -> {path}")


def build_graphs(args) -> None:
    print("[1/3] Loading saved smiles...")
    smiles = [s for s in load_smiles(args.input) if s.has_been_fit]
    if not smiles:
        raise VolSmileError("No fitted smiles to chart; run build-surface first")

    stats = compute_surface_statistics(smiles)
    print(f"       Smiles: {stats['n_smiles']}")
    print(f"       Strike range: {stats['strike_range'][0]:,.0f} - {stats['strike_range'][1]:,.0f}")
    print(f"       IV range: {stats['iv_range'][0]:.1%} - {stats['iv_range'][1]:.1%}")
    if not np.isnan(stats["atm_iv_mean"]):
        print(f"       ATM IV (mean): {stats['atm_iv_mean']:.1%}")

    print("\n[2/3] Generating static charts...")
    for smile in smiles:
        print(f"       -> {plot_smile_matplotlib(smile)}")
    K_grid, T_grid, K_mesh, T_mesh, IV_mesh = build_surface_grid(smiles)
    print(f"       -> {plot_surface_matplotlib(K_mesh, T_mesh, IV_mesh)}")

    if not args.no_html:
        print("\n[3/3] Generating interactive HTML...")
        print(f"       -> {plot_smiles_plotly(smiles)}")
        print(f"       -> {plot_surface_plotly(K_grid, T_grid, IV_mesh)}")
    else:
        print("\n[3/3] Skipping HTML (--no-html flag)")


def main(argv=None):
    args = parse_args(argv)
    if args.verbose:
        configure_logging(logging.INFO)

    print(f"\n{'='*60}")
    print(f"  SVI Volatility Smiles: {args.command}")
    print(f"{'='*60}\n")

    t0 = time.time()
    try:
        if args.command == "build-surface":
            build_surface(args)
        else:
            build_graphs(args)
    except (VolSmileError, OSError) as e:
        print(f"\n  ERROR: {e}")
        sys.exit(1)

    elapsed = time.time() - t0
    print(f"\n  Done in {elapsed:.1f}s.\n")


if __name__ == "__main__":
    main()
