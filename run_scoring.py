#!/usr/bin/env python3
"""
Portfolio Scoring Engine: Entry Point
=====================================
Scores a universe of securities from one input bundle, resolves betas,
computes portfolio risk metrics and holding performance, and writes an Excel
report plus a JSON dump of the scored records.

    python run_scoring.py --input bundle.json
    python run_scoring.py --input bundle.json --profile CAUTIOUS --scope universe
    python run_scoring.py --input bundle.json --deadline-seconds 20

Bundle layout (JSON):
    fundamentals           ticker -> provider snapshot
    prices                 ticker -> price history (current_price, price_1d_ago, ...)
    benchmark_weights      ticker -> {benchmark: weight}
    benchmark_assignments  ticker -> benchmark
    holdings               ticker -> weight in percent of NAV
    nav                    [{"snapshot_date": "YYYY-MM-DD", "nav": float}, ...]
"""

import argparse
import json
import shutil
import sys
import time
from pathlib import Path

import pandas as pd
import yaml
from pydantic import ValidationError

from beta_resolver import portfolio_beta_exposure, resolve_universe_betas
from factor_engine import (
    CONFIG_PATH,
    load_config,
    rank_securities,
    score_universe,
    to_scored_securities,
)
from metric_extractor import build_metric_frame, raw_betas
from peer_scope import make_peer_selector, weights_frame
from performance import all_holdings_performance, portfolio_totals
from report_writer import write_report
from risk_metrics import compute_risk_metrics, price_max_drawdown
from run_context import RunContext
from schemas import NavSnapshot, PriceHistory, RunConfig

ROOT = Path(__file__).resolve().parent


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Portfolio factor scoring and risk engine")
    p.add_argument("--input", required=True, type=Path,
                   help="JSON bundle with fundamentals, prices, weights, holdings, nav")
    p.add_argument("--profile", type=str, default=None,
                   help="Weight profile name (default: scoring.default_profile)")
    p.add_argument("--scope", choices=["universe", "benchmark"], default=None,
                   help="Peer scope (default: scoring.peer_scope)")
    p.add_argument("--config", type=Path, default=CONFIG_PATH,
                   help="Path to config.yaml")
    p.add_argument("--out", type=Path, default=ROOT / "output",
                   help="Directory for the Excel report and JSON records")
    p.add_argument("--deadline-seconds", type=float, default=None,
                   help="Stop starting new scoring batches after this many seconds")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Loaders with error handling
# ---------------------------------------------------------------------------
def load_config_safe(path: Path):
    """Load and validate config.yaml; exits with a readable message on failure."""
    if not path.exists():
        print(f"\n  ERROR: config not found at {path}")
        sys.exit(1)
    try:
        raw = load_config(path)
        return raw, RunConfig(**raw)
    except yaml.YAMLError as e:
        print(f"\n  ERROR: Failed to parse {path.name}: {e}")
        sys.exit(1)
    except ValidationError as e:
        print(f"\n  ERROR: Invalid configuration in {path.name}:\n{e}")
        sys.exit(1)


def load_bundle(path: Path) -> dict:
    """Read the input bundle and normalize ticker keys."""
    with open(path, "r") as f:
        bundle = json.load(f)

    def _upper_keys(d):
        return {str(k).strip().upper(): v for k, v in (d or {}).items()}

    prices = {}
    for ticker, rec in _upper_keys(bundle.get("prices")).items():
        ph = PriceHistory(**(rec or {}))
        if ph.max_drawdown is None and ph.closes:
            ph.max_drawdown = price_max_drawdown(ph.closes)
        prices[ticker] = ph.model_dump()

    return {
        "fundamentals": _upper_keys(bundle.get("fundamentals")),
        "prices": prices,
        "benchmark_weights": bundle.get("benchmark_weights") or {},
        "benchmark_assignments": bundle.get("benchmark_assignments") or {},
        "holdings": _upper_keys(bundle.get("holdings")),
        "nav": [NavSnapshot(**s) for s in bundle.get("nav") or []],
    }


def reference_index_weights(weights: dict, reference_index) -> dict:
    """ticker -> numeric weight in the reference index.

    Weights that do not parse as numbers (``"-"``, ``""``) are dropped.
    """
    if not reference_index:
        return {}
    wf = weights_frame(weights)
    ref = str(reference_index).strip().upper()
    if wf.empty or ref not in wf.columns:
        return {}
    return wf[ref].dropna().astype(float).to_dict()


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------
def main(argv=None):
    t0 = time.time()
    args = parse_args(argv)

    # ---- 0. Run context ----
    ctx = RunContext()
    print("============================================")
    print(f"  PORTFOLIO SCORING  [run_id={ctx.run_id}]")
    print("============================================")

    # ---- 1. Config ----
    print("Loading configuration...")
    raw_cfg, cfg = load_config_safe(args.config)
    ctx.save_config(raw_cfg)
    try:
        profile = cfg.profile(args.profile)
    except KeyError as e:
        print(f"\n  ERROR: {e.args[0]} (available: {sorted(cfg.profiles)})")
        sys.exit(1)
    scope = args.scope or cfg.scoring.peer_scope
    print(f"  Profile: {profile.name}   Peer scope: {scope}")

    # ---- 2. Input bundle ----
    print(f"Loading input bundle {args.input}...")
    bundle = load_bundle(args.input)
    print(f"  {len(bundle['fundamentals'])} fundamental snapshots, "
          f"{len(bundle['prices'])} price histories, "
          f"{len(bundle['holdings'])} holdings, {len(bundle['nav'])} NAV points")

    # ---- 3. Metrics ----
    print("Extracting metrics...")
    frame, skipped = build_metric_frame(bundle["fundamentals"], bundle["prices"],
                                        cfg.scoring.surprise_units)
    if skipped:
        print(f"  Skipped (missing data): {skipped[:10]}"
              + (" ..." if len(skipped) > 10 else ""))
    ctx.save_artifact("metrics", frame)

    # ---- 4. Scoring ----
    print("Scoring securities...")
    deadline = (time.monotonic() + args.deadline_seconds
                if args.deadline_seconds is not None else None)
    selector = make_peer_selector(scope, bundle["benchmark_assignments"],
                                  bundle["benchmark_weights"])
    scored = score_universe(
        frame, profile, selector,
        min_peer_count=cfg.scoring.min_peer_count,
        min_complete_pct=cfg.scoring.min_complete_pct,
        batch_size=cfg.scoring.batch_size,
        max_workers=cfg.scoring.max_workers,
        inter_batch_delay=cfg.scoring.inter_batch_delay,
        deadline=deadline,
    )
    ranked = rank_securities(scored)
    ctx.save_artifact("scores", ranked)
    records = to_scored_securities(ranked)
    n_unscored = int((~ranked["scored"]).sum()) if len(ranked) else 0
    n_low = int(ranked["low_confidence"].sum()) if len(ranked) else 0
    print(f"  Scored {len(ranked) - n_unscored}/{len(ranked)}  "
          f"(low-confidence peer sets: {n_low})")

    # ---- 5. Betas ----
    print("Resolving betas...")
    raw_by_ticker = {t: raw_betas(f) for t, f in bundle["fundamentals"].items()}
    estimates = resolve_universe_betas(
        raw_by_ticker,
        reference_index_weights(bundle["benchmark_weights"], cfg.beta.reference_index),
        cfg.beta,
    )
    betas_df = pd.DataFrame([e.model_dump() for e in estimates.values()],
                            columns=["ticker", "beta_1y", "beta_3y", "beta_5y",
                                     "true_beta", "is_cash"])
    exposure = None
    if bundle["holdings"]:
        exposure = portfolio_beta_exposure(bundle["holdings"], estimates, cfg.beta)
        print(f"  Portfolio true beta: {exposure['true_beta']:.2f}")

    # ---- 6. Risk ----
    print("Computing risk metrics...")
    risk = compute_risk_metrics(bundle["nav"], min_days=cfg.risk.min_days,
                                risk_free_rate=cfg.risk.risk_free_rate,
                                window=cfg.risk.window_days)
    if risk.sharpe_ratio is None:
        print(f"  Insufficient history: {risk.days_of_data}/{risk.requires_days} days")
    else:
        print(f"  Sharpe {risk.sharpe_ratio:.2f}  Vol {risk.annualized_volatility:.1f}%  "
              f"VaR95 {risk.var95:.2f}%  MaxDD {risk.max_drawdown:.1f}%")

    # ---- 7. Performance ----
    perf, totals = None, {}
    if bundle["holdings"]:
        print("Computing holding performance...")
        perf = all_holdings_performance(bundle["holdings"], bundle["prices"],
                                        deadline=deadline)
        totals = portfolio_totals(perf.to_dict("records"))
        ctx.save_artifact("performance", perf)

    # ---- 8. Output ----
    args.out.mkdir(parents=True, exist_ok=True)
    xlsx_path = args.out / f"scores_{ctx.run_id}.xlsx"
    try:
        write_report(xlsx_path, ranked, profile.name, betas_df, exposure,
                     risk.model_dump(), perf, totals)
    except PermissionError:
        print(f"\n  ERROR: Cannot write {xlsx_path}. Close the file and re-run.")
        sys.exit(1)
    records_path = ctx.save_records("scores", records)
    json_path = args.out / f"scores_{ctx.run_id}.json"
    shutil.copyfile(records_path, json_path)

    total_time = round(time.time() - t0, 1)
    ctx.save_metadata({
        "profile": profile.name,
        "peer_scope": scope,
        "config_hash": ctx.config_hash(raw_cfg),
        "scored": len(ranked) - n_unscored,
        "unscored": n_unscored,
        "skipped_missing_data": skipped,
        "low_confidence": n_low,
        "risk": risk.model_dump(),
        "beta_exposure": exposure,
        "performance_totals": totals,
        "total_time": total_time,
    })

    print("--------------------------------------------")
    print(f"  Report:  {xlsx_path}")
    print(f"  Records: {json_path}")
    print(f"  Total runtime: {total_time}s")
    print("============================================")
    ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
