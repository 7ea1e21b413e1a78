#!/usr/bin/env python3
"""
Portfolio Factor Engine
=======================
Scores each security against its peer set on value, momentum, quality and
risk metrics, then rolls the per-metric percentile scores up into category
composites and a total score under a configurable weight profile.

Pipeline:
  1. metric_extractor.build_metric_frame  -> one row of raw metrics per ticker
  2. peer_scope selector                   -> one peer set per scope key
  3. percentile_rank                       -> <metric>_score (0-100, 1 dp)
  4. weighted_average per category         -> value/momentum/quality/risk_score
  5. weighted_average across categories    -> total_score

Null handling
-------------
* A null metric gets a null score; it never counts as the worst value.
* Null scores drop out of both sides of every weighted average, so each
  security's composite is renormalized over the metrics it actually has.
* Empty peer sets and zero total weights give null, never an exception.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import yaml

from metric_extractor import (
    CAT_METRICS,
    CATEGORIES,
    METRIC_COLS,
    METRIC_DIR,
    METRIC_LABELS,
)
from peer_scope import peer_set_stats, resolve_peer_sets
from schemas import CategoryWeights, RunConfig, ScoredSecurity, ScoreWeightProfile

log = logging.getLogger("portfolio_scoring.factor_engine")

# =========================================================================
# A. Load configuration
# =========================================================================
ROOT = Path(__file__).resolve().parent
CONFIG_PATH = ROOT / "config.yaml"

CAT_SCORE_COLS = {
    "VALUE": "value_score",
    "MOMENTUM": "momentum_score",
    "QUALITY": "quality_score",
    "RISK": "risk_score",
}

SCORE_COLS = [f"{m}_score" for m in METRIC_COLS]


def load_config(path: Path = CONFIG_PATH) -> dict:
    """Load YAML configuration file."""
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_run_config(path: Path = CONFIG_PATH) -> RunConfig:
    """Load and validate config.yaml."""
    return RunConfig(**load_config(path))


# =========================================================================
# B. Percentile ranking
# =========================================================================
def round_half_up(x: float, ndigits: int = 1) -> float:
    """Round half away from -inf (0.25 -> 0.3), the dashboard's convention.

    Python's round() is banker's rounding and would turn 6.25 into 6.2.
    """
    factor = 10 ** ndigits
    return math.floor(x * factor + 0.5) / factor


def _valid_values(values) -> np.ndarray:
    arr = np.asarray(list(values) if not isinstance(values, np.ndarray) else values,
                     dtype=float)
    return arr[~np.isnan(arr)]


def percentile_rank(value, peers, higher_is_better: bool = True) -> Optional[float]:
    """Percentage (0-100, 1 dp) of non-null peers strictly worse than ``value``.

    Ties are not counted as worse, so a value merely tied with the best
    peer does not reach 100.
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    valid = _valid_values(peers)
    if valid.size == 0:
        return None
    if higher_is_better:
        worse = np.count_nonzero(valid < value)
    else:
        worse = np.count_nonzero(valid > value)
    return round_half_up(worse / valid.size * 100, 1)


# =========================================================================
# C. Weighted composites
# =========================================================================
def weighted_average(scores, weights) -> Optional[float]:
    """Null-excluding weighted average, rounded to 1 dp.

    Raises ValueError when the two sequences differ in length.
    """
    scores = list(scores)
    weights = list(weights)
    if len(scores) != len(weights):
        raise ValueError(
            f"Scores and weights must have the same length "
            f"(got {len(scores)} and {len(weights)})")
    weighted_sum = 0.0
    total_weight = 0.0
    for s, w in zip(scores, weights):
        if s is None or (isinstance(s, float) and math.isnan(s)):
            continue
        weighted_sum += s * w
        total_weight += w
    if total_weight == 0:
        return None
    return round_half_up(weighted_sum / total_weight, 1)


def compute_category_scores(metric_scores: dict, profile: ScoreWeightProfile) -> dict:
    """Category composites keyed by category score column.

    ``metric_scores`` maps metric name -> percentile score (or None).  A
    category the profile does not define scores None.
    """
    out = {}
    for cat, metrics in CAT_METRICS.items():
        weights = profile.metric_weights(cat)
        if weights is None:
            out[CAT_SCORE_COLS[cat]] = None
            continue
        out[CAT_SCORE_COLS[cat]] = weighted_average(
            [metric_scores.get(m) for m in metrics], weights)
    return out


def compute_total_score(category_scores: dict, profile: ScoreWeightProfile) -> Optional[float]:
    return weighted_average(
        [category_scores.get(CAT_SCORE_COLS[cat]) for cat in CATEGORIES],
        [profile.category_weight(cat) for cat in CATEGORIES],
    )


def parse_score_weightings(rows: list, profile_name: str) -> ScoreWeightProfile:
    """Build a weight profile from score_weightings rows.

    Each row has ``profile_name``, ``category``, ``metric_name``,
    ``metric_weight`` and ``category_weight``.  The row whose metric_name is
    null carries the category weight.  Unknown metric labels are ignored
    with a warning.
    """
    categories = {}
    for cat in CATEGORIES:
        cat_rows = [r for r in rows
                    if r.get("profile_name") == profile_name and r.get("category") == cat]
        cat_row = next((r for r in cat_rows if r.get("metric_name") is None), None)
        weight = float(cat_row.get("category_weight") or 0) if cat_row else 0.0
        metrics = {}
        for r in cat_rows:
            label = r.get("metric_name")
            if label is None or r.get("metric_weight") is None:
                continue
            col = METRIC_LABELS.get(label)
            if col is None or col not in CAT_METRICS[cat]:
                log.warning(f"Ignoring unknown metric label '{label}' in {cat}",
                            extra={"metric": label, "phase": "config"})
                continue
            metrics[col] = float(r["metric_weight"])
        categories[cat] = CategoryWeights(weight=weight, metrics=metrics)
    return ScoreWeightProfile(name=profile_name, categories=categories)


# =========================================================================
# D. Per-security scoring
# =========================================================================
def peer_arrays(peers: pd.DataFrame) -> dict:
    """Non-null peer values per metric, computed once per peer set."""
    return {m: _valid_values(peers[m].to_numpy()) if m in peers.columns else np.array([])
            for m in METRIC_COLS}


def score_security(metrics: dict, peer_values: dict, profile: ScoreWeightProfile) -> dict:
    """Percentile, category and total scores for one security.

    ``metrics`` maps metric -> raw value; ``peer_values`` maps metric ->
    array of peer values (as produced by peer_arrays).
    """
    metric_scores = {}
    for m in METRIC_COLS:
        v = metrics.get(m)
        if v is not None and isinstance(v, float) and math.isnan(v):
            v = None
        metric_scores[m] = percentile_rank(v, peer_values.get(m, ()), METRIC_DIR[m])
    cat_scores = compute_category_scores(metric_scores, profile)
    out = {f"{m}_score": s for m, s in metric_scores.items()}
    out.update(cat_scores)
    out["total_score"] = compute_total_score(cat_scores, profile)
    return out


# =========================================================================
# E. Batch runner
# =========================================================================
def run_in_batches(items: list, fn, batch_size: int = 25, max_workers: int = 4,
                   inter_batch_delay: float = 0.0,
                   deadline: Optional[float] = None):
    """Run ``fn(item)`` one task per item, batch by batch.

    Batches run on a thread pool; ``inter_batch_delay`` seconds are slept
    between batches.  Once ``deadline`` (a time.monotonic() value) has
    passed no new batch is started.  Returns ``(results, skipped)`` where
    ``results`` maps item -> fn(item) and ``skipped`` lists items never
    started.  Exceptions raised by ``fn`` propagate.
    """
    items = list(items)
    results = {}
    n_batches = (len(items) + batch_size - 1) // batch_size

    for bi in range(n_batches):
        if deadline is not None and time.monotonic() >= deadline:
            skipped = items[bi * batch_size:]
            log.warning(f"Deadline reached - {len(skipped)} items not started",
                        extra={"phase": "batch", "count": len(skipped)})
            return results, skipped

        batch = items[bi * batch_size:(bi + 1) * batch_size]
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futs = {pool.submit(fn, item): item for item in batch}
            for fut in as_completed(futs):
                results[futs[fut]] = fut.result()

        if inter_batch_delay and bi < n_batches - 1:
            time.sleep(inter_batch_delay)

    return results, []


# =========================================================================
# F. Universe scoring
# =========================================================================
def score_universe(frame: pd.DataFrame, profile: ScoreWeightProfile, selector,
                   min_peer_count: int = 10, min_complete_pct: float = 80,
                   batch_size: int = 25, max_workers: int = 4,
                   inter_batch_delay: float = 0.0,
                   deadline: Optional[float] = None) -> pd.DataFrame:
    """Score every security in ``frame`` against the peers ``selector`` picks.

    Returns ``frame`` extended with <metric>_score columns, category
    composites, total_score and peer-set diagnostics.  Securities not
    started before ``deadline`` keep null scores and ``scored=False``.
    """
    df = frame.copy()
    peer_sets, key_by_ticker = resolve_peer_sets(df, selector)
    arrays = {key: peer_arrays(peers) for key, peers in peer_sets.items()}
    stats = {key: peer_set_stats(peers, min_peer_count, min_complete_pct)
             for key, peers in peer_sets.items()}

    rows = {row["Ticker"]: row for row in df[["Ticker"] + METRIC_COLS].to_dict("records")}

    def _score(ticker):
        return score_security(rows[ticker], arrays[key_by_ticker[ticker]], profile)

    results, skipped = run_in_batches(
        list(rows), _score, batch_size=batch_size, max_workers=max_workers,
        inter_batch_delay=inter_batch_delay, deadline=deadline)

    out_cols = SCORE_COLS + list(CAT_SCORE_COLS.values()) + ["total_score"]
    scored = pd.DataFrame.from_dict(results, orient="index", columns=out_cols)
    scored = scored.reindex(df["Ticker"]).astype(float)
    for col in out_cols:
        df[col] = scored[col].to_numpy()

    df["peer_scope"] = [key_by_ticker[t] for t in df["Ticker"]]
    df["peer_count"] = [stats[key_by_ticker[t]]["peer_count"] for t in df["Ticker"]]
    df["peer_complete_pct"] = [stats[key_by_ticker[t]]["peer_complete_pct"] for t in df["Ticker"]]
    df["low_confidence"] = [stats[key_by_ticker[t]]["low_confidence"] for t in df["Ticker"]]
    df["scope_fallback"] = [selector.is_fallback(t) for t in df["Ticker"]]
    df["scored"] = ~df["Ticker"].isin(skipped)

    n_low = int(df["low_confidence"].sum())
    log.info(f"Scored {int(df['scored'].sum())}/{len(df)} securities "
             f"({len(peer_sets)} peer sets, {n_low} low-confidence)",
             extra={"phase": "score", "count": int(df["scored"].sum())})
    return df


def rank_securities(df: pd.DataFrame) -> pd.DataFrame:
    """Sort by total score, best first; null totals last."""
    df = df.sort_values("total_score", ascending=False, na_position="last", kind="stable")
    df["Rank"] = df["total_score"].rank(ascending=False, method="min")
    return df.reset_index(drop=True)


def to_scored_securities(df: pd.DataFrame) -> list:
    """Convert a scored frame into validated ScoredSecurity records."""
    def _opt(v):
        return None if v is None or pd.isna(v) else float(v)

    out = []
    for row in df.to_dict("records"):
        out.append(ScoredSecurity(
            ticker=row["Ticker"],
            metrics={m: _opt(row.get(m)) for m in METRIC_COLS},
            metric_scores={m: _opt(row.get(f"{m}_score")) for m in METRIC_COLS},
            value_score=_opt(row.get("value_score")),
            momentum_score=_opt(row.get("momentum_score")),
            quality_score=_opt(row.get("quality_score")),
            risk_score=_opt(row.get("risk_score")),
            total_score=_opt(row.get("total_score")),
            peer_scope=row.get("peer_scope"),
            peer_count=int(row.get("peer_count") or 0),
            peer_complete_pct=_opt(row.get("peer_complete_pct")),
            low_confidence=bool(row.get("low_confidence", False)),
            scope_fallback=bool(row.get("scope_fallback", False)),
        ))
    return out
