#!/usr/bin/env python3
"""
Benchmark Scope Resolver
========================
Selects the peer set each security is percentile-ranked against.

Two strategies are provided and injected into the factor engine:

  * UniversePeers   every security with at least one non-null metric
  * BenchmarkPeers  every security carrying a non-null, non-zero weight in
                    the subject's assigned benchmark

A strategy maps a ticker to a *scope key*; the engine resolves one peer set
per key and reuses it for every metric of every security sharing that key.
"""

import logging
from enum import Enum
from typing import NamedTuple, Optional

import pandas as pd

from metric_extractor import METRIC_COLS

log = logging.getLogger("portfolio_scoring.peer_scope")

UNIVERSE_KEY = "UNIVERSE"

BENCHMARK_DESCRIPTIONS = {
    "SPY": "S&P 500 (Large-cap US stocks)",
    "QQQ": "Nasdaq-100 (Large-cap tech/growth)",
    "XLK": "Technology Select Sector",
    "XLF": "Financial Select Sector",
    "XLC": "Communication Services Select Sector",
    "XLY": "Consumer Discretionary Select Sector",
    "XLP": "Consumer Staples Select Sector",
    "XLE": "Energy Select Sector",
    "XLV": "Health Care Select Sector",
    "XLI": "Industrials Select Sector",
    "XLB": "Materials Select Sector",
    "XLRE": "Real Estate Select Sector",
    "XLU": "Utilities Select Sector",
    "SOXX": "Semiconductor ETF",
    "SMH": "Semiconductor ETF",
    "IGV": "Software ETF",
    "ARKK": "ARK Innovation ETF",
    "ITA": "Aerospace & Defense ETF",
}


class PeerScope(str, Enum):
    UNIVERSE = "universe"
    BENCHMARK = "benchmark"


class PeerSelection(NamedTuple):
    key: str
    peers: pd.DataFrame
    fallback: bool


# =========================================================================
# A. Membership predicates
# =========================================================================
def universe_mask(frame: pd.DataFrame) -> pd.Series:
    """Rows with at least one non-null metric."""
    cols = [c for c in METRIC_COLS if c in frame.columns]
    if not cols:
        return pd.Series(False, index=frame.index)
    return frame[cols].notna().any(axis=1)


def weights_frame(weights: Optional[dict]) -> pd.DataFrame:
    """ticker -> {benchmark: weight} mapping as a numeric DataFrame.

    Index is the upper-cased ticker, columns are upper-cased benchmark
    tickers.  Non-numeric weights (``"-"``, ``""``) coerce to NaN.
    """
    if not weights:
        return pd.DataFrame()
    wf = pd.DataFrame.from_dict(weights, orient="index")
    wf.index = wf.index.map(lambda t: str(t).strip().upper())
    wf.columns = [str(c).strip().upper() for c in wf.columns]
    return wf.apply(pd.to_numeric, errors="coerce")


def benchmark_constituents(wf: pd.DataFrame, benchmark: str) -> set:
    """Tickers with a non-null, non-zero weight in ``benchmark``."""
    col = str(benchmark).strip().upper()
    if wf.empty or col not in wf.columns:
        return set()
    w = wf[col]
    return set(w.index[w.notna() & (w != 0)])


# =========================================================================
# B. Strategies
# =========================================================================
class UniversePeers:
    """Rank every security against the whole scored universe."""
    scope = PeerScope.UNIVERSE

    def scope_key(self, ticker: str) -> str:
        return UNIVERSE_KEY

    def peer_frame(self, key: str, frame: pd.DataFrame) -> pd.DataFrame:
        return frame[universe_mask(frame)]

    def is_fallback(self, ticker: str) -> bool:
        return False


class BenchmarkPeers:
    """Rank each security against the constituents of its assigned benchmark.

    ``assignments`` maps ticker -> benchmark ticker (e.g. ``"QQQ"``);
    ``weights`` maps ticker -> {benchmark: weight}.  Securities without an
    assigned benchmark fall back to the universe peer set.
    """
    scope = PeerScope.BENCHMARK

    def __init__(self, assignments: Optional[dict], weights: Optional[dict]):
        self.assignments = {
            str(t).strip().upper(): str(b).strip().upper()
            for t, b in (assignments or {}).items() if b
        }
        self.weights = weights_frame(weights)

    def scope_key(self, ticker: str) -> str:
        return self.assignments.get(str(ticker).upper(), UNIVERSE_KEY)

    def is_fallback(self, ticker: str) -> bool:
        return self.scope_key(ticker) == UNIVERSE_KEY

    def peer_frame(self, key: str, frame: pd.DataFrame) -> pd.DataFrame:
        if key == UNIVERSE_KEY:
            return frame[universe_mask(frame)]
        members = benchmark_constituents(self.weights, key)
        return frame[frame["Ticker"].isin(members)]


def make_peer_selector(scope, assignments: Optional[dict] = None,
                       weights: Optional[dict] = None):
    scope = PeerScope(scope)
    if scope is PeerScope.UNIVERSE:
        return UniversePeers()
    return BenchmarkPeers(assignments, weights)


# =========================================================================
# C. Resolution
# =========================================================================
def resolve_peer_set(ticker: str, frame: pd.DataFrame, selector) -> PeerSelection:
    """Peer set for a single security under ``selector``."""
    key = selector.scope_key(ticker)
    return PeerSelection(key, selector.peer_frame(key, frame),
                         selector.is_fallback(ticker))


def resolve_peer_sets(frame: pd.DataFrame, selector):
    """Resolve one peer set per scope key for every ticker in ``frame``.

    Returns ``(peer_sets, key_by_ticker)`` where ``peer_sets`` maps scope
    key -> peer DataFrame.
    """
    peer_sets = {}
    key_by_ticker = {}
    for ticker in frame["Ticker"]:
        key = selector.scope_key(ticker)
        key_by_ticker[ticker] = key
        if key not in peer_sets:
            peer_sets[key] = selector.peer_frame(key, frame)
            log.debug(f"Peer set {key}: {len(peer_sets[key])} securities",
                      extra={"phase": "peers", "count": len(peer_sets[key])})
    return peer_sets, key_by_ticker


def peer_set_stats(peers: pd.DataFrame, min_peer_count: int = 10,
                   min_complete_pct: float = 80) -> dict:
    """Size and completeness of a peer set.

    ``low_confidence`` flags rankings drawn from fewer than
    ``min_peer_count`` peers or from a set where under ``min_complete_pct``
    percent of peers have every metric.  It never changes a score.
    """
    n = len(peers)
    cols = [c for c in METRIC_COLS if c in peers.columns]
    if n == 0:
        complete_pct = None
    else:
        complete = peers[cols].notna().all(axis=1).sum() if cols else 0
        complete_pct = round(complete / n * 100, 1)
    low = n < min_peer_count or complete_pct is None or complete_pct < min_complete_pct
    return {
        "peer_count": n,
        "peer_complete_pct": complete_pct,
        "low_confidence": bool(low),
    }


# =========================================================================
# D. Peer verification report
# =========================================================================
def verify_peers(tickers, assignments: Optional[dict], weights: Optional[dict],
                 min_peer_count: int = 10, n_sample: int = 10) -> pd.DataFrame:
    """Describe the benchmark peer group each ticker would be ranked against."""
    selector = BenchmarkPeers(assignments, weights)
    rows = []
    for ticker in tickers:
        t = str(ticker).strip().upper()
        bench = selector.assignments.get(t)
        if not bench:
            rows.append({
                "ticker": t, "assigned_benchmark": None,
                "benchmark_name": "None (Universe-wide ranking)",
                "constituent_count": 0, "sample_peers": [],
                "is_appropriate": "UNKNOWN",
                "reasoning": "No benchmark assigned - ranked against the entire universe",
            })
            continue
        members = sorted(benchmark_constituents(selector.weights, bench))
        name = BENCHMARK_DESCRIPTIONS.get(bench, bench)
        if not members:
            verdict = "NO"
            reasoning = f"Benchmark {bench} has no constituents in the weightings table"
        elif len(members) < min_peer_count:
            verdict = "NO"
            reasoning = f"Only {len(members)} peers - too few for accurate ranking"
        else:
            verdict = "YES"
            reasoning = f"Comparing against {len(members)} peers in {name}"
        rows.append({
            "ticker": t, "assigned_benchmark": bench, "benchmark_name": name,
            "constituent_count": len(members), "sample_peers": members[:n_sample],
            "is_appropriate": verdict, "reasoning": reasoning,
        })
    report = pd.DataFrame(rows, columns=[
        "ticker", "assigned_benchmark", "benchmark_name", "constituent_count",
        "sample_peers", "is_appropriate", "reasoning"])
    # Assigned benchmarks first, alphabetically
    report["_unassigned"] = report["assigned_benchmark"].isna()
    report = report.sort_values(["_unassigned", "assigned_benchmark"],
                                na_position="last", kind="stable")
    return report.drop(columns="_unassigned").reset_index(drop=True)
