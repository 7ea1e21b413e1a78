#!/usr/bin/env python3
"""
Beta Fallback Resolver
======================
Derives 1/3/5-year beta estimates and a single "true beta" per security.

Resolution order for a non-cash security:
  1. Start from the provider's raw betas (any horizon may be missing).
  2. Apply FALLBACK_RULES in order: a shorter horizon that is present fills
     a longer one that is missing, never the reverse.
  3. Default any horizon still missing to 1.0 (market-neutral).
  4. Cap each horizon at 3.0 and take the maximum as true beta.
  5. For constituents of the reference index (non-zero weight), floor the
     true beta at the index's own true beta, resolved the same way.

Cash equivalents are pinned to 0 on every horizon.
"""

import logging
from typing import NamedTuple, Optional

from schemas import BetaEstimate, RunConfig

log = logging.getLogger("portfolio_scoring.beta_resolver")

HORIZONS = ("beta_1y", "beta_3y", "beta_5y")


class FallbackRule(NamedTuple):
    """Fill ``target`` from ``source`` when every horizon in ``when_missing``
    is absent from the raw provider data and ``source`` has a value."""
    target: str
    source: str
    when_missing: tuple


FALLBACK_RULES = (
    FallbackRule("beta_3y", "beta_1y", ("beta_3y",)),
    FallbackRule("beta_5y", "beta_3y", ("beta_5y",)),
    FallbackRule("beta_5y", "beta_1y", ("beta_3y", "beta_5y")),
)


def is_cash(ticker: str, settings: Optional[RunConfig.BetaConfig] = None) -> bool:
    settings = settings or RunConfig.BetaConfig()
    t = str(ticker).strip().upper()
    if t in {c.upper() for c in settings.cash_tickers}:
        return True
    return any(p.upper() in t for p in settings.cash_patterns)


def apply_rule(rule: FallbackRule, raw: dict, working: dict) -> dict:
    """Apply one fallback rule; returns a new working dict."""
    out = dict(working)
    if all(raw.get(h) is None for h in rule.when_missing) and out.get(rule.source) is not None:
        out[rule.target] = out[rule.source]
    return out


def cascade(raw: dict, default: float = 1.0) -> dict:
    """Backfilled horizons for one set of raw betas (uncapped)."""
    raw = {h: raw.get(h) for h in HORIZONS}
    working = dict(raw)
    for rule in FALLBACK_RULES:
        working = apply_rule(rule, raw, working)
    return {h: (default if working[h] is None else float(working[h])) for h in HORIZONS}


def capped_max(horizons: dict, cap: float = 3.0) -> float:
    return max(min(horizons[h], cap) for h in HORIZONS)


def resolve_betas(ticker: str, raw: dict, reference_raw: Optional[dict] = None,
                  reference_weight: Optional[float] = None,
                  settings: Optional[RunConfig.BetaConfig] = None) -> BetaEstimate:
    """Resolve one security's betas.

    ``raw`` holds ``beta_1y``/``beta_3y``/``beta_5y`` (None when missing).
    ``reference_raw`` holds the reference index's raw betas and
    ``reference_weight`` the security's weight in that index.
    """
    settings = settings or RunConfig.BetaConfig()
    if is_cash(ticker, settings):
        return BetaEstimate(ticker=ticker, beta_1y=0.0, beta_3y=0.0, beta_5y=0.0,
                            true_beta=0.0, is_cash=True)

    horizons = cascade(raw or {}, settings.default)
    true_beta = capped_max(horizons, settings.cap)

    in_index = reference_weight is not None and reference_weight > 0
    if in_index and reference_raw is not None:
        index_beta = capped_max(cascade(reference_raw, settings.default), settings.cap)
        true_beta = max(true_beta, index_beta)

    return BetaEstimate(ticker=ticker, true_beta=true_beta, **horizons)


def resolve_universe_betas(raw_by_ticker: dict, index_weights: Optional[dict] = None,
                           settings: Optional[RunConfig.BetaConfig] = None) -> dict:
    """Resolve betas for every ticker in ``raw_by_ticker``.

    ``index_weights`` maps ticker -> weight in the reference index.  The
    reference index's own raw betas are looked up in ``raw_by_ticker``
    under ``settings.reference_index``.
    """
    settings = settings or RunConfig.BetaConfig()
    raw_by_ticker = {str(t).strip().upper(): r for t, r in raw_by_ticker.items()}
    index_weights = {str(t).strip().upper(): w for t, w in (index_weights or {}).items()}
    ref = settings.reference_index.upper() if settings.reference_index else None
    reference_raw = raw_by_ticker.get(ref) if ref else None
    if ref and reference_raw is None:
        log.warning(f"No betas for reference index {ref}; constituents use their own beta",
                    extra={"ticker": ref, "phase": "beta"})

    return {
        t: resolve_betas(t, raw, reference_raw, index_weights.get(t), settings)
        for t, raw in raw_by_ticker.items()
    }


def portfolio_beta_exposure(holdings: dict, estimates: dict,
                            settings: Optional[RunConfig.BetaConfig] = None) -> dict:
    """Weight-percent sumproduct of each beta horizon and true beta.

    ``holdings`` maps ticker -> weight in percent of NAV.  Tickers with no
    estimate count as beta 1.0, or 0 when they are cash.
    """
    settings = settings or RunConfig.BetaConfig()
    totals = {"true_beta": 0.0, "beta_1y": 0.0, "beta_3y": 0.0, "beta_5y": 0.0}
    unmatched = []
    for ticker, weight_pct in holdings.items():
        t = str(ticker).strip().upper()
        w = (weight_pct or 0) / 100
        est = estimates.get(t)
        if est is None:
            unmatched.append(t)
            fallback = 0.0 if is_cash(t, settings) else settings.default
            for k in totals:
                totals[k] += fallback * w
            continue
        for k in totals:
            totals[k] += getattr(est, k) * w
    if unmatched:
        log.info(f"{len(unmatched)} holdings without beta data: {unmatched[:10]}",
                 extra={"phase": "beta", "count": len(unmatched)})
    totals["unmatched"] = unmatched
    return totals
