#!/usr/bin/env python3
"""
Holding performance and contribution to portfolio return.

Returns are simple percentage changes from a historical close to the current
price; a holding's contribution is its NAV weight times that return.  Missing
historical prices give a 0 return rather than a gap, so portfolio totals are
always a plain sum.
"""

import logging
from typing import Optional

import pandas as pd

from factor_engine import run_in_batches

log = logging.getLogger("portfolio_scoring.performance")

# period -> price-history key of the base close
PERIODS = {
    "1d": "price_1d_ago",
    "5d": "price_5d_ago",
    "30d": "price_30d_ago",
    "qtd": "price_end_of_last_quarter",
    "ytd": "price_end_of_last_year",
}


def calculate_return(current_price, previous_price) -> float:
    """(current / previous - 1) * 100; 0 when previous is missing or zero."""
    if not previous_price or current_price is None:
        return 0.0
    return (current_price / previous_price - 1) * 100


def calculate_contribution(weight_pct: float, return_pct: float) -> float:
    return (weight_pct / 100) * return_pct


def holding_performance(ticker: str, current_price, weight: float,
                        prices: Optional[dict] = None) -> dict:
    """Returns and contributions for every period in PERIODS."""
    prices = prices or {}
    row = {"ticker": ticker, "weight": weight}
    for period, key in PERIODS.items():
        ret = calculate_return(current_price, prices.get(key))
        row[f"return_{period}"] = ret
        row[f"contribution_{period}"] = calculate_contribution(weight, ret)
    log.debug(f"{ticker}: 1D={row['return_1d']:.2f}%, contrib={row['contribution_1d']:.3f}%",
              extra={"ticker": ticker, "phase": "performance"})
    return row


def portfolio_totals(rows) -> dict:
    """Sum of each period's contribution across holdings."""
    return {
        f"total_contribution_{p}": float(sum(r[f"contribution_{p}"] for r in rows))
        for p in PERIODS
    }


def all_holdings_performance(holdings: dict, prices_by_ticker: dict,
                             batch_size: int = 5, max_workers: int = 5,
                             inter_batch_delay: float = 0.1,
                             deadline: Optional[float] = None) -> pd.DataFrame:
    """Performance table for ``holdings`` (ticker -> weight in percent).

    The current price comes from each ticker's price history.  Rows keep
    the order of ``holdings``; tickers not reached before ``deadline`` are
    left out and logged.
    """
    prices_by_ticker = {str(t).strip().upper(): p for t, p in (prices_by_ticker or {}).items()}
    tickers = [str(t).strip().upper() for t in holdings]
    weights = {str(t).strip().upper(): float(w or 0) for t, w in holdings.items()}

    def _one(ticker):
        prices = prices_by_ticker.get(ticker) or {}
        return holding_performance(ticker, prices.get("current_price"),
                                   weights[ticker], prices)

    results, skipped = run_in_batches(
        tickers, _one, batch_size=batch_size, max_workers=max_workers,
        inter_batch_delay=inter_batch_delay, deadline=deadline)
    if skipped:
        log.warning(f"Performance skipped for {len(skipped)} holdings",
                    extra={"phase": "performance", "count": len(skipped)})

    columns = ["ticker", "weight"] + [
        f"{kind}_{p}" for kind in ("return", "contribution") for p in PERIODS]
    return pd.DataFrame([results[t] for t in tickers if t in results], columns=columns)
