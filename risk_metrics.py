#!/usr/bin/env python3
"""
Portfolio risk metrics from a NAV time series.

Sharpe ratio, annualized volatility, one-tailed 95% parametric VaR and max
drawdown.  Percentage outputs are already multiplied by 100.  A series
shorter than ``min_days`` is a normal result: every statistic is None and
the day counters say how much history is still needed.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from schemas import RiskMetricsResult

log = logging.getLogger("portfolio_scoring.risk_metrics")

TRADING_DAYS = 252
VAR_95_Z = 1.645
RF_ANNUAL = 0.05


def nav_series(snapshots) -> pd.Series:
    """NAV levels indexed by date, oldest first.

    ``snapshots`` is an iterable of dicts with ``snapshot_date`` (or
    ``date``) and ``nav``.  A repeated date keeps its last value.
    """
    records = []
    for s in snapshots:
        rec = s.model_dump() if hasattr(s, "model_dump") else dict(s)
        records.append({
            "date": pd.to_datetime(rec.get("snapshot_date", rec.get("date"))),
            "nav": float(rec["nav"]),
        })
    if not records:
        return pd.Series(dtype=float)
    df = pd.DataFrame(records)
    n_dup = int(df["date"].duplicated().sum())
    if n_dup:
        log.warning(f"{n_dup} duplicate snapshot dates; keeping the latest value",
                    extra={"phase": "risk", "count": n_dup})
        df = df.drop_duplicates("date", keep="last")
    return df.set_index("date")["nav"].sort_index()


def daily_returns(navs: pd.Series) -> np.ndarray:
    """Simple returns for consecutive pairs whose previous NAV is positive."""
    arr = navs.to_numpy(dtype=float)
    if arr.size < 2:
        return np.array([])
    prev, cur = arr[:-1], arr[1:]
    ok = prev > 0
    return cur[ok] / prev[ok] - 1


def _mean_std(returns: np.ndarray):
    if returns.size == 0:
        return 0.0, 0.0
    # Population statistics (ddof=0)
    return float(np.mean(returns)), float(np.std(returns))


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float = RF_ANNUAL) -> float:
    mean, std = _mean_std(returns)
    ann_vol = std * np.sqrt(TRADING_DAYS)
    if ann_vol == 0:
        return 0.0
    return float((mean * TRADING_DAYS - risk_free_rate) / ann_vol)


def annualized_volatility(returns: np.ndarray) -> float:
    _, std = _mean_std(returns)
    return float(std * np.sqrt(TRADING_DAYS) * 100)


def var_95(returns: np.ndarray) -> float:
    mean, std = _mean_std(returns)
    return float((mean - VAR_95_Z * std) * 100)


def max_drawdown(navs: pd.Series) -> float:
    """Most negative peak-to-trough decline of the NAV levels, in percent."""
    arr = navs.to_numpy(dtype=float)
    if arr.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(arr)
    valid = peaks > 0
    if not valid.any():
        return 0.0
    drawdowns = (arr[valid] - peaks[valid]) / peaks[valid] * 100
    return float(min(drawdowns.min(), 0.0))


def compute_risk_metrics(snapshots, min_days: int = 30,
                         risk_free_rate: float = RF_ANNUAL,
                         window: Optional[int] = None) -> RiskMetricsResult:
    """Risk statistics for a NAV history.

    ``window`` keeps only the most recent snapshots before anything else is
    evaluated.
    """
    if window is not None and window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    navs = nav_series(snapshots)
    if window is not None:
        navs = navs.iloc[-window:]

    days = len(navs)
    if days < min_days:
        log.info(f"Risk metrics need {min_days} days of NAV history, have {days}",
                 extra={"phase": "risk", "count": days})
        return RiskMetricsResult(days_of_data=days, requires_days=min_days)

    returns = daily_returns(navs)
    return RiskMetricsResult(
        sharpe_ratio=sharpe_ratio(returns, risk_free_rate),
        annualized_volatility=annualized_volatility(returns),
        var95=var_95(returns),
        max_drawdown=max_drawdown(navs),
        days_of_data=days,
        requires_days=min_days,
    )


def price_max_drawdown(closes, trading_days: int = TRADING_DAYS) -> Optional[float]:
    """Max drawdown of a security's last ``trading_days`` closes, as a fraction.

    Missing closes are dropped.  Returns None with fewer than two closes.
    """
    arr = pd.to_numeric(pd.Series(list(closes or []), dtype=object),
                        errors="coerce").dropna().to_numpy(dtype=float)
    arr = arr[-trading_days:]
    if arr.size < 2:
        return None
    peaks = np.maximum.accumulate(arr)
    valid = peaks > 0
    if not valid.any():
        return None
    return float(min((arr[valid] / peaks[valid] - 1.0).min(), 0.0))
