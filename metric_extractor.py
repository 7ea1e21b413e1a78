#!/usr/bin/env python3
"""
Metric Extractor
================
Turns one raw fundamental/estimate record plus a price-history record into
the 21 nullable scoring metrics used by the factor engine.

Raw records arrive from the data store as sparse maps keyed by the provider's
column names (``"P/E NTM"``, ``"EV/EBITDA - NTM"``, ...).  Values may be
numbers, numeric strings, spreadsheet error tokens or missing entirely.  A bad
field degrades exactly one metric to ``None``; nothing here raises on data.

Usage:
    from metric_extractor import extract_metrics, build_metric_frame

    m = extract_metrics(fundamentals["AAPL"], prices["AAPL"])
    df, skipped = build_metric_frame(fundamentals, prices)
"""

import logging
import math

import numpy as np
import pandas as pd

log = logging.getLogger("portfolio_scoring.metric_extractor")

# =========================================================================
# A. Metric definitions
# =========================================================================
CAT_METRICS = {
    "VALUE":    ["pe_ratio", "ev_ebitda", "ev_sales", "target_price_upside"],
    "MOMENTUM": ["return_12m_ex_1m", "return_3m", "pct_52week_high",
                 "eps_surprise", "rev_surprise",
                 "ntm_eps_change", "ntm_rev_change"],
    "QUALITY":  ["roic_ttm", "gross_profitability", "accruals",
                 "fcf_to_assets", "roic_3yr", "ebitda_margin"],
    "RISK":     ["beta_3yr", "volatility_60d", "max_drawdown",
                 "financial_leverage"],
}

CATEGORIES = list(CAT_METRICS)

METRIC_COLS = [m for metrics in CAT_METRICS.values() for m in metrics]

# True = higher is better.
METRIC_DIR = {
    "pe_ratio": False, "ev_ebitda": False, "ev_sales": False,
    "target_price_upside": True,
    "return_12m_ex_1m": True, "return_3m": True, "pct_52week_high": True,
    "eps_surprise": True, "rev_surprise": True,
    "ntm_eps_change": True, "ntm_rev_change": True,
    "roic_ttm": True, "gross_profitability": True,
    "accruals": False,                                 # lower accruals = cleaner earnings
    "fcf_to_assets": True, "roic_3yr": True, "ebitda_margin": True,
    "beta_3yr": False, "volatility_60d": False,
    "max_drawdown": False,                             # negative fraction
    "financial_leverage": False,
}

# Display labels used by the score_weightings rows in the data store.
METRIC_LABELS = {
    "P/E": "pe_ratio",
    "EV/EBITDA": "ev_ebitda",
    "EV/Sales": "ev_sales",
    "TGT PRICE": "target_price_upside",
    "12M Return ex 1M": "return_12m_ex_1m",
    "3M Return": "return_3m",
    "52-Week High %": "pct_52week_high",
    "EPS Surprise": "eps_surprise",
    "Rev Surprise": "rev_surprise",
    "NTM EPS Change": "ntm_eps_change",
    "NTM Rev Change": "ntm_rev_change",
    "ROIC TTM": "roic_ttm",
    "Gross Profitability": "gross_profitability",
    "Accruals": "accruals",
    "FCF": "fcf_to_assets",
    "ROIC 3-Yr": "roic_3yr",
    "EBITDA Margin": "ebitda_margin",
    "Beta 3-Yr": "beta_3yr",
    "60-Day Volatility": "volatility_60d",
    "30-Day Volatility": "volatility_60d",
    "Max Drawdown": "max_drawdown",
    "Financial Leverage": "financial_leverage",
}

# Provider column names for the raw fundamental snapshot.
FIELDS = {
    "price": "PRICE",
    "total_assets": "Total assets",
    "pe_ntm": "P/E NTM",
    "ev_ebitda_ntm": "EV/EBITDA - NTM",
    "ev_sales_ntm": "EV/Sales - NTM",
    "target_price": "Consensus Price Target",
    "week52_high": "52 week high",
    "eps_surprise": "EPS surprise last qtr",
    "sales_surprise": "SALES surprise last qtr",
    "eps_ntm": "EPS EST NTM",
    "eps_ntm_90d": "EPS EST NTM - 90 days ago",
    "sales_ntm": "Sales EST NTM",
    "sales_ntm_90d": "SALES EST NTM - 90 days ago",
    "roic_1y": "ROIC 1 YR",
    "roic_3y": "ROIC  3YR",
    "gross_profit": "Gross Profit LTM",
    "accruals": "acrcrurals %",
    "fcf": "FCF",
    "ebitda": "EBITDA LTM",
    "sales": "Sales LTM",
    "beta_1y": "1 yr Beta",
    "beta_3y": "3 yr beta",
    "beta_5y": "5 yr beta - monthly",
    "vol_2m": "2 month vol",
    "net_debt": "ND",
}

SURPRISE_UNITS = ("percent", "fraction")

_NULL_TOKENS = {"", "-", "#N/A", "#N/A N/A", "N/A", "#VALUE!", "#DIV/0!",
                "NaN", "nan"}


# =========================================================================
# B. Field parsing
# =========================================================================
def parse_number(value):
    """Parse a raw provider value to float, or None if it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        num = float(value)
        return num if math.isfinite(num) else None
    text = str(value).strip()
    if text in _NULL_TOKENS:
        return None
    num = pd.to_numeric(text.replace(",", ""), errors="coerce")
    if pd.isna(num):
        return None
    num = float(num)
    return num if math.isfinite(num) else None


def _field(rec: dict, key: str):
    return parse_number(rec.get(FIELDS[key]))


def _ratio(numerator, denominator):
    """numerator / denominator, None when either side is missing or zero."""
    if not numerator or not denominator:
        return None
    return numerator / denominator


def _change(later, earlier):
    """Simple return from ``earlier`` to ``later``, None without both prices."""
    if not later or not earlier:
        return None
    return (later - earlier) / earlier


def surprise_to_fraction(raw, units: str = "percent"):
    """Normalize a last-quarter surprise figure to fraction units.

    The provider reports surprises as percent numbers (4.099 means 4.099%).
    ``units`` names the unit of ``raw``; the result is always a fraction.
    """
    if units not in SURPRISE_UNITS:
        raise ValueError(f"Unknown surprise units '{units}' "
                         f"(expected one of {SURPRISE_UNITS})")
    if raw is None:
        return None
    return raw / 100.0 if units == "percent" else raw


# =========================================================================
# C. Per-security extraction
# =========================================================================
def extract_metrics(fundamentals: dict, prices: dict,
                    surprise_units: str = "percent") -> dict:
    """Extract all scoring metrics for one security.

    ``fundamentals`` is the provider snapshot, ``prices`` the price-history
    record (``current_price``, ``price_30d_ago``, ``price_90d_ago``,
    ``price_365d_ago``, ``max_drawdown``).  Returns a dict keyed by
    METRIC_COLS with float or None values.
    """
    fundamentals = fundamentals or {}
    prices = prices or {}

    price = _field(fundamentals, "price")
    total_assets = _field(fundamentals, "total_assets")

    current = parse_number(prices.get("current_price"))
    p30 = parse_number(prices.get("price_30d_ago"))
    p90 = parse_number(prices.get("price_90d_ago"))
    p365 = parse_number(prices.get("price_365d_ago"))

    # 12-1 momentum skips the most recent month
    return_12m_ex_1m = _change(p30, p365)
    # a zero current price is a full loss, only the base must be non-zero
    return_3m = (current - p90) / p90 if p90 and current is not None else None

    ebitda = _field(fundamentals, "ebitda")

    return {
        # VALUE
        "pe_ratio": _field(fundamentals, "pe_ntm"),
        "ev_ebitda": _field(fundamentals, "ev_ebitda_ntm"),
        "ev_sales": _field(fundamentals, "ev_sales_ntm"),
        "target_price_upside": _ratio(_field(fundamentals, "target_price"), price),
        # MOMENTUM
        "return_12m_ex_1m": return_12m_ex_1m,
        "return_3m": return_3m,
        "pct_52week_high": _ratio(price, _field(fundamentals, "week52_high")),
        "eps_surprise": surprise_to_fraction(
            _field(fundamentals, "eps_surprise"), surprise_units),
        "rev_surprise": surprise_to_fraction(
            _field(fundamentals, "sales_surprise"), surprise_units),
        "ntm_eps_change": _ratio(_field(fundamentals, "eps_ntm"),
                                 _field(fundamentals, "eps_ntm_90d")),
        "ntm_rev_change": _ratio(_field(fundamentals, "sales_ntm"),
                                 _field(fundamentals, "sales_ntm_90d")),
        # QUALITY
        "roic_ttm": _field(fundamentals, "roic_1y"),
        "gross_profitability": _ratio(_field(fundamentals, "gross_profit"),
                                      total_assets),
        "accruals": _field(fundamentals, "accruals"),  # already a percentage
        "fcf_to_assets": _ratio(_field(fundamentals, "fcf"), total_assets),
        "roic_3yr": _field(fundamentals, "roic_3y"),
        "ebitda_margin": _ratio(ebitda, _field(fundamentals, "sales")),
        # RISK
        "beta_3yr": _field(fundamentals, "beta_3y"),
        "volatility_60d": _field(fundamentals, "vol_2m"),
        "max_drawdown": parse_number(prices.get("max_drawdown")),
        "financial_leverage": _ratio(_field(fundamentals, "net_debt"), ebitda),
    }


def raw_betas(fundamentals: dict) -> dict:
    """Pull the three provider beta horizons out of a fundamental snapshot."""
    fundamentals = fundamentals or {}
    return {
        "beta_1y": _field(fundamentals, "beta_1y"),
        "beta_3y": _field(fundamentals, "beta_3y"),
        "beta_5y": _field(fundamentals, "beta_5y"),
    }


# =========================================================================
# D. Universe frame
# =========================================================================
def build_metric_frame(fundamentals_by_ticker: dict, prices_by_ticker: dict,
                       surprise_units: str = "percent"):
    """Build the per-security metric DataFrame for one scoring run.

    Tickers are upper-cased.  A ticker needs both a fundamental snapshot and
    a price record; those missing either are skipped and returned in the
    second element of the result.
    """
    fund = {str(t).strip().upper(): rec for t, rec in fundamentals_by_ticker.items()}
    px = {str(t).strip().upper(): rec for t, rec in prices_by_ticker.items()}

    records = []
    skipped = []
    for ticker in sorted(set(fund) | set(px)):
        if ticker not in fund or ticker not in px:
            log.warning(f"Missing data for {ticker}",
                        extra={"ticker": ticker, "phase": "extract"})
            skipped.append(ticker)
            continue
        rec = {"Ticker": ticker}
        rec.update(extract_metrics(fund[ticker], px[ticker], surprise_units))
        records.append(rec)

    df = pd.DataFrame(records, columns=["Ticker"] + METRIC_COLS)
    df[METRIC_COLS] = df[METRIC_COLS].astype(float)
    log.info(f"Extracted metrics for {len(df)} securities",
             extra={"phase": "extract", "count": len(df)})
    return df, skipped
