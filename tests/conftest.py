"""Shared fixtures for portfolio scoring engine tests."""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture
def cfg():
    """Load the production config.yaml."""
    with open(ROOT / "config.yaml") as f:
        return yaml.safe_load(f)


def make_fundamentals(price=100.0, **overrides):
    """A complete provider snapshot; keyword overrides use provider column names."""
    rec = {
        "PRICE": price,
        "Total assets": 1000.0,
        "P/E NTM": 20.0,
        "EV/EBITDA - NTM": 12.0,
        "EV/Sales - NTM": 3.0,
        "Consensus Price Target": price * 1.2,
        "52 week high": price * 1.25,
        "EPS surprise last qtr": 4.099,
        "SALES surprise last qtr": 1.5,
        "EPS EST NTM": 5.5,
        "EPS EST NTM - 90 days ago": 5.0,
        "Sales EST NTM": 1100.0,
        "SALES EST NTM - 90 days ago": 1000.0,
        "ROIC 1 YR": 15.0,
        "ROIC  3YR": 14.0,
        "Gross Profit LTM": 400.0,
        "acrcrurals %": 2.0,
        "FCF": 80.0,
        "EBITDA LTM": 250.0,
        "Sales LTM": 1000.0,
        "1 yr Beta": 1.1,
        "3 yr beta": 1.05,
        "5 yr beta - monthly": 1.0,
        "2 month vol": 25.0,
        "ND": 500.0,
    }
    rec.update(overrides)
    return rec


def make_prices(current=100.0, **overrides):
    rec = {
        "current_price": current,
        "price_1d_ago": current / 1.01,
        "price_5d_ago": current / 1.02,
        "price_30d_ago": current / 1.05,
        "price_90d_ago": current / 1.10,
        "price_365d_ago": current / 1.30,
        "price_end_of_last_quarter": current / 1.08,
        "price_end_of_last_year": current / 1.15,
        "max_drawdown": -0.15,
    }
    rec.update(overrides)
    return rec


@pytest.fixture
def sample_fundamentals():
    """Twelve securities with varied P/E and ROIC values."""
    rng = np.random.default_rng(7)
    out = {}
    for i in range(12):
        out[f"T{i:02d}"] = make_fundamentals(
            price=50.0 + i * 5,
            **{"P/E NTM": float(10 + i * 2),
               "ROIC 1 YR": float(rng.uniform(5, 30)),
               "2 month vol": float(rng.uniform(15, 45))})
    return out


@pytest.fixture
def sample_prices(sample_fundamentals):
    return {t: make_prices(current=f["PRICE"]) for t, f in sample_fundamentals.items()}


@pytest.fixture
def sample_nav():
    """60 business days of NAV with a mild upward drift."""
    rng = np.random.default_rng(11)
    dates = pd.bdate_range("2025-01-02", periods=60)
    rets = rng.normal(0.0005, 0.01, size=len(dates))
    navs = 1_000_000 * np.cumprod(1 + rets)
    return [{"snapshot_date": d.strftime("%Y-%m-%d"), "nav": float(v)}
            for d, v in zip(dates, navs)]
