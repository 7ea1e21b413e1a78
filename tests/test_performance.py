"""Tests for holding returns and portfolio contribution."""

import pytest

from conftest import make_prices
from performance import (
    PERIODS,
    all_holdings_performance,
    calculate_contribution,
    calculate_return,
    holding_performance,
    portfolio_totals,
)


class TestReturnMath:
    def test_return(self):
        assert calculate_return(110.0, 100.0) == pytest.approx(10.0)

    @pytest.mark.parametrize("prev", [0, None])
    def test_missing_previous(self, prev):
        assert calculate_return(110.0, prev) == 0.0

    def test_contribution(self):
        assert calculate_contribution(25.0, 8.0) == pytest.approx(2.0)


class TestHoldingPerformance:
    def test_all_periods(self):
        row = holding_performance("AAPL", 100.0, 10.0, make_prices(100.0))
        assert row["return_1d"] == pytest.approx(1.0)
        assert row["return_ytd"] == pytest.approx(15.0)
        assert row["contribution_ytd"] == pytest.approx(1.5)
        for p in PERIODS:
            assert f"return_{p}" in row and f"contribution_{p}" in row

    def test_missing_history_zero(self):
        row = holding_performance("NEW", 50.0, 5.0, {})
        assert all(row[f"return_{p}"] == 0.0 for p in PERIODS)


class TestPortfolio:
    def test_totals_and_order(self):
        holdings = {"MSFT": 30.0, "aapl": 20.0}
        prices = {"MSFT": make_prices(200.0), "AAPL": make_prices(100.0, price_1d_ago=None)}
        df = all_holdings_performance(holdings, prices, inter_batch_delay=0)
        assert list(df["ticker"]) == ["MSFT", "AAPL"]
        totals = portfolio_totals(df.to_dict("records"))
        assert totals["total_contribution_1d"] == pytest.approx(0.3)
        assert totals["total_contribution_5d"] == pytest.approx(0.3 * 2 + 0.2 * 2)

    def test_empty(self):
        df = all_holdings_performance({}, {})
        assert df.empty
        assert portfolio_totals([]) == {f"total_contribution_{p}": 0.0 for p in PERIODS}
