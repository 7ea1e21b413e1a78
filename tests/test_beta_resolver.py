"""Tests for beta fallback resolution, cash handling and portfolio exposure."""

import pytest

from beta_resolver import (
    FALLBACK_RULES,
    cascade,
    is_cash,
    portfolio_beta_exposure,
    resolve_betas,
    resolve_universe_betas,
)
from run_scoring import reference_index_weights
from schemas import RunConfig


def _raw(b1=None, b3=None, b5=None):
    return {"beta_1y": b1, "beta_3y": b3, "beta_5y": b5}


def _horizons(est):
    return (est.beta_1y, est.beta_3y, est.beta_5y)


class TestCascade:
    def test_only_3y_present(self):
        est = resolve_betas("X", _raw(None, 0.8, None))
        assert _horizons(est) == (1.0, 0.8, 0.8)
        assert est.true_beta == 1.0

    def test_only_1y_present(self):
        est = resolve_betas("X", _raw(2.5, None, None))
        assert _horizons(est) == (2.5, 2.5, 2.5)
        assert est.true_beta == 2.5

    def test_all_present_untouched(self):
        est = resolve_betas("X", _raw(0.9, 1.1, 1.3))
        assert _horizons(est) == (0.9, 1.1, 1.3)
        assert est.true_beta == 1.3

    def test_all_missing_default(self):
        est = resolve_betas("X", _raw())
        assert _horizons(est) == (1.0, 1.0, 1.0)
        assert est.true_beta == 1.0

    def test_never_backfills_shorter_horizon(self):
        est = resolve_betas("X", _raw(None, None, 1.7))
        assert est.beta_1y == 1.0
        assert est.beta_3y == 1.0
        assert est.beta_5y == 1.7

    def test_1y_and_5y_present(self):
        assert cascade(_raw(1.2, None, 0.6)) == {"beta_1y": 1.2, "beta_3y": 1.2,
                                                 "beta_5y": 0.6}

    def test_rules_read_raw_missingness(self):
        # 3y is filled from 1y; 5y then comes from the backfilled 3y
        assert cascade(_raw(1.4, None, None))["beta_5y"] == 1.4
        assert len(FALLBACK_RULES) == 3


class TestCap:
    def test_true_beta_capped(self):
        est = resolve_betas("X", _raw(4.2, 5.0, None))
        assert est.true_beta == 3.0
        # reported horizons are not capped
        assert est.beta_3y == 5.0

    def test_custom_cap(self):
        settings = RunConfig.BetaConfig(cap=2.0)
        assert resolve_betas("X", _raw(2.5), settings=settings).true_beta == 2.0


class TestCash:
    @pytest.mark.parametrize("ticker", ["FGXXX", "spaxx", "VMFXX", "CASH", "USD_CASH"])
    def test_cash_pinned_to_zero(self, ticker):
        est = resolve_betas(ticker, _raw(1.5, 1.5, 1.5))
        assert est.is_cash
        assert _horizons(est) == (0.0, 0.0, 0.0)
        assert est.true_beta == 0.0

    def test_non_cash(self):
        assert not is_cash("AAPL")


class TestReferenceIndexFloor:
    def test_constituent_floored_at_index_beta(self):
        est = resolve_betas("AAPL", _raw(0.8, 0.9, 0.9),
                            reference_raw=_raw(1.15, 1.2, None), reference_weight=8.5)
        assert est.true_beta == 1.2
        assert est.beta_1y == 0.8

    def test_zero_weight_not_floored(self):
        est = resolve_betas("AAPL", _raw(0.8, 0.9, 0.9),
                            reference_raw=_raw(1.2, 1.2, 1.2), reference_weight=0)
        assert est.true_beta == 0.9

    def test_higher_own_beta_kept(self):
        est = resolve_betas("NVDA", _raw(1.8, 1.9, 2.0),
                            reference_raw=_raw(1.2, 1.2, 1.2), reference_weight=7.0)
        assert est.true_beta == 2.0

    def test_universe_uses_reference_from_raw_map(self):
        raw = {"QQQ": _raw(1.2, 1.25, 1.1), "aapl": _raw(0.7, None, None),
               "JPM": _raw(0.9, 1.0, 1.0)}
        out = resolve_universe_betas(raw, {"AAPL": 8.5, "JPM": 0})
        assert out["AAPL"].true_beta == 1.25
        assert out["JPM"].true_beta == 1.0
        assert out["QQQ"].true_beta == 1.25


class TestReferenceIndexMembership:
    def test_negative_weight_not_floored(self):
        est = resolve_betas("AAPL", _raw(0.5, 0.5, 0.5),
                            reference_raw=_raw(1.3, 1.3, 1.3), reference_weight=-1.0)
        assert est.true_beta == 0.5

    def test_only_positive_numeric_weights_floor(self):
        weights = {"AAPL": {"QQQ": 8.5}, "XOM": {"QQQ": "-"}, "JPM": {"QQQ": "0"},
                   "BAD": {"QQQ": -1.0}}
        raw = {t: _raw(0.5, 0.5, 0.5) for t in weights}
        raw["QQQ"] = _raw(1.3, 1.3, 1.3)
        out = resolve_universe_betas(raw, reference_index_weights(weights, "QQQ"))
        assert out["AAPL"].true_beta == 1.3
        for ticker in ("XOM", "JPM", "BAD"):
            assert out[ticker].true_beta == 0.5


class TestPortfolioExposure:
    def test_sumproduct(self):
        estimates = {
            "AAPL": resolve_betas("AAPL", _raw(1.2, 1.2, 1.2)),
            "SPAXX": resolve_betas("SPAXX", _raw()),
        }
        exp = portfolio_beta_exposure({"AAPL": 60, "SPAXX": 40}, estimates)
        assert exp["true_beta"] == pytest.approx(0.72)
        assert exp["unmatched"] == []

    def test_unmatched_default(self):
        exp = portfolio_beta_exposure({"ZZZ": 50, "MY CASH": 50}, {})
        assert exp["true_beta"] == pytest.approx(0.5)
        assert sorted(exp["unmatched"]) == ["MY CASH", "ZZZ"]
