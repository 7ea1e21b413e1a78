"""Integration tests for infrastructure: RunContext, logging, and an
end-to-end run of the scoring CLI on a synthetic bundle.
"""

import copy
import json
import logging

import pandas as pd
import pytest
import yaml
from openpyxl import load_workbook

import run_context
import run_scoring
from conftest import make_fundamentals, make_prices
from run_context import RunContext


@pytest.fixture
def ctx(tmp_path):
    c = RunContext(run_id="test_run", runs_dir=tmp_path)
    yield c
    c.close()


# =====================================================================
# RUN CONTEXT
# =====================================================================

class TestRunContext:
    def test_config_hash_deterministic(self, ctx, cfg):
        assert ctx.config_hash(cfg) == ctx.config_hash(copy.deepcopy(cfg))

    def test_profile_change_changes_hash(self, ctx, cfg):
        cfg2 = copy.deepcopy(cfg)
        cfg2["profiles"]["BASE"]["VALUE"]["weight"] = 0.9
        assert ctx.config_hash(cfg) != ctx.config_hash(cfg2)

    def test_beta_change_changes_hash(self, ctx, cfg):
        cfg2 = copy.deepcopy(cfg)
        cfg2["beta"]["cap"] = 2.5
        assert ctx.config_hash(cfg) != ctx.config_hash(cfg2)

    def test_save_config_creates_file(self, ctx, cfg):
        path = ctx.save_config(cfg)
        with open(path) as f:
            saved = yaml.safe_load(f)
        assert saved["scoring"]["default_profile"] == cfg["scoring"]["default_profile"]

    def test_save_artifact_csv(self, ctx):
        path = ctx.save_artifact("test_df", pd.DataFrame({"a": [1, 2, 3]}))
        assert path.suffix == ".csv"
        assert len(pd.read_csv(path)) == 3

    def test_save_metadata(self, ctx):
        path = ctx.save_metadata({"test_key": "test_val"})
        with open(path) as f:
            meta = json.load(f)
        assert meta["run_id"] == "test_run"
        assert meta["test_key"] == "test_val"
        assert isinstance(meta["git_sha"], str) and meta["git_sha"]
        assert "pandas" in meta["packages"]

    def test_module_logs_reach_json_file(self, ctx):
        logging.getLogger("portfolio_scoring.factor_engine").warning(
            "peer set thin", extra={"ticker": "AAPL", "phase": "score"})
        for h in logging.getLogger("portfolio_scoring").handlers:
            h.flush()
        lines = (ctx.run_dir / "run.log").read_text().strip().splitlines()
        entries = [json.loads(line) for line in lines]
        hit = [e for e in entries if e["msg"] == "peer set thin"]
        assert hit and hit[0]["ticker"] == "AAPL"
        assert hit[0]["run_id"] == "test_run"
        assert hit[0]["logger"] == "portfolio_scoring.factor_engine"


# =====================================================================
# END-TO-END CLI
# =====================================================================

def _bundle(n=12, n_nav=40):
    fundamentals, prices, weights = {}, {}, {}
    for i in range(n):
        t = f"T{i:02d}"
        fundamentals[t] = make_fundamentals(
            price=40.0 + i * 3, **{"P/E NTM": 10.0 + i, "1 yr Beta": 0.6 + i * 0.1})
        prices[t] = make_prices(40.0 + i * 3)
        weights[t] = {"QQQ": 1.0 if i % 2 == 0 else 0, "SPY": 1.0}
    fundamentals["QQQ"] = make_fundamentals(**{"1 yr Beta": 1.2, "3 yr beta": 1.2,
                                               "5 yr beta - monthly": 1.1})
    # closes instead of a precomputed drawdown
    prices["QQQ"] = make_prices(400.0, max_drawdown=None, closes=[400, 440, 396, 420])
    fundamentals["SPAXX"] = make_fundamentals(price=1.0)
    prices["SPAXX"] = make_prices(1.0)
    nav = [{"snapshot_date": d.strftime("%Y-%m-%d"), "nav": 1000.0 + k * 2 - (k % 3)}
           for k, d in enumerate(pd.bdate_range("2025-03-03", periods=n_nav))]
    return {
        "fundamentals": fundamentals,
        "prices": prices,
        "benchmark_weights": weights,
        "benchmark_assignments": {"T00": "QQQ", "T01": "SPY"},
        "holdings": {"T00": 40.0, "T05": 30.0, "SPAXX": 30.0},
        "nav": nav,
    }


class TestScoringCLI:
    def test_full_run(self, tmp_path, monkeypatch):
        monkeypatch.setattr(run_context, "RUNS_DIR", tmp_path / "runs")
        bundle_path = tmp_path / "bundle.json"
        bundle_path.write_text(json.dumps(_bundle()))
        out = tmp_path / "out"

        assert run_scoring.main(["--input", str(bundle_path), "--out", str(out),
                                 "--scope", "benchmark"]) == 0

        xlsx = list(out.glob("scores_*.xlsx"))
        assert len(xlsx) == 1
        wb = load_workbook(xlsx[0])
        assert wb.sheetnames == ["Scores", "Betas", "Risk", "Performance"]

        records = json.loads(next(out.glob("scores_*.json")).read_text())
        by_ticker = {r["ticker"]: r for r in records}
        assert len(records) == 14
        assert by_ticker["T00"]["peer_scope"] == "QQQ"
        assert by_ticker["T02"]["scope_fallback"] is True
        assert by_ticker["QQQ"]["metrics"]["max_drawdown"] == pytest.approx(-0.1)

        run_dirs = list((tmp_path / "runs").iterdir())
        meta = json.loads((run_dirs[0] / "meta.json").read_text())
        assert meta["profile"] == "BASE"
        assert meta["risk"]["days_of_data"] == 40
        assert meta["risk"]["sharpe_ratio"] is not None
        # SPAXX is cash; T00 and T05 carry their own betas
        assert meta["beta_exposure"]["unmatched"] == []

        # the run directory keeps its own copy of the records
        saved = json.loads((run_dirs[0] / "scores.json").read_text())
        assert len(saved) == 14
        assert saved == records

    def test_unknown_profile_exits(self, tmp_path, monkeypatch):
        monkeypatch.setattr(run_context, "RUNS_DIR", tmp_path / "runs")
        bundle_path = tmp_path / "bundle.json"
        bundle_path.write_text(json.dumps(_bundle()))
        with pytest.raises(SystemExit):
            run_scoring.main(["--input", str(bundle_path), "--out", str(tmp_path),
                              "--profile", "YOLO"])
        logging.getLogger("portfolio_scoring").handlers.clear()

    def test_reference_index_weights(self):
        w = {"AAPL": {"qqq": 8.5}, "JPM": {"SPY": 1.0}}
        assert run_scoring.reference_index_weights(w, "QQQ") == {"AAPL": 8.5}
        assert run_scoring.reference_index_weights(w, None) == {}

    def test_reference_index_weights_coerced(self):
        w = {"AAPL": {"QQQ": "8.5"}, "XOM": {"QQQ": "-"}, "JPM": {"QQQ": "0"},
             "BAD": {"QQQ": -1.0}}
        out = run_scoring.reference_index_weights(w, "QQQ")
        assert out == {"AAPL": 8.5, "JPM": 0.0, "BAD": -1.0}
        assert all(isinstance(v, float) for v in out.values())
