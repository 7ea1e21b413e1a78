#!/usr/bin/env python3
"""
Run Context: per-run bookkeeping for the portfolio scoring engine.

Provides:
  - run_id generation (12 hex chars of a UUID4)
  - logging setup for the whole ``portfolio_scoring`` logger tree
    (JSON lines to runs/{run_id}/run.log, readable lines on the console)
  - config snapshot and config hash
  - CSV artifacts and JSON records
  - run metadata (timestamps, git sha, versions)

Usage:
    ctx = RunContext()                     # creates runs/{run_id}/
    ctx.save_config(cfg)
    ctx.save_artifact("scores", df)
    ctx.log.info("message", extra={"ticker": "AAPL"})
    ctx.save_metadata({...})
"""

import hashlib
import importlib.metadata
import json
import logging
import platform
import subprocess
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd
import yaml

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"
LOGGER_NAME = "portfolio_scoring"

_EXTRA_KEYS = ("ticker", "metric", "value", "phase", "step", "count", "run_id")


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


class _RunIdFilter(logging.Filter):
    """Stamp every record with the current run id."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "run_id", None) is None:
            record.run_id = self.run_id
        return True


class RunContext:
    """Owns one scoring run's log handlers, artifacts and metadata."""

    def __init__(self, run_id: Optional[str] = None, runs_dir: Optional[Path] = None,
                 console_level: int = logging.INFO):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.start_time = datetime.now()
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        root = logging.getLogger(LOGGER_NAME)
        root.setLevel(logging.DEBUG)
        root.propagate = False
        # Re-init replaces the previous run's handlers
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        root.filters.clear()

        fh = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        fh.setFormatter(_JSONFormatter())
        fh.addFilter(_RunIdFilter(self.run_id))
        root.addHandler(fh)

        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"))
        ch.setLevel(console_level)
        root.addHandler(ch)

        self.log = logging.getLogger(f"{LOGGER_NAME}.run")
        self.log.info("Run started", extra={"run_id": self.run_id, "phase": "init"})

    def close(self):
        """Detach and close this run's handlers."""
        root = logging.getLogger(LOGGER_NAME)
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()

    def save_config(self, cfg: dict) -> Path:
        path = self.run_dir / "config.yaml"
        with open(path, "w") as f:
            yaml.dump(cfg, f, default_flow_style=False, sort_keys=False)
        self.log.info("Config snapshot saved", extra={"phase": "init"})
        return path

    def config_hash(self, cfg: dict) -> str:
        """Deterministic hash of the config keys that change scores or risk."""
        relevant = {
            "scoring": cfg.get("scoring", {}),
            "beta": cfg.get("beta", {}),
            "risk": cfg.get("risk", {}),
            "profiles": cfg.get("profiles", {}),
        }
        raw = json.dumps(relevant, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()[:12]

    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        """Save an intermediate DataFrame as CSV."""
        path = self.run_dir / f"{name}.csv"
        df.to_csv(str(path), index=False)
        self.log.info(f"Artifact saved: {name} ({len(df)} rows)",
                      extra={"phase": "artifact", "step": name, "count": len(df)})
        return path

    def save_records(self, name: str, records: list) -> Path:
        """Save pydantic models (or plain dicts) as a JSON list."""
        data = [r.model_dump() if hasattr(r, "model_dump") else r for r in records]
        path = self.run_dir / f"{name}.json"
        with open(path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        self.log.info(f"Records saved: {name} ({len(data)})",
                      extra={"phase": "artifact", "step": name, "count": len(data)})
        return path

    def save_metadata(self, extra: Optional[dict] = None) -> Path:
        """Save run metadata (call at end of run)."""
        end_time = datetime.now()
        meta = {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "elapsed_seconds": round((end_time - self.start_time).total_seconds(), 1),
            "git_sha": _get_git_sha(),
            "python_version": sys.version,
            "platform": platform.platform(),
            "packages": _get_package_versions(),
        }
        if extra:
            meta.update(extra)
        path = self.run_dir / "meta.json"
        with open(path, "w") as f:
            json.dump(meta, f, indent=2, default=str)
        self.log.info("Run metadata saved", extra={"phase": "done"})
        return path


def _get_git_sha() -> str:
    """Current git commit SHA, or 'unknown' outside a git checkout."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5,
            cwd=str(ROOT),
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _get_package_versions() -> dict:
    versions = {}
    for pkg in ["numpy", "pandas", "pydantic", "pyyaml", "openpyxl"]:
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    return versions
