#!/usr/bin/env python3
"""
Typed schemas for the portfolio scoring engine.

Provides Pydantic models for data validation at pipeline boundaries:
weight profiles and run configuration on the way in, scored securities,
beta estimates and risk metrics on the way out.  The numeric core works on
plain dicts and DataFrames; these models define what it expects and
produces.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from metric_extractor import CAT_METRICS, CATEGORIES, METRIC_COLS, SURPRISE_UNITS


# =========================================================================
# Weight profiles
# =========================================================================

class CategoryWeights(BaseModel):
    """Weight of one category in the total score plus its metric weights.

    Weights are relative: they need not sum to 1.  Zero or absent metric
    weights simply drop out of the weighted average.
    """
    weight: float = 0.0
    metrics: dict[str, float] = {}

    @field_validator("weight")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @field_validator("metrics")
    @classmethod
    def metric_weights_non_negative(cls, v: dict) -> dict:
        for name, w in v.items():
            if w < 0:
                raise ValueError(f"Weight must be >= 0, got {w} for '{name}'")
        return v


class ScoreWeightProfile(BaseModel):
    """Named weight profile (BASE, CAUTIOUS, AGGRESSIVE, ...)."""
    name: str
    categories: dict[str, CategoryWeights] = {}

    @model_validator(mode="after")
    def metrics_belong_to_category(self) -> "ScoreWeightProfile":
        for cat, cw in self.categories.items():
            if cat not in CAT_METRICS:
                raise ValueError(
                    f"Unknown category '{cat}' (expected one of {CATEGORIES})")
            unknown = sorted(set(cw.metrics) - set(CAT_METRICS[cat]))
            if unknown:
                raise ValueError(
                    f"Metrics {unknown} do not belong to category '{cat}'")
        return self

    def category_weight(self, category: str) -> float:
        cw = self.categories.get(category)
        return cw.weight if cw else 0.0

    def metric_weights(self, category: str) -> Optional[list[float]]:
        """Metric weights aligned with CAT_METRICS[category], or None if the
        profile does not define the category."""
        cw = self.categories.get(category)
        if cw is None:
            return None
        return [cw.metrics.get(m, 0.0) for m in CAT_METRICS[category]]


# =========================================================================
# RunConfig: top-level config schema
# =========================================================================

class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class ScoringConfig(BaseModel):
        default_profile: str = "BASE"
        peer_scope: str = "benchmark"
        surprise_units: str = "percent"
        min_peer_count: int = Field(10, ge=0)
        min_complete_pct: float = Field(80, ge=0, le=100)
        batch_size: int = Field(25, ge=1)
        max_workers: int = Field(4, ge=1)
        inter_batch_delay: float = Field(0.0, ge=0)

        @field_validator("peer_scope")
        @classmethod
        def known_scope(cls, v: str) -> str:
            if v.lower() not in ("universe", "benchmark"):
                raise ValueError(f"peer_scope must be 'universe' or 'benchmark', got '{v}'")
            return v.lower()

        @field_validator("surprise_units")
        @classmethod
        def known_units(cls, v: str) -> str:
            if v not in SURPRISE_UNITS:
                raise ValueError(f"surprise_units must be one of {SURPRISE_UNITS}, got '{v}'")
            return v

    class BetaConfig(BaseModel):
        cash_tickers: list[str] = ["FGXXX", "SPAXX", "VMFXX"]
        cash_patterns: list[str] = ["CASH"]
        reference_index: Optional[str] = "QQQ"
        cap: float = Field(3.0, gt=0)
        default: float = 1.0

    class RiskConfig(BaseModel):
        window_days: Optional[int] = Field(90, ge=1)
        min_days: int = Field(30, ge=0)
        risk_free_rate: float = 0.05

    scoring: ScoringConfig = ScoringConfig()
    beta: BetaConfig = BetaConfig()
    risk: RiskConfig = RiskConfig()
    profiles: dict[str, dict[str, CategoryWeights]] = {}

    @model_validator(mode="after")
    def profiles_valid(self) -> "RunConfig":
        for name, categories in self.profiles.items():
            ScoreWeightProfile(name=name, categories=categories)
        if self.profiles and self.scoring.default_profile not in self.profiles:
            raise ValueError(
                f"default_profile '{self.scoring.default_profile}' is not "
                f"defined in profiles {sorted(self.profiles)}")
        return self

    def profile(self, name: Optional[str] = None) -> ScoreWeightProfile:
        name = name or self.scoring.default_profile
        if name not in self.profiles:
            raise KeyError(f"Unknown weight profile '{name}'")
        return ScoreWeightProfile(name=name, categories=self.profiles[name])


# =========================================================================
# Inputs
# =========================================================================

class PriceHistory(BaseModel):
    """Historical closes at fixed offsets for one ticker (None if unavailable)."""
    current_price: Optional[float] = None
    price_1d_ago: Optional[float] = None
    price_5d_ago: Optional[float] = None
    price_30d_ago: Optional[float] = None
    price_90d_ago: Optional[float] = None
    price_365d_ago: Optional[float] = None
    price_end_of_last_quarter: Optional[float] = None
    price_end_of_last_year: Optional[float] = None
    max_drawdown: Optional[float] = None
    closes: list[float] = []

    model_config = ConfigDict(extra="allow")


class NavSnapshot(BaseModel):
    snapshot_date: str
    nav: float


# =========================================================================
# Outputs
# =========================================================================

class ScoredSecurity(BaseModel):
    """Raw metrics, percentile scores, composites and total for one ticker."""
    ticker: str
    metrics: dict[str, Optional[float]] = {}
    metric_scores: dict[str, Optional[float]] = {}
    value_score: Optional[float] = Field(None, ge=0, le=100)
    momentum_score: Optional[float] = Field(None, ge=0, le=100)
    quality_score: Optional[float] = Field(None, ge=0, le=100)
    risk_score: Optional[float] = Field(None, ge=0, le=100)
    total_score: Optional[float] = Field(None, ge=0, le=100)

    # Peer-set diagnostics (reporting only)
    peer_scope: Optional[str] = None
    peer_count: int = 0
    peer_complete_pct: Optional[float] = None
    low_confidence: bool = False
    scope_fallback: bool = False

    @model_validator(mode="after")
    def metric_keys_known(self) -> "ScoredSecurity":
        unknown = sorted((set(self.metrics) | set(self.metric_scores)) - set(METRIC_COLS))
        if unknown:
            raise ValueError(f"Unknown metrics {unknown}")
        return self


class BetaEstimate(BaseModel):
    ticker: str
    beta_1y: float
    beta_3y: float
    beta_5y: float
    true_beta: float
    is_cash: bool = False


class RiskMetricsResult(BaseModel):
    """Portfolio risk statistics; percentage fields are already x100."""
    sharpe_ratio: Optional[float] = None
    annualized_volatility: Optional[float] = None
    var95: Optional[float] = None
    max_drawdown: Optional[float] = None
    days_of_data: int
    requires_days: int

    @model_validator(mode="after")
    def nulls_match_history(self) -> "RiskMetricsResult":
        stats = (self.sharpe_ratio, self.annualized_volatility,
                 self.var95, self.max_drawdown)
        insufficient = self.days_of_data < self.requires_days
        if insufficient and any(s is not None for s in stats):
            raise ValueError("Statistics must be null with insufficient history")
        if not insufficient and any(s is None for s in stats):
            raise ValueError("Statistics must be populated with sufficient history")
        return self
