"""
Data models for portfolio metrics calculation.
"""

import math
import pandas as pd
from enum import Enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from constants import Defaults, LimitsAndConstraints, TimeConstants
from utils import default_date_range, validate_ticker_list, validate_ticker_symbol


def _default_start_date() -> date:
    return default_date_range()[0]


def _default_end_date() -> date:
    return default_date_range()[1]


class _CamelModel(BaseModel):
    """Base model serialising to camelCase JSON while accepting snake_case names."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ============================================================================
# REQUEST MODELS (With Validation)
# ============================================================================


@dataclass(frozen=True)
class PortfolioSpec:
    """Ordered ticker/weight pairs of a validated portfolio."""

    tickers: Tuple[str, ...]
    weights: Tuple[float, ...]

    def pairs(self) -> List[Tuple[str, float]]:
        return list(zip(self.tickers, self.weights))

    def weight_map(self) -> Dict[str, float]:
        return dict(zip(self.tickers, self.weights))


class CalculationRequest(_CamelModel):
    """Validated portfolio metrics calculation request."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, extra="ignore"
    )

    tickers: List[str] = Field(..., description="Ticker symbols of the holdings")
    weights: List[float] = Field(..., description="Portfolio weights (must sum to 1.0)")
    start_date: date = Field(default_factory=_default_start_date)
    end_date: date = Field(default_factory=_default_end_date)
    benchmark_ticker: str = Field(default=Defaults.BENCHMARK_TICKER)
    investable_capital: float = Field(default=Defaults.INVESTABLE_CAPITAL, gt=0)
    risk_free_rate: float = Field(default=Defaults.RISK_FREE_RATE, ge=-1, le=1)
    include_ai_analysis: bool = Field(default=True, alias="includeAIAnalysis")
    generate_traces: bool = Field(default=False)

    @field_validator("tickers")
    @classmethod
    def validate_tickers(cls, v: List[str]) -> List[str]:
        """
        Validates the list of ticker symbols using centralized validation.

        Args:
            v (List[str]): The list of ticker symbols to validate.

        Returns:
            List[str]: The validated list of ticker symbols.
        """
        return validate_ticker_list(v)

    @field_validator("benchmark_ticker")
    @classmethod
    def validate_benchmark(cls, v: str) -> str:
        return validate_ticker_symbol(v)

    @field_validator("weights")
    @classmethod
    def validate_weight_values(cls, v: List[float]) -> List[float]:
        """Rejects non-finite and negative weights."""
        for i, weight in enumerate(v):
            if not math.isfinite(weight):
                raise ValueError(f"Weight at position {i} is not a finite number")
            if weight < 0:
                raise ValueError(f"Weight at position {i} cannot be negative: {weight}")
        return v

    @model_validator(mode="after")
    def validate_portfolio(self) -> "CalculationRequest":
        """
        Validates the portfolio composition and the date range.

        Returns:
            CalculationRequest: The validated calculation request.
        """
        if len(self.tickers) != len(self.weights):
            raise ValueError(
                f"Tickers and weights must have same length "
                f"({len(self.tickers)} tickers, {len(self.weights)} weights)"
            )

        total = sum(self.weights)
        if abs(total - 1.0) > LimitsAndConstraints.PORTFOLIO_WEIGHT_TOLERANCE:
            raise ValueError(f"Weights must sum to 1, got {total:.4f}")

        if self.start_date > self.end_date:
            raise ValueError(
                f"startDate {self.start_date.isoformat()} is after endDate {self.end_date.isoformat()}"
            )

        return self

    @property
    def portfolio(self) -> PortfolioSpec:
        return PortfolioSpec(tickers=tuple(self.tickers), weights=tuple(self.weights))


# ============================================================================
# RESULT MODELS (Serialisable, camelCase JSON)
# ============================================================================


class PortfolioMetrics(_CamelModel):
    """Complete set of portfolio statistics.

    Percent-valued fields (returns, volatility, drawdown, VaR/CVaR, alpha,
    tracking error, rSquared) are already multiplied by 100. Every field is
    required: an instance is either complete or never constructed.
    """

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    # Core returns
    total_return: float
    cagr: float
    annualized_return: float

    # Risk
    volatility: float
    max_drawdown: float
    var95: float
    var99: float
    cvar95: float
    cvar99: float

    # Risk-adjusted
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    omega_ratio: float
    information_ratio: float
    treynor_ratio: float

    # Tail risk
    tail_ratio: float
    ulcer_index: float
    skewness: float
    kurtosis: float

    # Liquidity (placeholders)
    liquidity_score: int
    days_to_liquidate: int

    # Benchmark
    beta: float
    alpha: float
    r_squared: float
    tracking_error: float

    # Human-readable
    sleep_score: float
    turbulence_rating: float
    worst_case_dollars: float


TraceValue = Union[int, float, str]


class TraceStep(_CamelModel):
    """One step of a metric derivation."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    step: int = Field(..., ge=1)
    description: str
    formula: str
    inputs: Dict[str, TraceValue] = Field(default_factory=dict)
    result: TraceValue


class CalculationTrace(_CamelModel):
    """Ordered derivation of a single metric."""

    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, frozen=True
    )

    metric_id: str
    steps: List[TraceStep]


class DataInfo(_CamelModel):
    """Describes the data a result was computed from."""

    start_date: date
    end_date: date
    trading_days: Optional[int] = None
    benchmark_days: Optional[int] = None
    calculated_at: datetime


class CalculationResponse(_CamelModel):
    """Successful calculation response."""

    success: bool = True
    from_cache: bool
    metrics: PortfolioMetrics
    traces: Optional[List[CalculationTrace]] = None
    ai_analysis: Optional[Dict[str, Any]] = None
    data_info: DataInfo

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict; ``traces`` is omitted unless they were generated."""
        payload = self.model_dump(mode="json", by_alias=True)
        if self.traces is None:
            payload.pop("traces", None)
        return payload


class ErrorResponse(_CamelModel):
    """Failed calculation response."""

    error: str
    details: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CacheEntry(_CamelModel):
    """Versioned cache record for one (portfolio, date range, benchmark) key."""

    schema_version: int = Defaults.CACHE_SCHEMA_VERSION
    portfolio_hash: str
    tickers: List[str]
    weights: List[float]
    start_date: date
    end_date: date
    benchmark_ticker: str
    risk_free_rate: float
    investable_capital: float
    trading_days: int
    benchmark_days: int
    metrics: PortfolioMetrics
    calculation_traces: Optional[List[CalculationTrace]] = None
    ai_interpretation: Optional[Dict[str, Any]] = None
    is_valid: bool = True
    calculated_at: datetime
    expires_at: datetime

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        if v != Defaults.CACHE_SCHEMA_VERSION:
            raise ValueError(
                f"Cache schema version {v} does not match current version {Defaults.CACHE_SCHEMA_VERSION}"
            )
        return v

    def is_fresh(self, now: datetime) -> bool:
        """True if the entry is valid and has not yet expired."""
        return self.is_valid and self.expires_at > now


# ============================================================================
# DATACLASS MODELS (Internal Use)
# ============================================================================


class DailyBar(NamedTuple):
    """A single daily close."""

    date: date
    close: float


@dataclass
class FetchResult:
    """Outcome of fetching one ticker's daily closes.

    ``closes`` is a date-indexed Series sorted ascending; ``error`` is set when
    the fetch failed. A failed fetch counts as zero observations.
    """

    ticker: str
    closes: Optional[pd.Series] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.closes is not None and not self.closes.empty

    @property
    def bar_count(self) -> int:
        return 0 if self.closes is None else int(len(self.closes))

    @property
    def observations(self) -> int:
        """Number of daily returns the bars yield."""
        return max(0, self.bar_count - 1) if self.ok else 0


@dataclass
class AlignedReturnSeries:
    """Weighted portfolio returns over the aligned dates, plus benchmark returns."""

    portfolio_returns: pd.Series
    benchmark_returns: pd.Series
    tickers: List[str]

    @property
    def trading_days(self) -> int:
        return int(len(self.portfolio_returns))

    @property
    def benchmark_days(self) -> int:
        return int(len(self.benchmark_returns))

    @property
    def has_benchmark(self) -> bool:
        return self.benchmark_days > TimeConstants.MIN_BENCHMARK_OBSERVATIONS


class NarrativeStatus(str, Enum):
    """How a narrative request ended."""

    OK = "ok"
    DISABLED = "disabled"
    UNCONFIGURED = "unconfigured"
    EMPTY = "empty"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    FAILED = "failed"


@dataclass(frozen=True)
class NarrativeResult:
    """Typed outcome of the narrative collaborator."""

    status: NarrativeStatus
    analysis: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_payload(self) -> Optional[Dict[str, Any]]:
        """The ``aiAnalysis`` value of a response: the analysis, ``{"error": ...}`` or None."""
        if self.analysis is not None:
            return self.analysis
        if self.error:
            return {"error": self.error}
        return None
