"""
Shared fixtures: synthetic price histories and a calculation service wired
to them.
"""

import threading
import numpy as np
import pandas as pd
import pytest
from unittest.mock import Mock
from typing import Dict, Sequence
from cache import CalculationCache
from config import Config
from exceptions import UpstreamFetchError
from fetcher import PriceDataFetcher
from models import NarrativeResult, NarrativeStatus
from orchestrator import MetricsCalculationService


def closes_from_returns(
    returns: Sequence[float], start: str = "2024-01-02", initial: float = 100.0
) -> pd.Series:
    """Business-day close series whose consecutive returns are ``returns``."""
    dates = pd.bdate_range(start=start, periods=len(returns) + 1)
    prices = initial * np.cumprod(np.concatenate(([1.0], 1.0 + np.asarray(returns, dtype=float))))
    return pd.Series(prices, index=dates, name="close")


class SyntheticPriceProvider:
    """Price provider serving fixed return paths; unknown tickers fail upstream."""

    def __init__(self, returns_by_ticker: Dict[str, Sequence[float]], start: str = "2024-01-02"):
        self.returns_by_ticker = dict(returns_by_ticker)
        self.start = start
        self.calls = []
        self._lock = threading.Lock()

    def fetch_daily_closes(self, ticker, start_date, end_date):
        with self._lock:
            self.calls.append(ticker)
        if ticker not in self.returns_by_ticker:
            raise UpstreamFetchError(f"No data for {ticker}", ticker=ticker)
        return closes_from_returns(self.returns_by_ticker[ticker], start=self.start)


SAMPLE_ANALYSIS = {
    "summary": "Steady, low-volatility portfolio.",
    "riskLevel": "conservative",
    "strengths": ["Zero drawdown"],
    "concerns": [],
    "suggestions": ["Add diversification"],
    "suitableFor": "Conservative investors",
    "keyInsight": "Returns are perfectly smooth.",
}


@pytest.fixture
def benchmark_returns():
    rng = np.random.default_rng(7)
    return rng.normal(0.0004, 0.01, 252)


@pytest.fixture
def provider(benchmark_returns):
    """AAA/BBB constant-return holdings plus a noisy SPY benchmark."""
    rng = np.random.default_rng(11)
    return SyntheticPriceProvider(
        {
            "AAA": [0.0004] * 252,
            "BBB": [0.0002] * 252,
            "CCC": rng.normal(0.0006, 0.015, 252),
            "SPY": benchmark_returns,
        }
    )


@pytest.fixture
def config(tmp_path):
    return Config(
        openai_api_key="test-key-12345",
        openai_base_url="https://api.openai.com/v1",
        model_name="gpt-4o",
        request_timeout=30,
        cache_ttl_hours=24,
        cache_dir=str(tmp_path / "cache"),
        max_workers=4,
        risk_free_rate=0.05,
        benchmark_ticker="SPY",
        investable_capital=100000.0,
        ai_analysis_enabled=True,
        price_provider="yfinance",
    )


@pytest.fixture
def narrative():
    mock = Mock()
    mock.generate_analysis.return_value = NarrativeResult(
        status=NarrativeStatus.OK, analysis=dict(SAMPLE_ANALYSIS)
    )
    return mock


@pytest.fixture
def calculation_cache(config):
    return CalculationCache(cache_dir=config.cache_dir, ttl_hours=config.cache_ttl_hours)


@pytest.fixture
def service(config, provider, narrative, calculation_cache):
    return MetricsCalculationService(
        config,
        cache=calculation_cache,
        fetcher=PriceDataFetcher(provider, max_workers=4),
        narrative=narrative,
    )


@pytest.fixture
def request_payload():
    return {
        "tickers": ["AAA", "BBB"],
        "weights": [0.5, 0.5],
        "startDate": "2024-01-01",
        "endDate": "2024-12-31",
    }
