"""
Unit tests for return-series construction and the metrics engine.

Tests cover:
- Per-ticker and aligned minimum-data gates
- Date intersection and weighted portfolio returns
- Core return/risk metrics on hand-checkable series
- Benchmark metrics and their defaults when the benchmark is too short
- Determinism and bounds of the published record
"""

import math
import numpy as np
import pandas as pd
import pytest
from analyzers import PortfolioMetricsEngine, ReturnSeriesBuilder, has_dispersion
from exceptions import InsufficientDataError
from models import FetchResult
from conftest import closes_from_returns


@pytest.fixture
def builder():
    return ReturnSeriesBuilder()


@pytest.fixture
def engine():
    return PortfolioMetricsEngine(risk_free_rate=0.05, investable_capital=100000.0)


@pytest.fixture
def noisy_returns():
    return np.random.default_rng(42).normal(0.0005, 0.01, 252)


def fetched(ticker, returns, start="2024-01-02"):
    return FetchResult(ticker=ticker, closes=closes_from_returns(returns, start=start))


class TestReturnSeriesBuilder:
    """Test alignment and the minimum-data gate."""

    def test_weighted_constant_portfolio(self, builder):
        holdings = {"AAA": fetched("AAA", [0.0004] * 30), "BBB": fetched("BBB", [0.0002] * 30)}
        series = builder.build(holdings, {"AAA": 0.5, "BBB": 0.5})

        assert series.trading_days == 30
        assert series.portfolio_returns.to_numpy() == pytest.approx([0.0003] * 30, abs=1e-12)
        assert series.tickers == ["AAA", "BBB"]

    def test_nineteen_observations_rejected(self, builder):
        holdings = {"AAA": fetched("AAA", [0.001] * 19)}
        with pytest.raises(InsufficientDataError) as exc_info:
            builder.build(holdings, {"AAA": 1.0})
        assert exc_info.value.tickers == ["AAA"]
        assert "AAA (19 days)" in str(exc_info.value)

    def test_twenty_observations_accepted(self, builder):
        holdings = {"AAA": fetched("AAA", [0.001] * 20)}
        series = builder.build(holdings, {"AAA": 1.0})
        assert series.trading_days == 20

    def test_every_short_ticker_is_named(self, builder):
        holdings = {
            "AAA": fetched("AAA", [0.001] * 40),
            "BBB": fetched("BBB", [0.001] * 5),
            "CCC": FetchResult(ticker="CCC", error="No data for CCC"),
        }
        with pytest.raises(InsufficientDataError) as exc_info:
            builder.build(holdings, {"AAA": 0.4, "BBB": 0.3, "CCC": 0.3})
        assert exc_info.value.tickers == ["BBB", "CCC"]
        assert "CCC (0 days)" in str(exc_info.value)

    def test_returns_use_date_intersection(self, builder):
        # AAA covers bars 0..40, BBB starts 10 business days later
        dates = pd.bdate_range("2024-01-02", periods=41)
        aaa = pd.Series(np.linspace(100, 140, 41), index=dates)
        bbb = pd.Series(np.linspace(50, 60, 31), index=dates[10:])
        holdings = {
            "AAA": FetchResult(ticker="AAA", closes=aaa),
            "BBB": FetchResult(ticker="BBB", closes=bbb),
        }
        series = builder.build(holdings, {"AAA": 0.5, "BBB": 0.5})

        assert series.trading_days == 30
        assert series.portfolio_returns.index[0] == dates[11]
        expected_first = 0.5 * (aaa.iloc[11] / aaa.iloc[10] - 1) + 0.5 * (bbb.iloc[1] / bbb.iloc[0] - 1)
        assert series.portfolio_returns.iloc[0] == pytest.approx(expected_first)

    def test_short_intersection_rejected(self, builder):
        dates = pd.bdate_range("2024-01-02", periods=30)
        holdings = {
            "AAA": FetchResult(ticker="AAA", closes=pd.Series(np.linspace(100, 110, 25), index=dates[:25])),
            "BBB": FetchResult(ticker="BBB", closes=pd.Series(np.linspace(100, 110, 25), index=dates[5:])),
        }
        with pytest.raises(InsufficientDataError, match="only 19 aligned trading days") as exc_info:
            builder.build(holdings, {"AAA": 0.5, "BBB": 0.5})
        assert exc_info.value.trading_days == 19

    def test_benchmark_failure_yields_empty_series(self, builder):
        holdings = {"AAA": fetched("AAA", [0.001] * 30)}
        benchmark = FetchResult(ticker="SPY", error="No data for SPY")
        series = builder.build(holdings, {"AAA": 1.0}, benchmark)
        assert series.benchmark_days == 0
        assert not series.has_benchmark

    def test_benchmark_returns_independent_of_intersection(self, builder):
        holdings = {"AAA": fetched("AAA", [0.001] * 30)}
        benchmark = fetched("SPY", [0.002] * 50, start="2023-06-01")
        series = builder.build(holdings, {"AAA": 1.0}, benchmark)
        assert series.benchmark_days == 50
        assert series.has_benchmark


class TestCoreMetrics:
    """Test the return and risk metrics."""

    def test_constant_return_portfolio(self, engine):
        metrics = engine.calculate_all_metrics([0.0003] * 252)

        assert metrics.total_return == pytest.approx((1.0003 ** 252 - 1) * 100, abs=1e-4)
        assert metrics.cagr == pytest.approx(metrics.total_return, abs=1e-3)
        assert metrics.annualized_return == pytest.approx(0.0003 * 252 * 100, abs=1e-4)
        assert metrics.volatility == 0.0
        assert metrics.max_drawdown == 0.0
        assert metrics.sharpe_ratio == 10.0
        assert metrics.sortino_ratio == 10.0
        assert metrics.skewness == 0.0
        assert metrics.kurtosis == 0.0
        assert metrics.sleep_score == 100.0
        assert metrics.worst_case_dollars == 0.0

    def test_constant_return_below_risk_free_rate(self, engine):
        metrics = engine.calculate_all_metrics([0.0001] * 100)
        assert metrics.sharpe_ratio == 0.0
        assert metrics.volatility == 0.0

    def test_single_drop_drawdown(self, engine):
        returns = [0.01] * 10 + [-0.1] + [0.0] * 10
        workings = engine.compute_workings(returns)
        metrics = engine.to_metrics(workings)

        assert metrics.max_drawdown == pytest.approx(10.0, abs=1e-4)
        assert workings.max_drawdown_index == 11
        assert metrics.worst_case_dollars == pytest.approx(10000.0, abs=0.01)
        expected_calmar = workings.cagr * 100 / workings.max_drawdown
        assert metrics.calmar_ratio == pytest.approx(expected_calmar, abs=1e-4)

    def test_drawdown_bounds(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns)
        assert 0 < metrics.max_drawdown <= 100

    def test_drawdown_zero_for_non_decreasing_values(self, engine):
        returns = [0.0, 0.001, 0.0, 0.002] * 10
        assert engine.calculate_all_metrics(returns).max_drawdown == 0.0

    def test_var_and_cvar(self, engine):
        returns = [-0.05, -0.04, -0.03, -0.02, -0.01, -0.005] + [0.001] * 94
        metrics = engine.calculate_all_metrics(returns)

        assert metrics.var95 == pytest.approx(0.5, abs=1e-4)
        assert metrics.var99 == pytest.approx(4.0, abs=1e-4)
        assert metrics.cvar95 == pytest.approx(3.0, abs=1e-4)
        assert metrics.cvar99 == pytest.approx(5.0, abs=1e-4)

    def test_omega_and_tail_ratio(self, engine):
        returns = [-0.05, -0.04, -0.03, -0.02, -0.01, -0.005] + [0.001] * 94
        metrics = engine.calculate_all_metrics(returns)

        assert metrics.omega_ratio == pytest.approx(1 + 0.094 / 0.155, abs=1e-4)
        assert metrics.tail_ratio == pytest.approx(0.001 / 0.03, abs=1e-4)

    def test_omega_without_losses_is_capped(self, engine):
        assert engine.calculate_all_metrics([0.001, 0.002] * 15).omega_ratio == 10.0

    def test_omega_and_tail_neutral_for_flat_series(self, engine):
        metrics = engine.calculate_all_metrics([0.0] * 30)
        assert metrics.omega_ratio == 1.0
        assert metrics.tail_ratio == 1.0
        assert metrics.total_return == 0.0

    def test_sharpe_matches_definition(self, engine, noisy_returns):
        daily_rf = 0.05 / 252
        excess = noisy_returns - daily_rf
        expected = excess.mean() / excess.std(ddof=1) * math.sqrt(252)
        assert engine.calculate_all_metrics(noisy_returns).sharpe_ratio == pytest.approx(expected, abs=1e-4)

    def test_volatility_matches_sample_std(self, engine, noisy_returns):
        expected = noisy_returns.std(ddof=1) * math.sqrt(252) * 100
        assert engine.calculate_all_metrics(noisy_returns).volatility == pytest.approx(expected, abs=1e-4)

    def test_skewness_matches_pandas(self, engine, noisy_returns):
        series = pd.Series(noisy_returns)
        metrics = engine.calculate_all_metrics(noisy_returns)
        assert metrics.skewness == pytest.approx(series.skew(), abs=1e-4)
        assert metrics.kurtosis == pytest.approx(series.kurt(), abs=1e-4)

    def test_scores_are_clamped(self, engine):
        wild = np.random.default_rng(9).normal(0, 0.08, 252)
        metrics = engine.calculate_all_metrics(wild)
        assert metrics.sleep_score == 0.0
        assert metrics.turbulence_rating == 100.0

    def test_sleep_score_formula(self, engine, noisy_returns):
        workings = engine.compute_workings(noisy_returns)
        expected = max(0.0, min(100.0, 100 - workings.volatility * 100 * 4))
        assert engine.to_metrics(workings).sleep_score == pytest.approx(round(expected), abs=1.0)

    def test_liquidity_placeholders(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns)
        assert metrics.liquidity_score == 85
        assert metrics.days_to_liquidate == 1

    def test_deterministic(self, engine, noisy_returns):
        first = engine.calculate_all_metrics(noisy_returns)
        second = engine.calculate_all_metrics(list(noisy_returns))
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_empty_returns_rejected(self, engine):
        with pytest.raises(InsufficientDataError):
            engine.calculate_all_metrics([])


class TestBenchmarkMetrics:
    """Test benchmark-relative metrics."""

    def test_short_benchmark_uses_defaults(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns, noisy_returns[:20])

        assert metrics.beta == 1.0
        assert metrics.alpha == 0.0
        assert metrics.r_squared == 0.0
        assert metrics.tracking_error == 0.0
        assert metrics.information_ratio == 0.0
        assert metrics.treynor_ratio == 0.0

    def test_missing_benchmark_uses_defaults(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns, [])
        assert (metrics.beta, metrics.alpha, metrics.r_squared, metrics.tracking_error) == (1.0, 0.0, 0.0, 0.0)

    def test_twenty_one_benchmark_observations_enable_metrics(self, engine, noisy_returns):
        workings = engine.compute_workings(noisy_returns, noisy_returns[:21] * 2)
        assert workings.benchmark is not None
        assert workings.benchmark.aligned_length == 21

    def test_portfolio_equal_to_benchmark(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns, noisy_returns)

        assert metrics.beta == pytest.approx(1.0, abs=1e-4)
        assert metrics.alpha == pytest.approx(0.0, abs=1e-4)
        assert metrics.r_squared == pytest.approx(100.0, abs=0.01)
        assert metrics.tracking_error == 0.0
        assert metrics.information_ratio == 0.0

    def test_leveraged_portfolio_beta(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns * 2, noisy_returns)

        assert metrics.beta == pytest.approx(2.0, abs=1e-4)
        assert metrics.r_squared == pytest.approx(100.0, abs=0.01)
        expected_treynor = (noisy_returns.mean() * 2 * 252 - 0.05) / 2.0
        assert metrics.treynor_ratio == pytest.approx(expected_treynor, abs=1e-4)

    def test_benchmark_truncated_to_shorter_series(self, engine, noisy_returns):
        workings = engine.compute_workings(noisy_returns[:100], noisy_returns)
        assert workings.benchmark.aligned_length == 100
        assert workings.benchmark.observations == 252

    def test_flat_benchmark_defaults_beta(self, engine, noisy_returns):
        metrics = engine.calculate_all_metrics(noisy_returns, [0.0] * 252)
        assert metrics.beta == 1.0
        assert metrics.r_squared == 0.0

    def test_low_variance_benchmark_keeps_beta(self, engine):
        benchmark = 1e-4 + 5e-6 * np.tile([1.0, -1.0], 50)
        portfolio = 2 * benchmark
        workings = engine.compute_workings(portfolio, benchmark)

        assert workings.benchmark.benchmark_variance < 1e-10
        assert workings.beta == pytest.approx(2.0, rel=1e-9)
        assert workings.r_squared == pytest.approx(100.0, abs=1e-6)
        assert workings.information_ratio != 0.0

    def test_low_variance_moments_are_scale_invariant(self, engine):
        pattern = np.tile([0.0, 0.0, 0.0, 0.0, 5.0], 20)
        tiny = engine.calculate_all_metrics(1e-4 + 1e-6 * pattern)
        scaled = engine.calculate_all_metrics(1e-2 + 1e-4 * pattern)

        assert tiny.skewness > 0
        assert tiny.skewness == pytest.approx(scaled.skewness, abs=1e-4)
        assert tiny.kurtosis == pytest.approx(scaled.kurtosis, abs=1e-4)


class TestHasDispersion:
    def test_zero_std(self):
        assert not has_dispersion(np.array([0.001] * 5), 0.0)

    def test_empty_series(self):
        assert not has_dispersion(np.array([]), 1.0)

    def test_rounding_noise_ignored(self):
        closes = 100 * np.cumprod(np.full(253, 1.0003))
        returns = np.diff(closes) / closes[:-1]
        assert not has_dispersion(returns, float(np.std(returns, ddof=1)))

    def test_small_real_dispersion_detected(self):
        values = 1e-4 + 5e-6 * np.tile([1.0, -1.0], 50)
        assert has_dispersion(values, float(np.std(values, ddof=1)))
