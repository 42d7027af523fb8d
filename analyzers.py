"""
Portfolio return-series construction and risk/return metrics.
"""

import math
import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, Optional, Sequence
import stats_utils
from constants import (
    TimeConstants,
    LimitsAndConstraints,
    MetricParameters,
    RoundingPrecision,
    Defaults,
)
from exceptions import InsufficientDataError
from models import AlignedReturnSeries, FetchResult, PortfolioMetrics
from utils import clamp, round_half_up

logger = logging.getLogger(__name__)

SQRT_TRADING_DAYS = math.sqrt(TimeConstants.TRADING_DAYS_PER_YEAR)


def has_dispersion(values: np.ndarray, std: float) -> bool:
    """True unless ``std`` is zero or within rounding noise of the series' largest magnitude."""
    if std <= 0 or values.size == 0:
        return False
    scale = float(np.max(np.abs(values)))
    return std > LimitsAndConstraints.RELATIVE_DISPERSION_TOLERANCE * scale


class ReturnSeriesBuilder:
    """Aligns per-ticker closes and builds the weighted daily portfolio return series."""

    def __init__(self, min_trading_days: int = TimeConstants.MIN_TRADING_DAYS) -> None:
        self.min_trading_days = min_trading_days

    @staticmethod
    def daily_returns(closes):
        """(close_t - close_{t-1}) / close_{t-1}; the first bar yields no return."""
        previous = closes.shift(1)
        return ((closes - previous) / previous).iloc[1:]

    def build(
        self,
        holdings: Dict[str, FetchResult],
        weights: Dict[str, float],
        benchmark: Optional[FetchResult] = None,
    ) -> AlignedReturnSeries:
        """
        Builds the aligned portfolio return series.

        Every ticker must individually have enough observations; the closes are
        then restricted to the dates present in every ticker's series and
        returns are computed between consecutive aligned dates.

        Args:
            holdings: Fetch results keyed by ticker.
            weights: Portfolio weights keyed by ticker, in portfolio order.
            benchmark: Benchmark fetch result, if any.

        Returns:
            AlignedReturnSeries: Portfolio and benchmark daily returns.

        Raises:
            InsufficientDataError: If any ticker, or the aligned intersection, has
                fewer than ``min_trading_days`` return observations.
        """
        tickers = list(weights)

        observations = {
            ticker: holdings[ticker].observations if ticker in holdings else 0
            for ticker in tickers
        }
        insufficient = [t for t in tickers if observations[t] < self.min_trading_days]
        if insufficient:
            details = ", ".join(f"{t} ({observations[t]} days)" for t in insufficient)
            raise InsufficientDataError(
                f"Insufficient data for: {details}. "
                f"Need at least {self.min_trading_days} trading days per ticker.",
                tickers=insufficient,
            )

        closes = pd.concat(
            [holdings[t].closes.rename(t) for t in tickers], axis=1, join="inner"
        ).sort_index()

        aligned_days = max(0, len(closes) - 1)
        if aligned_days < self.min_trading_days:
            raise InsufficientDataError(
                f"Insufficient data: only {aligned_days} aligned trading days available. "
                f"Need at least {self.min_trading_days} days.",
                trading_days=aligned_days,
            )

        returns_df = self.daily_returns(closes)
        weights_array = np.array([weights[t] for t in tickers], dtype=float)
        portfolio_returns = pd.Series(
            returns_df[tickers].to_numpy() @ weights_array,
            index=returns_df.index,
            name="portfolio_return",
        )

        if benchmark is not None and benchmark.ok:
            benchmark_returns = self.daily_returns(benchmark.closes)
            benchmark_returns.name = "benchmark_return"
        else:
            benchmark_returns = pd.Series(dtype=float, name="benchmark_return")

        logger.info(
            f"Aligned {len(tickers)} tickers over {len(portfolio_returns)} trading days "
            f"(benchmark: {len(benchmark_returns)} days)"
        )

        return AlignedReturnSeries(
            portfolio_returns=portfolio_returns,
            benchmark_returns=benchmark_returns,
            tickers=tickers,
        )


@dataclass(frozen=True, eq=False)
class BenchmarkWorkings:
    """Intermediate values of the benchmark-relative metrics."""

    observations: int
    aligned_length: int
    covariance: float
    benchmark_variance: float
    portfolio_mean: float
    benchmark_mean: float
    portfolio_std: float
    benchmark_std: float
    correlation: Optional[float]
    active_mean: float
    active_std: float


@dataclass(frozen=True, eq=False)
class MetricWorkings:
    """Every intermediate value behind a PortfolioMetrics record.

    Raw (unrounded, fractional) values; both the published metrics and the
    calculation traces are derived from one instance.
    """

    # Inputs
    returns: np.ndarray
    benchmark_returns: np.ndarray
    risk_free_rate: float
    investable_capital: float
    n: int
    daily_rf: float

    # Value series and drawdown
    values: np.ndarray
    peaks: np.ndarray
    drawdowns: np.ndarray
    max_drawdown: float
    max_drawdown_index: int

    # Returns
    total_return: float
    years: float
    cagr: float
    mean_return: float
    std_return: float
    annualized_return: float
    volatility: float

    # Tail
    sorted_returns: np.ndarray
    var95_index: int
    var99_index: int
    var95: float
    var99: float
    cvar95: float
    cvar99: float
    tail_count: int
    tail_best_mean: float
    tail_worst_mean: float
    tail_ratio: float

    # Risk-adjusted
    excess_mean: float
    excess_std: float
    sharpe_ratio: float
    downside_days: int
    downside_variance: float
    downside_deviation: float
    sortino_ratio: float
    calmar_ratio: float
    gains: float
    losses: float
    omega_ratio: float

    # Distribution
    ulcer_index: float
    skewness: float
    kurtosis: float

    # Benchmark
    benchmark: Optional[BenchmarkWorkings]
    beta: float
    alpha: float
    r_squared: float
    tracking_error: float
    information_ratio: float
    treynor_ratio: float

    # Human-readable
    sleep_score: float
    turbulence_rating: float
    worst_case_dollars: float


class PortfolioMetricsEngine:
    """Computes the full metric battery from a daily portfolio return series."""

    def __init__(
        self,
        risk_free_rate: float = Defaults.RISK_FREE_RATE,
        investable_capital: float = Defaults.INVESTABLE_CAPITAL,
    ) -> None:
        """
        Initializes the engine with the risk-free rate and the starting capital.

        Args:
            risk_free_rate (float): Annual risk-free rate as a decimal.
            investable_capital (float): Starting value of the portfolio value series.
        """
        self.risk_free_rate = risk_free_rate
        self.investable_capital = investable_capital

    def calculate_all_metrics(
        self,
        returns: Sequence[float],
        benchmark_returns: Optional[Sequence[float]] = None,
    ) -> PortfolioMetrics:
        """
        Calculates all portfolio metrics from daily returns.

        Args:
            returns: Daily portfolio returns as decimals.
            benchmark_returns: Daily benchmark returns as decimals.

        Returns:
            PortfolioMetrics: The rounded, complete metric record.
        """
        return self.to_metrics(self.compute_workings(returns, benchmark_returns))

    def compute_workings(
        self,
        returns: Sequence[float],
        benchmark_returns: Optional[Sequence[float]] = None,
    ) -> MetricWorkings:
        """
        Computes every raw metric and the intermediate values behind it.

        Raises:
            InsufficientDataError: If ``returns`` is empty.
        """
        r = np.asarray(returns, dtype=float).ravel()
        b = (
            np.asarray(benchmark_returns, dtype=float).ravel()
            if benchmark_returns is not None
            else np.array([], dtype=float)
        )
        n = int(r.size)
        if n == 0:
            raise InsufficientDataError("No portfolio returns to analyze", trading_days=0)

        trading_days = TimeConstants.TRADING_DAYS_PER_YEAR
        capital = float(self.investable_capital)
        daily_rf = self.risk_free_rate / trading_days

        # Value series V_0 = capital, V_t = V_{t-1} * (1 + R_t)
        values = np.cumprod(np.concatenate(([capital], 1.0 + r)))
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
        max_dd_index = int(np.argmax(drawdowns))
        max_drawdown = float(drawdowns[max_dd_index])

        total_return = float((values[-1] - capital) / capital)
        years = n / trading_days
        if years <= 0:
            cagr = 0.0
        elif 1 + total_return <= 0:
            cagr = -1.0
        else:
            cagr = (1 + total_return) ** (1 / years) - 1

        mean_return = stats_utils.mean(r)
        std_return = stats_utils.std_dev(r)
        annualized_return = mean_return * trading_days
        volatility = std_return * SQRT_TRADING_DAYS

        # VaR / CVaR from the ascending sort
        sorted_returns = np.sort(r)
        var95_index = int(math.floor(n * MetricParameters.VAR_95_TAIL))
        var99_index = int(math.floor(n * MetricParameters.VAR_99_TAIL))
        var95 = abs(float(sorted_returns[var95_index]) if var95_index < n else 0.0) * 100
        var99 = abs(float(sorted_returns[var99_index]) if var99_index < n else 0.0) * 100
        cvar95 = abs(stats_utils.mean(sorted_returns[: max(1, var95_index)])) * 100
        cvar99 = abs(stats_utils.mean(sorted_returns[: max(1, var99_index)])) * 100

        # Sharpe
        excess = r - daily_rf
        excess_mean = stats_utils.mean(excess)
        excess_std = stats_utils.std_dev(excess)
        if has_dispersion(excess, excess_std):
            sharpe = excess_mean / excess_std * SQRT_TRADING_DAYS
        elif excess_mean > 0:
            sharpe = MetricParameters.RATIO_CAP
        else:
            sharpe = 0.0

        # Sortino
        downside = np.minimum(0.0, r - daily_rf)
        downside_variance = stats_utils.mean(downside * downside)
        downside_deviation = math.sqrt(downside_variance)
        if downside_deviation > 0:
            sortino = (mean_return - daily_rf) / downside_deviation * SQRT_TRADING_DAYS
        else:
            sortino = MetricParameters.RATIO_CAP if sharpe > 0 else 0.0

        calmar = (cagr * 100) / max_drawdown if max_drawdown > 0 else 0.0

        # Omega
        gains = float(r[r > 0].sum())
        losses = abs(float(r[r < 0].sum()))
        if losses > 0:
            omega = 1 + gains / losses
        elif gains > 0:
            omega = MetricParameters.RATIO_CAP
        else:
            omega = MetricParameters.NEUTRAL_OMEGA

        # Tail ratio
        tail_count = max(1, int(math.floor(n * MetricParameters.TAIL_RATIO_FRACTION)))
        tail_best_mean = stats_utils.mean(sorted_returns[-tail_count:])
        tail_worst_mean = stats_utils.mean(sorted_returns[:tail_count])
        tail_ratio = (
            tail_best_mean / abs(tail_worst_mean)
            if abs(tail_worst_mean) > 0
            else MetricParameters.NEUTRAL_TAIL_RATIO
        )

        ulcer_index = math.sqrt(stats_utils.mean(drawdowns * drawdowns))

        skewness, kurtosis = self._calculate_moments(r, mean_return, std_return)

        benchmark, beta, alpha, r_squared, tracking_error, information_ratio, treynor = (
            self._calculate_benchmark_metrics(r, b, annualized_return)
        )

        sleep_score = clamp(
            100 - volatility * 100 * MetricParameters.SLEEP_SCORE_VOLATILITY_MULTIPLIER,
            MetricParameters.SCORE_MIN,
            MetricParameters.SCORE_MAX,
        )
        turbulence_rating = clamp(
            volatility * 100 * MetricParameters.TURBULENCE_VOLATILITY_MULTIPLIER
            + max(0.0, kurtosis) * MetricParameters.TURBULENCE_KURTOSIS_MULTIPLIER
            + max(0.0, -skewness) * MetricParameters.TURBULENCE_SKEW_MULTIPLIER,
            MetricParameters.SCORE_MIN,
            MetricParameters.SCORE_MAX,
        )
        worst_case_dollars = capital * (max_drawdown / 100)

        logger.debug(
            f"Metrics: n={n}, Sharpe={sharpe:.2f}, Vol={volatility * 100:.2f}%, "
            f"MaxDD={max_drawdown:.2f}%"
        )

        return MetricWorkings(
            returns=r,
            benchmark_returns=b,
            risk_free_rate=self.risk_free_rate,
            investable_capital=capital,
            n=n,
            daily_rf=daily_rf,
            values=values,
            peaks=peaks,
            drawdowns=drawdowns,
            max_drawdown=max_drawdown,
            max_drawdown_index=max_dd_index,
            total_return=total_return,
            years=years,
            cagr=cagr,
            mean_return=mean_return,
            std_return=std_return,
            annualized_return=annualized_return,
            volatility=volatility,
            sorted_returns=sorted_returns,
            var95_index=var95_index,
            var99_index=var99_index,
            var95=var95,
            var99=var99,
            cvar95=cvar95,
            cvar99=cvar99,
            tail_count=tail_count,
            tail_best_mean=tail_best_mean,
            tail_worst_mean=tail_worst_mean,
            tail_ratio=tail_ratio,
            excess_mean=excess_mean,
            excess_std=excess_std,
            sharpe_ratio=sharpe,
            downside_days=int((r < daily_rf).sum()),
            downside_variance=downside_variance,
            downside_deviation=downside_deviation,
            sortino_ratio=sortino,
            calmar_ratio=calmar,
            gains=gains,
            losses=losses,
            omega_ratio=omega,
            ulcer_index=ulcer_index,
            skewness=skewness,
            kurtosis=kurtosis,
            benchmark=benchmark,
            beta=beta,
            alpha=alpha,
            r_squared=r_squared,
            tracking_error=tracking_error,
            information_ratio=information_ratio,
            treynor_ratio=treynor,
            sleep_score=sleep_score,
            turbulence_rating=turbulence_rating,
            worst_case_dollars=worst_case_dollars,
        )

    def _calculate_moments(self, r: np.ndarray, mean_return: float, std_return: float):
        """Bias-corrected sample skewness and excess kurtosis."""
        n = r.size
        if not has_dispersion(r, std_return):
            return 0.0, 0.0

        z = (r - mean_return) / std_return

        skewness = 0.0
        if n > 2:
            skewness = (n / ((n - 1) * (n - 2))) * float((z ** 3).sum())

        kurtosis = 0.0
        if n > 3:
            kurtosis = (n * (n + 1)) / ((n - 1) * (n - 2) * (n - 3)) * float(
                (z ** 4).sum()
            ) - (3 * (n - 1) * (n - 1)) / ((n - 2) * (n - 3))

        return skewness, kurtosis

    def _calculate_benchmark_metrics(
        self, r: np.ndarray, b: np.ndarray, annualized_return: float
    ):
        """Calculate metrics relative to benchmark.

        Needs strictly more than MIN_BENCHMARK_OBSERVATIONS benchmark returns;
        both series are truncated to the shorter length.

        Returns:
            Tuple of (workings, beta, alpha, r_squared, tracking_error, information_ratio, treynor)
        """
        if b.size <= TimeConstants.MIN_BENCHMARK_OBSERVATIONS:
            return None, MetricParameters.DEFAULT_BETA, 0.0, 0.0, 0.0, 0.0, 0.0

        trading_days = TimeConstants.TRADING_DAYS_PER_YEAR
        length = min(r.size, b.size)
        p = r[:length]
        bench = b[:length]

        cov = stats_utils.covariance(p, bench)
        bench_var = stats_utils.variance(bench)
        beta = (
            cov / bench_var
            if has_dispersion(bench, math.sqrt(bench_var))
            else MetricParameters.DEFAULT_BETA
        )

        p_mean = stats_utils.mean(p)
        b_mean = stats_utils.mean(bench)
        alpha = (p_mean - beta * b_mean) * trading_days * 100

        p_std = stats_utils.std_dev(p)
        b_std = stats_utils.std_dev(bench)
        correlation = None
        r_squared = 0.0
        if has_dispersion(p, p_std) and has_dispersion(bench, b_std):
            correlation = cov / (p_std * b_std)
            r_squared = clamp(correlation * correlation * 100, 0, 100)

        active = p - bench
        active_mean = stats_utils.mean(active)
        active_std = stats_utils.std_dev(active)
        tracking_error = active_std * SQRT_TRADING_DAYS * 100
        information_ratio = (
            (active_mean * trading_days * 100) / tracking_error
            if has_dispersion(active, active_std)
            else 0.0
        )

        treynor = (
            (annualized_return - self.risk_free_rate) / beta
            if abs(beta) > LimitsAndConstraints.MIN_ABS_BETA_FOR_TREYNOR
            else 0.0
        )

        workings = BenchmarkWorkings(
            observations=int(b.size),
            aligned_length=int(length),
            covariance=cov,
            benchmark_variance=bench_var,
            portfolio_mean=p_mean,
            benchmark_mean=b_mean,
            portfolio_std=p_std,
            benchmark_std=b_std,
            correlation=correlation,
            active_mean=active_mean,
            active_std=active_std,
        )
        return workings, beta, alpha, r_squared, tracking_error, information_ratio, treynor

    @staticmethod
    def to_metrics(w: MetricWorkings) -> PortfolioMetrics:
        """
        Rounds raw workings into the published record.

        Returns, volatility and CAGR are converted to percent; everything uses
        round-half-up at the precision in RoundingPrecision.
        """
        dp = RoundingPrecision.METRIC
        return PortfolioMetrics(
            total_return=round_half_up(w.total_return * 100, dp),
            cagr=round_half_up(w.cagr * 100, dp),
            annualized_return=round_half_up(w.annualized_return * 100, dp),
            volatility=round_half_up(w.volatility * 100, dp),
            max_drawdown=round_half_up(w.max_drawdown, dp),
            var95=round_half_up(w.var95, dp),
            var99=round_half_up(w.var99, dp),
            cvar95=round_half_up(w.cvar95, dp),
            cvar99=round_half_up(w.cvar99, dp),
            sharpe_ratio=round_half_up(w.sharpe_ratio, dp),
            sortino_ratio=round_half_up(w.sortino_ratio, dp),
            calmar_ratio=round_half_up(w.calmar_ratio, dp),
            omega_ratio=round_half_up(w.omega_ratio, dp),
            information_ratio=round_half_up(w.information_ratio, dp),
            treynor_ratio=round_half_up(w.treynor_ratio, dp),
            tail_ratio=round_half_up(w.tail_ratio, dp),
            ulcer_index=round_half_up(w.ulcer_index, dp),
            skewness=round_half_up(w.skewness, dp),
            kurtosis=round_half_up(w.kurtosis, dp),
            liquidity_score=MetricParameters.LIQUIDITY_SCORE,
            days_to_liquidate=MetricParameters.DAYS_TO_LIQUIDATE,
            beta=round_half_up(w.beta, dp),
            alpha=round_half_up(w.alpha, dp),
            r_squared=round_half_up(w.r_squared, RoundingPrecision.R_SQUARED),
            tracking_error=round_half_up(w.tracking_error, dp),
            sleep_score=round_half_up(w.sleep_score, RoundingPrecision.SCORE),
            turbulence_rating=round_half_up(w.turbulence_rating, RoundingPrecision.SCORE),
            worst_case_dollars=round_half_up(w.worst_case_dollars, RoundingPrecision.DOLLARS),
        )
