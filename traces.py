"""
Step-by-step derivations of every published metric.

Traces are built from the same MetricWorkings instance the metrics are rounded
from, so the final step of each trace always equals the published value.
"""

import math
import logging
from typing import Dict, List, Union
from analyzers import MetricWorkings, PortfolioMetricsEngine, has_dispersion
from constants import TimeConstants, MetricParameters, RoundingPrecision
from models import CalculationTrace, PortfolioMetrics, TraceStep
from utils import round_half_up

logger = logging.getLogger(__name__)

TraceValue = Union[int, float, str]

TRACE_ORDER = [
    ("totalReturn", "_trace_total_return"),
    ("cagr", "_trace_cagr"),
    ("annualizedReturn", "_trace_annualized_return"),
    ("volatility", "_trace_volatility"),
    ("maxDrawdown", "_trace_max_drawdown"),
    ("var95", "_trace_var95"),
    ("var99", "_trace_var99"),
    ("cvar95", "_trace_cvar95"),
    ("cvar99", "_trace_cvar99"),
    ("sharpeRatio", "_trace_sharpe_ratio"),
    ("sortinoRatio", "_trace_sortino_ratio"),
    ("calmarRatio", "_trace_calmar_ratio"),
    ("omegaRatio", "_trace_omega_ratio"),
    ("tailRatio", "_trace_tail_ratio"),
    ("ulcerIndex", "_trace_ulcer_index"),
    ("skewness", "_trace_skewness"),
    ("kurtosis", "_trace_kurtosis"),
    ("beta", "_trace_beta"),
    ("alpha", "_trace_alpha"),
    ("rSquared", "_trace_r_squared"),
    ("trackingError", "_trace_tracking_error"),
    ("informationRatio", "_trace_information_ratio"),
    ("treynorRatio", "_trace_treynor_ratio"),
    ("liquidityScore", "_trace_liquidity_score"),
    ("sleepScore", "_trace_sleep_score"),
    ("turbulenceRating", "_trace_turbulence_rating"),
    ("worstCaseDollars", "_trace_worst_case_dollars"),
]


def _r(value: float) -> float:
    return round_half_up(value, RoundingPrecision.TRACE)


def _rv(value: float) -> float:
    return round_half_up(value, RoundingPrecision.TRACE_VARIANCE)


class _TraceBuilder:
    """Accumulates numbered steps for one metric."""

    def __init__(self, metric_id: str) -> None:
        self.metric_id = metric_id
        self.steps: List[TraceStep] = []

    def add(
        self,
        description: str,
        formula: str,
        result: TraceValue,
        **inputs: TraceValue,
    ) -> "_TraceBuilder":
        self.steps.append(
            TraceStep(
                step=len(self.steps) + 1,
                description=description,
                formula=formula,
                inputs=inputs,
                result=result,
            )
        )
        return self

    def build(self) -> CalculationTrace:
        return CalculationTrace(metric_id=self.metric_id, steps=self.steps)


class CalculationTraceGenerator:
    """Builds one CalculationTrace per published metric."""

    def generate_all(self, w: MetricWorkings) -> List[CalculationTrace]:
        """
        Generates the traces for every metric, in a fixed order.

        Args:
            w: Workings from ``PortfolioMetricsEngine.compute_workings``.

        Returns:
            List[CalculationTrace]: One trace per entry of TRACE_ORDER.
        """
        metrics = PortfolioMetricsEngine.to_metrics(w)
        traces = [getattr(self, method)(w, metrics) for _, method in TRACE_ORDER]
        logger.debug(f"Generated {len(traces)} calculation traces")
        return traces

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def _trace_total_return(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("totalReturn")
            .add("Start with initial portfolio value", "V₀ = Initial Investment",
                 w.investable_capital, initialValue=w.investable_capital)
            .add("Compound daily returns to build value series", "Vₜ = Vₜ₋₁ × (1 + Rₜ)",
                 round_half_up(float(w.values[-1]), RoundingPrecision.DOLLARS), days=w.n)
            .add("Relative change of the final value", "TR = (V_n - V₀) / V₀ × 100",
                 m.total_return,
                 finalValue=round_half_up(float(w.values[-1]), RoundingPrecision.DOLLARS),
                 initialValue=w.investable_capital)
            .build()
        )

    def _trace_cagr(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        trading_days = TimeConstants.TRADING_DAYS_PER_YEAR
        return (
            _TraceBuilder("cagr")
            .add("Convert trading days to years", "years = n / 252",
                 _r(w.years), n=w.n, tradingDays=trading_days)
            .add("Total return as a decimal", "TR = (V_n - V₀) / V₀",
                 _r(w.total_return))
            .add("Compound annual growth rate", "CAGR = ((1 + TR)^(1/years) - 1) × 100",
                 m.cagr, totalReturn=_r(w.total_return), years=_r(w.years))
            .build()
        )

    def _trace_annualized_return(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("annualizedReturn")
            .add("Calculate mean daily return", "μ = (1/n) × Σ Rᵢ",
                 _r(w.mean_return), n=w.n, sumReturns=_r(float(w.returns.sum())))
            .add("Annualize the mean", "R_annual = μ × 252 × 100",
                 m.annualized_return, meanReturn=_r(w.mean_return),
                 tradingDays=TimeConstants.TRADING_DAYS_PER_YEAR)
            .build()
        )

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def _trace_volatility(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("volatility")
            .add("Calculate mean daily return", "μ = (1/n) × Σ Rᵢ", _r(w.mean_return), n=w.n)
            .add("Calculate squared deviations from mean", "dev² = (Rᵢ - μ)²",
                 "For each day", sampleSize=w.n)
            .add("Calculate variance (sample)", "Var = (1/(n-1)) × Σ(Rᵢ - μ)²",
                 _rv(w.std_return ** 2), n=w.n - 1)
            .add("Take square root for daily volatility", "σ_daily = √Var", _r(w.std_return))
            .add("Annualize volatility", "σ_annual = σ_daily × √252 × 100",
                 m.volatility, dailyVol=_r(w.std_return),
                 sqrtDays=round_half_up(math.sqrt(TimeConstants.TRADING_DAYS_PER_YEAR), 4))
            .build()
        )

    def _trace_max_drawdown(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        peak_at_trough = float(w.peaks[w.max_drawdown_index])
        trough = float(w.values[w.max_drawdown_index])
        return (
            _TraceBuilder("maxDrawdown")
            .add("Start with initial portfolio value", "V₀ = Initial Investment",
                 w.investable_capital, initialValue=w.investable_capital)
            .add("Compound daily returns to build value series", "Vₜ = Vₜ₋₁ × (1 + Rₜ)",
                 f"{w.n} daily values", days=w.n)
            .add("Track running peak value", "Peak_t = max(V₀, V₁, ..., Vₜ)",
                 round_half_up(float(w.peaks[-1]), RoundingPrecision.DOLLARS))
            .add("Calculate drawdown at each point", "DD_t = (Peak_t - Vₜ) / Peak_t × 100",
                 "Daily drawdowns")
            .add("Find maximum drawdown", "MaxDD = max(DD₀, DD₁, ..., DD_n)",
                 m.max_drawdown,
                 peakValue=round_half_up(peak_at_trough, RoundingPrecision.DOLLARS),
                 troughValue=round_half_up(trough, RoundingPrecision.DOLLARS),
                 day=w.max_drawdown_index)
            .build()
        )

    def _var_trace(self, metric_id: str, w: MetricWorkings, tail: float, index: int, value: float):
        confidence = int(round((1 - tail) * 100))
        observed = float(w.sorted_returns[index]) if index < w.n else 0.0
        return (
            _TraceBuilder(metric_id)
            .add("Sort daily returns ascending", "R₍₁₎ ≤ R₍₂₎ ≤ ... ≤ R₍n₎",
                 f"{w.n} sorted returns", n=w.n)
            .add(f"Locate the {confidence}% quantile index", "k = floor(n × p)",
                 index, n=w.n, p=tail)
            .add(f"Historical {confidence}% Value at Risk", "VaR = |R₍k₎| × 100",
                 value, returnAtIndex=_r(observed))
            .build()
        )

    def _trace_var95(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return self._var_trace("var95", w, MetricParameters.VAR_95_TAIL, w.var95_index, m.var95)

    def _trace_var99(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return self._var_trace("var99", w, MetricParameters.VAR_99_TAIL, w.var99_index, m.var99)

    def _cvar_trace(self, metric_id: str, w: MetricWorkings, tail: float, index: int, value: float):
        confidence = int(round((1 - tail) * 100))
        count = max(1, index)
        tail_mean = float(w.sorted_returns[:count].mean())
        return (
            _TraceBuilder(metric_id)
            .add("Sort daily returns ascending", "R₍₁₎ ≤ R₍₂₎ ≤ ... ≤ R₍n₎",
                 f"{w.n} sorted returns", n=w.n)
            .add("Select the returns below the VaR index", "tail = R₍₀₎ ... R₍max(1,k)-1₎",
                 count, k=index)
            .add("Average the tail returns", "μ_tail = (1/|tail|) × Σ tail",
                 _r(tail_mean), tailSize=count)
            .add(f"Conditional {confidence}% Value at Risk", "CVaR = |μ_tail| × 100",
                 value, tailMean=_r(tail_mean))
            .build()
        )

    def _trace_cvar95(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return self._cvar_trace("cvar95", w, MetricParameters.VAR_95_TAIL, w.var95_index, m.cvar95)

    def _trace_cvar99(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return self._cvar_trace("cvar99", w, MetricParameters.VAR_99_TAIL, w.var99_index, m.cvar99)

    # ------------------------------------------------------------------
    # Risk-adjusted
    # ------------------------------------------------------------------

    def _trace_sharpe_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        builder = (
            _TraceBuilder("sharpeRatio")
            .add("Convert annual risk-free rate to daily", "rf_daily = rf_annual / 252",
                 _r(w.daily_rf), riskFreeRate=w.risk_free_rate,
                 tradingDays=TimeConstants.TRADING_DAYS_PER_YEAR)
            .add("Calculate mean daily portfolio return", "μ = (1/n) × Σ Rᵢ",
                 _r(w.mean_return), n=w.n, sumReturns=_r(float(w.returns.sum())))
            .add("Calculate daily excess returns (return minus risk-free)", "excess_i = Rᵢ - rf_daily",
                 _r(w.excess_mean), meanReturn=_r(w.mean_return), dailyRf=_r(w.daily_rf))
            .add("Calculate standard deviation of excess returns",
                 "σ = √[(1/(n-1)) × Σ(excessᵢ - μ_excess)²]", _r(w.excess_std), n=w.n)
        )
        if has_dispersion(w.returns - w.daily_rf, w.excess_std):
            builder.add("Annualize Sharpe Ratio", "Sharpe = (μ_excess / σ) × √252",
                        m.sharpe_ratio, meanExcess=_r(w.excess_mean), stdExcess=_r(w.excess_std),
                        sqrtDays=round_half_up(math.sqrt(TimeConstants.TRADING_DAYS_PER_YEAR), 4))
        else:
            builder.add("No excess-return dispersion; use the capped value",
                        "Sharpe = 10 if μ_excess > 0 else 0",
                        m.sharpe_ratio, meanExcess=_r(w.excess_mean))
        return builder.build()

    def _trace_sortino_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        builder = (
            _TraceBuilder("sortinoRatio")
            .add("Identify downside returns (below risk-free rate)", "downside_i = min(0, Rᵢ - rf_daily)",
                 f"{w.downside_days} downside days out of {w.n}",
                 dailyRf=_r(w.daily_rf), negativeReturns=w.downside_days)
            .add("Square downside returns", "downside²_i = (downside_i)²", "Squared deviations")
            .add("Calculate downside variance", "Var_down = (1/n) × Σ downside²_i",
                 _rv(w.downside_variance), n=w.n)
            .add("Calculate downside deviation", "DD = √Var_down", _r(w.downside_deviation))
        )
        if w.downside_deviation > 0:
            builder.add("Annualize Sortino Ratio", "Sortino = ((μ - rf_daily) / DD) × √252",
                        m.sortino_ratio, excessReturn=_r(w.mean_return - w.daily_rf),
                        downsideDev=_r(w.downside_deviation))
        else:
            builder.add("No downside deviation; follow the Sharpe sign",
                        "Sortino = 10 if Sharpe > 0 else 0",
                        m.sortino_ratio, sharpeRatio=m.sharpe_ratio)
        return builder.build()

    def _trace_calmar_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("calmarRatio")
            .add("Compound annual growth rate in percent", "CAGR% = CAGR × 100", m.cagr)
            .add("Maximum drawdown in percent", "MaxDD = max(DD_t)", m.max_drawdown)
            .add("Divide growth by drawdown", "Calmar = CAGR% / MaxDD (0 if MaxDD = 0)",
                 m.calmar_ratio, cagr=_r(w.cagr * 100), maxDrawdown=_r(w.max_drawdown))
            .build()
        )

    def _trace_omega_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("omegaRatio")
            .add("Sum the positive daily returns", "G = Σ max(0, Rᵢ)", _r(w.gains))
            .add("Sum the magnitude of negative daily returns", "L = |Σ min(0, Rᵢ)|", _r(w.losses))
            .add("Probability-weighted gain over loss",
                 "Ω = 1 + G / L (10 if L = 0 and G > 0, 1 if both are 0)",
                 m.omega_ratio, gains=_r(w.gains), losses=_r(w.losses))
            .build()
        )

    def _trace_tail_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("tailRatio")
            .add("Size of each tail", "k = max(1, floor(n × 0.05))", w.tail_count, n=w.n)
            .add("Mean of the best k returns", "μ_best = mean(top k)", _r(w.tail_best_mean))
            .add("Mean of the worst k returns", "μ_worst = mean(bottom k)", _r(w.tail_worst_mean))
            .add("Compare the tails", "Tail = μ_best / |μ_worst| (1 if μ_worst = 0)",
                 m.tail_ratio, bestMean=_r(w.tail_best_mean), worstMean=_r(w.tail_worst_mean))
            .build()
        )

    def _trace_ulcer_index(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        mean_square = float((w.drawdowns * w.drawdowns).mean())
        return (
            _TraceBuilder("ulcerIndex")
            .add("Calculate drawdown at each point", "DD_t = (Peak_t - Vₜ) / Peak_t × 100",
                 f"{len(w.drawdowns)} drawdown values")
            .add("Mean of squared drawdowns", "MS = (1/(n+1)) × Σ DD_t²",
                 _r(mean_square), points=int(len(w.drawdowns)))
            .add("Square root of the mean", "Ulcer = √MS", m.ulcer_index)
            .build()
        )

    def _trace_skewness(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("skewness")
            .add("Calculate mean and sample standard deviation", "μ, σ",
                 _r(w.std_return), mean=_r(w.mean_return), n=w.n)
            .add("Standardize each return", "zᵢ = (Rᵢ - μ) / σ", "For each day")
            .add("Bias-corrected sample skewness",
                 "Skew = n / ((n-1)(n-2)) × Σ zᵢ³ (0 if σ = 0)", m.skewness, n=w.n)
            .build()
        )

    def _trace_kurtosis(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("kurtosis")
            .add("Calculate mean and sample standard deviation", "μ, σ",
                 _r(w.std_return), mean=_r(w.mean_return), n=w.n)
            .add("Standardize each return", "zᵢ = (Rᵢ - μ) / σ", "For each day")
            .add("Bias-corrected excess kurtosis",
                 "Kurt = n(n+1)/((n-1)(n-2)(n-3)) × Σ zᵢ⁴ - 3(n-1)²/((n-2)(n-3))",
                 m.kurtosis, n=w.n)
            .build()
        )

    # ------------------------------------------------------------------
    # Benchmark
    # ------------------------------------------------------------------

    def _benchmark_default(self, metric_id: str, w: MetricWorkings, value: TraceValue) -> CalculationTrace:
        return (
            _TraceBuilder(metric_id)
            .add("Benchmark history too short; use the default value",
                 f"benchmark observations > {TimeConstants.MIN_BENCHMARK_OBSERVATIONS} required",
                 value, benchmarkObservations=int(w.benchmark_returns.size))
            .build()
        )

    def _trace_beta(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("beta", w, m.beta)
        return (
            _TraceBuilder("beta")
            .add("Align portfolio and benchmark returns", "m = min(n_p, n_b)",
                 b.aligned_length, portfolioDays=w.n, benchmarkDays=b.observations)
            .add("Sample covariance with the benchmark", "Cov = (1/(m-1)) × Σ(Rp - μp)(Rb - μb)",
                 _rv(b.covariance))
            .add("Sample variance of the benchmark", "Var_b = (1/(m-1)) × Σ(Rb - μb)²",
                 _rv(b.benchmark_variance))
            .add("Sensitivity to the benchmark", "β = Cov / Var_b (1 if Var_b = 0)",
                 m.beta, covariance=_rv(b.covariance), benchmarkVariance=_rv(b.benchmark_variance))
            .build()
        )

    def _trace_alpha(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("alpha", w, m.alpha)
        return (
            _TraceBuilder("alpha")
            .add("Mean daily portfolio return over the aligned window", "μp", _r(b.portfolio_mean))
            .add("Mean daily benchmark return over the aligned window", "μb", _r(b.benchmark_mean))
            .add("Annualized excess over the beta-scaled benchmark", "α = (μp - β × μb) × 252 × 100",
                 m.alpha, beta=_r(w.beta), portfolioMean=_r(b.portfolio_mean),
                 benchmarkMean=_r(b.benchmark_mean))
            .build()
        )

    def _trace_r_squared(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("rSquared", w, m.r_squared)
        correlation = _r(b.correlation) if b.correlation is not None else "undefined"
        return (
            _TraceBuilder("rSquared")
            .add("Correlation with the benchmark", "ρ = Cov / (σp × σb)",
                 correlation, covariance=_rv(b.covariance),
                 portfolioStd=_r(b.portfolio_std), benchmarkStd=_r(b.benchmark_std))
            .add("Share of variance explained", "R² = ρ² × 100 (0 if ρ is undefined)", m.r_squared)
            .build()
        )

    def _trace_tracking_error(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("trackingError", w, m.tracking_error)
        return (
            _TraceBuilder("trackingError")
            .add("Daily active returns", "Aᵢ = Rpᵢ - Rbᵢ", f"{b.aligned_length} active returns")
            .add("Sample standard deviation of active returns", "σ_A", _r(b.active_std))
            .add("Annualize", "TE = σ_A × √252 × 100", m.tracking_error, activeStd=_r(b.active_std))
            .build()
        )

    def _trace_information_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("informationRatio", w, m.information_ratio)
        return (
            _TraceBuilder("informationRatio")
            .add("Mean daily active return", "μ_A = mean(Rp - Rb)", _r(b.active_mean))
            .add("Annualized active return in percent", "AR = μ_A × 252 × 100",
                 _r(b.active_mean * TimeConstants.TRADING_DAYS_PER_YEAR * 100))
            .add("Active return per unit of tracking error", "IR = AR / TE (0 if TE = 0)",
                 m.information_ratio, trackingError=_r(w.tracking_error))
            .build()
        )

    def _trace_treynor_ratio(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        b = w.benchmark
        if b is None:
            return self._benchmark_default("treynorRatio", w, m.treynor_ratio)
        return (
            _TraceBuilder("treynorRatio")
            .add("Annualized return as a decimal", "R_annual = μ × 252", _r(w.annualized_return))
            .add("Excess return per unit of beta", "Treynor = (R_annual - rf) / β (0 if |β| ≤ 0.01)",
                 m.treynor_ratio, annualizedReturn=_r(w.annualized_return),
                 riskFreeRate=w.risk_free_rate, beta=_r(w.beta))
            .build()
        )

    # ------------------------------------------------------------------
    # Human-readable
    # ------------------------------------------------------------------

    def _trace_liquidity_score(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("liquidityScore")
            .add("Fixed liquidity estimate for listed securities", "Liquidity = 85",
                 m.liquidity_score, daysToLiquidate=m.days_to_liquidate)
            .build()
        )

    def _trace_sleep_score(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("sleepScore")
            .add("Annualized volatility as a decimal", "σ_annual", _r(w.volatility))
            .add("Penalize volatility", "Sleep = clamp(100 - σ_annual × 100 × 4, 0, 100)",
                 m.sleep_score, multiplier=MetricParameters.SLEEP_SCORE_VOLATILITY_MULTIPLIER)
            .build()
        )

    def _trace_turbulence_rating(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        components: Dict[str, TraceValue] = {
            "volatilityTerm": _r(w.volatility * 100 * MetricParameters.TURBULENCE_VOLATILITY_MULTIPLIER),
            "kurtosisTerm": _r(max(0.0, w.kurtosis) * MetricParameters.TURBULENCE_KURTOSIS_MULTIPLIER),
            "skewTerm": _r(max(0.0, -w.skewness) * MetricParameters.TURBULENCE_SKEW_MULTIPLIER),
        }
        return (
            _TraceBuilder("turbulenceRating")
            .add("Score volatility and fat or negative tails",
                 "T = σ_annual × 100 × 2 + max(0, Kurt) × 5 + max(0, -Skew) × 10",
                 _r(sum(float(v) for v in components.values())), **components)
            .add("Clamp to the 0-100 scale", "T = clamp(T, 0, 100)", m.turbulence_rating)
            .build()
        )

    def _trace_worst_case_dollars(self, w: MetricWorkings, m: PortfolioMetrics) -> CalculationTrace:
        return (
            _TraceBuilder("worstCaseDollars")
            .add("Apply the maximum drawdown to the capital", "Loss = Capital × MaxDD / 100",
                 m.worst_case_dollars, capital=w.investable_capital, maxDrawdown=_r(w.max_drawdown))
            .build()
        )
