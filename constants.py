"""
Configuration constants for portfolio metrics calculation.

This module centralizes all magic numbers and thresholds used throughout the application,
making them easy to find, understand, and modify.

All constants are organized into classes for better organization and to eliminate
duplication. Use `ClassName.CONSTANT_NAME` to access values.
"""

# ============================================================================
# THRESHOLD CLASSES (Organized Configuration)
# ============================================================================


class TimeConstants:
    """Time and annualization constants."""

    # Trading days
    TRADING_DAYS_PER_YEAR = 252  # Standard number of trading days in a year

    # Minimum data requirements
    MIN_TRADING_DAYS = 20  # Minimum return observations per ticker and after alignment
    MIN_BENCHMARK_OBSERVATIONS = 20  # Benchmark metrics need strictly more than this

    # Default lookback when no start date is supplied
    DEFAULT_LOOKBACK_YEARS = 1


class LimitsAndConstraints:
    """System limits and constraints."""

    # Ticker limits
    MAX_TICKERS_ALLOWED = 50  # Maximum number of holdings in one calculation
    MAX_TICKER_LENGTH = 10

    # A standard deviation at or below this fraction of the largest |value| is rounding noise
    RELATIVE_DISPERSION_TOLERANCE = 1e-9

    # Portfolio weights
    PORTFOLIO_WEIGHT_TOLERANCE = 0.01  # Acceptable deviation from sum=1.0 for weights

    # Treynor ratio is undefined for a (near) zero beta
    MIN_ABS_BETA_FOR_TREYNOR = 0.01


class MetricParameters:
    """Parameters of the risk/return metric formulas."""

    # Tail probabilities for VaR / CVaR / tail ratio
    VAR_95_TAIL = 0.05
    VAR_99_TAIL = 0.01
    TAIL_RATIO_FRACTION = 0.05

    # Cap used when a ratio's denominator vanishes with a favourable numerator.
    # Sharpe deliberately takes it too for a dispersion-free positive excess
    # return, where the plain zero-denominator rule would give 0.
    RATIO_CAP = 10.0

    # Omega ratio when there are neither gains nor losses
    NEUTRAL_OMEGA = 1.0

    # Tail ratio when the worst tail averages to zero
    NEUTRAL_TAIL_RATIO = 1.0

    # Benchmark-dependent defaults when the benchmark series is too short
    DEFAULT_BETA = 1.0

    # Liquidity placeholders (not derived from volume data)
    LIQUIDITY_SCORE = 85
    DAYS_TO_LIQUIDATE = 1

    # Human-readable composites
    SLEEP_SCORE_VOLATILITY_MULTIPLIER = 4
    TURBULENCE_VOLATILITY_MULTIPLIER = 2
    TURBULENCE_KURTOSIS_MULTIPLIER = 5
    TURBULENCE_SKEW_MULTIPLIER = 10
    SCORE_MIN = 0
    SCORE_MAX = 100


class RoundingPrecision:
    """Decimal places used when publishing numbers."""

    METRIC = 4  # Ratios and percentages
    R_SQUARED = 2
    SCORE = 0  # sleepScore, turbulenceRating
    DOLLARS = 2
    TRACE = 6  # Intermediate values shown in calculation traces
    TRACE_VARIANCE = 8


class NarrativeParameters:
    """LLM narrative generation parameters."""

    TEMPERATURE = 0.3
    MAX_TOKENS = 1000

    RATE_LIMIT_STATUS = 429
    PAYMENT_REQUIRED_STATUS = 402

    RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
    QUOTA_EXHAUSTED_MESSAGE = "AI credits exhausted. Please add credits."


class Defaults:
    """Default configuration values."""

    # Cache defaults (can be overridden by config)
    CACHE_TTL_HOURS = 24  # Calculation results expire one day after computation
    CACHE_DIR = "./.cache"
    CACHE_SCHEMA_VERSION = 1  # Bump when CacheEntry / PortfolioMetrics change shape

    # Risk-free rate (can be overridden by config or per request)
    RISK_FREE_RATE = 0.05  # 5% annual risk-free rate

    # Benchmark ticker (can be overridden by config or per request)
    BENCHMARK_TICKER = "SPY"  # S&P 500 ETF

    # Capital used for the value series and dollar figures
    INVESTABLE_CAPITAL = 100000.0

    # Parallel processing (can be overridden by config)
    MAX_WORKERS = 5  # Default number of parallel fetch threads

    # Request timeout (can be overridden by config)
    REQUEST_TIMEOUT = 30  # seconds

    # Price data
    PRICE_PROVIDER = "yfinance"
    VALID_PRICE_PROVIDERS = ["yfinance", "http"]

    # LLM
    MODEL_NAME = "gpt-4o"
    OPENAI_BASE_URL = "https://api.openai.com/v1"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def validate_constants() -> None:
    """
    Validates that all constants are within reasonable ranges.

    Raises:
        ValueError: If any constant is invalid.
    """
    if TimeConstants.TRADING_DAYS_PER_YEAR <= 0:
        raise ValueError(
            f"TRADING_DAYS_PER_YEAR must be positive, got {TimeConstants.TRADING_DAYS_PER_YEAR}"
        )

    if TimeConstants.MIN_TRADING_DAYS < 2:
        raise ValueError(
            f"MIN_TRADING_DAYS must be at least 2, got {TimeConstants.MIN_TRADING_DAYS}"
        )

    if not (0 < LimitsAndConstraints.PORTFOLIO_WEIGHT_TOLERANCE < 1):
        raise ValueError("PORTFOLIO_WEIGHT_TOLERANCE must be between 0 and 1")

    for name in ("VAR_95_TAIL", "VAR_99_TAIL", "TAIL_RATIO_FRACTION"):
        value = getattr(MetricParameters, name)
        if not (0 < value < 0.5):
            raise ValueError(f"{name} must be between 0 and 0.5, got {value}")

    if MetricParameters.SCORE_MIN >= MetricParameters.SCORE_MAX:
        raise ValueError("SCORE_MIN must be less than SCORE_MAX")

    if LimitsAndConstraints.MAX_TICKERS_ALLOWED <= 0:
        raise ValueError(
            f"MAX_TICKERS_ALLOWED must be positive, got {LimitsAndConstraints.MAX_TICKERS_ALLOWED}"
        )

    if Defaults.CACHE_TTL_HOURS <= 0:
        raise ValueError(f"CACHE_TTL_HOURS must be positive, got {Defaults.CACHE_TTL_HOURS}")


# Validate on import
validate_constants()

