"""
Utility functions and helpers.
"""

import math
import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Generic, List, Optional, Tuple, Type, TypeVar
from constants import LimitsAndConstraints, TimeConstants

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ALLOWED_TICKER_PUNCTUATION = ".-^="


def validate_ticker_symbol(ticker: str) -> str:
    """
    Validates and normalizes a single ticker symbol.

    This is the centralized ticker validation logic used across the application.

    Args:
        ticker (str): The ticker symbol to validate.

    Returns:
        str: The validated and normalized ticker symbol (uppercased and stripped).

    Raises:
        ValueError: If the ticker is invalid (empty, wrong length, invalid characters, or suspicious name).

    Examples:
        >>> validate_ticker_symbol("aapl")
        'AAPL'
        >>> validate_ticker_symbol("BRK.B")
        'BRK.B'
        >>> validate_ticker_symbol("^gspc")
        '^GSPC'
    """
    if not isinstance(ticker, str):
        raise ValueError(f"Ticker must be a string, got {type(ticker).__name__}")

    # Strip whitespace and convert to uppercase
    ticker = ticker.strip().upper()

    if not ticker:
        raise ValueError("Ticker cannot be empty")

    if len(ticker) > LimitsAndConstraints.MAX_TICKER_LENGTH:
        raise ValueError(
            f"Ticker '{ticker}' has invalid length "
            f"(must be 1-{LimitsAndConstraints.MAX_TICKER_LENGTH} characters)"
        )

    # Alphanumeric plus the punctuation used by share classes and index symbols
    if not all(c.isalnum() or c in _ALLOWED_TICKER_PUNCTUATION for c in ticker):
        raise ValueError(
            f"Invalid characters in ticker '{ticker}'. "
            f"Only alphanumeric and '{_ALLOWED_TICKER_PUNCTUATION}' allowed."
        )

    if ticker.lower() in ["null", "none", "undefined", "nan"]:
        raise ValueError(f"Suspicious ticker name: '{ticker}'")

    return ticker


def validate_ticker_list(tickers: List[str]) -> List[str]:
    """
    Validates and normalizes a list of ticker symbols.

    Args:
        tickers (List[str]): The list of ticker symbols to validate.

    Returns:
        List[str]: The validated and normalized list of ticker symbols, order preserved.

    Raises:
        ValueError: If the list is empty, too long, contains duplicates or an invalid ticker.
    """
    if not tickers:
        raise ValueError("At least one ticker is required")

    if len(tickers) > LimitsAndConstraints.MAX_TICKERS_ALLOWED:
        raise ValueError(
            f"Maximum {LimitsAndConstraints.MAX_TICKERS_ALLOWED} tickers allowed, got {len(tickers)}"
        )

    validated = [validate_ticker_symbol(ticker) for ticker in tickers]

    duplicates = sorted({t for t in validated if validated.count(t) > 1})
    if duplicates:
        raise ValueError(f"Duplicate tickers: {', '.join(duplicates)}")

    return validated


def round_half_up(value: float, decimals: int) -> float:
    """
    Rounds to the given precision with halves going towards positive infinity.

    Python's built-in ``round`` uses banker's rounding; published metrics use
    ``floor(x * 10^d + 0.5) / 10^d`` so that 0.00005 becomes 0.0001 at 4 dp.
    Non-finite values are returned unchanged.
    """
    if not math.isfinite(value):
        return value
    factor = 10 ** decimals
    rounded = math.floor(value * factor + 0.5) / factor
    # Avoid publishing -0.0
    return rounded + 0.0


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def default_date_range(today: Optional[date] = None) -> Tuple[date, date]:
    """
    Returns the default (start, end) range: one calendar year back to today.

    Feb 29 maps to Feb 28 of the previous year.
    """
    today = today or date.today()
    years = TimeConstants.DEFAULT_LOOKBACK_YEARS
    try:
        start = today.replace(year=today.year - years)
    except ValueError:
        start = today.replace(year=today.year - years, day=28)
    return start, today


@dataclass(frozen=True)
class Attempt(Generic[T]):
    """Outcome of a best-effort operation: either a value or an error message."""

    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def best_effort(
    operation: Callable[[], T],
    description: str,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> Attempt[T]:
    """
    Runs an operation whose failure must not fail the caller.

    The failure is logged at WARNING level and captured in the returned
    ``Attempt`` so the caller can decide what to report.

    Args:
        operation: Zero-argument callable to run.
        description: Human-readable name used in the log message.
        exceptions: Exception types treated as recoverable.

    Returns:
        Attempt carrying either the operation's return value or the error text.
    """
    try:
        return Attempt(value=operation())
    except exceptions as e:
        logger.warning(f"{description} failed: {e}")
        return Attempt(error=str(e) or type(e).__name__)
