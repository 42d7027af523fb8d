"""Custom exceptions for the portfolio metrics engine."""

from typing import List, Optional


class MetricsEngineError(Exception):
    """Base exception for all metrics engine errors."""

    pass


class ValidationError(MetricsEngineError):
    """Raised when a calculation request is malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InsufficientDataError(MetricsEngineError):
    """Raised when there are too few trading days to compute metrics."""

    def __init__(
        self,
        message: str,
        tickers: Optional[List[str]] = None,
        trading_days: Optional[int] = None,
    ):
        super().__init__(message)
        self.tickers = tickers or []
        self.trading_days = trading_days


class UpstreamFetchError(MetricsEngineError):
    """Raised when price history for a ticker cannot be fetched."""

    def __init__(self, message: str, ticker: Optional[str] = None):
        super().__init__(message)
        self.ticker = ticker


class NarrativeServiceError(MetricsEngineError):
    """Raised when the narrative collaborator fails or returns unusable output."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CacheError(MetricsEngineError):
    """Raised when cache operations fail."""

    def __init__(self, message: str, cache_key: Optional[str] = None):
        super().__init__(message)
        self.cache_key = cache_key


class CacheReadError(CacheError):
    """Raised when a cache entry exists but cannot be read."""

    pass


class CacheWriteError(CacheError):
    """Raised when a cache entry cannot be written."""

    pass
