"""
Daily price history fetching with concurrent fan-out.
"""

import logging
import pandas as pd
import yfinance as yf
from requests import Session, RequestException
from requests.adapters import HTTPAdapter
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from concurrent.futures import ThreadPoolExecutor, as_completed
from constants import Defaults
from exceptions import UpstreamFetchError
from models import DailyBar, FetchResult
from utils import validate_ticker_symbol

logger = logging.getLogger(__name__)


def normalize_closes(closes: pd.Series) -> pd.Series:
    """
    Cleans a close-price series into the form the return builder expects.

    Values are coerced to float, missing and non-positive closes are dropped,
    the index becomes a tz-naive, midnight-normalized DatetimeIndex (local
    trading date), sorted ascending with duplicate dates keeping the last bar.

    Args:
        closes: Close prices indexed by date-like values.

    Returns:
        pd.Series: The cleaned series named ``close``.
    """
    series = pd.to_numeric(pd.Series(closes).copy(), errors="coerce")
    index = pd.DatetimeIndex(pd.to_datetime(series.index))
    if index.tz is not None:
        index = index.tz_localize(None)
    series.index = index.normalize()

    series = series[series.notna() & (series > 0)]
    series = series[~series.index.duplicated(keep="last")].sort_index()
    series.name = "close"
    return series.astype(float)


def bars_to_closes(bars: Iterable[DailyBar]) -> pd.Series:
    """Builds a normalized close series from DailyBar records."""
    bars = list(bars)
    if not bars:
        return pd.Series(dtype=float, name="close")
    return normalize_closes(
        pd.Series([bar.close for bar in bars], index=[pd.Timestamp(bar.date) for bar in bars])
    )


class YFinancePriceProvider:
    """Daily closes from Yahoo Finance."""

    def fetch_daily_closes(self, ticker: str, start_date: date, end_date: date) -> pd.Series:
        """
        Fetches daily closes between two dates, both inclusive.

        Args:
            ticker (str): The ticker symbol to fetch.
            start_date (date): First day of the range.
            end_date (date): Last day of the range.

        Returns:
            pd.Series: Normalized close prices.

        Raises:
            UpstreamFetchError: If Yahoo Finance returns nothing or fails.
        """
        logger.debug(f"Fetching price history for {ticker} ({start_date} to {end_date})")
        try:
            # yfinance treats `end` as exclusive
            history = yf.Ticker(ticker).history(
                start=start_date.isoformat(),
                end=(end_date + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=False,
            )
        except (KeyError, AttributeError, TypeError, ValueError, OSError) as e:
            raise UpstreamFetchError(f"Failed to fetch {ticker}: {e}", ticker=ticker) from e

        if history is None or history.empty or "Close" not in history:
            raise UpstreamFetchError(f"No data for {ticker}", ticker=ticker)

        closes = normalize_closes(history["Close"])
        logger.debug(f"Fetched {len(closes)} bars for {ticker}")
        return closes


class AggregatesHttpPriceProvider:
    """Daily closes from an HTTP aggregates endpoint returning ``[{t, c}]`` bars."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: int = Defaults.REQUEST_TIMEOUT,
        pool_connections: int = 10,
        pool_maxsize: int = 10,
    ) -> None:
        """
        Initializes the provider with an endpoint and connection pooling settings.

        Args:
            base_url (str): URL the bar request is POSTed to.
            api_key (Optional[str]): Bearer token, if the endpoint needs one.
            timeout (int): The request timeout in seconds.
            pool_connections (int): The number of connection pools.
            pool_maxsize (int): The maximum number of connections per pool.
        """
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.session = self._create_pooled_session(pool_connections, pool_maxsize)

    def _create_pooled_session(
        self, pool_connections: int = 10, pool_maxsize: int = 10
    ) -> Session:
        """Create a requests Session with connection pooling and no retries.

        A failed fetch is reported as missing data for that ticker, never retried.
        """
        session = Session()

        adapter = HTTPAdapter(
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            max_retries=0,
            pool_block=False,
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({"Content-Type": "application/json"})
        if self.api_key:
            session.headers.update({"Authorization": f"Bearer {self.api_key}"})

        logger.debug(f"Created HTTP session with connection pool (size: {pool_maxsize})")
        return session

    @staticmethod
    def parse_bars(payload) -> List[DailyBar]:
        """
        Parses the endpoint's JSON body into DailyBar records.

        Accepts a bare list of ``{"t": epoch_ms, "c": close}`` objects or an
        object holding that list under ``results``. An ``error`` key is
        reported as a fetch failure.

        Raises:
            ValueError: If the payload has an unexpected shape.
        """
        if isinstance(payload, dict):
            if payload.get("error"):
                raise ValueError(str(payload["error"]))
            payload = payload.get("results") or []

        if not isinstance(payload, list):
            raise ValueError(f"Unexpected bar payload type: {type(payload).__name__}")

        bars = []
        for raw in payload:
            timestamp = datetime.fromtimestamp(float(raw["t"]) / 1000, tz=timezone.utc)
            bars.append(DailyBar(date=timestamp.date(), close=float(raw["c"])))
        return bars

    def fetch_daily_closes(self, ticker: str, start_date: date, end_date: date) -> pd.Series:
        """
        Fetches daily closes between two dates, both inclusive.

        Raises:
            UpstreamFetchError: On transport errors, non-2xx responses, error payloads or empty data.
        """
        body = {
            "ticker": ticker,
            "startDate": start_date.isoformat(),
            "endDate": end_date.isoformat(),
            "timespan": "day",
        }
        logger.debug(f"Requesting bars for {ticker} from {self.base_url}")
        try:
            response = self.session.post(self.base_url, json=body, timeout=self.timeout)
            response.raise_for_status()
            bars = self.parse_bars(response.json())
        except RequestException as e:
            raise UpstreamFetchError(f"Failed to fetch {ticker}: {e}", ticker=ticker) from e
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamFetchError(f"Invalid bar data for {ticker}: {e}", ticker=ticker) from e

        bars = [bar for bar in bars if start_date <= bar.date <= end_date]
        if not bars:
            raise UpstreamFetchError(f"No data for {ticker}", ticker=ticker)
        return bars_to_closes(bars)

    def close(self) -> None:
        self.session.close()


def create_price_provider(config):
    """
    Builds the price provider selected by ``config.price_provider``.

    Raises:
        ValueError: If the provider name is unknown or the HTTP provider has no URL.
    """
    if config.price_provider == "yfinance":
        return YFinancePriceProvider()
    if config.price_provider == "http":
        if not config.price_api_url:
            raise ValueError("PRICE_API_URL must be set when PRICE_PROVIDER=http")
        return AggregatesHttpPriceProvider(
            config.price_api_url,
            api_key=config.price_api_key,
            timeout=config.request_timeout,
            pool_maxsize=max(10, config.max_workers),
        )
    raise ValueError(
        f"Unknown price provider '{config.price_provider}'. "
        f"Must be one of: {', '.join(Defaults.VALID_PRICE_PROVIDERS)}"
    )


class PriceDataFetcher:
    """Fetches closes for many tickers concurrently, recording failures per ticker."""

    def __init__(self, provider, max_workers: int = Defaults.MAX_WORKERS) -> None:
        """
        Args:
            provider: Object with ``fetch_daily_closes(ticker, start_date, end_date)``.
            max_workers (int): Maximum concurrent fetches.
        """
        self.provider = provider
        self.max_workers = max_workers

    def fetch_closes(self, ticker: str, start_date: date, end_date: date) -> FetchResult:
        """
        Fetches one ticker, converting upstream failures into a FetchResult error.

        Returns:
            FetchResult: Closes on success, error text otherwise.
        """
        try:
            ticker = validate_ticker_symbol(ticker)
            closes = self.provider.fetch_daily_closes(ticker, start_date, end_date)
        except UpstreamFetchError as e:
            logger.warning(f"Upstream fetch failed for {ticker}: {e}")
            return FetchResult(ticker=ticker, error=str(e))
        except ValueError as e:
            logger.warning(f"Cannot fetch {ticker}: {e}")
            return FetchResult(ticker=ticker, error=str(e))

        if closes is None or closes.empty:
            logger.warning(f"No bars returned for {ticker}")
            return FetchResult(ticker=ticker, error=f"No data for {ticker}")

        return FetchResult(ticker=ticker, closes=closes)

    def fetch_many(
        self, tickers: List[str], start_date: date, end_date: date
    ) -> Dict[str, FetchResult]:
        """Fetch all tickers concurrently and wait for every fetch to settle.

        Uses ThreadPoolExecutor limited by ``max_workers``. One ticker failing
        never cancels the others.

        Args:
            tickers: Ticker symbols, duplicates are fetched once.
            start_date: First day of the range.
            end_date: Last day of the range.

        Returns:
            Dictionary mapping each ticker to its FetchResult, in input order.
        """
        unique = list(dict.fromkeys(tickers))
        results: Dict[str, FetchResult] = {}

        if not unique:
            return results

        workers = max(1, min(self.max_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_ticker = {
                executor.submit(self.fetch_closes, ticker, start_date, end_date): ticker
                for ticker in unique
            }

            for future in as_completed(future_to_ticker):
                ticker = future_to_ticker[future]
                try:
                    results[ticker] = future.result()
                except Exception as e:
                    # Unexpected exceptions from worker threads
                    logger.error(f"Unexpected error fetching {ticker}: {e}")
                    results[ticker] = FetchResult(ticker=ticker, error=f"Thread error: {str(e)}")

        ok = sum(1 for r in results.values() if r.ok)
        logger.info(f"Fetched {ok}/{len(unique)} tickers ({start_date} to {end_date})")
        return {ticker: results[ticker] for ticker in unique}

    def fetch_portfolio_and_benchmark(
        self,
        tickers: List[str],
        benchmark_ticker: str,
        start_date: date,
        end_date: date,
    ) -> Tuple[Dict[str, FetchResult], FetchResult]:
        """
        Fetches holdings and benchmark in one concurrent batch.

        Returns:
            Tuple of (results per holding, benchmark result).
        """
        results = self.fetch_many(list(tickers) + [benchmark_ticker], start_date, end_date)
        holdings = {ticker: results[ticker] for ticker in tickers}
        return holdings, results[benchmark_ticker]
