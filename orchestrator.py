"""
Main orchestrator coordinating validation, caching, data fetching, metrics,
traces and narrative analysis for one calculation request.
"""

import time
import logging
from config import Config
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from pydantic import ValidationError as PydanticValidationError
from analyzers import PortfolioMetricsEngine, ReturnSeriesBuilder
from cache import CalculationCache, generate_portfolio_hash
from exceptions import (
    CacheReadError,
    CacheWriteError,
    InsufficientDataError,
    ValidationError,
)
from fetcher import PriceDataFetcher, create_price_provider
from llm_interface import NarrativeAnalyst
from traces import CalculationTraceGenerator
from utils import best_effort
from models import (
    CacheEntry,
    CalculationRequest,
    CalculationResponse,
    DataInfo,
    ErrorResponse,
    NarrativeResult,
    NarrativeStatus,
)

logger = logging.getLogger(__name__)

# Request keys that fall back to configuration when absent: (alias, field, config attribute)
CONFIG_BACKED_FIELDS = [
    ("benchmarkTicker", "benchmark_ticker", "benchmark_ticker"),
    ("investableCapital", "investable_capital", "investable_capital"),
    ("riskFreeRate", "risk_free_rate", "risk_free_rate"),
]


def format_validation_error(error: PydanticValidationError) -> Tuple[str, Optional[str]]:
    """
    Converts pydantic errors into one readable message.

    Returns:
        Tuple of (message, first offending field or None).
    """
    messages = []
    first_field = None
    for item in error.errors():
        msg = item["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        field = " -> ".join(str(loc) for loc in item["loc"])
        if field and first_field is None:
            first_field = str(item["loc"][0])
        messages.append(f"{field}: {msg}" if field else msg)
    return "; ".join(messages), first_field


class MetricsCalculationService:
    """Runs portfolio metric calculations end to end."""

    def __init__(
        self,
        config: Config,
        cache: Optional[CalculationCache] = None,
        fetcher: Optional[PriceDataFetcher] = None,
        narrative: Optional[NarrativeAnalyst] = None,
    ) -> None:
        """
        Initializes the service, building any collaborator that is not supplied.

        Args:
            config (Config): The configuration object.
            cache (Optional[CalculationCache]): Result cache.
            fetcher (Optional[PriceDataFetcher]): Price history fetcher.
            narrative (Optional[NarrativeAnalyst]): LLM narrative client.
        """
        self.config = config
        self.cache = (
            cache
            if cache is not None
            else CalculationCache(cache_dir=config.cache_dir, ttl_hours=config.cache_ttl_hours)
        )
        self.fetcher = (
            fetcher
            if fetcher is not None
            else PriceDataFetcher(create_price_provider(config), max_workers=config.max_workers)
        )
        self.narrative = narrative if narrative is not None else NarrativeAnalyst(config)
        self.builder = ReturnSeriesBuilder()
        self.trace_generator = CalculationTraceGenerator()

    def parse_request(self, payload: Any) -> CalculationRequest:
        """
        Validates a raw JSON payload into a CalculationRequest.

        Benchmark, capital and risk-free rate default to the configured values
        when the payload omits them or sends null.

        Raises:
            ValidationError: If the payload is malformed.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        data = dict(payload)
        for alias, field_name, attribute in CONFIG_BACKED_FIELDS:
            for key in (alias, field_name):
                if key in data and data[key] is None:
                    del data[key]
            if alias not in data and field_name not in data:
                data[alias] = getattr(self.config, attribute)

        try:
            return CalculationRequest.model_validate(data)
        except PydanticValidationError as e:
            message, field_name = format_validation_error(e)
            raise ValidationError(message, field=field_name) from e

    def _lookup(
        self, request: CalculationRequest, portfolio_hash: str, now: datetime
    ) -> Optional[CacheEntry]:
        """Fresh cache entry computed with the same rate and capital, if any."""
        attempt = best_effort(
            lambda: self.cache.get(
                portfolio_hash,
                request.start_date,
                request.end_date,
                request.benchmark_ticker,
                now=now,
            ),
            "Cache read",
            exceptions=(CacheReadError,),
        )
        entry = attempt.value
        if entry is None:
            return None

        if (
            entry.risk_free_rate != request.risk_free_rate
            or entry.investable_capital != request.investable_capital
        ):
            logger.info(
                f"Cached result for {portfolio_hash} used different parameters "
                f"(rf={entry.risk_free_rate}, capital={entry.investable_capital}), recomputing"
            )
            return None

        return entry

    def _from_cache(self, request: CalculationRequest, entry: CacheEntry) -> CalculationResponse:
        return CalculationResponse(
            from_cache=True,
            metrics=entry.metrics,
            ai_analysis=entry.ai_interpretation if request.include_ai_analysis else None,
            data_info=DataInfo(
                start_date=request.start_date,
                end_date=request.end_date,
                trading_days=entry.trading_days,
                benchmark_days=entry.benchmark_days,
                calculated_at=entry.calculated_at,
            ),
        )

    def calculate(
        self, request: CalculationRequest, now: Optional[datetime] = None
    ) -> CalculationResponse:
        """
        Calculates (or recalls) the metrics for a validated request.

        A fresh cache entry short-circuits the computation unless traces were
        requested. Fresh results are written back on a best-effort basis.

        Args:
            request: The validated request.
            now: Reference time for cache expiry, defaults to the current UTC time.

        Returns:
            CalculationResponse: Metrics, optional traces, narrative and data info.

        Raises:
            InsufficientDataError: If there are too few trading days.
        """
        now = now or datetime.now(timezone.utc)
        portfolio = request.portfolio
        portfolio_hash = generate_portfolio_hash(portfolio.tickers, portfolio.weights)
        logger.info(
            f"Calculating metrics for {len(portfolio.tickers)} tickers "
            f"({request.start_date} to {request.end_date}), hash {portfolio_hash}"
        )

        if not request.generate_traces:
            cached = self._lookup(request, portfolio_hash, now)
            if cached is not None:
                logger.info(f"Cache hit for {portfolio_hash}")
                return self._from_cache(request, cached)

        start_time = time.time()

        holdings, benchmark = self.fetcher.fetch_portfolio_and_benchmark(
            list(portfolio.tickers),
            request.benchmark_ticker,
            request.start_date,
            request.end_date,
        )
        if not benchmark.ok:
            logger.warning(
                f"Benchmark {request.benchmark_ticker} unavailable: {benchmark.error}"
            )

        series = self.builder.build(holdings, portfolio.weight_map(), benchmark)

        engine = PortfolioMetricsEngine(
            risk_free_rate=request.risk_free_rate,
            investable_capital=request.investable_capital,
        )
        workings = engine.compute_workings(series.portfolio_returns, series.benchmark_returns)
        metrics = engine.to_metrics(workings)
        logger.info(
            f"Metrics calculated: Sharpe={metrics.sharpe_ratio:.2f}, "
            f"Volatility={metrics.volatility:.2f}%, MaxDD={metrics.max_drawdown:.2f}%"
        )

        traces = None
        if request.generate_traces:
            traces = self.trace_generator.generate_all(workings)

        if request.include_ai_analysis:
            narrative = self.narrative.generate_analysis(
                metrics, portfolio, request.investable_capital
            )
        else:
            narrative = NarrativeResult(status=NarrativeStatus.DISABLED)
        logger.info(f"AI analysis: {narrative.status.value}")

        entry = CacheEntry(
            portfolio_hash=portfolio_hash,
            tickers=list(portfolio.tickers),
            weights=list(portfolio.weights),
            start_date=request.start_date,
            end_date=request.end_date,
            benchmark_ticker=request.benchmark_ticker,
            risk_free_rate=request.risk_free_rate,
            investable_capital=request.investable_capital,
            trading_days=series.trading_days,
            benchmark_days=series.benchmark_days,
            metrics=metrics,
            calculation_traces=traces,
            ai_interpretation=narrative.analysis,
            calculated_at=now,
            expires_at=self.cache.expiry_for(now),
        )
        best_effort(
            lambda: self.cache.upsert(entry), "Cache write", exceptions=(CacheWriteError,)
        )

        logger.info(f"Calculation complete in {time.time() - start_time:.2f}s")

        return CalculationResponse(
            from_cache=False,
            metrics=metrics,
            traces=traces,
            ai_analysis=narrative.to_payload(),
            data_info=DataInfo(
                start_date=request.start_date,
                end_date=request.end_date,
                trading_days=series.trading_days,
                benchmark_days=series.benchmark_days,
                calculated_at=now,
            ),
        )

    def handle_payload(self, payload: Any) -> Tuple[int, Dict[str, Any]]:
        """
        Runs a raw request and maps the outcome to an HTTP status and JSON body.

        Returns:
            Tuple of (status code, response payload): 200 on success, 400 for
            validation errors, 422 for insufficient data, 500 otherwise.
        """
        try:
            request = self.parse_request(payload)
            return 200, self.calculate(request).to_payload()
        except ValidationError as e:
            logger.warning(f"VALIDATION ERROR - {e}")
            return 400, self._error_payload(e)
        except InsufficientDataError as e:
            logger.warning(f"INSUFFICIENT DATA - {e}")
            return 422, self._error_payload(e)
        except Exception as e:  # Request boundary
            logger.error(f"Calculation failed: {e}", exc_info=True)
            return 500, self._error_payload(e)

    @staticmethod
    def _error_payload(error: Exception) -> Dict[str, Any]:
        return ErrorResponse(
            error=str(error) or "Unknown error occurred",
            details=f"{type(error).__name__}: {error}",
        ).to_payload()

    def invalidate(self, request: CalculationRequest) -> bool:
        """Marks the cached result for a request's key as invalid."""
        portfolio = request.portfolio
        return self.cache.invalidate(
            generate_portfolio_hash(portfolio.tickers, portfolio.weights),
            request.start_date,
            request.end_date,
            request.benchmark_ticker,
        )

    def close(self) -> None:
        """Release pooled connections held by collaborators."""
        self.narrative.close()
        provider_close = getattr(self.fetcher.provider, "close", None)
        if provider_close is not None:
            provider_close()
