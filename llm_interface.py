"""
LLM integration for portfolio narrative generation and parsing.
"""

import re
import json
import logging
import httpx
import openai
from config import Config
from httpx import Limits, Timeout
from typing import Any, Dict, Optional
from langchain_openai import ChatOpenAI
from langchain_core.prompts import ChatPromptTemplate
from constants import NarrativeParameters
from exceptions import NarrativeServiceError
from models import NarrativeResult, NarrativeStatus, PortfolioMetrics, PortfolioSpec

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE = (
    "You are a quantitative portfolio analyst. "
    "Always respond with valid JSON only, no markdown formatting."
)

ANALYSIS_TEMPLATE = """You are an expert financial analyst. Analyze this portfolio and provide insights.

PORTFOLIO COMPOSITION:
{composition}
Total Investment: ${capital}

KEY PERFORMANCE METRICS:
- Total Return: {total_return}%
- CAGR: {cagr}%
- Annualized Return: {annualized_return}%
- Volatility: {volatility}%

RISK METRICS:
- Sharpe Ratio: {sharpe_ratio}
- Sortino Ratio: {sortino_ratio}
- Max Drawdown: {max_drawdown}%
- Value at Risk (95%): {var95}%
- CVaR (95%): {cvar95}%
- Beta: {beta}
- Alpha: {alpha}%

INVESTOR METRICS:
- Sleep Score: {sleep_score}/100 (higher = less volatility, easier to hold)
- Worst Case Loss: ${worst_case_dollars}

Provide your analysis as a JSON object with this exact structure:
{{
  "summary": "2-3 sentence overall assessment of the portfolio",
  "riskLevel": "conservative|moderate|aggressive|very-aggressive",
  "strengths": ["specific strength 1 referencing actual metrics", "strength 2", "strength 3"],
  "concerns": ["specific concern 1 if any", "concern 2 if any"],
  "suggestions": ["actionable suggestion 1", "actionable suggestion 2"],
  "suitableFor": "description of what type of investor this portfolio suits",
  "keyInsight": "one unique insight about this specific portfolio combination"
}}

Be specific and reference the actual numbers. Keep responses concise and actionable."""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def format_amount(value: float) -> str:
    """Thousands-separated amount with at most three decimals (100000 -> '100,000')."""
    text = f"{value:,.3f}".rstrip("0").rstrip(".")
    return text or "0"


def parse_analysis_json(content: str) -> Dict[str, Any]:
    """
    Extracts the analysis object from a model reply.

    Strips a leading ```json or ``` fence and a trailing ``` fence, then parses
    the outermost ``{...}``. Anything unparseable is returned as
    ``{"summary": <raw reply>}``.
    """
    cleaned = content.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]

    match = _JSON_OBJECT.search(cleaned)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"AI analysis JSON parse error: {e}")
            return {"summary": content}
        if isinstance(parsed, dict):
            return parsed

    return {"summary": content}


class NarrativeAnalyst:
    """Generates a structured narrative analysis of portfolio metrics via an LLM."""

    def __init__(
        self,
        config: Config,
        enabled: Optional[bool] = None,
        llm=None,
        max_connections: int = 20,
        max_keepalive_connections: int = 10,
    ) -> None:
        """
        Initializes the analyst. No client is created when narratives are disabled
        or no API key is configured.

        Args:
            config (Config): The configuration object.
            enabled (Optional[bool]): Kill switch; defaults to ``config.ai_analysis_enabled``.
            llm: Pre-built chat model, mainly for tests.
            max_connections (int): The maximum number of concurrent connections.
            max_keepalive_connections (int): The maximum number of idle connections to keep alive.
        """
        self.config = config
        self.enabled = config.ai_analysis_enabled if enabled is None else enabled
        self._http_client: Optional[httpx.Client] = None
        self.llm = llm

        if self.llm is None and self.enabled and config.openai_api_key:
            self._http_client = self._create_pooled_http_client(
                max_connections, max_keepalive_connections
            )
            self.llm = ChatOpenAI(
                api_key=config.openai_api_key,
                base_url=config.openai_base_url,
                model=config.model_name,
                temperature=NarrativeParameters.TEMPERATURE,
                max_tokens=NarrativeParameters.MAX_TOKENS,
                timeout=config.request_timeout,
                max_retries=0,
                http_client=self._http_client,
            )
            logger.info(
                f"LLM initialized - Provider: {config.provider}, Model: {config.model_name}, "
                f"Connection pool: {max_keepalive_connections}/{max_connections}"
            )

        self.prompt = ChatPromptTemplate.from_messages(
            [("system", SYSTEM_MESSAGE), ("human", ANALYSIS_TEMPLATE)]
        )
        self.chain = self.prompt | self.llm if self.llm is not None else None

    def _create_pooled_http_client(
        self, max_connections: int = 20, max_keepalive: int = 10
    ) -> httpx.Client:
        """Create an httpx client with connection pooling.

        Args:
            max_connections: Maximum total connections
            max_keepalive: Maximum idle connections to keep alive

        Returns:
            httpx.Client with connection pooling configured
        """
        limits = Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
            keepalive_expiry=30.0,
        )
        timeout = Timeout(
            connect=10.0,
            read=self.config.request_timeout,
            write=10.0,
            pool=5.0,
        )
        client = httpx.Client(
            limits=limits,
            timeout=timeout,
            http2=True,
            follow_redirects=True,
        )
        logger.debug(
            f"Created HTTP client with connection pool "
            f"(max: {max_connections}, keepalive: {max_keepalive})"
        )
        return client

    @property
    def available(self) -> bool:
        return self.enabled and self.chain is not None

    @staticmethod
    def prompt_variables(
        metrics: PortfolioMetrics, portfolio: PortfolioSpec, investable_capital: float
    ) -> Dict[str, str]:
        """Deterministic template variables for a metrics record and composition."""
        composition = "\n".join(
            f"- {ticker}: {weight * 100:.1f}%" for ticker, weight in portfolio.pairs()
        )
        return {
            "composition": composition,
            "capital": format_amount(investable_capital),
            "total_return": f"{metrics.total_return:.2f}",
            "cagr": f"{metrics.cagr:.2f}",
            "annualized_return": f"{metrics.annualized_return:.2f}",
            "volatility": f"{metrics.volatility:.2f}",
            "sharpe_ratio": f"{metrics.sharpe_ratio:.2f}",
            "sortino_ratio": f"{metrics.sortino_ratio:.2f}",
            "max_drawdown": f"{metrics.max_drawdown:.2f}",
            "var95": f"{metrics.var95:.2f}",
            "cvar95": f"{metrics.cvar95:.2f}",
            "beta": f"{metrics.beta:.2f}",
            "alpha": f"{metrics.alpha:.2f}",
            "sleep_score": f"{metrics.sleep_score:.0f}",
            "worst_case_dollars": format_amount(metrics.worst_case_dollars),
        }

    def build_prompt(
        self, metrics: PortfolioMetrics, portfolio: PortfolioSpec, investable_capital: float
    ) -> str:
        """The user message sent to the model."""
        return ANALYSIS_TEMPLATE.format(
            **self.prompt_variables(metrics, portfolio, investable_capital)
        )

    def _invoke(self, variables: Dict[str, str]) -> str:
        """
        Runs the chain once; no retries.

        Raises:
            NarrativeServiceError: With ``status_code`` set for HTTP status failures.
        """
        try:
            response = self.chain.invoke(variables)
        except openai.APIStatusError as e:
            raise NarrativeServiceError(
                f"AI API error: {e.status_code}", status_code=e.status_code
            ) from e
        except (openai.APIError, httpx.HTTPError, OSError, ValueError, TypeError, KeyError) as e:
            raise NarrativeServiceError(str(e) or "AI analysis failed") from e

        content = getattr(response, "content", None)
        return content if isinstance(content, str) else ""

    def generate_analysis(
        self, metrics: PortfolioMetrics, portfolio: PortfolioSpec, investable_capital: float
    ) -> NarrativeResult:
        """
        Requests a structured analysis of the metrics. Never raises.

        Args:
            metrics: Published metrics.
            portfolio: Ticker/weight composition.
            investable_capital: Capital the dollar figures refer to.

        Returns:
            NarrativeResult: Parsed analysis, or a degraded result describing why there is none.
        """
        if not self.enabled:
            logger.debug("AI analysis disabled")
            return NarrativeResult(status=NarrativeStatus.DISABLED)

        if self.chain is None:
            logger.info("No OPENAI_API_KEY configured, skipping AI analysis")
            return NarrativeResult(status=NarrativeStatus.UNCONFIGURED)

        logger.info("Generating AI portfolio analysis")
        try:
            content = self._invoke(self.prompt_variables(metrics, portfolio, investable_capital))
        except NarrativeServiceError as e:
            match e.status_code:
                case NarrativeParameters.RATE_LIMIT_STATUS:
                    logger.warning("AI analysis rate limited")
                    return NarrativeResult(
                        status=NarrativeStatus.RATE_LIMITED,
                        error=NarrativeParameters.RATE_LIMIT_MESSAGE,
                    )
                case NarrativeParameters.PAYMENT_REQUIRED_STATUS:
                    logger.warning("AI analysis credits exhausted")
                    return NarrativeResult(
                        status=NarrativeStatus.QUOTA_EXHAUSTED,
                        error=NarrativeParameters.QUOTA_EXHAUSTED_MESSAGE,
                    )
                case None:
                    logger.error(f"AI analysis error: {e}")
                    return NarrativeResult(status=NarrativeStatus.FAILED, error=str(e))
                case _:
                    logger.error(f"AI API error: {e.status_code}")
                    return NarrativeResult(status=NarrativeStatus.FAILED)

        if not content.strip():
            logger.warning("No content in AI response")
            return NarrativeResult(status=NarrativeStatus.EMPTY)

        return NarrativeResult(status=NarrativeStatus.OK, analysis=parse_analysis_json(content))

    def close(self) -> None:
        """Close the pooled HTTP client, if one was created."""
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
            logger.debug("Closed LLM HTTP client connection pool")
