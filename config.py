"""
Configuration management with validation.
"""

import os
import logging
from pathlib import Path
from urllib.parse import urlparse
from dotenv import load_dotenv
from constants import Defaults

logger = logging.getLogger(__name__)

# Look for .env file in current directory, then next to this module
_env_path = Path(".env")
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path, override=False)
    logger.debug(f"Loaded environment variables from {_env_path.absolute()}")
else:
    _parent_env = Path(__file__).parent / ".env"
    if _parent_env.exists():
        load_dotenv(dotenv_path=_parent_env, override=False)
        logger.debug(f"Loaded environment variables from {_parent_env.absolute()}")


TRUTHY_VALUES = ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"{name} is not an integer, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"{name} is not a number, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in TRUTHY_VALUES


class Config:
    """Application configuration with validation."""

    def __init__(
        self,
        openai_api_key: str = None,
        openai_base_url: str = None,
        model_name: str = None,
        request_timeout: int = None,
        cache_ttl_hours: int = None,
        cache_dir: str = None,
        max_workers: int = None,
        risk_free_rate: float = None,
        benchmark_ticker: str = None,
        investable_capital: float = None,
        ai_analysis_enabled: bool = None,
        price_provider: str = None,
        price_api_url: str = None,
        price_api_key: str = None,
    ):
        """Initialize configuration, loading from environment variables if not specified."""
        self.openai_api_key = (
            openai_api_key
            if openai_api_key is not None
            else os.getenv("OPENAI_API_KEY")
        )
        self.openai_base_url = (
            openai_base_url
            if openai_base_url is not None
            else os.getenv("OPENAI_BASE_URL", Defaults.OPENAI_BASE_URL)
        )
        self.model_name = (
            model_name
            if model_name is not None
            else os.getenv("OPENAI_MODEL", Defaults.MODEL_NAME)
        )

        self.request_timeout = (
            request_timeout
            if request_timeout is not None
            else _env_int("REQUEST_TIMEOUT", Defaults.REQUEST_TIMEOUT)
        )
        self.cache_ttl_hours = (
            cache_ttl_hours
            if cache_ttl_hours is not None
            else _env_int("CACHE_TTL_HOURS", Defaults.CACHE_TTL_HOURS)
        )
        self.cache_dir = (
            cache_dir
            if cache_dir is not None
            else os.getenv("CACHE_DIR", Defaults.CACHE_DIR)
        )
        self.max_workers = (
            max_workers
            if max_workers is not None
            else _env_int("MAX_WORKERS", Defaults.MAX_WORKERS)
        )
        self.risk_free_rate = (
            risk_free_rate
            if risk_free_rate is not None
            else _env_float("RISK_FREE_RATE", Defaults.RISK_FREE_RATE)
        )
        self.benchmark_ticker = (
            benchmark_ticker
            if benchmark_ticker is not None
            else os.getenv("BENCHMARK_TICKER", Defaults.BENCHMARK_TICKER)
        )
        self.investable_capital = (
            investable_capital
            if investable_capital is not None
            else _env_float("INVESTABLE_CAPITAL", Defaults.INVESTABLE_CAPITAL)
        )

        # Narrative kill switch
        self.ai_analysis_enabled = (
            ai_analysis_enabled
            if ai_analysis_enabled is not None
            else _env_bool("AI_ANALYSIS_ENABLED", True)
        )

        # Price data source
        self.price_provider = (
            price_provider
            if price_provider is not None
            else os.getenv("PRICE_PROVIDER", Defaults.PRICE_PROVIDER)
        ).lower()
        self.price_api_url = (
            price_api_url if price_api_url is not None else os.getenv("PRICE_API_URL")
        )
        self.price_api_key = (
            price_api_key if price_api_key is not None else os.getenv("PRICE_API_KEY")
        )

        # Computed field
        self.provider = None

        self.__post_init__()

    def __repr__(self) -> str:
        """Safe string representation that masks API keys."""
        return (
            f"Config(openai_api_key='{self._mask_api_key(self.openai_api_key)}', "
            f"openai_base_url='{self.openai_base_url}', "
            f"model_name='{self.model_name}', "
            f"price_provider='{self.price_provider}', "
            f"price_api_key='{self._mask_api_key(self.price_api_key)}', ...)"
        )

    def __str__(self) -> str:
        """Safe string conversion that masks API keys."""
        return self.__repr__()

    @staticmethod
    def _mask_api_key(api_key: str) -> str:
        """Mask API key for safe logging/display."""
        if not api_key:
            return "NOT_SET"
        if len(api_key) <= 8:
            return "***"
        # Show first 4 and last 4 characters
        return f"{api_key[:4]}...{api_key[-4:]}"

    @staticmethod
    def _validate_url(name: str, url: str) -> None:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"{name} must be a valid URL with scheme and host. Got: {url}")
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"{name} must use http or https scheme. Got: {parsed.scheme}")

    def _get_provider_from_url(self) -> str:
        """Extract LLM provider name from base URL."""
        if not self.openai_base_url:
            return "openai"

        parsed = urlparse(self.openai_base_url)
        domain = parsed.netloc.lower()

        match domain:
            case d if "openai" in d:  # Matches openai.com, api.openai.azure.com, etc.
                return "openai"
            case d if "groq" in d:
                return "groq"
            case d if "openrouter" in d:
                return "openrouter"
            case d if "generativelanguage.googleapis.com" in d:
                return "google"
            case d if "localhost" in d or "127.0.0.1" in d:
                # Check for Ollama default port
                return "ollama" if "11434" in self.openai_base_url else "local"
            case _:
                return "unknown"

    @property
    def ai_available(self) -> bool:
        """True when narratives are enabled and an API key is present."""
        return bool(self.ai_analysis_enabled and self.openai_api_key)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.openai_api_key is not None and self.openai_api_key == "":
            raise ValueError("OPENAI_API_KEY cannot be empty string")

        if self.openai_base_url:
            self._validate_url("OPENAI_BASE_URL", self.openai_base_url)
        if self.price_api_url:
            self._validate_url("PRICE_API_URL", self.price_api_url)

        self.provider = self._get_provider_from_url()

        if self.price_provider not in Defaults.VALID_PRICE_PROVIDERS:
            raise ValueError(
                f"PRICE_PROVIDER must be one of {Defaults.VALID_PRICE_PROVIDERS}. "
                f"Got: {self.price_provider}"
            )
        if self.price_provider == "http" and not self.price_api_url:
            raise ValueError("PRICE_API_URL must be set when PRICE_PROVIDER=http")

        if self.investable_capital <= 0:
            raise ValueError(
                f"INVESTABLE_CAPITAL must be positive. Got: {self.investable_capital}"
            )

        if not (10 <= self.request_timeout <= 300):
            logger.warning(
                f"request_timeout {self.request_timeout} outside recommended range [10, 300]"
            )

        if not (0 <= self.cache_ttl_hours <= 168):
            logger.warning(
                f"cache_ttl_hours {self.cache_ttl_hours} outside recommended range [0, 168]"
            )
        elif self.cache_ttl_hours != Defaults.CACHE_TTL_HOURS:
            logger.warning(
                f"cache_ttl_hours {self.cache_ttl_hours} differs from the standard "
                f"{Defaults.CACHE_TTL_HOURS}h result lifetime"
            )

        if not (1 <= self.max_workers <= 10):
            logger.warning(
                f"max_workers {self.max_workers} outside recommended range [1, 10]"
            )

        if not (0 <= self.risk_free_rate <= 0.1):
            logger.warning(
                f"risk_free_rate {self.risk_free_rate} outside recommended range [0, 0.1]"
            )

        if self.ai_analysis_enabled and not self.openai_api_key:
            logger.info("OPENAI_API_KEY not set; AI analysis will be skipped")

        if self.openai_api_key:
            logger.info(
                f"Configuration loaded - Provider: {self.provider}, Model: {self.model_name}, "
                f"API Key: {self._mask_api_key(self.openai_api_key)}"
            )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Loads the configuration from environment variables.

        Returns:
            Config: The configuration object.
        """
        return cls()
