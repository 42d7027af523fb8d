"""
Unit tests for config.py module.

Tests configuration loading, environment variable handling,
provider detection, and validation.
"""

import pytest
import os
from unittest.mock import patch

from config import Config


class TestConfigInitialization:
    """Test Config initialization and environment variable loading."""

    @patch.dict(
        os.environ,
        {
            "OPENAI_API_KEY": "test-api-key-12345",
            "OPENAI_BASE_URL": "https://api.openai.com/v1",
            "OPENAI_MODEL": "gpt-4o-mini",
            "BENCHMARK_TICKER": "QQQ",
            "RISK_FREE_RATE": "0.03",
            "INVESTABLE_CAPITAL": "250000",
            "CACHE_TTL_HOURS": "48",
            "CACHE_DIR": "./.metrics-cache",
            "MAX_WORKERS": "8",
            "REQUEST_TIMEOUT": "60",
            "AI_ANALYSIS_ENABLED": "false",
        },
        clear=True,
    )
    def test_config_loads_from_environment(self):
        """Test that configuration loads from environment variables."""
        config = Config()

        assert config.openai_api_key == "test-api-key-12345"
        assert config.openai_base_url == "https://api.openai.com/v1"
        assert config.model_name == "gpt-4o-mini"
        assert config.benchmark_ticker == "QQQ"
        assert config.risk_free_rate == 0.03
        assert config.investable_capital == 250000.0
        assert config.cache_ttl_hours == 48
        assert config.cache_dir == "./.metrics-cache"
        assert config.max_workers == 8
        assert config.request_timeout == 60
        assert config.ai_analysis_enabled is False

    @patch.dict(os.environ, {}, clear=True)
    def test_config_uses_defaults_when_no_env_vars(self):
        """Test that configuration uses default values when env vars missing."""
        config = Config()

        assert config.openai_api_key is None
        assert config.benchmark_ticker == "SPY"
        assert config.risk_free_rate == 0.05
        assert config.investable_capital == 100000.0
        assert config.cache_ttl_hours == 24
        assert config.max_workers == 5
        assert config.request_timeout == 30
        assert config.ai_analysis_enabled is True
        assert config.price_provider == "yfinance"

    @patch.dict(os.environ, {"RISK_FREE_RATE": "0.03"}, clear=True)
    def test_explicit_arguments_win(self):
        assert Config(risk_free_rate=0.01).risk_free_rate == 0.01

    @patch.dict(os.environ, {}, clear=True)
    def test_from_env(self):
        assert isinstance(Config.from_env(), Config)


class TestAiAvailability:
    @patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test123"}, clear=True)
    def test_available_with_key(self):
        assert Config().ai_available is True

    @patch.dict(os.environ, {}, clear=True)
    def test_unavailable_without_key(self):
        assert Config().ai_available is False

    @patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test123", "AI_ANALYSIS_ENABLED": "0"}, clear=True)
    def test_kill_switch(self):
        assert Config().ai_available is False

    @pytest.mark.parametrize("value", ["true", "1", "yes", "ON"])
    def test_truthy_values(self, value):
        with patch.dict(os.environ, {"AI_ANALYSIS_ENABLED": value}, clear=True):
            assert Config().ai_analysis_enabled is True


class TestProviderDetection:
    """Test LLM provider detection from the base URL."""

    @pytest.mark.parametrize(
        "url,provider",
        [
            ("https://api.openai.com/v1", "openai"),
            ("https://api.groq.com/openai/v1", "groq"),
            ("https://openrouter.ai/api/v1", "openrouter"),
            ("https://generativelanguage.googleapis.com/v1beta/openai/", "google"),
            ("http://localhost:11434/v1", "ollama"),
            ("http://127.0.0.1:8000/v1", "local"),
            ("https://llm.internal.example.com/v1", "unknown"),
        ],
    )
    def test_detect_provider(self, url, provider):
        with patch.dict(os.environ, {"OPENAI_BASE_URL": url}, clear=True):
            assert Config().provider == provider

    @patch.dict(os.environ, {"OPENAI_BASE_URL": "https://API.GROQ.COM/v1"}, clear=True)
    def test_provider_detection_case_insensitive(self):
        assert Config().provider == "groq"


class TestConfigValidation:
    """Test validation performed after loading."""

    @patch.dict(os.environ, {"OPENAI_API_KEY": ""}, clear=True)
    def test_empty_string_api_key(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            Config()

    @patch.dict(os.environ, {"OPENAI_BASE_URL": "ftp://example.com"}, clear=True)
    def test_invalid_base_url_scheme(self):
        with pytest.raises(ValueError, match="http or https"):
            Config()

    @patch.dict(os.environ, {"OPENAI_BASE_URL": "not-a-url"}, clear=True)
    def test_base_url_without_host(self):
        with pytest.raises(ValueError, match="valid URL"):
            Config()

    @patch.dict(os.environ, {"PRICE_PROVIDER": "bloomberg"}, clear=True)
    def test_unknown_price_provider(self):
        with pytest.raises(ValueError, match="PRICE_PROVIDER"):
            Config()

    @patch.dict(os.environ, {"PRICE_PROVIDER": "HTTP"}, clear=True)
    def test_http_provider_requires_url(self):
        with pytest.raises(ValueError, match="PRICE_API_URL"):
            Config()

    @patch.dict(
        os.environ,
        {"PRICE_PROVIDER": "http", "PRICE_API_URL": "https://prices.example.com/bars"},
        clear=True,
    )
    def test_http_provider_with_url(self):
        config = Config()
        assert config.price_provider == "http"
        assert config.price_api_url == "https://prices.example.com/bars"

    @patch.dict(os.environ, {"INVESTABLE_CAPITAL": "0"}, clear=True)
    def test_non_positive_capital(self):
        with pytest.raises(ValueError, match="INVESTABLE_CAPITAL"):
            Config()

    @patch.dict(os.environ, {"RISK_FREE_RATE": "abc", "MAX_WORKERS": "many"}, clear=True)
    def test_invalid_numbers_use_defaults(self):
        config = Config()
        assert config.risk_free_rate == 0.05
        assert config.max_workers == 5

    @patch.dict(os.environ, {"MAX_WORKERS": "50"}, clear=True)
    def test_out_of_range_value_only_warns(self, caplog):
        config = Config()
        assert config.max_workers == 50
        assert "max_workers 50 outside recommended range" in caplog.text

    @patch.dict(os.environ, {"CACHE_TTL_HOURS": "48"}, clear=True)
    def test_non_standard_cache_ttl_warns(self, caplog):
        config = Config()
        assert config.cache_ttl_hours == 48
        assert "cache_ttl_hours 48 differs from the standard 24h" in caplog.text

    @patch.dict(os.environ, {}, clear=True)
    def test_standard_cache_ttl_is_quiet(self, caplog):
        Config()
        assert "cache_ttl_hours" not in caplog.text


class TestConfigSecurity:
    """Test that API keys are never printed in full."""

    @patch.dict(
        os.environ,
        {"OPENAI_API_KEY": "sk-abcdefghijklmnop", "PRICE_API_KEY": "short"},
        clear=True,
    )
    def test_repr_masks_keys(self):
        text = repr(Config())

        assert "sk-abcdefghijklmnop" not in text
        assert "sk-a...mnop" in text
        assert "price_api_key='***'" in text
        assert str(Config()) == text

    @patch.dict(os.environ, {}, clear=True)
    def test_repr_without_key(self):
        assert "NOT_SET" in repr(Config())
