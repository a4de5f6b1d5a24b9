"""
Tests for harness_config.py
"""

from unittest.mock import patch

import pytest

from glassbox_core.domain.constants import DEFAULT_FALLBACK_CHAINS, DEFAULT_MODEL
from glassbox_core.domain.errors import ConfigurationError
from glassbox_core.harness_config import (
    BudgetConfig,
    CacheConfig,
    CircuitBreakerConfig,
    ExecutionConfig,
    FallbackConfig,
    HarnessConfig,
    load_config,
)


class TestExecutionConfig:
    """ExecutionConfig dataclass"""

    def test_defaults(self):
        config = ExecutionConfig()
        assert config.max_workers == 5
        assert config.timeout_seconds == 30.0
        assert config.max_retries == 2
        assert config.retry_delay_seconds == 1.0
        assert config.max_retry_delay_seconds == 30.0
        assert config.jitter_factor == 0.1
        assert config.run_timeout_seconds is None
        assert config.default_model == DEFAULT_MODEL


class TestBudgetConfig:
    def test_defaults_disable_ceilings(self):
        config = BudgetConfig()
        assert config.max_cost_usd is None
        assert config.per_test_max_cost_usd is None


class TestCacheConfig:
    def test_defaults(self):
        config = CacheConfig()
        assert config.enabled is True
        assert config.cache_dir == ".glassbox-cache"
        assert config.ttl_seconds == 86400
        assert config.max_size_bytes == 100 * 1024 * 1024


class TestCircuitBreakerConfig:
    def test_defaults(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.cooldown_seconds == 60.0


class TestFallbackConfig:
    def test_default_chains(self):
        assert FallbackConfig().chains == DEFAULT_FALLBACK_CHAINS

    def test_candidates_start_with_primary(self):
        config = FallbackConfig(chains={"a": ["b", "c"]})
        assert config.candidates_for("a") == ["a", "b", "c"]

    def test_candidates_without_chain(self):
        assert FallbackConfig(chains={}).candidates_for("x") == ["x"]

    def test_candidates_are_deduplicated(self):
        config = FallbackConfig(chains={"a": ["b", "a", "b", "c"]})
        assert config.candidates_for("a") == ["a", "b", "c"]

    def test_default_chains_are_copies(self):
        config = FallbackConfig()
        config.chains["claude-haiku-4-5-20251001"].append("x")
        assert "x" not in DEFAULT_FALLBACK_CHAINS["claude-haiku-4-5-20251001"]


class TestHarnessConfig:
    def test_round_trip(self):
        config = HarnessConfig()
        config.execution.max_workers = 8
        config.budget.max_cost_usd = 1.5
        restored = HarnessConfig.from_dict(config.to_dict())
        assert restored == config

    def test_from_dict_without_wrapper_key(self):
        config = HarnessConfig.from_dict({"execution": {"max_workers": 2}})
        assert config.execution.max_workers == 2
        assert config.cache.enabled is True

    def test_from_dict_unknown_field(self):
        with pytest.raises(ConfigurationError):
            HarnessConfig.from_dict({"execution": {"no_such_field": 1}})

    def test_validate_defaults(self):
        HarnessConfig().validate()

    @pytest.mark.parametrize(
        "section, field, value, error_field",
        [
            ("execution", "max_workers", 0, "execution.max_workers"),
            ("execution", "timeout_seconds", 0, "execution.timeout_seconds"),
            ("execution", "max_retries", -1, "execution.max_retries"),
            ("execution", "jitter_factor", 1.5, "execution.jitter_factor"),
            ("execution", "run_timeout_seconds", 0, "execution.run_timeout_seconds"),
            ("budget", "max_cost_usd", -0.01, "budget.max_cost_usd"),
            ("cache", "ttl_seconds", 0, "cache.ttl_seconds"),
            ("circuit_breaker", "failure_threshold", 0, "circuit_breaker.failure_threshold"),
        ],
    )
    def test_validate_rejects(self, section, field, value, error_field):
        config = HarnessConfig()
        setattr(getattr(config, section), field, value)
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        assert exc_info.value.field == error_field


class TestLoadConfig:
    """load_config() reads environment variables"""

    @patch.dict("os.environ", {}, clear=True)
    def test_defaults(self):
        config = load_config()
        assert config == HarnessConfig()

    @patch.dict(
        "os.environ",
        {
            "GLASSBOX_MAX_WORKERS": "10",
            "GLASSBOX_TIMEOUT_SECONDS": "12.5",
            "GLASSBOX_MAX_RETRIES": "0",
            "GLASSBOX_RUN_TIMEOUT_SECONDS": "300",
            "GLASSBOX_DEFAULT_MODEL": "gpt-4o-mini",
            "GLASSBOX_MAX_COST_USD": "0.50",
            "GLASSBOX_CACHE_ENABLED": "false",
            "GLASSBOX_CACHE_DIR": "/tmp/gb",
            "GLASSBOX_CB_FAILURE_THRESHOLD": "3",
        },
        clear=True,
    )
    def test_env_overrides(self):
        config = load_config()
        assert config.execution.max_workers == 10
        assert config.execution.timeout_seconds == 12.5
        assert config.execution.max_retries == 0
        assert config.execution.run_timeout_seconds == 300.0
        assert config.execution.default_model == "gpt-4o-mini"
        assert config.budget.max_cost_usd == 0.5
        assert config.cache.enabled is False
        assert config.cache.cache_dir == "/tmp/gb"
        assert config.circuit_breaker.failure_threshold == 3

    @patch.dict("os.environ", {"GLASSBOX_MAX_COST_USD": ""}, clear=True)
    def test_empty_string_means_unset(self):
        assert load_config().budget.max_cost_usd is None

    @patch.dict("os.environ", {"GLASSBOX_MAX_WORKERS": "many"}, clear=True)
    def test_invalid_int(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config()
        assert exc_info.value.field == "GLASSBOX_MAX_WORKERS"

    @patch.dict("os.environ", {"GLASSBOX_FALLBACK_CHAINS": "a=b,c; d = e ;"}, clear=True)
    def test_fallback_chains(self):
        assert load_config().fallback.chains == {"a": ["b", "c"], "d": ["e"]}

    @patch.dict("os.environ", {"GLASSBOX_FALLBACK_CHAINS": "a-b"}, clear=True)
    def test_malformed_fallback_chains(self):
        with pytest.raises(ConfigurationError):
            load_config()
