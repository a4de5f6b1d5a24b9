"""
Execution Harness Configuration

Manages loading from environment variables and default values.
"""

import os
from dataclasses import dataclass, field, asdict

from glassbox_core.domain.constants import DEFAULT_FALLBACK_CHAINS, DEFAULT_MODEL
from glassbox_core.domain.errors import ConfigurationError


def _env_bool(key: str, default: bool) -> bool:
    """Convert an environment variable to bool"""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int) -> int:
    """Convert an environment variable to int"""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ConfigurationError(key, f"The value '{val}' cannot be converted to an integer.")


def _env_float(key: str, default: float | None) -> float | None:
    """Convert an environment variable to float (empty string means unset)"""
    val = os.environ.get(key)
    if val is None or val.strip() == "":
        return default
    try:
        return float(val)
    except ValueError:
        raise ConfigurationError(key, f"The value '{val}' cannot be converted to a number.")


def _env_str(key: str, default: str) -> str:
    """Get an environment variable as a string"""
    return os.environ.get(key, default)


def _env_chain_map(key: str, default: dict[str, list[str]]) -> dict[str, list[str]]:
    """
    Convert an environment variable to a fallback chain map

    Format: "primary=fallback1,fallback2;other=fallback3"
    """
    val = os.environ.get(key)
    if val is None:
        return {k: list(v) for k, v in default.items()}
    chains: dict[str, list[str]] = {}
    for item in val.split(";"):
        if not item.strip():
            continue
        if "=" not in item:
            raise ConfigurationError(key, f"Malformed fallback chain entry '{item}' (expected 'primary=a,b').")
        primary, _, rest = item.partition("=")
        chains[primary.strip()] = [m.strip() for m in rest.split(",") if m.strip()]
    return chains


@dataclass
class ExecutionConfig:
    """Worker pool, timeout and retry configuration"""
    max_workers: int = 5
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    jitter_factor: float = 0.1
    run_timeout_seconds: float | None = None
    default_model: str = DEFAULT_MODEL


@dataclass
class BudgetConfig:
    """Budget ceilings (USD); None disables the ceiling"""
    max_cost_usd: float | None = None
    per_test_max_cost_usd: float | None = None


@dataclass
class CacheConfig:
    """Response cache configuration"""
    enabled: bool = True
    cache_dir: str | None = ".glassbox-cache"
    ttl_seconds: float = 24 * 60 * 60
    max_size_bytes: int = 100 * 1024 * 1024
    model_ttl_seconds: dict[str, float] = field(default_factory=dict)


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass
class FallbackConfig:
    """Ordered fallback chains per primary model"""
    chains: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FALLBACK_CHAINS.items()}
    )

    def candidates_for(self, model_name: str) -> list[str]:
        """Primary model followed by its fallbacks, without duplicates"""
        candidates = [model_name]
        for alt in self.chains.get(model_name, []):
            if alt not in candidates:
                candidates.append(alt)
        return candidates


@dataclass
class LMStudioConfig:
    """LMStudio (OpenAI-compatible local LLM) configuration"""
    base_url: str = "http://localhost:1234/v1"
    api_key: str = "lm-studio"


@dataclass
class HarnessConfig:
    """Overall execution harness configuration"""
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    lmstudio: LMStudioConfig = field(default_factory=LMStudioConfig)

    def to_dict(self) -> dict:
        """Convert to dictionary format"""
        return {"harness_config": asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "HarnessConfig":
        """Create from dictionary (handles presence/absence of harness_config key)"""
        config_data = data.get("harness_config", data)
        try:
            execution = ExecutionConfig(**config_data.get("execution", {}))
            budget = BudgetConfig(**config_data.get("budget", {}))
            cache = CacheConfig(**config_data.get("cache", {}))
            circuit_breaker = CircuitBreakerConfig(**config_data.get("circuit_breaker", {}))
            fallback = FallbackConfig(**config_data.get("fallback", {}))
            lmstudio = LMStudioConfig(**config_data.get("lmstudio", {}))
        except TypeError as e:
            raise ConfigurationError("harness_config", str(e)) from e
        return cls(
            execution=execution,
            budget=budget,
            cache=cache,
            circuit_breaker=circuit_breaker,
            fallback=fallback,
            lmstudio=lmstudio,
        )

    def validate(self) -> None:
        """
        Check value ranges

        Raises:
            ConfigurationError: On the first invalid value
        """
        ex = self.execution
        if ex.max_workers < 1:
            raise ConfigurationError("execution.max_workers", "must be at least 1")
        if ex.timeout_seconds <= 0:
            raise ConfigurationError("execution.timeout_seconds", "must be positive")
        if ex.max_retries < 0:
            raise ConfigurationError("execution.max_retries", "must be non-negative")
        if ex.retry_delay_seconds < 0 or ex.max_retry_delay_seconds < 0:
            raise ConfigurationError("execution.retry_delay_seconds", "must be non-negative")
        if not 0 <= ex.jitter_factor <= 1:
            raise ConfigurationError("execution.jitter_factor", "must be between 0 and 1")
        if ex.run_timeout_seconds is not None and ex.run_timeout_seconds <= 0:
            raise ConfigurationError("execution.run_timeout_seconds", "must be positive")
        if not ex.default_model:
            raise ConfigurationError("execution.default_model", "must not be empty")
        for name in ("max_cost_usd", "per_test_max_cost_usd"):
            val = getattr(self.budget, name)
            if val is not None and val < 0:
                raise ConfigurationError(f"budget.{name}", "must be non-negative")
        if self.cache.ttl_seconds <= 0:
            raise ConfigurationError("cache.ttl_seconds", "must be positive")
        if self.cache.max_size_bytes < 1024:
            raise ConfigurationError("cache.max_size_bytes", "must be at least 1KB")
        if self.circuit_breaker.failure_threshold < 1:
            raise ConfigurationError("circuit_breaker.failure_threshold", "must be at least 1")
        if self.circuit_breaker.cooldown_seconds < 0:
            raise ConfigurationError("circuit_breaker.cooldown_seconds", "must be non-negative")


def load_config() -> HarnessConfig:
    """
    Load configuration from environment variables

    Uses default values when environment variables are not set.

    Returns:
        HarnessConfig
    """
    execution = ExecutionConfig(
        max_workers=_env_int("GLASSBOX_MAX_WORKERS", 5),
        timeout_seconds=_env_float("GLASSBOX_TIMEOUT_SECONDS", 30.0),
        max_retries=_env_int("GLASSBOX_MAX_RETRIES", 2),
        retry_delay_seconds=_env_float("GLASSBOX_RETRY_DELAY_SECONDS", 1.0),
        max_retry_delay_seconds=_env_float("GLASSBOX_MAX_RETRY_DELAY_SECONDS", 30.0),
        jitter_factor=_env_float("GLASSBOX_JITTER_FACTOR", 0.1),
        run_timeout_seconds=_env_float("GLASSBOX_RUN_TIMEOUT_SECONDS", None),
        default_model=_env_str("GLASSBOX_DEFAULT_MODEL", DEFAULT_MODEL),
    )
    budget = BudgetConfig(
        max_cost_usd=_env_float("GLASSBOX_MAX_COST_USD", None),
        per_test_max_cost_usd=_env_float("GLASSBOX_PER_TEST_MAX_COST_USD", None),
    )
    cache = CacheConfig(
        enabled=_env_bool("GLASSBOX_CACHE_ENABLED", True),
        cache_dir=_env_str("GLASSBOX_CACHE_DIR", ".glassbox-cache"),
        ttl_seconds=_env_float("GLASSBOX_CACHE_TTL_SECONDS", 24 * 60 * 60),
        max_size_bytes=_env_int("GLASSBOX_CACHE_MAX_SIZE_BYTES", 100 * 1024 * 1024),
    )
    circuit_breaker = CircuitBreakerConfig(
        failure_threshold=_env_int("GLASSBOX_CB_FAILURE_THRESHOLD", 5),
        cooldown_seconds=_env_float("GLASSBOX_CB_COOLDOWN_SECONDS", 60.0),
    )
    fallback = FallbackConfig(
        chains=_env_chain_map("GLASSBOX_FALLBACK_CHAINS", DEFAULT_FALLBACK_CHAINS),
    )
    lmstudio = LMStudioConfig(
        base_url=_env_str("LMSTUDIO_BASE_URL", "http://localhost:1234/v1"),
        api_key=_env_str("LMSTUDIO_API_KEY", "lm-studio"),
    )
    return HarnessConfig(
        execution=execution,
        budget=budget,
        cache=cache,
        circuit_breaker=circuit_breaker,
        fallback=fallback,
        lmstudio=lmstudio,
    )
