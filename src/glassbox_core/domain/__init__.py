"""
Domain Layer

Defines constants, entities, value objects and errors that form the core of the business logic.
Has no dependencies on external libraries.
"""

from glassbox_core.domain.constants import (
    DEFAULT_FALLBACK_CHAINS,
    DEFAULT_MODEL,
    DEFAULT_PRICING,
    FAILURE_CATEGORIES,
    MODEL_PRICING,
    _LOCAL_MODEL_PRICING,
)
from glassbox_core.domain.entities import (
    AggregatedReport,
    CacheEntry,
    CacheStats,
    CircuitState,
    CircuitStatus,
    HealthCheckResult,
    RawResult,
    ReportSummary,
    RunReport,
    TestRef,
    TestSpec,
)
from glassbox_core.domain.errors import (
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    BackendUnavailableError,
    BudgetExceededError,
    CircuitOpenError,
    ConfigurationError,
    GlassboxError,
    InternalError,
    RateLimitedError,
    RunCancelledError,
)
from glassbox_core.domain.value_objects import (
    BackendId,
    CacheKey,
    CostEstimate,
    ExpectationResult,
    ModelResponse,
)

__all__ = [
    # constants
    "DEFAULT_FALLBACK_CHAINS",
    "DEFAULT_MODEL",
    "DEFAULT_PRICING",
    "FAILURE_CATEGORIES",
    "MODEL_PRICING",
    "_LOCAL_MODEL_PRICING",
    # entities
    "AggregatedReport",
    "CacheEntry",
    "CacheStats",
    "CircuitState",
    "CircuitStatus",
    "HealthCheckResult",
    "RawResult",
    "ReportSummary",
    "RunReport",
    "TestRef",
    "TestSpec",
    # errors
    "BackendError",
    "BackendNetworkError",
    "BackendTimeoutError",
    "BackendUnavailableError",
    "BudgetExceededError",
    "CircuitOpenError",
    "ConfigurationError",
    "GlassboxError",
    "InternalError",
    "RateLimitedError",
    "RunCancelledError",
    # value objects
    "BackendId",
    "CacheKey",
    "CostEstimate",
    "ExpectationResult",
    "ModelResponse",
]
