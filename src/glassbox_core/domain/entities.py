"""
Domain Entities

Defines the primary data structures used in the execution process.
"""

from dataclasses import dataclass, field
from enum import Enum

from glassbox_core.domain.constants import NO_MODEL


@dataclass(frozen=True)
class TestSpec:
    """
    One declarative test

    None for the optional per-test values means "use the configured default".
    """
    # Not a pytest test class
    __test__ = False

    suite: str
    name: str
    prompt: str
    contains: tuple[str, ...] = ()
    not_contains: tuple[str, ...] = ()
    block_pii: tuple[str, ...] = ()
    model: str | None = None
    max_tokens: int = 1024
    temperature: float = 0.0
    timeout_seconds: float | None = None
    max_retries: int | None = None
    max_cost_usd: float | None = None

    @property
    def test_id(self) -> str:
        return f"{self.suite}/{self.name}"


@dataclass(frozen=True)
class RawResult:
    """Result of a single test execution"""
    suite: str
    test: str
    passed: bool
    duration_ms: int
    cost_usd: float = 0.0
    tokens: int = 0
    model_used: str = NO_MODEL
    fallback_used: bool = False
    cached: bool = False
    attempts: int = 0
    error: str | None = None
    error_category: str | None = None
    details: tuple[str, ...] = ()
    response: str = ""


@dataclass(frozen=True)
class CacheEntry:
    """
    Cached backend response

    response is None when only metadata was requested (listing).
    """
    fingerprint: str
    model: str
    created_at: float
    ttl_seconds: float
    size_bytes: int
    response: dict | None = None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of the response cache counters"""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    invalidations: int = 0
    errors: int = 0
    entry_count: int = 0
    total_size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Hit percentage over all lookups (0 when nothing was looked up)"""
        lookups = self.hits + self.misses
        return self.hits / lookups * 100 if lookups else 0.0


class CircuitStatus(str, Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitState:
    """Snapshot of one backend's circuit"""
    status: CircuitStatus
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    opened_at: float | None = None


@dataclass
class HealthCheckResult:
    """Health check result"""
    model_name: str
    success: bool
    latency_ms: int | None
    error: str | None


@dataclass(frozen=True)
class TestRef:
    """Reference to one result, used for extremal tests in reports"""
    __test__ = False

    suite: str
    test: str
    duration_ms: int
    model_used: str


@dataclass
class ReportSummary:
    """Run totals"""
    total: int = 0
    passed: int = 0
    failed: int = 0
    cached: int = 0
    success_rate: float = 0.0
    total_duration_ms: int = 0
    average_duration_ms: float = 0.0
    total_cost_usd: float = 0.0
    average_cost_usd: float = 0.0
    total_tokens: int = 0


@dataclass
class AggregatedReport:
    """Statistics folded from the full RawResult sequence"""
    summary: ReportSummary = field(default_factory=ReportSummary)
    duration_distribution: dict[str, int] = field(default_factory=dict)
    slowest_test: TestRef | None = None
    fastest_test: TestRef | None = None
    model_usage: dict[str, int] = field(default_factory=dict)
    cost_by_model: dict[str, float] = field(default_factory=dict)
    fallback_count: int = 0
    fallback_rate: float = 0.0
    failures_by_category: dict[str, int] = field(default_factory=dict)
    failures_by_suite: dict[str, int] = field(default_factory=dict)


@dataclass
class RunReport:
    """Everything a renderer needs: the aggregate plus every raw result"""
    report: AggregatedReport
    results: list[RawResult]
    budget_spent_usd: float = 0.0
    budget_limit_usd: float | None = None
    circuits: dict[str, CircuitState] = field(default_factory=dict)
