"""
Domain Errors

Exception hierarchy for backend failures, budget enforcement and configuration.
Each class carries the failure category it is reported under.
"""

from glassbox_core.domain.constants import (
    CATEGORY_BACKEND_UNAVAILABLE,
    CATEGORY_BUDGET,
    CATEGORY_INTERNAL,
    CATEGORY_NETWORK,
    CATEGORY_TIMEOUT,
    CATEGORY_UNKNOWN,
)


class GlassboxError(Exception):
    """Base exception for all glassbox-core errors"""

    category: str = CATEGORY_UNKNOWN


class BackendError(GlassboxError):
    """
    Failure reported by a model backend

    Attributes:
        model_name: Model the failing call was addressed to
        retryable: Whether the scheduler may retry the same model
    """

    retryable: bool = False

    def __init__(self, message: str, model_name: str | None = None) -> None:
        self.model_name = model_name
        super().__init__(message)


class BackendTimeoutError(BackendError):
    """The backend did not answer within the allotted time"""

    category = CATEGORY_TIMEOUT
    retryable = True


class BackendNetworkError(BackendError):
    """Connection failure or transient server-side error"""

    category = CATEGORY_NETWORK
    retryable = True


class RateLimitedError(BackendNetworkError):
    """The backend rejected the call because of rate limiting"""
    pass


class BackendUnavailableError(BackendError):
    """The backend cannot serve the model (auth, unknown model, exhausted chain)"""

    category = CATEGORY_BACKEND_UNAVAILABLE


class CircuitOpenError(BackendUnavailableError):
    """The call was short-circuited because the backend's circuit is open"""
    pass


class BudgetExceededError(GlassboxError):
    """
    A per-test or global budget ceiling was hit

    Attributes:
        limit_usd: Ceiling that was hit
        amount_usd: Projected or realized amount that crossed it
    """

    category = CATEGORY_BUDGET

    def __init__(self, message: str, limit_usd: float | None = None, amount_usd: float | None = None) -> None:
        self.limit_usd = limit_usd
        self.amount_usd = amount_usd
        super().__init__(message)


class RunCancelledError(GlassboxError):
    """The run was stopped (run timeout or external stop signal)"""

    category = CATEGORY_TIMEOUT


class ConfigurationError(GlassboxError, ValueError):
    """
    Invalid configuration or test specification

    Raised before scheduling begins; aborts the whole run.

    Attributes:
        field: The configuration field that caused the error
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class InternalError(GlassboxError):
    """
    Unexpected failure inside the engine

    Reported under its own category; aggregation counts it as unknown.
    """

    category = CATEGORY_INTERNAL
