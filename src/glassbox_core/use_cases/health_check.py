"""
Health Check

Performs connectivity checks for models before a run.
"""

from typing import Callable

from glassbox_core.circuit_breaker import CircuitBreakerRegistry
from glassbox_core.domain.entities import HealthCheckResult
from glassbox_core.infrastructure.model_clients.base import ModelClient
from glassbox_core.infrastructure.model_clients.factory import provider_for


HEALTH_CHECK_PROMPT = "Reply with only 'OK' if you can read this message."


def health_check_model(
    model_name: str,
    create_client_fn: Callable[[str], ModelClient],
    breakers: CircuitBreakerRegistry | None = None,
) -> HealthCheckResult:
    """
    Execute a health check for a single model.

    The check goes through the model's circuit breaker when a registry is
    given, so an open circuit is reported without contacting the backend.

    Args:
        model_name: Name of the model to check
        create_client_fn: Function to create a model client
        breakers: Circuit breaker registry (optional)

    Returns:
        HealthCheckResult: Health check result
    """
    def check():
        client = create_client_fn(model_name)
        return client.generate(HEALTH_CHECK_PROMPT, max_tokens=16)

    try:
        if breakers is not None:
            response = breakers.get(provider_for(model_name), model_name).call(check)
        else:
            response = check()
        return HealthCheckResult(
            model_name=model_name,
            success=True,
            latency_ms=response.latency_ms,
            error=None
        )
    except Exception as e:
        return HealthCheckResult(
            model_name=model_name,
            success=False,
            latency_ms=None,
            error=str(e)
        )


def health_check_all_models(
    models: list[str],
    create_client_fn: Callable[[str], ModelClient],
    breakers: CircuitBreakerRegistry | None = None,
) -> tuple[list[str], list[HealthCheckResult]]:
    """
    Execute health checks for all models.

    Args:
        models: List of model names to check
        create_client_fn: Function to create a model client
        breakers: Circuit breaker registry (optional)

    Returns:
        tuple: (list of available models, list of all check results)
    """
    print("=== Model Health Check ===\n")
    results = []
    available_models = []

    for model_name in models:
        print(f"  {model_name}... ", end="", flush=True)
        result = health_check_model(model_name, create_client_fn, breakers)
        results.append(result)

        if result.success:
            print(f"OK ({result.latency_ms}ms)")
            available_models.append(model_name)
        else:
            # Display only the first 100 characters of the error message
            error_short = result.error[:100] if result.error else "Unknown error"
            print("FAILED")
            print(f"    Error: {error_short}")

    print()
    return available_models, results


def run_health_check(
    models: list[str],
    create_client_fn: Callable[[str], ModelClient] | None = None,
    breakers: CircuitBreakerRegistry | None = None,
) -> tuple[list[str], list[HealthCheckResult]]:
    """
    Execute health checks for all models (high-level function).

    Uses glassbox_core.infrastructure.model_clients.create_client if
    create_client_fn is not specified.

    Args:
        models: List of model names to check
        create_client_fn: Function to create a model client (optional)
        breakers: Circuit breaker registry (optional)

    Returns:
        tuple: (list of available models, list of all check results)
    """
    if create_client_fn is None:
        from glassbox_core.infrastructure.model_clients import create_client
        create_client_fn = create_client

    return health_check_all_models(models, create_client_fn, breakers)
