"""
Test Execution

Runs test specifications against model backends under bounded concurrency:
response cache lookup, circuit-broken backend calls with retry and model
fallback, cooperative budget enforcement, and expectation checks.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Iterable

from glassbox_core.circuit_breaker import CircuitBreakerRegistry
from glassbox_core.cost_estimator import estimate_cost, project_cost
from glassbox_core.domain.constants import CATEGORY_CONTENT_MISMATCH, NO_MODEL
from glassbox_core.domain.entities import CacheEntry, RawResult, RunReport, TestSpec
from glassbox_core.domain.errors import (
    BackendError,
    BackendTimeoutError,
    BackendUnavailableError,
    BudgetExceededError,
    ConfigurationError,
    GlassboxError,
    InternalError,
    RunCancelledError,
)
from glassbox_core.domain.value_objects import CostEstimate, ModelResponse
from glassbox_core.harness_config import HarnessConfig, load_config
from glassbox_core.infrastructure.model_clients.base import ModelClient
from glassbox_core.infrastructure.model_clients.factory import create_client, provider_for
from glassbox_core.response_cache import ResponseCache
from glassbox_core.scoring.expectations import evaluate_expectations
from glassbox_core.scoring.pii import PII_TYPES
from glassbox_core.use_cases.aggregation import build_run_report

logger = logging.getLogger(__name__)

# How often blocked waits re-check the stop signal (seconds)
_POLL_INTERVAL = 0.05

_COST_DECIMALS = 8

ClientFactory = Callable[[str, HarnessConfig], ModelClient]
ProgressCallback = Callable[[RawResult, int, int], None]


class AttemptPhase(str, Enum):
    """Phases of the retry / fallback state machine"""
    TRYING_PRIMARY = "trying_primary"
    RETRYING = "retrying"
    FALLING_BACK = "falling_back"
    EXHAUSTED = "exhausted"


class AttemptPlan:
    """
    Retry and fallback decisions for one test

    Walks the candidate models in order. Retryable failures (timeout, network,
    rate limiting) stay on the same model until the retry count is used up;
    any other backend failure moves on to the next candidate.
    """

    def __init__(self, candidates: Iterable[str], max_retries: int) -> None:
        self.candidates = list(candidates)
        if not self.candidates:
            raise ValueError("AttemptPlan needs at least one candidate model.")
        self.max_retries = max_retries
        self.phase = AttemptPhase.TRYING_PRIMARY
        self.attempts = 0
        self.last_error: BackendError | None = None
        self._index = 0
        self._retries = 0

    @property
    def current_model(self) -> str | None:
        if self.phase is AttemptPhase.EXHAUSTED:
            return None
        return self.candidates[self._index]

    @property
    def retry_number(self) -> int:
        """Retries made so far on the current model"""
        return self._retries

    @property
    def fallback_used(self) -> bool:
        return self._index > 0

    def record_failure(self, error: BackendError) -> AttemptPhase:
        """Register a failed attempt and return the next phase"""
        self.last_error = error
        if error.retryable and self._retries < self.max_retries:
            self._retries += 1
            self.phase = AttemptPhase.RETRYING
        else:
            self._index += 1
            self._retries = 0
            if self._index < len(self.candidates):
                self.phase = AttemptPhase.FALLING_BACK
            else:
                self.phase = AttemptPhase.EXHAUSTED
        return self.phase


class BudgetLedger:
    """
    Run-wide spend accumulator

    Callers reserve a projected cost before a backend call and settle it with
    the realized cost afterwards (or release it if the call failed).
    """

    def __init__(self, limit_usd: float | None = None) -> None:
        self.limit_usd = limit_usd
        self._lock = threading.Lock()
        self._spent = 0.0
        self._reserved = 0.0

    @property
    def spent(self) -> float:
        with self._lock:
            return round(self._spent, _COST_DECIMALS)

    @property
    def reserved(self) -> float:
        with self._lock:
            return round(self._reserved, _COST_DECIMALS)

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self.limit_usd is not None and round(self._spent, _COST_DECIMALS) >= self.limit_usd

    def reserve(self, amount: float) -> bool:
        """Reserve amount against the ceiling; False if it does not fit"""
        with self._lock:
            if self.limit_usd is not None:
                committed = round(self._spent + self._reserved + amount, _COST_DECIMALS)
                if committed > self.limit_usd:
                    return False
            self._reserved += amount
            return True

    def settle(self, reserved: float, actual: float) -> float:
        """Replace a reservation with the realized cost; returns the new spend"""
        with self._lock:
            self._reserved = max(0.0, self._reserved - reserved)
            self._spent += actual
            return round(self._spent, _COST_DECIMALS)

    def release(self, reserved: float) -> None:
        with self._lock:
            self._reserved = max(0.0, self._reserved - reserved)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_specs(specs: list[TestSpec]) -> None:
    """
    Check every test specification before anything runs

    Raises:
        ConfigurationError: On the first invalid spec
    """
    for spec in specs:
        where = spec.test_id
        if not spec.suite or not spec.name:
            raise ConfigurationError(where, "suite and test name must not be empty")
        if not isinstance(spec.prompt, str) or not spec.prompt.strip():
            raise ConfigurationError(f"{where}.prompt", "must be a non-empty string")
        if spec.model is not None and not (isinstance(spec.model, str) and spec.model):
            raise ConfigurationError(f"{where}.model", "must be a non-empty string")
        if not _is_int(spec.max_tokens) or spec.max_tokens < 1:
            raise ConfigurationError(f"{where}.max_tokens", "must be an integer of at least 1")
        if not _is_number(spec.temperature) or not 0.0 <= spec.temperature <= 2.0:
            raise ConfigurationError(f"{where}.temperature", "must be a number between 0 and 2")
        if spec.timeout_seconds is not None and (not _is_number(spec.timeout_seconds) or spec.timeout_seconds <= 0):
            raise ConfigurationError(f"{where}.timeout_seconds", "must be a positive number")
        if spec.max_retries is not None and (not _is_int(spec.max_retries) or spec.max_retries < 0):
            raise ConfigurationError(f"{where}.max_retries", "must be a non-negative integer")
        if spec.max_cost_usd is not None and (not _is_number(spec.max_cost_usd) or spec.max_cost_usd < 0):
            raise ConfigurationError(f"{where}.max_cost_usd", "must be a non-negative number")
        unknown_pii = sorted(set(spec.block_pii) - set(PII_TYPES))
        if unknown_pii:
            raise ConfigurationError(f"{where}.block_pii", f"Unknown PII types: {unknown_pii}")


class ExecutionScheduler:
    """
    Bounded worker pool that turns TestSpecs into RawResults

    Workers run on one thread pool; backend calls run on a second pool of the
    same size, which caps the calls in flight (abandoned ones included) and
    lets a worker give up on a call that outlives its timeout or the run.
    """

    def __init__(
        self,
        config: HarnessConfig,
        client_factory: ClientFactory = create_client,
        cache: ResponseCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        estimate_fn: Callable[[str, str, str], CostEstimate] = estimate_cost,
        project_fn: Callable[[str, str, int | None], CostEstimate] = project_cost,
        on_result: ProgressCallback | None = None,
    ) -> None:
        """
        Args:
            config: Harness configuration
            client_factory: Creates a ModelClient for (model_name, config)
            cache: Response cache (None disables caching)
            breakers: Circuit breaker registry (built from config if None)
            estimate_fn: Prices a completed call (prompt, response, model)
            project_fn: Projects a call's cost before it is made (prompt, model, max_tokens)
            on_result: Progress callback (result, completed, total)
        """
        self.config = config
        self.cache = cache
        self.breakers = breakers or CircuitBreakerRegistry.from_config(config.circuit_breaker)
        self.ledger = BudgetLedger(config.budget.max_cost_usd)
        self._client_factory = client_factory
        self._estimate_fn = estimate_fn
        self._project_fn = project_fn
        self._on_result = on_result

        self._clients: dict[str, ModelClient] = {}
        self._clients_lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._stop = threading.Event()
        self._external_stop: threading.Event | None = None
        self._run_deadline: float | None = None
        self._call_pool: ThreadPoolExecutor | None = None

    # --- Public entry point ---

    def run(self, specs: Iterable[TestSpec], stop_event: threading.Event | None = None) -> list[RawResult]:
        """
        Execute every spec and return exactly one RawResult per spec, in input order

        Args:
            specs: Test specifications
            stop_event: Optional external stop signal

        Returns:
            list[RawResult]

        Raises:
            ConfigurationError: If the config or a spec is invalid (nothing runs)
        """
        specs = list(specs)
        self.config.validate()
        validate_specs(specs)

        self.ledger = BudgetLedger(self.config.budget.max_cost_usd)
        self._stop.clear()
        self._external_stop = stop_event
        run_timeout = self.config.execution.run_timeout_seconds
        self._run_deadline = time.monotonic() + run_timeout if run_timeout else None

        total = len(specs)
        results: list[RawResult | None] = [None] * total
        progress = {"completed": 0}
        workers = self.config.execution.max_workers

        self._call_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="glassbox-call")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="glassbox-worker") as executor:
                futures = {
                    executor.submit(self._run_one, spec): index
                    for index, spec in enumerate(specs)
                }
                try:
                    for future in as_completed(futures):
                        result = future.result()
                        results[futures[future]] = result
                        with self._progress_lock:
                            progress["completed"] += 1
                            if self._on_result is not None:
                                self._on_result(result, progress["completed"], total)
                except BaseException:
                    # Interrupted: queued tests drain as cancelled before the pool joins
                    self._stop.set()
                    raise
        finally:
            # Abandoned calls are left to finish on their own
            self._call_pool.shutdown(wait=False, cancel_futures=True)
            self._call_pool = None

        return results

    def stop(self) -> None:
        """Ask the running workers to stop"""
        self._stop.set()

    # --- Per-test execution ---

    def _run_one(self, spec: TestSpec) -> RawResult:
        start = time.monotonic()
        try:
            return self._execute(spec, start)
        except Exception as e:
            logger.exception("Internal error while executing %s", spec.test_id)
            return self._failure(spec, start, InternalError(f"Internal error: {e}"))

    def _execute(self, spec: TestSpec, start: float) -> RawResult:
        if self._stopping():
            return self._failure(spec, start, RunCancelledError("Cancelled before start"))

        primary = spec.model or self.config.execution.default_model

        fingerprint = None
        if self.cache is not None:
            fingerprint = self.cache.fingerprint(
                spec.prompt, primary, temperature=spec.temperature, max_tokens=spec.max_tokens
            )
            entry = self.cache.get_by_fingerprint(fingerprint)
            if entry is not None:
                return self._cached_result(spec, entry, start)

        if self.ledger.exhausted:
            return self._failure(spec, start, BudgetExceededError(
                "Global budget exhausted",
                limit_usd=self.ledger.limit_usd,
                amount_usd=self.ledger.spent,
            ))

        plan = AttemptPlan(self.config.fallback.candidates_for(primary), self._max_retries(spec))
        try:
            response, reserved = self._drive(spec, plan)
        except GlassboxError as e:
            return self._failure(spec, start, e, plan=plan)

        estimate = self._estimate_fn(spec.prompt, response.output, response.model_name)
        cost = estimate.total_cost
        spent = self.ledger.settle(reserved, cost)

        per_test_limit = self._per_test_limit(spec)
        over_budget = None
        if per_test_limit is not None and cost > per_test_limit:
            over_budget = BudgetExceededError(
                f"Realized cost ${cost:.6f} exceeds the per-test budget ${per_test_limit:.6f}",
                limit_usd=per_test_limit,
                amount_usd=cost,
            )
        elif self.ledger.limit_usd is not None and spent > self.ledger.limit_usd:
            over_budget = BudgetExceededError(
                f"Cumulative spend ${spent:.6f} exceeds the budget ${self.ledger.limit_usd:.6f}",
                limit_usd=self.ledger.limit_usd,
                amount_usd=spent,
            )
        if over_budget is not None:
            logger.warning("%s: %s", spec.test_id, over_budget)
            return self._failure(
                spec, start, over_budget, plan=plan, response=response, cost=cost, tokens=estimate.total_tokens
            )

        check = evaluate_expectations(response.output, spec.contains, spec.not_contains, spec.block_pii)

        if self.cache is not None:
            self.cache.set(
                spec.prompt,
                primary,
                {
                    "output": response.output,
                    "model_name": response.model_name,
                    "input_tokens": response.input_tokens,
                    "output_tokens": response.output_tokens,
                },
                temperature=spec.temperature,
                max_tokens=spec.max_tokens,
            )

        return RawResult(
            suite=spec.suite,
            test=spec.name,
            passed=check.passed,
            duration_ms=self._elapsed_ms(start),
            cost_usd=cost,
            tokens=estimate.total_tokens,
            model_used=response.model_name,
            fallback_used=plan.fallback_used,
            cached=False,
            attempts=plan.attempts,
            error=None if check.passed else "Response did not meet expectations",
            error_category=None if check.passed else CATEGORY_CONTENT_MISMATCH,
            details=check.details,
            response=response.output,
        )

    def _drive(self, spec: TestSpec, plan: AttemptPlan) -> tuple[ModelResponse, float]:
        """
        Run the attempt state machine until a call succeeds

        Returns:
            (response, reserved amount still held in the ledger)

        Raises:
            BudgetExceededError: Projected cost does not fit a budget
            RunCancelledError: The run was stopped
            BackendError: The last failure once every candidate is exhausted
        """
        per_test_limit = self._per_test_limit(spec)

        while plan.current_model is not None:
            model = plan.current_model
            if self._stopping():
                raise RunCancelledError("Run stopped")

            projected = self._project_fn(spec.prompt, model, spec.max_tokens).total_cost
            if per_test_limit is not None and projected > per_test_limit:
                raise BudgetExceededError(
                    f"Projected cost ${projected:.6f} exceeds the per-test budget ${per_test_limit:.6f}",
                    limit_usd=per_test_limit,
                    amount_usd=projected,
                )
            if not self.ledger.reserve(projected):
                logger.warning("%s: budget ceiling reached, not calling %s", spec.test_id, model)
                raise BudgetExceededError(
                    f"Projected cost ${projected:.6f} does not fit the remaining budget "
                    f"(spent ${self.ledger.spent:.6f} of ${self.ledger.limit_usd:.6f})",
                    limit_usd=self.ledger.limit_usd,
                    amount_usd=projected,
                )

            breaker = self.breakers.get(provider_for(model), model)
            try:
                response = breaker.call(lambda: self._attempt(spec, model, plan))
            except BackendError as e:
                self.ledger.release(projected)
                phase = plan.record_failure(e)
                if phase is AttemptPhase.RETRYING:
                    delay = self._backoff_delay(plan.retry_number)
                    logger.warning(
                        "%s: %s failed (%s), retry %d/%d in %.2fs",
                        spec.test_id, model, e.category, plan.retry_number, plan.max_retries, delay,
                    )
                    self._sleep(delay)
                elif phase is AttemptPhase.FALLING_BACK:
                    logger.warning(
                        "%s: %s failed (%s), falling back to %s",
                        spec.test_id, model, e.category, plan.current_model,
                    )
                continue
            except Exception:
                self.ledger.release(projected)
                raise
            return response, projected

        raise plan.last_error

    def _attempt(self, spec: TestSpec, model: str, plan: AttemptPlan) -> ModelResponse:
        """One backend call, bounded by the per-attempt timeout and the stop signal"""
        client = self._client_for(model)
        plan.attempts += 1
        timeout = spec.timeout_seconds or self.config.execution.timeout_seconds
        started = threading.Event()

        def call() -> ModelResponse:
            started.set()
            return client.generate(
                spec.prompt,
                max_tokens=spec.max_tokens,
                temperature=spec.temperature,
                timeout_seconds=timeout,
            )

        future = self._call_pool.submit(call)
        self._await_slot(future, started)
        return self._await_call(future, model, time.monotonic() + timeout)

    def _await_slot(self, future: Future, started: threading.Event) -> None:
        """
        Wait until the call leaves the call pool's queue

        Abandoned calls keep their slot until they return, so the per-attempt
        deadline only starts once this call is actually running.
        """
        while not started.wait(_POLL_INTERVAL):
            if self._stopping():
                future.cancel()
                raise RunCancelledError("Run stopped while waiting for a free call slot")

    def _await_call(self, future: Future, model: str, deadline: float) -> ModelResponse:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise BackendTimeoutError(f"{model} did not respond in time", model_name=model)
            try:
                return future.result(timeout=min(remaining, _POLL_INTERVAL))
            except FutureTimeoutError:
                if self._stopping():
                    future.cancel()
                    raise RunCancelledError("Run stopped while waiting for the backend")

    def _client_for(self, model: str) -> ModelClient:
        with self._clients_lock:
            client = self._clients.get(model)
            if client is None:
                try:
                    client = self._client_factory(model, self.config)
                except (ValueError, ImportError) as e:
                    raise BackendUnavailableError(
                        f"Cannot create client for {model}: {e}", model_name=model
                    ) from e
                self._clients[model] = client
            return client

    # --- Helpers ---

    def _max_retries(self, spec: TestSpec) -> int:
        if spec.max_retries is not None:
            return spec.max_retries
        return self.config.execution.max_retries

    def _per_test_limit(self, spec: TestSpec) -> float | None:
        if spec.max_cost_usd is not None:
            return spec.max_cost_usd
        return self.config.budget.per_test_max_cost_usd

    def _backoff_delay(self, retry: int) -> float:
        """Exponential backoff: delay * 2^(retry-1), capped, plus jitter"""
        ex = self.config.execution
        delay = min(ex.retry_delay_seconds * (2 ** (retry - 1)), ex.max_retry_delay_seconds)
        return delay + delay * ex.jitter_factor * random.random()

    def _stopping(self) -> bool:
        if self._stop.is_set():
            return True
        if (self._external_stop is not None and self._external_stop.is_set()) or (
            self._run_deadline is not None and time.monotonic() >= self._run_deadline
        ):
            self._stop.set()
            return True
        return False

    def _sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stopping():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop.wait(min(remaining, _POLL_INTERVAL))
        raise RunCancelledError("Run stopped during retry backoff")

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def _cached_result(self, spec: TestSpec, entry: CacheEntry, start: float) -> RawResult:
        output = entry.response.get("output", "")
        check = evaluate_expectations(output, spec.contains, spec.not_contains, spec.block_pii)
        return RawResult(
            suite=spec.suite,
            test=spec.name,
            passed=check.passed,
            duration_ms=self._elapsed_ms(start),
            cost_usd=0.0,
            tokens=0,
            model_used=entry.response.get("model_name", entry.model),
            fallback_used=False,
            cached=True,
            attempts=0,
            error=None if check.passed else "Response did not meet expectations",
            error_category=None if check.passed else CATEGORY_CONTENT_MISMATCH,
            details=check.details,
            response=output,
        )

    def _failure(
        self,
        spec: TestSpec,
        start: float,
        error: GlassboxError,
        plan: AttemptPlan | None = None,
        response: ModelResponse | None = None,
        cost: float = 0.0,
        tokens: int = 0,
    ) -> RawResult:
        details: tuple[str, ...] = ()
        if plan is not None and plan.phase is AttemptPhase.EXHAUSTED:
            details = (f"Tried models: {', '.join(plan.candidates)}",)
        return RawResult(
            suite=spec.suite,
            test=spec.name,
            passed=False,
            duration_ms=self._elapsed_ms(start),
            cost_usd=cost,
            tokens=tokens,
            model_used=response.model_name if response is not None else NO_MODEL,
            fallback_used=plan.fallback_used if plan is not None else False,
            cached=False,
            attempts=plan.attempts if plan is not None else 0,
            error=str(error),
            error_category=error.category,
            details=details,
            response=response.output if response is not None else "",
        )


def _default_cache(config: HarnessConfig) -> ResponseCache | None:
    if not config.cache.enabled:
        return None
    return ResponseCache.from_config(config.cache)


def run_tests(
    specs: Iterable[TestSpec],
    config: HarnessConfig | None = None,
    *,
    client_factory: ClientFactory = create_client,
    cache: ResponseCache | None = None,
    stop_event: threading.Event | None = None,
    on_result: ProgressCallback | None = None,
) -> list[RawResult]:
    """
    Execute tests and return the raw results (high-level function)

    Uses load_config() if config is not specified, and a ResponseCache built
    from config.cache if caching is enabled and no cache is given.
    """
    if config is None:
        config = load_config()
    if cache is None:
        cache = _default_cache(config)
    scheduler = ExecutionScheduler(config, client_factory=client_factory, cache=cache, on_result=on_result)
    return scheduler.run(specs, stop_event=stop_event)


def execute_run(
    specs: Iterable[TestSpec],
    config: HarnessConfig | None = None,
    *,
    client_factory: ClientFactory = create_client,
    cache: ResponseCache | None = None,
    stop_event: threading.Event | None = None,
    on_result: ProgressCallback | None = None,
) -> RunReport:
    """
    Execute tests and fold the results into a RunReport

    Args:
        specs: Test specifications
        config: HarnessConfig (loads from env if not provided)
        client_factory: Creates a ModelClient for (model_name, config)
        cache: Response cache (built from config if not provided)
        stop_event: Optional external stop signal
        on_result: Progress callback (result, completed, total)

    Returns:
        RunReport
    """
    if config is None:
        config = load_config()
    if cache is None:
        cache = _default_cache(config)
    scheduler = ExecutionScheduler(config, client_factory=client_factory, cache=cache, on_result=on_result)
    results = scheduler.run(specs, stop_event=stop_event)
    return build_run_report(
        results,
        budget_spent_usd=scheduler.ledger.spent,
        budget_limit_usd=scheduler.ledger.limit_usd,
        circuits=scheduler.breakers.snapshot(),
    )
