"""
Tests for the execution scheduler

Backends are scripted fake ModelClients; retries use a zero delay.
"""

import threading
import time
from unittest.mock import patch

import pytest

from glassbox_core.circuit_breaker import CircuitBreakerRegistry
from glassbox_core.domain.entities import CircuitStatus, TestSpec
from glassbox_core.domain.errors import (
    BackendNetworkError,
    BackendTimeoutError,
    BackendUnavailableError,
    ConfigurationError,
)
from glassbox_core.domain.value_objects import CostEstimate
from glassbox_core.harness_config import HarnessConfig
from glassbox_core.infrastructure.model_clients.base import ModelClient
from glassbox_core.response_cache import ResponseCache
from glassbox_core.use_cases.execution import (
    AttemptPhase,
    AttemptPlan,
    BudgetLedger,
    ExecutionScheduler,
    execute_run,
)


class FakeClient(ModelClient):
    """Plays back a script of outputs and exceptions, then repeats `default`"""

    provider = "fake"

    def __init__(self, model_name, script=(), default="Hello there!", delay=0.0):
        self.model_name = model_name
        self.script = list(script)
        self.default = default
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def _generate(self, prompt, *, max_tokens, temperature, timeout_seconds):
        with self._lock:
            self.calls += 1
            step = self.script.pop(0) if self.script else self.default
        if self.delay:
            time.sleep(self.delay)
        if isinstance(step, Exception):
            raise step
        return step, 1, 1


class SlowFirstCallClient(FakeClient):
    """Only the first call is slow"""

    def __init__(self, model_name, first_delay):
        super().__init__(model_name)
        self.first_delay = first_delay

    def _generate(self, prompt, **kwargs):
        with self._lock:
            first = self.calls == 0
        if first:
            time.sleep(self.first_delay)
        return super()._generate(prompt, **kwargs)


def _factory(*clients):
    by_model = {c.model_name: c for c in clients}
    return lambda model_name, config: by_model[model_name]


def _config(**overrides) -> HarnessConfig:
    config = HarnessConfig()
    config.execution.max_workers = 2
    config.execution.timeout_seconds = 5.0
    config.execution.retry_delay_seconds = 0.0
    config.execution.max_retry_delay_seconds = 0.0
    config.execution.jitter_factor = 0.0
    config.execution.default_model = "model-a"
    config.cache.enabled = False
    config.fallback.chains = {}
    for key, value in overrides.items():
        setattr(config.execution, key, value)
    return config


def _spec(name="hello", prompt="Say hello.", **kwargs) -> TestSpec:
    kwargs.setdefault("contains", ("hello",))
    return TestSpec(suite="greetings", name=name, prompt=prompt, **kwargs)


def _fixed_cost(amount):
    """Cost function stub: every call costs `amount`"""
    half = amount / 2

    def fn(*args, **kwargs):
        return CostEstimate(prompt_tokens=1, response_tokens=1, input_cost=half, output_cost=half)
    return fn


class TestAttemptPlan:
    def test_retry_then_fallback_then_exhausted(self):
        plan = AttemptPlan(["a", "b"], max_retries=1)
        assert plan.phase is AttemptPhase.TRYING_PRIMARY
        assert plan.current_model == "a"

        assert plan.record_failure(BackendNetworkError("x")) is AttemptPhase.RETRYING
        assert plan.current_model == "a"
        assert plan.retry_number == 1

        assert plan.record_failure(BackendNetworkError("x")) is AttemptPhase.FALLING_BACK
        assert plan.current_model == "b"
        assert plan.fallback_used is True
        assert plan.retry_number == 0

        plan.record_failure(BackendNetworkError("x"))
        assert plan.record_failure(BackendTimeoutError("y")) is AttemptPhase.EXHAUSTED
        assert plan.current_model is None
        assert plan.last_error.category == "timeout"

    def test_unavailable_skips_retries(self):
        plan = AttemptPlan(["a", "b"], max_retries=3)
        assert plan.record_failure(BackendUnavailableError("x")) is AttemptPhase.FALLING_BACK
        assert plan.current_model == "b"

    def test_needs_a_candidate(self):
        with pytest.raises(ValueError):
            AttemptPlan([], max_retries=1)


class TestBudgetLedger:
    def test_unlimited(self):
        ledger = BudgetLedger()
        assert ledger.reserve(100.0) is True
        assert ledger.exhausted is False

    def test_reserve_refuses_past_the_ceiling(self):
        ledger = BudgetLedger(limit_usd=0.01)
        assert ledger.reserve(0.004) is True
        assert ledger.reserve(0.004) is True
        assert ledger.reserve(0.004) is False
        assert ledger.reserved == pytest.approx(0.008)

    def test_settle_and_release(self):
        ledger = BudgetLedger(limit_usd=0.01)
        ledger.reserve(0.004)
        ledger.reserve(0.004)
        assert ledger.settle(0.004, 0.003) == pytest.approx(0.003)
        ledger.release(0.004)
        assert ledger.reserved == 0.0
        assert ledger.spent == pytest.approx(0.003)

    def test_exhausted_at_the_ceiling(self):
        ledger = BudgetLedger(limit_usd=0.01)
        ledger.reserve(0.005)
        ledger.settle(0.005, 0.005)
        ledger.reserve(0.005)
        ledger.settle(0.005, 0.005)
        assert ledger.exhausted is True


class TestBackoff:
    def test_exponential_and_capped(self):
        config = _config(retry_delay_seconds=1.0, max_retry_delay_seconds=30.0, jitter_factor=0.0)
        scheduler = ExecutionScheduler(config)
        assert [scheduler._backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
        assert scheduler._backoff_delay(10) == 30.0

    @patch("glassbox_core.use_cases.execution.random.random", return_value=1.0)
    def test_jitter(self, mock_random):
        config = _config(retry_delay_seconds=1.0, max_retry_delay_seconds=30.0, jitter_factor=0.1)
        assert ExecutionScheduler(config)._backoff_delay(2) == pytest.approx(2.2)


class TestRun:
    def test_passing_test(self):
        client = FakeClient("model-a")
        scheduler = ExecutionScheduler(_config(), client_factory=_factory(client))

        [result] = scheduler.run([_spec()])

        assert result.passed is True
        assert result.model_used == "model-a"
        assert result.attempts == 1
        assert result.cached is False
        assert result.fallback_used is False
        assert result.cost_usd > 0
        assert result.tokens > 0
        assert result.response == "Hello there!"

    def test_content_mismatch(self):
        client = FakeClient("model-a", default="Goodbye.")
        [result] = ExecutionScheduler(_config(), client_factory=_factory(client)).run([_spec()])

        assert result.passed is False
        assert result.error_category == "content_mismatch"
        assert result.details == ("Missing required text: 'hello'",)

    def test_pii_in_response_is_a_content_mismatch(self):
        client = FakeClient("model-a", default="Sure, write to jane.doe@example.com")
        [result] = ExecutionScheduler(_config(), client_factory=_factory(client)).run(
            [_spec(contains=(), block_pii=("email", "ssn"))]
        )

        assert result.passed is False
        assert result.error_category == "content_mismatch"
        assert result.details == ("PII detected: email (j***@example.com)",)
        assert "jane.doe" not in result.details[0]

    def test_results_follow_input_order(self):
        client = FakeClient("model-a")
        specs = [_spec(name=f"t{i}", prompt=f"Say hello {i}.") for i in range(10)]
        results = ExecutionScheduler(_config(max_workers=4), client_factory=_factory(client)).run(specs)
        assert [r.test for r in results] == [s.name for s in specs]

    def test_progress_callback(self):
        seen = []
        client = FakeClient("model-a")
        scheduler = ExecutionScheduler(
            _config(), client_factory=_factory(client),
            on_result=lambda result, completed, total: seen.append((completed, total)),
        )
        scheduler.run([_spec(name="a"), _spec(name="b", prompt="Say hello again.")])
        assert seen == [(1, 2), (2, 2)]

    def test_model_override(self):
        a, b = FakeClient("model-a"), FakeClient("model-b")
        [result] = ExecutionScheduler(_config(), client_factory=_factory(a, b)).run([_spec(model="model-b")])
        assert result.model_used == "model-b"
        assert a.calls == 0


class TestCaching:
    def test_second_identical_test_is_a_cache_hit(self):
        client = FakeClient("model-a")
        cache = ResponseCache(default_ttl_seconds=60)
        scheduler = ExecutionScheduler(_config(max_workers=1), client_factory=_factory(client), cache=cache)

        first, second = scheduler.run([_spec(name="first"), _spec(name="second")])

        assert first.cached is False
        assert second.cached is True
        assert second.passed is True
        assert second.cost_usd == 0.0
        assert second.model_used == "model-a"
        assert client.calls == 1
        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1

    def test_cached_response_is_rechecked_against_expectations(self):
        client = FakeClient("model-a")
        cache = ResponseCache(default_ttl_seconds=60)
        scheduler = ExecutionScheduler(_config(max_workers=1), client_factory=_factory(client), cache=cache)

        scheduler.run([_spec()])
        [result] = scheduler.run([_spec(contains=("goodbye",))])

        assert result.cached is True
        assert result.passed is False
        assert result.error_category == "content_mismatch"

    def test_failed_calls_are_not_cached(self):
        client = FakeClient("model-a", default=BackendUnavailableError("nope"))
        cache = ResponseCache(default_ttl_seconds=60)
        ExecutionScheduler(_config(), client_factory=_factory(client), cache=cache).run([_spec()])
        assert cache.stats().entry_count == 0


class TestRetryAndFallback:
    def test_retry_on_network_error(self):
        client = FakeClient("model-a", script=[BackendNetworkError("reset")])
        [result] = ExecutionScheduler(_config(max_retries=2), client_factory=_factory(client)).run([_spec()])

        assert result.passed is True
        assert result.attempts == 2
        assert result.fallback_used is False

    def test_fallback_after_retries(self):
        a = FakeClient("model-a", default=BackendNetworkError("reset"))
        b = FakeClient("model-b")
        config = _config(max_retries=1)
        config.fallback.chains = {"model-a": ["model-b"]}

        [result] = ExecutionScheduler(config, client_factory=_factory(a, b)).run([_spec()])

        assert result.passed is True
        assert result.fallback_used is True
        assert result.model_used == "model-b"
        assert a.calls == 2
        assert result.attempts == 3

    def test_unavailable_falls_back_without_retry(self):
        a = FakeClient("model-a", default=BackendUnavailableError("unknown model"))
        b = FakeClient("model-b")
        config = _config(max_retries=3)
        config.fallback.chains = {"model-a": ["model-b"]}

        [result] = ExecutionScheduler(config, client_factory=_factory(a, b)).run([_spec()])

        assert result.passed is True
        assert a.calls == 1

    def test_per_test_retry_override(self):
        client = FakeClient("model-a", default=BackendTimeoutError("slow"))
        [result] = ExecutionScheduler(_config(max_retries=5), client_factory=_factory(client)).run(
            [_spec(max_retries=0)]
        )
        assert client.calls == 1
        assert result.error_category == "timeout"

    def test_exhausted_chain_reports_last_category(self):
        a = FakeClient("model-a", default=BackendNetworkError("reset"))
        b = FakeClient("model-b", default=BackendTimeoutError("slow"))
        config = _config(max_retries=0)
        config.fallback.chains = {"model-a": ["model-b"]}

        [result] = ExecutionScheduler(config, client_factory=_factory(a, b)).run([_spec()])

        assert result.passed is False
        assert result.error_category == "timeout"
        assert result.fallback_used is True
        assert result.details == ("Tried models: model-a, model-b",)

    def test_client_creation_failure_is_unavailable(self):
        def factory(model_name, config):
            raise ValueError("API key is not set")

        [result] = ExecutionScheduler(_config(), client_factory=factory).run([_spec()])
        assert result.error_category == "backend_unavailable"

    def test_untranslated_exception_is_internal(self):
        client = FakeClient("model-a", default=KeyError("bug"))
        [result] = ExecutionScheduler(_config(max_retries=3), client_factory=_factory(client)).run([_spec()])

        assert result.passed is False
        assert result.error_category == "internal"
        assert result.error.startswith("Internal error:")
        assert client.calls == 1


class TestCircuitBreaking:
    def test_sixth_call_is_short_circuited(self):
        client = FakeClient("model-a", default=BackendNetworkError("reset"))
        config = _config(max_workers=1, max_retries=0)
        config.circuit_breaker.failure_threshold = 5
        scheduler = ExecutionScheduler(config, client_factory=_factory(client))

        results = scheduler.run([_spec(name=f"t{i}", prompt=f"Say hello {i}.") for i in range(6)])

        assert [r.error_category for r in results] == ["network"] * 5 + ["backend_unavailable"]
        assert client.calls == 5
        assert results[5].attempts == 0
        circuit = scheduler.breakers.snapshot()["vertex_ai:model-a"]
        assert circuit.status is CircuitStatus.OPEN

    def test_open_circuit_moves_to_fallback(self):
        a = FakeClient("model-a")
        b = FakeClient("model-b")
        config = _config()
        config.fallback.chains = {"model-a": ["model-b"]}
        breakers = CircuitBreakerRegistry(failure_threshold=1)
        breakers.get("vertex_ai", "model-a").record_failure()

        [result] = ExecutionScheduler(config, client_factory=_factory(a, b), breakers=breakers).run([_spec()])

        assert result.passed is True
        assert result.model_used == "model-b"
        assert a.calls == 0


class TestBudget:
    @pytest.mark.parametrize("workers", [1, 5])
    def test_ceiling_limits_executed_tests(self, workers):
        client = FakeClient("model-a")
        config = _config(max_workers=workers)
        config.budget.max_cost_usd = 0.01
        scheduler = ExecutionScheduler(
            config,
            client_factory=_factory(client),
            estimate_fn=_fixed_cost(0.004),
            project_fn=_fixed_cost(0.004),
        )

        results = scheduler.run([_spec(name=f"t{i}", prompt=f"Say hello {i}.") for i in range(5)])

        executed = [r for r in results if r.error_category != "budget"]
        assert len(executed) == 2
        assert all(r.passed for r in executed)
        assert sum(r.error_category == "budget" for r in results) == 3
        assert client.calls == 2
        assert scheduler.ledger.spent == pytest.approx(0.008)
        assert scheduler.ledger.spent <= 0.01

    def test_projected_cost_over_per_test_budget(self):
        client = FakeClient("model-a")
        scheduler = ExecutionScheduler(_config(), client_factory=_factory(client), project_fn=_fixed_cost(0.004))

        [result] = scheduler.run([_spec(max_cost_usd=0.001)])

        assert result.error_category == "budget"
        assert client.calls == 0

    def test_realized_cost_over_per_test_budget_is_not_cached(self):
        client = FakeClient("model-a")
        cache = ResponseCache(default_ttl_seconds=60)
        config = _config()
        config.budget.per_test_max_cost_usd = 0.002
        scheduler = ExecutionScheduler(
            config,
            client_factory=_factory(client),
            cache=cache,
            estimate_fn=_fixed_cost(0.004),
            project_fn=_fixed_cost(0.0),
        )

        [result] = scheduler.run([_spec()])

        assert result.passed is False
        assert result.error_category == "budget"
        assert result.model_used == "model-a"
        assert result.cost_usd == pytest.approx(0.004)
        assert cache.stats().entry_count == 0

    def test_exhausted_budget_still_serves_cache_hits(self):
        client = FakeClient("model-a")
        cache = ResponseCache(default_ttl_seconds=60)
        config = _config(max_workers=1)
        config.budget.max_cost_usd = 0.004
        scheduler = ExecutionScheduler(
            config,
            client_factory=_factory(client),
            cache=cache,
            estimate_fn=_fixed_cost(0.004),
            project_fn=_fixed_cost(0.004),
        )

        first, second, third = scheduler.run([
            _spec(name="a"),
            _spec(name="b"),
            _spec(name="c", prompt="Something else, hello."),
        ])

        assert first.passed is True
        assert second.cached is True and second.passed is True
        assert third.error_category == "budget"


class TestTimeoutsAndCancellation:
    def test_per_attempt_timeout(self):
        client = FakeClient("model-a", delay=1.0)
        start = time.monotonic()
        [result] = ExecutionScheduler(_config(max_retries=0), client_factory=_factory(client)).run(
            [_spec(timeout_seconds=0.1)]
        )
        assert result.error_category == "timeout"
        assert time.monotonic() - start < 1.0

    def test_stop_event_before_start(self):
        client = FakeClient("model-a")
        stop = threading.Event()
        stop.set()

        results = ExecutionScheduler(_config(), client_factory=_factory(client)).run(
            [_spec(name="a"), _spec(name="b")], stop_event=stop
        )

        assert [r.error_category for r in results] == ["timeout", "timeout"]
        assert all(r.error == "Cancelled before start" for r in results)
        assert client.calls == 0

    def test_run_timeout_reports_every_test(self):
        client = FakeClient("model-a", delay=2.0)
        config = _config(max_workers=1, run_timeout_seconds=0.2)

        results = ExecutionScheduler(config, client_factory=_factory(client)).run(
            [_spec(name=f"t{i}", prompt=f"Say hello {i}.") for i in range(3)]
        )

        assert len(results) == 3
        assert all(r.error_category == "timeout" for r in results)
        assert results[1].error == "Cancelled before start"

    def test_retry_waits_for_a_free_call_slot(self):
        # The abandoned first call holds the only call slot for a second
        client = SlowFirstCallClient("model-a", first_delay=1.0)
        config = _config(max_workers=1, max_retries=2, timeout_seconds=0.3)

        [result] = ExecutionScheduler(config, client_factory=_factory(client)).run([_spec()])

        assert result.passed is True
        assert result.attempts == 2
        assert client.calls == 2

    def test_interrupt_cancels_queued_tests(self):
        client = FakeClient("model-a", delay=0.2)

        def interrupt(result, completed, total):
            raise KeyboardInterrupt

        scheduler = ExecutionScheduler(_config(max_workers=1), client_factory=_factory(client), on_result=interrupt)
        with pytest.raises(KeyboardInterrupt):
            scheduler.run([_spec(name=f"t{i}", prompt=f"Say hello {i}.") for i in range(5)])

        assert client.calls <= 2


class TestValidation:
    def test_invalid_config_runs_nothing(self):
        client = FakeClient("model-a")
        with pytest.raises(ConfigurationError):
            ExecutionScheduler(_config(max_workers=0), client_factory=_factory(client)).run([_spec()])
        assert client.calls == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"prompt": "   "},
            {"max_tokens": 0},
            {"temperature": 3.0},
            {"timeout_seconds": 0},
            {"max_retries": -1},
            {"max_cost_usd": -1.0},
            {"max_tokens": "100"},
            {"max_tokens": 10.5},
            {"temperature": "hot"},
            {"timeout_seconds": "5"},
            {"max_retries": True},
            {"max_cost_usd": "0.01"},
            {"model": ""},
            {"block_pii": ("passport",)},
        ],
    )
    def test_invalid_spec_runs_nothing(self, kwargs):
        client = FakeClient("model-a")
        specs = [_spec(name="ok"), _spec(name="bad", **kwargs)]
        with pytest.raises(ConfigurationError):
            ExecutionScheduler(_config(), client_factory=_factory(client)).run(specs)
        assert client.calls == 0


class TestExecuteRun:
    def test_builds_run_report(self):
        client = FakeClient("model-a")
        config = _config()
        config.budget.max_cost_usd = 1.0

        run_report = execute_run(
            [_spec(name="a"), _spec(name="b", prompt="Say goodbye.", contains=("goodbye",))],
            config,
            client_factory=_factory(client),
        )

        assert run_report.report.summary.total == 2
        assert run_report.report.summary.passed == 1
        assert run_report.report.failures_by_category["content_mismatch"] == 1
        assert run_report.budget_limit_usd == 1.0
        assert run_report.budget_spent_usd == pytest.approx(sum(r.cost_usd for r in run_report.results))
        assert "vertex_ai:model-a" in run_report.circuits
