"""
glassbox-core CLI Runner

Minimal CLI for running a test pack through the execution engine.

Usage:
    python -m glassbox_core.runner --tests packs/smoke.json
    python -m glassbox_core.runner --tests packs/smoke.json --model gemini-2.5-flash --max-workers 8 --budget 0.50

Check backend connectivity only:
    python -m glassbox_core.runner --tests packs/smoke.json --health-check
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from pathlib import Path

from dotenv import load_dotenv

from glassbox_core.circuit_breaker import CircuitBreakerRegistry
from glassbox_core.cost_estimator import estimate_suite_cost
from glassbox_core.domain.entities import RawResult, RunReport
from glassbox_core.domain.errors import ConfigurationError
from glassbox_core.harness_config import HarnessConfig, load_config
from glassbox_core.infrastructure.model_clients import create_client
from glassbox_core.response_cache import ResponseCache
from glassbox_core.spec_loader import load_test_pack
from glassbox_core.use_cases.aggregation import report_to_dict, results_to_frame
from glassbox_core.use_cases.execution import execute_run, validate_specs
from glassbox_core.use_cases.health_check import run_health_check


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="glassbox-core: Run prompt test packs against model backends",
    )
    parser.add_argument(
        "--tests",
        required=True,
        help="Path to the test pack JSON file",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Default model for tests without an override (default: GLASSBOX_DEFAULT_MODEL)",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Number of concurrent workers (default: GLASSBOX_MAX_WORKERS)",
    )
    parser.add_argument(
        "--budget",
        type=float,
        default=None,
        help="Budget ceiling for the whole run in USD (default: GLASSBOX_MAX_COST_USD)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable the response cache",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear the response cache before running",
    )
    parser.add_argument(
        "--run-timeout",
        type=float,
        default=None,
        help="Stop the run after this many seconds (default: GLASSBOX_RUN_TIMEOUT_SECONDS)",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Only check connectivity of the models used by the pack",
    )
    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory for output files (default: results)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log retries, fallbacks and cache activity",
    )
    return parser.parse_args(argv)


def apply_overrides(config: HarnessConfig, args: argparse.Namespace) -> HarnessConfig:
    """Apply command-line overrides on top of the environment configuration"""
    if args.model:
        config.execution.default_model = args.model
    if args.max_workers is not None:
        config.execution.max_workers = args.max_workers
    if args.budget is not None:
        config.budget.max_cost_usd = args.budget
    if args.run_timeout is not None:
        config.execution.run_timeout_seconds = args.run_timeout
    if args.no_cache:
        config.cache.enabled = False
    return config


@contextmanager
def stop_on_signals(stop_event: threading.Event):
    """
    Set stop_event on SIGINT / SIGTERM while the block runs

    The first signal asks the run to wind down (unfinished tests are reported
    as timeouts and the summary is still saved); a second one interrupts.
    Handlers are only installed from the main thread.
    """
    def handler(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        print(f"\n=== {signal.Signals(signum).name} received, stopping the run ===\n")
        stop_event.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    try:
        yield stop_event
    finally:
        for sig, old_handler in previous.items():
            signal.signal(sig, old_handler)


def _print_progress(result: RawResult, completed: int, total: int) -> None:
    status = "PASS" if result.passed else "FAIL"
    flags = []
    if result.cached:
        flags.append("cached")
    if result.fallback_used:
        flags.append("fallback")
    suffix = f" ({', '.join(flags)})" if flags else ""
    print(f"[{completed}/{total}] {status} {result.suite}/{result.test} | {result.model_used} | {result.duration_ms}ms{suffix}")
    if not result.passed:
        print(f"    {result.error_category}: {result.error}")
        for detail in result.details:
            print(f"    - {detail}")


def print_summary(run_report: RunReport) -> None:
    report = run_report.report
    s = report.summary

    print("\n=== Summary ===\n")
    print(f"  Total:        {s.total}")
    print(f"  Passed:       {s.passed}")
    print(f"  Failed:       {s.failed}")
    print(f"  Cached:       {s.cached}")
    print(f"  Success rate: {s.success_rate:.1f}%")
    print(f"  Duration:     {s.total_duration_ms}ms (avg {s.average_duration_ms:.0f}ms)")
    print(f"  Cost:         ${s.total_cost_usd:.6f} (avg ${s.average_cost_usd:.6f})")
    print(f"  Tokens:       {s.total_tokens}")
    if run_report.budget_limit_usd is not None:
        print(f"  Budget:       ${run_report.budget_spent_usd:.6f} of ${run_report.budget_limit_usd:.6f}")
    print()

    print("=== Duration Distribution ===\n")
    for bucket, count in report.duration_distribution.items():
        print(f"  {bucket:<8} {count:>5}")
    if report.slowest_test is not None:
        print(f"\n  Slowest: {report.slowest_test.suite}/{report.slowest_test.test} ({report.slowest_test.duration_ms}ms)")
        print(f"  Fastest: {report.fastest_test.suite}/{report.fastest_test.test} ({report.fastest_test.duration_ms}ms)")
    print()

    if report.model_usage:
        print("=== Models ===\n")
        print(f"  {'Model':<40} {'Tests':>6} {'Cost (USD)':>12}")
        print(f"  {'-'*40} {'-'*6} {'-'*12}")
        for model, count in report.model_usage.items():
            print(f"  {model:<40} {count:>6} {report.cost_by_model.get(model, 0.0):>12.6f}")
        print(f"\n  Fallbacks: {report.fallback_count} ({report.fallback_rate:.1%})")
        print()

    if s.failed:
        print("=== Failures ===\n")
        for category, count in report.failures_by_category.items():
            if count:
                print(f"  {category:<22} {count:>5}")
        print()
        for suite, count in report.failures_by_suite.items():
            print(f"  {suite:<22} {count:>5}")
        print()

    open_circuits = {k: v for k, v in run_report.circuits.items() if v.status.value != "CLOSED"}
    if open_circuits:
        print("=== Circuits (WARNING) ===\n")
        for backend, state in open_circuits.items():
            print(f"  {backend}: {state.status.value} ({state.consecutive_failures} consecutive failures)")
        print()


def save_outputs(run_report: RunReport, output_dir: Path, run_id: str) -> tuple[Path, Path]:
    """Save raw results (CSV) and the summary (JSON)"""
    output_dir.mkdir(parents=True, exist_ok=True)
    raw_path = output_dir / f"raw_results_{run_id}.csv"
    summary_path = output_dir / f"summary_{run_id}.json"

    results_to_frame(run_report.results).to_csv(raw_path, index=False)
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump({"run_id": run_id, **report_to_dict(run_report)}, f, indent=2, ensure_ascii=False)

    return raw_path, summary_path


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = apply_overrides(load_config(), args)
        config.validate()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 2

    make_client = partial(create_client, config=config)
    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")

    # Load test pack
    print(f"\n=== Loading test pack: {args.tests} ===\n")
    try:
        pack = load_test_pack(args.tests)
        validate_specs(pack.specs)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"ERROR: {e}")
        return 2

    default_model = config.execution.default_model
    models = list(dict.fromkeys(spec.model or default_model for spec in pack.specs))
    projection = estimate_suite_cost(pack.specs, default_model)
    print(f"  Pack: {pack.pack_id}")
    print(f"  Suites: {len(pack.suites)}")
    print(f"  Tests: {len(pack.specs)}")
    print(f"  Models: {models}")
    print(f"  Workers: {config.execution.max_workers}")
    print(f"  Projected cost: ${projection['estimated_total_cost']:.6f}")
    print(f"  Run ID: {run_id}")
    print()

    if args.health_check:
        breakers = CircuitBreakerRegistry.from_config(config.circuit_breaker)
        available_models, _ = run_health_check(models, make_client, breakers)
        return 0 if len(available_models) == len(models) else 1

    # Response cache
    cache = None
    if config.cache.enabled:
        cache = ResponseCache.from_config(config.cache)
        if args.clear_cache:
            cache.clear()
            print("=== Cache cleared ===\n")

    print(f"=== Running Tests ({len(pack.specs)} total) ===\n")
    try:
        with stop_on_signals(threading.Event()) as stop_event:
            run_report = execute_run(
                pack.specs,
                config,
                client_factory=create_client,
                cache=cache,
                stop_event=stop_event,
                on_result=_print_progress,
            )
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 2

    print_summary(run_report)

    if cache is not None:
        stats = cache.stats()
        print("=== Cache ===\n")
        print(f"  Hits: {stats.hits} | Misses: {stats.misses} | Hit rate: {stats.hit_rate:.1f}%")
        print(f"  Entries: {stats.entry_count} | Size: {stats.total_size} bytes")
        print()

    raw_path, summary_path = save_outputs(run_report, Path(args.output_dir), run_id)
    print("=== Output ===\n")
    print(f"  Raw results: {raw_path}")
    print(f"  Summary:     {summary_path}")
    print()

    return 1 if run_report.report.summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
