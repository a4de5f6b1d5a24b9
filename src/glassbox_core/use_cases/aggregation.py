"""
Result Aggregation

Folds the full RawResult sequence into summary statistics. Rows are put in a
canonical order before any reduction, so the report does not depend on the
order in which workers finished.
"""

import math
from dataclasses import asdict
from typing import Iterable

import pandas as pd

from glassbox_core.domain.constants import (
    CATEGORY_UNKNOWN,
    DURATION_BUCKETS,
    FAILURE_CATEGORIES,
    FAST_DURATION_MS,
    NO_MODEL,
    SLOW_DURATION_MS,
)
from glassbox_core.domain.entities import (
    AggregatedReport,
    CircuitState,
    RawResult,
    ReportSummary,
    RunReport,
    TestRef,
)

_COST_DECIMALS = 8

RESULT_COLUMNS = [
    "suite",
    "test",
    "passed",
    "duration_ms",
    "cost_usd",
    "tokens",
    "model_used",
    "fallback_used",
    "cached",
    "attempts",
    "error",
    "error_category",
    "details",
    "response",
]

_SORT_KEYS = ["suite", "test", "model_used", "duration_ms", "cost_usd", "tokens", "attempts"]


def results_to_frame(results: Iterable[RawResult]) -> pd.DataFrame:
    """
    Flatten RawResults into a DataFrame (one row per result)

    details is joined into a single "; "-separated string for CSV output.
    """
    rows = []
    for r in results:
        row = asdict(r)
        row["details"] = "; ".join(r.details)
        rows.append(row)
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def _canonical(df: pd.DataFrame) -> pd.DataFrame:
    return df.sort_values(_SORT_KEYS, kind="mergesort").reset_index(drop=True)


def _fsum(values) -> float:
    return round(math.fsum(values), _COST_DECIMALS)


def _test_ref(row: pd.Series) -> TestRef:
    return TestRef(
        suite=row["suite"],
        test=row["test"],
        duration_ms=int(row["duration_ms"]),
        model_used=row["model_used"],
    )


def _failure_category(category) -> str:
    """Map a result's error category onto the reported taxonomy (internal -> unknown)"""
    if isinstance(category, str) and category in FAILURE_CATEGORIES:
        return category
    return CATEGORY_UNKNOWN


def aggregate_results(results: Iterable[RawResult]) -> AggregatedReport:
    """
    Aggregate raw results into a report

    Duration buckets: fast < 5s <= medium < 15s <= slow. Ties for the slowest
    and fastest test are broken by (suite, test).

    Args:
        results: Raw results of a run

    Returns:
        AggregatedReport
    """
    results = list(results)
    if not results:
        return AggregatedReport(
            duration_distribution={bucket: 0 for bucket in DURATION_BUCKETS},
            failures_by_category={category: 0 for category in FAILURE_CATEGORIES},
        )

    df = _canonical(results_to_frame(results))
    total = len(df)
    passed = int(df["passed"].sum())
    total_duration = int(df["duration_ms"].sum())
    total_cost = _fsum(df["cost_usd"].tolist())

    summary = ReportSummary(
        total=total,
        passed=passed,
        failed=total - passed,
        cached=int(df["cached"].sum()),
        success_rate=passed / total * 100,
        total_duration_ms=total_duration,
        average_duration_ms=total_duration / total,
        total_cost_usd=total_cost,
        average_cost_usd=round(total_cost / total, _COST_DECIMALS),
        total_tokens=int(df["tokens"].sum()),
    )

    # Duration distribution (left-closed bins)
    buckets = pd.cut(
        df["duration_ms"],
        bins=[-math.inf, FAST_DURATION_MS, SLOW_DURATION_MS, math.inf],
        labels=list(DURATION_BUCKETS),
        right=False,
    )
    bucket_counts = buckets.value_counts().reindex(list(DURATION_BUCKETS), fill_value=0)
    duration_distribution = {bucket: int(bucket_counts[bucket]) for bucket in DURATION_BUCKETS}

    # Extremal tests
    slowest = df.sort_values(
        ["duration_ms", "suite", "test"], ascending=[False, True, True], kind="mergesort"
    ).iloc[0]
    fastest = df.sort_values(
        ["duration_ms", "suite", "test"], ascending=[True, True, True], kind="mergesort"
    ).iloc[0]

    # Per-model usage and cost (results that never reached a model are left out)
    reached = df[df["model_used"] != NO_MODEL]
    model_usage = {
        model: int(count)
        for model, count in sorted(reached["model_used"].value_counts().items())
    }
    cost_by_model = {
        model: _fsum(group["cost_usd"].tolist())
        for model, group in reached.groupby("model_used", sort=True)
    }

    fallback_count = int(df["fallback_used"].sum())

    # Failures by category and suite
    failed = df[~df["passed"].astype(bool)]
    failures_by_category = {category: 0 for category in FAILURE_CATEGORIES}
    for category in failed["error_category"].tolist():
        failures_by_category[_failure_category(category)] += 1
    failures_by_suite = {
        suite: int(count)
        for suite, count in sorted(failed["suite"].value_counts().items())
    }

    return AggregatedReport(
        summary=summary,
        duration_distribution=duration_distribution,
        slowest_test=_test_ref(slowest),
        fastest_test=_test_ref(fastest),
        model_usage=model_usage,
        cost_by_model=cost_by_model,
        fallback_count=fallback_count,
        fallback_rate=fallback_count / total,
        failures_by_category=failures_by_category,
        failures_by_suite=failures_by_suite,
    )


def build_run_report(
    results: Iterable[RawResult],
    budget_spent_usd: float = 0.0,
    budget_limit_usd: float | None = None,
    circuits: dict[str, CircuitState] | None = None,
) -> RunReport:
    """Wrap the aggregate, the raw results and run-level state into a RunReport"""
    results = list(results)
    return RunReport(
        report=aggregate_results(results),
        results=results,
        budget_spent_usd=budget_spent_usd,
        budget_limit_usd=budget_limit_usd,
        circuits=dict(circuits or {}),
    )


def report_to_dict(run_report: RunReport) -> dict:
    """JSON-serializable form of a RunReport (without the raw results)"""
    report = asdict(run_report.report)
    report["budget"] = {
        "spent_usd": run_report.budget_spent_usd,
        "limit_usd": run_report.budget_limit_usd,
    }
    report["circuits"] = {
        backend: {**asdict(state), "status": state.status.value}
        for backend, state in sorted(run_report.circuits.items())
    }
    return report
