"""
Use Cases Layer

Aggregates business logic and provides use cases called from the runner.
"""

from glassbox_core.use_cases.aggregation import (
    RESULT_COLUMNS,
    aggregate_results,
    build_run_report,
    report_to_dict,
    results_to_frame,
)
from glassbox_core.use_cases.execution import (
    AttemptPhase,
    AttemptPlan,
    BudgetLedger,
    ExecutionScheduler,
    execute_run,
    run_tests,
    validate_specs,
)
from glassbox_core.use_cases.health_check import (
    HEALTH_CHECK_PROMPT,
    health_check_model,
    health_check_all_models,
    run_health_check,
)

__all__ = [
    # aggregation
    "RESULT_COLUMNS",
    "aggregate_results",
    "build_run_report",
    "report_to_dict",
    "results_to_frame",
    # execution
    "AttemptPhase",
    "AttemptPlan",
    "BudgetLedger",
    "ExecutionScheduler",
    "execute_run",
    "run_tests",
    "validate_specs",
    # health_check
    "HEALTH_CHECK_PROMPT",
    "health_check_model",
    "health_check_all_models",
    "run_health_check",
]
