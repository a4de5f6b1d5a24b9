"""
Scoring sub-package

Provides expectation checks and PII detection for model responses.
"""

from glassbox_core.domain.value_objects import ExpectationResult
from glassbox_core.scoring.expectations import evaluate_expectations, normalize_text
from glassbox_core.scoring.pii import PII_TYPES, PiiMatch, detect_pii, luhn_valid, mask_value

__all__ = [
    # value objects (re-exported from domain)
    "ExpectationResult",
    # checks
    "evaluate_expectations",
    "normalize_text",
    # pii
    "PII_TYPES",
    "PiiMatch",
    "detect_pii",
    "luhn_valid",
    "mask_value",
]
