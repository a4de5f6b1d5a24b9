"""
Expectation checks

Evaluates a model response against the contains / not_contains rules of a
test and, when asked, checks it for PII. Text matching is case-insensitive
and Unicode-normalized.
"""

from __future__ import annotations

import unicodedata
from typing import Iterable

from glassbox_core.domain.value_objects import ExpectationResult
from glassbox_core.scoring.pii import detect_pii


def normalize_text(text: str) -> str:
    """
    Normalize text for containment checks

    - Unicode normalization (NFKC)
    - Case folding
    - Collapse consecutive whitespace to a single space

    Args:
        text: Text to normalize

    Returns:
        Normalized text
    """
    text = unicodedata.normalize("NFKC", text)
    text = text.casefold()
    return " ".join(text.split())


def evaluate_expectations(
    response: str,
    contains: Iterable[str] = (),
    not_contains: Iterable[str] = (),
    block_pii: Iterable[str] = (),
) -> ExpectationResult:
    """
    Check a response against required and forbidden substrings

    Every rule is evaluated so that all failures are reported, not just
    the first one.

    Args:
        response: Model response text
        contains: Substrings that must appear
        not_contains: Substrings that must not appear
        block_pii: PII types that must not appear (see scoring.pii.PII_TYPES)

    Returns:
        ExpectationResult: passed flag and one detail line per failed rule
    """
    haystack = normalize_text(response)
    details: list[str] = []

    for expected in contains:
        if normalize_text(expected) not in haystack:
            details.append(f"Missing required text: '{expected}'")

    for forbidden in not_contains:
        needle = normalize_text(forbidden)
        # An empty forbidden string would match everything; skip it
        if needle and needle in haystack:
            details.append(f"Contains forbidden text: '{forbidden}'")

    block_pii = tuple(block_pii)
    if block_pii:
        found = detect_pii(response, block_pii)
        if found:
            listed = ", ".join(f"{m.pii_type} ({m.masked})" for m in found)
            details.append(f"PII detected: {listed}")

    return ExpectationResult(passed=not details, details=tuple(details))
