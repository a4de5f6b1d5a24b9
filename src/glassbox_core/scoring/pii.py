"""
PII detection

Finds personally identifiable information in model responses: US social
security numbers, email addresses, phone numbers and credit card numbers.
Card candidates must pass the Luhn checksum. Matches are reported masked so
that detail lines and logs never repeat the raw value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

PII_SSN = "ssn"
PII_EMAIL = "email"
PII_PHONE = "phone"
PII_CREDIT_CARD = "credit_card"

PII_TYPES = (PII_SSN, PII_EMAIL, PII_PHONE, PII_CREDIT_CARD)

# Checked in this order; a span claimed by an earlier type is not reported again
_PATTERNS = {
    PII_CREDIT_CARD: re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),
    PII_SSN: re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    PII_EMAIL: re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    PII_PHONE: re.compile(r"(?:\(\d{3}\)\s*|\b\d{3}[-.])\d{3}[-.]\d{4}\b"),
}


@dataclass(frozen=True)
class PiiMatch:
    """One detected PII value"""
    pii_type: str
    masked: str
    start: int
    end: int


def luhn_valid(number: str) -> bool:
    """Luhn checksum over the digits of number"""
    digits = [int(c) for c in number if c.isdigit()]
    if not digits:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def mask_value(value: str, pii_type: str) -> str:
    """Hide all but a recognizable tail (or the first letter of an email)"""
    if pii_type == PII_EMAIL:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    digits = re.sub(r"\D", "", value)
    if pii_type == PII_SSN:
        return f"XXX-XX-{digits[-4:]}"
    if pii_type == PII_CREDIT_CARD:
        return f"****-****-****-{digits[-4:]}"
    return f"***-***-{digits[-4:]}"


def detect_pii(text: str, types: Iterable[str] = PII_TYPES) -> list[PiiMatch]:
    """
    Find PII in text

    Args:
        text: Text to scan
        types: PII types to look for (all by default)

    Returns:
        Matches in text order, one per distinct span

    Raises:
        ValueError: If an unknown PII type is requested
    """
    wanted = set(types)
    unknown = wanted - set(PII_TYPES)
    if unknown:
        raise ValueError(f"Unknown PII types: {sorted(unknown)}")

    matches: list[PiiMatch] = []
    claimed: list[tuple[int, int]] = []
    for pii_type, pattern in _PATTERNS.items():
        for m in pattern.finditer(text):
            if any(m.start() < end and start < m.end() for start, end in claimed):
                continue
            if pii_type == PII_CREDIT_CARD and not luhn_valid(m.group()):
                continue
            claimed.append((m.start(), m.end()))
            if pii_type in wanted:
                matches.append(PiiMatch(pii_type, mask_value(m.group(), pii_type), m.start(), m.end()))

    return sorted(matches, key=lambda match: match.start)
