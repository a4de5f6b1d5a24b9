"""
Test Pack Loader

Loads test specifications from a JSON test pack.

Format:
    {
        "pack_id": "smoke",
        "suites": [
            {
                "name": "greetings",
                "settings": {"model": "claude-haiku-4-5-20251001", "max_tokens": 256},
                "tests": [
                    {
                        "name": "say-hello",
                        "prompt": "Say hello.",
                        "expect": {"contains": ["hello"], "not_contains": ["goodbye"], "block_pii": true}
                    }
                ]
            }
        ]
    }

Suite settings apply to every test of the suite unless the test sets the
same key itself.
"""

import json
from dataclasses import dataclass
from pathlib import Path

from glassbox_core.domain.entities import TestSpec
from glassbox_core.domain.errors import ConfigurationError
from glassbox_core.scoring.pii import PII_TYPES

# Per-test settings that a suite can provide as defaults
SETTING_FIELDS = ("model", "max_tokens", "temperature", "timeout_seconds", "max_retries", "max_cost_usd")


@dataclass
class TestPack:
    """Test pack definition"""
    __test__ = False

    pack_id: str
    specs: list[TestSpec]

    @property
    def suites(self) -> list[str]:
        return list(dict.fromkeys(spec.suite for spec in self.specs))


def _require(data: dict, key: str, where: str):
    if not isinstance(data, dict) or key not in data:
        raise ConfigurationError(where, f"Required field '{key}' is missing")
    return data[key]


def _as_tuple(value, where: str) -> tuple[str, ...]:
    """Accept a single string or a list of strings"""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ConfigurationError(where, "must be a string or a list of strings")


def _as_pii_types(value, where: str) -> tuple[str, ...]:
    """true blocks every PII type; a list names the types to block"""
    if value is None or value is False:
        return ()
    if value is True:
        return PII_TYPES
    types = _as_tuple(value, where)
    unknown = sorted(set(types) - set(PII_TYPES))
    if unknown:
        raise ConfigurationError(where, f"Unknown PII types {unknown}, expected some of {list(PII_TYPES)}")
    return types


def _parse_test(suite_name: str, settings: dict, data: dict, index: int) -> TestSpec:
    """
    Create a TestSpec from dictionary data

    Args:
        suite_name: Name of the enclosing suite
        settings: Suite-level defaults
        data: Test data dictionary
        index: Position of the test within its suite (for error messages)

    Returns:
        TestSpec
    """
    where = f"suites.{suite_name}.tests[{index}]"
    name = _require(data, "name", where)
    prompt = _require(data, "prompt", where)
    if not isinstance(prompt, str):
        raise ConfigurationError(f"{where}.prompt", "must be a string")

    expect = data.get("expect") or {}
    if not isinstance(expect, dict):
        raise ConfigurationError(f"{where}.expect", "must be an object")

    # Test-level values override suite settings
    overrides = {key: data.get(key, settings.get(key)) for key in SETTING_FIELDS}
    overrides = {key: value for key, value in overrides.items() if value is not None}

    try:
        return TestSpec(
            suite=suite_name,
            name=str(name),
            prompt=prompt,
            contains=_as_tuple(expect.get("contains"), f"{where}.expect.contains"),
            not_contains=_as_tuple(expect.get("not_contains"), f"{where}.expect.not_contains"),
            block_pii=_as_pii_types(expect.get("block_pii"), f"{where}.expect.block_pii"),
            **overrides,
        )
    except TypeError as e:
        raise ConfigurationError(where, str(e)) from e


def parse_test_pack(data: dict, source: str = "<memory>") -> TestPack:
    """
    Create a TestPack from already-decoded JSON data

    Raises:
        ConfigurationError: If a required field is missing or malformed
    """
    pack_id = _require(data, "pack_id", source)
    suites = _require(data, "suites", source)
    if not isinstance(suites, list):
        raise ConfigurationError(f"{source}.suites", "must be a list")

    specs: list[TestSpec] = []
    for i, suite in enumerate(suites):
        suite_name = _require(suite, "name", f"suites[{i}]")
        settings = suite.get("settings") or {}
        unknown = set(settings) - set(SETTING_FIELDS)
        if unknown:
            raise ConfigurationError(f"suites.{suite_name}.settings", f"Unknown settings: {sorted(unknown)}")
        tests = _require(suite, "tests", f"suites.{suite_name}")
        specs.extend(_parse_test(suite_name, settings, t, j) for j, t in enumerate(tests))

    return TestPack(pack_id=pack_id, specs=specs)


def load_test_pack(file_path: str | Path) -> TestPack:
    """
    Load a JSON test pack

    Args:
        file_path: Path to the test pack JSON file

    Returns:
        TestPack: Test pack object

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the file is not valid JSON or a required field is missing
    """
    with open(file_path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(str(file_path), f"Invalid JSON: {e}") from e

    return parse_test_pack(data, source=str(file_path))


def load_specs(file_path: str | Path) -> list[TestSpec]:
    """Get only the spec list from a test pack"""
    return load_test_pack(file_path).specs
