"""
Domain Value Objects

Defines immutable data structures representing values such as model responses,
cost estimates, cache keys and backend identities.
"""

import hashlib
import json
from dataclasses import dataclass


@dataclass(frozen=True)
class ModelResponse:
    """Model response"""
    output: str
    latency_ms: int
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class CostEstimate:
    """Estimated token usage and dollar cost of one call"""
    prompt_tokens: int
    response_tokens: int
    input_cost: float = 0.0
    output_cost: float = 0.0

    def __post_init__(self):
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens must be non-negative")
        if self.response_tokens < 0:
            raise ValueError("response_tokens must be non-negative")
        if self.input_cost < 0 or self.output_cost < 0:
            raise ValueError("costs must be non-negative")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.response_tokens

    @property
    def total_cost(self) -> float:
        return round(self.input_cost + self.output_cost, 8)


@dataclass(frozen=True)
class ExpectationResult:
    """Outcome of checking a response against contains / not_contains rules"""
    passed: bool
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackendId:
    """Identity of one circuit: provider + model"""
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass(frozen=True)
class CacheKey:
    """
    Material inputs of a model call

    Two calls with equal keys are expected to produce interchangeable responses.
    """
    prompt: str
    model: str
    temperature: float = 0.0
    max_tokens: int | None = None

    @property
    def fingerprint(self) -> str:
        """SHA-256 over a canonical JSON encoding of the key (prompt taken verbatim)"""
        data = json.dumps(
            {
                "prompt": self.prompt,
                "model": self.model,
                "temperature": float(self.temperature),
                "max_tokens": self.max_tokens,
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(data.encode("utf-8")).hexdigest()
