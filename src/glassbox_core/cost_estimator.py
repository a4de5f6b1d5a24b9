"""
Cost Estimation

Estimates token counts from text length and prices calls with the static
per-model pricing table. No tokenizer dependency and no state: identical
inputs always give identical estimates.
"""

import math
from typing import Iterable

from glassbox_core.domain.constants import (
    CHARS_PER_TOKEN,
    DEFAULT_CHARS_PER_TOKEN,
    DEFAULT_PRICING,
    LOCAL_MODEL_PREFIXES,
    MODEL_PRICING,
    _LOCAL_MODEL_PRICING,
)
from glassbox_core.domain.entities import TestSpec
from glassbox_core.domain.value_objects import CostEstimate

# Projected response length relative to the prompt
_PROJECTED_RESPONSE_RATIO = 2

_COST_DECIMALS = 8


def chars_per_token(model_name: str) -> float:
    """Characters-per-token ratio for the model's family"""
    name = model_name.lower()
    for prefix, ratio in CHARS_PER_TOKEN.items():
        if name.startswith(prefix):
            return ratio
    return DEFAULT_CHARS_PER_TOKEN


def estimate_tokens(text: str, model_name: str) -> int:
    """
    Estimate the token count of a text

    Uses the higher of the character-based and word-based estimates.

    Args:
        text: Text to measure
        model_name: Model identifier (selects the family heuristic)

    Returns:
        Estimated token count (0 for empty text)
    """
    if not text or not text.strip():
        return 0
    char_estimate = math.ceil(len(text) / chars_per_token(model_name))
    word_estimate = len(text.split())
    return max(char_estimate, word_estimate)


def get_model_pricing(model_name: str) -> dict[str, float]:
    """
    Look up pricing (USD per 1M tokens) for a model

    Lookup order: exact id, local model prefix, longest known id contained in
    the name (dated variants), then the default tier.

    Args:
        model_name: Model identifier

    Returns:
        {"input": float, "output": float}
    """
    name = model_name.lower()
    if name in MODEL_PRICING:
        return MODEL_PRICING[name]
    if name.startswith(LOCAL_MODEL_PREFIXES):
        return _LOCAL_MODEL_PRICING

    matches = [known for known in MODEL_PRICING if known in name]
    if matches:
        return MODEL_PRICING[max(matches, key=len)]
    return DEFAULT_PRICING


def _price(tokens: int, price_per_m: float) -> float:
    return round(tokens / 1_000_000 * price_per_m, _COST_DECIMALS)


def estimate_cost(prompt: str, response: str, model_name: str) -> CostEstimate:
    """
    Estimate tokens and cost of a completed call

    Args:
        prompt: Prompt text sent to the model
        response: Response text received
        model_name: Model identifier

    Returns:
        CostEstimate
    """
    pricing = get_model_pricing(model_name)
    prompt_tokens = estimate_tokens(prompt, model_name)
    response_tokens = estimate_tokens(response, model_name)
    return CostEstimate(
        prompt_tokens=prompt_tokens,
        response_tokens=response_tokens,
        input_cost=_price(prompt_tokens, pricing["input"]),
        output_cost=_price(response_tokens, pricing["output"]),
    )


def project_cost(prompt: str, model_name: str, max_tokens: int | None = None) -> CostEstimate:
    """
    Project the cost of a call before it is made

    The response is assumed to be twice the prompt length, capped at max_tokens.

    Args:
        prompt: Prompt text
        model_name: Model identifier
        max_tokens: Response token limit of the call

    Returns:
        CostEstimate for the projected call
    """
    pricing = get_model_pricing(model_name)
    prompt_tokens = estimate_tokens(prompt, model_name)
    response_tokens = prompt_tokens * _PROJECTED_RESPONSE_RATIO
    if max_tokens is not None:
        response_tokens = min(response_tokens, max_tokens)
    return CostEstimate(
        prompt_tokens=prompt_tokens,
        response_tokens=response_tokens,
        input_cost=_price(prompt_tokens, pricing["input"]),
        output_cost=_price(response_tokens, pricing["output"]),
    )


def estimate_suite_cost(specs: Iterable[TestSpec], default_model: str) -> dict:
    """
    Project the total cost of a list of tests

    Args:
        specs: Test specifications
        default_model: Model used by specs without an override

    Returns:
        {
            "test_count": int,
            "estimated_total_cost": float,
            "estimated_total_tokens": int,
            "average_cost_per_test": float,
        }
    """
    costs = []
    tokens = 0
    for spec in specs:
        projected = project_cost(spec.prompt, spec.model or default_model, spec.max_tokens)
        costs.append(projected.total_cost)
        tokens += projected.total_tokens

    total = round(math.fsum(costs), _COST_DECIMALS)
    return {
        "test_count": len(costs),
        "estimated_total_cost": total,
        "estimated_total_tokens": tokens,
        "average_cost_per_test": round(total / len(costs), _COST_DECIMALS) if costs else 0.0,
    }
