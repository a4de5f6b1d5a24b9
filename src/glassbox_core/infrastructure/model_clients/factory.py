"""
Model client factory

Creates the appropriate client instance based on the model name.
"""

from __future__ import annotations

from glassbox_core.harness_config import HarnessConfig, load_config
from glassbox_core.infrastructure.model_clients.base import ModelClient
from glassbox_core.infrastructure.model_clients.claude import ClaudeClient
from glassbox_core.infrastructure.model_clients.echo import EchoClient
from glassbox_core.infrastructure.model_clients.openai_client import LMStudioClient, OpenAIClient
from glassbox_core.infrastructure.model_clients.vertex_ai import VertexAIClient

_OPENAI_PREFIXES = ("gpt", "o1", "o3")


def provider_for(model_name: str) -> str:
    """
    Name the provider that serves a model

    Args:
        model_name: Model name

    Returns:
        Provider name (anthropic, openai, lmstudio, echo or vertex_ai)
    """
    if model_name.startswith("lmstudio/"):
        return LMStudioClient.provider
    if model_name.startswith("echo/"):
        return EchoClient.provider
    if model_name.startswith("claude"):
        return ClaudeClient.provider
    if model_name.startswith(_OPENAI_PREFIXES):
        return OpenAIClient.provider
    return VertexAIClient.provider


def create_client(model_name: str, config: HarnessConfig | None = None) -> ModelClient:
    """
    Create the appropriate client based on the model name

    Args:
        model_name: Model name
        config: HarnessConfig (loads from env if not provided)

    Returns:
        ModelClient: The appropriate client instance
    """
    if config is None:
        config = load_config()

    timeout = config.execution.timeout_seconds
    provider = provider_for(model_name)

    if provider == LMStudioClient.provider:
        return LMStudioClient(
            model_name,
            base_url=config.lmstudio.base_url,
            api_key=config.lmstudio.api_key,
            timeout_seconds=timeout,
        )
    elif provider == EchoClient.provider:
        return EchoClient(model_name, timeout_seconds=timeout)
    elif provider == ClaudeClient.provider:
        return ClaudeClient(model_name, timeout_seconds=timeout)
    elif provider == OpenAIClient.provider:
        return OpenAIClient(model_name, timeout_seconds=timeout)
    else:
        return VertexAIClient(model_name, timeout_seconds=timeout)
