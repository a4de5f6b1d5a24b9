"""
Model client package

Provides a unified interface to each LLM provider.
"""

from glassbox_core.infrastructure.model_clients.base import ModelClient
from glassbox_core.infrastructure.model_clients.factory import create_client, provider_for
from glassbox_core.domain.value_objects import ModelResponse

__all__ = ["ModelClient", "ModelResponse", "create_client", "provider_for"]
