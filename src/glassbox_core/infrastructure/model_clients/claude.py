"""
Anthropic Claude model client
"""

import os

import anthropic
from anthropic import Anthropic

from glassbox_core.domain.errors import (
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    BackendUnavailableError,
    RateLimitedError,
)
from glassbox_core.infrastructure.model_clients.base import ModelClient


class ClaudeClient(ModelClient):
    """Claude client using the Anthropic API"""

    provider = "anthropic"

    def __init__(
        self,
        model_name: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ):
        """
        Args:
            model_name: Model name (e.g. claude-sonnet-4-5-20250929)
            api_key: Anthropic API key (falls back to environment variable if not specified)
            timeout_seconds: Default per-call timeout
        """
        self.model_name = model_name
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.timeout_seconds = timeout_seconds

        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set")

        # SDK-level retries are disabled; the scheduler owns the retry policy
        self.client = Anthropic(api_key=self.api_key, max_retries=0)

    def _generate(self, prompt, *, max_tokens, temperature, timeout_seconds):
        response = self.client.messages.create(
            model=self.model_name,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout_seconds or self.timeout_seconds,
        )
        output = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()

        # Retrieve token usage
        input_tokens = getattr(response.usage, "input_tokens", 0) or 0
        output_tokens = getattr(response.usage, "output_tokens", 0) or 0
        return output, input_tokens, output_tokens

    def translate_error(self, error: Exception) -> BackendError | None:
        # APITimeoutError subclasses APIConnectionError, so it is checked first
        if isinstance(error, anthropic.APITimeoutError):
            return BackendTimeoutError(str(error), model_name=self.model_name)
        if isinstance(error, anthropic.APIConnectionError):
            return BackendNetworkError(str(error), model_name=self.model_name)
        if isinstance(error, anthropic.RateLimitError):
            return RateLimitedError(str(error), model_name=self.model_name)
        if isinstance(error, anthropic.APIStatusError):
            if error.status_code >= 500:
                return BackendNetworkError(str(error), model_name=self.model_name)
            return BackendUnavailableError(str(error), model_name=self.model_name)
        return None
