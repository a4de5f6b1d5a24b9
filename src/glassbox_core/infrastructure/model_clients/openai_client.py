"""
OpenAI and LMStudio (OpenAI-compatible API) model clients
"""

import os

import openai
from openai import OpenAI

from glassbox_core.domain.errors import (
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    BackendUnavailableError,
    RateLimitedError,
)
from glassbox_core.infrastructure.model_clients.base import ModelClient


class OpenAIClient(ModelClient):
    """Client using the OpenAI chat completions API"""

    provider = "openai"

    def __init__(
        self,
        model_name: str,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ):
        """
        Args:
            model_name: Model name (e.g. gpt-4o-mini)
            base_url: API endpoint (SDK default when not specified)
            api_key: API key (falls back to OPENAI_API_KEY if not specified)
            timeout_seconds: Default per-call timeout
        """
        self.model_name = model_name
        self.api_model_name = model_name
        self.timeout_seconds = timeout_seconds

        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY is not set")

        self.base_url = base_url
        # SDK-level retries are disabled; the scheduler owns the retry policy
        self.client = OpenAI(base_url=base_url, api_key=api_key, max_retries=0)

    def _generate(self, prompt, *, max_tokens, temperature, timeout_seconds):
        response = self.client.chat.completions.create(
            model=self.api_model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout_seconds or self.timeout_seconds,
        )
        output = (response.choices[0].message.content or "").strip()

        # Retrieve token usage
        input_tokens = 0
        output_tokens = 0
        if response.usage:
            input_tokens = response.usage.prompt_tokens or 0
            output_tokens = response.usage.completion_tokens or 0
        return output, input_tokens, output_tokens

    def translate_error(self, error: Exception) -> BackendError | None:
        # APITimeoutError subclasses APIConnectionError, so it is checked first
        if isinstance(error, openai.APITimeoutError):
            return BackendTimeoutError(str(error), model_name=self.model_name)
        if isinstance(error, openai.APIConnectionError):
            return BackendNetworkError(str(error), model_name=self.model_name)
        if isinstance(error, openai.RateLimitError):
            return RateLimitedError(str(error), model_name=self.model_name)
        if isinstance(error, openai.APIStatusError):
            if error.status_code >= 500:
                return BackendNetworkError(str(error), model_name=self.model_name)
            return BackendUnavailableError(str(error), model_name=self.model_name)
        return None


class LMStudioClient(OpenAIClient):
    """Client using LMStudio (OpenAI-compatible API)"""

    provider = "lmstudio"

    def __init__(
        self,
        model_name: str,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ):
        """
        Args:
            model_name: Model name (e.g. lmstudio/qwen2.5-7b)
            base_url: LMStudio API endpoint (falls back to LMSTUDIO_BASE_URL env var if not specified)
            api_key: API key (falls back to LMSTUDIO_API_KEY env var if not specified; usually not required for LMStudio)
            timeout_seconds: Default per-call timeout
        """
        # Configuration priority: argument > environment variable > default value
        base_url = base_url or os.environ.get("LMSTUDIO_BASE_URL", "http://localhost:1234/v1")
        api_key = api_key or os.environ.get("LMSTUDIO_API_KEY", "lm-studio")
        super().__init__(model_name, base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)
        # Strip the lmstudio/ prefix to get the model name for the API
        self.api_model_name = model_name.removeprefix("lmstudio/")
