"""
Vertex AI (Google GenAI SDK) model client
"""

import os

from google import genai
from google.api_core import exceptions as google_exceptions
from google.genai import errors as genai_errors
from google.genai.types import GenerateContentConfig, HttpOptions

from glassbox_core.domain.errors import (
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    BackendUnavailableError,
    RateLimitedError,
)
from glassbox_core.infrastructure.model_clients.base import ModelClient


class VertexAIClient(ModelClient):
    """Model client using Google GenAI SDK (via Vertex AI)"""

    provider = "vertex_ai"

    def __init__(
        self,
        model_name: str,
        project_id: str | None = None,
        location: str | None = None,
        timeout_seconds: float = 30.0,
    ):
        """
        Args:
            model_name: Model name (e.g. gemini-2.5-pro, gemini-2.5-flash)
            project_id: GCP project ID (falls back to environment variable if not specified)
            location: Region (defaults to "global")
            timeout_seconds: Timeout in seconds (default: 30)
        """
        self.model_name = model_name
        self.project_id = project_id or os.environ.get("GCP_PROJECT_ID")
        self.location = location or "global"
        self.timeout_seconds = timeout_seconds

        if not self.project_id:
            raise ValueError("GCP_PROJECT_ID is not set")

        # Timeout is configured via HttpOptions (milliseconds)
        self.client = genai.Client(
            vertexai=True,
            project=self.project_id,
            location=self.location,
            http_options=HttpOptions(timeout=int(timeout_seconds * 1000)),
        )

    def _generate(self, prompt, *, max_tokens, temperature, timeout_seconds):
        config = GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            http_options=HttpOptions(timeout=int(timeout_seconds * 1000)) if timeout_seconds else None,
        )

        response = self.client.models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=config,
        )

        # Retrieve token usage
        input_tokens = 0
        output_tokens = 0
        if getattr(response, "usage_metadata", None):
            input_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
            output_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0
        return (response.text or "").strip(), input_tokens, output_tokens

    def translate_error(self, error: Exception) -> BackendError | None:
        if isinstance(error, google_exceptions.DeadlineExceeded):
            return BackendTimeoutError(str(error), model_name=self.model_name)
        if isinstance(error, google_exceptions.ResourceExhausted):
            return RateLimitedError(str(error), model_name=self.model_name)
        if isinstance(error, google_exceptions.ServiceUnavailable):
            return BackendNetworkError(str(error), model_name=self.model_name)
        if isinstance(error, genai_errors.ClientError):
            if error.code == 429:
                return RateLimitedError(str(error), model_name=self.model_name)
            if error.code == 408:
                return BackendTimeoutError(str(error), model_name=self.model_name)
            return BackendUnavailableError(str(error), model_name=self.model_name)
        if isinstance(error, genai_errors.ServerError):
            return BackendNetworkError(str(error), model_name=self.model_name)
        return None
