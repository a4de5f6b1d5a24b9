"""
Model client base class

Defines the abstract base class inherited by all model clients. Subclasses
implement one raw SDK call and a translation of their SDK's exceptions into
the backend error taxonomy; retries and fallback live in the scheduler.
"""

import time
from abc import ABC, abstractmethod

from glassbox_core.domain.errors import BackendError
from glassbox_core.domain.value_objects import ModelResponse


class ModelClient(ABC):
    """Abstract base class for model clients"""

    provider: str = "unknown"
    model_name: str

    def generate(
        self,
        prompt: str,
        *,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        timeout_seconds: float | None = None,
    ) -> ModelResponse:
        """
        Send a prompt and retrieve the response

        Args:
            prompt: Input prompt
            max_tokens: Response token limit
            temperature: Sampling temperature
            timeout_seconds: Per-call timeout (client default when None)

        Returns:
            ModelResponse: The model's response

        Raises:
            BackendTimeoutError, BackendNetworkError, RateLimitedError,
            BackendUnavailableError: Translated SDK failures
        """
        start_time = time.time()
        try:
            output, input_tokens, output_tokens = self._generate(
                prompt,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout_seconds=timeout_seconds,
            )
        except BackendError:
            raise
        except Exception as e:
            translated = self.translate_error(e)
            if translated is None:
                raise
            raise translated from e

        latency_ms = int((time.time() - start_time) * 1000)
        return ModelResponse(
            output=output,
            latency_ms=latency_ms,
            model_name=self.model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @abstractmethod
    def _generate(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        timeout_seconds: float | None,
    ) -> tuple[str, int, int]:
        """Make the raw call; returns (output text, input tokens, output tokens)"""
        pass

    def translate_error(self, error: Exception) -> BackendError | None:
        """Map an SDK exception to a BackendError (None leaves it untranslated)"""
        return None
