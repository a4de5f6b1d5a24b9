"""
Offline echo model client

Returns the prompt as the response without any network access. Used for
dry runs of a test pack and for exercising the scheduler locally.
"""

from glassbox_core.infrastructure.model_clients.base import ModelClient


class EchoClient(ModelClient):
    """Client that answers every prompt with the prompt itself"""

    provider = "echo"

    def __init__(self, model_name: str = "echo/default", timeout_seconds: float = 30.0):
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds

    def _generate(self, prompt, *, max_tokens, temperature, timeout_seconds):
        words = prompt.split()
        # Truncate at max_tokens words, one word standing in for one token
        output = " ".join(words[:max_tokens])
        return output, len(words), min(len(words), max_tokens)
