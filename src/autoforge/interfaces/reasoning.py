"""Abstract interface for reasoning-service integrations."""

from typing import Protocol


class ReasoningProvider(Protocol):
    """Contract the fix synthesizer needs from a reasoning service.

    Prompt text goes in; raw response text comes out. Parsing and validating
    the structured fix is the caller's job, so providers stay interchangeable
    (OpenAI, Anthropic, a self-hosted model server).
    """

    @property
    def model_name(self) -> str:
        """Identifier of the model answering requests."""
        ...

    async def complete(self, prompt: str, *, system: str | None = None) -> str:
        """
        Send a prompt and return the response text.

        Security: the prompt MUST already be redacted with SecretRedactor.

        Args:
            prompt: User prompt, including the error and file context
            system: Optional system instructions

        Returns:
            The model's response text

        Raises:
            ReasoningError: If the request fails
            RateLimitError: If the provider rate limit is exceeded
            ReasoningTimeoutError: If the request times out
        """
        ...
