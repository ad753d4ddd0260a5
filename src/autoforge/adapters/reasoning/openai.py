"""OpenAI chat-completions reasoning adapter."""

from __future__ import annotations

import openai
import structlog

from autoforge.config.schema import OpenAIConfig
from autoforge.utils.async_helpers import (
    RateLimitError,
    ReasoningError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
)
from autoforge.utils.security import SecretRedactor

from .base import ReasoningAdapter

log = structlog.get_logger()


class OpenAIReasoningProvider(ReasoningAdapter):
    """GPT models via the Chat Completions API."""

    provider = "openai"

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        max_retries: int = 3,
        redactor: SecretRedactor | None = None,
    ) -> None:
        super().__init__(config.model, redactor, max_retries=max_retries)
        self._config = config
        self._client = openai.AsyncOpenAI(
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=0,
        )

    async def _request(self, prompt: str, system: str | None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=messages,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
        except openai.RateLimitError as e:
            log.warning("openai_rate_limit", error=str(e))
            raise RateLimitError(f"OpenAI rate limit exceeded: {e}") from e
        except openai.APITimeoutError as e:
            log.error("openai_timeout", error=str(e))
            raise ReasoningTimeoutError(f"OpenAI request timed out: {e}") from e
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            log.error("openai_unavailable", error=str(e))
            raise ReasoningUnavailableError(f"OpenAI API error: {e}") from e
        except openai.APIError as e:
            log.error("openai_api_error", error=str(e))
            raise ReasoningError(f"OpenAI API error: {e}") from e

        if not response.choices:
            raise ReasoningError("OpenAI returned no choices")
        return response.choices[0].message.content or ""
