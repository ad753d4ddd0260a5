"""Anthropic Claude reasoning adapter."""

from __future__ import annotations

import anthropic
import structlog

from autoforge.config.schema import AnthropicConfig
from autoforge.utils.async_helpers import (
    RateLimitError,
    ReasoningError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
)
from autoforge.utils.security import SecretRedactor

from .base import ReasoningAdapter

log = structlog.get_logger()


class AnthropicReasoningProvider(ReasoningAdapter):
    """Claude via the Messages API.

    Example:
        provider = AnthropicReasoningProvider(AnthropicConfig(api_key="sk-ant-..."))
        text = await provider.complete("...", system="You are ...")
    """

    provider = "anthropic"

    def __init__(
        self,
        config: AnthropicConfig,
        *,
        max_retries: int = 3,
        redactor: SecretRedactor | None = None,
    ) -> None:
        super().__init__(config.model, redactor, max_retries=max_retries)
        self._config = config
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=0,
        )

    async def _request(self, prompt: str, system: str | None) -> str:
        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                system=system or anthropic.NOT_GIVEN,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            log.warning("anthropic_rate_limit", error=str(e))
            retry_after = e.response.headers.get("retry-after")
            raise RateLimitError(
                f"Anthropic rate limit exceeded: {e}",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            ) from e
        except anthropic.APITimeoutError as e:
            log.error("anthropic_timeout", error=str(e))
            raise ReasoningTimeoutError(f"Anthropic request timed out: {e}") from e
        except (anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            log.error("anthropic_unavailable", error=str(e))
            raise ReasoningUnavailableError(f"Anthropic API error: {e}") from e
        except anthropic.APIError as e:
            log.error("anthropic_api_error", error=str(e))
            raise ReasoningError(f"Anthropic API error: {e}") from e

        return "".join(block.text for block in response.content if hasattr(block, "text"))
