"""Self-hosted model server adapter (Ollama generate API)."""

from __future__ import annotations

import httpx
import structlog

from autoforge.config.schema import LocalModelConfig
from autoforge.utils.async_helpers import (
    RateLimitError,
    ReasoningError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
)
from autoforge.utils.security import SecretRedactor

from .base import ReasoningAdapter

log = structlog.get_logger()


class LocalReasoningProvider(ReasoningAdapter):
    """Posts prompts to ``<base_url>/api/generate`` without streaming.

    The server URL is validated against the loopback allowlist when the
    configuration is loaded.
    """

    provider = "local"

    def __init__(
        self,
        config: LocalModelConfig,
        *,
        max_retries: int = 3,
        redactor: SecretRedactor | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config.model, redactor, max_retries=max_retries)
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
        )

    async def _request(self, prompt: str, system: str | None) -> str:
        payload: dict[str, object] = {
            "model": self._config.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self._config.temperature},
        }
        if system:
            payload["system"] = system

        try:
            response = await self._client.post("/api/generate", json=payload)
        except httpx.TimeoutException as e:
            log.error("local_model_timeout", error=str(e))
            raise ReasoningTimeoutError(f"Model server request timed out: {e}") from e
        except httpx.HTTPError as e:
            log.error("local_model_unreachable", error=str(e))
            raise ReasoningUnavailableError(f"Model server request failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after", "")
            raise RateLimitError(
                "Model server rate limit exceeded",
                retry_after=int(retry_after) if retry_after.isdigit() else None,
            )
        if response.is_server_error:
            raise ReasoningUnavailableError(
                f"Model server error {response.status_code}: {response.text[:200]}"
            )
        if response.is_error:
            raise ReasoningError(
                f"Model server error {response.status_code}: {response.text[:200]}"
            )

        try:
            return str(response.json()["response"])
        except (ValueError, KeyError) as e:
            raise ReasoningError(f"Failed to parse model server response: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
