"""Common request handling for reasoning-service adapters.

Security features:
- Secret redaction before every request (fail-closed)
- Response length limit
"""

from __future__ import annotations

import structlog

from autoforge.utils.async_helpers import ReasoningError, reasoning_retrying
from autoforge.utils.metrics import Timer, get_metrics
from autoforge.utils.security import RedactionError, SecretRedactor, SecurityError

log = structlog.get_logger()

# Maximum response length in characters
MAX_RESPONSE_LENGTH = 100_000


class ReasoningAdapter:
    """Base class implementing the ReasoningProvider protocol.

    Subclasses implement ``_request`` and map their SDK's errors onto the
    ReasoningError family. Rate limits, timeouts and unavailability are
    retried here, up to ``max_retries`` attempts in total.
    """

    provider = "reasoning"

    def __init__(
        self,
        model: str,
        redactor: SecretRedactor | None = None,
        *,
        max_retries: int = 3,
        min_wait: float = 1.0,
    ) -> None:
        self._model = model
        self._redactor = redactor or SecretRedactor()
        self._max_retries = max_retries
        self._min_wait = min_wait

    @property
    def model_name(self) -> str:
        """Return the model identifier being used."""
        return self._model

    def _redact_text(self, text: str) -> str:
        try:
            return self._redactor.redact(text)
        except RedactionError as e:
            log.error("redaction_failed_blocking_request", provider=self.provider, error=str(e))
            raise SecurityError(f"Cannot send to reasoning service: redaction failed: {e}") from e

    async def _request(self, prompt: str, system: str | None) -> str:
        raise NotImplementedError

    async def complete(self, prompt: str, *, system: str | None = None) -> str:
        """Send one prompt and return the text response.

        Raises:
            SecurityError: If redaction fails.
            RateLimitError: If the service is still rate-limiting after the last attempt.
            ReasoningTimeoutError: If the last attempt timed out.
            ReasoningError: For any other service failure.
        """
        metrics = get_metrics()
        labels = {"provider": self.provider}
        metrics.reasoning_requests.inc(labels=labels)

        prompt = self._redact_text(prompt)
        try:
            with Timer(metrics.reasoning_duration, labels=labels):
                async for attempt in reasoning_retrying(self._max_retries, min_wait=self._min_wait):
                    with attempt:
                        text = await self._request(prompt, system)
        except ReasoningError as e:
            metrics.reasoning_errors.inc(labels={**labels, "type": type(e).__name__})
            raise

        if len(text) > MAX_RESPONSE_LENGTH:
            metrics.reasoning_errors.inc(labels={**labels, "type": "ResponseTooLong"})
            raise ReasoningError(f"Response exceeds maximum length: {len(text)}")

        log.debug("reasoning_response", provider=self.provider, model=self._model, chars=len(text))
        return text
