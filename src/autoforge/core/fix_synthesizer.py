"""Fix synthesis through the external reasoning service.

Builds a context bundle for one ErrorRecord (the error itself, a window of
the offending file and the application's metadata), asks the reasoning
provider for a structured proposal and turns a valid answer into a
FixCandidate. Any failure along the way means "no fix available".
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from autoforge.interfaces.reasoning import ReasoningProvider
from autoforge.models.application import Application
from autoforge.models.healing import (
    ChangeType,
    ErrorKind,
    ErrorRecord,
    FileChange,
    FixCandidate,
    FixCategory,
)
from autoforge.utils.async_helpers import FrameworkError, RateLimiter
from autoforge.utils.security import PathTraversalError, SecretRedactor, resolve_within

log = structlog.get_logger()

SYSTEM_PROMPT = """You are an expert full-stack engineer repairing a generated \
React + Express TypeScript application.

You receive one diagnostic and the surrounding source. Propose the smallest \
change that resolves it. For every file you touch, return the COMPLETE new \
file content, not a diff.

Respond with a single JSON object and nothing else:
{
  "description": "one sentence describing the fix",
  "confidence": 0.0-1.0,
  "changes": [
    {"file": "path relative to the application root", "type": "create|update|delete", \
"new_content": "full file content or null for delete"}
  ]
}"""

MAX_FILE_CHARS = 20_000

_INFRA_PATH = re.compile(
    r"(^|/)(dockerfile|docker-compose[^/]*\.ya?ml|compose\.ya?ml|k8s/|kubernetes/|terraform/|[^/]*\.tf$)",
    re.IGNORECASE,
)
_ENV_PATH = re.compile(r"(^|/)\.env(\.[\w-]+)?$")
_DEPENDENCY_PATH = re.compile(r"(^|/)package(-lock)?\.json$")


class SynthesisError(FrameworkError):
    """The reasoning service did not produce a usable proposal."""


@dataclass(frozen=True)
class CategoryRule:
    """One row of the fix-category table; the first matching row wins."""

    category: FixCategory
    matches: Callable[[ErrorRecord], bool]
    description: str


CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        FixCategory.DEPENDENCY,
        lambda e: e.kind is ErrorKind.SECURITY,
        "security findings are fixed by dependency changes",
    ),
    CategoryRule(
        FixCategory.DEPENDENCY,
        lambda e: bool(_DEPENDENCY_PATH.search(e.file)),
        "package manifests",
    ),
    CategoryRule(
        FixCategory.INFRASTRUCTURE,
        lambda e: bool(_INFRA_PATH.search(e.file)),
        "container and deployment descriptors",
    ),
    CategoryRule(
        FixCategory.CONFIG,
        lambda e: bool(_ENV_PATH.search(e.file)),
        "environment files",
    ),
)


def classify_fix(error: ErrorRecord) -> FixCategory:
    """Category of the fix that would address ``error``."""
    for rule in CATEGORY_RULES:
        if rule.matches(error):
            return rule.category
    return FixCategory.CODE


class ProposedChange(BaseModel):
    file: str = Field(min_length=1)
    type: Literal["create", "update", "delete"]
    new_content: str | None = None


class FixProposal(BaseModel):
    """Structured answer expected from the reasoning service."""

    description: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    changes: list[ProposedChange] = Field(min_length=1)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    end = len(lines)
    for i in range(len(lines) - 1, 0, -1):
        if lines[i].strip() == "```":
            end = i
            break
    return "\n".join(lines[1:end])


def parse_proposal(response_text: str) -> FixProposal:
    """Parse and validate a reasoning-service response.

    Raises:
        SynthesisError: If the response is not valid JSON or does not match
            the FixProposal structure.
    """
    text = strip_code_fences(response_text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        log.error("json_parse_error", error=str(e), response_preview=text[:200])
        raise SynthesisError(f"Invalid JSON in reasoning response: {e}") from e

    try:
        return FixProposal.model_validate(data)
    except ValidationError as e:
        log.error("proposal_validation_error", error=str(e))
        raise SynthesisError(f"Reasoning response has the wrong shape: {e}") from e


class FixSynthesizer:
    """Proposes a FixCandidate for a single ErrorRecord.

    Example:
        synthesizer = FixSynthesizer(provider, context_lines=5)
        fix = await synthesizer.propose(app, error)
        if fix is None:
            ...  # no fix available
    """

    def __init__(
        self,
        provider: ReasoningProvider | None,
        *,
        context_lines: int = 5,
        redactor: SecretRedactor | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._provider = provider
        self._context_lines = context_lines
        self._redactor = redactor or SecretRedactor()
        self._rate_limiter = rate_limiter

    @property
    def available(self) -> bool:
        return self._provider is not None

    async def propose(self, app: Application, error: ErrorRecord) -> FixCandidate | None:
        """Ask the reasoning service for a fix; None means no fix available."""
        try:
            return await self._propose(app, error)
        except SynthesisError as e:
            log.info("no_fix_available", app_id=app.id, error_id=error.id, reason=str(e))
            return None

    async def _propose(self, app: Application, error: ErrorRecord) -> FixCandidate:
        if self._provider is None:
            raise SynthesisError("No reasoning provider is configured")

        prompt = self.build_context(app, error)

        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        log.info(
            "requesting_fix",
            app_id=app.id,
            error_id=error.id,
            location=error.location,
            model=self._provider.model_name,
        )
        try:
            response = await self._provider.complete(prompt, system=SYSTEM_PROMPT)
        except FrameworkError as e:
            raise SynthesisError(f"Reasoning request failed: {e}") from e

        proposal = parse_proposal(response)
        changes = tuple(self._to_change(app.root, change) for change in proposal.changes)

        fix = FixCandidate(
            error_id=error.id,
            category=classify_fix(error),
            description=proposal.description,
            changes=changes,
            confidence=proposal.confidence,
        )
        log.info(
            "fix_proposed",
            app_id=app.id,
            error_id=error.id,
            fix_id=fix.id,
            category=fix.category.value,
            confidence=fix.confidence,
            files=fix.touched_files,
        )
        return fix

    def _to_change(self, root: Path, change: ProposedChange) -> FileChange:
        try:
            path = resolve_within(root, change.file)
        except PathTraversalError as e:
            raise SynthesisError(str(e)) from e

        relative = path.relative_to(root.resolve()).as_posix()
        original = path.read_text(errors="replace") if path.is_file() else None
        try:
            return FileChange(
                path=relative,
                type=ChangeType(change.type),
                original_content=original,
                new_content=change.new_content,
            )
        except ValueError as e:
            raise SynthesisError(str(e)) from e

    def build_context(self, app: Application, error: ErrorRecord) -> str:
        """Render the prompt for one error. Secrets are redacted."""
        spec = app.specification
        stack = ", ".join(f"{key}: {value}" for key, value in spec.tech_stack.items() if value)
        sections = [
            "## Application",
            f"Name: {app.name}",
            f"Description: {spec.description}",
            f"Stack: {stack or 'unknown'}",
            "",
            "## Error",
            f"Kind: {error.kind.value}",
            f"Severity: {error.severity.value}",
            f"Location: {error.location}",
            f"Message: {error.message}",
        ]

        source = self._source_window(app.root, error)
        if source:
            sections += ["", f"## Source ({error.file})", "```", source, "```"]

        return self._redactor.redact("\n".join(sections))

    def _source_window(self, root: Path, error: ErrorRecord) -> str | None:
        try:
            path = resolve_within(root, error.file)
        except PathTraversalError:
            return None
        if not path.is_file():
            return None

        try:
            lines = path.read_text(errors="replace").splitlines()
        except OSError as e:
            log.warning("context_read_failed", file=error.file, error=str(e))
            return None

        if error.line <= 0:
            # Whole-file errors (manifests) get the head of the file
            text = "\n".join(lines)
            return text[:MAX_FILE_CHARS]

        start = max(1, error.line - self._context_lines)
        end = min(len(lines), error.line + self._context_lines)
        width = len(str(end))
        return "\n".join(
            f"{'>' if n == error.line else ' '} {n:>{width}} | {lines[n - 1]}"
            for n in range(start, end + 1)
        )
