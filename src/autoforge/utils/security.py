"""Security utilities for secret redaction and path validation.

Redaction is fail-closed: if a pattern cannot be compiled or applied the
operation raises instead of returning potentially sensitive text. File paths
supplied by analyzers or the reasoning service are always resolved inside
the application root before they are read or written.
"""

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from autoforge.utils.async_helpers import FrameworkError

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()


class SecurityError(FrameworkError):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


class PathTraversalError(SecurityError):
    """A relative path escapes the directory it must stay within."""


# Allowed hosts for a self-hosted model server (SSRF prevention)
ALLOWED_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class SecretRedactor:
    """Detects and redacts secrets from text.

    Generated applications routinely carry ``.env`` files, seeded API keys and
    database URLs, so file context is redacted before it leaves the process.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(potentially_sensitive_text)

    Attributes:
        patterns: List of compiled regex patterns to detect secrets.
        placeholder: The string to replace secrets with (default: "[REDACTED]").
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        # Generic assignments
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        # OpenAI
        (r"sk-[a-zA-Z0-9]{48}", "OpenAI legacy API key"),
        (r"sk-proj-[a-zA-Z0-9_-]{20,}", "OpenAI project API key"),
        # Anthropic
        (r"sk-ant-[\w-]{40,}", "Anthropic API key"),
        # GitHub
        (r"ghp_[a-zA-Z0-9]{36}", "GitHub PAT"),
        (r"github_pat_[a-zA-Z0-9_]{22,}", "GitHub fine-grained PAT"),
        # AWS
        (r"AKIA[0-9A-Z]{16}", "AWS access key ID"),
        (
            r"(?i)aws[_-]?secret[_-]?access[_-]?key\s*[=:]\s*[\"']?[a-zA-Z0-9/+=]{40}",
            "AWS secret access key",
        ),
        # Deployment platforms
        (r"(?i)(vercel|netlify)[_-]?(auth[_-]?)?token\s*[=:]\s*[\"']?[\w-]{20,}", "Platform token"),
        # Stripe
        (r"sk_live_[a-zA-Z0-9]{24,}", "Stripe secret key"),
        (r"rk_live_[a-zA-Z0-9]{24,}", "Stripe restricted key"),
        # Database connection strings
        (
            r"(?i)(postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp)://[^:\s]+:[^@\s]+@[^\s]+",
            "Database connection string",
        ),
        # Private keys
        (
            r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----",
            "Private key header",
        ),
        # JWT tokens
        (
            r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*",
            "JWT token",
        ),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize the SecretRedactor.

        Args:
            placeholder: String to replace detected secrets with.
            custom_patterns: Additional (pattern, name) tuples to detect.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        all_patterns = list(self.DEFAULT_PATTERNS)
        if custom_patterns:
            all_patterns.extend(custom_patterns)

        try:
            for pattern_str, name in all_patterns:
                compiled = re.compile(pattern_str)
                self._pattern_names[compiled] = name
        except re.error as e:
            msg = f"Failed to compile secret pattern '{pattern_str}': {e}"
            log.error("pattern_compilation_failed", pattern=pattern_str, error=str(e))
            raise RedactionError(msg) from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        return list(self._pattern_names.keys())

    def redact(self, text: str) -> str:
        """Redact all secrets from the given text.

        Args:
            text: The text to scan and redact secrets from.

        Returns:
            The text with all detected secrets replaced with placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            result = text
            for pattern in self._pattern_names:
                result = pattern.sub(self.placeholder, result)
            return result
        except Exception as e:
            msg = f"Redaction failed: {e}"
            log.error("redaction_failed", error=str(e))
            raise RedactionError(msg) from e

    def has_secrets(self, text: str) -> bool:
        """Check if text contains any secrets.

        Raises:
            RedactionError: If checking fails for any reason.
        """
        if not text:
            return False

        try:
            return any(pattern.search(text) for pattern in self._pattern_names)
        except Exception as e:
            msg = f"Secret check failed: {e}"
            log.error("has_secrets_check_failed", error=str(e))
            raise RedactionError(msg) from e


def resolve_within(root: Path, relative: str) -> Path:
    """Resolve ``relative`` against ``root`` and refuse paths that escape it.

    Args:
        root: Directory the path must stay within.
        relative: Path relative to ``root``.

    Returns:
        Absolute, resolved path inside ``root``.

    Raises:
        PathTraversalError: If the path is absolute or escapes ``root``.
    """
    normalized = os.path.normpath(relative)

    if not relative or normalized == "." or normalized.startswith("..") or os.path.isabs(normalized):
        raise PathTraversalError(f"Invalid file path: {relative}")

    root_resolved = root.resolve()
    full_path = (root_resolved / normalized).resolve()

    try:
        full_path.relative_to(root_resolved)
    except ValueError:
        log.warning("path_traversal_blocked", path=relative, root=str(root))
        raise PathTraversalError(f"Path escapes application root: {relative}") from None

    return full_path


def validate_local_model_url(url: str, allow_remote: bool = False) -> bool:
    """Validate that a self-hosted model server URL is safe (SSRF prevention).

    By default only loopback hosts are allowed.

    Args:
        url: The server base URL to validate.
        allow_remote: If True, allow non-localhost hosts.

    Returns:
        True if the URL is valid and allowed, False otherwise.
    """
    if not url:
        return False

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False

    host = parsed.hostname
    if not host:
        return False

    if host in ALLOWED_LOCAL_HOSTS:
        return True

    try:
        if ipaddress.ip_address(host).is_loopback:
            return True
    except ValueError:
        pass  # Not an IP address

    return allow_remote


_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_terminal_codes(text: str) -> str:
    """Remove colour escapes and control characters from npm, tsc and jest output.

    Newlines and tabs are kept.
    """
    return _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", text))
