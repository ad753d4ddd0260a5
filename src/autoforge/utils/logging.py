"""structlog setup for the framework.

Every entry passes through secret redaction before rendering: build logs,
test output and fix diffs routinely carry keys copied out of a generated
app's ``.env``. Entries carry the service name and version, plus whatever
``app_id``/``deployment_id`` the calling task has bound with
``structlog.contextvars.bound_contextvars``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import Processor

from autoforge.utils.security import SecretRedactor

SERVICE_NAME = "autoforge"
PLACEHOLDER = "[REDACTED]"


class LogFormat(StrEnum):
    """Log output format options."""

    JSON = "json"
    CONSOLE = "console"


@lru_cache(maxsize=1)
def _redactor() -> SecretRedactor:
    return SecretRedactor(placeholder=PLACEHOLDER)


def redact_value(value: Any) -> Any:
    """Redact secrets from strings, recursing into dicts, lists and tuples."""
    if isinstance(value, str):
        return _redactor().redact(value)
    if isinstance(value, dict):
        return {key: redact_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return type(value)(redact_value(item) for item in value)
    return value


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor: redact every value of the entry."""
    return {key: redact_value(value) for key, value in event_dict.items()}


def service_info(version: str | None) -> Processor:
    """Processor factory stamping the service name and version on each entry."""

    def add_service_info(
        logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", SERVICE_NAME)
        if version is not None:
            event_dict.setdefault("version", version)
        return event_dict

    return add_service_info


def _installed_version() -> str | None:
    try:
        from autoforge._version import __version__
    except (ImportError, RuntimeError):
        return None
    return __version__


def configure_logging(
    level: str = "INFO",
    log_format: LogFormat | str = LogFormat.CONSOLE,
    file_path: Path | str | None = None,
) -> None:
    """Route structlog through stdlib logging to stderr and, optionally, a file.

    Safe to call more than once; the CLI configures early from its flags and
    again once the configuration file has been read.

    Example:
        configure_logging("DEBUG")
        configure_logging("INFO", "json", workspace.logs_dir / "autoforge.log")
    """
    numeric_level = logging.getLevelNamesMapping()[level.upper()]
    log_format = LogFormat(str(log_format).lower())

    renderer: Processor
    if log_format is LogFormat.JSON:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(), exception_formatter=structlog.dev.plain_traceback
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            service_info(_installed_version()),
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    file_error: OSError | None = None
    if file_path is not None:
        path = Path(file_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(path))
        except OSError as e:
            file_error = e

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)

    if file_error is not None:
        structlog.get_logger(__name__).warning(
            "log_file_unavailable", path=str(file_path), error=str(file_error)
        )
