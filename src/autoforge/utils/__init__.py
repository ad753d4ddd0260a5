"""Utility functions and helpers.

- security: Secret redaction, path containment, URL validation, tool output cleanup
- process: Safe subprocess execution
- async_helpers: Base exceptions, reasoning retry policy, request spacing, cancellation
- logging: Structured logging with secret redaction
- health: Health check utilities
- metrics: Framework metrics collection
"""

from autoforge.utils.async_helpers import (
    CancellationToken,
    ConfigurationError,
    FrameworkError,
    OperationInProgressError,
    RateLimiter,
    reasoning_retrying,
)
from autoforge.utils.logging import LogFormat, configure_logging
from autoforge.utils.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    Timer,
    get_metrics,
)
from autoforge.utils.security import (
    PathTraversalError,
    RedactionError,
    SecretRedactor,
    SecurityError,
    resolve_within,
    strip_terminal_codes,
)

__all__ = [
    # Errors and async helpers
    "CancellationToken",
    "ConfigurationError",
    "FrameworkError",
    "OperationInProgressError",
    "RateLimiter",
    "reasoning_retrying",
    # Logging
    "LogFormat",
    "configure_logging",
    # Metrics
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "Timer",
    "get_metrics",
    # Security
    "PathTraversalError",
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
    "resolve_within",
    "strip_terminal_codes",
]
