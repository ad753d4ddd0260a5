"""Data models for monitoring alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .common import new_id, utc_now
from .healing import Severity


class AlertType(StrEnum):
    ERROR = "error"
    PERFORMANCE = "performance"
    SECURITY = "security"
    AVAILABILITY = "availability"


@dataclass
class Alert:
    """An alert raised against a running application."""

    app_id: str
    type: AlertType
    severity: Severity
    message: str
    id: str = field(default_factory=lambda: new_id("alert"))
    timestamp: datetime = field(default_factory=utc_now)
    resolved: bool = False
