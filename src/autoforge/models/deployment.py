"""Data models for deployment attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .common import new_id, utc_now


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DeploymentStatus(StrEnum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentStatus.SUCCESS,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
        )


# Pending -> Deploying -> (Success | Failed) [-> RolledBack]
ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.DEPLOYING}),
    DeploymentStatus.DEPLOYING: frozenset({DeploymentStatus.SUCCESS, DeploymentStatus.FAILED}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.ROLLED_BACK}),
    DeploymentStatus.SUCCESS: frozenset(),
    DeploymentStatus.ROLLED_BACK: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a deployment record is moved along an undefined edge."""


@dataclass
class DeploymentRecord:
    """One attempt to promote an application to an environment."""

    app_id: str
    environment: Environment
    id: str = field(default_factory=lambda: new_id("deploy"))
    status: DeploymentStatus = DeploymentStatus.PENDING
    url: str | None = None
    logs: list[str] = field(default_factory=list)
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    def log(self, line: str) -> None:
        """Append a line to the audit trail."""
        self.logs.append(line)

    def transition(self, status: DeploymentStatus) -> None:
        """Move to ``status``.

        Raises:
            InvalidTransitionError: If the edge is not part of the state machine.
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Deployment {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "environment": self.environment.value,
            "status": self.status.value,
            "url": self.url,
            "logs": list(self.logs),
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }
