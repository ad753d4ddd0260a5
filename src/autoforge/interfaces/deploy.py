"""Abstract interface for deployment providers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..models.application import Application
from ..models.deployment import DeploymentRecord, Environment


@dataclass(frozen=True)
class DeployContext:
    """Everything a provider needs for one deployment attempt."""

    app: Application
    environment: Environment
    record: DeploymentRecord
    timeout: float

    @property
    def app_dir(self) -> Path:
        return self.app.root

    @property
    def production(self) -> bool:
        return self.environment is Environment.PRODUCTION


class DeployProvider(Protocol):
    """One deployment target (docker, vercel, netlify, aws).

    Each provider shells out to its command-line tool. Success is decided by
    the process exit code; the public URL comes from the compose convention
    or is parsed from the tool's output.
    """

    name: str

    async def check_available(self) -> bool:
        """Return True if the provider's CLI is installed and responds."""
        ...

    async def deploy(self, context: DeployContext) -> str | None:
        """
        Deploy the already-built application.

        Args:
            context: Deployment context; providers append log lines to
                ``context.record``

        Returns:
            The URL the application is reachable at, if known

        Raises:
            ProviderError: If the tool is missing or the deploy fails
        """
        ...

    async def rollback(self, context: DeployContext) -> None:
        """
        Return the target to the previous known-good release.

        Called after the working tree has been restored from the pre-deploy
        backup.

        Raises:
            ProviderError: If the provider cannot roll back
        """
        ...
