"""Docker Compose deployment on the local host."""

from __future__ import annotations

import structlog

from autoforge.core.deployment import ProviderError
from autoforge.interfaces.deploy import DeployContext

from .base import CLIProvider
from .registry import register_provider

log = structlog.get_logger()

PRODUCTION_COMPOSE_FILE = "docker-compose.prod.yml"
DEVELOPMENT_COMPOSE_FILE = "docker-compose.dev.yml"
DOWN_TIMEOUT = 60.0


@register_provider("docker")
class DockerComposeProvider(CLIProvider):
    """Brings the application's compose stack down and back up, rebuilding images.

    Production uses ``docker-compose.prod.yml`` behind TLS on ``https://localhost``;
    every other environment uses ``docker-compose.dev.yml`` on port 3000.
    """

    name = "docker"
    tool = "docker"

    def _compose(self, context: DeployContext, *args: str) -> list[str]:
        compose_file = PRODUCTION_COMPOSE_FILE if context.production else DEVELOPMENT_COMPOSE_FILE
        return [*self._config.compose_command, "-f", compose_file, *args]

    async def _up(self, context: DeployContext) -> None:
        try:
            await self._run(self._compose(context, "down"), context, cwd=context.app_dir, timeout=DOWN_TIMEOUT)
        except ProviderError:
            context.record.log("No existing containers to stop")
        await self._run(self._compose(context, "up", "-d", "--build"), context, cwd=context.app_dir)

    async def deploy(self, context: DeployContext) -> str | None:
        compose_file = PRODUCTION_COMPOSE_FILE if context.production else DEVELOPMENT_COMPOSE_FILE
        if not (context.app_dir / compose_file).is_file():
            raise ProviderError(f"Docker compose file not found: {compose_file}")

        await self._up(context)
        context.record.log("Docker containers started successfully")
        return "https://localhost" if context.production else "http://localhost:3000"

    async def rollback(self, context: DeployContext) -> None:
        """Rebuild and restart the stack from the restored working tree."""
        await self._up(context)
        log.info("docker_rollback_complete", app_id=context.app.id)
