"""Netlify deployment of the frontend build output."""

from __future__ import annotations

import re

from autoforge.core.deployment import ProviderError
from autoforge.interfaces.deploy import DeployContext

from .base import CLIProvider
from .registry import register_provider

URL_PATTERN = re.compile(r"Website (?:draft )?URL:\s*(https?://\S+)")


@register_provider("netlify")
class NetlifyProvider(CLIProvider):
    """Publishes ``frontend/dist``; non-production deploys are drafts."""

    name = "netlify"
    tool = "netlify"

    async def _publish(self, context: DeployContext) -> str | None:
        frontend = context.app_dir / "frontend"
        if not frontend.is_dir():
            raise ProviderError("Frontend directory not found for Netlify deployment")
        if not (frontend / "dist").is_dir():
            raise ProviderError("Build directory frontend/dist not found. Run build first.")

        args = ["netlify", "deploy", "--dir=dist"]
        if context.production:
            args.append("--prod")
        result = await self._run(args, context, cwd=frontend)

        match = URL_PATTERN.search(result.stdout)
        return match.group(1) if match else None

    async def deploy(self, context: DeployContext) -> str | None:
        url = await self._publish(context)
        context.record.log("Netlify deployment completed successfully")
        return url

    async def rollback(self, context: DeployContext) -> None:
        """Republish the build output of the restored working tree."""
        await self._publish(context)
