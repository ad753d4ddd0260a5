"""Vercel deployment of the frontend sub-project."""

from __future__ import annotations

import re

from autoforge.core.deployment import ProviderError
from autoforge.interfaces.deploy import DeployContext

from .base import CLIProvider
from .registry import register_provider

URL_PATTERN = re.compile(r"https://\S+")


@register_provider("vercel")
class VercelProvider(CLIProvider):
    name = "vercel"
    tool = "vercel"

    async def deploy(self, context: DeployContext) -> str | None:
        frontend = context.app_dir / "frontend"
        if not frontend.is_dir():
            raise ProviderError("Frontend directory not found for Vercel deployment")

        args = ["vercel", "--prod", "--yes"] if context.production else ["vercel", "--yes"]
        result = await self._run(args, context, cwd=frontend)

        match = URL_PATTERN.search(result.stdout) or URL_PATTERN.search(result.stderr)
        context.record.log("Vercel deployment completed successfully")
        return match.group(0) if match else None

    async def rollback(self, context: DeployContext) -> None:
        args = ["vercel", "rollback", "--yes"]
        await self._run(args, context, cwd=context.app_dir / "frontend")
