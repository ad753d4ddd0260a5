"""Static-site deployment of the frontend build to S3."""

from __future__ import annotations

from autoforge.core.deployment import ProviderError
from autoforge.interfaces.deploy import DeployContext

from .base import CLIProvider
from .registry import register_provider


@register_provider("aws")
class S3StaticSiteProvider(CLIProvider):
    """Syncs ``frontend/dist`` to the configured bucket's website endpoint."""

    name = "aws"
    tool = "aws"

    def website_url(self) -> str:
        aws = self._config.aws
        return f"http://{aws.bucket}.s3-website-{aws.region}.amazonaws.com"

    async def _sync(self, context: DeployContext) -> None:
        aws = self._config.aws
        if not aws.bucket:
            raise ProviderError("deployment.aws.bucket is not configured")
        dist = context.app_dir / "frontend" / "dist"
        if not dist.is_dir():
            raise ProviderError("Build directory frontend/dist not found. Run build first.")

        await self._run(
            ["aws", "s3", "sync", str(dist), f"s3://{aws.bucket}", "--delete", "--region", aws.region],
            context,
            cwd=context.app_dir,
        )

    async def deploy(self, context: DeployContext) -> str | None:
        await self._sync(context)
        context.record.log("S3 sync completed successfully")
        return self.website_url()

    async def rollback(self, context: DeployContext) -> None:
        """Re-sync the build output of the restored working tree."""
        await self._sync(context)
