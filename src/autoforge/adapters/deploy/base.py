"""Shared plumbing for providers that drive a deployment CLI."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

import structlog

from autoforge.config.schema import DeploymentConfig
from autoforge.core.deployment import ProviderError
from autoforge.interfaces.deploy import DeployContext
from autoforge.utils.process import CommandError, CommandResult, run_command

log = structlog.get_logger()

VERSION_CHECK_TIMEOUT = 10.0
OUTPUT_EXCERPT_CHARS = 1000


class CLIProvider:
    """Base class: availability is ``<tool> --version`` exiting zero."""

    name = "cli"
    tool = ""

    def __init__(self, config: DeploymentConfig) -> None:
        self._config = config

    async def check_available(self) -> bool:
        try:
            result = await run_command([self.tool, "--version"], timeout=VERSION_CHECK_TIMEOUT)
        except CommandError as e:
            log.warning("deploy_tool_unavailable", provider=self.name, error=str(e))
            return False
        return result.success

    async def _run(
        self,
        args: Sequence[str],
        context: DeployContext,
        *,
        cwd: Path,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run a provider command and log its output to the record.

        Raises:
            ProviderError: If the command cannot run or exits non-zero.
        """
        try:
            result = await run_command(
                args, cwd=cwd, timeout=timeout or context.timeout, env=env
            )
        except CommandError as e:
            context.record.log(f"{self.name} command failed: {e}")
            raise ProviderError(f"{self.name}: {e}") from e

        if result.stdout.strip():
            context.record.log(f"{self.name} output: {result.stdout.strip()[:OUTPUT_EXCERPT_CHARS]}")
        if not result.success:
            tail = result.output_tail()
            context.record.log(f"{self.name} exited with {result.return_code}: {tail}")
            raise ProviderError(
                f"{' '.join(args[:3])} exited with {result.return_code}: {tail[:200]}"
            )
        return result

    async def rollback(self, context: DeployContext) -> None:
        raise ProviderError(f"{self.name} does not support rolling back a release")
