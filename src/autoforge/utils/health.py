"""Health check utilities.

Checks the things the framework needs before it can heal, test or deploy:
- Configuration (reasoning provider credentials)
- A writable workspace
- Package tooling (node, npm, npx) on PATH
- The configured deployment provider's CLI on PATH
"""

from __future__ import annotations

import asyncio
import json
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from autoforge.utils.process import which

if TYPE_CHECKING:
    from autoforge.config.schema import FrameworkConfig

log = structlog.get_logger()

DEPLOY_TOOLS = {
    "docker": "docker",
    "vercel": "vercel",
    "netlify": "netlify",
    "aws": "aws",
}


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class CheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    """Overall health report."""

    healthy: bool
    status: HealthStatus
    timestamp: datetime
    checks: list[CheckResult]
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.checks
            ],
            "details": self.details,
        }


class HealthChecker:
    """Runs health checks concurrently and aggregates them.

    Missing tooling is reported as degraded rather than unhealthy: analyzers
    degrade to zero findings without it, but the framework still runs.

    Example:
        checker = HealthChecker(config)
        report = await checker.run_all_checks()
        if not report.healthy:
            print(json.dumps(report.to_dict(), indent=2))
    """

    def __init__(self, config: FrameworkConfig) -> None:
        self._config = config

    async def run_all_checks(self) -> HealthReport:
        log.info("health_check_start")
        start_time = datetime.now(UTC)

        checks: list[CheckResult] = []

        results = await asyncio.gather(
            self._check_reasoning_provider(),
            self._check_workspace(),
            self._check_package_tooling(),
            self._check_deploy_tool(),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException):
                checks.append(
                    CheckResult(
                        name="unknown",
                        status=HealthStatus.UNHEALTHY,
                        message=f"Check failed with exception: {result}",
                    )
                )
            elif isinstance(result, CheckResult):
                checks.append(result)

        if all(c.status == HealthStatus.HEALTHY for c in checks):
            overall_status = HealthStatus.HEALTHY
            healthy = True
        elif any(c.status == HealthStatus.UNHEALTHY for c in checks):
            overall_status = HealthStatus.UNHEALTHY
            healthy = False
        else:
            overall_status = HealthStatus.DEGRADED
            healthy = True

        report = HealthReport(
            healthy=healthy,
            status=overall_status,
            timestamp=start_time,
            checks=checks,
            details={
                "total_checks": len(checks),
                "healthy_checks": sum(1 for c in checks if c.status == HealthStatus.HEALTHY),
                "degraded_checks": sum(1 for c in checks if c.status == HealthStatus.DEGRADED),
                "unhealthy_checks": sum(1 for c in checks if c.status == HealthStatus.UNHEALTHY),
            },
        )

        log.info(
            "health_check_complete",
            healthy=healthy,
            status=overall_status.value,
            checks_run=len(checks),
        )

        return report

    async def _check_reasoning_provider(self) -> CheckResult:
        from autoforge.config.loader import provider_credentials_error

        reasoning = self._config.reasoning
        problem = provider_credentials_error(self._config)
        if problem:
            return CheckResult(
                name="reasoning_provider",
                status=HealthStatus.UNHEALTHY,
                message=problem,
            )
        block = getattr(reasoning, reasoning.provider)
        return CheckResult(
            name="reasoning_provider",
            status=HealthStatus.HEALTHY,
            message=f"{reasoning.provider} configured",
            details={"provider": reasoning.provider, "model": block.model},
        )

    async def _check_workspace(self) -> CheckResult:
        root = Path(self._config.workspace_dir)

        def try_write() -> None:
            root.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=root, prefix=".health-"):
                pass

        try:
            await asyncio.to_thread(try_write)
        except OSError as e:
            return CheckResult(
                name="workspace",
                status=HealthStatus.UNHEALTHY,
                message=f"Workspace not writable: {e}",
                details={"path": str(root)},
            )
        return CheckResult(
            name="workspace",
            status=HealthStatus.HEALTHY,
            message="Workspace writable",
            details={"path": str(root)},
        )

    async def _check_package_tooling(self) -> CheckResult:
        found = {tool: which(tool) is not None for tool in ("node", "npm", "npx")}
        missing = [tool for tool, present in found.items() if not present]
        if missing:
            return CheckResult(
                name="package_tooling",
                status=HealthStatus.DEGRADED,
                message=f"Missing on PATH: {', '.join(missing)}",
                details=found,
            )
        return CheckResult(
            name="package_tooling",
            status=HealthStatus.HEALTHY,
            message="node, npm and npx available",
            details=found,
        )

    async def _check_deploy_tool(self) -> CheckResult:
        provider = self._config.deployment.provider
        tool = DEPLOY_TOOLS[provider]
        if which(tool) is None:
            return CheckResult(
                name="deploy_provider",
                status=HealthStatus.DEGRADED,
                message=f"{tool} CLI not found; {provider} deployments will fail",
                details={"provider": provider},
            )
        return CheckResult(
            name="deploy_provider",
            status=HealthStatus.HEALTHY,
            message=f"{tool} CLI available",
            details={"provider": provider},
        )


async def write_health_file(report: HealthReport, path: Path) -> None:
    """Write health report to a file for external monitoring."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2))
        log.debug("health_file_written", path=str(path))
    except OSError as e:
        log.error("health_file_write_error", path=str(path), error=str(e))
