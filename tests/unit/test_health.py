"""Tests for the health check module."""

import json
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

from autoforge.config.schema import FrameworkConfig, ReasoningConfig
from autoforge.utils.health import (
    CheckResult,
    HealthChecker,
    HealthReport,
    HealthStatus,
    write_health_file,
)


def which_all(name: str) -> str:
    return f"/usr/bin/{name}"


class TestHealthReport:
    """Tests for HealthReport."""

    def test_to_dict(self) -> None:
        """Test conversion to dictionary."""
        timestamp = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)
        report = HealthReport(
            healthy=True,
            status=HealthStatus.DEGRADED,
            timestamp=timestamp,
            checks=[CheckResult(name="package_tooling", status=HealthStatus.DEGRADED, message="npx missing")],
            details={"total_checks": 1},
        )

        result = report.to_dict()

        assert result["status"] == "degraded"
        assert result["timestamp"] == "2026-01-15T12:00:00+00:00"
        assert result["checks"] == [
            {"name": "package_tooling", "status": "degraded", "message": "npx missing", "details": {}}
        ]
        assert result["details"] == {"total_checks": 1}


class TestHealthChecker:
    """Tests for HealthChecker."""

    async def test_all_healthy(self, framework_config: FrameworkConfig) -> None:
        """Test a configured provider, writable workspace and tools on PATH."""
        with patch("autoforge.utils.health.which", side_effect=which_all):
            report = await HealthChecker(framework_config).run_all_checks()

        assert report.healthy is True
        assert report.status == HealthStatus.HEALTHY
        assert {c.name for c in report.checks} == {
            "reasoning_provider",
            "workspace",
            "package_tooling",
            "deploy_provider",
        }
        assert framework_config.workspace_dir.is_dir()
        assert list(framework_config.workspace_dir.iterdir()) == []

    async def test_missing_tools_degrade(self, framework_config: FrameworkConfig) -> None:
        """Test missing CLIs degrade the report without making it unhealthy."""
        with patch("autoforge.utils.health.which", return_value=None):
            report = await HealthChecker(framework_config).run_all_checks()

        assert report.healthy is True
        assert report.status == HealthStatus.DEGRADED
        checks = {c.name: c for c in report.checks}
        assert checks["package_tooling"].status == HealthStatus.DEGRADED
        assert "node" in checks["package_tooling"].message
        assert checks["deploy_provider"].message.startswith("docker CLI not found")
        assert report.details["degraded_checks"] == 2

    async def test_missing_credentials(self, tmp_path: Path) -> None:
        """Test a provider without a key makes the report unhealthy."""
        config = FrameworkConfig(
            reasoning=ReasoningConfig(provider="anthropic"),
            workspace_dir=tmp_path / "workspace",
        )
        with patch("autoforge.utils.health.which", side_effect=which_all):
            report = await HealthChecker(config).run_all_checks()

        assert report.healthy is False
        assert report.status == HealthStatus.UNHEALTHY
        assert report.details["unhealthy_checks"] == 1

    async def test_workspace_not_writable(self, framework_config: FrameworkConfig, tmp_path: Path) -> None:
        """Test a workspace path occupied by a file is unhealthy."""
        blocker = tmp_path / "blocked"
        blocker.write_text("")
        framework_config.workspace_dir = blocker

        with patch("autoforge.utils.health.which", side_effect=which_all):
            report = await HealthChecker(framework_config).run_all_checks()

        workspace = next(c for c in report.checks if c.name == "workspace")
        assert workspace.status == HealthStatus.UNHEALTHY
        assert workspace.details == {"path": str(blocker)}


class TestWriteHealthFile:
    """Tests for write_health_file."""

    async def test_writes_json(self, tmp_path: Path) -> None:
        """Test the report is written as JSON."""
        report = HealthReport(
            healthy=True,
            status=HealthStatus.HEALTHY,
            timestamp=datetime.now(UTC),
            checks=[],
        )
        path = tmp_path / "status" / "health.json"

        await write_health_file(report, path)

        assert json.loads(path.read_text())["status"] == "healthy"
