"""Tests for the framework facade and its reactions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from autoforge.adapters.reasoning.local import LocalReasoningProvider
from autoforge.adapters.reasoning.openai import OpenAIReasoningProvider
from autoforge.config.schema import (
    DeploymentConfig,
    FrameworkConfig,
    LocalModelConfig,
    ReasoningConfig,
)
from autoforge.core.deployment import DeploymentError
from autoforge.core.events import EventChannel
from autoforge.core.framework import Framework, _create_reasoning_provider, create_framework
from autoforge.core.healing import HealingInProgressError
from autoforge.core.registry import ApplicationNotFoundError, ApplicationRegistry
from autoforge.core.workspace import Workspace
from autoforge.models.alerts import Alert, AlertType
from autoforge.models.application import Application, AppPhase, AppSpecification
from autoforge.models.deployment import DeploymentRecord, DeploymentStatus, Environment
from autoforge.models.events import (
    AppCreated,
    AppDeployed,
    AppErrorDetected,
    AppFixed,
    DeploymentCompleted,
    MonitoringAlert,
    TestCompleted,
)
from autoforge.models.healing import (
    ErrorRecord,
    FixAttempt,
    FixCandidate,
    FixCategory,
    FixStatus,
    HealingReport,
    Severity,
)
from autoforge.models.testing import (
    CaseStatus,
    SuiteCategory,
    TestCaseResult,
    TestSuiteResult,
)
from autoforge.utils.async_helpers import ConfigurationError


def suite(passed: bool = True) -> TestSuiteResult:
    result = TestSuiteResult(name="Unit Tests", category=SuiteCategory.UNIT)
    result.add_case(
        TestCaseResult(name="renders", status=CaseStatus.PASSED if passed else CaseStatus.FAILED)
    )
    result.finalize(duration_ms=5)
    return result


def tested_fix(error_id: str = "error-1") -> FixCandidate:
    fix = FixCandidate(
        error_id=error_id, category=FixCategory.CODE, description="declare x", changes=(), confidence=0.9
    )
    fix.record_outcome(applied=True, tested=True, backup=None)
    return fix


class Harness:
    """A Framework over mocked subsystems that still publish on real channels."""

    def __init__(self, config: FrameworkConfig, workspace: Workspace, **kwargs) -> None:
        self.registry = ApplicationRegistry()
        self.backups = MagicMock()
        self.backups.purge = AsyncMock()

        self.healing = MagicMock()
        self.healing.fix_applied = EventChannel("app:fixed")
        self.healing.error_detected = EventChannel("app:error")
        self.healing.start = AsyncMock()
        self.healing.stop = AsyncMock()
        self.healing.fix_error = AsyncMock()
        self.healing.heal_app = AsyncMock(side_effect=lambda app: HealingReport(app_id=app.id))
        self.healing.enqueue = MagicMock(return_value=1)

        self.testing = MagicMock()
        self.testing.completed = EventChannel("test:completed")
        self.suites = [suite()]

        async def run_all(app: Application) -> list[TestSuiteResult]:
            await self.testing.completed.publish(TestCompleted(app=app, suites=tuple(self.suites)))
            return self.suites

        self.testing.run_all = AsyncMock(side_effect=run_all)

        self.deployer = MagicMock()
        self.deployer.completed = EventChannel("deployment:completed")
        self.deployer.provider.name = "docker"
        self.deployer.deploy = AsyncMock(
            side_effect=lambda app, environment: DeploymentRecord(app_id=app.id, environment=environment)
        )

        self.framework = Framework(
            config,
            workspace=workspace,
            registry=self.registry,
            backups=self.backups,
            healing=self.healing,
            testing=self.testing,
            deployer=self.deployer,
            **kwargs,
        )

    def add(self, app: Application) -> Application:
        app.phase = AppPhase.RUNNING
        self.registry.add(app)
        return app


@pytest.fixture
def harness(framework_config: FrameworkConfig, workspace: Workspace) -> Harness:
    return Harness(framework_config, workspace)


class TestLifecycle:
    """Test start and stop."""

    async def test_start_stop(self, harness: Harness) -> None:
        """Test the healing loop follows the framework."""
        await harness.framework.start()
        assert harness.framework.is_running
        harness.healing.start.assert_awaited_once()

        await harness.framework.start()
        harness.healing.start.assert_awaited_once()

        await harness.framework.stop()
        assert not harness.framework.is_running
        harness.healing.stop.assert_awaited_once()

    async def test_start_rejects_invalid_config(self, workspace: Workspace) -> None:
        """Test configuration problems surface at startup."""
        config = FrameworkConfig(
            reasoning=ReasoningConfig(provider="anthropic"),
            workspace_dir=workspace.root,
        )
        framework = Harness(config, workspace).framework
        with pytest.raises(ConfigurationError):
            await framework.start()
        assert not framework.is_running

    async def test_stop_closes_reasoning_client(
        self, framework_config: FrameworkConfig, workspace: Workspace
    ) -> None:
        """Test the reasoning adapter is closed on shutdown."""
        reasoning = MagicMock()
        reasoning.aclose = AsyncMock()
        framework = Harness(framework_config, workspace, reasoning=reasoning).framework

        await framework.start()
        await framework.stop()

        reasoning.aclose.assert_awaited_once()


class TestApplications:
    """Test registering, creating and deleting applications."""

    async def test_register_default_root(self, harness: Harness, specification: AppSpecification) -> None:
        """Test an application without a root gets one in the workspace."""
        created: list[AppCreated] = []

        async def on_created(event: AppCreated) -> None:
            created.append(event)

        harness.framework.app_created.subscribe(on_created)

        app = await harness.framework.register_app("todo", specification)

        assert app.root == harness.framework.workspace.app_dir(app.id)
        assert app.root.is_dir()
        assert app.phase is AppPhase.RUNNING
        assert harness.framework.get_app(app.id) is app
        assert harness.framework.list_apps() == [app]
        assert [event.app for event in created] == [app]

    async def test_register_existing_root(
        self, harness: Harness, specification: AppSpecification, tmp_path: Path
    ) -> None:
        """Test an existing tree outside the workspace is registered in place."""
        root = tmp_path / "existing"
        root.mkdir()
        app = await harness.framework.register_app("todo", specification, root=root)
        assert app.root == root

    async def test_register_missing_root(
        self, harness: Harness, specification: AppSpecification, tmp_path: Path
    ) -> None:
        """Test a root that is not a directory is rejected."""
        with pytest.raises(ConfigurationError, match="not a directory"):
            await harness.framework.register_app("todo", specification, root=tmp_path / "absent")

    async def test_register_root_containing_workspace(
        self, harness: Harness, specification: AppSpecification, tmp_path: Path
    ) -> None:
        """Test a root that would swallow the backups is rejected."""
        with pytest.raises(ConfigurationError, match="contains the workspace"):
            await harness.framework.register_app("todo", specification, root=tmp_path)
        assert harness.framework.list_apps() == []

    async def test_create_app_requires_generator(self, harness: Harness) -> None:
        """Test creation without a translator and generator is a configuration error."""
        with pytest.raises(ConfigurationError):
            await harness.framework.create_app("A todo list")

    async def test_create_app(
        self,
        framework_config: FrameworkConfig,
        workspace: Workspace,
        specification: AppSpecification,
    ) -> None:
        """Test requirements are translated, generated and registered."""
        translator = MagicMock()
        translator.translate = AsyncMock(return_value=specification)
        generator = MagicMock()
        generator.generate = AsyncMock()
        harness = Harness(framework_config, workspace, translator=translator, generator=generator)

        app = await harness.framework.create_app("A todo list", run_tests=False)

        translator.translate.assert_awaited_once_with("A todo list")
        generator.generate.assert_awaited_once_with(specification, app.root)
        assert app.name == "Todo"
        assert app.phase is AppPhase.RUNNING
        assert app.id in harness.registry
        harness.testing.run_all.assert_not_awaited()

    async def test_create_app_with_tests_ends_running(
        self,
        framework_config: FrameworkConfig,
        workspace: Workspace,
        specification: AppSpecification,
    ) -> None:
        """Test a passing first run leaves a new app running rather than generating."""
        translator = MagicMock()
        translator.translate = AsyncMock(return_value=specification)
        generator = MagicMock()
        generator.generate = AsyncMock()
        harness = Harness(framework_config, workspace, translator=translator, generator=generator)

        app = await harness.framework.create_app("A todo list")

        harness.testing.run_all.assert_awaited_once_with(app)
        assert app.phase is AppPhase.RUNNING

    async def test_delete_app_in_workspace(self, harness: Harness, app: Application) -> None:
        """Test deleting removes the tree, backups and per-app state."""
        harness.add(app)

        await harness.framework.delete_app(app.id)

        assert not app.root.exists()
        assert app.id not in harness.registry
        harness.backups.purge.assert_awaited_once_with(app.id)
        harness.healing.forget.assert_called_once_with(app.id)
        harness.deployer.forget.assert_called_once_with(app.id)

    async def test_delete_app_outside_workspace(
        self, harness: Harness, specification: AppSpecification, tmp_path: Path
    ) -> None:
        """Test trees registered from elsewhere stay on disk."""
        root = tmp_path / "existing"
        root.mkdir()
        app = await harness.framework.register_app("todo", specification, root=root)

        await harness.framework.delete_app(app.id)

        assert root.is_dir()
        assert app.id not in harness.registry

    async def test_delete_unknown(self, harness: Harness) -> None:
        """Test deleting an unknown id raises."""
        with pytest.raises(ApplicationNotFoundError):
            await harness.framework.delete_app("app-missing")


class TestRunTests:
    """Test the test-then-heal flow."""

    async def test_passing(self, harness: Harness, app: Application) -> None:
        """Test the previous phase is restored and nothing is healed."""
        harness.add(app)

        suites = await harness.framework.run_tests(app.id)

        assert suites == harness.suites
        assert app.phase is AppPhase.RUNNING
        harness.healing.heal_app.assert_not_awaited()

    async def test_failing_heals(self, harness: Harness, app: Application) -> None:
        """Test a failed suite sets the error phase and starts healing."""
        harness.add(app)
        harness.suites = [suite(passed=False)]

        await harness.framework.run_tests(app.id)

        assert app.phase is AppPhase.ERROR
        harness.healing.heal_app.assert_awaited_once_with(app)

    async def test_failing_without_healing(self, harness: Harness, app: Application) -> None:
        """Test heal_on_failure=False only records the failure."""
        harness.add(app)
        harness.suites = [suite(passed=False)]

        await harness.framework.run_tests(app.id, heal_on_failure=False)

        harness.healing.heal_app.assert_not_awaited()

    async def test_healing_already_running(self, harness: Harness, app: Application) -> None:
        """Test a busy healer does not fail the test run."""
        harness.add(app)
        harness.suites = [suite(passed=False)]
        harness.healing.heal_app.side_effect = HealingInProgressError(app.id)

        assert await harness.framework.run_tests(app.id) == harness.suites

    async def test_runner_crash_restores_phase(self, harness: Harness, app: Application) -> None:
        """Test an unexpected runner failure leaves the phase as it was."""
        harness.add(app)
        harness.testing.run_all.side_effect = RuntimeError("runner crashed")

        with pytest.raises(RuntimeError):
            await harness.framework.run_tests(app.id)
        assert app.phase is AppPhase.RUNNING


class TestReportError:
    """Test externally reported errors."""

    async def test_critical_error_is_fixed(
        self, harness: Harness, app: Application, make_error: Callable[..., ErrorRecord]
    ) -> None:
        """Test an actionable error is recorded, published and fixed."""
        harness.add(app)
        error = make_error()
        attempt = FixAttempt(error=error, status=FixStatus.APPLIED)
        harness.healing.fix_error.return_value = attempt
        detected: list[AppErrorDetected] = []

        async def on_error(event: AppErrorDetected) -> None:
            detected.append(event)

        harness.healing.error_detected.subscribe(on_error)

        assert await harness.framework.report_error(app.id, error) is attempt
        assert app.health.errors == [error]
        assert [event.error for event in detected] == [error]
        harness.healing.fix_error.assert_awaited_once_with(app, error)

    async def test_low_severity_only_recorded(
        self, harness: Harness, app: Application, make_error: Callable[..., ErrorRecord]
    ) -> None:
        """Test low-severity errors are not fixed."""
        harness.add(app)
        error = make_error(severity=Severity.LOW)

        assert await harness.framework.report_error(app.id, error) is None
        assert app.health.errors == [error]
        harness.healing.fix_error.assert_not_awaited()

    async def test_auto_fix_disabled(
        self,
        framework_config: FrameworkConfig,
        workspace: Workspace,
        app: Application,
        make_error: Callable[..., ErrorRecord],
    ) -> None:
        """Test nothing is fixed when auto-fix is off."""
        framework_config.healing.auto_fix = False
        harness = Harness(framework_config, workspace)
        harness.add(app)

        assert await harness.framework.report_error(app.id, make_error()) is None
        harness.healing.fix_error.assert_not_awaited()

    async def test_queued_while_healing(
        self, harness: Harness, app: Application, make_error: Callable[..., ErrorRecord]
    ) -> None:
        """Test an error arriving during a healing pass joins its queue."""
        harness.add(app)
        error = make_error()
        harness.healing.fix_error.side_effect = HealingInProgressError(app.id)

        assert await harness.framework.report_error(app.id, error) is None
        harness.healing.enqueue.assert_called_once_with(app, [error])


class TestRaiseAlert:
    """Test monitoring alerts."""

    async def test_critical_alert_dispatches_emergency(self, harness: Harness, app: Application) -> None:
        """Test a critical alert is published and starts an emergency heal."""
        harness.add(app)
        alerts: list[MonitoringAlert] = []

        async def on_alert(event: MonitoringAlert) -> None:
            alerts.append(event)

        harness.framework.monitoring_alert.subscribe(on_alert)
        alert = Alert(app_id=app.id, type=AlertType.ERROR, severity=Severity.CRITICAL, message="500s")

        task = await harness.framework.raise_alert(alert)

        assert task is harness.healing.emergency_heal.return_value
        harness.healing.emergency_heal.assert_called_once_with(app, alert)
        assert [event.alert for event in alerts] == [alert]

    async def test_non_critical_alert(self, harness: Harness, app: Application) -> None:
        """Test lesser alerts are only published."""
        harness.add(app)
        alert = Alert(app_id=app.id, type=AlertType.PERFORMANCE, severity=Severity.HIGH, message="slow")

        assert await harness.framework.raise_alert(alert) is None
        harness.healing.emergency_heal.assert_not_called()

    async def test_unknown_app(self, harness: Harness) -> None:
        """Test alerts for unknown applications raise."""
        alert = Alert(app_id="app-missing", type=AlertType.ERROR, severity=Severity.CRITICAL, message="x")
        with pytest.raises(ApplicationNotFoundError):
            await harness.framework.raise_alert(alert)


class TestDeployApp:
    """Test the test-then-deploy flow."""

    async def test_deploys_after_passing_tests(self, harness: Harness, app: Application) -> None:
        """Test passing suites let the deployment through."""
        harness.add(app)

        record = await harness.framework.deploy_app(app.id, Environment.PRODUCTION)

        assert record.environment is Environment.PRODUCTION
        harness.testing.run_all.assert_awaited_once_with(app)
        harness.deployer.deploy.assert_awaited_once_with(app, Environment.PRODUCTION)

    async def test_blocked_by_failing_tests(self, harness: Harness, app: Application) -> None:
        """Test failing suites block the deployment without healing."""
        harness.add(app)
        harness.suites = [suite(passed=False)]

        with pytest.raises(DeploymentError, match="Unit Tests"):
            await harness.framework.deploy_app(app.id, Environment.STAGING)

        harness.deployer.deploy.assert_not_awaited()
        harness.healing.heal_app.assert_not_awaited()

    async def test_skip_tests(self, harness: Harness, app: Application) -> None:
        """Test run_tests=False deploys directly."""
        harness.add(app)

        await harness.framework.deploy_app(app.id, run_tests=False)

        harness.testing.run_all.assert_not_awaited()
        harness.deployer.deploy.assert_awaited_once_with(app, Environment.DEVELOPMENT)

    async def test_no_auto_deploy_during_explicit_deploy(
        self, framework_config: FrameworkConfig, workspace: Workspace, app: Application
    ) -> None:
        """Test the pre-deploy test run does not also trigger a staging deployment."""
        framework_config.deployment = DeploymentConfig(auto_scale=True)
        harness = Harness(framework_config, workspace)
        harness.add(app)
        await harness.framework.start()

        await harness.framework.deploy_app(app.id, Environment.PRODUCTION)
        await harness.framework.stop()

        harness.deployer.deploy.assert_awaited_once_with(app, Environment.PRODUCTION)


class TestReactions:
    """Test the cross-subsystem reactions."""

    async def test_tested_fix_triggers_retest(self, harness: Harness, app: Application) -> None:
        """Test an applied and tested fix starts a fresh test run."""
        harness.add(app)
        await harness.framework.start()

        await harness.healing.fix_applied.publish(
            AppFixed(app=app, error=MagicMock(spec=ErrorRecord), fix=tested_fix())
        )
        await harness.framework.stop()

        harness.testing.run_all.assert_awaited_once_with(app)
        harness.healing.heal_app.assert_not_awaited()
        assert app.phase is AppPhase.RUNNING

    async def test_retest_waits_for_healing_pass(self, harness: Harness, app: Application) -> None:
        """Test the retest starts only once the pass that applied the fix has finished."""
        harness.add(app)
        await harness.framework.start()

        with harness.registry.healing.claim(app.id):
            app.phase = AppPhase.HEALING
            await harness.healing.fix_applied.publish(
                AppFixed(app=app, error=MagicMock(spec=ErrorRecord), fix=tested_fix())
            )
            await asyncio.sleep(0.01)
            harness.testing.run_all.assert_not_awaited()
            app.phase = AppPhase.RUNNING

        await harness.framework.stop()

        harness.testing.run_all.assert_awaited_once_with(app)
        assert app.phase is AppPhase.RUNNING

    async def test_fixes_from_one_pass_retest_once(self, harness: Harness, app: Application) -> None:
        """Test several tested fixes applied in one pass lead to a single retest."""
        harness.add(app)
        await harness.framework.start()

        with harness.registry.healing.claim(app.id):
            for error_id in ("error-1", "error-2"):
                await harness.healing.fix_applied.publish(
                    AppFixed(app=app, error=MagicMock(spec=ErrorRecord), fix=tested_fix(error_id))
                )

        await harness.framework.stop()

        harness.testing.run_all.assert_awaited_once_with(app)

    async def test_retest_clears_error_after_healing(self, harness: Harness, app: Application) -> None:
        """Test a failing run healed by a tested fix ends running once the retest passes."""
        harness.add(app)
        harness.suites = [suite(passed=False)]

        async def heal_app(app: Application) -> HealingReport:
            with harness.registry.healing.claim(app.id):
                saved = app.phase
                await harness.registry.set_phase(app, AppPhase.HEALING)
                harness.suites = [suite()]
                await harness.healing.fix_applied.publish(
                    AppFixed(app=app, error=MagicMock(spec=ErrorRecord), fix=tested_fix())
                )
                await asyncio.sleep(0.01)
                await harness.registry.set_phase(app, saved)
            return HealingReport(app_id=app.id)

        harness.healing.heal_app.side_effect = heal_app
        await harness.framework.start()

        await harness.framework.run_tests(app.id)
        await harness.framework.stop()

        assert harness.testing.run_all.await_count == 2
        assert app.phase is AppPhase.RUNNING

    async def test_untested_fix_does_not_retest(self, harness: Harness, app: Application) -> None:
        """Test fixes applied without validation are not retested."""
        harness.add(app)
        fix = FixCandidate(
            error_id="error-1", category=FixCategory.CODE, description="declare x", changes=(), confidence=0.9
        )
        fix.record_outcome(applied=True, tested=False, backup=None)

        await harness.healing.fix_applied.publish(AppFixed(app=app, error=MagicMock(), fix=fix))

        harness.testing.run_all.assert_not_awaited()

    async def test_passing_tests_auto_deploy(
        self, framework_config: FrameworkConfig, workspace: Workspace, app: Application
    ) -> None:
        """Test a fully passing run deploys to staging when auto-scaling is on."""
        framework_config.deployment = DeploymentConfig(auto_scale=True)
        harness = Harness(framework_config, workspace)
        harness.add(app)
        await harness.framework.start()

        await harness.framework.run_tests(app.id)
        await harness.framework.stop()

        harness.deployer.deploy.assert_awaited_once_with(app, Environment.STAGING)

    async def test_no_auto_deploy_by_default(self, harness: Harness, app: Application) -> None:
        """Test passing runs do not deploy unless auto-scaling is on."""
        harness.add(app)
        await harness.framework.start()

        await harness.framework.run_tests(app.id)
        await harness.framework.stop()

        harness.deployer.deploy.assert_not_awaited()

    async def test_successful_deployment_publishes_app_deployed(
        self, harness: Harness, app: Application
    ) -> None:
        """Test only successful deployments are announced."""
        deployed: list[AppDeployed] = []

        async def on_deployed(event: AppDeployed) -> None:
            deployed.append(event)

        harness.framework.app_deployed.subscribe(on_deployed)
        success = DeploymentRecord(app_id=app.id, environment=Environment.STAGING, status=DeploymentStatus.SUCCESS)
        failed = DeploymentRecord(app_id=app.id, environment=Environment.STAGING, status=DeploymentStatus.FAILED)

        await harness.deployer.completed.publish(DeploymentCompleted(app=app, deployment=failed))
        await harness.deployer.completed.publish(DeploymentCompleted(app=app, deployment=success))

        assert [event.deployment for event in deployed] == [success]


class TestFactory:
    """Test building the framework from configuration."""

    async def test_create_framework(self, framework_config: FrameworkConfig) -> None:
        """Test every subsystem is wired from configuration."""
        reasoning = MagicMock()
        framework = await create_framework(framework_config, reasoning=reasoning)

        assert framework.deployer.provider.name == "docker"
        assert framework.workspace.root == framework_config.workspace_dir
        assert framework.healing.fix_applied.subscriber_count == 1
        assert framework.testing.completed.subscriber_count == 1

    async def test_openai_provider(self, framework_config: FrameworkConfig) -> None:
        """Test the OpenAI adapter is chosen by default."""
        with patch("autoforge.adapters.reasoning.openai.openai.AsyncOpenAI"):
            provider = await _create_reasoning_provider(framework_config)
        assert isinstance(provider, OpenAIReasoningProvider)

    async def test_local_provider(self) -> None:
        """Test the local adapter is built from its block."""
        config = FrameworkConfig(reasoning=ReasoningConfig(provider="local", local=LocalModelConfig()))
        provider = await _create_reasoning_provider(config)
        try:
            assert isinstance(provider, LocalReasoningProvider)
        finally:
            await provider.aclose()

    async def test_missing_block(self) -> None:
        """Test a provider without its block is a configuration error."""
        config = FrameworkConfig(reasoning=ReasoningConfig(provider="local"))
        with pytest.raises(ConfigurationError, match="Local model configuration required"):
            await _create_reasoning_provider(config)


class TestHealth:
    """Test the health passthrough."""

    async def test_health(self, harness: Harness) -> None:
        """Test the report covers the configured checks."""
        with patch("autoforge.utils.health.which", return_value="/usr/bin/tool"):
            report = await harness.framework.health()
        assert report.healthy is True
