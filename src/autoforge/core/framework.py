"""Framework facade.

Wires the subsystems together and owns the reactions between them:

- an error reported against an application is handed to healing
- a fix that was applied and tested triggers a fresh test run
- a test run where every suite passed triggers a staging deployment when
  auto-scaling is enabled
- a critical alert dispatches an emergency heal
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from autoforge.config.loader import validate_config
from autoforge.config.schema import FrameworkConfig
from autoforge.core.analyzers import StaticAnalysisSuite
from autoforge.core.backup_store import BackupStore
from autoforge.core.deployment import DeploymentError, DeploymentStateMachine
from autoforge.core.events import EventChannel
from autoforge.core.fix_applicator import FixApplicator, FixValidator
from autoforge.core.fix_synthesizer import FixSynthesizer
from autoforge.core.healing import HealingOrchestrator
from autoforge.core.registry import ApplicationRegistry
from autoforge.core.test_scaffolding import SkeletonTestGenerator
from autoforge.core.testing import TestOrchestrator
from autoforge.core.workspace import Workspace
from autoforge.models.alerts import Alert
from autoforge.models.application import Application, AppPhase, AppSpecification
from autoforge.models.common import new_id
from autoforge.models.deployment import DeploymentRecord, DeploymentStatus, Environment
from autoforge.models.events import (
    AppCreated,
    AppDeployed,
    AppErrorDetected,
    AppFixed,
    AppUpdated,
    DeploymentCompleted,
    MonitoringAlert,
    TestCompleted,
)
from autoforge.models.healing import ErrorRecord, FixAttempt, HealingReport, Severity
from autoforge.models.testing import TestSuiteResult
from autoforge.utils.async_helpers import (
    ConfigurationError,
    FrameworkError,
    OperationInProgressError,
    RateLimiter,
)
from autoforge.utils.health import HealthChecker, HealthReport

if TYPE_CHECKING:
    from autoforge.interfaces.deploy import DeployProvider
    from autoforge.interfaces.generation import AppGenerator, RequirementsTranslator
    from autoforge.interfaces.reasoning import ReasoningProvider

log = structlog.get_logger()

# Phases owned by an operation in flight; a finished test run never restores them
_TRANSIENT_PHASES = frozenset({AppPhase.GENERATING, AppPhase.TESTING, AppPhase.HEALING})


class StartupError(FrameworkError):
    """Raised when the framework fails to start."""


class Framework:
    """Entry point for managing generated applications.

    Example:
        framework = await create_framework(config)
        await framework.start()
        app = await framework.register_app("todo", spec, root=Path("./todo"))
        suites = await framework.run_tests(app.id)
        record = await framework.deploy_app(app.id, Environment.STAGING)
        await framework.stop()
    """

    DEFAULT_SHUTDOWN_TIMEOUT = 30.0

    def __init__(
        self,
        config: FrameworkConfig,
        *,
        workspace: Workspace,
        registry: ApplicationRegistry,
        backups: BackupStore,
        healing: HealingOrchestrator,
        testing: TestOrchestrator,
        deployer: DeploymentStateMachine,
        reasoning: ReasoningProvider | None = None,
        translator: RequirementsTranslator | None = None,
        generator: AppGenerator | None = None,
    ) -> None:
        self._config = config
        self._workspace = workspace
        self._registry = registry
        self._backups = backups
        self._reasoning = reasoning
        self._translator = translator
        self._generator = generator

        self.healing = healing
        self.testing = testing
        self.deployer = deployer

        self.app_created: EventChannel[AppCreated] = EventChannel("app:created")
        self.app_updated: EventChannel[AppUpdated] = EventChannel("app:updated")
        self.app_deployed: EventChannel[AppDeployed] = EventChannel("app:deployed")
        self.monitoring_alert: EventChannel[MonitoringAlert] = EventChannel("monitoring:alert")

        self._running = False
        self._background: set[asyncio.Task[Any]] = set()
        # Apps whose current test run must not trigger the auto-deploy reaction
        self._quiet_runs: set[str] = set()
        # Apps with a retest waiting for the healing pass that fixed them to end
        self._pending_retests: set[str] = set()

        self.healing.fix_applied.subscribe(self._on_fix_applied)
        self.testing.completed.subscribe(self._on_tests_completed)
        self.deployer.completed.subscribe(self._on_deployment_completed)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Validate configuration, prepare the workspace and start the healing loop.

        Raises:
            ConfigurationError: If configuration is invalid or the workspace
                cannot be created.
        """
        if self._running:
            log.warning("framework_already_running")
            return

        log.info("framework_starting", workspace=str(self._workspace.root))
        validate_config(self._config)
        self._workspace.ensure()
        await self.healing.start()
        self._running = True
        log.info(
            "framework_started",
            reasoning=self._config.reasoning.provider,
            deployment=self.deployer.provider.name,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        log.info("framework_stopping")
        self._running = False
        await self.healing.stop()
        await self._wait_for_tasks()

        aclose = getattr(self._reasoning, "aclose", None)
        if aclose is not None:
            await aclose()
        log.info("framework_stopped")

    async def _wait_for_tasks(self) -> None:
        if not self._background:
            return
        log.info("waiting_for_tasks", count=len(self._background))
        _done, pending = await asyncio.wait(
            self._background, timeout=self.DEFAULT_SHUTDOWN_TIMEOUT
        )
        if pending:
            log.warning("cancelling_pending_tasks", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._log_task_failure)
        return task

    @staticmethod
    def _log_task_failure(task: asyncio.Task[Any]) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.error("background_task_failed", task=task.get_name(), error=str(task.exception()))

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def get_app(self, app_id: str) -> Application:
        return self._registry.get(app_id)

    def list_apps(self) -> list[Application]:
        return self._registry.all()

    async def register_app(
        self,
        name: str,
        specification: AppSpecification,
        root: Path | None = None,
    ) -> Application:
        """Register an existing application tree.

        Without ``root`` the tree lives at ``<workspace>/apps/<id>`` and is
        created if missing.

        Raises:
            ConfigurationError: If ``root`` is not a directory or contains the
                workspace.
        """
        app_id = new_id("app")
        if root is None:
            root = self._workspace.app_dir(app_id)
            await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
        else:
            root = Path(root).absolute()
            if not root.is_dir():
                raise ConfigurationError(f"Application root is not a directory: {root}")
            # Restores replace the whole tree, which must never include the backups
            if self._workspace.root.is_relative_to(root):
                raise ConfigurationError(
                    f"Application root {root} contains the workspace {self._workspace.root}"
                )

        app = Application(
            name=name,
            root=root,
            specification=specification,
            id=app_id,
            phase=AppPhase.RUNNING,
        )
        self._registry.add(app)
        log.info("app_registered", app_id=app.id, name=name, root=str(root))
        await self.app_created.publish(AppCreated(app=app))
        return app

    async def create_app(self, requirements: str, *, run_tests: bool = True) -> Application:
        """Translate requirements, generate the tree and register the result.

        Raises:
            ConfigurationError: If no translator or generator is configured.
        """
        if self._translator is None or self._generator is None:
            raise ConfigurationError("Application creation requires a translator and a generator")

        specification = await self._translator.translate(requirements)
        app_id = new_id("app")
        app = Application(
            name=specification.title,
            root=self._workspace.app_dir(app_id),
            specification=specification,
            id=app_id,
        )
        bound = log.bind(app_id=app.id, title=specification.title)
        bound.info("app_generation_started")

        await self._generator.generate(specification, app.root)
        self._registry.add(app)
        await self.app_created.publish(AppCreated(app=app))
        bound.info("app_generated", subprojects=app.subprojects)

        if run_tests:
            await self.run_tests(app.id)
        else:
            await self._registry.set_phase(app, AppPhase.RUNNING)
        return app

    async def delete_app(self, app_id: str) -> None:
        """Unregister an application, purge its backups and remove its tree.

        Trees registered from outside the workspace are left on disk.

        Raises:
            ApplicationNotFoundError: If the id is unknown.
            OperationInProgressError: If healing or deployment is in flight.
        """
        app = self._registry.remove(app_id)
        self.healing.forget(app_id)
        self.deployer.forget(app_id)
        await self._backups.purge(app_id)

        if app.root.is_relative_to(self._workspace.apps_dir):
            await asyncio.to_thread(shutil.rmtree, app.root, ignore_errors=True)
        log.info("app_deleted", app_id=app_id)

    # ------------------------------------------------------------------
    # Testing
    # ------------------------------------------------------------------

    async def run_tests(self, app_id: str, *, heal_on_failure: bool = True) -> list[TestSuiteResult]:
        """Run the configured suites; heal the application if any suite fails."""
        app = self._registry.get(app_id)
        return await self._run_tests(app, heal_on_failure=heal_on_failure)

    async def _run_tests(
        self, app: Application, *, heal_on_failure: bool
    ) -> list[TestSuiteResult]:
        settled = AppPhase.RUNNING if app.phase in _TRANSIENT_PHASES else app.phase
        await self._registry.set_phase(app, AppPhase.TESTING)
        try:
            suites = await self.testing.run_all(app)
        except Exception:
            await self._registry.set_phase_if(app, AppPhase.TESTING, settled)
            raise

        passed = all(suite.passed for suite in suites)
        if not passed:
            settled = AppPhase.ERROR
        elif settled is AppPhase.ERROR:
            settled = AppPhase.RUNNING
        # Another operation may have taken the app over while the suites ran
        await self._registry.set_phase_if(app, AppPhase.TESTING, settled)
        await self.app_updated.publish(AppUpdated(app=app))

        if not passed and heal_on_failure and self._config.testing.auto_fix:
            log.info(
                "tests_failed_healing",
                app_id=app.id,
                failed=[s.category.value for s in suites if not s.passed],
            )
            try:
                await self.healing.heal_app(app)
            except OperationInProgressError:
                log.info("healing_already_in_progress", app_id=app.id)
        return suites

    # ------------------------------------------------------------------
    # Healing
    # ------------------------------------------------------------------

    async def heal(self, app_id: str) -> HealingReport:
        """Run one full healing pass over an application."""
        return await self.healing.heal_app(self._registry.get(app_id))

    async def report_error(self, app_id: str, error: ErrorRecord) -> FixAttempt | None:
        """Record an externally detected error and try to fix it.

        Low-severity errors, and every error when auto-fix is disabled, are
        only recorded. If a healing pass is already running the error is
        queued for it instead.
        """
        app = self._registry.get(app_id)
        await self._registry.record_errors(app, [*app.health.errors, error])
        await self.healing.error_detected.publish(AppErrorDetected(app=app, error=error))

        if error.severity is Severity.LOW or not self._config.healing.auto_fix:
            log.info(
                "error_recorded_without_fix",
                app_id=app.id,
                severity=error.severity.value,
                auto_fix=self._config.healing.auto_fix,
            )
            return None

        try:
            return await self.healing.fix_error(app, error)
        except OperationInProgressError:
            queued = self.healing.enqueue(app, [error])
            log.info("error_queued_for_running_pass", app_id=app.id, queued=queued)
            return None

    async def raise_alert(self, alert: Alert) -> asyncio.Task[None] | None:
        """Publish a monitoring alert; critical alerts start an emergency heal."""
        app = self._registry.get(alert.app_id)
        log.warning(
            "alert_raised",
            app_id=app.id,
            alert_type=alert.type.value,
            severity=alert.severity.value,
        )
        await self.monitoring_alert.publish(MonitoringAlert(app=app, alert=alert))
        if alert.severity is Severity.CRITICAL:
            return self.healing.emergency_heal(app, alert)
        return None

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy_app(
        self,
        app_id: str,
        environment: Environment = Environment.DEVELOPMENT,
        *,
        run_tests: bool = True,
    ) -> DeploymentRecord:
        """Test the application, then deploy it.

        Raises:
            DeploymentError: If any suite fails.
            DeploymentInProgressError: If a deployment is already running.
        """
        app = self._registry.get(app_id)
        if run_tests:
            self._quiet_runs.add(app.id)
            try:
                suites = await self._run_tests(app, heal_on_failure=False)
            finally:
                self._quiet_runs.discard(app.id)
            failed = [s.name for s in suites if not s.passed]
            if failed:
                log.warning("deployment_blocked_by_tests", app_id=app.id, failed=failed)
                raise DeploymentError(f"Tests failed, not deploying: {', '.join(failed)}")
        return await self.deployer.deploy(app, environment)

    def deployment_status(self, deployment_id: str) -> DeploymentRecord | None:
        return self.deployer.get(deployment_id)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> HealthReport:
        return await HealthChecker(self._config).run_all_checks()

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def _on_fix_applied(self, event: AppFixed) -> None:
        if not event.fix.tested:
            return
        app = event.app
        if app.id in self._pending_retests:
            log.debug("retest_already_pending", app_id=app.id, fix_id=event.fix.id)
            return
        self._pending_retests.add(app.id)
        log.info("retest_scheduled", app_id=app.id, fix_id=event.fix.id)
        self._spawn(self._retest_after_healing(app), name=f"retest-{app.id}")

    async def _retest_after_healing(self, app: Application) -> None:
        """Re-run the suites once, after the pass that applied the fixes releases the tree."""
        try:
            await self._registry.healing.wait_idle(app.id)
        finally:
            self._pending_retests.discard(app.id)
        if app.id not in self._registry:
            return
        log.info("retesting_after_fix", app_id=app.id)
        await self._run_tests(app, heal_on_failure=False)

    async def _on_tests_completed(self, event: TestCompleted) -> None:
        if not (event.all_passed and self._config.deployment.auto_scale):
            return
        if event.app.id in self._quiet_runs or self._registry.deployment.is_active(event.app.id):
            return
        log.info("auto_deploying_to_staging", app_id=event.app.id)
        self._spawn(
            self.deployer.deploy(event.app, Environment.STAGING),
            name=f"auto-deploy-{event.app.id}",
        )

    async def _on_deployment_completed(self, event: DeploymentCompleted) -> None:
        if event.deployment.status is DeploymentStatus.SUCCESS:
            await self.app_deployed.publish(AppDeployed(app=event.app, deployment=event.deployment))


async def create_framework(
    config: FrameworkConfig,
    *,
    translator: RequirementsTranslator | None = None,
    generator: AppGenerator | None = None,
    reasoning: ReasoningProvider | None = None,
    deploy_provider: DeployProvider | None = None,
) -> Framework:
    """Factory function to create a Framework with all subsystems.

    Providers not passed in are built from configuration.

    Raises:
        ConfigurationError: If a configured provider cannot be built.
    """
    from autoforge.adapters.deploy import create_deploy_provider

    workspace = Workspace(config.workspace_dir)
    registry = ApplicationRegistry()
    backups = BackupStore(workspace)

    if reasoning is None:
        reasoning = await _create_reasoning_provider(config)
    if deploy_provider is None:
        deploy_provider = create_deploy_provider(config.deployment)

    synthesizer = FixSynthesizer(
        reasoning,
        context_lines=config.healing.context_lines,
        rate_limiter=RateLimiter(config.reasoning.requests_per_second),
    )
    healing = HealingOrchestrator(
        config.healing,
        registry=registry,
        analyzers=StaticAnalysisSuite.from_config(config.healing),
        synthesizer=synthesizer,
        applicator=FixApplicator(),
        validator=FixValidator(config.healing, enabled=config.testing.auto_fix),
        backups=backups,
    )
    testing = TestOrchestrator(
        config.testing,
        generator=SkeletonTestGenerator(),
        log_dir=workspace.logs_dir,
    )
    deployer = DeploymentStateMachine(
        config.deployment,
        provider=deploy_provider,
        registry=registry,
        backups=backups,
    )

    return Framework(
        config,
        workspace=workspace,
        registry=registry,
        backups=backups,
        healing=healing,
        testing=testing,
        deployer=deployer,
        reasoning=reasoning,
        translator=translator,
        generator=generator,
    )


async def _create_reasoning_provider(config: FrameworkConfig) -> ReasoningProvider:
    """Create a reasoning adapter based on configuration.

    Raises:
        ConfigurationError: If the selected provider's block is missing.
    """
    reasoning = config.reasoning
    provider = reasoning.provider

    if provider == "openai":
        if not reasoning.openai:
            raise ConfigurationError("OpenAI configuration required when provider is 'openai'")
        # Import here to avoid loading unnecessary dependencies
        from autoforge.adapters.reasoning.openai import OpenAIReasoningProvider

        return OpenAIReasoningProvider(reasoning.openai, max_retries=reasoning.max_retries)

    if provider == "anthropic":
        if not reasoning.anthropic:
            raise ConfigurationError(
                "Anthropic configuration required when provider is 'anthropic'"
            )
        from autoforge.adapters.reasoning.anthropic import AnthropicReasoningProvider

        return AnthropicReasoningProvider(reasoning.anthropic, max_retries=reasoning.max_retries)

    if provider == "local":
        if not reasoning.local:
            raise ConfigurationError("Local model configuration required when provider is 'local'")
        from autoforge.adapters.reasoning.local import LocalReasoningProvider

        return LocalReasoningProvider(reasoning.local, max_retries=reasoning.max_retries)

    raise ConfigurationError(f"Unsupported reasoning provider: {provider}")
