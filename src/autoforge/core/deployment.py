"""Deployment state machine.

    Pending -> Deploying -> (Success | Failed) [-> RolledBack]

A deployment runs pre-checks, builds, hands off to the configured provider
and verifies the result. Every step appends a line to the record's log so
the record doubles as the audit trail. Once started a deployment always
reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections import defaultdict
from collections.abc import Callable
from pathlib import Path

import httpx
import structlog
from cachetools import TTLCache
from structlog.contextvars import bound_contextvars

from autoforge.config.schema import DeploymentConfig
from autoforge.core.backup_store import BackupError, BackupStore
from autoforge.core.events import EventChannel
from autoforge.core.registry import ApplicationRegistry
from autoforge.interfaces.deploy import DeployContext, DeployProvider
from autoforge.models.application import Application, AppPhase
from autoforge.models.common import utc_now
from autoforge.models.deployment import DeploymentRecord, DeploymentStatus, Environment
from autoforge.models.events import DeploymentCompleted, DeploymentStarted
from autoforge.models.healing import Backup
from autoforge.utils.async_helpers import FrameworkError, OperationInProgressError
from autoforge.utils.metrics import get_metrics
from autoforge.utils.process import CommandError, run_command

log = structlog.get_logger()

OUTPUT_EXCERPT_CHARS = 1000
SMOKE_TEST_SCRIPT = Path("scripts/smoke-test.js")


class DeploymentError(FrameworkError):
    """Base exception for fatal deployment failures."""


class PrecheckError(DeploymentError):
    """A file required for deployment is missing."""


class BuildError(DeploymentError):
    """The application failed to build."""


class ProviderError(DeploymentError):
    """The deployment provider is unavailable or its deploy failed."""


class StartupTimeoutError(DeploymentError):
    """The deployed application did not respond in time."""


class SmokeTestError(DeploymentError):
    """The application's smoke test failed."""


class DeploymentInProgressError(DeploymentError, OperationInProgressError):
    """A deployment is already running for the application."""

    def __init__(self, app_id: str) -> None:
        OperationInProgressError.__init__(self, "deployment", app_id)


def read_env_keys(path: Path) -> list[str]:
    """Variable names declared in a dotenv-style file."""
    keys = []
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key = line.split("=", 1)[0].removeprefix("export ").strip()
        if key:
            keys.append(key)
    return keys


def _has_script(directory: Path, script: str) -> bool:
    try:
        manifest = json.loads((directory / "package.json").read_text())
    except (OSError, ValueError):
        return False
    return isinstance(manifest, dict) and script in (manifest.get("scripts") or {})


def _excerpt(text: str) -> str:
    text = text.strip()
    return text if len(text) <= OUTPUT_EXCERPT_CHARS else text[:OUTPUT_EXCERPT_CHARS] + "..."


class DeploymentStateMachine:
    """Deploys applications through one provider and keeps their records.

    Active records are cached for ``record_ttl`` seconds; every record also
    stays in its application's history.

    Example:
        deployer = DeploymentStateMachine(
            config.deployment, provider=provider, registry=registry, backups=backups
        )
        record = await deployer.deploy(app, Environment.STAGING)
        print(record.status, record.url)
    """

    def __init__(
        self,
        config: DeploymentConfig,
        *,
        provider: DeployProvider,
        registry: ApplicationRegistry,
        backups: BackupStore,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._registry = registry
        self._backups = backups
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=10.0, follow_redirects=True)
        )
        self._records: TTLCache[str, DeploymentRecord] = TTLCache(
            maxsize=1024,
            ttl=config.record_ttl,
        )
        self._history: dict[str, list[DeploymentRecord]] = defaultdict(list)

        self.started: EventChannel[DeploymentStarted] = EventChannel("deployment:started")
        self.completed: EventChannel[DeploymentCompleted] = EventChannel("deployment:completed")

    @property
    def provider(self) -> DeployProvider:
        return self._provider

    def get(self, deployment_id: str) -> DeploymentRecord | None:
        record = self._records.get(deployment_id)
        if record is not None:
            return record
        for records in self._history.values():
            for candidate in records:
                if candidate.id == deployment_id:
                    return candidate
        return None

    def history(self, app_id: str) -> list[DeploymentRecord]:
        """All deployment records for an application, oldest first."""
        return list(self._history.get(app_id, ()))

    def logs(self, deployment_id: str) -> list[str]:
        record = self.get(deployment_id)
        return list(record.logs) if record else []

    def forget(self, app_id: str) -> None:
        for record in self._history.pop(app_id, []):
            self._records.pop(record.id, None)

    async def deploy(
        self,
        app: Application,
        environment: Environment = Environment.DEVELOPMENT,
    ) -> DeploymentRecord:
        """Run one deployment to a terminal state and return its record.

        Fatal failures do not raise; they end in ``failed`` or ``rolled_back``.

        Raises:
            DeploymentInProgressError: If a deployment is already running for the app.
        """
        if self._registry.deployment.is_active(app.id):
            log.warning("deployment_rejected", app_id=app.id)
            raise DeploymentInProgressError(app.id)

        with (
            self._registry.deployment.claim(app.id),
            bound_contextvars(app_id=app.id, environment=environment.value),
        ):
            record = DeploymentRecord(app_id=app.id, environment=environment)
            self._records[record.id] = record
            self._history[app.id].append(record)
            await self.started.publish(DeploymentStarted(app=app, deployment=record))

            previous_phase = app.phase
            await self._registry.set_phase(app, AppPhase.DEPLOYING)
            context = DeployContext(
                app=app,
                environment=environment,
                record=record,
                timeout=self._config.deploy_timeout,
            )
            bound = log.bind(app_id=app.id, deployment_id=record.id, environment=environment.value)
            started = time.perf_counter()
            backup: Backup | None = None
            provider_invoked = False

            try:
                record.transition(DeploymentStatus.DEPLOYING)
                record.log(f"Starting deployment to {environment} at {utc_now().isoformat()}")
                bound.info("deployment_started", provider=self._provider.name)

                await self._prechecks(app, record)

                if environment is not Environment.DEVELOPMENT:
                    backup = await self._backups.create(app)
                    record.log(f"Snapshot {backup.backup_id} taken")

                await self._build(app, record)

                provider_invoked = True
                record.url = await self._provider_deploy(context)

                await self._post_checks(app, record)

                record.transition(DeploymentStatus.SUCCESS)
                record.log(f"Deployment completed successfully at {utc_now().isoformat()}")
                bound.info("deployment_succeeded", url=record.url)

            except Exception as e:
                record.transition(DeploymentStatus.FAILED)
                record.log(f"Deployment failed: {e}")
                bound.error("deployment_failed", error=str(e), error_type=type(e).__name__)
                if environment is not Environment.DEVELOPMENT and self._config.rollback_on_failure:
                    await self._rollback(context, backup, provider_invoked=provider_invoked)

            finally:
                record.duration_ms = int((time.perf_counter() - started) * 1000)
                metrics = get_metrics()
                metrics.deployments.inc(
                    labels={"environment": environment.value, "status": record.status.value}
                )
                metrics.deployment_duration.observe(
                    record.duration_ms / 1000, labels={"environment": environment.value}
                )
                next_phase = (
                    AppPhase.RUNNING if record.status is DeploymentStatus.SUCCESS else previous_phase
                )
                await self._registry.set_phase(app, next_phase)

            await self.completed.publish(DeploymentCompleted(app=app, deployment=record))
            return record

    async def _prechecks(self, app: Application, record: DeploymentRecord) -> None:
        record.log("Running pre-deployment checks...")
        subprojects = app.subprojects
        if not subprojects and not (app.root / "package.json").is_file():
            raise PrecheckError(f"Nothing to deploy in {app.root}")

        for name in subprojects:
            if not (app.root / name / "package.json").is_file():
                raise PrecheckError(f"Required file not found: {name}/package.json")

        env_example = app.root / ".env.example"
        if env_example.is_file():
            env_file = app.root / ".env"
            declared = set(read_env_keys(env_file)) if env_file.is_file() else set()
            missing = [
                key
                for key in read_env_keys(env_example)
                if key not in declared and key not in os.environ
            ]
            if missing:
                record.log(f"Warning: Missing environment variables: {', '.join(missing)}")
                log.warning("deployment_env_missing", app_id=app.id, variables=missing)

        record.log("Pre-deployment checks completed")

    async def _build(self, app: Application, record: DeploymentRecord) -> None:
        record.log("Building application...")
        if _has_script(app.root, "build"):
            targets = [app.root]
        else:
            targets = [app.root / name for name in app.subprojects if _has_script(app.root / name, "build")]

        if not targets:
            record.log("No build script declared, skipping build")
            return

        for directory in targets:
            try:
                result = await run_command(
                    ["npm", "run", "build"],
                    cwd=directory,
                    timeout=self._config.build_timeout,
                )
            except CommandError as e:
                record.log(f"Build failed: {e}")
                raise BuildError(f"Build failed: {e}") from e
            if not result.success:
                record.log(f"Build failed: {_excerpt(result.output_tail())}")
                raise BuildError(f"Build failed in {directory.name}: exit code {result.return_code}")
            if result.stdout:
                record.log(f"Build output: {_excerpt(result.stdout)}")

        record.log("Build completed successfully")

    async def _provider_deploy(self, context: DeployContext) -> str | None:
        record = context.record
        record.log(f"Deploying with {self._provider.name}...")
        if not await self._provider.check_available():
            raise ProviderError(f"{self._provider.name} CLI is not installed or not responding")
        try:
            url = await self._provider.deploy(context)
        except CommandError as e:
            raise ProviderError(f"{self._provider.name} deployment failed: {e}") from e
        record.log(f"Deployment URL: {url}" if url else "Provider reported no URL")
        return url

    async def _post_checks(self, app: Application, record: DeploymentRecord) -> None:
        record.log("Running post-deployment checks...")
        if not record.url:
            record.log("No deployment URL available, skipping health checks")
            return

        async with self._client_factory() as client:
            try:
                await self._wait_for_url(record.url, record, client)
            except StartupTimeoutError as e:
                record.log(str(e))
                if record.environment is Environment.PRODUCTION:
                    raise
                log.warning("startup_timeout", app_id=app.id, deployment_id=record.id)
                return
            if self._config.health_checks:
                await self._health_checks(record, client)

        await self._smoke_test(app, record)
        record.log("Post-deployment checks completed")

    async def _wait_for_url(
        self, url: str, record: DeploymentRecord, client: httpx.AsyncClient
    ) -> None:
        record.log(f"Waiting for application to start at {url}...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.startup_timeout
        while True:
            try:
                response = await client.get(url)
                if response.is_success:
                    record.log("Application is responding")
                    return
            except httpx.HTTPError:
                pass
            if loop.time() + self._config.poll_interval > deadline:
                raise StartupTimeoutError(
                    f"Application did not start within {self._config.startup_timeout:.0f} seconds"
                )
            await asyncio.sleep(self._config.poll_interval)

    async def _health_checks(self, record: DeploymentRecord, client: httpx.AsyncClient) -> None:
        record.log("Running health checks...")
        base = (record.url or "").rstrip("/")
        for path in self._config.health_paths:
            url = base + path
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                record.log(f"Health check failed: {url} - {e}")
                continue
            if response.is_success:
                record.log(f"Health check passed: {url}")
            else:
                record.log(f"Health check warning: {url} returned {response.status_code}")

    async def _smoke_test(self, app: Application, record: DeploymentRecord) -> None:
        script = app.root / SMOKE_TEST_SCRIPT
        if not script.is_file():
            record.log("No smoke test script found, skipping")
            return

        record.log("Running smoke tests...")
        try:
            result = await run_command(
                ["node", str(script)],
                cwd=app.root,
                timeout=self._config.smoke_test_timeout,
                env={"BASE_URL": record.url or ""},
            )
            failure = None if result.success else _excerpt(result.output_tail())
        except CommandError as e:
            failure = str(e)

        if failure is None:
            record.log("Smoke tests passed")
            return

        record.log(f"Smoke tests failed: {failure}")
        if record.environment is Environment.PRODUCTION:
            raise SmokeTestError(f"Smoke tests failed: {failure}")
        log.warning("smoke_tests_failed", app_id=app.id, deployment_id=record.id)

    async def _rollback(
        self, context: DeployContext, backup: Backup | None, *, provider_invoked: bool
    ) -> None:
        record = context.record
        record.log("Starting rollback...")
        try:
            if backup is not None:
                await self._backups.restore(context.app, backup)
                record.log(f"Working tree restored from {backup.backup_id}")
            if provider_invoked:
                await self._provider.rollback(context)
                record.log(f"{self._provider.name} rolled back to the previous release")
        except (BackupError, DeploymentError, CommandError) as e:
            record.log(f"Rollback failed: {e}")
            log.error("rollback_failed", app_id=context.app.id, deployment_id=record.id, error=str(e))
            return

        record.transition(DeploymentStatus.ROLLED_BACK)
        record.log("Rollback completed")
        log.info("deployment_rolled_back", app_id=context.app.id, deployment_id=record.id)
