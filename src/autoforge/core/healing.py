"""Healing orchestrator.

Drives the per-application healing state machine::

    Idle -> Analyzing -> Queued -> Fixing -> Validating -> (Applied | RolledBack) -> Idle

Only critical and high severity errors are fixed automatically; medium and
low errors are kept on a per-application deferred list for manual handling.
Every fix attempt is bracketed by a backup so a failed apply or a failed
validation leaves the working tree exactly as it was.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum
from typing import Any

import structlog
from structlog.contextvars import bound_contextvars

from autoforge.config.schema import HealingConfig
from autoforge.core.analyzers import DependencyAuditAnalyzer, StaticAnalysisSuite
from autoforge.core.backup_store import BackupError, BackupStore
from autoforge.core.events import EventChannel
from autoforge.core.fix_applicator import FixApplicator, FixValidator
from autoforge.core.fix_synthesizer import FixSynthesizer
from autoforge.core.registry import ApplicationRegistry
from autoforge.models.alerts import Alert, AlertType
from autoforge.models.application import Application, AppPhase
from autoforge.models.events import AppErrorDetected, AppFixed
from autoforge.models.healing import (
    Backup,
    ErrorKind,
    ErrorRecord,
    FixAttempt,
    FixCandidate,
    FixStatus,
    HealingReport,
)
from autoforge.utils.async_helpers import (
    CancellationToken,
    FrameworkError,
    OperationInProgressError,
)
from autoforge.utils.metrics import Timer, get_metrics

log = structlog.get_logger()

EmergencyHandler = Callable[[Application, Alert], Awaitable[None]]


class HealingState(StrEnum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    QUEUED = "queued"
    FIXING = "fixing"
    VALIDATING = "validating"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class HealingError(FrameworkError):
    """Base exception for healing errors."""


class HealingInProgressError(HealingError, OperationInProgressError):
    """A healing pass is already running for the application."""

    def __init__(self, app_id: str) -> None:
        OperationInProgressError.__init__(self, "healing", app_id)


class RollbackFailedError(HealingError):
    """Restoring the pre-fix backup failed; the working tree is in an unknown state."""


def _error_key(error: ErrorRecord) -> tuple[str, str, int, str]:
    return (error.kind.value, error.file, error.line, error.message)


class HealingOrchestrator:
    """Analyzes applications, queues their errors and drains the queues.

    Entry points:
        heal_app: full analyze, queue and drain pass.
        fix_error: single targeted attempt for one error.
        emergency_heal: dispatch an alert to its handler in the background.

    A continuous loop started with ``start()`` sweeps every registered
    application with a non-empty queue every ``loop_interval`` seconds.

    Example:
        orchestrator = HealingOrchestrator(
            config.healing,
            registry=registry,
            analyzers=StaticAnalysisSuite.from_config(config.healing),
            synthesizer=FixSynthesizer(provider),
            applicator=FixApplicator(),
            validator=FixValidator(config.healing),
            backups=BackupStore(workspace),
        )
        orchestrator.fix_applied.subscribe(on_fixed)
        report = await orchestrator.heal_app(app)
    """

    DEFAULT_SHUTDOWN_TIMEOUT = 30.0

    def __init__(
        self,
        config: HealingConfig,
        *,
        registry: ApplicationRegistry,
        analyzers: StaticAnalysisSuite,
        synthesizer: FixSynthesizer,
        applicator: FixApplicator,
        validator: FixValidator,
        backups: BackupStore,
    ) -> None:
        self._config = config
        self._registry = registry
        self._analyzers = analyzers
        self._synthesizer = synthesizer
        self._applicator = applicator
        self._validator = validator
        self._backups = backups

        self.fix_applied: EventChannel[AppFixed] = EventChannel("app:fixed")
        self.error_detected: EventChannel[AppErrorDetected] = EventChannel("app:error")

        self._queues: dict[str, list[ErrorRecord]] = defaultdict(list)
        self._deferred: dict[str, list[ErrorRecord]] = defaultdict(list)
        self._attempt_counts: dict[str, int] = defaultdict(int)
        self._states: dict[str, HealingState] = {}

        self._handlers: dict[AlertType, EmergencyHandler] = {
            AlertType.ERROR: self._handle_error_alert,
            AlertType.SECURITY: self._handle_security_alert,
            AlertType.PERFORMANCE: self._handle_degradation_alert,
            AlertType.AVAILABILITY: self._handle_degradation_alert,
        }

        self._token: CancellationToken | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self._stats: dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def stats(self) -> dict[str, int]:
        """Counters since construction: sweeps and attempts by outcome."""
        return {
            "sweeps": self._stats["sweeps"],
            "applied": self._stats[FixStatus.APPLIED],
            "rolled_back": self._stats[FixStatus.ROLLED_BACK],
            "no_fix": self._stats[FixStatus.NO_FIX],
            "apply_failed": self._stats[FixStatus.APPLY_FAILED],
            "errored": self._stats[FixStatus.ERRORED],
            "dropped": self._stats["dropped"],
            "queued": sum(len(q) for q in self._queues.values()),
            "deferred": sum(len(d) for d in self._deferred.values()),
        }

    def state(self, app_id: str) -> HealingState:
        return self._states.get(app_id, HealingState.IDLE)

    def queue(self, app_id: str) -> list[ErrorRecord]:
        """Actionable errors waiting to be fixed, in processing order."""
        return list(self._queues.get(app_id, ()))

    def deferred(self, app_id: str) -> list[ErrorRecord]:
        """Errors left for manual handling."""
        return list(self._deferred.get(app_id, ()))

    def forget(self, app_id: str) -> None:
        """Drop every queue and state entry for a deleted application."""
        for error in self._queues.pop(app_id, []):
            self._attempt_counts.pop(error.id, None)
        self._deferred.pop(app_id, None)
        self._states.pop(app_id, None)

    def _set_state(self, app_id: str, state: HealingState) -> None:
        self._states[app_id] = state
        log.debug("healing_state", app_id=app_id, state=state.value)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def enqueue(self, app: Application, errors: Iterable[ErrorRecord]) -> int:
        """Queue actionable errors and defer the rest.

        Errors already queued or deferred (same kind, location and message)
        are skipped, so repeated passes over an unchanged tree add nothing.

        Returns:
            Number of errors added to the actionable queue.
        """
        queue = self._queues[app.id]
        queued_keys = {_error_key(e) for e in queue}
        added = 0
        for error in errors:
            if not error.severity.is_actionable:
                self._defer(app, error)
                continue
            key = _error_key(error)
            if key in queued_keys:
                continue
            queue.append(error)
            queued_keys.add(key)
            added += 1

        if added:
            self._set_state(app.id, HealingState.QUEUED)
        log.info("errors_queued", app_id=app.id, added=added, queued=len(queue))
        return added

    def _defer(self, app: Application, error: ErrorRecord) -> None:
        """Record an error for manual handling unless an identical one already is."""
        deferred = self._deferred[app.id]
        key = _error_key(error)
        if any(_error_key(e) == key for e in deferred):
            return
        deferred.append(error)
        log.debug("error_deferred", app_id=app.id, error_id=error.id, severity=error.severity.value)

    def _settle(self, app: Application, error: ErrorRecord) -> None:
        """Remove an error from the queue once fixed or out of retries."""
        queue = self._queues.get(app.id)
        if queue is None or error not in queue:
            return
        if error.succeeded:
            queue.remove(error)
            self._attempt_counts.pop(error.id, None)
        elif self._attempt_counts[error.id] >= self._config.retry_attempts:
            queue.remove(error)
            self._attempt_counts.pop(error.id, None)
            self._stats["dropped"] += 1
            log.warning(
                "error_dropped_after_retries",
                app_id=app.id,
                error_id=error.id,
                location=error.location,
                attempts=self._config.retry_attempts,
            )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _ensure_idle(self, app: Application) -> None:
        if self._registry.healing.is_active(app.id):
            log.warning("healing_rejected", app_id=app.id)
            raise HealingInProgressError(app.id)

    async def heal_app(self, app: Application) -> HealingReport:
        """Analyze ``app``, queue what was found and drain the queue.

        Raises:
            HealingInProgressError: If a healing pass is already running for the app.
        """
        self._ensure_idle(app)
        with self._registry.healing.claim(app.id), bound_contextvars(app_id=app.id):
            previous_phase = app.phase
            halted = False
            await self._registry.set_phase(app, AppPhase.HEALING)
            report = HealingReport(app_id=app.id)
            try:
                self._set_state(app.id, HealingState.ANALYZING)
                errors = await self._analyzers.analyze(app.root)
                report.detected = len(errors)
                await self._registry.record_errors(app, errors)
                for error in errors:
                    await self.error_detected.publish(AppErrorDetected(app=app, error=error))

                self.enqueue(app, errors)
                report.deferred = self.deferred(app.id)
                halted = not await self._drain(app, report)
            finally:
                self._set_state(app.id, HealingState.IDLE)
                await self._registry.refresh_health(app)
                if not halted:
                    await self._registry.set_phase(app, previous_phase)
                report.finish()

        log.info(
            "healing_complete",
            app_id=app.id,
            detected=report.detected,
            applied=len(report.applied),
            failed=len(report.failed),
            deferred=len(report.deferred),
        )
        return report

    async def fix_error(self, app: Application, error: ErrorRecord) -> FixAttempt:
        """Run one targeted fix attempt for ``error``, bypassing the queue.

        Raises:
            HealingInProgressError: If a healing pass is already running for the app.
            RollbackFailedError: If the backup could not be restored after a failure.
        """
        self._ensure_idle(app)
        with self._registry.healing.claim(app.id), bound_contextvars(app_id=app.id):
            try:
                attempt = await self._attempt(app, error)
            finally:
                self._set_state(app.id, HealingState.IDLE)
            self._settle(app, error)
            await self._registry.refresh_health(app)
            return attempt

    async def _drain(self, app: Application, report: HealingReport) -> bool:
        """Attempt every queued error once, in queue order. Caller holds the claim.

        Returns:
            False if the drain was halted by a failed restore.
        """
        for error in list(self._queues.get(app.id, ())):
            try:
                attempt = await self._attempt(app, error)
            except RollbackFailedError as e:
                # The tree is in an unknown state; no further fix may be applied to it
                log.critical("healing_halted", app_id=app.id, error_id=error.id, error=str(e))
                report.attempts.append(FixAttempt(error=error, status=FixStatus.ERRORED, detail=str(e)))
                await self._registry.set_phase(app, AppPhase.ERROR)
                return False
            report.attempts.append(attempt)
            self._settle(app, error)
        return True

    async def _drain_claimed(self, app: Application) -> HealingReport:
        with self._registry.healing.claim(app.id), bound_contextvars(app_id=app.id):
            report = HealingReport(app_id=app.id)
            try:
                await self._drain(app, report)
            finally:
                self._set_state(app.id, HealingState.IDLE)
                await self._registry.refresh_health(app)
                report.finish()
            return report

    async def drain(self, app: Application) -> HealingReport | None:
        """Drain the app's queue now, or None if a healing pass is already running."""
        if self._registry.healing.is_active(app.id):
            log.debug("drain_skipped_busy", app_id=app.id)
            return None
        return await self._drain_claimed(app)

    # ------------------------------------------------------------------
    # Single fix attempt
    # ------------------------------------------------------------------

    async def _restore(self, app: Application, backup: Backup) -> None:
        try:
            await self._backups.restore(app, backup)
        except BackupError as e:
            raise RollbackFailedError(
                f"Could not restore {backup.backup_id} for {app.id}: {e}"
            ) from e

    async def _attempt(self, app: Application, error: ErrorRecord) -> FixAttempt:
        """Propose, back up, apply and validate a fix for one error.

        Any failure other than a failed restore is reported as a failed
        attempt for this error only.
        """
        self._attempt_counts[error.id] += 1
        bound = log.bind(app_id=app.id, error_id=error.id, location=error.location)
        fix: FixCandidate | None = None
        backup: Backup | None = None

        try:
            self._set_state(app.id, HealingState.FIXING)
            fix = await self._synthesizer.propose(app, error)
            if fix is None:
                bound.info("fix_abandoned", reason="no fix available")
                return self._record(FixAttempt(error=error, status=FixStatus.NO_FIX))

            backup = await self._backups.create(app)

            if not await self._applicator.apply(app, fix):
                await self._restore(app, backup)
                fix.record_outcome(applied=False, tested=False, backup=backup)
                error.mark_attempted(False)
                bound.warning("fix_apply_failed_restored", fix_id=fix.id, backup_id=backup.backup_id)
                return self._record(
                    FixAttempt(error=error, status=FixStatus.APPLY_FAILED, fix=fix, detail="apply failed")
                )

            self._set_state(app.id, HealingState.VALIDATING)
            validation = await self._validator.validate(app)

            if not validation and self._config.rollback_threshold > 0:
                await self._restore(app, backup)
                fix.record_outcome(applied=False, tested=False, backup=backup)
                error.mark_attempted(False)
                self._set_state(app.id, HealingState.ROLLED_BACK)
                bound.warning(
                    "fix_rolled_back",
                    fix_id=fix.id,
                    stage=validation.failed_stage,
                    backup_id=backup.backup_id,
                )
                return self._record(
                    FixAttempt(
                        error=error,
                        status=FixStatus.ROLLED_BACK,
                        fix=fix,
                        detail=f"validation failed at {validation.failed_stage}",
                    )
                )

            fix.record_outcome(applied=True, tested=bool(validation), backup=backup)
            error.mark_attempted(True)
            self._set_state(app.id, HealingState.APPLIED)
            bound.info("fix_applied", fix_id=fix.id, tested=fix.tested, category=fix.category.value)

            if self._config.notify_on_fix:
                await self.fix_applied.publish(AppFixed(app=app, error=error, fix=fix))

            return self._record(FixAttempt(error=error, status=FixStatus.APPLIED, fix=fix))

        except RollbackFailedError:
            error.mark_attempted(False)
            self._record(FixAttempt(error=error, status=FixStatus.ERRORED, fix=fix))
            raise
        except Exception as e:
            bound.exception("fix_attempt_error", error=str(e))
            if backup is not None:
                await self._restore(app, backup)
            if fix is not None and not fix.sealed:
                fix.record_outcome(applied=False, tested=False, backup=backup)
            error.mark_attempted(False)
            return self._record(
                FixAttempt(error=error, status=FixStatus.ERRORED, fix=fix, detail=str(e))
            )

    def _record(self, attempt: FixAttempt) -> FixAttempt:
        self._stats[attempt.status] += 1
        get_metrics().fix_attempts.inc(labels={"status": attempt.status.value})
        return attempt

    # ------------------------------------------------------------------
    # Continuous loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the continuous healing loop in the background."""
        if self.is_running:
            log.warning("healing_loop_already_running")
            return
        self._token = CancellationToken()
        self._loop_task = asyncio.create_task(self._run_loop(self._token), name="healing-loop")

    async def stop(self) -> None:
        """Stop the loop, letting in-flight fix attempts finish."""
        if self._token is not None:
            self._token.cancel()
        if self._loop_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        await self._wait_for_background()
        log.info("healing_stopped", **self.stats)

    async def _run_loop(self, token: CancellationToken) -> None:
        log.info("healing_loop_started", interval=self._config.loop_interval)
        while not token.is_cancelled:
            await self.sweep_once(token)
            if await token.sleep(self._config.loop_interval):
                break
        log.info("healing_loop_stopped")

    async def sweep_once(self, token: CancellationToken | None = None) -> list[HealingReport]:
        """Drain every registered application with a non-empty queue.

        Applications already being healed are skipped this tick.
        """
        apps = [app for app in self._registry.all() if self._queues.get(app.id)]
        if not apps:
            return []

        self._stats["sweeps"] += 1
        metrics = get_metrics()

        async def sweep(app: Application) -> HealingReport | None:
            if token is not None and token.is_cancelled:
                return None
            if self._registry.healing.is_active(app.id):
                log.debug("sweep_skipped_busy", app_id=app.id)
                return None
            metrics.active_sweeps.inc()
            try:
                with Timer(metrics.sweep_duration):
                    return await self._drain_claimed(app)
            finally:
                metrics.active_sweeps.dec()

        results = await asyncio.gather(*(sweep(app) for app in apps), return_exceptions=True)

        reports: list[HealingReport] = []
        for app, result in zip(apps, results, strict=True):
            if isinstance(result, BaseException):
                log.error("healing_sweep_failed", app_id=app.id, error=str(result))
            elif result is not None:
                reports.append(result)
        return reports

    # ------------------------------------------------------------------
    # Emergency path
    # ------------------------------------------------------------------

    def register_emergency_handler(self, alert_type: AlertType, handler: EmergencyHandler) -> None:
        """Replace the handler for one alert type."""
        self._handlers[alert_type] = handler

    def emergency_heal(self, app: Application, alert: Alert) -> asyncio.Task[None]:
        """Dispatch ``alert`` to its handler as a background task."""
        handler = self._handlers[alert.type]
        log.warning(
            "emergency_heal",
            app_id=app.id,
            alert_id=alert.id,
            alert_type=alert.type.value,
            severity=alert.severity.value,
        )
        task = asyncio.create_task(handler(app, alert), name=f"emergency-{alert.id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(lambda t: self._log_emergency_outcome(app, alert, t))
        return task

    @staticmethod
    def _log_emergency_outcome(app: Application, alert: Alert, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            log.warning("emergency_handler_cancelled", app_id=app.id, alert_id=alert.id)
        elif task.exception() is not None:
            log.error(
                "emergency_handler_failed",
                app_id=app.id,
                alert_id=alert.id,
                error=str(task.exception()),
            )
        else:
            log.info("emergency_handler_finished", app_id=app.id, alert_id=alert.id)

    async def _handle_error_alert(self, app: Application, alert: Alert) -> None:
        error = ErrorRecord(
            kind=ErrorKind.RUNTIME,
            severity=alert.severity,
            file="",
            line=0,
            message=alert.message,
        )
        await self.error_detected.publish(AppErrorDetected(app=app, error=error))
        self.enqueue(app, [error])
        await self.drain(app)

    async def _handle_security_alert(self, app: Application, alert: Alert) -> None:
        audit = self._analyzers.get("audit") or DependencyAuditAnalyzer(self._config.audit_timeout)
        findings = await audit.analyze(app.root)
        log.info("security_audit_findings", app_id=app.id, alert_id=alert.id, findings=len(findings))
        for error in findings:
            await self.error_detected.publish(AppErrorDetected(app=app, error=error))
        self.enqueue(app, findings)
        await self.drain(app)

    async def _handle_degradation_alert(self, app: Application, alert: Alert) -> None:
        kind = ErrorKind.PERFORMANCE if alert.type is AlertType.PERFORMANCE else ErrorKind.RUNTIME
        error = ErrorRecord(kind=kind, severity=alert.severity, file="", line=0, message=alert.message)
        self._defer(app, error)
        log.warning(
            "degradation_recorded",
            app_id=app.id,
            alert_type=alert.type.value,
            message=alert.message,
        )

    async def _wait_for_background(self) -> None:
        if not self._background:
            return
        log.info("waiting_for_emergency_tasks", count=len(self._background))
        done, pending = await asyncio.wait(self._background, timeout=self.DEFAULT_SHUTDOWN_TIMEOUT)
        if pending:
            log.warning("cancelling_emergency_tasks", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
