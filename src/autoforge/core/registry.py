"""Application-keyed exclusive-access registry.

Holds the registered applications, enforces at most one in-flight healing
pass and one in-flight deployment per application id, and serializes writes
to an application's phase and health across subsystems.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from autoforge.models.application import Application, AppPhase, HealthLevel
from autoforge.models.common import utc_now
from autoforge.models.healing import ErrorRecord, Severity
from autoforge.utils.async_helpers import FrameworkError, OperationInProgressError

log = structlog.get_logger()


class ApplicationNotFoundError(FrameworkError, KeyError):
    """No application is registered under the given id."""


class InFlightGuard:
    """Tracks which application ids have an operation of one kind running.

    Claims are checked and recorded without awaiting, so two tasks on the
    same event loop can never both hold a claim for the same id.

    Example:
        guard = InFlightGuard("healing")
        with guard.claim(app.id):
            await heal(app)
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._active: dict[str, asyncio.Event] = {}

    def is_active(self, app_id: str) -> bool:
        return app_id in self._active

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    @contextmanager
    def claim(self, app_id: str) -> Iterator[None]:
        """Hold the claim for ``app_id`` for the duration of the block.

        Raises:
            OperationInProgressError: If the id is already claimed.
        """
        if app_id in self._active:
            log.warning("operation_rejected", operation=self.operation, app_id=app_id)
            raise OperationInProgressError(self.operation, app_id)
        released = self._active[app_id] = asyncio.Event()
        try:
            yield
        finally:
            del self._active[app_id]
            released.set()

    async def wait_idle(self, app_id: str) -> None:
        """Return once no claim is held for ``app_id``."""
        while (released := self._active.get(app_id)) is not None:
            await released.wait()


class ApplicationRegistry:
    """Registered applications plus their per-application locks and guards."""

    def __init__(self) -> None:
        self._apps: dict[str, Application] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.healing = InFlightGuard("healing")
        self.deployment = InFlightGuard("deployment")

    def add(self, app: Application) -> None:
        self._apps[app.id] = app
        log.debug("application_registered", app_id=app.id, name=app.name)

    def remove(self, app_id: str) -> Application:
        """Unregister an application.

        Raises:
            ApplicationNotFoundError: If the id is unknown.
            OperationInProgressError: If healing or deployment is in flight.
        """
        app = self.get(app_id)
        for guard in (self.healing, self.deployment):
            if guard.is_active(app_id):
                raise OperationInProgressError(guard.operation, app_id)
        del self._apps[app_id]
        self._locks.pop(app_id, None)
        return app

    def get(self, app_id: str) -> Application:
        try:
            return self._apps[app_id]
        except KeyError:
            raise ApplicationNotFoundError(app_id) from None

    def find(self, app_id: str) -> Application | None:
        return self._apps.get(app_id)

    def all(self) -> list[Application]:
        return list(self._apps.values())

    def __contains__(self, app_id: object) -> bool:
        return app_id in self._apps

    def __len__(self) -> int:
        return len(self._apps)

    def lock(self, app_id: str) -> asyncio.Lock:
        """The lock serializing state writes for one application."""
        lock = self._locks.get(app_id)
        if lock is None:
            lock = self._locks[app_id] = asyncio.Lock()
        return lock

    async def set_phase(self, app: Application, phase: AppPhase) -> None:
        async with self.lock(app.id):
            if app.phase is not phase:
                log.info("phase_changed", app_id=app.id, old=app.phase.value, new=phase.value)
            app.phase = phase
            app.touch()

    async def set_phase_if(self, app: Application, expected: AppPhase, phase: AppPhase) -> bool:
        """Move ``app`` to ``phase`` only if it is still in ``expected``.

        Returns:
            Whether the phase was written.
        """
        async with self.lock(app.id):
            if app.phase is not expected:
                log.debug(
                    "phase_change_skipped",
                    app_id=app.id,
                    expected=expected.value,
                    actual=app.phase.value,
                )
                return False
            if phase is not expected:
                log.info("phase_changed", app_id=app.id, old=expected.value, new=phase.value)
            app.phase = phase
            app.touch()
            return True

    async def record_errors(self, app: Application, errors: list[ErrorRecord]) -> None:
        """Replace the health summary's error list and recompute the health level."""
        async with self.lock(app.id):
            app.health.errors = list(errors)
            app.health.overall = _health_level(app.health.unresolved)
            app.health.last_check = app.updated_at = utc_now()

    async def refresh_health(self, app: Application) -> None:
        async with self.lock(app.id):
            app.health.overall = _health_level(app.health.unresolved)
            app.health.last_check = app.updated_at = utc_now()


def _health_level(unresolved: list[ErrorRecord]) -> HealthLevel:
    if any(e.severity in (Severity.CRITICAL, Severity.HIGH) for e in unresolved):
        return HealthLevel.CRITICAL
    if unresolved:
        return HealthLevel.WARNING
    return HealthLevel.HEALTHY
