"""Lifecycle event payloads.

Every event is a frozen dataclass tagged with its ``EventType`` and the
payload schema version. ``FrameworkEvent`` is the closed union of all of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import ClassVar

from .alerts import Alert
from .application import Application
from .common import utc_now
from .deployment import DeploymentRecord
from .healing import ErrorRecord, FixCandidate
from .testing import TestSuiteResult

EVENT_SCHEMA_VERSION = 1


class EventType(StrEnum):
    APP_CREATED = "app:created"
    APP_UPDATED = "app:updated"
    APP_DEPLOYED = "app:deployed"
    APP_ERROR = "app:error"
    APP_FIXED = "app:fixed"
    TEST_STARTED = "test:started"
    TEST_COMPLETED = "test:completed"
    DEPLOYMENT_STARTED = "deployment:started"
    DEPLOYMENT_COMPLETED = "deployment:completed"
    MONITORING_ALERT = "monitoring:alert"


@dataclass(frozen=True)
class AppCreated:
    type: ClassVar[EventType] = EventType.APP_CREATED
    app: Application
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AppUpdated:
    type: ClassVar[EventType] = EventType.APP_UPDATED
    app: Application
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AppDeployed:
    type: ClassVar[EventType] = EventType.APP_DEPLOYED
    app: Application
    deployment: DeploymentRecord
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AppErrorDetected:
    type: ClassVar[EventType] = EventType.APP_ERROR
    app: Application
    error: ErrorRecord
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class AppFixed:
    type: ClassVar[EventType] = EventType.APP_FIXED
    app: Application
    error: ErrorRecord
    fix: FixCandidate
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TestStarted:
    __test__ = False
    type: ClassVar[EventType] = EventType.TEST_STARTED
    app: Application
    suite: TestSuiteResult
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TestCompleted:
    __test__ = False
    type: ClassVar[EventType] = EventType.TEST_COMPLETED
    app: Application
    suites: tuple[TestSuiteResult, ...]
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)

    @property
    def all_passed(self) -> bool:
        return all(suite.passed for suite in self.suites)


@dataclass(frozen=True)
class DeploymentStarted:
    type: ClassVar[EventType] = EventType.DEPLOYMENT_STARTED
    app: Application
    deployment: DeploymentRecord
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeploymentCompleted:
    type: ClassVar[EventType] = EventType.DEPLOYMENT_COMPLETED
    app: Application
    deployment: DeploymentRecord
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class MonitoringAlert:
    type: ClassVar[EventType] = EventType.MONITORING_ALERT
    app: Application
    alert: Alert
    version: int = EVENT_SCHEMA_VERSION
    emitted_at: datetime = field(default_factory=utc_now)


FrameworkEvent = (
    AppCreated
    | AppUpdated
    | AppDeployed
    | AppErrorDetected
    | AppFixed
    | TestStarted
    | TestCompleted
    | DeploymentStarted
    | DeploymentCompleted
    | MonitoringAlert
)
