"""Data models and event payloads."""

from .alerts import Alert, AlertType
from .application import (
    ApiEndpoint,
    Application,
    AppPhase,
    AppSpecification,
    HealthLevel,
    HealthSummary,
    Parameter,
    UIComponent,
)
from .deployment import DeploymentRecord, DeploymentStatus, Environment, InvalidTransitionError
from .events import (
    AppCreated,
    AppDeployed,
    AppErrorDetected,
    AppFixed,
    AppUpdated,
    DeploymentCompleted,
    DeploymentStarted,
    EventType,
    FrameworkEvent,
    MonitoringAlert,
    TestCompleted,
    TestStarted,
)
from .healing import (
    Backup,
    ChangeType,
    ErrorKind,
    ErrorRecord,
    FileChange,
    FixAttempt,
    FixCandidate,
    FixCategory,
    FixSealedError,
    FixStatus,
    HealingReport,
    Severity,
)
from .testing import CaseStatus, SuiteCategory, SuiteStatus, TestCaseResult, TestSuiteResult

__all__ = [
    # Application models
    "Application",
    "AppPhase",
    "AppSpecification",
    "ApiEndpoint",
    "UIComponent",
    "Parameter",
    "HealthLevel",
    "HealthSummary",
    # Healing models
    "ErrorKind",
    "Severity",
    "ErrorRecord",
    "ChangeType",
    "FileChange",
    "FixCategory",
    "FixCandidate",
    "FixSealedError",
    "Backup",
    "FixStatus",
    "FixAttempt",
    "HealingReport",
    # Testing models
    "SuiteCategory",
    "SuiteStatus",
    "CaseStatus",
    "TestCaseResult",
    "TestSuiteResult",
    # Deployment models
    "Environment",
    "DeploymentStatus",
    "DeploymentRecord",
    "InvalidTransitionError",
    # Alerts
    "Alert",
    "AlertType",
    # Events
    "EventType",
    "FrameworkEvent",
    "AppCreated",
    "AppUpdated",
    "AppDeployed",
    "AppErrorDetected",
    "AppFixed",
    "TestStarted",
    "TestCompleted",
    "DeploymentStarted",
    "DeploymentCompleted",
    "MonitoringAlert",
]
