"""Data models for detected errors, proposed fixes and backups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .common import new_id, utc_now


class ErrorKind(StrEnum):
    """Kind of defect reported by an analyzer or detection hook."""

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    PERFORMANCE = "performance"
    SECURITY = "security"
    UX = "ux"


class Severity(StrEnum):
    """Four-level ordinal severity: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_actionable(self) -> bool:
        """Whether errors of this severity are fixed automatically."""
        return self.rank >= _SEVERITY_RANK[Severity.HIGH]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass
class ErrorRecord:
    """A single detected defect in an application's source tree.

    ``file`` is relative to the application root. Records are mutated in
    place once a fix attempt resolves.
    """

    kind: ErrorKind
    severity: Severity
    file: str
    line: int
    message: str
    id: str = field(default_factory=lambda: new_id("error"))
    attempted: bool = False
    succeeded: bool = False
    detected_at: datetime = field(default_factory=utc_now)

    def mark_attempted(self, succeeded: bool) -> None:
        """Record the outcome of a fix attempt."""
        self.attempted = True
        self.succeeded = succeeded

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}"


class ChangeType(StrEnum):
    """Operation performed by a FileChange."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class FileChange:
    """One file-level edit. ``path`` is relative to the application root."""

    path: str
    type: ChangeType
    original_content: str | None = None
    new_content: str | None = None

    def __post_init__(self) -> None:
        if self.type in (ChangeType.CREATE, ChangeType.UPDATE) and self.new_content is None:
            raise ValueError(f"{self.type} change for {self.path} requires new_content")


class FixCategory(StrEnum):
    """Area of the application a fix touches."""

    CODE = "code"
    CONFIG = "config"
    DEPENDENCY = "dependency"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class Backup:
    """A full snapshot of an application's working tree."""

    backup_id: str
    app_id: str
    created_at: datetime
    files: tuple[str, ...]


class FixSealedError(ValueError):
    """Raised when an applied and tested fix is modified."""


@dataclass
class FixCandidate:
    """A proposed remediation for exactly one ErrorRecord."""

    error_id: str
    category: FixCategory
    description: str
    changes: tuple[FileChange, ...]
    confidence: float
    id: str = field(default_factory=lambda: new_id("fix"))
    tested: bool = False
    applied: bool = False
    backup: Backup | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def sealed(self) -> bool:
        """Applied and tested fixes are audit records and no longer change."""
        return self.applied and self.tested

    def record_outcome(self, *, applied: bool, tested: bool, backup: Backup | None) -> None:
        """Set the applied/tested flags and the backup taken before applying.

        Raises:
            FixSealedError: If the fix has already been applied and tested.
        """
        if self.sealed:
            raise FixSealedError(f"Fix {self.id} is applied and tested and cannot change")
        self.applied = applied
        self.tested = tested
        self.backup = backup

    @property
    def touched_files(self) -> list[str]:
        return [change.path for change in self.changes]


class FixStatus(StrEnum):
    """Outcome of a single error's fix attempt."""

    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    NO_FIX = "no_fix"
    APPLY_FAILED = "apply_failed"
    ERRORED = "errored"


@dataclass(frozen=True)
class FixAttempt:
    """Per-error result collected into a HealingReport."""

    error: ErrorRecord
    status: FixStatus
    fix: FixCandidate | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is FixStatus.APPLIED


@dataclass
class HealingReport:
    """Batch report of one healing sweep over an application."""

    app_id: str
    attempts: list[FixAttempt] = field(default_factory=list)
    deferred: list[ErrorRecord] = field(default_factory=list)
    detected: int = 0
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def applied(self) -> list[FixAttempt]:
        return [a for a in self.attempts if a.ok]

    @property
    def failed(self) -> list[FixAttempt]:
        return [a for a in self.attempts if not a.ok]

    def finish(self) -> None:
        self.finished_at = utc_now()

    def to_dict(self) -> dict[str, object]:
        """Convert the report to a JSON-serialisable dictionary."""
        return {
            "app_id": self.app_id,
            "detected": self.detected,
            "applied": len(self.applied),
            "failed": len(self.failed),
            "deferred": len(self.deferred),
            "attempts": [
                {
                    "error_id": a.error.id,
                    "location": a.error.location,
                    "severity": a.error.severity.value,
                    "status": a.status.value,
                    "fix_id": a.fix.id if a.fix else None,
                    "detail": a.detail,
                }
                for a in self.attempts
            ],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
