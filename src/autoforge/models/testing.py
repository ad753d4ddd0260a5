"""Data models for test suites and cases."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from .common import new_id


class SuiteCategory(StrEnum):
    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    VISUAL = "visual"


class SuiteStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class CaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TestCaseResult:
    """Outcome of one test case."""

    __test__ = False

    name: str
    status: CaseStatus
    description: str = ""
    duration_ms: int = 0
    error: str | None = None
    id: str = field(default_factory=lambda: new_id("case"))

    @property
    def passed(self) -> bool:
        return self.status is CaseStatus.PASSED


@dataclass
class TestSuiteResult:
    """Outcome of one category of testing.

    The suite passes iff every contained case passed. A suite with no cases
    passes. ``coverage`` is the percentage of passing cases unless a runner
    reported a measured value.
    """

    __test__ = False

    name: str
    category: SuiteCategory
    cases: list[TestCaseResult] = field(default_factory=list)
    status: SuiteStatus = SuiteStatus.PENDING
    coverage: float = 0.0
    duration_ms: int = 0
    id: str = field(default_factory=lambda: new_id("suite"))

    def add_case(self, case: TestCaseResult) -> None:
        self.cases.append(case)
        if self.status in (SuiteStatus.PASSED, SuiteStatus.FAILED):
            self.status = self._aggregate_status()

    def add_setup_failure(self, message: str) -> None:
        """Record a setup-level failure as a synthetic failing case."""
        self.add_case(
            TestCaseResult(
                name="Suite setup",
                description=f"{self.name} could not be executed",
                status=CaseStatus.FAILED,
                error=message,
            )
        )

    def _aggregate_status(self) -> SuiteStatus:
        if all(case.passed for case in self.cases):
            return SuiteStatus.PASSED
        return SuiteStatus.FAILED

    def finalize(self, duration_ms: int, coverage: float | None = None) -> None:
        """Stamp duration and coverage and derive the aggregate status."""
        self.duration_ms = duration_ms
        if coverage is not None:
            self.coverage = coverage
        elif self.cases:
            passed = sum(1 for case in self.cases if case.passed)
            self.coverage = round(passed / len(self.cases) * 100, 1)
        self.status = self._aggregate_status()

    @property
    def passed(self) -> bool:
        return self.status is SuiteStatus.PASSED

    @property
    def failures(self) -> list[TestCaseResult]:
        return [case for case in self.cases if not case.passed]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "status": self.status.value,
            "coverage": self.coverage,
            "duration_ms": self.duration_ms,
            "cases": [
                {"name": c.name, "status": c.status.value, "error": c.error} for c in self.cases
            ],
        }
