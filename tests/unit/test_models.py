"""Tests for data models."""

from __future__ import annotations

import pytest

from autoforge.models.application import AppSpecification
from autoforge.models.deployment import (
    DeploymentRecord,
    DeploymentStatus,
    Environment,
    InvalidTransitionError,
)
from autoforge.models.events import EVENT_SCHEMA_VERSION, AppFixed, EventType, TestCompleted
from autoforge.models.healing import (
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
from autoforge.models.testing import CaseStatus, SuiteCategory, SuiteStatus, TestCaseResult, TestSuiteResult


def _candidate(confidence: float = 0.8) -> FixCandidate:
    return FixCandidate(
        error_id="error-1",
        category=FixCategory.CODE,
        description="Declare x",
        changes=(FileChange("src/a.ts", ChangeType.UPDATE, "old", "new"),),
        confidence=confidence,
    )


class TestSeverity:
    """Test severity ordering and the actionable gate."""

    def test_rank_ordering(self) -> None:
        """Test low < medium < high < critical."""
        ranks = [s.rank for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    @pytest.mark.parametrize(
        ("severity", "actionable"),
        [
            (Severity.LOW, False),
            (Severity.MEDIUM, False),
            (Severity.HIGH, True),
            (Severity.CRITICAL, True),
        ],
    )
    def test_is_actionable(self, severity: Severity, actionable: bool) -> None:
        """Test only high and critical errors are fixed automatically."""
        assert severity.is_actionable is actionable


class TestErrorRecord:
    """Test ErrorRecord state."""

    def test_defaults(self) -> None:
        """Test a new record is neither attempted nor succeeded."""
        error = ErrorRecord(ErrorKind.SYNTAX, Severity.HIGH, "a.ts", 10, "boom")
        assert error.attempted is False
        assert error.succeeded is False
        assert error.id.startswith("error-")
        assert error.location == "a.ts:10"

    def test_mark_attempted(self) -> None:
        """Test marking an attempt records both flags."""
        error = ErrorRecord(ErrorKind.SYNTAX, Severity.HIGH, "a.ts", 10, "boom")
        error.mark_attempted(False)
        assert error.attempted is True
        assert error.succeeded is False


class TestFileChange:
    """Test FileChange validation."""

    def test_update_requires_content(self) -> None:
        """Test create and update changes need new content."""
        with pytest.raises(ValueError, match="requires new_content"):
            FileChange("a.ts", ChangeType.UPDATE)

    def test_delete_without_content(self) -> None:
        """Test delete changes carry no new content."""
        change = FileChange("a.ts", ChangeType.DELETE, original_content="x")
        assert change.new_content is None


class TestFixCandidate:
    """Test FixCandidate invariants."""

    @pytest.mark.parametrize("confidence", [-0.1, 1.5])
    def test_confidence_range(self, confidence: float) -> None:
        """Test confidence outside [0, 1] is rejected."""
        with pytest.raises(ValueError, match="confidence"):
            _candidate(confidence)

    def test_record_outcome(self) -> None:
        """Test outcome flags are recorded."""
        fix = _candidate()
        fix.record_outcome(applied=True, tested=False, backup=None)
        assert fix.applied is True
        assert fix.tested is False
        assert not fix.sealed

    def test_sealed_after_applied_and_tested(self) -> None:
        """Test an applied and tested fix can no longer change."""
        fix = _candidate()
        fix.record_outcome(applied=True, tested=True, backup=None)
        assert fix.sealed
        with pytest.raises(FixSealedError):
            fix.record_outcome(applied=False, tested=False, backup=None)

    def test_touched_files(self) -> None:
        """Test touched files lists every change path."""
        assert _candidate().touched_files == ["src/a.ts"]


class TestHealingReport:
    """Test HealingReport aggregation."""

    def test_applied_and_failed(self) -> None:
        """Test attempts split into applied and failed."""
        error = ErrorRecord(ErrorKind.SYNTAX, Severity.HIGH, "a.ts", 1, "boom")
        report = HealingReport(app_id="app-1")
        report.attempts.append(FixAttempt(error=error, status=FixStatus.APPLIED))
        report.attempts.append(FixAttempt(error=error, status=FixStatus.NO_FIX))
        report.finish()

        data = report.to_dict()
        assert data["applied"] == 1
        assert data["failed"] == 1
        assert data["finished_at"] is not None
        assert [a["status"] for a in data["attempts"]] == ["applied", "no_fix"]


class TestSuiteAggregation:
    """Test TestSuiteResult status aggregation."""

    def _case(self, status: CaseStatus) -> TestCaseResult:
        return TestCaseResult(name="case", status=status)

    def test_all_passed(self) -> None:
        """Test a suite passes iff every case passed."""
        suite = TestSuiteResult(name="Unit", category=SuiteCategory.UNIT)
        for _ in range(5):
            suite.add_case(self._case(CaseStatus.PASSED))
        suite.finalize(10)
        assert suite.status is SuiteStatus.PASSED
        assert suite.coverage == 100.0

    def test_one_failure_flips_suite(self) -> None:
        """Test one failing case fails the suite regardless of passes."""
        suite = TestSuiteResult(name="Unit", category=SuiteCategory.UNIT)
        for _ in range(9):
            suite.add_case(self._case(CaseStatus.PASSED))
        suite.finalize(10)
        assert suite.passed

        suite.add_case(self._case(CaseStatus.FAILED))
        assert suite.status is SuiteStatus.FAILED
        assert len(suite.failures) == 1

    def test_empty_suite_passes(self) -> None:
        """Test a suite without cases passes."""
        suite = TestSuiteResult(name="Unit", category=SuiteCategory.UNIT)
        suite.finalize(0)
        assert suite.passed
        assert suite.coverage == 0.0

    def test_setup_failure(self) -> None:
        """Test a setup failure becomes a failing case."""
        suite = TestSuiteResult(name="Integration", category=SuiteCategory.INTEGRATION)
        suite.add_setup_failure("server did not start")
        suite.finalize(5)
        assert not suite.passed
        assert suite.cases[0].error == "server did not start"

    def test_measured_coverage_wins(self) -> None:
        """Test a runner-reported coverage overrides the pass ratio."""
        suite = TestSuiteResult(name="Unit", category=SuiteCategory.UNIT)
        suite.add_case(self._case(CaseStatus.FAILED))
        suite.finalize(5, coverage=42.5)
        assert suite.coverage == 42.5


class TestDeploymentRecord:
    """Test the deployment state machine edges."""

    def test_happy_path(self) -> None:
        """Test pending -> deploying -> success."""
        record = DeploymentRecord(app_id="app-1", environment=Environment.STAGING)
        record.transition(DeploymentStatus.DEPLOYING)
        record.transition(DeploymentStatus.SUCCESS)
        assert record.status.is_terminal

    def test_rollback_only_after_failure(self) -> None:
        """Test rolled_back is reachable only from failed."""
        record = DeploymentRecord(app_id="app-1", environment=Environment.STAGING)
        record.transition(DeploymentStatus.DEPLOYING)
        with pytest.raises(InvalidTransitionError):
            record.transition(DeploymentStatus.ROLLED_BACK)
        record.transition(DeploymentStatus.FAILED)
        record.transition(DeploymentStatus.ROLLED_BACK)
        assert record.status is DeploymentStatus.ROLLED_BACK

    def test_success_is_final(self) -> None:
        """Test nothing leaves success."""
        record = DeploymentRecord(app_id="app-1", environment=Environment.DEVELOPMENT)
        record.transition(DeploymentStatus.DEPLOYING)
        record.transition(DeploymentStatus.SUCCESS)
        with pytest.raises(InvalidTransitionError):
            record.transition(DeploymentStatus.FAILED)

    def test_to_dict(self) -> None:
        """Test serialisation keeps the audit trail."""
        record = DeploymentRecord(app_id="app-1", environment=Environment.PRODUCTION)
        record.log("hello")
        data = record.to_dict()
        assert data["environment"] == "production"
        assert data["status"] == "pending"
        assert data["logs"] == ["hello"]


class TestAppSpecification:
    """Test specification parsing."""

    def test_from_dict_accepts_camel_case(self) -> None:
        """Test camelCase keys are accepted."""
        spec = AppSpecification.from_dict(
            {
                "title": "Shop",
                "techStack": {"frontend": "react", "backend": ""},
                "apiEndpoints": [{"path": "/api/items", "method": "get", "statusCodes": [200]}],
                "uiComponents": [{"name": "ItemList"}],
            }
        )
        assert spec.frontend == "react"
        assert spec.backend is None
        assert spec.api_endpoints[0].method == "GET"
        assert spec.api_endpoints[0].status_codes == (200,)
        assert spec.ui_components[0].type == "component"


class TestEvents:
    """Test event payload tagging."""

    def test_events_carry_type_and_version(self, app) -> None:
        """Test events are tagged with their type and schema version."""
        error = ErrorRecord(ErrorKind.SYNTAX, Severity.HIGH, "a.ts", 1, "boom")
        event = AppFixed(app=app, error=error, fix=_candidate())
        assert event.type is EventType.APP_FIXED
        assert event.version == EVENT_SCHEMA_VERSION

    def test_test_completed_all_passed(self, app) -> None:
        """Test all_passed reflects every suite."""
        passed = TestSuiteResult(name="Unit", category=SuiteCategory.UNIT)
        passed.finalize(1)
        failed = TestSuiteResult(name="E2E", category=SuiteCategory.E2E)
        failed.add_setup_failure("boom")
        failed.finalize(1)

        assert TestCompleted(app=app, suites=(passed,)).all_passed
        assert not TestCompleted(app=app, suites=(passed, failed)).all_passed
