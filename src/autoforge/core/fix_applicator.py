"""Applying FixCandidates to a working tree and validating the result.

Neither class mutates the FixCandidate; the healing orchestrator records the
outcome from their return values.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import structlog

from autoforge.config.schema import HealingConfig
from autoforge.core.analyzers import discover_subprojects
from autoforge.models.application import Application
from autoforge.models.healing import ChangeType, FileChange, FixCandidate
from autoforge.utils.async_helpers import FrameworkError
from autoforge.utils.process import CommandError, run_command
from autoforge.utils.security import resolve_within

log = structlog.get_logger()


class ApplyError(FrameworkError):
    """A FileChange could not be executed."""


class FixApplicator:
    """Executes a fix's FileChanges in order.

    Writes are not transactional across the change list; the backup taken
    before applying is what makes a failed apply recoverable.
    """

    async def apply(self, app: Application, fix: FixCandidate) -> bool:
        """Apply every change of ``fix``; False on the first failing change."""
        for index, change in enumerate(fix.changes):
            try:
                await asyncio.to_thread(self._apply_change, app.root, change)
            except (ApplyError, OSError, FrameworkError) as e:
                log.warning(
                    "fix_apply_failed",
                    app_id=app.id,
                    fix_id=fix.id,
                    change=index,
                    path=change.path,
                    type=change.type.value,
                    error=str(e),
                )
                return False

        log.info("fix_applied_to_tree", app_id=app.id, fix_id=fix.id, files=fix.touched_files)
        return True

    @staticmethod
    def _apply_change(root: Path, change: FileChange) -> None:
        path = resolve_within(root, change.path)

        match change.type:
            case ChangeType.CREATE:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(change.new_content or "")
            case ChangeType.UPDATE:
                if not path.is_file():
                    raise ApplyError(f"Cannot update missing file {change.path}")
                path.write_text(change.new_content or "")
            case ChangeType.DELETE:
                path.unlink(missing_ok=True)


class ValidationStage(StrEnum):
    LINT = "lint"
    TYPECHECK = "typecheck"
    TESTS = "tests"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation run; truthy when every stage passed."""

    passed: bool
    failed_stage: ValidationStage | None = None
    subproject: str | None = None
    detail: str = ""
    skipped: bool = False

    def __bool__(self) -> bool:
        return self.passed


def _package_scripts(subproject: Path) -> dict[str, str]:
    try:
        manifest = json.loads((subproject / "package.json").read_text())
    except (OSError, ValueError):
        return {}
    scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
    return scripts if isinstance(scripts, dict) else {}


class FixValidator:
    """Re-checks a tree after a fix: lint, then type check, then a fast test pass.

    Stops at the first failing stage. A stage whose package script is not
    declared is skipped; a stage whose tool cannot be run fails.

    Example:
        validator = FixValidator(config.healing, enabled=config.testing.auto_fix)
        result = await validator.validate(app)
        if not result:
            print(result.failed_stage, result.detail)
    """

    def __init__(self, config: HealingConfig, *, enabled: bool = True) -> None:
        self._config = config
        self._enabled = enabled

    def _commands(
        self, subproject: Path
    ) -> list[tuple[ValidationStage, list[str], float, dict[str, str] | None]]:
        scripts = _package_scripts(subproject)
        stages: list[tuple[ValidationStage, list[str], float, dict[str, str] | None]] = []

        if "lint" in scripts:
            stages.append(
                (ValidationStage.LINT, ["npm", "run", "lint"], self._config.validation_lint_timeout, None)
            )
        if (subproject / "tsconfig.json").is_file():
            stages.append(
                (
                    ValidationStage.TYPECHECK,
                    ["npx", "tsc", "--noEmit"],
                    self._config.validation_typecheck_timeout,
                    None,
                )
            )
        if "test" in scripts:
            if subproject.name == "frontend":
                command = ["npm", "test", "--", "--watchAll=false", "--passWithNoTests"]
                env: dict[str, str] | None = {"CI": "true"}
            else:
                command = ["npm", "test", "--", "--passWithNoTests"]
                env = None
            stages.append(
                (ValidationStage.TESTS, command, self._config.validation_test_timeout, env)
            )
        return stages

    async def validate(self, app: Application) -> ValidationResult:
        if not self._enabled:
            log.debug("validation_skipped", app_id=app.id)
            return ValidationResult(passed=True, skipped=True)

        subprojects = discover_subprojects(app.root)
        stage_plan = {sub: self._commands(sub) for sub in subprojects}

        for stage in ValidationStage:
            for subproject in subprojects:
                for planned, command, timeout, env in stage_plan[subproject]:
                    if planned is not stage:
                        continue
                    try:
                        result = await run_command(command, cwd=subproject, timeout=timeout, env=env)
                    except CommandError as e:
                        return self._failed(app, stage, subproject, str(e))
                    if not result.success:
                        return self._failed(app, stage, subproject, result.output_tail())

        log.info("validation_passed", app_id=app.id)
        return ValidationResult(passed=True)

    @staticmethod
    def _failed(
        app: Application, stage: ValidationStage, subproject: Path, detail: str
    ) -> ValidationResult:
        log.info("validation_failed", app_id=app.id, stage=stage.value, subproject=subproject.name)
        return ValidationResult(
            passed=False, failed_stage=stage, subproject=subproject.name, detail=detail
        )
