"""Tests for fix application and validation."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

from autoforge.config.schema import HealingConfig
from autoforge.core.fix_applicator import FixApplicator, FixValidator, ValidationStage
from autoforge.models.application import Application
from autoforge.models.healing import ChangeType, FileChange, FixCandidate, FixCategory
from autoforge.utils.process import CommandNotFoundError


def _fix(*changes: FileChange) -> FixCandidate:
    return FixCandidate(
        error_id="error-1",
        category=FixCategory.CODE,
        description="test",
        changes=changes,
        confidence=0.5,
    )


class TestFixApplicator:
    """Test applying FileChanges to a tree."""

    async def test_update_create_delete(self, app: Application) -> None:
        """Test every change type is executed in order."""
        fix = _fix(
            FileChange("frontend/src/App.tsx", ChangeType.UPDATE, new_content="fixed"),
            FileChange("frontend/src/util/new.ts", ChangeType.CREATE, new_content="new"),
            FileChange("backend/src/server.ts", ChangeType.DELETE),
        )

        assert await FixApplicator().apply(app, fix) is True

        assert (app.root / "frontend/src/App.tsx").read_text() == "fixed"
        assert (app.root / "frontend/src/util/new.ts").read_text() == "new"
        assert not (app.root / "backend/src/server.ts").exists()

    async def test_update_missing_file_fails(self, app: Application) -> None:
        """Test updating a missing file stops the apply."""
        fix = _fix(
            FileChange("frontend/src/Missing.tsx", ChangeType.UPDATE, new_content="x"),
            FileChange("frontend/src/App.tsx", ChangeType.UPDATE, new_content="never"),
        )

        assert await FixApplicator().apply(app, fix) is False
        assert (app.root / "frontend/src/App.tsx").read_text() != "never"

    async def test_escaping_path_fails(self, app: Application) -> None:
        """Test paths outside the root are refused."""
        fix = _fix(FileChange("../outside.txt", ChangeType.CREATE, new_content="x"))
        assert await FixApplicator().apply(app, fix) is False
        assert not (app.root.parent / "outside.txt").exists()

    async def test_delete_missing_is_ok(self, app: Application) -> None:
        """Test deleting an already-missing file succeeds."""
        fix = _fix(FileChange("frontend/src/Gone.tsx", ChangeType.DELETE))
        assert await FixApplicator().apply(app, fix) is True


class TestFixValidator:
    """Test staged validation."""

    async def test_disabled_skips(self, app: Application) -> None:
        """Test a disabled validator passes without running anything."""
        mock_run = AsyncMock()
        with patch("autoforge.core.fix_applicator.run_command", mock_run):
            result = await FixValidator(HealingConfig(), enabled=False).validate(app)
        assert result.passed and result.skipped
        mock_run.assert_not_awaited()

    async def test_runs_stages_in_order(self, app: Application, command_result) -> None:
        """Test lint, then type check, then tests, with per-stage timeouts."""
        (app.root / "frontend" / "tsconfig.json").write_text("{}")
        mock_run = AsyncMock(return_value=command_result())
        config = HealingConfig()

        with patch("autoforge.core.fix_applicator.run_command", mock_run):
            result = await FixValidator(config).validate(app)

        assert result
        calls = [(Path(c.kwargs["cwd"]).name, c.args[0], c.kwargs["timeout"]) for c in mock_run.call_args_list]
        assert calls == [
            ("frontend", ["npm", "run", "lint"], config.validation_lint_timeout),
            ("frontend", ["npx", "tsc", "--noEmit"], config.validation_typecheck_timeout),
            (
                "frontend",
                ["npm", "test", "--", "--watchAll=false", "--passWithNoTests"],
                config.validation_test_timeout,
            ),
            ("backend", ["npm", "test", "--", "--passWithNoTests"], config.validation_test_timeout),
        ]
        assert mock_run.call_args_list[2].kwargs["env"] == {"CI": "true"}

    async def test_stops_at_first_failure(self, app: Application, command_result) -> None:
        """Test a failing lint stage fails validation without running tests."""
        mock_run = AsyncMock(return_value=command_result(stdout="1 problem", return_code=1))
        with patch("autoforge.core.fix_applicator.run_command", mock_run):
            result = await FixValidator(HealingConfig()).validate(app)

        assert not result
        assert result.failed_stage is ValidationStage.LINT
        assert result.subproject == "frontend"
        assert "1 problem" in result.detail
        assert mock_run.await_count == 1

    async def test_missing_tool_fails(self, app: Application) -> None:
        """Test a tool that cannot run fails its stage."""
        mock_run = AsyncMock(side_effect=CommandNotFoundError("npm not found on PATH"))
        with patch("autoforge.core.fix_applicator.run_command", mock_run):
            result = await FixValidator(HealingConfig()).validate(app)
        assert not result
        assert result.failed_stage is ValidationStage.LINT

    async def test_no_scripts_passes(self, app: Application) -> None:
        """Test sub-projects without scripts have nothing to validate."""
        for name in ("frontend", "backend"):
            (app.root / name / "package.json").write_text(json.dumps({"name": name}))
        mock_run = AsyncMock()
        with patch("autoforge.core.fix_applicator.run_command", mock_run):
            result = await FixValidator(HealingConfig()).validate(app)
        assert result.passed and not result.skipped
        mock_run.assert_not_awaited()
