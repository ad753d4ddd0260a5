"""Shared test fixtures for autoforge."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from autoforge.config.schema import (
    FrameworkConfig,
    HealingConfig,
    OpenAIConfig,
    ReasoningConfig,
)
from autoforge.core.registry import ApplicationRegistry
from autoforge.core.workspace import Workspace
from autoforge.models.application import Application, AppSpecification
from autoforge.models.healing import ErrorKind, ErrorRecord, Severity
from autoforge.utils.metrics import MetricsRegistry
from autoforge.utils.process import CommandResult


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    """Give every test a fresh metrics registry."""
    MetricsRegistry.reset()
    yield
    MetricsRegistry.reset()


@pytest.fixture
def framework_config(tmp_path: Path) -> FrameworkConfig:
    """Create a test configuration rooted in a temporary workspace."""
    return FrameworkConfig(
        reasoning=ReasoningConfig(
            provider="openai",
            openai=OpenAIConfig(api_key="sk-test-key"),
        ),
        workspace_dir=tmp_path / "workspace",
    )


@pytest.fixture
def healing_config() -> HealingConfig:
    return HealingConfig(retry_attempts=2, rollback_threshold=2, loop_interval=0.05)


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    ws = Workspace(tmp_path / "workspace")
    ws.ensure()
    return ws


@pytest.fixture
def registry() -> ApplicationRegistry:
    return ApplicationRegistry()


@pytest.fixture
def app_tree(workspace: Workspace) -> Path:
    """A small frontend/backend application tree."""
    root = workspace.app_dir("app-test")
    frontend = root / "frontend"
    backend = root / "backend"
    (frontend / "src").mkdir(parents=True)
    (backend / "src").mkdir(parents=True)

    (frontend / "package.json").write_text(
        json.dumps({"name": "frontend", "scripts": {"lint": "eslint src", "test": "jest"}})
    )
    (frontend / "src" / "App.tsx").write_text(
        "export function App() {\n  return <div>{x}</div>;\n}\n"
    )
    (backend / "package.json").write_text(
        json.dumps({"name": "backend", "scripts": {"test": "jest"}})
    )
    (backend / "src" / "server.ts").write_text("const port = 3001;\nexport default port;\n")
    return root


@pytest.fixture
def specification() -> AppSpecification:
    return AppSpecification.from_dict(
        {
            "title": "Todo",
            "description": "A task list",
            "tech_stack": {"frontend": "react", "backend": "express"},
            "api_endpoints": [
                {"path": "/api/tasks", "method": "GET", "status_codes": [200]},
                {"path": "/api/tasks", "method": "POST", "authentication": True},
                {"path": "/api/tasks/:id", "method": "GET"},
            ],
            "ui_components": [
                {"name": "TaskList", "type": "component", "props": [{"name": "title"}]},
                {"name": "TaskListPage", "type": "page"},
            ],
        }
    )


@pytest.fixture
def app(app_tree: Path, specification: AppSpecification) -> Application:
    return Application(name="todo", root=app_tree, specification=specification, id="app-test")


@pytest.fixture
def make_error() -> Callable[..., ErrorRecord]:
    """Factory for ErrorRecords with sensible defaults."""

    def factory(
        severity: Severity = Severity.CRITICAL,
        file: str = "frontend/src/App.tsx",
        line: int = 2,
        message: str = "TS2304: Cannot find name 'x'.",
        kind: ErrorKind = ErrorKind.SYNTAX,
    ) -> ErrorRecord:
        return ErrorRecord(kind=kind, severity=severity, file=file, line=line, message=message)

    return factory


@pytest.fixture
def command_result() -> Callable[..., CommandResult]:
    """Factory for CommandResults returned by a patched run_command."""

    def factory(stdout: str = "", stderr: str = "", return_code: int = 0) -> CommandResult:
        return CommandResult(stdout=stdout, stderr=stderr, return_code=return_code, command=["x"])

    return factory
