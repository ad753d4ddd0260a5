"""Data models for generated applications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from .common import new_id, utc_now
from .healing import ErrorRecord


class AppPhase(StrEnum):
    """Lifecycle phase of an application."""

    GENERATING = "generating"
    TESTING = "testing"
    DEPLOYING = "deploying"
    RUNNING = "running"
    ERROR = "error"
    HEALING = "healing"


class HealthLevel(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Parameter:
    """A named parameter of an endpoint or a UI component prop."""

    name: str
    type: str = "string"
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class ApiEndpoint:
    """An endpoint declared by the application specification."""

    path: str
    method: str = "GET"
    description: str = ""
    parameters: tuple[Parameter, ...] = ()
    authentication: bool = False
    status_codes: tuple[int, ...] = ()


@dataclass(frozen=True)
class UIComponent:
    """A UI component declared by the application specification."""

    name: str
    type: str = "component"
    description: str = ""
    props: tuple[Parameter, ...] = ()


@dataclass(frozen=True)
class AppSpecification:
    """Structured description of an application. Opaque to healing and deployment."""

    title: str
    description: str = ""
    features: tuple[str, ...] = ()
    tech_stack: dict[str, Any] = field(default_factory=dict, hash=False)
    api_endpoints: tuple[ApiEndpoint, ...] = ()
    ui_components: tuple[UIComponent, ...] = ()
    authentication: bool = False
    database: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppSpecification:
        """Build a specification from its JSON form."""
        endpoints = tuple(
            ApiEndpoint(
                path=e["path"],
                method=e.get("method", "GET").upper(),
                description=e.get("description", ""),
                parameters=tuple(Parameter(**p) for p in e.get("parameters", [])),
                authentication=e.get("authentication", False),
                status_codes=tuple(e.get("status_codes", e.get("statusCodes", ()))),
            )
            for e in data.get("api_endpoints", data.get("apiEndpoints", []))
        )
        components = tuple(
            UIComponent(
                name=c["name"],
                type=c.get("type", "component"),
                description=c.get("description", ""),
                props=tuple(Parameter(**p) for p in c.get("props", [])),
            )
            for c in data.get("ui_components", data.get("uiComponents", []))
        )
        return cls(
            title=data.get("title", "Untitled"),
            description=data.get("description", ""),
            features=tuple(data.get("features", ())),
            tech_stack=dict(data.get("tech_stack", data.get("techStack", {}))),
            api_endpoints=endpoints,
            ui_components=components,
            authentication=data.get("authentication", False),
            database=data.get("database", False),
        )

    @property
    def frontend(self) -> str | None:
        value = self.tech_stack.get("frontend")
        return str(value) if value else None

    @property
    def backend(self) -> str | None:
        value = self.tech_stack.get("backend")
        return str(value) if value else None


@dataclass
class HealthSummary:
    """Rolling health of an application."""

    overall: HealthLevel = HealthLevel.HEALTHY
    errors: list[ErrorRecord] = field(default_factory=list)
    last_check: datetime = field(default_factory=utc_now)

    @property
    def unresolved(self) -> list[ErrorRecord]:
        return [e for e in self.errors if not e.succeeded]


@dataclass
class Application:
    """The unit every subsystem operates on.

    ``root`` is the live working tree, normally ``<workspace>/apps/<id>``.
    Phase and health are written through the ApplicationRegistry so that
    writers from different subsystems are serialized.
    """

    name: str
    root: Path
    specification: AppSpecification
    id: str = field(default_factory=lambda: new_id("app"))
    phase: AppPhase = AppPhase.GENERATING
    health: HealthSummary = field(default_factory=HealthSummary)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def subprojects(self) -> list[str]:
        """Sub-projects present in the tree (``frontend`` and/or ``backend``)."""
        return [name for name in ("frontend", "backend") if (self.root / name).is_dir()]

    def touch(self) -> None:
        self.updated_at = utc_now()
