"""Abstract interfaces for the requirements translator and code generators.

Both are external collaborators: the framework only needs a structured
specification from free-form requirements, and a generated tree that holds
``frontend/`` and/or ``backend/`` sub-projects exposing ``lint``, ``test``
and ``build`` package scripts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from ..models.application import AppSpecification


class RequirementsTranslator(Protocol):
    """Turns natural-language requirements into an AppSpecification."""

    async def translate(self, requirements: str) -> AppSpecification:
        """
        Raises:
            ReasoningError: If the reasoning service fails or returns garbage
        """
        ...


class AppGenerator(Protocol):
    """Writes an application's source tree for a specification."""

    async def generate(self, specification: AppSpecification, destination: Path) -> None:
        """Populate ``destination`` with the generated tree."""
        ...


class TestGenerator(Protocol):
    """Synthesizes skeleton test files before the unit test runner is invoked."""

    __test__ = False

    async def generate(self, specification: AppSpecification, app_dir: Path) -> list[Path]:
        """Write test files under ``app_dir`` and return their paths."""
        ...
