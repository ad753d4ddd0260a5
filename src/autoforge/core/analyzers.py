"""Static and security analyzers.

Each analyzer runs one tool per sub-project (``frontend/``, ``backend/``)
and normalizes its native diagnostics into ErrorRecords with paths relative
to the application root. A non-zero exit is the normal outcome when a tool
finds problems; failing to run the tool at all degrades to zero findings and
a logged warning.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol

import structlog

from autoforge.config.schema import HealingConfig
from autoforge.models.healing import ErrorKind, ErrorRecord, Severity
from autoforge.utils.metrics import get_metrics
from autoforge.utils.process import CommandError, CommandResult, run_command

log = structlog.get_logger()

SUBPROJECTS = ("frontend", "backend")

TSC_DIAGNOSTIC = re.compile(
    r"^(?P<file>.+?)\((?P<line>\d+),(?P<column>\d+)\): "
    r"(?P<level>error|warning) (?P<code>TS\d+): (?P<message>.+)$"
)

AUDIT_SEVERITY = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
}


class Analyzer(Protocol):
    """Produces ErrorRecords for an application tree without modifying it."""

    name: str

    async def analyze(self, app_dir: Path) -> list[ErrorRecord]: ...


def discover_subprojects(app_dir: Path) -> list[Path]:
    """Sub-projects that carry a package manifest."""
    return [app_dir / name for name in SUBPROJECTS if (app_dir / name / "package.json").is_file()]


def relative_to_app(app_dir: Path, subproject: Path, file: str) -> str:
    """Express a tool-reported path relative to the application root."""
    path = Path(file)
    if not path.is_absolute():
        path = subproject / path
    try:
        return path.resolve().relative_to(app_dir.resolve()).as_posix()
    except ValueError:
        return file


def extract_json(text: str, opener: str) -> Any:
    """Decode the first JSON document starting with ``opener`` in ``text``.

    npm prints a script banner before the tool's own output, so the document
    rarely starts at offset zero.

    Raises:
        ValueError: If no JSON document is found.
    """
    decoder = json.JSONDecoder()
    start = text.find(opener)
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text[start:])
            return value
        except json.JSONDecodeError:
            start = text.find(opener, start + 1)
    raise ValueError(f"No JSON document found in output ({len(text)} chars)")


class _SubprojectAnalyzer:
    """Runs ``command`` in every sub-project and parses the result."""

    name = "analyzer"
    command: tuple[str, ...] = ()

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout

    def applies_to(self, subproject: Path) -> bool:
        return True

    def parse(self, result: CommandResult, app_dir: Path, subproject: Path) -> Iterable[ErrorRecord]:
        raise NotImplementedError

    async def analyze(self, app_dir: Path) -> list[ErrorRecord]:
        errors: list[ErrorRecord] = []
        for subproject in discover_subprojects(app_dir):
            if not self.applies_to(subproject):
                continue
            try:
                result = await run_command(self.command, cwd=subproject, timeout=self._timeout)
            except CommandError as e:
                log.warning(
                    "analyzer_unavailable",
                    analyzer=self.name,
                    subproject=subproject.name,
                    error=str(e),
                )
                continue

            try:
                found = list(self.parse(result, app_dir, subproject))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                log.warning(
                    "analyzer_output_unparseable",
                    analyzer=self.name,
                    subproject=subproject.name,
                    return_code=result.return_code,
                    error=str(e),
                )
                continue

            log.debug(
                "analyzer_finished",
                analyzer=self.name,
                subproject=subproject.name,
                findings=len(found),
            )
            errors.extend(found)
        return errors


class LintAnalyzer(_SubprojectAnalyzer):
    """ESLint via the ``lint`` package script with JSON output."""

    name = "lint"
    command = ("npm", "run", "lint", "--", "--format", "json")

    def parse(self, result: CommandResult, app_dir: Path, subproject: Path) -> Iterable[ErrorRecord]:
        if result.success and "[" not in result.stdout:
            return
        for file_report in extract_json(result.stdout, "["):
            file = relative_to_app(app_dir, subproject, file_report["filePath"])
            for message in file_report.get("messages", []):
                rule = message.get("ruleId")
                text = message["message"]
                yield ErrorRecord(
                    kind=ErrorKind.SYNTAX,
                    severity=Severity.HIGH if message.get("severity") == 2 else Severity.MEDIUM,
                    file=file,
                    line=int(message.get("line") or 0),
                    message=f"{text} ({rule})" if rule else text,
                )


class TypeCheckAnalyzer(_SubprojectAnalyzer):
    """TypeScript compiler diagnostics."""

    name = "typecheck"
    command = ("npx", "tsc", "--noEmit", "--pretty", "false")

    def applies_to(self, subproject: Path) -> bool:
        return (subproject / "tsconfig.json").is_file()

    def parse(self, result: CommandResult, app_dir: Path, subproject: Path) -> Iterable[ErrorRecord]:
        for line in result.output.splitlines():
            match = TSC_DIAGNOSTIC.match(line.strip())
            if not match:
                continue
            yield ErrorRecord(
                kind=ErrorKind.SYNTAX,
                severity=Severity.HIGH if match["level"] == "error" else Severity.MEDIUM,
                file=relative_to_app(app_dir, subproject, match["file"]),
                line=int(match["line"]),
                message=f"{match['code']}: {match['message']}",
            )


class DependencyAuditAnalyzer(_SubprojectAnalyzer):
    """``npm audit`` advisories for the sub-project's dependency tree."""

    name = "audit"
    command = ("npm", "audit", "--json")

    def parse(self, result: CommandResult, app_dir: Path, subproject: Path) -> Iterable[ErrorRecord]:
        report = extract_json(result.stdout, "{")
        manifest = f"{subproject.name}/package.json"

        # npm 7+ keys findings by package name
        for name, vulnerability in (report.get("vulnerabilities") or {}).items():
            yield self._record(
                manifest, name, vulnerability.get("severity", ""), _advisory_title(vulnerability)
            )

        # npm 6 keys findings by advisory id
        for advisory in (report.get("advisories") or {}).values():
            yield self._record(
                manifest,
                advisory.get("module_name", "unknown"),
                advisory.get("severity", ""),
                advisory.get("title", ""),
            )

    @staticmethod
    def _record(manifest: str, package: str, severity: str, title: str) -> ErrorRecord:
        return ErrorRecord(
            kind=ErrorKind.SECURITY,
            severity=AUDIT_SEVERITY.get(severity.lower(), Severity.MEDIUM),
            file=manifest,
            line=0,
            message=f"Security vulnerability in {package}: {title or severity + ' advisory'}",
        )


def _advisory_title(vulnerability: dict[str, Any]) -> str:
    if vulnerability.get("title"):
        return str(vulnerability["title"])
    for via in vulnerability.get("via", []):
        if isinstance(via, dict) and via.get("title"):
            return str(via["title"])
        if isinstance(via, str):
            return f"via {via}"
    return ""


class StaticAnalysisSuite:
    """Runs every analyzer over a tree and concatenates their findings.

    Findings keep analyzer order (lint, then type check, then audit) so the
    healing queue is processed in a stable order.
    """

    def __init__(self, analyzers: Sequence[Analyzer]) -> None:
        self._analyzers = list(analyzers)

    @classmethod
    def from_config(cls, config: HealingConfig) -> StaticAnalysisSuite:
        return cls(
            [
                LintAnalyzer(config.lint_timeout),
                TypeCheckAnalyzer(config.typecheck_timeout),
                DependencyAuditAnalyzer(config.audit_timeout),
            ]
        )

    @property
    def analyzers(self) -> list[Analyzer]:
        return list(self._analyzers)

    def get(self, name: str) -> Analyzer | None:
        return next((a for a in self._analyzers if a.name == name), None)

    async def analyze(self, app_dir: Path) -> list[ErrorRecord]:
        results = await asyncio.gather(
            *(analyzer.analyze(app_dir) for analyzer in self._analyzers),
            return_exceptions=True,
        )

        errors: list[ErrorRecord] = []
        for analyzer, result in zip(self._analyzers, results, strict=True):
            if isinstance(result, BaseException):
                log.warning("analyzer_crashed", analyzer=analyzer.name, error=str(result))
                continue
            errors.extend(result)

        if errors:
            get_metrics().errors_detected.inc(len(errors))
        log.info("analysis_complete", app_dir=str(app_dir), errors=len(errors))
        return errors
