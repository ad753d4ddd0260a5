"""Test orchestration for generated applications.

Runs each enabled category as one TestSuiteResult: unit, integration, e2e,
performance, accessibility and visual regression. Categories that need a
running instance start the application's dev servers, wait for them to
answer and always stop them afterwards.

A failing suite never stops the run; whether failures trigger healing is the
caller's decision.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import re
import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from html.parser import HTMLParser
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx
import structlog
from structlog.contextvars import bound_contextvars

from autoforge.config.schema import TestingConfig
from autoforge.core.analyzers import discover_subprojects, extract_json
from autoforge.core.events import EventChannel
from autoforge.interfaces.generation import TestGenerator
from autoforge.models.application import Application, AppSpecification
from autoforge.models.common import utc_now
from autoforge.models.events import TestCompleted, TestStarted
from autoforge.models.testing import CaseStatus, SuiteCategory, SuiteStatus, TestCaseResult, TestSuiteResult
from autoforge.utils.async_helpers import FrameworkError
from autoforge.utils.metrics import get_metrics
from autoforge.utils.process import CommandError, ManagedProcess, run_command

log = structlog.get_logger()

VISUAL_BASELINE_DIR = Path(".autoforge/visual")

SKIPPED_CONTENT_TAGS = frozenset({"script", "style", "noscript"})
FINGERPRINT_ATTRS = ("id", "class", "role", "type", "name")


class TestingError(FrameworkError):
    """Base exception for test orchestration errors."""

    __test__ = False


class ServerStartTimeoutError(TestingError):
    """A dev server did not answer within the start timeout."""


async def wait_for_server(
    url: str,
    *,
    timeout: float,
    interval: float,
    client: httpx.AsyncClient,
) -> None:
    """Poll ``url`` until the server answers without a 5xx status.

    Raises:
        ServerStartTimeoutError: If the server does not answer within ``timeout``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            response = await client.get(url)
            if response.status_code < 500:
                log.debug("server_ready", url=url, attempts=attempts)
                return
        except httpx.HTTPError:
            pass

        if loop.time() + interval > deadline:
            raise ServerStartTimeoutError(f"Server at {url} did not start within {timeout}s")
        await asyncio.sleep(interval)


class AppInstance:
    """Running dev servers for an application's sub-projects.

    Used as an async context manager; the servers are stopped on exit even
    when the body raised or readiness polling timed out.

    Example:
        async with AppInstance(app, config, client):
            response = await client.get(config.backend_url + "/api/health")
    """

    def __init__(
        self,
        app: Application,
        config: TestingConfig,
        client: httpx.AsyncClient,
        *,
        log_dir: Path | None = None,
    ) -> None:
        self._app = app
        self._config = config
        self._client = client
        self._log_dir = log_dir
        self._processes: list[ManagedProcess] = []

    @property
    def processes(self) -> list[ManagedProcess]:
        return list(self._processes)

    def _url_for(self, subproject: str) -> str:
        return self._config.backend_url if subproject == "backend" else self._config.frontend_url

    async def start(self) -> None:
        # Backend first so the frontend dev proxy has something to talk to
        for name in ("backend", "frontend"):
            directory = self._app.root / name
            if not (directory / "package.json").is_file():
                continue
            process = ManagedProcess(
                ["npm", "run", "dev"],
                cwd=directory,
                env={"BROWSER": "none"},
                log_file=self._log_dir / f"{self._app.id}-{name}.log" if self._log_dir else None,
            )
            self._processes.append(process)
            process.start()

        for name in ("backend", "frontend"):
            if (self._app.root / name / "package.json").is_file():
                await wait_for_server(
                    self._url_for(name),
                    timeout=self._config.server_start_timeout,
                    interval=self._config.poll_interval,
                    client=self._client,
                )
        log.info("app_instance_ready", app_id=self._app.id, processes=len(self._processes))

    async def stop(self) -> None:
        processes, self._processes = self._processes, []
        for process in reversed(processes):
            await process.stop()

    async def __aenter__(self) -> AppInstance:
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


InstanceFactory = Callable[[Application, httpx.AsyncClient], AbstractAsyncContextManager[Any]]
ClientFactory = Callable[[], httpx.AsyncClient]
SuiteRunner = Callable[[Application, TestSuiteResult, httpx.AsyncClient], Awaitable[float | None]]


class PageAudit(HTMLParser):
    """Collects the accessibility facts and structural fingerprint of one page."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.html_lang: str | None = None
        self.title = ""
        self.images = 0
        self.images_without_alt = 0
        self.structure: list[str] = []
        self._in_title = False
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attributes = dict(attrs)
        if tag == "html":
            self.html_lang = (attributes.get("lang") or "").strip() or None
        elif tag == "title":
            self._in_title = True
        elif tag == "img":
            self.images += 1
            if attributes.get("alt") is None:
                self.images_without_alt += 1

        if tag in SKIPPED_CONTENT_TAGS:
            self._skip_depth += 1
            return
        marks = "".join(
            f"[{name}={attributes[name]}]" for name in FINGERPRINT_ATTRS if attributes.get(name)
        )
        self.structure.append(f"<{tag}{marks}>")

    def handle_endtag(self, tag: str) -> None:
        if tag == "title":
            self._in_title = False
        if tag in SKIPPED_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        self.structure.append(f"</{tag}>")

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self.title += data

    @classmethod
    def of(cls, html: str) -> PageAudit:
        audit = cls()
        audit.feed(html)
        audit.close()
        return audit

    def problems(self) -> list[str]:
        found = []
        if not self.html_lang:
            found.append("<html> has no lang attribute")
        if not self.title.strip():
            found.append("document has no title")
        if self.images_without_alt:
            found.append(f"{self.images_without_alt} of {self.images} images have no alt text")
        return found

    def fingerprint(self) -> str:
        return hashlib.sha256("".join(self.structure).encode()).hexdigest()


def page_routes(specification: AppSpecification) -> list[str]:
    """``/`` plus one route per declared page component (``TaskListPage`` -> ``/task-list``)."""
    routes = ["/"]
    for component in specification.ui_components:
        if component.type.lower() != "page":
            continue
        stem = re.sub(r"Page$", "", component.name) or component.name
        slug = re.sub(r"(?<!^)(?=[A-Z])", "-", stem).lower()
        route = "/" if slug in ("home", "index", "") else f"/{slug}"
        if route not in routes:
            routes.append(route)
    return routes


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile."""
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class TestOrchestrator:
    """Runs the enabled test categories against an application.

    Example:
        orchestrator = TestOrchestrator(config.testing, generator=SkeletonTestGenerator())
        suites = await orchestrator.run_all(app)
        failed = [s for s in suites if not s.passed]
    """

    __test__ = False

    def __init__(
        self,
        config: TestingConfig,
        *,
        generator: TestGenerator | None = None,
        instance_factory: InstanceFactory | None = None,
        client_factory: ClientFactory | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self._config = config
        self._generator = generator
        self._instance_factory = instance_factory or (
            lambda app, client: AppInstance(app, config, client, log_dir=log_dir)
        )
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=config.request_timeout, follow_redirects=True)
        )

        self.started: EventChannel[TestStarted] = EventChannel("test:started")
        self.completed: EventChannel[TestCompleted] = EventChannel("test:completed")

    def _plan(self) -> list[tuple[bool, SuiteCategory, str, SuiteRunner]]:
        c = self._config
        return [
            (c.unit_tests, SuiteCategory.UNIT, "Unit Tests", self._run_unit),
            (c.integration_tests, SuiteCategory.INTEGRATION, "Integration Tests", self._run_integration),
            (c.e2e_tests, SuiteCategory.E2E, "End-to-End Tests", self._run_e2e),
            (c.performance_testing, SuiteCategory.PERFORMANCE, "Performance Tests", self._run_performance),
            (c.accessibility, SuiteCategory.ACCESSIBILITY, "Accessibility Tests", self._run_accessibility),
            (c.visual_regression, SuiteCategory.VISUAL, "Visual Regression Tests", self._run_visual),
        ]

    async def run_all(self, app: Application) -> list[TestSuiteResult]:
        """Run every enabled category and return one suite per category."""
        with bound_contextvars(app_id=app.id):
            return await self._run_all(app)

    async def _run_all(self, app: Application) -> list[TestSuiteResult]:
        log.info("testing_started", app_id=app.id)
        metrics = get_metrics()
        suites: list[TestSuiteResult] = []

        async with self._client_factory() as client:
            for enabled, category, name, runner in self._plan():
                if not enabled:
                    continue
                suite = TestSuiteResult(name=name, category=category, status=SuiteStatus.RUNNING)
                await self.started.publish(TestStarted(app=app, suite=suite))

                started = time.perf_counter()
                coverage: float | None = None
                try:
                    coverage = await runner(app, suite, client)
                except Exception as e:
                    log.warning("suite_setup_failed", app_id=app.id, suite=category.value, error=str(e))
                    suite.add_setup_failure(str(e))
                suite.finalize(_elapsed_ms(started), coverage)

                metrics.suite_results.inc(
                    labels={"category": category.value, "status": suite.status.value}
                )
                log.info(
                    "suite_finished",
                    app_id=app.id,
                    suite=category.value,
                    status=suite.status.value,
                    cases=len(suite.cases),
                    failures=len(suite.failures),
                )
                suites.append(suite)

        await self.completed.publish(TestCompleted(app=app, suites=tuple(suites)))
        log.info(
            "testing_complete",
            app_id=app.id,
            suites=len(suites),
            passed=sum(1 for s in suites if s.passed),
        )
        return suites

    # ------------------------------------------------------------------
    # Unit
    # ------------------------------------------------------------------

    async def _run_unit(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        if self._generator is not None:
            await self._generator.generate(app.specification, app.root)

        for subproject in discover_subprojects(app.root):
            label = f"{subproject.name} unit tests"
            try:
                result = await run_command(
                    ["npm", "test", "--", "--json", "--watchAll=false"],
                    cwd=subproject,
                    timeout=self._config.test_timeout,
                    env={"CI": "true"},
                )
            except CommandError as e:
                suite.add_case(TestCaseResult(name=label, status=CaseStatus.FAILED, error=str(e)))
                continue

            try:
                report = extract_json(result.stdout, "{")
            except ValueError:
                suite.add_case(
                    TestCaseResult(
                        name=label,
                        status=CaseStatus.FAILED,
                        description="Jest produced no JSON report",
                        error=result.output_tail(),
                    )
                )
                continue

            for case in self.parse_jest_report(report):
                suite.add_case(case)
        return None

    @staticmethod
    def parse_jest_report(report: dict[str, Any]) -> list[TestCaseResult]:
        """Convert a Jest ``--json`` report into test cases.

        A test file that failed to run at all becomes one failing case.
        Skipped and todo tests are left out.
        """
        cases: list[TestCaseResult] = []
        for test_file in report.get("testResults", []):
            assertions = test_file.get("assertionResults") or []
            if not assertions and test_file.get("status") == "failed":
                cases.append(
                    TestCaseResult(
                        name=Path(test_file.get("name", "test file")).name,
                        status=CaseStatus.FAILED,
                        description="Test file failed to run",
                        error=test_file.get("message") or None,
                    )
                )
                continue
            for assertion in assertions:
                if assertion.get("status") in ("pending", "todo", "skipped", "disabled"):
                    continue
                failures = assertion.get("failureMessages") or []
                cases.append(
                    TestCaseResult(
                        name=assertion.get("title", ""),
                        description=assertion.get("fullName", ""),
                        status=CaseStatus.PASSED if assertion.get("status") == "passed" else CaseStatus.FAILED,
                        duration_ms=int(assertion.get("duration") or 0),
                        error="\n".join(failures) or None,
                    )
                )
        return cases

    # ------------------------------------------------------------------
    # Checks against a running instance
    # ------------------------------------------------------------------

    async def _run_integration(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        endpoints = [
            e
            for e in app.specification.api_endpoints
            if e.method == "GET" and ":" not in e.path and "{" not in e.path
        ]
        if not endpoints:
            return None

        async with self._instance_factory(app, client):
            for endpoint in endpoints:
                accepted = set(endpoint.status_codes)
                if endpoint.authentication:
                    accepted |= {401, 403}
                started = time.perf_counter()
                name = f"GET {endpoint.path}"
                try:
                    response = await client.get(self._config.backend_url + endpoint.path)
                except httpx.HTTPError as e:
                    suite.add_case(
                        TestCaseResult(name=name, status=CaseStatus.FAILED, error=str(e))
                    )
                    continue
                ok = response.status_code in accepted if endpoint.status_codes else response.status_code < 500
                suite.add_case(
                    TestCaseResult(
                        name=name,
                        description=endpoint.description,
                        status=CaseStatus.PASSED if ok else CaseStatus.FAILED,
                        duration_ms=_elapsed_ms(started),
                        error=None if ok else f"Unexpected status {response.status_code}",
                    )
                )
        return None

    async def _fetch_page(self, client: httpx.AsyncClient, route: str) -> httpx.Response:
        return await client.get(self._config.frontend_url + route)

    async def _run_e2e(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        async with self._instance_factory(app, client):
            for route in page_routes(app.specification):
                started = time.perf_counter()
                name = f"Page {route}"
                try:
                    response = await self._fetch_page(client, route)
                except httpx.HTTPError as e:
                    suite.add_case(TestCaseResult(name=name, status=CaseStatus.FAILED, error=str(e)))
                    continue
                is_html = "text/html" in response.headers.get("content-type", "")
                ok = response.status_code == 200 and is_html
                suite.add_case(
                    TestCaseResult(
                        name=name,
                        status=CaseStatus.PASSED if ok else CaseStatus.FAILED,
                        duration_ms=_elapsed_ms(started),
                        error=None if ok else f"status {response.status_code}, html={is_html}",
                    )
                )
        return None

    async def _run_performance(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        budget = self._config.performance_p95_ms
        async with self._instance_factory(app, client):
            latencies: list[float] = []
            failures = 0
            for _ in range(self._config.performance_samples):
                started = time.perf_counter()
                try:
                    response = await self._fetch_page(client, "/")
                except httpx.HTTPError:
                    failures += 1
                    continue
                if response.status_code >= 400:
                    failures += 1
                latencies.append((time.perf_counter() - started) * 1000)

        p95 = percentile(latencies, 95) if latencies else math.inf
        problems = []
        if failures:
            problems.append(f"{failures} of {self._config.performance_samples} requests failed")
        if p95 > budget:
            problems.append(f"p95 {p95:.0f}ms exceeds budget {budget:.0f}ms")
        suite.add_case(
            TestCaseResult(
                name="Frontend p95 latency",
                description=f"{self._config.performance_samples} requests to /",
                status=CaseStatus.FAILED if problems else CaseStatus.PASSED,
                duration_ms=int(p95) if latencies else 0,
                error="; ".join(problems) or None,
            )
        )
        return None

    async def _run_accessibility(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        async with self._instance_factory(app, client):
            for route in self._config.accessibility_pages:
                started = time.perf_counter()
                name = f"Accessibility {route}"
                try:
                    response = await self._fetch_page(client, route)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    suite.add_case(TestCaseResult(name=name, status=CaseStatus.FAILED, error=str(e)))
                    continue
                problems = PageAudit.of(response.text).problems()
                suite.add_case(
                    TestCaseResult(
                        name=name,
                        status=CaseStatus.FAILED if problems else CaseStatus.PASSED,
                        duration_ms=_elapsed_ms(started),
                        error="; ".join(problems) or None,
                    )
                )
        return None

    async def _run_visual(
        self, app: Application, suite: TestSuiteResult, client: httpx.AsyncClient
    ) -> float | None:
        baseline_dir = app.root / VISUAL_BASELINE_DIR
        async with self._instance_factory(app, client):
            for route in page_routes(app.specification):
                name = f"Visual {route}"
                try:
                    response = await self._fetch_page(client, route)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    suite.add_case(TestCaseResult(name=name, status=CaseStatus.FAILED, error=str(e)))
                    continue
                fingerprint = PageAudit.of(response.text).fingerprint()
                suite.add_case(self._compare_baseline(baseline_dir, route, fingerprint))
        return None

    @staticmethod
    def _compare_baseline(baseline_dir: Path, route: str, fingerprint: str) -> TestCaseResult:
        slug = re.sub(r"[^\w-]+", "_", route).strip("_") or "root"
        baseline_file = baseline_dir / f"{slug}.json"
        name = f"Visual {route}"

        if not baseline_file.is_file():
            baseline_dir.mkdir(parents=True, exist_ok=True)
            baseline_file.write_text(
                json.dumps(
                    {"route": route, "fingerprint": fingerprint, "recorded_at": utc_now().isoformat()},
                    indent=2,
                )
            )
            return TestCaseResult(name=name, status=CaseStatus.PASSED, description="Baseline recorded")

        try:
            baseline = json.loads(baseline_file.read_text())["fingerprint"]
        except (OSError, ValueError, KeyError) as e:
            return TestCaseResult(name=name, status=CaseStatus.FAILED, error=f"Unreadable baseline: {e}")

        if baseline == fingerprint:
            return TestCaseResult(name=name, status=CaseStatus.PASSED)
        return TestCaseResult(
            name=name,
            status=CaseStatus.FAILED,
            error=f"Page structure changed (baseline {baseline[:12]}, now {fingerprint[:12]})",
        )
