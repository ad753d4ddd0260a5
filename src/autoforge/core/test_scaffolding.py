"""Skeleton test generation for the unit test runner.

Writes one render test per declared UI component and one response-shape
test file per declared API path. The generated tests only assert basic
contracts; they exist so that every declared surface is exercised at least
once by the sub-project's own Jest setup.
"""

from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from pathlib import Path

import structlog

from autoforge.models.application import ApiEndpoint, AppSpecification, Parameter, UIComponent

log = structlog.get_logger()

FRONTEND_TESTS_DIR = Path("frontend/src/__tests__")
BACKEND_TESTS_DIR = Path("backend/src/__tests__")

MOCK_VALUES = {
    "string": "'mock-string'",
    "number": "123",
    "boolean": "true",
    "array": "[]",
    "object": "{}",
}


def mock_value(type_name: str) -> str:
    return MOCK_VALUES.get(type_name.lower(), "'mock-value'")


def path_slug(path: str) -> str:
    """File-name-safe form of an endpoint path (``/api/tasks/:id`` -> ``api_tasks_id``)."""
    slug = re.sub(r"[^\w.-]+", "_", path).strip("_")
    return slug or "root"


def _mock_object(params: tuple[Parameter, ...], indent: str) -> str:
    return f",\n{indent}".join(f"{p.name}: {mock_value(p.type)}" for p in params)


def render_component_test(component: UIComponent) -> str:
    props_test = ""
    if component.props:
        props_test = f"""
  test('handles props', () => {{
    const mockProps = {{
      {_mock_object(component.props, "      ")}
    }};
    const {{ container }} = render(<{component.name} {{...mockProps}} />);
    expect(container).toBeTruthy();
  }});
"""
    return f"""import React from 'react';
import {{ render }} from '@testing-library/react';
import '@testing-library/jest-dom';
import {{ {component.name} }} from '../components/{component.type}/{component.name}';

describe('{component.name}', () => {{
  test('renders without crashing', () => {{
    const {{ container }} = render(<{component.name} />);
    expect(container.firstChild).not.toBeNull();
  }});
{props_test}}});
"""


def _endpoint_block(endpoint: ApiEndpoint) -> str:
    method = endpoint.method.lower()
    expected = endpoint.status_codes[0] if endpoint.status_codes else 200
    required = tuple(p for p in endpoint.parameters if p.required)

    chain = [f"request(app).{method}('{endpoint.path}')"]
    if required and method in ("post", "put", "patch"):
        chain.append(f".send({{ {_mock_object(required, ' ')} }})")
    if endpoint.authentication:
        chain.append(".set('Authorization', 'Bearer mock-token')")
    call = "\n      ".join(chain)

    title = (endpoint.description or f"{endpoint.method} {endpoint.path}").replace("'", "\\'")
    block = f"""
  test('{title}', async () => {{
    const response = await {call};
    expect(response.status).toBe({expected});
  }});
"""
    if endpoint.authentication:
        block += f"""
  test('{endpoint.method} {endpoint.path} requires authentication', async () => {{
    const response = await request(app).{method}('{endpoint.path}');
    expect(response.status).toBe(401);
  }});
"""
    return block


def render_api_test(path: str, endpoints: list[ApiEndpoint]) -> str:
    blocks = "".join(_endpoint_block(endpoint) for endpoint in endpoints)
    return f"""import request from 'supertest';
import app from '../server';

describe('{path}', () => {{{blocks}}});
"""


class SkeletonTestGenerator:
    """Writes skeleton Jest tests for a specification's components and endpoints.

    Existing files are overwritten so that the tests follow the
    specification as it changes.
    """

    __test__ = False

    async def generate(self, specification: AppSpecification, app_dir: Path) -> list[Path]:
        files: dict[Path, str] = {}

        if specification.ui_components and (app_dir / "frontend").is_dir():
            for component in specification.ui_components:
                target = app_dir / FRONTEND_TESTS_DIR / f"{component.name}.test.tsx"
                files[target] = render_component_test(component)

        if specification.api_endpoints and (app_dir / "backend").is_dir():
            by_path: dict[str, list[ApiEndpoint]] = defaultdict(list)
            for endpoint in specification.api_endpoints:
                by_path[endpoint.path].append(endpoint)
            for path, endpoints in by_path.items():
                target = app_dir / BACKEND_TESTS_DIR / f"{path_slug(path)}.test.ts"
                files[target] = render_api_test(path, endpoints)

        def write() -> None:
            for target, content in files.items():
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)

        await asyncio.to_thread(write)
        log.info("skeleton_tests_generated", app_dir=str(app_dir), files=len(files))
        return sorted(files)
