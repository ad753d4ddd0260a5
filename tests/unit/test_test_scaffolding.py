"""Tests for skeleton test generation."""

from pathlib import Path

from autoforge.core.test_scaffolding import (
    BACKEND_TESTS_DIR,
    FRONTEND_TESTS_DIR,
    SkeletonTestGenerator,
    mock_value,
    path_slug,
    render_component_test,
)
from autoforge.models.application import AppSpecification, Parameter, UIComponent


class TestHelpers:
    """Test naming and mock helpers."""

    def test_path_slug(self) -> None:
        """Test endpoint paths become file-name-safe slugs."""
        assert path_slug("/api/tasks/:id") == "api_tasks_id"
        assert path_slug("/api/{user}/items") == "api_user_items"
        assert path_slug("/") == "root"

    def test_mock_value(self) -> None:
        """Test mock literals by declared type."""
        assert mock_value("Number") == "123"
        assert mock_value("date") == "'mock-value'"

    def test_component_without_props(self) -> None:
        """Test a component without props gets only the render test."""
        content = render_component_test(UIComponent(name="Header"))
        assert "from '../components/component/Header'" in content
        assert "handles props" not in content

    def test_component_with_props(self) -> None:
        """Test declared props are passed as mock values."""
        content = render_component_test(
            UIComponent(name="Counter", props=(Parameter(name="start", type="number"),))
        )
        assert "start: 123" in content
        assert "<Counter {...mockProps} />" in content


class TestSkeletonTestGenerator:
    """Test writing skeleton tests into a tree."""

    async def test_generate(self, app_tree: Path, specification: AppSpecification) -> None:
        """Test one file per component and one per endpoint path."""
        written = await SkeletonTestGenerator().generate(specification, app_tree)

        frontend = app_tree / FRONTEND_TESTS_DIR
        backend = app_tree / BACKEND_TESTS_DIR
        assert written == sorted(
            [
                frontend / "TaskList.test.tsx",
                frontend / "TaskListPage.test.tsx",
                backend / "api_tasks.test.ts",
                backend / "api_tasks_id.test.ts",
            ]
        )
        assert all(path.is_file() for path in written)

    async def test_endpoints_grouped_by_path(self, app_tree: Path, specification: AppSpecification) -> None:
        """Test endpoints sharing a path land in one describe block with an auth check."""
        await SkeletonTestGenerator().generate(specification, app_tree)

        content = (app_tree / BACKEND_TESTS_DIR / "api_tasks.test.ts").read_text()
        assert content.count("describe(") == 1
        assert "request(app).get('/api/tasks')" in content
        assert ".set('Authorization', 'Bearer mock-token')" in content
        assert "POST /api/tasks requires authentication" in content
        assert "expect(response.status).toBe(401);" in content

    async def test_overwrites_existing(self, app_tree: Path, specification: AppSpecification) -> None:
        """Test regenerated tests replace stale ones."""
        target = app_tree / FRONTEND_TESTS_DIR / "TaskList.test.tsx"
        target.parent.mkdir(parents=True)
        target.write_text("stale")

        await SkeletonTestGenerator().generate(specification, app_tree)

        assert target.read_text() != "stale"

    async def test_missing_subprojects(self, tmp_path: Path, specification: AppSpecification) -> None:
        """Test nothing is written for sub-projects the tree does not have."""
        assert await SkeletonTestGenerator().generate(specification, tmp_path) == []
        assert list(tmp_path.iterdir()) == []
