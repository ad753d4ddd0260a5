"""On-disk layout of the framework workspace.

    <root>/apps/<app_id>/                   live working trees
    <root>/backups/<app_id>/<backup_id>/    snapshots
    <root>/templates/                       generator templates
    <root>/logs/                            log files
"""

from __future__ import annotations

from pathlib import Path

import structlog

from autoforge.utils.async_helpers import ConfigurationError

log = structlog.get_logger()


class Workspace:
    """Paths under the workspace root."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).absolute()

    @property
    def apps_dir(self) -> Path:
        return self.root / "apps"

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def templates_dir(self) -> Path:
        return self.root / "templates"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def app_dir(self, app_id: str) -> Path:
        return self.apps_dir / app_id

    def app_backups_dir(self, app_id: str) -> Path:
        return self.backups_dir / app_id

    def backup_dir(self, app_id: str, backup_id: str) -> Path:
        return self.backups_dir / app_id / backup_id

    def ensure(self) -> None:
        """Create the workspace layout.

        Raises:
            ConfigurationError: If the workspace cannot be created.
        """
        try:
            for directory in (
                self.apps_dir,
                self.backups_dir,
                self.templates_dir,
                self.logs_dir,
            ):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create workspace at {self.root}: {e}") from e
        log.debug("workspace_ready", root=str(self.root))
