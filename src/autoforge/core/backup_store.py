"""Backup store: full snapshots of an application's working tree.

Snapshots live at ``<workspace>/backups/<app_id>/<backup_id>/``. Restores
copy the snapshot into a staging directory beside the live tree and then swap
the two with renames, so a failed restore leaves the live tree untouched.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

import structlog

from autoforge.core.workspace import Workspace
from autoforge.models.application import Application
from autoforge.models.common import utc_now
from autoforge.models.healing import Backup
from autoforge.utils.async_helpers import FrameworkError
from autoforge.utils.metrics import get_metrics

log = structlog.get_logger()

BACKUP_ID_PATTERN = re.compile(r"^backup-(\d+)$")

# Directories left out of the recorded file listing
UNLISTED_DIRS = frozenset({"node_modules"})


class BackupError(FrameworkError):
    """Base exception for backup store errors."""


class BackupIOError(BackupError, OSError):
    """The source tree could not be read or the destination written."""


class BackupNotFoundError(BackupError):
    """The requested backup no longer exists."""


def list_files(root: Path) -> tuple[str, ...]:
    """Relative POSIX paths of every file under ``root``.

    Dependency folders and dot-directories are skipped.
    """
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in UNLISTED_DIRS and not d.startswith(".")]
        base = Path(dirpath)
        files.extend((base / name).relative_to(root).as_posix() for name in filenames)
    return tuple(sorted(files))


class BackupStore:
    """Creates, lists and restores working-tree snapshots.

    History is kept per application in creation order and is rebuilt from
    disk the first time an application is touched.

    Example:
        store = BackupStore(Workspace("workspace"))
        backup = await store.create(app)
        ...
        await store.restore(app, backup)
    """

    def __init__(self, workspace: Workspace) -> None:
        self._workspace = workspace
        self._history: dict[str, list[Backup]] = {}
        self._last_ms: dict[str, int] = {}

    def _next_id(self, app_id: str) -> str:
        now_ms = time.time_ns() // 1_000_000
        last = self._last_ms.get(app_id, 0)
        if now_ms <= last:
            now_ms = last + 1
        self._last_ms[app_id] = now_ms
        return f"backup-{now_ms}"

    async def _ensure_loaded(self, app_id: str) -> list[Backup]:
        history = self._history.get(app_id)
        if history is not None:
            return history

        app_backups = self._workspace.app_backups_dir(app_id)

        def scan() -> list[Backup]:
            found: list[tuple[int, Backup]] = []
            if not app_backups.is_dir():
                return []
            for entry in app_backups.iterdir():
                match = BACKUP_ID_PATTERN.match(entry.name)
                if not match or not entry.is_dir():
                    continue
                stamp = int(match.group(1))
                found.append(
                    (
                        stamp,
                        Backup(
                            backup_id=entry.name,
                            app_id=app_id,
                            created_at=datetime.fromtimestamp(stamp / 1000, tz=UTC),
                            files=list_files(entry),
                        ),
                    )
                )
            found.sort(key=lambda item: item[0])
            return [backup for _, backup in found]

        loaded = await asyncio.to_thread(scan)
        # Another task may have loaded while this one was scanning
        history = self._history.setdefault(app_id, loaded)
        if loaded:
            stamp = int(loaded[-1].backup_id.removeprefix("backup-"))
            self._last_ms[app_id] = max(self._last_ms.get(app_id, 0), stamp)
        return history

    async def create(self, app: Application) -> Backup:
        """Copy the application's entire working tree into a new backup.

        Raises:
            BackupIOError: If the tree is unreadable or the backup cannot be written.
        """
        history = await self._ensure_loaded(app.id)
        source = app.root
        backup_id = self._next_id(app.id)
        destination = self._workspace.backup_dir(app.id, backup_id)

        def copy() -> tuple[str, ...]:
            if not source.is_dir():
                raise FileNotFoundError(f"Working tree {source} does not exist")
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, destination, symlinks=True)
            return list_files(destination)

        try:
            files = await asyncio.to_thread(copy)
        except (OSError, shutil.Error) as e:
            await asyncio.to_thread(shutil.rmtree, destination, True)
            log.error("backup_failed", app_id=app.id, backup_id=backup_id, error=str(e))
            raise BackupIOError(f"Could not back up {source}: {e}") from e

        backup = Backup(
            backup_id=backup_id,
            app_id=app.id,
            created_at=utc_now(),
            files=files,
        )
        history.append(backup)
        get_metrics().backups_created.inc()
        log.info("backup_created", app_id=app.id, backup_id=backup_id, files=len(files))
        return backup

    async def restore(self, app: Application, backup: Backup) -> None:
        """Replace the application's working tree wholesale with the backup.

        The live tree is either left as it was or fully replaced.

        Raises:
            BackupNotFoundError: If the backup no longer exists.
            BackupIOError: If the restore could not be completed.
        """
        source = self._workspace.backup_dir(backup.app_id, backup.backup_id)
        if not source.is_dir():
            raise BackupNotFoundError(
                f"Backup {backup.backup_id} for {backup.app_id} no longer exists"
            )

        live = app.root
        token = uuid.uuid4().hex[:8]
        staging = live.parent / f".{live.name}.restore-{token}"
        retired = live.parent / f".{live.name}.retired-{token}"

        def swap() -> None:
            live.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, staging, symlinks=True)
            had_live = live.exists()
            if had_live:
                os.rename(live, retired)
            try:
                os.rename(staging, live)
            except OSError:
                if had_live:
                    os.rename(retired, live)
                raise
            if had_live:
                shutil.rmtree(retired, ignore_errors=True)

        try:
            await asyncio.to_thread(swap)
        except (OSError, shutil.Error) as e:
            await asyncio.to_thread(shutil.rmtree, staging, True)
            log.error(
                "restore_failed", app_id=app.id, backup_id=backup.backup_id, error=str(e)
            )
            raise BackupIOError(f"Could not restore {backup.backup_id}: {e}") from e

        get_metrics().restores.inc()
        log.info("backup_restored", app_id=app.id, backup_id=backup.backup_id)

    async def history(self, app_id: str) -> list[Backup]:
        """All backups for an application, oldest first."""
        return list(await self._ensure_loaded(app_id))

    async def latest(self, app_id: str) -> Backup | None:
        history = await self._ensure_loaded(app_id)
        return history[-1] if history else None

    async def get(self, app_id: str, backup_id: str) -> Backup:
        """
        Raises:
            BackupNotFoundError: If no such backup is recorded.
        """
        for backup in await self._ensure_loaded(app_id):
            if backup.backup_id == backup_id:
                return backup
        raise BackupNotFoundError(f"Backup {backup_id} for {app_id} not found")

    async def purge(self, app_id: str) -> None:
        """Delete every backup of an application."""
        target = self._workspace.app_backups_dir(app_id)
        await asyncio.to_thread(shutil.rmtree, target, True)
        self._history.pop(app_id, None)
        log.info("backups_purged", app_id=app_id)
