"""Central-repository sync: many audited repositories through one shared clone.

Sync files live in the central clone under
``repos/<repo_key>/<repo_relative_root>/.vscode/`` so unrelated audited
repositories never collide.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from auditsync.exceptions import GitCommandError
from auditsync.filesystem.sync_files import SYNC_DIR_NAME, ensure_directory
from auditsync.services.remote_url_service import hash_value
from auditsync.sync.session import (
    DEFAULT_SUPPRESS_EVENTS_MS,
    BaseSyncSession,
    WorkspaceRootMapping,
    relative_inside,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from auditsync.services.git_service import GitRunner
    from auditsync.services.settings_service import SyncSettings
    from auditsync.sync.host import SyncHost
    from auditsync.sync.watcher import FileWatcherFactory

logger = logging.getLogger(__name__)

CENTRAL_REMOTE_NAME = "origin"
CENTRAL_REPOS_DIR = "repos"


@dataclass(frozen=True)
class CentralWorkspaceMapping(WorkspaceRootMapping):
    """A workspace mapping namespaced by the audited repository's key."""

    repo_root: Path
    repo_key: str

    @property
    def central_root(self) -> PurePosixPath:
        relative = PurePosixPath(self.repo_relative_root.as_posix())
        return PurePosixPath(CENTRAL_REPOS_DIR, self.repo_key) / relative


class CentralGitSyncSession(BaseSyncSession):
    """Syncs every workspace root through a single central repository clone."""

    def __init__(
        self,
        *,
        workspace_mappings: Sequence[CentralWorkspaceMapping],
        worktree_base_dir: Path,
        settings: SyncSettings,
        runner: GitRunner,
        host: SyncHost,
        watcher_factory: FileWatcherFactory,
        username: str,
        on_sync_success: Callable[[], None],
        suppress_events_ms: int = DEFAULT_SUPPRESS_EVENTS_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        central_repo_url = settings.central_repo_url.strip()
        self.central_mappings = list(workspace_mappings)
        super().__init__(
            label="central",
            store_path=worktree_base_dir / "central" / hash_value(central_repo_url),
            workspace_mappings=self.central_mappings,
            settings=settings,
            runner=runner,
            host=host,
            watcher_factory=watcher_factory,
            username=username,
            on_sync_success=on_sync_success,
            suppress_events_ms=suppress_events_ms,
            clock=clock,
        )
        self.central_repo_url = central_repo_url

    @property
    def repo_path(self) -> Path:
        return self.store_path

    async def ensure_store(self) -> None:
        await ensure_directory(self.repo_path)
        if not (self.repo_path / ".git").exists():
            await self._git("init")
            logger.info("Initialized central sync clone at %s", self.repo_path)
        await self._ensure_central_remote()
        await self._ensure_central_branch()

    async def _ensure_central_remote(self) -> None:
        try:
            current = await self._git("remote", "get-url", CENTRAL_REMOTE_NAME)
        except GitCommandError:
            await self._git("remote", "add", CENTRAL_REMOTE_NAME, self.central_repo_url)
            return
        if current.strip() != self.central_repo_url:
            await self._git("remote", "set-url", CENTRAL_REMOTE_NAME, self.central_repo_url)

    async def _ensure_central_branch(self) -> None:
        branch = self.settings.central_branch
        try:
            current_branch = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        except GitCommandError:
            # unborn HEAD in a freshly initialized clone
            current_branch = ""
        if current_branch.strip() == branch:
            return

        if await self.remote_branch_exists():
            await self._git("fetch", CENTRAL_REMOTE_NAME, branch)
            await self._git("checkout", "-B", branch, f"{CENTRAL_REMOTE_NAME}/{branch}")
        else:
            await self._git("checkout", "-B", branch)

    async def remote_branch_exists(self) -> bool:
        try:
            output = await self._git(
                "ls-remote", "--heads", CENTRAL_REMOTE_NAME, self.settings.central_branch
            )
        except GitCommandError as exc:
            logger.warning("Cannot query central sync branch: %s", exc)
            return False
        return bool(output.strip())

    async def pull_remote(self) -> bool:
        if not await self.remote_branch_exists():
            return False
        await self._git("pull", "--rebase", CENTRAL_REMOTE_NAME, self.settings.central_branch)
        return True

    async def push_remote(self) -> None:
        await self._git("push", "-u", CENTRAL_REMOTE_NAME, self.settings.central_branch)

    def store_sync_dir(self, mapping: WorkspaceRootMapping) -> Path:
        if not isinstance(mapping, CentralWorkspaceMapping):
            raise TypeError(
                f"Central sessions need a CentralWorkspaceMapping, got {type(mapping).__name__}"
            )
        return self.repo_path / mapping.central_root / SYNC_DIR_NAME

    def mapping_for_workspace_file(self, file_path: Path) -> CentralWorkspaceMapping | None:
        for mapping in self.central_mappings:
            if relative_inside(mapping.workspace_root, file_path) is not None:
                return mapping
        return None

    def store_relative_path(self, workspace_file: Path) -> str | None:
        mapping = self.mapping_for_workspace_file(workspace_file)
        if mapping is None:
            return None
        workspace_relative = relative_inside(mapping.workspace_root, workspace_file)
        if workspace_relative is None:
            return None
        return (mapping.central_root / workspace_relative.as_posix()).as_posix()
