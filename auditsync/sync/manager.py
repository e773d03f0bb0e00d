"""Sync manager: discovers repositories and owns the active sync sessions."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING

from auditsync.exceptions import GitCommandError
from auditsync.filesystem.sync_files import ensure_directory
from auditsync.services.datetime_service import format_iso, now_utc
from auditsync.services.git_service import GitRunner
from auditsync.services.remote_url_service import derive_repo_key
from auditsync.services.settings_service import (
    SYNC_NAMESPACE,
    SyncSettings,
    resolve_sync_settings,
    resolve_username,
)
from auditsync.sync.central import CentralGitSyncSession, CentralWorkspaceMapping
from auditsync.sync.session import BaseSyncSession, GitSyncSession, relative_inside
from auditsync.sync.shutdown import ShutdownFlushResult, flush_sessions_with_timeout
from auditsync.sync.watcher import watchfiles_watcher_factory

if TYPE_CHECKING:
    from collections.abc import Sequence

    from auditsync.config import Settings
    from auditsync.filesystem.config_store import ConfigurationStore
    from auditsync.sync.host import SyncHost
    from auditsync.sync.watcher import FileWatcherFactory

logger = logging.getLogger(__name__)

CENTRAL_SESSION_KEY = "central"

MSG_SYNC_DISABLED = "Auto sync is disabled. Enable it in settings to use Sync Now."
MSG_CENTRAL_URL_MISSING = "Central sync is enabled but no central repo URL is configured."
MSG_NO_REPOSITORIES = "No git repositories found to sync."


class SyncManager:
    """Creates, replaces and drives sync sessions for the open workspace roots."""

    def __init__(
        self,
        *,
        settings: Settings,
        config_store: ConfigurationStore,
        host: SyncHost,
        workspace_roots: Sequence[Path] = (),
        runner: GitRunner | None = None,
        watcher_factory: FileWatcherFactory = watchfiles_watcher_factory,
    ) -> None:
        self._settings = settings
        self._config_store = config_store
        self._host = host
        self._runner = runner or GitRunner(settings.git_binary)
        self._watcher_factory = watcher_factory
        self._workspace_roots = [Path(root).resolve() for root in workspace_roots]
        self._sessions: dict[str, BaseSyncSession] = {}
        self._refresh_lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self.last_success_at: str | None = None

    @property
    def sessions(self) -> dict[str, BaseSyncSession]:
        return dict(self._sessions)

    @property
    def workspace_roots(self) -> list[Path]:
        return list(self._workspace_roots)

    def current_settings(self) -> SyncSettings:
        return resolve_sync_settings(self._config_store)

    # ── Triggers ─────────────────────────────────────────

    async def set_workspace_roots(self, workspace_roots: Sequence[Path]) -> None:
        """Replace the open workspace roots and rebuild sessions."""
        self._workspace_roots = [Path(root).resolve() for root in workspace_roots]
        await self.refresh_sessions()

    def on_configuration_changed(self, namespace: str) -> None:
        """Rebuild sessions when a ``sync`` setting changes."""
        if namespace != SYNC_NAMESPACE:
            return
        task = asyncio.create_task(self.refresh_sessions())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Sessions ─────────────────────────────────────────

    async def refresh_sessions(self) -> None:
        """Close every session, then create new ones from fresh settings.

        Old sessions finish a cycle that is already running before any
        replacement touches the same checkout.
        """
        async with self._refresh_lock:
            settings = self.current_settings()
            await self._close_sessions()

            if not settings.enabled or not self._workspace_roots:
                return

            repo_map = await self._collect_repo_map(self._workspace_roots)
            base_dir = self._settings.worktree_base_dir
            await ensure_directory(base_dir)
            username = resolve_username(self._config_store, self._settings.username)

            if settings.is_central:
                await self._create_central_session(settings, repo_map, base_dir, username)
                return

            for repo_root, repo_workspace_roots in repo_map.items():
                session = GitSyncSession(
                    repo_root=repo_root,
                    workspace_roots=repo_workspace_roots,
                    worktree_base_dir=base_dir,
                    settings=settings,
                    runner=self._runner,
                    host=self._host,
                    watcher_factory=self._watcher_factory,
                    username=username,
                    on_sync_success=self.record_sync_success,
                    suppress_events_ms=self._settings.suppress_events_ms,
                )
                try:
                    await session.initialize()
                except Exception as exc:
                    await session.close()
                    logger.error("Sync session disabled for %s: %s", repo_root, exc)
                    continue
                self._sessions[str(repo_root)] = session

    async def _create_central_session(
        self,
        settings: SyncSettings,
        repo_map: dict[Path, list[Path]],
        base_dir: Path,
        username: str,
    ) -> None:
        if not settings.central_repo_url:
            logger.warning("Central sync is enabled but no central repo URL is configured")
            return
        if not repo_map:
            logger.warning("Central sync enabled but no git repositories were found")
            return
        if settings.repo_key_override and len(repo_map) > 1:
            logger.warning("repoKeyOverride applies to all repos; multiple repos may collide")

        mappings = await self._build_central_mappings(repo_map, settings.repo_key_override)
        if not mappings:
            logger.warning("Central sync enabled but no workspace roots are eligible")
            return

        session = CentralGitSyncSession(
            workspace_mappings=mappings,
            worktree_base_dir=base_dir,
            settings=settings,
            runner=self._runner,
            host=self._host,
            watcher_factory=self._watcher_factory,
            username=username,
            on_sync_success=self.record_sync_success,
            suppress_events_ms=self._settings.suppress_events_ms,
        )
        try:
            await session.initialize()
        except Exception as exc:
            await session.close()
            logger.error("Central sync session disabled: %s", exc)
            return
        self._sessions[CENTRAL_SESSION_KEY] = session

    async def _build_central_mappings(
        self, repo_map: dict[Path, list[Path]], repo_key_override: str
    ) -> list[CentralWorkspaceMapping]:
        mappings: list[CentralWorkspaceMapping] = []
        for repo_root, workspace_roots in repo_map.items():
            repo_key = await derive_repo_key(
                self._runner,
                repo_root,
                repo_key_override,
                self._settings.preferred_remote_org,
            )
            for workspace_root in workspace_roots:
                repo_relative_root = relative_inside(repo_root, workspace_root)
                if repo_relative_root is None:
                    continue
                mappings.append(
                    CentralWorkspaceMapping(
                        workspace_root=workspace_root,
                        repo_relative_root=repo_relative_root,
                        repo_root=repo_root,
                        repo_key=repo_key,
                    )
                )
        return mappings

    async def _collect_repo_map(self, workspace_roots: Sequence[Path]) -> dict[Path, list[Path]]:
        """Group workspace roots by the git repository that contains them."""
        repo_roots = await asyncio.gather(
            *(self._resolve_repo_root(root) for root in workspace_roots)
        )
        repo_map: dict[Path, list[Path]] = defaultdict(list)
        for workspace_root, repo_root in zip(workspace_roots, repo_roots, strict=True):
            if repo_root is not None:
                repo_map[repo_root].append(workspace_root)
        return dict(repo_map)

    async def _resolve_repo_root(self, workspace_root: Path) -> Path | None:
        try:
            output = await self._runner.run(["rev-parse", "--show-toplevel"], cwd=workspace_root)
        except GitCommandError as exc:
            logger.info("Sync disabled for %s: %s", workspace_root, exc)
            return None
        return Path(output.strip()).resolve()

    async def _close_sessions(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions))

    def _dispose_sessions(self) -> None:
        for session in self._sessions.values():
            session.dispose()
        self._sessions.clear()

    # ── Operations ───────────────────────────────────────

    async def sync_now(self) -> str | None:
        """Run a local sync on every session.

        Returns the informational message shown instead, if sync could not run.
        """
        settings = self.current_settings()
        message: str | None = None
        if not settings.enabled:
            message = MSG_SYNC_DISABLED
        elif settings.is_central and not settings.central_repo_url:
            message = MSG_CENTRAL_URL_MISSING
        elif not self._sessions:
            message = MSG_NO_REPOSITORIES

        if message is not None:
            self._host.show_information(message)
            return message

        await asyncio.gather(*(session.sync_now() for session in self._sessions.values()))
        return None

    def record_sync_success(self) -> None:
        """Remember when a sync last succeeded and refresh the status display."""
        self.last_success_at = format_iso(now_utc())
        self._host.refresh_sync_status()

    async def flush(self, timeout_ms: int) -> ShutdownFlushResult:
        return await flush_sessions_with_timeout(list(self._sessions.values()), timeout_ms)

    def dispose(self) -> None:
        self._dispose_sessions()
        for task in self._background:
            task.cancel()
        self._background.clear()
