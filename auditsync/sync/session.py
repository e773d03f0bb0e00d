"""Git sync sessions: pull, reconcile and push cycles for sync files.

A session owns one local git checkout (a worktree of the audited repository,
or a clone of the central repository), the set of workspace sync files with
unsynced edits, a debounce timer, a poll timer and a serial cycle queue.

Cycle outline (local sync):

1. ensure the checkout exists
2. pull the sync branch if it exists on the remote
3. after a pull, copy remote changes into the workspace, skipping files that
   are dirty in this cycle's snapshot (local edits win)
4. copy dirty workspace files into the checkout, stage and commit
5. push if a commit was made, or if an earlier push failed

Poll cycles run steps 1-3 only.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from auditsync.exceptions import GitCommandError, SyncConfigurationError, SyncFlushError
from auditsync.filesystem.sync_files import (
    SYNC_DIR_NAME,
    SYNC_FILE_EXTENSION,
    copy_sync_file,
    delete_sync_file,
    ensure_directory,
    files_are_identical,
    list_sync_files,
    user_sync_file,
)
from auditsync.services.remote_url_service import hash_value
from auditsync.sync.task_queue import SerialTaskQueue

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from auditsync.services.git_service import GitRunner
    from auditsync.services.settings_service import SyncSettings
    from auditsync.sync.host import SyncHost
    from auditsync.sync.watcher import FileWatcher, FileWatcherFactory

logger = logging.getLogger(__name__)

SYNC_COMMIT_MESSAGE = "chore(weaudit): sync findings"
DEFAULT_SUPPRESS_EVENTS_MS = 2000
SYNC_FILE_GLOB = f"{SYNC_DIR_NAME}/*{SYNC_FILE_EXTENSION}"

_LOCAL_CYCLE = "local"
_POLL_CYCLE = "poll"


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SYNCING = "syncing"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class WorkspaceRootMapping:
    """A workspace folder and its position inside its git repository."""

    workspace_root: Path
    repo_relative_root: Path

    @property
    def sync_dir(self) -> Path:
        return self.workspace_root / SYNC_DIR_NAME


def relative_inside(base: Path, target: Path) -> Path | None:
    """Return ``target`` relative to ``base``, or None if it escapes ``base``."""
    relative = os.path.relpath(target, base)
    if os.path.isabs(relative) or relative == ".." or relative.startswith(".." + os.sep):
        return None
    return Path(relative)


def build_workspace_mappings(
    repo_root: Path, workspace_roots: Iterable[Path]
) -> list[WorkspaceRootMapping]:
    """Map workspace roots to repo-relative roots, dropping roots outside the repo."""
    mappings: list[WorkspaceRootMapping] = []
    for workspace_root in workspace_roots:
        repo_relative_root = relative_inside(repo_root, workspace_root)
        if repo_relative_root is None:
            logger.debug("Skipping %s: outside repository %s", workspace_root, repo_root)
            continue
        mappings.append(WorkspaceRootMapping(workspace_root, repo_relative_root))
    return mappings


class BaseSyncSession(ABC):
    """State machine shared by repo-branch and central-repo sessions."""

    def __init__(
        self,
        *,
        label: str,
        store_path: Path,
        workspace_mappings: Sequence[WorkspaceRootMapping],
        settings: SyncSettings,
        runner: GitRunner,
        host: SyncHost,
        watcher_factory: FileWatcherFactory,
        username: str,
        on_sync_success: Callable[[], None],
        suppress_events_ms: int = DEFAULT_SUPPRESS_EVENTS_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.label = label
        self.store_path = store_path
        self.workspace_mappings = list(workspace_mappings)
        self.settings = settings
        self._runner = runner
        self._host = host
        self._watcher_factory = watcher_factory
        self._username = username
        self._on_sync_success = on_sync_success
        self._suppress_window = suppress_events_ms / 1000
        self._clock = clock

        self._state = SessionState.UNINITIALIZED
        self._watchers: list[FileWatcher] = []
        self._dirty_files: set[Path] = set()
        self._queue = SerialTaskQueue(label)
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._suppress_events_until = 0.0

    # ── Store-specific hooks ─────────────────────────────

    @abstractmethod
    async def ensure_store(self) -> None:
        """Make sure the local checkout exists and tracks the sync branch."""

    @abstractmethod
    async def remote_branch_exists(self) -> bool: ...

    @abstractmethod
    async def pull_remote(self) -> bool:
        """Pull the sync branch; return False when it does not exist remotely."""

    @abstractmethod
    async def push_remote(self) -> None: ...

    @abstractmethod
    def store_sync_dir(self, mapping: WorkspaceRootMapping) -> Path:
        """Directory in the checkout that mirrors ``mapping``'s sync dir."""

    @abstractmethod
    def store_relative_path(self, workspace_file: Path) -> str | None:
        """Checkout-relative POSIX path for a workspace file, or None."""

    # ── Public API ───────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def dirty_files(self) -> frozenset[Path]:
        return frozenset(self._dirty_files)

    @property
    def poll_interval_seconds(self) -> int:
        return max(1, self.settings.poll_minutes) * 60

    async def initialize(self) -> None:
        """Prepare the checkout, watchers and poll timer, then run a first cycle."""
        await self.ensure_store()
        seeded = self._seed_local_user_file()
        self._setup_watchers()
        self._start_polling()
        self._state = SessionState.READY
        logger.info(
            "Sync session ready for %s (%d workspace roots)",
            self.label,
            len(self.workspace_mappings),
        )
        if seeded:
            self._enqueue_local_sync()
        else:
            self._enqueue_poll_sync()

    def sync_now(self) -> asyncio.Task[None]:
        """Queue a local sync cycle; await the result to wait for it."""
        return self._enqueue_local_sync()

    def is_sync_active(self) -> bool:
        return self._queue.is_busy

    async def flush_pending(self) -> None:
        """Push pending edits now and wait for every queued cycle.

        Raises:
            SyncFlushError: If edits are still unsynced once the queue drained.
        """
        self._cancel_debounce()
        if self._dirty_files:
            self._enqueue_local_sync()
        await self._queue.drain()
        if self._dirty_files:
            raise SyncFlushError(
                f"{len(self._dirty_files)} sync file(s) in {self.label} are still unsynced"
            )

    def dispose(self) -> None:
        """Stop watchers and timers. Safe to call more than once."""
        for watcher in self._watchers:
            watcher.dispose()
        self._watchers.clear()
        self._cancel_debounce()
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._queue.close()
        if self._state is not SessionState.DISPOSED:
            logger.debug("Disposed sync session for %s", self.label)
        self._state = SessionState.DISPOSED

    async def close(self) -> None:
        """Dispose the session and wait for a cycle that was already running."""
        self.dispose()
        await self._queue.drain()

    # ── Watchers and timers ──────────────────────────────

    def _seed_local_user_file(self) -> bool:
        seeded = False
        for mapping in self.workspace_mappings:
            user_file = user_sync_file(mapping.workspace_root, self._username)
            if user_file.exists():
                self._dirty_files.add(user_file)
                seeded = True
        return seeded

    def _setup_watchers(self) -> None:
        for mapping in self.workspace_mappings:
            watcher = self._watcher_factory(mapping.workspace_root, SYNC_FILE_GLOB)
            watcher.on_create(self.on_workspace_file_change)
            watcher.on_change(self.on_workspace_file_change)
            watcher.on_delete(self.on_workspace_file_change)
            self._watchers.append(watcher)

    def _start_polling(self) -> None:
        self._poll_task = asyncio.create_task(self._poll_loop(self.poll_interval_seconds))

    async def _poll_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._enqueue_poll_sync()

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def on_workspace_file_change(self, file_path: Path) -> None:
        """Record a watcher event for a sync file and restart the debounce timer."""
        if self._state is SessionState.DISPOSED:
            return
        if self._clock() < self._suppress_events_until:
            logger.debug("Ignoring %s: inside suppression window", file_path)
            return
        self._dirty_files.add(Path(file_path))
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(
            self.settings.debounce_ms / 1000, self._on_debounce_elapsed
        )

    def _on_debounce_elapsed(self) -> None:
        self._debounce_handle = None
        self._enqueue_local_sync()

    def _enqueue_local_sync(self) -> asyncio.Task[None]:
        return self._queue.enqueue(
            _LOCAL_CYCLE, lambda: self._run_cycle(self.perform_local_sync)
        )

    def _enqueue_poll_sync(self) -> asyncio.Task[None]:
        return self._queue.enqueue(
            _POLL_CYCLE, lambda: self._run_cycle(self.perform_poll_sync)
        )

    async def _run_cycle(self, cycle: Callable[[], Awaitable[None]]) -> None:
        if self._state is SessionState.DISPOSED:
            return
        self._state = SessionState.SYNCING
        try:
            await cycle()
        finally:
            if self._state is SessionState.SYNCING:
                self._state = SessionState.READY

    # ── Cycles ───────────────────────────────────────────

    async def perform_local_sync(self) -> None:
        """Pull, reconcile remote changes, then commit and push local edits."""
        dirty_snapshot = set(self._dirty_files)
        self._dirty_files.clear()
        record_success = False

        try:
            await self.ensure_store()
            if await self.pull_remote():
                if await self.apply_remote_to_workspace(dirty_snapshot):
                    await self._notify_reload()
                record_success = True

            if dirty_snapshot:
                staged = await self.apply_workspace_to_store(dirty_snapshot)
                committed = await self.commit_changes(staged)
                if committed or await self.has_unpushed_commits():
                    await self.push_remote()
                    logger.info("Pushed %d sync file(s) from %s", len(staged), self.label)
                    record_success = True
        except Exception:
            self._merge_dirty(dirty_snapshot)
            raise

        if record_success:
            self._on_sync_success()

    async def perform_poll_sync(self) -> None:
        """Pull and reconcile remote changes without pushing anything."""
        await self.ensure_store()
        if not await self.pull_remote():
            return
        if await self.apply_remote_to_workspace(set()):
            await self._notify_reload()
        self._on_sync_success()

    async def _notify_reload(self) -> None:
        await self._host.reload_configuration_files()
        await self._host.reload_findings()

    async def apply_remote_to_workspace(self, dirty_snapshot: set[Path]) -> bool:
        """Mirror the checkout's sync files into the workspace.

        Files in ``dirty_snapshot`` are left alone. Watcher events caused by
        these writes are suppressed until the suppression window elapses.
        """
        applied = False
        self._suppress_events_until = math.inf
        try:
            for mapping in self.workspace_mappings:
                workspace_dir = mapping.sync_dir
                store_files, workspace_files = await asyncio.gather(
                    list_sync_files(self.store_sync_dir(mapping)),
                    list_sync_files(workspace_dir),
                )
                store_names = {store_file.name for store_file in store_files}

                for store_file in store_files:
                    workspace_file = workspace_dir / store_file.name
                    if workspace_file in dirty_snapshot:
                        continue
                    if not await files_are_identical(store_file, workspace_file):
                        await copy_sync_file(store_file, workspace_file)
                        logger.debug("Applied remote %s", workspace_file)
                        applied = True

                for workspace_file in workspace_files:
                    if workspace_file.name in store_names or workspace_file in dirty_snapshot:
                        continue
                    await delete_sync_file(workspace_file)
                    logger.debug("Removed %s (deleted remotely)", workspace_file)
                    applied = True
        finally:
            self._suppress_events_until = self._clock() + self._suppress_window
        return applied

    async def apply_workspace_to_store(self, dirty_snapshot: set[Path]) -> list[str]:
        """Copy dirty workspace files into the checkout, or delete them there.

        Returns the checkout-relative paths that were written or removed.
        """
        touched: list[str] = []
        for workspace_file in sorted(dirty_snapshot):
            relative_path = self.store_relative_path(workspace_file)
            if relative_path is None:
                logger.debug("Skipping %s: no location in %s", workspace_file, self.label)
                continue
            store_file = self.store_path / relative_path
            if workspace_file.exists():
                await copy_sync_file(workspace_file, store_file)
                touched.append(relative_path)
            elif store_file.exists():
                await delete_sync_file(store_file)
                touched.append(relative_path)
        return touched

    async def commit_changes(self, relative_paths: Sequence[str]) -> bool:
        """Stage ``relative_paths`` and commit if anything is staged."""
        unique_paths = sorted(set(relative_paths))
        if not unique_paths:
            return False
        await self._git("add", "-f", "--", *unique_paths)
        status = await self._git("status", "--porcelain")
        if not status.strip():
            return False
        await self._git("commit", "-m", SYNC_COMMIT_MESSAGE)
        return True

    async def has_unpushed_commits(self) -> bool:
        """Check for sync commits left behind by a push that failed."""
        try:
            ahead = await self._git("rev-list", "--count", "@{upstream}..HEAD")
        except GitCommandError:
            # no upstream until the first push succeeds
            try:
                last_sync = await self._git(
                    "log",
                    "-1",
                    "--format=%H",
                    "--fixed-strings",
                    f"--grep={SYNC_COMMIT_MESSAGE}",
                    "HEAD",
                )
            except GitCommandError:
                return False
            return bool(last_sync.strip())
        return int(ahead.strip() or "0") > 0

    def _merge_dirty(self, dirty_snapshot: set[Path]) -> None:
        self._dirty_files.update(dirty_snapshot)

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        return await self._runner.run(list(args), cwd=cwd or self.store_path)


class GitSyncSession(BaseSyncSession):
    """Syncs one repository's sync files through a branch of that repository.

    The branch is checked out in a dedicated worktree so the user's own
    checkout is never touched.
    """

    def __init__(
        self,
        *,
        repo_root: Path,
        workspace_roots: Sequence[Path],
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
        self.repo_root = repo_root
        super().__init__(
            label=str(repo_root),
            store_path=worktree_base_dir / hash_value(str(repo_root)),
            workspace_mappings=build_workspace_mappings(repo_root, workspace_roots),
            settings=settings,
            runner=runner,
            host=host,
            watcher_factory=watcher_factory,
            username=username,
            on_sync_success=on_sync_success,
            suppress_events_ms=suppress_events_ms,
            clock=clock,
        )

    @property
    def worktree_path(self) -> Path:
        return self.store_path

    async def ensure_store(self) -> None:
        if (self.worktree_path / ".git").exists():
            return
        if self.worktree_path.exists():
            raise SyncConfigurationError(
                f"Worktree path is not a git worktree: {self.worktree_path}"
            )
        if not await self.remote_exists():
            raise SyncConfigurationError(
                f"Remote '{self.settings.remote_name}' is not configured."
            )

        remote = self.settings.remote_name
        branch = self.settings.branch_name
        await ensure_directory(self.worktree_path.parent)
        args = ["worktree", "add", "-B", branch, str(self.worktree_path)]
        if await self.remote_branch_exists():
            await self._git("fetch", remote, branch, cwd=self.repo_root)
            args.append(f"{remote}/{branch}")
        await self._git(*args, cwd=self.repo_root)
        logger.info("Created sync worktree for %s at %s", self.repo_root, self.worktree_path)

    async def remote_exists(self) -> bool:
        try:
            await self._git("remote", "get-url", self.settings.remote_name, cwd=self.repo_root)
        except GitCommandError:
            return False
        return True

    async def remote_branch_exists(self) -> bool:
        try:
            output = await self._git(
                "ls-remote",
                "--heads",
                self.settings.remote_name,
                self.settings.branch_name,
                cwd=self.repo_root,
            )
        except GitCommandError as exc:
            logger.warning("Cannot query remote branch for %s: %s", self.repo_root, exc)
            return False
        return bool(output.strip())

    async def pull_remote(self) -> bool:
        if not await self.remote_branch_exists():
            return False
        await self._git("pull", "--rebase", self.settings.remote_name, self.settings.branch_name)
        return True

    async def push_remote(self) -> None:
        await self._git("push", "-u", self.settings.remote_name, self.settings.branch_name)

    def store_sync_dir(self, mapping: WorkspaceRootMapping) -> Path:
        return self.worktree_path / mapping.repo_relative_root / SYNC_DIR_NAME

    def store_relative_path(self, workspace_file: Path) -> str | None:
        relative = relative_inside(self.repo_root, workspace_file)
        return relative.as_posix() if relative is not None else None
