"""File-system and configuration watchers the sync core subscribes to.

The core only depends on the ``FileWatcher`` and ``ConfigWatcher``
protocols; the watchfiles-based classes are the daemon's implementations.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from watchfiles import Change, awatch

if TYPE_CHECKING:
    from collections.abc import Iterable

    from auditsync.filesystem.config_store import TomlConfigurationStore

logger = logging.getLogger(__name__)

PathListener = Callable[[Path], None]
NamespaceListener = Callable[[str], None]


class FileWatcher(Protocol):
    def on_create(self, listener: PathListener) -> None: ...

    def on_change(self, listener: PathListener) -> None: ...

    def on_delete(self, listener: PathListener) -> None: ...

    def dispose(self) -> None: ...


# (workspace_root, relative glob) -> watcher
FileWatcherFactory = Callable[[Path, str], FileWatcher]


class ConfigWatcher(Protocol):
    def on_change(self, listener: NamespaceListener) -> None: ...

    def dispose(self) -> None: ...


class BaseFileWatcher:
    """Listener bookkeeping shared by file watcher implementations."""

    def __init__(self) -> None:
        self._create_listeners: list[PathListener] = []
        self._change_listeners: list[PathListener] = []
        self._delete_listeners: list[PathListener] = []
        self.disposed = False

    def on_create(self, listener: PathListener) -> None:
        self._create_listeners.append(listener)

    def on_change(self, listener: PathListener) -> None:
        self._change_listeners.append(listener)

    def on_delete(self, listener: PathListener) -> None:
        self._delete_listeners.append(listener)

    def dispose(self) -> None:
        self.disposed = True
        self._create_listeners.clear()
        self._change_listeners.clear()
        self._delete_listeners.clear()

    def _emit(self, listeners: list[PathListener], path: Path) -> None:
        for listener in list(listeners):
            listener(path)

    def emit_create(self, path: Path) -> None:
        self._emit(self._create_listeners, path)

    def emit_change(self, path: Path) -> None:
        self._emit(self._change_listeners, path)

    def emit_delete(self, path: Path) -> None:
        self._emit(self._delete_listeners, path)


def matches_relative_glob(root: Path, path: Path, pattern: str) -> bool:
    """Check whether ``path`` matches ``pattern`` relative to ``root``.

    ``*`` does not cross directory separators.
    """
    try:
        relative = path.relative_to(root)
    except ValueError:
        return False
    pattern_parts = Path(pattern).parts
    if len(relative.parts) != len(pattern_parts):
        return False
    return all(
        fnmatch.fnmatchcase(part, pat)
        for part, pat in zip(relative.parts, pattern_parts, strict=True)
    )


class WatchfilesFileWatcher(BaseFileWatcher):
    """Watches a workspace root with watchfiles and emits matching events."""

    def __init__(self, root: Path, pattern: str, debounce_ms: int = 100) -> None:
        super().__init__()
        self.root = root
        self.pattern = pattern
        self._debounce_ms = debounce_ms
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch())

    def dispose(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        super().dispose()

    def _filter(self, change: Change, path: str) -> bool:
        return matches_relative_glob(self.root, Path(path), self.pattern)

    def dispatch(self, changes: Iterable[tuple[Change, str]]) -> None:
        for change, raw_path in changes:
            path = Path(raw_path)
            if not matches_relative_glob(self.root, path, self.pattern):
                continue
            if change is Change.added:
                self.emit_create(path)
            elif change is Change.modified:
                self.emit_change(path)
            elif change is Change.deleted:
                self.emit_delete(path)

    async def _watch(self) -> None:
        if not self.root.is_dir():
            logger.warning("Not watching %s: directory does not exist", self.root)
            return
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self._filter,
                debounce=self._debounce_ms,
                stop_event=self._stop_event,
            ):
                self.dispatch(changes)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("File watcher for %s stopped", self.root)


def watchfiles_watcher_factory(root: Path, pattern: str) -> FileWatcher:
    """Create and start a ``WatchfilesFileWatcher``."""
    watcher = WatchfilesFileWatcher(root, pattern)
    watcher.start()
    return watcher


class TomlConfigWatcher:
    """Reloads a TOML configuration store when its files change."""

    def __init__(self, store: TomlConfigurationStore) -> None:
        self._store = store
        self._listeners: list[NamespaceListener] = []
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def on_change(self, listener: NamespaceListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch())

    def dispose(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._listeners.clear()

    def restart(self) -> None:
        """Watch the store's current file paths again."""
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._stop_event = asyncio.Event()
        self.start()

    def reload(self) -> set[str]:
        """Reload the store and notify listeners of changed namespaces."""
        changed = self._store.reload()
        for namespace in sorted(changed):
            logger.info("Configuration namespace '%s' changed", namespace)
            for listener in list(self._listeners):
                listener(namespace)
        return changed

    async def _watch(self) -> None:
        config_files = {p.resolve() for p in self._store.paths}
        watch_dirs = sorted({p.parent for p in config_files if p.parent.is_dir()})
        if not watch_dirs:
            logger.info("No configuration directories to watch")
            return

        def _filter(change: Change, path: str) -> bool:
            return Path(path).resolve() in config_files

        try:
            async for _changes in awatch(
                *watch_dirs,
                watch_filter=_filter,
                recursive=False,
                stop_event=self._stop_event,
            ):
                self.reload()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Configuration watcher stopped")
