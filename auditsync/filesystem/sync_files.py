"""Filesystem primitives for moving sync files between workspace and store.

Sync files are opaque: identity is byte equality, never JSON equality.
Blocking I/O runs in worker threads so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

SYNC_DIR_NAME = ".vscode"
SYNC_FILE_EXTENSION = ".weaudit"


def user_sync_file(workspace_root: Path, username: str) -> Path:
    """Return the path of a user's sync file inside a workspace root."""
    return workspace_root / SYNC_DIR_NAME / f"{username}{SYNC_FILE_EXTENSION}"


def is_sync_file_name(name: str) -> bool:
    return name.endswith(SYNC_FILE_EXTENSION)


def _read_bytes_or_none(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except OSError:
        return None


def _files_are_identical(source: Path, target: Path) -> bool:
    source_bytes = _read_bytes_or_none(source)
    target_bytes = _read_bytes_or_none(target)
    if source_bytes is None or target_bytes is None:
        return False
    return source_bytes == target_bytes


async def files_are_identical(source: Path, target: Path) -> bool:
    """Return True if both files exist and have identical bytes."""
    return await asyncio.to_thread(_files_are_identical, source, target)


async def ensure_directory(dir_path: Path) -> None:
    """Create a directory and its parents if missing."""
    await asyncio.to_thread(dir_path.mkdir, parents=True, exist_ok=True)


def _list_sync_files(sync_dir: Path) -> list[Path]:
    try:
        entries = list(os.scandir(sync_dir))
    except OSError:
        return []
    return sorted(
        Path(entry.path)
        for entry in entries
        if entry.is_file() and is_sync_file_name(entry.name)
    )


async def list_sync_files(sync_dir: Path) -> list[Path]:
    """List sync files directly inside ``sync_dir``; a missing dir yields []."""
    return await asyncio.to_thread(_list_sync_files, sync_dir)


def _copy_file_atomic(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copyfile(source, tmp_path)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


async def copy_sync_file(source: Path, target: Path) -> None:
    """Copy ``source`` over ``target`` atomically, creating parent dirs.

    The content is staged in a temporary sibling and renamed into place so
    readers never observe a partially written file.
    """
    await asyncio.to_thread(_copy_file_atomic, source, target)


async def delete_sync_file(path: Path) -> None:
    """Delete a sync file; a file that is already gone is not an error."""
    await asyncio.to_thread(path.unlink, missing_ok=True)
