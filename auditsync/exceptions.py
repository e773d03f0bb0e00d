"""Sync engine exception types.

Convention:
- ``GitCommandError``: a git invocation exited non-zero or could not be
  spawned. Callers decide whether that is fatal; no retries happen here.
- ``SyncConfigurationError``: the session cannot be set up with the
  current settings (missing remote, occupied worktree path). The manager
  logs it and leaves that repository unsynced.
- ``SyncFlushError``: pending edits were still unsynced after a shutdown
  flush ran. Reported as a structured shutdown outcome, never raised to the
  host process.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class GitCommandError(Exception):
    """Raised when a git command fails.

    ``str(exc)`` is the trimmed stderr of the command, or the spawn error
    message when the binary could not be started.
    """

    def __init__(
        self,
        args: Sequence[str],
        cwd: Path | str,
        message: str,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.git_args = list(args)
        self.cwd = str(cwd)
        self.message = message
        self.returncode = returncode


class SyncConfigurationError(Exception):
    """Raised when a sync session cannot be initialized from its settings."""


class SyncFlushError(Exception):
    """Raised when a flush finished but local edits remain unsynced."""
