"""Git service: runs the git CLI for the sync engine."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING

from auditsync.exceptions import GitCommandError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)


class GitRunner:
    """Invokes the git binary with interactive credential prompts disabled."""

    def __init__(self, git_binary: str = "git") -> None:
        self.git_binary = git_binary

    async def run(self, args: Sequence[str], cwd: Path | str) -> str:
        """Run a git command in ``cwd`` and return its trimmed stdout.

        Raises:
            GitCommandError: If git exits non-zero (message is the trimmed
                stderr) or the process cannot be spawned.
        """
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            raise GitCommandError(args, cwd, str(exc)) from exc

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            if not message:
                message = f"git {' '.join(args)} exited with status {proc.returncode}"
            raise GitCommandError(args, cwd, message, returncode=proc.returncode)
        return stdout.decode(errors="replace").strip()
