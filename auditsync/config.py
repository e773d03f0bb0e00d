"""Process settings loaded from environment variables."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WORKSPACE_CONFIG_RELATIVE_PATH = Path(".vscode") / "weaudit.toml"


class Settings(BaseSettings):
    """weAudit sync daemon settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUDITSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Workspace
    workspace_roots: list[Path] = Field(default_factory=list)
    username: str = ""

    # Paths
    storage_dir: Path = Path("./data")
    global_config_path: Path = Path("~/.config/weaudit/settings.toml")
    workspace_config_path: Path | None = None

    # Git
    git_binary: str = "git"
    preferred_remote_org: str = "trailofbits"

    # Timing
    suppress_events_ms: int = Field(default=2000, ge=0)
    shutdown_flush_timeout_ms: int = Field(default=5000, ge=0)

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)

    @field_validator("global_config_path", "storage_dir")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def worktree_base_dir(self) -> Path:
        """Directory holding per-repository worktrees and central clones."""
        return self.storage_dir / "git-sync"

    def resolved_workspace_config_path(self) -> Path | None:
        """Return the workspace-level TOML path, defaulting to the first root."""
        return self.workspace_config_path_for(self.workspace_roots)

    def workspace_config_path_for(self, workspace_roots: Sequence[Path]) -> Path | None:
        """Workspace-level TOML path for a given set of open roots."""
        if self.workspace_config_path is not None:
            return self.workspace_config_path
        if not workspace_roots:
            return None
        return workspace_roots[0] / WORKSPACE_CONFIG_RELATIVE_PATH
