"""Resolution of the ``sync.*`` settings from layered configuration."""

from __future__ import annotations

import getpass
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auditsync.filesystem.config_store import ConfigurationStore

SYNC_NAMESPACE = "sync"

DEFAULT_BRANCH_NAME = "weaudit-sync"
DEFAULT_CENTRAL_BRANCH = "weaudit-sync"
DEFAULT_REMOTE_NAME = "origin"
DEFAULT_POLL_MINUTES = 1
DEFAULT_DEBOUNCE_MS = 1000


class SyncMode(StrEnum):
    """Where sync files are stored remotely."""

    REPO_BRANCH = "repo-branch"
    CENTRAL_REPO = "central-repo"


@dataclass(frozen=True)
class SyncSettings:
    """Resolved snapshot of the sync settings for one session lifetime."""

    enabled: bool = False
    mode: SyncMode = SyncMode.REPO_BRANCH
    branch_name: str = DEFAULT_BRANCH_NAME
    remote_name: str = DEFAULT_REMOTE_NAME
    poll_minutes: int = DEFAULT_POLL_MINUTES
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    central_repo_url: str = ""
    central_branch: str = DEFAULT_CENTRAL_BRANCH
    repo_key_override: str = ""

    @property
    def is_central(self) -> bool:
        return self.mode is SyncMode.CENTRAL_REPO


def normalize_number(value: Any, fallback: int, min_value: int) -> int:
    """Clamp a numeric setting to ``min_value``, flooring it.

    Non-numeric and non-finite values return ``fallback``.
    """
    if isinstance(value, bool) or not isinstance(value, int | float):
        return fallback
    if not math.isfinite(value):
        return fallback
    return max(min_value, math.floor(value))


def read_workspace_setting(store: ConfigurationStore, key: str, fallback: Any) -> Any:
    """Read a workspace-scoped setting, ignoring global values."""
    inspected = store.inspect(key)
    if inspected is None:
        return fallback
    if inspected.workspace_value is not None:
        return inspected.workspace_value
    if inspected.workspace_folder_value is not None:
        return inspected.workspace_folder_value
    return fallback


def read_workspace_or_global_setting(
    store: ConfigurationStore, key: str, fallback: Any
) -> Any:
    """Read a setting preferring workspace values, then globals."""
    inspected = store.inspect(key)
    if inspected is None:
        return fallback
    for value in (
        inspected.workspace_value,
        inspected.workspace_folder_value,
        inspected.global_value,
    ):
        if value is not None:
            return value
    return fallback


def read_global_or_workspace_setting(
    store: ConfigurationStore, key: str, fallback: Any
) -> Any:
    """Read a setting preferring the global (user) value over workspace values."""
    inspected = store.inspect(key)
    if inspected is None:
        return fallback
    for value in (
        inspected.global_value,
        inspected.workspace_value,
        inspected.workspace_folder_value,
    ):
        if value is not None:
            return value
    return fallback


def _as_str(value: Any, fallback: str) -> str:
    return value.strip() if isinstance(value, str) else fallback


def _as_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def resolve_sync_settings(store: ConfigurationStore) -> SyncSettings:
    """Build a fresh ``SyncSettings`` snapshot.

    Repo-branch settings are workspace-scoped. Central-repo settings prefer
    the global scope so one central endpoint serves every project of a user.
    """
    mode_value = read_workspace_or_global_setting(
        store, f"{SYNC_NAMESPACE}.mode", SyncMode.REPO_BRANCH.value
    )
    mode = (
        SyncMode.CENTRAL_REPO
        if mode_value == SyncMode.CENTRAL_REPO.value
        else SyncMode.REPO_BRANCH
    )

    if mode is SyncMode.CENTRAL_REPO:

        def read(name: str, fallback: Any) -> Any:
            return read_global_or_workspace_setting(store, f"{SYNC_NAMESPACE}.{name}", fallback)

        central_repo_url = _as_str(read("centralRepoUrl", ""), "")
        central_branch = _as_str(read("centralBranch", DEFAULT_CENTRAL_BRANCH), "")
        repo_key_override = _as_str(read("repoKeyOverride", ""), "")
    else:

        def read(name: str, fallback: Any) -> Any:
            return read_workspace_setting(store, f"{SYNC_NAMESPACE}.{name}", fallback)

        central_repo_url = ""
        central_branch = DEFAULT_CENTRAL_BRANCH
        repo_key_override = ""

    branch_name = _as_str(
        read_workspace_setting(store, f"{SYNC_NAMESPACE}.branchName", DEFAULT_BRANCH_NAME), ""
    )
    remote_name = _as_str(
        read_workspace_setting(store, f"{SYNC_NAMESPACE}.remoteName", DEFAULT_REMOTE_NAME), ""
    )

    return SyncSettings(
        enabled=_as_bool(read("enabled", False), False),
        mode=mode,
        branch_name=branch_name or DEFAULT_BRANCH_NAME,
        remote_name=remote_name or DEFAULT_REMOTE_NAME,
        poll_minutes=normalize_number(
            read("pollMinutes", DEFAULT_POLL_MINUTES), DEFAULT_POLL_MINUTES, 1
        ),
        debounce_ms=normalize_number(
            read("debounceMs", DEFAULT_DEBOUNCE_MS), DEFAULT_DEBOUNCE_MS, 0
        ),
        central_repo_url=central_repo_url,
        central_branch=central_branch or DEFAULT_CENTRAL_BRANCH,
        repo_key_override=repo_key_override,
    )


def resolve_username(store: ConfigurationStore, configured: str = "") -> str:
    """Return the current weAudit username.

    ``general.username`` wins, then the process setting, then the OS login.
    """
    value = read_workspace_or_global_setting(store, "general.username", "")
    if isinstance(value, str) and value.strip():
        return value.strip()
    if configured.strip():
        return configured.strip()
    return getpass.getuser()
