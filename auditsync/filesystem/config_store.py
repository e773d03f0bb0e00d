"""Layered TOML configuration: global (user) and workspace scopes."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InspectedValue:
    """Values of one setting at each configuration scope (None = unset)."""

    global_value: Any = None
    workspace_value: Any = None
    workspace_folder_value: Any = None


class ConfigurationStore(Protocol):
    """Read access to layered settings, keyed as ``namespace.name``."""

    def inspect(self, key: str) -> InspectedValue | None: ...


def _load_toml(path: Path | None) -> dict[str, Any]:
    """Load a TOML file, returning an empty mapping when missing or invalid."""
    if path is None or not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable configuration file %s: %s", path, exc)
        return {}


def _lookup(data: dict[str, Any], key: str) -> Any:
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


class TomlConfigurationStore:
    """Configuration store backed by a global and a workspace TOML file.

    Files look like::

        [sync]
        enabled = true
        mode = "central-repo"

        [general]
        username = "alice"
    """

    def __init__(
        self,
        global_path: Path | None,
        workspace_path: Path | None,
        folder_path: Path | None = None,
    ) -> None:
        self.global_path = global_path
        self.workspace_path = workspace_path
        self.folder_path = folder_path
        self._global: dict[str, Any] = {}
        self._workspace: dict[str, Any] = {}
        self._folder: dict[str, Any] = {}
        self.reload()

    @property
    def paths(self) -> list[Path]:
        """All configuration file paths this store reads."""
        return [
            p for p in (self.global_path, self.workspace_path, self.folder_path) if p is not None
        ]

    def inspect(self, key: str) -> InspectedValue | None:
        return InspectedValue(
            global_value=_lookup(self._global, key),
            workspace_value=_lookup(self._workspace, key),
            workspace_folder_value=_lookup(self._folder, key),
        )

    def set_workspace_path(self, workspace_path: Path | None) -> set[str]:
        """Point the workspace scope at another file and reload."""
        if workspace_path == self.workspace_path:
            return set()
        logger.info("Workspace configuration moved to %s", workspace_path)
        self.workspace_path = workspace_path
        return self.reload()

    def reload(self) -> set[str]:
        """Re-read every file and return the namespaces whose values changed."""
        before = (self._global, self._workspace, self._folder)
        self._global = _load_toml(self.global_path)
        self._workspace = _load_toml(self.workspace_path)
        self._folder = _load_toml(self.folder_path)
        after = (self._global, self._workspace, self._folder)

        changed: set[str] = set()
        for old, new in zip(before, after, strict=True):
            for namespace in set(old) | set(new):
                if old.get(namespace) != new.get(namespace):
                    changed.add(namespace)
        return changed
