"""Hooks the sync engine calls outward into its host."""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

logger = logging.getLogger(__name__)

_MAX_MESSAGES = 50


class SyncHost(Protocol):
    """Notifications from the sync engine to the editor or daemon host."""

    async def reload_configuration_files(self) -> None: ...

    async def reload_findings(self) -> None: ...

    def show_information(self, message: str) -> None: ...

    def refresh_sync_status(self) -> None: ...


class DaemonSyncHost:
    """Host used by the standalone daemon.

    Editors poll ``reload_generation`` to learn that sync files changed on
    disk and must be reloaded.
    """

    def __init__(self) -> None:
        self.reload_generation = 0
        self.status_generation = 0
        self.messages: deque[str] = deque(maxlen=_MAX_MESSAGES)

    async def reload_configuration_files(self) -> None:
        logger.info("Sync changed configuration files on disk")
        self.reload_generation += 1

    async def reload_findings(self) -> None:
        logger.info("Sync changed findings on disk")
        self.reload_generation += 1

    def show_information(self, message: str) -> None:
        logger.info("%s", message)
        self.messages.append(message)

    def refresh_sync_status(self) -> None:
        self.status_generation += 1
