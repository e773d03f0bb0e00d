"""Sync control endpoints: status, manual sync and workspace roots."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auditsync.api.deps import (
    get_config_store,
    get_config_watcher,
    get_settings,
    get_sync_host,
    get_sync_manager,
)
from auditsync.config import Settings
from auditsync.filesystem.config_store import TomlConfigurationStore
from auditsync.sync.host import DaemonSyncHost
from auditsync.sync.manager import SyncManager
from auditsync.sync.watcher import TomlConfigWatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Schemas ──────────────────────────────────────────


class SyncStatusResponse(BaseModel):
    """Current sync state as shown by the settings panel."""

    enabled: bool
    mode: str
    session_keys: list[str]
    workspace_roots: list[str]
    last_success_at: str | None
    reload_generation: int
    messages: list[str]


class SyncNowResponse(BaseModel):
    triggered: bool
    message: str | None = None


class WorkspaceRootsRequest(BaseModel):
    roots: list[str] = Field(default_factory=list)


def _build_status(manager: SyncManager, host: DaemonSyncHost) -> SyncStatusResponse:
    settings = manager.current_settings()
    return SyncStatusResponse(
        enabled=settings.enabled,
        mode=settings.mode.value,
        session_keys=sorted(manager.sessions),
        workspace_roots=[str(root) for root in manager.workspace_roots],
        last_success_at=manager.last_success_at,
        reload_generation=host.reload_generation,
        messages=list(host.messages),
    )


# ── Endpoints ────────────────────────────────────────


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    manager: Annotated[SyncManager, Depends(get_sync_manager)],
    host: Annotated[DaemonSyncHost, Depends(get_sync_host)],
) -> SyncStatusResponse:
    """Report the sync settings, active sessions and last success time."""
    return _build_status(manager, host)


@router.post("/now", response_model=SyncNowResponse)
async def sync_now(
    manager: Annotated[SyncManager, Depends(get_sync_manager)],
) -> SyncNowResponse:
    """Run a local sync on every session and wait for it to finish."""
    message = await manager.sync_now()
    return SyncNowResponse(triggered=message is None, message=message)


@router.put("/workspace-roots", response_model=SyncStatusResponse)
async def set_workspace_roots(
    body: WorkspaceRootsRequest,
    manager: Annotated[SyncManager, Depends(get_sync_manager)],
    host: Annotated[DaemonSyncHost, Depends(get_sync_host)],
    settings: Annotated[Settings, Depends(get_settings)],
    config_store: Annotated[TomlConfigurationStore | None, Depends(get_config_store)],
    config_watcher: Annotated[TomlConfigWatcher | None, Depends(get_config_watcher)],
) -> SyncStatusResponse:
    """Replace the open workspace roots and rebuild sync sessions.

    The workspace configuration file follows the first root unless an
    explicit path is configured.
    """
    roots = [Path(root) for root in body.roots]
    for root in roots:
        if not root.is_absolute():
            raise HTTPException(status_code=400, detail=f"Workspace root must be absolute: {root}")
    logger.info("Workspace roots changed: %s", ", ".join(body.roots) or "(none)")
    if config_store is not None:
        config_store.set_workspace_path(settings.workspace_config_path_for(roots))
        if config_watcher is not None:
            config_watcher.restart()
    await manager.set_workspace_roots(roots)
    return _build_status(manager, host)
