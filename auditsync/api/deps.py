"""Shared API dependencies: settings, sync manager, host and configuration."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from auditsync.config import Settings
from auditsync.filesystem.config_store import TomlConfigurationStore
from auditsync.sync.host import DaemonSyncHost
from auditsync.sync.manager import SyncManager
from auditsync.sync.watcher import TomlConfigWatcher


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_sync_manager(request: Request) -> SyncManager:
    """Get the sync manager, or 503 while the daemon is still starting."""
    manager: SyncManager | None = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync manager is not running",
        )
    return manager


def get_sync_host(request: Request) -> DaemonSyncHost:
    host: DaemonSyncHost | None = getattr(request.app.state, "sync_host", None)
    if host is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync host is not running",
        )
    return host


def get_config_store(request: Request) -> TomlConfigurationStore | None:
    """Get the TOML configuration store, if the daemon reads one."""
    store = getattr(request.app.state, "config_store", None)
    return store if isinstance(store, TomlConfigurationStore) else None


def get_config_watcher(request: Request) -> TomlConfigWatcher | None:
    watcher: TomlConfigWatcher | None = getattr(request.app.state, "config_watcher", None)
    return watcher
