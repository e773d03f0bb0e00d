"""FastAPI application entry point for the sync daemon."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from auditsync.api.health import router as health_router
from auditsync.api.sync import router as sync_router
from auditsync.config import Settings
from auditsync.exceptions import GitCommandError
from auditsync.filesystem.config_store import TomlConfigurationStore
from auditsync.sync.host import DaemonSyncHost
from auditsync.sync.manager import SyncManager
from auditsync.sync.shutdown import FlushStatus
from auditsync.sync.watcher import TomlConfigWatcher

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start sync sessions, flush them on shutdown."""
    settings: Settings = app.state.settings
    _configure_logging(settings.debug)
    logger.info("Starting weAudit sync daemon (debug=%s)", settings.debug)

    config_store = TomlConfigurationStore(
        settings.global_config_path, settings.resolved_workspace_config_path()
    )
    host = DaemonSyncHost()
    manager = SyncManager(
        settings=settings,
        config_store=config_store,
        host=host,
        workspace_roots=settings.workspace_roots,
    )
    app.state.config_store = config_store
    app.state.sync_host = host
    app.state.sync_manager = manager

    config_watcher = TomlConfigWatcher(config_store)
    app.state.config_watcher = config_watcher
    config_watcher.on_change(manager.on_configuration_changed)
    config_watcher.start()

    try:
        await manager.refresh_sessions()
    except Exception as exc:
        logger.critical("Failed to start sync sessions: %s", exc)
        config_watcher.dispose()
        raise

    yield

    config_watcher.dispose()
    result = await manager.flush(settings.shutdown_flush_timeout_ms)
    if result.status is FlushStatus.COMPLETED:
        logger.info(
            "Sync flush completed (sessions=%d, active=%d)",
            result.session_count,
            result.active_at_start,
        )
    else:
        logger.warning(
            "Sync flush %s (sessions=%d, active=%d): %s",
            result.status,
            result.session_count,
            result.active_at_start,
            result.error_message or "in-flight work abandoned",
        )
    manager.dispose()
    logger.info("weAudit sync daemon stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="weAudit Sync",
        description="Git-backed auto-sync for audit findings",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    @app.exception_handler(GitCommandError)
    async def git_error_handler(request: Request, exc: GitCommandError) -> JSONResponse:
        logger.error("Git command failed for %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Git command failed"})

    app.include_router(health_router)
    app.include_router(sync_router)
    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the daemon."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "auditsync.main:app",
        host=settings.host,
        port=settings.port,
    )
