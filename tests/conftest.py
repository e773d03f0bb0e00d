"""Shared test fixtures for the weAudit sync engine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from auditsync.config import Settings
from auditsync.main import create_app
from auditsync.sync.host import DaemonSyncHost
from auditsync.sync.manager import SyncManager
from tests._git_helpers import (
    FakeWatcherFactory,
    RecordingGitRunner,
    create_bare_remote,
    create_project_repo,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from auditsync.filesystem.config_store import ConfigurationStore


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    """Give git a deterministic identity and isolate it from user config."""
    home = tmp_path_factory.mktemp("git-home")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Auditor")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "auditor@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Auditor")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "auditor@example.com")


@asynccontextmanager
async def create_test_client(
    settings: Settings, config_store: ConfigurationStore
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a running sync manager.

    Manually performs the work of the application lifespan because
    ASGITransport does not trigger it. File watchers are fakes.
    """
    app = create_app(settings)
    host = DaemonSyncHost()
    manager = SyncManager(
        settings=settings,
        config_store=config_store,
        host=host,
        workspace_roots=settings.workspace_roots,
        runner=RecordingGitRunner(),
        watcher_factory=FakeWatcherFactory(),
    )
    app.state.config_store = config_store
    app.state.sync_host = host
    app.state.sync_manager = manager
    await manager.refresh_sessions()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await manager.flush(settings.shutdown_flush_timeout_ms)
    manager.dispose()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create settings that keep all sync state under tmp_path."""
    return Settings(
        _env_file=None,
        storage_dir=tmp_path / "storage",
        global_config_path=tmp_path / "global.toml",
        username="alice",
        suppress_events_ms=2000,
    )


@pytest.fixture
def bare_remote(tmp_path: Path) -> Path:
    return create_bare_remote(tmp_path / "remote.git")


@pytest.fixture
def project_repo(tmp_path: Path, bare_remote: Path) -> Path:
    return create_project_repo(tmp_path / "project", bare_remote)

