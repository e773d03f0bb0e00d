"""Integration tests for repo-branch sync sessions against real git repositories."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from auditsync.exceptions import SyncConfigurationError, SyncFlushError
from auditsync.services.remote_url_service import hash_value
from auditsync.services.settings_service import SyncSettings
from auditsync.sync.session import (
    SYNC_COMMIT_MESSAGE,
    GitSyncSession,
    SessionState,
    build_workspace_mappings,
    relative_inside,
)
from tests._git_helpers import (
    FakeClock,
    FakeWatcherFactory,
    RecordingGitRunner,
    RecordingHost,
    SuccessCounter,
    clone,
    commit_count,
    create_project_repo,
    git,
    remote_branch_file,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

BRANCH = "weaudit-sync"
ALICE_FILE = ".vscode/alice.weaudit"


class _Env:
    """Collaborators of one user's session."""

    def __init__(self, repo_root: Path, storage: Path, username: str) -> None:
        self.repo_root = repo_root
        self.storage = storage
        self.username = username
        self.runner = RecordingGitRunner()
        self.host = RecordingHost()
        self.watchers = FakeWatcherFactory()
        self.successes = SuccessCounter()
        self.clock = FakeClock()

    def write_sync_file(self, name: str, content: str) -> Path:
        path = self.repo_root / ".vscode" / f"{name}.weaudit"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path


@pytest.fixture
async def make_session() -> AsyncGenerator[Callable[..., GitSyncSession]]:
    sessions: list[GitSyncSession] = []

    def factory(
        env: _Env,
        *,
        workspace_roots: list[Path] | None = None,
        debounce_ms: int = 60_000,
        poll_minutes: int = 1,
    ) -> GitSyncSession:
        session = GitSyncSession(
            repo_root=env.repo_root,
            workspace_roots=workspace_roots or [env.repo_root],
            worktree_base_dir=env.storage / "git-sync",
            settings=SyncSettings(
                enabled=True, debounce_ms=debounce_ms, poll_minutes=poll_minutes
            ),
            runner=env.runner,
            host=env.host,
            watcher_factory=env.watchers,
            username=env.username,
            on_sync_success=env.successes,
            clock=env.clock,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.close()


@pytest.fixture
def alice(project_repo: Path, tmp_path: Path) -> _Env:
    return _Env(project_repo, tmp_path / "alice-storage", "alice")


@pytest.fixture
def bob(bare_remote: Path, tmp_path: Path) -> _Env:
    return _Env(clone(bare_remote, tmp_path / "bob-project"), tmp_path / "bob-storage", "bob")


class TestWorkspaceMappings:
    def test_relative_inside(self, tmp_path: Path) -> None:
        assert relative_inside(tmp_path, tmp_path / "a" / "b") == Path("a", "b")
        assert str(relative_inside(tmp_path, tmp_path)) == "."
        assert relative_inside(tmp_path / "a", tmp_path / "b") is None

    def test_roots_outside_repo_are_dropped(self, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        mappings = build_workspace_mappings(repo, [repo, repo / "pkg", tmp_path / "other"])
        assert [str(m.repo_relative_root) for m in mappings] == [".", "pkg"]
        assert mappings[1].sync_dir == repo / "pkg" / ".vscode"


class TestEnsureStore:
    async def test_missing_remote_is_configuration_error(
        self, tmp_path: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        repo = create_project_repo(tmp_path / "lonely", remote=None)
        env = _Env(repo, tmp_path / "storage", "alice")
        session = make_session(env)
        with pytest.raises(SyncConfigurationError, match="Remote 'origin' is not configured"):
            await session.ensure_store()

    async def test_occupied_worktree_path(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        session.worktree_path.mkdir(parents=True)
        (session.worktree_path / "junk.txt").write_text("x")
        with pytest.raises(SyncConfigurationError, match="not a git worktree"):
            await session.ensure_store()

    async def test_worktree_path_is_hash_of_repo_root(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        expected = alice.storage / "git-sync" / hash_value(str(alice.repo_root))
        assert session.worktree_path == expected

    async def test_new_branch_created_from_head(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        await session.ensure_store()
        await session.ensure_store()

        worktree_adds = [c for c in alice.runner.commands("worktree") if c[1] == "add"]
        assert worktree_adds == [["worktree", "add", "-B", BRANCH, str(session.worktree_path)]]
        assert git(session.worktree_path, "rev-parse", "--abbrev-ref", "HEAD") == BRANCH


class TestLocalSync:
    async def test_first_sync_pushes_user_file(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", '{"treeEntries": []}')
        session = make_session(alice)

        await session.initialize()
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == '{"treeEntries": []}'
        assert git(bare_remote, "log", "-1", "--format=%s", BRANCH) == SYNC_COMMIT_MESSAGE
        assert alice.successes.count == 1
        assert session.state is SessionState.READY
        assert session.dirty_files == frozenset()

    async def test_commit_is_idempotent(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", "{}")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()

        assert await session.commit_changes([ALICE_FILE]) is False
        assert await session.commit_changes([]) is False

    async def test_only_dirty_files_are_staged(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", "mine")
        alice.write_sync_file("carol", "not mine, never edited")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "mine"
        assert remote_branch_file(bare_remote, BRANCH, ".vscode/carol.weaudit") is None

    async def test_deleted_file_is_removed_remotely(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        path = alice.write_sync_file("alice", "{}")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()
        commits_before = commit_count(bare_remote, BRANCH)

        path.unlink()
        alice.clock.advance(10)
        alice.watchers.watchers[0].emit_delete(path)
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) is None
        assert commit_count(bare_remote, BRANCH) == commits_before + 1

    async def test_debounced_events_trigger_one_push(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice, debounce_ms=20)
        await session.initialize()
        await session.flush_pending()

        path = alice.write_sync_file("alice", "v1")
        watcher = alice.watchers.watchers[0]
        watcher.emit_create(path)
        path.write_text("v2")
        watcher.emit_change(path)
        await asyncio.sleep(0.1)
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "v2"
        assert len(alice.runner.commands("push")) == 1

    async def test_subdirectory_workspace_root(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        root = alice.repo_root / "packages" / "app"
        sync_file = root / ".vscode" / "alice.weaudit"
        sync_file.parent.mkdir(parents=True)
        sync_file.write_text("nested")
        session = make_session(alice, workspace_roots=[root])

        await session.initialize()
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, "packages/app/.vscode/alice.weaudit") == (
            "nested"
        )
        assert alice.watchers.watchers[0].root == root
        assert alice.watchers.watchers[0].pattern == ".vscode/*.weaudit"


class TestRemoteChanges:
    async def test_second_user_receives_changes(
        self,
        alice: _Env,
        bob: _Env,
        make_session: Callable[..., GitSyncSession],
    ) -> None:
        alice.write_sync_file("alice", "alice findings")
        alice_session = make_session(alice)
        await alice_session.initialize()
        await alice_session.flush_pending()

        bob_session = make_session(bob)
        await bob_session.initialize()
        await bob_session.flush_pending()

        worktree_adds = [c for c in bob.runner.commands("worktree") if c[1] == "add"]
        assert worktree_adds[0][-1] == f"origin/{BRANCH}"
        assert (bob.repo_root / ALICE_FILE).read_text() == "alice findings"
        assert bob.host.reload_configuration_calls == 1
        assert bob.host.reload_findings_calls == 1
        assert bob.successes.count == 1

    async def test_poll_without_remote_changes_does_not_reload(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", "x")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()

        await session.perform_poll_sync()
        assert alice.host.reload_configuration_calls == 0

    async def test_remote_deletion_removes_workspace_file(
        self,
        alice: _Env,
        bob: _Env,
        make_session: Callable[..., GitSyncSession],
    ) -> None:
        alice_path = alice.write_sync_file("alice", "a")
        alice_session = make_session(alice)
        await alice_session.initialize()
        await alice_session.flush_pending()

        bob_session = make_session(bob)
        await bob_session.initialize()
        await bob_session.flush_pending()
        assert (bob.repo_root / ALICE_FILE).exists()

        alice_path.unlink()
        alice.clock.advance(10)
        alice.watchers.watchers[0].emit_delete(alice_path)
        await alice_session.flush_pending()

        await bob_session.perform_poll_sync()
        assert not (bob.repo_root / ALICE_FILE).exists()

    async def test_local_dirty_edit_wins(
        self,
        alice: _Env,
        bob: _Env,
        bare_remote: Path,
        make_session: Callable[..., GitSyncSession],
    ) -> None:
        alice_path = alice.write_sync_file("alice", "v1")
        alice_session = make_session(alice)
        await alice_session.initialize()
        await alice_session.flush_pending()

        bob_session = make_session(bob)
        await bob_session.initialize()
        await bob_session.flush_pending()

        alice_path.write_text("v2 from alice")
        alice.clock.advance(10)
        alice.watchers.watchers[0].emit_change(alice_path)
        await alice_session.flush_pending()

        bob_copy = bob.repo_root / ALICE_FILE
        bob_copy.write_text("bob's local edit")
        bob.clock.advance(10)
        bob.watchers.watchers[0].emit_change(bob_copy)
        await bob_session.flush_pending()

        assert bob_copy.read_text() == "bob's local edit"
        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "bob's local edit"


class TestPushRecovery:
    async def test_commit_from_failed_first_push_is_pushed_later(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()
        offline = bare_remote.with_name("offline.git")
        bare_remote.rename(offline)

        path = alice.write_sync_file("alice", "written offline")
        session.on_workspace_file_change(path)
        with pytest.raises(SyncFlushError):
            await session.flush_pending()
        assert git(session.worktree_path, "log", "-1", "--format=%s") == SYNC_COMMIT_MESSAGE

        offline.rename(bare_remote)
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "written offline"
        assert session.dirty_files == frozenset()

    async def test_commit_ahead_of_upstream_is_pushed_later(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        path = alice.write_sync_file("alice", "v1")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()
        offline = bare_remote.with_name("offline.git")
        bare_remote.rename(offline)

        path.write_text("v2")
        session.on_workspace_file_change(path)
        with pytest.raises(SyncFlushError):
            await session.flush_pending()

        offline.rename(bare_remote)
        await session.flush_pending()

        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "v2"
        assert session.dirty_files == frozenset()

    async def test_nothing_to_push_after_clean_sync(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", "{}")
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()

        assert await session.has_unpushed_commits() is False


class TestEventsAndLifecycle:
    async def test_suppression_window_drops_events(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        path = alice.repo_root / ALICE_FILE

        await session.apply_remote_to_workspace(set())
        session.on_workspace_file_change(path)
        assert session.dirty_files == frozenset()

        alice.clock.advance(1.9)
        session.on_workspace_file_change(path)
        assert session.dirty_files == frozenset()

        alice.clock.advance(0.2)
        session.on_workspace_file_change(path)
        assert session.dirty_files == frozenset({path})

    async def test_dirty_files_restored_on_failure(
        self, tmp_path: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        repo = create_project_repo(tmp_path / "lonely", remote=None)
        env = _Env(repo, tmp_path / "storage", "alice")
        session = make_session(env)
        path = env.write_sync_file("alice", "{}")
        session.on_workspace_file_change(path)

        with pytest.raises(SyncConfigurationError):
            await session.perform_local_sync()
        assert session.dirty_files == frozenset({path})

        with pytest.raises(SyncFlushError, match="still unsynced"):
            await session.flush_pending()
        assert session.dirty_files == frozenset({path})

    async def test_initialize_failure_propagates(
        self, tmp_path: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        repo = create_project_repo(tmp_path / "lonely", remote=None)
        session = make_session(_Env(repo, tmp_path / "storage", "alice"))
        with pytest.raises(SyncConfigurationError):
            await session.initialize()
        assert session.state is SessionState.UNINITIALIZED

    async def test_poll_interval_has_one_minute_floor(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        assert make_session(alice, poll_minutes=0).poll_interval_seconds == 60
        assert make_session(alice, poll_minutes=5).poll_interval_seconds == 300

    async def test_dispose_is_idempotent(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        await session.initialize()
        await session.flush_pending()

        session.dispose()
        session.dispose()

        assert session.state is SessionState.DISPOSED
        assert all(w.disposed for w in alice.watchers.watchers)
        session.on_workspace_file_change(alice.repo_root / ALICE_FILE)
        assert session.dirty_files == frozenset()

    async def test_is_sync_active_while_cycle_queued(
        self, alice: _Env, make_session: Callable[..., GitSyncSession]
    ) -> None:
        session = make_session(alice)
        await session.initialize()
        assert session.is_sync_active()
        await session.flush_pending()
        assert not session.is_sync_active()

    async def test_closed_session_skips_queued_cycle(
        self, alice: _Env, bare_remote: Path, make_session: Callable[..., GitSyncSession]
    ) -> None:
        alice.write_sync_file("alice", "first")
        old = make_session(alice)
        await old.initialize()
        calls_before = len(alice.runner.calls)

        await old.close()
        await old.sync_now()

        assert alice.runner.calls[calls_before:] == []
        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) is None

        replacement = make_session(_Env(alice.repo_root, alice.storage, "alice"))
        await replacement.initialize()
        await replacement.flush_pending()
        assert remote_branch_file(bare_remote, BRANCH, ALICE_FILE) == "first"
