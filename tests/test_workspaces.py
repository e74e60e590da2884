"""Tests for the git-worktree workspace store."""

import shlex
import shutil
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import commit_file, git

from workspace_orchestrator.core.workspaces import (
    BranchConflictError,
    BranchValidationError,
    DirtyWorkspaceError,
    ProjectNotFoundError,
    ProtectedBranchError,
    SessionNotFoundError,
    WorkspaceError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
    WorkspaceStore,
    run_command,
)


class TestProjects:
    def test_clone_creates_primary_checkout(self, store):
        primary = store.primary_path("demo")
        assert store.project_exists("demo")
        assert store.list_projects() == ["demo"]
        assert (primary / "README.md").exists()
        assert (primary / ".wso" / "work-items").is_dir()
        assert (primary / ".wso" / "workspace.json").exists()

    def test_metadata_does_not_dirty_checkout(self, store):
        assert git(store.primary_path("demo"), "status", "--porcelain") == ""

    def test_clone_is_idempotent(self, store, origin):
        assert store.clone_project(str(origin), "demo") == store.primary_path("demo")

    def test_invalid_project_name(self, store):
        with pytest.raises(ValueError):
            store.project_path("../escape")

    def test_missing_project(self, store):
        with pytest.raises(ProjectNotFoundError):
            store.list_workspaces("nope")

    def test_bad_clone_url(self, store, tmp_dir):
        with pytest.raises(WorkspaceError):
            store.clone_project(str(tmp_dir / "no-such-repo"), "broken")


class TestWorkspaceLifecycle:
    def test_create_workspace(self, store):
        path = store.create_workspace("demo", "feat-login")
        assert path == store.project_path("demo") / "feat-login"
        assert git(path, "branch", "--show-current") == "feat-login"
        descriptor = store.read_descriptor("demo", "feat-login")
        assert descriptor["scope"]["branch"] == "feat-login"
        assert descriptor["scope"]["base_branch"] == "main"
        assert git(path, "status", "--porcelain") == ""

    def test_create_normalizes_name(self, store):
        path = store.create_workspace("demo", "Feat Dark_Mode")
        assert path.name == "feat-dark-mode"

    def test_create_main_returns_primary(self, store):
        assert store.create_workspace("demo", "main") == store.primary_path("demo")

    def test_create_invalid_name(self, store):
        with pytest.raises(BranchValidationError) as exc:
            store.create_workspace("demo", "login-page")
        assert exc.value.validation.suggestions == ["feat-login-page"]
        assert isinstance(exc.value, ValueError)

    def test_create_existing_workspace(self, store):
        store.create_workspace("demo", "feat-login")
        with pytest.raises(WorkspaceExistsError):
            store.create_workspace("demo", "feat-login")

    def test_create_over_existing_branch(self, store):
        git(store.primary_path("demo"), "branch", "fix-typo")
        with pytest.raises(BranchConflictError):
            store.create_workspace("demo", "fix-typo")

    def test_list_workspaces(self, store):
        store.create_workspace("demo", "feat-login")
        branches = {w.branch: w for w in store.list_workspaces("demo")}
        assert set(branches) == {"main", "feat-login"}
        assert branches["feat-login"].status == "active"
        assert branches["feat-login"].last_modified is not None

    def test_activate_reuses_local_branch(self, store):
        path = store.create_workspace("demo", "feat-login")
        commit_file(path, "login.txt", "form\n")
        store.deactivate_branch("demo", "feat-login", force=True)
        assert not path.exists()

        again = store.activate_branch("demo", "feat-login")
        assert (again / "login.txt").exists()

    def test_activate_tracks_remote_branch(self, store, upstream):
        git(upstream, "checkout", "-b", "fix-remote-bug")
        commit_file(upstream, "fix.txt", "patched\n")
        git(upstream, "push", "origin", "fix-remote-bug")
        git(store.primary_path("demo"), "fetch", "origin")

        path = store.activate_branch("demo", "fix-remote-bug")
        assert (path / "fix.txt").read_text() == "patched\n"

    def test_activate_is_idempotent(self, store):
        first = store.activate_branch("demo", "feat-login")
        assert store.activate_branch("demo", "feat-login") == first

    def test_remove_refuses_uncommitted_work(self, store):
        path = store.create_workspace("demo", "feat-login")
        (path / "wip.txt").write_text("draft")
        with pytest.raises(DirtyWorkspaceError):
            store.remove_workspace("demo", "feat-login")
        assert path.exists()

    def test_remove_refuses_unpublished_commits(self, store):
        path = store.create_workspace("demo", "feat-login")
        commit_file(path, "login.txt", "form\n")
        with pytest.raises(DirtyWorkspaceError, match="unpublished"):
            store.remove_workspace("demo", "feat-login")

    def test_force_remove_and_delete_branch(self, store):
        path = store.create_workspace("demo", "feat-login")
        commit_file(path, "login.txt", "form\n")
        store.remove_workspace("demo", "feat-login", force=True, delete_branch=True)
        assert not path.exists()
        assert "feat-login" not in git(store.primary_path("demo"), "branch")

    def test_main_is_protected(self, store):
        with pytest.raises(ProtectedBranchError):
            store.remove_workspace("demo", "main")
        with pytest.raises(ProtectedBranchError):
            store.deactivate_branch("demo", "main")

    def test_remove_missing_workspace(self, store):
        with pytest.raises(WorkspaceNotFoundError):
            store.remove_workspace("demo", "feat-nothing")

    def test_get_all_branches(self, store):
        store.create_workspace("demo", "feat-login")
        store.create_workspace("demo", "docs-readme")
        store.deactivate_branch("demo", "docs-readme")
        inventory = store.get_all_branches("demo")
        assert inventory.active == ["feat-login", "main"]
        assert "docs-readme" in inventory.inactive
        assert "main" not in inventory.inactive

    def test_cleanup_prunes_deleted_directories(self, store):
        path = store.create_workspace("demo", "feat-login")
        shutil.rmtree(path)
        store.cleanup_stale_workspaces()
        assert [w.branch for w in store.list_workspaces("demo")] == ["main"]


class TestSessions:
    def test_open_session_owns_workspace(self, store):
        session = store.open_session("task-1", "demo", "feat-session")
        assert session.owned
        assert session.status == "active"
        assert Path(session.path).exists()
        assert store.list_active_sessions() == [session]

    def test_execute_in_workspace(self, store):
        session = store.open_session("task-1", "demo", "feat-session")
        result = store.execute_in_workspace(session.id, ["git", "branch", "--show-current"])
        assert result.success
        assert result.stdout.strip() == "feat-session"

    def test_progress(self, store):
        session = store.open_session("task-1", "demo", "feat-session")
        store.update_progress(session.id, current_step=2, total_steps=3, completed_steps=[1])
        assert store.get_session(session.id).progress.current_step == 2
        with pytest.raises(ValueError):
            store.update_progress(session.id, bogus=1)

    def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.execute_in_workspace("nope", ["git", "status"])

    def test_workspace_status(self, store):
        session = store.open_session("task-1", "demo", "feat-session")
        commit_file(session.path, "a.txt", "a\n")
        (Path(session.path) / "b.txt").write_text("b\n")
        status = store.get_workspace_status(session.id)
        assert status.commits_ahead == 1
        assert status.changed_files == ["a.txt"]
        assert status.uncommitted == ["b.txt"]

    def test_close_removes_owned_workspace(self, store):
        session = store.open_session("task-1", "demo", "feat-session")
        closed = store.close_session(session.id, delete_branch=True)
        assert closed.status == "abandoned"
        assert not Path(session.path).exists()
        assert store.get_session(session.id) is None

    def test_close_keeps_bound_workspace(self, store):
        path = store.activate_branch("demo", "feat-bound")
        session = store.bind_session("task-2", path, project="demo")
        assert not session.owned
        assert session.branch == "feat-bound"
        store.close_session(session.id)
        assert path.exists()

    def test_publish_changes(self, store, origin):
        session = store.open_session("task-1", "demo", "feat-publish")
        (Path(session.path) / "feature.txt").write_text("done\n")
        with patch(
            "workspace_orchestrator.core.workspaces.create_pull_request",
            return_value="https://github.com/acme/demo/pull/7",
        ) as create_pr:
            url = store.publish_changes(session.id, "Add feature", "Body")

        assert url == "https://github.com/acme/demo/pull/7"
        assert create_pr.call_args.kwargs["head"] == "feat-publish"
        assert store.get_session(session.id).status == "completed"
        assert "refs/heads/feat-publish" in git(origin, "for-each-ref", "--format=%(refname)")

    def test_publish_nothing(self, store):
        session = store.open_session("task-1", "demo", "feat-empty")
        with pytest.raises(WorkspaceError, match="Nothing to publish"):
            store.publish_changes(session.id, "Nothing", "")

    def test_preview_server_ready(self, store):
        session = store.open_session("task-1", "demo", "feat-preview")
        command = shlex.join([sys.executable, "-c", "print('Ready on port', flush=True)"])
        server = store.start_preview_server(session.id, command, timeout=10)
        assert server.url.startswith("http://localhost:")
        server.stop()

    def test_preview_server_timeout(self, store):
        session = store.open_session("task-1", "demo", "feat-preview")
        command = shlex.join([sys.executable, "-c", "import time; time.sleep(30)"])
        with pytest.raises(WorkspaceError, match="did not report ready"):
            store.start_preview_server(session.id, command, timeout=0.5)


class TestRunCommand:
    def test_missing_executable(self, tmp_dir):
        result = run_command(["definitely-not-a-command-xyz"], tmp_dir, timeout=5)
        assert result.returncode == 127
        assert not result.success

    def test_timeout(self, tmp_dir):
        result = run_command([sys.executable, "-c", "import time; time.sleep(5)"], tmp_dir, timeout=0.5)
        assert result.timed_out
        assert not result.success


def test_store_without_repos_root(tmp_dir):
    store = WorkspaceStore(tmp_dir / "missing")
    assert store.list_projects() == []
