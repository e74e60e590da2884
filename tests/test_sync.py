"""Tests for sync classification, document merging and the background reconciler."""

import json
import shutil
import subprocess
from unittest.mock import patch

import pytest

from conftest import commit_file, git

from workspace_orchestrator.core.sync import (
    INCOMING_HEADING,
    LOCAL_HEADING,
    NEW_BRANCH_MESSAGE,
    BackgroundReconciler,
    classify_sync,
    is_document,
    is_structured_record,
    merge_document_conflict,
)
from workspace_orchestrator.core.workspaces import WorkspaceError


@pytest.fixture
def reconciler(store):
    return BackgroundReconciler(store, enabled=False)


@pytest.fixture
def conflicted(store, upstream):
    """The primary checkout of 'demo' stopped mid-merge with two conflicted files."""
    primary = store.primary_path("demo")

    (upstream / "README.md").write_text("# Demo\n\nIncoming paragraph\n")
    (upstream / "config.json").write_text('{"mode": "incoming"}\n')
    git(upstream, "add", "README.md", "config.json")
    git(upstream, "commit", "-m", "Incoming edits")
    git(upstream, "push", "origin", "main")

    (primary / "README.md").write_text("# Demo\n\nLocal paragraph\n")
    (primary / "config.json").write_text('{"mode": "local"}\n')
    git(primary, "add", "README.md", "config.json")
    git(primary, "commit", "-m", "Local edits")

    git(primary, "fetch", "origin")
    merge = subprocess.run(["git", "merge", "origin/main"], cwd=primary, capture_output=True, text=True)
    assert merge.returncode != 0
    return primary


class TestClassifySync:
    def test_conflict_wins(self):
        assert classify_sync(3, 2, 1) == ("conflict", "1 files have conflicts", True)

    def test_diverged(self):
        assert classify_sync(3, 2, 0) == ("diverged", "3 commits ahead, 2 behind", True)

    def test_ahead_and_behind(self):
        assert classify_sync(2, 0, 0) == ("ahead", "2 commits to push", False)
        assert classify_sync(0, 4, 0) == ("behind", "4 commits to pull", False)

    def test_synced(self):
        assert classify_sync(0, 0, 0) == ("synced", "Up to date", False)


class TestDocumentMerge:
    def test_keeps_both_sides_under_headings(self):
        text = "Intro\n<<<<<<< HEAD\nmine\n=======\ntheirs\n>>>>>>> origin/main\nOutro\n"
        merged = merge_document_conflict(text)
        assert merged == (
            f"Intro\n{LOCAL_HEADING}\n\nmine\n\n{INCOMING_HEADING}\n\ntheirs\nOutro\n"
        )

    def test_drops_diff3_base(self):
        text = "<<<<<<< HEAD\nmine\n||||||| base\nold\n=======\ntheirs\n>>>>>>> b\n"
        merged = merge_document_conflict(text)
        assert "old" not in merged
        assert "mine" in merged and "theirs" in merged

    def test_identical_sides_kept_once(self):
        text = "<<<<<<< HEAD\nsame\n=======\nsame\n>>>>>>> b\n"
        assert merge_document_conflict(text) == "same\n"

    def test_one_empty_side(self):
        text = "<<<<<<< HEAD\n=======\ntheirs\n>>>>>>> b\n"
        assert merge_document_conflict(text) == "theirs\n"

    def test_unterminated_block_keeps_local(self):
        assert merge_document_conflict("a\n<<<<<<< HEAD\nmine\n=======\ntheirs\n") == "a\nmine\n"

    def test_structured_records(self):
        assert is_structured_record("package.json")
        assert is_structured_record("deploy/values.YAML")
        assert is_structured_record(".wso/work-items/abc.md")
        assert is_structured_record("notes.md", "<<<<<<< HEAD\n---\nid: x\n")
        assert not is_structured_record("notes.md", "<<<<<<< HEAD\n# Notes\n")
        assert not is_structured_record("README.md")

    def test_is_document(self):
        assert is_document("docs/guide.md")
        assert not is_document("src/app.py")


class TestReconciler:
    def test_fast_forwards_clean_workspace(self, reconciler, store, upstream):
        commit_file(upstream, "CHANGELOG.md", "v2\n")
        git(upstream, "push", "origin", "main")

        status = reconciler.sync_workspace("demo", "main")
        assert status.status == "synced"
        assert (store.primary_path("demo") / "CHANGELOG.md").read_text() == "v2\n"

    def test_feature_branch_fast_forwards_from_main(self, reconciler, store, upstream):
        git(upstream, "push", "origin", "main:feat-follow")
        git(store.primary_path("demo"), "fetch", "origin")
        path = store.activate_branch("demo", "feat-follow")

        commit_file(upstream, "one.txt", "1\n")
        git(upstream, "push", "origin", "main", "main:feat-follow")
        commit_file(upstream, "two.txt", "2\n")
        git(upstream, "push", "origin", "main")

        status = reconciler.sync_workspace("demo", "feat-follow")
        assert git(path, "rev-parse", "HEAD") == git(upstream, "rev-parse", "main")
        assert status.status == "ahead"
        assert status.ahead == 1

    def test_feature_branch_falls_back_to_its_own_upstream(self, reconciler, store, upstream):
        git(upstream, "checkout", "-b", "feat-own")
        commit_file(upstream, "feature.txt", "f1\n")
        git(upstream, "push", "origin", "feat-own")
        git(store.primary_path("demo"), "fetch", "origin")
        path = store.activate_branch("demo", "feat-own")

        commit_file(upstream, "feature.txt", "f2\n")
        git(upstream, "push", "origin", "feat-own")

        status = reconciler.sync_workspace("demo", "feat-own")
        assert status.status == "synced"
        assert (path / "feature.txt").read_text() == "f2\n"

    def test_dirty_workspace_is_not_fast_forwarded(self, reconciler, store, upstream):
        commit_file(upstream, "CHANGELOG.md", "v2\n")
        git(upstream, "push", "origin", "main")
        (store.primary_path("demo") / "README.md").write_text("local edit\n")

        status = reconciler.sync_workspace("demo", "main")
        assert status.status == "behind"
        assert status.behind == 1
        assert status.message == "1 commits to pull"

    def test_unpublished_branch(self, reconciler, store):
        path = store.create_workspace("demo", "feat-sync")
        commit_file(path, "sync.txt", "x\n")

        status = reconciler.check_workspace("demo", "feat-sync")
        assert status.status == "ahead"
        assert status.message == NEW_BRANCH_MESSAGE
        assert status.ahead == 1
        assert not status.needs_attention

    def test_diverged_needs_attention(self, reconciler, store, upstream):
        commit_file(upstream, "remote.txt", "r\n")
        git(upstream, "push", "origin", "main")
        commit_file(store.primary_path("demo"), "local.txt", "l\n")

        status = reconciler.sync_workspace("demo", "main")
        assert status.status == "diverged"
        assert status.needs_attention
        assert (status.ahead, status.behind) == (1, 1)
        assert [s.branch for s in reconciler.get_projects_needing_attention()] == ["main"]

    def test_sync_project_skips_nothing_active(self, reconciler, store):
        store.create_workspace("demo", "feat-one")
        statuses = reconciler.sync_project("demo")
        assert sorted(s.branch for s in statuses) == ["feat-one", "main"]

    def test_unknown_project(self, reconciler):
        statuses = reconciler.sync_project("ghost")
        assert statuses[0].status == "error"
        assert statuses[0].error

    def test_unreachable_remote_is_an_error(self, reconciler, store):
        git(store.primary_path("demo"), "remote", "set-url", "origin", "/nonexistent/repo.git")

        status = reconciler.sync_project("demo")[0]
        assert status.status == "error"
        assert status.message == "Sync check failed"
        assert "git fetch origin failed" in status.error
        assert not status.needs_attention

    def test_missing_workspace_path_is_an_error(self, reconciler, store):
        missing = store.primary_path("demo") / "does-not-exist"
        status = reconciler.sync_workspace("demo", "main", missing)
        assert status.status == "error"
        assert status.message == "Workspace path does not exist"

    def test_vanished_workspace_does_not_stop_the_cycle(self, reconciler, store):
        path = store.create_workspace("demo", "feat-gone")
        workspaces = store.list_workspaces("demo")
        shutil.rmtree(path)
        with patch.object(store, "list_workspaces", return_value=workspaces):
            statuses = reconciler.perform_sync_cycle()

        by_branch = {s.branch: s.status for s in statuses}
        assert by_branch == {"main": "synced", "feat-gone": "error"}

    def test_status_is_cached_until_refresh(self, reconciler, store, upstream):
        assert reconciler.get_sync_status("demo")[0].status == "synced"
        commit_file(upstream, "more.txt", "m\n")
        git(upstream, "push", "origin", "main")
        (store.primary_path("demo") / "README.md").write_text("hold\n")

        assert reconciler.get_sync_status("demo")[0].status == "synced"
        assert reconciler.get_sync_status("demo", refresh=True)[0].status == "behind"

    def test_conflict_status(self, reconciler, conflicted):
        status = reconciler.check_workspace("demo", "main", fetch=False)
        assert status.status == "conflict"
        assert sorted(status.conflict_files) == ["README.md", "config.json"]
        assert status.needs_attention

    def test_attention_is_posted_to_slack(self, store, conflicted):
        reconciler = BackgroundReconciler(store, enabled=False, slack_token="xoxb-test", slack_channel="#dev")
        with patch("workspace_orchestrator.core.sync.slack_mod.send_message") as send:
            reconciler.perform_sync_cycle()
        assert send.call_args.args[:3] == ("xoxb-test", "#dev", "1 workspaces need attention")

    def test_disabled_reconciler_does_not_start(self, reconciler):
        reconciler.start()
        assert not reconciler.running

    def test_start_and_stop(self, store):
        reconciler = BackgroundReconciler(store, interval=3600)
        reconciler.start()
        assert reconciler.running
        reconciler.stop()
        assert not reconciler.running


class TestResolveConflicts:
    def test_unknown_strategy(self, reconciler):
        with pytest.raises(ValueError):
            reconciler.resolve_conflicts("demo", "main", "yolo")

    def test_missing_workspace(self, reconciler):
        with pytest.raises(WorkspaceError):
            reconciler.resolve_conflicts("demo", "feat-missing", "accept-ours")

    def test_nothing_to_resolve(self, reconciler):
        result = reconciler.resolve_conflicts("demo", "main", "accept-ours")
        assert result.success
        assert result.message == "No conflicts to resolve"

    def test_manual_review(self, reconciler, conflicted):
        result = reconciler.resolve_conflicts("demo", "main", "manual-review")
        assert not result.success
        assert result.message == "2 files need manual review"
        assert git(conflicted, "diff", "--name-only", "--diff-filter=U") != ""

    def test_accept_theirs(self, reconciler, conflicted):
        result = reconciler.resolve_conflicts("demo", "main", "accept-theirs")
        assert result.success
        assert result.message == "Resolved 2 files"
        assert (conflicted / "README.md").read_text() == "# Demo\n\nIncoming paragraph\n"
        assert json.loads((conflicted / "config.json").read_text()) == {"mode": "incoming"}

    def test_accept_ours(self, reconciler, conflicted):
        assert reconciler.resolve_conflicts("demo", "main", "accept-ours").success
        assert (conflicted / "README.md").read_text() == "# Demo\n\nLocal paragraph\n"

    def test_auto_merge(self, reconciler, conflicted):
        result = reconciler.resolve_conflicts("demo", "main", "auto-merge")
        assert result.success
        assert sorted(result.resolved_files) == ["README.md", "config.json"]

        readme = (conflicted / "README.md").read_text()
        assert LOCAL_HEADING in readme and INCOMING_HEADING in readme
        assert "Local paragraph" in readme and "Incoming paragraph" in readme
        assert "<<<<<<<" not in readme
        assert json.loads((conflicted / "config.json").read_text()) == {"mode": "local"}

        status = reconciler.check_workspace("demo", "main", fetch=False)
        assert status.status == "ahead"
        assert status.ahead == 2
