"""Tests for the CLI."""

import json
import os

import pytest
from click.testing import CliRunner

from workspace_orchestrator.cli import main


@pytest.fixture
def cli_env(tmp_dir, origin):
    """Point the CLI at a temp repos root and database, with one cloned project."""
    env = {
        "WSO_DB_PATH": str(tmp_dir / "wso.db"),
        "WSO_REPOS_ROOT": str(tmp_dir / "repos"),
        "WSO_DISABLE_BACKGROUND_SERVICES": "1",
    }
    old_env = {}
    for k, v in env.items():
        old_env[k] = os.environ.get(k)
        os.environ[k] = v

    runner = CliRunner()
    result = runner.invoke(main, ["project", "clone", str(origin), "demo"])
    assert result.exit_code == 0, result.output

    yield runner

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


def _created_id(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Created work item:"):
            return line.split(":", 1)[1].strip()
    raise AssertionError(f"no item id in output: {output}")


class TestBranchCommands:
    def test_valid_name(self):
        result = CliRunner().invoke(main, ["branch", "validate", "feat-login"])
        assert result.exit_code == 0
        assert "feat-login" in result.output

    def test_invalid_name_suggests(self):
        result = CliRunner().invoke(main, ["branch", "validate", "login page"])
        assert result.exit_code == 1
        assert "Suggestions: feat-login-page" in result.output

    def test_json(self):
        result = CliRunner().invoke(main, ["branch", "validate", "Fix Crash", "--json"])
        data = json.loads(result.output)
        assert data["valid"] is True
        assert data["normalized_name"] == "fix-crash"


class TestProjectCommands:
    def test_list(self, cli_env):
        result = cli_env.invoke(main, ["project", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output) == ["demo"]

    def test_exists(self, cli_env):
        assert cli_env.invoke(main, ["project", "exists", "demo"]).exit_code == 0
        assert cli_env.invoke(main, ["project", "exists", "ghost"]).exit_code == 1


class TestWorkspaceCommands:
    def test_create_and_list(self, cli_env):
        result = cli_env.invoke(main, ["workspace", "create", "demo", "feat-cli"])
        assert result.exit_code == 0, result.output

        result = cli_env.invoke(main, ["workspace", "list", "demo", "--json"])
        branches = sorted(w["branch"] for w in json.loads(result.output))
        assert branches == ["feat-cli", "main"]

    def test_invalid_branch(self, cli_env):
        result = cli_env.invoke(main, ["workspace", "create", "demo", "nonsense"])
        assert result.exit_code == 1
        assert "Invalid branch name" in result.output

    def test_main_cannot_be_removed(self, cli_env):
        result = cli_env.invoke(main, ["workspace", "remove", "demo", "main"])
        assert result.exit_code == 1

    def test_deactivate_keeps_branch(self, cli_env):
        cli_env.invoke(main, ["workspace", "create", "demo", "feat-cli"])
        result = cli_env.invoke(main, ["workspace", "deactivate", "demo", "feat-cli"])
        assert result.exit_code == 0, result.output

        result = cli_env.invoke(main, ["workspace", "branches", "demo", "--json"])
        inventory = json.loads(result.output)
        assert inventory["active"] == ["main"]
        assert "feat-cli" in inventory["inactive"]

    def test_unknown_project(self, cli_env):
        result = cli_env.invoke(main, ["workspace", "list", "ghost"])
        assert result.exit_code == 1


class TestItemCommands:
    def test_add_and_tree(self, cli_env):
        result = cli_env.invoke(main, ["item", "add", "Checkout", "--project", "demo", "--type", "epic"])
        assert result.exit_code == 0, result.output
        parent_id = _created_id(result.output)

        result = cli_env.invoke(
            main, ["item", "add", "Card form", "--project", "demo", "--parent", parent_id, "-p", "high"]
        )
        assert result.exit_code == 0, result.output
        assert "Type: subtask" in result.output

        result = cli_env.invoke(main, ["item", "tree", "--project", "demo", "--json"])
        tree = json.loads(result.output)
        assert [r["title"] for r in tree] == ["Checkout"]
        assert [c["title"] for c in tree[0]["children"]] == ["Card form"]
        assert tree[0]["children"][0]["priority"] == "high"

    def test_update_and_show(self, cli_env):
        item_id = _created_id(cli_env.invoke(main, ["item", "add", "Docs", "--project", "demo"]).output)
        result = cli_env.invoke(
            main, ["item", "update", item_id, "--project", "demo", "--status", "in-progress"]
        )
        assert result.exit_code == 0, result.output

        result = cli_env.invoke(main, ["item", "show", item_id, "--project", "demo", "--json"])
        assert json.loads(result.output)["status"] == "in-progress"

    def test_delete(self, cli_env):
        item_id = _created_id(cli_env.invoke(main, ["item", "add", "Temp", "--project", "demo"]).output)
        assert cli_env.invoke(main, ["item", "delete", item_id, "--project", "demo"]).exit_code == 0
        result = cli_env.invoke(main, ["item", "show", item_id, "--project", "demo"])
        assert result.exit_code == 1

    def test_missing_project(self, cli_env):
        result = cli_env.invoke(main, ["item", "list", "--project", "ghost"])
        assert result.exit_code == 1


class TestSyncCommands:
    def test_status(self, cli_env):
        result = cli_env.invoke(main, ["sync", "status", "demo", "--json"])
        assert result.exit_code == 0, result.output
        statuses = json.loads(result.output)
        assert [(s["branch"], s["status"]) for s in statuses] == [("main", "synced")]

    def test_resolve_without_conflicts(self, cli_env):
        result = cli_env.invoke(main, ["sync", "resolve", "demo", "main", "--strategy", "accept-ours"])
        assert result.exit_code == 0
        assert "No conflicts to resolve" in result.output

    def test_unknown_strategy(self, cli_env):
        result = cli_env.invoke(main, ["sync", "resolve", "demo", "main", "--strategy", "yolo"])
        assert result.exit_code == 2
