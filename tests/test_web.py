"""Tests for the JSON API."""

from unittest.mock import patch

import pytest
from starlette.concurrency import run_in_threadpool
from starlette.testclient import TestClient

from conftest import FakeAI

from workspace_orchestrator.config import Config
from workspace_orchestrator.core.services import build_services
from workspace_orchestrator.web.app import create_app


@pytest.fixture
def services(tmp_dir, origin):
    config = Config(
        db_path=tmp_dir / "wso.db",
        repos_root=tmp_dir / "repos",
        background_services=False,
        test_command="git status",
    )
    svc = build_services(config, ai=FakeAI(fail=True))
    svc.store.clone_project(str(origin), "demo")
    return svc


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


SESSION_BODY = {"requirement": "Add a changelog", "project": "demo", "publish": False, "skip_demo": True}


class TestProjectsAPI:
    def test_list_projects(self, client):
        resp = client.get("/api/projects")
        assert resp.status_code == 200
        assert resp.json() == ["demo"]

    def test_workspaces(self, client, services):
        services.store.create_workspace("demo", "feat-api")
        resp = client.get("/api/projects/demo/workspaces")
        assert resp.status_code == 200
        assert sorted(w["branch"] for w in resp.json()) == ["feat-api", "main"]

    def test_branches(self, client):
        resp = client.get("/api/projects/demo/branches")
        assert resp.json()["active"] == ["main"]

    def test_unknown_project(self, client):
        assert client.get("/api/projects/ghost/workspaces").status_code == 404
        assert client.get("/api/projects/ghost/items").status_code == 404
        assert client.get("/api/projects/ghost/sync").status_code == 404

    def test_sync_status(self, client):
        resp = client.get("/api/projects/demo/sync?refresh=1")
        assert resp.status_code == 200
        assert [(s["branch"], s["status"]) for s in resp.json()] == [("main", "synced")]

    def test_attention(self, client):
        resp = client.get("/api/sync/attention")
        assert resp.status_code == 200
        assert resp.json() == []


class TestBranchesAPI:
    def test_validate(self, client):
        data = client.get("/api/branches/validate", params={"name": "login"}).json()
        assert data["valid"] is False
        assert data["suggestions"] == ["feat-login"]

    def test_validate_requires_name(self, client):
        assert client.get("/api/branches/validate").status_code == 400


class TestWorkItemsAPI:
    def test_tree(self, client, services):
        items = services.work_items("demo")
        parent = items.create("Billing", type="epic")
        items.create("Invoices", parent_id=parent.id)

        resp = client.get("/api/projects/demo/items")
        assert resp.status_code == 200
        tree = resp.json()
        assert tree[0]["title"] == "Billing"
        assert tree[0]["children"][0]["title"] == "Invoices"
        assert tree[0]["children"][0]["depth"] == 1

    def test_get_item(self, client, services):
        item = services.work_items("demo").create("Billing")
        assert client.get(f"/api/projects/demo/items/{item.id}").json()["title"] == "Billing"
        assert client.get("/api/projects/demo/items/missing").status_code == 404

    def test_item_reads_run_in_threadpool(self, client, services):
        item = services.work_items("demo").create("Billing")
        with patch("workspace_orchestrator.web.app.run_in_threadpool", wraps=run_in_threadpool) as pool:
            assert client.get("/api/projects/demo/items").status_code == 200
            assert client.get(f"/api/projects/demo/items/{item.id}").status_code == 200

        called = [c.args[0] for c in pool.call_args_list]
        assert called.count(services.work_items) == 2

    def test_unknown_branch_workspace(self, client):
        assert client.get("/api/projects/demo/items?branch=feat-nowhere").status_code == 404

    def test_execute(self, client, services):
        item = services.work_items("demo").create("Write changelog", type="task")
        resp = client.post(
            f"/api/projects/demo/items/{item.id}/execute", json={"publish": False, "skip_demo": True}
        )
        assert resp.status_code == 201
        data = resp.json()
        session = services.orchestrator.wait(data["session_id"], timeout=60)
        assert session.status == "completed"
        assert data["branch"] == session.workspace.branch

    def test_execute_missing_item(self, client):
        resp = client.post("/api/projects/demo/items/missing/execute")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Work item not found: missing"


class TestSessionsAPI:
    def test_start_requires_requirement(self, client):
        assert client.post("/api/sessions", json={}).status_code == 400
        assert client.post("/api/sessions", content=b"not json").status_code == 400

    def test_start_requires_target(self, client):
        resp = client.post("/api/sessions", json={"requirement": "Anything"})
        assert resp.status_code == 400

    def test_session_lifecycle(self, client, services):
        resp = client.post("/api/sessions", json=SESSION_BODY)
        assert resp.status_code == 201
        session_id = resp.json()["session_id"]
        services.orchestrator.wait(session_id, timeout=60)

        data = client.get(f"/api/sessions/{session_id}").json()
        assert data["status"] == "completed"
        assert data["plan"]["is_fallback"] is True

        logs = client.get(f"/api/sessions/{session_id}/logs").json()
        assert logs[-1]["message"] == "Session completed"

        listed = client.get("/api/sessions").json()
        assert [s["id"] for s in listed] == [session_id]
        assert listed[0]["total_steps"] == 3

        stopped = client.post(f"/api/sessions/{session_id}/stop").json()
        assert stopped["status"] == "completed"

    def test_unknown_session(self, client):
        assert client.get("/api/sessions/nope").status_code == 404
        assert client.get("/api/sessions/nope/logs").status_code == 404
        assert client.post("/api/sessions/nope/stop").status_code == 404
