"""JSON API over the workspace orchestrator services."""

from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from workspace_orchestrator.config import get_config
from workspace_orchestrator.core.branches import validate_branch_name
from workspace_orchestrator.core.services import Services, build_services
from workspace_orchestrator.core.workspaces import WorkspaceError
from workspace_orchestrator.db.models import ExecutionOptions, to_dict
from workspace_orchestrator.integrations.git import GitError


def _services(request: Request) -> Services:
    return request.app.state.services


def _not_found(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=404)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def _session_summary(session) -> dict:
    return {
        "id": session.id,
        "requirement": session.requirement,
        "status": session.status,
        "branch": session.workspace.branch if session.workspace else None,
        "workspace_path": session.workspace.path if session.workspace else None,
        "current_step": session.current_step,
        "completed_steps": session.completed_steps,
        "total_steps": len(session.plan.steps) if session.plan else 0,
        "error": session.error,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ── Sessions ──────────────────────────────────────────────────────────────────


async def api_list_sessions(request: Request):
    limit = int(request.query_params.get("limit", 50))
    sessions = _services(request).orchestrator.list_session_history(limit)
    return JSONResponse([_session_summary(s) for s in sessions])


async def api_start_session(request: Request):
    body = await _json_body(request)
    if body is None or not str(body.get("requirement") or "").strip():
        return _bad_request("A JSON body with a requirement is required")
    options = ExecutionOptions(
        dry_run=bool(body.get("dry_run", False)),
        skip_tests=bool(body.get("skip_tests", False)),
        skip_demo=bool(body.get("skip_demo", False)),
        publish=bool(body.get("publish", True)),
        project=body.get("project"),
        workspace_path=body.get("workspace_path"),
        branch=body.get("branch"),
        base_branch=body.get("base_branch"),
        provider=body.get("provider"),
    )
    orchestrator = _services(request).orchestrator
    try:
        session_id = await run_in_threadpool(orchestrator.start, body["requirement"], options)
    except (WorkspaceError, GitError, ValueError) as e:
        return _bad_request(str(e))
    return JSONResponse({"session_id": session_id}, status_code=201)


async def api_get_session(request: Request):
    session_id = request.path_params["session_id"]
    session = _services(request).orchestrator.get_session_history(session_id)
    if not session:
        return _not_found("Session not found")
    return JSONResponse(to_dict(session))


async def api_session_logs(request: Request):
    session_id = request.path_params["session_id"]
    logs = _services(request).orchestrator.get_logs(session_id)
    if logs is None:
        return _not_found("Session not found")
    return JSONResponse([to_dict(log) for log in logs])


async def api_stop_session(request: Request):
    session_id = request.path_params["session_id"]
    session = await run_in_threadpool(_services(request).orchestrator.stop, session_id)
    if not session:
        return _not_found("Session not found")
    return JSONResponse(_session_summary(session))


# ── Projects and workspaces ───────────────────────────────────────────────────


async def api_list_projects(request: Request):
    return JSONResponse(_services(request).store.list_projects())


def _require_project(request: Request) -> str | None:
    project = request.path_params["project"]
    try:
        exists = _services(request).store.project_exists(project)
    except ValueError:
        return None
    return project if exists else None


async def api_project_workspaces(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    workspaces = await run_in_threadpool(_services(request).store.list_workspaces, project)
    return JSONResponse([to_dict(w) for w in workspaces])


async def api_project_branches(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    inventory = await run_in_threadpool(_services(request).store.get_all_branches, project)
    return JSONResponse(to_dict(inventory))


async def api_project_sync(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    refresh = request.query_params.get("refresh") in ("1", "true")
    statuses = await run_in_threadpool(_services(request).reconciler.get_sync_status, project, refresh)
    return JSONResponse([to_dict(s) for s in statuses])


async def api_attention(request: Request):
    statuses = await run_in_threadpool(_services(request).reconciler.get_projects_needing_attention)
    return JSONResponse([to_dict(s) for s in statuses])


# ── Work items ────────────────────────────────────────────────────────────────


async def api_work_item_tree(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    branch = request.query_params.get("branch", "main")
    try:
        items = await run_in_threadpool(_services(request).work_items, project, branch)
    except WorkspaceError as e:
        return _not_found(str(e))
    tree = await run_in_threadpool(items.build_tree)
    return JSONResponse([to_dict(root) for root in tree])


async def api_get_work_item(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    branch = request.query_params.get("branch", "main")
    try:
        items = await run_in_threadpool(_services(request).work_items, project, branch)
    except WorkspaceError as e:
        return _not_found(str(e))
    item = await run_in_threadpool(items.get, request.path_params["item_id"])
    if not item:
        return _not_found("Work item not found")
    return JSONResponse(to_dict(item))


async def api_execute_work_item(request: Request):
    project = _require_project(request)
    if project is None:
        return _not_found("Project not found")
    body = await _json_body(request) or {}
    options = ExecutionOptions(
        dry_run=bool(body.get("dry_run", False)),
        skip_tests=bool(body.get("skip_tests", False)),
        skip_demo=bool(body.get("skip_demo", False)),
        publish=bool(body.get("publish", True)),
        provider=body.get("provider"),
    )
    executor = _services(request).executor
    result = await run_in_threadpool(executor.execute, project, request.path_params["item_id"], options)
    return JSONResponse(to_dict(result), status_code=201 if result.success else 400)


# ── Branches ──────────────────────────────────────────────────────────────────


async def api_validate_branch(request: Request):
    name = request.query_params.get("name")
    if name is None:
        return _bad_request("Query parameter 'name' is required")
    return JSONResponse(to_dict(validate_branch_name(name)))


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(services: Services | None = None) -> Starlette:
    services = services or build_services(get_config())

    @asynccontextmanager
    async def lifespan(app: Starlette):
        services.start()
        try:
            yield
        finally:
            services.stop()

    routes = [
        Route("/api/sessions", api_list_sessions, methods=["GET"]),
        Route("/api/sessions", api_start_session, methods=["POST"]),
        Route("/api/sessions/{session_id}", api_get_session),
        Route("/api/sessions/{session_id}/logs", api_session_logs),
        Route("/api/sessions/{session_id}/stop", api_stop_session, methods=["POST"]),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project}/workspaces", api_project_workspaces),
        Route("/api/projects/{project}/branches", api_project_branches),
        Route("/api/projects/{project}/sync", api_project_sync),
        Route("/api/projects/{project}/items", api_work_item_tree),
        Route("/api/projects/{project}/items/{item_id}", api_get_work_item),
        Route("/api/projects/{project}/items/{item_id}/execute", api_execute_work_item, methods=["POST"]),
        Route("/api/sync/attention", api_attention),
        Route("/api/branches/validate", api_validate_branch),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.services = services
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
