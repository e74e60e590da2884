"""MCP server exposing workspace orchestrator tools to agent clients."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from workspace_orchestrator.config import get_config
from workspace_orchestrator.core.branches import validate_branch_name
from workspace_orchestrator.core.services import Services, build_services
from workspace_orchestrator.core.workspaces import WorkspaceError
from workspace_orchestrator.db.models import ExecutionOptions, to_dict
from workspace_orchestrator.integrations.git import GitError


@dataclass
class AppContext:
    services: Services


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build and start the services on startup, stop them on shutdown."""
    services = build_services(get_config())
    services.start()
    try:
        yield AppContext(services=services)
    finally:
        services.stop()


mcp = FastMCP("workspace-orchestrator", lifespan=app_lifespan)


def _svc(ctx: Context) -> Services:
    """Extract the service container from MCP Context."""
    return ctx.request_context.lifespan_context.services


def _session_to_dict(session) -> dict:
    d = {
        "id": session.id,
        "requirement": session.requirement,
        "status": session.status,
        "completed_steps": session.completed_steps,
    }
    if session.plan:
        d["plan"] = {
            "title": session.plan.title,
            "steps": [{"id": s.id, "title": s.title} for s in session.plan.steps],
            "is_fallback": session.plan.is_fallback,
        }
    if session.workspace:
        d["branch"] = session.workspace.branch
        d["workspace_path"] = session.workspace.path
    if session.artifacts.pr_url:
        d["pr_url"] = session.artifacts.pr_url
    if session.error:
        d["error"] = session.error
    return d


# ── Project & Workspace Tools ────────────────────────────────────────────────


@mcp.tool()
def list_projects(ctx: Context) -> list[str]:
    """List the projects that have a primary checkout."""
    return _svc(ctx).store.list_projects()


@mcp.tool()
def clone_project(ctx: Context, remote_url: str, project: str) -> dict:
    """Clone a repository as a new project. No-op if the project already exists."""
    try:
        path = _svc(ctx).store.clone_project(remote_url, project)
    except (WorkspaceError, ValueError) as e:
        return {"error": str(e)}
    return {"project": project, "path": str(path)}


@mcp.tool()
def list_workspaces(ctx: Context, project: str) -> list[dict]:
    """List every workspace (primary and branch worktrees) of a project."""
    try:
        return [to_dict(w) for w in _svc(ctx).store.list_workspaces(project)]
    except (WorkspaceError, GitError) as e:
        return [{"error": str(e)}]


@mcp.tool()
def activate_branch(ctx: Context, project: str, branch: str, base: str | None = None) -> dict:
    """Give a branch its own workspace, reusing the branch if it exists locally or remotely."""
    try:
        path = _svc(ctx).store.activate_branch(project, branch, base)
    except WorkspaceError as e:
        return {"error": str(e)}
    return {"project": project, "branch": branch, "path": str(path)}


@mcp.tool()
def deactivate_branch(ctx: Context, project: str, branch: str, force: bool = False) -> dict:
    """Remove a branch workspace but keep the branch. Refuses unpublished work unless forced."""
    try:
        path = _svc(ctx).store.deactivate_branch(project, branch, force=force)
    except WorkspaceError as e:
        return {"error": str(e)}
    return {"project": project, "branch": branch, "removed": str(path)}


@mcp.tool()
def list_branches(ctx: Context, project: str) -> dict:
    """List active (has a workspace) and inactive branches of a project."""
    try:
        return to_dict(_svc(ctx).store.get_all_branches(project))
    except (WorkspaceError, GitError) as e:
        return {"error": str(e)}


@mcp.tool()
def validate_branch(ctx: Context, name: str) -> dict:
    """Check a branch name against the naming rules and get suggestions if it is invalid."""
    return to_dict(validate_branch_name(name))


# ── Work Item Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def create_work_item(
    ctx: Context,
    project: str,
    title: str,
    description: str = "",
    parent_id: str | None = None,
    type: str | None = None,
    priority: str = "medium",
    effort: str | None = None,
) -> dict:
    """Create a work item. Types: epic, feature, story, task, subtask, bug."""
    values = {"description": description, "priority": priority}
    if type:
        values["type"] = type
    if effort:
        values["effort"] = effort
    try:
        item = _svc(ctx).work_items(project).create(title, parent_id=parent_id, **values)
    except (WorkspaceError, ValueError) as e:
        return {"error": str(e)}
    return to_dict(item)


@mcp.tool()
def get_work_item_tree(ctx: Context, project: str) -> list[dict]:
    """Get the project's work items as a nested tree."""
    try:
        return [to_dict(root) for root in _svc(ctx).work_items(project).build_tree()]
    except WorkspaceError as e:
        return [{"error": str(e)}]


@mcp.tool()
def update_work_item(ctx: Context, project: str, item_id: str, fields: dict) -> dict:
    """Update fields of a work item, e.g. {"status": "done"}. Use move_work_item to reparent."""
    try:
        item = _svc(ctx).work_items(project).update(item_id, **fields)
    except (WorkspaceError, ValueError) as e:
        return {"error": str(e)}
    if not item:
        return {"error": f"Work item not found: {item_id}"}
    return to_dict(item)


@mcp.tool()
def move_work_item(
    ctx: Context, project: str, item_id: str, new_parent_id: str | None = None, order_index: int | None = None
) -> dict:
    """Move a work item under a new parent, or to the root when new_parent_id is omitted."""
    try:
        item = _svc(ctx).work_items(project).move(item_id, new_parent_id, order_index)
    except (WorkspaceError, ValueError) as e:
        return {"error": str(e)}
    if not item:
        return {"error": f"Work item not found: {item_id}"}
    return to_dict(item)


@mcp.tool()
def delete_work_item(ctx: Context, project: str, item_id: str, cascade: bool = False) -> dict:
    """Delete a work item, optionally with all its descendants."""
    try:
        deleted = _svc(ctx).work_items(project).delete(item_id, cascade=cascade)
    except WorkspaceError as e:
        return {"error": str(e)}
    return {"deleted": deleted, "item_id": item_id}


@mcp.tool()
def classify_work_item(ctx: Context, description: str, project_context: str = "") -> dict:
    """Turn a free-text request into a work item draft (title, type, priority, effort)."""
    return to_dict(_svc(ctx).planner.analyze_work_item(description, project_context))


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def plan_task(ctx: Context, requirement: str, project: str | None = None) -> dict:
    """Produce a step plan for a requirement without running it."""
    services = _svc(ctx)
    context = None
    if project and services.store.project_exists(project):
        context = services.planner.analyze_codebase(services.store.primary_path(project))
    return to_dict(services.planner.plan_task(requirement, context))


@mcp.tool()
def start_session(
    ctx: Context,
    requirement: str,
    project: str | None = None,
    workspace_path: str | None = None,
    branch: str | None = None,
    dry_run: bool = False,
    skip_tests: bool = False,
    skip_demo: bool = True,
    publish: bool = True,
) -> dict:
    """Plan a requirement and run it in its own workspace in the background.
    Use get_session to follow progress."""
    options = ExecutionOptions(
        dry_run=dry_run,
        skip_tests=skip_tests,
        skip_demo=skip_demo,
        publish=publish,
        project=project,
        workspace_path=workspace_path,
        branch=branch,
    )
    try:
        session_id = _svc(ctx).orchestrator.start(requirement, options)
    except (WorkspaceError, GitError, ValueError) as e:
        return {"error": str(e)}
    return {"session_id": session_id}


@mcp.tool()
def execute_work_item(ctx: Context, project: str, item_id: str, dry_run: bool = False) -> dict:
    """Run a work item as a session on a branch derived from its category."""
    result = _svc(ctx).executor.execute(project, item_id, ExecutionOptions(dry_run=dry_run))
    return to_dict(result)


@mcp.tool()
def get_session(ctx: Context, session_id: str) -> dict:
    """Get a session's status, plan and progress."""
    session = _svc(ctx).orchestrator.get_session_history(session_id)
    if not session:
        return {"error": f"Session not found: {session_id}"}
    return _session_to_dict(session)


@mcp.tool()
def list_sessions(ctx: Context, limit: int = 20) -> list[dict]:
    """List recent sessions, newest first."""
    return [_session_to_dict(s) for s in _svc(ctx).orchestrator.list_session_history(limit)]


@mcp.tool()
def get_session_logs(ctx: Context, session_id: str, tail: int = 100) -> dict:
    """Read the audit log of a session (last `tail` entries)."""
    logs = _svc(ctx).orchestrator.get_logs(session_id)
    if logs is None:
        return {"error": f"Session not found: {session_id}"}
    return {"logs": [to_dict(log) for log in logs[-tail:]], "total": len(logs)}


@mcp.tool()
def stop_session(ctx: Context, session_id: str) -> dict:
    """Stop a running session and remove the workspace it created."""
    session = _svc(ctx).orchestrator.stop(session_id)
    if not session:
        return {"error": f"Session not found: {session_id}"}
    return _session_to_dict(session)


# ── Sync Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def get_sync_status(ctx: Context, project: str, refresh: bool = False) -> list[dict]:
    """Sync status of every workspace of a project (synced, ahead, behind, diverged, conflict)."""
    return [to_dict(s) for s in _svc(ctx).reconciler.get_sync_status(project, refresh)]


@mcp.tool()
def get_projects_needing_attention(ctx: Context) -> list[dict]:
    """Run a sync cycle and return the workspaces that are diverged or conflicted."""
    return [to_dict(s) for s in _svc(ctx).reconciler.get_projects_needing_attention()]


@mcp.tool()
def resolve_conflicts(ctx: Context, project: str, branch: str, strategy: str = "auto-merge") -> dict:
    """Resolve merge conflicts. Strategies: accept-ours, accept-theirs, auto-merge, manual-review."""
    try:
        return to_dict(_svc(ctx).reconciler.resolve_conflicts(project, branch, strategy))
    except (WorkspaceError, GitError, ValueError) as e:
        return {"error": str(e)}
