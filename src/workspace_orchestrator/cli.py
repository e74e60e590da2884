"""CLI entry point for the workspace orchestrator."""

import json
import logging
import sys

import click

from workspace_orchestrator.config import get_config
from workspace_orchestrator.core.branches import validate_branch_name
from workspace_orchestrator.core.services import Services, build_services
from workspace_orchestrator.core.sync import STRATEGIES
from workspace_orchestrator.core.workitems import (
    EFFORTS,
    FUNCTIONAL_AREAS,
    ITEM_STATUSES,
    ITEM_TYPES,
    PRIORITIES,
)
from workspace_orchestrator.core.workspaces import WorkspaceError
from workspace_orchestrator.db.models import ExecutionOptions, to_dict
from workspace_orchestrator.integrations.git import GitError


def _services() -> Services:
    return build_services(get_config())


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """wso - Workspace Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects (one primary checkout each)."""
    pass


@project_group.command("clone")
@click.argument("remote_url")
@click.argument("project")
def project_clone(remote_url, project):
    """Clone a repository as a new project."""
    services = _services()
    try:
        path = services.store.clone_project(remote_url, project)
    except (WorkspaceError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Project ready: {project}")
    click.echo(f"  Path: {path}")


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List known projects."""
    projects = _services().store.list_projects()
    if json_output:
        _echo_json(projects)
        return
    if not projects:
        click.echo("No projects found.")
        return
    for name in projects:
        click.echo(f"  {name}")


@project_group.command("exists")
@click.argument("project")
def project_exists(project):
    """Exit 0 if the project exists, 1 otherwise."""
    if _services().store.project_exists(project):
        click.echo(f"{project} exists")
        return
    click.echo(f"{project} not found", err=True)
    sys.exit(1)


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage branch workspaces."""
    pass


@workspace_group.command("list")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workspace_list(project, json_output):
    """List the workspaces of a project."""
    try:
        workspaces = _services().store.list_workspaces(project)
    except (WorkspaceError, GitError) as e:
        _fail(str(e))
    if json_output:
        _echo_json([to_dict(w) for w in workspaces])
        return
    for ws in workspaces:
        click.echo(f"  [{ws.status}] {ws.branch or '(detached)'} at {ws.path}")


@workspace_group.command("create")
@click.argument("project")
@click.argument("branch")
@click.option("--base", default=None, help="Base ref (defaults to the main branch)")
def workspace_create(project, branch, base):
    """Create a new branch in its own workspace."""
    try:
        path = _services().store.create_workspace(project, branch, base)
    except WorkspaceError as e:
        _fail(str(e))
    click.echo(f"Workspace created: {path}")


@workspace_group.command("activate")
@click.argument("project")
@click.argument("branch")
@click.option("--base", default=None, help="Base ref when the branch is new")
def workspace_activate(project, branch, base):
    """Give an existing or new branch a workspace."""
    try:
        path = _services().store.activate_branch(project, branch, base)
    except WorkspaceError as e:
        _fail(str(e))
    click.echo(f"Workspace active: {path}")


@workspace_group.command("remove")
@click.argument("project")
@click.argument("branch")
@click.option("--force", is_flag=True, help="Discard uncommitted or unpublished work")
@click.option("--delete-branch", is_flag=True, help="Also delete the branch")
def workspace_remove(project, branch, force, delete_branch):
    """Remove a branch workspace."""
    try:
        path = _services().store.remove_workspace(project, branch, force=force, delete_branch=delete_branch)
    except WorkspaceError as e:
        _fail(str(e))
    click.echo(f"Removed workspace: {path}")


@workspace_group.command("deactivate")
@click.argument("project")
@click.argument("branch")
@click.option("--force", is_flag=True, help="Discard uncommitted or unpublished work")
def workspace_deactivate(project, branch, force):
    """Remove a workspace but keep its branch."""
    try:
        path = _services().store.deactivate_branch(project, branch, force=force)
    except WorkspaceError as e:
        _fail(str(e))
    click.echo(f"Deactivated {branch} (was {path})")


@workspace_group.command("branches")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workspace_branches(project, json_output):
    """List active and inactive branches."""
    try:
        inventory = _services().store.get_all_branches(project)
    except (WorkspaceError, GitError) as e:
        _fail(str(e))
    if json_output:
        _echo_json(to_dict(inventory))
        return
    click.echo("Active:")
    for name in inventory.active:
        click.echo(f"  ● {name}")
    click.echo("Inactive:")
    for name in inventory.inactive:
        click.echo(f"  ○ {name}")


# ── Branch Commands ───────────────────────────────────────────────────────────


@main.group("branch")
def branch_group():
    """Branch naming helpers."""
    pass


@branch_group.command("validate")
@click.argument("name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def branch_validate(name, json_output):
    """Check a branch name against the naming rules."""
    result = validate_branch_name(name)
    if json_output:
        _echo_json(to_dict(result))
    elif result.valid:
        click.echo(f"✓ {result.normalized_name}")
    else:
        click.echo(f"✗ {result.normalized_name or name}")
        for error in result.errors:
            click.echo(f"  - {error}")
        if result.suggestions:
            click.echo(f"  Suggestions: {', '.join(result.suggestions)}")
    if not result.valid:
        sys.exit(1)


# ── Work Item Commands ────────────────────────────────────────────────────────


@main.group("item")
def item_group():
    """Manage work items."""
    pass


def _items(project, branch):
    try:
        return _services().work_items(project, branch)
    except WorkspaceError as e:
        _fail(str(e))


def _print_item(item):
    click.echo(f"Work item: {item.id}")
    click.echo(f"  Title: {item.title}")
    click.echo(f"  Type: {item.type}")
    click.echo(f"  Status: {item.status}")
    click.echo(f"  Priority: {item.priority}")
    if item.effort:
        click.echo(f"  Effort: {item.effort}")
    if item.parent_id:
        click.echo(f"  Parent: {item.parent_id}")
    if item.branch_name:
        click.echo(f"  Branch: {item.branch_name}")
    if item.description:
        click.echo(f"  Description: {item.description}")


def _print_tree(items, indent=0):
    for item in items:
        click.echo(f"{'  ' * (indent + 1)}- {item.id[:8]} {item.title} [{item.type}, {item.status}]")
        _print_tree(item.children, indent + 1)


@item_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project name")
@click.option("--branch", default="main", help="Workspace holding the items")
@click.option("--parent", default=None, help="Parent work item ID")
@click.option("--description", "-d", default="", help="Description")
@click.option("--type", "item_type", type=click.Choice(ITEM_TYPES), default=None)
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="medium")
@click.option("--area", type=click.Choice(FUNCTIONAL_AREAS), default="software")
@click.option("--effort", type=click.Choice(EFFORTS), default=None)
def item_add(title, project, branch, parent, description, item_type, priority, area, effort):
    """Create a work item."""
    values = {"description": description, "priority": priority, "functional_area": area}
    if item_type:
        values["type"] = item_type
    if effort:
        values["effort"] = effort
    try:
        item = _items(project, branch).create(title, parent_id=parent, **values)
    except ValueError as e:
        _fail(str(e))
    click.echo(f"Created work item: {item.id}")
    click.echo(f"  Title: {item.title}")
    click.echo(f"  Type: {item.type}")


@item_group.command("show")
@click.argument("item_id")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def item_show(item_id, project, branch, json_output):
    """Show a work item."""
    item = _items(project, branch).get(item_id)
    if not item:
        _fail(f"Work item not found: {item_id}")
    if json_output:
        _echo_json(to_dict(item))
        return
    _print_item(item)


@item_group.command("list")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--status", type=click.Choice(ITEM_STATUSES), default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def item_list(project, branch, status, json_output):
    """List work items (flat)."""
    items = _items(project, branch).list_all()
    if status:
        items = [i for i in items if i.status == status]
    if json_output:
        _echo_json([to_dict(i) for i in items])
        return
    if not items:
        click.echo("No work items found.")
        return
    for item in items:
        click.echo(f"  {item.id} {item.title} [{item.type}, {item.status}, {item.priority}]")


@item_group.command("tree")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def item_tree(project, branch, json_output):
    """Show the work-item hierarchy."""
    roots = _items(project, branch).build_tree()
    if json_output:
        _echo_json([to_dict(r) for r in roots])
        return
    if not roots:
        click.echo("No work items found.")
        return
    _print_tree(roots)


@item_group.command("update")
@click.argument("item_id")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--type", "item_type", type=click.Choice(ITEM_TYPES), default=None)
@click.option("--status", type=click.Choice(ITEM_STATUSES), default=None)
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default=None)
@click.option("--effort", type=click.Choice(EFFORTS), default=None)
@click.option("--assignee", default=None)
def item_update(item_id, project, branch, title, description, item_type, status, priority, effort, assignee):
    """Update fields of a work item."""
    values = {
        "title": title,
        "description": description,
        "type": item_type,
        "status": status,
        "priority": priority,
        "effort": effort,
        "assignee": assignee,
    }
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        _fail("Nothing to update")
    try:
        item = _items(project, branch).update(item_id, **values)
    except ValueError as e:
        _fail(str(e))
    if not item:
        _fail(f"Work item not found: {item_id}")
    click.echo(f"Updated {item.id}: {', '.join(sorted(values))}")


@item_group.command("move")
@click.argument("item_id")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--parent", default=None, help="New parent ID (omit to make it a root item)")
@click.option("--index", "order_index", type=int, default=None, help="Position among siblings")
def item_move(item_id, project, branch, parent, order_index):
    """Move a work item under a new parent or to the root."""
    try:
        item = _items(project, branch).move(item_id, parent, order_index)
    except ValueError as e:
        _fail(str(e))
    if not item:
        _fail(f"Work item not found: {item_id}")
    where = f"under {parent}" if parent else "to the root"
    click.echo(f"Moved {item.id} {where} (depth {item.depth})")


@item_group.command("delete")
@click.argument("item_id")
@click.option("--project", required=True)
@click.option("--branch", default="main")
@click.option("--cascade", is_flag=True, help="Also delete all descendants")
def item_delete(item_id, project, branch, cascade):
    """Delete a work item."""
    if not _items(project, branch).delete(item_id, cascade=cascade):
        _fail(f"Work item not found: {item_id}")
    click.echo(f"Deleted {item_id}")


@item_group.command("classify")
@click.argument("description")
@click.option("--project", default=None, help="Create the item in this project")
@click.option("--branch", default="main")
@click.option("--create", is_flag=True, help="Create the classified item")
def item_classify(description, project, branch, create):
    """Turn a free-text request into a work item draft."""
    services = _services()
    draft = services.planner.analyze_work_item(description, project_context=project or "")
    _echo_json(to_dict(draft))
    if not create:
        return
    if not project:
        _fail("--project is required with --create")
    values = to_dict(draft)
    title = values.pop("title")
    if not values.get("effort"):
        values.pop("effort", None)
    item = _items(project, branch).create(title, **values)
    click.echo(f"Created work item: {item.id}")


# ── Planning ──────────────────────────────────────────────────────────────────


@main.command("plan")
@click.argument("requirement")
@click.option("--project", default=None, help="Analyze this project's codebase for context")
@click.option("--provider", default=None, help="AI provider name")
def plan_command(requirement, project, provider):
    """Produce a step plan for a requirement and print it as JSON."""
    services = _services()
    context = None
    if project:
        if not services.store.project_exists(project):
            _fail(f"Project not found: {project}")
        context = services.planner.analyze_codebase(services.store.primary_path(project))
    plan = services.planner.plan_task(requirement, context, provider=provider)
    _echo_json(to_dict(plan))


# ── Session Commands ─────────────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Run and inspect agent sessions."""
    pass


def _session_options(project, workspace, branch, base, dry_run, skip_tests, skip_demo, no_publish, provider):
    return ExecutionOptions(
        dry_run=dry_run,
        skip_tests=skip_tests,
        skip_demo=skip_demo,
        publish=not no_publish,
        project=project,
        workspace_path=workspace,
        branch=branch,
        base_branch=base,
        provider=provider,
    )


def _run_in_foreground(services: Services, session_id: str, timeout: float | None):
    """Wait for a session; Ctrl-C stops it."""
    click.echo(f"Session started: {session_id}")
    try:
        session = services.orchestrator.wait(session_id, timeout=timeout)
    except KeyboardInterrupt:
        session = services.orchestrator.stop(session_id)
    for log in session.logs:
        step = f" [step {log.step}]" if log.step is not None else ""
        click.echo(f"  {log.level.upper():8}{step} {log.message}")
    click.echo(f"Status: {session.status}")
    if session.artifacts.pr_url:
        click.echo(f"PR: {session.artifacts.pr_url}")
    if session.error:
        click.echo(f"Error: {session.error}", err=True)
    if session.status != "completed":
        sys.exit(1)


_session_flags = [
    click.option("--workspace", default=None, help="Run in an existing checkout instead"),
    click.option("--branch", default=None, help="Branch name (derived from the plan if omitted)"),
    click.option("--base", default=None, help="Base branch"),
    click.option("--dry-run", is_flag=True, help="Log actions without running them"),
    click.option("--skip-tests", is_flag=True),
    click.option("--skip-demo", is_flag=True),
    click.option("--no-publish", is_flag=True, help="Do not push or open a pull request"),
    click.option("--provider", default=None, help="AI provider name"),
    click.option("--timeout", type=float, default=None, help="Seconds to wait before returning"),
]


def _with_session_flags(func):
    for flag in reversed(_session_flags):
        func = flag(func)
    return func


@session_group.command("start")
@click.argument("requirement")
@click.option("--project", default=None, help="Project to work in")
@_with_session_flags
def session_start(
    requirement, project, workspace, branch, base, dry_run, skip_tests, skip_demo, no_publish, provider, timeout
):
    """Plan and run a requirement in the foreground."""
    services = _services()
    services.store.initialize()
    options = _session_options(
        project, workspace, branch, base, dry_run, skip_tests, skip_demo, no_publish, provider
    )
    try:
        session_id = services.orchestrator.start(requirement, options)
    except (WorkspaceError, GitError, ValueError) as e:
        _fail(str(e))
    _run_in_foreground(services, session_id, timeout)


@session_group.command("execute-item")
@click.argument("project")
@click.argument("item_id")
@_with_session_flags
def session_execute_item(
    project, item_id, workspace, branch, base, dry_run, skip_tests, skip_demo, no_publish, provider, timeout
):
    """Run a work item on its own branch workspace."""
    services = _services()
    services.store.initialize()
    options = _session_options(
        project, workspace, branch, base, dry_run, skip_tests, skip_demo, no_publish, provider
    )
    result = services.executor.execute(project, item_id, options)
    if not result.success:
        _fail(result.error)
    click.echo(f"Branch: {result.branch}")
    if result.category:
        click.echo(f"Category: {result.category.name}")
    _run_in_foreground(services, result.session_id, timeout)


@session_group.command("show")
@click.argument("session_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def session_show(session_id, json_output):
    """Show a session and its log."""
    session = _services().orchestrator.get_session_history(session_id)
    if not session:
        _fail(f"Session not found: {session_id}")
    if json_output:
        _echo_json(to_dict(session))
        return
    click.echo(f"Session: {session.id}")
    click.echo(f"  Requirement: {session.requirement}")
    click.echo(f"  Status: {session.status}")
    if session.workspace:
        click.echo(f"  Workspace: {session.workspace.path} ({session.workspace.branch})")
    if session.plan:
        click.echo(f"  Steps: {len(session.completed_steps)}/{len(session.plan.steps)} completed")
    if session.error:
        click.echo(f"  Error: {session.error}")
    if session.logs:
        click.echo("  Log:")
        for log in session.logs:
            click.echo(f"    [{log.timestamp}] {log.level}: {log.message}")


@session_group.command("list")
@click.option("--limit", type=int, default=20)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def session_list(limit, json_output):
    """List recent sessions."""
    sessions = _services().orchestrator.list_session_history(limit)
    if json_output:
        _echo_json([to_dict(s) for s in sessions])
        return
    if not sessions:
        click.echo("No sessions found.")
        return
    for s in sessions:
        branch = f" ({s.workspace.branch})" if s.workspace else ""
        click.echo(f"  [{s.status.upper()}] {s.id}{branch}: {s.requirement[:60]}")


# ── Sync Commands ────────────────────────────────────────────────────────────


@main.group("sync")
def sync_group():
    """Reconcile workspaces with their remotes."""
    pass


def _print_statuses(statuses):
    for s in statuses:
        flag = "!" if s.needs_attention else " "
        extra = f" ({s.error})" if s.error else ""
        click.echo(f" {flag} {s.project}/{s.branch or '*'}: {s.status} - {s.message}{extra}")


@sync_group.command("run")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def sync_run(json_output):
    """Run one sync cycle over every project."""
    statuses = _services().reconciler.perform_sync_cycle()
    if json_output:
        _echo_json([to_dict(s) for s in statuses])
        return
    if not statuses:
        click.echo("No workspaces to sync.")
        return
    _print_statuses(statuses)


@sync_group.command("status")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def sync_status(project, json_output):
    """Show the sync status of a project's workspaces."""
    services = _services()
    if not services.store.project_exists(project):
        _fail(f"Project not found: {project}")
    statuses = services.reconciler.get_sync_status(project)
    if json_output:
        _echo_json([to_dict(s) for s in statuses])
        return
    _print_statuses(statuses)


@sync_group.command("attention")
def sync_attention():
    """List workspaces that need manual attention."""
    statuses = _services().reconciler.get_projects_needing_attention()
    if not statuses:
        click.echo("Nothing needs attention.")
        return
    _print_statuses(statuses)


@sync_group.command("resolve")
@click.argument("project")
@click.argument("branch")
@click.option("--strategy", type=click.Choice(STRATEGIES), default="auto-merge")
def sync_resolve(project, branch, strategy):
    """Resolve merge conflicts in a workspace."""
    try:
        result = _services().reconciler.resolve_conflicts(project, branch, strategy)
    except (WorkspaceError, GitError) as e:
        _fail(str(e))
    click.echo(result.message)
    for name in result.resolved_files:
        click.echo(f"  ✓ {name}")
    for name in result.remaining_conflicts:
        click.echo(f"  ✗ {name}")
    if not result.success:
        sys.exit(1)


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API with background services running."""
    from workspace_orchestrator.web.app import run_server

    click.echo(f"Starting API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from workspace_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
