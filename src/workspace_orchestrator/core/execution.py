"""Run a work item as an agent session on its own branch workspace."""

import logging
from dataclasses import replace

from workspace_orchestrator.core.branches import MAIN_BRANCH, branch_name_for, prefix_for_type
from workspace_orchestrator.core.categories import Category, categorize, to_smart_category
from workspace_orchestrator.core.orchestrator import SessionOrchestrator
from workspace_orchestrator.core.workitems import WorkItemStore
from workspace_orchestrator.core.workspaces import WorkspaceError, WorkspaceStore
from workspace_orchestrator.db.models import AgentSession, ExecutionOptions, ExecutionResult, WorkItem
from workspace_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

_TYPE_LEADS = {
    "bug": "Fix bug",
    "feature": "Implement feature",
    "subtask": "Complete subtask",
    "epic": "Implement epic",
}

EFFORT_GUIDE = {
    "XS": "a very small task (under 30 minutes)",
    "S": "a small task (1-2 hours)",
    "M": "a medium task (half a day)",
    "L": "a large task (1-2 days)",
    "XL": "a very large task (3-5 days)",
    "XXL": "an epic-sized task (a week or more)",
}


def open_work_items(store: WorkspaceStore, project: str, branch: str = MAIN_BRANCH) -> WorkItemStore:
    """Work-item store for one workspace, seeding its metadata root if needed."""
    store.ensure_metadata(project, branch)
    return WorkItemStore(store.work_items_path(project, branch), project=project)


def work_item_to_requirement(item: WorkItem) -> str:
    requirement = item.title
    if item.description.strip():
        requirement += f"\n\nDescription: {item.description.strip()}"
    lead = _TYPE_LEADS.get(item.type)
    if lead:
        requirement = f"{lead}: {requirement}"
    if item.effort:
        requirement += f"\n\nEffort estimate: {item.effort}, {EFFORT_GUIDE[item.effort]}"
    if item.priority != "medium":
        requirement += f"\n\nPriority: {item.priority}"
    return requirement


class WorkItemExecutor:
    """Picks a branch for a work item, activates it and starts a session there."""

    def __init__(
        self,
        store: WorkspaceStore,
        orchestrator: SessionOrchestrator,
        categories: list[Category] | None = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.categories = categories

    def branch_for(self, item: WorkItem, category: Category | None) -> str:
        if item.branch_name:
            return item.branch_name
        prefix = category.id if category else prefix_for_type(item.type)
        return branch_name_for(item.title, prefix=prefix, suffix=item.id[:6])

    def execute(
        self,
        project: str,
        item_id: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        if not self.store.project_exists(project):
            return ExecutionResult(success=False, error=f"Project not found: {project}")
        items = open_work_items(self.store, project)
        item = items.get(item_id)
        if item is None:
            return ExecutionResult(success=False, error=f"Work item not found: {item_id}")

        category = categorize(item.title, item.description, item.type, item.functional_area, self.categories)
        branch = self.branch_for(item, category)
        try:
            path = self.store.activate_branch(project, branch)
        except (WorkspaceError, GitError) as e:
            logger.warning("Could not activate %s for work item %s: %s", branch, item_id, e)
            return ExecutionResult(success=False, branch=branch, error=str(e))

        smart = to_smart_category(category) if category else None
        items.update(
            item_id,
            status="in-progress",
            branch_name=branch,
            workspace_path=str(path),
            workspace_status="active",
            smart_category=smart,
        )

        run_options = replace(
            options or ExecutionOptions(),
            project=project,
            workspace_path=str(path),
            branch=branch,
            task_id=item_id,
        )

        def _on_finish(session: AgentSession) -> None:
            if session.status == "completed":
                items.update(item_id, status="in-review", workspace_status="completed")
            else:
                items.update(item_id, status="planned", workspace_status="inactive")
            logger.info("Work item %s finished with session status %s", item_id, session.status)

        try:
            session_id = self.orchestrator.start(
                work_item_to_requirement(item), run_options, on_finish=_on_finish
            )
        except (WorkspaceError, GitError, ValueError) as e:
            items.update(item_id, status="planned", workspace_status="inactive")
            return ExecutionResult(
                success=False, workspace_path=str(path), branch=branch, category=smart, error=str(e)
            )

        return ExecutionResult(
            success=True,
            session_id=session_id,
            workspace_path=str(path),
            branch=branch,
            category=smart,
        )
