"""Data models for the workspace orchestrator."""

from dataclasses import asdict, dataclass, field
from datetime import datetime

SESSION_STATES = ("planning", "executing", "testing", "demoing", "completed", "failed")
TERMINAL_SESSION_STATES = ("completed", "failed")
SYNC_STATES = ("synced", "ahead", "behind", "diverged", "conflict", "error")


# ── Workspaces ───────────────────────────────────────────────────────────────


@dataclass
class WorkspaceInfo:
    path: str
    branch: str
    head: str = ""
    status: str = "active"
    last_modified: datetime | None = None


@dataclass
class BranchInventory:
    active: list[str] = field(default_factory=list)
    inactive: list[str] = field(default_factory=list)


@dataclass
class BranchValidation:
    name: str
    normalized_name: str
    valid: bool
    prefix: str | None = None
    errors: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass
class WorkspaceProgress:
    current_step: int = 0
    total_steps: int = 0
    step_description: str = ""
    completed_steps: list[int] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)
    tests_status: str = "pending"
    demo_status: str = "pending"


@dataclass
class WorkspaceSession:
    id: str
    task_id: str
    project: str | None
    branch: str
    base_branch: str
    path: str
    status: str = "active"
    owned: bool = True
    created_at: datetime | None = None
    last_activity: datetime | None = None
    progress: WorkspaceProgress = field(default_factory=WorkspaceProgress)


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


@dataclass
class WorkspaceStatus:
    branch: str
    base_branch: str
    commits_ahead: int = 0
    changed_files: list[str] = field(default_factory=list)
    uncommitted: list[str] = field(default_factory=list)


# ── Work items ───────────────────────────────────────────────────────────────


@dataclass
class SmartCategory:
    id: str
    name: str
    team: str = ""
    color: str = ""
    categorized_at: str | None = None


@dataclass
class WorkItem:
    id: str
    title: str
    type: str = "task"
    status: str = "planned"
    priority: str = "medium"
    functional_area: str = "software"
    description: str = ""
    parent_id: str | None = None
    depth: int = 0
    order_index: int = 0
    project: str = ""
    created_at: str = ""
    updated_at: str = ""
    effort: str | None = None
    assignee: str | None = None
    due_date: str | None = None
    tags: list[str] = field(default_factory=list)
    smart_category: SmartCategory | None = None
    branch_name: str | None = None
    workspace_path: str | None = None
    workspace_status: str | None = None
    children: list["WorkItem"] = field(default_factory=list)


@dataclass
class WorkItemDraft:
    title: str
    description: str
    type: str = "task"
    priority: str = "medium"
    functional_area: str = "software"
    effort: str = "M"


# ── Planning ─────────────────────────────────────────────────────────────────


@dataclass
class PlanStep:
    id: int
    title: str
    description: str = ""
    deliverable: str = "Completion of step"
    exit_criteria: str = "Step is done"
    estimated_minutes: int = 30
    dependencies: list[int] = field(default_factory=list)
    verification_command: str | None = None
    test_command: str | None = None
    files: list[str] = field(default_factory=list)


@dataclass
class TaskPlan:
    task_id: str
    title: str
    description: str
    steps: list[PlanStep] = field(default_factory=list)
    total_estimate_minutes: int = 0
    agent_type: str = "general"
    complexity: str = "medium"
    risk_factors: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    is_fallback: bool = False


@dataclass
class CodebaseContext:
    project_structure: list[str] = field(default_factory=list)
    key_files: list[str] = field(default_factory=list)
    tech_stack: list[str] = field(default_factory=list)
    testing_framework: str | None = None
    build_commands: dict[str, str] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)


# ── Agent sessions ───────────────────────────────────────────────────────────


@dataclass
class AgentLog:
    timestamp: datetime
    level: str
    message: str
    step: int | None = None


@dataclass
class AgentArtifacts:
    screenshots: list[str] = field(default_factory=list)
    demo_video: str | None = None
    code_changes: list[str] = field(default_factory=list)
    test_results: list[str] = field(default_factory=list)
    pr_url: str | None = None


@dataclass
class ExecutionOptions:
    dry_run: bool = False
    skip_tests: bool = False
    skip_demo: bool = False
    publish: bool = True
    project: str | None = None
    workspace_path: str | None = None
    branch: str | None = None
    base_branch: str | None = None
    task_id: str | None = None
    provider: str | None = None


@dataclass
class AgentSession:
    id: str
    requirement: str
    status: str = "planning"
    plan: TaskPlan | None = None
    workspace: WorkspaceSession | None = None
    current_step: int = 0
    completed_steps: list[int] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    logs: list[AgentLog] = field(default_factory=list)
    artifacts: AgentArtifacts = field(default_factory=AgentArtifacts)
    options: ExecutionOptions = field(default_factory=ExecutionOptions)


@dataclass
class ExecutionResult:
    success: bool
    session_id: str | None = None
    workspace_path: str | None = None
    branch: str | None = None
    category: SmartCategory | None = None
    error: str | None = None


# ── Sync ─────────────────────────────────────────────────────────────────────


@dataclass
class SyncStatus:
    project: str
    branch: str
    status: str = "error"
    message: str = ""
    ahead: int = 0
    behind: int = 0
    conflict_files: list[str] = field(default_factory=list)
    needs_attention: bool = False
    path: str | None = None
    last_checked: datetime | None = None
    error: str | None = None


@dataclass
class ConflictResolutionResult:
    success: bool
    message: str
    resolved_files: list[str] = field(default_factory=list)
    remaining_conflicts: list[str] = field(default_factory=list)


# ── Serialization ────────────────────────────────────────────────────────────


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def to_dict(obj) -> dict:
    """Dataclass to a JSON-ready dict, with datetimes as ISO strings."""
    return _jsonable(asdict(obj))
