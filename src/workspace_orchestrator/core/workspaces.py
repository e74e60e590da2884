"""Workspace store: per-project primary checkouts and per-branch git worktrees.

Layout under the repos root::

    <project>/main/       primary checkout (never removed)
    <project>/<branch>/   one worktree per active branch

Every workspace carries a .wso/ metadata root (work items, logs, agent
metadata and a workspace.json descriptor). The directory is listed in the
repository's shared info/exclude so it never shows up as a local change.
"""

import json
import logging
import os
import shlex
import socket
import subprocess
import threading
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path

from workspace_orchestrator.core.branches import MAIN_BRANCH, validate_branch_name
from workspace_orchestrator.db.models import (
    BranchInventory,
    BranchValidation,
    CommandResult,
    WorkspaceInfo,
    WorkspaceProgress,
    WorkspaceSession,
    WorkspaceStatus,
)
from workspace_orchestrator.integrations import git
from workspace_orchestrator.integrations.git import GitError
from workspace_orchestrator.integrations.github import create_pull_request

logger = logging.getLogger(__name__)

METADATA_DIR = ".wso"
METADATA_SUBDIRS = ("work-items", "logs", "agents")
DESCRIPTOR_FILE = "workspace.json"
DESCRIPTOR_VERSION = "1.0"
READY_MARKERS = ("Ready", "Local:", "Uvicorn running", "Listening")


class WorkspaceError(Exception):
    """Base error for workspace operations, carrying the offending project/branch/path."""

    def __init__(
        self,
        message: str,
        project: str | None = None,
        branch: str | None = None,
        path: str | Path | None = None,
    ):
        super().__init__(message)
        self.project = project
        self.branch = branch
        self.path = str(path) if path is not None else None


class BranchValidationError(WorkspaceError, ValueError):
    def __init__(self, validation: BranchValidation, project: str | None = None):
        message = f"Invalid branch name '{validation.name}': " + "; ".join(validation.errors)
        if validation.suggestions:
            message += f" (try: {', '.join(validation.suggestions)})"
        super().__init__(message, project=project, branch=validation.normalized_name)
        self.validation = validation


class ProjectNotFoundError(WorkspaceError):
    pass


class WorkspaceExistsError(WorkspaceError):
    pass


class WorkspaceNotFoundError(WorkspaceError):
    pass


class BranchConflictError(WorkspaceError):
    pass


class ProtectedBranchError(WorkspaceError):
    pass


class DirtyWorkspaceError(WorkspaceError):
    pass


class SessionNotFoundError(WorkspaceError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def run_command(
    argv: list[str],
    cwd: str | Path,
    timeout: float,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run argv without a shell. Missing executables and timeouts become failed results."""
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError as e:
        return CommandResult(argv=argv, returncode=127, stderr=str(e))
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        return CommandResult(
            argv=argv,
            returncode=-1,
            stdout=stdout,
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    return CommandResult(
        argv=argv,
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def find_free_port(start: int = 3001, attempts: int = 100) -> int:
    for port in range(start, start + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    raise WorkspaceError(f"No free port found in {start}-{start + attempts - 1}")


@dataclass
class PreviewServer:
    port: int
    url: str
    process: subprocess.Popen
    output: list[str] = field(default_factory=list)

    def stop(self, timeout: float = 5.0) -> None:
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()


class WorkspaceStore:
    """Maps (project, branch) to worktrees and tracks the sessions bound to them."""

    def __init__(
        self,
        repos_root: str | Path,
        main_branch: str = MAIN_BRANCH,
        remote: str = "origin",
        git_timeout: float = git.DEFAULT_TIMEOUT,
        command_timeout: float = 300.0,
    ):
        self.repos_root = Path(repos_root)
        self.main_branch = main_branch
        self.remote = remote
        self.git_timeout = git_timeout
        self.command_timeout = command_timeout
        self._sessions: dict[str, WorkspaceSession] = {}
        self._lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        self.repos_root.mkdir(parents=True, exist_ok=True)
        self.cleanup_stale_workspaces()

    def cleanup_stale_workspaces(self) -> int:
        """Prune worktree records whose directories are gone. Failures are logged and skipped."""
        pruned = 0
        for project in self.list_projects():
            try:
                git.worktree_prune(self.primary_path(project), timeout=self.git_timeout)
                pruned += 1
            except GitError:
                logger.exception("Stale workspace sweep failed for project %s", project)
        return pruned

    # ── Paths ────────────────────────────────────────────────────────────────

    def _is_primary(self, branch: str) -> bool:
        return branch in (MAIN_BRANCH, self.main_branch)

    def project_path(self, project: str) -> Path:
        if not project or "/" in project or "\\" in project or project in (".", ".."):
            raise ValueError(f"Invalid project name: {project!r}")
        return self.repos_root / project

    def primary_path(self, project: str) -> Path:
        return self.project_path(project) / MAIN_BRANCH

    def workspace_path(self, project: str, branch: str) -> Path:
        if self._is_primary(branch):
            return self.primary_path(project)
        return self.project_path(project) / branch

    def metadata_path(self, project: str, branch: str = MAIN_BRANCH) -> Path:
        return self.workspace_path(project, branch) / METADATA_DIR

    def work_items_path(self, project: str, branch: str = MAIN_BRANCH) -> Path:
        return self.metadata_path(project, branch) / "work-items"

    # ── Projects ─────────────────────────────────────────────────────────────

    def project_exists(self, project: str) -> bool:
        return (self.primary_path(project) / ".git").exists()

    def list_projects(self) -> list[str]:
        if not self.repos_root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.repos_root.iterdir()
            if entry.is_dir() and (entry / MAIN_BRANCH / ".git").exists()
        )

    def _require_project(self, project: str) -> Path:
        primary = self.primary_path(project)
        if not (primary / ".git").exists():
            raise ProjectNotFoundError(f"Project not found: {project}", project=project, path=primary)
        return primary

    def clone_project(self, remote_url: str, project: str) -> Path:
        """Clone the primary workspace for a project. No-op if it already exists."""
        primary = self.primary_path(project)
        if self.project_exists(project):
            logger.info("Project %s already exists at %s", project, primary)
            return primary
        if primary.exists():
            raise WorkspaceExistsError(
                f"Path exists but is not a repository: {primary}", project=project, path=primary
            )
        primary.parent.mkdir(parents=True, exist_ok=True)
        try:
            git.clone(remote_url, primary, timeout=self.git_timeout)
        except GitError as e:
            raise WorkspaceError(f"Clone failed: {e}", project=project, path=primary) from e
        self._seed_metadata(primary, project, self.main_branch, self.main_branch)
        return primary

    # ── Workspaces ───────────────────────────────────────────────────────────

    def _validated(self, branch: str, project: str | None = None) -> str:
        validation = validate_branch_name(branch)
        if not validation.valid:
            raise BranchValidationError(validation, project=project)
        return validation.normalized_name

    def _seed_metadata(self, path: Path, project: str, branch: str, base_branch: str) -> Path:
        meta = path / METADATA_DIR
        for sub in METADATA_SUBDIRS:
            (meta / sub).mkdir(parents=True, exist_ok=True)
        descriptor = meta / DESCRIPTOR_FILE
        if not descriptor.exists():
            descriptor.write_text(
                json.dumps(
                    {
                        "version": DESCRIPTOR_VERSION,
                        "scope": {
                            "type": "branch",
                            "project": project,
                            "branch": branch,
                            "base_branch": base_branch,
                        },
                        "created_at": _now().isoformat(),
                    },
                    indent=2,
                )
                + "\n"
            )
        git.add_exclude_pattern(path, f"/{METADATA_DIR}/", timeout=self.git_timeout)
        return meta

    def ensure_metadata(self, project: str, branch: str = MAIN_BRANCH) -> Path:
        """Seed the metadata root of an existing workspace if it is missing."""
        self._require_project(project)
        path = self.workspace_path(project, branch)
        if not path.exists():
            raise WorkspaceNotFoundError(
                f"No workspace for branch '{branch}'", project=project, branch=branch, path=path
            )
        name = self.main_branch if self._is_primary(branch) else branch
        return self._seed_metadata(path, project, name, self.main_branch)

    def read_descriptor(self, project: str, branch: str) -> dict | None:
        descriptor = self.metadata_path(project, branch) / DESCRIPTOR_FILE
        if not descriptor.exists():
            return None
        return json.loads(descriptor.read_text())

    def list_workspaces(self, project: str) -> list[WorkspaceInfo]:
        primary = self._require_project(project)
        result = []
        for wt in git.worktree_list(primary, timeout=self.git_timeout):
            if wt.is_bare:
                continue
            path = Path(wt.path)
            if wt.prunable:
                status = "prunable"
            elif wt.locked:
                status = "locked"
            else:
                status = "active"
            last_modified = None
            if path.exists():
                last_modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            result.append(
                WorkspaceInfo(
                    path=str(path),
                    branch=wt.branch,
                    head=wt.head,
                    status=status,
                    last_modified=last_modified,
                )
            )
        return result

    def create_workspace(self, project: str, branch: str, base: str | None = None) -> Path:
        """Create a new branch from base in its own worktree."""
        if self._is_primary(branch):
            return self.primary_path(project)
        name = self._validated(branch, project)
        primary = self._require_project(project)
        path = self.workspace_path(project, name)
        if path.exists():
            raise WorkspaceExistsError(
                f"Workspace already exists: {path}", project=project, branch=name, path=path
            )
        if git.branch_exists(primary, name, timeout=self.git_timeout):
            raise BranchConflictError(
                f"Branch '{name}' already exists; activate it instead",
                project=project,
                branch=name,
                path=path,
            )

        base_ref = base or self.main_branch
        try:
            git.worktree_add(primary, path, name, base_ref, create_branch=True, timeout=self.git_timeout)
        except GitError as e:
            raise WorkspaceError(
                f"Could not create workspace for '{name}': {e}", project=project, branch=name, path=path
            ) from e
        self._seed_metadata(path, project, name, base_ref)
        logger.info("Created workspace %s/%s from %s", project, name, base_ref)
        return path

    def activate_branch(self, project: str, branch: str, base: str | None = None) -> Path:
        """Give a branch a workspace, reusing the branch if it already exists."""
        primary = self._require_project(project)
        if self._is_primary(branch):
            return primary
        name = self._validated(branch, project)
        path = self.workspace_path(project, name)
        if path.exists():
            return path

        try:
            if git.branch_exists(primary, name, timeout=self.git_timeout):
                git.worktree_add(primary, path, name, create_branch=False, timeout=self.git_timeout)
                base_ref = base or self.main_branch
            elif git.remote_branch_exists(primary, name, self.remote, timeout=self.git_timeout):
                base_ref = f"{self.remote}/{name}"
                git.worktree_add(primary, path, name, base_ref, create_branch=True, timeout=self.git_timeout)
            else:
                base_ref = base or self.main_branch
                git.worktree_add(primary, path, name, base_ref, create_branch=True, timeout=self.git_timeout)
        except GitError as e:
            raise WorkspaceError(
                f"Could not activate '{name}': {e}", project=project, branch=name, path=path
            ) from e
        self._seed_metadata(path, project, name, base_ref)
        logger.info("Activated %s/%s", project, name)
        return path

    def unpublished_commits(self, path: str | Path, branch: str) -> int:
        """Commits on branch not yet on its upstream (or on the main branch if it has none)."""
        upstream = f"{self.remote}/{branch}"
        if git.ref_exists(path, upstream, timeout=self.git_timeout):
            return git.rev_list_count(path, f"{upstream}..HEAD", timeout=self.git_timeout)
        if git.ref_exists(path, self.main_branch, timeout=self.git_timeout):
            return git.rev_list_count(path, f"{self.main_branch}..HEAD", timeout=self.git_timeout)
        return 0

    def _ensure_no_local_work(self, project: str, branch: str, path: Path) -> None:
        changed = git.changed_paths(path, timeout=self.git_timeout)
        if changed:
            raise DirtyWorkspaceError(
                f"Workspace has {len(changed)} uncommitted change(s); use force to discard",
                project=project,
                branch=branch,
                path=path,
            )
        unpublished = self.unpublished_commits(path, branch)
        if unpublished:
            raise DirtyWorkspaceError(
                f"Workspace has {unpublished} unpublished commit(s); use force to discard",
                project=project,
                branch=branch,
                path=path,
            )

    def remove_workspace(
        self,
        project: str,
        branch: str,
        force: bool = False,
        delete_branch: bool = False,
    ) -> Path:
        """Remove a branch workspace. The primary workspace can never be removed."""
        if self._is_primary(branch):
            raise ProtectedBranchError(
                "The main workspace cannot be removed", project=project, branch=branch
            )
        primary = self._require_project(project)
        path = self.workspace_path(project, branch)
        if not path.exists():
            raise WorkspaceNotFoundError(
                f"No workspace for branch '{branch}'", project=project, branch=branch, path=path
            )
        if not force:
            self._ensure_no_local_work(project, branch, path)

        try:
            git.worktree_remove(primary, path, force=force, timeout=self.git_timeout)
            if delete_branch:
                git.delete_branch(primary, branch, force=True, timeout=self.git_timeout)
        except GitError as e:
            raise WorkspaceError(
                f"Could not remove workspace: {e}", project=project, branch=branch, path=path
            ) from e

        with self._lock:
            for session in self._sessions.values():
                if session.path == str(path) and session.status == "active":
                    session.status = "abandoned"
        logger.info("Removed workspace %s/%s", project, branch)
        return path

    def deactivate_branch(self, project: str, branch: str, force: bool = False) -> Path:
        """Remove the workspace but keep the branch reference."""
        if self._is_primary(branch):
            raise ProtectedBranchError(
                "The main branch cannot be deactivated", project=project, branch=branch
            )
        return self.remove_workspace(project, branch, force=force, delete_branch=False)

    def get_all_branches(self, project: str) -> BranchInventory:
        primary = self._require_project(project)
        active = [w.branch for w in self.list_workspaces(project) if w.branch]
        known = git.list_local_branches(primary, timeout=self.git_timeout)
        known += git.list_remote_branches(primary, self.remote, timeout=self.git_timeout)
        inactive = sorted(set(known) - set(active))
        return BranchInventory(active=sorted(set(active)), inactive=inactive)

    # ── Sessions ─────────────────────────────────────────────────────────────

    def open_session(
        self, task_id: str, project: str, branch: str, base: str | None = None
    ) -> WorkspaceSession:
        """Create a fresh workspace owned by a new session."""
        path = self.create_workspace(project, branch, base)
        now = _now()
        session = WorkspaceSession(
            id=str(uuid.uuid4()),
            task_id=task_id,
            project=project,
            branch=path.name if not self._is_primary(branch) else self.main_branch,
            base_branch=base or self.main_branch,
            path=str(path),
            owned=not self._is_primary(branch),
            created_at=now,
            last_activity=now,
        )
        with self._lock:
            self._sessions[session.id] = session
        return session

    def bind_session(
        self,
        task_id: str,
        path: str | Path,
        branch: str | None = None,
        base: str | None = None,
        project: str | None = None,
    ) -> WorkspaceSession:
        """Track a session on a caller-supplied workspace. The store will not delete it."""
        path = Path(path)
        if not path.exists():
            raise WorkspaceNotFoundError(f"Workspace path does not exist: {path}", path=path)
        if branch is None:
            try:
                branch = git.get_current_branch(path, timeout=self.git_timeout) or "HEAD"
            except GitError:
                branch = "HEAD"
        now = _now()
        session = WorkspaceSession(
            id=str(uuid.uuid4()),
            task_id=task_id,
            project=project,
            branch=branch,
            base_branch=base or self.main_branch,
            path=str(path),
            owned=False,
            created_at=now,
            last_activity=now,
        )
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get_session(self, session_id: str) -> WorkspaceSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def list_active_sessions(self) -> list[WorkspaceSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.status == "active"]

    def _require_session(self, session_id: str) -> WorkspaceSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Workspace session not found: {session_id}")
        return session

    def update_progress(self, session_id: str, **values) -> WorkspaceSession:
        known = {f.name for f in fields(WorkspaceProgress)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown progress fields: {', '.join(sorted(unknown))}")
        session = self._require_session(session_id)
        with self._lock:
            for key, value in values.items():
                setattr(session.progress, key, value)
            session.last_activity = _now()
        return session

    def set_session_status(self, session_id: str, status: str) -> WorkspaceSession:
        session = self._require_session(session_id)
        with self._lock:
            session.status = status
            session.last_activity = _now()
        return session

    def execute_in_workspace(
        self, session_id: str, argv: list[str], timeout: float | None = None
    ) -> CommandResult:
        session = self._require_session(session_id)
        if not Path(session.path).exists():
            raise WorkspaceNotFoundError(
                f"Workspace is gone: {session.path}", branch=session.branch, path=session.path
            )
        logger.debug("Running %s in %s", shlex.join(argv), session.path)
        result = run_command(argv, session.path, timeout or self.command_timeout)
        with self._lock:
            session.last_activity = _now()
        return result

    def get_workspace_status(self, session_id: str) -> WorkspaceStatus:
        session = self._require_session(session_id)
        path = session.path
        status = WorkspaceStatus(branch=session.branch, base_branch=session.base_branch)
        if git.ref_exists(path, session.base_branch, timeout=self.git_timeout):
            status.commits_ahead = git.rev_list_count(
                path, f"{session.base_branch}..HEAD", timeout=self.git_timeout
            )
            status.changed_files = git.diff_names(path, session.base_branch, timeout=self.git_timeout)
        status.uncommitted = git.changed_paths(path, timeout=self.git_timeout)
        return status

    def start_preview_server(
        self,
        session_id: str,
        command: str,
        timeout: float = 30.0,
        start_port: int = 3001,
    ) -> PreviewServer:
        """Start a dev server in the workspace and wait until it reports readiness."""
        session = self._require_session(session_id)
        port = find_free_port(start_port)
        env = {**os.environ, "PORT": str(port)}
        process = subprocess.Popen(
            shlex.split(command),
            cwd=session.path,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=env,
        )
        server = PreviewServer(port=port, url=f"http://localhost:{port}", process=process)
        ready = threading.Event()

        def _read_output():
            for line in process.stdout:
                server.output.append(line.rstrip("\n"))
                if any(marker in line for marker in READY_MARKERS):
                    ready.set()

        threading.Thread(target=_read_output, name=f"preview-{port}", daemon=True).start()

        if not ready.wait(timeout):
            server.stop()
            raise WorkspaceError(
                f"Preview server did not report ready within {timeout}s",
                branch=session.branch,
                path=session.path,
            )
        logger.info("Preview server ready at %s", server.url)
        return server

    def publish_changes(self, session_id: str, title: str, body: str) -> str:
        """Commit everything, push the branch and open a pull request. Returns the PR URL."""
        session = self._require_session(session_id)
        path = session.path
        git.add_all(path, timeout=self.git_timeout)
        if git.has_staged_changes(path, timeout=self.git_timeout):
            git.commit(path, title, timeout=self.git_timeout)
        if self.unpublished_commits(path, session.branch) == 0:
            raise WorkspaceError("Nothing to publish", branch=session.branch, path=path)

        git.push(path, session.branch, self.remote, timeout=self.git_timeout)
        url = create_pull_request(path, title, body, head=session.branch, base=session.base_branch)
        self.set_session_status(session_id, "completed")
        logger.info("Published %s: %s", session.branch, url)
        return url

    def close_session(self, session_id: str, delete_branch: bool = False) -> WorkspaceSession | None:
        """Forget a session, force-removing its workspace if the store created it."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return None

        if session.owned and session.project and Path(session.path).exists():
            primary = self.primary_path(session.project)
            try:
                git.worktree_remove(primary, session.path, force=True, timeout=self.git_timeout)
                if delete_branch:
                    git.delete_branch(primary, session.branch, force=True, timeout=self.git_timeout)
            except GitError as e:
                raise WorkspaceError(
                    f"Could not remove workspace: {e}",
                    project=session.project,
                    branch=session.branch,
                    path=session.path,
                ) from e

        if session.status not in ("completed", "merged"):
            session.status = "abandoned"
        return session
