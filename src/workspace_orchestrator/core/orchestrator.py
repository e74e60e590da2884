"""Agent session orchestration: plan, bind a workspace, execute steps, test, preview, publish.

Each session runs on its own daemon thread. The in-memory session map is the
live source of truth; every status change and completed step is also
checkpointed to SQLite so the audit log outlives the process.
"""

import copy
import json
import logging
import shlex
import threading
import uuid
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from workspace_orchestrator.config import DEFAULT_ALLOWED_COMMANDS
from workspace_orchestrator.core import checkpoints
from workspace_orchestrator.core.actions import (
    RejectedAction,
    StepAction,
    parse_command_line,
    parse_guidance,
    write_file,
)
from workspace_orchestrator.core.branches import branch_name_for
from workspace_orchestrator.core.planner import TaskPlanner
from workspace_orchestrator.core.workspaces import (
    METADATA_DIR,
    SessionNotFoundError,
    WorkspaceError,
    WorkspaceStore,
)
from workspace_orchestrator.db.engine import get_db
from workspace_orchestrator.db.models import (
    TERMINAL_SESSION_STATES,
    AgentLog,
    AgentSession,
    CommandResult,
    ExecutionOptions,
    PlanStep,
    WorkspaceSession,
)
from workspace_orchestrator.integrations import slack as slack_mod
from workspace_orchestrator.integrations.ai import AIProvider
from workspace_orchestrator.integrations.git import GitError
from workspace_orchestrator.integrations.github import GitHubError

logger = logging.getLogger(__name__)

STOPPED_REASON = "Stopped by user"

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

STEP_PROMPT = """You are carrying out one step of a development plan inside a git checkout.

TASK: {title}
STEP {step_id}: {step_title}
{step_description}

Deliverable: {deliverable}
Exit criteria: {exit_criteria}
Files likely involved: {files}

Reply with the concrete actions for this step only:
- Shell commands go in a ```bash block, one command per line. No pipes, &&, ;, redirects or subshells.
- Allowed executables: {allowed}
- To create or replace a file, use a block whose info string is file:<relative path>, e.g. ```file:src/app.py
- Do not commit or push; that is handled separately."""

SessionCallback = Callable[[AgentSession], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionOrchestrator:
    """Runs agent sessions against isolated workspaces."""

    def __init__(
        self,
        store: WorkspaceStore,
        planner: TaskPlanner,
        ai: AIProvider,
        db_path: Path | None = None,
        allowed_commands: tuple[str, ...] = DEFAULT_ALLOWED_COMMANDS,
        command_timeout: float = 300.0,
        test_command: str = "npm test",
        test_timeout: float = 120.0,
        preview_command: str = "npm run dev",
        preview_timeout: float = 30.0,
        slack_token: str | None = None,
        slack_channel: str | None = None,
    ):
        self.store = store
        self.planner = planner
        self.ai = ai
        self.db_path = db_path
        self.allowed_commands = tuple(allowed_commands)
        self.command_timeout = command_timeout
        self.test_command = test_command
        self.test_timeout = test_timeout
        self.preview_command = preview_command
        self.preview_timeout = preview_timeout
        self.slack_token = slack_token
        self.slack_channel = slack_channel

        self._sessions: dict[str, AgentSession] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._stop_events: dict[str, threading.Event] = {}
        self._callbacks: dict[str, list[SessionCallback]] = {}
        self._persisted_logs: dict[str, int] = {}
        self._finished: set[str] = set()
        self._lock = threading.RLock()
        self._db_lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> list[str]:
        """Fail sessions a previous process left unfinished. Returns their ids."""
        if self.db_path is None:
            return []
        with self._db_lock, get_db(self.db_path) as db:
            interrupted = checkpoints.mark_interrupted(db)
        for session_id in interrupted:
            logger.warning("Session %s was interrupted by a restart; marked failed", session_id)
        return interrupted

    def shutdown(self, timeout: float = 10.0) -> None:
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=timeout)

    # ── Public API ───────────────────────────────────────────────────────────

    def start(
        self,
        requirement: str,
        options: ExecutionOptions | None = None,
        on_finish: SessionCallback | None = None,
    ) -> str:
        """Plan the requirement, bind a workspace and start execution in the background."""
        if not requirement or not requirement.strip():
            raise ValueError("Requirement cannot be empty")
        options = options or ExecutionOptions()

        session_id = str(uuid.uuid4())
        session = AgentSession(
            id=session_id,
            requirement=requirement,
            status="planning",
            started_at=_now(),
            options=options,
        )
        with self._lock:
            self._sessions[session_id] = session
            self._stop_events[session_id] = threading.Event()
            self._persisted_logs[session_id] = 0
            if on_finish:
                self._callbacks[session_id] = [on_finish]

        self._log(session, "info", f"Planning: {requirement}")
        context = None
        analysis_path = self._analysis_path(options)
        if analysis_path is not None:
            context = self.planner.analyze_codebase(analysis_path)
        plan = self.planner.plan_task(requirement, context, provider=options.provider)
        session.plan = plan
        note = " (fallback plan)" if plan.is_fallback else ""
        self._log(
            session,
            "success",
            f"Plan ready{note}: {len(plan.steps)} steps, ~{plan.total_estimate_minutes} minutes",
        )

        try:
            session.workspace = self._bind_workspace(session_id, options, plan.title, plan.task_id)
        except (WorkspaceError, GitError, ValueError) as e:
            self._fail(session, f"Workspace setup failed: {e}")
            self._finish(session)
            raise

        self._log(session, "info", f"Workspace ready: {session.workspace.path} ({session.workspace.branch})")
        self._write_plan_file(session)
        self._checkpoint(session)

        thread = threading.Thread(
            target=self._run, args=(session_id,), name=f"session-{session_id[:8]}", daemon=True
        )
        with self._lock:
            self._threads[session_id] = thread
        thread.start()
        return session_id

    def get_session(self, session_id: str) -> AgentSession | None:
        """Snapshot of a session from memory, or None if this process does not know it."""
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def get_session_history(self, session_id: str) -> AgentSession | None:
        """Like get_session, falling back to the checkpoint store for past sessions."""
        session = self.get_session(session_id)
        if session is not None or self.db_path is None:
            return session
        with self._db_lock, get_db(self.db_path) as db:
            return checkpoints.get_session_record(db, session_id)

    def list_sessions(self) -> list[AgentSession]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._sessions.values()]

    def list_active_sessions(self) -> list[AgentSession]:
        with self._lock:
            return [
                copy.deepcopy(s)
                for s in self._sessions.values()
                if s.status not in TERMINAL_SESSION_STATES
            ]

    def list_session_history(self, limit: int = 50) -> list[AgentSession]:
        """Live sessions plus checkpointed ones from earlier processes, newest first."""
        live = {s.id: s for s in self.list_sessions()}
        if self.db_path is not None:
            with self._db_lock, get_db(self.db_path) as db:
                for record in checkpoints.list_session_records(db, limit):
                    live.setdefault(record.id, record)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        ordered = sorted(live.values(), key=lambda s: s.started_at or epoch, reverse=True)
        return ordered[:limit]

    def get_logs(self, session_id: str) -> list[AgentLog] | None:
        session = self.get_session_history(session_id)
        return session.logs if session else None

    def wait(self, session_id: str, timeout: float | None = None) -> AgentSession | None:
        """Block until the session's worker finishes (or timeout) and return a snapshot."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.get_session(session_id)

    def add_finish_callback(self, session_id: str, callback: SessionCallback) -> None:
        with self._lock:
            self._callbacks.setdefault(session_id, []).append(callback)

    def stop(self, session_id: str) -> AgentSession | None:
        """Remove the session's workspace and fail it. Returns None if the session is unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.status in TERMINAL_SESSION_STATES:
                return copy.deepcopy(session)
            self._stop_events[session_id].set()

        self._log(session, "warning", "Stop requested; removing workspace")
        workspace = session.workspace
        if workspace is not None and workspace.id:
            try:
                self.store.close_session(workspace.id)
            except WorkspaceError as e:
                self._log(session, "error", f"Workspace cleanup failed: {e}")
        self._fail(session, STOPPED_REASON)
        self._finish(session)
        return self.get_session(session_id)

    # ── Setup helpers ────────────────────────────────────────────────────────

    def _analysis_path(self, options: ExecutionOptions) -> Path | None:
        if options.workspace_path:
            return Path(options.workspace_path)
        if options.project and self.store.project_exists(options.project):
            return self.store.primary_path(options.project)
        return None

    def _bind_workspace(
        self, session_id: str, options: ExecutionOptions, title: str, plan_task_id: str
    ) -> WorkspaceSession:
        task_id = options.task_id or plan_task_id
        if options.workspace_path:
            return self.store.bind_session(
                task_id,
                options.workspace_path,
                branch=options.branch,
                base=options.base_branch,
                project=options.project,
            )
        if not options.project:
            raise ValueError("A project or an existing workspace path is required")
        branch = options.branch or branch_name_for(title, suffix=session_id[:6])
        return self.store.open_session(task_id, options.project, branch, options.base_branch)

    def _write_plan_file(self, session: AgentSession) -> None:
        agents_dir = Path(session.workspace.path) / METADATA_DIR / "agents"
        if not agents_dir.is_dir():
            return
        (agents_dir / f"{session.id}-plan.json").write_text(json.dumps(asdict(session.plan), indent=2))

    # ── Execution ────────────────────────────────────────────────────────────

    def _stopped(self, session: AgentSession) -> bool:
        return self._stop_events[session.id].is_set()

    def _run(self, session_id: str) -> None:
        session = self._sessions[session_id]
        try:
            self._set_status(session, "executing")
            for step in session.plan.steps:
                if self._stopped(session):
                    return
                with self._lock:
                    session.current_step = step.id
                self._progress(
                    session,
                    current_step=step.id,
                    total_steps=len(session.plan.steps),
                    step_description=step.title,
                )

                ok = self._execute_step(session, step)
                if self._stopped(session):
                    return
                if not ok:
                    self._fail(session, f"Step {step.id} failed: {step.title}")
                    return

                with self._lock:
                    session.completed_steps.append(step.id)
                self._progress(
                    session,
                    completed_steps=list(session.completed_steps),
                    files_changed=self._changed_files(session),
                )
                self._checkpoint(session)

            if not session.options.skip_tests and not self._stopped(session):
                self._run_tests(session)
            if not session.options.skip_demo and not self._stopped(session):
                self._run_preview(session)
            if session.options.publish and not session.options.dry_run and not self._stopped(session):
                self._publish(session)
            if not self._stopped(session):
                self._complete(session)
        except Exception as e:
            logger.exception("Session %s crashed", session_id)
            if not self._stopped(session):
                self._fail(session, str(e))
        finally:
            self._finish(session)

    def _step_prompt(self, session: AgentSession, step: PlanStep) -> str:
        return STEP_PROMPT.format(
            title=session.plan.title,
            step_id=step.id,
            step_title=step.title,
            step_description=step.description,
            deliverable=step.deliverable,
            exit_criteria=step.exit_criteria,
            files=", ".join(step.files) or "not specified",
            allowed=", ".join(self.allowed_commands),
        )

    def _apply(self, session: AgentSession, action: StepAction) -> CommandResult:
        if action.kind == "write_file":
            try:
                target = write_file(action, session.workspace.path)
            except (OSError, ValueError) as e:
                return CommandResult(argv=["write", action.path or ""], returncode=1, stderr=str(e))
            with self._lock:
                if action.path not in session.artifacts.code_changes:
                    session.artifacts.code_changes.append(action.path)
            return CommandResult(argv=["write", str(target)], returncode=0)
        return self.store.execute_in_workspace(session.workspace.id, action.argv, self.command_timeout)

    def _execute_step(self, session: AgentSession, step: PlanStep) -> bool:
        self._log(session, "info", f"Starting step {step.id}: {step.title}", step.id)

        missing = [d for d in step.dependencies if d not in session.completed_steps]
        if missing:
            self._log(session, "warning", f"Dependencies not completed: {missing}", step.id)

        try:
            guidance = self.ai.generate(
                self._step_prompt(session, step),
                context=session.plan.description,
                provider=session.options.provider,
            )
        except Exception as e:
            logger.exception("Guidance for step %s of %s failed", step.id, session.id[:8])
            self._log(session, "warning", f"No guidance available for this step: {e}", step.id)
            guidance = ""

        actions, rejected = parse_guidance(guidance, self.allowed_commands)
        for item in rejected:
            self._log(session, "warning", f"Rejected action '{item.source}': {item.reason}", step.id)

        for action in actions:
            if self._stopped(session):
                return False
            if session.options.dry_run:
                self._log(session, "info", f"[dry run] {action.kind}: {action.describe()}", step.id)
                continue
            result = self._apply(session, action)
            if result.success:
                self._log(session, "info", f"{action.kind}: {action.describe()}", step.id)
            elif action.test_related:
                self._log(session, "warning", f"Test action failed, continuing: {action.describe()}", step.id)
            else:
                detail = (result.stderr or result.stdout).strip()[-500:]
                self._log(session, "error", f"Action failed: {action.describe()}: {detail}", step.id)
                return False

        if step.verification_command:
            verify = parse_command_line(step.verification_command, self.allowed_commands)
            if not isinstance(verify, StepAction):
                reason = verify.reason if isinstance(verify, RejectedAction) else "empty command"
                self._log(session, "error", f"Verification command rejected: {reason}", step.id)
                return False
            if session.options.dry_run:
                self._log(session, "info", f"[dry run] verify: {verify.describe()}", step.id)
            else:
                result = self._apply(session, verify)
                if not result.success:
                    detail = (result.stderr or result.stdout).strip()[-500:]
                    self._log(session, "error", f"Verification failed: {verify.describe()}: {detail}", step.id)
                    return False
                self._log(session, "info", f"Verified: {verify.describe()}", step.id)

        self._log(session, "success", f"Completed step {step.id}: {step.title}", step.id)
        return True

    def _run_tests(self, session: AgentSession) -> None:
        self._set_status(session, "testing")
        if session.options.dry_run:
            self._log(session, "info", f"[dry run] tests: {self.test_command}")
            return
        self._progress(session, tests_status="running")
        result = self.store.execute_in_workspace(
            session.workspace.id, shlex.split(self.test_command), self.test_timeout
        )
        with self._lock:
            session.artifacts.test_results.append((result.stdout + result.stderr)[-4000:])
        if result.success:
            self._progress(session, tests_status="passed")
            self._log(session, "success", "Tests passed")
        else:
            self._progress(session, tests_status="failed")
            self._log(session, "warning", f"Tests failed (exit {result.returncode}); continuing")

    def _run_preview(self, session: AgentSession) -> None:
        self._set_status(session, "demoing")
        if session.options.dry_run:
            self._log(session, "info", f"[dry run] preview: {self.preview_command}")
            return
        try:
            server = self.store.start_preview_server(
                session.workspace.id, self.preview_command, timeout=self.preview_timeout
            )
        except (WorkspaceError, OSError, ValueError) as e:
            self._progress(session, demo_status="skipped")
            self._log(session, "warning", f"Preview skipped: {e}")
            return
        try:
            self._log(session, "info", f"Preview server ready at {server.url}")
            self._progress(session, demo_status="ready")
        finally:
            server.stop()

    def _pr_description(self, session: AgentSession) -> str:
        plan = session.plan
        done = set(session.completed_steps)
        lines = ["## Goal", plan.description, "", "## Steps completed"]
        lines += [f"- [{'x' if s.id in done else ' '}] {s.id}. {s.title}" for s in plan.steps]
        if plan.success_criteria:
            lines += ["", "## Success criteria"] + [f"- {c}" for c in plan.success_criteria]
        if session.options.skip_tests:
            tests = "Tests were skipped."
        elif session.workspace.progress.tests_status == "passed":
            tests = f"`{self.test_command}` passed."
        else:
            tests = f"`{self.test_command}` did not pass; see session {session.id} logs."
        lines += ["", "## Tests", tests]
        return "\n".join(lines)

    def _publish(self, session: AgentSession) -> None:
        try:
            url = self.store.publish_changes(
                session.workspace.id, session.plan.title, self._pr_description(session)
            )
        except (WorkspaceError, GitError, GitHubError) as e:
            self._log(session, "warning", f"Publishing failed; changes remain in the workspace: {e}")
            return
        with self._lock:
            session.artifacts.pr_url = url
        self._log(session, "success", f"Pull request opened: {url}")

    # ── State ────────────────────────────────────────────────────────────────

    def _progress(self, session: AgentSession, **values) -> None:
        try:
            self.store.update_progress(session.workspace.id, **values)
        except SessionNotFoundError:
            logger.debug("Workspace session for %s already closed", session.id)

    def _changed_files(self, session: AgentSession) -> list[str]:
        """Files changed in the workspace so far, committed or not."""
        files = set(session.artifacts.code_changes)
        try:
            status = self.store.get_workspace_status(session.workspace.id)
        except (SessionNotFoundError, GitError, OSError) as e:
            logger.debug("Could not read workspace status for %s: %s", session.id[:8], e)
        else:
            files.update(status.changed_files)
            files.update(p for p in status.uncommitted if not p.endswith("/"))
        return sorted(files)

    def _set_status(self, session: AgentSession, status: str) -> None:
        with self._lock:
            session.status = status
        self._log(session, "info", f"Status: {status}")
        self._checkpoint(session)

    def _complete(self, session: AgentSession) -> None:
        with self._lock:
            if session.status in TERMINAL_SESSION_STATES:
                return
            session.status = "completed"
            session.completed_at = _now()
        self._log(session, "success", "Session completed")
        self._checkpoint(session)

    def _fail(self, session: AgentSession, reason: str) -> None:
        with self._lock:
            if session.status in TERMINAL_SESSION_STATES:
                return
            session.status = "failed"
            session.error = reason
            session.completed_at = _now()
        self._log(session, "error", reason)
        self._checkpoint(session)

    def _log(self, session: AgentSession, level: str, message: str, step: int | None = None) -> None:
        entry = AgentLog(timestamp=_now(), level=level, message=message, step=step)
        with self._lock:
            session.logs.append(entry)
        logger.log(_LOG_LEVELS[level], "[%s] %s", session.id[:8], message)

        workspace = session.workspace
        if workspace is None:
            return
        logs_dir = Path(workspace.path) / METADATA_DIR / "logs"
        if logs_dir.is_dir():
            step_tag = f" [step {step}]" if step is not None else ""
            with (logs_dir / f"session-{session.id}.log").open("a") as f:
                f.write(f"{entry.timestamp.isoformat()} {level.upper()}{step_tag} {message}\n")

    def _checkpoint(self, session: AgentSession) -> None:
        if self.db_path is None:
            return
        with self._lock:
            snapshot = copy.deepcopy(session)
            start = self._persisted_logs.get(session.id, 0)
            pending = snapshot.logs[start:]
            self._persisted_logs[session.id] = start + len(pending)
        with self._db_lock, get_db(self.db_path) as db:
            checkpoints.save_session(db, snapshot)
            checkpoints.append_logs(db, session.id, pending)

    def _finish(self, session: AgentSession) -> None:
        """Flush logs and notify listeners once the session is terminal."""
        if session.status not in TERMINAL_SESSION_STATES:
            return
        with self._lock:
            if session.id in self._finished:
                return
            self._finished.add(session.id)
        self._checkpoint(session)
        snapshot = self.get_session(session.id)

        if self.slack_token and self.slack_channel:
            try:
                slack_mod.send_message(
                    self.slack_token,
                    self.slack_channel,
                    f"Session {session.status}: {session.requirement[:80]}",
                    blocks=slack_mod.format_session_notification(
                        session.id,
                        session.requirement,
                        session.status,
                        branch=session.workspace.branch if session.workspace else None,
                        pr_url=session.artifacts.pr_url,
                        error=session.error,
                    ),
                )
            except Exception:
                logger.exception("Failed to send Slack notification for session %s", session.id)

        with self._lock:
            callbacks = self._callbacks.pop(session.id, [])
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Finish callback failed for session %s", session.id)
