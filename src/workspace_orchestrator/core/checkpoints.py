"""SQLite checkpoints for agent sessions and their audit logs."""

import json
import sqlite3
from dataclasses import asdict
from datetime import datetime, timezone

from workspace_orchestrator.db.models import (
    AgentArtifacts,
    AgentLog,
    AgentSession,
    PlanStep,
    TaskPlan,
    WorkspaceSession,
)

INTERRUPTED_REASON = "Interrupted by process restart"


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _fmt_dt(val: datetime | None) -> str | None:
    return val.isoformat() if val is not None else None


def _plan_from_json(raw: str | None) -> TaskPlan | None:
    if not raw:
        return None
    data = json.loads(raw)
    data["steps"] = [PlanStep(**step) for step in data.get("steps", [])]
    return TaskPlan(**data)


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    plan = _plan_from_json(row["plan_json"])
    workspace = None
    if row["workspace_path"]:
        workspace = WorkspaceSession(
            id="",
            task_id=plan.task_id if plan else "",
            project=row["project"],
            branch=row["branch"] or "",
            base_branch="",
            path=row["workspace_path"],
            status="inactive",
            owned=False,
        )
    artifacts = AgentArtifacts(**json.loads(row["artifacts_json"])) if row["artifacts_json"] else AgentArtifacts()
    return AgentSession(
        id=row["id"],
        requirement=row["requirement"],
        status=row["status"],
        plan=plan,
        workspace=workspace,
        current_step=row["current_step"],
        completed_steps=json.loads(row["completed_steps"] or "[]"),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        error=row["error"],
        artifacts=artifacts,
    )


def _row_to_log(row: sqlite3.Row) -> AgentLog:
    return AgentLog(
        timestamp=_parse_dt(row["created_at"]),
        level=row["level"],
        message=row["message"],
        step=row["step"],
    )


def save_session(db: sqlite3.Connection, session: AgentSession) -> None:
    """Insert or update the checkpoint row for a session."""
    workspace = session.workspace
    db.execute(
        """INSERT INTO agent_sessions
           (id, requirement, status, project, branch, workspace_path, current_step,
            completed_steps, plan_json, artifacts_json, error, started_at, completed_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
           ON CONFLICT(id) DO UPDATE SET
             status = excluded.status,
             project = excluded.project,
             branch = excluded.branch,
             workspace_path = excluded.workspace_path,
             current_step = excluded.current_step,
             completed_steps = excluded.completed_steps,
             plan_json = excluded.plan_json,
             artifacts_json = excluded.artifacts_json,
             error = excluded.error,
             completed_at = excluded.completed_at,
             updated_at = datetime('now')""",
        (
            session.id,
            session.requirement,
            session.status,
            workspace.project if workspace else session.options.project,
            workspace.branch if workspace else session.options.branch,
            workspace.path if workspace else None,
            session.current_step,
            json.dumps(session.completed_steps),
            json.dumps(asdict(session.plan)) if session.plan else None,
            json.dumps(asdict(session.artifacts)),
            session.error,
            _fmt_dt(session.started_at),
            _fmt_dt(session.completed_at),
        ),
    )
    db.commit()


def append_logs(db: sqlite3.Connection, session_id: str, logs: list[AgentLog]) -> None:
    if not logs:
        return
    db.executemany(
        "INSERT INTO agent_logs (session_id, level, message, step, created_at) VALUES (?, ?, ?, ?, ?)",
        [(session_id, log.level, log.message, log.step, _fmt_dt(log.timestamp)) for log in logs],
    )
    db.commit()


def mark_interrupted(db: sqlite3.Connection) -> list[str]:
    """Fail every session a previous process left in a non-terminal state."""
    rows = db.execute(
        "SELECT id, current_step FROM agent_sessions WHERE status NOT IN ('completed', 'failed')"
    ).fetchall()
    now = datetime.now(timezone.utc).isoformat()
    for row in rows:
        db.execute(
            """UPDATE agent_sessions
               SET status = 'failed', error = ?, completed_at = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (INTERRUPTED_REASON, now, row["id"]),
        )
        db.execute(
            "INSERT INTO agent_logs (session_id, level, message, step, created_at) VALUES (?, 'error', ?, ?, ?)",
            (row["id"], INTERRUPTED_REASON, row["current_step"], now),
        )
    db.commit()
    return [row["id"] for row in rows]


def get_session_record(db: sqlite3.Connection, session_id: str) -> AgentSession | None:
    """Load a checkpointed session together with its full log."""
    row = db.execute("SELECT * FROM agent_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    session = _row_to_session(row)
    session.logs = get_logs(db, session_id)
    return session


def get_logs(db: sqlite3.Connection, session_id: str) -> list[AgentLog]:
    rows = db.execute(
        "SELECT * FROM agent_logs WHERE session_id = ? ORDER BY id", (session_id,)
    ).fetchall()
    return [_row_to_log(r) for r in rows]


def list_session_records(db: sqlite3.Connection, limit: int = 50) -> list[AgentSession]:
    rows = db.execute(
        "SELECT * FROM agent_sessions ORDER BY started_at DESC LIMIT ?", (limit,)
    ).fetchall()
    return [_row_to_session(r) for r in rows]
