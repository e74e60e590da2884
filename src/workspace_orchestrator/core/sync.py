"""Background reconciliation of branch workspaces with their upstream branches."""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from workspace_orchestrator.core.workspaces import METADATA_DIR, WorkspaceError, WorkspaceStore
from workspace_orchestrator.db.models import ConflictResolutionResult, SyncStatus
from workspace_orchestrator.integrations import git
from workspace_orchestrator.integrations import slack as slack_mod
from workspace_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

STRATEGIES = ("accept-ours", "accept-theirs", "auto-merge", "manual-review")
NEW_BRANCH_MESSAGE = "New branch, needs to be published"

DOCUMENT_SUFFIXES = (".md", ".markdown", ".txt", ".rst", ".adoc")
STRUCTURED_SUFFIXES = (".json", ".yaml", ".yml", ".toml", ".lock", ".xml", ".ini", ".cfg", ".csv")

LOCAL_HEADING = "## Local Changes"
INCOMING_HEADING = "## Incoming Changes"


def classify_sync(ahead: int, behind: int, conflict_count: int) -> tuple[str, str, bool]:
    """Return (status, message, needs_attention). Conflicts outrank everything else."""
    if conflict_count > 0:
        return "conflict", f"{conflict_count} files have conflicts", True
    if ahead > 0 and behind > 0:
        return "diverged", f"{ahead} commits ahead, {behind} behind", True
    if ahead > 0:
        return "ahead", f"{ahead} commits to push", False
    if behind > 0:
        return "behind", f"{behind} commits to pull", False
    return "synced", "Up to date", False


def _render_conflict(ours: list[str], theirs: list[str]) -> str:
    local = "".join(ours)
    incoming = "".join(theirs)
    if local.strip() and incoming.strip() and local.strip() != incoming.strip():
        return (
            f"{LOCAL_HEADING}\n\n{local.strip()}\n\n"
            f"{INCOMING_HEADING}\n\n{incoming.strip()}\n"
        )
    return local if local.strip() else incoming


def merge_document_conflict(text: str) -> str:
    """Replace conflict blocks in a prose document, keeping both sides when both changed.

    Understands diff3-style base sections, which are dropped.
    """
    out: list[str] = []
    ours: list[str] = []
    theirs: list[str] = []
    state = "normal"

    for line in text.splitlines(keepends=True):
        if state == "normal":
            if line.startswith("<<<<<<<"):
                ours, theirs = [], []
                state = "ours"
            else:
                out.append(line)
        elif state in ("ours", "base"):
            if line.startswith("|||||||") and state == "ours":
                state = "base"
            elif line.startswith("======="):
                state = "theirs"
            elif state == "ours":
                ours.append(line)
        elif state == "theirs":
            if line.startswith(">>>>>>>"):
                out.append(_render_conflict(ours, theirs))
                state = "normal"
            else:
                theirs.append(line)

    if state != "normal":
        # Unterminated block: keep the local side rather than guess
        out.extend(ours)
    return "".join(out)


def is_structured_record(path: str, content: str | None = None) -> bool:
    """True for machine-parsed files that must never get the prose merge."""
    pure = PurePosixPath(path)
    if pure.suffix.lower() in STRUCTURED_SUFFIXES:
        return True
    if pure.parts and pure.parts[0] == METADATA_DIR:
        return True
    if content is not None:
        for line in content.splitlines():
            if line.startswith(("<<<<<<<", "|||||||", "=======", ">>>>>>>")):
                continue
            return line.strip() == "---"
    return False


def is_document(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in DOCUMENT_SUFFIXES


class BackgroundReconciler:
    """Periodically fetches every workspace, classifies it and fast-forwards clean ones."""

    def __init__(
        self,
        store: WorkspaceStore,
        interval: float = 300.0,
        enabled: bool = True,
        slack_token: str | None = None,
        slack_channel: str | None = None,
    ):
        self.store = store
        self.interval = interval
        self.enabled = enabled
        self.slack_token = slack_token
        self.slack_channel = slack_channel
        self._statuses: dict[str, list[SyncStatus]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Thread lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Start the sync thread. The first cycle runs immediately."""
        if not self.enabled:
            logger.info("Background sync disabled")
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="workspace-sync", daemon=True)
        self._thread.start()
        logger.info("Background sync started (every %ss)", self.interval)

    def stop(self):
        """Signal the sync thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("Background sync stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.perform_sync_cycle()
            except Exception:
                logger.exception("Error in background sync loop")
            self._stop_event.wait(self.interval)

    # ── Status ───────────────────────────────────────────────────────────────

    def check_workspace(
        self, project: str, branch: str, path: str | Path | None = None, fetch: bool = True
    ) -> SyncStatus:
        """Compute the sync status of one workspace without changing it."""
        path = Path(path) if path else self.store.workspace_path(project, branch)
        remote = self.store.remote
        timeout = self.store.git_timeout

        remote_known = git.has_remote(path, remote, timeout=timeout)
        if remote_known and fetch:
            git.fetch(path, remote, timeout=timeout)
        conflicts = git.unmerged_files(path, timeout=timeout)

        upstream = f"{remote}/{branch}"
        if not remote_known or not git.ref_exists(path, upstream, timeout=timeout):
            if conflicts:
                status, message, attention = classify_sync(0, 0, len(conflicts))
            else:
                status, message, attention = "ahead", NEW_BRANCH_MESSAGE, False
            return SyncStatus(
                project=project,
                branch=branch,
                status=status,
                message=message,
                ahead=self.store.unpublished_commits(path, branch),
                conflict_files=conflicts,
                needs_attention=attention,
                path=str(path),
                last_checked=datetime.now(timezone.utc),
            )

        ahead = git.rev_list_count(path, f"{upstream}..HEAD", timeout=timeout)
        behind = git.rev_list_count(path, f"HEAD..{upstream}", timeout=timeout)
        status, message, attention = classify_sync(ahead, behind, len(conflicts))
        return SyncStatus(
            project=project,
            branch=branch,
            status=status,
            message=message,
            ahead=ahead,
            behind=behind,
            conflict_files=conflicts,
            needs_attention=attention,
            path=str(path),
            last_checked=datetime.now(timezone.utc),
        )

    def _error_status(self, project: str, branch: str, message: str, path=None, error=None) -> SyncStatus:
        return SyncStatus(
            project=project,
            branch=branch,
            status="error",
            message=message,
            path=str(path) if path else None,
            last_checked=datetime.now(timezone.utc),
            error=error,
        )

    def _fast_forward_sources(self, branch: str) -> list[str]:
        """The integration branch first, then the branch's own upstream."""
        sources = [f"{self.store.remote}/{self.store.main_branch}"]
        own = f"{self.store.remote}/{branch}"
        if own not in sources:
            sources.append(own)
        return sources

    def sync_workspace(self, project: str, branch: str, path: str | Path | None = None) -> SyncStatus:
        """Check one workspace and fast-forward it when it is behind and clean."""
        path = Path(path) if path else self.store.workspace_path(project, branch)
        if not path.exists():
            return self._error_status(project, branch, "Workspace path does not exist", path)
        timeout = self.store.git_timeout
        try:
            status = self.check_workspace(project, branch, path)
            if status.status != "behind":
                return status
            if not git.is_clean(path, timeout=timeout):
                logger.info("Skipping fast-forward of %s/%s: local modifications", project, branch)
                return status
            behind = status.behind
            for source in self._fast_forward_sources(branch):
                try:
                    git.merge_ff_only(path, source, timeout=timeout)
                except GitError as e:
                    logger.warning("Fast-forward of %s/%s from %s failed: %s", project, branch, source, e)
                    continue
                status = self.check_workspace(project, branch, path, fetch=False)
                if status.status != "behind":
                    logger.info("Fast-forwarded %s/%s from %s (%d behind)", project, branch, source, behind)
                    break
            return status
        except (GitError, OSError) as e:
            logger.warning("Sync check failed for %s/%s: %s", project, branch, e)
            return self._error_status(project, branch, "Sync check failed", path, str(e))

    def sync_project(self, project: str) -> list[SyncStatus]:
        try:
            workspaces = self.store.list_workspaces(project)
        except (WorkspaceError, GitError, OSError) as e:
            logger.warning("Could not list workspaces for %s: %s", project, e)
            results = [self._error_status(project, "", "Could not list workspaces", error=str(e))]
        else:
            results = [
                self.sync_workspace(project, ws.branch, ws.path)
                for ws in workspaces
                if ws.branch and ws.status != "prunable"
            ]
        with self._lock:
            self._statuses[project] = results
        return results

    def perform_sync_cycle(self) -> list[SyncStatus]:
        """Sync every workspace of every known project."""
        results: list[SyncStatus] = []
        for project in self.store.list_projects():
            results.extend(self.sync_project(project))

        attention = [s for s in results if s.needs_attention or s.status == "conflict"]
        logger.info("Sync cycle: %d workspaces, %d need attention", len(results), len(attention))
        if attention and self.slack_token and self.slack_channel:
            try:
                slack_mod.send_message(
                    self.slack_token,
                    self.slack_channel,
                    f"{len(attention)} workspaces need attention",
                    blocks=slack_mod.format_sync_attention(
                        [{"project": s.project, "branch": s.branch, "status": s.status, "message": s.message}
                         for s in attention]
                    ),
                )
            except Exception:
                logger.exception("Failed to send sync attention to Slack")
        return results

    def get_sync_status(self, project: str, refresh: bool = False) -> list[SyncStatus]:
        """Statuses from the last cycle, computing them now if the project was never synced."""
        with self._lock:
            cached = self._statuses.get(project)
        if cached is None or refresh:
            return self.sync_project(project)
        return list(cached)

    def get_projects_needing_attention(self) -> list[SyncStatus]:
        return [s for s in self.perform_sync_cycle() if s.needs_attention or s.status == "conflict"]

    # ── Conflict resolution ──────────────────────────────────────────────────

    def _auto_merge_file(self, path: Path, filename: str) -> None:
        timeout = self.store.git_timeout
        target = path / filename
        try:
            content = target.read_text()
        except (OSError, UnicodeDecodeError):
            content = None

        if content is not None and is_document(filename) and not is_structured_record(filename, content):
            target.write_text(merge_document_conflict(content))
            logger.info("Merged both sides of %s", filename)
        else:
            git.checkout_side(path, filename, "ours", timeout=timeout)
            logger.info("Kept local side of %s", filename)
        git.add(path, [filename], timeout=timeout)

    def resolve_conflicts(self, project: str, branch: str, strategy: str) -> ConflictResolutionResult:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy '{strategy}'. Must be one of: {', '.join(STRATEGIES)}")
        path = self.store.workspace_path(project, branch)
        if not path.exists():
            raise WorkspaceError(f"No workspace for branch '{branch}'", project=project, branch=branch, path=path)
        timeout = self.store.git_timeout

        conflicts = git.unmerged_files(path, timeout=timeout)
        if not conflicts:
            return ConflictResolutionResult(success=True, message="No conflicts to resolve")
        if strategy == "manual-review":
            return ConflictResolutionResult(
                success=False,
                message=f"{len(conflicts)} files need manual review",
                remaining_conflicts=conflicts,
            )

        resolved = []
        for filename in conflicts:
            try:
                if strategy == "auto-merge":
                    self._auto_merge_file(path, filename)
                else:
                    side = "ours" if strategy == "accept-ours" else "theirs"
                    git.checkout_side(path, filename, side, timeout=timeout)
                    git.add(path, [filename], timeout=timeout)
                resolved.append(filename)
            except (GitError, OSError) as e:
                logger.warning("Could not resolve %s with %s: %s", filename, strategy, e)

        remaining = git.unmerged_files(path, timeout=timeout)
        if remaining:
            return ConflictResolutionResult(
                success=False,
                message=f"{len(remaining)} files still need attention",
                resolved_files=resolved,
                remaining_conflicts=remaining,
            )

        try:
            git.commit_merge(path, timeout=timeout)
        except GitError as e:
            return ConflictResolutionResult(
                success=False,
                message=f"Conflicts resolved but the merge commit failed: {e}",
                resolved_files=resolved,
            )
        logger.info("Resolved %d conflicts in %s/%s with %s", len(resolved), project, branch, strategy)
        return ConflictResolutionResult(
            success=True,
            message=f"Resolved {len(resolved)} files",
            resolved_files=resolved,
        )
