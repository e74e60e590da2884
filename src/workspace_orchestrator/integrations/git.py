"""Git subprocess wrappers for workspace, branch and sync operations."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class GitError(Exception):
    """Raised when a git command fails or times out."""

    def __init__(
        self,
        message: str,
        args: list[str] | None = None,
        cwd: str | Path | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.git_args = args or []
        self.cwd = str(cwd) if cwd is not None else None
        self.stderr = stderr
        self.timed_out = timed_out


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    locked: bool = False
    prunable: bool = False


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    strip: bool = True,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure or timeout."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(
            f"git {' '.join(args)} failed: {e.stderr.strip()}",
            args=args,
            cwd=cwd,
            stderr=e.stderr,
        ) from e
    except subprocess.TimeoutExpired as e:
        raise GitError(
            f"git {' '.join(args)} timed out after {timeout}s",
            args=args,
            cwd=cwd,
            timed_out=True,
        ) from e
    return result.stdout.strip() if strip else result.stdout


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_ref: str = "main",
    create_branch: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Create a new git worktree, optionally creating its branch from base_ref."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base_ref]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path, timeout=timeout)


def _worktree_from_record(record: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=record.get("worktree", ""),
        branch=record.get("branch", "").replace("refs/heads/", ""),
        head=record.get("HEAD", ""),
        is_bare=record.get("bare", False),
        locked=record.get("locked", False),
        prunable=record.get("prunable", False),
    )


def worktree_list(repo_path: str | Path, timeout: float = DEFAULT_TIMEOUT) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path, timeout=timeout)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_worktree_from_record(current))
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
        elif line.startswith("locked"):
            current["locked"] = True
        elif line.startswith("prunable"):
            current["prunable"] = True

    if current:
        worktrees.append(_worktree_from_record(current))

    return worktrees


def worktree_remove(
    repo_path: str | Path,
    worktree_path: str | Path,
    force: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path, timeout=timeout)


def worktree_prune(repo_path: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Drop worktree records whose directories no longer exist."""
    return run_git(["worktree", "prune"], cwd=repo_path, timeout=timeout)


# ── Branches and refs ────────────────────────────────────────────────────────


def ref_exists(cwd: str | Path, ref: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Check whether a ref resolves to a commit."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=cwd, timeout=timeout)
        return True
    except GitError:
        return False


def branch_exists(repo_path: str | Path, branch: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Check if a local branch exists."""
    return ref_exists(repo_path, f"refs/heads/{branch}", timeout=timeout)


def remote_branch_exists(
    repo_path: str | Path,
    branch: str,
    remote: str = "origin",
    timeout: float = DEFAULT_TIMEOUT,
) -> bool:
    """Check if a remote-tracking branch exists."""
    return ref_exists(repo_path, f"refs/remotes/{remote}/{branch}", timeout=timeout)


def list_local_branches(repo_path: str | Path, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    output = run_git(
        ["for-each-ref", "--format=%(refname:short)", "refs/heads"], cwd=repo_path, timeout=timeout
    )
    return [line for line in output.split("\n") if line]


def list_remote_branches(
    repo_path: str | Path, remote: str = "origin", timeout: float = DEFAULT_TIMEOUT
) -> list[str]:
    """List remote-tracking branch names without the remote prefix."""
    output = run_git(
        ["for-each-ref", "--format=%(refname)", f"refs/remotes/{remote}"], cwd=repo_path, timeout=timeout
    )
    prefix = f"refs/remotes/{remote}/"
    return [
        line[len(prefix):]
        for line in output.split("\n")
        if line.startswith(prefix) and line != f"{prefix}HEAD"
    ]


def delete_branch(
    repo_path: str | Path, branch: str, force: bool = False, timeout: float = DEFAULT_TIMEOUT
) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path, timeout=timeout)


def get_current_branch(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd, timeout=timeout)


def get_head(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd, timeout=timeout)


def rev_list_count(cwd: str | Path, revision_range: str, timeout: float = DEFAULT_TIMEOUT) -> int:
    """Count commits in a revision range such as 'origin/main..HEAD'."""
    output = run_git(["rev-list", "--count", revision_range], cwd=cwd, timeout=timeout)
    return int(output or 0)


def git_common_dir(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> Path:
    """Return the repository directory shared by all worktrees."""
    output = run_git(["rev-parse", "--git-common-dir"], cwd=cwd, timeout=timeout)
    path = Path(output)
    if not path.is_absolute():
        path = Path(cwd) / path
    return path.resolve()


def add_exclude_pattern(cwd: str | Path, pattern: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Append a pattern to the shared info/exclude file. Returns True if it was added."""
    exclude = git_common_dir(cwd, timeout=timeout) / "info" / "exclude"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    text = exclude.read_text() if exclude.exists() else ""
    if pattern in text.splitlines():
        return False
    with exclude.open("a") as f:
        if text and not text.endswith("\n"):
            f.write("\n")
        f.write(f"{pattern}\n")
    return True


# ── Working tree ─────────────────────────────────────────────────────────────


def get_status(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Get git status of a working directory in porcelain format."""
    return run_git(["status", "--porcelain"], cwd=cwd, timeout=timeout, strip=False)


def changed_paths(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    """Paths with uncommitted changes, including untracked files."""
    paths = []
    for line in get_status(cwd, timeout=timeout).splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def is_clean(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> bool:
    return not get_status(cwd, timeout=timeout).strip()


def diff_names(cwd: str | Path, base_ref: str, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    """Files changed on HEAD since it diverged from base_ref."""
    output = run_git(["diff", "--name-only", f"{base_ref}...HEAD"], cwd=cwd, timeout=timeout)
    return [line for line in output.split("\n") if line]


def unmerged_files(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    """Files with unresolved merge conflicts."""
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd, timeout=timeout)
    return [line for line in output.split("\n") if line]


def checkout_side(cwd: str | Path, path: str, side: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Resolve a conflicted path by taking one side ('ours' or 'theirs')."""
    if side not in ("ours", "theirs"):
        raise ValueError(f"Unknown conflict side: {side}")
    return run_git(["checkout", f"--{side}", "--", path], cwd=cwd, timeout=timeout)


def add(cwd: str | Path, paths: list[str], timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["add", "--"] + paths, cwd=cwd, timeout=timeout)


def add_all(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["add", "-A"], cwd=cwd, timeout=timeout)


def has_staged_changes(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> bool:
    try:
        run_git(["diff", "--cached", "--quiet"], cwd=cwd, timeout=timeout)
        return False
    except GitError as e:
        if e.timed_out:
            raise
        return True


def commit(cwd: str | Path, message: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["commit", "-m", message], cwd=cwd, timeout=timeout)


def commit_merge(cwd: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Conclude an in-progress merge with its prepared message."""
    return run_git(["commit", "--no-edit"], cwd=cwd, timeout=timeout)


# ── Remotes ──────────────────────────────────────────────────────────────────


def has_remote(cwd: str | Path, remote: str = "origin", timeout: float = DEFAULT_TIMEOUT) -> bool:
    output = run_git(["remote"], cwd=cwd, timeout=timeout)
    return remote in output.split("\n")


def fetch(cwd: str | Path, remote: str = "origin", timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["fetch", remote], cwd=cwd, timeout=timeout)


def merge_ff_only(cwd: str | Path, ref: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    return run_git(["merge", "--ff-only", ref], cwd=cwd, timeout=timeout)


def push(
    cwd: str | Path,
    branch: str,
    remote: str = "origin",
    set_upstream: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    args = ["push"]
    if set_upstream:
        args.append("-u")
    args += [remote, branch]
    return run_git(args, cwd=cwd, timeout=timeout)


def clone(url: str, dest: str | Path, timeout: float = DEFAULT_TIMEOUT) -> str:
    logger.info("Cloning %s into %s", url, dest)
    return run_git(["clone", url, str(dest)], timeout=timeout)
