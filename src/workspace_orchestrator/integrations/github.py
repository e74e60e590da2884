"""GitHub CLI (gh) wrapper for pull request creation."""

import subprocess
from pathlib import Path


class GitHubError(Exception):
    """Raised when a gh command fails."""


def create_pull_request(
    cwd: str | Path,
    title: str,
    body: str,
    head: str,
    base: str = "main",
    timeout: float = 120.0,
) -> str:
    """Open a pull request for head against base. Returns the PR URL."""
    cmd = ["gh", "pr", "create", "--title", title, "--body", body, "--head", head, "--base", base]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise GitHubError("gh CLI not found on PATH") from e
    except subprocess.CalledProcessError as e:
        raise GitHubError(f"gh pr create failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitHubError(f"gh pr create timed out after {timeout}s") from e

    # gh prints progress lines before the URL
    lines = [line for line in result.stdout.strip().split("\n") if line]
    return lines[-1] if lines else ""
