"""Shared fixtures: throwaway git repositories with a bare origin."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from workspace_orchestrator.core.workspaces import WorkspaceStore
from workspace_orchestrator.integrations.ai import AIProviderError

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(cwd, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo, name: str, content: str, message: str | None = None) -> None:
    path = Path(repo) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message or f"Update {name}")


@pytest.fixture(autouse=True)
def git_identity():
    """Commits made by tests and by the code under test need an author."""
    old_env = {}
    for k, v in GIT_IDENTITY.items():
        old_env[k] = os.environ.get(k)
        os.environ[k] = v
    yield
    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def origin(tmp_dir):
    """A bare origin with one commit on main."""
    bare = tmp_dir / "origin.git"
    git(tmp_dir, "init", "--bare", str(bare))
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_dir / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "checkout", "-b", "main")
    commit_file(seed, "README.md", "# Demo\n", "init")
    git(seed, "remote", "add", "origin", str(bare))
    git(seed, "push", "origin", "main")
    return bare


@pytest.fixture
def store(tmp_dir, origin):
    """A workspace store with one cloned project called 'demo'."""
    ws = WorkspaceStore(tmp_dir / "repos", git_timeout=30)
    ws.initialize()
    ws.clone_project(str(origin), "demo")
    return ws


@pytest.fixture
def upstream(tmp_dir, origin):
    """A second clone standing in for another developer pushing to origin."""
    other = tmp_dir / "other"
    git(tmp_dir, "clone", str(origin), str(other))
    return other


class FakeAI:
    """Stands in for the AI collaborator.

    `reply` is either a string returned for every prompt or a callable taking
    the prompt. With `fail=True` every call raises AIProviderError.
    """

    def __init__(self, reply="", fail=False):
        self.reply = reply
        self.fail = fail
        self.prompts: list[str] = []

    def generate(self, prompt, context="", provider=None):
        self.prompts.append(prompt)
        if self.fail:
            raise AIProviderError("collaborator unavailable")
        return self.reply(prompt) if callable(self.reply) else self.reply
