"""Closed vocabulary of step actions parsed out of AI guidance text.

Guidance is untrusted. Only four kinds of action are ever produced:

- install: a package-manager install of named dependencies
- run_script: a project script, make target or test runner
- write_file: a fenced block tagged ``file:<relative path>``
- command: any other single command whose executable is allow-listed

Lines using shell control syntax, executables outside the allow-list and
file paths escaping the workspace are rejected and never executed.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

SHELL_BLOCK_TAGS = ("", "bash", "sh", "shell", "console", "zsh")
SAFE_GIT_SUBCOMMANDS = ("add", "status", "diff", "log", "show", "mv", "rm")

_FENCE_RE = re.compile(r"```([^\n`]*)\n(.*?)```", re.DOTALL)
_CONTROL_RE = re.compile(r"[|;&<>`]|\$\(")
_NODE_MANAGERS = ("npm", "pnpm", "yarn")


@dataclass
class StepAction:
    kind: str
    argv: list[str] = field(default_factory=list)
    path: str | None = None
    content: str | None = None
    source: str = ""

    @property
    def test_related(self) -> bool:
        return is_test_related(self.argv or [self.path or ""])

    def describe(self) -> str:
        if self.kind == "write_file":
            return f"write {self.path}"
        return shlex.join(self.argv)


@dataclass
class RejectedAction:
    source: str
    reason: str


def is_test_related(argv: list[str]) -> bool:
    return any("test" in token.lower() for token in argv)


def _classify(argv: list[str]) -> str:
    exe, args = argv[0], argv[1:]
    verb = args[0] if args else ""
    if exe in _NODE_MANAGERS and verb in ("install", "i", "add", "ci"):
        return "install"
    if exe in ("pip", "pip3") and verb == "install":
        return "install"
    if exe in ("uv", "poetry") and verb in ("add", "install", "sync"):
        return "install"
    if exe in _NODE_MANAGERS and verb in ("run", "test", "t"):
        return "run_script"
    if exe in ("make", "pytest"):
        return "run_script"
    if exe in ("python", "python3") and args[:2] == ["-m", "pytest"]:
        return "run_script"
    return "command"


def parse_command_line(line: str, allowed: tuple[str, ...] | list[str]) -> StepAction | RejectedAction | None:
    """Turn one shell line into an action, a rejection, or None for lines that are skipped."""
    text = line.strip()
    if text.startswith("$ "):
        text = text[2:].strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith(("echo ", "printf ")) or text in ("echo", "printf"):
        return None

    if _CONTROL_RE.search(text):
        return RejectedAction(text, "shell control syntax is not allowed")
    try:
        argv = shlex.split(text)
    except ValueError as e:
        return RejectedAction(text, f"could not tokenize: {e}")
    if not argv:
        return None

    exe = argv[0]
    if "=" in exe:
        return RejectedAction(text, "environment assignments are not allowed")
    if "/" in exe:
        return RejectedAction(text, "executables must be bare command names")
    if exe not in allowed:
        return RejectedAction(text, f"'{exe}' is not in the allowed command list")
    if exe == "git" and (len(argv) < 2 or argv[1] not in SAFE_GIT_SUBCOMMANDS):
        return RejectedAction(text, "only read-only and staging git subcommands are allowed")

    return StepAction(kind=_classify(argv), argv=argv, source=text)


def _check_relative_path(path: str) -> str | None:
    """Return a reason the path is unsafe, or None."""
    if not path:
        return "file block has no path"
    candidate = Path(path)
    if candidate.is_absolute():
        return "absolute paths are not allowed"
    if ".." in candidate.parts:
        return "paths may not leave the workspace"
    if candidate.parts and candidate.parts[0] in (".git", ".wso"):
        return "repository metadata may not be written"
    return None


def parse_guidance(
    text: str, allowed: tuple[str, ...] | list[str]
) -> tuple[list[StepAction], list[RejectedAction]]:
    """Extract actions from fenced blocks in guidance text, in order of appearance."""
    actions: list[StepAction] = []
    rejected: list[RejectedAction] = []

    for match in _FENCE_RE.finditer(text):
        info = match.group(1).strip()
        body = match.group(2)

        if info.lower().startswith("file:"):
            path = info[len("file:"):].strip()
            reason = _check_relative_path(path)
            if reason:
                rejected.append(RejectedAction(f"file:{path}", reason))
            else:
                actions.append(StepAction(kind="write_file", path=path, content=body, source=f"file:{path}"))
            continue

        if info.lower() not in SHELL_BLOCK_TAGS:
            continue

        for line in body.splitlines():
            result = parse_command_line(line, allowed)
            if isinstance(result, StepAction):
                actions.append(result)
            elif isinstance(result, RejectedAction):
                rejected.append(result)

    return actions, rejected


def write_file(action: StepAction, workspace: str | Path) -> Path:
    """Apply a write_file action inside workspace. Raises ValueError if the target escapes it."""
    root = Path(workspace).resolve()
    target = (root / action.path).resolve()
    if not target.is_relative_to(root):
        raise ValueError(f"Refusing to write outside the workspace: {action.path}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(action.content or "")
    logger.debug("Wrote %s (%d bytes)", target, len(action.content or ""))
    return target
