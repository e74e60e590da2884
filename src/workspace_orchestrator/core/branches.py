"""Branch name normalization and validation.

Everything here is pure: no git calls and no filesystem access. Workspace
creation runs every branch name through validate_branch_name() first.
"""

import re

from workspace_orchestrator.db.models import BranchValidation

MAIN_BRANCH = "main"
MAX_LENGTH = 50
MAX_SEGMENTS = 5

WORK_PREFIXES = ("feat", "fix", "refactor", "docs", "test", "chore")
CATEGORY_PREFIXES = ("frontend", "backend", "api", "database", "infra", "design", "security", "mobile")
ALLOWED_PREFIXES = WORK_PREFIXES + CATEGORY_PREFIXES

# Checked in order; the first matching group wins.
_PREFIX_HINTS = (
    ("fix", ("bug", "bugs", "error", "errors", "crash", "broken", "fix", "fixes", "issue", "hotfix")),
    ("docs", ("doc", "docs", "documentation", "readme", "guide")),
    ("test", ("test", "tests", "spec", "specs", "coverage")),
    ("refactor", ("refactor", "cleanup", "restructure", "rename", "simplify")),
    ("chore", ("chore", "bump", "upgrade", "deps", "dependencies", "ci")),
)

_TYPE_PREFIXES = {
    "bug": "fix",
    "feature": "feat",
    "story": "feat",
    "epic": "feat",
    "task": "chore",
    "subtask": "chore",
}


def normalize_branch_name(name: str) -> str:
    """Lowercase, hyphenate whitespace/underscores, drop other characters, collapse hyphens."""
    slug = name.lower()
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def _matching_prefix(name: str) -> str | None:
    if name == MAIN_BRANCH:
        return MAIN_BRANCH
    for prefix in ALLOWED_PREFIXES:
        if name.startswith(f"{prefix}-"):
            return prefix
    return None


def infer_prefix(words: list[str]) -> str:
    """Guess a work prefix from the words of a title."""
    for prefix, hints in _PREFIX_HINTS:
        if any(w in hints for w in words):
            return prefix
    return "feat"


def prefix_for_type(item_type: str) -> str:
    return _TYPE_PREFIXES.get(item_type, "feat")


def _compose(prefix: str, words: list[str], suffix: str | None = None) -> str:
    """Join prefix, words and suffix, dropping trailing words until the limits hold."""
    tail = [suffix] if suffix else []
    words = words[:max(MAX_SEGMENTS - 1 - len(tail), 0)]
    while words and len("-".join([prefix] + words + tail)) > MAX_LENGTH:
        words = words[:-1]
    if not words and not tail:
        words = ["work"]
    return "-".join([prefix] + words + tail)[:MAX_LENGTH].rstrip("-")


def _suggestions(normalized: str, prefix: str | None) -> list[str]:
    words = [w for w in normalized.split("-") if w]
    if not words:
        return []
    suggestions = []
    if prefix is None:
        inferred = infer_prefix(words)
        suggestions.append(_compose(inferred, words))
        if inferred != "feat":
            suggestions.append(_compose("feat", words))
    else:
        rest = words[1:] if words[0] == prefix else words
        shorter = _compose(prefix, rest)
        if shorter != normalized:
            suggestions.append(shorter)
    return [s for s in dict.fromkeys(suggestions) if s and s != normalized]


def validate_branch_name(name: str) -> BranchValidation:
    """Normalize name and check it against the prefix, length and segment rules."""
    normalized = normalize_branch_name(name)
    errors = []

    if not normalized:
        return BranchValidation(
            name=name,
            normalized_name=normalized,
            valid=False,
            errors=["Branch name cannot be empty"],
        )

    prefix = _matching_prefix(normalized)
    if prefix is None:
        errors.append(
            "Branch name must be 'main' or start with one of: "
            + ", ".join(f"{p}-" for p in ALLOWED_PREFIXES)
        )

    if len(normalized) > MAX_LENGTH:
        errors.append(f"Branch name must be at most {MAX_LENGTH} characters (got {len(normalized)})")

    segments = normalized.split("-")
    if len(segments) > MAX_SEGMENTS:
        errors.append(
            f"Branch name must have at most {MAX_SEGMENTS} hyphen-separated parts (got {len(segments)})"
        )

    return BranchValidation(
        name=name,
        normalized_name=normalized,
        valid=not errors,
        prefix=prefix,
        errors=errors,
        suggestions=_suggestions(normalized, prefix) if errors else [],
    )


def branch_name_for(title: str, prefix: str | None = None, suffix: str | None = None) -> str:
    """Build a valid branch name from a free-text title."""
    words = [w for w in normalize_branch_name(title).split("-") if w]
    if prefix is None:
        prefix = infer_prefix(words)
    prefix = normalize_branch_name(prefix)
    if prefix not in ALLOWED_PREFIXES:
        raise ValueError(f"Unknown branch prefix: {prefix}")
    if words and words[0] == prefix:
        words = words[1:]
    suffix = normalize_branch_name(suffix).replace("-", "") if suffix else None
    return _compose(prefix, words, suffix or None)
