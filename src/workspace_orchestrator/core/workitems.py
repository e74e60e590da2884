"""Hierarchical work items stored as one markdown file per item.

Each file starts with a YAML front-matter header holding the structured
fields, followed by a markdown body. Only the text under the Description
heading is read back; the other body sections are regenerated on every save.
"""

import logging
import re
import time
import uuid
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path

import yaml

from workspace_orchestrator.db.models import SmartCategory, WorkItem

logger = logging.getLogger(__name__)

ITEM_TYPES = ("epic", "feature", "story", "task", "subtask", "bug")
ITEM_STATUSES = ("pending", "planned", "in-progress", "in-review", "done", "deferred")
PRIORITIES = ("low", "medium", "high", "urgent", "critical")
FUNCTIONAL_AREAS = ("software", "legal", "operations", "marketing")
EFFORTS = ("XS", "S", "M", "L", "XL", "XXL")
WORKSPACE_STATUSES = ("active", "inactive", "completed")

REQUIRED_FIELDS = (
    "id", "title", "type", "status", "priority", "functional_area",
    "parent_id", "depth", "order_index", "created_at", "updated_at", "project",
)
OPTIONAL_FIELDS = (
    "effort", "assignee", "due_date", "tags", "smart_category",
    "branch_name", "workspace_path", "workspace_status",
)

_ENUMS = {
    "type": ITEM_TYPES,
    "status": ITEM_STATUSES,
    "priority": PRIORITIES,
    "functional_area": FUNCTIONAL_AREAS,
    "effort": EFFORTS,
    "workspace_status": WORKSPACE_STATUSES,
}

# Fields callers may set through create() and update()
EDITABLE_FIELDS = (
    "title", "type", "status", "priority", "functional_area", "description",
    "effort", "assignee", "due_date", "tags", "smart_category",
    "branch_name", "workspace_path", "workspace_status",
)

DESCRIPTION_HEADING = "## Description"
DESCRIPTION_END = "<!-- end of description -->"

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class WorkItemFormatError(ValueError):
    """Raised when a work-item file cannot be parsed."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_fields(values: dict) -> None:
    unknown = set(values) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown work item fields: {', '.join(sorted(unknown))}")
    for key, allowed in _ENUMS.items():
        value = values.get(key)
        if value is not None and value not in allowed:
            raise ValueError(f"Invalid {key} '{value}'. Must be one of: {', '.join(allowed)}")
    if "title" in values and not str(values["title"]).strip():
        raise ValueError("Work item title cannot be empty")


def _coerce_category(value) -> SmartCategory | None:
    if value is None or isinstance(value, SmartCategory):
        return value
    if isinstance(value, dict):
        return SmartCategory(
            id=value["id"],
            name=value.get("name", value["id"]),
            team=value.get("team", ""),
            color=value.get("color", ""),
            categorized_at=value.get("categorized_at"),
        )
    raise ValueError(f"Invalid smart_category: {value!r}")


# ── Serialization ────────────────────────────────────────────────────────────


def serialize_work_item(item: WorkItem) -> str:
    """Render a work item as front matter plus a markdown body."""
    header = {key: getattr(item, key) for key in REQUIRED_FIELDS}
    for key in OPTIONAL_FIELDS:
        value = getattr(item, key)
        if value in (None, [], ""):
            continue
        header[key] = asdict(value) if isinstance(value, SmartCategory) else value

    front = yaml.safe_dump(header, sort_keys=False, allow_unicode=True, default_flow_style=False)

    lines = [
        f"# {item.title}",
        "",
        DESCRIPTION_HEADING,
        item.description,
        DESCRIPTION_END,
        "",
        "## Classification",
        f"- **Type:** {item.type}",
        f"- **Status:** {item.status}",
        f"- **Priority:** {item.priority}",
        f"- **Functional area:** {item.functional_area}",
    ]
    if item.effort:
        lines.append(f"- **Effort:** {item.effort}")
    if item.smart_category:
        lines.append(f"- **Category:** {item.smart_category.name}")
    if item.tags:
        lines.append(f"- **Tags:** {', '.join(item.tags)}")
    lines += [
        "",
        "## Metadata",
        f"- **Depth:** {item.depth}",
        f"- **Parent:** {item.parent_id or 'none'}",
        f"- **Created:** {item.created_at}",
        f"- **Updated:** {item.updated_at}",
    ]
    if item.branch_name:
        lines.append(f"- **Branch:** {item.branch_name}")
    return f"---\n{front}---\n\n" + "\n".join(lines) + "\n"


def _extract_description(body: str) -> str:
    marker = DESCRIPTION_HEADING + "\n"
    start = body.find(marker)
    if start == -1:
        return ""
    start += len(marker)
    end = body.find("\n" + DESCRIPTION_END, start)
    if end != -1:
        return body[start:end]
    # Hand-edited file without the end marker: read up to the next section
    next_section = body.find("\n## ", start)
    text = body[start:] if next_section == -1 else body[start:next_section]
    return text.strip()


def parse_work_item(text: str) -> WorkItem:
    """Parse a work-item file. Raises WorkItemFormatError on malformed input."""
    if not text.startswith("---\n"):
        raise WorkItemFormatError("Missing front-matter header")
    end = text.find("\n---\n", 4)
    if end == -1:
        raise WorkItemFormatError("Unterminated front-matter header")

    try:
        header = yaml.safe_load(text[4:end + 1]) or {}
    except yaml.YAMLError as e:
        raise WorkItemFormatError(f"Invalid front matter: {e}") from e
    if not isinstance(header, dict):
        raise WorkItemFormatError("Front matter must be a mapping")

    missing = [key for key in REQUIRED_FIELDS if key not in header]
    if missing:
        raise WorkItemFormatError(f"Missing required fields: {', '.join(missing)}")

    body = text[end + len("\n---\n"):]
    known = {f.name for f in fields(WorkItem)} - {"children"}
    values = {k: v for k, v in header.items() if k in known}
    values["id"] = str(values["id"])
    values["title"] = str(values["title"])
    values["parent_id"] = None if values["parent_id"] in (None, "null") else str(values["parent_id"])
    values["smart_category"] = _coerce_category(values.get("smart_category"))
    values["tags"] = list(values.get("tags") or [])
    values["description"] = _extract_description(body)
    return WorkItem(**values)


# ── Store ────────────────────────────────────────────────────────────────────


class WorkItemStore:
    """CRUD over the work-item tree rooted at one directory."""

    def __init__(self, root: str | Path, project: str = ""):
        self.root = Path(root)
        self.project = project

    def _path(self, item_id: str) -> Path | None:
        if not item_id or not _ID_RE.match(item_id):
            return None
        return self.root / f"{item_id}.md"

    def _save(self, item: WorkItem) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(item.id)
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(serialize_work_item(item))
        tmp.replace(path)

    def _next_root_index(self) -> int:
        now_ms = time.time_ns() // 1_000_000
        roots = [i.order_index for i in self.list_all() if i.parent_id is None]
        return max([now_ms] + [index + 1 for index in roots])

    def get(self, item_id: str) -> WorkItem | None:
        """Load one item. Returns None when there is no record for item_id."""
        path = self._path(item_id)
        if path is None or not path.exists():
            return None
        return parse_work_item(path.read_text())

    def create(self, title: str = "Untitled Task", parent_id: str | None = None, **values) -> WorkItem:
        values["title"] = title
        _validate_fields(values)

        if parent_id is not None:
            parent = self.get(parent_id)
            if parent is None:
                raise ValueError(f"Parent work item not found: {parent_id}")
            depth = parent.depth + 1
            order_index = len(self.list_children(parent_id))
            values.setdefault("type", "subtask")
        else:
            depth = 0
            order_index = self._next_root_index()
            values.setdefault("type", "task")

        if "smart_category" in values:
            values["smart_category"] = _coerce_category(values["smart_category"])

        now = _now()
        item = WorkItem(
            id=str(uuid.uuid4()),
            parent_id=parent_id,
            depth=depth,
            order_index=order_index,
            project=self.project,
            created_at=now,
            updated_at=now,
            **values,
        )
        self._save(item)
        logger.info("Created work item %s (%s) depth=%d", item.id, item.title, item.depth)
        return item

    def update(self, item_id: str, **values) -> WorkItem | None:
        """Merge values onto an existing item. Returns None if it does not exist."""
        for key in ("id", "created_at", "parent_id", "depth", "order_index", "project"):
            if key in values:
                raise ValueError(f"'{key}' cannot be changed with update(); use move() to reparent")
        _validate_fields(values)

        item = self.get(item_id)
        if item is None:
            return None
        if "smart_category" in values:
            values["smart_category"] = _coerce_category(values["smart_category"])
        for key, value in values.items():
            setattr(item, key, value)
        item.updated_at = _now()
        self._save(item)
        return item

    def delete(self, item_id: str, cascade: bool = False) -> bool:
        """Delete an item, and with cascade every descendant first. False if not found."""
        path = self._path(item_id)
        if path is None or not path.exists():
            return False
        if cascade:
            for child in self.list_children(item_id):
                self.delete(child.id, cascade=True)
        path.unlink()
        logger.info("Deleted work item %s", item_id)
        return True

    def descendants(self, item_id: str) -> list[WorkItem]:
        children_of: dict[str, list[WorkItem]] = {}
        for item in self.list_all():
            if item.parent_id is not None:
                children_of.setdefault(item.parent_id, []).append(item)
        result = []
        stack = list(children_of.get(item_id, []))
        while stack:
            node = stack.pop()
            result.append(node)
            stack.extend(children_of.get(node.id, []))
        return result

    def move(
        self,
        item_id: str,
        new_parent_id: str | None = None,
        new_order_index: int | None = None,
    ) -> WorkItem | None:
        """Reparent an item and recompute depth for it and its whole subtree."""
        item = self.get(item_id)
        if item is None:
            return None

        subtree = self.descendants(item_id)
        if new_parent_id is not None:
            if new_parent_id == item_id or new_parent_id in {d.id for d in subtree}:
                raise ValueError("Cannot move a work item under itself or one of its descendants")
            parent = self.get(new_parent_id)
            if parent is None:
                raise ValueError(f"Parent work item not found: {new_parent_id}")
            new_depth = parent.depth + 1
        else:
            new_depth = 0

        parent_changed = item.parent_id != new_parent_id
        if new_order_index is not None:
            item.order_index = new_order_index
        elif parent_changed:
            item.order_index = (
                len(self.list_children(new_parent_id)) if new_parent_id else self._next_root_index()
            )

        shift = new_depth - item.depth
        item.parent_id = new_parent_id
        item.depth = new_depth
        item.updated_at = _now()
        self._save(item)

        if shift:
            for node in subtree:
                node.depth += shift
                node.updated_at = item.updated_at
                self._save(node)
        return item

    def list_all(self) -> list[WorkItem]:
        if not self.root.exists():
            return []
        items = []
        for path in sorted(self.root.glob("*.md")):
            try:
                items.append(parse_work_item(path.read_text()))
            except WorkItemFormatError as e:
                logger.warning("Skipping unreadable work item %s: %s", path.name, e)
        return items

    def list_children(self, parent_id: str | None) -> list[WorkItem]:
        children = [i for i in self.list_all() if i.parent_id == parent_id]
        return sorted(children, key=lambda i: (i.order_index, i.created_at))

    def build_tree(self) -> list[WorkItem]:
        """Return root items with children nested and every level sorted by order index."""
        items = self.list_all()
        by_id = {item.id: item for item in items}
        roots = []
        for item in items:
            item.children = []
        for item in items:
            if item.parent_id is not None and item.parent_id in by_id:
                by_id[item.parent_id].children.append(item)
            else:
                roots.append(item)

        # Items caught in a parent cycle are unreachable from any root
        reachable: set[str] = set()

        def _walk(node: WorkItem) -> None:
            stack = [node]
            while stack:
                current = stack.pop()
                reachable.add(current.id)
                stack.extend(c for c in current.children if c.id not in reachable)

        for root in roots:
            _walk(root)
        for item in items:
            if item.id not in reachable:
                by_id[item.parent_id].children.remove(item)
                roots.append(item)
                _walk(item)

        def _sort(level: list[WorkItem]) -> list[WorkItem]:
            level.sort(key=lambda i: (i.order_index, i.created_at))
            for node in level:
                _sort(node.children)
            return level

        return _sort(roots)
