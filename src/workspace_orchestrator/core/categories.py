"""Keyword-scored grouping of work items into team categories."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from workspace_orchestrator.db.models import SmartCategory

CONFIDENT_SCORE = 2.0


@dataclass
class Category:
    id: str
    name: str
    description: str = ""
    team: str = ""
    color: str = ""
    keywords: list[str] = field(default_factory=list)


DEFAULT_CATEGORIES = [
    Category(
        id="frontend",
        name="Frontend & UI",
        description="User interface components, pages, styling and client behaviour",
        team="web",
        color="#3b82f6",
        keywords=["ui", "component", "page", "css", "layout", "button", "form", "react", "style"],
    ),
    Category(
        id="backend",
        name="Backend Services",
        description="Server logic, business rules, background jobs and integrations",
        team="platform",
        color="#10b981",
        keywords=["server", "service", "worker", "queue", "job", "cron", "webhook"],
    ),
    Category(
        id="api",
        name="API & Endpoints",
        description="HTTP endpoints, request validation, authentication and routing",
        team="platform",
        color="#8b5cf6",
        keywords=["api", "endpoint", "route", "rest", "graphql", "auth", "token"],
    ),
    Category(
        id="database",
        name="Database & Data",
        description="Schema changes, migrations, queries and data storage",
        team="data",
        color="#f59e0b",
        keywords=["database", "schema", "migration", "query", "table", "index", "sql"],
    ),
    Category(
        id="infra",
        name="Infrastructure & DevOps",
        description="Deployment, build pipelines, hosting and monitoring",
        team="ops",
        color="#6b7280",
        keywords=["deploy", "docker", "pipeline", "build", "hosting", "monitoring", "kubernetes"],
    ),
    Category(
        id="design",
        name="Design System",
        description="Visual design, typography, icons and brand assets",
        team="design",
        color="#ec4899",
        keywords=["design", "icon", "typography", "theme", "brand", "figma"],
    ),
    Category(
        id="security",
        name="Security & Compliance",
        description="Vulnerabilities, permissions, audits and privacy requirements",
        team="security",
        color="#ef4444",
        keywords=["security", "vulnerability", "permission", "audit", "privacy", "encryption"],
    ),
    Category(
        id="mobile",
        name="Mobile Apps",
        description="Native and responsive mobile experiences",
        team="mobile",
        color="#14b8a6",
        keywords=["mobile", "ios", "android", "responsive", "tablet"],
    ),
]


def score_category(category: Category, content: str) -> float:
    score = 0.0
    for keyword in category.keywords:
        if keyword.lower() in content:
            score += 2
    for word in re.split(r"[\s&\-]+", category.name.lower()):
        if len(word) > 2 and word in content:
            score += 1
    for word in re.split(r"[\s,.]+", category.description.lower()):
        if len(word) > 3 and word in content:
            score += 0.5
    return score


def categorize(
    title: str,
    description: str = "",
    item_type: str = "",
    functional_area: str = "",
    categories: list[Category] | None = None,
) -> Category | None:
    """Pick the best-scoring category, or the first one when nothing scores confidently."""
    if categories is None:
        categories = DEFAULT_CATEGORIES
    if not categories:
        return None

    content = f"{title} {description} {item_type} {functional_area}".lower()
    best: Category | None = None
    best_score = 0.0
    for category in categories:
        score = score_category(category, content)
        if score > best_score:
            best, best_score = category, score

    if best is not None and best_score >= CONFIDENT_SCORE:
        return best
    return categories[0]


def to_smart_category(category: Category) -> SmartCategory:
    return SmartCategory(
        id=category.id,
        name=category.name,
        team=category.team,
        color=category.color,
        categorized_at=datetime.now(timezone.utc).isoformat(),
    )
