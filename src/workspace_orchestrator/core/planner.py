"""Task planning: codebase analysis, AI-backed step plans and work-item classification."""

import json
import logging
import re
import tomllib
import uuid
from dataclasses import asdict
from pathlib import Path

from workspace_orchestrator.core.workitems import EFFORTS, FUNCTIONAL_AREAS, ITEM_TYPES, PRIORITIES
from workspace_orchestrator.db.models import CodebaseContext, PlanStep, TaskPlan, WorkItemDraft
from workspace_orchestrator.integrations.ai import AIProvider, extract_json_object

logger = logging.getLogger(__name__)

SKIPPED_DIRS = {
    "node_modules", "dist", "build", "out", "coverage", "target",
    "__pycache__", "venv", "env", "site-packages",
}

KEY_FILE_NAMES = (
    "package.json", "pyproject.toml", "setup.cfg", "requirements.txt", "tsconfig.json",
    "Makefile", "Dockerfile", "README.md", "next.config.js", "vite.config.ts",
)

FRAMEWORKS = {
    "next": "Next.js",
    "react": "React",
    "typescript": "TypeScript",
    "tailwindcss": "Tailwind CSS",
    "prisma": "Prisma",
    "django": "Django",
    "flask": "Flask",
    "fastapi": "FastAPI",
    "starlette": "Starlette",
    "click": "Click",
    "sqlalchemy": "SQLAlchemy",
}

TESTING_TOOLS = {
    "jest": "Jest",
    "vitest": "Vitest",
    "mocha": "Mocha",
    "cypress": "Cypress",
    "@playwright/test": "Playwright",
    "playwright": "Playwright",
    "pytest": "pytest",
}

MINIMAL_CONTEXT = CodebaseContext(
    project_structure=["src", "tests", "docs"],
    key_files=["README.md"],
    tech_stack=["Unknown"],
    testing_framework=None,
    build_commands={},
    dependencies=[],
)

PLAN_PROMPT = """You are an expert software architect planning a development task. \
Break the requirement into a step-by-step execution plan.

REQUIREMENT:
{requirement}

CODEBASE CONTEXT:
- Tech stack: {tech_stack}
- Testing framework: {testing}
- Key files: {key_files}
- Available scripts: {scripts}
- Project structure: {structure}

INSTRUCTIONS:
1. Use 3-8 specific, actionable steps in execution order
2. Give each step a concrete deliverable and exit criteria
3. Add a verification command where one exists (a single command, no pipes or &&)
4. Estimate minutes conservatively and list step ids each step depends on
5. Identify risks and prerequisites

Respond with a single JSON object:
{{
  "title": "Brief task title",
  "description": "What is being built",
  "agent_type": "feature-builder|bug-hunter|refactor|documentation",
  "complexity": "simple|medium|complex",
  "steps": [
    {{
      "id": 1,
      "title": "Step title",
      "description": "What to do",
      "deliverable": "Concrete output",
      "exit_criteria": "How to know it is done",
      "estimated_minutes": 30,
      "dependencies": [],
      "verification_command": "npm test",
      "files": ["src/example.ts"],
      "test_command": null
    }}
  ],
  "total_estimate_minutes": 90,
  "risk_factors": [],
  "prerequisites": [],
  "success_criteria": []
}}"""

REFINE_PROMPT = """ORIGINAL PLAN:
{plan}

FEEDBACK:
{feedback}

Revise the plan to address the feedback. Keep the same JSON structure, tighten step \
descriptions and exit criteria, and adjust estimates. Respond with the revised plan as a \
single JSON object."""

CLASSIFY_PROMPT = """Classify this work request for a project backlog.

REQUEST:
{description}

PROJECT CONTEXT:
{context}

Respond with a single JSON object:
{{
  "title": "Short imperative title, at most 60 characters",
  "description": "Cleaned-up description",
  "type": "epic|feature|story|task|subtask|bug",
  "priority": "low|medium|high|urgent|critical",
  "functional_area": "software|legal|operations|marketing",
  "effort": "XS|S|M|L|XL|XXL"
}}"""


def _pick(data: dict, *keys, default=None):
    """Return the first present, non-empty value among snake_case/camelCase aliases."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return default


def _positive_int(value, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v not in (None, "")]


def _dependency_name(spec: str) -> str:
    return re.split(r"[\s<>=!~;\[(]", spec.strip(), maxsplit=1)[0].lower()


# ── Codebase analysis ────────────────────────────────────────────────────────


def _read_package_json(path: Path) -> tuple[dict[str, str], list[str]] | None:
    manifest = path / "package.json"
    if not manifest.exists():
        return None
    data = json.loads(manifest.read_text())
    if not isinstance(data, dict):
        raise ValueError("package.json is not an object")
    scripts = {str(k): str(v) for k, v in (data.get("scripts") or {}).items()}
    deps = list((data.get("dependencies") or {}).keys()) + list((data.get("devDependencies") or {}).keys())
    return scripts, deps


def _read_pyproject(path: Path) -> tuple[dict[str, str], list[str]] | None:
    manifest = path / "pyproject.toml"
    if not manifest.exists():
        return None
    data = tomllib.loads(manifest.read_text())
    project = data.get("project", {})
    deps = [_dependency_name(d) for d in project.get("dependencies", [])]
    for extra in project.get("optional-dependencies", {}).values():
        deps += [_dependency_name(d) for d in extra]
    poetry = data.get("tool", {}).get("poetry", {})
    deps += [name.lower() for name in poetry.get("dependencies", {}) if name.lower() != "python"]
    scripts = {str(k): str(v) for k, v in project.get("scripts", {}).items()}
    return scripts, deps


def _project_structure(path: Path) -> list[str]:
    entries = []
    for entry in sorted(path.iterdir()):
        if entry.name.startswith(".") or entry.name in SKIPPED_DIRS or entry.name.endswith(".egg-info"):
            continue
        entries.append(f"{entry.name}/" if entry.is_dir() else entry.name)
    return entries


def analyze_codebase(project_path: str | Path) -> CodebaseContext:
    """Summarize a checkout from its manifests and top-level listing.

    Falls back to MINIMAL_CONTEXT when no manifest can be read.
    """
    path = Path(project_path)
    scripts: dict[str, str] = {}
    deps: list[str] = []
    found = False

    for reader in (_read_package_json, _read_pyproject):
        try:
            result = reader(path)
        except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
            logger.warning("Could not read manifest in %s: %s", path, e)
            continue
        if result is None:
            continue
        found = True
        scripts.update(result[0])
        deps += result[1]

    if not found:
        logger.info("No readable manifest in %s, using minimal context", path)
        return CodebaseContext(**asdict(MINIMAL_CONTEXT))

    try:
        structure = _project_structure(path)
    except OSError:
        structure = list(MINIMAL_CONTEXT.project_structure)

    dep_set = {d.lower() for d in deps}
    tech_stack = [label for name, label in FRAMEWORKS.items() if name in dep_set]
    if "pyproject.toml" in structure and "Python" not in tech_stack:
        tech_stack.insert(0, "Python")
    testing = next((label for name, label in TESTING_TOOLS.items() if name in dep_set), None)

    return CodebaseContext(
        project_structure=structure,
        key_files=[name for name in KEY_FILE_NAMES if name in structure],
        tech_stack=tech_stack,
        testing_framework=testing,
        build_commands=scripts,
        dependencies=list(dict.fromkeys(deps)),
    )


# ── Plans ────────────────────────────────────────────────────────────────────


def _new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


def fallback_plan(requirement: str, verification_command: str | None = "npm test") -> TaskPlan:
    """Fixed analyze, implement, verify plan used whenever planning fails."""
    steps = [
        PlanStep(
            id=1,
            title="Analyze requirement",
            description="Understand what needs to be built and where it fits in the codebase",
            deliverable="Clear understanding of requirements",
            exit_criteria="Requirements are documented",
            estimated_minutes=30,
        ),
        PlanStep(
            id=2,
            title="Implement solution",
            description="Build the requested change",
            deliverable="Working implementation",
            exit_criteria="Code is written and functional",
            estimated_minutes=90,
            dependencies=[1],
        ),
        PlanStep(
            id=3,
            title="Test and verify",
            description="Ensure everything works correctly",
            deliverable="Verified working change",
            exit_criteria="All tests pass",
            estimated_minutes=30,
            dependencies=[2],
            verification_command=verification_command,
        ),
    ]
    return TaskPlan(
        task_id=_new_task_id(),
        title=requirement[:50] or "Untitled task",
        description=requirement,
        steps=steps,
        total_estimate_minutes=150,
        agent_type="feature-builder",
        complexity="medium",
        risk_factors=["Unknown complexity", "Limited context"],
        success_criteria=["Change implemented", "Tests pass"],
        is_fallback=True,
    )


def parse_plan_response(response: str, requirement: str) -> TaskPlan | None:
    """Build a normalized plan from AI output. Returns None if no usable plan is present."""
    data = extract_json_object(response)
    if data is None:
        logger.warning("Plan response contained no JSON object")
        return None
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        logger.warning("Plan response has no steps array")
        return None

    steps = []
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raw = {"title": str(raw)}
        number = index + 1
        title = str(_pick(raw, "title", default=f"Step {number}"))
        steps.append(
            PlanStep(
                id=_positive_int(raw.get("id"), number),
                title=title,
                description=str(_pick(raw, "description", default=title)),
                deliverable=str(_pick(raw, "deliverable", default="Completion of step")),
                exit_criteria=str(_pick(raw, "exit_criteria", "exitCriteria", default="Step is done")),
                estimated_minutes=_positive_int(_pick(raw, "estimated_minutes", "estimatedMinutes"), 30),
                dependencies=[
                    d for d in (_pick(raw, "dependencies", default=[]) or [])
                    if isinstance(d, int) and not isinstance(d, bool)
                ],
                verification_command=_pick(raw, "verification_command", "verificationCommand"),
                test_command=_pick(raw, "test_command", "testCommand"),
                files=_string_list(_pick(raw, "files", default=[])),
            )
        )

    known_ids = {s.id for s in steps}
    for step in steps:
        unknown = [d for d in step.dependencies if d not in known_ids]
        if unknown:
            logger.warning("Step %d depends on unknown steps %s; dropping them", step.id, unknown)
            step.dependencies = [d for d in step.dependencies if d in known_ids]

    total = _positive_int(
        _pick(data, "total_estimate_minutes", "totalEstimateMinutes"),
        sum(s.estimated_minutes for s in steps),
    )

    return TaskPlan(
        task_id=_new_task_id(),
        title=str(_pick(data, "title", default=requirement[:50] or "Untitled task")),
        description=str(_pick(data, "description", default=requirement)),
        steps=steps,
        total_estimate_minutes=total,
        agent_type=str(_pick(data, "agent_type", "agentType", default="feature-builder")),
        complexity=str(_pick(data, "complexity", default="medium")),
        risk_factors=_string_list(_pick(data, "risk_factors", "riskFactors", default=[])),
        prerequisites=_string_list(_pick(data, "prerequisites", default=[])),
        success_criteria=_string_list(
            _pick(data, "success_criteria", "successCriteria", default=["Task completed"])
        ),
    )


def fallback_classification(description: str) -> WorkItemDraft:
    """Keyword-based classification used when the AI collaborator is unavailable."""
    text = description.lower()

    item_type = "task"
    if any(w in text for w in ("bug", "fix", "error", "broken")):
        item_type = "bug"
    elif any(w in text for w in ("add", "new", "create", "implement", "build")):
        item_type = "feature"
    elif any(w in text for w in ("epic", "major initiative")):
        item_type = "epic"

    priority = "medium"
    if any(w in text for w in ("urgent", "critical", "asap")):
        priority = "urgent"
    elif any(w in text for w in ("important", "high priority", "soon")):
        priority = "high"
    elif any(w in text for w in ("low priority", "when possible", "nice to have")):
        priority = "low"

    area = "software"
    if any(w in text for w in ("legal", "compliance", "terms")):
        area = "legal"
    elif any(w in text for w in ("marketing", "campaign")):
        area = "marketing"
    elif any(w in text for w in ("operations", "process", "workflow")):
        area = "operations"

    effort = "M"
    if any(w in text for w in ("quick", "simple", "small")):
        effort = "S"
    elif any(w in text for w in ("complex", "major", "large")):
        effort = "L"

    title = description.strip().split(".")[0].strip() or "Untitled Task"
    if len(title) > 60:
        title = title[:57] + "..."
    title = title[0].upper() + title[1:]

    return WorkItemDraft(
        title=title,
        description=description.strip(),
        type=item_type,
        priority=priority,
        functional_area=area,
        effort=effort,
    )


class TaskPlanner:
    """Turns requirements into step plans via the AI collaborator, with fixed fallbacks."""

    def __init__(self, ai: AIProvider, verification_command: str | None = "npm test"):
        self.ai = ai
        self.verification_command = verification_command

    def analyze_codebase(self, project_path: str | Path) -> CodebaseContext:
        return analyze_codebase(project_path)

    def plan_task(
        self,
        requirement: str,
        context: CodebaseContext | None = None,
        provider: str | None = None,
    ) -> TaskPlan:
        context = context or CodebaseContext(**asdict(MINIMAL_CONTEXT))
        prompt = PLAN_PROMPT.format(
            requirement=requirement,
            tech_stack=", ".join(context.tech_stack) or "Unknown",
            testing=context.testing_framework or "Unknown",
            key_files=", ".join(context.key_files) or "none",
            scripts=", ".join(context.build_commands) or "none",
            structure=", ".join(context.project_structure[:15]) or "empty",
        )
        try:
            response = self.ai.generate(prompt, provider=provider)
        except Exception:
            logger.exception("Planning failed, using fallback plan")
            return fallback_plan(requirement, self.verification_command)

        plan = parse_plan_response(response, requirement)
        if plan is None:
            return fallback_plan(requirement, self.verification_command)
        logger.info(
            "Planned '%s': %d steps, %d minutes", plan.title, len(plan.steps), plan.total_estimate_minutes
        )
        return plan

    def refine_plan(self, plan: TaskPlan, feedback: str, provider: str | None = None) -> TaskPlan:
        """Ask for a revised plan. The original plan is returned unchanged on any failure."""
        prompt = REFINE_PROMPT.format(plan=json.dumps(asdict(plan), indent=2), feedback=feedback)
        try:
            response = self.ai.generate(prompt, provider=provider)
        except Exception:
            logger.exception("Plan refinement failed, keeping the current plan")
            return plan

        refined = parse_plan_response(response, plan.description)
        if refined is None:
            return plan
        refined.task_id = plan.task_id
        return refined

    def analyze_work_item(
        self,
        description: str,
        project_context: str = "",
        provider: str | None = None,
    ) -> WorkItemDraft:
        """Classify a free-text request into a work-item draft."""
        fallback = fallback_classification(description)
        prompt = CLASSIFY_PROMPT.format(description=description, context=project_context or "none")
        try:
            response = self.ai.generate(prompt, provider=provider)
        except Exception:
            logger.exception("Work item classification failed, using fallback")
            return fallback

        data = extract_json_object(response)
        if data is None:
            return fallback

        def _choice(key: str, allowed: tuple[str, ...], default: str) -> str:
            value = str(data.get(key) or "").strip()
            value = value.upper() if key == "effort" else value.lower()
            return value if value in allowed else default

        title = str(data.get("title") or "").strip() or fallback.title
        return WorkItemDraft(
            title=title[:60],
            description=str(data.get("description") or "").strip() or fallback.description,
            type=_choice("type", ITEM_TYPES, fallback.type),
            priority=_choice("priority", PRIORITIES, fallback.priority),
            functional_area=_choice("functional_area", FUNCTIONAL_AREAS, fallback.functional_area),
            effort=_choice("effort", EFFORTS, fallback.effort),
        )
