"""Goal decomposition into a validated task dependency graph.

Two entry points produce task batches: :meth:`TaskDecomposer.decompose` instantiates a
template graph from the goal's intent and the detected repository stack, and
:meth:`TaskDecomposer.from_payload` builds a graph from an explicit plan (a plan file or the
JSON a planning agent printed). Both run :func:`validate_graph`, so a batch is either accepted
whole or rejected whole.
"""

from __future__ import annotations

import heapq
import json
import logging
import re
import subprocess
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ensemble.errors import DecompositionError, TaskDependencyError
from ensemble.models import DEFAULT_PRIORITY, TaskConfig, TaskNode
from ensemble.roles import ROLE_PROFILES, match_role, normalize_tools, resolve_role

logger = logging.getLogger(__name__)

INTENT_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("fix", re.compile(r"\b(fix|debug|resolve|repair|bug)\w*", re.IGNORECASE)),
    ("optimize", re.compile(r"\b(optimi[sz]e|speed up|performance|improve)\w*", re.IGNORECASE)),
    (
        "test",
        re.compile(
            r"\b((?:add|write)\s+(?:unit\s+|integration\s+|e2e\s+)?tests?"
            r"|test(?:s|ing)?|verify|validate)\b",
            re.IGNORECASE,
        ),
    ),
    ("document", re.compile(r"\b(document|readme|docs|explain|comment)\w*", re.IGNORECASE)),
    ("deploy", re.compile(r"\b(deploy|release|publish|ship)\w*", re.IGNORECASE)),
    (
        "build",
        re.compile(r"\b(build|create|implement|add|develop|make|scaffold)\w*", re.IGNORECASE),
    ),
]
SECURITY_PATTERN = re.compile(
    r"\b(security|auth\w*|login|password|token|oauth|permission)", re.IGNORECASE
)
FRONTEND_HINT = re.compile(
    r"\b(ui|page|component|frontend|screen|form|button|css|react)\b", re.IGNORECASE
)
BACKEND_HINT = re.compile(
    r"\b(api|endpoint|server|database|backend|query|service|migration)\b", re.IGNORECASE
)

FRONTEND_FRAMEWORKS = {"react", "next", "vue", "nuxt", "svelte", "@angular/core", "solid-js"}
BACKEND_FRAMEWORKS = {
    "express",
    "fastify",
    "@nestjs/core",
    "koa",
    "hono",
    "fastapi",
    "django",
    "flask",
    "starlette",
}
STACK_MARKERS = {
    "pyproject.toml": "python",
    "setup.py": "python",
    "requirements.txt": "python",
    "package.json": "node",
    "go.mod": "go",
    "Cargo.toml": "rust",
    "pom.xml": "java",
    "build.gradle": "java",
    "Gemfile": "ruby",
}


@dataclass(slots=True)
class RepositoryContext:
    repo_root: Path
    languages: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    has_frontend: bool = True
    has_backend: bool = True
    branch: str | None = None
    existing_tasks: list[TaskNode] = field(default_factory=list)

    @property
    def existing_ids(self) -> set[str]:
        return {task.id for task in self.existing_tasks}

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_root": str(self.repo_root),
            "languages": list(self.languages),
            "frameworks": list(self.frameworks),
            "has_frontend": self.has_frontend,
            "has_backend": self.has_backend,
            "branch": self.branch,
            "existing_tasks": len(self.existing_tasks),
        }


def _current_branch(repo_root: Path) -> str | None:
    proc = subprocess.run(
        ["git", "--no-pager", "rev-parse", "--abbrev-ref", "HEAD"],
        cwd=repo_root,
        text=True,
        capture_output=True,
    )
    if proc.returncode != 0:
        return None
    branch = proc.stdout.strip()
    return branch or None


def _package_json_dependencies(path: Path) -> set[str]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return set()
    names: set[str] = set()
    for key in ("dependencies", "devDependencies", "peerDependencies"):
        section = payload.get(key)
        if isinstance(section, dict):
            names.update(str(name) for name in section)
    return names


def _python_dependencies(repo_root: Path) -> set[str]:
    names: set[str] = set()
    for candidate in ("pyproject.toml", "requirements.txt", "setup.py"):
        path = repo_root / candidate
        if not path.exists():
            continue
        try:
            text = path.read_text(encoding="utf-8").lower()
        except OSError:
            continue
        for framework in ("fastapi", "django", "flask", "starlette"):
            if framework in text:
                names.add(framework)
    return names


def detect_repository_context(
    repo_root: Path,
    existing_tasks: Iterable[TaskNode] | None = None,
) -> RepositoryContext:
    repo_root = repo_root.resolve()
    languages: list[str] = []
    for marker, language in STACK_MARKERS.items():
        if (repo_root / marker).exists() and language not in languages:
            languages.append(language)
    if (repo_root / "Dockerfile").exists():
        languages.append("docker")

    dependencies: set[str] = set()
    if (repo_root / "package.json").exists():
        dependencies |= _package_json_dependencies(repo_root / "package.json")
    if "python" in languages:
        dependencies |= _python_dependencies(repo_root)

    frameworks = sorted(dependencies & (FRONTEND_FRAMEWORKS | BACKEND_FRAMEWORKS))
    has_frontend = bool(dependencies & FRONTEND_FRAMEWORKS) or (repo_root / "index.html").exists()
    has_backend = bool(dependencies & BACKEND_FRAMEWORKS) or any(
        language in languages for language in ("python", "go", "rust", "java", "ruby")
    )
    if not has_frontend and not has_backend:
        # Unknown stack: keep both lanes available.
        has_frontend = has_backend = True

    return RepositoryContext(
        repo_root=repo_root,
        languages=languages,
        frameworks=frameworks,
        has_frontend=has_frontend,
        has_backend=has_backend,
        branch=_current_branch(repo_root),
        existing_tasks=list(existing_tasks or []),
    )


def classify_intent(goal: str) -> str:
    best: tuple[int, int, str] | None = None
    for rank, (intent, pattern) in enumerate(INTENT_PATTERNS):
        match = pattern.search(goal)
        if match is None:
            continue
        candidate = (match.start(), rank, intent)
        if best is None or candidate < best:
            best = candidate
    return best[2] if best else "research"


def goal_slug(goal: str, max_words: int = 4) -> str:
    words = re.findall(r"[a-z0-9]+", goal.lower())
    stop = {"a", "an", "the", "and", "for", "to", "of", "in", "on", "with", "please"}
    kept = [word for word in words if word not in stop][:max_words]
    slug = "-".join(kept)[:32].strip("-")
    return slug or "goal"


def _find_cycle(tasks: list[TaskNode]) -> list[str] | None:
    ids = {task.id for task in tasks}
    graph = {task.id: [dep for dep in task.dependencies if dep in ids] for task in tasks}
    visiting, done = 1, 2
    state: dict[str, int] = {}
    for root in graph:
        if state.get(root):
            continue
        state[root] = visiting
        path = [root]
        stack = [(root, iter(graph[root]))]
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                child_state = state.get(child)
                if child_state == visiting:
                    return path[path.index(child) :] + [child]
                if child_state is None:
                    state[child] = visiting
                    path.append(child)
                    stack.append((child, iter(graph[child])))
                    advanced = True
                    break
            if not advanced:
                state[node] = done
                stack.pop()
                path.pop()
    return None


def validate_graph(tasks: list[TaskNode], known_ids: Iterable[str] = ()) -> None:
    """Reject the batch if any id, role or dependency is invalid, or the graph has a cycle.

    ``known_ids`` are tasks already persisted (a resumed graph); new tasks may depend on them.
    Roles and tool lists are normalized in place, and only once the whole batch passes.
    """
    known = set(known_ids)
    batch_ids: set[str] = set()
    for task in tasks:
        if not task.id or not str(task.id).strip():
            raise DecompositionError("Task id must be a non-empty string.")
        if task.id in batch_ids or task.id in known:
            raise DecompositionError(f"Duplicate task id: {task.id}")
        batch_ids.add(task.id)

    normalized: list[tuple[TaskNode, str, list[str] | None]] = []
    for task in tasks:
        role = resolve_role(task.agent_role)
        if role is None:
            raise DecompositionError(
                f"Task '{task.id}' has no assignable agent role (got {task.agent_role!r})."
            )
        try:
            tools = normalize_tools(task.config.tools)
        except ValueError as exc:
            raise DecompositionError(f"Task '{task.id}': {exc}") from exc
        if task.id in task.dependencies:
            raise DecompositionError(f"Task '{task.id}' depends on itself.")
        missing = [dep for dep in task.dependencies if dep not in batch_ids and dep not in known]
        if missing:
            raise TaskDependencyError(task.id, missing)
        normalized.append((task, role, tools))

    cycle = _find_cycle(tasks)
    if cycle:
        raise DecompositionError("Dependency cycle detected: " + " -> ".join(cycle))

    for task, role, tools in normalized:
        task.agent_role = role
        task.config.tools = tools


def topological_order(tasks: list[TaskNode]) -> list[TaskNode]:
    by_id = {task.id: task for task in tasks}
    sequence = {task.id: index for index, task in enumerate(tasks)}
    remaining = {
        task.id: {dep for dep in task.dependencies if dep in by_id} for task in tasks
    }
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in remaining[task.id]:
            dependents[dep].append(task.id)

    heap = [
        (by_id[task_id].priority, sequence[task_id], task_id)
        for task_id, deps in remaining.items()
        if not deps
    ]
    heapq.heapify(heap)
    ordered: list[TaskNode] = []
    while heap:
        _, _, task_id = heapq.heappop(heap)
        ordered.append(by_id[task_id])
        for child in dependents[task_id]:
            remaining[child].discard(task_id)
            if not remaining[child]:
                heapq.heappush(heap, (by_id[child].priority, sequence[child], child))
    if len(ordered) != len(tasks):
        raise DecompositionError("Dependency cycle detected while ordering tasks.")
    return ordered


def parse_plan_output(text: str) -> dict[str, Any] | None:
    """Extract a JSON plan (an object with a ``tasks`` list) from free-form agent output."""
    candidates: list[str] = [text.strip()]
    candidates.extend(
        block.strip()
        for block in re.findall(r"```(?:json)?\s*\n(.*?)```", text, flags=re.DOTALL)
    )
    candidates.extend(
        line.strip()
        for line in text.splitlines()
        if line.strip().startswith("{") and line.strip().endswith("}")
    )
    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("tasks"), list):
            return parsed
        if isinstance(parsed, list) and all(isinstance(item, dict) for item in parsed):
            return {"tasks": parsed}
    return None


def load_plan_file(path: Path) -> dict[str, Any]:
    """Read a JSON or TOML plan, or the saved output of a planning agent."""
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".toml":
        try:
            payload = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise DecompositionError(f"Plan file is not valid TOML: {exc}") from exc
        if isinstance(payload.get("tasks"), list):
            return payload
        raise DecompositionError("Plan file must contain a 'tasks' list.")
    parsed = parse_plan_output(text)
    if parsed is None:
        raise DecompositionError(f"No task plan found in {path}")
    return parsed


class TaskDecomposer:
    def __init__(self, default_priority: int = DEFAULT_PRIORITY) -> None:
        self.default_priority = default_priority

    def decompose(self, goal: str, context: RepositoryContext) -> list[TaskNode]:
        goal = goal.strip()
        if not goal:
            raise DecompositionError("Goal must not be empty.")
        intent = classify_intent(goal)
        base = self._unique_base(goal_slug(goal), context.existing_ids)
        tasks = self._template(intent, goal, base, context)
        for task in tasks:
            task.tags = [intent, *task.tags]
            if not task.config.tools:
                task.config.tools = list(ROLE_PROFILES[task.agent_role].default_tools)
        validate_graph(tasks, known_ids=context.existing_ids)
        logger.info("Decomposed goal into %d task(s) (intent=%s)", len(tasks), intent)
        return tasks

    def from_payload(
        self, payload: dict[str, Any] | list[Any], context: RepositoryContext
    ) -> list[TaskNode]:
        entries = payload.get("tasks") if isinstance(payload, dict) else payload
        if not isinstance(entries, list) or not entries:
            raise DecompositionError("Plan must contain a non-empty 'tasks' list.")
        tasks = [self._task_from_entry(entry, index) for index, entry in enumerate(entries, 1)]
        validate_graph(tasks, known_ids=context.existing_ids)
        return tasks

    def _task_from_entry(self, entry: Any, index: int) -> TaskNode:
        if not isinstance(entry, dict):
            raise DecompositionError(f"Plan entry #{index} must be an object.")
        task_id = str(entry.get("id") or f"task-{index:03d}").strip()
        description = str(entry.get("description") or entry.get("title") or "").strip()
        if not description:
            raise DecompositionError(f"Task '{task_id}' has no description.")

        raw_role = (
            entry.get("agentRole")
            or entry.get("agent_role")
            or entry.get("role")
            or entry.get("assigned_to")
        )
        role = resolve_role(raw_role) if raw_role else None
        if role is None and not raw_role and isinstance(entry.get("capabilities"), list):
            role = match_role(entry["capabilities"])
        dependencies = entry.get("dependencies", entry.get("depends_on", [])) or []
        if not isinstance(dependencies, list):
            raise DecompositionError(f"Task '{task_id}' dependencies must be a list.")
        try:
            priority = int(entry.get("priority", self.default_priority))
        except (TypeError, ValueError) as exc:
            raise DecompositionError(f"Task '{task_id}' has a non-integer priority.") from exc
        tags = entry.get("tags") or []
        metadata = entry.get("metadata") or {}
        return TaskNode(
            id=task_id,
            title=str(entry.get("title") or ""),
            description=description,
            agent_role=role or str(raw_role or ""),
            dependencies=[str(dep) for dep in dependencies],
            priority=priority,
            config=TaskConfig.from_dict(entry.get("config")),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            requires_approval=bool(
                entry.get("requiresApproval", entry.get("requires_approval", False))
            ),
        )

    @staticmethod
    def _unique_base(slug: str, existing_ids: set[str]) -> str:
        base = slug
        counter = 2
        while any(task_id.startswith(f"{base}-") for task_id in existing_ids):
            base = f"{slug}-{counter}"
            counter += 1
        return base

    def _node(
        self,
        base: str,
        step: str,
        role: str,
        description: str,
        *,
        priority: int,
        dependencies: list[str] | None = None,
        title: str = "",
    ) -> TaskNode:
        return TaskNode(
            id=f"{base}-{step}",
            title=title,
            description=description,
            agent_role=role,
            dependencies=[f"{base}-{dep}" for dep in dependencies or []],
            priority=priority,
        )

    def _template(
        self, intent: str, goal: str, base: str, context: RepositoryContext
    ) -> list[TaskNode]:
        if intent == "build":
            tasks = [
                self._node(
                    base,
                    "architect",
                    "architect",
                    f"Analyze requirements and design the architecture for: {goal}",
                    priority=1,
                    title="Architecture planning",
                )
            ]
            lanes = self._implementation_lanes(goal, context)
            for lane in lanes:
                tasks.append(
                    self._node(
                        base,
                        lane,
                        lane,
                        f"Implement the {lane} part of: {goal}",
                        priority=2,
                        dependencies=["architect"],
                        title=f"{lane.capitalize()} implementation",
                    )
                )
            return self._with_review_and_tests(tasks, base, goal, lanes)

        if intent in {"fix", "optimize"}:
            verb = (
                "Profile and find bottlenecks in"
                if intent == "optimize"
                else "Find the root cause of"
            )
            lane = self._implementation_lanes(goal, context)[0]
            tasks = [
                self._node(
                    base,
                    "analyze",
                    "researcher",
                    f"{verb}: {goal}",
                    priority=1,
                    title="Problem analysis",
                ),
                self._node(
                    base,
                    "implement",
                    lane,
                    f"Implement the change for: {goal}",
                    priority=2,
                    dependencies=["analyze"],
                    title="Fix implementation",
                ),
            ]
            return self._with_review_and_tests(tasks, base, goal, ["implement"])

        if intent == "test":
            return [
                self._node(
                    base,
                    "tests",
                    "tester",
                    f"Write and run tests for: {goal}",
                    priority=2,
                    title="Test implementation",
                )
            ]

        if intent == "document":
            return [
                self._node(
                    base,
                    "docs",
                    "documenter",
                    f"Write documentation for: {goal}",
                    priority=3,
                    title="Documentation",
                )
            ]

        if intent == "deploy":
            return [
                self._node(
                    base,
                    "deploy",
                    "devops",
                    f"Prepare build and deployment configuration for: {goal}",
                    priority=2,
                    title="Deployment setup",
                ),
                self._node(
                    base,
                    "verify",
                    "tester",
                    f"Verify the deployment setup for: {goal}",
                    priority=4,
                    dependencies=["deploy"],
                    title="Deployment verification",
                ),
            ]

        return [
            self._node(
                base,
                "research",
                "researcher",
                f"Research and analyze: {goal}",
                priority=3,
                title="Research and analysis",
            )
        ]

    @staticmethod
    def _implementation_lanes(goal: str, context: RepositoryContext) -> list[str]:
        wants_frontend = bool(FRONTEND_HINT.search(goal))
        wants_backend = bool(BACKEND_HINT.search(goal))
        if wants_frontend and not wants_backend and context.has_frontend:
            return ["frontend"]
        if wants_backend and not wants_frontend and context.has_backend:
            return ["backend"]
        lanes = []
        if context.has_backend:
            lanes.append("backend")
        if context.has_frontend:
            lanes.append("frontend")
        return lanes or ["backend"]

    def _with_review_and_tests(
        self, tasks: list[TaskNode], base: str, goal: str, implementation_steps: list[str]
    ) -> list[TaskNode]:
        verify_deps = list(implementation_steps)
        if SECURITY_PATTERN.search(goal):
            tasks.append(
                self._node(
                    base,
                    "security",
                    "security",
                    f"Review the implementation for security issues: {goal}",
                    priority=3,
                    dependencies=implementation_steps,
                    title="Security review",
                )
            )
            verify_deps.append("security")
        tasks.append(
            self._node(
                base,
                "tests",
                "tester",
                f"Test the implemented change: {goal}",
                priority=4,
                dependencies=verify_deps,
                title="Quality assurance",
            )
        )
        return tasks
