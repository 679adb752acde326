import json
import subprocess
from pathlib import Path

import pytest

from ensemble.decomposer import (
    RepositoryContext,
    TaskDecomposer,
    classify_intent,
    detect_repository_context,
    goal_slug,
    load_plan_file,
    parse_plan_output,
    topological_order,
    validate_graph,
)
from ensemble.errors import DecompositionError, TaskDependencyError
from ensemble.models import TaskConfig, TaskNode


def _context(tmp_path: Path, **overrides) -> RepositoryContext:
    return RepositoryContext(repo_root=tmp_path, **overrides)


def test_classify_intent_picks_earliest_keyword() -> None:
    assert classify_intent("Build a login page") == "build"
    assert classify_intent("Fix the broken build") == "fix"
    assert classify_intent("Add unit tests for the parser") == "test"
    assert classify_intent("Document the public API") == "document"
    assert classify_intent("Deploy to staging") == "deploy"
    assert classify_intent("Optimize cold start") == "optimize"
    assert classify_intent("Why is the cache so large?") == "research"


def test_goal_slug_drops_stopwords_and_limits_length() -> None:
    assert goal_slug("Build a login page with auth") == "build-login-page-auth"
    assert goal_slug("!!!") == "goal"


def test_build_goal_with_security_keywords_gets_review_before_tests(tmp_path: Path) -> None:
    tasks = TaskDecomposer().decompose("Build a login page with auth", _context(tmp_path))
    by_step = {task.id.rsplit("-", 1)[-1]: task for task in tasks}

    assert [task.id for task in tasks] == [
        "build-login-page-auth-architect",
        "build-login-page-auth-frontend",
        "build-login-page-auth-security",
        "build-login-page-auth-tests",
    ]
    assert by_step["frontend"].dependencies == ["build-login-page-auth-architect"]
    assert by_step["security"].dependencies == ["build-login-page-auth-frontend"]
    assert by_step["tests"].dependencies == [
        "build-login-page-auth-frontend",
        "build-login-page-auth-security",
    ]
    assert by_step["architect"].priority == 1
    assert all(task.tags[0] == "build" for task in tasks)
    assert by_step["tests"].config.tools == ["edit_file", "read_file", "run_command", "write_file"]


def test_build_goal_without_hints_uses_both_lanes_of_unknown_stack(tmp_path: Path) -> None:
    tasks = TaskDecomposer().decompose("Create a todo app", _context(tmp_path))
    roles = [task.agent_role for task in tasks]

    assert roles == ["architect", "backend", "frontend", "tester"]
    assert tasks[-1].dependencies == [tasks[1].id, tasks[2].id]


def test_fix_goal_analyzes_before_implementing(tmp_path: Path) -> None:
    tasks = TaskDecomposer().decompose("Fix the slow database query", _context(tmp_path))

    assert [(task.agent_role, task.dependencies) for task in tasks] == [
        ("researcher", []),
        ("backend", [tasks[0].id]),
        ("tester", [tasks[1].id]),
    ]


def test_unclassified_goal_becomes_single_research_task(tmp_path: Path) -> None:
    tasks = TaskDecomposer().decompose("Why is startup slow on Windows?", _context(tmp_path))

    assert len(tasks) == 1
    assert tasks[0].agent_role == "researcher"
    assert tasks[0].tags == ["research"]


def test_repeated_goal_gets_unique_ids(tmp_path: Path) -> None:
    first = TaskDecomposer().decompose("Document the API", _context(tmp_path))
    second = TaskDecomposer().decompose(
        "Document the API", _context(tmp_path, existing_tasks=first)
    )

    assert first[0].id == "document-api-docs"
    assert second[0].id == "document-api-2-docs"


def test_empty_goal_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(DecompositionError):
        TaskDecomposer().decompose("   ", _context(tmp_path))


def test_from_payload_accepts_aliases_and_capabilities(tmp_path: Path) -> None:
    payload = {
        "tasks": [
            {"id": "design", "description": "Design the API", "role": "planner", "priority": 1},
            {
                "id": "impl",
                "description": "Implement the API",
                "capabilities": ["api", "database"],
                "depends_on": ["design"],
                "config": {"tools": ["read_file", "edit_file"], "maxRetries": 0},
            },
            {
                "description": "Ship it",
                "agentRole": "devops",
                "dependencies": ["impl"],
                "requiresApproval": True,
            },
        ]
    }

    tasks = TaskDecomposer().from_payload(payload, _context(tmp_path))

    assert [task.id for task in tasks] == ["design", "impl", "task-003"]
    assert [task.agent_role for task in tasks] == ["architect", "backend", "devops"]
    assert tasks[1].config.tools == ["edit_file", "read_file"]
    assert tasks[1].config.max_retries == 0
    assert tasks[2].requires_approval is True


def test_validate_graph_rejects_cycles_with_path() -> None:
    tasks = [
        TaskNode(id="a", description="a", agent_role="backend", dependencies=["c"]),
        TaskNode(id="b", description="b", agent_role="backend", dependencies=["a"]),
        TaskNode(id="c", description="c", agent_role="backend", dependencies=["b"]),
    ]

    with pytest.raises(DecompositionError, match="cycle"):
        validate_graph(tasks)


def test_validate_graph_reports_missing_dependencies() -> None:
    tasks = [TaskNode(id="a", description="a", agent_role="backend", dependencies=["ghost"])]

    with pytest.raises(TaskDependencyError) as excinfo:
        validate_graph(tasks)

    assert excinfo.value.missing == ["ghost"]


def test_validate_graph_allows_dependencies_on_known_ids() -> None:
    tasks = [TaskNode(id="b", description="b", agent_role="tester", dependencies=["a"])]

    validate_graph(tasks, known_ids={"a"})


@pytest.mark.parametrize(
    "tasks",
    [
        [
            TaskNode(id="a", description="a", agent_role="backend"),
            TaskNode(id="a", description="again", agent_role="backend"),
        ],
        [TaskNode(id="a", description="a", agent_role="astronaut")],
        [TaskNode(id="a", description="a", agent_role="backend", dependencies=["a"])],
        [
            TaskNode(
                id="a",
                description="a",
                agent_role="backend",
                config=TaskConfig(tools=["format_disk"]),
            )
        ],
    ],
    ids=["duplicate-id", "unknown-role", "self-dependency", "unknown-tool"],
)
def test_validate_graph_rejects_invalid_batches(tasks: list[TaskNode]) -> None:
    with pytest.raises(DecompositionError):
        validate_graph(tasks)


def test_topological_order_respects_dependencies_then_priority() -> None:
    tasks = [
        TaskNode(id="tests", description="t", agent_role="tester", dependencies=["api", "ui"]),
        TaskNode(id="ui", description="u", agent_role="frontend", priority=3),
        TaskNode(id="api", description="a", agent_role="backend", priority=1),
    ]

    assert [task.id for task in topological_order(tasks)] == ["api", "ui", "tests"]


def test_parse_plan_output_finds_fenced_json() -> None:
    text = """
Here is the plan:

```json
{"tasks": [{"id": "one", "description": "First", "role": "backend"}]}
```
"""
    parsed = parse_plan_output(text)

    assert parsed == {"tasks": [{"id": "one", "description": "First", "role": "backend"}]}
    assert parse_plan_output("no plan here") is None


def test_load_plan_file_reads_toml_and_json(tmp_path: Path) -> None:
    toml_plan = tmp_path / "plan.toml"
    toml_plan.write_text(
        '[[tasks]]\nid = "one"\ndescription = "First"\nrole = "backend"\n', encoding="utf-8"
    )
    json_plan = tmp_path / "plan.json"
    json_plan.write_text(json.dumps([{"id": "two", "description": "Second"}]), encoding="utf-8")
    empty_plan = tmp_path / "plan.txt"
    empty_plan.write_text("nothing useful", encoding="utf-8")

    assert load_plan_file(toml_plan)["tasks"][0]["id"] == "one"
    assert load_plan_file(json_plan) == {"tasks": [{"id": "two", "description": "Second"}]}
    with pytest.raises(DecompositionError):
        load_plan_file(empty_plan)


def test_detect_repository_context_reads_stack_markers(tmp_path: Path) -> None:
    subprocess.run(["git", "init", "-b", "main"], cwd=tmp_path, check=True, capture_output=True)
    (tmp_path / "package.json").write_text(
        json.dumps({"dependencies": {"react": "^18.0.0"}}), encoding="utf-8"
    )
    subprocess.run(["git", "add", "package.json"], cwd=tmp_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com"]
        + ["commit", "-m", "seed"],
        cwd=tmp_path,
        check=True,
        capture_output=True,
    )

    context = detect_repository_context(tmp_path)

    assert context.languages == ["node"]
    assert context.frameworks == ["react"]
    assert context.has_frontend is True
    assert context.has_backend is False
    assert context.branch == "main"


def test_rejected_batch_leaves_nodes_untouched() -> None:
    design = TaskNode(
        id="design",
        description="Design",
        agent_role="planner",
        config=TaskConfig(tools=["write_file", "read_file"]),
    )
    impl = TaskNode(id="impl", description="Build", agent_role="backend", dependencies=["ghost"])

    with pytest.raises(TaskDependencyError):
        validate_graph([design, impl])

    assert design.agent_role == "planner"
    assert design.config.tools == ["write_file", "read_file"]

    impl.dependencies = ["design"]
    validate_graph([design, impl])

    assert design.agent_role == "architect"
    assert design.config.tools == ["read_file", "write_file"]
