from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

AgentRole = Literal[
    "architect",
    "backend",
    "frontend",
    "tester",
    "researcher",
    "security",
    "devops",
    "documenter",
]

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}


@dataclass(frozen=True, slots=True)
class RoleProfile:
    role: AgentRole
    capabilities: frozenset[str]
    default_tools: tuple[str, ...]
    prompt: str
    aliases: tuple[str, ...] = field(default_factory=tuple)


ROLE_PROFILES: dict[str, RoleProfile] = {
    "architect": RoleProfile(
        role="architect",
        capabilities=frozenset({"design", "planning", "interfaces", "documentation"}),
        default_tools=("read_file", "search", "write_file"),
        prompt="""
You are the Architect specialist.
Design the technical approach, interfaces and module boundaries before implementation.
Write decisions down in the repository so later tasks can follow them.
""".strip(),
        aliases=("planner", "design", "system-architect"),
    ),
    "backend": RoleProfile(
        role="backend",
        capabilities=frozenset({"api", "database", "services", "implementation"}),
        default_tools=("read_file", "write_file", "edit_file", "run_command", "search"),
        prompt="""
You are the Backend Engineer specialist.
Implement services, APIs and persistence exactly as planned.
Match repository conventions and keep changes scoped to the task.
""".strip(),
        aliases=("coder", "server", "api"),
    ),
    "frontend": RoleProfile(
        role="frontend",
        capabilities=frozenset({"ui", "components", "styling", "implementation"}),
        default_tools=("read_file", "write_file", "edit_file", "run_command", "search"),
        prompt="""
You are the Frontend Engineer specialist.
Build user interface components and client state for the task.
Follow the existing component structure and styling conventions.
""".strip(),
        aliases=("ui", "client", "web"),
    ),
    "tester": RoleProfile(
        role="tester",
        capabilities=frozenset({"testing", "verification", "quality"}),
        default_tools=("read_file", "write_file", "edit_file", "run_command"),
        prompt="""
You are the Tester specialist.
Write and run tests that verify the behaviour described in the task.
Report failures with the exact command and output.
""".strip(),
        aliases=("testing", "qa", "test"),
    ),
    "researcher": RoleProfile(
        role="researcher",
        capabilities=frozenset({"analysis", "debugging", "investigation"}),
        default_tools=("read_file", "search", "run_command"),
        prompt="""
You are the Researcher specialist.
Investigate the codebase, find root causes and summarise findings for the next task.
Do not change production code.
""".strip(),
        aliases=("research", "analyst", "investigator"),
    ),
    "security": RoleProfile(
        role="security",
        capabilities=frozenset({"security", "review", "auth"}),
        default_tools=("read_file", "search", "run_command"),
        prompt="""
You are the Security Reviewer specialist.
Review the changes for authentication, authorisation, injection and secret-handling flaws.
Fix BLOCKER findings directly and list the rest.
""".strip(),
        aliases=("sec", "security-review", "critic"),
    ),
    "devops": RoleProfile(
        role="devops",
        capabilities=frozenset({"deployment", "ci", "infrastructure"}),
        default_tools=("read_file", "write_file", "edit_file", "run_command"),
        prompt="""
You are the DevOps specialist.
Prepare build, CI and deployment configuration for the task.
Never touch production credentials.
""".strip(),
        aliases=("ops", "deploy", "infra"),
    ),
    "documenter": RoleProfile(
        role="documenter",
        capabilities=frozenset({"documentation", "writing"}),
        default_tools=("read_file", "write_file", "edit_file", "search"),
        prompt="""
You are the Documentation specialist.
Update READMEs, guides and changelogs to describe the change accurately.
""".strip(),
        aliases=("docs", "documentation", "writer"),
    ),
}

_ALIASES: dict[str, str] = {
    alias: name for name, profile in ROLE_PROFILES.items() for alias in profile.aliases
}


def resolve_role(name: str | None) -> str | None:
    if not name:
        return None
    normalized = str(name).strip().lower().replace("_", "-")
    if normalized in ROLE_PROFILES:
        return normalized
    return _ALIASES.get(normalized)


def role_profile(name: str) -> RoleProfile:
    resolved = resolve_role(name)
    if resolved is None:
        raise KeyError(f"Unknown agent role: {name}")
    return ROLE_PROFILES[resolved]


def match_role(capabilities: Iterable[str]) -> str | None:
    """Pick the role whose capabilities cover the most of the requested ones."""
    wanted = {str(item).strip().lower() for item in capabilities if str(item).strip()}
    if not wanted:
        return None
    best_role: str | None = None
    best_score = 0
    for name, profile in ROLE_PROFILES.items():
        score = len(wanted & profile.capabilities)
        if score > best_score:
            best_role, best_score = name, score
    return best_role


def normalize_tools(tools: Iterable[str] | None) -> list[str] | None:
    if not tools:
        return None
    normalized = sorted({str(tool).strip() for tool in tools if str(tool).strip()})
    unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
    if unknown:
        raise ValueError("Tool policy rejected unknown tools: " + ", ".join(unknown))
    return normalized
