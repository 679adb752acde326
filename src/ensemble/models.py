from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "ready", "assigned", "running", "completed", "failed", "blocked"]
SessionStatus = Literal["idle", "busy", "terminated"]
ReleaseOutcome = Literal["completed", "failed", "cancelled"]
EventLevel = Literal["debug", "info", "warn", "error"]

TASK_STATUSES: tuple[str, ...] = (
    "pending",
    "ready",
    "assigned",
    "running",
    "completed",
    "failed",
    "blocked",
)
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "blocked"})
ACTIVE_TASK_STATUSES = frozenset({"assigned", "running"})
DEFAULT_PRIORITY = 5


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class TaskConfig:
    tools: list[str] | None = None
    timeout_seconds: float | None = None
    max_retries: int | None = None
    environment: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tools": list(self.tools) if self.tools is not None else None,
            "timeout_seconds": self.timeout_seconds,
            "max_retries": self.max_retries,
            "environment": dict(self.environment),
        }

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.tools:
            payload["tools"] = list(self.tools)
        if self.timeout_seconds is not None:
            payload["timeoutSeconds"] = self.timeout_seconds
        if self.max_retries is not None:
            payload["maxRetries"] = self.max_retries
        if self.environment:
            payload["environment"] = dict(self.environment)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TaskConfig:
        if not isinstance(payload, dict):
            return cls()
        tools = payload.get("tools")
        timeout = payload.get("timeout_seconds", payload.get("timeoutSeconds"))
        retries = payload.get("max_retries", payload.get("maxRetries"))
        environment = payload.get("environment") or {}
        return cls(
            tools=[str(tool) for tool in tools] if isinstance(tools, list) else None,
            timeout_seconds=float(timeout) if timeout is not None else None,
            max_retries=int(retries) if retries is not None else None,
            environment={str(key): str(value) for key, value in dict(environment).items()},
        )


@dataclass(slots=True)
class TaskMetrics:
    duration_seconds: float | None = None
    retries: int = 0
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_seconds": self.duration_seconds,
            "retries": self.retries,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TaskMetrics:
        if not isinstance(payload, dict):
            return cls()
        duration = payload.get("duration_seconds")
        return cls(
            duration_seconds=float(duration) if duration is not None else None,
            retries=int(payload.get("retries", 0)),
            attempts=int(payload.get("attempts", 0)),
        )


@dataclass(slots=True)
class TaskNode:
    id: str
    description: str
    agent_role: str
    dependencies: list[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    title: str = ""
    status: TaskStatus = "pending"
    assigned_session: str | None = None
    result: Any = None
    error: str | None = None
    metrics: TaskMetrics = field(default_factory=TaskMetrics)
    config: TaskConfig = field(default_factory=TaskConfig)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    assigned_at: str | None = None
    completed_at: str | None = None

    def __post_init__(self) -> None:
        seen: list[str] = []
        for dep_id in self.dependencies:
            if dep_id not in seen:
                seen.append(dep_id)
        self.dependencies = seen
        if not self.title:
            self.title = self.description.splitlines()[0][:80] if self.description else self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "agent_role": self.agent_role,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "status": self.status,
            "assigned_session": self.assigned_session,
            "result": self.result,
            "error": self.error,
            "metrics": self.metrics.to_dict(),
            "config": self.config.to_dict(),
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "requires_approval": self.requires_approval,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "assigned_at": self.assigned_at,
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class TaskEnvelope:
    id: str
    agent_role: str
    description: str
    priority: int
    dependencies: list[str]
    workspace: str
    config: TaskConfig = field(default_factory=TaskConfig)
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def for_task(cls, task: TaskNode, workspace: str) -> TaskEnvelope:
        metadata = dict(task.metadata)
        if task.title:
            metadata.setdefault("title", task.title)
        return cls(
            id=task.id,
            agent_role=task.agent_role,
            description=task.description,
            priority=task.priority,
            dependencies=list(task.dependencies),
            workspace=workspace,
            config=task.config,
            metadata=metadata,
            tags=list(task.tags),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "agentRole": self.agent_role,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "workspace": self.workspace,
            "config": self.config.to_wire(),
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        if self.tags:
            payload["tags"] = list(self.tags)
        return payload


@dataclass(slots=True)
class AgentSession:
    id: str
    task_id: str
    agent_role: str
    workspace_path: str
    branch_name: str
    status: SessionStatus = "idle"
    pid: int | None = None
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "agent_role": self.agent_role,
            "workspace_path": self.workspace_path,
            "branch_name": self.branch_name,
            "status": self.status,
            "pid": self.pid,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "metrics": dict(self.metrics),
        }


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: str = ""
    error: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metrics": dict(self.metrics),
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class TransparencyEvent:
    type: str
    message: str = ""
    source: str = "scheduler"
    level: EventLevel = "info"
    session_id: str | None = None
    agent_id: str | None = None
    task_id: str | None = None
    tool_name: str | None = None
    duration: float | None = None
    success: bool | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "source": self.source,
            "level": self.level,
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "tool_name": self.tool_name,
            "duration": self.duration,
            "success": self.success,
            "error": self.error,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class RunReport:
    run_id: str
    goal: str
    started_at: str
    ended_at: str | None = None
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    cancelled: bool = False
    aborted: str | None = None

    @property
    def ok(self) -> bool:
        return not (self.failed or self.blocked or self.pending) and self.aborted is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "goal": self.goal,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "ok": self.ok,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "blocked": list(self.blocked),
            "pending": list(self.pending),
            "rejected": list(self.rejected),
            "cancelled": self.cancelled,
            "aborted": self.aborted,
        }
