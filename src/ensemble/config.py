from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "command"]
RetryStrategy = Literal["none", "fixed", "exponential"]

STATE_DIR = ".ensemble"
DEFAULT_CONFIG_FILE = "ensemble.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class SchedulerConfig:
    max_parallel_agents: int = 4
    max_retries: int = 2
    task_timeout_seconds: float = 900.0
    retry_strategy: RetryStrategy = "none"
    retry_backoff_seconds: float = 0.0
    retry_max_backoff_seconds: float = 60.0


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    command: list[str] = field(default_factory=list)
    model: str = ""
    terminate_grace_seconds: float = 5.0
    stream_buffer: int = 256


@dataclass(slots=True)
class WorkspaceConfig:
    base_dir: str = f"{STATE_DIR}/worktrees"
    branch_prefix: str = "ensemble/task-"
    integration_branch: str = ""
    preserve_failed: bool = False


@dataclass(slots=True)
class ApprovalConfig:
    roles: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=lambda: ["needs-approval"])


@dataclass(slots=True)
class StoreConfig:
    path: str = f"{STATE_DIR}/coordination.db"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class EnsembleConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> EnsembleConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EnsembleConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            agent=AgentConfig(**data.get("agent", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            approval=ApprovalConfig(**data.get("approval", {})),
            store=StoreConfig(**data.get("store", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "scheduler": {
                "max_parallel_agents": self.scheduler.max_parallel_agents,
                "max_retries": self.scheduler.max_retries,
                "task_timeout_seconds": self.scheduler.task_timeout_seconds,
                "retry_strategy": self.scheduler.retry_strategy,
                "retry_backoff_seconds": self.scheduler.retry_backoff_seconds,
                "retry_max_backoff_seconds": self.scheduler.retry_max_backoff_seconds,
            },
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "command": list(self.agent.command),
                "model": self.agent.model,
                "terminate_grace_seconds": self.agent.terminate_grace_seconds,
                "stream_buffer": self.agent.stream_buffer,
            },
            "workspace": {
                "base_dir": self.workspace.base_dir,
                "branch_prefix": self.workspace.branch_prefix,
                "integration_branch": self.workspace.integration_branch,
                "preserve_failed": self.workspace.preserve_failed,
            },
            "approval": {
                "roles": list(self.approval.roles),
                "tags": list(self.approval.tags),
            },
            "store": {
                "path": self.store.path,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EnsembleConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "scheduler",
        "agent",
        "workspace",
        "approval",
        "store",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EnsembleConfig:
    if not path.exists():
        return EnsembleConfig.default()
    return EnsembleConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: EnsembleConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
