from __future__ import annotations

import json

from ensemble.agents.base import AgentBackend
from ensemble.errors import AgentSpawnError
from ensemble.models import TaskEnvelope


class CommandBackend(AgentBackend):
    """Runs an arbitrary executable that reads the task envelope as JSON on stdin.

    ``{prompt}``, ``{task_id}`` and ``{workspace}`` placeholders in the argv are substituted.
    """

    name = "command"

    def __init__(self, command: list[str]) -> None:
        if not command:
            raise AgentSpawnError("Command backend requires a non-empty [agent] command.")
        super().__init__(command[0])
        self.command = list(command)

    def build_command(self, envelope: TaskEnvelope, prompt: str) -> list[str]:
        values = {"prompt": prompt, "task_id": envelope.id, "workspace": envelope.workspace}
        rendered = [self.command[0]]
        for arg in self.command[1:]:
            for key, value in values.items():
                arg = arg.replace("{" + key + "}", value)
            rendered.append(arg)
        return rendered

    def stdin_payload(self, envelope: TaskEnvelope) -> bytes | None:
        return (json.dumps(envelope.to_wire(), ensure_ascii=False) + "\n").encode("utf-8")
