from __future__ import annotations

from typing import Any

from ensemble.agents.base import AgentBackend, OutputChunk
from ensemble.models import TaskEnvelope


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", model: str = "") -> None:
        super().__init__(binary or "codex", model)

    def build_command(self, envelope: TaskEnvelope, prompt: str) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if self.model:
            command.extend(["-m", self.model])
        command.append(prompt)
        return command

    def interpret(self, event: dict[str, Any]) -> OutputChunk | None:
        item = event.get("item")
        if isinstance(item, dict):
            item_type = str(item.get("type", ""))
            if item_type in {"command_execution", "mcp_tool_call", "file_change"}:
                return OutputChunk(
                    kind="progress",
                    text=str(item.get("command") or ""),
                    data=event,
                    tool_name=item_type,
                )
            text = item.get("text")
            if isinstance(text, str) and text:
                return OutputChunk(kind="progress", text=text, data=event)
        return super().interpret(event)
