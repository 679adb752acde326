from __future__ import annotations

from typing import Any

from ensemble.agents.base import AgentBackend, OutputChunk
from ensemble.models import TaskEnvelope

CLAUDE_TOOL_NAMES = {
    "read_file": ("Read",),
    "write_file": ("Write",),
    "edit_file": ("Edit",),
    "run_command": ("Bash",),
    "search": ("Grep", "Glob"),
}


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", model: str = "") -> None:
        super().__init__(binary or "claude", model)

    def build_command(self, envelope: TaskEnvelope, prompt: str) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            command.extend(["--model", self.model])
        if envelope.config.tools:
            allowed = [
                name
                for tool in envelope.config.tools
                for name in CLAUDE_TOOL_NAMES.get(tool, (tool,))
            ]
            command.extend(["--allowedTools", ",".join(allowed)])
        return command

    def interpret(self, event: dict[str, Any]) -> OutputChunk | None:
        if event.get("type") == "result":
            is_error = bool(event.get("is_error")) or event.get("subtype") not in (None, "success")
            result = event.get("result")
            output = result if isinstance(result, str) else ""
            metrics = {
                key: event[key]
                for key in ("duration_ms", "num_turns", "total_cost_usd")
                if key in event
            }
            return OutputChunk(
                kind="result",
                text=output,
                data={
                    "success": not is_error,
                    "output": output,
                    "error": (output or "agent error") if is_error else None,
                    "metrics": metrics,
                },
            )
        if event.get("type") == "assistant":
            message = event.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), list):
                for item in message["content"]:
                    if isinstance(item, dict) and item.get("type") == "tool_use":
                        return OutputChunk(
                            kind="progress",
                            text=self._extract_content(message),
                            data=event,
                            tool_name=str(item.get("name") or "tool"),
                        )
        return super().interpret(event)
