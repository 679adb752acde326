from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from ensemble.models import TaskEnvelope
from ensemble.roles import ROLE_PROFILES

ChunkKind = Literal["progress", "result", "end"]

RESULT_INSTRUCTIONS = """
When you are done, print one final JSON line:
{"success": true|false, "output": "<summary of what changed>", "error": "<reason if failed>"}
""".strip()


@dataclass(slots=True)
class OutputChunk:
    kind: ChunkKind
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    tool_name: str | None = None


class AgentBackend(ABC):
    """Describes how to launch one kind of agent CLI and how to read its output."""

    name = "agent"

    def __init__(self, binary: str, model: str = "") -> None:
        self.binary = binary
        self.model = model

    @abstractmethod
    def build_command(self, envelope: TaskEnvelope, prompt: str) -> list[str]:
        """Return the argv used to launch the agent for this envelope."""

    def stdin_payload(self, envelope: TaskEnvelope) -> bytes | None:
        return None

    def build_prompt(self, envelope: TaskEnvelope) -> str:
        profile = ROLE_PROFILES.get(envelope.agent_role)
        parts = []
        if profile is not None:
            parts.append(profile.prompt)
        parts.append(f"Task: {envelope.description}")
        parts.append("Task envelope JSON:")
        parts.append(json.dumps(envelope.to_wire(), ensure_ascii=False, indent=2))
        if envelope.config.tools:
            parts.append("Allowed tools:")
            parts.append(json.dumps(envelope.config.tools, ensure_ascii=False))
        parts.append(RESULT_INSTRUCTIONS)
        return "\n\n".join(parts)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return AgentBackend._extract_content(message)
        return ""

    @staticmethod
    def _tool_name(event: dict[str, Any]) -> str | None:
        for key in ("tool_name", "tool"):
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def interpret(self, event: dict[str, Any]) -> OutputChunk | None:
        """Map one decoded JSON event to a chunk, or None to ignore it."""
        if isinstance(event.get("success"), bool):
            output = event.get("output")
            return OutputChunk(
                kind="result",
                text=output if isinstance(output, str) else "",
                data=event,
            )
        content = self._extract_content(event)
        tool_name = self._tool_name(event)
        if not content and tool_name is None:
            return None
        return OutputChunk(kind="progress", text=content, data=event, tool_name=tool_name)


class StreamParser:
    """Turns raw stdout lines into chunks, buffering JSON objects split across lines."""

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend
        self._buffer = ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, raw_line: str) -> list[OutputChunk]:
        line = raw_line.strip()
        if not line:
            return []
        candidate = f"{self._buffer}{line}" if self._buffer else line
        try:
            event = json.loads(candidate)
            self._buffer = ""
        except json.JSONDecodeError:
            if candidate.startswith(("{", "[")) and self._appears_partial_json(candidate):
                self._buffer = candidate
                return []
            self._buffer = ""
            return [OutputChunk(kind="progress", text=candidate)]

        if not isinstance(event, dict):
            return [OutputChunk(kind="progress", text=candidate)]
        chunk = self.backend.interpret(event)
        return [chunk] if chunk is not None else []

    def flush(self) -> list[OutputChunk]:
        if not self._buffer:
            return []
        leftover, self._buffer = self._buffer, ""
        return [OutputChunk(kind="progress", text=leftover)]
