from ensemble.agents.base import AgentBackend, OutputChunk, StreamParser
from ensemble.agents.claude import ClaudeCodeBackend
from ensemble.agents.codex import CodexBackend
from ensemble.agents.command import CommandBackend
from ensemble.config import AgentConfig


def create_backend(config: AgentConfig) -> AgentBackend:
    if config.backend == "claude":
        return ClaudeCodeBackend(binary=config.binary, model=config.model)
    if config.backend == "codex":
        return CodexBackend(binary=config.binary, model=config.model)
    if config.backend == "command":
        return CommandBackend(config.command)
    raise ValueError(f"Unknown agent backend: {config.backend}")


__all__ = [
    "AgentBackend",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "OutputChunk",
    "StreamParser",
    "create_backend",
]
