import asyncio
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from ensemble.agents import CommandBackend
from ensemble.agents.base import OutputChunk
from ensemble.config import AgentConfig
from ensemble.errors import AgentSpawnError, AgentTimeoutError
from ensemble.models import AgentSession, TaskNode
from ensemble.sessions import AgentSessionManager, ChunkBuffer
from ensemble.workspaces import WorkspaceManager

WRITE_AND_REPORT = """
import json, os, sys
envelope = json.loads(sys.stdin.readline())
with open("result.txt", "w") as handle:
    handle.write(envelope["id"])
print("working on", envelope["id"], flush=True)
print(json.dumps({"tool": "write_file", "content": "wrote result.txt"}), flush=True)
print(json.dumps({"success": True, "output": "wrote " + os.environ["ENSEMBLE_TASK_ID"]}))
"""

REPORT_FAILURE = """
import json, sys
sys.stdin.read()
print(json.dumps({"success": False, "error": "tests failed"}))
"""

CRASH = """
import sys
sys.stdin.read()
print("fatal: something broke", file=sys.stderr)
sys.exit(3)
"""

HANG = """
import sys, time
sys.stdin.read()
print("starting", flush=True)
time.sleep(60)
"""


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    for args in (
        ["init", "-b", "main"],
        ["config", "user.email", "test@example.com"],
        ["config", "user.name", "Test User"],
    ):
        subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"], cwd=repo_path, check=True, capture_output=True
    )


def _manager(
    repo: Path, script: str, events: list[dict[str, Any]], sessions: list[str]
) -> AgentSessionManager:
    return AgentSessionManager(
        CommandBackend([sys.executable, "-c", script]),
        WorkspaceManager(repo),
        AgentConfig(terminate_grace_seconds=1.0),
        event_hook=events.append,
        session_hook=lambda session: sessions.append(session.status),
    )


def _task(task_id: str = "t1") -> TaskNode:
    return TaskNode(
        id=task_id, title="Write result", description="Write result", agent_role="backend"
    )


def test_successful_agent_commits_workspace_and_releases_it(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    events: list[dict[str, Any]] = []
    statuses: list[str] = []
    manager = _manager(repo, WRITE_AND_REPORT, events, statuses)

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        chunks = [chunk async for chunk in manager.stream(session)]
        result = await manager.await_result(session, timeout_seconds=30)
        return session, chunks, result

    session, chunks, result = asyncio.run(scenario())

    assert result.success is True
    assert result.output == "wrote t1"
    assert result.exit_code == 0
    assert result.metrics["commit"]
    assert [chunk.kind for chunk in chunks] == ["progress", "progress", "result", "end"]
    assert session.status == "terminated"
    assert statuses == ["busy", "terminated"]
    assert [event["tool_name"] for event in events if event["type"] == "agent_tool"] == [
        "write_file"
    ]
    shown = subprocess.run(
        ["git", "show", "ensemble/task-t1:result.txt"],
        cwd=repo,
        check=True,
        text=True,
        capture_output=True,
    )
    assert shown.stdout == "t1"
    assert manager.workspaces.active() == {}


def test_reported_failure_discards_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = _manager(repo, REPORT_FAILURE, [], [])

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        return await manager.await_result(session, timeout_seconds=30)

    result = asyncio.run(scenario())

    assert result.success is False
    assert result.error == "tests failed"
    branches = subprocess.run(
        ["git", "branch", "--list", "ensemble/*"], cwd=repo, text=True, capture_output=True
    ).stdout
    assert branches.strip() == ""


def test_nonzero_exit_without_result_uses_stderr_tail(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = _manager(repo, CRASH, [], [])

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        return await manager.await_result(session, timeout_seconds=30)

    result = asyncio.run(scenario())

    assert result.success is False
    assert result.exit_code == 3
    assert "something broke" in (result.error or "")


def test_timeout_terminates_agent_and_releases_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    statuses: list[str] = []
    manager = _manager(repo, HANG, [], statuses)

    async def scenario() -> AgentSession:
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        with pytest.raises(AgentTimeoutError):
            await manager.await_result(session, timeout_seconds=0.5)
        assert await manager.terminate(session) is False
        return session

    session = asyncio.run(scenario())

    assert session.status == "terminated"
    assert session.metrics["outcome"] == "failed"
    assert statuses == ["busy", "terminated"]
    assert manager.active() == []
    assert manager.workspaces.active() == {}


def test_spawn_failure_releases_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    events: list[dict[str, Any]] = []
    manager = AgentSessionManager(
        CommandBackend([str(tmp_path / "missing-agent")]),
        WorkspaceManager(repo),
        event_hook=events.append,
    )

    async def scenario() -> None:
        workspace = await manager.workspaces.acquire("t1")
        with pytest.raises(AgentSpawnError):
            await manager.spawn(_task(), workspace)

    asyncio.run(scenario())

    assert manager.workspaces.active() == {}
    assert events[-1]["type"] == "agent_spawn_failed"


def test_chunk_buffer_drops_oldest_progress_first() -> None:
    async def scenario() -> tuple[list[str], int]:
        buffer = ChunkBuffer(maxsize=2)
        buffer.put(OutputChunk(kind="progress", text="a"))
        buffer.put(OutputChunk(kind="result", text="r"))
        buffer.put(OutputChunk(kind="progress", text="b"))
        buffer.put(OutputChunk(kind="end"))
        kept = [(await buffer.get()).kind for _ in range(len(buffer))]
        return kept, buffer.dropped

    kept, dropped = asyncio.run(scenario())

    assert kept == ["result", "end"]
    assert dropped == 2


LONG_LINES = """
import json, sys
sys.stdin.read()
print("x" * 150000, flush=True)
print(json.dumps({"success": True, "output": "y" * 200000}))
"""

BARE_RESULT = """
import json, sys
sys.stdin.read()
print(json.dumps({"success": True}))
"""


class ExplodingBackend(CommandBackend):
    def interpret(self, event):
        raise RuntimeError("cannot interpret agent event")


def test_lines_longer_than_the_stream_limit_are_read_whole(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = _manager(repo, LONG_LINES, [], [])

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        return await manager.await_result(session, timeout_seconds=30)

    result = asyncio.run(scenario())

    assert result.success is True
    assert result.output == "y" * 200000
    assert manager.workspaces.active() == {}


def test_result_without_output_is_empty_text(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = _manager(repo, BARE_RESULT, [], [])

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        return await manager.await_result(session, timeout_seconds=30)

    result = asyncio.run(scenario())

    assert result.success is True
    assert result.output == ""


def test_reader_crash_fails_session_and_releases_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    statuses: list[str] = []
    manager = AgentSessionManager(
        ExplodingBackend([sys.executable, "-c", BARE_RESULT]),
        WorkspaceManager(repo),
        AgentConfig(terminate_grace_seconds=1.0),
        session_hook=lambda session: statuses.append(session.status),
    )

    async def scenario():
        workspace = await manager.workspaces.acquire("t1")
        session = await manager.spawn(_task(), workspace)
        result = await manager.await_result(session, timeout_seconds=30)
        return session, result

    session, result = asyncio.run(scenario())

    assert result.success is False
    assert "cannot interpret agent event" in (result.error or "")
    assert session.metrics["outcome"] == "failed"
    assert statuses == ["busy", "terminated"]
    assert manager.active() == []
    assert manager.workspaces.active() == {}
    branches = subprocess.run(
        ["git", "branch", "--list", "ensemble/*"], cwd=repo, text=True, capture_output=True
    ).stdout
    assert branches.strip() == ""
