"""Agent process lifecycle: spawn, stream, await, terminate.

Each session owns one agent process running inside one task workspace. Output is read by a
single reader task per session into a bounded buffer; when the buffer is full the oldest
progress chunk is dropped, while result and end chunks are always kept. Terminating a session
releases its workspace exactly once, whichever path (success, failure, timeout, cancellation)
gets there first.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from ensemble.agents.base import AgentBackend, OutputChunk, StreamParser
from ensemble.config import AgentConfig
from ensemble.errors import (
    AgentSpawnError,
    AgentTimeoutError,
    StoreWriteError,
    WorkspaceConflict,
    WorkspaceError,
)
from ensemble.models import (
    AgentResult,
    AgentSession,
    ReleaseOutcome,
    TaskEnvelope,
    TaskNode,
    utcnow_iso,
)
from ensemble.workspaces import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
READER_DRAIN_SECONDS = 1.0
READ_CHUNK_BYTES = 64 * 1024


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield the stream's lines whatever their length; the last may lack its newline."""
    pending = bytearray()
    while True:
        block = await stream.read(READ_CHUNK_BYTES)
        if not block:
            break
        pending.extend(block)
        start = 0
        end = pending.find(b"\n", start)
        while end >= 0:
            yield bytes(pending[start : end + 1])
            start = end + 1
            end = pending.find(b"\n", start)
        del pending[:start]
    if pending:
        yield bytes(pending)


def _render_output(output: Any) -> str:
    return "" if output is None else json.dumps(output, ensure_ascii=False)


class ChunkBuffer:
    """Bounded FIFO of output chunks that sheds the oldest progress chunk when full."""

    def __init__(self, maxsize: int) -> None:
        self.maxsize = max(1, maxsize)
        self.dropped = 0
        self._items: deque[OutputChunk] = deque()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    def put(self, chunk: OutputChunk) -> None:
        if len(self._items) >= self.maxsize:
            for index, queued in enumerate(self._items):
                if queued.kind == "progress":
                    del self._items[index]
                    self.dropped += 1
                    break
        self._items.append(chunk)
        self._ready.set()

    async def get(self) -> OutputChunk:
        while not self._items:
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()


@dataclass(slots=True)
class _SessionRuntime:
    session: AgentSession
    task: TaskNode
    workspace: Workspace
    process: asyncio.subprocess.Process
    buffer: ChunkBuffer
    started: float
    reader: asyncio.Task[None] | None = None
    progress: list[str] = field(default_factory=list)
    result: OutputChunk | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    chunks: int = 0
    terminated: bool = False


class AgentSessionManager:
    def __init__(
        self,
        backend: AgentBackend,
        workspaces: WorkspaceManager,
        config: AgentConfig | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        session_hook: Callable[[AgentSession], None] | None = None,
    ) -> None:
        self.backend = backend
        self.workspaces = workspaces
        self.config = config or AgentConfig()
        self.event_hook = event_hook
        self.session_hook = session_hook
        self._sessions: dict[str, _SessionRuntime] = {}

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _record(self, session: AgentSession) -> None:
        if self.session_hook is not None:
            self.session_hook(session)

    def active(self) -> list[AgentSession]:
        return [runtime.session for runtime in self._sessions.values()]

    def _runtime(self, session: AgentSession) -> _SessionRuntime:
        runtime = self._sessions.get(session.task_id)
        if runtime is None or runtime.session.id != session.id:
            raise KeyError(f"Unknown or finished session: {session.id}")
        return runtime

    async def spawn(self, task: TaskNode, workspace: Workspace) -> AgentSession:
        if task.id in self._sessions:
            raise WorkspaceConflict(f"Task '{task.id}' already has an active session.")
        envelope = TaskEnvelope.for_task(task, str(workspace.path))
        prompt = self.backend.build_prompt(envelope)
        command = self.backend.build_command(envelope, prompt)
        payload = self.backend.stdin_payload(envelope)

        env = os.environ.copy()
        env.update(task.config.environment)
        env["ENSEMBLE_TASK_ID"] = task.id
        env["ENSEMBLE_TASK_ENVELOPE"] = json.dumps(envelope.to_wire(), ensure_ascii=False)
        env["ENSEMBLE_WORKSPACE"] = str(workspace.path)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace.path),
                env=env,
                stdin=(
                    asyncio.subprocess.PIPE if payload is not None else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            await self.workspaces.release(task.id, "failed")
            self._emit(
                {
                    "type": "agent_spawn_failed",
                    "task_id": task.id,
                    "level": "error",
                    "success": False,
                    "error": str(exc),
                    "message": f"Could not start {self.backend.name} agent",
                }
            )
            raise AgentSpawnError(
                f"Could not start agent '{command[0]}' for task '{task.id}': {exc}"
            ) from exc

        session = AgentSession(
            id=f"session-{uuid4().hex[:12]}",
            task_id=task.id,
            agent_role=task.agent_role,
            workspace_path=str(workspace.path),
            branch_name=workspace.branch,
            status="busy",
            pid=process.pid,
        )
        runtime = _SessionRuntime(
            session=session,
            task=task,
            workspace=workspace,
            process=process,
            buffer=ChunkBuffer(self.config.stream_buffer),
            started=time.monotonic(),
        )
        self._sessions[task.id] = runtime
        self._record(session)
        runtime.reader = asyncio.create_task(
            self._read_output(runtime, payload), name=f"ensemble-reader-{session.id}"
        )
        logger.info("Spawned %s agent pid=%s for task %s", self.backend.name, process.pid, task.id)
        return session

    async def _write_stdin(self, process: asyncio.subprocess.Process, payload: bytes) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(payload)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent pid=%s closed stdin before reading the envelope", process.pid)
        finally:
            process.stdin.close()

    async def _drain_stderr(self, runtime: _SessionRuntime) -> None:
        stream = runtime.process.stderr
        if stream is None:
            return
        async for raw_line in iter_lines(stream):
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                runtime.stderr_tail.append(line)

    async def _read_output(self, runtime: _SessionRuntime, payload: bytes | None) -> None:
        process = runtime.process
        parser = StreamParser(self.backend)
        stderr_task = asyncio.create_task(self._drain_stderr(runtime))
        try:
            if payload is not None:
                await self._write_stdin(process, payload)
            if process.stdout is not None:
                async for raw_line in iter_lines(process.stdout):
                    for chunk in parser.feed(raw_line.decode("utf-8", errors="replace")):
                        self._accept_chunk(runtime, chunk)
            for chunk in parser.flush():
                self._accept_chunk(runtime, chunk)
            await stderr_task
            await process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            runtime.buffer.put(OutputChunk(kind="end", data={"exit_code": process.returncode}))

    def _accept_chunk(self, runtime: _SessionRuntime, chunk: OutputChunk) -> None:
        runtime.chunks += 1
        if chunk.kind == "result":
            runtime.result = chunk
        elif chunk.text:
            runtime.progress.append(chunk.text)
        if chunk.tool_name:
            self._emit(
                {
                    "type": "agent_tool",
                    "task_id": runtime.task.id,
                    "session_id": runtime.session.id,
                    "agent_id": runtime.task.agent_role,
                    "tool_name": chunk.tool_name,
                    "message": chunk.text[:200],
                    "source": "agent",
                }
            )
        runtime.buffer.put(chunk)

    async def stream(self, session: AgentSession) -> AsyncIterator[OutputChunk]:
        """Yield the session's output chunks; the last one has ``kind == "end"``."""
        runtime = self._runtime(session)
        while True:
            chunk = await runtime.buffer.get()
            yield chunk
            if chunk.kind == "end":
                return

    async def await_result(
        self, session: AgentSession, timeout_seconds: float | None = None
    ) -> AgentResult:
        runtime = self._runtime(session)
        if runtime.reader is None:
            raise KeyError(f"Session has no output reader: {session.id}")
        try:
            await asyncio.wait_for(asyncio.shield(runtime.reader), timeout_seconds)
        except TimeoutError:
            logger.warning("Task %s timed out after %ss", session.task_id, timeout_seconds)
            await self.terminate(session, "failed")
            raise AgentTimeoutError(session.task_id, float(timeout_seconds or 0.0)) from None
        except asyncio.CancelledError:
            await self.terminate(session, "cancelled")
            raise
        except Exception as exc:
            logger.error("Output reader for task %s failed: %s", session.task_id, exc)
            await self.terminate(session, "failed")
            if isinstance(exc, StoreWriteError):
                raise
            result = self._build_result(runtime)
            result.success = False
            result.error = f"Agent output could not be read: {exc}"
            return result

        result = self._build_result(runtime)
        if result.success:
            try:
                commit = await self.workspaces.commit(
                    session.task_id, runtime.task.title or session.task_id
                )
            except WorkspaceError as exc:
                result.success = False
                result.error = f"Failed to commit workspace changes: {exc}"
            else:
                result.metrics["commit"] = commit
                result.metrics["branch"] = runtime.workspace.branch
        await self.terminate(session, "completed" if result.success else "failed")
        return result

    def _build_result(self, runtime: _SessionRuntime) -> AgentResult:
        exit_code = runtime.process.returncode
        stderr_text = "\n".join(runtime.stderr_tail)
        metrics: dict[str, Any] = {
            "duration_seconds": round(time.monotonic() - runtime.started, 3),
            "chunks": runtime.chunks,
            "dropped_chunks": runtime.buffer.dropped,
            "exit_code": exit_code,
        }
        if runtime.result is not None:
            data = runtime.result.data
            reported = data.get("metrics")
            if isinstance(reported, dict):
                metrics = {**reported, **metrics}
            success = bool(data.get("success")) and exit_code == 0
            output = data.get("output")
            error = data.get("error")
            if not success and not error:
                error = stderr_text or f"Agent exited with code {exit_code}"
            return AgentResult(
                success=success,
                output=output if isinstance(output, str) else _render_output(output),
                error=str(error) if error else None,
                metrics=metrics,
                exit_code=exit_code,
            )
        success = exit_code == 0
        return AgentResult(
            success=success,
            output="\n".join(runtime.progress),
            error=None if success else (stderr_text or f"Agent exited with code {exit_code}"),
            metrics=metrics,
            exit_code=exit_code,
        )

    async def terminate(self, session: AgentSession, outcome: ReleaseOutcome = "cancelled") -> bool:
        """Stop the agent and release its workspace. Only the first call has any effect."""
        runtime = self._sessions.get(session.task_id)
        if runtime is None or runtime.session.id != session.id or runtime.terminated:
            return False
        runtime.terminated = True

        process = runtime.process
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), self.config.terminate_grace_seconds)
            except TimeoutError:
                logger.warning("Agent pid=%s ignored SIGTERM; killing", process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        reader = runtime.reader
        if reader is not None and not reader.done():
            done, _ = await asyncio.wait({reader}, timeout=READER_DRAIN_SECONDS)
            if not done:
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)

        session.status = "terminated"
        session.ended_at = utcnow_iso()
        session.metrics.update(
            {
                "exit_code": process.returncode,
                "chunks": runtime.chunks,
                "duration_seconds": round(time.monotonic() - runtime.started, 3),
                "outcome": outcome,
            }
        )
        self._sessions.pop(session.task_id, None)
        try:
            self._record(session)
        finally:
            await self.workspaces.release(session.task_id, outcome)
        logger.info("Terminated session %s (%s)", session.id, outcome)
        return True

    async def terminate_all(self, outcome: ReleaseOutcome = "cancelled") -> None:
        sessions = [runtime.session for runtime in self._sessions.values()]
        await asyncio.gather(*(self.terminate(session, outcome) for session in sessions))
