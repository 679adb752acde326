"""Dependency-aware parallel execution of a task graph.

The scheduler is the only coordinator. It repeatedly computes the ready set (pending tasks
whose dependencies have all completed), orders it by priority and insertion order, passes
each candidate through the approval gate, and dispatches approved tasks until the parallelism
cap is reached. Each dispatched task runs as its own ``asyncio.Task``: acquire a workspace,
spawn the agent, await its result. Every status change is written to the coordination store
before the in-memory graph is updated.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

from ensemble.approval import ApprovalGate
from ensemble.config import RetryStrategy, SchedulerConfig
from ensemble.decomposer import validate_graph
from ensemble.errors import (
    ApprovalRejected,
    EnsembleError,
    RunAborted,
    StoreWriteError,
)
from ensemble.models import (
    ACTIVE_TASK_STATUSES,
    AgentResult,
    AgentSession,
    ReleaseOutcome,
    RunReport,
    TaskMetrics,
    TaskNode,
    TransparencyEvent,
    utcnow_iso,
)
from ensemble.store import CoordinationStore, StatusChange
from ensemble.workspaces import Workspace

logger = logging.getLogger(__name__)

CANCELLED_BY_OPERATOR = "Cancelled by operator"


class WorkspaceProvider(Protocol):
    async def acquire(self, task_id: str) -> Workspace: ...

    async def release(self, task_id: str, outcome: ReleaseOutcome) -> bool: ...

    async def reset(self, task_id: str) -> bool: ...


class SessionProvider(Protocol):
    async def spawn(self, task: TaskNode, workspace: Workspace) -> AgentSession: ...

    async def await_result(
        self, session: AgentSession, timeout_seconds: float | None = None
    ) -> AgentResult: ...

    async def terminate(
        self, session: AgentSession, outcome: ReleaseOutcome = "cancelled"
    ) -> bool: ...

    async def terminate_all(self, outcome: ReleaseOutcome = "cancelled") -> None: ...


@dataclass(slots=True)
class RetryPolicy:
    strategy: RetryStrategy = "none"
    backoff_seconds: float = 0.0
    max_backoff_seconds: float = 60.0
    jitter: float = 0.0

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> RetryPolicy:
        return cls(
            strategy=config.retry_strategy,
            backoff_seconds=config.retry_backoff_seconds,
            max_backoff_seconds=config.retry_max_backoff_seconds,
        )

    def delay_for(self, retry: int) -> float:
        """Seconds to wait before the given (1-based) retry may be dispatched."""
        if self.strategy == "none" or self.backoff_seconds <= 0:
            return 0.0
        if self.strategy == "fixed":
            delay = self.backoff_seconds
        else:
            delay = self.backoff_seconds * (2 ** max(retry - 1, 0))
        delay = min(delay, self.max_backoff_seconds)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter * delay)
        return delay


class ExecutionScheduler:
    def __init__(
        self,
        store: CoordinationStore,
        workspaces: WorkspaceProvider,
        sessions: SessionProvider,
        gate: ApprovalGate | None = None,
        config: SchedulerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        await_decisions: bool = False,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.sessions = sessions
        self.gate = gate
        self.config = config or SchedulerConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        # Keep waiting for approval decisions even without an attached operator.
        self.await_decisions = await_decisions

        self._tasks: dict[str, TaskNode] = {}
        self._order: dict[str, int] = {}
        self._dependents: dict[str, list[str]] = {}
        self._external: dict[str, str] = {}
        self._running: dict[str, asyncio.Task[None]] = {}
        self._not_before: dict[str, float] = {}
        self._rejected: list[str] = []
        self._cancel_requested: set[str] = set()
        self._cancelled = False
        self._wake: asyncio.Event | None = None

    # ------------------------------------------------------------------ graph index

    def _index(self, tasks: list[TaskNode], external: dict[str, str]) -> None:
        self._tasks = {task.id: task for task in tasks}
        self._order = {task.id: index for index, task in enumerate(tasks)}
        self._dependents = {task.id: [] for task in tasks}
        for task in tasks:
            for dep in task.dependencies:
                if dep in self._dependents:
                    self._dependents[dep].append(task.id)
        self._external = dict(external)
        self._running.clear()
        self._not_before.clear()
        self._rejected.clear()
        self._cancel_requested.clear()
        self._cancelled = False

    def _dependency_status(self, task_id: str) -> str | None:
        task = self._tasks.get(task_id)
        if task is not None:
            return task.status
        return self._external.get(task_id)

    def snapshot(self) -> dict[str, str]:
        return {task_id: task.status for task_id, task in self._tasks.items()}

    def ready_tasks(self) -> list[TaskNode]:
        now = time.monotonic()
        ready = [
            task
            for task in self._tasks.values()
            if task.status in {"pending", "ready"}
            and task.id not in self._running
            and self._not_before.get(task.id, 0.0) <= now
            and all(self._dependency_status(dep) == "completed" for dep in task.dependencies)
        ]
        ready.sort(key=lambda task: (task.priority, self._order[task.id]))
        return ready

    def _held(self) -> list[str]:
        return [task.id for task in self._tasks.values() if task.status == "ready"]

    def _next_retry_delay(self) -> float | None:
        now = time.monotonic()
        waits = [
            not_before - now
            for task_id, not_before in self._not_before.items()
            if not_before > now and self._tasks[task_id].status == "pending"
        ]
        return max(min(waits), 0.0) if waits else None

    # ------------------------------------------------------------------ transitions

    def _apply_changes(self, changes: list[StatusChange]) -> None:
        if not changes:
            return
        self.store.transition_many(changes)
        for change in changes:
            task = self._tasks[change.task_id]
            task.status = change.status
            for key, value in change.fields.items():
                setattr(task, key, value)
            task.updated_at = utcnow_iso()

    def _transition(
        self,
        task: TaskNode,
        status: str,
        message: str = "",
        level: str = "info",
        session_id: str | None = None,
        **fields: Any,
    ) -> None:
        self._apply_changes(
            [
                StatusChange(
                    task_id=task.id,
                    status=status,
                    fields=fields,
                    message=message,
                    level=level,
                    session_id=session_id,
                    metadata={"agent_role": task.agent_role},
                )
            ]
        )

    def _blocking_changes(self, roots: list[str], reason: str) -> list[StatusChange]:
        changes: list[StatusChange] = []
        seen = set(roots)
        queue = deque(roots)
        while queue:
            current = queue.popleft()
            for child_id in self._dependents.get(current, []):
                if child_id in seen:
                    continue
                seen.add(child_id)
                child = self._tasks[child_id]
                if child.status not in {"pending", "ready"}:
                    continue
                changes.append(
                    StatusChange(
                        task_id=child_id,
                        status="blocked",
                        fields={"error": reason},
                        message=reason,
                        level="warn",
                    )
                )
                queue.append(child_id)
        return changes

    def _fail_and_block(self, task: TaskNode, error: str, metrics: TaskMetrics) -> None:
        """Fail the task terminally and block every transitive dependent in one transaction."""
        changes = [
            StatusChange(
                task_id=task.id,
                status="failed",
                fields={"error": error, "metrics": metrics, "completed_at": utcnow_iso()},
                message=f"Task failed: {error}",
                level="error",
            )
        ]
        reason = f"Blocked by failed dependency '{task.id}'"
        changes.extend(self._blocking_changes([task.id], reason))
        self._apply_changes(changes)
        self._not_before.pop(task.id, None)
        logger.warning(
            "Task %s failed (%s); blocked %d dependent(s)", task.id, error, len(changes) - 1
        )

    def _block_unsatisfiable(self) -> None:
        roots = [dep for dep, status in self._external.items() if status in {"failed", "blocked"}]
        changes = self._blocking_changes(roots, "Blocked by a dependency that cannot complete")
        if changes:
            self._apply_changes(changes)

    # ------------------------------------------------------------------ dispatch

    def _max_retries_for(self, task: TaskNode) -> int:
        if task.config.max_retries is not None:
            return task.config.max_retries
        return self.config.max_retries

    def _timeout_for(self, task: TaskNode) -> float | None:
        timeout = task.config.timeout_seconds or self.config.task_timeout_seconds
        return timeout if timeout and timeout > 0 else None

    def _dispatch_ready(self) -> None:
        for task in self.ready_tasks():
            if len(self._running) >= self.config.max_parallel_agents:
                break
            state = self.gate.submit(task) if self.gate is not None else "approved"
            if state == "pending_approval":
                if task.status != "ready":
                    self._transition(task, "ready", message="Waiting for approval")
                continue
            if state == "rejected":
                self._rejected.append(task.id)
                self._fail_and_block(task, str(ApprovalRejected(task.id)), task.metrics)
                continue

            metrics = TaskMetrics(
                duration_seconds=task.metrics.duration_seconds,
                retries=task.metrics.retries,
                attempts=task.metrics.attempts + 1,
            )
            self._transition(
                task,
                "assigned",
                message=f"Assigned to a {task.agent_role} agent (attempt {metrics.attempts})",
                assigned_at=utcnow_iso(),
                metrics=metrics,
            )
            runner = asyncio.create_task(self._run_task(task), name=f"ensemble-task-{task.id}")
            runner.add_done_callback(self._notify)
            self._running[task.id] = runner

    def _notify(self, *_: object) -> None:
        if self._wake is not None:
            self._wake.set()

    def _metrics_after(self, task: TaskNode, started: float, retries: int) -> TaskMetrics:
        return TaskMetrics(
            duration_seconds=round(time.monotonic() - started, 3),
            retries=retries,
            attempts=task.metrics.attempts,
        )

    async def _run_task(self, task: TaskNode) -> None:
        started = time.monotonic()
        session: AgentSession | None = None
        try:
            if task.metrics.attempts > 1:
                await self.workspaces.reset(task.id)
            workspace = await self.workspaces.acquire(task.id)
            session = await self.sessions.spawn(task, workspace)
            self._transition(
                task,
                "running",
                message=f"Agent session {session.id} started",
                session_id=session.id,
                assigned_session=session.id,
            )
            result = await self.sessions.await_result(session, self._timeout_for(task))
        except asyncio.CancelledError:
            if session is not None:
                await self.sessions.terminate(session, "cancelled")
            else:
                await self.workspaces.release(task.id, "cancelled")
            if task.id in self._cancel_requested and not self._cancelled:
                metrics = self._metrics_after(task, started, task.metrics.retries)
                self._fail_and_block(task, CANCELLED_BY_OPERATOR, metrics)
                return
            raise
        except StoreWriteError:
            raise
        except EnsembleError as exc:
            self._handle_failure(task, str(exc), started, retriable=exc.retriable)
            return
        except Exception:
            if session is None:
                await self.workspaces.release(task.id, "failed")
            raise

        if result.success:
            self._transition(
                task,
                "completed",
                message="Task completed",
                session_id=session.id,
                result=result.to_dict(),
                error=None,
                metrics=self._metrics_after(task, started, task.metrics.retries),
                completed_at=utcnow_iso(),
            )
            logger.info("Task %s completed", task.id)
        else:
            self._handle_failure(task, result.error or "Agent reported failure", started)

    def _handle_failure(
        self, task: TaskNode, error: str, started: float, retriable: bool = True
    ) -> None:
        metrics = self._metrics_after(task, started, task.metrics.retries + 1)
        limit = self._max_retries_for(task)
        if not retriable or metrics.retries > limit:
            self._fail_and_block(task, error, metrics)
            return

        delay = self.retry_policy.delay_for(metrics.retries)
        self._transition(
            task,
            "pending",
            message=f"Requeued for retry {metrics.retries}/{limit}",
            level="warn",
            error=error,
            metrics=metrics,
            assigned_session=None,
        )
        self.store.record_event(
            TransparencyEvent(
                type="task_retry",
                task_id=task.id,
                level="warn",
                error=error,
                message=f"Retry {metrics.retries}/{limit}",
                metadata={
                    "retries": metrics.retries,
                    "max_retries": limit,
                    "delay_seconds": delay,
                },
            )
        )
        if delay > 0:
            self._not_before[task.id] = time.monotonic() + delay
        logger.info("Task %s failed (%s); retry %d/%d", task.id, error, metrics.retries, limit)

    # ------------------------------------------------------------------ loop

    def _harvest(self) -> None:
        for task_id, runner in list(self._running.items()):
            if not runner.done():
                continue
            del self._running[task_id]
            if runner.cancelled():
                continue
            exc = runner.exception()
            if exc is not None:
                raise exc

    async def _wait(self, timeout: float | None) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except TimeoutError:
            pass
        self._wake.clear()

    async def _loop(self) -> None:
        while not self._cancelled:
            if self.gate is not None and self.gate.failure is not None:
                raise self.gate.failure
            self._harvest()
            self._block_unsatisfiable()
            self._dispatch_ready()
            if self._running:
                await self._wait(self._next_retry_delay())
                continue
            delay = self._next_retry_delay()
            if delay is not None:
                await self._wait(delay)
                continue
            waiting_on_operator = self.gate is not None and (
                self.gate.has_operator or self.await_decisions
            )
            if self._held() and waiting_on_operator:
                await self._wait(None)
                continue
            break

    async def _shutdown(self, requeue: bool) -> None:
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        self._running.clear()
        await self.sessions.terminate_all("cancelled")
        if requeue:
            self._apply_changes(
                [
                    StatusChange(
                        task_id=task.id,
                        status="pending",
                        fields={"assigned_session": None},
                        message="Requeued after cancellation",
                        level="warn",
                    )
                    for task in self._tasks.values()
                    if task.status in ACTIVE_TASK_STATUSES
                ]
            )

    def _report(self, run_id: str, goal: str, started_at: str) -> RunReport:
        report = RunReport(run_id=run_id, goal=goal, started_at=started_at, ended_at=utcnow_iso())
        for task in self._tasks.values():
            if task.status == "completed":
                report.completed.append(task.id)
            elif task.status == "failed":
                report.failed.append(task.id)
            elif task.status == "blocked":
                report.blocked.append(task.id)
            else:
                report.pending.append(task.id)
        report.rejected = list(self._rejected)
        report.cancelled = self._cancelled
        return report

    async def _execute(self, run_id: str, goal: str) -> RunReport:
        started_at = utcnow_iso()
        self._wake = asyncio.Event()
        if self.gate is not None:
            self.gate.on_decision = self._notify
        try:
            await self._loop()
            if self._cancelled:
                await self._shutdown(requeue=True)
        except StoreWriteError as exc:
            logger.error("Coordination store write failed; aborting run: %s", exc)
            await self._shutdown(requeue=False)
            report = self._report(run_id, goal, started_at)
            report.aborted = str(exc)
            raise RunAborted(f"Run {run_id} aborted: {exc}", report) from exc
        except Exception as exc:
            logger.exception("Run %s stopped on an unexpected error", run_id)
            await self._shutdown(requeue=True)
            report = self._report(run_id, goal, started_at)
            report.aborted = f"{type(exc).__name__}: {exc}"
            self.store.finish_run(report)
            raise RunAborted(f"Run {run_id} aborted: {report.aborted}", report) from exc
        except asyncio.CancelledError:
            self._cancelled = True
            await self._shutdown(requeue=False)
            raise
        finally:
            if self.gate is not None:
                await self.gate.close()

        report = self._report(run_id, goal, started_at)
        self.store.finish_run(report)
        logger.info(
            "Run %s finished: %d completed, %d failed, %d blocked, %d pending",
            run_id,
            len(report.completed),
            len(report.failed),
            len(report.blocked),
            len(report.pending),
        )
        return report

    async def run(
        self, tasks: list[TaskNode], goal: str = "", run_id: str | None = None
    ) -> RunReport:
        known = {task.id: task.status for task in self.store.load_tasks()}
        validate_graph(tasks, known_ids=known)
        run_id = run_id or f"run-{uuid4().hex[:8]}"
        self.store.start_run(run_id, goal)
        self.store.insert_tasks(tasks, run_id)
        self._index(tasks, known)
        return await self._execute(run_id, goal)

    async def resume(self, run_id: str | None = None) -> RunReport:
        run = self.store.latest_run() if run_id is None else self.store.get_run(run_id)
        if run is None:
            raise EnsembleError(
                "No run recorded in the coordination store."
                if run_id is None
                else f"Unknown run id: {run_id}"
            )
        run_id, goal = run["id"], run["goal"]
        tasks = self.store.load_tasks(run_id)
        if not tasks:
            raise EnsembleError(f"Run {run_id} has no tasks to resume.")
        own = {task.id for task in tasks}
        external = {
            task.id: task.status for task in self.store.load_tasks() if task.id not in own
        }
        self.store.start_run(run_id, goal)
        self._index(tasks, external)
        self._apply_changes(
            [
                StatusChange(
                    task_id=task.id,
                    status="pending",
                    fields={"assigned_session": None},
                    message="Requeued after interrupted run",
                    level="warn",
                )
                for task in tasks
                if task.status in ACTIVE_TASK_STATUSES
            ]
        )
        return await self._execute(run_id, goal)

    def cancel(self) -> None:
        self._cancelled = True
        self._notify()

    def cancel_task(self, task_id: str) -> bool:
        """Cancel one task and block its transitive dependents. False if already terminal."""
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task id: {task_id}")
        if task.is_terminal:
            return False
        self._cancel_requested.add(task_id)
        runner = self._running.get(task_id)
        if runner is not None:
            runner.cancel()
        else:
            self._fail_and_block(task, CANCELLED_BY_OPERATOR, task.metrics)
            self._notify()
        return True
