import asyncio
from pathlib import Path

import pytest

from ensemble.approval import ApprovalGate
from ensemble.config import SchedulerConfig
from ensemble.errors import AgentSpawnError, DecompositionError, RunAborted, StoreWriteError
from ensemble.models import AgentResult, AgentSession, ReleaseOutcome, TaskNode
from ensemble.scheduler import ExecutionScheduler, RetryPolicy
from ensemble.store import CoordinationStore
from ensemble.workspaces import Workspace


class FakeWorkspaces:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.acquired: list[str] = []
        self.released: list[tuple[str, str]] = []
        self.resets: list[str] = []
        self.active: set[str] = set()

    async def acquire(self, task_id: str) -> Workspace:
        assert task_id not in self.active
        self.active.add(task_id)
        self.acquired.append(task_id)
        return Workspace(
            task_id=task_id,
            path=self.root / task_id,
            branch=f"ensemble/task-{task_id}",
            base_commit="0" * 40,
        )

    async def release(self, task_id: str, outcome: ReleaseOutcome) -> bool:
        if task_id not in self.active:
            return False
        self.active.discard(task_id)
        self.released.append((task_id, outcome))
        return True

    async def reset(self, task_id: str) -> bool:
        self.resets.append(task_id)
        return False


class FakeSessions:
    """Scripted agents: ``outcomes[task_id]`` lists the result of each attempt."""

    def __init__(
        self,
        workspaces: FakeWorkspaces,
        outcomes: dict[str, list[bool]] | None = None,
        delays: dict[str, float] | None = None,
        spawn_errors: dict[str, int] | None = None,
        crashes: set[str] | None = None,
    ) -> None:
        self.workspaces = workspaces
        self.crashes = crashes or set()
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.spawn_errors = dict(spawn_errors or {})
        self.spawned: list[str] = []
        self.finished: list[str] = []
        self.order_violations: list[str] = []
        self.running = 0
        self.max_running = 0
        self._sessions: dict[str, AgentSession] = {}

    async def spawn(self, task: TaskNode, workspace: Workspace) -> AgentSession:
        if self.spawn_errors.get(task.id, 0) > 0:
            self.spawn_errors[task.id] -= 1
            await self.workspaces.release(task.id, "failed")
            raise AgentSpawnError(f"cannot start agent for {task.id}")
        missing = [dep for dep in task.dependencies if dep not in self.finished]
        if missing:
            self.order_violations.append(task.id)
        self.spawned.append(task.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        session = AgentSession(
            id=f"session-{task.id}-{len(self.spawned)}",
            task_id=task.id,
            agent_role=task.agent_role,
            workspace_path=str(workspace.path),
            branch_name=workspace.branch,
            status="busy",
        )
        self._sessions[session.id] = session
        return session

    async def await_result(
        self, session: AgentSession, timeout_seconds: float | None = None
    ) -> AgentResult:
        try:
            await asyncio.sleep(self.delays.get(session.task_id, 0.01))
        except asyncio.CancelledError:
            await self.terminate(session, "cancelled")
            raise
        if session.task_id in self.crashes:
            raise RuntimeError(f"output reader for {session.task_id} crashed")
        script = self.outcomes.get(session.task_id, [])
        success = script.pop(0) if script else True
        if success:
            self.finished.append(session.task_id)
        await self.terminate(session, "completed" if success else "failed")
        return AgentResult(
            success=success,
            output="ok" if success else "",
            error=None if success else "agent reported failure",
            exit_code=0 if success else 1,
        )

    async def terminate(self, session: AgentSession, outcome: ReleaseOutcome = "cancelled") -> bool:
        if self._sessions.pop(session.id, None) is None:
            return False
        self.running -= 1
        session.status = "terminated"
        await self.workspaces.release(session.task_id, outcome)
        return True

    async def terminate_all(self, outcome: ReleaseOutcome = "cancelled") -> None:
        for session in list(self._sessions.values()):
            await self.terminate(session, outcome)


def _store(tmp_path: Path) -> CoordinationStore:
    store = CoordinationStore(tmp_path / "coordination.db")
    store.initialize()
    return store


def _scheduler(
    tmp_path: Path,
    store: CoordinationStore | None = None,
    gate: ApprovalGate | None = None,
    max_parallel: int = 4,
    max_retries: int = 2,
    **session_options,
) -> tuple[ExecutionScheduler, FakeWorkspaces, FakeSessions]:
    workspaces = FakeWorkspaces(tmp_path / "worktrees")
    sessions = FakeSessions(workspaces, **session_options)
    scheduler = ExecutionScheduler(
        store or _store(tmp_path),
        workspaces,
        sessions,
        gate,
        SchedulerConfig(max_parallel_agents=max_parallel, max_retries=max_retries),
    )
    return scheduler, workspaces, sessions


def _task(task_id: str, *deps: str, priority: int = 5, role: str = "backend") -> TaskNode:
    return TaskNode(
        id=task_id,
        description=f"Do {task_id}",
        agent_role=role,
        dependencies=list(deps),
        priority=priority,
    )


def test_parallelism_cap_is_never_exceeded(tmp_path: Path) -> None:
    tasks = [_task(f"t{index}") for index in range(6)]
    scheduler, workspaces, sessions = _scheduler(
        tmp_path, max_parallel=2, delays={task.id: 0.05 for task in tasks}
    )

    report = asyncio.run(scheduler.run(tasks, goal="parallel"))

    assert report.ok
    assert sorted(report.completed) == [task.id for task in tasks]
    assert sessions.max_running == 2
    assert workspaces.active == set()


def test_dependencies_complete_before_dependents_start(tmp_path: Path) -> None:
    tasks = [
        _task("design", priority=1),
        _task("api", "design"),
        _task("ui", "design"),
        _task("tests", "api", "ui"),
    ]
    scheduler, _, sessions = _scheduler(tmp_path)

    report = asyncio.run(scheduler.run(tasks))

    assert report.ok
    assert sessions.order_violations == []
    assert sessions.spawned[0] == "design"
    assert sessions.spawned[-1] == "tests"


def test_ready_tasks_dispatch_by_priority_then_insertion(tmp_path: Path) -> None:
    tasks = [_task("x", priority=5), _task("y", priority=1), _task("z", priority=3)]
    scheduler, _, sessions = _scheduler(tmp_path, max_parallel=1)

    asyncio.run(scheduler.run(tasks))

    assert sessions.spawned == ["y", "z", "x"]


def test_failure_retries_then_blocks_dependents(tmp_path: Path) -> None:
    store = _store(tmp_path)
    tasks = [_task("flaky"), _task("after", "flaky"), _task("later", "after"), _task("other")]
    scheduler, workspaces, sessions = _scheduler(
        tmp_path, store=store, max_retries=1, outcomes={"flaky": [False, False]}
    )

    report = asyncio.run(scheduler.run(tasks))

    assert sessions.spawned.count("flaky") == 2
    assert workspaces.acquired.count("flaky") == 2
    assert [entry for entry in workspaces.released if entry[0] == "flaky"] == [
        ("flaky", "failed"),
        ("flaky", "failed"),
    ]
    assert workspaces.resets == ["flaky"]
    assert report.failed == ["flaky"]
    assert sorted(report.blocked) == ["after", "later"]
    assert report.completed == ["other"]
    assert not report.ok
    failed = store.get_task("flaky")
    assert failed.metrics.retries == 2
    assert failed.metrics.attempts == 2
    assert [event.type for event in store.recent_events(task_id="flaky")].count("task_retry") == 1


def test_retry_recovers_after_one_failure(tmp_path: Path) -> None:
    tasks = [_task("flaky"), _task("after", "flaky")]
    scheduler, _, sessions = _scheduler(tmp_path, max_retries=1, outcomes={"flaky": [False]})

    report = asyncio.run(scheduler.run(tasks))

    assert report.ok
    assert sessions.spawned == ["flaky", "flaky", "after"]


def test_spawn_errors_are_retried(tmp_path: Path) -> None:
    scheduler, workspaces, _ = _scheduler(tmp_path, spawn_errors={"t": 1})

    report = asyncio.run(scheduler.run([_task("t")]))

    assert report.ok
    assert workspaces.acquired == ["t", "t"]


def test_task_level_max_retries_overrides_scheduler_default(tmp_path: Path) -> None:
    task = _task("strict")
    task.config.max_retries = 0
    scheduler, _, sessions = _scheduler(tmp_path, max_retries=5, outcomes={"strict": [False]})

    report = asyncio.run(scheduler.run([task]))

    assert report.failed == ["strict"]
    assert sessions.spawned == ["strict"]


def test_rejected_task_never_runs_and_blocks_dependents(tmp_path: Path) -> None:
    gate = ApprovalGate(roles=["devops"], operator=lambda task: False)
    tasks = [
        _task("deploy", role="devops"),
        _task("verify", "deploy", role="tester"),
        _task("docs"),
    ]
    scheduler, workspaces, sessions = _scheduler(tmp_path, gate=gate)

    report = asyncio.run(scheduler.run(tasks))

    assert "deploy" not in sessions.spawned
    assert "deploy" not in workspaces.acquired
    assert report.rejected == ["deploy"]
    assert report.failed == ["deploy"]
    assert report.blocked == ["verify"]
    assert report.completed == ["docs"]


def test_approved_task_runs_after_decision(tmp_path: Path) -> None:
    store = _store(tmp_path)
    gate = ApprovalGate(roles=["devops"], operator=lambda task: True)
    scheduler, _, sessions = _scheduler(tmp_path, store=store, gate=gate)

    report = asyncio.run(scheduler.run([_task("deploy", role="devops")]))

    assert report.ok
    assert sessions.spawned == ["deploy"]
    history = [event.metadata["to"] for event in reversed(store.recent_events(task_id="deploy"))]
    assert history == ["pending", "ready", "assigned", "running", "completed"]


def test_held_task_without_operator_is_reported_pending(tmp_path: Path) -> None:
    gate = ApprovalGate(tags=["needs-approval"])
    held = _task("risky")
    held.tags = ["needs-approval"]
    scheduler, _, sessions = _scheduler(tmp_path, gate=gate)

    report = asyncio.run(scheduler.run([held, _task("safe")]))

    assert report.pending == ["risky"]
    assert report.completed == ["safe"]
    assert sessions.spawned == ["safe"]


def test_event_log_replay_matches_final_task_statuses(tmp_path: Path) -> None:
    store = _store(tmp_path)
    tasks = [_task("a"), _task("b", "a"), _task("c"), _task("d", "c")]
    scheduler, _, _ = _scheduler(tmp_path, store=store, max_retries=0, outcomes={"c": [False]})

    asyncio.run(scheduler.run(tasks))

    persisted = {task.id: task.status for task in store.load_tasks()}
    assert store.replay_task_statuses() == persisted
    assert persisted == {"a": "completed", "b": "completed", "c": "failed", "d": "blocked"}
    assert scheduler.snapshot() == persisted


def test_cyclic_graph_is_rejected_before_anything_is_persisted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    scheduler, _, sessions = _scheduler(tmp_path, store=store)

    with pytest.raises(DecompositionError):
        asyncio.run(scheduler.run([_task("a", "b"), _task("b", "a")]))

    assert store.load_tasks() == []
    assert store.latest_run() is None
    assert sessions.spawned == []


class FailingCompletionStore(CoordinationStore):
    def transition_many(self, changes):
        changes = list(changes)
        if any(change.status == "completed" for change in changes):
            raise StoreWriteError("disk I/O error")
        return super().transition_many(changes)


def test_store_write_failure_aborts_run_with_partial_report(tmp_path: Path) -> None:
    store = FailingCompletionStore(tmp_path / "coordination.db")
    store.initialize()
    scheduler, workspaces, _ = _scheduler(tmp_path, store=store)

    with pytest.raises(RunAborted) as excinfo:
        asyncio.run(scheduler.run([_task("a"), _task("b", "a")]))

    report = excinfo.value.report
    assert report.aborted == "disk I/O error"
    assert not report.ok
    assert sorted(report.pending) == ["a", "b"]
    assert workspaces.active == set()


def test_cancel_task_fails_it_and_blocks_dependents(tmp_path: Path) -> None:
    tasks = [_task("slow"), _task("after", "slow"), _task("quick")]
    scheduler, workspaces, sessions = _scheduler(tmp_path, delays={"slow": 30})

    async def scenario():
        runner = asyncio.create_task(scheduler.run(tasks))
        while "slow" not in sessions.spawned:
            await asyncio.sleep(0.01)
        assert scheduler.cancel_task("slow") is True
        return await runner

    report = asyncio.run(scenario())

    assert report.failed == ["slow"]
    assert report.blocked == ["after"]
    assert report.completed == ["quick"]
    assert ("slow", "cancelled") in workspaces.released
    assert scheduler.cancel_task("slow") is False
    with pytest.raises(KeyError):
        scheduler.cancel_task("ghost")


def test_cancel_run_requeues_active_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    scheduler, workspaces, sessions = _scheduler(tmp_path, store=store, delays={"slow": 30})

    async def scenario():
        runner = asyncio.create_task(scheduler.run([_task("slow"), _task("after", "slow")]))
        while "slow" not in sessions.spawned:
            await asyncio.sleep(0.01)
        scheduler.cancel()
        return await runner

    report = asyncio.run(scenario())

    assert report.cancelled is True
    assert sorted(report.pending) == ["after", "slow"]
    assert store.get_task("slow").status == "pending"
    assert workspaces.active == set()
    assert store.latest_run()["status"] == "cancelled"


def test_resume_requeues_interrupted_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.start_run("run-1", "resume me")
    store.insert_tasks([_task("a"), _task("b", "a")], "run-1")
    store.transition("a", "running")
    scheduler, _, sessions = _scheduler(tmp_path, store=store)

    report = asyncio.run(scheduler.resume())

    assert report.run_id == "run-1"
    assert report.ok
    assert sessions.spawned == ["a", "b"]


def test_new_run_can_depend_on_completed_tasks_from_earlier_runs(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first, _, _ = _scheduler(tmp_path, store=store)
    asyncio.run(first.run([_task("base")]))

    second, _, sessions = _scheduler(tmp_path, store=store)
    report = asyncio.run(second.run([_task("follow-up", "base")]))

    assert report.ok
    assert sessions.spawned == ["follow-up"]


def test_retry_policy_delays() -> None:
    assert RetryPolicy().delay_for(3) == 0.0
    assert RetryPolicy(strategy="fixed", backoff_seconds=2).delay_for(3) == 2
    exponential = RetryPolicy(strategy="exponential", backoff_seconds=1, max_backoff_seconds=5)
    assert [exponential.delay_for(retry) for retry in (1, 2, 3, 4)] == [1, 2, 4, 5]


def test_single_slot_runs_dependency_first_and_finishes_everything(tmp_path: Path) -> None:
    tasks = [_task("a"), _task("b", "a"), _task("c")]
    scheduler, workspaces, sessions = _scheduler(tmp_path, max_parallel=1)

    report = asyncio.run(scheduler.run(tasks))

    assert report.ok
    assert sessions.spawned[0] == "a"
    assert sessions.spawned.index("a") < sessions.spawned.index("b")
    assert sorted(report.completed) == ["a", "b", "c"]
    assert sessions.max_running == 1
    assert sessions.order_violations == []
    assert workspaces.active == set()


def test_unexpected_agent_error_shuts_down_and_reports(tmp_path: Path) -> None:
    store = _store(tmp_path)
    scheduler, workspaces, sessions = _scheduler(
        tmp_path, store=store, crashes={"boom"}, delays={"slow": 30}
    )

    async def scenario():
        return await asyncio.wait_for(scheduler.run([_task("slow"), _task("boom")]), 10)

    with pytest.raises(RunAborted) as excinfo:
        asyncio.run(scenario())

    report = excinfo.value.report
    assert report.aborted.startswith("RuntimeError: output reader for boom crashed")
    assert sorted(report.pending) == ["boom", "slow"]
    assert sessions.running == 0
    assert workspaces.active == set()
    assert {task.id: task.status for task in store.load_tasks()} == {
        "slow": "pending",
        "boom": "pending",
    }
    assert store.latest_run()["status"] == "aborted"


def test_unrecordable_approval_decision_aborts_instead_of_waiting(tmp_path: Path) -> None:
    def hook(event):
        if event["type"] == "approval_decided":
            raise StoreWriteError("database is locked")

    gate = ApprovalGate(roles=["devops"], operator=lambda task: True, event_hook=hook)
    scheduler, workspaces, sessions = _scheduler(tmp_path, gate=gate)

    async def scenario():
        return await asyncio.wait_for(scheduler.run([_task("deploy", role="devops")]), 10)

    with pytest.raises(RunAborted) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.report.aborted == "database is locked"
    assert excinfo.value.report.pending == ["deploy"]
    assert sessions.spawned == []
    assert workspaces.active == set()
