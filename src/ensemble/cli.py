from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from ensemble import __version__
from ensemble.agents import create_backend
from ensemble.approval import ApprovalGate
from ensemble.config import (
    DEFAULT_CONFIG_FILE,
    STATE_DIR,
    EnsembleConfig,
    load_config,
    save_config,
)
from ensemble.decomposer import (
    TaskDecomposer,
    detect_repository_context,
    load_plan_file,
    topological_order,
)
from ensemble.errors import EnsembleError, RunAborted
from ensemble.events import EventChannel, EventSubscription, store_hook
from ensemble.models import RunReport, TaskNode
from ensemble.scheduler import ExecutionScheduler
from ensemble.sessions import AgentSessionManager
from ensemble.store import CoordinationStore
from ensemble.workspaces import WorkspaceManager

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: EnsembleConfig
    store: CoordinationStore
    channel: EventChannel
    workspaces: WorkspaceManager


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _configure_logging(config: EnsembleConfig) -> None:
    override = click.get_current_context().find_root().params.get("log_level")
    level_name = str(override or config.logging.level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config)
    store = CoordinationStore(_resolve_path(repo_root, config.store.path))
    try:
        store.initialize()
    except EnsembleError as exc:
        raise click.ClickException(str(exc)) from exc
    channel = EventChannel()
    channel.attach(store)
    workspaces = WorkspaceManager(
        repo_root, config.workspace, event_hook=store_hook(store, "workspace")
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        channel=channel,
        workspaces=workspaces,
    )


def _confirm_task(task: TaskNode) -> bool:
    click.echo(f"\nTask {task.id} [{task.agent_role}] needs approval:", err=True)
    click.echo(f"  {task.description}", err=True)
    return click.confirm("Approve?", default=False, err=True)


def _build_scheduler(runtime: Runtime, auto_approve: bool) -> ExecutionScheduler:
    config = runtime.config
    store = runtime.store
    try:
        backend = create_backend(config.agent)
    except (EnsembleError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    sessions = AgentSessionManager(
        backend,
        runtime.workspaces,
        config.agent,
        event_hook=store_hook(store, "session"),
        session_hook=lambda session: store.upsert_session(session),
    )
    gate = ApprovalGate.from_config(
        config.approval,
        operator=(lambda task: True) if auto_approve else _confirm_task,
        event_hook=store_hook(store, "approval"),
    )
    return ExecutionScheduler(store, runtime.workspaces, sessions, gate, config.scheduler)


def _plan_tasks(runtime: Runtime, goal: str, plan_path: Path | None) -> list[TaskNode]:
    context = detect_repository_context(runtime.repo_root, runtime.store.load_tasks())
    decomposer = TaskDecomposer()
    if plan_path is not None:
        return decomposer.from_payload(load_plan_file(plan_path), context)
    return decomposer.decompose(goal, context)


async def _print_events(subscription: EventSubscription) -> None:
    async for event in subscription:
        target = f" {event.task_id}" if event.task_id else ""
        click.echo(f"[{event.level}] {event.type}{target}: {event.message}", err=True)


async def _with_progress(
    runtime: Runtime, verbose: bool, work: Callable[[], Coroutine[Any, Any, T]]
) -> T:
    if not verbose:
        return await work()
    printer = asyncio.create_task(_print_events(runtime.channel.subscribe()))
    try:
        return await work()
    finally:
        runtime.channel.close()
        await printer


def _finish(report: RunReport) -> None:
    click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    if not report.ok:
        sys.exit(1)


def _run_scheduler(
    runtime: Runtime, verbose: bool, work: Callable[[], Coroutine[Any, Any, RunReport]]
) -> None:
    try:
        report = asyncio.run(_with_progress(runtime, verbose, work))
    except RunAborted as exc:
        click.echo(json.dumps(exc.report.to_dict(), ensure_ascii=False, indent=2))
        raise click.ClickException(str(exc)) from exc
    except EnsembleError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.store.close()
    _finish(report)


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
@click.version_option(__version__, prog_name="ensemble")
@click.option("--log-level", default=None, help="Override [logging] level (DEBUG, INFO, ...).")
def cli(log_level: str | None) -> None:
    """Run a team of coding agents in parallel on one repository."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex", "command"]), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = repo_root / STATE_DIR
    state_dir.mkdir(parents=True, exist_ok=True)
    ignore_file = state_dir / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("*\n", encoding="utf-8")

    runtime = _load_runtime(repo_root, config_path)
    runtime.store.close()

    click.echo(f"Initialized ensemble in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")
    click.echo(f"Store: {runtime.store.db_path}")


@cli.command("plan")
@click.argument("goal", required=False, default="")
@click.option("--plan", "plan_file", type=click.Path(exists=True, dir_okay=False), default=None)
@config_option
def plan_command(goal: str, plan_file: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    try:
        tasks = _plan_tasks(runtime, goal, Path(plan_file) if plan_file else None)
    except EnsembleError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.store.close()
    payload = [task.to_dict() for task in topological_order(tasks)]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("run")
@click.argument("goal", required=False, default="")
@click.option("--plan", "plan_file", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--yes", "auto_approve", is_flag=True, default=False, help="Approve gated tasks.")
@click.option("--verbose", is_flag=True, default=False, help="Stream events to stderr.")
@config_option
def run_command(
    goal: str,
    plan_file: str | None,
    max_parallel: int | None,
    auto_approve: bool,
    verbose: bool,
    config_value: str,
) -> None:
    if not goal and not plan_file:
        raise click.UsageError("Provide a GOAL or --plan FILE.")
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    if max_parallel is not None:
        runtime.config.scheduler.max_parallel_agents = max_parallel
    try:
        tasks = _plan_tasks(runtime, goal, Path(plan_file) if plan_file else None)
    except EnsembleError as exc:
        runtime.store.close()
        raise click.ClickException(str(exc)) from exc
    scheduler = _build_scheduler(runtime, auto_approve)
    _run_scheduler(
        runtime,
        verbose,
        lambda: scheduler.run(tasks, goal=goal or f"plan:{Path(plan_file or '').name}"),
    )


@cli.command("resume")
@click.option("--run-id", default=None)
@click.option("--yes", "auto_approve", is_flag=True, default=False, help="Approve gated tasks.")
@click.option("--verbose", is_flag=True, default=False, help="Stream events to stderr.")
@config_option
def resume_command(
    run_id: str | None, auto_approve: bool, verbose: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    scheduler = _build_scheduler(runtime, auto_approve)

    async def _resume() -> RunReport:
        await runtime.workspaces.cleanup_stale()
        return await scheduler.resume(run_id)

    _run_scheduler(runtime, verbose, _resume)


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@config_option
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    try:
        payload = runtime.store.task_status_summary(include_details=verbose)
        latest = runtime.store.latest_run()
    finally:
        runtime.store.close()
    if latest is not None:
        payload["run"] = {key: latest[key] for key in ("id", "goal", "status", "started_at")}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("events")
@click.option("--session", "session_id", default=None)
@click.option("--task", "task_id", default=None)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@config_option
def events_command(
    session_id: str | None, task_id: str | None, limit: int, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    try:
        events = runtime.store.recent_events(session_id=session_id, task_id=task_id, limit=limit)
    finally:
        runtime.store.close()
    click.echo(json.dumps([event.to_dict() for event in events], ensure_ascii=False, indent=2))


@cli.command("cleanup")
@config_option
def cleanup_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    try:
        removed = asyncio.run(runtime.workspaces.cleanup_stale())
    except EnsembleError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.store.close()
    click.echo(f"Removed {len(removed)} stale workspace(s).")
    for path in removed:
        click.echo(f"  {path}")
