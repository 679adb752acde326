"""SQLite-backed coordination store.

The store is the durable record of a run: the task graph, agent sessions, and the
append-only transparency event log. Every task status change is written together with a
``task_status`` event in one transaction, so the final status of every task can be rebuilt
from the event log alone (see :meth:`CoordinationStore.replay_task_statuses`).

One writer connection is shared behind a lock and uses ``BEGIN IMMEDIATE`` transactions.
Reads open their own short-lived connection so observers (``ensemble status``/``events``)
can query while a run is writing.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ensemble.errors import DecompositionError, StoreWriteError
from ensemble.models import (
    TASK_STATUSES,
    AgentSession,
    RunReport,
    TaskConfig,
    TaskMetrics,
    TaskNode,
    TransparencyEvent,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

MAX_EVENT_PAGE = 500
EventListener = Callable[[TransparencyEvent], None]

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  goal TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'running',
  report TEXT,
  started_at TEXT NOT NULL,
  ended_at TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
  id TEXT PRIMARY KEY,
  run_id TEXT REFERENCES runs(id) ON DELETE SET NULL,
  sequence INTEGER NOT NULL,
  title TEXT NOT NULL DEFAULT '',
  description TEXT NOT NULL,
  agent_role TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 5,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending','ready','assigned','running','completed','failed','blocked')),
  dependencies TEXT NOT NULL DEFAULT '[]',
  assigned_session TEXT,
  result TEXT,
  error TEXT,
  metrics TEXT NOT NULL DEFAULT '{}',
  config TEXT NOT NULL DEFAULT '{}',
  tags TEXT NOT NULL DEFAULT '[]',
  metadata TEXT NOT NULL DEFAULT '{}',
  requires_approval INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  assigned_at TEXT,
  completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_dependencies (
  task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
  depends_on TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
  PRIMARY KEY (task_id, depends_on)
);

CREATE TABLE IF NOT EXISTS agents (
  id TEXT PRIMARY KEY,
  run_id TEXT,
  task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
  agent_role TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'idle' CHECK (status IN ('idle','busy','terminated')),
  pid INTEGER,
  workspace_path TEXT,
  branch_name TEXT,
  metrics TEXT NOT NULL DEFAULT '{}',
  started_at TEXT NOT NULL,
  ended_at TEXT,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transparency_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT,
  type TEXT NOT NULL,
  session_id TEXT,
  agent_id TEXT,
  task_id TEXT,
  tool_name TEXT,
  duration REAL,
  success INTEGER,
  error TEXT,
  source TEXT NOT NULL DEFAULT 'scheduler',
  level TEXT NOT NULL DEFAULT 'info' CHECK (level IN ('debug','info','warn','error')),
  message TEXT NOT NULL DEFAULT '',
  metadata TEXT NOT NULL DEFAULT '{}',
  timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_run ON tasks(run_id, sequence);
CREATE INDEX IF NOT EXISTS idx_task_dependencies_depends_on ON task_dependencies(depends_on);
CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_events_session ON transparency_events(session_id, id);
CREATE INDEX IF NOT EXISTS idx_events_task ON transparency_events(task_id, id);
CREATE INDEX IF NOT EXISTS idx_events_type ON transparency_events(type, id);

CREATE TRIGGER IF NOT EXISTS trg_tasks_updated_at
AFTER UPDATE ON tasks FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
BEGIN
  UPDATE tasks SET updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now') WHERE id = NEW.id;
END;

CREATE TRIGGER IF NOT EXISTS trg_agents_updated_at
AFTER UPDATE ON agents FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
BEGIN
  UPDATE agents SET updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now') WHERE id = NEW.id;
END;

CREATE TRIGGER IF NOT EXISTS trg_events_no_update
BEFORE UPDATE ON transparency_events
BEGIN
  SELECT RAISE(ABORT, 'transparency events are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_events_no_delete
BEFORE DELETE ON transparency_events
BEGIN
  SELECT RAISE(ABORT, 'transparency events are append-only');
END;
"""

_TASK_FIELDS = {
    "assigned_session",
    "result",
    "error",
    "metrics",
    "assigned_at",
    "completed_at",
}
_JSON_FIELDS = {"result", "metrics"}


@dataclass(slots=True)
class StatusChange:
    task_id: str
    status: str
    fields: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    level: str = "info"
    metadata: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(db_path), timeout=10, isolation_level=None, check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=10000;")
    return conn


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _row_to_task(row: sqlite3.Row) -> TaskNode:
    return TaskNode(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        agent_role=row["agent_role"],
        dependencies=list(_loads(row["dependencies"], [])),
        priority=int(row["priority"]),
        status=row["status"],
        assigned_session=row["assigned_session"],
        result=_loads(row["result"], None),
        error=row["error"],
        metrics=TaskMetrics.from_dict(_loads(row["metrics"], {})),
        config=TaskConfig.from_dict(_loads(row["config"], {})),
        tags=list(_loads(row["tags"], [])),
        metadata=dict(_loads(row["metadata"], {})),
        requires_approval=bool(row["requires_approval"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        assigned_at=row["assigned_at"],
        completed_at=row["completed_at"],
    )


def _row_to_event(row: sqlite3.Row) -> TransparencyEvent:
    success = row["success"]
    return TransparencyEvent(
        id=int(row["id"]),
        type=row["type"],
        message=row["message"],
        source=row["source"],
        level=row["level"],
        session_id=row["session_id"],
        agent_id=row["agent_id"],
        task_id=row["task_id"],
        tool_name=row["tool_name"],
        duration=row["duration"],
        success=None if success is None else bool(success),
        error=row["error"],
        metadata=dict(_loads(row["metadata"], {})),
        timestamp=row["timestamp"],
    )


class CoordinationStore:
    def __init__(self, db_path: Path, listener: EventListener | None = None) -> None:
        self.db_path = db_path
        self.listener = listener
        self._write_lock = threading.Lock()
        self._writer: sqlite3.Connection | None = None
        self._run_id: str | None = None

    # ------------------------------------------------------------------ lifecycle

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._write_lock:
            if self._writer is None:
                self._writer = _connect(self.db_path)
            try:
                self._writer.executescript(SCHEMA)
            except sqlite3.Error as exc:
                raise StoreWriteError(f"Failed to initialise store schema: {exc}") from exc
        logger.debug("Coordination store ready at %s", self.db_path)

    def close(self) -> None:
        with self._write_lock:
            if self._writer is not None:
                self._writer.close()
                self._writer = None

    def __enter__(self) -> CoordinationStore:
        self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @contextmanager
    def _write(self) -> Iterator[tuple[sqlite3.Connection, list[TransparencyEvent]]]:
        committed: list[TransparencyEvent] = []
        with self._write_lock:
            if self._writer is None:
                self._writer = _connect(self.db_path)
            conn = self._writer
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn, committed
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreWriteError(f"Coordination store write failed: {exc}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        if self.listener is not None:
            for event in committed:
                self.listener(event)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        committed: list[TransparencyEvent],
        event: TransparencyEvent,
    ) -> TransparencyEvent:
        cursor = conn.execute(
            """
            INSERT INTO transparency_events (
              run_id, type, session_id, agent_id, task_id, tool_name, duration, success,
              error, source, level, message, metadata, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self._run_id,
                event.type,
                event.session_id,
                event.agent_id,
                event.task_id,
                event.tool_name,
                event.duration,
                None if event.success is None else int(event.success),
                event.error,
                event.source,
                event.level,
                event.message,
                _dumps(event.metadata),
                event.timestamp,
            ),
        )
        event.id = int(cursor.lastrowid)
        committed.append(event)
        return event

    # ------------------------------------------------------------------ runs

    def start_run(self, run_id: str, goal: str) -> None:
        with self._write() as (conn, committed):
            conn.execute(
                """
                INSERT INTO runs (id, goal, status, started_at) VALUES (?, ?, 'running', ?)
                ON CONFLICT(id) DO UPDATE SET status = 'running', ended_at = NULL
                """,
                (run_id, goal, utcnow_iso()),
            )
            self._run_id = run_id
            self._insert_event(
                conn,
                committed,
                TransparencyEvent(type="run_started", message=goal, metadata={"run_id": run_id}),
            )

    def finish_run(self, report: RunReport) -> None:
        status = "completed" if report.ok else ("aborted" if report.aborted else "failed")
        if report.cancelled:
            status = "cancelled"
        with self._write() as (conn, committed):
            conn.execute(
                "UPDATE runs SET status = ?, report = ?, ended_at = ? WHERE id = ?",
                (status, _dumps(report.to_dict()), report.ended_at or utcnow_iso(), report.run_id),
            )
            self._insert_event(
                conn,
                committed,
                TransparencyEvent(
                    type="run_finished",
                    message=f"Run {status}",
                    level="info" if report.ok else "warn",
                    success=report.ok,
                    metadata={
                        "run_id": report.run_id,
                        "completed": len(report.completed),
                        "failed": len(report.failed),
                        "blocked": len(report.blocked),
                        "pending": len(report.pending),
                    },
                ),
            )

    def use_run(self, run_id: str) -> None:
        self._run_id = run_id

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        payload = dict(row)
        payload["report"] = _loads(payload.get("report"), None)
        return payload

    def latest_run(self) -> dict[str, Any] | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        payload = dict(row)
        payload["report"] = _loads(payload.get("report"), None)
        return payload

    # ------------------------------------------------------------------ tasks

    def insert_tasks(self, tasks: Iterable[TaskNode], run_id: str | None = None) -> None:
        """Persist a validated batch with its dependency edges. All or nothing."""
        tasks = list(tasks)
        run_id = run_id or self._run_id
        with self._write() as (conn, committed):
            existing: set[str] = set()
            for task in tasks:
                if conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task.id,)).fetchone():
                    existing.add(task.id)
            if existing:
                raise DecompositionError(
                    "Task id(s) already persisted: " + ", ".join(sorted(existing))
                )
            next_sequence = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM tasks"
            ).fetchone()[0]
            for offset, task in enumerate(tasks, 1):
                conn.execute(
                    """
                    INSERT INTO tasks (
                      id, run_id, sequence, title, description, agent_role, priority, status,
                      dependencies, assigned_session, result, error, metrics, config, tags,
                      metadata, requires_approval, created_at, updated_at, assigned_at,
                      completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task.id,
                        run_id,
                        next_sequence + offset,
                        task.title,
                        task.description,
                        task.agent_role,
                        task.priority,
                        task.status,
                        _dumps(task.dependencies),
                        task.assigned_session,
                        None if task.result is None else _dumps(task.result),
                        task.error,
                        _dumps(task.metrics.to_dict()),
                        _dumps(task.config.to_dict()),
                        _dumps(task.tags),
                        _dumps(task.metadata),
                        int(task.requires_approval),
                        task.created_at,
                        task.updated_at,
                        task.assigned_at,
                        task.completed_at,
                    ),
                )
            for task in tasks:
                conn.executemany(
                    "INSERT INTO task_dependencies (task_id, depends_on) VALUES (?, ?)",
                    [(task.id, dep) for dep in task.dependencies],
                )
                self._insert_event(
                    conn,
                    committed,
                    TransparencyEvent(
                        type="task_status",
                        task_id=task.id,
                        message="Task created",
                        metadata={"from": None, "to": task.status, "agent_role": task.agent_role},
                    ),
                )
        logger.info("Persisted %d task(s)", len(tasks))

    def transition(
        self,
        task_id: str,
        status: str,
        *,
        fields: dict[str, Any] | None = None,
        message: str = "",
        level: str = "info",
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> TransparencyEvent:
        events = self.transition_many(
            [
                StatusChange(
                    task_id=task_id,
                    status=status,
                    fields=dict(fields or {}),
                    message=message,
                    level=level,
                    metadata=dict(metadata or {}),
                    session_id=session_id,
                )
            ]
        )
        return events[0]

    def transition_many(self, changes: Iterable[StatusChange]) -> list[TransparencyEvent]:
        """Apply several status changes and their ``task_status`` events in one transaction."""
        changes = list(changes)
        events: list[TransparencyEvent] = []
        with self._write() as (conn, committed):
            for change in changes:
                if change.status not in TASK_STATUSES:
                    raise ValueError(f"Unknown task status: {change.status}")
                row = conn.execute(
                    "SELECT status FROM tasks WHERE id = ?", (change.task_id,)
                ).fetchone()
                if row is None:
                    raise StoreWriteError(f"Unknown task id: {change.task_id}")
                assignments = ["status = ?"]
                values: list[Any] = [change.status]
                for key, value in change.fields.items():
                    if key not in _TASK_FIELDS:
                        raise ValueError(f"Task field cannot be updated: {key}")
                    if isinstance(value, TaskMetrics):
                        value = value.to_dict()
                    if key in _JSON_FIELDS and value is not None:
                        value = _dumps(value)
                    assignments.append(f"{key} = ?")
                    values.append(value)
                values.append(change.task_id)
                conn.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                    values,
                )
                metadata = {"from": row["status"], "to": change.status, **change.metadata}
                events.append(
                    self._insert_event(
                        conn,
                        committed,
                        TransparencyEvent(
                            type="task_status",
                            task_id=change.task_id,
                            session_id=change.session_id,
                            message=change.message or f"{row['status']} -> {change.status}",
                            level=change.level,
                            error=change.fields.get("error"),
                            metadata=metadata,
                        ),
                    )
                )
        return events

    def get_task(self, task_id: str) -> TaskNode | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def load_tasks(self, run_id: str | None = None) -> list[TaskNode]:
        with self._read() as conn:
            if run_id is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY sequence").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE run_id = ? ORDER BY sequence", (run_id,)
                ).fetchall()
        return [_row_to_task(row) for row in rows]

    def dependency_edges(self) -> list[tuple[str, str]]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT task_id, depends_on FROM task_dependencies ORDER BY task_id, depends_on"
            ).fetchall()
        return [(row["task_id"], row["depends_on"]) for row in rows]

    # ------------------------------------------------------------------ sessions

    def upsert_session(self, session: AgentSession, message: str = "") -> TransparencyEvent | None:
        with self._write() as (conn, committed):
            row = conn.execute(
                "SELECT status FROM agents WHERE id = ?", (session.id,)
            ).fetchone()
            previous = row["status"] if row else None
            conn.execute(
                """
                INSERT INTO agents (
                  id, run_id, task_id, agent_role, status, pid, workspace_path, branch_name,
                  metrics, started_at, ended_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  status = excluded.status,
                  pid = excluded.pid,
                  metrics = excluded.metrics,
                  ended_at = excluded.ended_at
                """,
                (
                    session.id,
                    self._run_id,
                    session.task_id,
                    session.agent_role,
                    session.status,
                    session.pid,
                    session.workspace_path,
                    session.branch_name,
                    _dumps(session.metrics),
                    session.started_at,
                    session.ended_at,
                    utcnow_iso(),
                ),
            )
            if previous == session.status:
                return None
            return self._insert_event(
                conn,
                committed,
                TransparencyEvent(
                    type="session_status",
                    source="session",
                    session_id=session.id,
                    agent_id=session.agent_role,
                    task_id=session.task_id,
                    message=message or f"{previous or 'new'} -> {session.status}",
                    metadata={"from": previous, "to": session.status, "pid": session.pid},
                ),
            )

    def load_sessions(self, status: str | None = None) -> list[dict[str, Any]]:
        with self._read() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM agents ORDER BY started_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM agents WHERE status = ? ORDER BY started_at", (status,)
                ).fetchall()
        sessions = []
        for row in rows:
            payload = dict(row)
            payload["metrics"] = _loads(payload.get("metrics"), {})
            sessions.append(payload)
        return sessions

    # ------------------------------------------------------------------ events

    def record_event(self, event: TransparencyEvent) -> TransparencyEvent:
        with self._write() as (conn, committed):
            return self._insert_event(conn, committed, event)

    def recent_events(
        self,
        session_id: str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[TransparencyEvent]:
        """Newest-first page of events, optionally filtered by session and/or task."""
        limit = max(1, min(int(limit), MAX_EVENT_PAGE))
        clauses: list[str] = []
        params: list[Any] = []
        if session_id:
            clauses.append("session_id = ?")
            params.append(session_id)
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM transparency_events {where} ORDER BY id DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def events_since(self, event_id: int, limit: int = MAX_EVENT_PAGE) -> list[TransparencyEvent]:
        limit = max(1, min(int(limit), MAX_EVENT_PAGE))
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM transparency_events WHERE id > ? ORDER BY id LIMIT ?",
                (event_id, limit),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    # ------------------------------------------------------------------ queries

    def task_status_summary(self, include_details: bool = False) -> dict[str, Any]:
        with self._read() as conn:
            by_status = {status: 0 for status in TASK_STATUSES}
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"):
                by_status[row["status"]] = int(row["n"])
            by_role = {
                row["agent_role"]: int(row["n"])
                for row in conn.execute(
                    "SELECT agent_role, COUNT(*) AS n FROM tasks GROUP BY agent_role "
                    "ORDER BY agent_role"
                )
            }
            ready = conn.execute(
                """
                SELECT COUNT(*) FROM tasks t
                WHERE t.status = 'pending'
                  AND NOT EXISTS (
                    SELECT 1 FROM task_dependencies d
                    JOIN tasks dep ON dep.id = d.depends_on
                    WHERE d.task_id = t.id AND dep.status != 'completed'
                  )
                """
            ).fetchone()[0]
            active_sessions = conn.execute(
                "SELECT COUNT(*) FROM agents WHERE status != 'terminated'"
            ).fetchone()[0]
            summary: dict[str, Any] = {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_role": by_role,
                "ready": int(ready),
                "active_sessions": int(active_sessions),
            }
            if include_details:
                summary["running"] = [
                    {
                        "task_id": row["id"],
                        "agent_role": row["agent_role"],
                        "session_id": row["assigned_session"],
                        "status": row["status"],
                        "assigned_at": row["assigned_at"],
                    }
                    for row in conn.execute(
                        "SELECT id, agent_role, assigned_session, status, assigned_at FROM tasks "
                        "WHERE status IN ('assigned', 'running') ORDER BY sequence"
                    )
                ]
                summary["failed"] = [
                    {"task_id": row["id"], "error": row["error"]}
                    for row in conn.execute(
                        "SELECT id, error FROM tasks WHERE status = 'failed' ORDER BY sequence"
                    )
                ]
        return summary

    def _replay(self, event_type: str, key: str) -> dict[str, str]:
        statuses: dict[str, str] = {}
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT {key}, metadata FROM transparency_events WHERE type = ? ORDER BY id",
                (event_type,),
            )
            for row in rows:
                target = _loads(row["metadata"], {}).get("to")
                if row[key] and target:
                    statuses[row[key]] = target
        return statuses

    def replay_task_statuses(self) -> dict[str, str]:
        """Rebuild each task's final status from the event log alone."""
        return self._replay("task_status", "task_id")

    def replay_session_statuses(self) -> dict[str, str]:
        return self._replay("session_status", "session_id")
