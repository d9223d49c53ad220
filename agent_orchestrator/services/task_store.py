"""Durable task records: the store interface plus in-memory and SQLite stores."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from agent_orchestrator.core.errors import StoreUnavailableError
from agent_orchestrator.core.models import (
    Task,
    TaskStatus,
    code_to_priority,
    utc_now,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "assigned_agent_id",
        "output",
        "error",
        "attempts",
        "started_at",
        "completed_at",
    }
)


@dataclass(slots=True)
class TaskQuery:
    """Filters for task history; every field is optional."""

    agent_type: Optional[str] = None
    status: Optional[TaskStatus] = None
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 50
    offset: int = 0

    def matches(self, task: Task) -> bool:
        if self.agent_type is not None and task.agent_type != self.agent_type:
            return False
        if self.status is not None and task.status is not TaskStatus(self.status):
            return False
        if self.submitter_id is not None and task.submitter_id != self.submitter_id:
            return False
        if self.session_id is not None and task.session_id != self.session_id:
            return False
        if self.start is not None and task.created_at < self.start:
            return False
        if self.end is not None and task.created_at > self.end:
            return False
        return True


class TaskStore(Protocol):
    """Durability collaborator. The in-memory job stays the scheduling truth."""

    async def initialize(self) -> None: ...

    async def create_task(self, task: Task) -> Task: ...

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]: ...

    async def get_task(self, task_id: str) -> Optional[Task]: ...

    async def query_tasks(self, query: TaskQuery) -> List[Task]: ...

    async def check_health(self) -> bool: ...

    async def close(self) -> None: ...


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {sorted(unknown)}")


class InMemoryTaskStore:
    """Process-local store used in development and tests.

    Setting ``available`` to False makes every call raise
    :class:`StoreUnavailableError`, which is how an outage is simulated.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Task store is unavailable")

    async def initialize(self) -> None:
        self._ensure_available()

    async def create_task(self, task: Task) -> Task:
        self._ensure_available()
        self._tasks[task.id] = dataclasses.replace(task)
        return dataclasses.replace(task)

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        self._ensure_available()
        _check_fields(fields)
        task = self._tasks.get(task_id)
        if task is None:
            return None
        for name, value in fields.items():
            setattr(task, name, value)
        task.updated_at = utc_now()
        return dataclasses.replace(task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        self._ensure_available()
        task = self._tasks.get(task_id)
        return dataclasses.replace(task) if task else None

    async def query_tasks(self, query: TaskQuery) -> List[Task]:
        self._ensure_available()
        matched = sorted(
            (task for task in self._tasks.values() if query.matches(task)),
            key=lambda task: task.created_at,
            reverse=True,
        )
        return [dataclasses.replace(task) for task in matched[query.offset : query.offset + query.limit]]

    async def check_health(self) -> bool:
        return self.available

    async def close(self) -> None:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    agent_type TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 3,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'assigned', 'processing', 'completed', 'failed')),
    assigned_agent_id TEXT,
    input TEXT NOT NULL DEFAULT '{}',
    output TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    submitter_id TEXT,
    session_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_agent_type ON tasks(agent_type);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);
"""


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in {"input", "output"}:
        return json.dumps(value, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, TaskStatus):
        return value.value
    return value


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        type=row["type"],
        agent_type=row["agent_type"],
        input=json.loads(row["input"]),
        priority=code_to_priority(row["priority"]),
        status=TaskStatus(row["status"]),
        assigned_agent_id=row["assigned_agent_id"],
        output=json.loads(row["output"]) if row["output"] is not None else None,
        error=row["error"],
        attempts=row["attempts"],
        submitter_id=row["submitter_id"],
        session_id=row["session_id"],
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
        started_at=_parse_time(row["started_at"]),
        completed_at=_parse_time(row["completed_at"]),
    )


class SQLiteTaskStore:
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        try:
            self._conn = await asyncio.to_thread(self._connect)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open task store at {self.db_path}: {exc}") from exc
        logger.info("Task store initialised", extra={"path": str(self.db_path)})

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        return conn

    async def _run(self, fn, *args: Any) -> Any:
        async with self._lock:
            # Re-checked under the lock: close() may have run while this call waited.
            conn = self._conn
            if conn is None:
                raise StoreUnavailableError("Task store is not initialised")
            try:
                return await asyncio.to_thread(fn, conn, *args)
            except sqlite3.Error as exc:
                raise StoreUnavailableError(f"Task store error: {exc}") from exc

    async def create_task(self, task: Task) -> Task:
        await self._run(_insert_task, task)
        return dataclasses.replace(task)

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        _check_fields(fields)
        return await self._run(_update_task, task_id, fields)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._run(_select_task, task_id)

    async def query_tasks(self, query: TaskQuery) -> List[Task]:
        return await self._run(_select_tasks, query)

    async def check_health(self) -> bool:
        try:
            await self._run(lambda conn: conn.execute("SELECT 1").fetchone())
        except StoreUnavailableError:
            return False
        return True

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        async with self._lock:
            await asyncio.to_thread(conn.close)
        logger.info("Task store closed", extra={"path": str(self.db_path)})


def _insert_task(conn: sqlite3.Connection, task: Task) -> None:
    conn.execute(
        """INSERT INTO tasks (id, type, agent_type, priority, status, assigned_agent_id, input,
                              output, error, attempts, submitter_id, session_id,
                              created_at, updated_at, started_at, completed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task.id,
            task.type,
            task.agent_type,
            task.priority_code,
            task.status.value,
            task.assigned_agent_id,
            _encode("input", task.input),
            _encode("output", task.output),
            task.error,
            task.attempts,
            task.submitter_id,
            task.session_id,
            _encode("created_at", task.created_at),
            _encode("updated_at", task.updated_at),
            _encode("started_at", task.started_at),
            _encode("completed_at", task.completed_at),
        ),
    )
    conn.commit()


def _update_task(conn: sqlite3.Connection, task_id: str, fields: Dict[str, Any]) -> Optional[Task]:
    values = {name: _encode(name, value) for name, value in fields.items()}
    values["updated_at"] = utc_now().isoformat()
    assignments = ", ".join(f"{name} = ?" for name in values)
    cursor = conn.execute(
        f"UPDATE tasks SET {assignments} WHERE id = ?",
        (*values.values(), task_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return _select_task(conn, task_id)


def _select_task(conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def _select_tasks(conn: sqlite3.Connection, query: TaskQuery) -> List[Task]:
    clauses: List[str] = []
    params: List[Any] = []
    if query.agent_type is not None:
        clauses.append("agent_type = ?")
        params.append(query.agent_type)
    if query.status is not None:
        clauses.append("status = ?")
        params.append(TaskStatus(query.status).value)
    if query.submitter_id is not None:
        clauses.append("submitter_id = ?")
        params.append(query.submitter_id)
    if query.session_id is not None:
        clauses.append("session_id = ?")
        params.append(query.session_id)
    if query.start is not None:
        clauses.append("created_at >= ?")
        params.append(query.start.isoformat())
    if query.end is not None:
        clauses.append("created_at <= ?")
        params.append(query.end.isoformat())

    sql = "SELECT * FROM tasks"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
    params.extend([query.limit, query.offset])
    return [_row_to_task(row) for row in conn.execute(sql, params).fetchall()]
