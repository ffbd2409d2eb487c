"""Durable storage layer for goals, tasks and branch staging records."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from .schema import Goal, GoalStatus, Task, TaskStatus, utc_now

DEFAULT_DB_PATH = Path("data/lucidcoder.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    serialisable = default if data is None else data
    return json.dumps(serialisable)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class MemoryStore:
    """SQLite-backed persistence for goals and their tasks."""

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "lucidcoder" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        if str(requested) == ":memory:":
            return requested
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists() and resolved.exists() and os.access(resolved, os.R_OK):
            try:
                shutil.copy2(resolved, fallback)
            except OSError:
                LOGGER.debug("Could not copy %s into fallback location", resolved)
        fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if str(self.db_path) != ":memory:":
            if self.db_path != requested_path.resolve():
                LOGGER.warning(
                    "Database path %s is not writable; using fallback %s",
                    requested_path,
                    self.db_path,
                )
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.RLock()
        self._conn = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        # Shared across threads; writes go through _transaction.
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MemoryStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "lucidcoder.sqlite")

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS goals (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                prompt TEXT NOT NULL,
                title TEXT NOT NULL,
                status TEXT NOT NULL,
                parent_goal_id TEXT,
                branch_name TEXT,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(parent_goal_id) REFERENCES goals(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_goals_project
                ON goals(project_id, created_at);

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                goal_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                prompt TEXT NOT NULL,
                status TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                branch_name TEXT,
                stash_label TEXT,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(goal_id) REFERENCES goals(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_tasks_goal_position
                ON tasks(goal_id, position);

            CREATE TABLE IF NOT EXISTS branches (
                project_id TEXT NOT NULL,
                name TEXT NOT NULL,
                staged_files TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, name)
            );
            """
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    # Goal operations -----------------------------------------------------------------
    def save_goal(self, goal: Goal) -> Goal:
        record = goal.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO goals (
                    id, project_id, prompt, title, status, parent_goal_id,
                    branch_name, metadata, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    status = excluded.status,
                    branch_name = excluded.branch_name,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.project_id,
                    record.prompt,
                    record.title,
                    record.status.value,
                    record.parent_goal_id,
                    record.branch_name,
                    _dump_json(record.metadata, default={}),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        cursor = self._conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_goal(row)

    def list_goals(
        self,
        *,
        project_id: Optional[str] = None,
        statuses: Optional[Sequence[GoalStatus]] = None,
    ) -> List[Goal]:
        query = "SELECT * FROM goals"
        clauses = []
        params: List[Any] = []
        if project_id:
            clauses.append("project_id = ?")
            params.append(project_id)
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            clauses.append(f"status IN ({placeholders})")
            params.extend(status.value for status in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rowid ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_goal(row) for row in cursor.fetchall()]

    def update_goal_status(self, goal_id: str, status: GoalStatus) -> None:
        timestamp = _as_iso(utc_now())
        with self._transaction():
            self._conn.execute(
                "UPDATE goals SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, timestamp, goal_id),
            )

    # Task operations -----------------------------------------------------------------
    def save_task(self, task: Task) -> Task:
        record = task.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._upsert_task(record)
        return record

    def save_tasks(self, tasks: Sequence[Task]) -> List[Task]:
        """Persist ``tasks`` in one transaction."""
        now = utc_now()
        records = [task.model_copy(update={"updated_at": now}) for task in tasks]
        with self._transaction():
            for record in records:
                self._upsert_task(record)
        return records

    def _upsert_task(self, record: Task) -> None:
        self._conn.execute(
            """
            INSERT INTO tasks (
                id, goal_id, type, title, prompt, status, position,
                branch_name, stash_label, metadata, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                prompt = excluded.prompt,
                status = excluded.status,
                position = excluded.position,
                branch_name = excluded.branch_name,
                stash_label = excluded.stash_label,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.goal_id,
                record.type.value,
                record.title,
                record.prompt,
                record.status.value,
                record.position,
                record.branch_name,
                record.stash_label,
                _dump_json(record.metadata, default={}),
                _as_iso(record.created_at),
                _as_iso(record.updated_at),
            ),
        )

    def get_task(self, task_id: str) -> Optional[Task]:
        cursor = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        goal_id: str,
        *,
        statuses: Optional[Sequence[TaskStatus]] = None,
    ) -> List[Task]:
        query = "SELECT * FROM tasks WHERE goal_id = ?"
        params: List[Any] = [goal_id]
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" AND status IN ({placeholders})"
            params.extend(status.value for status in statuses)
        query += " ORDER BY position ASC, created_at ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_task(row) for row in cursor.fetchall()]

    # Branch staging ------------------------------------------------------------------
    def get_staged_files(self, project_id: str, branch_name: str) -> Optional[str]:
        """Return the raw staged-files JSON column for a branch, if recorded."""
        cursor = self._conn.execute(
            "SELECT staged_files FROM branches WHERE project_id = ? AND name = ?",
            (project_id, branch_name),
        )
        row = cursor.fetchone()
        return row["staged_files"] if row else None

    def record_staged_file(self, project_id: str, branch_name: str, path: str, *, source: str = "agent") -> None:
        """Add or refresh ``path`` in the branch's staged-files list."""
        with self._write_lock:
            raw = self.get_staged_files(project_id, branch_name)
            try:
                entries = _load_json(raw, default=[])
            except json.JSONDecodeError:
                LOGGER.warning("Discarding unreadable staged files for %s/%s", project_id, branch_name)
                entries = []
            if not isinstance(entries, list):
                entries = []
            timestamp = _as_iso(utc_now())
            entries = [entry for entry in entries if not (isinstance(entry, dict) and entry.get("path") == path)]
            entries.append({"path": path, "source": source, "timestamp": timestamp})
            self._write_branch(project_id, branch_name, entries, timestamp)

    def _write_branch(self, project_id: str, branch_name: str, entries: List[Any], timestamp: str) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO branches (project_id, name, staged_files, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id, name) DO UPDATE SET
                    staged_files = excluded.staged_files,
                    updated_at = excluded.updated_at
                """,
                (project_id, branch_name, _dump_json(entries, default=[]), timestamp),
            )

    def clear_staged_files(self, project_id: str, branch_name: str) -> None:
        with self._transaction():
            self._conn.execute(
                "DELETE FROM branches WHERE project_id = ? AND name = ?",
                (project_id, branch_name),
            )

    # Row mapping ---------------------------------------------------------------------
    def _row_to_goal(self, row: sqlite3.Row) -> Goal:
        return Goal(
            id=row["id"],
            project_id=row["project_id"],
            prompt=row["prompt"],
            title=row["title"],
            status=GoalStatus(row["status"]),
            parent_goal_id=row["parent_goal_id"],
            branch_name=row["branch_name"],
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            goal_id=row["goal_id"],
            type=row["type"],
            title=row["title"],
            prompt=row["prompt"],
            status=TaskStatus(row["status"]),
            position=row["position"],
            branch_name=row["branch_name"],
            stash_label=row["stash_label"],
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "MemoryStore"]
