"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError, NotFoundError, PersistenceError
from task_lifecycle.storage.models import (
    ChangeResult,
    NewStep,
    StepRecord,
    StepUpdate,
    TaskRecord,
    TaskStatus,
    TaskType,
    TaskUpdate,
)


class PostgresTaskStore:
    """Persist tasks and their steps in PostgreSQL.

    ``resume_after`` and ``waiting_since`` are denormalised copies of
    ``metadata.resumeAfter`` and ``metadata.waitingSince``, written through the
    metadata codec, so the scheduler query can use the ``(status, resume_after)``
    index and malformed timestamps read as absent instead of failing a cast.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TASK_LIFECYCLE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    type TEXT NOT NULL DEFAULT 'GENERAL',
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    resume_after TIMESTAMPTZ,
                    waiting_since TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("ALTER TABLE tasks ADD COLUMN IF NOT EXISTS waiting_since TIMESTAMPTZ")
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status_resume_after
                ON tasks(status, resume_after)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_owner_status
                ON tasks(owner_id, status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_steps (
                    step_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    step_number INTEGER NOT NULL CHECK (step_number >= 1),
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT uq_task_steps_number UNIQUE (task_id, step_number)
                        DEFERRABLE INITIALLY DEFERRED
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_steps_task_id
                ON task_steps(task_id)
                """)
            conn.commit()

    def create_task(
        self,
        *,
        owner_id: str,
        title: str,
        description: str,
        task_type: TaskType,
        status: TaskStatus,
        metadata: dict[str, Any],
        steps: Sequence[NewStep] = (),
    ) -> TaskRecord:
        task_id = str(uuid.uuid4())
        now = datetime.now(tz=UTC)
        wait = codec.read_wait_state(metadata)
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    owner_id,
                    title,
                    description,
                    type,
                    status,
                    metadata,
                    resume_after,
                    waiting_since,
                    created_at,
                    updated_at,
                    completed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    owner_id,
                    title,
                    description,
                    task_type.value,
                    status.value,
                    self._json_wrapper(metadata),
                    wait.resume_after,
                    wait.waiting_since,
                    now,
                    now,
                    codec.read_completed_at(metadata),
                ),
            )
            for number, step in enumerate(steps, start=1):
                self._insert_step(conn, task_id, number, step, now)
            conn.commit()
            return self._load_task(conn, task_id)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_task(row, self._fetch_steps(conn, [task_id]))

    def find_by_id(self, task_id: str, owner_id: str) -> TaskRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s AND owner_id = %s",
                (task_id, owner_id),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_task(row, self._fetch_steps(conn, [task_id]))

    def get_step(self, step_id: str) -> StepRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM task_steps WHERE step_id = %s",
                (step_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_step(row)

    def list_steps(self, task_id: str) -> list[StepRecord]:
        with self._session() as conn:
            return self._fetch_steps(conn, [task_id]).get(task_id, [])

    def find_waiting_expired(self, now: datetime) -> list[TaskRecord]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE status = %s
                  AND resume_after IS NOT NULL
                  AND resume_after <= %s
                ORDER BY resume_after ASC
                """,
                (TaskStatus.WAITING_FOR_RESPONSE.value, now),
            ).fetchall()
            return self._rows_to_tasks(conn, rows)

    def list_waiting(
        self,
        owner_id: str,
        *,
        waiting_for: str | None = None,
        expired_before: datetime | None = None,
    ) -> list[TaskRecord]:
        clauses = ["owner_id = %s", "status = %s"]
        params: list[Any] = [owner_id, TaskStatus.WAITING_FOR_RESPONSE.value]
        if waiting_for is not None:
            clauses.append("metadata->>'waitingFor' = %s")
            params.append(waiting_for)
        if expired_before is not None:
            clauses.append("resume_after IS NOT NULL AND resume_after <= %s")
            params.append(expired_before)
        query = f"""
            SELECT *
            FROM tasks
            WHERE {" AND ".join(clauses)}
            ORDER BY waiting_since ASC NULLS LAST, updated_at DESC
        """
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return self._rows_to_tasks(conn, rows)

    def list_completed(
        self,
        owner_id: str,
        *,
        limit: int,
        task_type: TaskType | None = None,
    ) -> list[TaskRecord]:
        clauses = ["owner_id = %s", "status = %s"]
        params: list[Any] = [owner_id, TaskStatus.COMPLETED.value]
        if task_type is not None:
            clauses.append("type = %s")
            params.append(task_type.value)
        params.append(limit)
        query = f"""
            SELECT *
            FROM tasks
            WHERE {" AND ".join(clauses)}
            ORDER BY completed_at DESC NULLS LAST
            LIMIT %s
        """
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return self._rows_to_tasks(conn, rows)

    def update_status_and_metadata(
        self,
        task_id: str,
        *,
        status: TaskStatus,
        metadata: dict[str, Any],
        completed_at: datetime | None = None,
        expected_status: TaskStatus | None = None,
        expected_updated_at: datetime | None = None,
    ) -> TaskRecord:
        result = self.apply_changes(
            task=TaskUpdate(
                task_id=task_id,
                status=status,
                metadata=metadata,
                completed_at=completed_at,
                expected_status=expected_status,
                expected_updated_at=expected_updated_at,
            )
        )
        if result.task is None:
            raise NotFoundError(f"Task {task_id} does not exist")
        return result.task

    def apply_changes(
        self,
        *,
        task: TaskUpdate | None = None,
        steps: Sequence[StepUpdate] = (),
    ) -> ChangeResult:
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            updated_task_id: str | None = None
            if task is not None:
                self._update_task_row(conn, task, now)
                updated_task_id = task.task_id
            updated_steps: list[StepRecord] = []
            for update in steps:
                updated_steps.append(self._update_step_row(conn, update, now))
            conn.commit()
            return ChangeResult(
                task=self._load_task(conn, updated_task_id) if updated_task_id else None,
                steps=updated_steps,
            )

    def add_step(self, task_id: str, step: NewStep) -> StepRecord:
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            # row lock serialises appends and transitions of the same task
            locked = self._lock_task(conn, task_id)
            if locked is None:
                raise NotFoundError(f"Task {task_id} does not exist")
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(MAX(step_number), 0) AS highest "
                "FROM task_steps WHERE task_id = %s",
                (task_id,),
            ).fetchone()
            created = self._insert_step(conn, task_id, int(row["highest"]) + 1, step, now)
            metadata = codec.set_step_counts(
                self._parse_json_object(locked["metadata"]),
                total_steps=int(row["total"]) + 1,
            )
            self._write_task_metadata(conn, task_id, metadata, now)
            conn.commit()
        return created

    def delete_step(self, step_id: str) -> TaskRecord:
        now = datetime.now(tz=UTC)
        with self._session() as conn:
            owner = conn.execute(
                "SELECT task_id FROM task_steps WHERE step_id = %s",
                (step_id,),
            ).fetchone()
            if owner is None:
                raise NotFoundError(f"Step {step_id} does not exist")
            task_id = str(owner["task_id"])
            locked = self._lock_task(conn, task_id)
            if locked is None:
                raise NotFoundError(f"Task {task_id} does not exist")
            # numbering may have shifted while waiting for the lock
            removed = conn.execute(
                "DELETE FROM task_steps WHERE step_id = %s RETURNING step_number",
                (step_id,),
            ).fetchone()
            if removed is None:
                raise NotFoundError(f"Step {step_id} does not exist")
            remaining = conn.execute(
                "SELECT COUNT(*) AS total FROM task_steps WHERE task_id = %s",
                (task_id,),
            ).fetchone()
            conn.execute(
                """
                UPDATE task_steps
                SET step_number = step_number - 1,
                    updated_at = %s
                WHERE task_id = %s
                  AND step_number > %s
                """,
                (now, task_id, removed["step_number"]),
            )
            metadata = codec.step_counts_after_delete(
                self._parse_json_object(locked["metadata"]),
                int(removed["step_number"]),
                total_steps=int(remaining["total"]) + 1,
            )
            self._write_task_metadata(conn, task_id, metadata, now)
            conn.commit()
            return self._load_task(conn, task_id)

    def delete_task(self, task_id: str) -> None:
        with self._session() as conn:
            deleted = conn.execute(
                "DELETE FROM tasks WHERE task_id = %s RETURNING task_id",
                (task_id,),
            ).fetchone()
            if deleted is None:
                raise NotFoundError(f"Task {task_id} does not exist")
            conn.commit()

    @contextmanager
    def _session(self) -> Iterator[Any]:
        try:
            with self._lock, self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise PersistenceError(f"Task store operation failed: {exc}") from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _lock_task(conn: Any, task_id: str) -> Any:
        return conn.execute(
            "SELECT task_id, metadata FROM tasks WHERE task_id = %s FOR UPDATE",
            (task_id,),
        ).fetchone()

    def _update_task_row(self, conn: Any, update: TaskUpdate, now: datetime) -> None:
        wait = codec.read_wait_state(update.metadata)
        query = """
            UPDATE tasks
            SET status = %s,
                metadata = %s,
                resume_after = %s,
                waiting_since = %s,
                completed_at = %s,
                updated_at = GREATEST(%s, updated_at + interval '1 microsecond')
            WHERE task_id = %s
        """
        params: list[Any] = [
            update.status.value,
            self._json_wrapper(update.metadata),
            wait.resume_after,
            wait.waiting_since,
            update.completed_at,
            now,
            update.task_id,
        ]
        query, params = _guarded(query, params, update)
        row = conn.execute(query + " RETURNING task_id", tuple(params)).fetchone()
        if row is None:
            self._raise_missed_update(conn, "tasks", "task_id", update.task_id, update)

    def _update_step_row(self, conn: Any, update: StepUpdate, now: datetime) -> StepRecord:
        query = """
            UPDATE task_steps
            SET status = %s,
                metadata = %s,
                updated_at = GREATEST(%s, updated_at + interval '1 microsecond')
            WHERE step_id = %s
        """
        params: list[Any] = [
            update.status.value,
            self._json_wrapper(update.metadata),
            now,
            update.step_id,
        ]
        query, params = _guarded(query, params, update)
        row = conn.execute(query + " RETURNING *", tuple(params)).fetchone()
        if row is None:
            self._raise_missed_update(conn, "task_steps", "step_id", update.step_id, update)
        return self._row_to_step(row)

    @staticmethod
    def _raise_missed_update(
        conn: Any,
        table: str,
        key: str,
        entity_id: str,
        update: TaskUpdate | StepUpdate,
    ) -> None:
        row = conn.execute(
            f"SELECT status FROM {table} WHERE {key} = %s",
            (entity_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"{key} {entity_id} does not exist")
        expected = update.expected_status.value if update.expected_status else None
        if expected is not None and row["status"] != expected:
            raise ConflictError(
                f"{key} {entity_id} is {row['status']}, expected {expected}",
                expected_status=expected,
            )
        raise ConflictError(
            f"{key} {entity_id} was modified since it was read",
            expected_status=expected,
        )

    def _write_task_metadata(
        self, conn: Any, task_id: str, metadata: dict[str, Any], now: datetime
    ) -> None:
        wait = codec.read_wait_state(metadata)
        conn.execute(
            """
            UPDATE tasks
            SET metadata = %s,
                resume_after = %s,
                waiting_since = %s,
                updated_at = GREATEST(%s, updated_at + interval '1 microsecond')
            WHERE task_id = %s
            """,
            (
                self._json_wrapper(metadata),
                wait.resume_after,
                wait.waiting_since,
                now,
                task_id,
            ),
        )

    def _insert_step(
        self, conn: Any, task_id: str, step_number: int, step: NewStep, now: datetime
    ) -> StepRecord:
        row = conn.execute(
            """
            INSERT INTO task_steps (
                step_id,
                task_id,
                step_number,
                title,
                description,
                status,
                metadata,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                task_id,
                step_number,
                step.title,
                step.description,
                step.status.value,
                self._json_wrapper(step.metadata or {}),
                now,
                now,
            ),
        ).fetchone()
        if row is None:
            raise RuntimeError("Failed to persist task step")
        return self._row_to_step(row)

    def _load_task(self, conn: Any, task_id: str) -> TaskRecord:
        row = conn.execute(
            "SELECT * FROM tasks WHERE task_id = %s",
            (task_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Task {task_id} does not exist")
        return self._row_to_task(row, self._fetch_steps(conn, [task_id]))

    def _fetch_steps(self, conn: Any, task_ids: list[str]) -> dict[str, list[StepRecord]]:
        if not task_ids:
            return {}
        rows = conn.execute(
            """
            SELECT *
            FROM task_steps
            WHERE task_id = ANY(%s)
            ORDER BY task_id, step_number ASC
            """,
            (task_ids,),
        ).fetchall()
        grouped: dict[str, list[StepRecord]] = {}
        for row in rows:
            grouped.setdefault(str(row["task_id"]), []).append(self._row_to_step(row))
        return grouped

    def _rows_to_tasks(self, conn: Any, rows: list[Any]) -> list[TaskRecord]:
        steps = self._fetch_steps(conn, [str(row["task_id"]) for row in rows])
        return [self._row_to_task(row, steps) for row in rows]

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Jsonb
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Jsonb

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any, steps: dict[str, list[StepRecord]]) -> TaskRecord:
        task_id = str(row["task_id"])
        completed_raw = row.get("completed_at")
        return TaskRecord(
            task_id=task_id,
            owner_id=row["owner_id"],
            title=row["title"],
            description=row.get("description") or "",
            type=TaskType(row["type"]),
            status=TaskStatus(row["status"]),
            metadata=cls._parse_json_object(row["metadata"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
            completed_at=cls._parse_datetime(completed_raw) if completed_raw else None,
            steps=steps.get(task_id, []),
        )

    @classmethod
    def _row_to_step(cls, row: Any) -> StepRecord:
        return StepRecord(
            step_id=str(row["step_id"]),
            task_id=str(row["task_id"]),
            step_number=int(row["step_number"]),
            title=row["title"],
            description=row.get("description") or "",
            status=TaskStatus(row["status"]),
            metadata=cls._parse_json_object(row["metadata"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )


def _guarded(
    query: str, params: list[Any], update: TaskUpdate | StepUpdate
) -> tuple[str, list[Any]]:
    if update.expected_status is not None:
        query += " AND status = %s"
        params.append(update.expected_status.value)
    if update.expected_updated_at is not None:
        query += " AND updated_at = %s"
        params.append(update.expected_updated_at)
    return query, params
