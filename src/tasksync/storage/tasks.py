"""Task records backed by the ``tasks`` table.

Only the operations the reconciliation engine needs live here: bulk status
reads, inserts for newly seen events, and user-scoped updates.  Every write
is scoped by ``user_id`` so one user's sync can never touch another user's
tasks.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tasksync.db import acquire_conn, rows_affected
from tasksync.errors import StorageError
from tasksync.models import NewTask, TaskState

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TASKS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    id           UUID PRIMARY KEY,
    user_id      TEXT NOT NULL,
    title        TEXT NOT NULL,
    description  TEXT,
    notes        TEXT,
    kind         TEXT,
    priority     TEXT,
    status       TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'done')),
    due_at       TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    entity_type  TEXT NOT NULL DEFAULT 'none',
    entity_id    TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_TASKS_USER_INDEX_DDL = "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks (user_id)"


class TaskStore:
    """Async access to the ``tasks`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load_states(
        self, user_id: str, task_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, TaskState]:
        """Return ``{task_id: TaskState}`` for the ids that still exist for *user_id*."""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                "SELECT id, status FROM tasks WHERE user_id = $1 AND id = ANY($2::uuid[])",
                user_id,
                ids,
            )
        return {row["id"]: TaskState(id=row["id"], status=row["status"]) for row in rows}

    async def insert(self, task: NewTask) -> uuid.UUID:
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO tasks
                    (id, user_id, title, description, notes, kind, priority,
                     status, due_at, entity_type, entity_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                task.id,
                task.user_id,
                task.title,
                task.description,
                task.notes,
                task.kind,
                task.priority,
                task.status,
                task.due_at,
                task.entity_type,
                task.entity_id,
            )
        return task.id

    async def update_synced_fields(
        self,
        user_id: str,
        task_id: uuid.UUID,
        *,
        title: str,
        due_at: datetime,
        kind: str,
    ) -> None:
        """Overwrite the fields owned by the remote event.

        ``status`` is deliberately not in the SET list: a task a person
        marked done stays done.

        Raises
        ------
        StorageError
            If the task no longer exists for *user_id*.
        """
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                """
                UPDATE tasks SET title = $3, due_at = $4, kind = $5, updated_at = now()
                WHERE user_id = $1 AND id = $2
                """,
                user_id,
                task_id,
                title,
                due_at,
                kind,
            )
        if rows_affected(status) == 0:
            raise StorageError(f"Task {task_id} not found for update")

    async def mark_done(
        self,
        user_id: str,
        task_id: uuid.UUID,
        *,
        completed_at: datetime | None = None,
    ) -> None:
        """Transition a task to ``done`` and stamp ``completed_at``.

        Raises
        ------
        StorageError
            If the task no longer exists for *user_id*.
        """
        completed_at = completed_at or datetime.now(UTC)
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                """
                UPDATE tasks SET status = 'done', completed_at = $3, updated_at = now()
                WHERE user_id = $1 AND id = $2
                """,
                user_id,
                task_id,
                completed_at,
            )
        if rows_affected(status) == 0:
            raise StorageError(f"Task {task_id} not found for completion")


async def ensure_tasks_schema(pool: asyncpg.Pool) -> None:
    """Ensure ``tasks`` exists on the target database."""
    async with acquire_conn(pool) as conn:
        await conn.execute(_TASKS_TABLE_DDL)
        await conn.execute(_TASKS_USER_INDEX_DDL)
