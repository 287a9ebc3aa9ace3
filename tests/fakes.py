"""In-memory doubles for stores, token sources and event providers."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from tasksync.errors import NotConnectedError, StorageError
from tasksync.models import (
    EventTaskMapping,
    NewTask,
    NormalizedEvent,
    OAuthConnection,
    Provider,
    TaskState,
)
from tasksync.providers.base import EventProvider, ProviderContext
from tasksync.tokens import AccessToken

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


def make_pool(
    *,
    fetchrow_return: Any = None,
    fetch_return: list | None = None,
    execute_return: str = "UPDATE 1",
) -> MagicMock:
    """Build a minimal asyncpg pool mock; the connection is ``pool._conn``."""
    conn = AsyncMock()
    conn.fetchrow.return_value = fetchrow_return
    conn.fetch.return_value = fetch_return or []
    conn.execute.return_value = execute_return

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    pool._conn = conn
    return pool


def make_event(
    external_id: str,
    *,
    title: str = "Intro call",
    start: datetime = NOW,
    cancelled: bool = False,
    join_url: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        external_id=external_id,
        title=title,
        start=start,
        join_url=join_url,
        status="canceled" if cancelled else "active",
        is_cancelled=cancelled,
    )


class MemoryConnectionStore:
    """ConnectionStore double that counts writes."""

    def __init__(self, *connections: OAuthConnection) -> None:
        self.rows: dict[tuple[str, Provider], OAuthConnection] = {
            (c.user_id, c.provider): c for c in connections
        }
        self.loads = 0
        self.writes = 0
        self.deleted: list[tuple[str, Provider]] = []

    async def load(self, user_id: str, provider: Provider | str) -> OAuthConnection | None:
        self.loads += 1
        return self.rows.get((user_id, Provider(provider)))

    async def upsert(self, connection: OAuthConnection) -> None:
        self.writes += 1
        key = (connection.user_id, connection.provider)
        existing = self.rows.get(key)
        if existing is not None:
            connection = connection.model_copy(
                update={
                    "refresh_token": connection.refresh_token or existing.refresh_token,
                    "scope": connection.scope or existing.scope,
                    "provider_email": connection.provider_email or existing.provider_email,
                    "provider_user_id": connection.provider_user_id
                    or existing.provider_user_id,
                    "extra": existing.extra | connection.extra,
                }
            )
        self.rows[key] = connection

    async def update_tokens(
        self,
        user_id: str,
        provider: Provider | str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
        scope: str | None = None,
        token_type: str | None = None,
    ) -> bool:
        self.writes += 1
        key = (user_id, Provider(provider))
        current = self.rows.get(key)
        if current is None:
            return False
        self.rows[key] = current.model_copy(
            update={
                "access_token": access_token,
                "expires_at": expires_at,
                "refresh_token": refresh_token or current.refresh_token,
                "scope": scope or current.scope,
                "token_type": token_type or current.token_type,
            }
        )
        return True

    async def delete(self, user_id: str, provider: Provider | str) -> bool:
        key = (user_id, Provider(provider))
        self.deleted.append(key)
        return self.rows.pop(key, None) is not None


class MemoryTaskStore:
    """TaskStore double; ``fail_ids`` makes writes for those tasks raise."""

    def __init__(self) -> None:
        self.tasks: dict[uuid.UUID, dict[str, Any]] = {}
        self.fail_inserts = False
        self.fail_ids: set[uuid.UUID] = set()

    def add(self, user_id: str, *, status: str = "open", title: str = "Existing") -> uuid.UUID:
        task_id = uuid.uuid4()
        self.tasks[task_id] = {
            "id": task_id,
            "user_id": user_id,
            "title": title,
            "status": status,
            "kind": "appointment",
            "due_at": NOW,
            "completed_at": None,
        }
        return task_id

    async def load_states(
        self, user_id: str, task_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, TaskState]:
        return {
            tid: TaskState(id=tid, status=self.tasks[tid]["status"])
            for tid in task_ids
            if tid in self.tasks and self.tasks[tid]["user_id"] == user_id
        }

    async def insert(self, task: NewTask) -> uuid.UUID:
        if self.fail_inserts:
            raise OSError("connection reset by peer")
        self.tasks[task.id] = task.model_dump() | {"completed_at": None}
        return task.id

    async def update_synced_fields(
        self, user_id: str, task_id: uuid.UUID, *, title: str, due_at: datetime, kind: str
    ) -> None:
        self._check(user_id, task_id)
        self.tasks[task_id].update(title=title, due_at=due_at, kind=kind)

    async def mark_done(
        self, user_id: str, task_id: uuid.UUID, *, completed_at: datetime | None = None
    ) -> None:
        self._check(user_id, task_id)
        self.tasks[task_id].update(status="done", completed_at=completed_at or NOW)

    def _check(self, user_id: str, task_id: uuid.UUID) -> None:
        if task_id in self.fail_ids:
            raise OSError("connection reset by peer")
        task = self.tasks.get(task_id)
        if task is None or task["user_id"] != user_id:
            raise StorageError(f"Task {task_id} not found")


class MemoryMappingStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], EventTaskMapping] = {}

    def add(self, user_id: str, external_id: str, task_id: uuid.UUID, **kwargs: Any) -> None:
        self.rows[(user_id, external_id)] = EventTaskMapping(
            user_id=user_id, external_id=external_id, task_id=task_id, **kwargs
        )

    async def load(self, user_id: str, external_ids: Iterable[str]) -> dict[str, EventTaskMapping]:
        return {
            eid: self.rows[(user_id, eid)] for eid in external_ids if (user_id, eid) in self.rows
        }

    async def upsert(self, user_id: str, external_id: str, task_id: uuid.UUID) -> None:
        self.rows[(user_id, external_id)] = EventTaskMapping(
            user_id=user_id, external_id=external_id, task_id=task_id
        )

    async def set_canceled(
        self, user_id: str, external_id: str, canceled_at: datetime | None = None
    ) -> bool:
        row = self.rows.get((user_id, external_id))
        if row is None:
            return False
        self.rows[(user_id, external_id)] = row.model_copy(
            update={"canceled_at": canceled_at or NOW}
        )
        return True

    async def clear_canceled(self, user_id: str, external_id: str) -> bool:
        row = self.rows.get((user_id, external_id))
        if row is None or row.canceled_at is None:
            return False
        self.rows[(user_id, external_id)] = row.model_copy(update={"canceled_at": None})
        return True


class StaticTokens:
    """Token source returning a fixed token, or raising when disconnected."""

    def __init__(
        self,
        *,
        connected: bool = True,
        calendar: bool = True,
        provider_user_id: str | None = "https://api.calendly.com/users/U1",
    ) -> None:
        self.connected = connected
        self.calendar = calendar
        self.provider_user_id = provider_user_id
        self.calls: list[tuple[str, str]] = []

    async def get_valid_access_token(self, user_id: str, provider: Provider | str) -> AccessToken:
        provider = Provider(provider)
        self.calls.append((user_id, provider.value))
        if not self.connected:
            raise NotConnectedError(provider.value)
        return AccessToken(
            provider=provider,
            access_token=f"{provider.value}-access",
            provider_user_id=self.provider_user_id,
        )

    async def get_calendar_access_token(self, user_id: str) -> AccessToken:
        if not self.calendar:
            raise NotConnectedError(Provider.GMAIL.value, "calendar_not_connected")
        return await self.get_valid_access_token(user_id, Provider.GMAIL)


class StaticEventProvider(EventProvider):
    """Returns a preset event list and records each call."""

    def __init__(self, events: list[NormalizedEvent], *, name: str = "zoom") -> None:
        super().__init__(http_client=MagicMock())
        self.events = events
        self._name = name
        self.calls: list[dict[str, Any]] = []
        self.closed = 0

    @property
    def name(self) -> str:
        return self._name

    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        self.calls.append(
            {
                "access_token": access_token,
                "window_start": window_start,
                "max_count": max_count,
                "context": context,
            }
        )
        return list(self.events)

    async def aclose(self) -> None:
        self.closed += 1
