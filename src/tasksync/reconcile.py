"""Three-way reconciliation of remote bookings into the task ledger.

For one user and one scheduling provider, :class:`ReconciliationEngine`
lists upcoming events, bulk-loads the existing event→task mappings and the
statuses of the mapped tasks, then drives every event down exactly one path:

* **cancel**: the event is cancelled and a mapping exists.  The task is
  marked done and the mapping is stamped ``canceled_at``.
* **update**: a mapping exists and its task is still present.  Title, due
  date and kind are overwritten; status is left alone.
* **create**: no mapping (or its task vanished).  A new open task is
  inserted and the mapping is upserted to point at it.

A cancelled event with no mapping takes the create path.  Store failures for
one event are recorded as a ``failed`` outcome and the batch continues.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Literal, Protocol

import asyncpg
from pydantic import BaseModel, ConfigDict, Field

from tasksync.config import SyncConfig
from tasksync.core.logging import sync_context
from tasksync.errors import StorageError, sanitize_detail
from tasksync.models import (
    SCHEDULING_PROVIDERS,
    EventTaskMapping,
    NewTask,
    NormalizedEvent,
    Provider,
    TaskState,
)
from tasksync.providers import EventProvider, build_event_provider, context_from_token
from tasksync.providers.base import clamp_count
from tasksync.tokens import AccessToken

logger = logging.getLogger(__name__)

DEFAULT_TASK_KIND = "appointment"
DEFAULT_TASK_PRIORITY = "medium"

_PROVIDER_LABELS: dict[Provider, tuple[str, str]] = {
    # provider -> (display name, external id label)
    Provider.ZOOM: ("Zoom", "Meeting ID"),
    Provider.CALENDLY: ("Calendly", "Event"),
    Provider.CALCOM: ("Cal.com", "Booking"),
}

_PERSISTENCE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, StorageError)

OutcomeKind = Literal["created", "updated", "canceled", "failed"]


class TokenSource(Protocol):
    async def get_valid_access_token(self, user_id: str, provider: Provider | str) -> AccessToken:
        ...


class TaskRepository(Protocol):
    """Task persistence contract used by the engine."""

    async def load_states(
        self, user_id: str, task_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, TaskState]:
        ...

    async def insert(self, task: NewTask) -> uuid.UUID:
        ...

    async def update_synced_fields(
        self, user_id: str, task_id: uuid.UUID, *, title: str, due_at: datetime, kind: str
    ) -> None:
        ...

    async def mark_done(
        self, user_id: str, task_id: uuid.UUID, *, completed_at: datetime | None = None
    ) -> None:
        ...


class MappingRepository(Protocol):
    """Per-provider mapping persistence contract used by the engine."""

    async def load(self, user_id: str, external_ids: Iterable[str]) -> dict[str, EventTaskMapping]:
        ...

    async def upsert(self, user_id: str, external_id: str, task_id: uuid.UUID) -> None:
        ...

    async def set_canceled(
        self, user_id: str, external_id: str, canceled_at: datetime | None = None
    ) -> bool:
        ...

    async def clear_canceled(self, user_id: str, external_id: str) -> bool:
        ...


class EventOutcome(BaseModel):
    """What happened to one remote event during a sync."""

    model_config = ConfigDict(extra="forbid")

    external_id: str
    kind: OutcomeKind
    task_id: uuid.UUID | None = None
    reason: str | None = None


class SyncResult(BaseModel):
    """Aggregate counts from one ``sync_tasks`` run."""

    model_config = ConfigDict(extra="forbid")

    ok: bool = True
    created: int = 0
    updated: int = 0
    canceled: int = 0
    failed: int = 0
    total: int = 0
    outcomes: list[EventOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[EventOutcome]) -> SyncResult:
        counts = {kind: 0 for kind in ("created", "updated", "canceled", "failed")}
        for outcome in outcomes:
            counts[outcome.kind] += 1
        return cls(total=len(outcomes), outcomes=outcomes, **counts)


def build_task_notes(provider: Provider, event: NormalizedEvent) -> str:
    display_name, id_label = _PROVIDER_LABELS[provider]
    lines = [f"Synced automatically from {display_name}.", f"{id_label}: {event.external_id}"]
    if event.join_url:
        lines.append(f"Join: {event.join_url}")
    return "\n".join(lines)


class ReconciliationEngine:
    """Reconciles one provider's upcoming events into tasks for one user.

    Parameters
    ----------
    tokens:
        Supplies valid access tokens (normally a
        :class:`~tasksync.tokens.TokenManager`).
    task_store:
        Task persistence.
    mapping_store_factory:
        Returns the mapping repository for a provider.
    event_provider_factory:
        Returns an :class:`EventProvider` for a provider name.  The engine
        closes it after each listing call.
    sync_config:
        Count bounds and the lookback window.
    """

    def __init__(
        self,
        *,
        tokens: TokenSource,
        task_store: TaskRepository,
        mapping_store_factory: Callable[[Provider], MappingRepository],
        event_provider_factory: Callable[[str], EventProvider] | None = None,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tokens = tokens
        self._tasks = task_store
        self._mapping_store_factory = mapping_store_factory
        self._event_provider_factory = event_provider_factory or build_event_provider
        self._config = sync_config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def sync_tasks(
        self,
        user_id: str,
        provider: Provider | str,
        max_count: int | None = None,
    ) -> SyncResult:
        """Reconcile *provider*'s upcoming events for *user_id*.

        Raises
        ------
        NotConnectedError, ProviderNotConfiguredError, TokenRefreshError
            From the token manager; nothing is written.
        ProviderAPIError
            The listing call failed; nothing is written.
        ValueError
            *provider* is not a scheduling provider.
        """
        provider = Provider(provider)
        if provider not in SCHEDULING_PROVIDERS:
            raise ValueError(f"Provider {provider.value!r} does not support task sync")
        max_count = clamp_count(
            max_count, default=self._config.default_max, cap=self._config.max_cap
        )

        with sync_context(user_id, provider.value):
            token = await self._tokens.get_valid_access_token(user_id, provider)
            now = self._clock()
            events = await self._fetch_events(provider, token, now=now, max_count=max_count)
            if not events:
                logger.info("Task sync found no events")
                return SyncResult()

            mapping_store = self._mapping_store_factory(provider)
            mappings = await mapping_store.load(user_id, [e.external_id for e in events])
            task_states = await self._tasks.load_states(
                user_id, [m.task_id for m in mappings.values()]
            )

            outcomes = [
                await self._reconcile_event(
                    user_id,
                    provider,
                    event,
                    mapping=mappings.get(event.external_id),
                    task_states=task_states,
                    mapping_store=mapping_store,
                    now=now,
                )
                for event in events
            ]
            result = SyncResult.from_outcomes(outcomes)

            if result.failed and result.failed == result.total:
                logger.error(
                    "Task sync failed for every event (%d of %d)", result.failed, result.total
                )
            logger.info(
                "Task sync finished: created=%d updated=%d canceled=%d failed=%d total=%d",
                result.created,
                result.updated,
                result.canceled,
                result.failed,
                result.total,
            )
            return result

    async def _fetch_events(
        self,
        provider: Provider,
        token: AccessToken,
        *,
        now: datetime,
        max_count: int,
    ) -> list[NormalizedEvent]:
        fetcher = self._event_provider_factory(provider.value)
        try:
            events = await fetcher.list_upcoming_events(
                token.access_token,
                window_start=now - timedelta(hours=self._config.lookback_hours),
                max_count=max_count,
                context=context_from_token(token),
            )
        finally:
            await fetcher.aclose()

        # A provider may repeat an id (e.g. recurring Zoom meetings); first wins.
        unique: dict[str, NormalizedEvent] = {}
        for event in events:
            unique.setdefault(event.external_id, event)
        return list(unique.values())

    async def _reconcile_event(
        self,
        user_id: str,
        provider: Provider,
        event: NormalizedEvent,
        *,
        mapping: EventTaskMapping | None,
        task_states: dict[uuid.UUID, TaskState],
        mapping_store: MappingRepository,
        now: datetime,
    ) -> EventOutcome:
        external_id = event.external_id
        try:
            if event.is_cancelled and mapping is not None:
                task = task_states.get(mapping.task_id)
                if task is not None and task.status != "done":
                    await self._tasks.mark_done(user_id, mapping.task_id, completed_at=now)
                # The first cancellation time is kept on repeat syncs
                if mapping.canceled_at is None:
                    await mapping_store.set_canceled(user_id, external_id, now)
                return EventOutcome(external_id=external_id, kind="canceled", task_id=mapping.task_id)

            if mapping is not None and mapping.task_id in task_states:
                await self._tasks.update_synced_fields(
                    user_id,
                    mapping.task_id,
                    title=event.title,
                    due_at=event.start,
                    kind=DEFAULT_TASK_KIND,
                )
                if mapping.canceled_at is not None:
                    await mapping_store.clear_canceled(user_id, external_id)
                return EventOutcome(external_id=external_id, kind="updated", task_id=mapping.task_id)

            if mapping is not None:
                logger.info(
                    "Mapped task %s for event %s no longer exists; recreating",
                    mapping.task_id,
                    external_id,
                )
            display_name, _ = _PROVIDER_LABELS[provider]
            new_task = NewTask(
                user_id=user_id,
                title=event.title,
                description=f"Imported from {display_name}",
                notes=build_task_notes(provider, event),
                kind=DEFAULT_TASK_KIND,
                priority=DEFAULT_TASK_PRIORITY,
                due_at=event.start,
            )
            await self._tasks.insert(new_task)
            await mapping_store.upsert(user_id, external_id, new_task.id)
            return EventOutcome(external_id=external_id, kind="created", task_id=new_task.id)
        except _PERSISTENCE_ERRORS as exc:
            reason = sanitize_detail(f"{type(exc).__name__}: {exc}", 300)
            logger.warning("Task sync failed for event %s: %s", external_id, reason)
            return EventOutcome(external_id=external_id, kind="failed", reason=reason)
