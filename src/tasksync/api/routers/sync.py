"""Task sync, event listing and calendar push endpoints."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query

from tasksync.api.deps import (
    get_engine,
    get_pusher,
    get_services,
    get_user_id,
    normalize_path_provider,
    scheduling_provider,
)
from tasksync.api.models import EventListResponse, PushRequest, PushResponse, SyncTasksResponse
from tasksync.providers import EVENT_SOURCES, clamp_count, list_events_for_user
from tasksync.push import CalendarPushSynchronizer
from tasksync.reconcile import ReconciliationEngine
from tasksync.services import SyncServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/google-calendar/events/sync", response_model=PushResponse)
async def push_task_event(
    payload: PushRequest,
    user_id: str = Depends(get_user_id),
    pusher: CalendarPushSynchronizer = Depends(get_pusher),
) -> PushResponse:
    """Insert, update or delete the Google Calendar event for one task."""
    result = await pusher.push_task_event(
        user_id,
        payload.task,
        should_sync=payload.should_sync,
        action=payload.action,
    )
    return PushResponse(
        action=result.action,
        event_id=result.external_event_id,
        html_link=result.html_link,
        deleted=result.deleted,
    )


@router.post("/{provider}/sync/tasks", response_model=SyncTasksResponse)
async def sync_tasks(
    provider: str,
    max: int | None = Query(default=None, description="Maximum events to reconcile."),
    user_id: str = Depends(get_user_id),
    engine: ReconciliationEngine = Depends(get_engine),
) -> SyncTasksResponse:
    """Reconcile the provider's upcoming bookings into tasks."""
    result = await engine.sync_tasks(user_id, scheduling_provider(provider), max)
    return SyncTasksResponse(
        created=result.created,
        updated=result.updated,
        canceled=result.canceled,
        failed=result.failed,
        total=result.total,
    )


@router.get("/{provider}/events", response_model=EventListResponse)
async def list_events(
    provider: str,
    max: int | None = Query(default=None, description="Maximum events to return."),
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> EventListResponse:
    """List upcoming events from the provider for display."""
    source = normalize_path_provider(provider)
    if source not in EVENT_SOURCES:
        raise ValueError(f"Event listing is not available for: {provider}")
    config = services.config
    max_count = clamp_count(
        max, default=config.sync.display_default_max, cap=config.sync.display_max_cap
    )
    items = await list_events_for_user(
        services.tokens,
        source,
        user_id,
        window_start=datetime.now(UTC),
        max_count=max_count,
        http_client=services.http_client,
    )
    return EventListResponse(items=items)
