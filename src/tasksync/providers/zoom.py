"""Zoom upcoming meetings."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from tasksync.models import NormalizedEvent
from tasksync.providers.base import (
    MAX_PAGE_SIZE,
    EventProvider,
    ProviderContext,
    is_cancelled_status,
    optional_url,
    parse_event_datetime,
)

ZOOM_MEETINGS_URL = "https://api.zoom.us/v2/users/me/meetings"
DEFAULT_TITLE = "Zoom meeting"


class ZoomProvider(EventProvider):
    @property
    def name(self) -> str:
        return "zoom"

    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        # Zoom has no start-time filter; older meetings are dropped below.
        payload = await self._get_json(
            ZOOM_MEETINGS_URL,
            access_token,
            params={"type": "upcoming", "page_size": min(max_count, MAX_PAGE_SIZE)},
        )
        events: list[NormalizedEvent] = []
        for item in self._items(payload, "meetings"):
            event = self._normalize(item)
            if event is None:
                continue
            if event.start < window_start:
                self._drop(event.external_id, "starts before window")
                continue
            events.append(event)
        return events[:max_count]

    def _normalize(self, item: dict[str, Any]) -> NormalizedEvent | None:
        meeting_id = item.get("id")
        if meeting_id is None or not str(meeting_id).strip():
            self._drop(meeting_id, "missing id")
            return None
        start = parse_event_datetime(item.get("start_time"))
        if start is None:
            self._drop(meeting_id, "missing or invalid start_time")
            return None

        end = None
        duration = item.get("duration")
        if isinstance(duration, int | float) and not isinstance(duration, bool) and duration > 0:
            end = start + timedelta(minutes=duration)

        status = item.get("status") if isinstance(item.get("status"), str) else None
        topic = item.get("topic")
        return self._build_event(
            meeting_id,
            external_id=str(meeting_id),
            title=topic.strip() if isinstance(topic, str) and topic.strip() else DEFAULT_TITLE,
            start=start,
            end=end,
            join_url=optional_url(item.get("join_url")),
            status=status,
            is_cancelled=is_cancelled_status(status),
        )
