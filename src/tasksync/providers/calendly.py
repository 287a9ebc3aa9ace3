"""Calendly scheduled events.

Events are keyed by their resource URI.  The listing is scoped to the
connected user's URI when known, else to the organization URI captured at
authorization time.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from tasksync.errors import ProviderAPIError
from tasksync.models import NormalizedEvent
from tasksync.providers.base import (
    MAX_PAGE_SIZE,
    EventProvider,
    ProviderContext,
    is_cancelled_status,
    isoformat_utc,
    optional_url,
    parse_event_datetime,
)

CALENDLY_EVENTS_URL = "https://api.calendly.com/scheduled_events"
DEFAULT_TITLE = "Calendly appointment"


class CalendlyProvider(EventProvider):
    @property
    def name(self) -> str:
        return "calendly"

    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        context = context or ProviderContext()
        params: dict[str, Any] = {
            "min_start_time": isoformat_utc(window_start),
            "count": min(max_count, MAX_PAGE_SIZE),
            "sort": "start_time:asc",
        }
        organization_uri = context.extra.get("organization_uri")
        if context.provider_user_id:
            params["user"] = context.provider_user_id
        elif organization_uri:
            params["organization"] = organization_uri
        else:
            raise ProviderAPIError(self.name, "connection has neither a user nor organization URI")

        payload = await self._get_json(CALENDLY_EVENTS_URL, access_token, params=params)
        events = [
            event
            for item in self._items(payload, "collection")
            if (event := self._normalize(item)) is not None
        ]
        return events[:max_count]

    def _normalize(self, item: dict[str, Any]) -> NormalizedEvent | None:
        uri = item.get("uri")
        if not isinstance(uri, str) or not uri.strip():
            self._drop(uri, "missing uri")
            return None
        start = parse_event_datetime(item.get("start_time"))
        if start is None:
            self._drop(uri, "missing or invalid start_time")
            return None

        location = item.get("location") if isinstance(item.get("location"), dict) else {}
        status = item.get("status") if isinstance(item.get("status"), str) else None
        name = item.get("name")
        return self._build_event(
            uri,
            external_id=uri,
            title=name.strip() if isinstance(name, str) and name.strip() else DEFAULT_TITLE,
            start=start,
            end=parse_event_datetime(item.get("end_time")),
            join_url=optional_url(location.get("join_url")),
            status=status,
            is_cancelled=is_cancelled_status(status),
        )
