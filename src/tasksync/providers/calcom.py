"""Cal.com bookings (API v2)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

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

CALCOM_BOOKINGS_URL = "https://api.cal.com/v2/bookings"
CALCOM_API_VERSION = "2024-08-13"
DEFAULT_TITLE = "Cal.com event"

# Cal.com reports declined bookings as "rejected"; they never take place.
_EXTRA_CANCELLED = frozenset({"rejected"})


class CalComProvider(EventProvider):
    @property
    def name(self) -> str:
        return "calcom"

    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        payload = await self._get_json(
            CALCOM_BOOKINGS_URL,
            access_token,
            params={
                "afterStart": isoformat_utc(window_start),
                "take": min(max_count, MAX_PAGE_SIZE),
                "sortStart": "asc",
            },
            extra_headers={"cal-api-version": CALCOM_API_VERSION},
        )
        events = [
            event
            for item in self._items(payload, "data")
            if (event := self._normalize(item)) is not None
        ]
        return events[:max_count]

    def _normalize(self, item: dict[str, Any]) -> NormalizedEvent | None:
        uid = item.get("uid")
        if not isinstance(uid, str) or not uid.strip():
            self._drop(uid, "missing uid")
            return None
        start = parse_event_datetime(item.get("start"))
        if start is None:
            self._drop(uid, "missing or invalid start")
            return None

        location = item.get("location")
        join_url = optional_url(
            item.get("meetingUrl"),
            location if isinstance(location, str) and location.startswith("http") else None,
        )

        status = item.get("status") if isinstance(item.get("status"), str) else None
        title = item.get("title")
        return self._build_event(
            uid,
            external_id=uid,
            title=title.strip() if isinstance(title, str) and title.strip() else DEFAULT_TITLE,
            start=start,
            end=parse_event_datetime(item.get("end")),
            join_url=join_url,
            status=status,
            is_cancelled=is_cancelled_status(status, _EXTRA_CANCELLED),
        )
