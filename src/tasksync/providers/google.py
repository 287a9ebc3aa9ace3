"""Google Calendar: upcoming-event listing and push-side event writes.

Listing uses the ``gmail`` OAuth connection (the same Google grant carries
the calendar scopes).  The write helpers back
:class:`~tasksync.push.CalendarPushSynchronizer`; they raise
:class:`~tasksync.errors.PushSyncError` instead of ``ProviderAPIError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from tasksync.errors import PUSH_DETAIL_LIMIT, PushSyncError, response_detail, sanitize_detail
from tasksync.models import NormalizedEvent
from tasksync.providers.base import (
    EventProvider,
    ProviderContext,
    is_cancelled_status,
    isoformat_utc,
    optional_url,
    parse_event_datetime,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PRIMARY_EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"
DEFAULT_TITLE = "Untitled event"

_GONE_STATUSES = frozenset({404, 410})


def _event_time(value: Any) -> datetime | None:
    if not isinstance(value, dict):
        return None
    return parse_event_datetime(value.get("dateTime") or value.get("date"))


class GoogleCalendarProvider(EventProvider):
    @property
    def name(self) -> str:
        return "google_calendar"

    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        payload = await self._get_json(
            PRIMARY_EVENTS_URL,
            access_token,
            params={
                "singleEvents": "true",
                "orderBy": "startTime",
                "timeMin": isoformat_utc(window_start),
                "maxResults": max_count,
            },
        )
        events: list[NormalizedEvent] = []
        for item in self._items(payload, "items"):
            event_id = item.get("id")
            if not isinstance(event_id, str) or not event_id.strip():
                self._drop(event_id, "missing id")
                continue
            start = _event_time(item.get("start"))
            if start is None:
                self._drop(event_id, "missing or invalid start")
                continue
            status = item.get("status") if isinstance(item.get("status"), str) else None
            summary = item.get("summary")
            event = self._build_event(
                event_id,
                external_id=event_id,
                title=summary.strip()
                if isinstance(summary, str) and summary.strip()
                else DEFAULT_TITLE,
                start=start,
                end=_event_time(item.get("end")),
                join_url=optional_url(item.get("hangoutLink"), item.get("htmlLink")),
                status=status,
                is_cancelled=is_cancelled_status(status),
            )
            if event is not None:
                events.append(event)
        return events[:max_count]

    # ------------------------------------------------------------------
    # Push-side writes
    # ------------------------------------------------------------------

    async def find_event_id_by_private_property(
        self, access_token: str, key: str, value: str
    ) -> str | None:
        """Return the id of the first live event tagged ``key=value``, if any."""
        response = await self._send(
            "GET",
            PRIMARY_EVENTS_URL,
            access_token,
            params={
                "privateExtendedProperty": f"{key}={value}",
                "maxResults": 1,
                "singleEvents": "false",
                "showDeleted": "false",
            },
        )
        payload = self._json_object(response)
        items = payload.get("items")
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            return None
        event_id = items[0].get("id")
        return event_id if isinstance(event_id, str) and event_id else None

    async def insert_event(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._send("POST", PRIMARY_EVENTS_URL, access_token, json_body=body)
        return self._json_object(response)

    async def update_event(
        self, access_token: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._send(
            "PUT", self._event_url(event_id), access_token, json_body=body
        )
        return self._json_object(response)

    async def delete_event(self, access_token: str, event_id: str) -> bool:
        """Delete an event.  Returns ``False`` when it was already gone (404/410)."""
        response = await self._send(
            "DELETE", self._event_url(event_id), access_token, tolerate=_GONE_STATUSES
        )
        if response.status_code in _GONE_STATUSES:
            logger.debug("delete_event: event %r already gone; treating as success", event_id)
            return False
        return True

    @staticmethod
    def _event_url(event_id: str) -> str:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        return f"{PRIMARY_EVENTS_URL}/{quote(normalized, safe='')}"

    async def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        tolerate: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise PushSyncError(
                sanitize_detail(f"{type(exc).__name__}: {exc}", PUSH_DETAIL_LIMIT)
            ) from exc

        if response.is_error and response.status_code not in tolerate:
            raise PushSyncError(
                response_detail(response, PUSH_DETAIL_LIMIT), status_code=response.status_code
            )
        return response

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise PushSyncError(
                "Google Calendar returned invalid JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise PushSyncError(
                "Google Calendar returned an unexpected JSON payload shape",
                status_code=response.status_code,
            )
        return payload
