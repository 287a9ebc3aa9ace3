"""Remote event sources.

Each source is an :class:`~tasksync.providers.base.EventProvider` paired
with the OAuth connection it reads through.  ``google_calendar`` is
display-only and borrows the ``gmail`` connection.
"""

from __future__ import annotations

from datetime import datetime

import httpx

from tasksync.models import NormalizedEvent, Provider
from tasksync.providers.base import (
    EventProvider,
    ProviderContext,
    clamp_count,
    parse_event_datetime,
)
from tasksync.providers.calcom import CalComProvider
from tasksync.providers.calendly import CalendlyProvider
from tasksync.providers.google import GoogleCalendarProvider
from tasksync.providers.zoom import ZoomProvider
from tasksync.tokens import AccessToken, TokenManager

GOOGLE_CALENDAR_SOURCE = "google_calendar"

_SOURCES: dict[str, tuple[type[EventProvider], Provider]] = {
    Provider.ZOOM.value: (ZoomProvider, Provider.ZOOM),
    Provider.CALENDLY.value: (CalendlyProvider, Provider.CALENDLY),
    Provider.CALCOM.value: (CalComProvider, Provider.CALCOM),
    GOOGLE_CALENDAR_SOURCE: (GoogleCalendarProvider, Provider.GMAIL),
}

EVENT_SOURCES: tuple[str, ...] = tuple(_SOURCES)


def _lookup(source: str) -> tuple[type[EventProvider], Provider]:
    try:
        return _SOURCES[source]
    except KeyError:
        valid = ", ".join(EVENT_SOURCES)
        raise ValueError(f"Unknown event source {source!r}; expected one of: {valid}") from None


def connection_provider_for(source: str) -> Provider:
    """Return the OAuth connection provider an event *source* reads through."""
    return _lookup(source)[1]


def build_event_provider(
    source: str,
    http_client: httpx.AsyncClient | None = None,
    *,
    timeout: float = 15.0,
) -> EventProvider:
    provider_cls, _ = _lookup(source)
    return provider_cls(http_client, timeout=timeout)


def context_from_token(token: AccessToken) -> ProviderContext:
    return ProviderContext(
        provider_user_id=token.provider_user_id,
        provider_email=token.provider_email,
        extra=dict(token.extra),
    )


async def list_events_for_user(
    tokens: TokenManager,
    source: str,
    user_id: str,
    *,
    window_start: datetime,
    max_count: int,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 15.0,
) -> list[NormalizedEvent]:
    """Obtain a token for *user_id* and list upcoming events from *source*."""
    connection = connection_provider_for(source)
    if source == GOOGLE_CALENDAR_SOURCE:
        token = await tokens.get_calendar_access_token(user_id)
    else:
        token = await tokens.get_valid_access_token(user_id, connection)

    provider = build_event_provider(source, http_client, timeout=timeout)
    try:
        return await provider.list_upcoming_events(
            token.access_token,
            window_start=window_start,
            max_count=max_count,
            context=context_from_token(token),
        )
    finally:
        await provider.aclose()


__all__ = [
    "EVENT_SOURCES",
    "GOOGLE_CALENDAR_SOURCE",
    "CalComProvider",
    "CalendlyProvider",
    "EventProvider",
    "GoogleCalendarProvider",
    "ProviderContext",
    "ZoomProvider",
    "build_event_provider",
    "clamp_count",
    "connection_provider_for",
    "context_from_token",
    "list_events_for_user",
    "parse_event_datetime",
]
