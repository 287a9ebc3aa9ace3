"""Tests for the remote event fetchers.

Every provider endpoint is stubbed with ``httpx.MockTransport``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from tasksync.errors import ProviderAPIError, PushSyncError
from tasksync.models import Provider
from tasksync.providers import (
    EVENT_SOURCES,
    CalComProvider,
    CalendlyProvider,
    GoogleCalendarProvider,
    ProviderContext,
    ZoomProvider,
    build_event_provider,
    clamp_count,
    connection_provider_for,
    list_events_for_user,
    parse_event_datetime,
)
from tasksync.providers.base import is_cancelled_status, isoformat_utc, optional_url
from tests.fakes import NOW, StaticTokens

pytestmark = pytest.mark.unit


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class _Capture:
    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    @property
    def params(self) -> dict[str, str]:
        return dict(self.requests[-1].url.params)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_parse_zulu(self):
        assert parse_event_datetime("2026-03-02T15:00:00Z") == datetime(
            2026, 3, 2, 15, 0, tzinfo=UTC
        )

    def test_parse_offset_converted_to_utc(self):
        assert parse_event_datetime("2026-03-02T10:00:00-05:00") == datetime(
            2026, 3, 2, 15, 0, tzinfo=UTC
        )

    def test_parse_all_day_and_naive(self):
        assert parse_event_datetime("2026-03-02") == datetime(2026, 3, 2, tzinfo=UTC)
        assert parse_event_datetime("2026-03-02T08:30:00").tzinfo is UTC

    @pytest.mark.parametrize("value", [None, "", "tomorrow", 12345])
    def test_parse_invalid(self, value):
        assert parse_event_datetime(value) is None

    def test_cancelled_vocabulary(self):
        assert is_cancelled_status("CANCELED")
        assert is_cancelled_status(" cancelled ")
        assert not is_cancelled_status("active")
        assert not is_cancelled_status(None)
        assert is_cancelled_status("rejected", frozenset({"rejected"}))

    def test_optional_url(self):
        assert optional_url(None, {"href": "u"}, "  https://x.test/j  ") == "https://x.test/j"
        assert optional_url("", 42, []) is None

    def test_isoformat_utc(self):
        assert isoformat_utc(NOW) == "2026-03-02T09:00:00Z"

    @pytest.mark.parametrize(
        ("value", "expected"), [(None, 50), (0, 1), (-4, 1), (20, 20), (500, 100)]
    )
    def test_clamp_count(self, value, expected):
        assert clamp_count(value, default=50, cap=100) == expected


# ---------------------------------------------------------------------------
# Zoom
# ---------------------------------------------------------------------------


class TestZoom:
    async def test_lists_upcoming_meetings(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "meetings": [
                        {
                            "id": 987654321,
                            "topic": "  Weekly sync ",
                            "start_time": "2026-03-02T15:00:00Z",
                            "duration": 45,
                            "join_url": "https://zoom.us/j/987654321",
                        },
                        {"id": 1, "topic": "Old", "start_time": "2026-02-01T15:00:00Z"},
                        {"id": 2, "topic": "No start"},
                        {"topic": "No id", "start_time": "2026-03-03T15:00:00Z"},
                        {"id": 3, "start_time": "2026-03-04T15:00:00Z", "status": "canceled"},
                    ]
                },
            )
        )
        provider = ZoomProvider(_client(capture))

        events = await provider.list_upcoming_events("tok", window_start=NOW, max_count=10)

        assert [e.external_id for e in events] == ["987654321", "3"]
        first = events[0]
        assert first.title == "Weekly sync"
        assert first.end == first.start + timedelta(minutes=45)
        assert first.join_url == "https://zoom.us/j/987654321"
        assert events[1].title == "Zoom meeting"
        assert events[1].is_cancelled is True

        request = capture.requests[0]
        assert request.headers["Authorization"] == "Bearer tok"
        assert capture.params == {"type": "upcoming", "page_size": "10"}

    async def test_non_string_join_url_ignored(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "meetings": [
                        {"id": 1, "start_time": "2026-03-02T15:00:00Z", "join_url": {"href": "u"}},
                        {"id": 2, "start_time": "2026-03-02T16:00:00Z", "join_url": 12345},
                    ]
                },
            )
        )

        events = await ZoomProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=5
        )

        assert [e.external_id for e in events] == ["1", "2"]
        assert all(e.join_url is None for e in events)

    async def test_item_failing_validation_dropped(self):
        provider = ZoomProvider(_client(_Capture(httpx.Response(200, json={}))))
        assert provider._build_event(1, external_id="1", title=None, start=NOW) is None
        event = provider._build_event(2, external_id="2", title="ok", start=NOW)
        assert event is not None and event.external_id == "2"

    async def test_page_size_capped(self):
        capture = _Capture(httpx.Response(200, json={"meetings": []}))
        await ZoomProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=500
        )
        assert capture.params["page_size"] == "100"

    async def test_http_error_surfaces_detail(self):
        capture = _Capture(httpx.Response(401, json={"code": 124, "message": "Invalid token"}))
        with pytest.raises(ProviderAPIError) as exc_info:
            await ZoomProvider(_client(capture)).list_upcoming_events(
                "tok", window_start=NOW, max_count=5
            )
        assert exc_info.value.status_code == 401
        assert "Invalid token" in str(exc_info.value)
        assert str(exc_info.value).startswith("zoom_api_failed")

    async def test_timeout(self):
        capture = _Capture(httpx.ConnectTimeout("timed out"))
        with pytest.raises(ProviderAPIError, match="ConnectTimeout"):
            await ZoomProvider(_client(capture)).list_upcoming_events(
                "tok", window_start=NOW, max_count=5
            )

    async def test_malformed_payload(self):
        capture = _Capture(httpx.Response(200, json={"meetings": "nope"}))
        with pytest.raises(ProviderAPIError, match="expected a list"):
            await ZoomProvider(_client(capture)).list_upcoming_events(
                "tok", window_start=NOW, max_count=5
            )

    async def test_non_json_body(self):
        capture = _Capture(httpx.Response(200, text="<html>"))
        with pytest.raises(ProviderAPIError, match="not valid JSON"):
            await ZoomProvider(_client(capture)).list_upcoming_events(
                "tok", window_start=NOW, max_count=5
            )


# ---------------------------------------------------------------------------
# Calendly
# ---------------------------------------------------------------------------


class TestCalendly:
    async def test_scoped_to_user(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "collection": [
                        {
                            "uri": "https://api.calendly.com/scheduled_events/E1",
                            "name": "Intro call",
                            "start_time": "2026-03-02T15:00:00.000000Z",
                            "end_time": "2026-03-02T15:30:00.000000Z",
                            "status": "active",
                            "location": {"join_url": "https://meet.example.com/e1"},
                        },
                        {
                            "uri": "https://api.calendly.com/scheduled_events/E2",
                            "start_time": "2026-03-03T15:00:00Z",
                            "status": "canceled",
                        },
                        {"name": "no uri", "start_time": "2026-03-03T15:00:00Z"},
                    ]
                },
            )
        )
        context = ProviderContext(provider_user_id="https://api.calendly.com/users/U1")

        events = await CalendlyProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=20, context=context
        )

        assert [e.external_id for e in events] == [
            "https://api.calendly.com/scheduled_events/E1",
            "https://api.calendly.com/scheduled_events/E2",
        ]
        assert events[0].join_url == "https://meet.example.com/e1"
        assert events[0].end == datetime(2026, 3, 2, 15, 30, tzinfo=UTC)
        assert events[1].title == "Calendly appointment"
        assert events[1].is_cancelled is True
        assert capture.params == {
            "min_start_time": "2026-03-02T09:00:00Z",
            "count": "20",
            "sort": "start_time:asc",
            "user": "https://api.calendly.com/users/U1",
        }

    async def test_falls_back_to_organization(self):
        capture = _Capture(httpx.Response(200, json={"collection": []}))
        context = ProviderContext(
            extra={"organization_uri": "https://api.calendly.com/organizations/O1"}
        )
        await CalendlyProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=5, context=context
        )
        assert capture.params["organization"] == "https://api.calendly.com/organizations/O1"
        assert "user" not in capture.params

    async def test_requires_scope_identifier(self):
        capture = _Capture(httpx.Response(200, json={"collection": []}))
        with pytest.raises(ProviderAPIError, match="neither a user nor organization"):
            await CalendlyProvider(_client(capture)).list_upcoming_events(
                "tok", window_start=NOW, max_count=5
            )
        assert capture.requests == []


# ---------------------------------------------------------------------------
# Cal.com
# ---------------------------------------------------------------------------


class TestCalCom:
    async def test_lists_bookings(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": [
                        {
                            "uid": "bk_1",
                            "title": "Consultation",
                            "start": "2026-03-02T15:00:00.000Z",
                            "end": "2026-03-02T16:00:00.000Z",
                            "status": "accepted",
                            "meetingUrl": "https://cal.com/video/bk_1",
                        },
                        {
                            "uid": "bk_2",
                            "start": "2026-03-03T15:00:00Z",
                            "status": "rejected",
                            "location": "https://meet.google.com/abc",
                        },
                        {"uid": "bk_3", "start": "soon"},
                    ],
                },
            )
        )

        events = await CalComProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=5
        )

        assert [e.external_id for e in events] == ["bk_1", "bk_2"]
        assert events[0].join_url == "https://cal.com/video/bk_1"
        assert events[1].join_url == "https://meet.google.com/abc"
        assert events[1].title == "Cal.com event"
        assert events[1].is_cancelled is True
        request = capture.requests[0]
        assert request.headers["cal-api-version"] == "2024-08-13"
        assert capture.params == {
            "afterStart": "2026-03-02T09:00:00Z",
            "take": "5",
            "sortStart": "asc",
        }

    async def test_non_string_meeting_url_falls_back_to_location(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "uid": "bk_1",
                            "start": "2026-03-02T15:00:00Z",
                            "meetingUrl": {"url": "https://cal.com/video/bk_1"},
                            "location": "https://meet.google.com/abc",
                        },
                        {"uid": "bk_2", "start": "2026-03-02T16:00:00Z", "meetingUrl": ["x"]},
                    ]
                },
            )
        )

        events = await CalComProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=5
        )

        assert events[0].join_url == "https://meet.google.com/abc"
        assert events[1].join_url is None

    async def test_truncates_to_max(self):
        items = [{"uid": f"bk_{i}", "start": "2026-03-02T15:00:00Z"} for i in range(5)]
        capture = _Capture(httpx.Response(200, json={"data": items}))
        events = await CalComProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=2
        )
        assert len(events) == 2


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


class TestGoogleCalendarListing:
    async def test_lists_primary_events(self):
        capture = _Capture(
            httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "g1",
                            "summary": "Dentist",
                            "start": {"dateTime": "2026-03-02T15:00:00+01:00"},
                            "end": {"dateTime": "2026-03-02T16:00:00+01:00"},
                            "hangoutLink": "https://meet.google.com/xyz",
                        },
                        {
                            "id": "g2",
                            "start": {"date": "2026-03-04"},
                            "htmlLink": "https://calendar.google.com/event?eid=g2",
                        },
                        {"id": "g3", "start": {}},
                    ]
                },
            )
        )

        events = await GoogleCalendarProvider(_client(capture)).list_upcoming_events(
            "tok", window_start=NOW, max_count=10
        )

        assert [e.external_id for e in events] == ["g1", "g2"]
        assert events[0].start == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
        assert events[0].join_url == "https://meet.google.com/xyz"
        assert events[1].title == "Untitled event"
        assert events[1].join_url == "https://calendar.google.com/event?eid=g2"
        assert capture.params == {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": "2026-03-02T09:00:00Z",
            "maxResults": "10",
        }


class TestGoogleCalendarWrites:
    async def test_find_by_private_property(self):
        capture = _Capture(httpx.Response(200, json={"items": [{"id": "evt-1"}]}))
        event_id = await GoogleCalendarProvider(_client(capture)).find_event_id_by_private_property(
            "tok", "tasksync_task_id", "task-1"
        )
        assert event_id == "evt-1"
        assert capture.params["privateExtendedProperty"] == "tasksync_task_id=task-1"
        assert capture.params["maxResults"] == "1"

    async def test_find_returns_none_when_empty(self):
        capture = _Capture(httpx.Response(200, json={"items": []}))
        provider = GoogleCalendarProvider(_client(capture))
        assert await provider.find_event_id_by_private_property("tok", "k", "v") is None

    async def test_update_quotes_event_id(self):
        capture = _Capture(httpx.Response(200, json={"id": "a/b"}))
        await GoogleCalendarProvider(_client(capture)).update_event("tok", "a/b", {"summary": "x"})
        request = capture.requests[0]
        assert request.method == "PUT"
        assert request.url.raw_path.endswith(b"/events/a%2Fb")

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_tolerates_gone(self, status):
        capture = _Capture(httpx.Response(status))
        assert await GoogleCalendarProvider(_client(capture)).delete_event("tok", "evt") is False

    async def test_delete_success(self):
        capture = _Capture(httpx.Response(204))
        assert await GoogleCalendarProvider(_client(capture)).delete_event("tok", "evt") is True

    async def test_write_failure_raises_push_error(self):
        capture = _Capture(httpx.Response(403, json={"error": {"message": "forbidden"}}))
        with pytest.raises(PushSyncError) as exc_info:
            await GoogleCalendarProvider(_client(capture)).insert_event("tok", {"summary": "x"})
        assert exc_info.value.status_code == 403
        assert len(exc_info.value.detail) <= 700

    async def test_empty_event_id_rejected(self):
        capture = _Capture(httpx.Response(200))
        with pytest.raises(ValueError):
            await GoogleCalendarProvider(_client(capture)).delete_event("tok", "  ")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_sources(self):
        assert set(EVENT_SOURCES) == {"zoom", "calendly", "calcom", "google_calendar"}
        assert connection_provider_for("google_calendar") is Provider.GMAIL
        assert connection_provider_for("calcom") is Provider.CALCOM

    def test_unknown_source(self):
        with pytest.raises(ValueError, match="Unknown event source"):
            build_event_provider("teams")

    async def test_list_events_for_user_uses_calendar_token(self):
        capture = _Capture(httpx.Response(200, json={"items": []}))
        tokens = StaticTokens()
        async with _client(capture) as client:
            events = await list_events_for_user(
                tokens,
                "google_calendar",
                "user-1",
                window_start=NOW,
                max_count=5,
                http_client=client,
            )
            # shared client stays open after the fetcher is closed
            assert not client.is_closed
        assert events == []
        assert tokens.calls == [("user-1", "gmail")]
        assert capture.requests[0].headers["Authorization"] == "Bearer gmail-access"

    async def test_list_events_for_user_passes_calendly_context(self):
        capture = _Capture(httpx.Response(200, json={"collection": []}))
        async with _client(capture) as client:
            await list_events_for_user(
                StaticTokens(),
                "calendly",
                "user-1",
                window_start=NOW,
                max_count=5,
                http_client=client,
            )
        assert capture.params["user"] == "https://api.calendly.com/users/U1"
