"""Push a single task into the user's primary Google Calendar.

The remote event carries a private extended property
``tasksync_task_id=<task id>``; looking it up before every write is what
makes repeated pushes for the same task converge on one event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict

from tasksync.models import PushTask
from tasksync.providers.base import isoformat_utc, parse_event_datetime
from tasksync.providers.google import GoogleCalendarProvider
from tasksync.tokens import AccessToken

logger = logging.getLogger(__name__)

TASK_MARKER_KEY = "tasksync_task_id"
EVENT_SOURCE = "tasksync"
DEFAULT_EVENT_TITLE = "tasksync event"
EVENT_DURATION = timedelta(hours=1)
DESCRIPTION_SEPARATOR = "\n\n---\n\n"

PushAction = Literal["insert", "update", "delete", "skip"]


class CalendarTokenSource(Protocol):
    async def get_calendar_access_token(self, user_id: str) -> AccessToken:
        ...


class PushResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: PushAction
    external_event_id: str | None = None
    html_link: str | None = None
    deleted: bool = False


def build_event_body(task: PushTask) -> dict:
    """Build the Google Calendar event resource for *task*.

    Raises
    ------
    ValueError
        If ``due_at`` is not a parseable timestamp.
    """
    start = parse_event_datetime(task.due_at)
    if start is None:
        raise ValueError(f"Invalid due_at for task {task.id}: {task.due_at!r}")

    body: dict = {
        "summary": task.title.strip() or DEFAULT_EVENT_TITLE,
        "start": {"dateTime": isoformat_utc(start)},
        "end": {"dateTime": isoformat_utc(start + EVENT_DURATION)},
        "extendedProperties": {
            "private": {TASK_MARKER_KEY: task.id, "source": EVENT_SOURCE},
        },
    }
    chunks = [c.strip() for c in (task.description, task.notes) if c and c.strip()]
    if chunks:
        body["description"] = DESCRIPTION_SEPARATOR.join(chunks)
    return body


async def find_external_id_by_owner_marker(
    calendar: GoogleCalendarProvider, access_token: str, task_id: str
) -> str | None:
    """Return the remote event id owned by *task_id*, if one exists."""
    return await calendar.find_event_id_by_private_property(access_token, TASK_MARKER_KEY, task_id)


class CalendarPushSynchronizer:
    """Inserts, updates or deletes the Google Calendar event for a task."""

    def __init__(
        self,
        *,
        tokens: CalendarTokenSource,
        calendar_factory: Callable[[], GoogleCalendarProvider] | None = None,
    ) -> None:
        self._tokens = tokens
        self._calendar_factory = calendar_factory or GoogleCalendarProvider

    async def push_task_event(
        self,
        user_id: str,
        task: PushTask,
        should_sync: bool = True,
        action: Literal["upsert", "delete"] = "upsert",
    ) -> PushResult:
        """Project *task* into the calendar.

        ``action="delete"`` removes the event (``delete``); ``should_sync``
        false removes it as well but reports ``skip``.  Otherwise the event is
        updated in place when found, inserted when not.

        Raises
        ------
        NotConnectedError
            No Google connection with a calendar scope.
        ValueError
            ``due_at`` is invalid.
        PushSyncError
            Any Google Calendar API failure.  No retry is attempted.
        """
        if action not in ("upsert", "delete"):
            raise ValueError(f"Unsupported push action: {action!r}")

        token = await self._tokens.get_calendar_access_token(user_id)
        calendar = self._calendar_factory()
        try:
            if action == "delete" or not should_sync:
                return await self._remove(calendar, token.access_token, task, action)

            body = build_event_body(task)
            existing_id = await find_external_id_by_owner_marker(
                calendar, token.access_token, task.id
            )
            if existing_id:
                event = await calendar.update_event(token.access_token, existing_id, body)
                result_action: PushAction = "update"
            else:
                event = await calendar.insert_event(token.access_token, body)
                result_action = "insert"
        finally:
            await calendar.aclose()

        logger.info("Calendar push %s for task %s", result_action, task.id)
        return PushResult(
            action=result_action,
            external_event_id=event.get("id") or existing_id,
            html_link=event.get("htmlLink"),
        )

    async def _remove(
        self,
        calendar: GoogleCalendarProvider,
        access_token: str,
        task: PushTask,
        action: str,
    ) -> PushResult:
        result_action: PushAction = "delete" if action == "delete" else "skip"
        existing_id = await find_external_id_by_owner_marker(calendar, access_token, task.id)
        if existing_id is None:
            return PushResult(action=result_action)
        deleted = await calendar.delete_event(access_token, existing_id)
        logger.info("Calendar push %s removed event for task %s", result_action, task.id)
        return PushResult(action=result_action, external_event_id=existing_id, deleted=deleted)
