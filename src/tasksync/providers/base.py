"""Event provider abstraction and shared HTTP plumbing."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from tasksync.errors import LIST_DETAIL_LIMIT, ProviderAPIError, response_detail, sanitize_detail
from tasksync.models import NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 15.0
MAX_PAGE_SIZE = 100

_CANCELLED_STATUSES = frozenset({"canceled", "cancelled"})


@dataclass(frozen=True)
class ProviderContext:
    """Connection-side identifiers some list endpoints need (e.g. Calendly user URI)."""

    provider_user_id: str | None = None
    provider_email: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def parse_event_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp or all-day date into an aware UTC datetime.

    Returns ``None`` for missing or unparseable values.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            day = date.fromisoformat(text)
        except ValueError:
            return None
        return datetime(day.year, day.month, day.day, tzinfo=UTC)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def is_cancelled_status(status: Any, extra_statuses: frozenset[str] = frozenset()) -> bool:
    """Case-insensitive check against the cancelled vocabulary."""
    if not isinstance(status, str):
        return False
    normalized = status.strip().lower()
    return normalized in _CANCELLED_STATUSES or normalized in extra_statuses


def optional_url(*values: Any) -> str | None:
    """Return the first non-empty string among *values*, stripped."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def isoformat_utc(value: datetime) -> str:
    """Render *value* as an RFC 3339 UTC timestamp with a ``Z`` suffix."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def clamp_count(value: int | None, *, default: int, cap: int) -> int:
    """Clamp a requested item count into ``[1, cap]``."""
    if value is None:
        return default
    return max(1, min(cap, int(value)))


class EventProvider(abc.ABC):
    """Lists upcoming remote events/bookings for one provider.

    Subclasses issue exactly one bounded GET per
    :meth:`list_upcoming_events` call and normalize the response.  Every
    failure surfaces as :class:`~tasksync.errors.ProviderAPIError`.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier used in error messages (e.g. ``zoom``)."""
        ...

    @abc.abstractmethod
    async def list_upcoming_events(
        self,
        access_token: str,
        *,
        window_start: datetime,
        max_count: int,
        context: ProviderContext | None = None,
    ) -> list[NormalizedEvent]:
        """Return up to *max_count* events starting at or after *window_start*."""
        ...

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _get_json(
        self,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if extra_headers:
            headers.update(extra_headers)

        try:
            response = await self._http_client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderAPIError(
                self.name,
                sanitize_detail(f"{type(exc).__name__}: {exc}", LIST_DETAIL_LIMIT),
            ) from exc

        if response.is_error:
            raise ProviderAPIError(
                self.name,
                response_detail(response, LIST_DETAIL_LIMIT),
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAPIError(
                self.name,
                "response body is not valid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderAPIError(
                self.name,
                "unexpected JSON payload shape",
                status_code=response.status_code,
            )
        return payload

    def _items(self, payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
        raw = payload.get(key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ProviderAPIError(self.name, f"expected a list under {key!r}")
        return [item for item in raw if isinstance(item, dict)]

    def _drop(self, item_id: Any, reason: str) -> None:
        logger.debug("Dropping %s item %r: %s", self.name, item_id, reason)

    def _build_event(self, item_id: Any, **fields: Any) -> NormalizedEvent | None:
        """Validate one normalized item; items that still fail validation are dropped."""
        try:
            return NormalizedEvent(**fields)
        except ValidationError as exc:
            self._drop(item_id, f"invalid fields: {exc.error_count()} error(s)")
            return None
