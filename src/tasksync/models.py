"""Provider-neutral domain models shared by stores, fetchers and the engine."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(StrEnum):
    """OAuth providers with a stored connection row."""

    GMAIL = "gmail"
    CALENDLY = "calendly"
    CALCOM = "calcom"
    ZOOM = "zoom"


# Providers whose bookings are reconciled into tasks.
SCHEDULING_PROVIDERS: tuple[Provider, ...] = (Provider.ZOOM, Provider.CALENDLY, Provider.CALCOM)

TaskStatus = Literal["open", "done"]


class OAuthConnection(BaseModel):
    """One stored OAuth connection per (user, provider)."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    provider: Provider
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str | None = None
    provider_email: str | None = None
    provider_user_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"OAuthConnection("
            f"user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


class NormalizedEvent(BaseModel):
    """A remote event/booking in the shape the reconciliation engine consumes."""

    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1)
    title: str
    start: datetime
    end: datetime | None = None
    join_url: str | None = None
    status: str | None = None
    is_cancelled: bool = False

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        return normalized


class EventTaskMapping(BaseModel):
    """Association between one external event and one internal task."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    external_id: str
    task_id: uuid.UUID
    canceled_at: datetime | None = None


class TaskState(BaseModel):
    """The slice of a task the engine needs to decide between paths."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    status: TaskStatus = "open"


class NewTask(BaseModel):
    """A task synthesized from a remote event."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    title: str
    description: str | None = None
    notes: str | None = None
    kind: str
    priority: str
    status: TaskStatus = "open"
    due_at: datetime
    entity_type: str = "none"
    entity_id: str | None = None


class PushTask(BaseModel):
    """An internal task projected into the remote calendar."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str = ""
    description: str | None = None
    notes: str | None = None
    due_at: str
    kind: str | None = None
