"""Request/response models for the sync HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from tasksync.models import NormalizedEvent, PushTask


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    provider: str | None = None
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class SyncTasksResponse(BaseModel):
    ok: bool = True
    created: int
    updated: int
    canceled: int
    failed: int
    total: int


class EventListResponse(BaseModel):
    ok: bool = True
    items: list[NormalizedEvent]


class ConnectionStatusResponse(BaseModel):
    """Connection summary; never carries token values."""

    provider: str
    connected: bool
    needs_reconnect: bool = False
    email: str | None = None
    provider_user_id: str | None = None
    scope: str | None = None
    has_calendar_scope: bool | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DisconnectResponse(BaseModel):
    ok: bool = True
    deleted: bool


class AccessTokenResponse(BaseModel):
    access_token: str
    provider_email: str | None = None
    expires_at: datetime | None = None


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: Literal[True] = True
    provider: str
    email: str | None = None
    scope: str | None = None


class OAuthCallbackError(BaseModel):
    success: Literal[False] = False
    error_code: str
    message: str


class PushRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["upsert", "delete"]
    should_sync: bool = True
    task: PushTask


class PushResponse(BaseModel):
    ok: bool = True
    action: Literal["insert", "update", "delete", "skip"]
    event_id: str | None = None
    html_link: str | None = None
    deleted: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = Field(default="")
