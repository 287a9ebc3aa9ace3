"""FastAPI dependencies: service lookup, caller identity, path providers.

The app stores one :class:`~tasksync.services.SyncServices` on
``app.state.services``; route handlers receive pieces of it via
``Depends``.  Tests either pass prebuilt services to ``create_app`` or use
``app.dependency_overrides``.

The caller's user id arrives in the ``X-User-Id`` header set by the
upstream authenticating proxy.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from tasksync.config import AppConfig
from tasksync.models import SCHEDULING_PROVIDERS, Provider
from tasksync.providers import GOOGLE_CALENDAR_SOURCE
from tasksync.push import CalendarPushSynchronizer
from tasksync.reconcile import ReconciliationEngine
from tasksync.services import SyncServices
from tasksync.tokens import TokenManager

# URL spellings that differ from the stored provider names.
_PATH_ALIASES: dict[str, str] = {
    "cal-com": Provider.CALCOM.value,
    "google": Provider.GMAIL.value,
    "google-calendar": GOOGLE_CALENDAR_SOURCE,
}


def get_services(request: Request) -> SyncServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Sync services are not initialized")
    return services


def get_config(services: SyncServices = Depends(get_services)) -> AppConfig:
    return services.config


def get_token_manager(services: SyncServices = Depends(get_services)) -> TokenManager:
    return services.tokens


def get_engine(services: SyncServices = Depends(get_services)) -> ReconciliationEngine:
    return services.engine


def get_pusher(services: SyncServices = Depends(get_services)) -> CalendarPushSynchronizer:
    return services.pusher


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def normalize_path_provider(raw: str) -> str:
    name = raw.strip().lower()
    return _PATH_ALIASES.get(name, name)


def connection_provider(raw: str) -> Provider:
    """Resolve a path segment to a stored connection provider (404 if unknown)."""
    name = normalize_path_provider(raw)
    if name == GOOGLE_CALENDAR_SOURCE:
        return Provider.GMAIL
    try:
        return Provider(name)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {raw}") from None


def scheduling_provider(raw: str) -> Provider:
    """Resolve a path segment to a provider that supports task sync."""
    provider = connection_provider(raw)
    if provider not in SCHEDULING_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Task sync is not available for: {raw}")
    return provider
