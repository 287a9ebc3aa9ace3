"""OAuth token lifecycle for the mail and scheduling providers.

The :class:`TokenManager` hands out access tokens that are valid for at
least ``refresh_buffer_s`` more seconds, refreshing them against the
provider's token endpoint when needed and persisting the rotated credential
set back to the :class:`~tasksync.credential_store.ConnectionStore` in a
single write.

Each provider speaks a slightly different dialect of the refresh grant:

========  ==================  ===========================================
Provider  Body encoding       Client authentication
========  ==================  ===========================================
gmail     form                client_id (+ client_secret when configured)
calendly  form                client_id + client_secret in the body
calcom    JSON                client_id + client_secret in the body
zoom      form                HTTP Basic ``client_id:client_secret``
========  ==================  ===========================================

Refreshes are single-flight per ``(user_id, provider)`` within a process:
concurrent callers queue on an asyncio lock and re-read the row once they
hold it, so only the first one talks to the provider.  Refreshes racing
across processes are tolerated; the last write wins.

Token values are never logged.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field

from tasksync.config import AppConfig, ProviderOAuthConfig
from tasksync.credential_store import ConnectionStore
from tasksync.errors import (
    REFRESH_DETAIL_LIMIT,
    NotConnectedError,
    ProviderNotConfiguredError,
    TokenRefreshError,
    response_detail,
    sanitize_detail,
)
from tasksync.models import OAuthConnection, Provider

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600
CALCOM_API_VERSION = "2024-08-13"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

GOOGLE_CALENDAR_SCOPES = frozenset(
    {
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    }
)


@dataclass(frozen=True)
class ProviderEndpoints:
    """Static OAuth wiring for one provider."""

    authorize_url: str
    token_url: str
    body_format: Literal["form", "json"] = "form"
    basic_auth: bool = False
    secret_required: bool = True
    identity_url: str | None = None
    identity_headers: dict[str, str] = field(default_factory=dict)
    revoke_url: str | None = None
    default_scopes: tuple[str, ...] = ()
    authorize_params: dict[str, str] = field(default_factory=dict)


PROVIDER_ENDPOINTS: dict[Provider, ProviderEndpoints] = {
    Provider.GMAIL: ProviderEndpoints(
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        secret_required=False,
        revoke_url=GOOGLE_REVOKE_URL,
        default_scopes=(
            "openid",
            "email",
            "profile",
            "https://www.googleapis.com/auth/gmail.send",
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events",
        ),
        authorize_params={
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        },
    ),
    Provider.CALENDLY: ProviderEndpoints(
        authorize_url="https://auth.calendly.com/oauth/authorize",
        token_url="https://auth.calendly.com/oauth/token",
        identity_url="https://api.calendly.com/users/me",
    ),
    Provider.CALCOM: ProviderEndpoints(
        authorize_url="https://app.cal.com/auth/oauth2/authorize",
        token_url="https://api.cal.com/v2/auth/oauth2/token",
        body_format="json",
        identity_url="https://api.cal.com/v2/me",
        identity_headers={"cal-api-version": CALCOM_API_VERSION},
    ),
    Provider.ZOOM: ProviderEndpoints(
        authorize_url="https://zoom.us/oauth/authorize",
        token_url="https://zoom.us/oauth/token",
        basic_auth=True,
        identity_url="https://api.zoom.us/v2/users/me",
    ),
}


class AccessToken(BaseModel):
    """A usable access token plus the identity fields fetchers need."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    access_token: str
    expires_at: datetime | None = None
    scope: str | None = None
    provider_email: str | None = None
    provider_user_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_connection(cls, connection: OAuthConnection) -> AccessToken:
        return cls(
            provider=connection.provider,
            access_token=connection.access_token or "",
            expires_at=connection.expires_at,
            scope=connection.scope,
            provider_email=connection.provider_email,
            provider_user_id=connection.provider_user_id,
            extra=dict(connection.extra),
        )

    def __repr__(self) -> str:
        return (
            f"AccessToken(provider={self.provider.value!r}, access_token=<REDACTED>, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


class ConnectionStatus(BaseModel):
    """Connection summary safe to return to clients (no token values)."""

    provider: Provider
    connected: bool
    needs_reconnect: bool = False
    email: str | None = None
    provider_user_id: str | None = None
    scope: str | None = None
    has_calendar_scope: bool | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def has_calendar_scope(scope: str | None) -> bool:
    """Return True when the space-delimited *scope* grants Google Calendar access."""
    if not scope:
        return False
    return any(item in GOOGLE_CALENDAR_SCOPES for item in scope.split())


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decode_jwt_payload(token: str) -> dict[str, Any]:
    """Decode a JWT payload without verifying it (identity hints only)."""
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode()))
    except (ValueError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


@dataclass
class _Identity:
    email: str | None = None
    user_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class TokenManager:
    """Obtain, refresh, exchange and revoke provider OAuth tokens.

    Parameters
    ----------
    store:
        Connection persistence.
    config:
        Application config; supplies client credentials and the refresh buffer.
    http_client:
        Optional shared client.  When omitted, the manager owns one and
        closes it in :meth:`aclose`.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: ConnectionStore,
        config: AppConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.http.timeout_s)
        self._clock = clock or (lambda: datetime.now(UTC))
        # Entries vanish once no caller holds the lock
        self._refresh_locks: weakref.WeakValueDictionary[tuple[str, Provider], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get_valid_access_token(self, user_id: str, provider: Provider | str) -> AccessToken:
        """Return an access token valid for at least the refresh buffer.

        Raises
        ------
        NotConnectedError
            No stored connection or no refresh token.
        ProviderNotConfiguredError
            A refresh is needed but client credentials are missing.
        TokenRefreshError
            The provider rejected the refresh.  Stored credentials are kept.
        """
        provider = Provider(provider)
        connection = await self._load_connected(user_id, provider)
        if self._is_fresh(connection):
            return AccessToken.from_connection(connection)

        lock = self._lock_for(user_id, provider)
        async with lock:
            # Another task may have refreshed while we waited.
            connection = await self._load_connected(user_id, provider)
            if self._is_fresh(connection):
                return AccessToken.from_connection(connection)
            return await self._refresh(connection)

    async def get_calendar_access_token(self, user_id: str) -> AccessToken:
        """Return a Google token, requiring a calendar scope on the ``gmail`` grant.

        Raises
        ------
        NotConnectedError
            ``calendar_not_connected`` when the grant lacks a calendar scope.
        """
        connection = await self._store.load(user_id, Provider.GMAIL)
        if connection is None or not has_calendar_scope(connection.scope):
            raise NotConnectedError(Provider.GMAIL.value, "calendar_not_connected")
        return await self.get_valid_access_token(user_id, Provider.GMAIL)

    def _lock_for(self, user_id: str, provider: Provider) -> asyncio.Lock:
        key = (user_id, provider)
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[key] = lock
        return lock

    async def _load_connected(self, user_id: str, provider: Provider) -> OAuthConnection:
        connection = await self._store.load(user_id, provider)
        if connection is None or not connection.refresh_token:
            raise NotConnectedError(provider.value)
        return connection

    def _is_fresh(self, connection: OAuthConnection) -> bool:
        if not connection.access_token or connection.expires_at is None:
            return False
        remaining = connection.expires_at - self._clock()
        return remaining > timedelta(seconds=self._config.sync.refresh_buffer_s)

    async def _refresh(self, connection: OAuthConnection) -> AccessToken:
        provider = connection.provider
        client = self._client_config(provider)
        payload = await self._post_token(
            provider,
            client,
            {"grant_type": "refresh_token", "refresh_token": connection.refresh_token or ""},
            stage="refresh",
        )
        access_token = self._require_access_token(provider, payload, stage="refresh")
        expires_at = self._clock() + timedelta(
            seconds=_coerce_expires_in_seconds(payload.get("expires_in"))
        )
        rotated_refresh = _optional_str(payload.get("refresh_token"))
        scope = _optional_str(payload.get("scope"))
        token_type = _optional_str(payload.get("token_type"))

        await self._store.update_tokens(
            connection.user_id,
            provider,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=rotated_refresh,
            scope=scope,
            token_type=token_type,
        )
        logger.info(
            "Access token refreshed: user_id=%s provider=%s rotated_refresh_token=%s",
            connection.user_id,
            provider.value,
            rotated_refresh is not None,
        )

        refreshed = connection.model_copy(
            update={
                "access_token": access_token,
                "expires_at": expires_at,
                "refresh_token": rotated_refresh or connection.refresh_token,
                "scope": scope or connection.scope,
                "token_type": token_type or connection.token_type,
            }
        )
        return AccessToken.from_connection(refreshed)

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def authorization_url(
        self,
        provider: Provider | str,
        state: str,
        *,
        code_challenge: str | None = None,
    ) -> str:
        """Build the provider consent URL for the authorization-code flow."""
        provider = Provider(provider)
        endpoints = PROVIDER_ENDPOINTS[provider]
        client = self._client_config(provider)

        params: dict[str, str] = {
            "client_id": client.client_id,
            "redirect_uri": client.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        scopes = client.scopes or list(endpoints.default_scopes)
        if scopes:
            params["scope"] = " ".join(scopes)
        params.update(endpoints.authorize_params)
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{endpoints.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        user_id: str,
        provider: Provider | str,
        code: str,
        *,
        code_verifier: str | None = None,
    ) -> OAuthConnection:
        """Exchange an authorization code and upsert the connection row.

        A missing ``refresh_token`` in the response keeps the stored one
        (Google omits it on repeat consent).
        """
        provider = Provider(provider)
        client = self._client_config(provider)
        params = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": client.redirect_uri,
        }
        if code_verifier:
            params["code_verifier"] = code_verifier

        payload = await self._post_token(provider, client, params, stage="exchange")
        access_token = self._require_access_token(provider, payload, stage="exchange")
        identity = await self._fetch_identity(provider, access_token, payload)

        expires_in = payload.get("expires_in")
        expires_at = (
            self._clock() + timedelta(seconds=_coerce_expires_in_seconds(expires_in))
            if expires_in is not None
            else None
        )
        connection = OAuthConnection(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=_optional_str(payload.get("refresh_token")),
            expires_at=expires_at,
            scope=_optional_str(payload.get("scope")),
            token_type=_optional_str(payload.get("token_type")),
            provider_email=identity.email,
            provider_user_id=identity.user_id,
            extra=identity.extra,
        )
        await self._store.upsert(connection)
        return connection

    async def _fetch_identity(
        self, provider: Provider, access_token: str, token_payload: dict[str, Any]
    ) -> _Identity:
        """Resolve the provider-side identity; failures yield an empty identity."""
        if provider is Provider.GMAIL:
            id_token = token_payload.get("id_token")
            claims = _decode_jwt_payload(id_token) if isinstance(id_token, str) else {}
            return _Identity(
                email=_optional_str(claims.get("email") or claims.get("preferred_username")),
                user_id=_optional_str(claims.get("sub")),
            )

        endpoints = PROVIDER_ENDPOINTS[provider]
        if endpoints.identity_url is None:
            return _Identity()
        try:
            response = await self._http.get(
                endpoints.identity_url,
                headers={"Authorization": f"Bearer {access_token}", **endpoints.identity_headers},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Identity lookup failed for provider=%s: %s",
                provider.value,
                sanitize_detail(str(exc), 200),
            )
            return _Identity()
        if not isinstance(body, dict):
            return _Identity()

        if provider is Provider.CALENDLY:
            resource = body.get("resource") if isinstance(body.get("resource"), dict) else {}
            extra = {}
            if organization := _optional_str(resource.get("organization")):
                extra["organization_uri"] = organization
            return _Identity(
                email=_optional_str(resource.get("email")),
                user_id=_optional_str(resource.get("uri")),
                extra=extra,
            )
        if provider is Provider.CALCOM:
            user = body.get("data") or body.get("user") or {}
            if not isinstance(user, dict):
                return _Identity()
            extra = {}
            if username := _optional_str(user.get("username")):
                extra["username"] = username
            return _Identity(
                email=_optional_str(user.get("email")),
                user_id=_optional_str(user.get("id")),
                extra=extra,
            )
        return _Identity(email=_optional_str(body.get("email")), user_id=_optional_str(body.get("id")))

    # ------------------------------------------------------------------
    # Disconnect / status
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: str, provider: Provider | str) -> bool:
        """Revoke (best effort) and delete the stored connection.

        Returns ``True`` when a row was deleted.
        """
        provider = Provider(provider)
        endpoints = PROVIDER_ENDPOINTS[provider]
        connection = await self._store.load(user_id, provider)
        if connection is not None and endpoints.revoke_url:
            token = connection.refresh_token or connection.access_token
            if token:
                await self._revoke(provider, endpoints.revoke_url, token)

        deleted = await self._store.delete(user_id, provider)
        return deleted

    async def _revoke(self, provider: Provider, revoke_url: str, token: str) -> None:
        try:
            response = await self._http.post(
                revoke_url,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Token revoke request failed for provider=%s: %s",
                provider.value,
                sanitize_detail(str(exc), 200),
            )
            return
        if response.is_error:
            logger.warning(
                "Token revoke rejected for provider=%s (%s): %s",
                provider.value,
                response.status_code,
                response_detail(response, 200),
            )

    async def connection_status(self, user_id: str, provider: Provider | str) -> ConnectionStatus:
        provider = Provider(provider)
        connection = await self._store.load(user_id, provider)
        if connection is None:
            return ConnectionStatus(provider=provider, connected=False)
        return ConnectionStatus(
            provider=provider,
            connected=bool(connection.refresh_token),
            needs_reconnect=not connection.refresh_token,
            email=connection.provider_email,
            provider_user_id=connection.provider_user_id,
            scope=connection.scope,
            has_calendar_scope=(
                has_calendar_scope(connection.scope) if provider is Provider.GMAIL else None
            ),
            expires_at=connection.expires_at,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )

    # ------------------------------------------------------------------
    # Token endpoint plumbing
    # ------------------------------------------------------------------

    def _client_config(self, provider: Provider) -> ProviderOAuthConfig:
        client = self._config.provider(provider)
        endpoints = PROVIDER_ENDPOINTS[provider]
        if not client.client_id or (endpoints.secret_required and not client.client_secret):
            raise ProviderNotConfiguredError(provider.value)
        return client

    async def _post_token(
        self,
        provider: Provider,
        client: ProviderOAuthConfig,
        params: dict[str, str],
        *,
        stage: str,
    ) -> dict[str, Any]:
        endpoints = PROVIDER_ENDPOINTS[provider]
        body = dict(params)
        auth: httpx.BasicAuth | None = None
        if endpoints.basic_auth:
            auth = httpx.BasicAuth(client.client_id, client.client_secret)
        else:
            body["client_id"] = client.client_id
            if client.client_secret:
                body["client_secret"] = client.client_secret

        request_kwargs: dict[str, Any] = {"headers": {"Accept": "application/json"}}
        if endpoints.body_format == "json":
            request_kwargs["json"] = body
        else:
            request_kwargs["data"] = body
        if auth is not None:
            request_kwargs["auth"] = auth

        try:
            response = await self._http.post(endpoints.token_url, **request_kwargs)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                provider.value,
                sanitize_detail(f"{type(exc).__name__}: {exc}", REFRESH_DETAIL_LIMIT),
                stage=stage,
            ) from exc

        if response.is_error:
            detail = response_detail(response, REFRESH_DETAIL_LIMIT)
            logger.warning(
                "Token %s rejected: provider=%s status=%s",
                stage,
                provider.value,
                response.status_code,
            )
            raise TokenRefreshError(
                provider.value, detail, status_code=response.status_code, stage=stage
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                provider.value, "token endpoint returned invalid JSON", stage=stage
            ) from exc
        if not isinstance(payload, dict):
            raise TokenRefreshError(
                provider.value, "token endpoint returned a non-object payload", stage=stage
            )
        return payload

    @staticmethod
    def _require_access_token(provider: Provider, payload: dict[str, Any], *, stage: str) -> str:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                provider.value, "token response is missing a non-empty access_token", stage=stage
            )
        return access_token.strip()
