"""OAuth connection endpoints: authorize, callback, status, token, disconnect.

Provides:
- ``GET  /api/{provider}/oauth/start``: build the consent URL and redirect
- ``GET  /api/{provider}/oauth/callback``: validate state, exchange the code
- ``GET  /api/{provider}/status``: connection summary (no tokens)
- ``GET  /api/{provider}/token``: fresh access token (gmail only)
- ``POST /api/{provider}/disconnect``: revoke (best effort) and delete

The caller's user id is bound to the CSRF state at ``/oauth/start`` since
the provider's redirect back to ``/oauth/callback`` carries no identity
header.  Google additionally uses PKCE; the verifier is kept alongside the
state.

Security notes
--------------
- State tokens are single-use and expire after 10 minutes.
- Token values are never logged and never returned except by ``/token``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from tasksync.api.deps import connection_provider, get_token_manager, get_user_id
from tasksync.api.models import (
    AccessTokenResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
)
from tasksync.errors import TokenRefreshError
from tasksync.models import Provider
from tasksync.tokens import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["oauth"])

# ---------------------------------------------------------------------------
# In-memory CSRF state store
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600  # 10 minutes

# NOTE: process-local. Run a single worker process, or CSRF state
# validation will fail when start and callback land on different workers.


@dataclass(frozen=True)
class _PendingAuthorization:
    user_id: str
    provider: Provider
    expires_at: float
    code_verifier: str | None = None


_state_store: dict[str, _PendingAuthorization] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(
    state: str, *, user_id: str, provider: Provider, code_verifier: str | None = None
) -> None:
    _state_store[state] = _PendingAuthorization(
        user_id=user_id,
        provider=provider,
        expires_at=time.monotonic() + _STATE_TTL_SECONDS,
        code_verifier=code_verifier,
    )
    _evict_expired_states()


def _validate_and_consume_state(state: str, provider: Provider) -> _PendingAuthorization | None:
    """Consume *state* (one-time-use); return the pending entry if valid."""
    _evict_expired_states()
    pending = _state_store.pop(state, None)
    if pending is None or pending.provider is not provider:
        return None
    if time.monotonic() >= pending.expires_at:
        return None
    return pending


def _evict_expired_states() -> None:
    now = time.monotonic()
    expired = [k for k, entry in _state_store.items() if now >= entry.expires_at]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


def _pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def _callback_error(error_code: str, message: str) -> JSONResponse:
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=400, content=payload.model_dump())


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/oauth/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to the provider authorization URL"},
    },
)
async def oauth_start(
    provider: str,
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the provider. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    user_id: str = Depends(get_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Response:
    resolved = connection_provider(provider)
    state = _generate_state()

    code_verifier = code_challenge = None
    if resolved is Provider.GMAIL:
        code_verifier, code_challenge = _pkce_pair()

    authorization_url = tokens.authorization_url(resolved, state, code_challenge=code_challenge)
    _store_state(state, user_id=user_id, provider=resolved, code_verifier=code_verifier)
    logger.info("OAuth flow started: provider=%s state=%s...", resolved.value, state[:8])

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return JSONResponse(
        content=OAuthStartResponse(authorization_url=authorization_url, state=state).model_dump()
    )


@router.get("/{provider}/oauth/callback")
async def oauth_callback(
    provider: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    tokens: TokenManager = Depends(get_token_manager),
) -> Response:
    resolved = connection_provider(provider)

    if error:
        logger.warning("OAuth provider error: provider=%s error=%s", resolved.value, error[:100])
        if state:
            _validate_and_consume_state(state, resolved)
        return _callback_error("provider_error", f"Authorization was not granted: {error[:100]}")

    if not code or not state:
        return _callback_error("missing_code_or_state", "Callback is missing code or state.")

    pending = _validate_and_consume_state(state, resolved)
    if pending is None:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(
            "invalid_state", "State parameter is invalid or expired. Please restart the flow."
        )

    try:
        connection = await tokens.exchange_code(
            pending.user_id, resolved, code, code_verifier=pending.code_verifier
        )
    except TokenRefreshError as exc:
        logger.warning("OAuth code exchange failed: %s", exc)
        return _callback_error(
            "token_exchange_failed",
            "Failed to exchange the authorization code. Please restart the flow.",
        )

    logger.info(
        "OAuth connection established: user_id=%s provider=%s", pending.user_id, resolved.value
    )
    return JSONResponse(
        content=OAuthCallbackSuccess(
            provider=resolved.value,
            email=connection.provider_email,
            scope=connection.scope,
        ).model_dump()
    )


# ---------------------------------------------------------------------------
# Connection management
# ---------------------------------------------------------------------------


@router.get("/{provider}/status", response_model=ConnectionStatusResponse)
async def connection_status(
    provider: str,
    user_id: str = Depends(get_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> ConnectionStatusResponse:
    status = await tokens.connection_status(user_id, connection_provider(provider))
    return ConnectionStatusResponse(**status.model_dump(exclude={"provider"}), provider=provider)


@router.get("/{provider}/token", response_model=AccessTokenResponse)
async def access_token(
    provider: str,
    user_id: str = Depends(get_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> AccessTokenResponse:
    """Return a fresh Google access token for the downstream mail sender."""
    resolved = connection_provider(provider)
    if resolved is not Provider.GMAIL:
        raise ValueError(f"Access tokens are only exposed for gmail, not {provider}")
    token = await tokens.get_valid_access_token(user_id, resolved)
    return AccessTokenResponse(
        access_token=token.access_token,
        provider_email=token.provider_email,
        expires_at=token.expires_at,
    )


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(
    provider: str,
    user_id: str = Depends(get_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> DisconnectResponse:
    deleted = await tokens.disconnect(user_id, connection_provider(provider))
    return DisconnectResponse(deleted=deleted)
