"""Error taxonomy and provider-detail sanitization.

Every exception raised towards a caller derives from :class:`TaskSyncError`.
Provider response bodies are attached only after passing through
:func:`sanitize_detail`, which redacts token-like values, collapses
whitespace and truncates, so oversized payloads and credentials never reach
an error message or a log line.
"""

from __future__ import annotations

import re

import httpx

REFRESH_DETAIL_LIMIT = 500
LIST_DETAIL_LIMIT = 600
PUSH_DETAIL_LIMIT = 700


class TaskSyncError(RuntimeError):
    """Base error for the sync engine."""


class NotConnectedError(TaskSyncError):
    """Raised when no usable OAuth connection is stored for a user/provider.

    Terminal: the user must re-run the authorization flow.
    """

    def __init__(self, provider: str, message: str | None = None) -> None:
        self.provider = provider
        super().__init__(message or f"{provider}_not_connected")


class ProviderNotConfiguredError(TaskSyncError):
    """Raised when the OAuth client id/secret for a provider is not configured."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Missing OAuth client credentials for provider {provider!r}")


class TokenRefreshError(TaskSyncError):
    """Raised when a provider rejects a refresh-token (or code) exchange.

    Stored credentials are left untouched.  *stage* is ``"refresh"`` for the
    refresh grant and ``"exchange"`` for the authorization-code grant.
    """

    def __init__(
        self,
        provider: str,
        detail: str,
        *,
        status_code: int | None = None,
        stage: str = "refresh",
    ) -> None:
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        self.stage = stage
        super().__init__(f"{provider}_{stage}_failed: {detail}")


class ProviderAPIError(TaskSyncError):
    """Raised when a provider list/read call fails or returns malformed data."""

    def __init__(self, provider: str, detail: str, *, status_code: int | None = None) -> None:
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{provider}_api_failed: {detail}")


class PushSyncError(TaskSyncError):
    """Raised when pushing a task into the remote calendar fails."""

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"sync_event_failed: {detail}")


class StorageError(TaskSyncError):
    """Raised when a store write that must touch a row matched none."""


_KEY_VALUE_PATTERN = re.compile(
    r"(?i)\b(client_secret|refresh_token|access_token|id_token|token)\s*=\s*([^\s,;&]+)"
)
_QUOTED_PATTERN = re.compile(
    r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|id_token|token)['"]?\s*:\s*)(['"]).*?\2"""
)
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")


def redact_credential_values(message: str) -> str:
    """Redact token-like values from *message*."""
    redacted = _KEY_VALUE_PATTERN.sub(r"\1=[REDACTED]", message)
    redacted = _QUOTED_PATTERN.sub(r'\1"[REDACTED]"', redacted)
    return _BEARER_PATTERN.sub("Bearer [REDACTED]", redacted)


def sanitize_detail(message: str, limit: int) -> str:
    """Redact, collapse whitespace and truncate *message* to *limit* characters."""
    return " ".join(redact_credential_values(message).split())[:limit]


def response_detail(response: httpx.Response, limit: int) -> str:
    """Return a sanitized, bounded excerpt of a provider error response."""
    try:
        raw_text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        raw_text = ""
    detail = sanitize_detail(raw_text, limit)
    return detail or f"HTTP {response.status_code} without an error payload"
