"""OAuth connection store backed by the ``oauth_connections`` table.

One row per ``(user_id, provider)``.  Writes are upserts keyed on that pair,
so concurrent writers from several processes converge on a single row
without any in-process locking.

Usage: persisting after a token refresh::

    await store.update_tokens(
        user_id,
        Provider.ZOOM,
        access_token="...",
        expires_at=expires_at,
        refresh_token=None,  # keep the stored one
    )

Note: raw token values are NEVER logged and never appear in ``repr()``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tasksync.db import acquire_conn, rows_affected
from tasksync.models import OAuthConnection, Provider

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "oauth_connections"

_CONNECTIONS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id          TEXT NOT NULL,
    provider         TEXT NOT NULL,
    access_token     TEXT,
    refresh_token    TEXT,
    expires_at       TIMESTAMPTZ,
    scope            TEXT,
    token_type       TEXT,
    provider_email   TEXT,
    provider_user_id TEXT,
    extra            JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, provider)
)
"""

_SELECT_COLUMNS = """
    user_id, provider, access_token, refresh_token, expires_at, scope,
    token_type, provider_email, provider_user_id, extra, created_at, updated_at
"""


class ConnectionStore:
    """Async store for per-user OAuth connections.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection
        for the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load(self, user_id: str, provider: Provider | str) -> OAuthConnection | None:
        """Return the connection row for *user_id* / *provider*, or ``None``."""
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_SELECT_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        if row is None:
            return None
        return _row_to_connection(row)

    async def upsert(self, connection: OAuthConnection) -> None:
        """Insert or replace the full connection row (authorization handshake).

        A ``None`` refresh token, scope or identity field in *connection* keeps
        any stored value, and ``extra`` is merged into the stored object so a
        failed identity lookup on re-authorization does not erase it.
        """
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, provider, access_token, refresh_token, expires_at, scope,
                     token_type, provider_email, provider_user_id, extra)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    access_token     = EXCLUDED.access_token,
                    refresh_token    = COALESCE(EXCLUDED.refresh_token, {_TABLE}.refresh_token),
                    expires_at       = EXCLUDED.expires_at,
                    scope            = COALESCE(EXCLUDED.scope, {_TABLE}.scope),
                    token_type       = EXCLUDED.token_type,
                    provider_email   = COALESCE(EXCLUDED.provider_email, {_TABLE}.provider_email),
                    provider_user_id = COALESCE(EXCLUDED.provider_user_id,
                                                {_TABLE}.provider_user_id),
                    extra            = {_TABLE}.extra || EXCLUDED.extra,
                    updated_at       = now()
                """,
                connection.user_id,
                connection.provider.value,
                connection.access_token,
                connection.refresh_token or None,
                connection.expires_at,
                connection.scope or None,
                connection.token_type,
                connection.provider_email or None,
                connection.provider_user_id or None,
                json.dumps(connection.extra),
            )
        logger.info(
            "OAuth connection stored: user_id=%s provider=%s",
            connection.user_id,
            connection.provider.value,
        )

    async def update_tokens(
        self,
        user_id: str,
        provider: Provider | str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
        scope: str | None = None,
        token_type: str | None = None,
    ) -> bool:
        """Persist a refreshed token set in a single write.

        Empty or ``None`` *refresh_token* / *scope* keep the stored values;
        a stored refresh token is never replaced by an empty one.

        Returns ``True`` if a row was updated.
        """
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    access_token  = $3,
                    expires_at    = $4,
                    refresh_token = COALESCE(NULLIF($5, ''), refresh_token),
                    scope         = COALESCE(NULLIF($6, ''), scope),
                    token_type    = COALESCE($7, token_type),
                    updated_at    = now()
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider.value,
                access_token,
                expires_at,
                refresh_token,
                scope,
                token_type,
            )
        updated = rows_affected(status) > 0
        if not updated:
            logger.warning(
                "Token update matched no connection row: user_id=%s provider=%s",
                user_id,
                provider.value,
            )
        return updated

    async def delete(self, user_id: str, provider: Provider | str) -> bool:
        """Delete one connection row.  Returns ``True`` if a row was deleted."""
        provider = Provider(provider)
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        deleted = rows_affected(status) > 0
        if deleted:
            logger.info("OAuth connection deleted: user_id=%s provider=%s", user_id, provider.value)
        return deleted

    async def delete_for_user(self, user_id: str) -> int:
        """Delete every connection row for *user_id* (user removal)."""
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(f"DELETE FROM {_TABLE} WHERE user_id = $1", user_id)
        return rows_affected(status)

    def __repr__(self) -> str:
        return f"ConnectionStore(pool={self.pool!r})"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _decode_extra(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable oauth_connections.extra payload")
            return {}
    return dict(value) if isinstance(value, dict) else {}


def _row_to_connection(row: Any) -> OAuthConnection:
    return OAuthConnection(
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=_ensure_utc(row["expires_at"]),
        scope=row["scope"],
        token_type=row["token_type"],
        provider_email=row["provider_email"],
        provider_user_id=row["provider_user_id"],
        extra=_decode_extra(row["extra"]),
        created_at=_ensure_utc(row["created_at"]),
        updated_at=_ensure_utc(row["updated_at"]),
    )


async def ensure_connections_schema(pool: asyncpg.Pool) -> None:
    """Ensure ``oauth_connections`` exists on the target database."""
    async with acquire_conn(pool) as conn:
        await conn.execute(_CONNECTIONS_TABLE_DDL)
