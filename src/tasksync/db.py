"""PostgreSQL connection pool management and schema bootstrap."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from tasksync.config import DatabaseConfig

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_url(database_url: str) -> dict[str, Any]:
    """Parse connection params from a libpq-style DATABASE_URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "tasksync",
        "password": parsed.password or "tasksync",
        "database": parsed.path.lstrip("/") or "tasksync",
        "ssl": sslmode,
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Owns the asyncpg pool shared by the credential, task and mapping stores."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> asyncpg.Pool:
        """Create and return the connection pool."""
        params = db_params_from_url(self.config.url)
        ssl = params.pop("ssl")
        pool_kwargs: dict[str, Any] = {
            **params,
            "min_size": self.config.min_pool_size,
            "max_size": self.config.max_pool_size,
        }
        if ssl is not None:
            pool_kwargs["ssl"] = ssl
        try:
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, ssl):
                raise
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**pool_kwargs, ssl="disable")
        logger.info("Connection pool created for: %s", params["database"])
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed")

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError("Database has no active connection pool")
        return self.pool


@asynccontextmanager
async def acquire_conn(pool: Any) -> AsyncIterator[Any]:
    """Acquire a DB connection, including AsyncMock-friendly test doubles."""
    acquired = pool.acquire()
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    if hasattr(acquired, "__await__"):
        acquired = await acquired
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    # Last-resort fallback for non-context-manager connection stubs.
    yield acquired


def rows_affected(status: str | None) -> int:
    """Parse the row count from an asyncpg command status such as ``UPDATE 1``."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0


async def ensure_schema(pool: Any) -> None:
    """Create every table the engine reads or writes, if missing."""
    from tasksync.credential_store import ensure_connections_schema
    from tasksync.storage.mappings import ensure_mappings_schema
    from tasksync.storage.tasks import ensure_tasks_schema

    await ensure_connections_schema(pool)
    await ensure_tasks_schema(pool)
    await ensure_mappings_schema(pool)
    logger.info("Schema ensured")
