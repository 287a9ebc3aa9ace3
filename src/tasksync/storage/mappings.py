"""Per-provider event → task mapping tables.

Each scheduling provider owns one table (``zoom_event_tasks``,
``calendly_event_tasks``, ``calcom_event_tasks``) with a unique
``(user_id, external_id)`` key.  Writes are ``ON CONFLICT`` upserts on that
key, so re-processing the same remote event converges on a single row even
when two syncs for the same user overlap.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tasksync.db import acquire_conn, rows_affected
from tasksync.models import SCHEDULING_PROVIDERS, EventTaskMapping, Provider

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_MAPPING_TABLES: dict[Provider, str] = {
    Provider.ZOOM: "zoom_event_tasks",
    Provider.CALENDLY: "calendly_event_tasks",
    Provider.CALCOM: "calcom_event_tasks",
}

_MAPPING_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    user_id     TEXT NOT NULL,
    external_id TEXT NOT NULL,
    task_id     UUID NOT NULL,
    canceled_at TIMESTAMPTZ,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, external_id)
)
"""


def mapping_table(provider: Provider | str) -> str:
    """Return the mapping table name for a scheduling *provider*.

    Raises
    ------
    ValueError
        If *provider* has no mapping table (e.g. ``gmail``).
    """
    try:
        return _MAPPING_TABLES[Provider(provider)]
    except KeyError:
        raise ValueError(f"Provider {provider!r} has no event mapping table") from None


class MappingStore:
    """Async access to one provider's mapping table."""

    def __init__(self, pool: asyncpg.Pool, provider: Provider | str) -> None:
        self.pool = pool
        self.provider = Provider(provider)
        self.table = mapping_table(self.provider)

    async def load(
        self, user_id: str, external_ids: Iterable[str]
    ) -> dict[str, EventTaskMapping]:
        """Return ``{external_id: mapping}`` for the requested ids."""
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                f"""
                SELECT user_id, external_id, task_id, canceled_at
                FROM {self.table}
                WHERE user_id = $1 AND external_id = ANY($2::text[])
                """,
                user_id,
                ids,
            )
        mappings: dict[str, EventTaskMapping] = {}
        for row in rows:
            canceled_at = row["canceled_at"]
            if canceled_at is not None and canceled_at.tzinfo is None:
                canceled_at = canceled_at.replace(tzinfo=UTC)
            mappings[row["external_id"]] = EventTaskMapping(
                user_id=row["user_id"],
                external_id=row["external_id"],
                task_id=row["task_id"],
                canceled_at=canceled_at,
            )
        return mappings

    async def upsert(self, user_id: str, external_id: str, task_id: uuid.UUID) -> None:
        """Point *external_id* at *task_id*, clearing any cancellation marker."""
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {self.table} (user_id, external_id, task_id, canceled_at)
                VALUES ($1, $2, $3, NULL)
                ON CONFLICT (user_id, external_id) DO UPDATE SET
                    task_id     = EXCLUDED.task_id,
                    canceled_at = NULL,
                    updated_at  = now()
                """,
                user_id,
                external_id,
                task_id,
            )

    async def set_canceled(
        self, user_id: str, external_id: str, canceled_at: datetime | None = None
    ) -> bool:
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                f"""
                UPDATE {self.table} SET canceled_at = $3, updated_at = now()
                WHERE user_id = $1 AND external_id = $2
                """,
                user_id,
                external_id,
                canceled_at or datetime.now(UTC),
            )
        return rows_affected(status) > 0

    async def clear_canceled(self, user_id: str, external_id: str) -> bool:
        async with acquire_conn(self.pool) as conn:
            status = await conn.execute(
                f"""
                UPDATE {self.table} SET canceled_at = NULL, updated_at = now()
                WHERE user_id = $1 AND external_id = $2 AND canceled_at IS NOT NULL
                """,
                user_id,
                external_id,
            )
        return rows_affected(status) > 0


async def ensure_mappings_schema(pool: asyncpg.Pool) -> None:
    """Ensure every provider mapping table exists."""
    async with acquire_conn(pool) as conn:
        for provider in SCHEDULING_PROVIDERS:
            await conn.execute(_MAPPING_TABLE_DDL.format(table=_MAPPING_TABLES[provider]))
            logger.debug("Mapping table ensured: %s", _MAPPING_TABLES[provider])
