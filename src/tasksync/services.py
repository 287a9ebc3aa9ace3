"""Wiring of stores, token manager, engine and push synchronizer.

Both the HTTP app and the CLI build one :class:`SyncServices` per process
from an :class:`~tasksync.config.AppConfig`, an asyncpg pool and a shared
``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from tasksync.config import AppConfig
from tasksync.credential_store import ConnectionStore
from tasksync.db import Database, ensure_schema
from tasksync.models import Provider
from tasksync.providers import build_event_provider
from tasksync.providers.google import GoogleCalendarProvider
from tasksync.push import CalendarPushSynchronizer
from tasksync.reconcile import ReconciliationEngine
from tasksync.storage import MappingStore, TaskStore
from tasksync.tokens import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    config: AppConfig
    http_client: httpx.AsyncClient
    connections: ConnectionStore
    tasks: TaskStore
    tokens: TokenManager
    engine: ReconciliationEngine
    pusher: CalendarPushSynchronizer


def build_services(config: AppConfig, pool: Any, http_client: httpx.AsyncClient) -> SyncServices:
    """Assemble the service graph over an existing pool and HTTP client."""
    connections = ConnectionStore(pool)
    tasks = TaskStore(pool)
    tokens = TokenManager(connections, config, http_client)
    timeout = config.http.timeout_s

    engine = ReconciliationEngine(
        tokens=tokens,
        task_store=tasks,
        mapping_store_factory=lambda provider: MappingStore(pool, provider),
        event_provider_factory=lambda source: build_event_provider(
            source, http_client, timeout=timeout
        ),
        sync_config=config.sync,
    )
    pusher = CalendarPushSynchronizer(
        tokens=tokens,
        calendar_factory=lambda: GoogleCalendarProvider(http_client, timeout=timeout),
    )
    return SyncServices(
        config=config,
        http_client=http_client,
        connections=connections,
        tasks=tasks,
        tokens=tokens,
        engine=engine,
        pusher=pusher,
    )


@asynccontextmanager
async def open_services(config: AppConfig, *, init_schema: bool = True) -> AsyncIterator[SyncServices]:
    """Connect the pool, optionally ensure the schema, and yield services."""
    database = Database(config.database)
    pool = await database.connect()
    try:
        if init_schema:
            await ensure_schema(pool)
        async with httpx.AsyncClient(timeout=config.http.timeout_s) as http_client:
            yield build_services(config, pool, http_client)
    finally:
        await database.close()


def configured_providers(config: AppConfig) -> list[Provider]:
    return [p for p in Provider if config.provider(p).is_configured]
