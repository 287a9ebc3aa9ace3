"""Shared fixtures for API tests."""

from __future__ import annotations

import httpx
import pytest

from tasksync.api.routers.oauth import _clear_state_store
from tests.api._harness import USER, ApiHarness, seeded_connection_store
from tests.fakes import MemoryConnectionStore


@pytest.fixture(autouse=True)
def clear_states():
    """Ensure the OAuth state store is empty before and after each test."""
    _clear_state_store()
    yield
    _clear_state_store()


@pytest.fixture
def connection_store() -> MemoryConnectionStore:
    return seeded_connection_store()


@pytest.fixture
def harness(app_config, connection_store) -> ApiHarness:
    return ApiHarness(app_config, connection_store)


@pytest.fixture
async def client(harness: ApiHarness):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=harness.app),
        base_url="http://test",
        headers={"X-User-Id": USER},
    ) as client:
        yield client
    await harness.http_client.aclose()
