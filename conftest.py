"""Root conftest: shared fixtures for the tasksync test suite.

Keeping this at the repository root puts the root on ``sys.path`` so test
modules can import helpers as ``from tests.fakes import ...``.
"""

from __future__ import annotations

import pytest

from tasksync.config import AppConfig, ProviderOAuthConfig
from tasksync.core.logging import sync_context
from tasksync.models import Provider


@pytest.fixture()
def app_config() -> AppConfig:
    """Config with OAuth clients for every provider."""
    return AppConfig(
        providers={
            Provider.GMAIL: ProviderOAuthConfig(
                client_id="gmail-client.apps.googleusercontent.com",
                client_secret="gmail-secret",
                redirect_uri="https://app.example.com/api/gmail/oauth/callback",
            ),
            Provider.CALENDLY: ProviderOAuthConfig(
                client_id="calendly-client",
                client_secret="calendly-secret",
                redirect_uri="https://app.example.com/api/calendly/oauth/callback",
            ),
            Provider.CALCOM: ProviderOAuthConfig(
                client_id="calcom-client",
                client_secret="calcom-secret",
                redirect_uri="https://app.example.com/api/cal-com/oauth/callback",
            ),
            Provider.ZOOM: ProviderOAuthConfig(
                client_id="zoom-client",
                client_secret="zoom-secret",
                redirect_uri="https://app.example.com/api/zoom/oauth/callback",
            ),
        }
    )


@pytest.fixture(autouse=True)
def _reset_sync_context():
    """Make sure no test leaks a bound user/provider into the next."""
    with sync_context(None, None):
        yield
