"""
Shared fixtures for the API tests.

Each test gets an app built on a static rule source and an in-memory
record store, with settings re-read from a clean environment.
"""

import pytest
from fastapi.testclient import TestClient

from config import get_settings

API_KEY = "test-internal-key-0123456789abcdef"


@pytest.fixture(autouse=True)
def api_env(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("INTERNAL_API_KEY", API_KEY)
    monkeypatch.delenv("INTERNAL_API_KEYS", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    monkeypatch.delenv("RULES_CONFIG_PATH", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def auth_headers():
    return {"X-Internal-Api-Key": API_KEY, "X-Service-Name": "test-suite"}


@pytest.fixture
def make_client():
    """Factory for a TestClient on the given rule source; use as a context manager."""
    from server import create_app

    def factory(rule_source, record_store=None):
        return TestClient(create_app(rule_source=rule_source, record_store=record_store))

    return factory
