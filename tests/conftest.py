"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - settings: deterministic Settings (fixed secret, bcrypt cost 4)
  - clock: a frozen, advanceable UTC clock
  - store / service: an in-memory CredentialStore and a SessionService on it
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG must be set before any api/ import so get_settings() can auto-generate
SECRET_KEY. LOGIN_RATE_LIMIT is raised so ordinary tests never trip it.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any api/ import (api.main reads settings at import).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import SessionService
from auth.store import CredentialStore
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """A Clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(secret_key=TEST_SECRET, bcrypt_rounds=4, debug=False)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: CredentialStore, settings: Settings, clock: FrozenClock) -> SessionService:
    return SessionService.from_settings(store, settings, clock=clock)


@pytest.fixture
def registered(service: SessionService):
    """An account registered as ("a@x.com", "Abcd123!", "Ann")."""
    return service.register("a@x.com", "Abcd123!", "Ann")


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: SessionService, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service into app.state so routes see an isolated store
    instead of the on-disk database. No purge task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.session_service = service
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings) -> Generator[tuple[TestClient, SessionService], None, None]:
    """Yield (client, service) backed by a fresh shared-memory database.

    The base URL uses localhost so TrustedHostMiddleware accepts the requests.
    The service uses the real clock: API tests exercise wiring, not timing.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = CredentialStore(db_url)
    service = SessionService.from_settings(store, settings)

    app.router.lifespan_context = _patch_lifespan(service, settings)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, service

    store.close()
