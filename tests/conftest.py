"""
tests/conftest.py -- Shared test fixtures for AppPortal.

This module provides:
  - portal_store / gate / lifecycle / sync_service: in-process fixtures over a
    private in-memory PortalStore for unit tests of the portal layer
  - _make_test_stores(): creates isolated named shared-memory DBs for API tests
  - _patch_lifespan(): wires test stores and services into app.state
  - api_client: TestClient with an admin JWT for API integration tests
  - user_auth: a regular (role=user) account in the api_client's user store
  - super_admin_auth: a role=super_admin account for system.settings routes

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for API tests because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run on one thread, so plain :memory: is enough.

Catalog sync runs on an InlineExecutor in every fixture, so a trigger call
returns only after reconcile has finished and its log row is closed.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY and ENCRYPTION_KEY instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import User
from auth.permissions import PermissionChecker
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from portal.lifecycle import RequestLifecycle
from portal.models import ApplicationTile
from portal.settings import SettingsGate
from portal.store import PortalStore
from portal.sync import CatalogSyncService, InlineExecutor

# ---------------------------------------------------------------------------
# Portal-layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def portal_store() -> Generator[PortalStore, None, None]:
    store = PortalStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture()
def gate(portal_store: PortalStore) -> SettingsGate:
    settings_gate = SettingsGate(portal_store)
    settings_gate.seed_defaults()
    return settings_gate


@pytest.fixture()
def lifecycle(portal_store: PortalStore) -> RequestLifecycle:
    return RequestLifecycle(portal_store)


@pytest.fixture()
def sync_service(portal_store: PortalStore, gate: SettingsGate) -> CatalogSyncService:
    return CatalogSyncService(portal_store, gate, executor=InlineExecutor())


@pytest.fixture()
def make_tile(portal_store: PortalStore):
    """Return a helper that inserts a tile with sensible defaults and returns its id."""

    def _make(name: str, **fields) -> str:
        fields.setdefault("launch_url", f"https://{name.lower().replace(' ', '-')}.example.com")
        return portal_store.create_tile(ApplicationTile(name=name, **fields))

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, PortalStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    portal_url = f"sqlite:///file:test_portal_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), PortalStore(db_url=portal_url)


def _patch_lifespan(user_store: UserStore, portal: PortalStore):
    """Return an async context manager that replaces the real lifespan.

    The sync_task is a long-sleeping coroutine so shutdown code that calls
    .cancel() on it has a real asyncio.Task to work with.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        gate = SettingsGate(portal)
        gate.seed_defaults()
        app.state.user_store = user_store
        app.state.portal = portal
        app.state.settings_gate = gate
        app.state.lifecycle = RequestLifecycle(portal)
        app.state.sync = CatalogSyncService(portal, gate, executor=InlineExecutor())
        app.state.permissions = PermissionChecker()
        app.state.sync_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sync_task.cancel()

    return test_lifespan


def _create_account(user_store: UserStore, username: str, role: str) -> tuple[str, int]:
    uid = user_store.create_user(User(username=username, role=role, hashed_password=hash_password("testpass123")))
    token = create_access_token(user_id=uid, username=username, role=role, expire_seconds=3600)
    return token, uid


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_user_id) for API integration tests.

    One TestClient per test module, backed by that module's own in-memory
    databases. The limiter's counters are reset so limits from one module
    don't leak into the next.
    """
    user_store, portal = _make_test_stores(uuid.uuid4().hex[:8])
    token, uid = _create_account(user_store, "testadmin", "admin")

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, portal)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    user_store.close()
    portal.close()


@pytest.fixture(scope="module")
def user_auth(api_client) -> tuple[str, int]:
    """(token, user_id) for a role=user account in the api_client's store."""
    client, _, _ = api_client
    return _create_account(client.app.state.user_store, "testuser", "user")


@pytest.fixture(scope="module")
def other_user_auth(api_client) -> tuple[str, int]:
    client, _, _ = api_client
    return _create_account(client.app.state.user_store, "otheruser", "user")


@pytest.fixture(scope="module")
def super_admin_auth(api_client) -> tuple[str, int]:
    client, _, _ = api_client
    return _create_account(client.app.state.user_store, "rootadmin", "super_admin")
