"""
tests/conftest.py -- Shared test fixtures for tvcore tests.

This module provides:
  - store:           an in-memory UserStore for unit tests
  - sample_file:     a file-declared configuration document
  - api_client:      TestClient wired to an isolated shared-memory store with
                     an owner, an admin and a plain user already registered
  - auth_headers:    factory building a Cookie header with a signed session

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixture because TestClient runs sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread.

DEBUG, SECRET_KEY and a generous login rate limit must be set before any
core/auth import so get_settings() resolves them on first call.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any core/auth import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("STORAGE_TYPE", "database")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.store import UserStore
from auth.tokens import AUTH_COOKIE, issue_session
from cache.store import ConfigService
from core.config import get_settings

SAMPLE_FILE = {
    "cache_time": 3600,
    "api_site": {
        "alpha": {"name": "Alpha", "api": "http://alpha.example/api", "detail": "http://alpha.example"},
        "beta": {"name": "Beta", "api": "http://beta.example/api"},
        "gamma": {"name": "Gamma", "displayName": "Gamma HD", "api": "http://gamma.example/api"},
    },
    "custom_category": [
        {"name": "Top Movies", "type": "movie", "query": "top"},
        {"type": "tv", "query": "drama"},
    ],
    "lives": {
        "news": {"name": "News", "url": "http://live.example/news.m3u8", "epg": "http://epg.example"},
    },
}


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def sample_file() -> str:
    return json.dumps(SAMPLE_FILE)


@pytest.fixture
def auth_headers() -> Callable[[str, str], dict[str, str]]:
    """Return a factory: auth_headers("alice", "user") -> Cookie header with a signed session."""

    def _headers(username: str, role: str) -> dict[str, str]:
        return {"Cookie": f"{AUTH_COOKIE}={issue_session(username, role)}"}

    return _headers


def _patch_lifespan(user_store: UserStore):
    """Return a lifespan that wires the pre-built test store into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.config_service = ConfigService(user_store, get_settings())
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient over an isolated store.

    Accounts: owner1 (owner, "ownerpass1"), admin1 (admin, "adminpass1"),
    alice (user, "alicepass1"). The stored configuration is seeded from
    SAMPLE_FILE.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store = UserStore(f"sqlite:///file:tvcore_{suffix}?mode=memory&cache=shared&uri=true")
    user_store.ensure_owner("owner1", "ownerpass1")
    user_store.register_user("admin1", "adminpass1", role="admin")
    user_store.register_user("alice", "alicepass1")

    service = ConfigService(user_store, get_settings())
    service.apply_config_file(json.dumps(SAMPLE_FILE))

    app.router.lifespan_context = _patch_lifespan(user_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    user_store.close()
