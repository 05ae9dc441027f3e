"""
tests/conftest.py -- Shared test fixtures for RagChat integration tests.

This module provides:
  - FakeClock: a settable clock for TokenCodec and MemorySessionStore
  - _make_test_stores(): creates isolated in-memory DBs for users + chat
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient plus an access token for a registered user
  - other_user: a second registered user for ownership checks

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The session store is always MemorySessionStore -- no Redis server is needed
to run the suite. RedisSessionStore is unit-tested against a mocked client.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SESSION_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.dependencies import AccessGuard
from auth.manager import SessionManager
from auth.models import User
from auth.sessions import MemorySessionStore
from auth.store import UserStore
from auth.tokens import TokenCodec, hash_password
from chat.store import ChatStore
from core.config import get_settings

TEST_SECRET = "test-secret-key-with-more-than-32-characters"

# Rate limits are exercised by slowapi itself; here they would only make
# repeated logins from the single TestClient address flaky.
limiter.enabled = False


class FakeClock:
    """Settable clock. Call it for a datetime, use .timestamp() for seconds."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def secret_key() -> str:
    return TEST_SECRET


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def memory_store(clock: FakeClock) -> MemorySessionStore:
    return MemorySessionStore(clock=clock.timestamp)


@pytest.fixture
def manager(codec: TokenCodec, memory_store: MemorySessionStore) -> SessionManager:
    return SessionManager(codec, memory_store)


@pytest.fixture
def guard(codec: TokenCodec, memory_store: MemorySessionStore) -> AccessGuard:
    return AccessGuard(codec, memory_store)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, ChatStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'messages').
    """
    users_url = f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true"
    chat_url = f"sqlite:///file:test_chat_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=users_url), ChatStore(db_url=chat_url)


def _patch_lifespan(user_store: UserStore, chat_store: ChatStore, session_store: MemorySessionStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs and an in-process session store. The chat-completion
    client is None; tests that need one patch app.state.llm.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        codec = TokenCodec(TEST_SECRET)
        app.state.settings = get_settings()
        app.state.user_store = user_store
        app.state.chat_store = chat_store
        app.state.session_store = session_store
        app.state.codec = codec
        app.state.session_manager = SessionManager(codec, session_store)
        app.state.access_guard = AccessGuard(codec, session_store)
        app.state.llm = None
        yield

    return test_lifespan


def register_user(client: TestClient, email: str, password: str = "testpass123", name: str = "Test User") -> int:
    """Create a user directly in the store behind client and return its id."""
    user_store: UserStore = client.app.state.user_store
    return user_store.create_user(User(email=email, name=name, hashed_password=hash_password(password)))


def login_token(client: TestClient, identity: int) -> str:
    """Open a session for identity and return its access token."""
    manager: SessionManager = client.app.state.session_manager
    return manager.login(identity).access_token


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, access_token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores, one
    pair per test module. The user "tester@example.com" / "testpass123"
    exists before the first test.
    """
    user_store, chat_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    session_store = MemorySessionStore()

    app.router.lifespan_context = _patch_lifespan(user_store, chat_store, session_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        uid = register_user(client, "tester@example.com")
        token = login_token(client, uid)
        yield client, token, uid

    user_store.close()
    chat_store.close()


@pytest.fixture(scope="module")
def other_user(api_client: tuple[TestClient, str, int]) -> tuple[str, int]:
    """Yield (access_token, user_id) for a second, unrelated user."""
    client, _token, _uid = api_client
    uid = register_user(client, "someone.else@example.com", name="Someone Else")
    return login_token(client, uid), uid
