"""
tests/conftest.py -- Shared test fixtures for TeamGuard unit and integration tests.

This module provides:
  - RecordingEmailSender / RecordingAuditSink: collaborator fakes that keep
    everything they are handed, so tests can read emailed tokens and audit events
  - user_store / team_store / cache: fresh, isolated stores per test
  - make_user: factory that inserts a user directly through the store
  - api: module-scoped ApiHarness wrapping a TestClient over the real app with
    a patched lifespan that wires test stores and the fakes into app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API harness because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Tests that need real concurrent writers use a temp-file database instead.

Environment variables must be set before any application import so
get_settings() sees them on first (cached) construction.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

# CRITICAL: Set env before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789-abcdefghijklmnop")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_state
from auth.models import User, UserStatus
from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import CacheStore
from core.collaborators import AuditEvent
from teams.store import TeamStore

PASSWORD = "Str0ng!pass"

# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class RecordingEmailSender:
    """EmailSender that records (email, token) pairs instead of sending."""

    def __init__(self) -> None:
        self.verification: list[tuple[str, str]] = []
        self.reset: list[tuple[str, str]] = []
        self.welcome: list[str] = []
        self.fail = False

    def send_verification_email(self, user, token: str) -> None:
        self._maybe_fail()
        self.verification.append((user.email, token))

    def send_password_reset_email(self, user, token: str) -> None:
        self._maybe_fail()
        self.reset.append((user.email, token))

    def send_welcome_email(self, user, temp_password: Optional[str] = None) -> None:
        self._maybe_fail()
        self.welcome.append(user.email)

    def _maybe_fail(self) -> None:
        if self.fail:
            raise ConnectionError("SMTP relay unavailable")


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self, result: Optional[str] = None) -> list[str]:
        return [e.action for e in self.events if result is None or e.result == result]


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def team_store() -> Generator[TeamStore, None, None]:
    store = TeamStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(str(tmp_path / "cache.db"))


@pytest.fixture
def email() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


def create_user(
    store: UserStore,
    username: str,
    password: str = PASSWORD,
    status: UserStatus = UserStatus.active,
    **fields,
) -> User:
    """Insert a user straight through the store and return the stored record."""
    user_id = store.create_user(
        User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            hashed_password=fields.pop("hashed_password", None) or hash_password(password),
            status=status,
            email_verified=status == UserStatus.active,
            **fields,
        )
    )
    return store.get_by_id(user_id)


@pytest.fixture
def make_user(user_store: UserStore):
    """Factory fixture: make_user("ada") -> active User with password PASSWORD."""

    def _make(username: str, **kwargs) -> User:
        return create_user(user_store, username, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    user_store: UserStore
    team_store: TeamStore
    cache: CacheStore
    email: RecordingEmailSender = field(default_factory=RecordingEmailSender)
    audit: RecordingAuditSink = field(default_factory=RecordingAuditSink)
    client: Optional[TestClient] = None

    def make_user(self, username: str, **kwargs) -> User:
        return create_user(self.user_store, username, **kwargs)

    def login(self, username: str, password: str = PASSWORD) -> dict:
        """POST /auth/login and return the JSON body; fails the test on non-200."""
        resp = self.client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, f"login failed: {resp.status_code} {resp.text}"
        return resp.json()

    def auth(self, username: str, password: str = PASSWORD) -> dict[str, str]:
        """Authorization header for a fresh login of username."""
        return {"Authorization": f"Bearer {self.login(username, password)['token']}"}


def _patch_lifespan(harness: ApiHarness):
    """Return an async context manager that replaces the real lifespan.

    Wires the harness stores and collaborator fakes into app.state through
    the same init_state() the production lifespan uses.

    The sweep_task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task, exactly as in production.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, harness.user_store, harness.team_store, harness.cache, email=harness.email, audit=harness.audit)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api(request, tmp_path_factory) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for one test module.

    Each module gets its own named in-memory database, so modules never see
    each other's users or teams.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    db_url = f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"
    harness = ApiHarness(
        user_store=UserStore(db_url),
        team_store=TeamStore(db_url),
        cache=CacheStore(str(tmp_path_factory.mktemp(name) / "cache.db")),
    )
    app.router.lifespan_context = _patch_lifespan(harness)

    with TestClient(app, raise_server_exceptions=True) as client:
        harness.client = client
        yield harness

    harness.team_store.close()
    harness.user_store.close()
