"""
tests/conftest.py -- Shared test fixtures for Presensi tests.

This module provides:
  - FakeClock: a controllable time source for the throttle and session codec
  - _make_user_store(): isolated named shared-memory SQLite credential store
  - _seed_users(): one member ("99887766") and one admin ("admin12345")
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: module-scoped TestClient (follow_redirects=False) + seed data
  - client: the same TestClient with its cookie jar emptied for each test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

JWT_SECRET, BCRYPT_ROUNDS and DEBUG must be set before any auth/core import:
Settings refuses to load without a secret, and auth.hashing computes its
dummy hash at import time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("JWT_SECRET", "presensi-test-secret-0123456789abcdef0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("THROTTLE_BACKEND", "memory")
# TestClient connects as peer "testclient"; trusting it lets tests pick their own X-Forwarded-For.
os.environ.setdefault("TRUSTED_PROXIES", '["testclient"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_gateway
from auth.hashing import hash_secret
from auth.models import User
from auth.store import UserStore
from auth.throttle import LoginThrottle, MemoryThrottleStore, ThrottlePolicy
from auth.tokens import get_session_codec

MEMBER_NISN = "99887766"
MEMBER_SECRET = "verysecure"
ADMIN_ID = "admin12345"
ADMIN_SECRET = "admin-password-1"
TEST_KEY_SECRET = "throttle-key-secret"


class FakeClock:
    """Callable time source. Starts at a fixed instant and moves only when told."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Seed:
    member_id: str
    admin_id: str
    member_token: str
    admin_token: str
    user_store: UserStore
    throttle: LoginThrottle

    def bearer(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_user_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory credential store."""
    return UserStore(f"sqlite:///file:test_auth_{db_suffix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _seed_users(store: UserStore) -> tuple[str, str]:
    member_id = store.create_user(User(nisn=MEMBER_NISN, name="Arya", token_hash=hash_secret(MEMBER_SECRET)))
    admin_id = store.create_user(
        User(nisn=ADMIN_ID, name="Admin", is_admin=True, token_hash=hash_secret(ADMIN_SECRET))
    )
    return member_id, admin_id


def _patch_lifespan(user_store: UserStore, throttle: LoginThrottle):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.throttle = throttle
        app.state.gateway = build_gateway(user_store, throttle)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Seed], None, None]:
    """Yield (client, seed) for HTTP integration tests.

    follow_redirects=False is essential for request-guard tests: we assert on
    redirect *locations*, which are invisible once the client follows them.

    The throttle is real (in-memory). Tests that fail logins on purpose send
    their own X-Forwarded-For (the peer "testclient" is a trusted proxy here)
    so they do not lock each other out.
    """
    user_store = _make_user_store("api")
    member_id, admin_id = _seed_users(user_store)
    throttle = LoginThrottle(MemoryThrottleStore(), ThrottlePolicy(), key_secret=TEST_KEY_SECRET)

    codec = get_session_codec()
    seed = Seed(
        member_id=member_id,
        admin_id=admin_id,
        member_token=codec.sign(member_id, MEMBER_NISN, False),
        admin_token=codec.sign(admin_id, ADMIN_ID, True),
        user_store=user_store,
        throttle=throttle,
    )

    app.router.lifespan_context = _patch_lifespan(user_store, throttle)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, seed

    user_store.close()


@pytest.fixture
def client(api_client: tuple[TestClient, Seed]) -> TestClient:
    """The module's TestClient with an empty cookie jar."""
    test_client, _seed = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def seed(api_client: tuple[TestClient, Seed]) -> Seed:
    return api_client[1]
