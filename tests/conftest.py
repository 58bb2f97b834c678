"""
tests/conftest.py -- Shared test fixtures for LicensePortal.

This module provides:
  - store: an in-memory CredentialStore for unit tests
  - codec: a SessionCodec with a fixed test secret
  - make_user(): insert a user with a real bcrypt hash
  - web_client: TestClient over the assembled app (API + web router) with
    follow_redirects=False and an isolated shared-memory database

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient fixture because route handlers run in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each worker
thread. Each web_client gets a uuid-suffixed name so tests never share rows.

The DEBUG env var must be set before any app module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User
from auth.session import SessionCodec
from auth.store import CredentialStore
from auth.tokens import hash_password

TEST_SECRET = "test-secret-key-with-at-least-32-characters"


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def codec() -> SessionCodec:
    return SessionCodec(TEST_SECRET)


@pytest.fixture
def make_user(store: CredentialStore) -> Callable[..., User]:
    """Return a factory that inserts a user and returns the stored record."""

    def _make(username: str = "alice", email: str = "alice@x.com", password: str = "secret1") -> User:
        uid = store.create_user(User(email=email, username=username, password_hash=hash_password(password)))
        return store.get_by_id(uid)

    return _make


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(credential_store: CredentialStore, session_codec: SessionCodec):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and codec into app.state so TestClient routes never
    touch the on-disk database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = credential_store
        app.state.session_codec = session_codec
        yield

    return test_lifespan


@pytest.fixture
def web_client() -> Generator[tuple[TestClient, CredentialStore, SessionCodec], None, None]:
    """Yield (client, store, codec) over the full ASGI app.

    follow_redirects=False is essential: tests assert on redirect Location
    headers and Set-Cookie values, which are invisible once the client follows
    the redirect.
    """
    db_url = f"sqlite:///file:test_portal_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    credential_store = CredentialStore(db_url)
    session_codec = SessionCodec(TEST_SECRET)

    app.router.lifespan_context = _patch_lifespan(credential_store, session_codec)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, credential_store, session_codec

    app.dependency_overrides.clear()
    credential_store.close()
