"""
tests/conftest.py -- Shared test fixtures for SessionGate.

This module provides:
  - make_store(): isolated named shared-memory AccountStore
  - RecordingMailer: LinkMailer that keeps every message and link in memory
  - FakeClock: injectable clock for ledger expiry / cool-down tests
  - make_account(): create an account (verified by default) in one call
  - wire_app(): point app.state at test stores without running the lifespan
  - api_client: module-scoped TestClient with a verified user and an admin

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and httpx.ASGITransport run sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any auth/core import:
  - DEBUG=true so get_settings() auto-generates SECRET_KEY.
  - RESEND_RATE_LIMIT raised so the per-IP limit never interferes with tests
    that exercise the per-account cool-down.
"""

from __future__ import annotations

import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RESEND_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.ledger import ResetLedger, VerificationLedger
from auth.mailer import LinkMailer
from auth.models import Account, VerificationStatus
from auth.store import AccountStore
from auth.tokens import create_access_token, register

DEFAULT_SECRET = "correct-horse-battery"

_LINK_RE = re.compile(r"https?://\S+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str | None = None) -> AccountStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name. Defaults to a random
                   one so every call gets a fresh database.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return AccountStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


@dataclass
class SentMessage:
    to_email: str
    subject: str
    text: str

    @property
    def link(self) -> str:
        match = _LINK_RE.search(self.text)
        return match.group(0) if match else ""

    @property
    def token(self) -> str:
        return self.link.rsplit("/", 1)[-1]


class RecordingMailer(LinkMailer):
    """Mailer that keeps messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    def _deliver(self, to_email: str, subject: str, text: str) -> None:
        self.sent.append(SentMessage(to_email, subject, text))

    @property
    def last(self) -> SentMessage:
        return self.sent[-1]

    def for_email(self, email: str) -> list[SentMessage]:
        return [m for m in self.sent if m.to_email == email]


@dataclass
class FakeClock:
    now: datetime = field(default_factory=lambda: datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_account(
    store: AccountStore,
    email: str = "a@x.com",
    username: str = "alice",
    secret: str = DEFAULT_SECRET,
    roles=("user",),
    verified: bool = True,
    full_name: str = "Alice Example",
) -> Account:
    account = register(
        store,
        email=email,
        username=username,
        full_name=full_name,
        secret=secret,
        secret_confirm=secret,
        roles=roles,
    )
    if verified:
        store.set_status(account.id, VerificationStatus.VERIFIED)
    return store.get_by_id(account.id)


def wire_app(store: AccountStore, mailer: LinkMailer, clock=None):
    """Point app.state at test collaborators and return the app.

    httpx.ASGITransport does not run the lifespan, so client tests call this
    instead.
    """
    kwargs = {"clock": clock} if clock is not None else {}
    app.state.account_store = store
    app.state.verification_ledger = VerificationLedger(store, mailer, **kwargs)
    app.state.reset_ledger = ResetLedger(store, mailer, **kwargs)
    return app


def _patch_lifespan(store: AccountStore, mailer: LinkMailer):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_app(store, mailer)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, ctx) for API integration tests.

    ctx carries the store, the recording mailer, a verified "user" account
    (alice) with its credential, and an admin account with its credential.
    """
    store = make_store(f"api_{uuid.uuid4().hex[:8]}")
    mailer = RecordingMailer()
    user = make_account(store, email="alice@example.com", username="alice")
    admin = make_account(store, email="root@example.com", username="root", roles=("admin",))

    app.router.lifespan_context = _patch_lifespan(store, mailer)

    ctx = SimpleNamespace(
        store=store,
        mailer=mailer,
        user=user,
        user_token=create_access_token(user),
        admin=admin,
        admin_token=create_access_token(admin),
    )
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, ctx

    store.close()
