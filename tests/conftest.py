"""
tests/conftest.py -- Shared test fixtures for Tokenly unit and integration tests.

This module provides:
  - RecordingEmailSender: captures outgoing mail so tests can read codes and links
  - FakeGoogleVerifier: accepts "google:<email>" ID tokens, no network
  - make_db_url(): named shared-memory SQLite URIs
  - services: a fully wired service graph over fresh in-memory stores
  - api_client: TestClient with the real app and a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any tokenly import: get_settings() is cached
and several modules read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

# CRITICAL: Set before any api/auth/core/tenants import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("PBKDF2_ITERATIONS", "1000")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.identity import IdentityService
from auth.oauth import GoogleIdentity
from auth.service import LoginService
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.errors import AuthenticationError
from tenants.models import AuthConfig, Client, Environment
from tenants.registry import ApplicationRegistry
from tenants.store import TenantStore

CLIENT_PASSWORD = "clientpass123"
USER_PASSWORD = "userpass123"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    kind: str
    to: str
    secret: str | None = None
    app_name: str | None = None
    app_id: str | None = None


class RecordingEmailSender:
    """EmailSender that keeps every message in memory."""

    def __init__(self) -> None:
        self.sent: list[SentMail] = []

    def send_verification(self, to: str, token: str, app_name: str) -> None:
        self.sent.append(SentMail("verification", to, token, app_name))

    def send_password_reset(self, to: str, token: str, app_name: str) -> None:
        self.sent.append(SentMail("password_reset", to, token, app_name))

    def send_magic_link(self, to: str, token: str, app_id: str, app_name: str) -> None:
        self.sent.append(SentMail("magic_link", to, token, app_name, app_id))

    def send_otp(self, to: str, code: str, app_name: str) -> None:
        self.sent.append(SentMail("otp", to, code, app_name))

    def send_welcome(self, to: str, app_name: str) -> None:
        self.sent.append(SentMail("welcome", to, None, app_name))

    def last(self, kind: str, to: str) -> SentMail:
        for mail in reversed(self.sent):
            if mail.kind == kind and mail.to == to:
                return mail
        raise AssertionError(f"no {kind} mail sent to {to}")

    def count(self, kind: str, to: str) -> int:
        return sum(1 for m in self.sent if m.kind == kind and m.to == to)


class FakeGoogleVerifier:
    """Accepts ID tokens of the form "google:<email>"; anything else fails as a
    real verification failure would."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def verify(self, id_token: str, client_id: str) -> GoogleIdentity:
        self.calls.append((id_token, client_id))
        if id_token.startswith("google:"):
            email = id_token.split(":", 1)[1]
            return GoogleIdentity(email=email, subject=f"sub-{email}")
        raise AuthenticationError("Google sign-in failed.", code="oauth_failed")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_db_url(prefix: str) -> str:
    """Return a unique named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@dataclass
class Services:
    """The service graph api/main.py builds, over test stores."""

    tenant_store: TenantStore
    identity_store: IdentityStore
    registry: ApplicationRegistry
    sessions: SessionManager
    mailer: RecordingEmailSender
    identity: IdentityService
    login_service: LoginService
    google: FakeGoogleVerifier
    client: Client | None = None

    def make_app(self, name: str = "Test App", environment: Environment = Environment.DEVELOPMENT, **config: Any):
        """Create an application for self.client. Returns (application, raw_api_key)."""
        application, raw_key = self.registry.create_application(
            self.client.id, name, environment, AuthConfig(**config)
        )
        return application, raw_key

    def close(self) -> None:
        self.tenant_store.close()
        self.identity_store.close()


def build_services(tenant_url: str, identity_url: str) -> Services:
    tenant_store = TenantStore(db_url=tenant_url)
    identity_store = IdentityStore(db_url=identity_url)
    registry = ApplicationRegistry(tenant_store)
    sessions = SessionManager(identity_store)
    mailer = RecordingEmailSender()
    identity = IdentityService(identity_store, registry, sessions, mailer)
    google = FakeGoogleVerifier()
    login_service = LoginService(identity_store, identity, sessions, mailer, google)
    return Services(
        tenant_store=tenant_store,
        identity_store=identity_store,
        registry=registry,
        sessions=sessions,
        mailer=mailer,
        identity=identity,
        login_service=login_service,
        google=google,
    )


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service graph into app.state. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.tenant_store = services.tenant_store
        app.state.identity_store = services.identity_store
        app.state.registry = services.registry
        app.state.sessions = services.sessions
        app.state.mailer = services.mailer
        app.state.identity = services.identity
        app.state.login_service = services.login_service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def services() -> Generator[Services, None, None]:
    """Fresh stores and services with one registered client."""
    svc = build_services(make_db_url("tenants"), make_db_url("identity"))
    svc.client = svc.registry.signup_client("Acme", "owner@acme.io", CLIENT_PASSWORD)
    yield svc
    svc.close()


@pytest.fixture
def file_services(tmp_path) -> Generator[Services, None, None]:
    """Like services, but file-backed so concurrent threads get real locking."""
    svc = build_services(f"sqlite:///{tmp_path / 'tenants.db'}", f"sqlite:///{tmp_path / 'identity.db'}")
    svc.client = svc.registry.signup_client("Acme", "owner@acme.io", CLIENT_PASSWORD)
    yield svc
    svc.close()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. Redirects are
    not followed so verify-email's Location can be asserted.
    """
    svc = build_services(make_db_url("api_tenants"), make_db_url("api_identity"))
    app.router.lifespan_context = _patch_lifespan(svc)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, svc

    svc.close()
