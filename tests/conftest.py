"""
tests/conftest.py -- Shared test fixtures for tokengate unit and integration tests.

This module provides:
  - RecordingMailer: EmailDispatcher that keeps messages instead of sending
  - StubProvider: OAuthProvider whose code exchange and profile are canned
  - make_store(): isolated named shared-memory SQLite UserStore
  - components: every auth component wired over in-memory collaborators,
    for async flow tests (pytest-asyncio)
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because flows run store calls in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any api/auth/core import so
get_settings() auto-generates the JWT secrets in dev mode rather than
raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_components
from auth.errors import EmailDispatchError, ProviderError
from auth.external import ExternalAuthFlow
from auth.local import LocalAuthFlow
from auth.mailer import EmailDispatcher, EmailKind
from auth.models import ExternalProfile, ProviderName
from auth.oauth import GoogleProvider
from auth.sessions import SessionOrchestrator
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.two_factor import TwoFactorFlow
from cache.store import MemorySessionCache
from core.config import Settings

# Rate limits are per process and would trip across a whole test module.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingMailer(EmailDispatcher):
    """Keeps every rendered message in .sent; set .fail to simulate SMTP errors."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.sent: list[tuple[str, EmailKind, dict]] = []
        self.fail = False

    async def send(self, address: str, template_kind: EmailKind, payload: dict) -> None:
        self.render(template_kind, payload)
        if self.fail:
            raise EmailDispatchError()
        self.sent.append((address, template_kind, dict(payload)))

    def last(self, kind: EmailKind, address: str | None = None) -> dict:
        for sent_to, sent_kind, payload in reversed(self.sent):
            if sent_kind is kind and (address is None or sent_to == address):
                return payload
        raise AssertionError(f"no {kind.value} email sent")


class StubProvider(GoogleProvider):
    """Google provider whose network calls are replaced by canned answers.

    profiles maps an authorization code to the profile it yields; an unknown
    code fails the exchange like a real provider would.
    """

    def __init__(self) -> None:
        super().__init__("stub-client", "stub-secret", "http://testserver/api/v1/auth/google/callback")
        self.profiles: dict[str, ExternalProfile] = {}
        self.verifiers: list[str] = []

    async def exchange_code(self, code: str, code_verifier: str) -> dict:
        self.verifiers.append(code_verifier)
        if code not in self.profiles:
            raise ProviderError()
        return {"access_token": f"at-{code}", "token_type": "Bearer"}

    async def fetch_profile(self, token: dict) -> ExternalProfile:
        return self.profiles[token["access_token"][3:]]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "redis_url": "", "email_host": "", "frontend_url": "http://frontend.test"}
    values.update(overrides)
    return Settings(**values)


def make_store(prefix: str = "auth") -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def build_components(settings: Settings, store: UserStore) -> SimpleNamespace:
    cache = MemorySessionCache()
    mailer = RecordingMailer(settings)
    provider = StubProvider()
    providers = {ProviderName.GOOGLE: provider}
    codec = TokenCodec(settings)
    sessions = SessionOrchestrator(codec, cache, store)
    two_factor = TwoFactorFlow(settings, cache, store, mailer, sessions)
    return SimpleNamespace(
        settings=settings,
        store=store,
        cache=cache,
        mailer=mailer,
        provider=provider,
        codec=codec,
        sessions=sessions,
        two_factor=two_factor,
        local=LocalAuthFlow(settings, codec, store, mailer, sessions, two_factor),
        external=ExternalAuthFlow(settings, codec, cache, store, providers, sessions, two_factor),
    )


# ---------------------------------------------------------------------------
# Function-scoped fixtures for unit and flow tests
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_store()
    yield user_store
    user_store.close()


@pytest.fixture
def components(settings: Settings, store: UserStore) -> SimpleNamespace:
    return build_components(settings, store)


@pytest.fixture
def make_components(store: UserStore):
    """Factory for components built with overridden settings (policy flags)."""

    def _make(**overrides) -> SimpleNamespace:
        return build_components(make_settings(**overrides), store)

    return _make


# ---------------------------------------------------------------------------
# Module-scoped TestClient -- one app instance per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(parts: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    Wires the in-memory collaborators into app.state so routes never touch
    a real database, Redis, SMTP server or identity provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_components(
            app, parts.settings, parts.store, parts.cache, parts.mailer, {ProviderName.GOOGLE: parts.provider}
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, components) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers; components exposes the recording mailer, stub
    provider and store so tests can read emailed tokens and seed data.
    """
    user_store = make_store("api")
    parts = build_components(make_settings(), user_store)
    app.router.lifespan_context = _patch_lifespan(parts)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, parts

    user_store.close()
