"""Shared fixtures: in-process app, in-memory store on a fake clock, fake upstreams."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from lookscan.config import Settings
from lookscan.main import create_app
from lookscan.services import analysis as analysis_mod
from lookscan.utils.credential_store import InMemoryCredentialStore
from tests.helpers import FakeClock, FakeUpstream, asgi_client, make_settings


@pytest.fixture(autouse=True)
def _no_retry_backoff(monkeypatch):
    monkeypatch.setattr(analysis_mod, "RETRY_BACKOFF_SECONDS", 0.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(clock=clock)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def build_app(store, upstream):
    """Factory so a test can override settings before the app is built."""

    def _build(settings: Settings | None = None, **overrides: Any):
        cfg = settings or make_settings(**overrides)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return create_app(cfg, store=store, http_client=http_client)

    return _build


@pytest.fixture
def app(build_app, settings):
    return build_app(settings)


@pytest.fixture
async def client(app):
    async with asgi_client(app) as c:
        yield c
