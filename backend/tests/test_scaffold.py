"""Tests verifying the app scaffold: health, CORS, method handling, error shape, logging."""

from unittest.mock import AsyncMock, patch

import pytest
import structlog
from fastapi import APIRouter
from pydantic import ValidationError

from lookscan.config import Settings
from lookscan.logging import configure_logging
from lookscan.main import create_app
from tests.helpers import asgi_client, make_settings


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"
        assert body["environment"] == "development"
        assert body["credential_store"] == "connected"
        assert body["credential_store_backend"] == "memory"

    @pytest.mark.asyncio
    async def test_store_disconnected_still_200(self, client, store):
        with patch.object(store, "ping", new_callable=AsyncMock, return_value=False):
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["credential_store"] == "disconnected"

    @pytest.mark.asyncio
    async def test_store_not_configured(self, build_app):
        async with asgi_client(build_app(credential_store="none")) as c:
            resp = await c.get("/health")
        assert resp.json()["credential_store"] == "not_configured"


class TestCors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/analyze", "/api/checkout", "/api/verify-payment"])
    async def test_preflight_is_permissive(self, client, path):
        resp = await client.options(
            path,
            headers={
                "Origin": "https://anywhere.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type, X-Session-Token",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
        assert "POST" in resp.headers["access-control-allow-methods"]
        assert "x-session-token" in resp.headers["access-control-allow-headers"].lower()

    @pytest.mark.asyncio
    async def test_simple_response_carries_allow_origin(self, client):
        resp = await client.post(
            "/api/verify-payment",
            json={"checkoutId": "x"},
            headers={"Origin": "https://anywhere.example"},
        )
        assert resp.headers["access-control-allow-origin"] == "*"


class TestMethods:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    @pytest.mark.parametrize(
        "path", ["/api/analyze", "/api/checkout", "/api/verify-payment", "/api/webhook"]
    )
    async def test_non_post_is_405(self, client, method, path):
        resp = await client.request(method, path)
        assert resp.status_code == 405
        assert resp.json() == {"error": "Method Not Allowed"}
        assert "POST" in resp.headers["allow"]

    @pytest.mark.asyncio
    async def test_unknown_route_is_error_json(self, client):
        resp = await client.post("/api/nope", headers={"X-Request-ID": "req-404"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found"}
        assert resp.headers["X-Request-ID"] == "req-404"


class TestRequestId:
    @pytest.mark.asyncio
    async def test_generated_when_absent(self, client):
        resp = await client.get("/health")
        assert len(resp.headers["X-Request-ID"]) == 36

    @pytest.mark.asyncio
    async def test_echoed_when_present(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_present_on_error_responses(self, client):
        resp = await client.post("/api/analyze", headers={"X-Request-ID": "req-err"})
        assert resp.status_code == 403
        assert resp.headers["X-Request-ID"] == "req-err"


class TestUnhandledErrors:
    @pytest.mark.asyncio
    async def test_unexpected_exception_is_generic_json(self, build_app):
        app = build_app()
        router = APIRouter()

        @router.post("/boom")
        async def boom():
            raise RuntimeError("secret internal detail")

        app.include_router(router)
        async with asgi_client(app, raise_app_exceptions=False) as c:
            resp = await c.post("/boom")
        assert resp.status_code == 500
        assert resp.json() == {"error": "An error occurred"}
        assert "secret" not in resp.text


class TestSettings:
    def test_defaults_are_strict(self):
        s = Settings(_env_file=None)  # type: ignore[call-arg]
        assert s.allow_unsigned_webhooks is False
        assert s.allow_unpaid_analysis is False
        assert s.enforce_single_use is True
        assert s.session_ttl_seconds == 86_400
        assert s.analysis_max_retries == 0

    def test_polar_api_base(self):
        assert make_settings().polar_api_base == "https://api.polar.sh"
        assert make_settings(polar_sandbox=True).polar_api_base == "https://sandbox-api.polar.sh"

    def test_env_vars_override(self, monkeypatch):
        monkeypatch.setenv("CREDENTIAL_STORE", "redis")
        monkeypatch.setenv("ENFORCE_SINGLE_USE", "false")
        s = Settings(_env_file=None)  # type: ignore[call-arg]
        assert s.credential_store == "redis"
        assert s.enforce_single_use is False

    @pytest.mark.parametrize("environment", ["production", "staging"])
    def test_memory_store_refused_outside_local_environments(self, environment):
        with pytest.raises(ValidationError, match="CREDENTIAL_STORE=memory"):
            make_settings(environment=environment, credential_store="memory")

    def test_memory_store_refused_at_startup(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        with pytest.raises(ValidationError):
            create_app()

    @pytest.mark.parametrize("backend", ["redis", "none"])
    def test_shared_or_no_store_allowed_in_production(self, backend):
        assert make_settings(environment="production", credential_store=backend).credential_store == backend

    def test_app_factory_builds_from_explicit_settings(self):
        app = create_app(make_settings(environment="test"))
        assert app.state.settings.environment == "test"
        assert app.state.store is not None


class TestLogging:
    def test_configure_logging_json_in_production(self):
        configure_logging(make_settings(environment="production", credential_store="redis"))
        config = structlog.get_config()
        assert isinstance(config["processors"][-1], structlog.processors.JSONRenderer)
        configure_logging(make_settings())

    def test_configure_logging_console_locally(self):
        configure_logging(make_settings(environment="test"))
        config = structlog.get_config()
        assert isinstance(config["processors"][-1], structlog.dev.ConsoleRenderer)
        assert structlog.contextvars.merge_contextvars in config["processors"]
