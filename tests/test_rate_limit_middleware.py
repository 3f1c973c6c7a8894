"""Tests for the HTTP rate limiting middleware and per-route dependency."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from app.adapters.rate_limit import InMemoryFixedWindowRateLimiter, RateLimitOptions
from app.core.app_factory import create_app
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.rate_limit import (
    build_client_key,
    get_rate_limiter,
    options_from_settings,
    rate_limit_dependency,
    rate_limit_middleware,
    stop_rate_limiters,
)


@pytest.fixture
def limit_settings(monkeypatch: pytest.MonkeyPatch):
    """Tight global limits for middleware tests."""
    monkeypatch.setattr(settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(settings.app, "rate_limit_max", 3)
    monkeypatch.setattr(settings.app, "rate_limit_window_ms", 60_000)
    monkeypatch.setattr(settings.app, "rate_limit_include_headers", False)
    monkeypatch.setattr(settings.app, "rate_limit_trust_forwarded_for", False)
    monkeypatch.setattr(settings.app, "rate_limit_exempt_paths", "/health")
    return settings.app


@pytest.fixture
def client(limit_settings) -> TestClient:
    app = FastAPI()
    app.middleware("http")(rate_limit_middleware)

    @app.get("/products")
    async def list_products() -> dict:
        return {"success": True, "data": []}

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return TestClient(app)


def _request(client=None, headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/products",
            "headers": headers or [],
            "query_string": b"",
            "client": client,
        }
    )


class TestMiddleware:
    def test_denies_after_max_with_default_body(self, client: TestClient):
        for _ in range(3):
            assert client.get("/products").status_code == 200

        response = client.get("/products")

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "message": "Too many requests, please try again later",
        }
        assert "Retry-After" not in response.headers

    def test_configured_status_and_message(self, client: TestClient, limit_settings, monkeypatch):
        monkeypatch.setattr(limit_settings, "rate_limit_max", 1)
        monkeypatch.setattr(limit_settings, "rate_limit_status_code", 503)
        monkeypatch.setattr(limit_settings, "rate_limit_message", "Storefront is busy")

        client.get("/products")
        response = client.get("/products")

        assert response.status_code == 503
        assert response.json() == {"success": False, "message": "Storefront is busy"}

    def test_exempt_paths_are_never_throttled(self, client: TestClient):
        for _ in range(10):
            assert client.get("/health").status_code == 200

        assert client.get("/products").status_code == 200

    def test_disabled_limiter_passes_everything(self, client: TestClient, limit_settings, monkeypatch):
        monkeypatch.setattr(limit_settings, "rate_limit_enabled", False)

        for _ in range(10):
            assert client.get("/products").status_code == 200

    def test_includes_headers_when_enabled(self, client: TestClient, limit_settings, monkeypatch):
        monkeypatch.setattr(limit_settings, "rate_limit_max", 1)
        monkeypatch.setattr(limit_settings, "rate_limit_include_headers", True)

        client.get("/products")
        response = client.get("/products")

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 0
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "X-RateLimit-Reset" in response.headers

    def test_forwarded_clients_counted_separately_when_trusted(
        self, client: TestClient, limit_settings, monkeypatch
    ):
        monkeypatch.setattr(limit_settings, "rate_limit_max", 1)
        monkeypatch.setattr(limit_settings, "rate_limit_trust_forwarded_for", True)

        assert client.get("/products", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert client.get("/products", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200
        assert client.get("/products", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429

    def test_limiter_rebuilt_when_settings_change(self, limit_settings, monkeypatch):
        first = get_rate_limiter()
        assert get_rate_limiter() is first

        monkeypatch.setattr(limit_settings, "rate_limit_max", 42)
        second = get_rate_limiter()

        assert second is not first
        assert second.options.max == 42
        assert second.running is False


class TestClientKey:
    def test_uses_remote_address(self):
        request = _request(client=("203.0.113.7", 51234))
        assert build_client_key(request, trust_forwarded_for=False) == "203.0.113.7"

    def test_falls_back_to_unknown_without_address(self):
        assert build_client_key(_request(), trust_forwarded_for=False) == "unknown"

    def test_unattributable_requests_share_a_counter(self, limit_settings, monkeypatch):
        monkeypatch.setattr(limit_settings, "rate_limit_max", 1)
        limiter = get_rate_limiter()

        first = limiter.admit(build_client_key(_request(), trust_forwarded_for=False))
        second = limiter.admit(build_client_key(_request(), trust_forwarded_for=False))

        assert first.allowed is True
        assert second.allowed is False

    def test_forwarded_for_first_hop(self):
        request = _request(
            client=("10.0.0.254", 80),
            headers=[(b"x-forwarded-for", b"198.51.100.4, 10.0.0.254")],
        )

        assert build_client_key(request, trust_forwarded_for=True) == "198.51.100.4"
        assert build_client_key(request, trust_forwarded_for=False) == "10.0.0.254"


class TestDependency:
    def _app(self, dependency) -> FastAPI:
        app = FastAPI()
        setup_exception_handlers(app)

        @app.post("/auth/login", dependencies=[Depends(dependency)])
        async def login() -> dict:
            return {"success": True}

        @app.get("/products")
        async def products() -> dict:
            return {"success": True}

        return app

    def test_route_limit_is_independent(self):
        dependency = rate_limit_dependency(
            RateLimitOptions(max=2, window_ms=900_000, message="Too many login attempts")
        )
        client = TestClient(self._app(dependency))

        assert client.post("/auth/login").status_code == 200
        assert client.post("/auth/login").status_code == 200
        response = client.post("/auth/login")

        assert response.status_code == 429
        assert response.json() == {"success": False, "message": "Too many login attempts"}
        assert client.get("/products").status_code == 200

    def test_denial_body_matches_middleware_without_request_id(self):
        dependency = rate_limit_dependency(RateLimitOptions(max=1))
        client = TestClient(self._app(dependency))

        client.post("/auth/login")
        response = client.post("/auth/login")

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "message": "Too many requests, please try again later",
        }

    def test_each_dependency_owns_its_limiter(self):
        first = rate_limit_dependency(RateLimitOptions(max=1))
        second = rate_limit_dependency(RateLimitOptions(max=1))

        assert first.limiter is not second.limiter

    def test_headers_forwarded_on_denial(self):
        dependency = rate_limit_dependency(RateLimitOptions(max=0, include_headers=True))
        client = TestClient(self._app(dependency))

        client.post("/auth/login")
        response = client.post("/auth/login")

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_retry_after_uses_limiter_clock(self):
        clock = Mock(return_value=1_000_000)
        limiter = InMemoryFixedWindowRateLimiter(
            RateLimitOptions(max=1, window_ms=10_000, include_headers=True),
            clock=clock,
        )
        client = TestClient(self._app(rate_limit_dependency(limiter=limiter)))

        client.post("/auth/login")
        clock.return_value = 1_002_500
        response = client.post("/auth/login")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "8"
        assert response.headers["X-RateLimit-Reset"] == "1010"

    def test_route_limiter_sweeper_starts_on_first_use(self):
        dependency = rate_limit_dependency(RateLimitOptions(max=5))
        client = TestClient(self._app(dependency))
        assert dependency.limiter.running is False

        client.post("/auth/login")

        assert dependency.limiter.running is True
        stop_rate_limiters()
        assert dependency.limiter.running is False


class TestAppFactory:
    def test_health_is_exempt_and_other_paths_are_limited(self, limit_settings, monkeypatch):
        monkeypatch.setattr(limit_settings, "rate_limit_max", 1)
        client = TestClient(create_app())

        for _ in range(3):
            assert client.get("/health").status_code == 200

        assert client.get("/not-a-route").status_code == 404
        denied = client.get("/not-a-route")
        assert denied.status_code == 429
        assert denied.headers.get("X-Request-ID")

    def test_lifespan_runs_sweeper(self, limit_settings):
        app = create_app()

        with TestClient(app):
            limiter = get_rate_limiter()
            assert limiter.running is True

        assert limiter.running is False

    def test_options_from_settings(self, limit_settings):
        opts = options_from_settings()

        assert opts.max == 3
        assert opts.window_ms == 60_000
        assert opts.status_code == limit_settings.rate_limit_status_code
        assert opts.include_headers is False

    def test_rebuilt_limiter_keeps_sweeper_running(self, limit_settings, monkeypatch):
        with TestClient(create_app()) as client:
            first = get_rate_limiter()
            assert first.running is True

            monkeypatch.setattr(limit_settings, "rate_limit_max", 5)
            client.get("/products")
            second = get_rate_limiter()

            assert second is not first
            assert first.running is False
            assert second.running is True

        assert second.running is False

    def test_lifespan_stops_route_limiters(self, limit_settings):
        app = create_app()
        dependency = rate_limit_dependency(RateLimitOptions(max=5))

        @app.post("/auth/login", dependencies=[Depends(dependency)])
        async def login() -> dict:
            return {"success": True}

        with TestClient(app) as client:
            assert client.post("/auth/login").status_code == 200
            assert dependency.limiter.running is True

        assert dependency.limiter.running is False
