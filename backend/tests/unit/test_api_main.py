"""Tests for FastAPI application and exception handlers.

REST API with consistent error handling and security headers.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.errors import (
    BalanceVersionConflictError,
    InsufficientCreditsError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from app.main import create_app


@pytest.fixture
def app():
    """Create test application instance."""
    return create_app()


@pytest.fixture
async def client(app):
    """Create async HTTP client for testing.

    raise_app_exceptions=False lets the catch-all handler's 500 reach the
    client instead of re-raising into the test.
    """
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    async def test_health_returns_healthy_status(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_v1_router_mounted(self, client):
        """404 means the router is mounted but the route doesn't exist."""
        response = await client.get("/api/v1/nonexistent")

        assert response.status_code == 404


class TestSecurityHeaders:
    """Tests for SecurityHeadersMiddleware."""

    async def test_headers_on_every_response(self, client):
        response = await client.get("/health")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "Cache-Control" not in response.headers

    async def test_api_responses_are_not_cached(self, client):
        response = await client.get("/api/v1/nonexistent")

        assert response.headers["Cache-Control"] == "no-store, max-age=0"


class TestExceptionHandlers:
    """Custom exceptions map to the error envelope and status code."""

    @pytest.mark.parametrize(
        ("error", "status", "code"),
        [
            (InsufficientCreditsError(balance=3, required=5), 402, "INSUFFICIENT_CREDITS"),
            (BalanceVersionConflictError(), 409, "BALANCE_VERSION_CONFLICT"),
            (UpstreamUnavailableError(), 503, "UPSTREAM_UNAVAILABLE"),
        ],
    )
    async def test_api_errors(self, app, client, error, status, code):
        @app.get("/test/api-error")
        async def raise_api_error():
            raise error

        response = await client.get("/test/api-error")

        assert response.status_code == status
        body = response.json()
        assert body["error"]["code"] == code
        assert "data" not in body

    async def test_rate_limited_error_sets_retry_after(self, app, client):
        @app.get("/test/rate-limited")
        async def raise_rate_limited():
            raise RateLimitedError(retry_after_seconds=17)

        response = await client.get("/test/rate-limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"

    async def test_request_validation_is_400(self, app, client):
        @app.get("/test/typed")
        async def typed(count: int):
            return {"count": count}

        response = await client.get("/test/typed", params={"count": "many"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"
        assert response.json()["error"]["details"][0]["loc"] == ["query", "count"]

    async def test_unhandled_exception_is_500_without_details(self, app, client):
        @app.get("/test/crash")
        async def crash():
            raise RuntimeError("connection to prod-db-01 failed")

        response = await client.get("/test/crash")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert "prod-db-01" not in body["error"]["message"]
