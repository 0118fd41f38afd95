"""Integration tests: middleware, admin endpoints and test limiter over HTTP."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.core.app_factory import create_app
from app.core.config import RateLimitSettings, RedisSettings, Settings
from app.core.rate_limit import rate_limited
from app.schemas.rate_limit import RateLimitRule, RateLimitScope, RateLimitStrategy
from app.services.rate_limit_rules import RuleRegistry

ADMIN_HEADERS = {"X-API-Key": "admin-key-123"}

RULES = RuleRegistry(
    [
        RateLimitRule(
            path="/api/v1/search",
            method="GET",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            scope=RateLimitScope.IP,
            window_ms=60_000,
            max=2,
        ),
        RateLimitRule(
            path="/api/v1/upload",
            method="POST",
            strategy=RateLimitStrategy.LEAKY_BUCKET,
            scope=RateLimitScope.IP_USER_COMBINED,
            window_ms=60_000,
            max=1,
            message="Upload quota reached.",
            status_code=503,
        ),
    ]
)


def _build_app(clock, *, store=None, **rate_limit_overrides):
    rate_limit = RateLimitSettings(trusted_api_keys="trusted-key", **rate_limit_overrides)
    app = create_app(
        app_settings=Settings(rate_limit=rate_limit),
        store=store or InMemoryCounterStore(clock=clock),
        registry=RULES,
        clock=clock,
    )

    @app.get("/api/v1/search")
    async def search() -> dict:
        return {"results": []}

    @app.post("/api/v1/upload")
    async def upload() -> dict:
        return {"uploaded": True}

    return app


@pytest.fixture
def client(clock):
    with TestClient(_build_app(clock)) as test_client:
        yield test_client


class TestMiddleware:
    """Rule enforcement on ordinary routes."""

    def test_admitted_request_carries_headers(self, client: TestClient) -> None:
        response = client.get("/api/v1/search")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert response.headers["X-RateLimit-Reset"] == "1060"
        assert "Retry-After" not in response.headers

    def test_exhausted_quota_returns_429(self, client: TestClient) -> None:
        client.get("/api/v1/search")
        client.get("/api/v1/search")

        response = client.get("/api/v1/search", headers={"X-Request-ID": "req-429"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-Request-ID"] == "req-429"
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["retryAfter"] == 60
        assert body["message"] == "Too many requests, please try again later."
        assert body["request_id"] == "req-429"

    def test_rule_status_and_message_override(self, client: TestClient) -> None:
        assert client.post("/api/v1/upload").status_code == 200

        response = client.post("/api/v1/upload")

        assert response.status_code == 503
        assert response.json()["error"] == "Upload quota reached."

    def test_unmatched_route_is_not_metered(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_trusted_api_key_bypasses(self, client: TestClient) -> None:
        for _ in range(5):
            response = client.get("/api/v1/search", headers={"X-API-Key": "trusted-key"})
            assert response.status_code == 200

        assert response.headers["X-RateLimit-Bypass"] == "true"
        assert response.headers["X-RateLimit-Bypass-Reason"] == "trusted-api-key"

    def test_disabled_limiter_passes_everything(self, clock) -> None:
        with TestClient(_build_app(clock, enabled=False)) as client:
            statuses = {client.get("/api/v1/search").status_code for _ in range(5)}
            response = client.get("/api/v1/search")

        assert statuses == {200}
        assert "X-RateLimit-Limit" not in response.headers

    def test_store_outage_fails_open(self, clock) -> None:
        broken = InMemoryCounterStore(clock=clock)
        broken.execute = AsyncMock(side_effect=RuntimeError("store down"))

        with TestClient(_build_app(clock, store=broken)) as client:
            statuses = [client.get("/api/v1/search").status_code for _ in range(4)]

        assert statuses == [200, 200, 200, 200]


class TestAdminReset:
    """``POST /api/v1/admin/rate-limit/reset``."""

    def test_reset_restores_quota(self, client: TestClient) -> None:
        client.get("/api/v1/search")
        client.get("/api/v1/search")
        assert client.get("/api/v1/search").status_code == 429

        reset = client.post(
            "/api/v1/admin/rate-limit/reset",
            json={"scope": "ip", "ip": "testclient"},
            headers=ADMIN_HEADERS,
        )

        assert reset.status_code == 200
        assert reset.json() == {
            "success": True,
            "message": "Reset 1 rate limit entries",
            "pattern": "*rate-limit:ip:testclient:*",
            "deleted": 1,
        }
        response = client.get("/api/v1/search")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "1"

    def test_reset_without_body_clears_all(self, client: TestClient) -> None:
        client.get("/api/v1/search")
        client.post("/api/v1/upload")

        reset = client.post("/api/v1/admin/rate-limit/reset", headers=ADMIN_HEADERS)

        assert reset.json()["deleted"] == 2
        assert reset.json()["pattern"] == "*rate-limit:*"

    def test_missing_api_key_rejected(self, client: TestClient) -> None:
        response = client.post("/api/v1/admin/rate-limit/reset")

        assert response.status_code == 403
        assert "Missing API key" in response.json()["detail"]

    def test_invalid_api_key_rejected(self, client: TestClient) -> None:
        response = client.post("/api/v1/admin/rate-limit/reset", headers={"X-API-Key": "nope"})

        assert response.status_code == 403


class TestInfoAndTestEndpoints:
    """Introspection and the standalone test limiter."""

    def test_info_lists_rules_and_stats(self, client: TestClient) -> None:
        client.get("/api/v1/search")

        body = client.get("/rate-limit/info").json()

        assert body["enabled"] is True
        assert body["environment"] == "testing"
        assert body["backend"] == "memory"
        assert [r["path"] for r in body["routes"]] == ["/api/v1/search", "/api/v1/upload"]
        assert body["routes"][1]["strategy"] == "leaky-bucket"
        assert body["stats"]["total_keys"] == 1
        assert body["stats"]["by_scope"] == {"ip": 1}
        assert set(body["strategies"]) == {"fixed-window", "sliding-window", "token-bucket", "leaky-bucket"}
        assert body["strategies"]["leaky-bucket"]["best_for"] == ["Uploads", "Batch submission"]
        assert body["strategies"]["sliding-window"]["pros"]

    def test_test_limiter(self, clock) -> None:
        with TestClient(_build_app(clock, test_max=2)) as client:
            allowed = [client.get("/rate-limit/test") for _ in range(2)]
            blocked = client.get("/rate-limit/test")

        assert [r.status_code for r in allowed] == [200, 200]
        assert allowed[0].json() == {"success": True, "message": "Request allowed"}
        assert allowed[0].headers["X-RateLimit-Limit"] == "2"
        assert allowed[1].headers["X-RateLimit-Remaining"] == "0"
        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "10"
        assert blocked.json()["code"] == "RATE_LIMIT_EXCEEDED"
        assert blocked.json()["path"] == "/rate-limit/test"

    def test_health_reports_store(self, client: TestClient) -> None:
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["rate_limit_store"]["backend"] == "memory"
        assert body["rate_limit_store"]["healthy"] is True

    def test_openapi_marks_only_admin_routes(self, client: TestClient) -> None:
        schema = client.get("/openapi.json").json()

        assert "AdminApiKey" in schema["components"]["securitySchemes"]
        assert schema["paths"]["/api/v1/admin/rate-limit/reset"]["post"]["security"] == [{"AdminApiKey": []}]
        assert "security" not in schema["paths"]["/rate-limit/info"]["get"]


def test_rate_limited_dependency(clock) -> None:
    export_rule = RateLimitRule(path="/api/v1/reports/export", max=1, window_ms=30_000, message="One export at a time.")
    app = _build_app(clock)

    @app.get("/api/v1/reports/export", dependencies=[Depends(rate_limited(export_rule, name="export"))])
    async def export() -> dict:
        return {"ok": True}

    with TestClient(app) as client:
        first = client.get("/api/v1/reports/export")
        second = client.get("/api/v1/reports/export")

    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "1"
    assert second.status_code == 429
    assert second.json()["message"] == "One export at a time."
    assert second.headers["Retry-After"] == "30"


def test_default_composition_uses_memory_without_redis() -> None:
    app = create_app(app_settings=Settings(redis=RedisSettings(url=None, host=None)))

    with TestClient(app) as client:
        assert client.get("/rate-limit/info").json()["backend"] == "memory"
        assert app.state.rate_limiter.registry.resolve("/api/v1/auth/register", "POST").max == 10_000

    assert app.state.rate_limiter is None
