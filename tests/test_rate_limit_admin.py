"""Tests for rate limiter statistics, reset and cleanup."""

from unittest.mock import AsyncMock

import pytest

from app.core.config import RateLimitSettings
from app.core.rate_limit import RateLimitDispatcher
from app.schemas.rate_limit import RateLimitResetRequest, RateLimitScope
from app.services.rate_limit_admin import (
    build_reset_pattern,
    classify_key,
    cleanup_expired_keys,
    get_rate_limiter_stats,
    reset_rate_limit,
)
from app.services.rate_limit_rules import RuleRegistry
from app.services.rate_limit_strategies import FixedWindowStrategy


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("rate-limit:ip:1.2.3.4:-api", ("fixed-window", "ip")),
        ("sliding:rate-limit:combined:1.2.3.4:anonymous:-login", ("sliding-window", "ip-user-combined")),
        ("token:rate-limit:user:42:-users", ("token-bucket", "user")),
        ("leaky:rate-limit:global:-upload", ("leaky-bucket", "global")),
        ("rate-limit:mystery", ("fixed-window", "unknown")),
    ],
)
def test_classify_key(key, expected) -> None:
    assert classify_key(key, "rate-limit") == expected


class TestBuildResetPattern:
    """Admin reset request to key glob."""

    def test_explicit_pattern_wins(self) -> None:
        request = RateLimitResetRequest(pattern="*rate-limit:ip:9.9.9.9:*", scope="user", userId="1")

        assert build_reset_pattern(request) == "*rate-limit:ip:9.9.9.9:*"

    def test_user_shortcut(self) -> None:
        request = RateLimitResetRequest.model_validate({"scope": "user", "userId": "42"})

        assert build_reset_pattern(request) == "*rate-limit:user:42:*"

    def test_ip_shortcut(self) -> None:
        request = RateLimitResetRequest(scope="ip", ip="1.2.3.4")

        assert build_reset_pattern(request, key_prefix="rl") == "*rl:ip:1.2.3.4:*"

    def test_shortcut_values_sanitized_like_keys(self) -> None:
        user = RateLimitResetRequest.model_validate({"scope": "user", "userId": "alice@example.com"})
        ip = RateLimitResetRequest(scope="ip", ip="::1")

        assert build_reset_pattern(user) == "*rate-limit:user:alice-example.com:*"
        assert build_reset_pattern(ip) == "*rate-limit:ip:::1:*"

    def test_defaults_to_everything(self) -> None:
        assert build_reset_pattern(RateLimitResetRequest()) == "*rate-limit:*"
        assert build_reset_pattern(RateLimitResetRequest(scope="user")) == "*rate-limit:*"


class TestResetRateLimit:
    """Pattern-based key deletion."""

    @pytest.mark.asyncio
    async def test_exhausted_key_admits_again_after_reset(self, store, clock) -> None:
        strategy = FixedWindowStrategy(store, clock=clock)
        key = "rate-limit:ip:1.2.3.4:-api-v1-search"
        for _ in range(3):
            await strategy.evaluate(key, 60_000, 3)
        assert (await strategy.evaluate(key, 60_000, 3)).success is False

        deleted = await reset_rate_limit(store, "*rate-limit:ip:1.2.3.4:*")

        result = await strategy.evaluate(key, 60_000, 3)
        assert deleted == 1
        assert result.success is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_user_shortcut_matches_keys_built_by_dispatcher(self, store, clock, make_request) -> None:
        dispatcher = RateLimitDispatcher(
            store,
            RuleRegistry([]),
            rate_limit_settings=RateLimitSettings(),
            environment="production",
            clock=clock,
        )
        key = dispatcher.build_key(make_request(user_id="alice@example.com"), RateLimitScope.USER, "/api/v1/admin/*")
        await store.increment(key, 60_000)
        request = RateLimitResetRequest.model_validate({"scope": "user", "userId": "alice@example.com"})

        deleted = await reset_rate_limit(store, build_reset_pattern(request))

        assert deleted == 1
        assert await store.execute("keys", "*") == []

    @pytest.mark.asyncio
    async def test_only_matching_keys_deleted(self, store) -> None:
        await store.execute("set", "rate-limit:ip:1.2.3.4:-a", "1")
        await store.execute("set", "token:rate-limit:ip:1.2.3.4:-b", "1.0:0")
        await store.execute("set", "rate-limit:ip:5.6.7.8:-a", "1")

        deleted = await reset_rate_limit(store, "*rate-limit:ip:1.2.3.4:*")

        assert deleted == 2
        assert await store.execute("keys", "*") == ["rate-limit:ip:5.6.7.8:-a"]

    @pytest.mark.asyncio
    async def test_no_match_deletes_nothing(self, store) -> None:
        assert await reset_rate_limit(store, "*nothing*") == 0

    @pytest.mark.asyncio
    async def test_store_failure_reports_zero(self, store) -> None:
        store.execute = AsyncMock(side_effect=ConnectionError("gone"))

        assert await reset_rate_limit(store, "*") == 0


class TestStats:
    """Key counts by strategy and scope."""

    @pytest.mark.asyncio
    async def test_counts_keys(self, store) -> None:
        await store.execute("set", "rate-limit:ip:1.2.3.4:-a", "1")
        await store.execute("zadd", "sliding:rate-limit:ip:1.2.3.4:-b", {"1-a": 1})
        await store.execute("set", "token:rate-limit:user:42:-c", "1.0:0")
        await store.execute("set", "unrelated", "x")

        stats = await get_rate_limiter_stats(store)

        assert stats.total_keys == 3
        assert stats.by_strategy == {"fixed-window": 1, "sliding-window": 1, "token-bucket": 1}
        assert stats.by_scope == {"ip": 2, "user": 1}
        assert stats.backend == "memory"
        assert stats.memory_usage > 0

    @pytest.mark.asyncio
    async def test_store_failure_returns_none(self, store) -> None:
        store.execute = AsyncMock(side_effect=ConnectionError("gone"))

        assert await get_rate_limiter_stats(store) is None


class TestCleanup:
    """Keys left without expiry are removed."""

    @pytest.mark.asyncio
    async def test_deletes_only_keys_without_ttl(self, store) -> None:
        await store.execute("set", "rate-limit:ip:1.2.3.4:-a", "1")
        await store.increment("rate-limit:ip:1.2.3.4:-b", 1000)

        deleted = await cleanup_expired_keys(store)

        assert deleted == 1
        assert await store.execute("keys", "*") == ["rate-limit:ip:1.2.3.4:-b"]
