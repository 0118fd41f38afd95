"""Throttling algorithms evaluated against a counter store.

Each strategy answers one question: may this request under ``key`` proceed,
given a quota of ``limit`` requests per ``window_ms``? State lives in the
counter store so several processes sharing Redis see the same buckets.

Store layout:
- fixed window:   ``<key>``          counter with TTL
- sliding window: ``sliding:<key>``  sorted set, score = request timestamp
- token bucket:   ``token:<key>``    "<tokens>:<last_refill_ms>"
- leaky bucket:   ``leaky:<key>``    "<water_level>:<last_leak_ms>"

Known limitation: the token and leaky bucket strategies read, compute and
write back their state in separate commands. Two concurrent requests for the
same key can read the same state and both be admitted, so a single key may be
slightly over-admitted under heavy concurrent load. Per-IP/per-user bursts
rarely race, and this matches how the buckets have always behaved.
"""

from __future__ import annotations

import math
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable

from app.adapters.rate_limit.base import CounterStore
from app.schemas.rate_limit import RateLimitResult, RateLimitStrategy

DEFAULT_RATE = 1.0


def _retry_after_seconds(reset_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_ms - now_ms) / 1000))


def _parse_state(raw: str | None) -> tuple[float, int] | None:
    """Parse a "<value>:<timestamp_ms>" bucket state; None if absent/corrupt."""
    if not raw:
        return None
    try:
        value, timestamp = raw.split(":", 1)
        return float(value), int(float(timestamp))
    except ValueError:
        return None


class Strategy(ABC):
    """Interface shared by all throttling algorithms."""

    name: RateLimitStrategy
    key_prefix: str = ""

    def __init__(self, store: CounterStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def store_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @abstractmethod
    async def evaluate(
        self,
        key: str,
        window_ms: int,
        limit: int,
        *,
        rate: float | None = None,
    ) -> RateLimitResult:
        """Meter one request.

        Args:
            key: Rate limit key of the request.
            window_ms: Window (or state TTL) in milliseconds.
            limit: Maximum requests (or bucket capacity).
            rate: Refill/leak rate per second for bucket strategies; ignored
                by window strategies.

        Returns:
            RateLimitResult reflecting the state after this request.
        """
        raise NotImplementedError


class FixedWindowStrategy(Strategy):
    """Counter per key, reset when the key's TTL lapses.

    The request that brings the count to ``limit`` is the last one admitted.
    """

    name = RateLimitStrategy.FIXED_WINDOW

    async def evaluate(self, key, window_ms, limit, *, rate=None):
        store_key = self.store_key(key)
        count = await self._store.increment(store_key, window_ms)
        reset = await self._store.get_reset_time(store_key, window_ms)
        now = self._now_ms()
        success = count <= limit
        return RateLimitResult(
            success=success,
            limit=limit,
            remaining=max(0, limit - count),
            reset_ms=reset,
            retry_after=None if success else _retry_after_seconds(reset, now),
        )


class SlidingWindowStrategy(Strategy):
    """Sorted set of request timestamps over the trailing window.

    The current attempt is recorded before counting, so ``success`` describes
    the state after admitting it. Rejected attempts stay in the log too.
    """

    name = RateLimitStrategy.SLIDING_WINDOW
    key_prefix = "sliding:"

    async def evaluate(self, key, window_ms, limit, *, rate=None):
        store_key = self.store_key(key)
        now = self._now_ms()
        window_start = now - window_ms

        # Suffix keeps same-millisecond requests as distinct members.
        member = f"{now}-{uuid.uuid4().hex[:8]}"
        await self._store.execute("zadd", store_key, {member: now})
        await self._store.execute("zremrangebyscore", store_key, "-inf", f"({window_start}")
        count = int(await self._store.execute("zcard", store_key))
        await self._store.execute("pexpire", store_key, window_ms)

        oldest = await self._store.execute("zrange", store_key, 0, 0, withscores=True)
        if oldest:
            reset = int(float(oldest[0][1])) + window_ms
        else:
            reset = now + window_ms

        success = count <= limit
        return RateLimitResult(
            success=success,
            limit=limit,
            remaining=max(0, limit - count),
            reset_ms=reset,
            retry_after=None if success else _retry_after_seconds(reset, now),
        )


class TokenBucketStrategy(Strategy):
    """Bucket of ``limit`` tokens refilled at ``rate`` tokens per second.

    Allows bursts up to ``limit`` while holding the long-run average to
    ``rate``. A new bucket starts full.
    """

    name = RateLimitStrategy.TOKEN_BUCKET
    key_prefix = "token:"

    async def evaluate(self, key, window_ms, limit, *, rate=None):
        refill_rate = rate or DEFAULT_RATE
        store_key = self.store_key(key)
        now = self._now_ms()

        state = _parse_state(await self._store.execute("get", store_key))
        if state is None:
            tokens, last_refill = float(limit), now
        else:
            tokens, last_refill = state

        elapsed = max(0, now - last_refill) / 1000
        tokens = min(float(limit), max(0.0, tokens + elapsed * refill_rate))

        success = tokens >= 1
        if success:
            tokens -= 1

        stamp = max(now, last_refill)
        await self._store.execute("set", store_key, f"{tokens}:{stamp}")
        await self._store.execute("pexpire", store_key, window_ms)

        return RateLimitResult(
            success=success,
            limit=limit,
            remaining=math.floor(tokens),
            reset_ms=now + math.ceil(1000 / refill_rate),
            retry_after=None if success else max(1, math.ceil((1 - tokens) / refill_rate)),
        )


class LeakyBucketStrategy(Strategy):
    """Bucket draining at ``rate`` requests per second, capacity ``limit``.

    Smooths admission to a constant rate regardless of burst size.
    """

    name = RateLimitStrategy.LEAKY_BUCKET
    key_prefix = "leaky:"

    async def evaluate(self, key, window_ms, limit, *, rate=None):
        leak_rate = rate or DEFAULT_RATE
        store_key = self.store_key(key)
        now = self._now_ms()

        state = _parse_state(await self._store.execute("get", store_key))
        if state is None:
            level, last_leak = 0.0, now
        else:
            level, last_leak = state

        elapsed = max(0, now - last_leak) / 1000
        level = min(float(limit), max(0.0, level - elapsed * leak_rate))

        success = level < limit
        if success:
            level = min(float(limit), level + 1)

        stamp = max(now, last_leak)
        await self._store.execute("set", store_key, f"{level}:{stamp}")
        await self._store.execute("pexpire", store_key, window_ms)

        return RateLimitResult(
            success=success,
            limit=limit,
            remaining=max(0, math.floor(limit - level)),
            reset_ms=now + math.ceil(level / leak_rate * 1000),
            retry_after=None if success else max(1, math.ceil((level - limit + 1) / leak_rate)),
        )


STRATEGY_CLASSES: dict[RateLimitStrategy, type[Strategy]] = {
    RateLimitStrategy.FIXED_WINDOW: FixedWindowStrategy,
    RateLimitStrategy.SLIDING_WINDOW: SlidingWindowStrategy,
    RateLimitStrategy.TOKEN_BUCKET: TokenBucketStrategy,
    RateLimitStrategy.LEAKY_BUCKET: LeakyBucketStrategy,
}


def build_strategies(
    store: CounterStore,
    *,
    clock: Callable[[], float] = time.time,
) -> dict[RateLimitStrategy, Strategy]:
    """Instantiate every registered strategy against one store."""
    return {name: cls(store, clock=clock) for name, cls in STRATEGY_CLASSES.items()}


STRATEGY_GUIDE: dict[RateLimitStrategy, dict[str, list[str]]] = {
    RateLimitStrategy.FIXED_WINDOW: {
        "pros": ["Simple", "One counter per key", "Predictable"],
        "cons": ["Bursts at window edges"],
        "best_for": ["Login/registration throttles", "Internal services"],
    },
    RateLimitStrategy.SLIDING_WINDOW: {
        "pros": ["Accurate at window boundaries", "Smooths bursts"],
        "cons": ["One sorted-set member per request"],
        "best_for": ["Public APIs", "Search"],
    },
    RateLimitStrategy.TOKEN_BUCKET: {
        "pros": ["Allows short bursts", "Steady long-run rate"],
        "cons": ["Stateful read-modify-write"],
        "best_for": ["Authenticated user traffic"],
    },
    RateLimitStrategy.LEAKY_BUCKET: {
        "pros": ["Constant admission rate"],
        "cons": ["Rejects bursts early"],
        "best_for": ["Uploads", "Batch submission"],
    },
}
