"""Administrative operations over the counter store: stats, reset, cleanup."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone

from app.adapters.rate_limit.base import CounterStore
from app.core.rate_limit import sanitize_key_part
from app.schemas.rate_limit import (
    RateLimiterStats,
    RateLimitResetRequest,
    RateLimitScope,
    RateLimitStrategy,
)
from app.services.rate_limit_strategies import STRATEGY_CLASSES

logger = logging.getLogger(__name__)

_PREFIX_TO_STRATEGY = {
    cls.key_prefix.rstrip(":"): name
    for name, cls in STRATEGY_CLASSES.items()
    if cls.key_prefix
}

_SCOPE_SEGMENTS = {
    "ip": RateLimitScope.IP.value,
    "user": RateLimitScope.USER.value,
    "global": RateLimitScope.GLOBAL.value,
    "endpoint": RateLimitScope.ENDPOINT.value,
    "combined": RateLimitScope.IP_USER_COMBINED.value,
}


def classify_key(key: str, key_prefix: str) -> tuple[str, str]:
    """Return (strategy, scope) for a stored key.

    ``sliding:rate-limit:ip:1.2.3.4:/x`` -> ("sliding-window", "ip");
    ``rate-limit:user:42:/y`` -> ("fixed-window", "user").
    """
    parts = key.split(":")
    strategy = RateLimitStrategy.FIXED_WINDOW.value
    if parts and parts[0] in _PREFIX_TO_STRATEGY:
        strategy = _PREFIX_TO_STRATEGY[parts[0]].value
        parts = parts[1:]
    if parts and parts[0] == key_prefix:
        parts = parts[1:]
    scope = _SCOPE_SEGMENTS.get(parts[0], "unknown") if parts else "unknown"
    return strategy, scope


async def get_rate_limiter_stats(store: CounterStore, *, key_prefix: str = "rate-limit") -> RateLimiterStats | None:
    """Count stored keys by strategy and scope and report store memory.

    Returns:
        RateLimiterStats, or None when the store cannot be queried.
    """
    try:
        keys = await store.execute("keys", f"*{key_prefix}:*")
        info = await store.execute("info", "memory")
    except Exception as exc:
        logger.error(
            "rate_limit.stats_failed",
            extra={"backend": store.backend, "error_type": type(exc).__name__},
        )
        return None

    by_strategy: Counter[str] = Counter()
    by_scope: Counter[str] = Counter()
    for key in keys:
        strategy, scope = classify_key(key, key_prefix)
        by_strategy[strategy] += 1
        by_scope[scope] += 1

    memory = 0
    if isinstance(info, dict):
        memory = int(info.get("used_memory", 0) or 0)

    return RateLimiterStats(
        total_keys=len(keys),
        by_strategy=dict(by_strategy),
        by_scope=dict(by_scope),
        memory_usage=memory,
        backend=store.backend,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def build_reset_pattern(request: RateLimitResetRequest, *, key_prefix: str = "rate-limit") -> str:
    """Translate an admin reset request into a key glob.

    The leading ``*`` also matches the ``sliding:``/``token:``/``leaky:``
    strategy prefixes.
    """
    if request.pattern:
        return request.pattern
    if request.scope == "user" and request.user_id:
        return f"*{key_prefix}:user:{sanitize_key_part(request.user_id)}:*"
    if request.scope == "ip" and request.ip:
        return f"*{key_prefix}:ip:{sanitize_key_part(request.ip)}:*"
    return f"*{key_prefix}:*"


async def reset_rate_limit(store: CounterStore, pattern: str) -> int:
    """Delete every key matching ``pattern``.

    Returns:
        Number of deleted keys (0 on store failure).
    """
    try:
        keys = await store.execute("keys", pattern)
        if not keys:
            return 0
        deleted = int(await store.execute("del", *keys))
    except Exception as exc:
        logger.error(
            "rate_limit.reset_failed",
            extra={"pattern": pattern, "error_type": type(exc).__name__},
        )
        return 0

    logger.info("rate_limit.reset", extra={"pattern": pattern, "deleted": deleted})
    return deleted


async def cleanup_expired_keys(store: CounterStore, *, key_prefix: str = "rate-limit") -> int:
    """Delete rate limit keys that carry no expiry.

    Keys normally expire on their own; a key without TTL is a leftover from an
    interrupted write and would otherwise pin its quota forever.
    """
    deleted = 0
    try:
        for key in await store.execute("keys", f"*{key_prefix}:*"):
            if int(await store.execute("pttl", key)) == -1:
                deleted += int(await store.execute("del", key))
    except Exception as exc:
        logger.error(
            "rate_limit.cleanup_failed",
            extra={"error_type": type(exc).__name__},
        )
        return deleted

    if deleted:
        logger.debug("rate_limit.cleanup", extra={"deleted": deleted})
    return deleted
