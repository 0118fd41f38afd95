"""Factory selecting the counter store once at startup."""

from __future__ import annotations

import asyncio
import logging

from app.adapters.rate_limit.base import CounterStore
from app.adapters.rate_limit.failover import STORE_FAILURES, FailoverCounterStore
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.redis_store import RedisCounterStore, build_redis_client
from app.core.config import RedisSettings, settings

logger = logging.getLogger(__name__)


def _points_at_localhost(redis_settings: RedisSettings) -> bool:
    if redis_settings.host in ("localhost", "127.0.0.1"):
        return True
    return bool(redis_settings.url and ("localhost" in redis_settings.url or "127.0.0.1" in redis_settings.url))


async def create_counter_store(
    redis_settings: RedisSettings | None = None,
    *,
    environment: str | None = None,
) -> CounterStore:
    """Build the process-wide counter store.

    Selection order:
    - Redis not configured → in-memory store.
    - Production pointed at a localhost Redis → in-memory store.
    - Redis configured but PING fails within the connect timeout → in-memory store.
    - Otherwise → Redis wrapped in ``FailoverCounterStore``.

    Never raises: rate limiting must not prevent the API from starting.

    Args:
        redis_settings: Connection settings (defaults to global settings).
        environment: Deployment environment (defaults to ``settings.app_env``).

    Returns:
        CounterStore: Ready-to-use store.
    """
    cfg = redis_settings or settings.redis
    env = (environment or settings.app_env).lower()

    if not cfg.configured:
        logger.warning(
            "rate_limit.store_selected",
            extra={"backend": "memory", "reason": "redis_not_configured"},
        )
        return InMemoryCounterStore()

    if env == "production" and _points_at_localhost(cfg):
        logger.warning(
            "rate_limit.store_selected",
            extra={"backend": "memory", "reason": "localhost_redis_in_production"},
        )
        return InMemoryCounterStore()

    client = build_redis_client(cfg, production=env == "production")
    store = RedisCounterStore(client)
    try:
        await asyncio.wait_for(store.ping(), timeout=cfg.connect_timeout_seconds)
    except STORE_FAILURES as exc:
        logger.warning(
            "rate_limit.store_selected",
            extra={
                "backend": "memory",
                "reason": "redis_unreachable",
                "error_type": type(exc).__name__,
            },
        )
        await store.close()
        return InMemoryCounterStore()

    logger.info(
        "rate_limit.store_selected",
        extra={"backend": "redis", "db": cfg.db},
    )
    return FailoverCounterStore(store)
