"""Redis-backed counter store.

Atomicity across processes comes entirely from Redis itself (INCR, sorted set
commands). The client must be created with ``decode_responses=True`` so replies
match the in-memory store.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import redis.asyncio as aioredis

from app.adapters.rate_limit.base import CounterStore, normalize_command
from app.core.config import RedisSettings

logger = logging.getLogger(__name__)


def build_redis_client(redis_settings: RedisSettings, *, production: bool = False) -> aioredis.Redis:
    """Create (but do not connect) an asyncio Redis client from settings.

    Args:
        redis_settings: Connection settings.
        production: Force TLS, as managed Redis offerings require it.

    Returns:
        Configured ``redis.asyncio.Redis`` instance.
    """
    common: dict[str, Any] = {
        "decode_responses": True,
        "socket_timeout": redis_settings.socket_timeout_seconds,
        "socket_connect_timeout": redis_settings.connect_timeout_seconds,
    }
    if redis_settings.url:
        return aioredis.from_url(redis_settings.url, **common)

    return aioredis.Redis(
        host=redis_settings.host or "localhost",
        port=redis_settings.port,
        db=redis_settings.db,
        password=redis_settings.password,
        ssl=redis_settings.ssl or production,
        **common,
    )


class RedisCounterStore(CounterStore):
    """Counter store delegating every command to a ``redis.asyncio`` client.

    Errors are logged and re-raised; falling back to memory is the job of
    ``FailoverCounterStore``.
    """

    backend = "redis"

    def __init__(self, client: aioredis.Redis, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock=clock)
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    async def execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        name = normalize_command(command)
        try:
            return await getattr(self._client, name)(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "counter_store.command_failed",
                extra={
                    "backend": self.backend,
                    "command": name,
                    "error_type": type(exc).__name__,
                },
            )
            raise

    async def close(self) -> None:
        try:
            await self._client.aclose()
            logger.info("counter_store.closed", extra={"backend": self.backend})
        except Exception as exc:
            logger.warning(
                "counter_store.close_failed",
                extra={"backend": self.backend, "error_type": type(exc).__name__},
            )
