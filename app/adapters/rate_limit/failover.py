"""Counter store that degrades from Redis to memory at runtime.

Rate limiting favours availability over strictness: once the primary store
fails, this instance switches to its in-memory fallback for good and keeps
serving decisions (single-process, best effort) instead of surfacing errors.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from redis.exceptions import RedisError

from app.adapters.rate_limit.base import CounterStore
from app.adapters.rate_limit.in_memory import InMemoryCounterStore

logger = logging.getLogger(__name__)

# Errors that mean "the backend is gone", as opposed to programming errors.
STORE_FAILURES: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class FailoverCounterStore(CounterStore):
    """Delegate to ``primary`` until it fails, then to ``fallback`` forever."""

    def __init__(self, primary: CounterStore, fallback: InMemoryCounterStore | None = None) -> None:
        super().__init__(clock=primary._clock)
        self._primary = primary
        self._fallback = fallback if fallback is not None else InMemoryCounterStore(clock=primary._clock)
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def backend(self) -> str:  # type: ignore[override]
        return self._fallback.backend if self._degraded else self._primary.backend

    @property
    def active(self) -> CounterStore:
        return self._fallback if self._degraded else self._primary

    async def execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        if not self._degraded:
            try:
                return await self._primary.execute(command, *args, **kwargs)
            except STORE_FAILURES as exc:
                self._degraded = True
                logger.warning(
                    "rate_limit.store_fallback",
                    extra={
                        "from_backend": self._primary.backend,
                        "to_backend": self._fallback.backend,
                        "command": command,
                        "error_type": type(exc).__name__,
                    },
                )
        return await self._fallback.execute(command, *args, **kwargs)

    async def close(self) -> None:
        await self._primary.close()
        await self._fallback.close()
