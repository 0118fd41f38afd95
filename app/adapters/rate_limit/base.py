"""Counter store interface.

The throttling strategies depend on this abstraction (not on a concrete
client) so the same algorithms run against Redis in production and against the
in-memory store in tests or when Redis is unavailable.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable

# Commands the strategies and admin operations are allowed to issue.
SUPPORTED_COMMANDS = frozenset(
    {
        "incr",
        "pexpire",
        "expire",
        "pttl",
        "ttl",
        "get",
        "set",
        "zadd",
        "zremrangebyscore",
        "zcard",
        "zrange",
        "keys",
        "delete",
        "info",
        "ping",
    }
)

# Redis spells it DEL, redis-py exposes it as ``delete``.
COMMAND_ALIASES = {"del": "delete"}


def normalize_command(command: str) -> str:
    """Map a command name to its canonical form.

    Raises:
        ValueError: If the command is not part of the store contract.
    """
    name = command.lower()
    name = COMMAND_ALIASES.get(name, name)
    if name not in SUPPORTED_COMMANDS:
        raise ValueError(f"unsupported counter store command: {command!r}")
    return name


class CounterStore(ABC):
    """Atomic primitives shared by every rate limiting strategy.

    Subclasses implement ``execute``; ``increment`` and ``get_reset_time`` are
    built on top of it so every backend gets the same fixed-window semantics.
    """

    backend: str = "abstract"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @abstractmethod
    async def execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        """Run a raw store command.

        Args:
            command: Command name (see ``SUPPORTED_COMMANDS``; ``del`` accepted).
            *args: Positional command arguments, redis-py style.
            **kwargs: Keyword options, e.g. ``withscores=True`` for ``zrange``.

        Returns:
            The command reply, with strings decoded.
        """
        raise NotImplementedError

    async def increment(self, key: str, window_ms: int) -> int:
        """Increment the counter for ``key``.

        The expiry is set to ``window_ms`` only when the counter is created.
        Later increments leave it alone, otherwise a steady stream of requests
        would keep the window open forever.

        Returns:
            The counter value after the increment.
        """
        count = int(await self.execute("incr", key))
        if count == 1:
            await self.execute("pexpire", key, window_ms)
        return count

    async def get_reset_time(self, key: str, window_ms: int) -> int:
        """Return the epoch-ms at which the window of ``key`` closes.

        Read-only. A missing key (or one without expiry) reports
        ``now + window_ms``.
        """
        now = self.now_ms()
        pttl = int(await self.execute("pttl", key))
        if pttl > 0:
            return now + pttl
        return now + window_ms

    async def ping(self) -> bool:
        reply = await self.execute("ping")
        return reply is True or reply in ("PONG", b"PONG")

    async def close(self) -> None:
        """Release the underlying connection, if any."""
        return None
