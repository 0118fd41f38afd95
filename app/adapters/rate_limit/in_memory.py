"""In-memory counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limits.
- Every command runs to completion without awaiting, so commands are atomic
  with respect to other coroutines on the same event loop.
- Expiry is lazy: a key is dropped when it is next touched after its deadline,
  or by the full sweep that runs every ``PURGE_EVERY`` commands.
"""

from __future__ import annotations

import fnmatch
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable

from app.adapters.rate_limit.base import CounterStore, normalize_command

# Commands between two full sweeps of expired keys.
PURGE_EVERY = 1000


@dataclass
class _Entry:
    value: Any
    expires_at_ms: int | None = None


def _parse_score_bound(bound: Any) -> tuple[float, bool]:
    """Parse a Redis score bound ("-inf", "+inf", "(123", 123).

    Returns:
        Tuple of (value, exclusive).
    """
    if isinstance(bound, (int, float)):
        return float(bound), False
    text = str(bound)
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    # float() understands "-inf" / "+inf" as well
    return float(text), exclusive


class InMemoryCounterStore(CounterStore):
    """Dict-backed store implementing the Redis subset used by the strategies.

    Strings and counters are stored as ``str``; sorted sets as
    ``dict[member, score]``.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        purge_every: int = PURGE_EVERY,
    ) -> None:
        super().__init__(clock=clock)
        self._data: dict[str, _Entry] = {}
        self._purge_every = max(1, purge_every)
        self._commands_since_purge = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryCounterStore(keys={len(self._data)})"

    async def execute(self, command: str, *args: Any, **kwargs: Any) -> Any:
        name = normalize_command(command)
        self._commands_since_purge += 1
        if self._commands_since_purge >= self._purge_every:
            self._purge_expired()
        handler = getattr(self, f"_cmd_{name}")
        return handler(*args, **kwargs)

    @property
    def size(self) -> int:
        """Number of entries held, expired ones included until purged."""
        return len(self._data)

    # -- key helpers -------------------------------------------------------

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at_ms is not None and entry.expires_at_ms <= self.now_ms():
            del self._data[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        self._commands_since_purge = 0
        now = self.now_ms()
        expired = [
            k for k, e in self._data.items()
            if e.expires_at_ms is not None and e.expires_at_ms <= now
        ]
        for key in expired:
            del self._data[key]

    def _zset(self, key: str) -> dict[str, float] | None:
        entry = self._live(key)
        if entry is None:
            return None
        if not isinstance(entry.value, dict):
            raise TypeError(f"WRONGTYPE key {key!r} does not hold a sorted set")
        return entry.value

    # -- strings / counters ------------------------------------------------

    def _cmd_incr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(value="0")
            self._data[key] = entry
        count = int(entry.value) + 1
        entry.value = str(count)
        return count

    def _cmd_get(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None:
            return None
        return entry.value if isinstance(entry.value, str) else None

    def _cmd_set(self, key: str, value: Any, ex: int | None = None, px: int | None = None) -> bool:
        expires_at = None
        if px is not None:
            expires_at = self.now_ms() + int(px)
        elif ex is not None:
            expires_at = self.now_ms() + int(ex) * 1000
        # SET without expiry options discards any previous TTL, like Redis.
        self._data[key] = _Entry(value=str(value), expires_at_ms=expires_at)
        return True

    def _cmd_delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    # -- expiry ------------------------------------------------------------

    def _cmd_pexpire(self, key: str, milliseconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at_ms = self.now_ms() + int(milliseconds)
        return True

    def _cmd_expire(self, key: str, seconds: int) -> bool:
        return self._cmd_pexpire(key, int(seconds) * 1000)

    def _cmd_pttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return -2
        if entry.expires_at_ms is None:
            return -1
        return entry.expires_at_ms - self.now_ms()

    def _cmd_ttl(self, key: str) -> int:
        pttl = self._cmd_pttl(key)
        if pttl < 0:
            return pttl
        return -(-pttl // 1000)

    # -- sorted sets -------------------------------------------------------

    def _cmd_zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._zset(key)
        if zset is None:
            zset = {}
            self._data[key] = _Entry(value=zset)
        added = sum(1 for member in mapping if member not in zset)
        for member, score in mapping.items():
            zset[str(member)] = float(score)
        return added

    def _cmd_zremrangebyscore(self, key: str, min_score: Any, max_score: Any) -> int:
        zset = self._zset(key)
        if zset is None:
            return 0
        low, low_exclusive = _parse_score_bound(min_score)
        high, high_exclusive = _parse_score_bound(max_score)

        def _in_range(score: float) -> bool:
            above = score > low if low_exclusive else score >= low
            below = score < high if high_exclusive else score <= high
            return above and below

        doomed = [m for m, s in zset.items() if _in_range(s)]
        for member in doomed:
            del zset[member]
        if not zset:
            del self._data[key]
        return len(doomed)

    def _cmd_zcard(self, key: str) -> int:
        zset = self._zset(key)
        return len(zset) if zset else 0

    def _cmd_zrange(
        self,
        key: str,
        start: int,
        end: int,
        withscores: bool = False,
    ) -> list[Any]:
        zset = self._zset(key)
        if not zset:
            return []
        ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]))
        start, end = int(start), int(end)
        stop = len(ordered) if end == -1 else end + 1
        window = ordered[start:stop]
        if withscores:
            return [(member, score) for member, score in window]
        return [member for member, _ in window]

    # -- admin -------------------------------------------------------------

    def _cmd_keys(self, pattern: str = "*") -> list[str]:
        self._purge_expired()
        return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]

    def _cmd_info(self, section: str | None = None) -> dict[str, Any]:
        self._purge_expired()
        used = sum(sys.getsizeof(k) + sys.getsizeof(e.value) for k, e in self._data.items())
        return {"used_memory": used, "keys": len(self._data)}

    def _cmd_ping(self) -> bool:
        return True
