"""Counter store adapters for rate limiting.

Redis is the shared store for multi-process deployments; the in-memory store
implements the same interface and takes over when Redis is not configured or
not reachable.
"""

from app.adapters.rate_limit.base import CounterStore
from app.adapters.rate_limit.failover import FailoverCounterStore
from app.adapters.rate_limit.factory import create_counter_store
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.redis_store import RedisCounterStore

__all__ = [
    "CounterStore",
    "FailoverCounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
