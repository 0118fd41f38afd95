"""Rate limiting data model: rules, decisions and admin payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

ALL_METHODS = "ALL"


class RateLimitStrategy(str, Enum):
    """Available throttling algorithms."""

    FIXED_WINDOW = "fixed-window"
    SLIDING_WINDOW = "sliding-window"
    TOKEN_BUCKET = "token-bucket"
    LEAKY_BUCKET = "leaky-bucket"


class RateLimitScope(str, Enum):
    """Dimension used to derive the rate limit key."""

    IP = "ip"
    USER = "user"
    GLOBAL = "global"
    ENDPOINT = "endpoint"
    IP_USER_COMBINED = "ip-user-combined"


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of evaluating one request against one quota.

    Attributes:
        success: Whether the request is admitted.
        limit: Quota of the rule.
        remaining: Requests left before the next rejection.
        reset_ms: Epoch milliseconds at which the quota is available again.
        retry_after: Seconds to wait before retrying (rejections only).
    """

    success: bool
    limit: int
    remaining: int
    reset_ms: int
    retry_after: int | None = None

    @property
    def reset_seconds(self) -> int:
        """Reset time as Unix seconds, as sent in ``X-RateLimit-Reset``."""
        return math.ceil(self.reset_ms / 1000)

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitRule(BaseModel):
    """One route rule of the rate limit registry.

    Accepts both snake_case and the camelCase keys used by
    ``RATE_LIMIT_CONFIGS`` (``windowMs``, ``statusCode``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    path: str = Field(..., min_length=1, description="Exact path or '/prefix/*'")
    method: tuple[str, ...] = Field(
        default=(ALL_METHODS,),
        description="HTTP methods the rule applies to; 'ALL' matches any",
    )
    strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW
    scope: RateLimitScope = RateLimitScope.IP
    window_ms: int = Field(15 * 60 * 1000, alias="windowMs", ge=1)
    max: int = Field(100, ge=1)
    message: str | None = None
    status_code: int | None = Field(None, alias="statusCode", ge=400, le=599)
    rate: float | None = Field(
        None,
        gt=0,
        description="Refill (token bucket) or leak (leaky bucket) rate per second",
    )

    @field_validator("path")
    @classmethod
    def _path_must_be_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return (ALL_METHODS,)
        if isinstance(value, str):
            value = [value]
        methods = tuple(str(m).strip().upper() for m in value if str(m).strip())
        return methods or (ALL_METHODS,)

    @property
    def is_wildcard(self) -> bool:
        return self.path.endswith("/*")

    def matches_method(self, method: str) -> bool:
        return ALL_METHODS in self.method or method.upper() in self.method

    def matches_path(self, path: str) -> bool:
        if not self.is_wildcard:
            return path == self.path
        base = self.path[:-2]
        return path == base or path.startswith(base + "/")

    def scaled(self, max_value: int) -> "RateLimitRule":
        """Return a copy of the rule with another quota."""
        return self.model_copy(update={"max": max_value})


class RateLimitResetRequest(BaseModel):
    """Body of ``POST /api/v1/admin/rate-limit/reset``."""

    model_config = ConfigDict(populate_by_name=True)

    pattern: str | None = Field(None, description="Explicit key glob pattern")
    scope: str | None = Field(None, description="'user', 'ip' or 'all'")
    user_id: str | None = Field(None, alias="userId")
    ip: str | None = None


class RateLimitResetResponse(BaseModel):
    success: bool = True
    message: str
    pattern: str
    deleted: int


class RateLimiterStats(BaseModel):
    """Snapshot of the keys held by the counter store."""

    total_keys: int
    by_strategy: Dict[str, int] = Field(default_factory=dict)
    by_scope: Dict[str, int] = Field(default_factory=dict)
    memory_usage: int = 0
    backend: str
    timestamp: str


class RateLimitRuleView(BaseModel):
    path: str
    method: List[str]
    strategy: RateLimitStrategy
    scope: RateLimitScope
    window_ms: int
    max: int


class RateLimitInfoResponse(BaseModel):
    """Body of ``GET /rate-limit/info``."""

    enabled: bool
    environment: str
    backend: str
    stats: RateLimiterStats | None = None
    routes: List[RateLimitRuleView] = Field(default_factory=list)
    strategies: Dict[str, Dict[str, List[str]]] = Field(
        default_factory=dict,
        description="Trade-offs of each available algorithm, keyed by strategy name.",
    )
