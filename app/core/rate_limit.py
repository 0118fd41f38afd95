"""Rate limit dispatcher wiring rules, keys and strategies into the HTTP layer.

Design goals:
- Explicit composition: the store, rule registry and settings are injected
  when the app is built and the dispatcher lives on ``app.state``.
- Fail-open: infrastructure errors let the request through unthrottled;
  only an exhausted quota produces a rejection.
- Strategy-agnostic: strategies are looked up by enum, so adding one needs
  no change here.

Per-request pipeline: bypass list -> dev test hook -> rule resolution ->
key derivation -> strategy.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Request, Response

from app.adapters.rate_limit.base import CounterStore
from app.core.config import RateLimitSettings, parse_csv
from app.core.errors import RateLimitExceededError
from app.core.logging import get_request_id
from app.schemas.rate_limit import (
    RateLimitResult,
    RateLimitRule,
    RateLimitScope,
    RateLimitStrategy,
)
from app.services.rate_limit_rules import RuleRegistry
from app.services.rate_limit_strategies import Strategy, build_strategies

logger = logging.getLogger(__name__)

RATE_LIMIT_CODE = "RATE_LIMIT_EXCEEDED"
TEST_HEADER = "X-Test-Rate-Limit"
MAX_KEY_LENGTH = 255
ANONYMOUS_USER = "anonymous"

_KEY_UNSAFE = re.compile(r"[^a-zA-Z0-9:_\-.]")


def sanitize_key_part(value: str) -> str:
    """Replace characters that are not allowed in rate limit keys with "-".

    Examples:
        >>> sanitize_key_part("alice@example.com")
        'alice-example.com'
    """
    return _KEY_UNSAFE.sub("-", value)


@dataclass(frozen=True)
class RateLimitDecision:
    """What the middleware should do with a request.

    ``result`` is None when no rule applies (or the request was bypassed).
    """

    result: RateLimitResult | None = None
    rule: RateLimitRule | None = None
    bypass_reason: str | None = None


def build_rate_limit_body(
    result: RateLimitResult,
    message: str,
    *,
    path: str,
) -> dict[str, Any]:
    """JSON body of a 429 response."""
    return {
        "success": False,
        "error": message,
        "message": message,
        "code": RATE_LIMIT_CODE,
        "retryAfter": result.retry_after,
        "limit": result.limit,
        "reset": datetime.fromtimestamp(result.reset_ms / 1000, tz=timezone.utc).isoformat(),
        "path": path,
        "request_id": get_request_id(),
    }


class RateLimitDispatcher:
    """Evaluate requests against the rule registry.

    Attributes:
        store: Counter store shared by all strategies.
        registry: Route rule table.
        test_rule: Standalone limiter used by ``/rate-limit/test`` and the
            development test hook.
    """

    def __init__(
        self,
        store: CounterStore,
        registry: RuleRegistry,
        *,
        rate_limit_settings: RateLimitSettings,
        environment: str,
        clock: Callable[[], float] = time.time,
        strategies: dict[RateLimitStrategy, Strategy] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.environment = environment.lower()
        self._settings = rate_limit_settings
        self._clock = clock
        self._strategies = strategies or build_strategies(store, clock=clock)
        self._trusted_keys = parse_csv(rate_limit_settings.trusted_api_keys)
        self._internal_networks = parse_csv(rate_limit_settings.internal_networks)
        self.test_rule = RateLimitRule(
            path="/rate-limit/test",
            method="ALL",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            scope=RateLimitScope.IP,
            window_ms=rate_limit_settings.test_window_ms,
            max=rate_limit_settings.test_max,
            message="Test rate limit exceeded. Please wait before retrying.",
        )

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def key_prefix(self) -> str:
        return self._settings.key_prefix

    def message_for(self, rule: RateLimitRule) -> str:
        return rule.message or self._settings.default_message

    # -- identity ----------------------------------------------------------

    @staticmethod
    def client_ip(request: Request) -> str | None:
        return request.client.host if request.client else None

    @staticmethod
    def user_id(request: Request) -> str | None:
        user_id = getattr(request.state, "user_id", None)
        return str(user_id) if user_id not in (None, "") else None

    def build_key(self, request: Request, scope: RateLimitScope, discriminator: str) -> str:
        """Derive the rate limit key for ``request``.

        A scope whose identifying data is missing degrades to the global key
        instead of failing the request.
        """
        ip = self.client_ip(request)
        user = self.user_id(request)

        if scope is RateLimitScope.IP and ip:
            part = f"ip:{ip}"
        elif scope is RateLimitScope.USER and user:
            part = f"user:{user}"
        elif scope is RateLimitScope.IP_USER_COMBINED and ip:
            part = f"combined:{ip}:{user or ANONYMOUS_USER}"
        elif scope is RateLimitScope.ENDPOINT:
            part = f"endpoint:{request.method}:{request.url.path}"
        else:
            part = "global"

        key = f"{self.key_prefix}:{part}:{discriminator}"
        return sanitize_key_part(key)[:MAX_KEY_LENGTH]

    # -- pass-through checks -------------------------------------------------

    def bypass_reason(self, request: Request) -> str | None:
        api_key = request.headers.get("X-API-Key")
        if api_key and api_key in self._trusted_keys:
            return "trusted-api-key"
        ip = self.client_ip(request)
        if ip and ip in self._internal_networks:
            return "internal-network"
        return None

    def dev_test_requested(self, request: Request) -> bool:
        return self.environment == "development" and TEST_HEADER in request.headers

    # -- evaluation ----------------------------------------------------------

    def _permissive_result(self, rule: RateLimitRule) -> RateLimitResult:
        return RateLimitResult(
            success=True,
            limit=rule.max,
            remaining=rule.max,
            reset_ms=int(self._clock() * 1000) + rule.window_ms,
        )

    async def check(self, request: Request, rule: RateLimitRule, *, discriminator: str | None = None) -> RateLimitResult:
        """Meter ``request`` against ``rule``; never raises."""
        key = self.build_key(request, rule.scope, discriminator or rule.path)
        try:
            strategy = self._strategies[rule.strategy]
            result = await strategy.evaluate(key, rule.window_ms, rule.max, rate=rule.rate)
        except Exception as exc:
            logger.error(
                "rate_limit.evaluation_failed",
                extra={
                    "rate_limit_key": key,
                    "strategy": rule.strategy.value,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return self._permissive_result(rule)

        if not result.success:
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "rate_limit_key": key,
                    "client_ip": self.client_ip(request),
                    "user_id": self.user_id(request),
                    "method": request.method,
                    "route": request.url.path,
                    "strategy": rule.strategy.value,
                    "limit": result.limit,
                    "remaining": result.remaining,
                    "retry_after_s": result.retry_after,
                },
            )
        return result

    async def dispatch(self, request: Request) -> RateLimitDecision:
        """Run the full per-request pipeline."""
        reason = self.bypass_reason(request)
        if reason:
            logger.debug("rate_limit.bypassed", extra={"reason": reason, "route": request.url.path})
            return RateLimitDecision(bypass_reason=reason)

        # /rate-limit/test is already metered by its own dependency.
        if self.dev_test_requested(request) and request.url.path != self.test_rule.path:
            result = await self.check(request, self.test_rule, discriminator="dev-test")
            return RateLimitDecision(result=result, rule=self.test_rule)

        rule = self.registry.resolve(request.url.path, request.method)
        if rule is None:
            return RateLimitDecision()

        result = await self.check(request, rule)
        return RateLimitDecision(result=result, rule=rule)


def get_dispatcher(request: Request) -> RateLimitDispatcher | None:
    return getattr(request.app.state, "rate_limiter", None)


async def _enforce(request: Request, response: Response, rule: RateLimitRule, name: str) -> RateLimitResult | None:
    dispatcher = get_dispatcher(request)
    if dispatcher is None or not dispatcher.enabled or dispatcher.bypass_reason(request):
        return None

    result = await dispatcher.check(request, rule, discriminator=name)
    headers = result.headers()
    if result.success:
        response.headers.update(headers)
        return result

    raise RateLimitExceededError(
        code=RATE_LIMIT_CODE,
        message=dispatcher.message_for(rule),
        details={"retry_after": result.retry_after or 0},
        result=result,
        status_code=rule.status_code or 429,
        headers=headers,
    )


def rate_limited(rule: RateLimitRule, *, name: str) -> Callable[..., Any]:
    """Build a FastAPI dependency enforcing a standalone rule.

    Usage:
        @router.post("/upload", dependencies=[Depends(rate_limited(rule, name="upload"))])

    Args:
        rule: Quota, strategy and scope to enforce.
        name: Key discriminator separating this limiter from route rules.
    """

    async def dependency(request: Request, response: Response) -> RateLimitResult | None:
        return await _enforce(request, response, rule, name)

    return dependency


async def enforce_test_rate_limit(request: Request, response: Response) -> RateLimitResult | None:
    """Dependency applying the dispatcher's test limiter."""
    dispatcher = get_dispatcher(request)
    if dispatcher is None:
        return None
    return await _enforce(request, response, dispatcher.test_rule, "test")
