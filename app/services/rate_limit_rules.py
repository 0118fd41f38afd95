"""Route rule registry for the rate limiting middleware.

The rule table is built once when the application is composed. Environment
scaling happens at load time, never per request. Replacing the rules means
building a new ``RuleRegistry``; there is no partial reload.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from app.schemas.rate_limit import (
    RateLimitRule,
    RateLimitScope,
    RateLimitStrategy,
)

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

DEVELOPMENT_MULTIPLIER = 10
TESTING_CEILING = 10_000

# Exact paths are listed before wildcard prefixes.
DEFAULT_ROUTE_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule(
        path="/health",
        method="GET",
        strategy=RateLimitStrategy.FIXED_WINDOW,
        scope=RateLimitScope.IP,
        window_ms=MINUTE_MS,
        max=1000,
    ),
    RateLimitRule(
        path="/api/v1/auth/register",
        method="POST",
        strategy=RateLimitStrategy.FIXED_WINDOW,
        scope=RateLimitScope.IP,
        window_ms=HOUR_MS,
        max=5,
        message="Too many registration attempts. Please try again later.",
    ),
    RateLimitRule(
        path="/api/v1/auth/login",
        method="POST",
        strategy=RateLimitStrategy.SLIDING_WINDOW,
        scope=RateLimitScope.IP_USER_COMBINED,
        window_ms=15 * MINUTE_MS,
        max=10,
        message="Too many login attempts. Please try again later.",
    ),
    RateLimitRule(
        path="/api/v1/auth/forgot-password",
        method="POST",
        strategy=RateLimitStrategy.FIXED_WINDOW,
        scope=RateLimitScope.IP,
        window_ms=HOUR_MS,
        max=3,
        message="Too many password reset requests. Please try again later.",
    ),
    RateLimitRule(
        path="/api/v1/upload",
        method="POST",
        strategy=RateLimitStrategy.LEAKY_BUCKET,
        scope=RateLimitScope.IP_USER_COMBINED,
        window_ms=5 * MINUTE_MS,
        max=10,
        message="Too many upload requests. Please wait before uploading more files.",
    ),
    RateLimitRule(
        path="/api/v1/search",
        method="GET",
        strategy=RateLimitStrategy.SLIDING_WINDOW,
        scope=RateLimitScope.IP,
        window_ms=10 * 1000,
        max=20,
    ),
    RateLimitRule(
        path="/api/v1/public/*",
        method="ALL",
        strategy=RateLimitStrategy.SLIDING_WINDOW,
        scope=RateLimitScope.IP,
        window_ms=MINUTE_MS,
        max=60,
    ),
    RateLimitRule(
        path="/api/v1/users/*",
        method=["GET", "POST", "PUT", "DELETE"],
        strategy=RateLimitStrategy.TOKEN_BUCKET,
        scope=RateLimitScope.USER,
        window_ms=MINUTE_MS,
        max=30,
    ),
    RateLimitRule(
        path="/api/v1/admin/*",
        method="ALL",
        strategy=RateLimitStrategy.FIXED_WINDOW,
        scope=RateLimitScope.USER,
        window_ms=MINUTE_MS,
        max=100,
    ),
)


class RuleRegistry:
    """Immutable, ordered table of route rules.

    Resolution: an exact-path rule beats any wildcard rule; within each kind
    the first declared match wins.
    """

    def __init__(self, rules: Iterable[RateLimitRule]) -> None:
        self._rules: tuple[RateLimitRule, ...] = tuple(rules)
        self._exact = tuple(r for r in self._rules if not r.is_wildcard)
        self._wildcard = tuple(r for r in self._rules if r.is_wildcard)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)

    @property
    def rules(self) -> tuple[RateLimitRule, ...]:
        return self._rules

    def resolve(self, path: str, method: str) -> RateLimitRule | None:
        """Return the rule governing ``method path``, or None to pass through."""
        for rule in self._exact:
            if rule.matches_path(path) and rule.matches_method(method):
                return rule
        for rule in self._wildcard:
            if rule.matches_path(path) and rule.matches_method(method):
                return rule
        return None


def scale_for_environment(rules: Sequence[RateLimitRule], environment: str) -> list[RateLimitRule]:
    """Relax quotas outside production.

    - development: every quota x10
    - testing/test: every quota raised to a fixed ceiling
    - anything else: unchanged
    """
    env = environment.lower()
    if env == "development":
        return [rule.scaled(rule.max * DEVELOPMENT_MULTIPLIER) for rule in rules]
    if env in ("testing", "test"):
        return [rule.scaled(TESTING_CEILING) for rule in rules]
    return list(rules)


def parse_custom_rules(raw: str | None) -> list[RateLimitRule]:
    """Parse the ``RATE_LIMIT_CONFIGS`` JSON array.

    Malformed JSON discards the whole value; invalid entries are skipped one
    by one. Errors are logged, never raised.
    """
    if not raw or not raw.strip():
        return []

    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error(
            "rate_limit.custom_rules_invalid_json",
            extra={"error_msg": str(exc)},
        )
        return []

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        logger.error(
            "rate_limit.custom_rules_invalid_shape",
            extra={"payload_type": type(payload).__name__},
        )
        return []

    rules: list[RateLimitRule] = []
    for index, item in enumerate(payload):
        try:
            rules.append(RateLimitRule.model_validate(item))
        except ValidationError as exc:
            logger.error(
                "rate_limit.custom_rule_skipped",
                extra={"index": index, "errors": exc.errors(include_url=False)},
            )
    return rules


def load_rule_registry(
    environment: str,
    custom_configs: str | None = None,
    *,
    defaults: Sequence[RateLimitRule] = DEFAULT_ROUTE_RULES,
) -> RuleRegistry:
    """Build the registry: scaled defaults followed by custom rules.

    Args:
        environment: Deployment environment (``APP_ENV``).
        custom_configs: Raw ``RATE_LIMIT_CONFIGS`` value.
        defaults: Base rule table.

    Returns:
        RuleRegistry ready to be injected into the dispatcher.
    """
    rules = scale_for_environment(defaults, environment)
    custom = parse_custom_rules(custom_configs)
    rules.extend(custom)

    logger.info(
        "rate_limit.rules_loaded",
        extra={
            "environment": environment,
            "default_rules": len(defaults),
            "custom_rules": len(custom),
        },
    )
    return RuleRegistry(rules)
