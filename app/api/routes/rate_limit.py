from fastapi import APIRouter, Depends, Request

from app.core.auth import verify_admin_api_key
from app.core.errors import ConfigurationAppError
from app.core.rate_limit import RateLimitDispatcher, enforce_test_rate_limit, get_dispatcher
from app.schemas.rate_limit import (
    RateLimitInfoResponse,
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitRuleView,
)
from app.services.rate_limit_admin import (
    build_reset_pattern,
    get_rate_limiter_stats,
    reset_rate_limit,
)
from app.services.rate_limit_strategies import STRATEGY_GUIDE

router = APIRouter(tags=["Rate Limit"])


def _require_dispatcher(request: Request) -> RateLimitDispatcher:
    dispatcher = get_dispatcher(request)
    if dispatcher is None:
        raise ConfigurationAppError(
            code="rate_limiter_not_initialized",
            message="Rate limiter is not initialized",
        )
    return dispatcher


@router.get("/rate-limit/info", response_model=RateLimitInfoResponse)
async def rate_limit_info(request: Request) -> RateLimitInfoResponse:
    """Describe the active limiter: backend, key statistics, rules and algorithms."""
    dispatcher = _require_dispatcher(request)
    stats = await get_rate_limiter_stats(dispatcher.store, key_prefix=dispatcher.key_prefix)
    return RateLimitInfoResponse(
        enabled=dispatcher.enabled,
        environment=dispatcher.environment,
        backend=dispatcher.store.backend,
        stats=stats,
        routes=[
            RateLimitRuleView(
                path=rule.path,
                method=list(rule.method),
                strategy=rule.strategy,
                scope=rule.scope,
                window_ms=rule.window_ms,
                max=rule.max,
            )
            for rule in dispatcher.registry
        ],
        strategies={name.value: guide for name, guide in STRATEGY_GUIDE.items()},
    )


@router.get("/rate-limit/test", dependencies=[Depends(enforce_test_rate_limit)])
async def rate_limit_test() -> dict:
    """Endpoint behind a tiny limiter, for checking headers and 429 handling."""
    return {"success": True, "message": "Request allowed"}


@router.post(
    "/api/v1/admin/rate-limit/reset",
    response_model=RateLimitResetResponse,
    dependencies=[Depends(verify_admin_api_key)],
)
async def rate_limit_reset(
    request: Request,
    body: RateLimitResetRequest | None = None,
) -> RateLimitResetResponse:
    """Delete rate limit keys matching a pattern (or a user/ip shortcut)."""
    dispatcher = _require_dispatcher(request)
    pattern = build_reset_pattern(body or RateLimitResetRequest(), key_prefix=dispatcher.key_prefix)
    deleted = await reset_rate_limit(dispatcher.store, pattern)
    return RateLimitResetResponse(
        message=f"Reset {deleted} rate limit entries",
        pattern=pattern,
        deleted=deleted,
    )
