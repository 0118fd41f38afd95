"""Application factory for FastAPI app.

Centralizes app construction (middleware, handlers, routers) and the
composition of the rate limiter: the counter store, rule registry and
dispatcher are built here and handed to the middleware through ``app.state``
instead of living in module globals.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI

from app.adapters.rate_limit.base import CounterStore
from app.adapters.rate_limit.factory import create_counter_store
from app.api.routes import health_router, rate_limit_router
from app.core.config import Settings, settings as default_settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import rate_limit_middleware, request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import RateLimitDispatcher
from app.services.rate_limit_rules import RuleRegistry, load_rule_registry

logger = logging.getLogger(__name__)


def create_app(
    *,
    app_settings: Settings | None = None,
    store: CounterStore | None = None,
    registry: RuleRegistry | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use (defaults to the global settings).
        store: Pre-built counter store; when omitted one is selected at
            startup from the Redis settings. A store passed in is not closed
            on shutdown.
        registry: Pre-built rule registry; defaults to the environment-scaled
            default rules plus ``RATE_LIMIT_CONFIGS``.
        clock: Time source for the strategies (tests use a fake clock).

    Returns:
        Configured FastAPI app.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    rules = registry if registry is not None else load_rule_registry(cfg.app_env, cfg.rate_limit.configs)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = store is None
        counter_store = store if store is not None else await create_counter_store(cfg.redis, environment=cfg.app_env)
        app.state.rate_limiter = RateLimitDispatcher(
            counter_store,
            rules,
            rate_limit_settings=cfg.rate_limit,
            environment=cfg.app_env,
            clock=clock,
        )
        logger.info(
            "rate_limit.ready",
            extra={
                "backend": counter_store.backend,
                "rules": len(rules),
                "enabled": cfg.rate_limit.enabled,
            },
        )
        try:
            yield
        finally:
            app.state.rate_limiter = None
            if owned:
                await counter_store.close()

    app = FastAPI(
        title="Estate API Rate Limiter",
        description=(
            "Request throttling for the estate management API: per-route quotas "
            "by IP, user or both, enforced with fixed window, sliding window, "
            "token bucket or leaky bucket algorithms over Redis (in-memory "
            "fallback)."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware: the last registered runs first, so request ids wrap the limiter.
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(rate_limit_router)
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
