from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Request

from app.core.config import settings
from app.core.rate_limit import get_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _probe_store(request: Request) -> dict:
    dispatcher = get_dispatcher(request)
    if dispatcher is None:
        return {"backend": None, "healthy": False, "reason": "not_initialized"}

    store = dispatcher.store
    start = time.perf_counter()
    try:
        healthy = await asyncio.wait_for(
            store.ping(),
            timeout=settings.health.store_timeout_seconds,
        )
    except Exception as exc:
        logger.warning(
            "health.store_probe_failed",
            extra={"backend": store.backend, "error_type": type(exc).__name__},
        )
        healthy = False
    return {
        "backend": store.backend,
        "healthy": bool(healthy),
        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
    }


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    The API reports ``ok`` even when the counter store is unhealthy: rate
    limiting degrades to memory and never takes the service down.

    Returns:
        dict: ``status`` plus the counter store probe.
    """

    return {"status": "ok", "rate_limit_store": await _probe_store(request)}
