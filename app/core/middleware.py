"""HTTP middleware: request correlation and rate limiting.

Usage:
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

Starlette runs the last registered middleware first, so registering
``request_id_middleware`` last makes the request id available while the rate
limiter logs and builds its responses.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import clear_request_id, set_request_id
from app.core.rate_limit import build_rate_limit_body, get_dispatcher

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Propagate a correlation id and measure request duration.

    Uses the incoming ``X-Request-ID`` (header name configurable via
    ``LOG_REQUEST_ID_HEADER``) or generates a UUID, stores it in contextvars
    for the duration of the request and echoes it on the response together
    with ``X-Request-Duration-ms``.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """Throttle requests according to the dispatcher on ``app.state``.

    - No dispatcher, limiter disabled or no matching rule: pass through.
    - Bypassed (trusted key / internal network): pass through with
      ``X-RateLimit-Bypass`` headers.
    - Admitted: continue and add ``X-RateLimit-*`` headers.
    - Rejected: answer 429 (or the rule's status) without calling the route.
    """

    dispatcher = get_dispatcher(request)
    if dispatcher is None or not dispatcher.enabled:
        return await call_next(request)

    try:
        decision = await dispatcher.dispatch(request)
    except Exception as exc:
        # Fail open: a broken limiter must not take the API down.
        logger.error(
            "rate_limit.middleware_failed",
            extra={"error_type": type(exc).__name__, "route": request.url.path},
        )
        return await call_next(request)

    if decision.bypass_reason:
        response = await call_next(request)
        response.headers["X-RateLimit-Bypass"] = "true"
        response.headers["X-RateLimit-Bypass-Reason"] = decision.bypass_reason
        return response

    result, rule = decision.result, decision.rule
    if result is None or rule is None:
        return await call_next(request)

    if not result.success:
        return JSONResponse(
            status_code=rule.status_code or 429,
            content=build_rate_limit_body(
                result,
                dispatcher.message_for(rule),
                path=request.url.path,
            ),
            headers=result.headers(),
        )

    response = await call_next(request)
    for name, value in result.headers().items():
        response.headers[name] = value
    return response
