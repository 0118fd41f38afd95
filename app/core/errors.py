"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.

Note that an exhausted quota is not an error inside the rate limiter: the
strategies return ``success=False``. ``RateLimitExceededError`` only exists so
that FastAPI dependencies can short-circuit a request and let the global
exception handler render the 429 response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NotRequired, TypedDict

if TYPE_CHECKING:
    from app.schemas.rate_limit import RateLimitResult


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    command: str
    backend: str
    pattern: str
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input validation fails."""


class ConfigurationAppError(AppError):
    """Raised when the service is misconfigured beyond recovery."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised by rate limit dependencies when a quota is exhausted.

    Attributes:
        result: Decision that rejected the request.
        status_code: HTTP status to answer with (429 unless the rule overrides it).
    """

    result: RateLimitResult | None = None
    status_code: int = 429
    headers: dict[str, str] = field(default_factory=dict)
