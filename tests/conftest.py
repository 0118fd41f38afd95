"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins APP_ENV to testing before settings are imported, so environment
scaling and .env resolution behave the same on every machine.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"

# Set default env vars that all tests might need
os.environ.setdefault("APP_ADMIN_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_ADMIN_API_KEYS", "admin-key-123,admin-key-456")
os.environ.setdefault("RATE_LIMIT_INTERNAL_NETWORKS", "127.0.0.1,::1")

from unittest.mock import Mock

import pytest
from starlette.requests import Request

from app.adapters.rate_limit.in_memory import InMemoryCounterStore


@pytest.fixture
def clock() -> Mock:
    """Controllable time source in Unix seconds."""
    return Mock(return_value=1000.0)


@pytest.fixture
def store(clock: Mock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


def _build_request(
    path: str = "/api/v1/search",
    method: str = "GET",
    *,
    headers: dict[str, str] | None = None,
    client_ip: str | None = "203.0.113.7",
    user_id: str | None = None,
) -> Request:
    """Build a bare Starlette request for dispatcher unit tests."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_ip, 50000) if client_ip else None,
        "state": {},
    }
    request = Request(scope)
    if user_id is not None:
        request.state.user_id = user_id
    return request


@pytest.fixture
def make_request():
    return _build_request
