"""Rate limiting with slowapi.

Requests carrying an API key are bucketed by a hash of the full key, other
requests by client address.
"""

import hashlib
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from caretaker.api.errors import ErrorCode, build_error_response, get_request_id
from caretaker.config import settings

F = TypeVar("F", bound=Callable[..., Any])


def get_rate_limit_key(request: Request) -> str:
    """Return the rate limit bucket for a request."""
    authorization = request.headers.get("Authorization")
    if authorization and authorization.startswith("Bearer "):
        digest = hashlib.sha256(authorization[7:].encode()).hexdigest()[:32]
        return f"key:{digest}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=[settings.rate_limit_global],
    enabled=settings.rate_limit_enabled,
)


def limit_read(func: F) -> F:
    """Apply the read rate limit to an endpoint."""
    return limiter.limit(settings.rate_limit_read)(func)  # type: ignore[no-any-return]


def limit_write(func: F) -> F:
    """Apply the write rate limit to an endpoint."""
    return limiter.limit(settings.rate_limit_write)(func)  # type: ignore[no-any-return]


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return the standard error envelope with 429."""
    return JSONResponse(
        status_code=429,
        content=build_error_response(
            code=ErrorCode.RATE_LIMITED,
            message=f"Rate limit exceeded: {exc.detail}",
            request_id=get_request_id(request),
        ),
    )
