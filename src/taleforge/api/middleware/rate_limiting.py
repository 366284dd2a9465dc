"""Rate limiting middleware.

Sliding window per client, keyed by bearer token when one is sent and by
client address otherwise. Storage is in-memory, so limits are per process.
"""

import hashlib
import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from taleforge.core.config import get_settings


class RateLimiter:
    """In-memory rate limiter using a sliding window algorithm."""

    def __init__(self, limit: int = 100, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        """Initialize rate limiter.

        Args:
            limit: Requests allowed per window
            window_seconds: Length of the sliding window
            clock: Time source (seconds)
        """
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> tuple[bool, dict]:
        """Check if a request is allowed and record it when it is.

        Returns:
            Tuple of (is_allowed, headers_dict with rate limit info)
        """
        now = self._clock()
        window_start = now - self.window_seconds

        requests = [ts for ts in self._requests[key] if ts > window_start]
        self._requests[key] = requests

        remaining = self.limit - len(requests)
        reset_time = int(requests[0] + self.window_seconds) if requests else int(now + self.window_seconds)

        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, remaining)),
            "X-RateLimit-Reset": str(reset_time),
        }

        if remaining <= 0:
            headers["Retry-After"] = str(max(1, int(reset_time - now)))
            return False, headers

        requests.append(now)
        headers["X-RateLimit-Remaining"] = str(remaining - 1)
        return True, headers

    def reset(self) -> None:
        self._requests.clear()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter, sized from settings."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return _rate_limiter


def client_key(request: Request) -> str:
    """Rate limit key: hashed bearer token, else client address."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        digest = hashlib.sha256(auth_header[7:].encode()).hexdigest()[:32]
        return f"token:{digest}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware applying the sliding-window limit to API requests."""

    def __init__(
        self,
        app: Callable,
        limiter: RateLimiter | None = None,
        exempt_paths: list[str] | None = None,
    ):
        """Initialize middleware.

        Args:
            app: FastAPI application
            limiter: Limiter to use (defaults to the process-wide one)
            exempt_paths: List of path prefixes to exempt from rate limiting
        """
        super().__init__(app)
        self.limiter = limiter
        self.exempt_paths = exempt_paths or [
            "/api/docs",
            "/api/redoc",
            "/api/openapi.json",
            "/api/health",
            "/api/ready",
            "/api/live",
            "/api/billing/webhook",
            "/api/sse",
        ]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        if not path.startswith("/api") or any(path.startswith(p) for p in self.exempt_paths):
            return await call_next(request)

        limiter = self.limiter or get_rate_limiter()
        is_allowed, headers = limiter.is_allowed(client_key(request))

        if not is_allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "details": {"retry_after": int(headers["Retry-After"])},
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
