"""FastAPI middleware for request processing.

Middleware components:
- Rate limiting
"""

from .rate_limiting import RateLimitMiddleware, RateLimiter, get_rate_limiter

__all__ = [
    "RateLimitMiddleware",
    "RateLimiter",
    "get_rate_limiter",
]
