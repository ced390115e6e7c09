"""Fixed-window rate limiting exposed as FastAPI dependencies."""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request, Response
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from codepods.config import rate_limit_enabled

logger = logging.getLogger(__name__)

_storage = MemoryStorage()
_strategy = FixedWindowRateLimiter(_storage)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@dataclass
class Limiter:
    """A named limit with the message returned once it is exceeded."""

    name: str
    limit: RateLimitItem
    message: str

    def _key(self, key: str) -> tuple[str, str]:
        return (self.name, key)

    def test(self, key: str) -> bool:
        """Whether another hit would still be allowed."""
        return _strategy.test(self.limit, *self._key(key))

    def hit(self, key: str) -> bool:
        """Count a hit. Returns False once the window is exhausted."""
        return _strategy.hit(self.limit, *self._key(key))

    def headers(self, key: str) -> dict[str, str]:
        stats = _strategy.get_window_stats(self.limit, *self._key(key))
        reset_in = max(0, math.ceil(stats.reset_time - time.time()))
        return {
            "RateLimit-Limit": str(self.limit.amount),
            "RateLimit-Remaining": str(max(0, stats.remaining)),
            "RateLimit-Reset": str(reset_in),
        }

    def reject(self, key: str) -> HTTPException:
        headers = self.headers(key)
        headers["Retry-After"] = headers["RateLimit-Reset"]
        logger.warning(f"Rate limit '{self.name}' exceeded for {key}")
        return HTTPException(status_code=429, detail=self.message, headers=headers)


api_limiter = Limiter(
    "api",
    parse("100 per 15 minutes"),
    "Too many requests from this IP, please try again later.",
)
# Only failed attempts count against this one
auth_limiter = Limiter(
    "auth",
    parse("5 per 5 minutes"),
    "Too many login attempts. Please try again after 5 minutes.",
)
sync_limiter = Limiter(
    "sync",
    parse("10 per hour"),
    "Too many sync requests. Please wait before syncing again.",
)
ai_limiter = Limiter(
    "ai",
    parse("20 per hour"),
    "Too many AI requests. Please wait before generating more roadmaps.",
)
search_limiter = Limiter(
    "search",
    parse("30 per minute"),
    "Too many search requests. Please slow down.",
)


def limit_by_ip(limiter: Limiter) -> Callable:
    """Build a dependency that counts every request against `limiter`."""

    async def _dep(request: Request, response: Response) -> None:
        if not rate_limit_enabled():
            return
        key = client_ip(request)
        if not limiter.hit(key):
            raise limiter.reject(key)
        response.headers.update(limiter.headers(key))

    return _dep


def auth_key(request: Request, email: str | None) -> str:
    """Normalized email when one was submitted, client IP otherwise."""
    if email:
        return str(email).lower().strip()
    return client_ip(request)


def check_auth_attempts(key: str) -> None:
    """Reject when the failed-attempt budget for `key` is spent."""
    if rate_limit_enabled() and not auth_limiter.test(key):
        raise auth_limiter.reject(key)


def record_failed_attempt(key: str) -> None:
    if rate_limit_enabled():
        auth_limiter.hit(key)


def reject_invalid_attempt(request: Request, email: str | None) -> HTTPException | None:
    """Count an auth request that failed validation.

    Returns the 429 to send instead once the budget is already spent.
    """
    if not rate_limit_enabled():
        return None
    key = auth_key(request, email)
    if not auth_limiter.test(key):
        return auth_limiter.reject(key)
    auth_limiter.hit(key)
    return None


def reset_limits() -> None:
    """Forget every counter."""
    _storage.reset()


api_limit = limit_by_ip(api_limiter)
sync_limit = limit_by_ip(sync_limiter)
ai_limit = limit_by_ip(ai_limiter)
search_limit = limit_by_ip(search_limiter)
