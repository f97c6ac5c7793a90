"""Redis sliding-window rate limits.

Routes that reach the push provider or write the token registry get their own,
tighter buckets; everything else shares the general API bucket.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from pushlink.config import Settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = ("/health", "/health/ready", "/metrics")


@dataclass(frozen=True)
class RateLimitRule:
    bucket: str
    limit: int


def caller_key(request: Request) -> str | None:
    """Bearer token hash, else client IP. Raw tokens never reach Redis."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return hashlib.sha256(auth[7:].encode()).hexdigest()[:16]
    if request.client:
        return f"ip:{request.client.host}"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-caller, per-bucket limits over a 60 second window. Fails open."""

    def __init__(self, app, settings: Settings) -> None:
        super().__init__(app)
        self._window_seconds = 60
        self._redis: redis.Redis | None = None
        self._redis_url = settings.redis_url
        self._default_rule = RateLimitRule("api", settings.rate_limit_per_minute)
        prefix = settings.api_prefix
        self._route_rules = {
            ("POST", f"{prefix}/notifications/test"): RateLimitRule(
                "notify", settings.rate_limit_test_notifications_per_minute
            ),
            ("POST", f"{prefix}/devices/register"): RateLimitRule(
                "register", settings.rate_limit_registrations_per_minute
            ),
        }

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def rule_for(self, request: Request) -> RateLimitRule | None:
        if request.url.path in EXEMPT_PATHS:
            return None
        return self._route_rules.get((request.method, request.url.path), self._default_rule)

    async def _record_hit(self, key: str) -> int:
        """Add this request to the window; return how many came before it."""
        r = await self._get_redis()
        now = time.time()
        pipe = r.pipeline()
        pipe.zremrangebyscore(key, 0, now - self._window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, self._window_seconds)
        results = await pipe.execute()
        return results[1]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rule = self.rule_for(request)
        identifier = caller_key(request)
        if rule is None or identifier is None:
            return await call_next(request)

        try:
            used = await self._record_hit(f"pushlink:ratelimit:{rule.bucket}:{identifier}")
        except (RedisError, OSError) as e:
            logger.warning("Rate limit check skipped (bucket=%s): %s", rule.bucket, e)
            return await call_next(request)

        headers = {"X-RateLimit-Limit": str(rule.limit)}
        if used >= rule.limit:
            logger.info("Rate limit hit bucket=%s caller=%s", rule.bucket, identifier)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={**headers, "Retry-After": str(self._window_seconds), "X-RateLimit-Remaining": "0"},
            )

        response = await call_next(request)
        response.headers.update(headers)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rule.limit - used - 1))
        return response
