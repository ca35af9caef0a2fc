"""HTTP middleware and per-route rate limits."""

import hashlib
import logging
import time
import uuid

import redis.asyncio as redis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from hostelhub.config import settings
from hostelhub.core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

# Never throttled: probes, docs and provider callbacks
UNTHROTTLED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json", f"{settings.api_prefix}/webhooks")


def client_key(request: Request) -> str:
    """Identify the caller: the bearer token when present, else the client IP."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return "token:" + hashlib.sha256(auth[7:].encode()).hexdigest()[:32]

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return "ip:" + forwarded.split(",")[0].strip()
    return "ip:" + (request.client.host if request.client else "unknown")


class SlidingWindowCounter:
    """Requests per caller over the last minute, kept in a Redis sorted set."""

    def __init__(self, namespace: str, redis_url: str | None = None):
        self.namespace = namespace
        self.redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def hit(self, key: str) -> int:
        """Record one request and return how many preceded it in the window."""
        client = await self.get_redis()
        now = time.time()
        bucket = f"rate:{self.namespace}:{key}"

        async with client.pipeline(transaction=True) as pipe:
            await pipe.zremrangebyscore(bucket, 0, now - WINDOW_SECONDS)
            await pipe.zcard(bucket)
            await pipe.zadd(bucket, {uuid.uuid4().hex: now})
            await pipe.expire(bucket, WINDOW_SECONDS)
            results = await pipe.execute()
        return results[1]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global per-caller request cap (disabled in development)."""

    def __init__(self, app, requests_per_minute: int = 100):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.counter = SlidingWindowCounter("global")

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path.startswith(UNTHROTTLED_PREFIXES):
            return await call_next(request)

        try:
            seen = await self.counter.hit(client_key(request))
        except redis.RedisError:
            logger.warning("Rate limiter unavailable, allowing request")
            return await call_next(request)

        if seen >= self.requests_per_minute:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(WINDOW_SECONDS)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.requests_per_minute - seen - 1))
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log slow or failed ones."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        elapsed = time.perf_counter() - started

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        if response.status_code >= 500:
            logger.error(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {elapsed:.3f}s (request_id={request_id})"
            )
        elif elapsed > 1.0:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.3f}s (request_id={request_id})"
            )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add standard security headers to every response."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)
        response.headers.update(self.HEADERS)
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RateLimiter:
    """Per-caller limit for one group of routes, used as a dependency."""

    def __init__(self, requests_per_minute: int, key_prefix: str):
        self.requests_per_minute = requests_per_minute
        self.key_prefix = key_prefix
        self.counter = SlidingWindowCounter(key_prefix)

    async def __call__(self, request: Request) -> None:
        """Raises RateLimitExceeded once the caller is over the limit."""
        if settings.environment == "development":
            return

        try:
            seen = await self.counter.hit(client_key(request))
        except redis.RedisError:
            logger.warning(f"Rate limiter unavailable for {self.key_prefix}, allowing request")
            return

        if seen >= self.requests_per_minute:
            raise RateLimitExceeded()


# Booking attempts per tenant; repeated submits hit the same hold anyway
booking_limiter = RateLimiter(requests_per_minute=10, key_prefix="booking")
payment_limiter = RateLimiter(requests_per_minute=20, key_prefix="payment")
