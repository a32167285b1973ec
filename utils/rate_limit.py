import json
import logging
from time import time
from typing import Dict, Iterable, Optional, Tuple

import redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)


def connect_redis(redis_url: Optional[str]):
    """Redis client for shared buckets, or None to keep buckets in memory."""
    if not redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return None
    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
        logger.info("Redis connected for rate limiting")
        return client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory rate limiting.")
        return None


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Token bucket per client IP, shared through Redis when available.

    Exempt paths (the Stripe webhook) are never limited.
    """

    def __init__(
        self,
        app,
        requests_per_minute: int = 60,
        redis_url: Optional[str] = None,
        exempt_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self.capacity = float(requests_per_minute)
        self.refill_time_window = 60.0
        self.exempt_paths = frozenset(exempt_paths)
        self._redis = connect_redis(redis_url)
        # ip -> (tokens, last_refill_ts)
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        return min(self.capacity, tokens + (elapsed / self.refill_time_window) * self.capacity)

    def _take_redis(self, ip: str, now: float) -> Optional[bool]:
        """None means Redis failed and the caller should use memory."""
        key = f"rate_limit:{ip}"
        try:
            raw = self._redis.get(key)
            if raw:
                data = json.loads(raw)
                tokens = self._refill(float(data["tokens"]), float(data["last_refill"]), now)
            else:
                tokens = self.capacity
            if tokens < 1.0:
                return False
            self._redis.setex(
                key,
                int(self.refill_time_window) + 10,
                json.dumps({"tokens": tokens - 1.0, "last_refill": now}),
            )
            return True
        except (redis.RedisError, ValueError, KeyError) as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _take_memory(self, ip: str, now: float) -> bool:
        tokens, last_refill = self._buckets.get(ip, (self.capacity, now))
        tokens = self._refill(tokens, last_refill, now)
        if tokens < 1.0:
            return False
        self._buckets[ip] = (tokens - 1.0, now)
        return True

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        ip = self._get_client_ip(request)
        now = time()
        allowed = self._take_redis(ip, now) if self._redis is not None else None
        if allowed is None:
            allowed = self._take_memory(ip, now)

        if not allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "data": {},
                    "error": "rate_limited",
                    "message": "Rate limit exceeded. Try again shortly.",
                },
            )
        return await call_next(request)
