"""
Rate limiting for the kiosk's public endpoints

Counters live in process memory and are pushed to Redis every few seconds so
several workers roughly share one budget. Kiosks at the same location usually
share a public IP, so requests are counted per device when the kiosk sends a
device_id and per IP otherwise.
"""

import logging
import os
import time
from threading import Lock
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

from .config import RATE_LIMIT_ENABLED

logger = logging.getLogger(__name__)

REDIS_SYNC_INTERVAL = 10
CLEANUP_INTERVAL = 60

redis_client: Optional[redis.Redis] = None


def _masked(redis_url: str) -> str:
    if "@" not in redis_url:
        return "****"
    scheme = redis_url.split(":", 1)[0]
    return f"{scheme}://****@{redis_url.rsplit('@', 1)[1]}"


def get_redis_client() -> redis.Redis:
    """Shared Redis connection for caching and rate limiting (REDIS_URL or REDIS_HOST/PORT)"""
    global redis_client
    if redis_client is not None:
        return redis_client

    options = {
        "decode_responses": True,
        "socket_connect_timeout": 5,
        "socket_timeout": 10,
        "retry_on_timeout": True,
        "health_check_interval": 30,
        "max_connections": 20,
    }
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        logger.info(f"📡 Connecting to Redis at {_masked(redis_url)}")
        client = redis.from_url(redis_url, **options)
    else:
        host = os.getenv("REDIS_HOST", "localhost")
        port = int(os.getenv("REDIS_PORT", "6379"))
        logger.info(f"📡 Connecting to Redis at {host}:{port}")
        client = redis.Redis(
            host=host,
            port=port,
            password=os.getenv("REDIS_PASSWORD"),
            db=int(os.getenv("REDIS_DB", "0")),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
            **options,
        )

    client.ping()
    redis_client = client
    logger.info("✅ Redis connected")
    return redis_client


class WindowCounter:
    """Fixed-window request counts, mirrored to Redis when it is reachable"""

    def __init__(self):
        self.entries: dict[str, dict] = {}
        self.lock = Lock()
        self.last_cleanup = 0

    def _cleanup(self, now: int):
        if now - self.last_cleanup < CLEANUP_INTERVAL:
            return
        expired = [key for key, entry in self.entries.items() if now >= entry["reset_time"]]
        for key in expired:
            del self.entries[key]
        self.last_cleanup = now

    def _load(self, key: str, window_seconds: int, now: int, client: Optional[redis.Redis]) -> dict:
        entry = {"count": 0, "reset_time": now + window_seconds, "synced_at": now}
        if client is None:
            return entry
        try:
            count = client.get(key)
            ttl = client.ttl(key)
        except redis.RedisError as e:
            logger.warning(f"⚠️ Could not read rate limit {key} from Redis: {e}")
            return entry
        if count and ttl > 0:
            entry["count"] = int(count)
            entry["reset_time"] = now + ttl
        return entry

    def hit(self, key: str, limit: int, window_seconds: int, client: Optional[redis.Redis]) -> tuple[bool, int, int]:
        """Count one request; returns (allowed, count, seconds until the window resets)"""
        now = int(time.time())
        with self.lock:
            self._cleanup(now)
            entry = self.entries.get(key)
            if entry is None:
                entry = self.entries[key] = self._load(key, window_seconds, now, client)
            elif now >= entry["reset_time"]:
                entry.update(count=0, reset_time=now + window_seconds, synced_at=0)

            allowed = entry["count"] < limit
            if allowed:
                entry["count"] += 1

            if client is not None and now - entry["synced_at"] >= REDIS_SYNC_INTERVAL:
                try:
                    client.set(key, entry["count"], ex=window_seconds)
                    entry["synced_at"] = now
                except redis.RedisError as e:
                    logger.warning(f"⚠️ Could not sync rate limit {key} to Redis: {e}")

            return allowed, entry["count"], max(0, entry["reset_time"] - now)


counter = WindowCounter()


def client_key(request: Request) -> str:
    device_id = request.query_params.get("device_id")
    if device_id:
        return f"device:{device_id}"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def _redis_or_none() -> Optional[redis.Redis]:
    try:
        return get_redis_client()
    except redis.RedisError as e:
        logger.debug(f"Rate limiting in memory only: {e}")
        return None


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str):
    """
    Dependency factory, e.g.

        rate_limit_status = create_rate_limiter(limit=120, window_seconds=60, key_prefix="square_status")

        @router.get("/status")
        async def status(_: None = Depends(rate_limit_status)): ...
    """

    async def rate_limiter(request: Request):
        if not RATE_LIMIT_ENABLED:
            return

        key = f"rate_limit:{key_prefix}:{client_key(request)}"
        try:
            allowed, count, retry_after = counter.hit(key, limit, window_seconds, _redis_or_none())
        except Exception as e:
            logger.error(f"❌ Rate limiter failed for {key}, denying request: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Rate limiting service temporarily unavailable",
            ) from e

        if not allowed:
            logger.warning(f"🚫 Rate limit exceeded for {key} ({count}/{limit} in {window_seconds}s)")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "message": f"Too many requests. Try again in {retry_after} seconds.",
                    "retry_after": retry_after,
                    "limit": limit,
                },
                headers={"Retry-After": str(retry_after)},
            )

    return rate_limiter
