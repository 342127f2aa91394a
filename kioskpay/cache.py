"""
Redis-backed fast paths for the kiosk backend

- processed webhook ids, checked before the webhook_events table
- recent Square token verifications, so kiosk status polling does not
  call Square on every poll

Redis is optional. With CACHE_ENABLED off, or Redis down, every lookup is a
miss and every write is a no-op.
"""
import json
import logging
from typing import Any, Optional

from .config import CACHE_ENABLED
from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)

WEBHOOK_PROCESSED_TTL = 86400 * 7  # providers stop retrying well within a week
TOKEN_VERIFIED_TTL = 300


def webhook_processed_key(provider: str, event_id: str) -> str:
    return f"webhook_processed:{provider}:{event_id}"


def token_verified_key(organization_id: str) -> str:
    return f"square_token_verified:{organization_id}"


class Cache:
    """JSON values in Redis; all failures are logged and treated as a miss"""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.redis_client = None

    def _get_client(self):
        if not self.enabled:
            return None
        if self.redis_client is None:
            try:
                self.redis_client = get_redis_client()
            except Exception as e:
                logger.warning(f"⚠️ Redis unavailable, skipping cache: {e}")
                return None
        return self.redis_client

    def get(self, key: str) -> Optional[Any]:
        client = self._get_client()
        if not client:
            return None
        try:
            raw = client.get(key)
        except Exception as e:
            logger.error(f"❌ Cache read failed for {key}: {e}")
            return None
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        client = self._get_client()
        if not client:
            return False
        try:
            client.setex(key, ttl, json.dumps(value))
        except Exception as e:
            logger.error(f"❌ Cache write failed for {key}: {e}")
            return False
        return True

    def delete(self, key: str) -> bool:
        client = self._get_client()
        if not client:
            return False
        try:
            client.delete(key)
        except Exception as e:
            logger.error(f"❌ Cache delete failed for {key}: {e}")
            return False
        return True


cache = Cache(enabled=CACHE_ENABLED)


def token_recently_verified(organization_id: str) -> bool:
    return bool(cache.get(token_verified_key(organization_id)))


def remember_token_verified(organization_id: str) -> None:
    cache.set(token_verified_key(organization_id), True, ttl=TOKEN_VERIFIED_TTL)


def forget_token_verified(organization_id: str) -> None:
    cache.delete(token_verified_key(organization_id))


def get_cache_stats() -> dict:
    """Availability and hit rate, reported by /api/health"""
    client = cache._get_client()
    if not client:
        return {"available": False}

    try:
        info = client.info()
    except Exception as e:
        logger.error(f"❌ Failed to read Redis stats: {e}")
        return {"available": False, "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    return {
        "available": True,
        "used_memory": info.get("used_memory_human"),
        "hit_rate": round(hits / max(hits + misses, 1) * 100, 1),
    }
