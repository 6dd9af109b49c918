"""
Redis client utilities for caching, per-user locks and event de-duplication
"""
import json
import logging
import redis
from fastapi.encoders import jsonable_encoder
from typing import Optional, Dict, Any
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: str = None):
        self.client = redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return self.client.ping()
        except redis.RedisError:
            return False

    # Per-user serial lanes across replicas
    def user_lock(self, user_id: str, ttl_seconds: int = 60):
        """Distributed lock keyed on the user id (not yet acquired)"""
        return self.client.lock(f"share_lane:{user_id}", timeout=ttl_seconds, blocking_timeout=ttl_seconds)

    # Public share info cache
    def cache_share_info(self, share_class: str, payload: Dict[str, Any], ttl_seconds: int = 30) -> bool:
        """Cache the public pricing/availability view"""
        try:
            value = json.dumps(jsonable_encoder(payload))
            return bool(self.client.setex(f"share_info:{share_class}", ttl_seconds, value))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache share info: {e}")
            return False

    def get_cached_share_info(self, share_class: str) -> Optional[Dict[str, Any]]:
        """Get cached public pricing/availability view"""
        try:
            value = self.client.get(f"share_info:{share_class}")
            if value:
                return json.loads(value)
            return None
        except redis.RedisError as e:
            logger.warning(f"Failed to get cached share info: {e}")
            return None

    def invalidate_share_info(self) -> bool:
        """Drop cached views after any catalog mutation"""
        try:
            self.client.delete("share_info:regular", "share_info:cofounder")
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to invalidate share info: {e}")
            return False

    # Consumer de-duplication
    def mark_event_once(self, event_id: str, ttl_seconds: int = 7 * 24 * 3600) -> bool:
        """Returns True the first time an event id is seen"""
        key = f"notif:{event_id}"
        first = self.client.setnx(key, 1)
        if first:
            self.client.expire(key, ttl_seconds)
        return bool(first)

    def release_event(self, event_id: str) -> None:
        """Forget an event id so a redelivery of it is handled again"""
        self.client.delete(f"notif:{event_id}")

    # Statistics
    def get_cache_stats(self) -> Dict[str, Any]:
        """Get Redis cache statistics"""
        try:
            info = self.client.info()
            return {
                "connected": True,
                "used_memory": info.get("used_memory_human", "0B"),
                "connected_clients": info.get("connected_clients", 0),
                "keyspace_hits": info.get("keyspace_hits", 0),
                "keyspace_misses": info.get("keyspace_misses", 0),
            }
        except redis.RedisError as e:
            logger.warning(f"Failed to get cache stats: {e}")
            return {"connected": False, "error": str(e)}
