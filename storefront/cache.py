"""Best-effort Redis cache.

The cache is advisory: every operation swallows Redis failures, logs them and
returns a neutral value so callers fall through to MongoDB.
"""
import json
import logging
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def connect(redis_url: str) -> "redis.Redis":
    return redis.Redis.from_url(redis_url, decode_responses=True)


class Cache:
    def __init__(self, client: "redis.Redis"):
        self.client = client

    def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except RedisError as e:
            logger.warning("Redis GET error for key %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            self.delete(key)
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            self.client.set(key, json.dumps(value), ex=ttl)
            return True
        except RedisError as e:
            logger.warning("Redis SET error for key %s: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        try:
            self.client.delete(key)
            return True
        except RedisError as e:
            logger.warning("Redis DEL error for key %s: %s", key, e)
            return False

    def delete_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``; returns how many went."""
        try:
            keys = list(self.client.scan_iter(match=f"{prefix}*"))
            if keys:
                self.client.delete(*keys)
            return len(keys)
        except RedisError as e:
            logger.warning("Redis prefix delete error for %s*: %s", prefix, e)
            return 0

    def incr(self, key: str) -> Optional[int]:
        try:
            return int(self.client.incr(key))
        except RedisError as e:
            logger.warning("Redis INCR error for key %s: %s", key, e)
            return None

    def expire(self, key: str, seconds: int) -> bool:
        try:
            return bool(self.client.expire(key, seconds))
        except RedisError as e:
            logger.warning("Redis EXPIRE error for key %s: %s", key, e)
            return False

    def raise_to(self, key: str, value: int, ttl: Optional[int] = None) -> bool:
        """Set an integer key to ``value`` unless it already holds more."""
        try:
            current = self.client.get(key)
            if current is not None and int(current) >= value:
                return True
            self.client.set(key, value, ex=ttl)
            return True
        except RedisError as e:
            logger.warning("Redis SET error for key %s: %s", key, e)
            return False

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False
