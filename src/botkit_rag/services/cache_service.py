"""Redis-backed grouped cache for embeddings, search results and conversation windows."""

import hashlib
import json
from typing import Any, Optional

import redis
from redis import ConnectionPool, Redis

from botkit_rag.config import Settings, get_settings
from botkit_rag.utils.logging import get_logger

logger = get_logger("cache_service")


def make_cache_key(prefix: str, *parts: Any) -> str:
    """Build a deterministic content-addressed key.

    The parts are dumped to canonical JSON (sorted keys, compact separators)
    and hashed with md5, so ``make_cache_key("similar_", {"b": 1, "a": 2})``
    equals ``make_cache_key("similar_", {"a": 2, "b": 1})``.
    """
    payload = json.dumps(list(parts), sort_keys=True, separators=(",", ":"), default=str)
    return prefix + hashlib.md5(payload.encode("utf-8")).hexdigest()


class CacheService:
    """Grouped key/value cache with TTLs.

    Keys are namespaced as ``<prefix>:<group>:<key>``. Values are JSON encoded.
    Backend failures never propagate: reads fall back to the default and
    writes are logged and dropped.
    """

    def __init__(
        self,
        client: Optional[Redis] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.prefix = self.settings.redis.key_prefix
        if client is not None:
            self._client = client
        else:
            pool = ConnectionPool.from_url(
                self.settings.redis.url,
                password=self.settings.redis.password,
                decode_responses=True,
                socket_timeout=self.settings.redis.socket_timeout,
                socket_connect_timeout=self.settings.redis.socket_connect_timeout,
                max_connections=50,
            )
            self._client = redis.Redis(connection_pool=pool)

    def _key(self, key: str, group: str) -> str:
        return f"{self.prefix}:{group}:{key}"

    def get(self, key: str, group: str = "default", default: Any = None) -> Any:
        try:
            data = self._client.get(self._key(key, group))
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {group}:{key}: {e}")
            return default
        if data is None:
            return default
        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {group}:{key}: {e}")
            return default

    def set(self, key: str, value: Any, group: str = "default", ttl: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Value for {group}:{key} is not serializable: {e}")
            return False
        try:
            if ttl:
                self._client.setex(self._key(key, group), int(ttl), payload)
            else:
                self._client.set(self._key(key, group), payload)
            return True
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {group}:{key}: {e}")
            return False

    def delete(self, key: str, group: str = "default") -> bool:
        try:
            return bool(self._client.delete(self._key(key, group)))
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for {group}:{key}: {e}")
            return False

    def delete_pattern(self, pattern: str, group: str = "default") -> int:
        """Delete every key in a group matching a glob pattern (e.g. ``similar_*``)."""
        removed = 0
        try:
            batch = []
            for full_key in self._client.scan_iter(match=self._key(pattern, group), count=500):
                batch.append(full_key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
        except redis.RedisError as e:
            logger.warning(f"Cache pattern delete failed for {group}:{pattern}: {e}")
        return removed

    def flush_group(self, group: str) -> int:
        return self.delete_pattern("*", group)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
