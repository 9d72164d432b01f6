"""
Key/value stores for ephemeral security counters.

Login-attempt counters, lock markers and pending 2FA challenges live here,
never in the SQL database. Two interchangeable backends:

- MemoryStore: process-local map. Only throttles within ONE process; a
  multi-instance deployment behind a load balancer must use Redis.
- RedisStore: INCR + EXPIRE in a pipeline, shared by every instance.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis
from flask import current_app

logger = logging.getLogger(__name__)

EXTENSION_KEY = "sessionguard.kvstore"


class KeyValueStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment `key` and (re)arm its TTL. Returns the new value."""
        raise NotImplementedError

    def delete(self, *keys: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key):
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key, value, ttl_seconds):
        with self._lock:
            self._data[key] = (str(value), self._clock() + ttl_seconds)

    def incr(self, key, ttl_seconds):
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) + 1 if entry else 1
            self._data[key] = (str(count), self._clock() + ttl_seconds)
            return count

    def delete(self, *keys):
        with self._lock:
            for key in keys:
                self._data.pop(key, None)


class RedisStore(KeyValueStore):
    def __init__(self, client: "redis.Redis", prefix: str = "sessionguard:"):
        self.redis = client
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key):
        value = self.redis.get(self._k(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key, value, ttl_seconds):
        self.redis.set(self._k(key), value, ex=max(int(ttl_seconds), 1))

    def incr(self, key, ttl_seconds):
        pipe = self.redis.pipeline()
        pipe.incr(self._k(key))
        pipe.expire(self._k(key), max(int(ttl_seconds), 1))
        results = pipe.execute()
        return int(results[0])

    def delete(self, *keys):
        if keys:
            self.redis.delete(*[self._k(k) for k in keys])


def build_store(config) -> KeyValueStore:
    url = config.get("REDIS_URL")
    if not url:
        logger.info("REDIS_URL not set - using in-memory counter store (single instance only)")
        return MemoryStore()

    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
        logger.info("Redis counter store connected")
        return RedisStore(client)
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory counter store.")
        return MemoryStore()


def init_store(app, store: Optional[KeyValueStore] = None) -> KeyValueStore:
    store = store or build_store(app.config)
    app.extensions[EXTENSION_KEY] = store
    return store


def get_store() -> KeyValueStore:
    return current_app.extensions[EXTENSION_KEY]
