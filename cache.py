import hashlib
import json
import os
import threading
from datetime import timedelta
from typing import Protocol

import redis
from dotenv import load_dotenv

from helpers import Clock, SystemClock

load_dotenv()

_redis: redis.Redis | None = None


def _build_redis_url() -> str:
    if raw := os.getenv("REDIS_URL"):
        return raw

    host = os.getenv("REDIS_HOST", "localhost")
    port = os.getenv("REDIS_PORT", "6379")
    db = os.getenv("REDIS_DB", "0")
    return f"redis://{host}:{port}/{db}"


REDIS_URL = _build_redis_url()


def init_redis() -> redis.Redis:
    """Create a single Redis client for the process (API or worker)."""
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def normalize_params(params: dict) -> tuple[dict, str]:
    clean = {k: v for k, v in params.items() if v is not None}
    payload = json.dumps(clean, sort_keys=True, separators=(",", ":"))
    return clean, payload


def make_key(prefix: str, params: dict) -> str:
    _, payload = normalize_params(params)
    h = hashlib.sha1(payload.encode()).hexdigest()[:16]
    return f"{prefix}:{h}"


class CounterStore(Protocol):
    """Shared counters with expiry; the only cross-request mutable state."""

    def get(self, key: str) -> int | None: ...

    def put(self, key: str, value: int, ttl: int) -> None: ...

    def increment(self, key: str, ttl: int) -> int: ...

    def forget(self, key: str) -> None: ...

    def add(self, key: str, value: int, ttl: int) -> bool: ...


class RedisCounterStore:
    def __init__(self, client: redis.Redis | None = None, prefix: str = "media_pipeline:"):
        self._client = client
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        return self._client or init_redis()

    def get(self, key: str) -> int | None:
        raw = self.client.get(self.prefix + key)
        return int(raw) if raw is not None else None

    def put(self, key: str, value: int, ttl: int) -> None:
        self.client.set(self.prefix + key, value, ex=ttl)

    def increment(self, key: str, ttl: int) -> int:
        full_key = self.prefix + key
        pipe = self.client.pipeline()
        pipe.incr(full_key)
        pipe.expire(full_key, ttl)
        count, _ = pipe.execute()
        return int(count)

    def forget(self, key: str) -> None:
        self.client.delete(self.prefix + key)

    def add(self, key: str, value: int, ttl: int) -> bool:
        return bool(self.client.set(self.prefix + key, value, ex=ttl, nx=True))


class MemoryCounterStore:
    """Process-local counter store, used in tests and single-process setups."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._values: dict[str, tuple[int, object]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self.clock.now():
            del self._values[key]
            return None
        return value

    def get(self, key: str) -> int | None:
        with self._lock:
            return self._live(key)

    def put(self, key: str, value: int, ttl: int) -> None:
        with self._lock:
            self._values[key] = (value, self.clock.now() + timedelta(seconds=ttl))

    def increment(self, key: str, ttl: int) -> int:
        with self._lock:
            value = (self._live(key) or 0) + 1
            self._values[key] = (value, self.clock.now() + timedelta(seconds=ttl))
            return value

    def forget(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def add(self, key: str, value: int, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self.clock.now() + timedelta(seconds=ttl))
            return True
