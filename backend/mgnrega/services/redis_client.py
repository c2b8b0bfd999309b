import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

import requests

logger = logging.getLogger("mgnrega.cache")


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: int = 3600) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCache:
    """In-process cache with per-key expiry, checked lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry["expires"]:
            self._entries.pop(key, None)
            return None
        return entry["value"]

    def set(self, key, value, ttl=3600):
        self._entries[key] = {"value": value, "expires": self._clock() + ttl}

    def delete(self, key):
        self._entries.pop(key, None)


# --- Upstash REST API ---
class UpstashCache:
    """Redis over the Upstash REST API. Every failure is logged and read as a miss."""

    def __init__(self, url: str, token: str, session: Optional[requests.Session] = None, timeout: float = 5.0):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def _headers(self):
        return {"Authorization": f"Bearer {self.token}"}

    def get(self, key):
        try:
            r = self.session.get(f"{self.url}/get/{key}", headers=self._headers, timeout=self.timeout)
            if r.status_code != 200:
                logger.warning("Redis get(%s) non-200: %s", key, r.status_code)
                return None
            value = r.json().get("result")
            if value is None:
                return None
            try:
                return json.loads(value)
            except (TypeError, ValueError):
                return value
        except (requests.RequestException, ValueError) as e:
            logger.warning("Redis get(%s) failed: %s", key, e)
            return None

    def set(self, key, value, ttl=3600):
        try:
            r = self.session.post(
                f"{self.url}/set/{key}",
                params={"EX": ttl},
                headers={**self._headers, "Content-Type": "application/json"},
                data=json.dumps(value),
                timeout=self.timeout,
            )
            if r.status_code != 200:
                logger.warning("Redis set(%s) non-200: %s", key, r.status_code)
        except (requests.RequestException, TypeError, ValueError) as e:
            logger.warning("Redis set(%s) failed: %s", key, e)

    def delete(self, key):
        try:
            self.session.post(f"{self.url}/del/{key}", headers=self._headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Redis delete(%s) failed: %s", key, e)


def create_cache(settings) -> Cache:
    backend = settings.CACHE_BACKEND
    if backend == "upstash":
        if not settings.UPSTASH_REDIS_REST_URL or not settings.UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("CACHE_BACKEND=upstash needs UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN")
        logger.info("Using Upstash Redis cache at %s", settings.UPSTASH_REDIS_REST_URL)
        return UpstashCache(settings.UPSTASH_REDIS_REST_URL, settings.UPSTASH_REDIS_REST_TOKEN)
    if backend == "memory":
        logger.info("Using in-memory cache")
        return MemoryCache()
    raise ValueError(f"Unknown CACHE_BACKEND: {backend!r}")


def cache_get(cache: Optional[Cache], key: str):
    """Read ``key``, treating a missing cache or any cache error as a miss."""
    if cache is None:
        return None
    try:
        return cache.get(key)
    except Exception as e:
        logger.warning("Cache read failed for %s: %s", key, e)
        return None


def cache_set(cache: Optional[Cache], key: str, value, ttl: int) -> None:
    if cache is None:
        return
    try:
        cache.set(key, value, ttl=ttl)
    except Exception as e:
        logger.warning("Cache write failed for %s: %s", key, e)
