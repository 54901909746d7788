from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import redis

from leadhub.core.config import get_settings
from leadhub.metrics import observe_lead_cache_invalidation

logger = logging.getLogger("leadhub.crm.cache")

LEADS_TAG = "leads"
LEADS_LIST_TAG = "leads_list"
LEADS_STATS_TAG = "leads_stats"


def lead_tag(lead_id: Any) -> str:
    return f"lead:{lead_id}"


class TaggedCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any, ttl: int, tags: list[str]) -> None: ...

    def forget(self, key: str) -> None: ...

    def invalidate_tags(self, tags: list[str]) -> int: ...

    def remember(self, key: str, ttl: int, tags: list[str], compute: Callable[[], Any]) -> tuple[Any, bool]: ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


@dataclass
class _Entry:
    payload: str
    expires_at: float
    tags: tuple[str, ...]


def _log_stale_write(key: str, tags: list[str]) -> None:
    logger.info("crm.cache.stale_write_skipped", extra={"cache_key": key, "cache_tags": tags})


class InMemoryTaggedCache:
    """Process-local tagged cache.

    Values are stored as JSON text, so every hit decodes a fresh copy and no
    caller can mutate a cached entry in place. Every tag carries a generation
    counter bumped on invalidation; ``remember`` only stores a computed value
    when none of its tags moved while it was being computed.
    """

    sweep_interval_seconds = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._generations: dict[str, int] = {}
        self._next_sweep_at = 0.0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._drop(key)
                return None
            payload = entry.payload
        return json.loads(payload)

    def put(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        payload = _encode(value)
        with self._lock:
            self._store(key, payload, ttl, tags)

    def forget(self, key: str) -> None:
        with self._lock:
            self._drop(key)

    def invalidate_tags(self, tags: list[str]) -> int:
        removed = 0
        with self._lock:
            for tag in tags:
                self._generations[tag] = self._generations.get(tag, 0) + 1
                for key in list(self._tag_index.pop(tag, set())):
                    if key in self._entries:
                        self._drop(key)
                        removed += 1
        observe_lead_cache_invalidation(tags)
        return removed

    def remember(self, key: str, ttl: int, tags: list[str], compute: Callable[[], Any]) -> tuple[Any, bool]:
        cached = self.get(key)
        if cached is not None:
            return cached, True
        with self._lock:
            stamp = self._stamp(tags)
        payload = _encode(compute())
        with self._lock:
            fresh = self._stamp(tags) == stamp
            if fresh:
                self._store(key, payload, ttl, tags)
        if not fresh:
            _log_stale_write(key, tags)
        return json.loads(payload), False

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()

    def _stamp(self, tags: list[str]) -> tuple[int, ...]:
        return tuple(self._generations.get(tag, 0) for tag in tags)

    def _store(self, key: str, payload: str, ttl: int, tags: list[str]) -> None:
        now = self._clock()
        if now >= self._next_sweep_at:
            self._sweep(now)
        self._drop(key)
        self._entries[key] = _Entry(payload=payload, expires_at=now + ttl, tags=tuple(tags))
        for tag in tags:
            self._tag_index.setdefault(tag, set()).add(key)

    def _sweep(self, now: float) -> None:
        for key in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            self._drop(key)
        self._next_sweep_at = now + self.sweep_interval_seconds

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            members = self._tag_index.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    self._tag_index.pop(tag, None)


class RedisTaggedCache:
    """Tagged cache on Redis: one string key per entry plus one set per tag listing its member keys.

    Tag generations live in their own counters. ``remember`` watches them and
    drops its write when an invalidation lands between the read and the store.
    """

    # outlives every TTL tier, so a lapsed counter can only ever skip a write
    generation_ttl_seconds = 86400

    def __init__(self, client: redis.Redis, prefix: str) -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str) -> RedisTaggedCache:
        client = redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    def _generation_key(self, tag: str) -> str:
        return f"{self.prefix}:gen:{tag}"

    def get(self, key: str) -> Any | None:
        payload = self.client.get(self._key(key))
        if payload is None:
            return None
        return json.loads(payload)

    def put(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        pipe = self.client.pipeline()
        self._queue_store(pipe, key, _encode(value), ttl, tags)
        pipe.execute()

    def forget(self, key: str) -> None:
        self.client.delete(self._key(key))

    def invalidate_tags(self, tags: list[str]) -> int:
        removed = 0
        for tag in tags:
            tag_key = self._tag_key(tag)
            generation_key = self._generation_key(tag)
            members = list(self.client.smembers(tag_key))
            pipe = self.client.pipeline()
            if members:
                pipe.delete(*members)
            pipe.delete(tag_key)
            pipe.incr(generation_key)
            pipe.expire(generation_key, self.generation_ttl_seconds)
            results = pipe.execute()
            if members:
                removed += int(results[0] or 0)
        observe_lead_cache_invalidation(tags)
        return removed

    def remember(self, key: str, ttl: int, tags: list[str], compute: Callable[[], Any]) -> tuple[Any, bool]:
        cached = self.get(key)
        if cached is not None:
            return cached, True
        generation_keys = [self._generation_key(tag) for tag in tags]
        stamp = self.client.mget(generation_keys) if generation_keys else []
        payload = _encode(compute())
        if not self._store_if_unchanged(key, payload, ttl, tags, generation_keys, stamp):
            _log_stale_write(key, tags)
        return json.loads(payload), False

    def _queue_store(self, pipe: Any, key: str, payload: str, ttl: int, tags: list[str]) -> None:
        full_key = self._key(key)
        pipe.setex(full_key, ttl, payload)
        for tag in tags:
            pipe.sadd(self._tag_key(tag), full_key)

    def _store_if_unchanged(
        self,
        key: str,
        payload: str,
        ttl: int,
        tags: list[str],
        generation_keys: list[str],
        stamp: list[Any],
    ) -> bool:
        if not generation_keys:
            pipe = self.client.pipeline()
            self._queue_store(pipe, key, payload, ttl, tags)
            pipe.execute()
            return True
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(*generation_keys)
                if pipe.mget(generation_keys) != stamp:
                    return False
                pipe.multi()
                self._queue_store(pipe, key, payload, ttl, tags)
                pipe.execute()
            except redis.WatchError:
                return False
        return True


@lru_cache
def get_lead_cache() -> TaggedCache:
    settings = get_settings()
    if settings.cache_backend == "redis":
        logger.info("crm.cache.backend_selected", extra={"operation": "redis"})
        return RedisTaggedCache.from_url(settings.redis_url, settings.cache_prefix)
    return InMemoryTaggedCache()
