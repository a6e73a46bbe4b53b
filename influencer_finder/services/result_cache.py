from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any, Protocol

from influencer_finder.services.candidates import SearchQuery

LOGGER = logging.getLogger("influencer_finder.cache")

SEARCH_NAMESPACE = "search"
KEYWORD_NAMESPACE = "keywords"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int
    writes: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups


class CacheStore(Protocol):
    def get(self, key: str) -> CacheEntry | None:
        ...

    def set(self, key: str, payload: str, *, ttl_seconds: int) -> CacheEntry:
        ...

    def delete(self, key: str) -> bool:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...

    def count(self, prefix: str = "") -> int:
        ...

    def purge_expired(self) -> int:
        ...


def build_entry(
    key: str,
    payload: str,
    *,
    ttl_seconds: int,
    now: datetime,
) -> CacheEntry:
    if ttl_seconds <= 0:
        raise ValueError(f"cache ttl must be positive, got {ttl_seconds}")
    return CacheEntry(
        key=key,
        payload=payload,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


class InMemoryCacheStore:
    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> CacheEntry | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, payload: str, *, ttl_seconds: int) -> CacheEntry:
        now = self._clock()
        entry = build_entry(key, payload, ttl_seconds=ttl_seconds, now=now)
        with self._lock:
            self._purge_expired_locked(now)
            self._entries[key] = entry
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._purge_expired_locked(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def count(self, prefix: str = "") -> int:
        now = self._clock()
        with self._lock:
            return sum(
                1
                for key, entry in self._entries.items()
                if key.startswith(prefix) and not entry.is_expired(now)
            )

    def _purge_expired_locked(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def canonical_json(value: Mapping[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def topic_digest(topic: str) -> str:
    return _digest(" ".join(topic.lower().split()))[:16]


class ResultCache:
    """JSON cache over a `CacheStore`, scoped to one key namespace.

    Keys have the shape `<namespace>:<topic digest>:<params digest>` so that a
    topic can be evicted by prefix without touching unrelated topics.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        ttl_seconds: int,
        namespace: str = SEARCH_NAMESPACE,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"cache ttl must be positive, got {ttl_seconds}")
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._evictions = 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def key_for(self, topic: str, params: Mapping[str, Any]) -> str:
        return f"{self._namespace}:{topic_digest(topic)}:{_digest(canonical_json(params))}"

    def search_key(self, query: SearchQuery, *, credential_id: str, generation: int) -> str:
        params = {
            "mode": query.mode,
            "topic": query.normalized_topic,
            "region": query.filters.region.upper(),
            "min_subscribers": query.filters.min_subscribers,
            "min_views": query.filters.min_views,
            "max_results": query.filters.max_results,
            "credential_id": credential_id,
            "generation": generation,
        }
        return self.key_for(query.topic, params)

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        with self._lock:
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
        try:
            return json.loads(entry.payload)
        except json.JSONDecodeError:
            LOGGER.warning("cache entry undecodable; evicting key=%s", key)
            self._store.delete(key)
            return None

    def set(self, key: str, value: Any) -> CacheEntry:
        entry = self._store.set(
            key,
            json.dumps(value, sort_keys=True, ensure_ascii=False),
            ttl_seconds=self._ttl_seconds,
        )
        with self._lock:
            self._writes += 1
        return entry

    def invalidate_topic(self, topic: str) -> int:
        removed = self._store.delete_prefix(f"{self._namespace}:{topic_digest(topic)}:")
        self._record_evictions(removed)
        LOGGER.info("cache topic invalidated namespace=%s removed=%s", self._namespace, removed)
        return removed

    def invalidate_all(self) -> int:
        removed = self._store.delete_prefix(f"{self._namespace}:")
        self._record_evictions(removed)
        LOGGER.info("cache invalidated namespace=%s removed=%s", self._namespace, removed)
        return removed

    def stats(self) -> CacheStats:
        entries = self._store.count(f"{self._namespace}:")
        with self._lock:
            return CacheStats(
                entries=entries,
                hits=self._hits,
                misses=self._misses,
                writes=self._writes,
                evictions=self._evictions,
            )

    def _record_evictions(self, removed: int) -> None:
        with self._lock:
            self._evictions += removed
