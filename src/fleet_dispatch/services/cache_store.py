"""In-process TTL cache with lazy expiry and a background sweep.

Entries expire lazily: a read that lands on or past ``created_at + ttl``
removes the entry and counts as a miss.  ``run_maintenance`` periodically
purges entries nobody reads any more and logs a stats snapshot.

The store is shared by the event loop and the scoring worker threads, so a
single ``threading.Lock`` guards the map and the hit/miss counters.  The
lock is only ever held for dictionary operations.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from fleet_dispatch.domain.schemas import CacheStats

logger = logging.getLogger(__name__)

@dataclass
class CacheEntry:
    value: Any
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


def _approx_size(key: str, value: Any) -> int:
    return len(key) + len(repr(value))


def _key_prefix(key: str) -> str:
    """Group keys for stats: ``scoring_results_j1_v2`` -> ``scoring_results``."""
    parts = key.split("_")
    if len(parts) >= 2:
        return "_".join(parts[:2])
    return key


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(sorted(_format_param(v) for v in value))
    return str(value)


def canonical_key(prefix: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Build an order-independent cache key.

    ``None`` values are dropped so that "not set" and "absent" share a key.

        >>> canonical_key("matching_results", {"limit": 5, "urgency_only": True})
        'matching_results_limit=5&urgency_only=true'
    """
    if not params:
        return prefix
    parts = [
        f"{name}={_format_param(value)}"
        for name, value in sorted(params.items())
        if value is not None
    ]
    if not parts:
        return prefix
    return f"{prefix}_{'&'.join(parts)}"


class CacheStore:
    """Thread-safe key/value store with per-entry TTL (seconds)."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` for ``ttl`` seconds.

        A non-positive ttl means the value is already expired: nothing is
        stored and any previous entry for the key is dropped.
        """
        if ttl <= 0:
            logger.debug("Not caching %s with non-positive ttl %s", key, ttl)
            with self._lock:
                self._entries.pop(key, None)
            return
        entry = CacheEntry(value=value, created_at=self._clock(), ttl=ttl)
        with self._lock:
            self._entries[key] = entry

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def peek(self, key: str, default: Any = None) -> Any:
        """Like ``get`` but without touching the hit/miss counters."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                return default
            return entry.value

    def has(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(now):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def delete_many(self, prefixes: Iterable[str]) -> int:
        return sum(self.delete_prefix(p) for p in prefixes)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def keys(self) -> list[str]:
        now = self._clock()
        with self._lock:
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Remove expired entries without holding the lock across the scan.

        A key refreshed between the snapshot and its removal is kept.
        """
        now = self._clock()
        with self._lock:
            snapshot = list(self._entries.items())

        removed = 0
        for key, entry in snapshot:
            if not entry.is_expired(now):
                continue
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)
        return removed

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            snapshot = list(self._entries.items())
            hits, misses = self._hits, self._misses

        expired = 0
        approx_bytes = 0
        by_prefix: dict[str, int] = {}
        for key, entry in snapshot:
            if entry.is_expired(now):
                expired += 1
            approx_bytes += _approx_size(key, entry.value)
            prefix = _key_prefix(key)
            by_prefix[prefix] = by_prefix.get(prefix, 0) + 1

        lookups = hits + misses
        hit_rate = round(hits / lookups * 100, 1) if lookups else 0.0
        return CacheStats(
            entry_count=len(snapshot),
            expired_count=expired,
            approx_bytes=approx_bytes,
            hits=hits,
            misses=misses,
            hit_rate=hit_rate,
            by_prefix=by_prefix,
        )

    async def run_maintenance(
        self,
        interval_seconds: float,
        stats_every_seconds: Optional[float] = None,
    ) -> None:
        """Sweep expired entries forever; log stats every ``stats_every_seconds``."""
        logger.info("Cache maintenance loop started (interval=%ss)", interval_seconds)
        last_stats = self._clock()
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.purge_expired()
                if stats_every_seconds and self._clock() - last_stats >= stats_every_seconds:
                    s = self.stats()
                    logger.info(
                        "Cache stats: entries=%d expired=%d bytes=%d hit_rate=%.1f%%",
                        s.entry_count, s.expired_count, s.approx_bytes, s.hit_rate,
                    )
                    last_stats = self._clock()
            except Exception as exc:
                logger.error("Cache maintenance error: %s", exc)
