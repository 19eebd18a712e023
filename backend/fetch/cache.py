from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from loguru import logger

from entities.types import PointEntity

DEFAULT_TTL_MS = 5 * 60 * 1000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class CacheEntry:
    key: str
    entities: tuple[PointEntity, ...]
    fetched_at: float


def _is_well_formed(entry: Any) -> bool:
    return (
        isinstance(entry, CacheEntry)
        and isinstance(entry.entities, tuple)
        and isinstance(entry.fetched_at, (int, float))
        and all(isinstance(e, PointEntity) for e in entry.entities)
    )


@dataclass
class EntityCache:
    """
    TTL cache of fetched result sets keyed by location key.

    Never the source of truth: a miss is always answerable by re-fetching, the
    cache only saves network round trips.

    - `get` past TTL is a miss and drops the entry
    - `sweep` (run on every `put`) drops anything older than 2x TTL, accessed or not
    """

    ttl_ms: float = DEFAULT_TTL_MS
    clock: Callable[[], float] = _monotonic_ms
    _entries: dict[str, Any] = field(default_factory=dict, repr=False)
    _hits: int = field(default=0, repr=False)
    _misses: int = field(default=0, repr=False)

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if not _is_well_formed(entry):
            logger.warning(f"Evicting malformed cache entry for {key!r}")
            self._entries.pop(key, None)
            self._misses += 1
            return None
        if self.clock() - entry.fetched_at > self.ttl_ms:
            self._entries.pop(key, None)
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def put(self, key: str, entities: Iterable[PointEntity]) -> CacheEntry:
        entry = CacheEntry(key=key, entities=tuple(entities), fetched_at=self.clock())
        self._entries[key] = entry
        self.sweep()
        return entry

    def sweep(self) -> int:
        now = self.clock()
        limit = 2 * self.ttl_ms
        stale = [
            k
            for k, e in self._entries.items()
            if not _is_well_formed(e) or now - e.fetched_at > limit
        ]
        for k in stale:
            self._entries.pop(k, None)
        if stale:
            logger.debug(f"Entity cache sweep evicted {len(stale)} entr(y/ies)")
        return len(stale)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "keys": self.keys(),
            "hits": self._hits,
            "misses": self._misses,
            "hitRate": (self._hits / total) if total else None,
        }
