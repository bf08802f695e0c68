"""
Evaluation Cache

Memoizes admission results by fingerprint. Entries expire after a TTL and
are invalidated as soon as a contributing policy changes version, using a
generation counter per policy instead of sweeping entries.

Lookups never take the write lock: the entry table and the generation table are
immutable mappings replaced wholesale by writers (copy-on-write).
Concurrent misses on one fingerprint may both compute; the last write wins.
Hit and miss counts are exact; they have a lock of their own.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from .models import EvaluationResult, PolicyVersion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached result and the policy generations it was computed against."""

    result: EvaluationResult
    inserted_at: float
    generations: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    invalidations: int
    size: int


class EvaluationCache:
    """Copy-on-write TTL cache keyed by evaluation fingerprint.

    A ``ttl_seconds`` of 0 disables expiry; entries then leave the cache
    through invalidation or eviction only.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._write_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._entries: Mapping[str, CacheEntry] = MappingProxyType({})
        self._generations: Mapping[str, int] = MappingProxyType({})
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    def get(self, fingerprint: str) -> Optional[EvaluationResult]:
        """Return the cached result, or None if absent, expired, or stale."""
        entry = self._entries.get(fingerprint)
        if entry is None or not self._is_live(entry, self._generations):
            with self._stats_lock:
                self._misses += 1
            return None
        with self._stats_lock:
            self._hits += 1
        return entry.result

    def generations_for(self, policy_ids: Iterable[str]) -> tuple[tuple[str, int], ...]:
        """Current generation of each policy; capture before computing a result."""
        generations = self._generations
        return tuple((pid, generations.get(pid, 0)) for pid in sorted(set(policy_ids)))

    def put(
        self,
        fingerprint: str,
        result: EvaluationResult,
        policy_ids: Iterable[str] = (),
        generations: Optional[tuple[tuple[str, int], ...]] = None,
    ) -> None:
        """
        Store ``result``.

        ``generations`` should be captured with ``generations_for`` before the
        result was computed, so an invalidation racing the computation still
        marks the entry stale. Defaults to the current generations.
        """
        entry = CacheEntry(
            result=result,
            inserted_at=self._clock(),
            generations=generations if generations is not None else self.generations_for(policy_ids),
        )
        with self._write_lock:
            entries = dict(self._entries)
            entries[fingerprint] = entry
            while len(entries) > self.max_entries:
                del entries[next(iter(entries))]
                self._evictions += 1
            self._entries = MappingProxyType(entries)

    def invalidate_policy(self, policy_id: str) -> None:
        """Make every entry that embedded ``policy_id`` stale."""
        with self._write_lock:
            generations = dict(self._generations)
            generations[policy_id] = generations.get(policy_id, 0) + 1
            self._generations = MappingProxyType(generations)
            self._invalidations += 1
        logger.debug("Invalidated cache generation for policy %s", policy_id)

    def on_policy_version(self, version: PolicyVersion) -> None:
        """Policy store listener: a policy's current version changed."""
        self.invalidate_policy(version.policy_id)

    def purge(self) -> int:
        """Drop expired and stale entries. Returns the number removed."""
        with self._write_lock:
            generations = self._generations
            live = {fp: e for fp, e in self._entries.items() if self._is_live(e, generations)}
            removed = len(self._entries) - len(live)
            self._entries = MappingProxyType(live)
        return removed

    def clear(self) -> None:
        with self._write_lock:
            self._entries = MappingProxyType({})

    def stats(self) -> CacheStats:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        return CacheStats(
            hits=hits,
            misses=misses,
            evictions=self._evictions,
            invalidations=self._invalidations,
            size=len(self._entries),
        )

    def __len__(self) -> int:
        return len(self._entries)

    def _is_live(self, entry: CacheEntry, generations: Mapping[str, int]) -> bool:
        if self.ttl_seconds and self._clock() - entry.inserted_at > self.ttl_seconds:
            return False
        return all(generations.get(pid, 0) == gen for pid, gen in entry.generations)
