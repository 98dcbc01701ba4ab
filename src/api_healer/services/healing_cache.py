"""
Healing cache with single-flight computation.

Decisions are cached per failure fingerprint with a TTL and LRU eviction.
Concurrent requests for the same fingerprint share one in-flight computation:
the first caller (the leader) computes, later callers await its future.
"""

import asyncio
import json
import os
import re
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..core.logging_config import get_healing_logger
from ..core.models import HealingCacheEntry, HealingDecision


class LeaderCancelledError(Exception):
    """Raised to a waiter whose in-flight computation was cancelled by its leader."""

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"In-flight healing for {fingerprint[:12]} was cancelled")


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    expirations: int = 0
    corrupt_entries: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, float]:
        data = asdict(self)
        data["hit_rate"] = round(self.hit_rate, 4)
        return data


class HealingCache:
    """TTL + LRU cache of healing decisions keyed by failure fingerprint."""

    def __init__(self, ttl: int = 3600, max_size: int = 1000,
                 storage_path: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the cache.

        Args:
            ttl: Entry lifetime in seconds
            max_size: Entry count at which least recently used entries are evicted
            storage_path: Optional JSON file the cache is mirrored into
            clock: Time source returning epoch seconds
        """
        self.ttl = ttl
        self.max_size = max_size
        self.storage_path = Path(storage_path) if storage_path else None
        self.clock = clock
        self.spec_version: Optional[str] = None
        self.stats = CacheStats()
        self.logger = get_healing_logger("cache")

        self._entries: "OrderedDict[str, HealingCacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

        if self.storage_path:
            self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, fingerprint: str) -> Optional[HealingDecision]:
        """Look up a live entry, counting the hit or miss."""
        entry = self._entries.get(fingerprint)
        if entry is not None and entry.is_expired(self.clock()):
            del self._entries[fingerprint]
            self.stats.expirations += 1
            entry = None

        if entry is None:
            self.stats.misses += 1
            return None

        self._entries.move_to_end(fingerprint)
        self.stats.hits += 1
        return entry.decision

    async def get_or_compute(self, fingerprint: str,
                             compute: Callable[[], Awaitable[HealingDecision]],
                             test_ref: str = "") -> Tuple[HealingDecision, bool]:
        """
        Return the cached decision or compute it exactly once.

        Returns:
            Tuple of (decision, cache_hit). Waiters on an in-flight computation
            count as hits: they did not pay for the decision.

        Raises:
            LeaderCancelledError: In a waiter, when the leader was cancelled
                but the waiter itself was not
            Whatever the leader's computation raised, including CancelledError
        """
        async with self._lock:
            cached = self.get(fingerprint)
            if cached is not None:
                return cached, True

            future = self._inflight.get(fingerprint)
            leader = future is None
            if leader:
                future = asyncio.get_running_loop().create_future()
                self._inflight[fingerprint] = future
            else:
                self.stats.coalesced += 1

        if not leader:
            self.logger.debug(f"Waiting on in-flight healing for {fingerprint[:12]}")
            # A cancelled waiter must not cancel the leader's future
            try:
                decision = await asyncio.shield(future)
            except asyncio.CancelledError:
                if future.cancelled() and not asyncio.current_task().cancelling():
                    raise LeaderCancelledError(fingerprint) from None
                raise
            return decision, True

        try:
            decision = await compute()
        except asyncio.CancelledError:
            self._inflight.pop(fingerprint, None)
            future.cancel()
            raise
        except Exception as e:
            self._inflight.pop(fingerprint, None)
            future.set_exception(e)
            # Mark retrieved; waiters re-raise it themselves
            future.exception()
            raise

        self._inflight.pop(fingerprint, None)
        if decision.cacheable:
            self.put(fingerprint, decision, test_ref)
        future.set_result(decision)
        return decision, False

    def put(self, fingerprint: str, decision: HealingDecision, test_ref: str = "") -> None:
        now = self.clock()
        self._entries[fingerprint] = HealingCacheEntry(
            fingerprint=fingerprint,
            decision=decision,
            created_at=now,
            expires_at=now + self.ttl,
            test_ref=test_ref,
        )
        self._entries.move_to_end(fingerprint)
        self._evict_overflow()
        self._save()

    def configure(self, ttl: int, max_size: int) -> None:
        """Apply new limits. Existing entries keep the expiry they were stored with."""
        self.ttl = ttl
        self.max_size = max_size
        if self._evict_overflow():
            self._save()

    def _evict_overflow(self) -> int:
        evicted_count = 0
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            evicted_count += 1
            self.logger.debug(f"Evicted cache entry {evicted[:12]}")
        return evicted_count

    def ensure_spec_version(self, spec_version: Optional[str]) -> bool:
        """Drop every entry when the spec version changes. Returns True if it did."""
        if spec_version is None or spec_version == self.spec_version:
            return False

        previous = self.spec_version
        self.spec_version = spec_version
        if previous is None:
            return False

        count = len(self._entries)
        self._entries.clear()
        self.logger.info(f"♻️ Spec version changed {previous} -> {spec_version}; invalidated {count} cache entries")
        self._save()
        return True

    def invalidate_pattern(self, pattern: str) -> int:
        """Remove entries whose test reference or fingerprint matches the regex."""
        regex = re.compile(pattern)
        doomed = [key for key, entry in self._entries.items()
                  if regex.search(entry.test_ref) or regex.search(key)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            self.logger.info(f"Invalidated {len(doomed)} cache entries matching '{pattern}'")
            self._save()
        return len(doomed)

    def clean_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.stats.expirations += len(expired)
        if expired:
            self._save()
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._save()

    def _load(self):
        """Read the cache file; unreadable data is logged and skipped."""
        if not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self.stats.corrupt_entries += 1
            self.logger.warning(f"⚠️ Ignoring unreadable cache file {self.storage_path}: {e}")
            return

        if not isinstance(data, dict):
            self.stats.corrupt_entries += 1
            self.logger.warning(f"⚠️ Ignoring malformed cache file {self.storage_path}")
            return

        self.spec_version = data.get("spec_version")
        now = self.clock()
        for raw in data.get("entries") or []:
            try:
                entry = HealingCacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                self.stats.corrupt_entries += 1
                self.logger.warning(f"⚠️ Skipping corrupt cache entry: {e}")
                continue
            if not entry.is_expired(now):
                self._entries[entry.fingerprint] = entry

        self.logger.info(f"Loaded {len(self._entries)} cache entries from {self.storage_path}")

    def _save(self):
        if not self.storage_path:
            return

        payload = {
            "spec_version": self.spec_version,
            "entries": [entry.to_dict() for entry in self._entries.values()],
        }
        temp_file = f"{self.storage_path}.tmp"
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(payload, f)
            os.replace(temp_file, self.storage_path)
        except OSError as e:
            self.logger.error(f"Failed to persist healing cache: {e}")
