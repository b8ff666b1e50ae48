"""
Rule cache for Gatekeep.

Holds one bucket of rules per phase with a fixed TTL in front of a
RuleSource. A hit returns the stored tuple without touching the store; a
miss queries the store and replaces the bucket.

Concurrency:
    - Reads are lock-free: a bucket is an immutable (timestamp, rules) pair
    - Writes replace the whole bucket mapping, never mutate it in place
    - Concurrent misses on one bucket may load twice; the last write wins
"""

import time
from dataclasses import dataclass
from typing import Callable

import structlog

from gatekeep.errors import StoreUnavailableError
from gatekeep.schema import Phase, Rule
from gatekeep.store.base import RuleSource

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class _Bucket:
    loaded_at: float
    rules: tuple[Rule, ...]


class RuleCache:
    """
    TTL cache of enabled rules per phase.

    Usage:
        cache = RuleCache(db, ttl_seconds=60)
        rules = cache.load_rules(Phase.PRE)
        cache.invalidate_all()

    Attributes:
        source: The backing rule source
        ttl_seconds: Lifetime of a bucket
        hits: Number of loads served from a fresh bucket
        misses: Number of loads that queried the source
    """

    def __init__(
        self,
        source: RuleSource,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the cache.

        Args:
            source: Where rules are loaded from on a miss
            ttl_seconds: How long a loaded bucket stays fresh
            clock: Monotonic time source (injectable for tests)
        """
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._buckets: dict[Phase, _Bucket] = {}
        self.hits = 0
        self.misses = 0

    def load_rules(self, phase: Phase) -> tuple[Rule, ...]:
        """
        Enabled rules for a phase (including "all"), highest priority first.

        If the store is unavailable, the last loaded bucket is returned even
        if it has expired; with nothing loaded yet, the result is empty.
        """
        now = self._clock()
        bucket = self._buckets.get(phase)
        if bucket is not None and now - bucket.loaded_at < self.ttl_seconds:
            self.hits += 1
            return bucket.rules

        self.misses += 1
        try:
            rules = tuple(self.source.fetch_rules(phase))
        except StoreUnavailableError as e:
            logger.warning(
                "rule_store_unavailable",
                phase=phase.value,
                error=str(e),
                stale_rules=len(bucket.rules) if bucket else 0,
            )
            return bucket.rules if bucket is not None else ()

        self._buckets = {**self._buckets, phase: _Bucket(loaded_at=now, rules=rules)}
        logger.debug("rule_cache_miss", phase=phase.value, rules=len(rules))
        return rules

    def invalidate_all(self) -> None:
        """Drop every cached bucket; the next load re-queries the store."""
        self._buckets = {}
        logger.info("rule_cache_invalidated")

    def stats(self) -> dict[str, float | int]:
        """Cache statistics for observability."""
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
            "buckets": len(self._buckets),
            "ttl_seconds": self.ttl_seconds,
        }
