# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
TourContentCache — prefetching LRU cache for per-place tour data.

Entries are keyed by (place_id, tour_type) and are either a *hit* (tour data
confirmed) or a *miss* (fetch failed / tour not generated yet).  Map and list
views prefill the cache for every visible place; the on-demand path reads it
before calling the API and stores what it fetched afterwards.

A read that lands on a miss kicks off a debounced sweep that retries *all*
misses, so tapping several cold markers in a row turns into one staggered
refresh instead of a burst of requests.

Usage:
    cache = TourContentCache()
    cache.prefill(place_ids, "history", client.fetch)   # after places load
    tour = cache.get(place_id, "history")                # before an API call
    cache.set(place_id, "history", tour)                 # after on-demand fetch

Rules:
  - a hit is never downgraded by record_miss()
  - len(cache) never exceeds max_size; the least recently touched entry goes first
  - a miss is retried at most once per cooldown window, counted from its
    last fetch attempt (sweep failures restart the window)
  - in-flight fetches are never cancelled; clear() while they run lets late
    results land in the fresh cache
"""

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .config import cfg
from .scheduler import LoopScheduler

log = logging.getLogger(__name__)

FetchFn = Callable[[str, str], Awaitable[Any]]

CACHE_KEY_SEP = "||"
MAX_SIZE = 500
RETRY_DEBOUNCE = 0.5   # seconds before a triggered sweep runs
RETRY_STAGGER = 0.2    # seconds between fetches in one batch
RETRY_COOLDOWN = 30.0  # don't retry a miss more than once per 30 s

HIT = "hit"
MISS = "miss"


@dataclass
class CacheEntry:
    status: str
    data: Any
    last_accessed: float
    last_attempt: float


def make_key(place_id: str, tour_type: str) -> str:
    if CACHE_KEY_SEP in place_id or CACHE_KEY_SEP in tour_type:
        raise ValueError(
            f"Cache key parts must not contain {CACHE_KEY_SEP!r}: "
            f"{place_id!r}, {tour_type!r}")
    return f"{place_id}{CACHE_KEY_SEP}{tour_type}"


def parse_key(key: str) -> tuple[str, str]:
    place_id, tour_type = key.split(CACHE_KEY_SEP, 1)
    return place_id, tour_type


class TourContentCache:
    """In-memory LRU of tour data with background prefetch and miss retry."""

    def __init__(self, max_size: int | None = None, *,
                 debounce: float | None = None,
                 stagger: float | None = None,
                 cooldown: float | None = None,
                 scheduler=None):
        self.max_size = max_size if max_size is not None else cfg("cache", "max_size", default=MAX_SIZE)
        self.debounce = debounce if debounce is not None else cfg("cache", "debounce", default=RETRY_DEBOUNCE)
        self.stagger = stagger if stagger is not None else cfg("cache", "stagger", default=RETRY_STAGGER)
        self.cooldown = cooldown if cooldown is not None else cfg("cache", "cooldown", default=RETRY_COOLDOWN)
        self._scheduler = scheduler or LoopScheduler()
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._fetch_fn: FetchFn | None = None
        self._retry_handle = None
        self._inflight: set[asyncio.Task] = set()

    def __len__(self):
        return len(self._cache)

    def __contains__(self, item: tuple[str, str]):
        return make_key(*item) in self._cache

    # ── Reads ──

    def get(self, place_id: str, tour_type: str):
        """Return cached tour data or None.

        A miss entry also schedules a background retry of every miss.
        """
        key = make_key(place_id, tour_type)
        entry = self._cache.get(key)

        if entry is None:
            log.debug("TourCache.get: no entry for %s [%s]", place_id, tour_type)
            return None

        if entry.status == MISS:
            log.debug("TourCache.get: miss for %s [%s] — triggering retry of all misses",
                      place_id, tour_type)
            self._retry_misses()
            return None

        entry.last_accessed = self._scheduler.now()
        self._cache.move_to_end(key)
        log.debug("TourCache.get: hit for %s [%s] — %s",
                  place_id, tour_type, self._stats_line())
        return entry.data

    def get_stats(self) -> dict:
        """Counts of hit and miss entries (for debugging / status endpoints)."""
        hits = sum(1 for e in self._cache.values() if e.status == HIT)
        return {"hits": hits, "misses": len(self._cache) - hits, "total": len(self._cache)}

    @property
    def pending_fetches(self) -> int:
        return len(self._inflight)

    # ── Writes ──

    def set(self, place_id: str, tour_type: str, data) -> None:
        """Store a successful tour response as the most recently used entry."""
        key = make_key(place_id, tour_type)
        now = self._scheduler.now()
        self._cache.pop(key, None)
        self._cache[key] = CacheEntry(HIT, data, last_accessed=now, last_attempt=now)
        log.debug("TourCache.set: stored %s [%s] — %s",
                  place_id, tour_type, self._stats_line())
        self.evict()

    def record_miss(self, place_id: str, tour_type: str) -> None:
        """Record that a tour could not be fetched.  Never overwrites a hit."""
        key = make_key(place_id, tour_type)
        existing = self._cache.get(key)
        if existing is not None and existing.status == HIT:
            return

        now = self._scheduler.now()
        self._cache.pop(key, None)
        self._cache[key] = CacheEntry(MISS, None, last_accessed=now, last_attempt=now)
        log.debug("TourCache.record_miss: %s [%s] — %s",
                  place_id, tour_type, self._stats_line())
        self.evict()

    def evict(self) -> None:
        """Drop least recently used entries until the cache fits."""
        while len(self._cache) > self.max_size:
            key, _ = self._cache.popitem(last=False)
            log.debug("TourCache: evicted LRU entry %s", key)

    def clear(self) -> None:
        """Empty the cache (e.g. on logout or tour type change)."""
        self._cache.clear()
        self._fetch_fn = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        log.debug("TourCache: cleared")

    # ── Prefetch ──

    def prefill(self, place_ids, tour_type: str, fetch_fn: FetchFn) -> int:
        """Fetch every place not already cached as a hit, staggered.

        *fetch_fn* is remembered and reused by later retry sweeps.
        Returns the number of fetches scheduled.
        """
        self._fetch_fn = fetch_fn

        to_fetch = []
        for place_id in place_ids:
            if not place_id:
                continue
            existing = self._cache.get(make_key(place_id, tour_type))
            if existing is not None and existing.status == HIT:
                continue
            to_fetch.append(place_id)

        if not to_fetch:
            log.debug("TourCache: prefill skipped, all %d items already cached", len(place_ids))
            return 0

        log.debug("TourCache: prefilling %d items (%d already cached)",
                  len(to_fetch), len(place_ids) - len(to_fetch))

        for i, place_id in enumerate(to_fetch):
            self._scheduler.call_later(
                i * self.stagger,
                functools.partial(self._spawn, self._prefill_one, fetch_fn, place_id, tour_type))
        return len(to_fetch)

    async def _prefill_one(self, fetch_fn: FetchFn, place_id: str, tour_type: str):
        try:
            data = await fetch_fn(place_id, tour_type)
        except Exception as e:
            self.record_miss(place_id, tour_type)
            log.debug("TourCache: prefill miss for %s: %s", place_id, e)
            return
        self.set(place_id, tour_type, data)
        log.debug("TourCache: prefill hit for %s", place_id)

    # ── Miss retry ──

    def _retry_misses(self) -> None:
        """Schedule one sweep over all misses.  Triggers while a sweep is
        pending are absorbed."""
        if self._fetch_fn is None or self._retry_handle is not None:
            return
        self._retry_handle = self._scheduler.call_later(self.debounce, self._run_retry_sweep)

    def _run_retry_sweep(self) -> None:
        self._retry_handle = None
        fetch_fn = self._fetch_fn
        if fetch_fn is None:
            return

        now = self._scheduler.now()
        misses = []
        skipped_cooldown = 0
        for key, entry in self._cache.items():
            if entry.status != MISS:
                continue
            if now - entry.last_attempt < self.cooldown:
                skipped_cooldown += 1
                continue
            misses.append(parse_key(key))

        if not misses:
            if skipped_cooldown:
                log.debug("TourCache: %d misses on cooldown, skipping retry", skipped_cooldown)
            return

        log.debug("TourCache: retrying %d missed items (%d on cooldown)",
                  len(misses), skipped_cooldown)
        for i, (place_id, tour_type) in enumerate(misses):
            self._scheduler.call_later(
                i * self.stagger,
                functools.partial(self._spawn, self._retry_one, fetch_fn, place_id, tour_type))

    async def _retry_one(self, fetch_fn: FetchFn, place_id: str, tour_type: str):
        try:
            data = await fetch_fn(place_id, tour_type)
        except Exception as e:
            # Still a miss; restart its cooldown without touching recency
            entry = self._cache.get(make_key(place_id, tour_type))
            if entry is not None and entry.status == MISS:
                entry.last_attempt = self._scheduler.now()
            log.debug("TourCache: retry failed for %s: %s", place_id, e)
            return
        self.set(place_id, tour_type, data)
        log.debug("TourCache: retry succeeded for %s", place_id)

    # ── Background task bookkeeping ──

    def _spawn(self, coro_fn, *args) -> None:
        task = asyncio.ensure_future(coro_fn(*args))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def drain(self) -> None:
        """Wait for every background fetch that has started."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _stats_line(self) -> str:
        stats = self.get_stats()
        return f"cache: {stats['hits']} hits, {stats['misses']} misses, {stats['total']} total"
