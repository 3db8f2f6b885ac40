#!/usr/bin/env python3
"""
Queue runner - drains the work queue through the resolver

Loop per item:
1. Pop the head of the queue
2. Check-before-write against the catalog (skip items already resolved,
   recently exhausted or unknown; items claimed by another run go to the back)
3. Claim, resolve, apply exactly one terminal write
4. Transient failures go to the back of the queue until max_retries, then
   to the failure log
5. Persist queue and failure log
6. Rate-limit delay before the next item

A killed run resumes from the queue file: completed items are gone from it,
pending ones are still there, and the catalog check skips anything written
just before the kill.
"""

import logging
import os
import socket
import threading
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from sentiment.catalog import CatalogStore
from sentiment.constants import OUTCOME_FOUND, OUTCOME_NOT_FOUND
from sentiment.queries import build_queries
from sentiment.resolver import ResolutionCancelled, SentimentResolver
from sentiment.work_queue import FailureLog, QueueItem, WorkQueue

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'completed'
STATUS_CAP_REACHED = 'cap_reached'
STATUS_INTERRUPTED = 'interrupted'

# Per-item results counted in RunSummary.counts
RESULT_FOUND = 'found'
RESULT_EXHAUSTED = 'exhausted'
RESULT_RETRY = 'retry_scheduled'
RESULT_FAILED = 'failed_max_retries'
RESULT_ALREADY_RESOLVED = 'already_resolved'
RESULT_NOT_IN_CATALOG = 'not_in_catalog'
RESULT_CLAIMED = 'claimed_elsewhere'
RESULT_DUPLICATE = 'duplicate'
RESULT_MALFORMED = 'malformed'
RESULT_WRITE_REFUSED = 'write_refused'
RESULT_SIMULATED = 'simulated'


class RecentlyResolved:
    """
    Bounded TTL set of item keys finished during this run

    Evicts entries older than ttl_seconds, and the oldest entry once
    max_size is reached.
    """

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 3600, clock=time.monotonic):
        self.max_size = max(1, int(max_size))
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict = OrderedDict()

    def _evict(self):
        cutoff = self.clock() - self.ttl_seconds
        while self._entries:
            key, added = next(iter(self._entries.items()))
            if added > cutoff:
                break
            self._entries.popitem(last=False)

    def add(self, key: str):
        self._evict()
        self._entries.pop(key, None)
        self._entries[key] = self.clock()
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        self._evict()
        return key in self._entries

    def __len__(self) -> int:
        self._evict()
        return len(self._entries)


@dataclass
class RunSummary:
    """What one run did"""
    status: str = STATUS_COMPLETED
    processed: int = 0
    remaining: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    cost: float = 0.0
    elapsed_seconds: float = 0.0
    stop_reason: Optional[str] = None


def build_queue_from_catalog(catalog: CatalogStore, queue: WorkQueue,
                             cooldown_days: float = 30, limit: Optional[int] = None) -> int:
    """
    Enqueue catalog items that still lack sentiment data

    Returns:
        Number of items newly added to the queue
    """
    added = 0
    for entry in catalog.items_needing_sentiment(cooldown_days=cooldown_days, limit=limit):
        item = QueueItem(
            provider_id=entry.provider_id,
            media_kind=entry.media_kind,
            title=entry.title,
            original_title=entry.original_title,
            year=entry.release_year,
        )
        if queue.enqueue(item):
            added += 1
    logger.info(f"Enqueued {added} catalog items missing sentiment data")
    return added


def default_owner(queue_path=None) -> str:
    """
    Claim owner for this host and queue file

    Stable across restarts, so a run resumed after a kill takes back the
    claims its predecessor left behind instead of waiting for them to expire.
    """
    if queue_path is None:
        return f"{socket.gethostname()}:{os.getpid()}"
    return f"{socket.gethostname()}:{Path(queue_path).resolve()}"


class QueueRunner:
    """Sequential, rate-limited, resumable queue processor"""

    def __init__(self, queue: WorkQueue, failure_log: FailureLog, catalog: CatalogStore,
                 resolver: SentimentResolver, max_retries: int = 3,
                 rate_limit_seconds: float = 2.0, max_items: Optional[int] = None,
                 max_runtime_seconds: Optional[float] = None, max_cost: Optional[float] = None,
                 cooldown_days: float = 30, claim_ttl_seconds: int = 900,
                 dry_run: bool = False, stop_event: Optional[threading.Event] = None,
                 owner: Optional[str] = None, recent_size: int = 1000,
                 recent_ttl_seconds: float = 3600, sleep=None, clock=time.monotonic):
        self.queue = queue
        self.failure_log = failure_log
        self.catalog = catalog
        self.resolver = resolver
        self.max_retries = max(1, int(max_retries))
        self.rate_limit_seconds = rate_limit_seconds
        self.max_items = max_items
        self.max_runtime_seconds = max_runtime_seconds
        self.max_cost = max_cost
        self.cooldown_days = cooldown_days
        self.claim_ttl_seconds = claim_ttl_seconds
        self.dry_run = dry_run
        self.stop_event = stop_event or threading.Event()
        self.owner = owner or default_owner(queue.path)
        self.clock = clock
        self._sleep = sleep
        self.recent = RecentlyResolved(recent_size, recent_ttl_seconds, clock=clock)
        self.summary = RunSummary()
        # Keys skipped as claimed elsewhere since the last item that made progress
        self.deferred: Set[str] = set()

    def _pause(self, seconds: float):
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self.stop_event.wait(seconds)

    def _persist(self):
        if self.dry_run:
            return
        self.queue.persist()
        self.failure_log.save()

    def _budget_reason(self, started: float) -> Optional[str]:
        """Name of the ceiling that has been hit, if any"""
        if self.max_items is not None and self.summary.processed >= self.max_items:
            return f"item cap ({self.max_items})"
        if (self.max_runtime_seconds is not None
                and self.clock() - started >= self.max_runtime_seconds):
            return f"runtime cap ({self.max_runtime_seconds:.0f}s)"
        if self.max_cost is not None and self.summary.cost >= self.max_cost:
            return f"cost cap (${self.max_cost:.4f})"
        return None

    def run(self) -> RunSummary:
        """Process the queue until empty, a budget ceiling, or a stop request"""
        started = self.clock()
        total = len(self.queue)
        summary = self.summary
        logger.info(f"Processing queue: {total} items"
                    + (" (DRY RUN - no API calls, no writes)" if self.dry_run else ""))

        while len(self.queue) > 0:
            reason = self._budget_reason(started)
            if reason:
                summary.status = STATUS_CAP_REACHED
                summary.stop_reason = reason
                logger.warning(f"Stopping: {reason} reached with {len(self.queue)} items left")
                break
            if self.stop_event.is_set():
                summary.status = STATUS_INTERRUPTED
                summary.stop_reason = 'stop requested'
                logger.warning(f"Stopping: interrupted with {len(self.queue)} items left")
                break
            if self.deferred and all(queued.key in self.deferred for queued in self.queue):
                summary.status = STATUS_CAP_REACHED
                summary.stop_reason = 'remaining items claimed by another run'
                logger.warning(f"Stopping: {len(self.queue)} items are claimed by another run")
                break

            item = self.queue.pop_front()
            logger.info(f"[{summary.processed + 1}/{total}] {item.title} "
                        f"({item.year or 'N/A'}) [{item.key}]")

            try:
                result = self._process(item)
            except ResolutionCancelled:
                self.queue.push_front(item)
                self._persist()
                summary.status = STATUS_INTERRUPTED
                summary.stop_reason = 'stop requested'
                logger.warning(f"Interrupted while resolving {item.key} - returned to queue")
                break

            summary.processed += 1
            summary.counts[result] += 1
            if result != RESULT_CLAIMED:
                self.deferred.clear()
            self._persist()

            if len(self.queue) > 0 and not self.dry_run:
                self._pause(self.rate_limit_seconds)

        summary.remaining = len(self.queue)
        summary.elapsed_seconds = self.clock() - started
        return summary

    def _process(self, item: QueueItem) -> str:
        """Resolve one item and apply its outcome; returns a RESULT_* name"""
        if not (item.title or '').strip():
            logger.error(f"Dropping malformed queue item {item.key}: missing title")
            return RESULT_MALFORMED

        if item.key in self.recent:
            logger.info(f"  Already handled {item.key} this run - skipping duplicate")
            return RESULT_DUPLICATE

        provider_id, media_kind = item.identity
        existing = self.catalog.get(provider_id, media_kind)
        if existing is None:
            logger.warning(f"  {item.key} is not in the catalog - dropping")
            return RESULT_NOT_IN_CATALOG
        if existing.has_percentage:
            logger.info(f"  Already has {existing.sentiment_percentage}% - skipping")
            self.recent.add(item.key)
            return RESULT_ALREADY_RESOLVED
        if existing.exhausted_within(self.cooldown_days):
            logger.info(f"  Exhausted within the last {self.cooldown_days} days - skipping")
            self.recent.add(item.key)
            return RESULT_ALREADY_RESOLVED

        if self.dry_run:
            queries = build_queries(item.title, item.original_title, item.year, item.media_kind)
            for query in queries:
                logger.info(f"  would search: '{query}'")
            return RESULT_SIMULATED

        if not self.catalog.claim(provider_id, media_kind, self.owner, self.claim_ttl_seconds):
            self.deferred.add(item.key)
            self.queue.push_back(item)
            logger.warning(f"  {item.key} is being resolved by another run - moved to the back")
            return RESULT_CLAIMED

        try:
            resolution = self.resolver.resolve(item)
        except Exception:
            self.catalog.release(provider_id, media_kind, self.owner)
            raise
        self.summary.cost += resolution.cost

        if resolution.outcome == OUTCOME_FOUND:
            self.recent.add(item.key)
            if self.catalog.record_percentage(provider_id, media_kind, resolution.percentage):
                logger.info(f"  ✅ {resolution.percentage}% liked "
                            f"(query: '{resolution.query}', pattern: {resolution.pattern})")
                return RESULT_FOUND
            return RESULT_WRITE_REFUSED

        if resolution.outcome == OUTCOME_NOT_FOUND:
            self.recent.add(item.key)
            self.catalog.mark_exhausted(provider_id, media_kind)
            logger.info(f"  ⏭️  No percentage in {resolution.queries_tried} queries - marked exhausted")
            return RESULT_EXHAUSTED

        self.catalog.release(provider_id, media_kind, self.owner)
        item.retries += 1
        if item.retries < self.max_retries:
            self.queue.push_back(item)
            logger.info(f"  🔄 Transient failure - retry {item.retries}/{self.max_retries - 1} "
                        f"scheduled at the back of the queue")
            return RESULT_RETRY

        self.failure_log.record_exhausted(
            item, reason=resolution.failures[-1].category if resolution.failures else 'unknown'
        )
        logger.warning(f"  ❌ Giving up on {item.key} after {item.retries} attempts")
        return RESULT_FAILED
