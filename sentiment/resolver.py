#!/usr/bin/env python3
"""
Sentiment resolver - one queue item to one outcome

Tries each query strategy in order (submit -> wait -> fetch -> extract) and
stops at the first percentage found. Every failed step or extraction miss is
recorded as exactly one FailureAttempt.

Outcomes:
- found:             percentage extracted from some query
- not_found:         every query returned markup, none had a percentage
- transient_failure: at least one query never produced usable markup;
                     the runner retries the item later

The resolver never writes to the catalog; the runner does, once.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from sentiment.constants import (
    FAILURE_NO_MATCH,
    FAILURE_WAIT_TIMEOUT,
    OUTCOME_FOUND,
    OUTCOME_NOT_FOUND,
    OUTCOME_TRANSIENT,
)
from sentiment.dataforseo import SearchTaskError
from sentiment.extractor import extract_percentage
from sentiment.queries import build_queries
from sentiment.work_queue import FailureAttempt, FailureLog, QueueItem

logger = logging.getLogger(__name__)


class ResolutionCancelled(Exception):
    """Stop requested before the item finished; it must go back on the queue"""


@dataclass
class Resolution:
    """Result of resolving one queue item"""
    outcome: str
    percentage: Optional[int] = None
    query: Optional[str] = None
    context: Optional[str] = None
    pattern: Optional[str] = None
    task_id: Optional[str] = None
    failures: List[FailureAttempt] = field(default_factory=list)
    queries_tried: int = 0
    cost: float = 0.0

    @property
    def found(self) -> bool:
        return self.outcome == OUTCOME_FOUND


class SentimentResolver:
    """Drive query strategies through the search client and extractor"""

    def __init__(self, client, failure_log: Optional[FailureLog] = None,
                 wait_seconds: Optional[float] = None,
                 fetch_attempts: Optional[int] = None,
                 stop_event: Optional[threading.Event] = None):
        self.client = client
        self.failure_log = failure_log
        self.wait_seconds = wait_seconds
        self.fetch_attempts = fetch_attempts
        self.stop_event = stop_event

    def _fail(self, resolution: Resolution, item: QueueItem, query: str, category: str,
              task_id: Optional[str] = None, response_size: int = 0, detail: str = ''):
        attempt = FailureAttempt(
            query=query,
            category=category,
            task_id=task_id,
            response_size=response_size,
            detail=detail,
        )
        resolution.failures.append(attempt)
        if self.failure_log is not None:
            self.failure_log.record_attempt(item, attempt)
        logger.debug(f"  {category}: '{query}' {detail}".rstrip())

    def _check_stop(self, item: QueueItem):
        if self.stop_event is not None and self.stop_event.is_set():
            raise ResolutionCancelled(item.key)

    def resolve(self, item: QueueItem) -> Resolution:
        """
        Resolve one queue item

        Raises:
            ResolutionCancelled: stop event set before a query started, or
                while waiting on or fetching a task
            ConfigurationError: credentials rejected (propagates, halts the run)
        """
        queries = build_queries(item.title, item.original_title, item.year, item.media_kind)
        resolution = Resolution(outcome=OUTCOME_NOT_FOUND)
        cost_before = getattr(self.client, 'total_cost', 0.0)

        try:
            for query in queries:
                self._check_stop(item)

                resolution.queries_tried += 1
                logger.debug(f"Searching: '{query}'")

                try:
                    task_id = self.client.submit(query)
                except SearchTaskError as e:
                    self._fail(resolution, item, query, e.category, detail=str(e))
                    continue

                if not self.client.await_ready(task_id, self.wait_seconds):
                    # A wait cut short by a stop request is not a provider failure
                    self._check_stop(item)
                    self._fail(resolution, item, query, FAILURE_WAIT_TIMEOUT, task_id=task_id,
                               detail='task not ready before deadline')
                    continue

                try:
                    markup = self.client.fetch_payload(task_id, self.fetch_attempts)
                except SearchTaskError as e:
                    self._check_stop(item)
                    self._fail(resolution, item, query, e.category, task_id=task_id,
                               detail=str(e))
                    continue

                extraction = extract_percentage(markup)
                if extraction is None:
                    self._fail(resolution, item, query, FAILURE_NO_MATCH, task_id=task_id,
                               response_size=len(markup), detail='no percentage pattern matched')
                    continue

                resolution.outcome = OUTCOME_FOUND
                resolution.percentage = extraction.percentage
                resolution.context = extraction.context
                resolution.pattern = extraction.pattern
                resolution.query = query
                resolution.task_id = task_id
                return resolution

            if any(f.category != FAILURE_NO_MATCH for f in resolution.failures):
                resolution.outcome = OUTCOME_TRANSIENT
            return resolution
        finally:
            resolution.cost = getattr(self.client, 'total_cost', 0.0) - cost_before
