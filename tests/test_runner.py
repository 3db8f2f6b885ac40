#!/usr/bin/env python3
"""
Test suite for sentiment/runner.py - retries, resume, budgets, cancellation

Uses a real SQLite catalog and real queue files under tmp_path; only the
resolver is scripted.
"""

import json
import pytest
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentiment.catalog import CatalogItem, CatalogStore
from sentiment.config import ConfigurationError
from sentiment.constants import (
    FAILURE_FETCH,
    FAILURE_NO_MATCH,
    OUTCOME_FOUND,
    OUTCOME_NOT_FOUND,
    OUTCOME_TRANSIENT,
    SENTIMENT_EXHAUSTED,
    SENTIMENT_UNATTEMPTED,
)
from sentiment.resolver import Resolution, ResolutionCancelled, SentimentResolver
from sentiment.runner import (
    RESULT_ALREADY_RESOLVED,
    RESULT_CLAIMED,
    RESULT_DUPLICATE,
    RESULT_EXHAUSTED,
    RESULT_FAILED,
    RESULT_FOUND,
    RESULT_MALFORMED,
    RESULT_NOT_IN_CATALOG,
    RESULT_RETRY,
    RESULT_SIMULATED,
    STATUS_CAP_REACHED,
    STATUS_COMPLETED,
    STATUS_INTERRUPTED,
    QueueRunner,
    RecentlyResolved,
    build_queue_from_catalog,
    default_owner,
)
from sentiment.work_queue import FailureAttempt, FailureLog, QueueItem, WorkQueue


def found(percentage, cost=0.0012):
    return Resolution(outcome=OUTCOME_FOUND, percentage=percentage, query='q', cost=cost)


def not_found(cost=0.0012):
    return Resolution(outcome=OUTCOME_NOT_FOUND, cost=cost,
                      failures=[FailureAttempt(query='q', category=FAILURE_NO_MATCH)])


def transient(cost=0.0006):
    return Resolution(outcome=OUTCOME_TRANSIENT, cost=cost,
                      failures=[FailureAttempt(query='q', category=FAILURE_FETCH)])


class ScriptedResolver:
    """Returns scripted outcomes per item key; the last one repeats"""

    def __init__(self, script=None, default=None, on_resolve=None):
        self.script = {key: list(outcomes) for key, outcomes in (script or {}).items()}
        self.default = default
        self.on_resolve = on_resolve
        self.calls = []

    def resolve(self, item):
        self.calls.append(item.key)
        if self.on_resolve is not None:
            self.on_resolve(item)
        outcomes = self.script.get(item.key)
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        else:
            outcome = self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def item(provider_id, title=None, kind='movie', year=2000):
    return QueueItem(provider_id=provider_id, media_kind=kind,
                     title=title if title is not None else f"Film {provider_id}", year=year)


@pytest.fixture
def catalog(tmp_path):
    store = CatalogStore(tmp_path / 'catalog.sqlite3')
    for provider_id in (1, 2, 3, 4):
        store.upsert_item(CatalogItem(provider_id, 'movie', f"Film {provider_id}",
                                      release_year=2000, popularity=10 - provider_id))
    yield store
    store.close()


@pytest.fixture
def queue_path(tmp_path):
    return tmp_path / 'queue.json'


@pytest.fixture
def failure_log(tmp_path):
    return FailureLog(tmp_path / 'failures.json')


@pytest.fixture
def sleeps():
    return []


def make_runner(queue, failure_log, catalog, resolver, sleeps, **kwargs):
    kwargs.setdefault('owner', 'test:1')
    return QueueRunner(queue, failure_log, catalog, resolver, sleep=sleeps.append, **kwargs)


class TestOutcomes:
    """One terminal catalog write per resolved item"""

    def test_found_written(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver({'movie:1': [found(87)]})

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.status == STATUS_COMPLETED
        assert summary.counts[RESULT_FOUND] == 1
        assert catalog.get(1, 'movie').sentiment_percentage == 87
        assert json.loads(queue_path.read_text()) == []

    def test_not_found_marks_exhausted(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver({'movie:1': [not_found()]})

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_EXHAUSTED] == 1
        entry = catalog.get(1, 'movie')
        assert entry.sentiment_status == SENTIMENT_EXHAUSTED
        assert entry.sentiment_percentage is None

    def test_cost_accumulated(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver(default=found(50, cost=0.0024))
        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()
        assert summary.cost == pytest.approx(0.0048)


class TestRetries:
    """Transient failures go to the back of the queue, bounded by max_retries"""

    def test_retry_moves_to_back(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver({'movie:1': [transient(), found(70)],
                                     'movie:2': [found(60)]})

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert resolver.calls == ['movie:1', 'movie:2', 'movie:1']
        assert summary.counts[RESULT_RETRY] == 1
        assert summary.counts[RESULT_FOUND] == 2
        assert catalog.get(1, 'movie').sentiment_percentage == 70

    def test_retry_bound(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver({'movie:1': [transient()]})

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps, max_retries=3).run()

        assert resolver.calls == ['movie:1'] * 3
        assert summary.counts[RESULT_RETRY] == 2
        assert summary.counts[RESULT_FAILED] == 1
        assert summary.status == STATUS_COMPLETED
        assert len(queue) == 0

        assert catalog.get(1, 'movie').sentiment_status == SENTIMENT_UNATTEMPTED
        saved = json.loads(failure_log.path.read_text())
        assert saved['movie:1']['exhausted_retries'] is True
        assert saved['movie:1']['last_reason'] == FAILURE_FETCH
        assert saved['movie:1']['item']['retries'] == 3

    def test_retry_count_persisted(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver({'movie:1': [transient()], 'movie:2': [found(60)]})

        make_runner(queue, failure_log, catalog, resolver, sleeps, max_items=1).run()

        saved = json.loads(queue_path.read_text())
        assert [(e['provider_id'], e['retries']) for e in saved] == [(2, 0), (1, 1)]

    def test_transient_releases_claim(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver({'movie:1': [transient()]})
        make_runner(queue, failure_log, catalog, resolver, sleeps, max_items=1).run()
        assert catalog.claim(1, 'movie', 'other:2')


class TestResume:
    """A stopped run resumes from the queue file without repeating work"""

    def test_resume_after_cap(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2), item(3)])
        resolver = ScriptedResolver(default=found(75))
        first = make_runner(queue, failure_log, catalog, resolver, sleeps, max_items=1).run()

        assert first.status == STATUS_CAP_REACHED
        assert first.remaining == 2

        resumed = WorkQueue.load(queue_path)
        assert [i.key for i in resumed] == ['movie:2', 'movie:3']
        second = make_runner(resumed, failure_log, catalog, resolver, sleeps).run()

        assert second.status == STATUS_COMPLETED
        assert resolver.calls == ['movie:1', 'movie:2', 'movie:3']

    def test_already_written_item_skipped(self, catalog, queue_path, failure_log, sleeps):
        """Killed after the catalog write but before the queue save"""
        catalog.record_percentage(1, 'movie', 91)
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver(default=found(10))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_ALREADY_RESOLVED] == 1
        assert resolver.calls == []
        assert catalog.get(1, 'movie').sentiment_percentage == 91

    def test_recently_exhausted_skipped(self, catalog, queue_path, failure_log, sleeps):
        catalog.mark_exhausted(1, 'movie')
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver(default=found(10))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_ALREADY_RESOLVED] == 1
        assert resolver.calls == []


class TestSkips:
    """Items that never reach the resolver"""

    def test_malformed_title_dropped(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1, title='  '), item(2)])
        resolver = ScriptedResolver(default=found(50))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_MALFORMED] == 1
        assert summary.counts[RESULT_FOUND] == 1
        assert resolver.calls == ['movie:2']

    def test_not_in_catalog(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(999)])
        resolver = ScriptedResolver(default=found(50))
        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()
        assert summary.counts[RESULT_NOT_IN_CATALOG] == 1
        assert resolver.calls == []

    def test_claimed_elsewhere_stays_queued(self, catalog, queue_path, failure_log, sleeps):
        catalog.claim(1, 'movie', 'other-host:99')
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver(default=found(50))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_CLAIMED] == 2
        assert summary.counts[RESULT_FOUND] == 1
        assert resolver.calls == ['movie:2']
        assert summary.status == STATUS_CAP_REACHED
        assert 'claimed by another run' in summary.stop_reason
        saved = json.loads(queue_path.read_text())
        assert [(e['provider_id'], e['retries']) for e in saved] == [(1, 0)]
        assert catalog.get(1, 'movie').sentiment_status == SENTIMENT_UNATTEMPTED

    def test_claim_released_later_in_run(self, catalog, queue_path, failure_log, sleeps):
        catalog.claim(1, 'movie', 'other-host:99')
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver(
            default=found(50),
            on_resolve=lambda i: catalog.release(1, 'movie', 'other-host:99'),
        )

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.status == STATUS_COMPLETED
        assert resolver.calls == ['movie:2', 'movie:1']
        assert catalog.get(1, 'movie').sentiment_percentage == 50

    def test_restart_takes_back_claim_of_killed_run(self, catalog, queue_path, failure_log):
        """A run killed mid-item leaves its claim; the next run on the same queue reuses it"""
        queue = WorkQueue(queue_path, [item(1)])
        queue.persist()
        owner = default_owner(queue_path)
        catalog.claim(1, 'movie', owner)

        restarted = QueueRunner(WorkQueue.load(queue_path), failure_log, catalog,
                                ScriptedResolver(default=found(66)), sleep=lambda s: None)

        assert restarted.owner == owner
        summary = restarted.run()
        assert summary.status == STATUS_COMPLETED
        assert summary.counts[RESULT_FOUND] == 1
        assert catalog.get(1, 'movie').sentiment_percentage == 66

    def test_duplicate_in_same_run(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver(default=found(50), on_resolve=lambda i: queue.enqueue(item(1)))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.counts[RESULT_FOUND] == 1
        assert summary.counts[RESULT_DUPLICATE] == 1
        assert resolver.calls == ['movie:1']


class TestBudgets:
    """Item, runtime and cost ceilings stop the run cleanly"""

    def test_item_cap(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        summary = make_runner(queue, failure_log, catalog, ScriptedResolver(default=found(50)),
                              sleeps, max_items=1).run()
        assert summary.status == STATUS_CAP_REACHED
        assert summary.processed == 1
        assert 'item cap' in summary.stop_reason

    def test_zero_item_cap_processes_nothing(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver(default=found(50))
        summary = make_runner(queue, failure_log, catalog, resolver, sleeps, max_items=0).run()
        assert summary.processed == 0
        assert resolver.calls == []

    def test_cost_cap(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2), item(3)])
        resolver = ScriptedResolver(default=found(50, cost=0.005))
        summary = make_runner(queue, failure_log, catalog, resolver, sleeps, max_cost=0.009).run()
        assert summary.status == STATUS_CAP_REACHED
        assert summary.processed == 2
        assert 'cost cap' in summary.stop_reason

    def test_runtime_cap(self, catalog, queue_path, failure_log, sleeps):
        clock = FakeClock()

        def advance(_item):
            clock.now += 6

        queue = WorkQueue(queue_path, [item(1), item(2), item(3)])
        resolver = ScriptedResolver(default=found(50), on_resolve=advance)
        summary = make_runner(queue, failure_log, catalog, resolver, sleeps,
                              max_runtime_seconds=10, clock=clock).run()

        assert summary.status == STATUS_CAP_REACHED
        assert summary.processed == 2
        assert summary.remaining == 1
        assert summary.elapsed_seconds == 12


class TestDryRun:
    """No provider calls, no writes"""

    def test_dry_run(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver(default=RuntimeError('must not resolve'))

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps, dry_run=True).run()

        assert summary.counts[RESULT_SIMULATED] == 2
        assert resolver.calls == []
        assert not queue_path.exists()
        assert not failure_log.path.exists()
        assert sleeps == []
        assert catalog.get(1, 'movie').sentiment_status == SENTIMENT_UNATTEMPTED


class TestPacingAndCancellation:
    """Rate limit between items and clean stops"""

    def test_sleep_between_items_only(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2), item(3)])
        make_runner(queue, failure_log, catalog, ScriptedResolver(default=not_found()),
                    sleeps, rate_limit_seconds=2).run()
        assert sleeps == [2, 2]

    def test_stop_before_start(self, catalog, queue_path, failure_log, sleeps):
        stop = threading.Event()
        stop.set()
        queue = WorkQueue(queue_path, [item(1)])
        summary = make_runner(queue, failure_log, catalog, ScriptedResolver(default=found(1)),
                              sleeps, stop_event=stop).run()
        assert summary.status == STATUS_INTERRUPTED
        assert summary.processed == 0
        assert summary.remaining == 1

    def test_cancel_mid_item_returns_it_to_front(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = ScriptedResolver({'movie:1': [ResolutionCancelled('movie:1')]})

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps).run()

        assert summary.status == STATUS_INTERRUPTED
        assert summary.processed == 0
        saved = json.loads(queue_path.read_text())
        assert [e['provider_id'] for e in saved] == [1, 2]
        assert catalog.claim(1, 'movie', 'other:2')

    def test_stop_during_provider_wait_keeps_item_at_front(self, catalog, queue_path, failure_log, sleeps):
        stop = threading.Event()

        class StoppedWhileWaiting:
            total_cost = 0.0

            def submit(self, query):
                return 'task-1'

            def await_ready(self, task_id, max_wait=None):
                stop.set()
                return False

        queue = WorkQueue(queue_path, [item(1), item(2)])
        resolver = SentimentResolver(StoppedWhileWaiting(), failure_log=failure_log, stop_event=stop)

        summary = make_runner(queue, failure_log, catalog, resolver, sleeps, stop_event=stop).run()

        assert summary.status == STATUS_INTERRUPTED
        assert summary.counts[RESULT_RETRY] == 0
        saved = json.loads(queue_path.read_text())
        assert [(e['provider_id'], e['retries']) for e in saved] == [(1, 0), (2, 0)]
        assert failure_log.attempt_count() == 0
        assert catalog.claim(1, 'movie', 'other:2')

    def test_fatal_error_propagates_and_releases(self, catalog, queue_path, failure_log, sleeps):
        queue = WorkQueue(queue_path, [item(1)])
        resolver = ScriptedResolver({'movie:1': [ConfigurationError('credentials rejected')]})

        with pytest.raises(ConfigurationError):
            make_runner(queue, failure_log, catalog, resolver, sleeps).run()
        assert catalog.claim(1, 'movie', 'other:2')


class TestBuildQueue:
    """Enqueue catalog gaps"""

    def test_build_queue(self, catalog, queue_path):
        catalog.record_percentage(1, 'movie', 80)
        queue = WorkQueue(queue_path)

        assert build_queue_from_catalog(catalog, queue) == 3
        assert [i.key for i in queue] == ['movie:2', 'movie:3', 'movie:4']
        assert build_queue_from_catalog(catalog, queue) == 0

    def test_build_queue_limit(self, catalog, queue_path):
        queue = WorkQueue(queue_path)
        assert build_queue_from_catalog(catalog, queue, limit=2) == 2


class TestRecentlyResolved:
    """Bounded TTL set"""

    def test_ttl(self):
        clock = FakeClock()
        recent = RecentlyResolved(max_size=10, ttl_seconds=60, clock=clock)
        recent.add('movie:1')
        assert 'movie:1' in recent
        clock.now = 61
        assert 'movie:1' not in recent

    def test_size_bound(self):
        recent = RecentlyResolved(max_size=2, ttl_seconds=3600, clock=FakeClock())
        for key in ('a', 'b', 'c'):
            recent.add(key)
        assert len(recent) == 2
        assert 'a' not in recent
        assert 'c' in recent
