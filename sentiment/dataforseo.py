#!/usr/bin/env python3
"""
DataForSEO search-task client

Wraps the provider's asynchronous three-step protocol:
1. task_post         -> task id
2. wait until ready  -> fixed delay, or tasks_ready polling
3. task_get/html/id  -> rendered result markup (may be empty right after ready)

Every request is counted and costed so runs can report and cap spend.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional, Set

import requests

from sentiment.config import ConfigurationError
from sentiment.constants import (
    DEFAULT_COST_PER_REQUEST,
    FAILURE_FETCH,
    FAILURE_PAYLOAD_EMPTY,
    FAILURE_SUBMISSION,
    STATUS_OK,
    TASK_ACCEPTED_STATUSES,
    TASK_PENDING_STATUSES,
)

logger = logging.getLogger(__name__)

TASK_POST_PATH = '/serp/google/organic/task_post'
TASKS_READY_PATH = '/serp/google/organic/tasks_ready'
TASK_HTML_PATH = '/serp/google/organic/task_get/html/{task_id}'


class SearchTaskError(Exception):
    """A search-task step failed; category goes to the failure log"""

    def __init__(self, message: str, category: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.category = category
        self.status_code = status_code


class SubmissionError(SearchTaskError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, FAILURE_SUBMISSION, status_code)


class FetchError(SearchTaskError):
    def __init__(self, message: str, category: str = FAILURE_FETCH,
                 status_code: Optional[int] = None):
        super().__init__(message, category, status_code)


class ProviderAuthError(ConfigurationError):
    """Credentials rejected by the provider - fatal for the whole run"""


class FixedDelayReadiness:
    """Sleep a fixed time and assume the task is done (provider has no push)"""

    def __init__(self, wait_seconds: float = 5):
        self.wait_seconds = wait_seconds

    def wait(self, client: 'DataForSEOClient', task_id: str,
             max_wait: Optional[float] = None) -> bool:
        delay = self.wait_seconds if max_wait is None else min(self.wait_seconds, max_wait)
        return not client.pause(delay)


class TasksReadyPolling:
    """Poll the tasks_ready endpoint until the task id is listed or time runs out"""

    def __init__(self, poll_interval_seconds: float = 2, max_wait_seconds: float = 60):
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds

    def wait(self, client: 'DataForSEOClient', task_id: str,
             max_wait: Optional[float] = None) -> bool:
        limit = self.max_wait_seconds if max_wait is None else max_wait
        deadline = client.clock() + limit

        while True:
            if task_id in client.ready_task_ids():
                return True
            remaining = deadline - client.clock()
            if remaining <= 0:
                return False
            if client.pause(min(self.poll_interval_seconds, remaining)):
                return False


class DataForSEOClient:
    """Interface to the DataForSEO SERP task API with cost accounting"""

    def __init__(self, login: str, password: str,
                 base_url: str = 'https://api.dataforseo.com/v3',
                 language_code: str = 'en', location_code: int = 2840,
                 device: str = 'desktop', os_name: str = 'windows',
                 timeout: float = 30, fetch_attempts: int = 3,
                 fetch_backoff_seconds: float = 5,
                 cost_per_request: float = DEFAULT_COST_PER_REQUEST,
                 readiness=None, session: Optional[requests.Session] = None,
                 stop_event: Optional[threading.Event] = None,
                 sleep=None, clock=time.monotonic):
        if not login or not password:
            raise ConfigurationError("DataForSEO login and password are required")

        self.base_url = base_url.rstrip('/')
        self.language_code = language_code
        self.location_code = location_code
        self.device = device
        self.os_name = os_name
        self.timeout = timeout
        self.fetch_attempts = max(1, int(fetch_attempts))
        self.fetch_backoff_seconds = fetch_backoff_seconds
        self.cost_per_request = cost_per_request
        self.readiness = readiness or FixedDelayReadiness()
        self.stop_event = stop_event
        self.clock = clock
        self._sleep = sleep

        self.session = session or requests.Session()
        self.session.auth = (login, password)

        self.request_count = 0
        self.submissions = 0
        self.fetches = 0
        self.total_cost = 0.0

    @classmethod
    def from_config(cls, config: Dict[str, Any],
                    stop_event: Optional[threading.Event] = None) -> 'DataForSEOClient':
        """Build a client from the 'dataforseo' and 'search' config sections"""
        provider = config['dataforseo']
        search = config['search']

        if search.get('readiness') == 'poll':
            readiness = TasksReadyPolling(
                poll_interval_seconds=search['poll_interval_seconds'],
                max_wait_seconds=search['wait_seconds'],
            )
        else:
            readiness = FixedDelayReadiness(search['wait_seconds'])

        return cls(
            login=provider['login'],
            password=provider['password'],
            base_url=provider['base_url'],
            language_code=provider['language_code'],
            location_code=provider['location_code'],
            device=provider['device'],
            os_name=provider['os'],
            timeout=provider['timeout_seconds'],
            fetch_attempts=search['fetch_attempts'],
            fetch_backoff_seconds=search['fetch_backoff_seconds'],
            cost_per_request=provider['cost_per_request'],
            readiness=readiness,
            stop_event=stop_event,
        )

    def pause(self, seconds: float) -> bool:
        """Sleep for seconds; returns True if the run was cancelled meanwhile"""
        if self._sleep is not None:
            if seconds > 0:
                self._sleep(seconds)
            return bool(self.stop_event and self.stop_event.is_set())
        if self.stop_event is not None:
            return self.stop_event.wait(max(0, seconds))
        if seconds > 0:
            time.sleep(seconds)
        return False

    def _record_cost(self, data: Optional[Dict]):
        cost = data.get('cost') if isinstance(data, dict) else None
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            self.total_cost += float(cost)
        else:
            self.total_cost += self.cost_per_request

    def _call(self, method: str, path: str, error_cls, **kwargs) -> Dict:
        """
        Perform one API request and return the decoded body

        Raises error_cls for transport, HTTP and API-level failures, and
        ProviderAuthError when the credentials are rejected.
        """
        url = f"{self.base_url}{path}"
        self.request_count += 1

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise error_cls(f"Timeout calling {path}: {e}")
        except requests.exceptions.RequestException as e:
            raise error_cls(f"Network error calling {path}: {e}")

        if response.status_code in (401, 403):
            raise ProviderAuthError(
                f"DataForSEO rejected credentials ({response.status_code}) on {path}"
            )
        if response.status_code == 429:
            raise error_cls(f"Rate limited on {path}", status_code=429)
        if not 200 <= response.status_code < 300:
            raise error_cls(
                f"HTTP {response.status_code} on {path}: {response.reason}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            self._record_cost(None)
            raise error_cls(f"Malformed JSON from {path}: {e}", status_code=response.status_code)

        self._record_cost(data)

        if not isinstance(data, dict):
            raise error_cls(f"Unexpected response body from {path}")
        if data.get('status_code') != STATUS_OK:
            raise error_cls(
                data.get('status_message') or f"API status {data.get('status_code')} on {path}",
                status_code=data.get('status_code'),
            )
        return data

    @staticmethod
    def _first_task(data: Dict) -> Dict:
        tasks = data.get('tasks') or []
        return tasks[0] if tasks and isinstance(tasks[0], dict) else {}

    def submit(self, query: str) -> str:
        """
        Create a search task for query

        Returns:
            Provider task id

        Raises:
            SubmissionError: network/HTTP/API failure or no task id
        """
        payload = [{
            'language_code': self.language_code,
            'location_code': self.location_code,
            'keyword': query,
            'device': self.device,
            'os': self.os_name,
        }]

        data = self._call('POST', TASK_POST_PATH, SubmissionError, json=payload)
        task = self._first_task(data)
        status = task.get('status_code')

        if status not in TASK_ACCEPTED_STATUSES or not task.get('id'):
            raise SubmissionError(
                task.get('status_message') or 'No task id returned',
                status_code=status,
            )

        self.submissions += 1
        logger.debug(f"Submitted '{query}' -> task {task['id']}")
        return task['id']

    def ready_task_ids(self) -> Set[str]:
        """Ids of completed tasks not yet collected (empty set on any failure)"""
        try:
            data = self._call('GET', TASKS_READY_PATH, FetchError)
        except FetchError as e:
            logger.debug(f"tasks_ready poll failed: {e}")
            return set()

        ready = set()
        for task in data.get('tasks') or []:
            for entry in (task or {}).get('result') or []:
                if isinstance(entry, dict) and entry.get('id'):
                    ready.add(entry['id'])
        return ready

    def await_ready(self, task_id: str, max_wait: Optional[float] = None) -> bool:
        """
        Wait for a task's result to become available

        Never blocks past max_wait. Returns False on timeout or cancellation,
        leaving the retry decision to the caller.
        """
        return self.readiness.wait(self, task_id, max_wait)

    def _fetch_html(self, task_id: str) -> Optional[str]:
        data = self._call('GET', TASK_HTML_PATH.format(task_id=task_id), FetchError)
        self.fetches += 1

        task = self._first_task(data)
        status = task.get('status_code')
        if status in TASK_PENDING_STATUSES:
            return None
        if status not in TASK_ACCEPTED_STATUSES:
            raise FetchError(
                task.get('status_message') or f"Task status {status}",
                status_code=status,
            )

        results = task.get('result') or []
        first_result = results[0] if results and isinstance(results[0], dict) else {}
        items = first_result.get('items') or []
        first_item = items[0] if items and isinstance(items[0], dict) else {}
        html = first_item.get('html')
        return html if isinstance(html, str) and html else None

    def fetch_payload(self, task_id: str, attempts: Optional[int] = None) -> str:
        """
        Fetch the rendered markup for a task, retrying with growing backoff

        Backoff between attempts is fetch_backoff_seconds x attempt number.

        Raises:
            FetchError: category 'payload_empty' if every attempt came back
                empty, 'fetch_failed' if the last attempt errored
        """
        attempts = max(1, int(attempts or self.fetch_attempts))
        last_error: Optional[FetchError] = None
        made = 0

        for attempt in range(1, attempts + 1):
            made = attempt
            try:
                html = self._fetch_html(task_id)
                last_error = None
            except FetchError as e:
                logger.debug(f"Fetch attempt {attempt}/{attempts} for task {task_id} failed: {e}")
                html = None
                last_error = e

            if html:
                return html

            if attempt < attempts and self.pause(self.fetch_backoff_seconds * attempt):
                break

        if last_error is not None:
            raise FetchError(
                f"Fetch failed after {made} attempt(s): {last_error}",
                category=FAILURE_FETCH,
                status_code=last_error.status_code,
            )
        raise FetchError(
            f"Empty payload after {made} attempt(s)",
            category=FAILURE_PAYLOAD_EMPTY,
        )

    def get_usage_stats(self) -> Dict:
        """Get request and spend statistics"""
        return {
            'requests': self.request_count,
            'submissions': self.submissions,
            'fetches': self.fetches,
            'total_cost': round(self.total_cost, 6),
        }
