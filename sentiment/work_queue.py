#!/usr/bin/env python3
"""
Durable work queue and failure log (JSON files)

The queue file is a JSON array of QueueItem dicts, fully rewritten after
every processed item so a killed run resumes with exactly the pending work.
The failure log is a JSON object keyed by catalog identity ("movie:27205");
repeated failures for one item merge into one entry.
"""

import json
import logging
import os
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from sentiment.queries import normalize_media_kind

logger = logging.getLogger(__name__)


class QueueFileError(Exception):
    """Queue or failure log file exists but cannot be read - fatal"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_key(provider_id: int, media_kind: str) -> str:
    """Catalog identity as a string key"""
    return f"{normalize_media_kind(media_kind)}:{int(provider_id)}"


@dataclass
class QueueItem:
    """One catalog item awaiting sentiment resolution"""
    provider_id: int
    media_kind: str
    title: str
    original_title: Optional[str] = None
    year: Optional[int] = None
    retries: int = 0

    @property
    def identity(self) -> Tuple[int, str]:
        return (int(self.provider_id), normalize_media_kind(self.media_kind))

    @property
    def key(self) -> str:
        return make_key(self.provider_id, self.media_kind)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'QueueItem':
        """
        Build from a queue-file entry

        Also reads the older camelCase layout
        ({"tmdbId": 1, "mediaType": "TV_SHOW", ...}).
        """
        provider_id = data.get('provider_id', data.get('tmdbId', data.get('tmdb_id')))
        media_kind = data.get('media_kind', data.get('mediaType', data.get('media_type')))
        if provider_id is None or media_kind is None:
            raise ValueError(f"Queue entry missing identity: {data!r}")

        year = data.get('year')
        return cls(
            provider_id=int(provider_id),
            media_kind=normalize_media_kind(media_kind),
            title=data.get('title') or '',
            original_title=data.get('original_title') or data.get('originalTitle') or None,
            year=int(year) if year not in (None, '') else None,
            retries=int(data.get('retries') or 0),
        )


def _write_json_atomic(path: Path, payload):
    """Write JSON to a temp file and rename it over path"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + '.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _read_json(path: Path):
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise QueueFileError(f"Could not read {path}: {e}") from e


class WorkQueue:
    """Ordered, persisted list of pending QueueItems"""

    def __init__(self, path: Path, items: Optional[List[QueueItem]] = None):
        self.path = Path(path)
        self._items: deque = deque()
        self._keys = set()
        for item in items or []:
            self.enqueue(item)

    @classmethod
    def load(cls, path: Path) -> 'WorkQueue':
        """
        Resume from a persisted queue file

        A missing file is an empty queue. An unreadable one raises
        QueueFileError and is left untouched so no pending work is lost.
        """
        path = Path(path)
        if not path.exists():
            logger.info(f"No queue file at {path} - starting empty")
            return cls(path)

        data = _read_json(path)
        if not isinstance(data, list):
            raise QueueFileError(f"Queue file {path} must contain a JSON array")

        queue = cls(path)
        for entry in data:
            try:
                item = QueueItem.from_dict(entry)
            except (AttributeError, TypeError, ValueError) as e:
                raise QueueFileError(f"Bad queue entry in {path}: {e}") from e
            if not queue.enqueue(item):
                logger.warning(f"Duplicate queue entry dropped on load: {item.key}")

        logger.info(f"Loaded queue with {len(queue)} items from {path}")
        return queue

    def enqueue(self, item: QueueItem) -> bool:
        """Append item unless its identity is already queued"""
        if item.key in self._keys:
            return False
        self._items.append(item)
        self._keys.add(item.key)
        return True

    def pop_front(self) -> QueueItem:
        item = self._items.popleft()
        self._keys.discard(item.key)
        return item

    def push_front(self, item: QueueItem):
        """Return an item to the head (cancelled before completion)"""
        if item.key in self._keys:
            return
        self._items.appendleft(item)
        self._keys.add(item.key)

    def push_back(self, item: QueueItem):
        """Move an item to the tail for a later retry"""
        if item.key in self._keys:
            return
        self._items.append(item)
        self._keys.add(item.key)

    def persist(self):
        """Rewrite the queue file with the current contents"""
        _write_json_atomic(self.path, [item.to_dict() for item in self._items])
        logger.debug(f"Saved queue with {len(self._items)} items")

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QueueItem]:
        return iter(list(self._items))

    def __contains__(self, key) -> bool:
        if isinstance(key, QueueItem):
            key = key.key
        return key in self._keys


@dataclass
class FailureAttempt:
    """One unsuccessful query against the search provider"""
    query: str
    category: str
    task_id: Optional[str] = None
    response_size: int = 0
    detail: str = ''
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict:
        return asdict(self)


class FailureLog:
    """Append-only record of failed attempts, merged per catalog item"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.entries: Dict[str, Dict] = {}

    @classmethod
    def load(cls, path: Path) -> 'FailureLog':
        log = cls(path)
        if log.path.exists():
            data = _read_json(log.path)
            if not isinstance(data, dict):
                raise QueueFileError(f"Failure log {log.path} must contain a JSON object")
            log.entries = data
            logger.info(f"Loaded failure log with {len(data)} items")
        return log

    def _entry(self, item: QueueItem) -> Dict:
        entry = self.entries.get(item.key)
        if entry is None:
            now = utc_now_iso()
            entry = {
                'item': item.to_dict(),
                'attempts': [],
                'first_failed_at': now,
                'last_failed_at': now,
                'exhausted_retries': False,
                'exhausted_at': None,
                'last_reason': None,
            }
            self.entries[item.key] = entry
        return entry

    def record_attempt(self, item: QueueItem, attempt: FailureAttempt):
        entry = self._entry(item)
        entry['attempts'].append(attempt.to_dict())
        entry['last_failed_at'] = attempt.timestamp
        entry['last_reason'] = attempt.category

    def record_exhausted(self, item: QueueItem, reason: str):
        """Item gave up after max retries - kept here for offline inspection"""
        entry = self._entry(item)
        now = utc_now_iso()
        entry['item'] = item.to_dict()
        entry['exhausted_retries'] = True
        entry['exhausted_at'] = now
        entry['last_failed_at'] = now
        entry['last_reason'] = reason

    def exhausted_items(self) -> List[QueueItem]:
        return [
            QueueItem.from_dict(entry['item'])
            for entry in self.entries.values()
            if entry.get('exhausted_retries')
        ]

    def attempt_count(self, key: Optional[str] = None) -> int:
        if key is not None:
            return len(self.entries.get(key, {}).get('attempts', []))
        return sum(len(entry.get('attempts', [])) for entry in self.entries.values())

    def remove(self, key: str):
        self.entries.pop(key, None)

    def save(self):
        _write_json_atomic(self.path, self.entries)
        logger.debug(f"Saved failure log with {len(self.entries)} items")

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: str) -> bool:
        return key in self.entries
