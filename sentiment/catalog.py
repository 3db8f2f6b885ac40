#!/usr/bin/env python3
"""
SQLite catalog store - the sentiment columns of media_items

Sentiment state is tri-state and never conflated:
- unattempted: no resolution has finished yet (percentage NULL)
- exhausted:   every query strategy ran, no percentage exists (percentage NULL)
- found:       percentage set; this pipeline never overwrites it

A claim column (owner + expiry) marks an item as being resolved so two runs
never work the same item at once.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sentiment.constants import (
    SENTIMENT_EXHAUSTED,
    SENTIMENT_FOUND,
    SENTIMENT_UNATTEMPTED,
)
from sentiment.queries import normalize_media_kind

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class CatalogUnavailableError(Exception):
    """Catalog database cannot be opened, read or written - fatal"""


def now_epoch() -> int:
    return int(time.time())


@dataclass
class CatalogItem:
    """A media_items row as seen by this pipeline"""
    provider_id: int
    media_kind: str
    title: str
    original_title: Optional[str] = None
    release_year: Optional[int] = None
    popularity: float = 0.0
    sentiment_status: str = SENTIMENT_UNATTEMPTED
    sentiment_percentage: Optional[int] = None
    sentiment_attempted_at: Optional[int] = None

    @property
    def identity(self) -> Tuple[int, str]:
        return (self.provider_id, self.media_kind)

    @property
    def key(self) -> str:
        return f"{self.media_kind}:{self.provider_id}"

    @property
    def year(self) -> Optional[int]:
        return self.release_year

    @property
    def has_percentage(self) -> bool:
        return self.sentiment_status == SENTIMENT_FOUND

    @property
    def is_exhausted(self) -> bool:
        return self.sentiment_status == SENTIMENT_EXHAUSTED

    def exhausted_within(self, cooldown_days: float, now: Optional[int] = None) -> bool:
        """True if exhausted recently enough that another attempt is not due"""
        if not self.is_exhausted:
            return False
        if self.sentiment_attempted_at is None:
            return False
        now = now_epoch() if now is None else now
        return now - self.sentiment_attempted_at < cooldown_days * SECONDS_PER_DAY


class CatalogStore:
    """Read and update sentiment data in the catalog database"""

    def __init__(self, path: Path, read_only: bool = False):
        """
        Open the catalog; read_only opens an existing database without
        creating it or touching its schema (dry runs)
        """
        self.path = Path(path)
        self.read_only = read_only
        try:
            if read_only:
                self.conn = sqlite3.connect(f"{self.path.resolve().as_uri()}?mode=ro", uri=True)
            else:
                self.conn = sqlite3.connect(str(self.path))
            self.conn.row_factory = sqlite3.Row
            if not read_only:
                self._init_schema()
        except sqlite3.Error as e:
            raise CatalogUnavailableError(f"Cannot open catalog {self.path}: {e}") from e

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _init_schema(self):
        with self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS media_items (
                    provider_id INTEGER NOT NULL,
                    media_kind TEXT NOT NULL CHECK (media_kind IN ('movie', 'series')),
                    title TEXT NOT NULL,
                    original_title TEXT,
                    release_year INTEGER,
                    popularity REAL NOT NULL DEFAULT 0,
                    sentiment_status TEXT NOT NULL DEFAULT 'unattempted'
                        CHECK (sentiment_status IN ('unattempted', 'exhausted', 'found')),
                    sentiment_percentage INTEGER
                        CHECK (sentiment_percentage BETWEEN 0 AND 100),
                    sentiment_attempted_at INTEGER,
                    claimed_by TEXT,
                    claimed_until INTEGER,
                    PRIMARY KEY (provider_id, media_kind),
                    CHECK ((sentiment_status = 'found') = (sentiment_percentage IS NOT NULL))
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_media_items_sentiment
                ON media_items (sentiment_status, sentiment_attempted_at)
                """
            )

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self.conn:
                return self.conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise CatalogUnavailableError(f"Catalog query failed: {e}") from e

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> CatalogItem:
        return CatalogItem(
            provider_id=row['provider_id'],
            media_kind=row['media_kind'],
            title=row['title'],
            original_title=row['original_title'],
            release_year=row['release_year'],
            popularity=row['popularity'],
            sentiment_status=row['sentiment_status'],
            sentiment_percentage=row['sentiment_percentage'],
            sentiment_attempted_at=row['sentiment_attempted_at'],
        )

    def get(self, provider_id: int, media_kind: str) -> Optional[CatalogItem]:
        row = self._execute(
            "SELECT * FROM media_items WHERE provider_id = ? AND media_kind = ?",
            (int(provider_id), normalize_media_kind(media_kind)),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def upsert_item(self, item: CatalogItem):
        """
        Insert or refresh catalog metadata

        Sentiment columns of an existing row are never touched here.
        """
        self._execute(
            """
            INSERT INTO media_items (
                provider_id, media_kind, title, original_title, release_year, popularity
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (provider_id, media_kind) DO UPDATE SET
                title = excluded.title,
                original_title = excluded.original_title,
                release_year = excluded.release_year,
                popularity = excluded.popularity
            """,
            (
                int(item.provider_id),
                normalize_media_kind(item.media_kind),
                item.title,
                item.original_title,
                item.release_year,
                item.popularity or 0.0,
            ),
        )

    def items_needing_sentiment(self, cooldown_days: float = 30,
                                limit: Optional[int] = None) -> List[CatalogItem]:
        """Unattempted items, plus exhausted ones whose cooldown has passed"""
        cutoff = now_epoch() - int(cooldown_days * SECONDS_PER_DAY)
        sql = """
            SELECT * FROM media_items
            WHERE sentiment_status = ?
               OR (sentiment_status = ?
                   AND (sentiment_attempted_at IS NULL OR sentiment_attempted_at <= ?))
            ORDER BY popularity DESC, provider_id ASC
        """
        params: tuple = (SENTIMENT_UNATTEMPTED, SENTIMENT_EXHAUSTED, cutoff)
        if limit is not None:
            sql += " LIMIT ?"
            params += (int(limit),)
        return [self._row_to_item(row) for row in self._execute(sql, params).fetchall()]

    def record_percentage(self, provider_id: int, media_kind: str, percentage: int) -> bool:
        """
        Store a found percentage and release any claim

        Returns False (and writes nothing) if the item already has a
        percentage or does not exist.
        """
        if not 0 <= int(percentage) <= 100:
            raise ValueError(f"Percentage out of range: {percentage}")

        cursor = self._execute(
            """
            UPDATE media_items
            SET sentiment_status = ?, sentiment_percentage = ?, sentiment_attempted_at = ?,
                claimed_by = NULL, claimed_until = NULL
            WHERE provider_id = ? AND media_kind = ? AND sentiment_status != ?
            """,
            (SENTIMENT_FOUND, int(percentage), now_epoch(),
             int(provider_id), normalize_media_kind(media_kind), SENTIMENT_FOUND),
        )
        if cursor.rowcount != 1:
            logger.warning(f"Refused percentage write for {media_kind}:{provider_id} "
                           f"(already set or not in catalog)")
            return False
        return True

    def mark_exhausted(self, provider_id: int, media_kind: str) -> bool:
        """Record 'attempted, nothing found'; never downgrades a found item"""
        cursor = self._execute(
            """
            UPDATE media_items
            SET sentiment_status = ?, sentiment_percentage = NULL, sentiment_attempted_at = ?,
                claimed_by = NULL, claimed_until = NULL
            WHERE provider_id = ? AND media_kind = ? AND sentiment_status != ?
            """,
            (SENTIMENT_EXHAUSTED, now_epoch(),
             int(provider_id), normalize_media_kind(media_kind), SENTIMENT_FOUND),
        )
        return cursor.rowcount == 1

    def claim(self, provider_id: int, media_kind: str, owner: str,
              ttl_seconds: int = 900) -> bool:
        """
        Mark an item as in progress for owner

        Succeeds when the item exists, has no percentage, and is unclaimed,
        claimed by the same owner, or its previous claim expired.
        """
        now = now_epoch()
        cursor = self._execute(
            """
            UPDATE media_items
            SET claimed_by = ?, claimed_until = ?
            WHERE provider_id = ? AND media_kind = ? AND sentiment_status != ?
              AND (claimed_until IS NULL OR claimed_until <= ? OR claimed_by = ?)
            """,
            (owner, now + int(ttl_seconds), int(provider_id),
             normalize_media_kind(media_kind), SENTIMENT_FOUND, now, owner),
        )
        return cursor.rowcount == 1

    def release(self, provider_id: int, media_kind: str, owner: str):
        self._execute(
            """
            UPDATE media_items SET claimed_by = NULL, claimed_until = NULL
            WHERE provider_id = ? AND media_kind = ? AND claimed_by = ?
            """,
            (int(provider_id), normalize_media_kind(media_kind), owner),
        )

    def coverage_stats(self) -> Dict:
        """Counts per sentiment state"""
        rows = self._execute(
            "SELECT sentiment_status, COUNT(*) AS n FROM media_items GROUP BY sentiment_status"
        ).fetchall()
        stats = {state: 0 for state in (SENTIMENT_UNATTEMPTED, SENTIMENT_EXHAUSTED, SENTIMENT_FOUND)}
        for row in rows:
            stats[row['sentiment_status']] = row['n']
        total = sum(stats.values())
        stats['total'] = total
        stats['coverage'] = (stats[SENTIMENT_FOUND] / total * 100) if total > 0 else 0
        return stats
