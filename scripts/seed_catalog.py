#!/usr/bin/env python3
"""
scripts/seed_catalog.py - Import catalog rows from a metadata export CSV

The metadata provider (TMDb) export is the source of catalog items; this
pipeline only reads them. This script loads such an export into the SQLite
catalog so `fetch_sentiment.py build` can find the gaps.

CSV format:
  provider_id,media_kind,title,original_title,release_date,popularity
  27205,movie,Inception,Inception,2010-07-15,83.9
  1396,series,Breaking Bad,Breaking Bad,2008-01-20,312.5

A `year` column may replace `release_date`. media_kind also accepts MOVIE / TV_SHOW.
Existing rows keep their sentiment data; only metadata is refreshed.

Usage:
    python scripts/seed_catalog.py output/tmdb_export.csv
    python scripts/seed_catalog.py output/tmdb_export.csv --dry-run
"""

import sys
import csv
import argparse
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentiment.catalog import CatalogItem, CatalogStore, CatalogUnavailableError
from sentiment.config import load_config
from sentiment.queries import normalize_media_kind


def _parse_year(row: dict) -> Optional[int]:
    raw = (row.get('year') or row.get('release_date') or '').strip()
    if len(raw) >= 4 and raw[:4].isdigit():
        return int(raw[:4])
    return None


def _parse_popularity(row: dict) -> float:
    try:
        return float(row.get('popularity') or 0)
    except ValueError:
        return 0.0


def read_rows(csv_path: Path):
    """Yield (CatalogItem, None) for good rows and (None, reason) for bad ones"""
    with open(csv_path, encoding='utf-8') as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            title = (row.get('title') or '').strip()
            if not title:
                yield None, f"line {line_no}: missing title"
                continue
            try:
                provider_id = int(row.get('provider_id') or row.get('tmdb_id') or '')
                media_kind = normalize_media_kind(row.get('media_kind') or row.get('media_type') or '')
            except ValueError as e:
                yield None, f"line {line_no}: {e}"
                continue

            yield CatalogItem(
                provider_id=provider_id,
                media_kind=media_kind,
                title=title,
                original_title=(row.get('original_title') or '').strip() or None,
                release_year=_parse_year(row),
                popularity=_parse_popularity(row),
            ), None


def main():
    parser = argparse.ArgumentParser(description='Import catalog rows into the sentiment catalog')
    parser.add_argument('csv_path', type=Path, help='Metadata export CSV')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'))
    parser.add_argument('--dry-run', action='store_true',
                        help='Validate the CSV without writing to the catalog')
    args = parser.parse_args()

    if not args.csv_path.exists():
        print(f"Error: {args.csv_path} not found", file=sys.stderr)
        return 1

    config = load_config(args.config)
    rows = list(read_rows(args.csv_path))
    good = [item for item, _ in rows if item is not None]
    bad = [reason for item, reason in rows if item is None]

    print(f"Rows read: {len(rows)}")
    print(f"Valid:     {len(good)}")
    print(f"Skipped:   {len(bad)}")
    for reason in bad[:20]:
        print(f"  - {reason}")
    if len(bad) > 20:
        print(f"  ... and {len(bad) - 20} more")

    if args.dry_run:
        return 0

    db_path = Path(config['catalog']['database_path'])
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with CatalogStore(db_path) as catalog:
            for item in good:
                catalog.upsert_item(item)
            stats = catalog.coverage_stats()
    except CatalogUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\nCatalog now holds {stats['total']} items "
          f"({stats['found']} with sentiment, {stats['unattempted']} unattempted, "
          f"{stats['exhausted']} exhausted)")
    return 0


if __name__ == '__main__':
    sys.exit(main())
