#!/usr/bin/env python3
"""
scripts/failure_report.py - Summarise the failure log for tuning

Shows which failure categories dominate, which query shapes most often come
back without a percentage (candidates for new query strategies), and the
response sizes of misses (tiny responses usually mean a blocked or empty
SERP, large ones a pattern gap in the extractor).

Usage:
    python scripts/failure_report.py
    python scripts/failure_report.py --top 25
"""

import sys
import re
import argparse
from collections import Counter
from pathlib import Path
from typing import Dict

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentiment.config import load_config
from sentiment.constants import FAILURE_NO_MATCH
from sentiment.work_queue import FailureLog, QueueFileError


def query_shape(query: str) -> str:
    """Reduce a query to its strategy shape, e.g. 'Title (2010) movie' -> '<title> (<year>) movie'"""
    shape = re.sub(r'\(\d{4}\)', '(<year>)', query)
    shape = re.sub(r'\b(19|20)\d{2}\b', '<year>', shape)
    for noun in ('tv show', 'movie'):
        if shape.endswith(noun):
            head = shape[:-len(noun)].strip()
            head = re.sub(r'^.*?(?=( \(<year>\)| <year>)|$)', '<title>', head, count=1)
            return f"{head} {noun}".strip()
    return shape


def summarise(failure_log: FailureLog) -> Dict:
    categories = Counter()
    miss_shapes = Counter()
    miss_sizes = []
    exhausted = 0

    for entry in failure_log.entries.values():
        if entry.get('exhausted_retries'):
            exhausted += 1
        for attempt in entry.get('attempts', []):
            categories[attempt.get('category', 'unknown')] += 1
            if attempt.get('category') == FAILURE_NO_MATCH:
                miss_shapes[query_shape(attempt.get('query', ''))] += 1
                miss_sizes.append(int(attempt.get('response_size') or 0))

    return {
        'items': len(failure_log),
        'exhausted': exhausted,
        'categories': categories,
        'miss_shapes': miss_shapes,
        'miss_sizes': sorted(miss_sizes),
    }


def main():
    parser = argparse.ArgumentParser(description='Summarise the sentiment failure log')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'))
    parser.add_argument('--top', type=int, default=10, help='Rows to show per table')
    args = parser.parse_args()

    path = Path(load_config(args.config)['queue']['failure_log_path'])
    try:
        failure_log = FailureLog.load(path)
    except QueueFileError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report = summarise(failure_log)

    print("=" * 60)
    print("FAILURE LOG REPORT")
    print("=" * 60)
    print(f"Items with failures:   {report['items']}")
    print(f"Exhausted retries:     {report['exhausted']}")

    total = sum(report['categories'].values())
    print(f"\nBY CATEGORY ({total} attempts):")
    for category, count in report['categories'].most_common():
        pct = (count / total * 100) if total > 0 else 0
        print(f"  {category:20s}: {count:5d} ({pct:5.1f}%)")

    if report['miss_shapes']:
        print("\nQUERY SHAPES WITHOUT A PERCENTAGE:")
        for shape, count in report['miss_shapes'].most_common(args.top):
            print(f"  {count:5d}  {shape}")

    sizes = report['miss_sizes']
    if sizes:
        median = sizes[len(sizes) // 2]
        small = sum(1 for s in sizes if s < 10000)
        print(f"\nMiss response sizes: min {sizes[0]}, median {median}, max {sizes[-1]}")
        print(f"  Under 10 KB (likely blocked/empty SERP): {small}")

    print("=" * 60)
    return 0


if __name__ == '__main__':
    sys.exit(main())
