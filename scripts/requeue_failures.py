#!/usr/bin/env python3
"""
scripts/requeue_failures.py - Put items that ran out of retries back on the queue

Items dropped after max_retries live in the failure log. Once the cause is
fixed (provider outage, rate-limit ban, a new extraction pattern), this moves
them back to the tail of the queue with their retry counter reset.

Usage:
    python scripts/requeue_failures.py              # re-queue, keep log entries
    python scripts/requeue_failures.py --clear      # re-queue and drop them from the log
    python scripts/requeue_failures.py --dry-run    # list what would be re-queued
"""

import sys
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentiment.config import load_config
from sentiment.work_queue import FailureLog, QueueFileError, WorkQueue


def requeue(queue: WorkQueue, failure_log: FailureLog, clear: bool = False) -> int:
    """Move exhausted failure-log items onto the queue; returns count added"""
    added = 0
    for item in failure_log.exhausted_items():
        item.retries = 0
        if queue.enqueue(item):
            added += 1
        if clear:
            failure_log.remove(item.key)
    return added


def main():
    parser = argparse.ArgumentParser(description='Re-queue items that exhausted their retries')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'))
    parser.add_argument('--clear', action='store_true',
                        help='Remove re-queued items from the failure log')
    parser.add_argument('--dry-run', action='store_true',
                        help='Print what would be re-queued without writing')
    args = parser.parse_args()

    settings = load_config(args.config)['queue']
    try:
        queue = WorkQueue.load(Path(settings['queue_path']))
        failure_log = FailureLog.load(Path(settings['failure_log_path']))
    except QueueFileError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    candidates = failure_log.exhausted_items()
    print(f"Failure log: {len(failure_log)} items, {len(candidates)} exhausted retries")

    if args.dry_run:
        for item in candidates:
            status = 'already queued' if item in queue else 'would re-queue'
            print(f"  [{item.key}] {item.title} ({item.year or 'N/A'}) - {status}")
        return 0

    added = requeue(queue, failure_log, clear=args.clear)
    queue.persist()
    if args.clear:
        failure_log.save()

    print(f"Re-queued {added} items; queue now has {len(queue)} pending")
    return 0


if __name__ == '__main__':
    sys.exit(main())
