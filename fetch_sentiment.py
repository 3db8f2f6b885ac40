#!/usr/bin/env python3
"""
fetch_sentiment.py - Audience sentiment acquisition ("% liked this movie")

Modes:
  process  Drain the persisted queue file
  build    Enqueue catalog items missing sentiment data, then drain the queue

Per item:
1. Generate query strategies (title/year/kind, most specific first)
2. DataForSEO task: submit -> wait -> fetch rendered markup
3. Extract the "% liked" percentage; first hit wins
4. Write once to the catalog (found / exhausted), or retry later

Exit status:
  0  queue completed
  3  stopped early (item/runtime/cost cap, or interrupted) - rerun to resume
  1  fatal error (configuration, credentials, catalog, queue file)
"""

import sys
import signal
import logging
import argparse
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from sentiment.catalog import CatalogStore, CatalogUnavailableError
from sentiment.config import ConfigurationError, load_config, require_credentials
from sentiment.dataforseo import DataForSEOClient
from sentiment.resolver import SentimentResolver
from sentiment.runner import (
    STATUS_COMPLETED,
    QueueRunner,
    RunSummary,
    build_queue_from_catalog,
)
from sentiment.work_queue import FailureLog, QueueFileError, WorkQueue

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FATAL = 1
EXIT_CAP_REACHED = 3

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(config: dict, verbose: bool = False):
    """Console logging, plus a rotating log file when configured"""
    settings = config.get('logging') or {}
    level = logging.DEBUG if verbose else getattr(
        logging, str(settings.get('level') or 'INFO').upper(), logging.INFO
    )
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)

    log_file = settings.get('file')
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path,
            maxBytes=int(settings.get('max_bytes') or 10485760),
            backupCount=int(settings.get('backup_count') or 5),
            encoding='utf-8',
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


class _DryRunClient:
    """Stand-in for the provider client in dry runs - must never be called"""
    total_cost = 0.0

    def __getattr__(self, name):
        raise RuntimeError(f"Dry run attempted a provider call: {name}")

    def get_usage_stats(self) -> dict:
        return {'requests': 0, 'submissions': 0, 'fetches': 0, 'total_cost': 0.0}


def install_signal_handlers(stop_event: threading.Event):
    """First SIGINT/SIGTERM asks the runner to stop after the current step"""
    def _handler(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.warning(f"Signal {signum} received - finishing current step, then stopping "
                       f"(send again to abort immediately)")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def print_summary(summary: RunSummary, usage: dict, coverage: dict, failure_log: FailureLog,
                  dry_run: bool):
    print("\n" + "=" * 60)
    print("SENTIMENT RUN SUMMARY" + (" (DRY RUN)" if dry_run else ""))
    print("=" * 60)
    print(f"Status:          {summary.status}"
          + (f" ({summary.stop_reason})" if summary.stop_reason else ""))
    print(f"Items processed: {summary.processed}")
    print(f"Items remaining: {summary.remaining}")

    if summary.counts:
        print("\nBY RESULT:")
        for result, count in sorted(summary.counts.items(), key=lambda x: -x[1]):
            print(f"  {result:22s}: {count:4d}")

    print(f"\nDataForSEO: {usage['requests']} requests "
          f"({usage['submissions']} tasks, {usage['fetches']} fetches), "
          f"cost ${usage['total_cost']:.4f}")

    if coverage.get('total'):
        print(f"Catalog coverage: {coverage['found']}/{coverage['total']} "
              f"({coverage['coverage']:.1f}%), {coverage['exhausted']} exhausted, "
              f"{coverage['unattempted']} unattempted")

    if len(failure_log):
        print(f"Failure log: {len(failure_log)} items, "
              f"{failure_log.attempt_count()} failed attempts ({failure_log.path})")

    minutes, seconds = divmod(int(summary.elapsed_seconds), 60)
    print(f"Runtime: {minutes}m {seconds}s")
    print("=" * 60)


def run(args) -> int:
    config = load_config(args.config)
    configure_logging(config, verbose=args.verbose)

    queue_settings = config['queue']
    catalog_settings = config['catalog']
    budget = config['budget']

    if not args.dry_run:
        require_credentials(config)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    queue = WorkQueue.load(Path(queue_settings['queue_path']))
    failure_log = FailureLog.load(Path(queue_settings['failure_log_path']))

    db_path = Path(catalog_settings['database_path'])
    if not args.dry_run:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    with CatalogStore(db_path, read_only=args.dry_run) as catalog:
        if args.mode == 'build':
            added = build_queue_from_catalog(
                catalog, queue, cooldown_days=catalog_settings['cooldown_days']
            )
            print(f"Queue: {added} items added, {len(queue)} pending")
            if not args.dry_run:
                queue.persist()
            if args.build_only:
                return EXIT_COMPLETED

        if len(queue) == 0:
            logger.info("Queue is empty. Nothing to process.")
            return EXIT_COMPLETED

        if args.dry_run:
            client = _DryRunClient()
        else:
            client = DataForSEOClient.from_config(config, stop_event=stop_event)

        resolver = SentimentResolver(
            client,
            failure_log=failure_log,
            wait_seconds=config['search']['wait_seconds'],
            fetch_attempts=config['search']['fetch_attempts'],
            stop_event=stop_event,
        )

        max_items = args.limit if args.limit is not None else budget.get('max_items_per_run')
        max_runtime = budget.get('max_runtime_minutes')

        runner = QueueRunner(
            queue,
            failure_log,
            catalog,
            resolver,
            max_retries=queue_settings['max_retries'],
            rate_limit_seconds=queue_settings['rate_limit_seconds'],
            max_items=max_items,
            max_runtime_seconds=max_runtime * 60 if max_runtime else None,
            max_cost=budget.get('max_cost'),
            cooldown_days=catalog_settings['cooldown_days'],
            claim_ttl_seconds=catalog_settings['claim_ttl_seconds'],
            dry_run=args.dry_run,
            stop_event=stop_event,
        )
        summary = runner.run()

        print_summary(summary, client.get_usage_stats(), catalog.coverage_stats(),
                      failure_log, args.dry_run)

    return EXIT_COMPLETED if summary.status == STATUS_COMPLETED else EXIT_CAP_REACHED


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Fetch audience "% liked" sentiment for catalog items via DataForSEO',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python fetch_sentiment.py build                 # enqueue catalog gaps, then process
  python fetch_sentiment.py build --build-only    # only refresh the queue file
  python fetch_sentiment.py process --limit 50    # resume the queue, at most 50 items
  python fetch_sentiment.py process --dry-run     # show queries, no API calls or writes
        """
    )
    parser.add_argument('mode', choices=['process', 'build'],
                        help='process: drain existing queue; build: enqueue catalog gaps first')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'),
                        help='Configuration file (default: config.yaml)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Simulate: no DataForSEO calls, no catalog or queue writes')
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum items to process this run (overrides budget.max_items_per_run)')
    parser.add_argument('--build-only', action='store_true',
                        help='With build: update the queue file and exit without processing')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging (every query attempt)')
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    if args.limit is not None and args.limit < 0:
        print("Error: --limit must be >= 0", file=sys.stderr)
        return EXIT_FATAL

    try:
        return run(args)
    except (ConfigurationError, CatalogUnavailableError, QueueFileError) as e:
        logger.error(f"Fatal: {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("Aborted by second signal - rerun to resume from the queue file")
        return EXIT_CAP_REACHED


if __name__ == '__main__':
    sys.exit(main())
