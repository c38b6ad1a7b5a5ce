"""Historical pull worker CLI

Drains one historical run through the admin API: claim → collect from the
Wayback Machine → submit batches → finalize, until no task is left.

Usage:
    ADMIN_API_TOKEN=<token> python scripts/run_historical_worker.py --run-id <run_id>
    ADMIN_API_TOKEN=<token> python scripts/run_historical_worker.py --run-id <run_id> \
        --api-base https://rates.example.com/api --idle-polls 3 -v
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# put backend/ on sys.path
backend_dir = str(Path(__file__).resolve().parent.parent / "backend")
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from app.config import settings  # noqa: E402
from app.services.collector.wayback_cdr import WaybackCdrCollector  # noqa: E402
from app.services.historical.worker import (  # noqa: E402
    HistoricalApiClient,
    WorkerLoop,
    WorkerSummary,
)


def setup_logging(verbose: bool = False) -> None:
    """Logging setup"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # quiet httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_result(summary: WorkerSummary) -> None:
    """Print the run summary"""
    print(f"\n{'='*50}")
    print(f"Worker finished: {summary.run_id}")
    print(f"{'='*50}")
    print(f"  Worker ID  : {summary.worker_id}")
    print(f"  Completed  : {summary.completed_tasks}")
    print(f"  Failed     : {summary.failed_tasks}")
    if summary.lost_leases:
        print(f"  Lost lease : {summary.lost_leases}")
    print(f"  Batches    : {summary.batches_sent}")
    print(f"  Rows       : {summary.rows_sent}")
    if summary.errors:
        print(f"  Errors     : {len(summary.errors)}")
        for err in summary.errors[:5]:
            print(f"    - {err}")
        if len(summary.errors) > 5:
            print(f"    ... and {len(summary.errors) - 5} more")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Historical pull worker")
    parser.add_argument("--run-id", type=str, required=True, help="run to drain")
    parser.add_argument("--api-base", type=str, default=settings.HISTORICAL_API_BASE, help="API base URL")
    parser.add_argument("--idle-polls", type=int, default=1, help="empty claims before exiting")
    parser.add_argument(
        "--poll-interval", type=float, default=settings.HISTORICAL_WORKER_POLL_INTERVAL,
        help="wait between empty claims (seconds)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    args = parser.parse_args()
    setup_logging(verbose=args.verbose)

    run_id = args.run_id.strip()
    if not run_id:
        parser.error("--run-id must not be empty")
    if not settings.ADMIN_API_TOKEN:
        parser.error("ADMIN_API_TOKEN is not set")

    api = HistoricalApiClient(base_url=args.api_base, token=settings.ADMIN_API_TOKEN)
    collector = WaybackCdrCollector()
    try:
        loop = WorkerLoop(
            run_id,
            api=api,
            collector=collector,
            idle_polls=args.idle_polls,
            poll_interval=args.poll_interval,
        )
        print(f"\nWorker start: run={run_id} worker={loop.worker_id} api={args.api_base}")
        summary = loop.run()
        print_result(summary)
    finally:
        collector.close()
        api.close()


if __name__ == "__main__":
    main()
