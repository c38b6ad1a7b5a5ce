"""Expired-lease sweep CLI

Fails claimed tasks whose lease expired after the attempt ceiling, so a run
whose workers disappeared can reach a terminal status.

Usage:
    python scripts/sweep_historical_run.py --run-id <run_id>
    python scripts/sweep_historical_run.py --run-id <run_id> --max-attempts 5
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
from app.database import SessionLocal  # noqa: E402
from app.services.historical.coordinator import RunCoordinator  # noqa: E402
from app.services.historical.errors import HistoricalPullError  # noqa: E402
from app.services.historical.lease_store import TaskLeaseStore  # noqa: E402


def setup_logging(verbose: bool = False) -> None:
    """Logging setup"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Fail exhausted expired leases of a run")
    parser.add_argument("--run-id", type=str, required=True, help="run to sweep")
    parser.add_argument(
        "--max-attempts", type=int, default=settings.HISTORICAL_MAX_TASK_ATTEMPTS,
        help="attempt ceiling before an expired lease is failed",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    args = parser.parse_args()
    setup_logging(verbose=args.verbose)

    db = SessionLocal()
    try:
        try:
            swept = TaskLeaseStore(db).sweep_expired(args.run_id.strip(), args.max_attempts)
            detail = RunCoordinator(db).get_detail(args.run_id.strip(), task_limit=5)
        except HistoricalPullError as e:
            print(f"\nFailed [{e.code}]: {e.message}")
            sys.exit(1)
    finally:
        db.close()

    run = detail.run
    print(f"\n{'='*50}")
    print(f"Sweep finished: {run.run_id}")
    print(f"{'='*50}")
    print(f"  Swept      : {swept}")
    print(f"  Status     : {run.status} ({detail.progress_pct}%)")
    print(f"  Completed  : {run.completed_tasks}/{run.total_tasks}")
    print(f"  Failed     : {run.failed_tasks}")
    print(f"  Claimed    : {run.claimed_tasks}")
    print()


if __name__ == "__main__":
    main()
