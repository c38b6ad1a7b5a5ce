"""Historical run creation CLI

Creates a run directly against the database (no HTTP) and prints the worker
command that drains it.

Usage:
    python scripts/start_historical_pull.py --start 2025-01-01 --end 2025-01-31
    python scripts/start_historical_pull.py --start 2025-01-01 --end 2025-01-07 --source public
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

from app.database import SessionLocal  # noqa: E402
from app.models.historical import TriggerSource  # noqa: E402
from app.services.historical.coordinator import RunCoordinator  # noqa: E402
from app.services.historical.errors import HistoricalPullError  # noqa: E402


def setup_logging(verbose: bool = False) -> None:
    """Logging setup"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a historical pull run")
    parser.add_argument("--start", type=str, required=True, help="first date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, required=True, help="last date, inclusive (YYYY-MM-DD)")
    parser.add_argument(
        "--source",
        choices=[s.value for s in TriggerSource],
        default=TriggerSource.ADMIN.value,
        help="trigger source (admin bypasses cooldown)",
    )
    parser.add_argument("--requested-by", type=str, default="cli", help="caller identity")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    args = parser.parse_args()
    setup_logging(verbose=args.verbose)

    db = SessionLocal()
    try:
        coordinator = RunCoordinator(db)
        try:
            created = coordinator.create(args.source, args.start, args.end, requested_by=args.requested_by)
        except HistoricalPullError as e:
            print(f"\nRejected [{e.code}]: {e.message}")
            if e.details:
                print(f"  details: {e.details}")
            sys.exit(1)
    finally:
        db.close()

    print(f"\n{'='*50}")
    print(f"Run created: {created.run_id}")
    print(f"{'='*50}")
    print(f"  Days       : {created.range_days}")
    print(f"  Tasks      : {created.total_tasks}")
    print(f"  Worker     : {created.worker_command}")
    print()


if __name__ == "__main__":
    main()
