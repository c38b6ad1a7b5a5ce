"""Run coordinator: admission control + run/task creation

Validates a requested date range, applies the public-caller policy
(single active run + cooldown) and fans the range out into one pending task
per (collection date, lender). Admin callers bypass the public policy.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable, Sequence
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.db.base import as_utc, utcnow
from app.models.db.historical import HistoricalRun, HistoricalTask
from app.models.historical import (
    ACTIVE_RUN_STATUSES,
    LenderConfig,
    RunCreated,
    RunDetail,
    RunStatus,
    RunSummary,
    TaskStatus,
    TaskSummary,
    TriggerSource,
)
from app.services.historical.aggregator import RunStatusAggregator
from app.services.historical.errors import (
    CooldownActiveError,
    InvalidRequestError,
    NotFoundError,
    RunAlreadyActiveError,
)
from app.services.historical.lenders import TARGET_LENDERS, lender_codes

logger = logging.getLogger(__name__)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

MIN_RANGE_DAYS = 1
MAX_RANGE_DAYS = 3650
MAX_RECENT_TASKS = 200
PUBLIC_REQUESTED_BY = "public_historical_pull"


# ── date helpers ──────────────────────────────────────────────


def parse_date_only(value: str | date, field: str = "date") -> date:
    """'YYYY-MM-DD' → date

    Raises:
        InvalidRequestError: wrong shape or not a calendar date
    """
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not _DATE_ONLY.match(text):
        raise InvalidRequestError(f"{field} must be YYYY-MM-DD.")
    try:
        return date.fromisoformat(text)
    except ValueError as e:
        raise InvalidRequestError(f"{field} is not a valid calendar date.") from e


def days_between_inclusive(start: date, end: date) -> int:
    """Inclusive day count; 0 or less when end precedes start"""
    return (end - start).days + 1


def list_dates_inclusive(start: date, end: date) -> list[date]:
    return [start + timedelta(days=i) for i in range(max(0, days_between_inclusive(start, end)))]


def clamp_range_days(value: int) -> int:
    return max(MIN_RANGE_DAYS, min(MAX_RANGE_DAYS, int(value)))


def make_run_id(trigger_source: TriggerSource, start: date, end: date) -> str:
    return f"historical:{trigger_source.value}:{start.isoformat()}:{end.isoformat()}:{uuid.uuid4()}"


def make_worker_command(run_id: str) -> str:
    """Shell line an operator runs to drain the run"""
    return f"ADMIN_API_TOKEN=<token> python scripts/run_historical_worker.py --run-id {run_id}"


# ── coordinator ───────────────────────────────────────────────


class RunCoordinator:
    """Historical run admission and read access"""

    def __init__(
        self,
        db: Session,
        lenders: Sequence[LenderConfig] | None = None,
        aggregator: RunStatusAggregator | None = None,
        clock: Callable[[], datetime] = utcnow,
        public_max_range_days: int | None = None,
        admin_max_range_days: int | None = None,
        public_cooldown_seconds: int | None = None,
    ) -> None:
        self._db = db
        self._lenders = list(TARGET_LENDERS if lenders is None else lenders)
        self._clock = clock
        self._aggregator = aggregator or RunStatusAggregator(db, clock=clock)

        if public_max_range_days is None:
            public_max_range_days = settings.PUBLIC_HISTORICAL_MAX_RANGE_DAYS
        if admin_max_range_days is None:
            admin_max_range_days = settings.ADMIN_HISTORICAL_MAX_RANGE_DAYS
        if public_cooldown_seconds is None:
            public_cooldown_seconds = settings.PUBLIC_HISTORICAL_COOLDOWN_SECONDS
        self._public_max_days = clamp_range_days(public_max_range_days)
        self._admin_max_days = clamp_range_days(admin_max_range_days)
        self._cooldown_seconds = max(0, int(public_cooldown_seconds))

    # === create ===

    def create(
        self,
        trigger_source: str | TriggerSource,
        start_date: str | date,
        end_date: str | date,
        requested_by: str | None = None,
    ) -> RunCreated:
        """Create a run and its task grid in one transaction

        Args:
            trigger_source: "public" | "admin"
            start_date: first collection date (YYYY-MM-DD)
            end_date: last collection date, inclusive
            requested_by: free-form caller identity; public runs default to
                PUBLIC_REQUESTED_BY

        Returns:
            RunCreated (run_id, worker_command, range_days, total_tasks)

        Raises:
            InvalidRequestError: bad dates, reversed or oversized range
            RunAlreadyActiveError: public run while another public run is active
            CooldownActiveError: public run inside the cooldown window
        """
        try:
            source = TriggerSource(trigger_source)
        except ValueError as e:
            raise InvalidRequestError("trigger_source must be 'public' or 'admin'.") from e

        start = parse_date_only(start_date, "start_date")
        end = parse_date_only(end_date, "end_date")
        range_days = days_between_inclusive(start, end)
        if range_days <= 0:
            raise InvalidRequestError("end_date must be on or after start_date.")

        allowed = self._public_max_days if source == TriggerSource.PUBLIC else self._admin_max_days
        if range_days > allowed:
            raise InvalidRequestError(
                f"Date range exceeds max {allowed} days for {source.value} runs.",
                details={"range_days": range_days, "max_range_days": allowed},
            )

        if source == TriggerSource.PUBLIC:
            self._check_public_admission()
            requested_by = requested_by or PUBLIC_REQUESTED_BY

        codes = lender_codes(self._lenders)
        dates = list_dates_inclusive(start, end)
        run_id = make_run_id(source, start, end)
        now = self._clock()
        total = len(dates) * len(codes)

        self._db.add(
            HistoricalRun(
                run_id=run_id,
                trigger_source=source.value,
                start_date=start,
                end_date=end,
                status=RunStatus.PENDING.value,
                total_tasks=total,
                pending_tasks=total,
                requested_by=requested_by,
                created_at=now,
                updated_at=now,
            )
        )
        self._db.add_all(
            HistoricalTask(
                run_id=run_id,
                lender_code=code,
                collection_date=day,
                status=TaskStatus.PENDING.value,
                updated_at=now,
            )
            for day in dates
            for code in codes
        )

        try:
            self._db.commit()
        except IntegrityError as e:
            # partial unique index: another public run became active concurrently
            self._db.rollback()
            active = self.find_active_run(source)
            raise RunAlreadyActiveError(
                "A public historical pull is already running.",
                details={"run_id": active.run_id if active else None},
            ) from e

        if total == 0:
            self._aggregator.refresh(run_id)

        logger.info(
            "historical run created: %s (source=%s, %s..%s, days=%d, lenders=%d, tasks=%d)",
            run_id, source.value, start, end, range_days, len(codes), total,
        )
        return RunCreated(
            run_id=run_id,
            worker_command=make_worker_command(run_id),
            range_days=range_days,
            total_tasks=total,
        )

    def _check_public_admission(self) -> None:
        active = self.find_active_run(TriggerSource.PUBLIC)
        if active is not None:
            raise RunAlreadyActiveError(
                "A public historical pull is already running.",
                details={"run_id": active.run_id},
            )

        if self._cooldown_seconds <= 0:
            return
        last_created = self._db.execute(
            select(HistoricalRun.created_at)
            .where(HistoricalRun.trigger_source == TriggerSource.PUBLIC.value)
            .order_by(HistoricalRun.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if last_created is None:
            return

        elapsed = (self._clock() - as_utc(last_created)).total_seconds()
        if 0 <= elapsed < self._cooldown_seconds:
            retry_after = max(1, math.ceil(self._cooldown_seconds - elapsed))
            logger.warning("public historical pull rejected: cooldown %ds remaining", retry_after)
            raise CooldownActiveError(retry_after)

    def find_active_run(self, trigger_source: TriggerSource) -> HistoricalRun | None:
        """Most recent pending/running run of the given source"""
        return self._db.execute(
            select(HistoricalRun)
            .where(
                HistoricalRun.trigger_source == trigger_source.value,
                HistoricalRun.status.in_([s.value for s in ACTIVE_RUN_STATUSES]),
            )
            .order_by(HistoricalRun.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    # === read ===

    def get_detail(
        self,
        run_id: str,
        expected_trigger_source: str | TriggerSource | None = None,
        task_limit: int | None = None,
    ) -> RunDetail:
        """Refreshed run summary + progress + most recent tasks

        A run of a different trigger source is reported as not found.
        """
        run_id = (run_id or "").strip()
        if not run_id:
            raise InvalidRequestError("run_id is required.")

        run = self._aggregator.refresh(run_id)
        if run is None:
            raise NotFoundError("Historical run not found.", details={"run_id": run_id})
        if expected_trigger_source is not None and run.trigger_source != TriggerSource(expected_trigger_source).value:
            raise NotFoundError("Historical run not found.", details={"run_id": run_id})

        if task_limit is None:
            task_limit = settings.HISTORICAL_RECENT_TASK_LIMIT
        limit = max(1, min(MAX_RECENT_TASKS, int(task_limit)))
        tasks = self._db.execute(
            select(HistoricalTask)
            .where(HistoricalTask.run_id == run_id)
            .order_by(HistoricalTask.collection_date.desc(), HistoricalTask.lender_code.asc())
            .limit(limit)
        ).scalars().all()

        finished = run.completed_tasks + run.failed_tasks
        progress = round(finished / run.total_tasks * 100, 1) if run.total_tasks > 0 else 0.0

        return RunDetail(
            run=RunSummary.model_validate(run),
            progress_pct=progress,
            rows_total=run.rows_total,
            tasks_recent=[TaskSummary.model_validate(t) for t in tasks],
        )
