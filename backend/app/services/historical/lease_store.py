"""Task lease store: claim / finalize protocol

The only place that decides exclusive task ownership. A claim is a
compare-and-swap expressed as one guarded UPDATE: the row is taken only if it
is still pending, or still claimed with an expired lease, when the UPDATE runs.
Losing the race affects zero rows and the caller picks another candidate.

There is no lock manager and no lease renewal. A worker that dies simply lets
its lease expire; the next claim takes the task over and attempt_count records it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.models.db.base import utcnow
from app.models.db.historical import HistoricalRun, HistoricalTask
from app.models.historical import FINAL_TASK_STATUSES, TERMINAL_RUN_STATUSES, TaskStatus
from app.services.historical.aggregator import RunStatusAggregator
from app.services.historical.errors import (
    InvalidRequestError,
    NotFoundError,
    TaskFinalizeError,
)

logger = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 4  # candidate races before giving up (caller polls again)
MIN_CLAIM_TTL_SECONDS = 60
MAX_ERROR_LENGTH = 2000


def _claimable(now: datetime):
    """pending, or claimed with an expired lease"""
    return or_(
        HistoricalTask.status == TaskStatus.PENDING.value,
        and_(
            HistoricalTask.status == TaskStatus.CLAIMED.value,
            HistoricalTask.claim_expires_at.is_not(None),
            HistoricalTask.claim_expires_at <= now,
        ),
    )


class TaskLeaseStore:
    """Claim / finalize / sweep over HistoricalTask rows"""

    def __init__(
        self,
        db: Session,
        aggregator: RunStatusAggregator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._clock = clock
        self._aggregator = aggregator or RunStatusAggregator(db, clock=clock)

    # === lookups ===

    def get_task(self, task_id: int) -> HistoricalTask | None:
        return self._db.get(HistoricalTask, task_id, populate_existing=True)

    def get_run_task(self, run_id: str, task_id: int) -> HistoricalTask:
        """Task under the given run, NotFoundError otherwise"""
        task = self.get_task(task_id)
        if task is None or task.run_id != run_id:
            raise NotFoundError("Task not found.", details={"task_id": task_id})
        return task

    # === claim ===

    def claim(
        self,
        run_id: str,
        worker_id: str,
        lease_ttl_seconds: int,
    ) -> HistoricalTask | None:
        """Claim one task of the run for worker_id

        Args:
            run_id: run to drain
            worker_id: opaque worker identity (recorded as claim owner)
            lease_ttl_seconds: lease length (floor 60s)

        Returns:
            The claimed task, or None when the run is terminal, fully drained,
            or every attempt lost a race (caller should poll again)

        Raises:
            InvalidRequestError: blank run_id / worker_id
            NotFoundError: unknown run
        """
        run_id = (run_id or "").strip()
        worker_id = (worker_id or "").strip()
        if not run_id or not worker_id:
            raise InvalidRequestError("run_id and worker_id are required.")

        run = self._db.get(HistoricalRun, run_id, populate_existing=True)
        if run is None:
            raise NotFoundError("Historical run not found.", details={"run_id": run_id})
        if run.status in {s.value for s in TERMINAL_RUN_STATUSES}:
            return None

        ttl = max(MIN_CLAIM_TTL_SECONDS, int(lease_ttl_seconds))

        for attempt in range(MAX_CLAIM_ATTEMPTS):
            now = self._clock()
            candidate_id = self._select_candidate(run_id, now)
            if candidate_id is None:
                # run may now be fully drained
                self._aggregator.refresh(run_id)
                return None

            if self._try_acquire(candidate_id, run_id, worker_id, now, now + timedelta(seconds=ttl)):
                self._aggregator.refresh(run_id)
                task = self.get_task(candidate_id)
                logger.info(
                    "task claimed: task_id=%d lender=%s date=%s worker=%s attempt_count=%d",
                    task.task_id, task.lender_code, task.collection_date, worker_id, task.attempt_count,
                )
                return task

            logger.debug(
                "claim race lost: run=%s task_id=%d (attempt %d/%d)",
                run_id, candidate_id, attempt + 1, MAX_CLAIM_ATTEMPTS,
            )

        logger.warning("claim gave up after %d races: run=%s worker=%s", MAX_CLAIM_ATTEMPTS, run_id, worker_id)
        return None

    def _select_candidate(self, run_id: str, now: datetime) -> int | None:
        """Next claimable task id (most recent date first, then lender)"""
        return self._db.execute(
            select(HistoricalTask.task_id)
            .where(HistoricalTask.run_id == run_id, _claimable(now))
            .order_by(HistoricalTask.collection_date.desc(), HistoricalTask.lender_code.asc())
            .limit(1)
        ).scalar_one_or_none()

    def _try_acquire(
        self,
        task_id: int,
        run_id: str,
        worker_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """Guarded UPDATE. True only if this call took the row."""
        result = self._db.execute(
            update(HistoricalTask)
            .where(
                HistoricalTask.task_id == task_id,
                HistoricalTask.run_id == run_id,
                _claimable(now),
            )
            .values(
                status=TaskStatus.CLAIMED.value,
                claimed_by=worker_id,
                claimed_at=now,
                claim_expires_at=expires_at,
                attempt_count=HistoricalTask.attempt_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self._db.commit()
        return result.rowcount > 0

    # === finalize ===

    def finalize(
        self,
        task_id: int,
        run_id: str,
        worker_id: str | None,
        status: str | TaskStatus,
        error: str | None = None,
        had_signals: bool = False,
    ) -> HistoricalTask:
        """Move a claimed task to completed/failed

        Repeating the call with the status the task already has is a no-op.
        With a worker_id, only the claim owner (or an unowned claim) can finalize.

        Raises:
            InvalidRequestError: status is not completed/failed
            NotFoundError: task not under run
            TaskFinalizeError: task not claimed, or claimed by another worker
        """
        try:
            target = TaskStatus(status)
        except ValueError:
            target = None
        if target not in FINAL_TASK_STATUSES:
            raise InvalidRequestError("status must be 'completed' or 'failed'.")

        task = self.get_run_task(run_id, task_id)
        if task.status == target.value:
            return task

        now = self._clock()
        conditions = [
            HistoricalTask.task_id == task_id,
            HistoricalTask.run_id == run_id,
            HistoricalTask.status == TaskStatus.CLAIMED.value,
        ]
        # only an absent worker_id skips the owner check
        if worker_id is not None:
            conditions.append(
                or_(HistoricalTask.claimed_by == worker_id, HistoricalTask.claimed_by.is_(None))
            )

        values = {
            "status": target.value,
            "completed_at": now,
            "claim_expires_at": None,
            "last_error": str(error)[:MAX_ERROR_LENGTH] if error else None,
            "updated_at": now,
        }
        if had_signals:
            values["had_signals"] = True

        result = self._db.execute(
            update(HistoricalTask)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._db.commit()

        if result.rowcount == 0:
            current = self.get_run_task(run_id, task_id)
            if current.status == target.value:
                return current
            raise TaskFinalizeError(
                "Task could not be finalized.",
                details={"task_id": task_id, "status": current.status, "claimed_by": current.claimed_by},
            )

        self._aggregator.refresh(run_id)
        task = self.get_task(task_id)
        log = logger.info if target == TaskStatus.COMPLETED else logger.warning
        log(
            "task finalized: task_id=%d status=%s worker=%s error=%s",
            task_id, target.value, worker_id, (error or "")[:200],
        )
        return task

    # === sweep ===

    def sweep_expired(self, run_id: str, max_attempts: int) -> int:
        """Fail claimed tasks whose lease expired after max_attempts claims

        Operator tool for runs whose workers are gone; never invoked implicitly.

        Returns:
            Number of tasks moved to failed
        """
        if self._db.get(HistoricalRun, run_id) is None:
            raise NotFoundError("Historical run not found.", details={"run_id": run_id})

        now = self._clock()
        ceiling = max(1, int(max_attempts))
        stale = self._db.execute(
            select(HistoricalTask.task_id, HistoricalTask.attempt_count).where(
                HistoricalTask.run_id == run_id,
                HistoricalTask.status == TaskStatus.CLAIMED.value,
                HistoricalTask.claim_expires_at.is_not(None),
                HistoricalTask.claim_expires_at <= now,
                HistoricalTask.attempt_count >= ceiling,
            )
        ).all()

        swept = 0
        for task_id, attempts in stale:
            result = self._db.execute(
                update(HistoricalTask)
                .where(
                    HistoricalTask.task_id == task_id,
                    HistoricalTask.status == TaskStatus.CLAIMED.value,
                    HistoricalTask.claim_expires_at <= now,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=now,
                    claim_expires_at=None,
                    last_error=f"lease_expired_after_{attempts}_attempts",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            swept += result.rowcount
        self._db.commit()

        self._aggregator.refresh(run_id)
        logger.info("sweep: run=%s swept=%d (max_attempts=%d)", run_id, swept, ceiling)
        return swept
