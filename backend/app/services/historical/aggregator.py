"""Run status aggregator

Recomputes a run's counters and lifecycle status from its task rows.
The single writer of HistoricalRun.status. Idempotent, safe to call after
every task mutation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.models.db.base import utcnow
from app.models.db.historical import HistoricalRun, HistoricalTask
from app.models.historical import TERMINAL_RUN_STATUSES, RunStatus, TaskCounts, TaskStatus

logger = logging.getLogger(__name__)


def derive_run_status(counts: TaskCounts) -> RunStatus:
    """Task counters → run status

    - total 0 → failed (degenerate run)
    - pending/claimed remain → running (pending if nothing was ever claimed or finished)
    - otherwise completed / partial / failed by the mix of finished tasks
    """
    if counts.total <= 0:
        return RunStatus.FAILED
    if counts.pending > 0 or counts.claimed > 0:
        if counts.claimed > 0 or counts.completed > 0 or counts.failed > 0:
            return RunStatus.RUNNING
        return RunStatus.PENDING
    if counts.failed > 0 and counts.completed > 0:
        return RunStatus.PARTIAL
    if counts.failed > 0:
        return RunStatus.FAILED
    return RunStatus.COMPLETED


def _status_sum(status: TaskStatus):
    return func.sum(case((HistoricalTask.status == status.value, 1), else_=0))


class RunStatusAggregator:
    """HistoricalRun counters/status recomputation"""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._clock = clock

    def count_tasks(self, run_id: str) -> TaskCounts:
        """Aggregate task counters straight from the task table"""
        row = self._db.execute(
            select(
                func.count(HistoricalTask.task_id),
                _status_sum(TaskStatus.PENDING),
                _status_sum(TaskStatus.CLAIMED),
                _status_sum(TaskStatus.COMPLETED),
                _status_sum(TaskStatus.FAILED),
                func.sum(HistoricalTask.mortgage_rows),
                func.sum(HistoricalTask.savings_rows),
                func.sum(HistoricalTask.td_rows),
            ).where(HistoricalTask.run_id == run_id)
        ).one()

        # SUM over zero rows is NULL
        values = [max(0, int(v or 0)) for v in row]
        return TaskCounts(
            total=values[0],
            pending=values[1],
            claimed=values[2],
            completed=values[3],
            failed=values[4],
            mortgage_rows=values[5],
            savings_rows=values[6],
            td_rows=values[7],
        )

    def refresh(self, run_id: str) -> HistoricalRun | None:
        """Recompute counters + status for one run and commit

        Returns:
            Updated HistoricalRun, None if the run does not exist
        """
        run = self._db.get(HistoricalRun, run_id, populate_existing=True)
        if run is None:
            return None

        counts = self.count_tasks(run_id)
        status = derive_run_status(counts)
        now = self._clock()
        previous = run.status

        run.status = status.value
        run.total_tasks = counts.total
        run.pending_tasks = counts.pending
        run.claimed_tasks = counts.claimed
        run.completed_tasks = counts.completed
        run.failed_tasks = counts.failed
        run.mortgage_rows = counts.mortgage_rows
        run.savings_rows = counts.savings_rows
        run.td_rows = counts.td_rows

        if run.started_at is None and status != RunStatus.PENDING:
            run.started_at = now
        if status in TERMINAL_RUN_STATUSES:
            if run.finished_at is None:
                run.finished_at = now
        else:
            run.finished_at = None
        run.updated_at = now

        self._db.commit()

        if previous != status.value:
            logger.info(
                "run status %s: %s → %s (completed=%d, failed=%d, total=%d)",
                run_id, previous, status.value, counts.completed, counts.failed, counts.total,
            )
        return run
