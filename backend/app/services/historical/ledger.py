"""Batch ingestion ledger

Accepts row batches from the worker holding a task's claim. The batch id is
the idempotency key: the ledger row, the rate upserts and the task counters
commit together, so a retried batch either replays as deduped or applies
exactly once.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.db.base import utcnow
from app.models.db.historical import HistoricalBatch, HistoricalTask
from app.models.historical import IngestResult, TaskStatus, WrittenCounts
from app.models.rates import Dataset, RateRowBase
from app.services.historical.aggregator import RunStatusAggregator
from app.services.historical.errors import (
    BatchConflictError,
    InvalidRequestError,
    NotFoundError,
    TaskClaimedByOtherError,
    TaskNotClaimedError,
)
from app.services.historical.rate_store import RateStore, SqlRateStore
from app.services.historical.validation import RowValidator

logger = logging.getLogger(__name__)


def payload_hash(
    run_id: str,
    task_id: int,
    mortgage_rows: Sequence[RateRowBase],
    savings_rows: Sequence[RateRowBase],
    td_rows: Sequence[RateRowBase],
    had_signals: bool,
) -> str:
    """sha256 hex over canonical JSON of the validated batch"""
    payload = {
        "run_id": run_id,
        "task_id": task_id,
        "mortgage_rows": [r.model_dump(mode="json") for r in mortgage_rows],
        "savings_rows": [r.model_dump(mode="json") for r in savings_rows],
        "td_rows": [r.model_dump(mode="json") for r in td_rows],
        "had_signals": bool(had_signals),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BatchIngestionLedger:
    """Idempotent batch ingestion for claimed tasks"""

    def __init__(
        self,
        db: Session,
        rate_store: RateStore | None = None,
        validator: RowValidator | None = None,
        aggregator: RunStatusAggregator | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_batch_rows: int | None = None,
    ) -> None:
        self._db = db
        self._clock = clock
        self._rate_store = rate_store or SqlRateStore(db)
        self._validator = validator or RowValidator()
        self._aggregator = aggregator or RunStatusAggregator(db, clock=clock)
        if max_batch_rows is None:
            max_batch_rows = settings.HISTORICAL_MAX_BATCH_ROWS
        self._max_rows = max(1, int(max_batch_rows))

    def ingest(
        self,
        run_id: str,
        task_id: int,
        batch_id: str,
        worker_id: str | None = None,
        mortgage_rows: Sequence[Any] = (),
        savings_rows: Sequence[Any] = (),
        td_rows: Sequence[Any] = (),
        had_signals: bool = False,
    ) -> IngestResult:
        """Validate and apply one batch

        Args:
            run_id: owning run
            task_id: claimed task
            batch_id: idempotency key chosen by the worker
            worker_id: submitting worker; checked against the claim owner
            mortgage_rows / savings_rows / td_rows: raw rows (dict or row model)
            had_signals: whether the worker saw any source data

        Returns:
            IngestResult(deduped, written)

        Raises:
            InvalidRequestError: missing ids or batch over the row ceiling
            NotFoundError: task not under run
            TaskNotClaimedError: task is not currently claimed
            TaskClaimedByOtherError: claim held by another worker
            InvalidRowError: a row failed validation (nothing written)
            BatchConflictError: batch id reused with a different payload
        """
        run_id = (run_id or "").strip()
        batch_id = (batch_id or "").strip()
        if not run_id or not batch_id or task_id is None:
            raise InvalidRequestError("run_id, task_id, and batch_id are required.")

        task = self._db.get(HistoricalTask, task_id, populate_existing=True)
        if task is None or task.run_id != run_id:
            raise NotFoundError("Task not found.", details={"task_id": task_id})
        if task.status != TaskStatus.CLAIMED.value:
            raise TaskNotClaimedError(
                "Task must be claimed before batch ingestion.",
                details={"task_id": task_id, "status": task.status},
            )
        if worker_id is not None and task.claimed_by and task.claimed_by != worker_id:
            raise TaskClaimedByOtherError(
                "Task is claimed by another worker.",
                details={"task_id": task_id},
            )

        mortgage = self._validator.validate_many(Dataset.MORTGAGE, mortgage_rows)
        savings = self._validator.validate_many(Dataset.SAVINGS, savings_rows)
        td = self._validator.validate_many(Dataset.TD, td_rows)

        total_rows = len(mortgage) + len(savings) + len(td)
        if total_rows > self._max_rows:
            raise InvalidRequestError(
                f"Batch exceeds max {self._max_rows} rows.",
                details={"row_count": total_rows, "max_rows": self._max_rows},
            )

        digest = payload_hash(run_id, task_id, mortgage, savings, td, had_signals)
        record = {
            "batch_id": batch_id,
            "run_id": run_id,
            "task_id": task_id,
            "worker_id": worker_id,
            "payload_hash": digest,
            "row_count": total_rows,
            "created_at": self._clock(),
        }

        try:
            if not self._register_batch(record):
                self._db.rollback()
                return self._replay(batch_id, digest)

            written = WrittenCounts(
                mortgage_rows=self._rate_store.upsert_mortgage(mortgage, run_id=run_id),
                savings_rows=self._rate_store.upsert_savings(savings, run_id=run_id),
                td_rows=self._rate_store.upsert_td(td, run_id=run_id),
            )
            self._add_task_counts(task_id, run_id, written, had_signals)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise

        self._aggregator.refresh(run_id)
        logger.info(
            "batch accepted: %s (mortgage=%d, savings=%d, td=%d)",
            batch_id, written.mortgage_rows, written.savings_rows, written.td_rows,
        )
        return IngestResult(deduped=False, written=written)

    def _register_batch(self, record: dict[str, Any]) -> bool:
        """INSERT ... ON CONFLICT (batch_id) DO NOTHING. True if the row is new."""
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(HistoricalBatch).values(**record).on_conflict_do_nothing(index_elements=["batch_id"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(HistoricalBatch).values(**record).on_conflict_do_nothing(index_elements=["batch_id"])
        else:
            try:
                with self._db.begin_nested():
                    self._db.execute(insert(HistoricalBatch).values(**record))
            except IntegrityError:
                return False
            return True
        return self._db.execute(stmt).rowcount > 0

    def _replay(self, batch_id: str, digest: str) -> IngestResult:
        existing = self._db.get(HistoricalBatch, batch_id)
        if existing is not None and existing.payload_hash != digest:
            logger.warning("batch id reused with a different payload: %s", batch_id)
            raise BatchConflictError(
                "Batch id was already used with a different payload.",
                details={"batch_id": batch_id},
            )
        logger.info("batch replay deduped: %s", batch_id)
        return IngestResult(deduped=True)

    def _add_task_counts(self, task_id: int, run_id: str, written: WrittenCounts, had_signals: bool) -> None:
        values: dict[str, Any] = {
            "mortgage_rows": HistoricalTask.mortgage_rows + written.mortgage_rows,
            "savings_rows": HistoricalTask.savings_rows + written.savings_rows,
            "td_rows": HistoricalTask.td_rows + written.td_rows,
            "updated_at": self._clock(),
        }
        if had_signals:
            values["had_signals"] = True
        self._db.execute(
            update(HistoricalTask)
            .where(HistoricalTask.task_id == task_id, HistoricalTask.run_id == run_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
