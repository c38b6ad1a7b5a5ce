"""Historical pull data models

Status enums and DTOs shared by the coordinator, ledger, API and worker.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from app.models.db.base import as_utc
from app.models.rates import MortgageRateRow, SavingsRateRow, TdRateRow


class TriggerSource(str, Enum):
    """Caller class that created a run"""

    PUBLIC = "public"
    ADMIN = "admin"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.FAILED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
FINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class LenderConfig(BaseModel):
    """One target lender"""

    code: str  # e.g. "cba"
    name: str
    canonical_bank_name: str
    products_endpoint: str | None = None  # CDR banking products endpoint
    seed_rate_urls: list[str] = Field(default_factory=list)  # public rate pages


class TaskCounts(BaseModel):
    """Task counters aggregated over one run"""

    total: int = 0
    pending: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    mortgage_rows: int = 0
    savings_rows: int = 0
    td_rows: int = 0


class RunCreated(BaseModel):
    """RunCoordinator.create result"""

    run_id: str
    worker_command: str
    range_days: int
    total_tasks: int


class WrittenCounts(BaseModel):
    mortgage_rows: int = 0
    savings_rows: int = 0
    td_rows: int = 0

    @property
    def total_rows(self) -> int:
        return self.mortgage_rows + self.savings_rows + self.td_rows


class IngestResult(BaseModel):
    """BatchIngestionLedger.ingest result"""

    deduped: bool
    written: WrittenCounts = Field(default_factory=WrittenCounts)


class RunSummary(BaseModel):
    """Read view of a HistoricalRun row"""

    run_id: str
    trigger_source: str
    start_date: date
    end_date: date
    status: str
    total_tasks: int
    pending_tasks: int
    claimed_tasks: int
    completed_tasks: int
    failed_tasks: int
    mortgage_rows: int
    savings_rows: int
    td_rows: int
    requested_by: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("created_at", "updated_at", "started_at", "finished_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class TaskSummary(BaseModel):
    """Read view of a HistoricalTask row"""

    task_id: int
    run_id: str
    lender_code: str
    collection_date: date
    status: str
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    claim_expires_at: datetime | None = None
    completed_at: datetime | None = None
    attempt_count: int
    mortgage_rows: int
    savings_rows: int
    td_rows: int
    had_signals: bool
    last_error: str | None = None
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("claimed_at", "claim_expires_at", "completed_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class RunDetail(BaseModel):
    """Run summary + progress + most recent tasks"""

    run: RunSummary
    progress_pct: float
    rows_total: int
    tasks_recent: list[TaskSummary] = Field(default_factory=list)


class ClaimedTask(BaseModel):
    """Task handed to a worker, with collection hints"""

    task_id: int
    lender_code: str
    collection_date: date
    seed_urls: list[str] = Field(default_factory=list)
    endpoint_candidates: list[str] = Field(default_factory=list)
    attempt_count: int


class CollectResult(BaseModel):
    """RateCollector.collect result for one (lender, date)"""

    mortgage_rows: list[MortgageRateRow] = Field(default_factory=list)
    savings_rows: list[SavingsRateRow] = Field(default_factory=list)
    td_rows: list[TdRateRow] = Field(default_factory=list)
    had_signals: bool = False
