"""Historical pull ORM models

HistoricalRun / HistoricalTask / HistoricalBatch.
Run status and counters are written only by RunStatusAggregator.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.db.base import Base, TimestampMixin, utcnow

# at most one non-terminal public run, enforced by the store
ACTIVE_PUBLIC_RUN_PREDICATE = "trigger_source = 'public' AND status IN ('pending', 'running')"


class HistoricalRun(TimestampMixin, Base):
    """One historical pull request (date range x lender set)"""

    __tablename__ = "historical_runs"

    run_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    trigger_source: Mapped[str] = mapped_column(String(10), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # task counters (snapshot, recomputed from tasks on every refresh)
    total_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # cumulative rows written per dataset
    mortgage_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    savings_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    td_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    requested_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tasks: Mapped[list[HistoricalTask]] = relationship(
        "HistoricalTask", back_populates="run", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_historical_runs_source_created", "trigger_source", "created_at"),
        Index("ix_historical_runs_status", "status"),
        Index(
            "uq_historical_runs_active_public",
            "trigger_source",
            unique=True,
            postgresql_where=text(ACTIVE_PUBLIC_RUN_PREDICATE),
            sqlite_where=text(ACTIVE_PUBLIC_RUN_PREDICATE),
        ),
    )

    @property
    def rows_total(self) -> int:
        return max(0, self.mortgage_rows) + max(0, self.savings_rows) + max(0, self.td_rows)

    def __repr__(self) -> str:
        return f"<HistoricalRun {self.run_id} {self.status}>"


class HistoricalTask(Base):
    """One (lender, collection date) unit of work"""

    __tablename__ = "historical_tasks"

    task_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("historical_runs.run_id", ondelete="CASCADE"), nullable=False
    )
    lender_code: Mapped[str] = mapped_column(String(50), nullable=False)
    collection_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # lease
    claimed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # rows accumulated from accepted batches
    mortgage_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    savings_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    td_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    had_signals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    run: Mapped[HistoricalRun] = relationship("HistoricalRun", back_populates="tasks")

    __table_args__ = (
        UniqueConstraint("run_id", "lender_code", "collection_date", name="uq_historical_tasks_unit"),
        Index("ix_historical_tasks_claim", "run_id", "status", "collection_date"),
    )

    def __repr__(self) -> str:
        return f"<HistoricalTask {self.task_id} {self.lender_code} {self.collection_date} {self.status}>"


class HistoricalBatch(Base):
    """Idempotency record for one worker batch submission"""

    __tablename__ = "historical_batches"

    batch_id: Mapped[str] = mapped_column(String(300), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(128), nullable=False)
    task_id: Mapped[int] = mapped_column(Integer, nullable=False)
    worker_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_historical_batches_task", "run_id", "task_id"),
    )

    def __repr__(self) -> str:
        return f"<HistoricalBatch {self.batch_id}>"
