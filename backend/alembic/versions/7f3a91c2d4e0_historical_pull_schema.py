"""historical_pull_schema

Historical pull queue (runs, tasks, batch ledger) and the three historical
rate tables. At most one pending/running public run is enforced with a
partial unique index.

Revision ID: 7f3a91c2d4e0
Revises:
Create Date: 2026-10-19 10:12:41.502113
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7f3a91c2d4e0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_PUBLIC_RUN = "trigger_source = 'public' AND status IN ('pending', 'running')"


def _rate_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("bank_name", sa.String(200), nullable=False),
        sa.Column("collection_date", sa.Date, nullable=False),
        sa.Column("product_id", sa.String(256), nullable=False),
        sa.Column("product_name", sa.String(500), nullable=False),
        sa.Column("interest_rate", sa.Float, nullable=False),
        sa.Column("source_url", sa.String(2048), nullable=False),
        sa.Column("data_quality_flag", sa.String(50), nullable=False),
        sa.Column("confidence_score", sa.Float, nullable=False),
        sa.Column("run_id", sa.String(128), nullable=True),
        sa.Column("run_source", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("retrieval_type", sa.String(40), nullable=False, server_default="historical_scrape"),
        sa.Column("parsed_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create historical pull tables"""

    # --- historical_runs ---
    op.create_table(
        "historical_runs",
        sa.Column("run_id", sa.String(128), primary_key=True),
        sa.Column("trigger_source", sa.String(10), nullable=False),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_tasks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pending_tasks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("claimed_tasks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_tasks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_tasks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("mortgage_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("savings_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("td_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("requested_by", sa.String(200), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_historical_runs_source_created", "historical_runs", ["trigger_source", "created_at"])
    op.create_index("ix_historical_runs_status", "historical_runs", ["status"])
    op.create_index(
        "uq_historical_runs_active_public",
        "historical_runs",
        ["trigger_source"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PUBLIC_RUN),
        sqlite_where=sa.text(ACTIVE_PUBLIC_RUN),
    )

    # --- historical_tasks ---
    op.create_table(
        "historical_tasks",
        sa.Column("task_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "run_id",
            sa.String(128),
            sa.ForeignKey("historical_runs.run_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("lender_code", sa.String(50), nullable=False),
        sa.Column("collection_date", sa.Date, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("claimed_by", sa.String(200), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("mortgage_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("savings_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("td_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("had_signals", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("run_id", "lender_code", "collection_date", name="uq_historical_tasks_unit"),
    )
    op.create_index("ix_historical_tasks_claim", "historical_tasks", ["run_id", "status", "collection_date"])

    # --- historical_batches ---
    op.create_table(
        "historical_batches",
        sa.Column("batch_id", sa.String(300), primary_key=True),
        sa.Column("run_id", sa.String(128), nullable=False),
        sa.Column("task_id", sa.Integer, nullable=False),
        sa.Column("worker_id", sa.String(200), nullable=True),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("row_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_historical_batches_task", "historical_batches", ["run_id", "task_id"])

    # --- historical_loan_rates ---
    op.create_table(
        "historical_loan_rates",
        *_rate_columns(),
        sa.Column("security_purpose", sa.String(30), nullable=False),
        sa.Column("repayment_type", sa.String(40), nullable=False),
        sa.Column("rate_structure", sa.String(20), nullable=False),
        sa.Column("lvr_tier", sa.String(20), nullable=False),
        sa.Column("feature_set", sa.String(20), nullable=False),
        sa.Column("comparison_rate", sa.Float, nullable=True),
        sa.Column("annual_fee", sa.Float, nullable=True),
        sa.UniqueConstraint(
            "bank_name", "collection_date", "product_id", "lvr_tier", "rate_structure",
            name="uq_historical_loan_rates_key",
        ),
    )
    op.create_index("ix_historical_loan_rates_date", "historical_loan_rates", ["collection_date"])

    # --- historical_savings_rates ---
    op.create_table(
        "historical_savings_rates",
        *_rate_columns(),
        sa.Column("account_type", sa.String(20), nullable=False),
        sa.Column("rate_type", sa.String(20), nullable=False),
        sa.Column("deposit_tier", sa.String(200), nullable=False, server_default="all"),
        sa.Column("min_balance", sa.Float, nullable=True),
        sa.Column("max_balance", sa.Float, nullable=True),
        sa.Column("conditions", sa.Text, nullable=True),
        sa.Column("monthly_fee", sa.Float, nullable=True),
        sa.UniqueConstraint(
            "bank_name", "collection_date", "product_id", "account_type", "rate_type", "deposit_tier",
            name="uq_historical_savings_rates_key",
        ),
    )
    op.create_index("ix_historical_savings_rates_date", "historical_savings_rates", ["collection_date"])

    # --- historical_td_rates ---
    op.create_table(
        "historical_td_rates",
        *_rate_columns(),
        sa.Column("term_months", sa.Integer, nullable=False),
        sa.Column("deposit_tier", sa.String(200), nullable=False, server_default="all"),
        sa.Column("min_deposit", sa.Float, nullable=True),
        sa.Column("max_deposit", sa.Float, nullable=True),
        sa.Column("interest_payment", sa.String(20), nullable=False),
        sa.UniqueConstraint(
            "bank_name", "collection_date", "product_id", "term_months", "deposit_tier", "interest_payment",
            name="uq_historical_td_rates_key",
        ),
    )
    op.create_index("ix_historical_td_rates_date", "historical_td_rates", ["collection_date"])


def downgrade() -> None:
    """Drop historical pull tables"""
    op.drop_table("historical_td_rates")
    op.drop_table("historical_savings_rates")
    op.drop_table("historical_loan_rates")
    op.drop_table("historical_batches")
    op.drop_index("uq_historical_runs_active_public", table_name="historical_runs")
    op.drop_table("historical_tasks")
    op.drop_table("historical_runs")
