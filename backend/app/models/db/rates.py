"""Historical rate ORM models (mortgage / savings / term deposit)

Upsert target for accepted batch rows. One row per natural key per day.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.db.base import Base, utcnow


class RateRowMixin:
    """Columns shared by all three datasets"""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bank_name: Mapped[str] = mapped_column(String(200), nullable=False)
    collection_date: Mapped[date] = mapped_column(Date, nullable=False)
    product_id: Mapped[str] = mapped_column(String(256), nullable=False)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    interest_rate: Mapped[float] = mapped_column(Float, nullable=False)
    source_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    data_quality_flag: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    run_source: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    retrieval_type: Mapped[str] = mapped_column(String(40), nullable=False, default="historical_scrape")
    parsed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class HistoricalLoanRate(RateRowMixin, Base):
    """Home loan rate"""

    __tablename__ = "historical_loan_rates"

    security_purpose: Mapped[str] = mapped_column(String(30), nullable=False)
    repayment_type: Mapped[str] = mapped_column(String(40), nullable=False)
    rate_structure: Mapped[str] = mapped_column(String(20), nullable=False)
    lvr_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    feature_set: Mapped[str] = mapped_column(String(20), nullable=False)
    comparison_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    annual_fee: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "bank_name", "collection_date", "product_id", "lvr_tier", "rate_structure",
            name="uq_historical_loan_rates_key",
        ),
        Index("ix_historical_loan_rates_date", "collection_date"),
    )


class HistoricalSavingsRate(RateRowMixin, Base):
    """Savings account rate"""

    __tablename__ = "historical_savings_rates"

    account_type: Mapped[str] = mapped_column(String(20), nullable=False)
    rate_type: Mapped[str] = mapped_column(String(20), nullable=False)
    deposit_tier: Mapped[str] = mapped_column(String(200), nullable=False, default="all")
    min_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    monthly_fee: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "bank_name", "collection_date", "product_id", "account_type", "rate_type", "deposit_tier",
            name="uq_historical_savings_rates_key",
        ),
        Index("ix_historical_savings_rates_date", "collection_date"),
    )


class HistoricalTdRate(RateRowMixin, Base):
    """Term deposit rate"""

    __tablename__ = "historical_td_rates"

    term_months: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_tier: Mapped[str] = mapped_column(String(200), nullable=False, default="all")
    min_deposit: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_deposit: Mapped[float | None] = mapped_column(Float, nullable=True)
    interest_payment: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "bank_name", "collection_date", "product_id", "term_months", "deposit_tier", "interest_payment",
            name="uq_historical_td_rates_key",
        ),
        Index("ix_historical_td_rates_date", "collection_date"),
    )
