"""Shared DB test fixtures

ORM tests run on SQLite; PostgreSQL is not needed locally.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.db.base import Base


def _enable_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture(scope="function")
def db_session() -> Session:
    """SQLite in-memory DB session (fresh DB per test)

    StaticPool keeps one connection so TestClient worker threads see the same DB.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(engine)

    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite engine for tests that need several independent sessions"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'historical.db'}",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


class FakeClock:
    """Settable UTC clock for lease / cooldown tests"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ── row / lender factories ────────────────────────────────────


@pytest.fixture
def lenders():
    from app.models.historical import LenderConfig

    return [
        LenderConfig(
            code="alpha",
            name="Alpha",
            canonical_bank_name="Alpha Bank",
            products_endpoint="https://api.alpha.example/cds-au/v1/banking/products",
            seed_rate_urls=[
                "https://alpha.example/home-loans/rates",
                "https://alpha.example/savings/rates",
                "https://alpha.example/td/rates",
            ],
        ),
        LenderConfig(
            code="beta",
            name="Beta",
            canonical_bank_name="Beta Bank",
            products_endpoint=None,
            seed_rate_urls=["https://beta.example/rates"],
        ),
    ]


@pytest.fixture
def make_mortgage_row():
    def _make(**overrides) -> dict:
        row = {
            "bank_name": "Alpha Bank",
            "collection_date": "2025-01-02",
            "product_id": "HL-VAR-1",
            "product_name": "Standard Variable Home Loan",
            "security_purpose": "owner_occupied",
            "repayment_type": "principal_and_interest",
            "rate_structure": "variable",
            "lvr_tier": "lvr_70-80%",
            "feature_set": "basic",
            "interest_rate": 6.24,
            "comparison_rate": 6.51,
            "annual_fee": 0,
            "source_url": "https://web.archive.org/web/20250102000000id_/https://api.alpha.example/p/HL-VAR-1",
            "data_quality_flag": "parsed_from_wayback_cdr",
            "confidence_score": 0.92,
        }
        row.update(overrides)
        return row

    return _make


@pytest.fixture
def make_savings_row():
    def _make(**overrides) -> dict:
        row = {
            "bank_name": "Alpha Bank",
            "collection_date": "2025-01-02",
            "product_id": "SAV-1",
            "product_name": "Bonus Saver",
            "account_type": "savings",
            "rate_type": "bonus",
            "interest_rate": 4.75,
            "deposit_tier": "all",
            "conditions": "Deposit $200 monthly",
            "source_url": "https://web.archive.org/web/20250102000000id_/https://api.alpha.example/p/SAV-1",
            "data_quality_flag": "parsed_from_wayback_cdr",
            "confidence_score": 0.93,
        }
        row.update(overrides)
        return row

    return _make


@pytest.fixture
def make_td_row():
    def _make(**overrides) -> dict:
        row = {
            "bank_name": "Alpha Bank",
            "collection_date": "2025-01-02",
            "product_id": "TD-1",
            "product_name": "Term Deposit",
            "term_months": 12,
            "interest_rate": 4.6,
            "deposit_tier": "$5k-$2m",
            "min_deposit": 5000,
            "max_deposit": 2000000,
            "interest_payment": "at_maturity",
            "source_url": "https://web.archive.org/web/20250102000000id_/https://api.alpha.example/p/TD-1",
            "data_quality_flag": "parsed_from_wayback_cdr",
            "confidence_score": 0.93,
        }
        row.update(overrides)
        return row

    return _make
