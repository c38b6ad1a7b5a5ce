"""ORM model CRUD + constraint tests

Runs on SQLite in-memory. PostgreSQL not required.
"""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.db.historical import HistoricalBatch, HistoricalRun, HistoricalTask
from app.models.db.rates import HistoricalLoanRate, HistoricalTdRate


def _make_run(run_id: str = "historical:public:2025-01-01:2025-01-03:r1", **overrides) -> HistoricalRun:
    defaults = {
        "run_id": run_id,
        "trigger_source": "public",
        "start_date": date(2025, 1, 1),
        "end_date": date(2025, 1, 3),
        "status": "pending",
    }
    defaults.update(overrides)
    return HistoricalRun(**defaults)


def _make_task(run_id: str, **overrides) -> HistoricalTask:
    defaults = {
        "run_id": run_id,
        "lender_code": "cba",
        "collection_date": date(2025, 1, 1),
        "status": "pending",
    }
    defaults.update(overrides)
    return HistoricalTask(**defaults)


def _make_loan_rate(**overrides) -> HistoricalLoanRate:
    defaults = {
        "bank_name": "Commonwealth Bank of Australia",
        "collection_date": date(2025, 1, 1),
        "product_id": "HL-1",
        "product_name": "Standard Variable Home Loan",
        "interest_rate": 6.24,
        "source_url": "https://web.archive.org/web/20250101id_/https://api.commbank.com.au/p/HL-1",
        "data_quality_flag": "parsed_from_wayback_cdr",
        "confidence_score": 0.92,
        "security_purpose": "owner_occupied",
        "repayment_type": "principal_and_interest",
        "rate_structure": "variable",
        "lvr_tier": "lvr_70-80%",
        "feature_set": "basic",
    }
    defaults.update(overrides)
    return HistoricalLoanRate(**defaults)


class TestHistoricalRun:
    """historical_runs table"""

    def test_create_with_defaults(self, db_session):
        db_session.add(_make_run())
        db_session.commit()

        run = db_session.get(HistoricalRun, "historical:public:2025-01-01:2025-01-03:r1")
        assert run.status == "pending"
        assert run.total_tasks == 0
        assert run.completed_tasks == 0
        assert run.created_at is not None
        assert run.started_at is None

    def test_rows_total(self, db_session):
        run = _make_run(mortgage_rows=10, savings_rows=4, td_rows=2)
        db_session.add(run)
        db_session.commit()
        assert run.rows_total == 16

    def test_second_active_public_run_rejected(self, db_session):
        db_session.add(_make_run("run-a"))
        db_session.commit()

        db_session.add(_make_run("run-b", status="running"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_public_run_allowed_after_terminal(self, db_session):
        db_session.add(_make_run("run-a", status="completed"))
        db_session.add(_make_run("run-b", status="failed"))
        db_session.add(_make_run("run-c"))
        db_session.commit()
        assert db_session.query(HistoricalRun).count() == 3

    def test_admin_runs_not_limited(self, db_session):
        db_session.add(_make_run("run-a", trigger_source="admin"))
        db_session.add(_make_run("run-b", trigger_source="admin"))
        db_session.add(_make_run("run-c"))
        db_session.commit()
        assert db_session.query(HistoricalRun).count() == 3


class TestHistoricalTask:
    """historical_tasks table"""

    def test_task_unit_unique(self, db_session):
        db_session.add(_make_run("run-a"))
        db_session.add(_make_task("run-a"))
        db_session.commit()

        db_session.add(_make_task("run-a"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_same_unit_in_other_run(self, db_session):
        db_session.add(_make_run("run-a", trigger_source="admin"))
        db_session.add(_make_run("run-b", trigger_source="admin"))
        db_session.add(_make_task("run-a"))
        db_session.add(_make_task("run-b"))
        db_session.commit()
        assert db_session.query(HistoricalTask).count() == 2

    def test_defaults(self, db_session):
        db_session.add(_make_run("run-a"))
        task = _make_task("run-a")
        db_session.add(task)
        db_session.commit()

        assert task.task_id is not None
        assert task.attempt_count == 0
        assert task.had_signals is False
        assert task.claimed_by is None
        assert task.mortgage_rows == task.savings_rows == task.td_rows == 0

    def test_cascade_delete(self, db_session):
        run = _make_run("run-a")
        db_session.add(run)
        db_session.add(_make_task("run-a"))
        db_session.add(_make_task("run-a", lender_code="nab"))
        db_session.commit()

        db_session.delete(run)
        db_session.commit()
        assert db_session.query(HistoricalTask).count() == 0

    def test_unknown_run_rejected(self, db_session):
        db_session.add(_make_task("missing-run"))
        with pytest.raises(IntegrityError):
            db_session.commit()


class TestHistoricalBatch:
    """historical_batches table"""

    def test_batch_id_primary_key(self, db_session):
        db_session.add(HistoricalBatch(batch_id="r:1:m:1", run_id="r", task_id=1, payload_hash="a" * 64))
        db_session.commit()

        db_session.add(HistoricalBatch(batch_id="r:1:m:1", run_id="r", task_id=1, payload_hash="b" * 64))
        with pytest.raises(IntegrityError):
            db_session.commit()


class TestRateTables:
    """historical rate tables"""

    def test_loan_natural_key_unique(self, db_session):
        db_session.add(_make_loan_rate())
        db_session.commit()

        db_session.add(_make_loan_rate(interest_rate=6.5))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_loan_other_structure_allowed(self, db_session):
        db_session.add(_make_loan_rate())
        db_session.add(_make_loan_rate(rate_structure="fixed_2yr"))
        db_session.commit()
        assert db_session.query(HistoricalLoanRate).count() == 2

    def test_loan_stamps(self, db_session):
        rate = _make_loan_rate()
        db_session.add(rate)
        db_session.commit()
        assert rate.run_source == "manual"
        assert rate.retrieval_type == "historical_scrape"
        assert rate.parsed_at is not None

    def test_td_row(self, db_session):
        db_session.add(
            HistoricalTdRate(
                bank_name="ING Bank (Australia)",
                collection_date=date(2025, 1, 1),
                product_id="TD-1",
                product_name="Term Deposit",
                interest_rate=4.6,
                source_url="https://web.archive.org/web/20250101id_/https://id.ing.com.au/p/TD-1",
                data_quality_flag="parsed_from_wayback_cdr",
                confidence_score=0.93,
                term_months=12,
                interest_payment="at_maturity",
            )
        )
        db_session.commit()
        td = db_session.query(HistoricalTdRate).one()
        assert td.deposit_tier == "all"
        assert td.term_months == 12
