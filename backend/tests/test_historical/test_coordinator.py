"""RunCoordinator tests

Admission policy (range ceilings, single active public run, cooldown),
task fan-out and the run detail read model.
"""

from __future__ import annotations

from datetime import date

import pytest

from app.models.db.historical import HistoricalRun, HistoricalTask
from app.services.historical.coordinator import (
    PUBLIC_REQUESTED_BY,
    RunCoordinator,
    days_between_inclusive,
    list_dates_inclusive,
    make_worker_command,
    parse_date_only,
)
from app.services.historical.errors import (
    CooldownActiveError,
    InvalidRequestError,
    NotFoundError,
    RunAlreadyActiveError,
)
from app.services.historical.lease_store import TaskLeaseStore


def _coordinator(db, lenders, clock, **overrides) -> RunCoordinator:
    options = {
        "public_max_range_days": 30,
        "admin_max_range_days": 365,
        "public_cooldown_seconds": 300,
    }
    options.update(overrides)
    return RunCoordinator(db, lenders=lenders, clock=clock, **options)


def _finish_run(db, run_id: str) -> None:
    db.query(HistoricalTask).filter_by(run_id=run_id).update({"status": "completed"})
    db.commit()


class TestDateHelpers:
    """parse_date_only / range helpers"""

    def test_parse(self):
        assert parse_date_only("2025-01-31") == date(2025, 1, 31)
        assert parse_date_only(" 2025-01-31 ") == date(2025, 1, 31)
        assert parse_date_only(date(2025, 2, 1)) == date(2025, 2, 1)

    @pytest.mark.parametrize("value", ["2025-1-31", "20250131", "2025-01-31T00:00:00", "", None])
    def test_parse_rejects_shape(self, value):
        with pytest.raises(InvalidRequestError):
            parse_date_only(value)

    def test_parse_rejects_calendar(self):
        with pytest.raises(InvalidRequestError, match="calendar"):
            parse_date_only("2025-02-30")

    def test_inclusive_days(self):
        assert days_between_inclusive(date(2025, 1, 1), date(2025, 1, 1)) == 1
        assert days_between_inclusive(date(2025, 1, 1), date(2025, 1, 3)) == 3
        assert days_between_inclusive(date(2025, 1, 3), date(2025, 1, 1)) == -1

    def test_list_dates(self):
        assert list_dates_inclusive(date(2024, 12, 31), date(2025, 1, 2)) == [
            date(2024, 12, 31),
            date(2025, 1, 1),
            date(2025, 1, 2),
        ]
        assert list_dates_inclusive(date(2025, 1, 2), date(2025, 1, 1)) == []

    def test_worker_command(self):
        command = make_worker_command("historical:admin:2025-01-01:2025-01-02:x")
        assert command.endswith("--run-id historical:admin:2025-01-01:2025-01-02:x")
        assert "ADMIN_API_TOKEN=" in command


class TestCreate:
    """RunCoordinator.create"""

    def test_fan_out(self, db_session, lenders, clock):
        result = _coordinator(db_session, lenders, clock).create("public", "2025-01-01", "2025-01-03")

        assert result.range_days == 3
        assert result.total_tasks == 6
        assert result.run_id.startswith("historical:public:2025-01-01:2025-01-03:")
        assert result.run_id in result.worker_command

        run = db_session.get(HistoricalRun, result.run_id)
        assert run.status == "pending"
        assert run.total_tasks == 6
        assert run.pending_tasks == 6

        tasks = db_session.query(HistoricalTask).filter_by(run_id=result.run_id).all()
        units = {(t.lender_code, t.collection_date) for t in tasks}
        assert len(units) == 6
        assert ("beta", date(2025, 1, 2)) in units
        assert all(t.status == "pending" and t.attempt_count == 0 for t in tasks)

    def test_duplicate_lender_codes_collapse(self, db_session, lenders, clock):
        result = _coordinator(db_session, lenders + [lenders[0]], clock).create("admin", "2025-01-01", "2025-01-01")
        assert result.total_tasks == 2

    def test_requested_by(self, db_session, lenders, clock):
        result = _coordinator(db_session, lenders, clock).create(
            "admin", "2025-01-01", "2025-01-01", requested_by="ops"
        )
        assert db_session.get(HistoricalRun, result.run_id).requested_by == "ops"

    def test_public_requested_by_default(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        public = coordinator.create("public", "2025-01-01", "2025-01-01")
        admin = coordinator.create("admin", "2025-01-01", "2025-01-01")

        assert db_session.get(HistoricalRun, public.run_id).requested_by == PUBLIC_REQUESTED_BY
        assert db_session.get(HistoricalRun, admin.run_id).requested_by is None

    def test_reversed_range(self, db_session, lenders, clock):
        with pytest.raises(InvalidRequestError, match="on or after"):
            _coordinator(db_session, lenders, clock).create("public", "2025-01-03", "2025-01-01")
        assert db_session.query(HistoricalRun).count() == 0

    def test_bad_date(self, db_session, lenders, clock):
        with pytest.raises(InvalidRequestError, match="start_date"):
            _coordinator(db_session, lenders, clock).create("public", "01/01/2025", "2025-01-01")

    def test_unknown_source(self, db_session, lenders, clock):
        with pytest.raises(InvalidRequestError):
            _coordinator(db_session, lenders, clock).create("cron", "2025-01-01", "2025-01-01")

    def test_public_range_ceiling(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        with pytest.raises(InvalidRequestError) as exc_info:
            coordinator.create("public", "2025-01-01", "2025-01-31")
        assert exc_info.value.details == {"range_days": 31, "max_range_days": 30}

        assert coordinator.create("public", "2025-01-01", "2025-01-30").range_days == 30

    def test_admin_range_ceiling(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock, admin_max_range_days=60)
        assert coordinator.create("admin", "2025-01-01", "2025-02-15").range_days == 46
        with pytest.raises(InvalidRequestError):
            coordinator.create("admin", "2025-01-01", "2025-03-15")

    def test_empty_lender_set_fails_run(self, db_session, clock):
        result = _coordinator(db_session, [], clock).create("admin", "2025-01-01", "2025-01-02")
        assert result.total_tasks == 0
        assert db_session.get(HistoricalRun, result.run_id).status == "failed"


class TestPublicAdmission:
    """Single active public run + cooldown"""

    def test_active_run_rejected(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock, public_cooldown_seconds=0)
        first = coordinator.create("public", "2025-01-01", "2025-01-01")

        with pytest.raises(RunAlreadyActiveError) as exc_info:
            coordinator.create("public", "2025-01-02", "2025-01-02")
        assert exc_info.value.details == {"run_id": first.run_id}
        assert exc_info.value.status_code == 429

    def test_admin_bypasses_policy(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        coordinator.create("public", "2025-01-01", "2025-01-01")
        result = coordinator.create("admin", "2025-01-01", "2025-01-01")
        assert result.total_tasks == 2

    def test_cooldown(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock, public_cooldown_seconds=300)
        first = coordinator.create("public", "2025-01-01", "2025-01-01")
        _finish_run(db_session, first.run_id)
        coordinator.get_detail(first.run_id)

        clock.advance(seconds=100)
        with pytest.raises(CooldownActiveError) as exc_info:
            coordinator.create("public", "2025-01-02", "2025-01-02")
        assert exc_info.value.retry_after_seconds == 200
        assert exc_info.value.details == {"retry_after_seconds": 200}

        clock.advance(seconds=200)
        assert coordinator.create("public", "2025-01-02", "2025-01-02").total_tasks == 2

    def test_cooldown_retry_after_rounds_up(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock, public_cooldown_seconds=300)
        first = coordinator.create("public", "2025-01-01", "2025-01-01")
        _finish_run(db_session, first.run_id)
        coordinator.get_detail(first.run_id)

        clock.advance(seconds=299, milliseconds=500)
        with pytest.raises(CooldownActiveError) as exc_info:
            coordinator.create("public", "2025-01-02", "2025-01-02")
        assert exc_info.value.retry_after_seconds == 1

    def test_cooldown_disabled(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock, public_cooldown_seconds=0)
        first = coordinator.create("public", "2025-01-01", "2025-01-01")
        _finish_run(db_session, first.run_id)
        coordinator.get_detail(first.run_id)

        assert coordinator.create("public", "2025-01-02", "2025-01-02").total_tasks == 2

    def test_concurrent_creation_hits_unique_index(self, db_session, lenders, clock, monkeypatch):
        coordinator = _coordinator(db_session, lenders, clock, public_cooldown_seconds=0)
        first = coordinator.create("public", "2025-01-01", "2025-01-01")

        # both callers passed the pre-check; the partial unique index decides
        monkeypatch.setattr(coordinator, "_check_public_admission", lambda: None)
        with pytest.raises(RunAlreadyActiveError) as exc_info:
            coordinator.create("public", "2025-01-02", "2025-01-02")
        assert exc_info.value.details == {"run_id": first.run_id}
        assert db_session.query(HistoricalRun).count() == 1
        assert db_session.query(HistoricalTask).count() == 2


class TestGetDetail:
    """RunCoordinator.get_detail"""

    def test_progress_and_recent_tasks(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        run_id = coordinator.create("admin", "2025-01-01", "2025-01-03").run_id

        store = TaskLeaseStore(db_session, clock=clock)
        task = store.claim(run_id, "w1", 600)
        store.finalize(task.task_id, run_id, "w1", "completed")

        detail = coordinator.get_detail(run_id, task_limit=4)
        assert detail.run.status == "running"
        assert detail.progress_pct == 16.7
        assert detail.rows_total == 0
        assert len(detail.tasks_recent) == 4
        assert [(t.collection_date, t.lender_code) for t in detail.tasks_recent[:3]] == [
            (date(2025, 1, 3), "alpha"),
            (date(2025, 1, 3), "beta"),
            (date(2025, 1, 2), "alpha"),
        ]
        assert detail.tasks_recent[0].status == "completed"
        assert detail.run.created_at.tzinfo is not None

    def test_limit_clamped(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        run_id = coordinator.create("admin", "2025-01-01", "2025-01-03").run_id
        assert len(coordinator.get_detail(run_id, task_limit=0).tasks_recent) == 1
        assert len(coordinator.get_detail(run_id, task_limit=1000).tasks_recent) == 6

    def test_source_mismatch_is_not_found(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        run_id = coordinator.create("admin", "2025-01-01", "2025-01-01").run_id
        with pytest.raises(NotFoundError):
            coordinator.get_detail(run_id, expected_trigger_source="public")
        assert coordinator.get_detail(run_id, expected_trigger_source="admin").run.run_id == run_id

    def test_unknown_run(self, db_session, lenders, clock):
        with pytest.raises(NotFoundError):
            _coordinator(db_session, lenders, clock).get_detail("nope")

    def test_blank_run_id(self, db_session, lenders, clock):
        with pytest.raises(InvalidRequestError):
            _coordinator(db_session, lenders, clock).get_detail("  ")


class TestRunLifecycle:
    """Create → claim all → finalize → terminal status"""

    def test_partial_run(self, db_session, lenders, clock):
        coordinator = _coordinator(db_session, lenders, clock)
        run_id = coordinator.create("public", "2025-01-01", "2025-01-03").run_id
        store = TaskLeaseStore(db_session, clock=clock)

        claimed = []
        for _ in range(10):
            task = store.claim(run_id, "w1", 600)
            if task is None:
                break
            claimed.append(task.task_id)
        assert len(claimed) == 6
        assert coordinator.get_detail(run_id).run.status == "running"

        for task_id in claimed[:5]:
            store.finalize(task_id, run_id, "w1", "completed")
        store.finalize(claimed[5], run_id, "w1", "failed", error="boom")

        detail = coordinator.get_detail(run_id)
        assert detail.run.status == "partial"
        assert detail.progress_pct == 100.0
        assert detail.run.completed_tasks == 5
        assert detail.run.failed_tasks == 1
        assert detail.run.finished_at is not None

        # terminal run frees the public slot (cooldown still applies)
        clock.advance(seconds=301)
        assert coordinator.create("public", "2025-01-04", "2025-01-04").total_tasks == 2
