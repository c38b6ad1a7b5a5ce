"""Historical pull API routers

Public:
- POST /api/historical/pull                       - create a public run
- GET  /api/historical/pull/{run_id}              - public run progress

Admin (Bearer ADMIN_API_TOKEN):
- POST /api/admin/historical/pull                 - create an admin run
- GET  /api/admin/historical/pull/{run_id}        - any run's progress
- POST /api/admin/historical/pull/tasks/claim     - lease the next task
- POST /api/admin/historical/pull/tasks/{task_id}/batch    - submit rows
- POST /api/admin/historical/pull/tasks/{task_id}/finalize - complete/fail a task
- POST /api/admin/historical/pull/{run_id}/sweep  - fail expired, exhausted leases
"""

import logging

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import (
    get_coordinator,
    get_lease_store,
    get_ledger,
    get_lenders,
    require_admin,
)
from app.api.schemas import (
    AdminPullRequest,
    BatchRequestBody,
    BatchResponse,
    ClaimRequest,
    ClaimResponse,
    FinalizeRequest,
    FinalizeResponse,
    PullCreatedResponse,
    PullRequest,
    RunDetailResponse,
    SweepRequest,
    SweepResponse,
    WrittenBody,
)
from app.config import settings
from app.models.historical import ClaimedTask, LenderConfig, TaskStatus, TriggerSource
from app.services.historical.coordinator import PUBLIC_REQUESTED_BY, RunCoordinator
from app.services.historical.errors import UnknownLenderError
from app.services.historical.lease_store import TaskLeaseStore
from app.services.historical.ledger import BatchIngestionLedger
from app.services.historical.lenders import build_endpoint_candidates, get_lender, seed_urls

logger = logging.getLogger(__name__)

public_router = APIRouter(prefix="/api/historical", tags=["historical"])
admin_router = APIRouter(
    prefix="/api/admin/historical",
    tags=["historical-admin"],
    dependencies=[Depends(require_admin)],
)


def _created(result) -> PullCreatedResponse:
    return PullCreatedResponse(**result.model_dump())


def _detail(coordinator: RunCoordinator, run_id: str, source: TriggerSource | None, limit: int | None):
    detail = coordinator.get_detail(run_id, expected_trigger_source=source, task_limit=limit)
    return RunDetailResponse(**detail.model_dump())


# ── public ────────────────────────────────────────────────────


@public_router.post("/pull", response_model=PullCreatedResponse, status_code=201)
def create_public_pull(
    body: PullRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """Public run: range ceiling, single active run, cooldown"""
    result = coordinator.create(
        TriggerSource.PUBLIC, body.start_date, body.end_date, requested_by=PUBLIC_REQUESTED_BY
    )
    return _created(result)


@public_router.get("/pull/{run_id}", response_model=RunDetailResponse)
def get_public_pull(
    run_id: str,
    limit: int | None = Query(None, description="recent task count (1-200)"),
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """Progress of a public run. Admin runs are reported as not found."""
    return _detail(coordinator, run_id, TriggerSource.PUBLIC, limit)


# ── admin ─────────────────────────────────────────────────────


@admin_router.post("/pull", response_model=PullCreatedResponse, status_code=201)
def create_admin_pull(
    body: AdminPullRequest,
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    result = coordinator.create(
        TriggerSource.ADMIN, body.start_date, body.end_date, requested_by=body.requested_by or "admin"
    )
    return _created(result)


@admin_router.post("/pull/tasks/claim", response_model=ClaimResponse)
def claim_task(
    body: ClaimRequest,
    store: TaskLeaseStore = Depends(get_lease_store),
    lenders: list[LenderConfig] = Depends(get_lenders),
):
    """Lease the next task, with collection hints for its lender

    A task whose lender is no longer configured is finalized as failed and
    reported as an internal error; the next claim moves on.
    """
    run_id = (body.run_id or "").strip()
    worker_id = (body.worker_id or "").strip()
    task = store.claim(run_id, worker_id, settings.HISTORICAL_TASK_CLAIM_TTL_SECONDS)
    if task is None:
        return ClaimResponse(run_id=run_id, task=None)

    lender = get_lender(task.lender_code, lenders)
    if lender is None:
        store.finalize(
            task.task_id, run_id, worker_id, TaskStatus.FAILED,
            error=f"unknown_lender_code:{task.lender_code}",
        )
        logger.error("claimed task %d has unknown lender %s", task.task_id, task.lender_code)
        raise UnknownLenderError(f"Unknown lender code in task: {task.lender_code}")

    return ClaimResponse(
        run_id=run_id,
        task=ClaimedTask(
            task_id=task.task_id,
            lender_code=task.lender_code,
            collection_date=task.collection_date,
            seed_urls=seed_urls(lender),
            endpoint_candidates=build_endpoint_candidates(lender),
            attempt_count=task.attempt_count,
        ),
    )


@admin_router.post("/pull/tasks/{task_id}/batch", response_model=BatchResponse)
def submit_batch(
    task_id: int,
    body: BatchRequestBody,
    ledger: BatchIngestionLedger = Depends(get_ledger),
):
    result = ledger.ingest(
        run_id=body.run_id,
        task_id=task_id,
        batch_id=body.batch_id,
        worker_id=body.worker_id,
        mortgage_rows=body.mortgage_rows,
        savings_rows=body.savings_rows,
        td_rows=body.td_rows,
        had_signals=body.had_signals,
    )
    written = result.written
    return BatchResponse(
        deduped=result.deduped,
        written=WrittenBody(
            mortgage_rows=written.mortgage_rows,
            savings_rows=written.savings_rows,
            td_rows=written.td_rows,
            total_rows=written.total_rows,
        ),
    )


@admin_router.post("/pull/tasks/{task_id}/finalize", response_model=FinalizeResponse)
def finalize_task(
    task_id: int,
    body: FinalizeRequest,
    store: TaskLeaseStore = Depends(get_lease_store),
):
    task = store.finalize(
        task_id,
        (body.run_id or "").strip(),
        body.worker_id,
        body.status or "",
        error=body.error,
        had_signals=body.had_signals,
    )
    return FinalizeResponse(task_id=task.task_id, status=task.status)


@admin_router.get("/pull/{run_id}", response_model=RunDetailResponse)
def get_admin_pull(
    run_id: str,
    limit: int | None = Query(None, description="recent task count (1-200)"),
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    return _detail(coordinator, run_id, None, limit)


@admin_router.post("/pull/{run_id}/sweep", response_model=SweepResponse)
def sweep_run(
    run_id: str,
    body: SweepRequest | None = None,
    store: TaskLeaseStore = Depends(get_lease_store),
):
    """Fail claimed tasks whose lease expired after the attempt ceiling"""
    max_attempts = body.max_attempts if body and body.max_attempts else settings.HISTORICAL_MAX_TASK_ATTEMPTS
    swept = store.sweep_expired(run_id, max_attempts)
    return SweepResponse(run_id=run_id, swept=swept)
