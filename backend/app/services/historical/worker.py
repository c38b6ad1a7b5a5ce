"""Historical pull worker

Reference worker that drains one run over the admin HTTP API:
claim → collect → submit batches → finalize, until no task is left.

Every remote step is retried with exponential backoff. Batch ids are
deterministic per (run, task, dataset, sequence), so a retried submission
replays as deduped on the server.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, Field

from app.config import settings
from app.models.historical import ClaimedTask, LenderConfig, TaskStatus
from app.services.collector.base import RateCollector
from app.services.historical.lenders import TARGET_LENDERS, get_lender

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_LENGTH = 1800
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class HistoricalApiError(Exception):
    """Historical pull API call failed"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str = "UNKNOWN",
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(message)


def is_retryable(error: Exception) -> bool:
    """4xx other than 408/429 will fail the same way again"""
    if isinstance(error, HistoricalApiError) and error.status_code is not None:
        return not (400 <= error.status_code < 500) or error.status_code in RETRYABLE_CLIENT_STATUSES
    return True


def with_retries(
    fn: Callable[[], T],
    label: str,
    max_retries: int = 4,
    backoff_base: float = 0.5,
    backoff_max: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying failures with exponential backoff

    Delay before retry n is min(backoff_max, backoff_base * 2**(n-1)).
    The last error is re-raised once attempts run out.
    """
    attempts = max(1, max_retries)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if attempt >= attempts or not is_retryable(e):
                break
            delay = min(backoff_max, backoff_base * 2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt, attempts, delay, e,
            )
            sleep(delay)
    raise last_error


# ── batches ───────────────────────────────────────────────────


class BatchRequest(BaseModel):
    """Body of POST .../tasks/{task_id}/batch"""

    run_id: str
    batch_id: str
    worker_id: str
    mortgage_rows: list[dict[str, Any]] = Field(default_factory=list)
    savings_rows: list[dict[str, Any]] = Field(default_factory=list)
    td_rows: list[dict[str, Any]] = Field(default_factory=list)
    had_signals: bool = False

    @property
    def row_count(self) -> int:
        return len(self.mortgage_rows) + len(self.savings_rows) + len(self.td_rows)


def chunk_rows(rows: Sequence[T], size: int) -> list[list[T]]:
    size = max(1, int(size))
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


def _as_payload(row: Any) -> dict[str, Any]:
    if isinstance(row, BaseModel):
        return row.model_dump(mode="json")
    return dict(row)


def build_batch_requests(
    run_id: str,
    worker_id: str,
    task_id: int,
    had_signals: bool,
    mortgage_rows: Sequence[Any] = (),
    savings_rows: Sequence[Any] = (),
    td_rows: Sequence[Any] = (),
    batch_size: int = 50,
) -> list[BatchRequest]:
    """Split collected rows into single-dataset batches

    batch_id = "{run_id}:{task_id}:{m|s|t}:{seq}"; seq runs 1.. across all
    datasets in mortgage, savings, term deposit order.
    """
    requests: list[BatchRequest] = []
    seq = 0
    for kind, field, rows in (
        ("m", "mortgage_rows", mortgage_rows),
        ("s", "savings_rows", savings_rows),
        ("t", "td_rows", td_rows),
    ):
        for chunk in chunk_rows(list(rows), batch_size):
            seq += 1
            requests.append(
                BatchRequest(
                    run_id=run_id,
                    batch_id=f"{run_id}:{task_id}:{kind}:{seq}",
                    worker_id=worker_id,
                    had_signals=had_signals,
                    **{field: [_as_payload(r) for r in chunk]},
                )
            )
    return requests


def make_worker_id() -> str:
    """'{hostname}-{pid}-{8 hex}'"""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


# ── API client ────────────────────────────────────────────────


class HistoricalApiClient:
    """Admin historical pull API over httpx"""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.HISTORICAL_API_BASE).rstrip("/")
        self._client = client or httpx.Client(timeout=timeout or settings.HISTORICAL_WORKER_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._client.request(method, url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise HistoricalApiError(f"network error {url}: {e}", error_type="NETWORK_ERROR") from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code >= 400:
            error = body.get("error") if isinstance(body, dict) else None
            code = error.get("code", "HTTP_ERROR") if isinstance(error, dict) else "HTTP_ERROR"
            message = error.get("message", "") if isinstance(error, dict) else str(body)
            raise HistoricalApiError(
                f"HTTP {response.status_code} {url}: {code} {message}".strip(),
                status_code=response.status_code,
                error_type=code,
            )
        if not isinstance(body, dict):
            raise HistoricalApiError(f"unexpected response body from {url}", error_type="PARSE_ERROR")
        return body

    def claim(self, run_id: str, worker_id: str) -> ClaimedTask | None:
        body = self._request(
            "POST", "/admin/historical/pull/tasks/claim", {"run_id": run_id, "worker_id": worker_id}
        )
        task = body.get("task")
        return ClaimedTask.model_validate(task) if task else None

    def submit_batch(self, task_id: int, batch: BatchRequest) -> dict[str, Any]:
        return self._request("POST", f"/admin/historical/pull/tasks/{task_id}/batch", batch.model_dump())

    def finalize(
        self,
        task_id: int,
        run_id: str,
        worker_id: str,
        status: TaskStatus,
        error: str | None = None,
        had_signals: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": run_id,
            "worker_id": worker_id,
            "status": TaskStatus(status).value,
            "had_signals": had_signals,
        }
        if error:
            payload["error"] = error
        return self._request("POST", f"/admin/historical/pull/tasks/{task_id}/finalize", payload)

    def get_run(self, run_id: str) -> dict[str, Any]:
        return self._request("GET", f"/admin/historical/pull/{run_id}")


# ── worker loop ───────────────────────────────────────────────


class WorkerSummary(BaseModel):
    """WorkerLoop.run result"""

    run_id: str
    worker_id: str
    completed_tasks: int = 0
    failed_tasks: int = 0
    lost_leases: int = 0
    batches_sent: int = 0
    rows_sent: int = 0
    errors: list[str] = Field(default_factory=list)


class WorkerLoop:
    """Drains one run: claim → collect → batches → finalize"""

    def __init__(
        self,
        run_id: str,
        api: HistoricalApiClient,
        collector: RateCollector,
        worker_id: str | None = None,
        lenders: Sequence[LenderConfig] | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        idle_polls: int = 1,
        poll_interval: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._run_id = run_id
        self._api = api
        self._collector = collector
        self._worker_id = worker_id or make_worker_id()
        self._lenders = list(TARGET_LENDERS if lenders is None else lenders)
        self._batch_size = batch_size or settings.HISTORICAL_WORKER_BATCH_SIZE
        self._max_retries = max_retries or settings.HISTORICAL_WORKER_MAX_RETRIES
        self._backoff_base = settings.HISTORICAL_WORKER_BACKOFF_BASE if backoff_base is None else backoff_base
        self._backoff_max = settings.HISTORICAL_WORKER_BACKOFF_MAX if backoff_max is None else backoff_max
        self._idle_polls = max(1, idle_polls)
        self._poll_interval = settings.HISTORICAL_WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self._sleep = sleep

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def _retry(self, fn: Callable[[], T], label: str) -> T:
        return with_retries(
            fn,
            label,
            max_retries=self._max_retries,
            backoff_base=self._backoff_base,
            backoff_max=self._backoff_max,
            sleep=self._sleep,
        )

    def run(self) -> WorkerSummary:
        """Process tasks until `idle_polls` consecutive claims come back empty

        Raises:
            HistoricalApiError: claim kept failing after retries
        """
        summary = WorkerSummary(run_id=self._run_id, worker_id=self._worker_id)
        logger.info("worker start: run=%s worker=%s", self._run_id, self._worker_id)

        idle = 0
        while True:
            task = self._retry(lambda: self._api.claim(self._run_id, self._worker_id), "claim_task")
            if task is None:
                idle += 1
                if idle >= self._idle_polls:
                    break
                self._sleep(self._poll_interval)
                continue
            idle = 0
            self.process_task(task, summary)

        logger.info(
            "worker done: run=%s completed=%d failed=%d batches=%d rows=%d",
            self._run_id, summary.completed_tasks, summary.failed_tasks, summary.batches_sent, summary.rows_sent,
        )
        return summary

    def process_task(self, task: ClaimedTask, summary: WorkerSummary) -> None:
        lender = get_lender(task.lender_code, self._lenders)
        if lender is None:
            self._finalize_failed(task, f"unknown_lender_code:{task.lender_code}", summary)
            return

        logger.info("task %d: lender=%s date=%s", task.task_id, task.lender_code, task.collection_date)
        try:
            collected = self._retry(
                lambda: self._collector.collect(lender, task.collection_date, task.endpoint_candidates),
                f"collect_{task.task_id}",
            )
            batches = build_batch_requests(
                run_id=self._run_id,
                worker_id=self._worker_id,
                task_id=task.task_id,
                had_signals=collected.had_signals,
                mortgage_rows=collected.mortgage_rows,
                savings_rows=collected.savings_rows,
                td_rows=collected.td_rows,
                batch_size=self._batch_size,
            )
            for batch in batches:
                self._retry(
                    lambda batch=batch: self._api.submit_batch(task.task_id, batch),
                    f"batch_{batch.batch_id}",
                )
                summary.batches_sent += 1
                summary.rows_sent += batch.row_count

            self._retry(
                lambda: self._api.finalize(
                    task.task_id, self._run_id, self._worker_id, TaskStatus.COMPLETED,
                    had_signals=collected.had_signals,
                ),
                f"finalize_completed_{task.task_id}",
            )
        except Exception as e:
            self._finalize_failed(task, str(e) or type(e).__name__, summary)
            return

        summary.completed_tasks += 1
        logger.info(
            "task %d completed: mortgage=%d savings=%d td=%d",
            task.task_id, len(collected.mortgage_rows), len(collected.savings_rows), len(collected.td_rows),
        )

    def _finalize_failed(self, task: ClaimedTask, message: str, summary: WorkerSummary) -> None:
        error = message[:MAX_ERROR_LENGTH]
        logger.error("task %d failed: %s", task.task_id, error)
        summary.errors.append(f"{task.task_id}: {error}")
        try:
            self._retry(
                lambda: self._api.finalize(task.task_id, self._run_id, self._worker_id, TaskStatus.FAILED, error=error),
                f"finalize_failed_{task.task_id}",
            )
        except HistoricalApiError as e:
            # lease lost to another worker; that worker owns the outcome now
            if e.status_code != 409:
                raise
            summary.lost_leases += 1
            logger.warning("task %d: failure not recorded (%s)", task.task_id, e)
            return
        summary.failed_tasks += 1
