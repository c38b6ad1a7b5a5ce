"""API request/response schemas

Wraps the service DTOs for the wire. Request bodies accept snake_case and
camelCase keys; field-level validation (date shape, status values, ids) is
left to the services so every rejection carries a stable error code.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from app.models.historical import ClaimedTask, RunDetail


def _alias(snake: str, camel: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(snake, camel))


# ── requests ──────────────────────────────────────────────────


class PullRequest(BaseModel):
    """Public run creation"""

    start_date: str | None = _alias("start_date", "startDate")
    end_date: str | None = _alias("end_date", "endDate")


class AdminPullRequest(PullRequest):
    requested_by: str | None = _alias("requested_by", "requestedBy")


class ClaimRequest(BaseModel):
    run_id: str | None = _alias("run_id", "runId")
    worker_id: str | None = _alias("worker_id", "workerId")


class BatchRequestBody(BaseModel):
    """Rows for one claimed task. Rows are validated by the ledger."""

    run_id: str | None = _alias("run_id", "runId")
    batch_id: str | None = _alias("batch_id", "batchId")
    worker_id: str | None = _alias("worker_id", "workerId")
    mortgage_rows: list[Any] = Field(default_factory=list, validation_alias=AliasChoices("mortgage_rows", "mortgageRows"))
    savings_rows: list[Any] = Field(default_factory=list, validation_alias=AliasChoices("savings_rows", "savingsRows"))
    td_rows: list[Any] = Field(default_factory=list, validation_alias=AliasChoices("td_rows", "tdRows"))
    had_signals: bool = Field(default=False, validation_alias=AliasChoices("had_signals", "hadSignals"))


class FinalizeRequest(BaseModel):
    run_id: str | None = _alias("run_id", "runId")
    worker_id: str | None = _alias("worker_id", "workerId")
    status: str | None = None  # "completed" | "failed"
    error: str | None = None
    had_signals: bool = Field(default=False, validation_alias=AliasChoices("had_signals", "hadSignals"))


class SweepRequest(BaseModel):
    max_attempts: int | None = _alias("max_attempts", "maxAttempts")


# ── responses ─────────────────────────────────────────────────


class PullCreatedResponse(BaseModel):
    ok: bool = True
    run_id: str
    worker_command: str
    range_days: int
    total_tasks: int


class RunDetailResponse(RunDetail):
    ok: bool = True


class ClaimResponse(BaseModel):
    ok: bool = True
    run_id: str
    task: ClaimedTask | None = None


class WrittenBody(BaseModel):
    mortgage_rows: int = 0
    savings_rows: int = 0
    td_rows: int = 0
    total_rows: int = 0


class BatchResponse(BaseModel):
    ok: bool = True
    deduped: bool
    written: WrittenBody


class FinalizeResponse(BaseModel):
    ok: bool = True
    task_id: int
    status: str


class SweepResponse(BaseModel):
    ok: bool = True
    run_id: str
    swept: int


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    ok: bool = False
    error: ErrorBody
