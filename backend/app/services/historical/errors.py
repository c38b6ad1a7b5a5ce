"""Historical pull errors

Every error carries a stable reason code and the HTTP status the API maps it to.
"""

from __future__ import annotations

from typing import Any


class HistoricalPullError(Exception):
    """Base historical pull error"""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidRequestError(HistoricalPullError):
    """Bad date range, range too large, missing ids, oversized batch"""

    code = "INVALID_REQUEST"
    status_code = 400


class RunAlreadyActiveError(HistoricalPullError):
    """Another public run is pending or running"""

    code = "RUN_ALREADY_ACTIVE"
    status_code = 429


class CooldownActiveError(HistoricalPullError):
    """Public run created inside the cooldown window"""

    code = "COOLDOWN_ACTIVE"
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Public historical pull cooldown is active.",
            details={"retry_after_seconds": retry_after_seconds},
        )


class NotFoundError(HistoricalPullError):
    code = "NOT_FOUND"
    status_code = 404


class TaskNotClaimedError(HistoricalPullError):
    code = "TASK_NOT_CLAIMED"
    status_code = 409


class TaskClaimedByOtherError(HistoricalPullError):
    code = "TASK_CLAIMED_BY_OTHER"
    status_code = 409


class TaskFinalizeError(HistoricalPullError):
    """Finalize matched no row (not claimed, or claimed by someone else)"""

    code = "TASK_FINALIZE_FAILED"
    status_code = 409


class InvalidRowError(HistoricalPullError):
    """One row in a batch failed validation; the whole batch is rejected"""

    code = "INVALID_ROW"
    status_code = 400


class BatchConflictError(HistoricalPullError):
    """Batch id reused with a different payload"""

    code = "BATCH_ID_CONFLICT"
    status_code = 409


class UnknownLenderError(HistoricalPullError):
    code = "INTERNAL_ERROR"
    status_code = 500


class UnauthorizedError(HistoricalPullError):
    """Missing or wrong admin bearer token"""

    code = "UNAUTHORIZED"
    status_code = 401
