"""FastAPI dependency injection

Services are built per request around the request's DB session.
Stateless collaborators are cached singletons.
.env is optional; defaults work in tests.
"""

import hmac
from collections.abc import Callable, Generator
from datetime import datetime
from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db as _get_db
from app.models.db.base import utcnow
from app.models.historical import LenderConfig
from app.services.historical.coordinator import RunCoordinator
from app.services.historical.errors import UnauthorizedError
from app.services.historical.lease_store import TaskLeaseStore
from app.services.historical.ledger import BatchIngestionLedger
from app.services.historical.lenders import TARGET_LENDERS
from app.services.historical.validation import RowValidator


def get_db() -> Generator[Session, None, None]:
    """DB session for FastAPI Depends"""
    yield from _get_db()


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_lenders() -> list[LenderConfig]:
    return TARGET_LENDERS


@lru_cache()
def get_row_validator() -> RowValidator:
    """Singleton RowValidator"""
    return RowValidator()


def get_coordinator(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    lenders: list[LenderConfig] = Depends(get_lenders),
) -> RunCoordinator:
    return RunCoordinator(db, lenders=lenders, clock=clock)


def get_lease_store(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TaskLeaseStore:
    return TaskLeaseStore(db, clock=clock)


def get_ledger(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    validator: RowValidator = Depends(get_row_validator),
) -> BatchIngestionLedger:
    return BatchIngestionLedger(db, validator=validator, clock=clock)


def require_admin(authorization: str | None = Header(default=None)) -> None:
    """Bearer ADMIN_API_TOKEN check. An unset token rejects every call."""
    expected = settings.ADMIN_API_TOKEN
    scheme, _, token = (authorization or "").partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        raise UnauthorizedError("Admin token required.")
