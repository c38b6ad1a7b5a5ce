"""Rate store: persistence of accepted rate rows

RateStore is the storage seam the ledger writes through; SqlRateStore upserts
into the three historical rate tables by natural key. Rows written by the
historical pipeline are stamped run_source="manual",
retrieval_type="historical_scrape".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.db.base import utcnow
from app.models.db.rates import HistoricalLoanRate, HistoricalSavingsRate, HistoricalTdRate
from app.models.rates import MortgageRateRow, RateRowBase, SavingsRateRow, TdRateRow

logger = logging.getLogger(__name__)

RUN_SOURCE = "manual"
RETRIEVAL_TYPE = "historical_scrape"

LOAN_KEY = ("bank_name", "collection_date", "product_id", "lvr_tier", "rate_structure")
SAVINGS_KEY = ("bank_name", "collection_date", "product_id", "account_type", "rate_type", "deposit_tier")
TD_KEY = ("bank_name", "collection_date", "product_id", "term_months", "deposit_tier", "interest_payment")


class RateStore(ABC):
    """Rate row sink. Each method returns the number of rows written."""

    @abstractmethod
    def upsert_mortgage(self, rows: Sequence[MortgageRateRow], run_id: str | None = None) -> int: ...

    @abstractmethod
    def upsert_savings(self, rows: Sequence[SavingsRateRow], run_id: str | None = None) -> int: ...

    @abstractmethod
    def upsert_td(self, rows: Sequence[TdRateRow], run_id: str | None = None) -> int: ...


class SqlRateStore(RateStore):
    """SQLAlchemy-backed RateStore

    Does not commit; the caller owns the transaction.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def upsert_mortgage(self, rows: Sequence[MortgageRateRow], run_id: str | None = None) -> int:
        return self._upsert(HistoricalLoanRate, LOAN_KEY, rows, run_id)

    def upsert_savings(self, rows: Sequence[SavingsRateRow], run_id: str | None = None) -> int:
        return self._upsert(HistoricalSavingsRate, SAVINGS_KEY, rows, run_id)

    def upsert_td(self, rows: Sequence[TdRateRow], run_id: str | None = None) -> int:
        return self._upsert(HistoricalTdRate, TD_KEY, rows, run_id)

    def _upsert(self, model, key: tuple[str, ...], rows: Sequence[RateRowBase], run_id: str | None) -> int:
        written = 0
        for row in rows:
            values = row.model_dump()
            values.update(
                run_id=run_id,
                run_source=RUN_SOURCE,
                retrieval_type=RETRIEVAL_TYPE,
                parsed_at=utcnow(),
            )

            existing = self._db.execute(
                select(model).where(*(getattr(model, col) == values[col] for col in key))
            ).scalar_one_or_none()
            if existing is None:
                self._db.add(model(**values))
            else:
                for col, value in values.items():
                    setattr(existing, col, value)
            # rows sharing a key inside one batch collapse onto one record
            self._db.flush()
            written += 1

        if written:
            logger.debug("%s: %d rows upserted (run=%s)", model.__tablename__, written, run_id)
        return written
