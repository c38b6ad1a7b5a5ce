"""ORM model package

Re-exports every ORM class from one place.
Alembic and database.py use `from app.models.db import *`.
"""

from app.models.db.base import Base
from app.models.db.historical import HistoricalBatch, HistoricalRun, HistoricalTask
from app.models.db.rates import HistoricalLoanRate, HistoricalSavingsRate, HistoricalTdRate

__all__ = [
    "Base",
    "HistoricalRun",
    "HistoricalTask",
    "HistoricalBatch",
    "HistoricalLoanRate",
    "HistoricalSavingsRate",
    "HistoricalTdRate",
]
