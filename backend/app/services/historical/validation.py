"""Row validation for submitted batches

Parses raw rows into the normalized pydantic models and applies the range
and plausibility rules. The ledger rejects a whole batch on the first bad row.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable
from datetime import date, timedelta
from typing import Any

from pydantic import BaseModel, ValidationError

from app.models.rates import (
    DATA_QUALITY_FLAGS,
    ROW_MODELS,
    Dataset,
    MortgageRateRow,
    RateRowBase,
    SavingsRateRow,
    TdRateRow,
)
from app.services.historical.errors import InvalidRowError

MIN_COLLECTION_DATE = date(1990, 1, 1)
MAX_URL_LENGTH = 2048

MIN_MORTGAGE_RATE, MAX_MORTGAGE_RATE = 0.5, 25.0
MIN_COMPARISON_RATE, MAX_COMPARISON_RATE = 0.5, 30.0
MAX_ANNUAL_FEE = 10000.0
MIN_DEPOSIT_RATE, MAX_DEPOSIT_RATE = 0.0, 15.0
MIN_TERM_MONTHS, MAX_TERM_MONTHS = 1, 120

DATASET_LABELS = {
    Dataset.MORTGAGE: "mortgage",
    Dataset.SAVINGS: "savings",
    Dataset.TD: "term-deposit",
}

_BLOCKED_NAME_TOKENS = (
    "disclaimer",
    "warning",
    "example",
    "cashback",
    "copyright",
    "privacy",
    "terms and conditions",
    "loan to value ratio",
    "lvr ",
    "tooltip",
)
_RATE_NAME_TOKENS = ("home", "loan", "variable", "fixed", "owner", "invest", "rate", "offset", "package")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def min_confidence_for_flag(flag: str) -> float:
    f = (flag or "").strip().lower()
    if f.startswith("cdr_"):
        return 0.9
    if f.startswith("parsed_from_wayback"):
        return 0.82
    if f.startswith("scraped_fallback"):
        return 0.95
    return 0.85


def is_rate_like_product_name(name: str) -> bool:
    """Heuristic: page boilerplate never passes as a mortgage product"""
    normalized = " ".join((name or "").lower().split())
    if len(normalized) < 6:
        return False
    if any(token in normalized for token in _BLOCKED_NAME_TOKENS):
        return False
    return any(token in normalized for token in _RATE_NAME_TOKENS)


def _in_range(value: float | None, low: float, high: float) -> bool:
    return value is not None and math.isfinite(value) and low <= value <= high


class RowVerdict(BaseModel):
    """Validation outcome of one row"""

    ok: bool
    reason: str | None = None
    row: RateRowBase | None = None


class RowValidator:
    """Normalized row validator (mortgage / savings / term deposit)"""

    def __init__(self, today: Callable[[], date] = date.today) -> None:
        self._today = today

    def validate(self, dataset: Dataset | str, raw: Any) -> RowVerdict:
        """Parse + check one row

        Returns:
            RowVerdict. ok=False carries a snake_case reason code.
        """
        dataset = Dataset(dataset)
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            return RowVerdict(ok=False, reason="row_not_object")

        try:
            row = ROW_MODELS[dataset].model_validate(raw)
        except ValidationError as e:
            loc = e.errors()[0]["loc"]
            field = _CAMEL_BOUNDARY.sub("_", str(loc[0])).lower() if loc else "row"
            return RowVerdict(ok=False, reason=f"invalid_{field}")

        reason = self._check_common(row)
        if reason is None:
            if isinstance(row, MortgageRateRow):
                reason = self._check_mortgage(row)
            elif isinstance(row, TdRateRow):
                reason = self._check_td(row)
            elif isinstance(row, SavingsRateRow):
                reason = self._check_savings(row)

        if reason is not None:
            return RowVerdict(ok=False, reason=reason)
        return RowVerdict(ok=True, row=row)

    def validate_many(self, dataset: Dataset | str, rows: Iterable[Any]) -> list[RateRowBase]:
        """Validate every row, InvalidRowError on the first failure"""
        dataset = Dataset(dataset)
        parsed: list[RateRowBase] = []
        for index, raw in enumerate(rows):
            verdict = self.validate(dataset, raw)
            if not verdict.ok:
                raise InvalidRowError(
                    f"Invalid {DATASET_LABELS[dataset]} row: {verdict.reason}",
                    details={"dataset": dataset.value, "index": index, "reason": verdict.reason},
                )
            parsed.append(verdict.row)
        return parsed

    # ── rules ──────────────────────────────────────────────────

    def _check_common(self, row: RateRowBase) -> str | None:
        if not row.product_name.strip():
            return "missing_product_name"
        if not row.product_id.strip():
            return "missing_product_id"
        if not row.bank_name.strip():
            return "missing_bank_name"

        url = row.source_url.strip()
        if not url:
            return "missing_source_url"
        if len(url) > MAX_URL_LENGTH or not url.lower().startswith(("http://", "https://")):
            return "invalid_source_url"

        if not MIN_COLLECTION_DATE <= row.collection_date <= self._today() + timedelta(days=1):
            return "collection_date_out_of_range"
        if row.data_quality_flag not in DATA_QUALITY_FLAGS:
            return "invalid_data_quality_flag"
        return None

    def _check_mortgage(self, row: MortgageRateRow) -> str | None:
        if not is_rate_like_product_name(row.product_name):
            return "product_name_not_rate_like"
        if not _in_range(row.interest_rate, MIN_MORTGAGE_RATE, MAX_MORTGAGE_RATE):
            return "interest_rate_out_of_bounds"
        if row.comparison_rate is not None:
            if not _in_range(row.comparison_rate, MIN_COMPARISON_RATE, MAX_COMPARISON_RATE):
                return "comparison_rate_out_of_bounds"
            if row.comparison_rate + 0.01 < row.interest_rate:
                return "comparison_rate_below_interest_rate"
        if row.annual_fee is not None and not _in_range(row.annual_fee, 0.0, MAX_ANNUAL_FEE):
            return "annual_fee_out_of_bounds"
        if not _in_range(row.confidence_score, min_confidence_for_flag(row.data_quality_flag), 1.0):
            return "confidence_out_of_bounds"
        return None

    def _check_savings(self, row: SavingsRateRow) -> str | None:
        if not _in_range(row.interest_rate, MIN_DEPOSIT_RATE, MAX_DEPOSIT_RATE):
            return "interest_rate_out_of_bounds"
        if not _in_range(row.confidence_score, 0.0, 1.0):
            return "confidence_out_of_bounds"
        return None

    def _check_td(self, row: TdRateRow) -> str | None:
        if not _in_range(row.interest_rate, MIN_DEPOSIT_RATE, MAX_DEPOSIT_RATE):
            return "interest_rate_out_of_bounds"
        if not MIN_TERM_MONTHS <= row.term_months <= MAX_TERM_MONTHS:
            return "term_months_out_of_bounds"
        if not _in_range(row.confidence_score, 0.0, 1.0):
            return "confidence_out_of_bounds"
        return None
