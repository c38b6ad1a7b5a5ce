"""Normalized rate row models

Row shapes submitted by workers, one per dataset.
DB models (SQLAlchemy) live separately in models/db/rates.py. DTOs only here.
"""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Dataset(str, Enum):
    """Dataset kind of a row (batch id suffix in parentheses)"""

    MORTGAGE = "mortgage"  # m
    SAVINGS = "savings"  # s
    TD = "td"  # t


class SecurityPurpose(str, Enum):
    OWNER_OCCUPIED = "owner_occupied"
    INVESTMENT = "investment"


class RepaymentType(str, Enum):
    PRINCIPAL_AND_INTEREST = "principal_and_interest"
    INTEREST_ONLY = "interest_only"


class RateStructure(str, Enum):
    VARIABLE = "variable"
    FIXED_1YR = "fixed_1yr"
    FIXED_2YR = "fixed_2yr"
    FIXED_3YR = "fixed_3yr"
    FIXED_4YR = "fixed_4yr"
    FIXED_5YR = "fixed_5yr"


class LvrTier(str, Enum):
    LVR_60 = "lvr_=60%"
    LVR_60_70 = "lvr_60-70%"
    LVR_70_80 = "lvr_70-80%"
    LVR_80_85 = "lvr_80-85%"
    LVR_85_90 = "lvr_85-90%"
    LVR_90_95 = "lvr_90-95%"


class FeatureSet(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"


class SavingsAccountType(str, Enum):
    SAVINGS = "savings"
    TRANSACTION = "transaction"
    AT_CALL = "at_call"


class SavingsRateType(str, Enum):
    BASE = "base"
    BONUS = "bonus"
    INTRODUCTORY = "introductory"
    BUNDLE = "bundle"
    TOTAL = "total"


class InterestPayment(str, Enum):
    AT_MATURITY = "at_maturity"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


# allowed data_quality_flag values; anything else is rejected at validation
DATA_QUALITY_FLAGS = [
    "cdr_live",
    "scraped_fallback_strict",
    "parsed_from_wayback_strict",
    "parsed_from_wayback_cdr",
    "parsed_from_wayback",
    "ok",
]


class RateRowBase(BaseModel):
    """Fields every dataset carries"""

    bank_name: str
    collection_date: date
    product_id: str
    product_name: str
    interest_rate: float
    source_url: str
    data_quality_flag: str
    confidence_score: float

    # camelCase keys accepted as well as snake_case
    model_config = ConfigDict(
        extra="ignore",
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class MortgageRateRow(RateRowBase):
    """Home loan rate row"""

    security_purpose: SecurityPurpose
    repayment_type: RepaymentType
    rate_structure: RateStructure
    lvr_tier: LvrTier
    feature_set: FeatureSet
    comparison_rate: float | None = None
    annual_fee: float | None = None


class SavingsRateRow(RateRowBase):
    """Savings account rate row"""

    account_type: SavingsAccountType
    rate_type: SavingsRateType
    deposit_tier: str = "all"
    min_balance: float | None = None
    max_balance: float | None = None
    conditions: str | None = None
    monthly_fee: float | None = None


class TdRateRow(RateRowBase):
    """Term deposit rate row"""

    term_months: int
    deposit_tier: str = "all"
    min_deposit: float | None = None
    max_deposit: float | None = None
    interest_payment: InterestPayment


ROW_MODELS: dict[Dataset, type[RateRowBase]] = {
    Dataset.MORTGAGE: MortgageRateRow,
    Dataset.SAVINGS: SavingsRateRow,
    Dataset.TD: TdRateRow,
}
