"""Wayback CDR collector

Reconstructs one lender-day from the Internet Archive:
1. CDX lookup of the lender's public rate pages (signal only)
2. CDX lookup of the CDR products endpoint for that day
3. replay of the archived product list, then per-product detail snapshots
4. lendingRates / depositRates → normalized mortgage, savings and TD rows

Rows that would not pass batch validation are dropped here, so one odd
product never sinks a whole batch.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date
from typing import Any
from urllib.parse import quote

import httpx

from app.config import settings
from app.models.historical import CollectResult, LenderConfig
from app.models.rates import Dataset, RateRowBase
from app.services.collector.base import RateCollector
from app.services.historical.validation import RowValidator

logger = logging.getLogger(__name__)

CDX_URL = "https://web.archive.org/cdx/search/cdx"
SNAPSHOT_URL = "https://web.archive.org/web/{timestamp}id_/{url}"

QUALITY_FLAG = "parsed_from_wayback_cdr"
MORTGAGE_CONFIDENCE = 0.92
DEPOSIT_CONFIDENCE = 0.93

MAX_ENDPOINT_CANDIDATES = 2
SEED_CDX_LIMIT = 6
ENDPOINT_CDX_LIMIT = 4

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_ISO_DURATION = re.compile(r"^P(\d+)([DMYW])$")

# (upper LVR bound %, tier)
_LVR_TIERS = [
    (60.0, "lvr_=60%"),
    (70.0, "lvr_60-70%"),
    (80.0, "lvr_70-80%"),
    (85.0, "lvr_80-85%"),
    (90.0, "lvr_85-90%"),
    (95.0, "lvr_90-95%"),
]
DEFAULT_LVR_TIER = "lvr_80-85%"


# ── CDR JSON helpers ──────────────────────────────────────────


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _pick_text(obj: dict[str, Any], keys: list[str]) -> str:
    for key in keys:
        text = _text(obj.get(key))
        if text:
            return text
    return ""


def _records(value: Any) -> list[dict[str, Any]]:
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def _number(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    else:
        matches = _NUMBER.findall(str(value))
        if len(matches) != 1:
            return None
        n = float(matches[0])
    return n if math.isfinite(n) else None


def parse_rate_percent(value: Any) -> float | None:
    """CDR rates are decimals ("0.0545"); rows store percent (5.45)"""
    n = _number(value)
    if n is None:
        return None
    if 0 < n < 1:
        n = round(n * 100, 4)
    return n


def parse_term_months(text: str) -> int | None:
    t = (text or "").strip().upper()
    if not t:
        return None
    iso = _ISO_DURATION.match(t)
    if iso:
        n, unit = int(iso.group(1)), iso.group(2)
        if unit == "M":
            return n
        if unit == "Y":
            return n * 12
        if unit == "W":
            return round(n * 7 / 30)
        return round(n / 30)
    for pattern, factor in ((r"(\d+)\s*(?:MONTH|MTH|MO)", 1), (r"(\d+)\s*YEAR", 12)):
        match = re.search(pattern, t)
        if match:
            return int(match.group(1)) * factor
    match = re.search(r"(\d+)\s*DAY", t)
    if match:
        return round(int(match.group(1)) / 30)
    n = _number(t)
    if n is not None and 0 < n <= 120 and n == int(n):
        return int(n)
    return None


def format_deposit_tier(minimum: float | None, maximum: float | None) -> str:
    def fmt(n: float) -> str:
        if n >= 1_000_000:
            return f"${n / 1_000_000:.0f}m" if n % 1_000_000 == 0 else f"${n / 1_000_000:.1f}m"
        if n >= 1_000:
            return f"${n / 1_000:.0f}k" if n % 1_000 == 0 else f"${n / 1_000:.1f}k"
        return f"${n:g}"

    if minimum is not None and maximum is not None:
        return f"{fmt(minimum)}-{fmt(maximum)}"
    if minimum is not None:
        return f"{fmt(minimum)}+"
    if maximum is not None:
        return f"up to {fmt(maximum)}"
    return "all"


def _tier_bounds(rate: dict[str, Any], units: tuple[str, ...]) -> tuple[float | None, float | None]:
    for tier in _records(rate.get("tiers")):
        unit = _text(tier.get("unitOfMeasure")).upper()
        if unit and unit not in units:
            continue
        low, high = _number(tier.get("minimumValue")), _number(tier.get("maximumValue"))
        if low is not None or high is not None:
            return low, high
    return None, None


def lvr_tier(maximum: float | None) -> str:
    if maximum is None:
        return DEFAULT_LVR_TIER
    for bound, tier in _LVR_TIERS:
        if maximum <= bound:
            return tier
    return _LVR_TIERS[-1][1]


def extract_products(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if isinstance(data, dict):
        return _records(data.get("products"))
    return _records(data)


def _detail_record(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def _category(product: dict[str, Any]) -> str:
    return _pick_text(product, ["productCategory", "category", "type"]).upper()


def is_mortgage(product: dict[str, Any]) -> bool:
    return "RESIDENTIAL_MORTGAGES" in _category(product)


def is_term_deposit(product: dict[str, Any]) -> bool:
    name = _pick_text(product, ["name", "productName"]).upper()
    return "TERM_DEPOSIT" in _category(product) or "TERM DEPOSIT" in name or "FIXED DEPOSIT" in name


def is_savings_account(product: dict[str, Any]) -> bool:
    if is_term_deposit(product):
        return False
    name = _pick_text(product, ["name", "productName"]).upper()
    return "SAVINGS" in _category(product) or any(t in name for t in ("SAVINGS", "SAVER", "AT CALL"))


# ── detail → rows ─────────────────────────────────────────────


def mortgage_rows_from_detail(
    lender: LenderConfig, detail: dict[str, Any], source_url: str, collection_date: date
) -> list[dict[str, Any]]:
    product_id = _pick_text(detail, ["productId", "id"])
    product_name = " ".join(_pick_text(detail, ["name", "productName"]).split())
    if not product_id or not product_name:
        return []

    rows = []
    for rate in _records(detail.get("lendingRates")):
        rate_type = _text(rate.get("lendingRateType")).upper()
        if rate_type == "VARIABLE":
            structure = "variable"
        elif rate_type == "FIXED":
            months = parse_term_months(_text(rate.get("additionalValue")))
            if months is None or months % 12 or not 1 <= months // 12 <= 5:
                continue
            structure = f"fixed_{months // 12}yr"
        else:
            continue

        interest_rate = parse_rate_percent(rate.get("rate"))
        if interest_rate is None:
            continue

        purpose = _text(rate.get("loanPurpose")).upper()
        repayment = _text(rate.get("repaymentType")).upper()
        _, lvr_max = _tier_bounds(rate, ("PERCENT",))

        rows.append({
            "bank_name": lender.canonical_bank_name,
            "collection_date": collection_date,
            "product_id": product_id,
            "product_name": product_name,
            "security_purpose": "investment" if purpose == "INVESTMENT" else "owner_occupied",
            "repayment_type": "interest_only" if repayment == "INTEREST_ONLY" else "principal_and_interest",
            "rate_structure": structure,
            "lvr_tier": lvr_tier(lvr_max),
            "feature_set": "premium" if "package" in product_name.lower() else "basic",
            "interest_rate": interest_rate,
            "comparison_rate": parse_rate_percent(rate.get("comparisonRate")),
            "annual_fee": None,
            "source_url": source_url,
            "data_quality_flag": QUALITY_FLAG,
            "confidence_score": MORTGAGE_CONFIDENCE,
        })
    return rows


def _deposit_rates(detail: dict[str, Any]) -> list[dict[str, Any]]:
    for key in ("depositRates", "rates", "rateTiers"):
        rates = _records(detail.get(key))
        if rates:
            return rates
    return []


def savings_rows_from_detail(
    lender: LenderConfig, detail: dict[str, Any], source_url: str, collection_date: date
) -> list[dict[str, Any]]:
    product_id = _pick_text(detail, ["productId", "id"])
    product_name = " ".join(_pick_text(detail, ["name", "productName"]).split())
    if not product_id or not product_name:
        return []

    kind_text = f"{product_name} {_pick_text(detail, ['description', 'productCategory'])}".lower()
    if any(t in kind_text for t in ("transaction", "everyday", "spending")):
        account_type = "transaction"
    elif "at call" in kind_text or "at_call" in kind_text:
        account_type = "at_call"
    else:
        account_type = "savings"

    rows = []
    for rate in _deposit_rates(detail):
        interest_rate = parse_rate_percent(rate.get("rate"))
        if interest_rate is None:
            continue
        rate_type_text = _pick_text(rate, ["depositRateType", "rateType", "type"]).lower()
        if "bonus" in rate_type_text:
            rate_type = "bonus"
        elif "intro" in rate_type_text:
            rate_type = "introductory"
        elif "bundle" in rate_type_text:
            rate_type = "bundle"
        else:
            rate_type = "base"

        low, high = _tier_bounds(rate, ("DOLLAR", "AMOUNT"))
        conditions = _text(rate.get("additionalInfo"))
        rows.append({
            "bank_name": lender.canonical_bank_name,
            "collection_date": collection_date,
            "product_id": product_id,
            "product_name": product_name,
            "account_type": account_type,
            "rate_type": rate_type,
            "interest_rate": interest_rate,
            "deposit_tier": format_deposit_tier(low, high),
            "min_balance": low,
            "max_balance": high,
            "conditions": conditions or None,
            "source_url": source_url,
            "data_quality_flag": QUALITY_FLAG,
            "confidence_score": DEPOSIT_CONFIDENCE if conditions else DEPOSIT_CONFIDENCE - 0.03,
        })
    return rows


def td_rows_from_detail(
    lender: LenderConfig, detail: dict[str, Any], source_url: str, collection_date: date
) -> list[dict[str, Any]]:
    product_id = _pick_text(detail, ["productId", "id"])
    product_name = " ".join(_pick_text(detail, ["name", "productName"]).split())
    if not product_id or not product_name:
        return []

    rows = []
    for rate in _deposit_rates(detail):
        interest_rate = parse_rate_percent(rate.get("rate"))
        if interest_rate is None:
            continue
        duration = _text(rate.get("additionalValue"))
        term = parse_term_months(duration) or parse_term_months(_text(rate.get("name")))
        if not term:
            continue

        payment_text = f"{_text(rate.get('applicationFrequency'))} {_text(rate.get('additionalInfo'))}".lower()
        if "monthly" in payment_text:
            payment = "monthly"
        elif "quarter" in payment_text:
            payment = "quarterly"
        elif "annual" in payment_text or "yearly" in payment_text:
            payment = "annually"
        else:
            payment = "at_maturity"

        low, high = _tier_bounds(rate, ("DOLLAR", "AMOUNT"))
        rows.append({
            "bank_name": lender.canonical_bank_name,
            "collection_date": collection_date,
            "product_id": product_id,
            "product_name": product_name,
            "term_months": term,
            "interest_rate": interest_rate,
            "deposit_tier": format_deposit_tier(low, high),
            "min_deposit": low,
            "max_deposit": high,
            "interest_payment": payment,
            "source_url": source_url,
            "data_quality_flag": QUALITY_FLAG,
            "confidence_score": DEPOSIT_CONFIDENCE if duration else DEPOSIT_CONFIDENCE - 0.03,
        })
    return rows


# ── collector ─────────────────────────────────────────────────


class WaybackCdrCollector(RateCollector):
    """RateCollector over Wayback Machine snapshots of CDR endpoints"""

    def __init__(
        self,
        client: httpx.Client | None = None,
        validator: RowValidator | None = None,
        max_snapshots: int | None = None,
        product_cap: int | None = None,
    ) -> None:
        self._client = client or httpx.Client(timeout=settings.WAYBACK_TIMEOUT, follow_redirects=True)
        self._validator = validator or RowValidator()
        self._max_snapshots = max(1, max_snapshots or settings.WAYBACK_MAX_SNAPSHOTS)
        self._product_cap = max(1, product_cap or settings.COLLECTOR_PRODUCT_CAP)

    def close(self) -> None:
        self._client.close()

    def collect(
        self,
        lender: LenderConfig,
        collection_date: date,
        endpoint_candidates: list[str] | None = None,
    ) -> CollectResult:
        result = CollectResult()
        mortgage: list[dict[str, Any]] = []
        savings: list[dict[str, Any]] = []
        td: list[dict[str, Any]] = []

        for seed_url in lender.seed_rate_urls[:2]:
            if self._cdx_day(seed_url, collection_date, SEED_CDX_LIMIT):
                result.had_signals = True

        candidates = list(dict.fromkeys(u for u in (endpoint_candidates or []) if u))
        for endpoint in candidates[:MAX_ENDPOINT_CANDIDATES]:
            snapshots = self._cdx_day(endpoint, collection_date, ENDPOINT_CDX_LIMIT)
            if not snapshots:
                continue
            result.had_signals = True

            for timestamp, original in snapshots[: self._max_snapshots]:
                products = extract_products(self._snapshot_json(timestamp, original))
                for product in products[: self._product_cap]:
                    product_id = _pick_text(product, ["productId", "id"])
                    if not product_id:
                        continue
                    if is_mortgage(product):
                        parse, sink = mortgage_rows_from_detail, mortgage
                    elif is_term_deposit(product):
                        parse, sink = td_rows_from_detail, td
                    elif is_savings_account(product):
                        parse, sink = savings_rows_from_detail, savings
                    else:
                        continue

                    detail_url = f"{endpoint.rstrip('/')}/{quote(product_id, safe='')}"
                    detail = _detail_record(self._snapshot_json(timestamp, detail_url))
                    if detail is None:
                        continue
                    source_url = SNAPSHOT_URL.format(timestamp=timestamp, url=detail_url)
                    sink.extend(parse(lender, detail, source_url, collection_date))

            if mortgage or savings or td:
                break

        result.mortgage_rows = self._keep_valid(Dataset.MORTGAGE, mortgage)
        result.savings_rows = self._keep_valid(Dataset.SAVINGS, savings)
        result.td_rows = self._keep_valid(Dataset.TD, td)

        logger.info(
            "wayback collect %s %s: mortgage=%d savings=%d td=%d signals=%s",
            lender.code, collection_date,
            len(result.mortgage_rows), len(result.savings_rows), len(result.td_rows), result.had_signals,
        )
        return result

    # === Wayback HTTP ===

    def _cdx_day(self, url: str, day: date, limit: int) -> list[tuple[str, str]]:
        """[(timestamp, original)] of 200-status captures on that day"""
        cursor = day.strftime("%Y%m%d")
        response = self._client.get(
            CDX_URL,
            params={
                "url": url,
                "from": cursor,
                "to": cursor,
                "output": "json",
                "fl": "timestamp,original",
                "filter": "statuscode:200",
                "collapse": "digest",
                "limit": str(limit),
            },
        )
        response.raise_for_status()
        try:
            rows = response.json()
        except ValueError:
            logger.warning("CDX response is not JSON: %s", url)
            return []
        if not isinstance(rows, list):
            return []

        # first row is the field header
        captures = []
        for row in rows[1:]:
            if isinstance(row, list) and len(row) >= 2 and row[0] and row[1]:
                captures.append((str(row[0]), str(row[1])))
        return captures

    def _snapshot_json(self, timestamp: str, url: str) -> Any | None:
        response = self._client.get(SNAPSHOT_URL.format(timestamp=timestamp, url=url))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            logger.debug("snapshot is not JSON: %s %s", timestamp, url)
            return None

    def _keep_valid(self, dataset: Dataset, rows: list[dict[str, Any]]) -> list[RateRowBase]:
        kept = []
        for raw in rows:
            verdict = self._validator.validate(dataset, raw)
            if verdict.ok:
                kept.append(verdict.row)
            else:
                logger.debug("dropped %s row %s: %s", dataset.value, raw.get("product_id"), verdict.reason)
        return kept
