"""Target lender registry

Lenders a historical run fans out over, with the CDR products endpoint and
public rate pages handed to workers as collection hints.
"""

from __future__ import annotations

from collections.abc import Iterable

from app.models.historical import LenderConfig

SEED_URL_LIMIT = 2

TARGET_LENDERS: list[LenderConfig] = [
    LenderConfig(
        code="cba",
        name="CommBank",
        canonical_bank_name="Commonwealth Bank of Australia",
        products_endpoint="https://api.commbank.com.au/public/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.commbank.com.au/home-loans/interest-rates.html",
            "https://www.commbank.com.au/banking/interest-rates.html",
        ],
    ),
    LenderConfig(
        code="westpac",
        name="Westpac",
        canonical_bank_name="Westpac Banking Corporation",
        products_endpoint="https://digital-api.westpac.com.au/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.westpac.com.au/personal-banking/home-loans/interest-rates/",
            "https://www.westpac.com.au/personal-banking/bank-accounts/savings-accounts/",
        ],
    ),
    LenderConfig(
        code="nab",
        name="NAB",
        canonical_bank_name="National Australia Bank",
        products_endpoint="https://openbank.api.nab.com.au/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.nab.com.au/personal/interest-rates-fees-and-charges/interest-rates-for-home-loans",
            "https://www.nab.com.au/personal/interest-rates-fees-and-charges/interest-rates-for-bank-accounts",
        ],
    ),
    LenderConfig(
        code="anz",
        name="ANZ",
        canonical_bank_name="Australia and New Zealand Banking Group",
        products_endpoint="https://api.anz/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.anz.com.au/personal/home-loans/interest-rates/",
            "https://www.anz.com.au/personal/bank-accounts/savings-accounts/",
        ],
    ),
    LenderConfig(
        code="macquarie",
        name="Macquarie",
        canonical_bank_name="Macquarie Bank",
        products_endpoint="https://api.macquariebank.io/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.macquarie.com.au/home-loans/home-loan-rates.html",
        ],
    ),
    LenderConfig(
        code="ing",
        name="ING",
        canonical_bank_name="ING Bank (Australia)",
        products_endpoint="https://id.ing.com.au/cds-au/v1/banking/products",
        seed_rate_urls=[
            "https://www.ing.com.au/home-loans/interest-rates.html",
            "https://www.ing.com.au/savings/interest-rates.html",
        ],
    ),
]


def lender_codes(lenders: Iterable[LenderConfig] | None = None) -> list[str]:
    """Deduplicated, non-empty lender codes in registry order"""
    seen: set[str] = set()
    codes: list[str] = []
    for lender in TARGET_LENDERS if lenders is None else lenders:
        code = (lender.code or "").strip()
        if code and code not in seen:
            seen.add(code)
            codes.append(code)
    return codes


def get_lender(code: str, lenders: Iterable[LenderConfig] | None = None) -> LenderConfig | None:
    for lender in TARGET_LENDERS if lenders is None else lenders:
        if lender.code == code:
            return lender
    return None


def build_endpoint_candidates(lender: LenderConfig, extra: Iterable[str] = ()) -> list[str]:
    """Endpoint hints for a worker: configured endpoint first, then extras, deduplicated"""
    candidates = [lender.products_endpoint, *extra]
    return list(dict.fromkeys(url for url in candidates if url))


def seed_urls(lender: LenderConfig) -> list[str]:
    return list(lender.seed_rate_urls[:SEED_URL_LIMIT])
