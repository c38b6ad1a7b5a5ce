"""WaybackCdrCollector tests

CDR JSON helpers plus a full lender-day replay over httpx.MockTransport
(no real Wayback Machine calls).
"""

from __future__ import annotations

from datetime import date

import httpx
import pytest

from app.services.collector.wayback_cdr import (
    WaybackCdrCollector,
    extract_products,
    format_deposit_tier,
    is_mortgage,
    is_savings_account,
    is_term_deposit,
    lvr_tier,
    mortgage_rows_from_detail,
    parse_rate_percent,
    parse_term_months,
    td_rows_from_detail,
)
from app.services.historical.validation import RowValidator

ENDPOINT = "https://api.alpha.example/cds-au/v1/banking/products"
TIMESTAMP = "20250102010101"
CDX_HEADER = ["timestamp", "original"]

PRODUCT_LIST = {
    "data": {
        "products": [
            {"productId": "HL-1", "productCategory": "RESIDENTIAL_MORTGAGES", "name": "Alpha Variable Home Loan"},
            {"productId": "SAV-1", "productCategory": "TRANS_AND_SAVINGS_ACCOUNTS", "name": "Alpha Bonus Saver"},
            {"productId": "TD-1", "productCategory": "TERM_DEPOSITS", "name": "Alpha Term Deposit"},
            {"productId": "CC-1", "productCategory": "CRED_AND_CHRG_CARDS", "name": "Alpha Card"},
        ]
    }
}

DETAILS = {
    "HL-1": {
        "data": {
            "productId": "HL-1",
            "name": "Alpha Variable Home Loan",
            "lendingRates": [
                {
                    "lendingRateType": "VARIABLE",
                    "rate": "0.0624",
                    "comparisonRate": "0.0651",
                    "loanPurpose": "OWNER_OCCUPIED",
                    "repaymentType": "PRINCIPAL_AND_INTEREST",
                    "tiers": [{"unitOfMeasure": "PERCENT", "minimumValue": 0, "maximumValue": 80}],
                },
                {
                    "lendingRateType": "FIXED",
                    "rate": "0.0589",
                    "additionalValue": "P2Y",
                    "loanPurpose": "INVESTMENT",
                    "repaymentType": "INTEREST_ONLY",
                },
                {"lendingRateType": "DISCOUNT", "rate": "0.01"},
                {"lendingRateType": "VARIABLE", "rate": "0.30"},
            ],
        }
    },
    "SAV-1": {
        "data": {
            "productId": "SAV-1",
            "name": "Alpha Bonus Saver",
            "depositRates": [
                {"depositRateType": "VARIABLE", "rate": "0.005"},
                {"depositRateType": "BONUS", "rate": "0.045", "additionalInfo": "Deposit $200 monthly"},
            ],
        }
    },
    "TD-1": {
        "data": {
            "productId": "TD-1",
            "name": "Alpha Term Deposit",
            "depositRates": [
                {
                    "depositRateType": "FIXED",
                    "rate": "0.046",
                    "additionalValue": "P12M",
                    "tiers": [{"unitOfMeasure": "DOLLAR", "minimumValue": 5000, "maximumValue": 2000000}],
                },
                {
                    "depositRateType": "FIXED",
                    "rate": "0.04",
                    "additionalValue": "P6M",
                    "additionalInfo": "Interest paid monthly",
                },
            ],
        }
    },
}


class FakeWayback:
    """MockTransport handler serving CDX rows and snapshots"""

    def __init__(self, seed_captures: bool = False, endpoint_captures: bool = True, details=None) -> None:
        self.seed_captures = seed_captures
        self.endpoint_captures = endpoint_captures
        self.details = DETAILS if details is None else details
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)

        if request.url.path == "/cdx/search/cdx":
            target = request.url.params["url"]
            rows = [CDX_HEADER]
            if target == ENDPOINT and self.endpoint_captures:
                rows.append([TIMESTAMP, ENDPOINT])
            elif target != ENDPOINT and self.seed_captures:
                rows.append([TIMESTAMP, target])
            return httpx.Response(200, json=rows)

        if url.endswith("/banking/products"):
            return httpx.Response(200, json=PRODUCT_LIST)
        for product_id, detail in self.details.items():
            if url.endswith(f"/banking/products/{product_id}"):
                return httpx.Response(200, json=detail)
        return httpx.Response(404)


@pytest.fixture
def validator() -> RowValidator:
    return RowValidator(today=lambda: date(2025, 6, 1))


def _collector(handler, validator) -> WaybackCdrCollector:
    return WaybackCdrCollector(
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        validator=validator,
        max_snapshots=2,
        product_cap=80,
    )


class TestHelpers:
    """CDR JSON parsing helpers"""

    @pytest.mark.parametrize(
        "value, expected",
        [("0.0545", 5.45), (0.0545, 5.45), ("5.45", 5.45), ("5.45%", 5.45), ("", None), (None, None), ("n/a", None)],
    )
    def test_parse_rate_percent(self, value, expected):
        assert parse_rate_percent(value) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [("P12M", 12), ("P1Y", 12), ("P90D", 3), ("6 months", 6), ("2 years", 24), ("", None), ("forever", None)],
    )
    def test_parse_term_months(self, text, expected):
        assert parse_term_months(text) == expected

    def test_format_deposit_tier(self):
        assert format_deposit_tier(5000, 2_000_000) == "$5k-$2m"
        assert format_deposit_tier(1500, None) == "$1.5k+"
        assert format_deposit_tier(None, 250) == "up to $250"
        assert format_deposit_tier(None, None) == "all"

    def test_lvr_tier(self):
        assert lvr_tier(60) == "lvr_=60%"
        assert lvr_tier(80) == "lvr_70-80%"
        assert lvr_tier(97) == "lvr_90-95%"
        assert lvr_tier(None) == "lvr_80-85%"

    def test_extract_products(self):
        assert len(extract_products(PRODUCT_LIST)) == 4
        assert extract_products({"data": [{"productId": "x"}, "junk"]}) == [{"productId": "x"}]
        assert extract_products(["not", "a", "dict"]) == []

    def test_categories(self):
        products = {p["productId"]: p for p in PRODUCT_LIST["data"]["products"]}
        assert is_mortgage(products["HL-1"])
        assert is_savings_account(products["SAV-1"])
        assert is_term_deposit(products["TD-1"])
        assert not is_savings_account(products["TD-1"])
        assert not any(f(products["CC-1"]) for f in (is_mortgage, is_savings_account, is_term_deposit))

    def test_mortgage_rows(self, lenders):
        rows = mortgage_rows_from_detail(lenders[0], DETAILS["HL-1"]["data"], "https://x.example", date(2025, 1, 2))
        assert [(r["rate_structure"], r["interest_rate"]) for r in rows] == [
            ("variable", 6.24),
            ("fixed_2yr", 5.89),
            ("variable", 30.0),
        ]
        assert rows[0]["lvr_tier"] == "lvr_70-80%"
        assert rows[0]["comparison_rate"] == 6.51
        assert rows[1]["security_purpose"] == "investment"
        assert rows[1]["repayment_type"] == "interest_only"
        assert rows[0]["bank_name"] == "Alpha Bank"

    def test_td_rows_need_a_term(self, lenders):
        detail = {"productId": "TD-9", "name": "Term Deposit", "depositRates": [{"rate": "0.04"}]}
        assert td_rows_from_detail(lenders[0], detail, "https://x.example", date(2025, 1, 2)) == []


class TestCollect:
    """WaybackCdrCollector.collect"""

    def test_full_lender_day(self, lenders, validator):
        wayback = FakeWayback()
        result = _collector(wayback, validator).collect(lenders[0], date(2025, 1, 2), [ENDPOINT])

        assert result.had_signals is True
        # the 30% variable rate is dropped by validation
        assert [(r.rate_structure, r.interest_rate) for r in result.mortgage_rows] == [
            ("variable", 6.24),
            ("fixed_2yr", 5.89),
        ]
        assert sorted((r.rate_type, r.interest_rate) for r in result.savings_rows) == [
            ("base", 0.5),
            ("bonus", 4.5),
        ]
        assert sorted((r.term_months, r.interest_payment, r.deposit_tier) for r in result.td_rows) == [
            (6, "monthly", "all"),
            (12, "at_maturity", "$5k-$2m"),
        ]

        row = result.mortgage_rows[0]
        assert row.source_url == f"https://web.archive.org/web/{TIMESTAMP}id_/{ENDPOINT}/HL-1"
        assert row.data_quality_flag == "parsed_from_wayback_cdr"
        assert row.collection_date == date(2025, 1, 2)
        assert not any(u.endswith("/CC-1") for u in wayback.requests)

    def test_cdx_query(self, lenders, validator):
        wayback = FakeWayback()
        _collector(wayback, validator).collect(lenders[0], date(2025, 1, 2), [ENDPOINT])

        cdx = httpx.URL(next(u for u in wayback.requests if "/cdx/search/cdx" in u and ENDPOINT in httpx.URL(u).params["url"]))
        assert cdx.params["from"] == "20250102"
        assert cdx.params["to"] == "20250102"
        assert cdx.params["filter"] == "statuscode:200"
        assert cdx.params["output"] == "json"

    def test_no_captures(self, lenders, validator):
        result = _collector(FakeWayback(endpoint_captures=False), validator).collect(
            lenders[0], date(2025, 1, 2), [ENDPOINT]
        )
        assert result.had_signals is False
        assert result.mortgage_rows == result.savings_rows == result.td_rows == []

    def test_seed_capture_is_signal_only(self, lenders, validator):
        result = _collector(FakeWayback(seed_captures=True, endpoint_captures=False), validator).collect(
            lenders[0], date(2025, 1, 2), [ENDPOINT]
        )
        assert result.had_signals is True
        assert result.mortgage_rows == []

    def test_only_two_seed_urls_checked(self, lenders, validator):
        wayback = FakeWayback(endpoint_captures=False)
        _collector(wayback, validator).collect(lenders[0], date(2025, 1, 2), [])
        assert sum(1 for u in wayback.requests if "/cdx/search/cdx" in u) == 2

    def test_missing_detail_snapshot(self, lenders, validator):
        wayback = FakeWayback(details={"TD-1": DETAILS["TD-1"]})
        result = _collector(wayback, validator).collect(lenders[0], date(2025, 1, 2), [ENDPOINT])
        assert result.mortgage_rows == []
        assert result.savings_rows == []
        assert len(result.td_rows) == 2

    def test_server_error_propagates(self, lenders, validator):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        with pytest.raises(httpx.HTTPStatusError):
            _collector(handler, validator).collect(lenders[0], date(2025, 1, 2), [ENDPOINT])
