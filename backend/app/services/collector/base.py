"""Rate collector interface

Source-agnostic seam between the worker loop and whatever produces rate rows
for one (lender, collection date). Implementations:
- WaybackCdrCollector: archived CDR product JSON replayed from the Wayback Machine
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date

from app.models.historical import CollectResult, LenderConfig


class RateCollector(ABC):
    """Rate collector abstract interface"""

    @abstractmethod
    def collect(
        self,
        lender: LenderConfig,
        collection_date: date,
        endpoint_candidates: list[str] | None = None,
    ) -> CollectResult:
        """Collect normalized rows for one lender and day

        Args:
            lender: target lender
            collection_date: day to reconstruct
            endpoint_candidates: CDR products endpoints handed out with the claim

        Returns:
            CollectResult (rows per dataset + had_signals)

        Raises:
            httpx.HTTPError: transport failures (the worker retries)
        """
