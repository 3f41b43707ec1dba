"""Async client for the affiliate-tracking network reporting API."""
import logging
from datetime import date
from typing import Optional

from ..schemas.reports import ClickRecord, ConversionRecord, EntityReport
from .exceptions import UpstreamError
from .transport import ApiTransport


logger = logging.getLogger(__name__)

ENTITY_REPORT_PATH = "/v1/networks/reporting/entity"
CONVERSIONS_PATH = "/v1/networks/reporting/conversions"
CLICKS_PATH = "/v1/networks/reporting/clicks"


class TrackingClient:
    """Thin wrapper over the entity, conversions and clicks endpoints.

    All report calls are filtered to the configured affiliate ids.
    """

    CONVERSIONS_PAGE_SIZE = 50  # API max
    MAX_CONVERSION_PAGES = 100

    def __init__(
        self,
        transport: ApiTransport,
        timezone_id: int = 80,
        currency_id: str = "USD",
        affiliate_ids: Optional[list[str]] = None,
    ) -> None:
        self.transport = transport
        self.timezone_id = timezone_id
        self.currency_id = currency_id
        self.affiliate_ids = affiliate_ids or []

    def _affiliate_filters(self) -> list[dict]:
        return [
            {"resource_type": "affiliate", "filter_id_value": affiliate_id}
            for affiliate_id in self.affiliate_ids
        ]

    async def get_entity_report(
        self,
        columns: list[str],
        start: date,
        end: date,
    ) -> EntityReport:
        """Fetch an entity report grouped by the given columns.

        Args:
            columns: Dimensions, e.g. ["offer"] or ["offer", "sub2"]
            start: First day (inclusive)
            end: Last day (inclusive)

        Returns:
            EntityReport with one row per dimension combination
        """
        payload = {
            "timezone_id": self.timezone_id,
            "currency_id": self.currency_id,
            "from": start.isoformat(),
            "to": end.isoformat(),
            "columns": [{"column": column} for column in columns],
            "query": {"filters": self._affiliate_filters()},
        }
        data = await self.transport.request_json("POST", ENTITY_REPORT_PATH, payload)
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected entity report payload for columns={columns}")

        report = EntityReport.model_validate(data)
        logger.debug(
            "Entity report %s %s..%s: %s rows", columns, start, end, len(report.table)
        )
        return report

    async def get_report_by_date(self, start: date, end: date) -> EntityReport:
        return await self.get_entity_report(["date"], start, end)

    async def get_report_by_offer(self, start: date, end: date) -> EntityReport:
        return await self.get_entity_report(["offer"], start, end)

    async def get_report_by_sub1(self, start: date, end: date) -> EntityReport:
        return await self.get_entity_report(["sub1"], start, end)

    async def get_report_by_sub2(self, start: date, end: date) -> EntityReport:
        return await self.get_entity_report(["sub2"], start, end)

    async def get_report_by_offer_sub2(self, start: date, end: date) -> EntityReport:
        """Offer x sub2 cross-tab used for CPM attribution."""
        return await self.get_entity_report(["offer", "sub2"], start, end)

    async def get_conversions(
        self,
        start: date,
        end: date,
        approved_only: bool = True,
    ) -> list[ConversionRecord]:
        """Fetch all conversion records for a date range, following pagination."""
        filters = []
        if approved_only:
            filters.append({"resource_type": "status", "filter_id_value": "approved"})
        filters.extend(self._affiliate_filters())

        payload = {
            "timezone_id": self.timezone_id,
            "currency_id": self.currency_id,
            "from": start.isoformat(),
            "to": end.isoformat(),
            "show_events": True,
            "show_conversions": True,
            "query": {"filters": filters, "search_terms": []},
        }

        records: list[ConversionRecord] = []
        page = 1
        while True:
            params = {"page": str(page), "page_size": str(self.CONVERSIONS_PAGE_SIZE)}
            data = await self.transport.request_json(
                "POST", CONVERSIONS_PATH, payload, params=params
            )
            if isinstance(data, list):
                records.extend(ConversionRecord.model_validate(item) for item in data)
                break

            batch = data.get("conversions") or []
            records.extend(ConversionRecord.model_validate(item) for item in batch)

            paging = data.get("paging") or {}
            total_count = int(paging.get("total_count") or 0)
            if (
                not paging
                or len(batch) < self.CONVERSIONS_PAGE_SIZE
                or page * self.CONVERSIONS_PAGE_SIZE >= total_count
            ):
                break

            page += 1
            if page > self.MAX_CONVERSION_PAGES:
                logger.warning(
                    "Conversion pagination stopped at %s pages for %s..%s",
                    self.MAX_CONVERSION_PAGES,
                    start,
                    end,
                )
                break

        return records

    async def get_clicks(self, start: date, end: date) -> list[ClickRecord]:
        """Fetch raw click records for a date range."""
        payload = {
            "timezone_id": self.timezone_id,
            "from": f"{start.isoformat()} 00:00:00",
            "to": f"{end.isoformat()} 23:59:59",
            "query": {
                "filters": self._affiliate_filters(),
                "user_metrics": [],
                "exclusions": [],
                "metric_filters": [],
            },
        }
        data = await self.transport.request_json("POST", CLICKS_PATH, payload)
        items = data if isinstance(data, list) else (data.get("clicks") or [])
        return [ClickRecord.model_validate(item) for item in items]
