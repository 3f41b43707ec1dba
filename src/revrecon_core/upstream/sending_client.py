"""Async client for the email-sending platform reports, lists, campaigns and exports."""
import logging
from datetime import date
from typing import Any, Optional

from ..schemas.export_ops import ContactActivityReport, ContactActivityRequest
from ..schemas.reports import ListInfo, SendingCampaignStats
from .exceptions import UpstreamError
from .transport import ApiTransport


logger = logging.getLogger(__name__)

REPORTS_QUERY_PATH = "/api/reports/query"
LISTS_PATH = "/api/lists"
MAILINGS_PATH = "/api/mailings"
CONTACT_ACTIVITY_PATH = "/api/contact_activity"


def _date_filters(start: date, end: date) -> list[list[Any]]:
    return [
        ["is_test_campaign", "=", 0],
        ["stats_date", ">=", start.isoformat()],
        ["stats_date", "<=", end.isoformat()],
    ]


class SendingClient:
    """Thin wrapper over the sending platform API.

    Report rows come back as dicts keyed by the selected column names,
    with aggregate columns stripped of their sum() wrapper.
    """

    def __init__(self, transport: ApiTransport) -> None:
        self.transport = transport

    @staticmethod
    def _payload(data: Any, what: str) -> Any:
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected {what} response shape")
        metadata = data.get("metadata") or {}
        if metadata.get("error"):
            raise UpstreamError(f"API returned error for {what}")
        return data.get("payload")

    async def query_reports(self, query: dict) -> list[dict[str, Any]]:
        """Execute a report query and return its rows."""
        data = await self.transport.request_json("POST", REPORTS_QUERY_PATH, query)
        return self._payload(data, "report query") or []

    async def get_daily_stats(self, start: date, end: date) -> list[dict[str, Any]]:
        """Daily pipeline totals (one row per stats_date)."""
        return await self.query_reports(
            {
                "select": [
                    "stats_date",
                    "sum(`targeted`)",
                    "sum(`sent`)",
                    "sum(`success`)",
                    "sum(`unique_opens`)",
                    "sum(`clicks`)",
                ],
                "from": "mailing",
                "group": [["stats_date", "day"]],
                "order": [["stats_date", "DESC"]],
                "filter": _date_filters(start, end),
                "list_ids": "all",
            }
        )

    async def get_sends_by_list(self, start: date, end: date) -> list[dict[str, Any]]:
        """Send volume grouped by list_id."""
        return await self.query_reports(
            {
                "select": ["list_id", "sum(`sent`)", "sum(`success`)"],
                "from": "mailing",
                "group": ["list_id"],
                "order": [["sum(`sent`)", "DESC"]],
                "filter": _date_filters(start, end),
                "list_ids": "all",
            }
        )

    async def get_sends_by_segment(self, start: date, end: date) -> list[dict[str, Any]]:
        """Send volume grouped by segment_id, with segment_name."""
        return await self.query_reports(
            {
                "select": ["segment_id", "segment_name", "sum(`sent`)", "sum(`success`)"],
                "from": "mailing",
                "group": ["segment_id"],
                "order": [["sum(`sent`)", "DESC"]],
                "filter": _date_filters(start, end),
                "list_ids": "all",
            }
        )

    async def get_campaign_stats(self, start: date, end: date) -> list[SendingCampaignStats]:
        """Per-mailing delivery stats including the ESP that sent it."""
        rows = await self.query_reports(
            {
                "select": [
                    "mailing_id",
                    "mailing_name",
                    "esp_name",
                    "sum(`targeted`)",
                    "sum(`sent`)",
                    "sum(`success`)",
                    "sum(`opens`)",
                    "sum(`unique_opens`)",
                    "sum(`clicks`)",
                ],
                "from": "mailing",
                "group": ["mailing_id"],
                "filter": _date_filters(start, end),
                "list_ids": "all",
            }
        )
        return [SendingCampaignStats.from_row(row) for row in rows if row.get("mailing_id")]

    async def get_lists(self) -> list[ListInfo]:
        data = await self.transport.request_json("GET", LISTS_PATH)
        return [ListInfo.model_validate(item) for item in self._payload(data, "lists") or []]

    async def get_campaign(self, mailing_id: str) -> Optional[dict[str, Any]]:
        """Campaign metadata for one mailing id, or None when it does not exist."""
        try:
            data = await self.transport.request_json("GET", f"{MAILINGS_PATH}/{mailing_id}")
        except UpstreamError as exc:
            if exc.status == 404:
                return None
            raise
        return self._payload(data, f"mailing {mailing_id}")

    async def create_contact_activity(
        self, request: ContactActivityRequest
    ) -> ContactActivityReport:
        """Create an asynchronous contact activity report."""
        data = await self.transport.request_json(
            "POST", CONTACT_ACTIVITY_PATH, request.model_dump()
        )
        payload = self._payload(data, "contact activity create") or {}
        report = ContactActivityReport.model_validate(payload)
        if not report.id or report.id == "0":
            raise UpstreamError("Contact activity report created but no id returned")
        return report

    async def get_contact_activity(self, report_id: str) -> ContactActivityReport:
        data = await self.transport.request_json(
            "GET", f"{CONTACT_ACTIVITY_PATH}/{report_id}"
        )
        payload = self._payload(data, "contact activity status") or {}
        return ContactActivityReport(id=report_id, status=int(payload.get("status") or 0))

    async def export_contact_activity(self, report_id: str) -> str:
        """Aggregated CSV export of a completed report."""
        return await self.transport.request_text(
            "GET", f"{CONTACT_ACTIVITY_PATH}/{report_id}/export"
        )

    async def delete_contact_activity(self, report_id: str) -> None:
        await self.transport.request_json(
            "DELETE", f"{CONTACT_ACTIVITY_PATH}/{report_id}", retry=False
        )
