"""Attribution data model.

Every aggregate here is rebuilt from scratch per cycle; nothing is
updated incrementally after publication.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Optional

from ..schemas.reports import (
    ClickRecord,
    ConversionRecord,
    SendingCampaignStats,
    row_int,
    row_str,
)
from .identifiers import ParseError, parse_sub1, parse_sub2, parse_timestamp


UNATTRIBUTED_CODE = "UNATTRIBUTED"
UNKNOWN_PROPERTY_CODE = "UNKNOWN_PROPERTY"


class VolumeSource(str, Enum):
    """Provenance of a send-volume figure."""

    EXACT = "exact"  # contact activity export
    SEGMENT = "segment"
    LIST = "list"
    ESTIMATED = "estimated"  # click/conversion share x total sends
    NONE = "none"


class CollectorState(str, Enum):
    IDLE = "idle"
    FETCHING_FULL = "fetching_full"
    FETCHING_INCREMENTAL = "fetching_incremental"
    STOPPED = "stopped"


class UnattribReason(str, Enum):
    """Why revenue could not be tied to a known property."""

    EMPTY_SUB1 = "empty_sub1"
    PARSE_ERROR = "parse_error"
    NO_MAILING_ID = "no_mailing_id"
    UNKNOWN_PROPERTY = "unknown_property"

    @property
    def description(self) -> str:
        return UNATTRIB_REASON_TEXT[self]


UNATTRIB_REASON_TEXT = {
    UnattribReason.EMPTY_SUB1: "Revenue from conversions with no tracking data (empty sub1 field)",
    UnattribReason.PARSE_ERROR: "Revenue from conversions with unparseable tracking data",
    UnattribReason.NO_MAILING_ID: "Revenue from conversions without a mailing ID in tracking data",
    UnattribReason.UNKNOWN_PROPERTY: (
        "Revenue from conversions with unknown property code - not in configured property list"
    ),
}


def ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class Click:
    """Click record with parsed tracking tags."""

    click_id: str
    offer_id: str
    offer_name: str = ""
    sub1: str = ""
    sub2: str = ""
    timestamp: Optional[datetime] = None
    property_code: str = ""
    property_name: str = ""
    mailing_id: str = ""
    parsed_offer_id: str = ""
    data_set_code: str = ""
    data_partner: str = ""

    def __post_init__(self) -> None:
        _apply_tags(self)

    @classmethod
    def from_record(cls, record: ClickRecord) -> "Click":
        try:
            timestamp = parse_timestamp(record.timestamp)
        except ParseError:
            timestamp = None
        return cls(
            click_id=record.click_id,
            offer_id=record.offer_id,
            offer_name=record.offer_name,
            sub1=record.sub1,
            sub2=record.sub2,
            timestamp=timestamp,
        )


@dataclass
class Conversion:
    """Conversion record with parsed tracking tags."""

    conversion_id: str
    offer_id: str
    offer_name: str = ""
    revenue: float = 0.0
    payout: float = 0.0
    sub1: str = ""
    sub2: str = ""
    conversion_time: Optional[datetime] = None
    status: str = ""
    transaction_id: str = ""
    property_code: str = ""
    property_name: str = ""
    mailing_id: str = ""
    parsed_offer_id: str = ""
    data_set_code: str = ""
    data_partner: str = ""

    def __post_init__(self) -> None:
        _apply_tags(self)

    @classmethod
    def from_record(cls, record: ConversionRecord) -> "Conversion":
        offer_id, offer_name = record.resolved_offer()
        conversion_time = None
        if record.conversion_unix_timestamp > 0:
            conversion_time = datetime.fromtimestamp(
                record.conversion_unix_timestamp, timezone.utc
            )
        return cls(
            conversion_id=record.conversion_id,
            transaction_id=record.transaction_id,
            offer_id=offer_id,
            offer_name=offer_name,
            status=record.status,
            revenue=record.revenue,
            payout=record.payout,
            sub1=record.sub1,
            sub2=record.sub2,
            conversion_time=conversion_time,
        )

    def local_date(self, tz: tzinfo = timezone.utc) -> Optional[date]:
        if self.conversion_time is None:
            return None
        if self.conversion_time.tzinfo is None:
            return self.conversion_time.date()
        return self.conversion_time.astimezone(tz).date()


def _apply_tags(record) -> None:
    """Fill parsed sub1/sub2 fields unless already set."""
    if record.sub1 and not (record.mailing_id or record.property_code):
        try:
            parsed = parse_sub1(record.sub1)
        except ParseError:
            parsed = None
        if parsed is not None:
            record.property_code = parsed.property_code or ""
            record.property_name = parsed.property_name or ""
            record.mailing_id = parsed.mailing_id or ""
            record.parsed_offer_id = parsed.offer_id or ""

    if record.sub2 and not record.data_set_code:
        parsed_sub2 = parse_sub2(record.sub2)
        if parsed_sub2 is not None and not parsed_sub2.is_email_hash:
            record.data_set_code = parsed_sub2.data_set_code
            record.data_partner = parsed_sub2.partner_name


@dataclass
class DailyPerformance:
    date: str
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0

    def compute_rates(self) -> None:
        self.conversion_rate = ratio(self.conversions, self.clicks)
        self.epc = ratio(self.revenue, self.clicks)


@dataclass
class OfferPerformance:
    offer_id: str
    offer_name: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0

    def compute_rates(self) -> None:
        self.conversion_rate = ratio(self.conversions, self.clicks)
        self.epc = ratio(self.revenue, self.clicks)


@dataclass
class PropertyPerformance:
    """Property (content site) level metrics.

    Unattributed buckets carry ``is_unattributed`` plus the reason, and
    ``reason_totals`` keeps per-reason revenue when several are combined.
    """

    property_code: str
    property_name: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0
    unique_offers: int = 0
    is_unattributed: bool = False
    unattrib_reason: str = ""
    reason_totals: dict[str, float] = field(default_factory=dict)

    def compute_rates(self) -> None:
        self.conversion_rate = ratio(self.conversions, self.clicks)
        self.epc = ratio(self.revenue, self.clicks)


@dataclass
class CampaignLink:
    """Sending-platform view of one mailing."""

    mailing_id: str
    name: str = ""
    esp_name: str = ""
    audience_size: int = 0
    sent: int = 0
    delivered: int = 0
    opens: int = 0
    unique_opens: int = 0

    @classmethod
    def from_stats(cls, stats: SendingCampaignStats) -> "CampaignLink":
        return cls(
            mailing_id=stats.mailing_id,
            name=stats.name,
            esp_name=stats.esp_name,
            audience_size=stats.targeted,
            sent=stats.sent,
            delivered=stats.delivered,
            opens=stats.opens,
            unique_opens=stats.unique_opens,
        )

    @classmethod
    def from_payload(cls, mailing_id: str, payload: dict[str, Any]) -> "CampaignLink":
        """Build from a campaign metadata response (name plus optional stats)."""
        return cls(
            mailing_id=mailing_id,
            name=row_str(payload, "name"),
            esp_name=row_str(payload, "esp_name"),
            audience_size=row_int(payload, "targeted"),
            sent=row_int(payload, "sent"),
            delivered=row_int(payload, "success"),
            opens=row_int(payload, "opens"),
            unique_opens=row_int(payload, "unique_opens"),
        )


@dataclass
class CampaignRevenue:
    """Revenue for one mailing, optionally linked to sending-platform stats."""

    mailing_id: str
    campaign_name: str = ""
    property_code: str = ""
    property_name: str = ""
    offer_id: str = ""
    offer_name: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0
    audience_size: int = 0
    sent: int = 0
    delivered: int = 0
    unique_opens: int = 0
    esp_name: str = ""
    linked: bool = False
    rpm: float = 0.0
    ecpm: float = 0.0
    revenue_per_open: float = 0.0

    def compute_rates(self) -> None:
        self.conversion_rate = ratio(self.conversions, self.clicks)
        self.epc = ratio(self.revenue, self.clicks)


@dataclass
class ESPRevenuePerformance:
    esp_name: str
    campaign_count: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_opens: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    percentage: float = 0.0
    avg_ecpm: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0


@dataclass
class ReconciliationReport:
    """How ESP-level revenue was made to match the authoritative total."""

    authoritative_revenue: float = 0.0
    reconstructed_revenue: float = 0.0
    gap: float = 0.0
    method: str = "none"  # none|offer_volume|scaled|unattributed_entry
    unattributed_revenue: float = 0.0
    unattributed_reason: str = ""
    residual: float = 0.0


@dataclass
class RevenueCategory:
    offer_count: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0
    percentage: float = 0.0


@dataclass
class DailyBreakdown:
    date: str
    cpm_revenue: float = 0.0
    non_cpm_revenue: float = 0.0


@dataclass
class RevenueBreakdown:
    cpm: RevenueCategory = field(default_factory=RevenueCategory)
    non_cpm: RevenueCategory = field(default_factory=RevenueCategory)
    daily_trend: list[DailyBreakdown] = field(default_factory=list)


@dataclass
class CollectorMetrics:
    """Published snapshot of one attribution build."""

    last_fetch: Optional[datetime] = None
    today_clicks: int = 0
    today_conversions: int = 0
    today_revenue: float = 0.0
    today_payout: float = 0.0
    daily_performance: list[DailyPerformance] = field(default_factory=list)
    offer_performance: list[OfferPerformance] = field(default_factory=list)
    property_performance: list[PropertyPerformance] = field(default_factory=list)
    campaign_revenue: list[CampaignRevenue] = field(default_factory=list)
    esp_revenue: list[ESPRevenuePerformance] = field(default_factory=list)
    revenue_breakdown: Optional[RevenueBreakdown] = None
    reconciliation: Optional[ReconciliationReport] = None
    recent_clicks: list[Click] = field(default_factory=list)
    recent_conversions: list[Conversion] = field(default_factory=list)


@dataclass
class DataPartnerDailyMetrics:
    date: str
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0


@dataclass
class DataSetCodeMetrics:
    data_set_code: str
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    volume: int = 0
    volume_source: VolumeSource = VolumeSource.NONE
    cvr: float = 0.0
    epc: float = 0.0


@dataclass
class OfferPartnerMetrics:
    offer_id: str
    offer_name: str = ""
    is_cpm: bool = False
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0


@dataclass
class DataPartnerPerformance:
    partner_prefix: str
    partner_name: str
    data_set_code: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    cpa_revenue: float = 0.0
    cpm_revenue: float = 0.0
    volume: int = 0
    volume_source: VolumeSource = VolumeSource.NONE
    payout: float = 0.0
    conversion_rate: float = 0.0
    epc: float = 0.0
    daily_series: list[DataPartnerDailyMetrics] = field(default_factory=list)
    data_set_breakdown: list[DataSetCodeMetrics] = field(default_factory=list)
    offer_breakdown: list[OfferPartnerMetrics] = field(default_factory=list)


@dataclass
class PeriodSummary:
    label: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    cpa_revenue: float = 0.0
    cpm_revenue: float = 0.0
    volume: int = 0


@dataclass
class MoMComparison:
    current_month: PeriodSummary = field(default_factory=PeriodSummary)
    previous_month: PeriodSummary = field(default_factory=PeriodSummary)
    revenue_change_pct: float = 0.0
    conversions_change_pct: float = 0.0
    clicks_change_pct: float = 0.0


@dataclass
class OfferPartnerBreakdownEntry:
    partner_prefix: str
    partner_name: str
    clicks: int = 0
    click_share: float = 0.0  # percent
    conversions: int = 0
    revenue: float = 0.0


@dataclass
class OfferWithPartnerBreakdown:
    offer_id: str
    offer_name: str = ""
    is_cpm: bool = False
    total_clicks: int = 0
    total_conversions: int = 0
    total_revenue: float = 0.0
    partners: list[OfferPartnerBreakdownEntry] = field(default_factory=list)


@dataclass
class DataPartnerAnalytics:
    partners: list[DataPartnerPerformance] = field(default_factory=list)
    totals: PeriodSummary = field(default_factory=PeriodSummary)
    mom_comparison: MoMComparison = field(default_factory=MoMComparison)
    cached_at: str = ""
    default_volume: int = 0
    volume_source: VolumeSource = VolumeSource.NONE
    cpm_offers: list[OfferWithPartnerBreakdown] = field(default_factory=list)
    cpa_offers: list[OfferWithPartnerBreakdown] = field(default_factory=list)
    cpm_total_revenue: float = 0.0
    cpm_unattributed: float = 0.0
    warnings: list[str] = field(default_factory=list)
