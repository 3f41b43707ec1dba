"""Attribution build: raw reports in, published metrics out.

``build_metrics`` is pure. Anything that needs network access (unknown
property lookups, campaign links) is resolved beforehand by the collector
and passed in through ``AttributionInputs``.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, Optional

from ..schemas.reports import EntityReport, EntityRow, SendingCampaignStats
from .identifiers import (
    ParseError,
    Sub1Kind,
    classify_sub1,
    get_property_name,
    is_cpm_offer,
    is_known_property,
    parse_campaign_name,
)
from .models import (
    UNATTRIBUTED_CODE,
    UNKNOWN_PROPERTY_CODE,
    CampaignLink,
    CampaignRevenue,
    Click,
    CollectorMetrics,
    Conversion,
    DailyBreakdown,
    DailyPerformance,
    OfferPerformance,
    PropertyPerformance,
    RevenueBreakdown,
    UnattribReason,
    ratio,
)
from .reconciliation import calculate_esp_revenue


logger = logging.getLogger(__name__)

RECENT_LIMIT = 100


@dataclass
class AttributionInputs:
    """Everything one attribution build reads."""

    date_report: Optional[EntityReport] = None
    offer_report: Optional[EntityReport] = None
    sub1_report: Optional[EntityReport] = None
    conversions: list[Conversion] = field(default_factory=list)
    send_campaigns: list[SendingCampaignStats] = field(default_factory=list)
    campaign_links: dict[str, CampaignLink] = field(default_factory=dict)
    resolved_properties: dict[str, str] = field(default_factory=dict)
    today: Optional[date] = None
    tz: tzinfo = timezone.utc
    fetched_at: Optional[datetime] = None


@dataclass
class _Totals:
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    payout: float = 0.0

    def add_row(self, row: EntityRow) -> None:
        self.clicks += row.reporting.total_click
        self.conversions += row.reporting.conversions
        self.revenue += row.reporting.revenue
        self.payout += row.reporting.payout

    def add_conversion(self, conv: Conversion) -> None:
        self.conversions += 1
        self.revenue += conv.revenue
        self.payout += conv.payout

    def add(self, other: "_Totals") -> None:
        self.clicks += other.clicks
        self.conversions += other.conversions
        self.revenue += other.revenue
        self.payout += other.payout

    def subtract(self, other: "_Totals") -> None:
        self.clicks -= other.clicks
        self.conversions -= other.conversions
        self.revenue -= other.revenue
        self.payout -= other.payout


@dataclass
class _Sub1Row:
    sub1: str
    property_code: str
    property_name: str
    offer_id: str
    totals: _Totals
    unknown: bool = False


def _column_value(row: EntityRow, column_type: str, attr: str = "label") -> str:
    col = row.column(column_type)
    return getattr(col, attr) if col is not None else ""


def _add_to_property(
    properties: dict[str, PropertyPerformance],
    code: str,
    name: str,
    totals: _Totals,
) -> None:
    prop = properties.setdefault(code, PropertyPerformance(property_code=code, property_name=name))
    prop.clicks += totals.clicks
    prop.conversions += totals.conversions
    prop.revenue += totals.revenue
    prop.payout += totals.payout


def find_unknown_property_campaigns(
    sub1_report: Optional[EntityReport],
    conversions: Iterable[Conversion] = (),
) -> list[str]:
    """Mailing ids whose tag has no recognised property, for secondary lookup.

    Uses the sub1 report when it has rows, otherwise the conversions.
    """
    mailing_ids: list[str] = []
    seen: set[str] = set()

    if sub1_report is not None and sub1_report.table:
        for row in sub1_report.table:
            result = classify_sub1(_column_value(row, "sub1"))
            if result.kind == Sub1Kind.UNKNOWN_PROPERTY:
                mailing_id = result.parsed.mailing_id
                if mailing_id not in seen:
                    seen.add(mailing_id)
                    mailing_ids.append(mailing_id)
        return mailing_ids

    for conv in conversions:
        if conv.mailing_id and not is_known_property(conv.property_code):
            if conv.mailing_id not in seen:
                seen.add(conv.mailing_id)
                mailing_ids.append(conv.mailing_id)
    return mailing_ids


def aggregate_click_metrics(
    clicks: list[Click],
    conversions: list[Conversion],
    today: Optional[date] = None,
    tz: tzinfo = timezone.utc,
) -> CollectorMetrics:
    """Aggregate raw click and conversion records into daily, offer,
    property and campaign buckets."""
    metrics = CollectorMetrics()
    today_str = (today or datetime.now(tz).date()).isoformat()

    daily: dict[str, DailyPerformance] = {}
    offers: dict[str, OfferPerformance] = {}
    properties: dict[str, PropertyPerformance] = {}
    campaigns: dict[str, CampaignRevenue] = {}

    for click in clicks:
        day = _local_day(click.timestamp, tz)
        if day:
            daily.setdefault(day, DailyPerformance(date=day)).clicks += 1
            if day == today_str:
                metrics.today_clicks += 1

        offers.setdefault(
            click.offer_id, OfferPerformance(offer_id=click.offer_id, offer_name=click.offer_name)
        ).clicks += 1

        if click.property_code:
            properties.setdefault(
                click.property_code,
                PropertyPerformance(property_code=click.property_code, property_name=click.property_name),
            ).clicks += 1

        if click.mailing_id:
            campaigns.setdefault(
                click.mailing_id,
                CampaignRevenue(
                    mailing_id=click.mailing_id,
                    campaign_name=click.sub1,
                    property_code=click.property_code,
                    property_name=click.property_name,
                    offer_id=click.offer_id,
                    offer_name=click.offer_name,
                ),
            ).clicks += 1

    for conv in conversions:
        day = _local_day(conv.conversion_time, tz)
        if day:
            d = daily.setdefault(day, DailyPerformance(date=day))
            d.conversions += 1
            d.revenue += conv.revenue
            d.payout += conv.payout
            if day == today_str:
                metrics.today_conversions += 1
                metrics.today_revenue += conv.revenue
                metrics.today_payout += conv.payout

        offer = offers.setdefault(
            conv.offer_id, OfferPerformance(offer_id=conv.offer_id, offer_name=conv.offer_name)
        )
        offer.conversions += 1
        offer.revenue += conv.revenue
        offer.payout += conv.payout

        if conv.property_code:
            prop = properties.setdefault(
                conv.property_code,
                PropertyPerformance(property_code=conv.property_code, property_name=conv.property_name),
            )
            prop.conversions += 1
            prop.revenue += conv.revenue
            prop.payout += conv.payout

        if conv.mailing_id:
            campaign = campaigns.setdefault(
                conv.mailing_id,
                CampaignRevenue(
                    mailing_id=conv.mailing_id,
                    campaign_name=conv.sub1,
                    property_code=conv.property_code,
                    property_name=conv.property_name,
                    offer_id=conv.offer_id,
                    offer_name=conv.offer_name,
                ),
            )
            if not campaign.campaign_name and conv.sub1:
                campaign.campaign_name = conv.sub1
            campaign.conversions += 1
            campaign.revenue += conv.revenue
            campaign.payout += conv.payout

    metrics.daily_performance = _finish_daily(daily)
    metrics.offer_performance = _finish_offers(offers)
    metrics.property_performance = _finish_properties(properties, conversions)
    metrics.campaign_revenue = _finish_campaigns(campaigns)
    metrics.recent_clicks = clicks[-RECENT_LIMIT:]
    metrics.recent_conversions = conversions[-RECENT_LIMIT:]
    return metrics


def build_metrics(inputs: AttributionInputs) -> CollectorMetrics:
    """Build the full metrics snapshot from entity reports and conversions.

    Running it twice on the same inputs yields equal results.
    """
    tz = inputs.tz
    today_str = (inputs.today or datetime.now(tz).date()).isoformat()
    conversions = inputs.conversions
    metrics = CollectorMetrics(last_fetch=inputs.fetched_at)

    conv_offer_names = {c.offer_id: c.offer_name for c in conversions if c.offer_name}

    offers = offers_from_report(inputs.offer_report, conversions)
    for offer in offers.values():
        if not offer.offer_name and offer.offer_id in conv_offer_names:
            offer.offer_name = conv_offer_names[offer.offer_id]

    unattributed = {reason: _Totals() for reason in UnattribReason}
    sub1_rows: dict[str, _Sub1Row] = {}

    if inputs.sub1_report is not None:
        for row in inputs.sub1_report.table:
            result = classify_sub1(_column_value(row, "sub1"))
            if result.kind == Sub1Kind.EMPTY:
                unattributed[UnattribReason.EMPTY_SUB1].add_row(row)
                continue
            if result.kind == Sub1Kind.PARSE_ERROR:
                unattributed[UnattribReason.PARSE_ERROR].add_row(row)
                continue
            if result.kind == Sub1Kind.NO_MAILING_ID:
                unattributed[UnattribReason.NO_MAILING_ID].add_row(row)
                continue

            # Rows sharing a mailing id accumulate; the first row names the campaign
            parsed = result.parsed
            data = sub1_rows.get(parsed.mailing_id)
            if data is None:
                data = _Sub1Row(
                    sub1=parsed.raw,
                    property_code=parsed.property_code or "",
                    property_name=parsed.property_name or "",
                    offer_id=parsed.offer_id or "",
                    totals=_Totals(),
                    unknown=result.kind == Sub1Kind.UNKNOWN_PROPERTY,
                )
                sub1_rows[parsed.mailing_id] = data
            data.totals.add_row(row)

    for data in sub1_rows.values():
        if data.unknown:
            unattributed[UnattribReason.UNKNOWN_PROPERTY].add(data.totals)

    properties: dict[str, PropertyPerformance] = {}
    campaigns: dict[str, CampaignRevenue] = {}

    for mailing_id, data in sub1_rows.items():
        campaign = CampaignRevenue(
            mailing_id=mailing_id,
            campaign_name=data.sub1,
            property_code=data.property_code,
            property_name=data.property_name,
            offer_id=data.offer_id,
            offer_name=conv_offer_names.get(data.offer_id, ""),
            clicks=data.totals.clicks,
            conversions=data.totals.conversions,
            revenue=data.totals.revenue,
            payout=data.totals.payout,
        )
        campaigns[mailing_id] = campaign

        if is_known_property(data.property_code):
            _add_to_property(properties, data.property_code, data.property_name, data.totals)
            continue

        resolved = inputs.resolved_properties.get(mailing_id)
        if resolved:
            campaign.property_code = resolved
            campaign.property_name = get_property_name(resolved)
            _add_to_property(properties, resolved, campaign.property_name, data.totals)
            unattributed[UnattribReason.UNKNOWN_PROPERTY].subtract(data.totals)

    if not sub1_rows:
        logger.info("Sub1 report unavailable, aggregating properties and campaigns from conversions")
        _aggregate_from_conversions(
            conversions, inputs.resolved_properties, campaigns, properties, unattributed
        )

    _add_unattributed_buckets(properties, unattributed)

    daily: dict[str, DailyPerformance] = {}
    if inputs.date_report is not None:
        for row in inputs.date_report.table:
            day = _report_day(row, tz)
            if not day:
                continue
            d = DailyPerformance(
                date=day,
                clicks=row.reporting.total_click,
                conversions=row.reporting.conversions,
                revenue=row.reporting.revenue,
                payout=row.reporting.payout,
            )
            daily[day] = d
            if day == today_str:
                metrics.today_clicks = d.clicks
                metrics.today_conversions = d.conversions
                metrics.today_revenue = d.revenue
                metrics.today_payout = d.payout

    links = {s.mailing_id: CampaignLink.from_stats(s) for s in inputs.send_campaigns}
    links.update(inputs.campaign_links)

    metrics.daily_performance = _finish_daily(daily)
    metrics.offer_performance = _finish_offers(offers)
    metrics.property_performance = _finish_properties(properties, conversions)
    metrics.campaign_revenue = enrich_campaigns(_finish_campaigns(campaigns), links)
    metrics.esp_revenue, metrics.reconciliation = calculate_esp_revenue(
        metrics.campaign_revenue, metrics.offer_performance, inputs.send_campaigns
    )
    metrics.revenue_breakdown = calculate_revenue_breakdown(metrics.offer_performance, conversions, tz)
    metrics.recent_conversions = conversions[-RECENT_LIMIT:]
    return metrics


def _aggregate_from_conversions(
    conversions: list[Conversion],
    resolved_properties: dict[str, str],
    campaigns: dict[str, CampaignRevenue],
    properties: dict[str, PropertyPerformance],
    unattributed: dict[UnattribReason, _Totals],
) -> None:
    needs_resolution: set[str] = set()
    for conv in conversions:
        if not conv.mailing_id:
            continue
        campaign = campaigns.setdefault(
            conv.mailing_id,
            CampaignRevenue(
                mailing_id=conv.mailing_id,
                campaign_name=conv.sub1,
                property_code=conv.property_code,
                property_name=conv.property_name,
                offer_id=conv.offer_id,
                offer_name=conv.offer_name,
            ),
        )
        campaign.conversions += 1
        campaign.revenue += conv.revenue
        campaign.payout += conv.payout
        if not is_known_property(conv.property_code):
            needs_resolution.add(conv.mailing_id)

    for mailing_id in list(needs_resolution):
        code = resolved_properties.get(mailing_id)
        campaign = campaigns.get(mailing_id)
        if not code or campaign is None:
            continue
        campaign.property_code = code
        campaign.property_name = get_property_name(code)
        totals = _Totals(
            conversions=campaign.conversions,
            revenue=campaign.revenue,
            payout=campaign.payout,
        )
        _add_to_property(properties, code, campaign.property_name, totals)
        needs_resolution.discard(mailing_id)

    for conv in conversions:
        if conv.mailing_id:
            if conv.mailing_id in needs_resolution:
                unattributed[UnattribReason.UNKNOWN_PROPERTY].add_conversion(conv)
            elif is_known_property(conv.property_code):
                totals = _Totals()
                totals.add_conversion(conv)
                _add_to_property(properties, conv.property_code, conv.property_name, totals)
        elif not conv.property_code:
            unattributed[UnattribReason.EMPTY_SUB1].add_conversion(conv)
        elif not is_known_property(conv.property_code):
            unattributed[UnattribReason.UNKNOWN_PROPERTY].add_conversion(conv)
        else:
            unattributed[UnattribReason.NO_MAILING_ID].add_conversion(conv)


def _add_unattributed_buckets(
    properties: dict[str, PropertyPerformance],
    unattributed: dict[UnattribReason, _Totals],
) -> None:
    combined = [UnattribReason.EMPTY_SUB1, UnattribReason.PARSE_ERROR, UnattribReason.NO_MAILING_ID]
    revenue = sum(unattributed[reason].revenue for reason in combined)
    if revenue > 0:
        present = [reason for reason in combined if unattributed[reason].revenue > 0]
        properties[UNATTRIBUTED_CODE] = PropertyPerformance(
            property_code=UNATTRIBUTED_CODE,
            property_name="Unattributed",
            clicks=sum(unattributed[reason].clicks for reason in combined),
            conversions=sum(unattributed[reason].conversions for reason in combined),
            revenue=revenue,
            payout=sum(unattributed[reason].payout for reason in combined),
            is_unattributed=True,
            unattrib_reason="; ".join(reason.description for reason in present),
            reason_totals={reason.value: unattributed[reason].revenue for reason in present},
        )

    unknown = unattributed[UnattribReason.UNKNOWN_PROPERTY]
    if unknown.revenue > 0.001:
        properties[UNKNOWN_PROPERTY_CODE] = PropertyPerformance(
            property_code=UNKNOWN_PROPERTY_CODE,
            property_name="Unknown Property",
            clicks=unknown.clicks,
            conversions=unknown.conversions,
            revenue=unknown.revenue,
            payout=unknown.payout,
            is_unattributed=True,
            unattrib_reason=UnattribReason.UNKNOWN_PROPERTY.description,
            reason_totals={UnattribReason.UNKNOWN_PROPERTY.value: unknown.revenue},
        )


def offers_from_report(
    report: Optional[EntityReport],
    conversions: list[Conversion],
) -> dict[str, OfferPerformance]:
    """Offer id -> performance from the offer report, or from conversions
    when there is no report."""
    offers: dict[str, OfferPerformance] = {}
    if report is None:
        for conv in conversions:
            offer = offers.setdefault(
                conv.offer_id, OfferPerformance(offer_id=conv.offer_id, offer_name=conv.offer_name)
            )
            offer.conversions += 1
            offer.revenue += conv.revenue
            offer.payout += conv.payout
        return offers

    for row in report.table:
        offer_id = _column_value(row, "offer", "id")
        if not offer_id:
            continue
        offers[offer_id] = OfferPerformance(
            offer_id=offer_id,
            offer_name=_column_value(row, "offer"),
            clicks=row.reporting.total_click,
            conversions=row.reporting.conversions,
            revenue=row.reporting.revenue,
            payout=row.reporting.payout,
        )
    return offers


def enrich_campaigns(
    campaigns: list[CampaignRevenue],
    links: dict[str, CampaignLink],
) -> list[CampaignRevenue]:
    """Attach sending-platform stats and per-thousand revenue rates."""
    for campaign in campaigns:
        link = links.get(campaign.mailing_id)
        if link is None:
            continue
        campaign.audience_size = link.audience_size
        campaign.sent = link.sent
        campaign.delivered = link.delivered
        campaign.unique_opens = link.unique_opens
        campaign.esp_name = link.esp_name
        campaign.linked = True

        if link.name and campaign.campaign_name in ("", campaign.mailing_id):
            campaign.campaign_name = link.name

        if not is_known_property(campaign.property_code) and link.name:
            try:
                parts = parse_campaign_name(link.name)
            except ParseError:
                parts = None
            if parts is not None and is_known_property(parts.property):
                campaign.property_code = parts.property
                campaign.property_name = get_property_name(parts.property)

        campaign.ecpm = ratio(campaign.revenue, campaign.delivered) * 1000
        campaign.rpm = ratio(campaign.revenue, campaign.sent) * 1000
        campaign.revenue_per_open = ratio(campaign.revenue, campaign.unique_opens)
    return campaigns


def calculate_revenue_breakdown(
    offers: list[OfferPerformance],
    conversions: list[Conversion],
    tz: tzinfo = timezone.utc,
) -> RevenueBreakdown:
    """CPM vs non-CPM revenue totals plus a daily trend."""
    breakdown = RevenueBreakdown()
    for offer in offers:
        category = breakdown.cpm if is_cpm_offer(offer.offer_name) else breakdown.non_cpm
        category.offer_count += 1
        category.clicks += offer.clicks
        category.conversions += offer.conversions
        category.revenue += offer.revenue
        category.payout += offer.payout

    total = breakdown.cpm.revenue + breakdown.non_cpm.revenue
    breakdown.cpm.percentage = ratio(breakdown.cpm.revenue, total) * 100
    breakdown.non_cpm.percentage = ratio(breakdown.non_cpm.revenue, total) * 100

    daily: dict[str, DailyBreakdown] = {}
    for conv in conversions:
        day = _local_day(conv.conversion_time, tz)
        if not day:
            continue
        entry = daily.setdefault(day, DailyBreakdown(date=day))
        if is_cpm_offer(conv.offer_name):
            entry.cpm_revenue += conv.revenue
        else:
            entry.non_cpm_revenue += conv.revenue
    breakdown.daily_trend = sorted(daily.values(), key=lambda d: d.date, reverse=True)
    return breakdown


def _local_day(moment: Optional[datetime], tz: tzinfo) -> str:
    if moment is None:
        return ""
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz)
    return moment.date().isoformat()


def _report_day(row: EntityRow, tz: tzinfo) -> str:
    raw = _column_value(row, "date", "id")
    try:
        ts = int(raw)
    except ValueError:
        return ""
    if ts <= 0:
        return ""
    return datetime.fromtimestamp(ts, tz).date().isoformat()


def _finish_daily(daily: dict[str, DailyPerformance]) -> list[DailyPerformance]:
    for d in daily.values():
        d.compute_rates()
    return sorted(daily.values(), key=lambda d: d.date, reverse=True)


def _finish_offers(offers: dict[str, OfferPerformance]) -> list[OfferPerformance]:
    for offer in offers.values():
        offer.compute_rates()
    return sorted(offers.values(), key=lambda o: o.revenue, reverse=True)


def _finish_properties(
    properties: dict[str, PropertyPerformance],
    conversions: list[Conversion],
) -> list[PropertyPerformance]:
    offers_by_property: dict[str, set[str]] = {}
    for conv in conversions:
        offers_by_property.setdefault(conv.property_code, set()).add(conv.offer_id)
    for prop in properties.values():
        prop.compute_rates()
        prop.unique_offers = len(offers_by_property.get(prop.property_code, ()))
    return sorted(properties.values(), key=lambda p: p.revenue, reverse=True)


def _finish_campaigns(campaigns: dict[str, CampaignRevenue]) -> list[CampaignRevenue]:
    for campaign in campaigns.values():
        campaign.compute_rates()
    return sorted(campaigns.values(), key=lambda c: c.revenue, reverse=True)
