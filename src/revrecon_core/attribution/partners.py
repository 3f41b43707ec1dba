"""Data-partner analytics: who supplied the audiences that earned the revenue.

Clicks come from the sub2 entity report. CPM revenue has no conversions,
so it is split across partners by their click share on each CPM offer
(offer x sub2 report). CPA revenue is attributed per conversion.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, Optional

from ..schemas.reports import EntityReport, EntityRow
from .identifiers import (
    PARTNER_GROUP_NAMES,
    ParsedSub2,
    is_cpm_offer,
    parse_sub2,
    resolve_partner_group,
)
from .models import (
    Conversion,
    DataPartnerAnalytics,
    DataPartnerDailyMetrics,
    DataPartnerPerformance,
    DataSetCodeMetrics,
    MoMComparison,
    OfferPartnerBreakdownEntry,
    OfferPartnerMetrics,
    OfferPerformance,
    OfferWithPartnerBreakdown,
    PeriodSummary,
    VolumeSource,
    ratio,
)
from .volume import PartnerVolumeAllocator, VolumeMap


logger = logging.getLogger(__name__)


@dataclass
class _DataSetAccum:
    code: str
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0


@dataclass
class _PartnerAccum:
    prefix: str
    name: str
    data_set_code: str = ""
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    cpa_revenue: float = 0.0
    cpm_revenue: float = 0.0
    payout: float = 0.0
    daily: dict[str, DataPartnerDailyMetrics] = field(default_factory=dict)
    data_sets: dict[str, _DataSetAccum] = field(default_factory=dict)
    offers: dict[str, OfferPartnerMetrics] = field(default_factory=dict)

    def data_set(self, code: str) -> _DataSetAccum:
        code = code or self.prefix
        return self.data_sets.setdefault(code, _DataSetAccum(code))

    def offer(self, offer_id: str, offer_name: str, is_cpm: bool) -> OfferPartnerMetrics:
        entry = self.offers.get(offer_id)
        if entry is None:
            entry = OfferPartnerMetrics(offer_id=offer_id, offer_name=offer_name, is_cpm=is_cpm)
            self.offers[offer_id] = entry
        elif is_cpm:
            entry.is_cpm = True
        return entry


@dataclass
class _CPMOffer:
    offer_id: str
    offer_name: str
    total_revenue: float
    partner_clicks: dict[str, int] = field(default_factory=dict)
    total_clicks: int = 0


class _PartnerBook:
    """Partner accumulators keyed by resolved group prefix."""

    def __init__(self) -> None:
        self.partners: dict[str, _PartnerAccum] = {}

    def get(self, prefix: str, name: str, data_set_code: str = "") -> _PartnerAccum:
        # prefix and name must already be resolved
        accum = self.partners.get(prefix)
        if accum is None:
            accum = _PartnerAccum(prefix=prefix, name=name, data_set_code=data_set_code)
            self.partners[prefix] = accum
        return accum


def _partner_tag(row: EntityRow) -> Optional[ParsedSub2]:
    col = row.column("sub2")
    if col is None or not col.label:
        return None
    parsed = parse_sub2(col.label)
    if parsed is None or parsed.is_email_hash or not parsed.partner_name:
        return None
    return parsed


def cpm_offer_revenue(offers: Iterable[OfferPerformance]) -> dict[str, float]:
    return {offer.offer_id: offer.revenue for offer in offers if is_cpm_offer(offer.offer_name)}


def _add_clicks(book: _PartnerBook, sub2_report: Optional[EntityReport]) -> None:
    if sub2_report is None:
        return
    for row in sub2_report.table:
        parsed = _partner_tag(row)
        if parsed is None:
            continue
        accum = book.get(parsed.partner_prefix, parsed.partner_name, parsed.data_set_code)
        accum.clicks += row.reporting.total_click
        accum.data_set(parsed.data_set_code).clicks += row.reporting.total_click


def _attribute_cpm(
    book: _PartnerBook,
    offer_sub2_report: Optional[EntityReport],
    revenue_by_offer: dict[str, float],
    warnings: list[str],
    offer_names: Optional[dict[str, str]] = None,
) -> tuple[float, float]:
    """Split CPM offer revenue by partner click share.

    Every CPM offer with revenue but no observed partner clicks is reported
    in ``warnings``, whether or not it appears in the offer x sub2 report.

    Returns:
        (total CPM revenue, attributed CPM revenue)
    """
    offer_names = offer_names or {}
    total_cpm = sum(revenue_by_offer.values())
    if offer_sub2_report is None or offer_sub2_report.is_empty:
        logger.info("No offer x sub2 report available, skipping CPM attribution")
        _warn_unclicked_offers(revenue_by_offer, {}, offer_names, warnings)
        return total_cpm, 0.0

    logger.info(
        "CPM attribution: %s CPM offers with $%.2f total revenue",
        len(revenue_by_offer),
        total_cpm,
    )

    cpm_offers: dict[str, _CPMOffer] = {}
    for row in offer_sub2_report.table:
        offer_col = row.column("offer")
        if offer_col is None or not offer_col.id:
            continue
        if not is_cpm_offer(offer_col.label):
            continue
        parsed = _partner_tag(row)
        if parsed is None:
            continue

        agg = cpm_offers.get(offer_col.id)
        if agg is None:
            agg = _CPMOffer(
                offer_id=offer_col.id,
                offer_name=offer_col.label,
                total_revenue=revenue_by_offer.get(offer_col.id, 0.0),
            )
            cpm_offers[offer_col.id] = agg
        key = parsed.partner_prefix.upper()
        agg.partner_clicks[key] = agg.partner_clicks.get(key, 0) + row.reporting.total_click
        agg.total_clicks += row.reporting.total_click

    attributed = 0.0
    for agg in cpm_offers.values():
        if agg.total_clicks == 0 or agg.total_revenue == 0:
            continue

        for key, clicks in agg.partner_clicks.items():
            share = agg.total_revenue * clicks / agg.total_clicks
            accum = book.get(key, PARTNER_GROUP_NAMES.get(key, key))
            accum.revenue += share
            accum.cpm_revenue += share
            offer = accum.offer(agg.offer_id, agg.offer_name, is_cpm=True)
            offer.clicks += clicks
            offer.revenue += share
            attributed += share
        logger.debug(
            "CPM attribution: offer %s total=$%.2f clicks=%s across %s partners",
            agg.offer_id,
            agg.total_revenue,
            agg.total_clicks,
            len(agg.partner_clicks),
        )

    _warn_unclicked_offers(revenue_by_offer, cpm_offers, offer_names, warnings)

    unattributed = total_cpm - attributed
    if unattributed > 0.01:
        logger.info("CPM attribution: $%.2f unattributed CPM revenue", unattributed)
    logger.info(
        "CPM attribution complete: %s offers, $%.2f attributed of $%.2f",
        len(cpm_offers),
        attributed,
        total_cpm,
    )
    return total_cpm, attributed


def _warn_unclicked_offers(
    revenue_by_offer: dict[str, float],
    cpm_offers: dict[str, _CPMOffer],
    offer_names: dict[str, str],
    warnings: list[str],
) -> None:
    for offer_id, revenue in revenue_by_offer.items():
        if revenue <= 0:
            continue
        agg = cpm_offers.get(offer_id)
        if agg is not None and agg.total_clicks > 0:
            continue
        name = agg.offer_name if agg is not None else offer_names.get(offer_id, "")
        message = (
            f"CPM offer {offer_id} ({name}) has "
            f"${revenue:.2f} revenue but 0 partner clicks"
        )
        logger.warning(message)
        warnings.append(message)


def _conversion_partner(conv: Conversion) -> Optional[tuple[str, str, str]]:
    parsed = parse_sub2(conv.sub2)
    if parsed is not None and not parsed.is_email_hash and parsed.partner_name:
        return parsed.partner_prefix, parsed.partner_name, parsed.data_set_code
    if conv.data_set_code:
        prefix, name = resolve_partner_group(conv.data_set_code)
        return prefix, name, conv.data_set_code
    if conv.data_partner:
        prefix, name = resolve_partner_group(conv.data_partner)
        return prefix, name, conv.data_partner
    return None


def _attribute_cpa(book: _PartnerBook, conversions: Iterable[Conversion], tz: tzinfo) -> None:
    for conv in conversions:
        partner = _conversion_partner(conv)
        if partner is None:
            continue
        prefix, name, code = partner
        accum = book.get(prefix, name, code)
        accum.conversions += 1
        accum.payout += conv.payout
        accum.revenue += conv.revenue
        accum.cpa_revenue += conv.revenue

        data_set = accum.data_set(code)
        data_set.conversions += 1
        data_set.revenue += conv.revenue

        if conv.offer_id:
            offer = accum.offer(conv.offer_id, conv.offer_name, is_cpm=False)
            offer.conversions += 1
            offer.revenue += conv.revenue

        day = conv.local_date(tz)
        if day is not None:
            key = day.isoformat()
            daily = accum.daily.setdefault(key, DataPartnerDailyMetrics(date=key))
            daily.conversions += 1
            daily.revenue += conv.revenue


def build_offer_centric_view(
    partners: list[DataPartnerPerformance],
) -> tuple[list[OfferWithPartnerBreakdown], list[OfferWithPartnerBreakdown]]:
    """Invert partner -> offer breakdowns into (CPM offers, CPA offers)."""
    offers: dict[str, OfferWithPartnerBreakdown] = {}
    entries: dict[str, dict[str, OfferPartnerBreakdownEntry]] = {}

    for partner in partners:
        for item in partner.offer_breakdown:
            if item.offer_id not in offers:
                offers[item.offer_id] = OfferWithPartnerBreakdown(
                    offer_id=item.offer_id,
                    offer_name=item.offer_name,
                    is_cpm=item.is_cpm,
                )
                entries[item.offer_id] = {}
            by_partner = entries[item.offer_id]
            entry = by_partner.get(partner.partner_prefix)
            if entry is None:
                entry = OfferPartnerBreakdownEntry(
                    partner_prefix=partner.partner_prefix,
                    partner_name=partner.partner_name,
                )
                by_partner[partner.partner_prefix] = entry
            entry.clicks += item.clicks
            entry.conversions += item.conversions
            entry.revenue += item.revenue

    cpm_offers: list[OfferWithPartnerBreakdown] = []
    cpa_offers: list[OfferWithPartnerBreakdown] = []
    for offer_id, offer in offers.items():
        offer.partners = list(entries[offer_id].values())
        offer.total_clicks = sum(e.clicks for e in offer.partners)
        offer.total_conversions = sum(e.conversions for e in offer.partners)
        offer.total_revenue = sum(e.revenue for e in offer.partners)
        for entry in offer.partners:
            entry.click_share = ratio(entry.clicks, offer.total_clicks) * 100
        offer.partners.sort(key=lambda e: e.revenue, reverse=True)
        (cpm_offers if offer.is_cpm else cpa_offers).append(offer)

    cpm_offers.sort(key=lambda o: o.total_revenue, reverse=True)
    cpa_offers.sort(key=lambda o: o.total_revenue, reverse=True)
    return cpm_offers, cpa_offers


def _month_start(day: date, months_back: int = 0) -> date:
    year, month = day.year, day.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return date(year, month, 1)


def build_mom_comparison(
    conversions: Iterable[Conversion],
    total_clicks: int,
    today: date,
    tz: tzinfo = timezone.utc,
) -> MoMComparison:
    """Current month vs previous month for partner-tagged conversions.

    Clicks are not split by month upstream, so the current month carries
    the window's total clicks and the previous month none.
    """
    current_start = _month_start(today)
    previous_start = _month_start(today, 1)

    current = PeriodSummary(label=current_start.strftime("%B %Y"), clicks=total_clicks)
    previous = PeriodSummary(label=previous_start.strftime("%B %Y"))

    for conv in conversions:
        if not conv.data_partner:
            continue
        day = conv.local_date(tz)
        if day is None:
            continue
        if current_start <= day <= today:
            current.conversions += 1
            current.revenue += conv.revenue
        elif previous_start <= day < current_start:
            previous.conversions += 1
            previous.revenue += conv.revenue

    mom = MoMComparison(current_month=current, previous_month=previous)
    if previous.revenue > 0:
        mom.revenue_change_pct = (current.revenue - previous.revenue) / previous.revenue * 100
    if previous.conversions > 0:
        mom.conversions_change_pct = (
            (current.conversions - previous.conversions) / previous.conversions * 100
        )
    if previous.clicks > 0:
        mom.clicks_change_pct = (current.clicks - previous.clicks) / previous.clicks * 100
    return mom


def period_label(start: date, end: date) -> str:
    return f"{start:%b} {start.day} – {end:%b} {end.day}, {end.year}"


def build_partner_analytics(
    start: date,
    end: date,
    sub2_report: Optional[EntityReport],
    offer_sub2_report: Optional[EntityReport],
    offers: Iterable[OfferPerformance],
    conversions: Iterable[Conversion],
    volume_map: VolumeMap,
    total_sends: int,
    mom_conversions: Optional[Iterable[Conversion]] = None,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> DataPartnerAnalytics:
    """Build data-partner analytics for one date window.

    Args:
        start: First day of the window
        end: Last day of the window
        sub2_report: Clicks by sub2 for the window
        offer_sub2_report: Clicks by offer x sub2, drives CPM attribution
        offers: Offer performance for the window (CPM revenue source)
        conversions: Conversions inside the window
        volume_map: Resolved per-data-set volume
        total_sends: Total sends for the window, 0 if unknown
        mom_conversions: Conversions for the month-over-month view
            (defaults to ``conversions``)
        now: Build time, used for the cached_at stamp and the current month
        tz: Reporting timezone

    Returns:
        DataPartnerAnalytics with partners sorted by revenue descending
    """
    now = now or datetime.now(tz)
    conversions = list(conversions)
    warnings: list[str] = []
    book = _PartnerBook()

    _add_clicks(book, sub2_report)
    cpm_total, cpm_attributed = _attribute_cpm(
        book,
        offer_sub2_report,
        cpm_offer_revenue(offers),
        warnings,
        offer_names={offer.offer_id: offer.offer_name for offer in offers},
    )
    _attribute_cpa(book, conversions, tz)

    grand_clicks = sum(a.clicks for a in book.partners.values())
    grand_conversions = sum(a.conversions for a in book.partners.values())
    allocator = PartnerVolumeAllocator(
        volume_map,
        total_sends,
        set(book.partners),
        grand_clicks,
        grand_conversions,
    )
    logger.info(
        "Partner volume for %s..%s: source=%s, total sends=%s, matching=%s",
        start,
        end,
        volume_map.source.value,
        allocator.total_sends,
        allocator.has_matching_volume,
    )

    partners: list[DataPartnerPerformance] = []
    totals = PeriodSummary(label=period_label(start, end))
    for accum in book.partners.values():
        volume = allocator.for_partner(accum.prefix, accum.clicks, accum.conversions)
        partner = DataPartnerPerformance(
            partner_prefix=accum.prefix,
            partner_name=accum.name,
            data_set_code=accum.data_set_code,
            clicks=accum.clicks,
            conversions=accum.conversions,
            revenue=accum.revenue,
            cpa_revenue=accum.cpa_revenue,
            cpm_revenue=accum.cpm_revenue,
            volume=volume.value,
            volume_source=volume.source,
            payout=accum.payout,
            conversion_rate=ratio(accum.conversions, accum.clicks) * 100,
            epc=ratio(accum.revenue, accum.clicks),
        )

        for ds in accum.data_sets.values():
            ds_volume = allocator.for_data_set(ds.code, ds.clicks, ds.conversions)
            partner.data_set_breakdown.append(
                DataSetCodeMetrics(
                    data_set_code=ds.code,
                    clicks=ds.clicks,
                    conversions=ds.conversions,
                    revenue=ds.revenue,
                    volume=ds_volume.value,
                    volume_source=ds_volume.source,
                    cvr=ratio(ds.conversions, ds.clicks) * 100,
                    epc=ratio(ds.revenue, ds.clicks),
                )
            )
        partner.data_set_breakdown.sort(key=lambda d: d.revenue, reverse=True)
        partner.offer_breakdown = sorted(accum.offers.values(), key=lambda o: o.revenue, reverse=True)
        partner.daily_series = sorted(accum.daily.values(), key=lambda d: d.date)
        partners.append(partner)

        totals.clicks += partner.clicks
        totals.conversions += partner.conversions
        totals.revenue += partner.revenue
        totals.cpa_revenue += partner.cpa_revenue
        totals.cpm_revenue += partner.cpm_revenue
        totals.volume += partner.volume

    partners.sort(key=lambda p: p.revenue, reverse=True)
    totals.volume = max(totals.volume, allocator.total_sends)

    if allocator.has_matching_volume:
        source = allocator.source
    elif allocator.total_sends > 0:
        source = VolumeSource.ESTIMATED
    else:
        source = VolumeSource.NONE

    cpm_offers, cpa_offers = build_offer_centric_view(partners)
    today = now.astimezone(tz).date() if now.tzinfo is not None else now.date()
    mom = build_mom_comparison(
        conversions if mom_conversions is None else mom_conversions,
        totals.clicks,
        today,
        tz,
    )

    return DataPartnerAnalytics(
        partners=partners,
        totals=totals,
        mom_comparison=mom,
        cached_at=now.astimezone(timezone.utc).isoformat() if now.tzinfo else now.isoformat(),
        default_volume=allocator.total_sends,
        volume_source=source,
        cpm_offers=cpm_offers,
        cpa_offers=cpa_offers,
        cpm_total_revenue=cpm_total,
        cpm_unattributed=max(cpm_total - cpm_attributed, 0.0),
        warnings=warnings,
    )
