"""Per-ESP revenue with gap closing against the authoritative offer total.

Conversion-level tracking misses revenue (CPM offers, untagged clicks), so
the per-ESP view built from linked campaigns falls short of the offer
report. The gap is distributed by offer send volume per ESP, else by
scaling existing entries, else into an explicit Unattributed entry.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..schemas.reports import SendingCampaignStats
from .identifiers import ParseError, normalize_esp_name, parse_campaign_name
from .models import (
    CampaignRevenue,
    ESPRevenuePerformance,
    OfferPerformance,
    ReconciliationReport,
    ratio,
)


logger = logging.getLogger(__name__)

TOLERANCE = 0.01  # one cent
UNKNOWN_ESP = "Unknown"
UNATTRIBUTED_ESP = "Unattributed"


@dataclass
class OfferESPVolume:
    offer_id: str
    offer_name: str = ""
    total_sent: int = 0
    esp_volumes: dict[str, int] = field(default_factory=dict)


@dataclass
class OfferESPAttribution:
    esp_name: str
    offer_id: str
    revenue: float
    payout: float
    sent_volume: int
    percentage: float


def build_offer_esp_volume_map(
    send_campaigns: Iterable[SendingCampaignStats],
) -> dict[str, OfferESPVolume]:
    """Offer id -> sends per ESP, from campaign names on the sending side."""
    offers: dict[str, OfferESPVolume] = {}
    for campaign in send_campaigns:
        if campaign.sent == 0 or not campaign.esp_name:
            continue
        try:
            parts = parse_campaign_name(campaign.name)
        except ParseError:
            continue
        if not parts.offer_id:
            continue

        esp_name = normalize_esp_name(campaign.esp_name)
        entry = offers.setdefault(
            parts.offer_id, OfferESPVolume(parts.offer_id, parts.offer_name)
        )
        entry.total_sent += campaign.sent
        entry.esp_volumes[esp_name] = entry.esp_volumes.get(esp_name, 0) + campaign.sent
    return offers


def attribute_offer_revenue(
    offers: Iterable[OfferPerformance],
    volume_map: dict[str, OfferESPVolume],
) -> list[OfferESPAttribution]:
    """Split each offer's revenue across ESPs by send share."""
    attributions = []
    for offer in offers:
        volume = volume_map.get(offer.offer_id)
        if volume is None or volume.total_sent == 0:
            continue
        for esp_name, sent in volume.esp_volumes.items():
            share = sent / volume.total_sent
            attributions.append(
                OfferESPAttribution(
                    esp_name=esp_name,
                    offer_id=offer.offer_id,
                    revenue=offer.revenue * share,
                    payout=offer.payout * share,
                    sent_volume=sent,
                    percentage=share * 100,
                )
            )
    return attributions


def aggregate_attributions(
    attributions: Iterable[OfferESPAttribution],
) -> dict[str, ESPRevenuePerformance]:
    result: dict[str, ESPRevenuePerformance] = {}
    for attr in attributions:
        esp = result.setdefault(attr.esp_name, ESPRevenuePerformance(esp_name=attr.esp_name))
        esp.revenue += attr.revenue
        esp.payout += attr.payout
        esp.total_sent += attr.sent_volume
    return result


def _conversion_based(campaigns: Iterable[CampaignRevenue]) -> dict[str, ESPRevenuePerformance]:
    esp_map: dict[str, ESPRevenuePerformance] = {}
    for campaign in campaigns:
        if not campaign.linked:
            continue
        name = normalize_esp_name(campaign.esp_name or UNKNOWN_ESP)
        esp = esp_map.setdefault(name, ESPRevenuePerformance(esp_name=name))
        esp.campaign_count += 1
        esp.total_sent += campaign.sent
        esp.total_delivered += campaign.delivered
        esp.total_opens += campaign.unique_opens
        esp.clicks += campaign.clicks
        esp.conversions += campaign.conversions
        esp.revenue += campaign.revenue
        esp.payout += campaign.payout
    return esp_map


def calculate_esp_revenue(
    campaigns: list[CampaignRevenue],
    offers: list[OfferPerformance],
    send_campaigns: Optional[list[SendingCampaignStats]] = None,
) -> tuple[list[ESPRevenuePerformance], ReconciliationReport]:
    """Per-ESP revenue whose sum equals the offer-level total.

    Args:
        campaigns: Campaigns, enriched with ESP data where linked
        offers: Offer performance from the offer report (authoritative)
        send_campaigns: Sending-platform campaign stats for offer->ESP volume

    Returns:
        (ESP entries sorted by revenue descending, reconciliation report)
    """
    esp_map = _conversion_based(campaigns)
    reconstructed = sum(esp.revenue for esp in esp_map.values())
    authoritative = sum(offer.revenue for offer in offers)
    total_payout = sum(offer.payout for offer in offers)

    report = ReconciliationReport(
        authoritative_revenue=authoritative,
        reconstructed_revenue=reconstructed,
        gap=authoritative - reconstructed,
    )

    attributed_via_offers = False
    if report.gap > TOLERANCE and send_campaigns:
        logger.info(
            "ESP revenue: $%.2f unattributed (total $%.2f, conversion-based $%.2f)",
            report.gap,
            authoritative,
            reconstructed,
        )
        volume_map = build_offer_esp_volume_map(send_campaigns)
        offer_based = aggregate_attributions(attribute_offer_revenue(offers, volume_map))
        offer_based_total = sum(esp.revenue for esp in offer_based.values())

        if offer_based_total > 0:
            scale = report.gap / offer_based_total
            logger.info("ESP revenue: scaling offer-based split by %.4f", scale)
            for name, offer_esp in offer_based.items():
                existing = esp_map.get(name)
                if existing is not None:
                    existing.revenue += offer_esp.revenue * scale
                    existing.payout += offer_esp.payout * scale
                else:
                    esp_map[name] = ESPRevenuePerformance(
                        esp_name=name,
                        revenue=offer_esp.revenue * scale,
                        payout=offer_esp.payout * scale,
                        total_sent=offer_esp.total_sent,
                    )
            attributed_via_offers = True
            report.method = "offer_volume"

    current = sum(esp.revenue for esp in esp_map.values())
    remaining = authoritative - current
    if remaining > TOLERANCE:
        if esp_map and current > 0 and not attributed_via_offers:
            scale = authoritative / current
            logger.info(
                "ESP revenue: scaling existing ESPs by %.4f to cover $%.2f",
                scale,
                remaining,
            )
            for esp in esp_map.values():
                esp.revenue *= scale
                esp.payout *= scale
            report.method = "scaled"
        elif not esp_map or current == 0:
            logger.info(
                "ESP revenue: no attribution basis, creating %s entry for $%.2f",
                UNATTRIBUTED_ESP,
                remaining,
            )
            entry = esp_map.setdefault(UNATTRIBUTED_ESP, ESPRevenuePerformance(esp_name=UNATTRIBUTED_ESP))
            entry.revenue += remaining
            entry.payout = max(entry.payout, total_payout)
            report.method = "unattributed_entry"
            report.unattributed_revenue = remaining
            report.unattributed_reason = "no ESP-linked campaigns or offer send volume"

    _enforce_total(esp_map, authoritative, report)

    total = sum(esp.revenue for esp in esp_map.values())
    result = []
    for esp in esp_map.values():
        esp.percentage = ratio(esp.revenue, total) * 100
        esp.avg_ecpm = ratio(esp.revenue, esp.total_delivered) * 1000
        esp.conversion_rate = ratio(esp.conversions, esp.clicks)
        esp.epc = ratio(esp.revenue, esp.clicks)
        result.append(esp)
    result.sort(key=lambda esp: esp.revenue, reverse=True)

    report.residual = authoritative - total
    logger.info(
        "ESP revenue: %s ESPs, $%.2f attributed (was $%.2f conversion-based, method=%s)",
        len(result),
        total,
        reconstructed,
        report.method,
    )
    return result, report


def _enforce_total(
    esp_map: dict[str, ESPRevenuePerformance],
    authoritative: float,
    report: ReconciliationReport,
) -> None:
    """Make the ESP sum match the authoritative total within one cent."""
    current = sum(esp.revenue for esp in esp_map.values())
    diff = authoritative - current
    if abs(diff) <= TOLERANCE:
        return

    if current > 0:
        # Partial offer-volume split left a residual, or reconstructed > total.
        scale = authoritative / current
        logger.info("ESP revenue: final rescale by %.6f (diff $%.2f)", scale, diff)
        for esp in esp_map.values():
            esp.revenue *= scale
            esp.payout *= scale
        if report.method == "none":
            report.method = "scaled"
        return

    if diff > 0:
        entry = esp_map.setdefault(UNATTRIBUTED_ESP, ESPRevenuePerformance(esp_name=UNATTRIBUTED_ESP))
        entry.revenue += diff
        report.unattributed_revenue += diff
        report.unattributed_reason = report.unattributed_reason or "no attribution basis"
        report.method = "unattributed_entry"
