"""Revenue attribution layer.

Reconciles tracking-network revenue with sending-platform volume:
- campaign, property, offer and daily aggregates (engine)
- data-partner CPM/CPA attribution with send volume (partners, volume)
- per-ESP revenue closed against the offer-level total (reconciliation)

The Collector owns the periodic fetch loops and the published snapshot.
"""
from .collector import Collector
from .engine import AttributionInputs, aggregate_click_metrics, build_metrics
from .identifiers import ParseError, parse_campaign_name, parse_sub1, parse_sub2
from .partners import build_partner_analytics
from .reconciliation import calculate_esp_revenue
from .volume import PartnerVolumeAllocator, VolumeMap, VolumeResolver

__all__ = [
    "Collector",
    "AttributionInputs",
    "aggregate_click_metrics",
    "build_metrics",
    "build_partner_analytics",
    "calculate_esp_revenue",
    "ParseError",
    "parse_sub1",
    "parse_sub2",
    "parse_campaign_name",
    "PartnerVolumeAllocator",
    "VolumeMap",
    "VolumeResolver",
]
