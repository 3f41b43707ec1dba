#!/usr/bin/env python3
"""CLI entry point for the revenue attribution collector.

Usage:
    # Run the periodic loops until interrupted
    PYTHONPATH=. python scripts/run_collector.py

    # One full fetch + attribution build, then print a summary
    PYTHONPATH=. python scripts/run_collector.py --once

    # Partner analytics for a specific window
    PYTHONPATH=. python scripts/run_collector.py --once --start 2026-01-01 --end 2026-01-31
"""
import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import aiohttp
from redis.asyncio import Redis

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.revrecon_core.attribution.campaigns import CampaignDirectory
from src.revrecon_core.attribution.collector import Collector
from src.revrecon_core.attribution.volume import VolumeResolver
from src.revrecon_core.attribution.volume_store import VolumeSnapshotStore
from src.revrecon_core.config import CollectorSettings
from src.revrecon_core.upstream.contact_activity import ContactActivityExporter
from src.revrecon_core.upstream.sending_client import SendingClient
from src.revrecon_core.upstream.tracking_client import TrackingClient
from src.revrecon_core.upstream.transport import ApiTransport


logger = logging.getLogger("run_collector")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_collector(
    settings: CollectorSettings,
    session: aiohttp.ClientSession,
    redis: Redis | None,
) -> Collector:
    tracking = None
    if settings.tracking_configured:
        tracking = TrackingClient(
            ApiTransport(
                settings.tracking_base_url,
                session,
                headers=settings.tracking_headers(),
                secrets=settings.secrets(),
            ),
            timezone_id=settings.tracking_timezone_id,
            currency_id=settings.tracking_currency_id,
            affiliate_ids=settings.tracking_affiliate_ids,
        )
    else:
        logger.warning("Tracking credentials not configured, tracking fetches disabled")

    sending = None
    resolver = None
    if settings.sending_configured:
        sending = SendingClient(
            ApiTransport(
                settings.sending_base_url,
                session,
                headers=settings.sending_headers(),
                secrets=settings.secrets(),
            )
        )
        store = VolumeSnapshotStore(redis) if redis is not None else None
        resolver = VolumeResolver(
            sending,
            exporter=ContactActivityExporter(sending, redis=redis),
            store=store,
        )
    else:
        logger.warning("Sending platform credentials not configured, volume will be unavailable")

    return Collector(
        settings,
        tracking,
        sending=sending,
        resolver=resolver,
        directory=CampaignDirectory(sending),
    )


def print_summary(collector: Collector) -> None:
    metrics = collector.get_latest_metrics()
    if metrics is None:
        print("No metrics collected")
        return
    print(f"Today: {metrics.today_conversions} conversions, ${metrics.today_revenue:,.2f}")
    print(f"Lookback revenue: ${collector.get_total_revenue():,.2f}")
    for prop in metrics.property_performance[:10]:
        print(f"  {prop.property_code:<18} ${prop.revenue:>12,.2f}  {prop.unattrib_reason}")
    report = metrics.reconciliation
    if report is not None:
        print(
            f"ESP reconciliation: method={report.method} gap=${report.gap:,.2f} "
            f"residual=${report.residual:,.2f}"
        )


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Revenue attribution collector")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one full fetch and attribution build, then exit",
    )
    parser.add_argument(
        "--start",
        type=str,
        help="Start date for a partner analytics window (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--end",
        type=str,
        help="End date for a partner analytics window (YYYY-MM-DD)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    settings = CollectorSettings.from_env()
    redis = Redis.from_url(settings.redis_url) if settings.redis_url else None

    timeout = aiohttp.ClientTimeout(total=300, connect=30)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            collector = build_collector(settings, session, redis)

            if args.once:
                await collector.refresh_sending()
                await collector.run_full_fetch()
                print_summary(collector)

                if args.start and args.end:
                    start_date = datetime.strptime(args.start, "%Y-%m-%d").date()
                    end_date = datetime.strptime(args.end, "%Y-%m-%d").date()
                    analytics = await collector.get_data_partner_analytics_for_range(
                        start_date, end_date
                    )
                    print(f"Partners {analytics.totals.label}:")
                    for partner in analytics.partners:
                        print(
                            f"  {partner.partner_prefix:<6} {partner.partner_name:<24} "
                            f"${partner.revenue:>12,.2f}  volume={partner.volume} "
                            f"({partner.volume_source.value})"
                        )
                await collector.stop()
                return

            collector.start()
            try:
                await asyncio.Event().wait()
            finally:
                await collector.stop()
    finally:
        if redis is not None:
            await redis.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
