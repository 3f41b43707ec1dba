"""Unit tests for the collector service."""
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.revrecon_core.attribution.collector import Collector, _merge_date_rows
from src.revrecon_core.attribution.models import CollectorState
from src.revrecon_core.config import CollectorSettings
from src.revrecon_core.schemas.reports import (
    ConversionRecord,
    EntityColumn,
    EntityReport,
    EntityRow,
    ReportingTotals,
    SendingCampaignStats,
)
from src.revrecon_core.upstream.exceptions import UpstreamError

TODAY = date(2026, 1, 26)
NOW = datetime(2026, 1, 26, 15, 0, tzinfo=timezone.utc)
TDIH_TAG = "TDIH_407_3926_01262026_3219537162"
UNKNOWN_TAG = "ZZZ_400_01262026_3219015617"


def _ts(day: int, hour: int = 12) -> int:
    return int(datetime(2026, 1, day, hour, tzinfo=timezone.utc).timestamp())


def _row(columns, clicks=0, conversions=0, revenue=0.0):
    return EntityRow(
        columns=[EntityColumn(column_type=t, id=i, label=label) for t, i, label in columns],
        reporting=ReportingTotals(total_click=clicks, conversions=conversions, revenue=revenue),
    )


def _record(conv_id: str, revenue: float, sub1: str = TDIH_TAG, day: int = 26) -> ConversionRecord:
    return ConversionRecord(
        conversion_id=conv_id,
        offer_id="407",
        offer_name="Acme Insurance CPA",
        revenue=revenue,
        sub1=sub1,
        sub2="M77_WIT",
        conversion_unix_timestamp=_ts(day),
    )


@pytest.fixture
def settings():
    return CollectorSettings(
        tracking_api_key="secret-key",
        lookback_days=2,
        report_spacing_s=0,
        retry_backoff_s=0,
        timezone="UTC",
    )


@pytest.fixture
def tracking():
    """Fake tracking client returning one day of reports."""
    client = MagicMock()
    client.get_report_by_date = AsyncMock(
        return_value=EntityReport(
            table=[
                _row([("date", str(_ts(26)), "")], 40, 2, 150.0),
                _row([("date", str(_ts(25)), "")], 20, 1, 30.0),
            ]
        )
    )
    client.get_report_by_offer = AsyncMock(
        return_value=EntityReport(table=[_row([("offer", "407", "Acme Insurance CPA")], 60, 3, 180.0)])
    )
    client.get_report_by_sub1 = AsyncMock(
        return_value=EntityReport(
            table=[
                _row([("sub1", "", TDIH_TAG)], 50, 2, 150.0),
                _row([("sub1", "", UNKNOWN_TAG)], 10, 1, 30.0),
            ]
        )
    )
    client.get_report_by_sub2 = AsyncMock(
        return_value=EntityReport(table=[_row([("sub2", "", "M77_WIT")], 60)])
    )
    client.get_report_by_offer_sub2 = AsyncMock(
        return_value=EntityReport(
            table=[_row([("offer", "407", "Acme Insurance CPA"), ("sub2", "", "M77_WIT")], 60)]
        )
    )

    async def conversions(start, end):
        if start == TODAY:
            return [_record("c1", 100.0), _record("c2", 50.0)]
        if start == date(2026, 1, 25):
            return [_record("c3", 30.0, sub1=UNKNOWN_TAG, day=25)]
        return []

    client.get_conversions = AsyncMock(side_effect=conversions)
    return client


@pytest.fixture
def sending():
    """Fake sending-platform client."""
    client = MagicMock()
    client.get_campaign_stats = AsyncMock(
        return_value=[
            SendingCampaignStats(
                mailing_id="3219537162",
                name="01262026_TDIH_407_Acme_OPENERS",
                esp_name="SparkPost",
                sent=10000,
                delivered=9000,
            )
        ]
    )
    client.get_campaign = AsyncMock(return_value={"name": "01252026_HRO_400_Widget_ALL"})
    return client


@pytest.fixture
def collector(settings, tracking, sending):
    c = Collector(settings, tracking, sending=sending, now=lambda: NOW)
    c.CONVERSION_DAY_SPACING = 0
    return c


def test_lookback_window(collector):
    """Test the window ends today and spans the configured days."""
    assert collector.lookback_window() == (date(2026, 1, 24), TODAY)


def test_accessors_before_first_build(collector):
    """Test accessors return empty values until metrics are published."""
    assert collector.get_latest_metrics() is None
    assert collector.get_campaign_revenue() == []
    assert collector.get_reconciliation() is None
    assert collector.get_mom_comparison() is None
    assert collector.get_total_revenue() == 0


@pytest.mark.asyncio
async def test_full_fetch_publishes_metrics(collector, tracking):
    """Test a full fetch pulls every report and publishes a snapshot."""
    await collector.run_full_fetch()

    assert collector.state == CollectorState.IDLE
    assert collector.last_fetch() == NOW
    assert tracking.get_conversions.await_count == 3
    assert collector.get_total_revenue() == 180.0

    metrics = collector.get_latest_metrics()
    assert metrics.today_revenue == 150.0
    assert collector.get_property("TDIH").revenue == 150.0
    assert [d.date for d in collector.get_daily_performance_by_range(TODAY, TODAY)] == ["2026-01-26"]

    esp_total = sum(e.revenue for e in collector.get_esp_revenue())
    assert abs(esp_total - 180.0) <= 0.01

    analytics = collector.get_data_partner_analytics()
    assert analytics.partners[0].partner_prefix == "M77"
    assert analytics.partners[0].clicks == 60
    assert collector.get_mom_comparison() is analytics.mom_comparison


@pytest.mark.asyncio
async def test_full_fetch_links_campaigns_and_resolves_unknowns(collector, sending):
    """Test sending stats link campaigns and unknown properties are looked up."""
    await collector.run_full_fetch()

    linked = collector.get_campaign("3219537162")
    assert linked.linked
    assert linked.esp_name == "SparkPost"
    assert linked.rpm == pytest.approx(15.0)

    resolved = collector.get_campaign("3219015617")
    assert resolved.property_code == "HRO"
    assert collector.get_property("HRO").revenue == 30.0
    assert collector.get_property("UNKNOWN_PROPERTY") is None
    sending.get_campaign.assert_awaited_once_with("3219015617")


@pytest.mark.asyncio
async def test_failed_report_keeps_previous(collector, tracking):
    """Test a report that fails twice leaves the last good one in place."""
    await collector.run_full_fetch()
    tracking.get_report_by_sub1.side_effect = UpstreamError("HTTP 500", status=500, retryable=True)

    await collector.run_full_fetch()

    assert tracking.get_report_by_sub1.await_count == 3
    assert collector.get_property("TDIH").revenue == 150.0


@pytest.mark.asyncio
async def test_report_retried_once_after_backoff(collector, tracking):
    """Test a single failure is retried and the retry result is used."""
    good = tracking.get_report_by_offer.return_value
    tracking.get_report_by_offer.side_effect = [
        UpstreamError("HTTP 503", status=503, retryable=True),
        good,
    ]

    await collector.run_full_fetch()

    assert tracking.get_report_by_offer.await_count == 2
    assert collector.get_offer_performance()[0].offer_id == "407"


@pytest.mark.asyncio
async def test_client_error_report_not_retried(collector, tracking):
    """Test a non-retryable 4xx is fetched once and the report is skipped."""
    tracking.get_report_by_offer.side_effect = UpstreamError("HTTP 400 bad request", status=400)

    await collector.run_full_fetch()

    assert tracking.get_report_by_offer.await_count == 1
    assert collector._offer_report is None
    assert collector.get_property("TDIH").revenue == 150.0


@pytest.mark.asyncio
async def test_failed_conversion_days_keep_previous(collector, tracking):
    """Test conversions that fail after a retry keep the last good records."""
    await collector.run_full_fetch()
    tracking.get_conversions.side_effect = UpstreamError("HTTP 503", status=503, retryable=True)

    await collector.run_full_fetch()

    assert tracking.get_conversions.await_count == 3 + 6
    assert sorted(c.conversion_id for c in collector._conversions) == ["c1", "c2", "c3"]
    analytics = collector.get_data_partner_analytics()
    assert analytics.partners[0].cpa_revenue == 180.0


@pytest.mark.asyncio
async def test_conversion_day_retried_once(collector, tracking):
    """Test a transient failure for one day is retried and its records kept."""
    fetch_day = tracking.get_conversions.side_effect
    failures = []

    async def flaky(start, end):
        if start == TODAY and not failures:
            failures.append(start)
            raise UpstreamError("HTTP 429", status=429, retryable=True)
        return await fetch_day(start, end)

    tracking.get_conversions.side_effect = flaky

    await collector.run_full_fetch()

    assert tracking.get_conversions.await_count == 4
    assert sorted(c.conversion_id for c in collector._conversions) == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_incremental_fetch_replaces_today(collector, tracking):
    """Test today's date row and conversions are replaced, history kept."""
    await collector.run_full_fetch()

    tracking.get_report_by_date.return_value = EntityReport(
        table=[_row([("date", str(_ts(26, 18)), "")], 80, 4, 400.0)]
    )
    tracking.get_conversions.side_effect = None
    tracking.get_conversions.return_value = [_record("c9", 400.0)]

    await collector.run_incremental_fetch()

    daily = {d.date: d for d in collector.get_daily_performance()}
    assert daily["2026-01-26"].revenue == 400.0
    assert daily["2026-01-25"].revenue == 30.0
    assert collector.get_latest_metrics().today_revenue == 400.0
    assert collector.state == CollectorState.IDLE

    recent = collector.get_latest_metrics().recent_conversions
    assert [c.conversion_id for c in recent] == ["c3", "c9"]


@pytest.mark.asyncio
async def test_refresh_sending_records_total(settings, tracking, sending):
    """Test the periodic refresh primes links and reports total sends."""
    resolver = MagicMock()
    resolver.record_periodic_total = MagicMock()
    collector = Collector(settings, tracking, sending=sending, resolver=resolver, now=lambda: NOW)

    await collector.refresh_sending()

    resolver.record_periodic_total.assert_called_once_with(10000)
    assert "3219537162" in collector.directory.links_for(["3219537162"])


@pytest.mark.asyncio
async def test_refresh_sending_failure_keeps_campaigns(collector, sending):
    """Test a failed refresh leaves the previous stats in place."""
    await collector.refresh_sending()
    sending.get_campaign_stats.side_effect = UpstreamError("HTTP 502", status=502)

    await collector.refresh_sending()

    assert len(collector._send_campaigns) == 1


@pytest.mark.asyncio
async def test_range_analytics_cached(collector, tracking):
    """Test repeated range queries hit the tracking network once."""
    start, end = date(2026, 1, 25), TODAY

    first = await collector.get_data_partner_analytics_for_range(start, end)
    second = await collector.get_data_partner_analytics_for_range(start, end)

    assert tracking.get_report_by_sub2.await_count == 1
    assert tracking.get_report_by_offer_sub2.await_count == 1
    assert tracking.get_conversions.await_count == 2
    assert first.totals.label == "Jan 25 – Jan 26, 2026"
    assert second.partners[0].cpm_revenue == 0.0
    assert second.partners[0].cpa_revenue == 180.0


@pytest.mark.asyncio
async def test_range_analytics_falls_back_on_error(collector, tracking):
    """Test a failed range fetch uses the periodic report instead."""
    await collector.run_full_fetch()
    tracking.get_report_by_sub2.side_effect = UpstreamError("HTTP 500", status=500)

    analytics = await collector.get_data_partner_analytics_for_range(date(2026, 1, 25), TODAY)

    assert analytics.partners[0].clicks == 60
    assert len(collector.sub2_cache) == 0


@pytest.mark.asyncio
async def test_incomplete_range_conversions_not_cached(collector, tracking):
    """Test a window with a failed day is not cached and uses periodic conversions."""
    await collector.run_full_fetch()
    fetch_day = tracking.get_conversions.side_effect

    async def day_25_down(start, end):
        if start == date(2026, 1, 25):
            raise UpstreamError("HTTP 503", status=503, retryable=True)
        return await fetch_day(start, end)

    tracking.get_conversions.side_effect = day_25_down

    analytics = await collector.get_data_partner_analytics_for_range(date(2026, 1, 25), TODAY)

    assert len(collector.conversions_cache) == 0
    assert analytics.partners[0].cpa_revenue == 180.0

    calls = tracking.get_conversions.await_count
    await collector.get_data_partner_analytics_for_range(date(2026, 1, 25), TODAY)
    assert tracking.get_conversions.await_count == calls + 3


@pytest.mark.asyncio
async def test_no_tracking_skips_fetch(settings):
    """Test the collector does nothing without tracking credentials."""
    collector = Collector(settings, None, now=lambda: NOW)

    await collector.run_full_fetch()

    assert collector.get_latest_metrics() is None
    assert await collector.fetch_conversions(TODAY, TODAY) == []


@pytest.mark.asyncio
async def test_start_and_stop(settings):
    """Test the loops start and shut down cleanly."""
    collector = Collector(settings, None, now=lambda: NOW)

    collector.start()
    assert len(collector._tasks) == 2
    await collector.stop()

    assert collector.state == CollectorState.STOPPED
    assert collector._tasks == []


def test_merge_date_rows_replaces_today_only():
    """Test only rows falling on today are replaced."""
    existing = EntityReport(
        table=[
            _row([("date", str(_ts(25)), "")], revenue=30.0),
            _row([("date", str(_ts(26)), "")], revenue=150.0),
        ]
    )
    fresh = EntityReport(table=[_row([("date", str(_ts(26, 20)), "")], revenue=175.0)])

    merged = _merge_date_rows(existing, fresh, TODAY, timezone.utc)

    assert [r.reporting.revenue for r in merged.table] == [30.0, 175.0]
    assert _merge_date_rows(None, fresh, TODAY, timezone.utc) is fresh
