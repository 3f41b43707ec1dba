"""Unit tests for data-partner analytics and CPM revenue attribution."""
from datetime import date, datetime, timezone

import pytest

from src.revrecon_core.attribution.models import Conversion, OfferPerformance, VolumeSource
from src.revrecon_core.attribution.partners import (
    build_mom_comparison,
    build_partner_analytics,
    cpm_offer_revenue,
    period_label,
)
from src.revrecon_core.attribution.volume import VolumeMap
from src.revrecon_core.schemas.reports import (
    EntityColumn,
    EntityReport,
    EntityRow,
    ReportingTotals,
)

START = date(2026, 1, 1)
END = date(2026, 1, 31)
NOW = datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc)


def _sub2_row(sub2: str, clicks: int) -> EntityRow:
    return EntityRow(
        columns=[EntityColumn(column_type="sub2", label=sub2)],
        reporting=ReportingTotals(total_click=clicks),
    )


def _offer_sub2_row(offer_id: str, offer_name: str, sub2: str, clicks: int) -> EntityRow:
    return EntityRow(
        columns=[
            EntityColumn(column_type="offer", id=offer_id, label=offer_name),
            EntityColumn(column_type="sub2", label=sub2),
        ],
        reporting=ReportingTotals(total_click=clicks),
    )


def _conversion(conv_id: str, revenue: float, when: datetime, sub2: str = "ATT_AUTO") -> Conversion:
    return Conversion(
        conversion_id=conv_id,
        offer_id="77",
        offer_name="Auto Quote CPA",
        revenue=revenue,
        sub2=sub2,
        conversion_time=when,
    )


@pytest.fixture
def sub2_report():
    return EntityReport(
        table=[
            _sub2_row("M77_WIT_", 300),
            _sub2_row("GLB_FIN", 100),
            _sub2_row("a1b2c3d4e5", 999),
            _sub2_row("{{sub2}}", 50),
        ]
    )


@pytest.fixture
def offer_sub2_report():
    return EntityReport(
        table=[
            _offer_sub2_row("900", "Acme Newsletter CPM", "M77_WIT", 300),
            _offer_sub2_row("900", "Acme Newsletter CPM", "GLB_FIN", 100),
            _offer_sub2_row("77", "Auto Quote CPA", "ATT_AUTO", 40),
        ]
    )


@pytest.fixture
def offers():
    return [
        OfferPerformance(offer_id="900", offer_name="Acme Newsletter CPM", revenue=10000.0),
        OfferPerformance(offer_id="77", offer_name="Auto Quote CPA", revenue=50.0),
    ]


def test_cpm_offer_revenue_only_cpm(offers):
    """Test only CPM offers contribute to the split pool."""
    assert cpm_offer_revenue(offers) == {"900": 10000.0}


def test_period_label():
    """Test the display label for a window."""
    assert period_label(START, END) == "Jan 1 – Jan 31, 2026"


def test_cpm_revenue_split_by_click_share(sub2_report, offer_sub2_report, offers):
    """Test $10,000 CPM revenue over 300/100 clicks gives $7,500 and $2,500."""
    analytics = build_partner_analytics(
        START,
        END,
        sub2_report,
        offer_sub2_report,
        offers,
        [_conversion("c1", 50.0, datetime(2026, 1, 15, tzinfo=timezone.utc))],
        VolumeMap(),
        8000,
        now=NOW,
    )
    partners = {p.partner_prefix: p for p in analytics.partners}

    assert partners["M77"].partner_name == "Media717"
    assert partners["M77"].cpm_revenue == 7500.0
    assert partners["GLB"].cpm_revenue == 2500.0
    assert partners["ATT"].cpa_revenue == 50.0
    assert [p.partner_prefix for p in analytics.partners] == ["M77", "GLB", "ATT"]

    assert analytics.cpm_total_revenue == 10000.0
    assert analytics.cpm_unattributed == 0.0
    assert analytics.warnings == []
    assert analytics.totals.label == "Jan 1 – Jan 31, 2026"
    assert analytics.totals.revenue == pytest.approx(10050.0)
    assert analytics.cached_at == "2026-02-01T09:30:00+00:00"


def test_partner_clicks_and_rates(sub2_report, offer_sub2_report, offers):
    """Test clicks come from the sub2 report and hashes are ignored."""
    analytics = build_partner_analytics(
        START, END, sub2_report, offer_sub2_report, offers, [], VolumeMap(), 0, now=NOW
    )
    partners = {p.partner_prefix: p for p in analytics.partners}

    assert set(partners) == {"M77", "GLB"}
    assert partners["M77"].clicks == 300
    assert partners["M77"].epc == 25.0
    assert partners["M77"].data_set_breakdown[0].data_set_code == "M77_WIT"
    assert analytics.totals.clicks == 400


def test_estimated_volume_by_click_share(sub2_report, offer_sub2_report, offers):
    """Test volume is estimated from click share when no map matches."""
    analytics = build_partner_analytics(
        START, END, sub2_report, offer_sub2_report, offers, [], VolumeMap(), 8000, now=NOW
    )
    partners = {p.partner_prefix: p for p in analytics.partners}

    assert partners["M77"].volume == 6000
    assert partners["M77"].volume_source == VolumeSource.ESTIMATED
    assert partners["GLB"].volume == 2000
    assert analytics.totals.volume == 8000
    assert analytics.default_volume == 8000
    assert analytics.volume_source == VolumeSource.ESTIMATED


def test_exact_volume_used_when_matching(sub2_report, offer_sub2_report, offers):
    """Test exact per-data-set volume is summed per partner."""
    volume_map = VolumeMap(
        {"M77_WIT": 40000, "M77_HOME": 10000, "GLB_FIN": 20000, "SCO_X": 5000},
        VolumeSource.EXACT,
    )

    analytics = build_partner_analytics(
        START, END, sub2_report, offer_sub2_report, offers, [], volume_map, 0, now=NOW
    )
    partners = {p.partner_prefix: p for p in analytics.partners}

    assert partners["M77"].volume == 50000
    assert partners["M77"].volume_source == VolumeSource.EXACT
    assert partners["M77"].data_set_breakdown[0].volume == 40000
    assert analytics.volume_source == VolumeSource.EXACT
    assert analytics.totals.volume == 75000


def test_no_volume_reports_none(sub2_report, offers):
    """Test zero sends and no map leave volume at zero with source NONE."""
    analytics = build_partner_analytics(
        START, END, sub2_report, None, offers, [], VolumeMap(), 0, now=NOW
    )

    assert analytics.volume_source == VolumeSource.NONE
    assert all(p.volume == 0 for p in analytics.partners)
    assert analytics.cpm_unattributed == 10000.0


def test_zero_click_cpm_offer_warns(sub2_report, offers):
    """Test a CPM offer with revenue but no partner clicks produces a warning."""
    report = EntityReport(table=[_offer_sub2_row("900", "Acme Newsletter CPM", "M77_WIT", 0)])

    analytics = build_partner_analytics(
        START, END, sub2_report, report, offers, [], VolumeMap(), 0, now=NOW
    )

    assert len(analytics.warnings) == 1
    assert "900" in analytics.warnings[0]
    assert analytics.cpm_unattributed == 10000.0


def test_cpm_offer_missing_from_cross_tab_warns(sub2_report, offer_sub2_report, offers):
    """Test a CPM offer with revenue and no offer x sub2 rows is still flagged."""
    offers = offers + [
        OfferPerformance(offer_id="901", offer_name="Daily Digest CPM", revenue=500.0)
    ]

    analytics = build_partner_analytics(
        START, END, sub2_report, offer_sub2_report, offers, [], VolumeMap(), 0, now=NOW
    )

    assert analytics.cpm_unattributed == pytest.approx(500.0)
    assert len(analytics.warnings) == 1
    assert "901" in analytics.warnings[0]
    assert "Daily Digest CPM" in analytics.warnings[0]


def test_cpm_offers_flagged_without_cross_tab_report(sub2_report, offers):
    """Test every CPM offer with revenue is flagged when no cross-tab report exists."""
    analytics = build_partner_analytics(
        START, END, sub2_report, None, offers, [], VolumeMap(), 0, now=NOW
    )

    assert len(analytics.warnings) == 1
    assert "900" in analytics.warnings[0]
    assert analytics.cpm_unattributed == 10000.0


def test_offer_centric_view(sub2_report, offer_sub2_report, offers):
    """Test CPM and CPA offers are inverted with click shares."""
    analytics = build_partner_analytics(
        START,
        END,
        sub2_report,
        offer_sub2_report,
        offers,
        [_conversion("c1", 50.0, datetime(2026, 1, 15, tzinfo=timezone.utc))],
        VolumeMap(),
        0,
        now=NOW,
    )

    (cpm_offer,) = analytics.cpm_offers
    assert cpm_offer.offer_id == "900"
    assert cpm_offer.total_clicks == 400
    assert cpm_offer.partners[0].partner_prefix == "M77"
    assert cpm_offer.partners[0].click_share == 75.0

    (cpa_offer,) = analytics.cpa_offers
    assert cpa_offer.offer_id == "77"
    assert cpa_offer.total_conversions == 1


def test_cpa_from_data_set_code_and_daily_series():
    """Test CPA attribution and the per-day series for a partner."""
    convs = [
        _conversion("c1", 20.0, datetime(2026, 1, 16, tzinfo=timezone.utc)),
        _conversion("c2", 30.0, datetime(2026, 1, 15, tzinfo=timezone.utc)),
        _conversion("c3", 99.0, datetime(2026, 1, 15, tzinfo=timezone.utc), sub2=""),
    ]

    analytics = build_partner_analytics(START, END, None, None, [], convs, VolumeMap(), 0, now=NOW)

    (partner,) = analytics.partners
    assert partner.partner_prefix == "ATT"
    assert partner.conversions == 2
    assert partner.revenue == 50.0
    assert [d.date for d in partner.daily_series] == ["2026-01-15", "2026-01-16"]


def test_mom_comparison():
    """Test current vs previous month for partner-tagged conversions."""
    convs = [
        _conversion("c1", 100.0, datetime(2026, 2, 5, tzinfo=timezone.utc)),
        _conversion("c2", 50.0, datetime(2026, 1, 20, tzinfo=timezone.utc)),
        _conversion("c3", 50.0, datetime(2026, 1, 21, tzinfo=timezone.utc)),
        _conversion("c4", 999.0, datetime(2026, 2, 1, tzinfo=timezone.utc), sub2=""),
        _conversion("c5", 999.0, datetime(2025, 12, 31, tzinfo=timezone.utc)),
    ]

    mom = build_mom_comparison(convs, 500, date(2026, 2, 10))

    assert mom.current_month.label == "February 2026"
    assert mom.previous_month.label == "January 2026"
    assert mom.current_month.conversions == 1
    assert mom.current_month.clicks == 500
    assert mom.previous_month.revenue == 100.0
    assert mom.revenue_change_pct == 0.0
    assert mom.conversions_change_pct == -50.0
    assert mom.clicks_change_pct == 0.0


def test_mom_comparison_january_wraps_year():
    """Test the previous month of January is December of the prior year."""
    mom = build_mom_comparison([], 0, date(2026, 1, 3))

    assert mom.previous_month.label == "December 2025"
