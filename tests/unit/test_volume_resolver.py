"""Unit tests for send-volume resolution and per-partner allocation."""
import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.revrecon_core.attribution.models import VolumeSource
from src.revrecon_core.attribution.volume import (
    PartnerVolumeAllocator,
    VolumeMap,
    VolumeResolver,
    build_list_volumes,
    build_segment_volumes,
)
from src.revrecon_core.attribution.volume_store import VolumeSnapshot
from src.revrecon_core.schemas.reports import ListInfo
from src.revrecon_core.upstream.exceptions import ExportJobLockedError, UpstreamError

START = date(2026, 1, 1)
END = date(2026, 1, 31)
NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)

SEGMENT_ROWS = [
    {"segment_name": "M77_WIT_OPENERS", "sent": "1000"},
    {"segment_name": "GLB_FIN_ALL", "sent": 500},
    {"segment_name": "ATT_AUTO_CLICKERS", "sent": 250},
    {"segment_name": "Internal Test", "sent": 999},
]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sending_client():
    """Mock sending-platform client."""
    client = MagicMock()
    client.get_sends_by_segment = AsyncMock(return_value=SEGMENT_ROWS)
    client.get_lists = AsyncMock(return_value=[])
    client.get_sends_by_list = AsyncMock(return_value=[])
    client.get_daily_stats = AsyncMock(return_value=[])
    return client


def test_build_segment_volumes_strips_suffixes():
    """Test segment rows are grouped by data-set code."""
    volumes = build_segment_volumes(SEGMENT_ROWS)

    assert volumes == {"M77_WIT": 1000, "GLB_FIN": 500, "ATT_AUTO": 250}


def test_build_list_volumes_joins_names():
    """Test list sends are keyed by the cleaned list name."""
    lists = [ListInfo(id=1, name="m77_wit_"), ListInfo(id=2, name="GLB_FIN")]
    rows = [
        {"list_id": "1", "sent": 100},
        {"list_id": 1, "sent": 50},
        {"list_id": 2, "sent": 10},
        {"list_id": 3, "sent": 99},
    ]

    assert build_list_volumes(lists, rows) == {"M77_WIT": 150, "GLB_FIN": 10}


@pytest.mark.asyncio
async def test_segment_strategy_result_is_cached(sending_client):
    """Test the first strategy result is cached for the window."""
    resolver = VolumeResolver(sending_client, clock=FakeClock())

    first = await resolver.get_volume_map(START, END)
    second = await resolver.get_volume_map(START, END)

    assert first.source == VolumeSource.SEGMENT
    assert first.volumes["M77_WIT"] == 1000
    assert second is first
    assert sending_client.get_sends_by_segment.await_count == 1


@pytest.mark.asyncio
async def test_sparse_segments_fall_back_to_lists(sending_client):
    """Test segment maps with two or fewer codes are discarded."""
    sending_client.get_sends_by_segment.return_value = SEGMENT_ROWS[:2]
    sending_client.get_lists.return_value = [ListInfo(id=7, name="M77_WIT")]
    sending_client.get_sends_by_list.return_value = [{"list_id": 7, "sent": 42}]
    resolver = VolumeResolver(sending_client)

    result = await resolver.get_volume_map(START, END)

    assert result.source == VolumeSource.LIST
    assert result.volumes == {"M77_WIT": 42}


@pytest.mark.asyncio
async def test_empty_result_not_cached(sending_client):
    """Test an all-empty resolution is returned but not cached."""
    sending_client.get_sends_by_segment.side_effect = UpstreamError("HTTP 429", status=429)
    resolver = VolumeResolver(sending_client)

    result = await resolver.get_volume_map(START, END)

    assert result == VolumeMap()
    assert len(resolver.cache) == 0


@pytest.mark.asyncio
async def test_persisted_exact_snapshot_wins(sending_client):
    """Test a fresh persisted snapshot is returned as exact and promoted."""
    store = MagicMock()
    store.load = AsyncMock(
        return_value=VolumeSnapshot(
            start=START,
            end=END,
            volumes={"M77_WIT": 10, "GLB_FIN": 20, "ATT_AUTO": 30},
            generated_at=NOW - timedelta(hours=1),
        )
    )
    resolver = VolumeResolver(sending_client, store=store, wall_clock=lambda: NOW)

    result = await resolver.get_volume_map(START, END)

    assert result.source == VolumeSource.EXACT
    assert result.total == 60
    assert resolver.cache.get("2026-01-01|2026-01-31") == result
    sending_client.get_sends_by_segment.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_snapshot_ignored(sending_client):
    """Test snapshots older than a day fall through to the strategies."""
    store = MagicMock()
    store.load = AsyncMock(
        return_value=VolumeSnapshot(
            start=START,
            end=END,
            volumes={"M77_WIT": 10, "GLB_FIN": 20, "ATT_AUTO": 30},
            generated_at=NOW - timedelta(hours=25),
        )
    )
    resolver = VolumeResolver(sending_client, store=store, wall_clock=lambda: NOW)

    result = await resolver.get_volume_map(START, END)

    assert result.source == VolumeSource.SEGMENT


@pytest.mark.asyncio
async def test_store_errors_are_not_fatal(sending_client):
    """Test a Redis failure on load falls through to the strategies."""
    store = MagicMock()
    store.load = AsyncMock(side_effect=RedisConnectionError("down"))
    resolver = VolumeResolver(sending_client, store=store)

    result = await resolver.get_volume_map(START, END)

    assert result.source == VolumeSource.SEGMENT


@pytest.mark.asyncio
async def test_exact_export_runs_detached_and_caches(sending_client):
    """Test the export launches in the background and its result replaces the estimate."""
    gate = asyncio.Event()
    exact = {"M77_WIT": 1500, "GLB_FIN": 700, "ATT_AUTO": 300}

    async def export_volumes(start, end, cancel_event):
        await gate.wait()
        return exact

    exporter = MagicMock()
    exporter.export_volumes = AsyncMock(side_effect=export_volumes)
    exporter.wait_for_cleanup = AsyncMock()
    store = MagicMock()
    store.load = AsyncMock(return_value=None)
    store.save = AsyncMock()
    resolver = VolumeResolver(sending_client, exporter=exporter, store=store)

    first = await resolver.get_volume_map(START, END)
    assert first.source == VolumeSource.SEGMENT
    assert "2026-01-01|2026-01-31" in resolver.in_flight

    gate.set()
    await resolver.wait_for_background()

    second = await resolver.get_volume_map(START, END)
    assert second.source == VolumeSource.EXACT
    assert second.volumes == exact
    store.save.assert_awaited_once_with(START, END, exact)
    assert exporter.export_volumes.await_count == 1


@pytest.mark.asyncio
async def test_exact_export_not_relaunched_while_running(sending_client):
    """Test a second miss does not start another export for the same window."""
    gate = asyncio.Event()

    async def export_volumes(start, end, cancel_event):
        await gate.wait()
        return {}

    exporter = MagicMock()
    exporter.export_volumes = AsyncMock(side_effect=export_volumes)
    exporter.wait_for_cleanup = AsyncMock()
    sending_client.get_sends_by_segment.return_value = []
    resolver = VolumeResolver(sending_client, exporter=exporter)

    await resolver.get_volume_map(START, END)
    await resolver.get_volume_map(START, END)
    await asyncio.sleep(0)

    assert exporter.export_volumes.await_count == 1
    gate.set()
    await resolver.wait_for_background()


@pytest.mark.asyncio
async def test_locked_export_is_skipped(sending_client):
    """Test another process holding the export lock is not an error."""
    exporter = MagicMock()
    exporter.export_volumes = AsyncMock(
        side_effect=ExportJobLockedError("2026-01-01|2026-01-31", "lock")
    )
    exporter.wait_for_cleanup = AsyncMock()
    resolver = VolumeResolver(sending_client, exporter=exporter)

    await resolver.get_volume_map(START, END)
    await resolver.wait_for_background()

    assert resolver.cache.get("2026-01-01|2026-01-31").source == VolumeSource.SEGMENT


@pytest.mark.asyncio
async def test_total_sends_takes_highest(sending_client):
    """Test total sends is the max of daily and list totals, cached."""
    sending_client.get_daily_stats.return_value = [{"sent": "400"}, {"sent": 100}]
    sending_client.get_sends_by_list.return_value = [{"list_id": 1, "sent": 700}]
    resolver = VolumeResolver(sending_client)

    assert await resolver.get_total_sends(START, END) == 700
    assert await resolver.get_total_sends(START, END) == 700
    assert sending_client.get_daily_stats.await_count == 1


@pytest.mark.asyncio
async def test_total_sends_falls_back_to_periodic(sending_client):
    """Test zero totals use the last periodic total and are not cached."""
    resolver = VolumeResolver(sending_client)

    assert await resolver.get_total_sends(START, END) == 0
    assert len(resolver.totals_cache) == 0

    resolver.record_periodic_total(12345)
    assert await resolver.get_total_sends(START, END) == 12345


def test_allocator_uses_matching_exact_volume():
    """Test exact maps answer when a key belongs to an observed partner."""
    volume_map = VolumeMap(
        {"M77_WIT": 1000, "M77_HOME": 500, "GLB_FIN": 300, "N/A": 50},
        VolumeSource.EXACT,
    )
    allocator = PartnerVolumeAllocator(volume_map, 0, {"M77", "GLB"}, 100, 10)

    assert allocator.has_matching_volume
    assert allocator.for_partner("M77", 10, 1).value == 1500
    assert allocator.for_partner("M77", 10, 1).source == VolumeSource.EXACT
    assert allocator.for_data_set("m77_wit", 10, 1).value == 1000


def test_allocator_estimates_by_click_share():
    """Test estimated volume uses click share of total sends."""
    volume_map = VolumeMap({"ALL": 1000}, VolumeSource.LIST)
    allocator = PartnerVolumeAllocator(volume_map, 10000, {"M77"}, 200, 10)

    figure = allocator.for_partner("M77", 50, 2)

    assert not allocator.has_matching_volume
    assert figure.value == 2500
    assert figure.is_estimated


def test_allocator_uses_conversion_share_without_clicks():
    """Test conversions drive the estimate when there are no clicks."""
    allocator = PartnerVolumeAllocator(VolumeMap(), 1000, {"M77"}, 0, 4)

    assert allocator.for_data_set("M77_WIT", 0, 1).value == 250


def test_allocator_without_sends_reports_none():
    """Test no sends at all yields zero with source NONE."""
    allocator = PartnerVolumeAllocator(VolumeMap(), 0, {"M77"}, 10, 1)

    figure = allocator.for_partner("M77", 10, 1)

    assert figure.value == 0
    assert figure.source == VolumeSource.NONE
