"""Send-volume resolution for a date window.

Sources, most trustworthy first:

1. contact activity export (exact, 5-30 min upstream, run detached)
2. sends grouped by segment, segment names parsed to data-set codes
3. sends grouped by list (coarse, total volume only)
4. click or conversion share of total sends (estimated)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from time import monotonic
from typing import Awaitable, Callable, Optional

from redis.exceptions import RedisError

from ..schemas.reports import ListInfo, row_int, row_str
from ..upstream.contact_activity import ContactActivityExporter
from ..upstream.exceptions import ExportJobLockedError, UpstreamClientError
from ..upstream.sending_client import SendingClient
from .cache import CacheStore, InFlightRegistry, range_key
from .identifiers import (
    extract_data_set_code_from_segment,
    is_valid_volume_key,
    matches_segment_prefix,
    resolve_partner_group,
)
from .models import VolumeSource
from .volume_store import VolumeSnapshotStore


logger = logging.getLogger(__name__)

# A map needs more than this many data-set codes to count as per-partner data.
MIN_DATA_SET_ENTRIES = 2


@dataclass(frozen=True)
class VolumeMap:
    """Data-set code -> sends, tagged with where it came from."""

    volumes: dict[str, int] = field(default_factory=dict)
    source: VolumeSource = VolumeSource.NONE

    def __len__(self) -> int:
        return len(self.volumes)

    @property
    def total(self) -> int:
        return sum(self.volumes.values())


@dataclass(frozen=True)
class VolumeFigure:
    value: int
    source: VolumeSource

    @property
    def is_estimated(self) -> bool:
        return self.source == VolumeSource.ESTIMATED


def build_segment_volumes(rows: list[dict]) -> dict[str, int]:
    """Aggregate segment sends by the data-set code in the segment name."""
    volumes: dict[str, int] = {}
    matched = 0
    for row in rows:
        name = row_str(row, "segment_name").strip()
        sent = row_int(row, "sent")
        if not name or sent == 0:
            continue

        upper = name.upper()
        if not matches_segment_prefix(upper):
            continue
        code = extract_data_set_code_from_segment(upper)
        if code:
            volumes[code] = volumes.get(code, 0) + sent
            matched += 1

    logger.info(
        "Segment parsing: %s of %s rows matched, %s data-set codes",
        matched,
        len(rows),
        len(volumes),
    )
    if matched == 0 and rows:
        sample = [row_str(row, "segment_name") for row in rows[:10]]
        logger.debug("Sample segment names: %s", sample)
    return volumes


def build_list_volumes(lists: list[ListInfo], rows: list[dict]) -> dict[str, int]:
    """Join list names with list sends; names are taken as data-set codes."""
    names = {item.id: item.name for item in lists}
    volumes: dict[str, int] = {}
    for row in rows:
        list_id = row_int(row, "list_id")
        sent = row_int(row, "sent")
        if list_id == 0 or sent == 0:
            continue
        name = names.get(list_id, "")
        code = name.strip().rstrip("_").upper()
        if not code:
            continue
        volumes[code] = volumes.get(code, 0) + sent
    return volumes


VolumeStrategy = Callable[[date, date], Awaitable[Optional[VolumeMap]]]


class VolumeResolver:
    """Best-effort per-data-set send volume for a date window.

    Never blocks a caller on the exact export: the first miss launches it
    in the background and answers from the cheaper strategies.
    """

    EXACT_TTL = 24 * 3600  # 24 hours
    ESTIMATED_TTL = 30 * 60  # 30 minutes
    TOTAL_SENDS_TTL = 30 * 60  # 30 minutes

    def __init__(
        self,
        client: SendingClient,
        exporter: Optional[ContactActivityExporter] = None,
        store: Optional[VolumeSnapshotStore] = None,
        clock: Callable[[], float] = monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.exporter = exporter
        self.store = store
        self._wall_clock = wall_clock
        self.cache: CacheStore[str, VolumeMap] = CacheStore(
            "volume", self.ESTIMATED_TTL, clock
        )
        self.totals_cache: CacheStore[str, int] = CacheStore(
            "total-sends", self.TOTAL_SENDS_TTL, clock
        )
        self.in_flight = InFlightRegistry("contact-activity")
        self._cancel_event = asyncio.Event()
        self.last_periodic_total = 0
        self.strategies: list[VolumeStrategy] = [
            self._segment_volumes,
            self._list_volumes,
        ]

    async def get_volume_map(self, start: date, end: date) -> VolumeMap:
        """Resolve per-data-set volume for the window.

        Returns:
            VolumeMap; empty with source NONE when every source failed
        """
        key = range_key(start, end)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Volume cache hit for %s (%s, %s entries)", key, cached.source.value, len(cached))
            return cached

        persisted = await self._load_persisted(start, end)
        if persisted is not None:
            return persisted

        self._launch_exact(start, end)

        result = await self._first_result(start, end)
        if result:
            self.cache.set(key, result, self.ESTIMATED_TTL)
            return result

        logger.info("Not caching empty volume result for %s (upstream may be rate limited)", key)
        return VolumeMap()

    async def _first_result(self, start: date, end: date) -> Optional[VolumeMap]:
        for strategy in self.strategies:
            try:
                result = await strategy(start, end)
            except UpstreamClientError as e:
                logger.warning("Volume strategy %s failed: %s", strategy.__name__, e)
                continue
            if result:
                return result
        return None

    async def _segment_volumes(self, start: date, end: date) -> Optional[VolumeMap]:
        rows = await self.client.get_sends_by_segment(start, end)
        if not rows:
            return None
        volumes = build_segment_volumes(rows)
        if len(volumes) > MIN_DATA_SET_ENTRIES:
            return VolumeMap(volumes, VolumeSource.SEGMENT)
        logger.info(
            "Segment volume for %s..%s yielded only %s data-set codes, discarding",
            start,
            end,
            len(volumes),
        )
        return None

    async def _list_volumes(self, start: date, end: date) -> Optional[VolumeMap]:
        lists = await self.client.get_lists()
        rows = await self.client.get_sends_by_list(start, end)
        volumes = build_list_volumes(lists, rows)
        if not volumes:
            return None
        logger.info("List volume for %s..%s has %s entries", start, end, len(volumes))
        return VolumeMap(volumes, VolumeSource.LIST)

    async def _load_persisted(self, start: date, end: date) -> Optional[VolumeMap]:
        if self.store is None:
            return None
        try:
            snapshot = await self.store.load(start, end)
        except RedisError as e:
            logger.warning("Volume snapshot load failed for %s..%s: %s", start, end, e)
            return None
        if snapshot is None:
            return None

        age = snapshot.age_seconds(self._wall_clock())
        if len(snapshot.volumes) <= MIN_DATA_SET_ENTRIES or age >= self.EXACT_TTL:
            logger.info(
                "Volume snapshot for %s..%s is stale or sparse (age=%.0fs, %s entries)",
                start,
                end,
                age,
                len(snapshot.volumes),
            )
            return None

        result = VolumeMap(dict(snapshot.volumes), VolumeSource.EXACT)
        self.cache.set(range_key(start, end), result, self.EXACT_TTL, age=age)
        logger.info("Volume snapshot hit for %s..%s (%s entries)", start, end, len(result))
        return result

    def _launch_exact(self, start: date, end: date) -> None:
        if self.exporter is None:
            return
        key = range_key(start, end)
        task = self.in_flight.launch(key, lambda: self._run_exact(start, end))
        if task is None:
            logger.info("Contact activity export already running for %s, using fallbacks", key)
        else:
            logger.info("Launched background contact activity export for %s", key)

    async def _run_exact(self, start: date, end: date) -> None:
        key = range_key(start, end)
        try:
            volumes = await self.exporter.export_volumes(start, end, self._cancel_event)
        except ExportJobLockedError as e:
            logger.info("Skipping export for %s: %s", key, e)
            return
        except UpstreamClientError as e:
            logger.error("Background contact activity export failed for %s: %s", key, e)
            return

        if len(volumes) <= MIN_DATA_SET_ENTRIES:
            logger.info("Contact activity export returned %s entries for %s, not caching", len(volumes), key)
            return

        if self.store is not None:
            try:
                await self.store.save(start, end, volumes)
            except RedisError as e:
                logger.warning("Failed to persist volume snapshot for %s: %s", key, e)

        self.cache.set(key, VolumeMap(volumes, VolumeSource.EXACT), self.EXACT_TTL)
        logger.info("Exact volume cached for %s (%s data-set codes)", key, len(volumes))

    async def get_total_sends(self, start: date, end: date) -> int:
        """Highest of daily-stats and list-level totals for the window."""
        key = range_key(start, end)
        cached = self.totals_cache.get(key)
        if cached is not None:
            return cached

        daily_total = 0
        try:
            rows = await self.client.get_daily_stats(start, end)
            daily_total = sum(row_int(row, "sent") for row in rows)
        except UpstreamClientError as e:
            logger.warning("Daily stats fetch failed for %s: %s", key, e)

        list_total = 0
        try:
            rows = await self.client.get_sends_by_list(start, end)
            list_total = sum(row_int(row, "sent") for row in rows)
        except UpstreamClientError as e:
            logger.warning("List sends fetch failed for %s: %s", key, e)

        best = max(daily_total, list_total)
        logger.info("Total sends for %s: daily=%s, list=%s, using=%s", key, daily_total, list_total, best)

        if best == 0 and self.last_periodic_total > 0:
            logger.info("Using last periodic total %s as fallback for %s", self.last_periodic_total, key)
            best = self.last_periodic_total

        if best > 0:
            self.totals_cache.set(key, best)
        return best

    def record_periodic_total(self, total: int) -> None:
        """Remember the latest total from the periodic sending-platform refresh."""
        if total > 0:
            self.last_periodic_total = total

    def shutdown(self) -> None:
        """Ask running exports to stop at their next poll."""
        self._cancel_event.set()

    async def wait_for_background(self) -> None:
        await self.in_flight.drain()
        if self.exporter is not None:
            await self.exporter.wait_for_cleanup()


class PartnerVolumeAllocator:
    """Answers per-partner and per-data-set volume for one attribution build.

    Exact or segment maps are used when at least one valid key belongs to an
    observed partner. Otherwise volume is estimated from click share (or
    conversion share when there are no clicks) of total sends.
    """

    def __init__(
        self,
        volume_map: VolumeMap,
        total_sends: int,
        observed_partners: set[str],
        grand_total_clicks: int,
        grand_total_conversions: int,
    ):
        self.volumes = {key.upper(): value for key, value in volume_map.volumes.items()}
        self.source = volume_map.source
        self.grand_total_clicks = grand_total_clicks
        self.grand_total_conversions = grand_total_conversions
        self.use_clicks = grand_total_clicks > 0

        self.total_sends = total_sends
        if self.total_sends == 0 and self.volumes:
            self.total_sends = sum(self.volumes.values())

        self.has_matching_volume = False
        if self.source in (VolumeSource.EXACT, VolumeSource.SEGMENT) and len(self.volumes) > MIN_DATA_SET_ENTRIES:
            self.has_matching_volume = any(
                resolve_partner_group(key)[0] in observed_partners
                for key in self.volumes
                if is_valid_volume_key(key)
            )

    def estimated(self, clicks: int, conversions: int) -> VolumeFigure:
        if self.total_sends > 0:
            if self.use_clicks:
                share = clicks / self.grand_total_clicks
                return VolumeFigure(int(share * self.total_sends), VolumeSource.ESTIMATED)
            if self.grand_total_conversions > 0:
                share = conversions / self.grand_total_conversions
                return VolumeFigure(int(share * self.total_sends), VolumeSource.ESTIMATED)
        return VolumeFigure(0, VolumeSource.NONE)

    def for_data_set(self, code: str, clicks: int, conversions: int) -> VolumeFigure:
        if self.has_matching_volume:
            value = self.volumes.get(code.upper(), 0)
            if value > 0:
                return VolumeFigure(value, self.source)
        return self.estimated(clicks, conversions)

    def for_partner(self, prefix: str, clicks: int, conversions: int) -> VolumeFigure:
        if self.has_matching_volume:
            total = sum(
                value
                for key, value in self.volumes.items()
                if is_valid_volume_key(key) and resolve_partner_group(key)[0] == prefix
            )
            if total > 0:
                return VolumeFigure(total, self.source)
        return self.estimated(clicks, conversions)
