"""Periodic collection and attribution service.

Pulls tracking-network reports and sending-platform campaign data on
independent schedules, rebuilds every aggregate from scratch and publishes
the result by swapping snapshot references under one lock.
"""
import asyncio
import logging
import threading
from datetime import date, datetime, timedelta
from time import monotonic
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import CollectorSettings
from ..schemas.reports import EntityReport, SendingCampaignStats
from ..upstream.exceptions import IncompleteFetchError, RateLimitError, UpstreamClientError
from ..upstream.sending_client import SendingClient
from ..upstream.tracking_client import TrackingClient
from .cache import CacheStore, range_key
from .campaigns import CampaignDirectory
from .engine import (
    AttributionInputs,
    build_metrics,
    find_unknown_property_campaigns,
    offers_from_report,
)
from .models import (
    CampaignRevenue,
    CollectorMetrics,
    CollectorState,
    Conversion,
    DailyPerformance,
    DataPartnerAnalytics,
    ESPRevenuePerformance,
    MoMComparison,
    OfferPerformance,
    PropertyPerformance,
    ReconciliationReport,
    RevenueBreakdown,
)
from .partners import build_partner_analytics
from .volume import VolumeMap, VolumeResolver


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Collector:
    """Owns the published metrics snapshot and the loops that refresh it."""

    CONVERSION_DAY_SPACING = 0.2  # seconds
    SUB2_TTL = 15 * 60  # 15 minutes
    OFFER_SUB2_TTL = 15 * 60  # 15 minutes
    CONVERSIONS_TTL = 10 * 60  # 10 minutes

    def __init__(
        self,
        settings: CollectorSettings,
        tracking: Optional[TrackingClient],
        sending: Optional[SendingClient] = None,
        resolver: Optional[VolumeResolver] = None,
        directory: Optional[CampaignDirectory] = None,
        clock: Callable[[], float] = monotonic,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.tracking = tracking
        self.sending = sending
        self.resolver = resolver
        self.directory = directory or CampaignDirectory(sending, clock)
        self.tz = settings.tzinfo
        self._now = now or (lambda: datetime.now(self.tz))

        self._lock = threading.Lock()
        self._rebuild_lock = asyncio.Lock()
        self._state = CollectorState.IDLE
        self._metrics: Optional[CollectorMetrics] = None
        self._partner_analytics: Optional[DataPartnerAnalytics] = None
        self._last_fetch: Optional[datetime] = None

        # Raw inputs from the last successful fetch of each kind
        self._date_report: Optional[EntityReport] = None
        self._offer_report: Optional[EntityReport] = None
        self._sub1_report: Optional[EntityReport] = None
        self._sub2_report: Optional[EntityReport] = None
        self._offer_sub2_report: Optional[EntityReport] = None
        self._conversions: list[Conversion] = []
        self._send_campaigns: list[SendingCampaignStats] = []

        self.sub2_cache: CacheStore[str, EntityReport] = CacheStore(
            "sub2-report", self.SUB2_TTL, clock
        )
        self.offer_sub2_cache: CacheStore[str, EntityReport] = CacheStore(
            "offer-sub2-report", self.OFFER_SUB2_TTL, clock
        )
        self.offer_cache: CacheStore[str, EntityReport] = CacheStore(
            "offer-report", self.OFFER_SUB2_TTL, clock
        )
        self.conversions_cache: CacheStore[str, list[Conversion]] = CacheStore(
            "conversions", self.CONVERSIONS_TTL, clock
        )

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # -- window helpers --------------------------------------------------

    def today(self) -> date:
        return self._now().date()

    def lookback_window(self) -> tuple[date, date]:
        today = self.today()
        return today - timedelta(days=self.settings.lookback_days), today

    @property
    def state(self) -> CollectorState:
        return self._state

    # -- fetching ----------------------------------------------------------

    async def _fetch_with_retry(self, name: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Run fetch, retrying once after the backoff when the failure is transient.

        Client errors (non-retryable 4xx, malformed payloads) are raised at once.
        """
        try:
            return await fetch()
        except UpstreamClientError as e:
            if not _is_transient(e):
                raise
            logger.warning(
                "Error fetching %s: %s, retrying in %.0fs",
                name,
                self.settings.redact(str(e)),
                self.settings.retry_backoff_s,
            )
        await asyncio.sleep(self.settings.retry_backoff_s)
        return await fetch()

    async def _fetch_report(
        self,
        name: str,
        fetch: Callable[[], Awaitable[EntityReport]],
    ) -> Optional[EntityReport]:
        """Fetch one report with a single transient retry. None on failure."""
        try:
            report = await self._fetch_with_retry(f"{name} report", fetch)
        except UpstreamClientError as e:
            logger.error(
                "Failed to fetch %s report: %s",
                name,
                self.settings.redact(str(e)),
                exc_info=True,
            )
            return None
        logger.info("Got %s report with %s rows", name, len(report.table))
        return report

    async def _fetch_conversion_days(
        self, start: date, end: date
    ) -> tuple[list[Conversion], list[date]]:
        """Fetch approved conversions one day at a time.

        Returns:
            (conversions from the days that succeeded, days that still failed)
        """
        tracking = self.tracking
        conversions: list[Conversion] = []
        failed: list[date] = []
        day = start
        while day <= end:
            try:
                records = await self._fetch_with_retry(
                    f"conversions for {day}",
                    lambda day=day: tracking.get_conversions(day, day),
                )
            except UpstreamClientError as e:
                logger.error(
                    "Error fetching conversions for %s: %s", day, self.settings.redact(str(e))
                )
                failed.append(day)
            else:
                batch = [Conversion.from_record(record) for record in records]
                conversions.extend(batch)
                logger.debug("Got %s conversions for %s", len(batch), day)
            day += timedelta(days=1)
            if day <= end:
                await asyncio.sleep(self.CONVERSION_DAY_SPACING)
        return conversions, failed

    async def fetch_conversions(self, start: date, end: date) -> list[Conversion]:
        """Fetch approved conversions for a window.

        Raises:
            IncompleteFetchError: when any day still fails after its retry
        """
        if self.tracking is None:
            return []
        conversions, failed = await self._fetch_conversion_days(start, end)
        if failed:
            raise IncompleteFetchError("conversions", failed)
        return conversions

    def _merge_conversions(
        self, fresh: list[Conversion], failed_days: list[date]
    ) -> list[Conversion]:
        """Fresh conversions plus the previous records of days that failed."""
        if not failed_days:
            return fresh
        failed = set(failed_days)
        kept = [c for c in self._conversions if c.local_date(self.tz) in failed]
        logger.warning(
            "Keeping %s previous conversions for %s failed days", len(kept), len(failed)
        )
        return fresh + kept

    async def run_full_fetch(self) -> None:
        """Pull the whole lookback window and rebuild."""
        if self.tracking is None:
            logger.warning("Tracking credentials not configured, skipping fetch")
            return

        start, end = self.lookback_window()
        tracking = self.tracking
        spacing = self.settings.report_spacing_s
        self._state = CollectorState.FETCHING_FULL
        logger.info("Fetching tracking metrics for %s..%s", start, end)
        try:
            date_report = await self._fetch_report(
                "date", lambda: tracking.get_report_by_date(start, end)
            )
            await asyncio.sleep(spacing)
            offer_report = await self._fetch_report(
                "offer", lambda: tracking.get_report_by_offer(start, end)
            )
            await asyncio.sleep(spacing)
            sub1_report = await self._fetch_report(
                "sub1", lambda: tracking.get_report_by_sub1(start, end)
            )
            await asyncio.sleep(spacing)
            sub2_report = await self._fetch_report(
                "sub2", lambda: tracking.get_report_by_sub2(start, end)
            )
            await asyncio.sleep(spacing)
            offer_sub2_report = await self._fetch_report(
                "offer x sub2", lambda: tracking.get_report_by_offer_sub2(start, end)
            )
            conversions, failed_days = await self._fetch_conversion_days(start, end)

            # A failed fetch keeps the previous report
            if date_report is not None:
                self._date_report = date_report
            if offer_report is not None:
                self._offer_report = offer_report
            if sub1_report is not None:
                self._sub1_report = sub1_report
            if sub2_report is not None:
                self._sub2_report = sub2_report
            if offer_sub2_report is not None:
                self._offer_sub2_report = offer_sub2_report
            self._conversions = self._merge_conversions(conversions, failed_days)
            self._last_fetch = self._now()

            if not self._send_campaigns and self.sending is not None:
                await self.refresh_sending()

            await self.rebuild()
            logger.info(
                "Full fetch complete: %s conversions, $%.2f revenue",
                len(self._conversions),
                self.get_total_revenue(),
            )
        finally:
            if self._state != CollectorState.STOPPED:
                self._state = CollectorState.IDLE

    async def run_incremental_fetch(self) -> None:
        """Refresh today's numbers and the partner reports, then rebuild."""
        if self.tracking is None:
            return

        today = self.today()
        start, end = self.lookback_window()
        tracking = self.tracking
        self._state = CollectorState.FETCHING_INCREMENTAL
        logger.info("Fetching tracking metrics for today (%s)", today)
        try:
            today_report = await self._fetch_report(
                "today's date", lambda: tracking.get_report_by_date(today, today)
            )
            if today_report is not None:
                self._date_report = _merge_date_rows(self._date_report, today_report, today, self.tz)

            sub2_report = await self._fetch_report(
                "sub2", lambda: tracking.get_report_by_sub2(start, end)
            )
            if sub2_report is not None:
                self._sub2_report = sub2_report

            await asyncio.sleep(self.settings.report_spacing_s)
            offer_sub2_report = await self._fetch_report(
                "offer x sub2", lambda: tracking.get_report_by_offer_sub2(start, end)
            )
            if offer_sub2_report is not None:
                self._offer_sub2_report = offer_sub2_report

            try:
                records = await self._fetch_with_retry(
                    "today's conversions", lambda: tracking.get_conversions(today, today)
                )
            except UpstreamClientError as e:
                logger.error("Error fetching today's conversions: %s", self.settings.redact(str(e)))
                return

            fresh = [Conversion.from_record(record) for record in records]
            kept = [c for c in self._conversions if c.local_date(self.tz) != today]
            self._conversions = kept + fresh
            self._last_fetch = self._now()

            await self.rebuild()
            with self._lock:
                metrics = self._metrics
            if metrics is not None:
                logger.info(
                    "Today: %s clicks, %s conversions, $%.2f revenue",
                    metrics.today_clicks,
                    metrics.today_conversions,
                    metrics.today_revenue,
                )
        finally:
            if self._state != CollectorState.STOPPED:
                self._state = CollectorState.IDLE

    async def refresh_sending(self) -> None:
        """Refresh sending-platform campaign stats for the lookback window."""
        if self.sending is None:
            return
        start, end = self.lookback_window()
        try:
            campaigns = await self.sending.get_campaign_stats(start, end)
        except UpstreamClientError as e:
            logger.error(
                "Sending platform refresh failed: %s", self.settings.redact(str(e)), exc_info=True
            )
            return

        self._send_campaigns = campaigns
        primed = self.directory.prime(campaigns)
        total_sent = sum(c.sent for c in campaigns)
        if self.resolver is not None:
            self.resolver.record_periodic_total(total_sent)
        logger.info("Sending platform: %s campaigns (%s cached), %s sends", len(campaigns), primed, total_sent)

    # -- attribution -------------------------------------------------------

    async def rebuild(self) -> None:
        """Rebuild every aggregate from the stored inputs and publish them."""
        async with self._rebuild_lock:
            start, end = self.lookback_window()
            conversions = list(self._conversions)

            unknown = find_unknown_property_campaigns(self._sub1_report, conversions)
            resolved: dict[str, str] = {}
            if unknown:
                logger.info("Looking up %s campaigns with unknown property codes", len(unknown))
                resolved = await self.directory.resolve_property_codes(unknown)

            mailing_ids = {c.mailing_id for c in conversions if c.mailing_id}
            mailing_ids.update(unknown)
            inputs = AttributionInputs(
                date_report=self._date_report,
                offer_report=self._offer_report,
                sub1_report=self._sub1_report,
                conversions=conversions,
                send_campaigns=list(self._send_campaigns),
                campaign_links=self.directory.links_for(mailing_ids),
                resolved_properties=resolved,
                today=self.today(),
                tz=self.tz,
                fetched_at=self._last_fetch,
            )
            metrics = build_metrics(inputs)

            analytics = await self._build_partner_analytics(
                start,
                end,
                self._sub2_report,
                self._offer_sub2_report,
                metrics.offer_performance,
                conversions,
                metrics,
            )

            with self._lock:
                self._metrics = metrics
                self._partner_analytics = analytics

            logger.info(
                "Attribution rebuilt: %s campaigns, %s properties, %s partners",
                len(metrics.campaign_revenue),
                len(metrics.property_performance),
                len(analytics.partners),
            )

    async def _build_partner_analytics(
        self,
        start: date,
        end: date,
        sub2_report: Optional[EntityReport],
        offer_sub2_report: Optional[EntityReport],
        offers: list[OfferPerformance],
        conversions: list[Conversion],
        metrics: Optional[CollectorMetrics],
    ) -> DataPartnerAnalytics:
        volume_map = VolumeMap()
        total_sends = 0
        if self.resolver is not None:
            try:
                volume_map = await self.resolver.get_volume_map(start, end)
            except UpstreamClientError as e:
                logger.warning("Volume resolution failed for %s..%s: %s", start, end, e)
            total_sends = await self.resolver.get_total_sends(start, end)

        if total_sends == 0 and metrics is not None:
            total_sends = sum(esp.total_sent for esp in metrics.esp_revenue)
        if total_sends == 0:
            total_sends = volume_map.total

        return build_partner_analytics(
            start,
            end,
            sub2_report,
            offer_sub2_report,
            offers,
            conversions,
            volume_map,
            total_sends,
            mom_conversions=list(self._conversions),
            now=self._now(),
            tz=self.tz,
        )

    async def get_data_partner_analytics_for_range(
        self, start: date, end: date
    ) -> DataPartnerAnalytics:
        """Partner analytics for an arbitrary window, through the range caches.

        Falls back to the periodic lookback reports when a range fetch fails.
        """
        key = range_key(start, end)
        tracking = self.tracking

        sub2_report = self._sub2_report
        offer_sub2_report = self._offer_sub2_report
        offer_report = self._offer_report
        conversions = [c for c in self._conversions if _in_window(c, start, end, self.tz)]

        if tracking is not None:
            sub2_report = await self._range_report(
                self.sub2_cache, key, lambda: tracking.get_report_by_sub2(start, end), sub2_report
            )
            offer_sub2_report = await self._range_report(
                self.offer_sub2_cache,
                key,
                lambda: tracking.get_report_by_offer_sub2(start, end),
                offer_sub2_report,
            )
            offer_report = await self._range_report(
                self.offer_cache, key, lambda: tracking.get_report_by_offer(start, end), offer_report
            )
            # Incomplete windows raise, so nothing partial is cached
            try:
                conversions = await self.conversions_cache.get_or_fetch(
                    key, lambda: self.fetch_conversions(start, end)
                )
            except UpstreamClientError as e:
                logger.warning(
                    "conversions fetch for %s failed, using periodic conversions: %s",
                    key,
                    self.settings.redact(str(e)),
                )

        offers = list(offers_from_report(offer_report, conversions).values())
        with self._lock:
            metrics = self._metrics
        return await self._build_partner_analytics(
            start, end, sub2_report, offer_sub2_report, offers, conversions, metrics
        )

    async def _range_report(
        self,
        cache: CacheStore[str, EntityReport],
        key: str,
        fetch: Callable[[], Awaitable[EntityReport]],
        fallback: Optional[EntityReport],
    ) -> Optional[EntityReport]:
        try:
            report = await cache.get_or_fetch(key, fetch)
        except UpstreamClientError as e:
            logger.warning(
                "%s fetch for %s failed, using periodic report: %s",
                cache.name,
                key,
                self.settings.redact(str(e)),
            )
            return fallback
        if report.is_empty:
            logger.info("%s for %s is empty, using periodic report", cache.name, key)
            return fallback
        return report

    # -- loops -------------------------------------------------------------

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Sleep for the interval. Returns True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _tracking_loop(self) -> None:
        await self._guarded("full fetch", self.run_full_fetch)
        while not await self._sleep_or_stop(self.settings.fetch_interval_s):
            await self._guarded("incremental fetch", self.run_incremental_fetch)

    async def _sending_loop(self) -> None:
        while True:
            await self._guarded("sending refresh", self.refresh_sending)
            if await self._sleep_or_stop(self.settings.sending_interval_s):
                return

    async def _attribution_loop(self) -> None:
        while not await self._sleep_or_stop(self.settings.attribution_interval_s):
            await self._guarded("attribution refresh", self.rebuild)

    async def _guarded(self, name: str, job: Callable[[], Awaitable[None]]) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", name, self.settings.redact(str(exc)), exc_info=True)

    def start(self) -> None:
        """Launch the periodic loops on the running event loop."""
        if self._tasks:
            return
        self._stop_event.clear()
        self._state = CollectorState.IDLE
        self._tasks = [asyncio.create_task(self._tracking_loop())]
        if self.sending is not None:
            self._tasks.append(asyncio.create_task(self._sending_loop()))
        self._tasks.append(asyncio.create_task(self._attribution_loop()))
        logger.info("Collector started (%s loops)", len(self._tasks))

    async def stop(self) -> None:
        """Signal the loops, wait for them and drain background exports."""
        self._stop_event.set()
        self._state = CollectorState.STOPPED
        if self.resolver is not None:
            self.resolver.shutdown()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        if self.resolver is not None:
            await self.resolver.wait_for_background()
        logger.info("Collector stopped")

    # -- accessors -----------------------------------------------------------

    def get_latest_metrics(self) -> Optional[CollectorMetrics]:
        with self._lock:
            return self._metrics

    def _section(self, getter, default):
        with self._lock:
            metrics = self._metrics
        return default if metrics is None else getter(metrics)

    def get_campaign_revenue(self) -> list[CampaignRevenue]:
        return self._section(lambda m: m.campaign_revenue, [])

    def get_campaign(self, mailing_id: str) -> Optional[CampaignRevenue]:
        for campaign in self.get_campaign_revenue():
            if campaign.mailing_id == mailing_id:
                return campaign
        return None

    def get_property_performance(self) -> list[PropertyPerformance]:
        return self._section(lambda m: m.property_performance, [])

    def get_property(self, code: str) -> Optional[PropertyPerformance]:
        for prop in self.get_property_performance():
            if prop.property_code == code:
                return prop
        return None

    def get_offer_performance(self) -> list[OfferPerformance]:
        return self._section(lambda m: m.offer_performance, [])

    def get_daily_performance(self) -> list[DailyPerformance]:
        return self._section(lambda m: m.daily_performance, [])

    def get_daily_performance_by_range(self, start: date, end: date) -> list[DailyPerformance]:
        lo, hi = start.isoformat(), end.isoformat()
        return [d for d in self.get_daily_performance() if lo <= d.date <= hi]

    def get_total_revenue(self) -> float:
        return sum(d.revenue for d in self.get_daily_performance())

    def get_esp_revenue(self) -> list[ESPRevenuePerformance]:
        return self._section(lambda m: m.esp_revenue, [])

    def get_revenue_breakdown(self) -> Optional[RevenueBreakdown]:
        return self._section(lambda m: m.revenue_breakdown, None)

    def get_reconciliation(self) -> Optional[ReconciliationReport]:
        return self._section(lambda m: m.reconciliation, None)

    def get_data_partner_analytics(self) -> Optional[DataPartnerAnalytics]:
        with self._lock:
            return self._partner_analytics

    def get_mom_comparison(self) -> Optional[MoMComparison]:
        with self._lock:
            analytics = self._partner_analytics
        return None if analytics is None else analytics.mom_comparison

    def last_fetch(self) -> Optional[datetime]:
        return self._last_fetch


def _merge_date_rows(
    existing: Optional[EntityReport],
    today_report: EntityReport,
    today: date,
    tz,
) -> EntityReport:
    """Replace today's rows of the lookback date report with fresh ones."""
    if existing is None:
        return today_report

    def is_today(row) -> bool:
        col = row.column("date")
        if col is None:
            return False
        try:
            return datetime.fromtimestamp(int(col.id), tz).date() == today
        except ValueError:
            return False

    rows = [row for row in existing.table if not is_today(row)]
    rows.extend(today_report.table)
    return existing.model_copy(update={"table": rows})


def _is_transient(exc: UpstreamClientError) -> bool:
    return isinstance(exc, RateLimitError) or getattr(exc, "retryable", False)


def _in_window(conv: Conversion, start: date, end: date, tz) -> bool:
    day = conv.local_date(tz)
    return day is not None and start <= day <= end
