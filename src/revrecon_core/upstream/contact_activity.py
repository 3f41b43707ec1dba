"""Contact activity export runner: create, poll, download and clean up.

The export takes 5-30 minutes to build upstream. Callers are expected to run
it detached (see VolumeResolver); this module only knows how to drive one
export to completion and always deletes the remote report afterwards.
"""
import asyncio
import csv
import io
import logging
from datetime import date, datetime, time, timezone
from time import monotonic
from typing import Optional

from redis.asyncio import Redis
from redis.asyncio.lock import Lock as AsyncRedisLock

from ..schemas.export_ops import (
    ContactActivityCriterion,
    ContactActivityFilters,
    ContactActivityReport,
    ContactActivityRequest,
)
from .exceptions import ExportJobError, ExportJobLockedError, RateLimitError
from .sending_client import SendingClient
from .transport import compute_backoff


def parse_contact_activity_csv(csv_text: str) -> dict[str, int]:
    """Aggregate sent counts per data set from an export CSV.

    Args:
        csv_text: CSV with at least ``data_set`` and ``sent`` columns

    Returns:
        dict of upper-cased data set code -> total sends
    """
    volumes: dict[str, int] = {}
    reader = csv.DictReader(io.StringIO(csv_text))
    for row in reader:
        code = (row.get("data_set") or "").strip().rstrip("_").upper()
        if not code:
            continue
        try:
            sent = int(float(row.get("sent") or 0))
        except ValueError:
            continue
        if sent <= 0:
            continue
        volumes[code] = volumes.get(code, 0) + sent
    return volumes


def _window_bounds(start: date, end: date) -> tuple[int, int]:
    from_ts = datetime.combine(start, time.min, tzinfo=timezone.utc)
    to_ts = datetime.combine(end, time.max, tzinfo=timezone.utc)
    return int(from_ts.timestamp()), int(to_ts.timestamp())


class ContactActivityExporter:
    """Drives one contact activity export per call.

    Enforces 1 concurrent export per window across processes via Redis locks
    when a Redis client is injected.
    """

    LOCK_TTL_SECONDS = 3600  # 1 hour
    DEFAULT_POLL_INTERVAL = 30.0  # seconds
    DEFAULT_POLL_TIMEOUT = 1800  # 30 minutes

    RATE_LIMIT_BASE_DELAY = 15.0  # seconds
    RATE_LIMIT_MULTIPLIER = 2.0
    RATE_LIMIT_MAX_DELAY = 300.0  # seconds
    RATE_LIMIT_JITTER_MS = 5000  # milliseconds

    def __init__(
        self,
        client: SendingClient,
        redis: Optional[Redis] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.redis = redis
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._cleanup_tasks: set[asyncio.Task] = set()

    async def export_volumes(
        self,
        start: date,
        end: date,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict[str, int]:
        """Run an export for the window and return per-data-set send volume.

        Raises:
            ExportJobLockedError: If another process holds the window lock
            ExportJobError: On terminal failure, timeout or cancellation
            UpstreamError: On non-retryable API errors
        """
        window_key = f"{start.isoformat()}|{end.isoformat()}"
        lock = await self._acquire_lock(window_key)

        report: Optional[ContactActivityReport] = None
        try:
            report = await self.client.create_contact_activity(
                self._build_request(start, end)
            )
            self.logger.info(
                "Created contact activity report id=%s for %s", report.id, window_key
            )

            await self._poll_until_complete(report.id, cancel_event)

            csv_text = await self.client.export_contact_activity(report.id)
            volumes = parse_contact_activity_csv(csv_text)
            self.logger.info(
                "Contact activity report id=%s exported %s data sets",
                report.id,
                len(volumes),
            )
            return volumes
        finally:
            if report is not None:
                self._schedule_cleanup(report.id)
            await self._release_lock_best_effort(lock)

    @staticmethod
    def _build_request(start: date, end: date) -> ContactActivityRequest:
        from_ts, to_ts = _window_bounds(start, end)
        return ContactActivityRequest(
            title=f"revrecon volume {start.isoformat()} {end.isoformat()}",
            selected_fields=["data_set", "sent"],
            filters=ContactActivityFilters(
                criteria=[
                    ContactActivityCriterion(
                        field_name="data_set", type="string", operator="notempty"
                    )
                ],
                from_date=from_ts,
                to_date=to_ts,
            ),
        )

    async def _poll_until_complete(
        self,
        report_id: str,
        cancel_event: Optional[asyncio.Event],
    ) -> ContactActivityReport:
        """Poll report status until completed.

        Cancellation is honoured only between polls.
        """
        start_time = monotonic()
        rate_limited = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise ExportJobError(report_id, "cancelled")

            elapsed = monotonic() - start_time
            if elapsed > self.poll_timeout:
                raise ExportJobError(report_id, f"poll timeout after {elapsed:.1f}s")

            try:
                report = await self.client.get_contact_activity(report_id)
            except RateLimitError:
                rate_limited += 1
                delay = compute_backoff(
                    rate_limited,
                    self.RATE_LIMIT_BASE_DELAY,
                    self.RATE_LIMIT_MULTIPLIER,
                    self.RATE_LIMIT_MAX_DELAY,
                    self.RATE_LIMIT_JITTER_MS,
                )
                self.logger.warning(
                    "Rate limited polling report id=%s, backoff=%.1fs", report_id, delay
                )
                await asyncio.sleep(delay)
                continue

            rate_limited = 0
            self.logger.debug(
                "Poll: report id=%s status=%s, elapsed=%.1fs",
                report_id,
                report.status,
                elapsed,
            )

            if report.is_success:
                return report
            if report.is_terminal:
                raise ExportJobError(report_id, f"terminal status={report.status}")

            await asyncio.sleep(self.poll_interval)

    def _schedule_cleanup(self, report_id: str) -> None:
        """Delete the remote report in a task independent of the caller."""
        task = asyncio.get_running_loop().create_task(self._delete_best_effort(report_id))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _delete_best_effort(self, report_id: str) -> None:
        try:
            await self.client.delete_contact_activity(report_id)
            self.logger.info("Deleted contact activity report id=%s", report_id)
        except Exception as e:
            self.logger.error("Failed to delete contact activity report id=%s: %s", report_id, e)

    async def wait_for_cleanup(self) -> None:
        """Wait for outstanding remote deletions."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    async def _acquire_lock(self, window_key: str) -> Optional[AsyncRedisLock]:
        if self.redis is None:
            return None

        lock_key = f"revrecon:sending:export_lock:{window_key}"
        lock = AsyncRedisLock(
            self.redis,
            name=lock_key,
            timeout=self.LOCK_TTL_SECONDS,
            blocking=False,
        )
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            raise ExportJobLockedError(window_key, lock_key)

        self.logger.info("Acquired export lock for window=%s", window_key)
        return lock

    async def _release_lock_best_effort(self, lock: Optional[AsyncRedisLock]) -> None:
        """Release Redis lock with error suppression."""
        if lock is None:
            return
        try:
            await lock.release()
        except Exception as e:
            self.logger.error("Failed to release export lock: %s", e)
