"""Durable storage for exact send-volume results, so restarts skip the export."""
import logging
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis


logger = logging.getLogger(__name__)


class VolumeSnapshot(BaseModel):
    """Per-data-set send volume for one window, as persisted."""

    start: date
    end: date
    volumes: dict[str, int] = Field(default_factory=dict)
    generated_at: datetime

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        generated = self.generated_at
        if generated.tzinfo is None:
            generated = generated.replace(tzinfo=timezone.utc)
        return (now - generated).total_seconds()


class VolumeSnapshotStore:
    """Redis-backed JSON store keyed by date range."""

    KEY_PREFIX = "revrecon:volume:"
    RETENTION_SECONDS = 7 * 24 * 3600

    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def key_for(cls, start: date, end: date) -> str:
        return f"{cls.KEY_PREFIX}{start.isoformat()}|{end.isoformat()}"

    async def load(self, start: date, end: date) -> Optional[VolumeSnapshot]:
        """Load the snapshot for a window, or None if absent or unreadable."""
        raw = await self.redis.get(self.key_for(start, end))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return VolumeSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed volume snapshot for %s..%s: %s", start, end, e)
            return None

    async def save(
        self,
        start: date,
        end: date,
        volumes: dict[str, int],
        generated_at: Optional[datetime] = None,
    ) -> VolumeSnapshot:
        snapshot = VolumeSnapshot(
            start=start,
            end=end,
            volumes=volumes,
            generated_at=generated_at or datetime.now(timezone.utc),
        )
        await self.redis.set(
            self.key_for(start, end),
            snapshot.model_dump_json(),
            ex=self.RETENTION_SECONDS,
        )
        logger.info(
            "Persisted volume snapshot for %s..%s (%s data sets)", start, end, len(volumes)
        )
        return snapshot
