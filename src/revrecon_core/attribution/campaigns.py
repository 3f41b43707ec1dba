"""Sending-platform campaign metadata, looked up by mailing id."""
import asyncio
import logging
from time import monotonic
from typing import Callable, Iterable, Optional

from ..schemas.reports import SendingCampaignStats
from ..upstream.exceptions import UpstreamClientError
from ..upstream.sending_client import SendingClient
from .cache import CacheStore
from .identifiers import ParseError, is_known_property, parse_campaign_name
from .models import CampaignLink


logger = logging.getLogger(__name__)


class CampaignDirectory:
    """Cached mailing id -> campaign link lookups.

    Bulk campaign stats prime the cache; individual lookups are bounded
    per call and spaced out to stay inside the platform's rate limit.
    """

    CACHE_TTL = 15 * 60  # 15 minutes
    MAX_LOOKUPS = 50
    LOOKUP_SPACING = 0.1  # seconds

    def __init__(
        self,
        client: Optional[SendingClient],
        clock: Callable[[], float] = monotonic,
    ):
        self.client = client
        self.cache: CacheStore[str, CampaignLink] = CacheStore(
            "campaign-link", self.CACHE_TTL, clock
        )

    def prime(self, stats: Iterable[SendingCampaignStats]) -> int:
        """Seed the cache from bulk campaign stats. Returns the count stored."""
        count = 0
        for item in stats:
            if item.mailing_id:
                self.cache.set(item.mailing_id, CampaignLink.from_stats(item))
                count += 1
        return count

    def links_for(self, mailing_ids: Iterable[str]) -> dict[str, CampaignLink]:
        links = {}
        for mailing_id in mailing_ids:
            link = self.cache.get(mailing_id)
            if link is not None:
                links[mailing_id] = link
        return links

    async def lookup(self, mailing_id: str) -> Optional[CampaignLink]:
        cached = self.cache.get(mailing_id)
        if cached is not None:
            return cached
        if self.client is None:
            return None

        payload = await self.client.get_campaign(mailing_id)
        if payload is None:
            return None
        link = CampaignLink.from_payload(mailing_id, payload)
        self.cache.set(mailing_id, link)
        return link

    async def resolve_property_codes(self, mailing_ids: Iterable[str]) -> dict[str, str]:
        """Map mailing ids to property codes taken from their campaign names.

        Args:
            mailing_ids: Mailing ids whose tracking tag had no known property

        Returns:
            Mailing id -> known property code, for the ids that resolved
        """
        resolved: dict[str, str] = {}
        lookups = 0
        for mailing_id in mailing_ids:
            link = self.cache.get(mailing_id)
            if link is None:
                if self.client is None or lookups >= self.MAX_LOOKUPS:
                    continue
                if lookups:
                    await asyncio.sleep(self.LOOKUP_SPACING)
                lookups += 1
                try:
                    link = await self.lookup(mailing_id)
                except UpstreamClientError as e:
                    logger.warning("Campaign lookup failed for mailing %s: %s", mailing_id, e)
                    continue
                if link is None:
                    logger.debug("Mailing %s not found on the sending platform", mailing_id)
                    continue

            code = _property_from_name(link.name)
            if code:
                resolved[mailing_id] = code

        if lookups >= self.MAX_LOOKUPS:
            logger.info("Campaign lookups capped at %s for this cycle", self.MAX_LOOKUPS)
        if resolved:
            logger.info("Resolved %s unknown-property campaigns via campaign names", len(resolved))
        return resolved


def _property_from_name(name: str) -> str:
    try:
        parts = parse_campaign_name(name)
    except ParseError:
        return ""
    return parts.property if is_known_property(parts.property) else ""
