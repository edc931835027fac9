"""
Incremental sync watermark per (page, platform).

The watermark is the newest upstream ``updated_time`` known to have been
fully processed.  The next run lists conversations ``since`` that value
minus a safety window, so updates that become visible upstream slightly
late are still picked up; messages re-fetched inside the overlap are
deduplicated by id at insert time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Protocol

from syncer.models import GraphConversation

logger = logging.getLogger("syncer.watermark")

DEFAULT_SAFETY_WINDOW = timedelta(minutes=5)


class WatermarkStore(Protocol):
    async def latest_watermark(self, page_id: str, platform: str) -> Optional[datetime]:
        ...

    async def append_watermark(
        self, page_id: str, platform: str, last_synced_at: datetime
    ) -> None:
        ...


class WatermarkTracker:
    """Computes the effective ``since`` filter and commits new watermarks.

    Args:
        store: Anything providing ``latest_watermark``/``append_watermark``.
        safety_window: Subtracted from the stored watermark before use.
    """

    def __init__(
        self,
        store: WatermarkStore,
        safety_window: timedelta = DEFAULT_SAFETY_WINDOW,
    ) -> None:
        self._store = store
        self.safety_window = safety_window

    async def effective_since(self, page_id: str, platform: str) -> Optional[datetime]:
        """Return the list filter for the next run, or ``None`` for a full sync."""
        last_synced_at = await self._store.latest_watermark(page_id, platform)
        if last_synced_at is None:
            logger.info("No watermark for page %s/%s; running full sync", page_id, platform)
            return None
        return last_synced_at - self.safety_window

    @staticmethod
    def discard_stale(
        conversations: Iterable[GraphConversation],
        since: Optional[datetime],
    ) -> List[GraphConversation]:
        """Drop conversations strictly older than ``since``.

        Upstream ``since`` filtering is not exact, so the cutoff is applied
        again locally.
        """
        conversations = list(conversations)
        if since is None:
            return conversations
        kept = [c for c in conversations if c.updated_time >= since]
        dropped = len(conversations) - len(kept)
        if dropped:
            logger.info("Discarded %d conversation(s) older than %s", dropped, since.isoformat())
        return kept

    async def commit(
        self,
        page_id: str,
        platform: str,
        observed_max: Optional[datetime],
    ) -> datetime:
        """Append the new watermark and return it.

        ``observed_max`` is the newest ``updated_time`` processed in the run;
        with nothing processed, wall-clock now is used so an empty run still
        advances the window.
        """
        value = observed_max or datetime.now(timezone.utc)
        await self._store.append_watermark(page_id, platform, value)
        logger.info("Watermark for page %s/%s -> %s", page_id, platform, value.isoformat())
        return value


def max_updated_time(conversations: Iterable[GraphConversation]) -> Optional[datetime]:
    """Latest ``updated_time`` across ``conversations``, or ``None`` if empty."""
    return max((c.updated_time for c in conversations), default=None)
