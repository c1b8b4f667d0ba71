import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from journeyflow.models.segment import CustomerSegment
from journeyflow.services.store import JourneyStore

logger = logging.getLogger(__name__)


class SegmentCache:
    """Keyed, TTL-bounded cache of segment definitions shared by concurrent ticks.

    Cached segments are returned as copies so a tick can never mutate the shared entry.
    """

    def __init__(self, store: JourneyStore, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Optional[CustomerSegment]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, segment_id: str) -> Optional[CustomerSegment]:
        async with self._lock:
            cached = self._entries.get(segment_id)
            if cached and self._clock() - cached[0] < self.ttl_seconds:
                logger.debug(f"[SEGMENT_CACHE] Hit for segment {segment_id}")
                segment = cached[1]
            else:
                logger.debug(f"[SEGMENT_CACHE] Miss for segment {segment_id}, loading from store")
                segment = await self.store.get_segment(segment_id)
                self._entries[segment_id] = (self._clock(), segment)
        return segment.model_copy(deep=True) if segment else None

    def invalidate(self, segment_id: Optional[str] = None) -> None:
        if segment_id is None:
            self._entries.clear()
        else:
            self._entries.pop(segment_id, None)
