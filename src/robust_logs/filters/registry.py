"""
In-memory registry of tracked filters.

Maps a pseudo-filter id to its definition and high-water-mark block.
All mutations are synchronous, so under asyncio each one runs to
completion before any other task touches the registry.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

from ..models import FilterDefinition

logger = structlog.get_logger()


class FilterStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REMOVED = "removed"


class FilterKind(Enum):
    LOGS = "logs"
    LISTENER = "listener"
    NATIVE = "native"


@dataclass
class TrackedFilter:
    filter_id: str
    definition: FilterDefinition
    kind: FilterKind = FilterKind.LOGS
    status: FilterStatus = FilterStatus.ACTIVE
    last_synced_block: Optional[int] = None
    created_at: float = 0.0
    last_touched_at: float = 0.0


@dataclass
class FilterStats:
    active_filter_count: int = 0
    oldest_filter_created_at: Optional[float] = None
    counts_by_type: dict[str, int] = field(default_factory=dict)


def new_filter_id(prefix: str = "logs", clock: Callable[[], float] = time.time) -> str:
    """Process-unique id: epoch millis plus a random suffix."""
    return f"{prefix}_{int(clock() * 1000)}_{uuid.uuid4().hex[:9]}"


class FilterRegistry:
    """
    Owns every TrackedFilter; callers only ever hold ids.

    Features:
    - create / get / advance / remove
    - Monotonic high-water-mark per filter
    - Idempotent removal
    - Creation-age based staleness query for the reaper
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._filters: dict[str, TrackedFilter] = {}

    def __len__(self) -> int:
        return len(self._filters)

    def __contains__(self, filter_id: str) -> bool:
        return filter_id in self._filters

    def ids(self) -> list[str]:
        return list(self._filters)

    def create(
        self,
        definition: FilterDefinition,
        kind: FilterKind = FilterKind.LOGS,
        last_synced_block: Optional[int] = None,
        filter_id: Optional[str] = None,
    ) -> TrackedFilter:
        """Register a filter. A given filter_id replaces any existing entry."""
        now = self._clock()
        filter_id = filter_id or new_filter_id(kind.value, self._clock)
        tracked = TrackedFilter(
            filter_id=filter_id,
            definition=definition,
            kind=kind,
            last_synced_block=last_synced_block,
            created_at=now,
            last_touched_at=now,
        )
        self._filters[filter_id] = tracked
        logger.debug("Registered filter", filter_id=filter_id, kind=kind.value)
        return tracked

    def get(self, filter_id: str) -> Optional[TrackedFilter]:
        return self._filters.get(filter_id)

    def advance(self, filter_id: str, block_number: int) -> bool:
        """
        Move the filter's high-water-mark forward and refresh last_touched_at.

        Never moves it backwards. Returns False if the filter is unknown.
        """
        tracked = self._filters.get(filter_id)
        if tracked is None:
            return False

        if tracked.last_synced_block is None or block_number > tracked.last_synced_block:
            tracked.last_synced_block = block_number
        tracked.last_touched_at = self._clock()
        return True

    def mark_expired(self, filter_id: str) -> None:
        tracked = self._filters.get(filter_id)
        if tracked is not None:
            tracked.status = FilterStatus.EXPIRED

    def reactivate(self, filter_id: str, kind: Optional[FilterKind] = None) -> None:
        """Return a recreated filter to ACTIVE with a fresh created_at."""
        tracked = self._filters.get(filter_id)
        if tracked is None:
            return
        now = self._clock()
        tracked.status = FilterStatus.ACTIVE
        tracked.created_at = now
        tracked.last_touched_at = now
        if kind is not None:
            tracked.kind = kind

    def remove(self, filter_id: str) -> Optional[TrackedFilter]:
        """Delete a filter. Unknown ids are a no-op."""
        tracked = self._filters.pop(filter_id, None)
        if tracked is not None:
            tracked.status = FilterStatus.REMOVED
        return tracked

    def stale_ids(self, timeout: float) -> list[str]:
        """Ids whose age since creation exceeds timeout, regardless of activity."""
        now = self._clock()
        return [fid for fid, f in self._filters.items() if now - f.created_at > timeout]

    def clear(self) -> None:
        for filter_id in self.ids():
            self.remove(filter_id)

    def get_stats(self) -> FilterStats:
        stats = FilterStats(active_filter_count=len(self._filters))
        for tracked in self._filters.values():
            kind = tracked.kind.value
            stats.counts_by_type[kind] = stats.counts_by_type.get(kind, 0) + 1
            if stats.oldest_filter_created_at is None or tracked.created_at < stats.oldest_filter_created_at:
                stats.oldest_filter_created_at = tracked.created_at
        return stats
