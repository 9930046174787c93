"""
Filter Manager: block-range filters with automatic cleanup and recovery.

Replaces server-side filters (which nodes drop without notice) with
registry entries that remember the last synced block, so changes can
always be re-derived with eth_getLogs.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import structlog

from ..fetcher import LogFetcher
from ..models import FilterDefinition, LogEntry, is_symbolic, resolve_block
from ..retry import CallExecutor
from ..rpc import FilterNotFoundError, RPCError
from .registry import FilterKind, FilterRegistry, FilterStats, TrackedFilter

logger = structlog.get_logger()


@dataclass
class CreatedFilter:
    filter_id: str
    logs: list[LogEntry] = field(default_factory=list)


class FilterManager:
    """
    Owns the filter registry and the reaper.

    Features:
    - Eager first fetch on create_filter
    - get_filter_changes re-derived from the high-water-mark
    - Expired native filters recreated from the last synced block
    - Periodic eviction of filters older than filter_timeout
    - Best-effort teardown
    """

    def __init__(
        self,
        executor: CallExecutor,
        fetcher: LogFetcher,
        filter_timeout: float = 300.0,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.executor = executor
        self.fetcher = fetcher
        self.filter_timeout = filter_timeout
        self.cleanup_interval = cleanup_interval
        self.registry = FilterRegistry(clock=clock)

        self.evicted_count = 0
        self.recreated_count = 0
        self._reaper_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start the reaper on the running event loop."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop(), name="filter-reaper")
            logger.debug("Filter reaper started", cleanup_interval=self.cleanup_interval)

    @property
    def reaper_running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    async def create_filter(self, definition: Union[FilterDefinition, dict]) -> CreatedFilter:
        """Fetch the filter's logs once and register it for later get_filter_changes calls."""
        definition = FilterDefinition.coerce(definition)
        try:
            from_block, to_block = await self.fetcher.resolve_range(definition)
            logs = await self.fetcher.fetch_logs(definition.with_range(from_block, to_block))
        except RPCError as e:
            logger.warning("Failed to create filter", error=str(e))
            raise

        tracked = self.registry.create(definition, kind=FilterKind.LOGS, last_synced_block=to_block)
        logger.info(
            "Created filter",
            filter_id=tracked.filter_id,
            from_block=from_block,
            to_block=to_block,
            logs=len(logs),
        )
        return CreatedFilter(filter_id=tracked.filter_id, logs=logs)

    async def install_native_filter(self, definition: Union[FilterDefinition, dict]) -> str:
        """Install a server-side filter with eth_newFilter and track it under the node's id."""
        definition = FilterDefinition.coerce(definition)
        filter_id = await self.executor.execute("eth_newFilter", [definition.to_rpc_params()])
        self.registry.create(definition, kind=FilterKind.NATIVE, filter_id=filter_id)
        logger.info("Installed native filter", filter_id=filter_id)
        return filter_id

    async def get_filter_changes(self, filter_id: str) -> list[LogEntry]:
        """New logs since the last call. Unknown ids yield an empty list."""
        tracked = self.registry.get(filter_id)
        if tracked is None:
            logger.warning("Filter not found in active filters", filter_id=filter_id)
            return []

        try:
            if tracked.kind == FilterKind.NATIVE:
                return await self._native_changes(tracked)
            return await self._range_changes(tracked)
        except FilterNotFoundError:
            logger.warning("Filter expired, recreating", filter_id=filter_id)
            self.registry.mark_expired(filter_id)
            return await self._recreate_filter(filter_id)

    async def _native_changes(self, tracked: TrackedFilter) -> list[LogEntry]:
        raw_logs = await self.executor.execute("eth_getFilterChanges", [tracked.filter_id])
        logs = [LogEntry.from_rpc(raw) for raw in raw_logs or [] if isinstance(raw, dict)]
        if logs:
            self.registry.advance(tracked.filter_id, max(log.block_number for log in logs))
        return logs

    async def _range_changes(self, tracked: TrackedFilter) -> list[LogEntry]:
        definition = tracked.definition
        head = await self.fetcher.get_block_number()

        upper = head
        if not is_symbolic(definition.to_block):
            upper = min(head, resolve_block(definition.to_block, head))

        if tracked.last_synced_block is None:
            from_block = resolve_block(definition.from_block, head)
        else:
            from_block = tracked.last_synced_block + 1

        if from_block > upper:
            return []

        logs = await self.fetcher.fetch_logs(definition.with_range(from_block, upper), head=head)
        self.registry.advance(tracked.filter_id, upper)
        return logs

    async def _recreate_filter(self, filter_id: str) -> list[LogEntry]:
        """Re-fetch from the high-water-mark (or from_block) to head; remove the filter if that fails."""
        tracked = self.registry.get(filter_id)
        if tracked is None:
            return []

        try:
            head = await self.fetcher.get_block_number()
            if tracked.last_synced_block is not None:
                from_block = tracked.last_synced_block
            else:
                from_block = resolve_block(tracked.definition.from_block, head)
            logs = await self.fetcher.fetch_logs(
                tracked.definition.with_range(from_block, head),
                head=head,
            )
        except Exception as e:
            logger.error("Failed to recreate filter", filter_id=filter_id, error=str(e))
            await self.remove_filter(filter_id)
            return []

        self.registry.advance(filter_id, head)
        # A recreated native filter is served from block ranges from now on
        self.registry.reactivate(filter_id, kind=FilterKind.LOGS)
        self.recreated_count += 1
        logger.info("Recreated filter", filter_id=filter_id, from_block=from_block, to_block=head)
        return logs

    async def remove_filter(self, filter_id: str) -> None:
        """Remove a filter. Unknown ids are a no-op."""
        tracked = self.registry.get(filter_id)
        try:
            if tracked is not None and tracked.kind == FilterKind.NATIVE:
                await self.executor.execute("eth_uninstallFilter", [filter_id], max_retries=0)
        except RPCError as e:
            # Native filters may already be gone on the node
            logger.warning("Failed to uninstall filter", filter_id=filter_id, error=str(e))
        finally:
            self.registry.remove(filter_id)

    async def sweep(self) -> list[str]:
        """Evict every filter whose age since creation exceeds filter_timeout."""
        stale = self.registry.stale_ids(self.filter_timeout)
        for filter_id in stale:
            logger.info("Cleaning up expired filter", filter_id=filter_id)
            await self.remove_filter(filter_id)
        self.evicted_count += len(stale)
        return stale

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Filter reaper sweep failed", error=str(e))

    async def destroy(self) -> None:
        """Stop the reaper and remove every filter; one failing removal does not block the rest."""
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None

        filter_ids = self.registry.ids()
        results = await asyncio.gather(
            *(self.remove_filter(filter_id) for filter_id in filter_ids),
            return_exceptions=True,
        )
        for filter_id, result in zip(filter_ids, results):
            if isinstance(result, Exception):
                logger.error("Failed to remove filter during shutdown", filter_id=filter_id, error=str(result))

        self.registry.clear()
        logger.info("Filter manager destroyed", removed=len(filter_ids))

    def get_stats(self) -> FilterStats:
        return self.registry.get_stats()
