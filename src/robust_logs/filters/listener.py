"""
PollTask: block-range polling loop behind each event listener.

Lifecycle of one cycle:
1. Resolve the chain head
2. Pick the range: head - lookback on the first cycle, then
   last_synced_block + 1 .. head (skip if there are no new blocks)
3. Fetch logs via the chunked fetcher
4. Hand each log to the callback
5. Advance the high-water-mark and reschedule

The registry entry is created by the first successful cycle.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from ..fetcher import LogFetcher
from ..models import FilterDefinition, LogEntry
from ..rpc import FilterNotFoundError
from .registry import FilterKind, FilterRegistry

logger = structlog.get_logger()

LogCallback = Callable[[LogEntry], Union[None, Awaitable[Any]]]


class PollTask:
    def __init__(
        self,
        filter_id: str,
        definition: FilterDefinition,
        on_log: LogCallback,
        fetcher: LogFetcher,
        registry: FilterRegistry,
        polling_interval: float = 4.0,
        lookback_blocks: int = 10,
        max_block_range: Optional[int] = None,
    ):
        self.filter_id = filter_id
        self.definition = definition
        self.on_log = on_log
        self.fetcher = fetcher
        self.registry = registry
        self.polling_interval = polling_interval
        self.lookback_blocks = lookback_blocks
        self.max_block_range = max_block_range or fetcher.max_block_range

        self.last_synced_block: Optional[int] = None
        self.cycles = 0
        self.logs_delivered = 0
        self.fetch_errors = 0
        self.callback_errors = 0

        self._active = True
        self._registered = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> Optional[asyncio.Task]:
        """Schedule the loop on the running event loop."""
        if self._task is None and self._active:
            self._task = asyncio.create_task(self.run(), name=f"poll-{self.filter_id}")
        return self._task

    def stop(self) -> None:
        """
        Signal the loop to stop.

        A pending wait ends immediately; a cycle already in flight finishes
        its network call and its result is dropped.
        """
        if self._active:
            logger.info("Stopping listener", filter_id=self.filter_id)
        self._active = False
        self._stop_event.set()

    async def run(self) -> None:
        logger.info(
            "Listener starting",
            filter_id=self.filter_id,
            address=self.definition.address,
            polling_interval=self.polling_interval,
        )

        try:
            while self._active:
                delay = await self.poll_once()
                if not self._active:
                    break
                await self._wait(delay)
        finally:
            logger.info(
                "Listener stopped",
                filter_id=self.filter_id,
                cycles=self.cycles,
                logs_delivered=self.logs_delivered,
                last_synced_block=self.last_synced_block,
            )

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _plan_range(self, head: int) -> Optional[tuple[int, int]]:
        """Range for this cycle, or None when there are no new blocks."""
        if self.last_synced_block is None:
            from_block = max(0, head - self.lookback_blocks)
        elif head <= self.last_synced_block:
            return None
        else:
            from_block = self.last_synced_block + 1

        if head - from_block + 1 > self.max_block_range:
            clamped = head - self.max_block_range + 1
            logger.warning(
                "Listener range clamped",
                filter_id=self.filter_id,
                from_block=from_block,
                clamped_from_block=clamped,
                to_block=head,
            )
            from_block = clamped

        return from_block, head

    async def poll_once(self) -> float:
        """Run one cycle. Returns the delay before the next one."""
        if not self._active:
            return 0.0

        self.cycles += 1
        try:
            head = await self.fetcher.get_block_number()
            block_range = self._plan_range(head)
            if block_range is None:
                return self.polling_interval

            from_block, to_block = block_range
            logs = await self.fetcher.fetch_logs(
                self.definition.with_range(from_block, to_block),
                head=head,
            )
        except FilterNotFoundError as e:
            self.fetch_errors += 1
            logger.warning("Filter not found while polling", filter_id=self.filter_id, error=str(e))
            return self.polling_interval
        except Exception as e:
            self.fetch_errors += 1
            logger.error(
                "Polling error",
                filter_id=self.filter_id,
                address=self.definition.address,
                error=str(e),
            )
            return self.polling_interval * 2

        if not self._active:
            logger.debug("Discarding result of cancelled cycle", filter_id=self.filter_id)
            return 0.0

        await self._deliver(logs)

        self.last_synced_block = to_block
        self._sync_registry(to_block)
        return self.polling_interval

    async def _deliver(self, logs: list[LogEntry]) -> None:
        for log in logs:
            if not self._active:
                break
            try:
                result = self.on_log(log)
                if inspect.isawaitable(result):
                    await result
                self.logs_delivered += 1
            except Exception as e:
                self.callback_errors += 1
                logger.error(
                    "Event listener callback failed",
                    filter_id=self.filter_id,
                    block_number=log.block_number,
                    log_index=log.log_index,
                    error=str(e),
                )

    def _sync_registry(self, block_number: int) -> None:
        """Register on the first successful cycle, advance afterwards."""
        if self.registry.advance(self.filter_id, block_number) or not self._active:
            return
        self.registry.create(
            self.definition,
            kind=FilterKind.LISTENER,
            last_synced_block=block_number,
            filter_id=self.filter_id,
        )
        if not self._registered:
            self._registered = True
            logger.debug("Listener filter registered", filter_id=self.filter_id, last_synced_block=block_number)
            return
        # Entry was reaped or removed underneath us
        logger.warning(
            "Listener filter re-registered after eviction",
            filter_id=self.filter_id,
            last_synced_block=block_number,
        )

    def get_status(self) -> dict:
        return {
            "filter_id": self.filter_id,
            "active": self._active,
            "last_synced_block": self.last_synced_block,
            "cycles": self.cycles,
            "logs_delivered": self.logs_delivered,
            "fetch_errors": self.fetch_errors,
            "callback_errors": self.callback_errors,
        }
