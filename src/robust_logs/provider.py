"""
Robust provider: event-log access that never depends on server-side filters.

Wires the RPC gateway, retrying executor, chunked fetcher, filter manager
and listener poll loops together, and intercepts raw filter RPC methods.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog

from .config import ProviderConfig
from .fetcher import LogFetcher
from .filters.listener import LogCallback, PollTask
from .filters.manager import CreatedFilter, FilterManager
from .filters.registry import FilterKind, FilterStats, new_filter_id
from .models import FilterDefinition, LogEntry
from .retry import CallExecutor, Gateway
from .rpc import RPCClient
from .tracking import ErrorTracker

logger = structlog.get_logger()

INTERCEPTED_FILTER_METHODS = ("eth_newFilter", "eth_newBlockFilter", "eth_newPendingTransactionFilter")
DUMMY_FILTER_ID = "0x0"


class ProviderDestroyedError(RuntimeError):
    """Operation attempted on a destroyed provider."""


@dataclass
class ProviderStats:
    active_filter_count: int = 0
    active_event_listeners: int = 0
    filters: FilterStats = field(default_factory=FilterStats)
    listeners: list[dict] = field(default_factory=list)
    rpc_calls: int = 0
    failed_attempts: int = 0
    skipped_chunks: int = 0
    evicted_filters: int = 0
    recreated_filters: int = 0
    errors: dict = field(default_factory=dict)
    is_destroyed: bool = False


class RobustProvider:
    """
    Event-log access on top of an unreliable JSON-RPC endpoint.

    Usage:
        async with create_robust_provider(["https://rpc.example.com"]) as provider:
            cancel = provider.create_event_listener({"address": token}, handle_log)
            logs = await provider.get_logs({"address": token, "fromBlock": 1000, "toBlock": 7500})
    """

    def __init__(
        self,
        gateway: Gateway,
        config: Optional[ProviderConfig] = None,
        clock: Callable[[], float] = time.time,
        owns_gateway: bool = False,
        **overrides,
    ):
        config = config or ProviderConfig()
        if overrides:
            config = ProviderConfig.model_validate({**config.model_dump(), **overrides})
        self.config = config
        self.gateway = gateway
        self.owns_gateway = owns_gateway
        self._clock = clock

        self.error_tracker = ErrorTracker(clock=clock)
        self.executor = CallExecutor(
            gateway,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            error_tracker=self.error_tracker,
        )
        self.fetcher = LogFetcher(
            self.executor,
            max_block_range=config.max_block_range,
            chunk_delay=config.chunk_delay,
        )
        self.filter_manager = FilterManager(
            self.executor,
            self.fetcher,
            filter_timeout=config.filter_timeout,
            cleanup_interval=config.cleanup_interval,
            clock=clock,
        )

        self._listeners: dict[str, PollTask] = {}
        self.is_destroyed = False

    async def __aenter__(self):
        open_gateway = getattr(self.gateway, "open", None)
        if open_gateway is not None:
            await open_gateway()
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.destroy()

    def _check_alive(self) -> None:
        if self.is_destroyed:
            raise ProviderDestroyedError("Provider has been destroyed")

    def start(self) -> None:
        """Start background work (the filter reaper). Needs a running event loop."""
        self._check_alive()
        self.filter_manager.start()

    # Filters

    async def create_filter(self, definition: Union[FilterDefinition, dict]) -> CreatedFilter:
        self.start()
        return await self.filter_manager.create_filter(definition)

    async def install_native_filter(self, definition: Union[FilterDefinition, dict]) -> str:
        self.start()
        return await self.filter_manager.install_native_filter(definition)

    async def get_filter_changes(self, filter_id: str) -> list[LogEntry]:
        return await self.filter_manager.get_filter_changes(filter_id)

    async def remove_filter(self, filter_id: str) -> None:
        """Remove a filter, stopping its listener if it has one. Unknown ids are a no-op."""
        poll_task = self._listeners.pop(filter_id, None)
        if poll_task is not None:
            poll_task.stop()
        await self.filter_manager.remove_filter(filter_id)

    # Listeners

    def create_event_listener(
        self,
        definition: Union[FilterDefinition, dict],
        on_log: LogCallback,
    ) -> Callable[[], None]:
        """
        Poll for logs matching `definition` and pass each one to `on_log`.

        Returns a function that cancels the listener. Errors never reach
        the caller; they are logged and counted in get_stats().
        """
        self.start()
        definition = FilterDefinition.coerce(definition)
        filter_id = new_filter_id(FilterKind.LISTENER.value, self._clock)

        poll_task = PollTask(
            filter_id=filter_id,
            definition=definition,
            on_log=on_log,
            fetcher=self.fetcher,
            registry=self.filter_manager.registry,
            polling_interval=self.config.polling_interval,
            lookback_blocks=self.config.lookback_blocks,
            max_block_range=self.config.max_block_range,
        )
        self._listeners[filter_id] = poll_task
        poll_task.start()

        def cancel() -> None:
            self._cancel_listener(filter_id)

        return cancel

    def _cancel_listener(self, filter_id: str) -> Optional[PollTask]:
        poll_task = self._listeners.pop(filter_id, None)
        if poll_task is not None:
            poll_task.stop()
        self.filter_manager.registry.remove(filter_id)
        return poll_task

    def remove_event_listener(self, definition: Union[FilterDefinition, dict], on_log: LogCallback) -> bool:
        """Cancel the listener with the same address and callback. Returns whether one was found."""
        definition = FilterDefinition.coerce(definition)
        for filter_id, poll_task in list(self._listeners.items()):
            # == so bound methods of the same object match
            if poll_task.definition.matches_address(definition) and poll_task.on_log == on_log:
                self._cancel_listener(filter_id)
                return True
        return False

    # Direct calls

    async def get_logs(self, definition: Union[FilterDefinition, dict]) -> list[LogEntry]:
        """
        Chunked eth_getLogs. No filter is registered.

        A raw filter dict with a blockHash selects a single block, so it is
        forwarded to the node as-is.
        """
        self._check_alive()
        if isinstance(definition, dict) and "blockHash" in definition:
            raw_logs = await self.executor.execute("eth_getLogs", [definition])
            return [LogEntry.from_rpc(raw) for raw in raw_logs or [] if isinstance(raw, dict)]
        return await self.fetcher.fetch_logs(definition)

    async def get_block_number(self) -> int:
        return await self.executor.get_block_number()

    async def send(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Raw JSON-RPC call, with server-side filter methods intercepted."""
        params = params if params is not None else []

        if method == "eth_getFilterChanges":
            logger.warning("eth_getFilterChanges intercepted, returning no changes")
            return []

        if method in INTERCEPTED_FILTER_METHODS:
            logger.warning("Filter creation intercepted, returning dummy id", method=method)
            return DUMMY_FILTER_ID

        if method == "eth_getLogs":
            return await self.get_logs(params[0])

        return await self.executor.execute(method, params)

    # Lifecycle

    def get_stats(self) -> ProviderStats:
        filter_stats = self.filter_manager.get_stats()
        return ProviderStats(
            active_filter_count=filter_stats.active_filter_count,
            active_event_listeners=len(self._listeners),
            filters=filter_stats,
            listeners=[poll_task.get_status() for poll_task in self._listeners.values()],
            rpc_calls=self.executor.total_calls,
            failed_attempts=self.executor.failed_attempts,
            skipped_chunks=self.fetcher.skipped_chunks,
            evicted_filters=self.filter_manager.evicted_count,
            recreated_filters=self.filter_manager.recreated_count,
            errors=self.error_tracker.get_stats(),
            is_destroyed=self.is_destroyed,
        )

    async def destroy(self) -> None:
        """Cancel every listener and the reaper, then remove every filter."""
        if self.is_destroyed:
            return
        self.is_destroyed = True
        logger.info("Destroying provider", listeners=len(self._listeners))

        poll_tasks = [self._cancel_listener(filter_id) for filter_id in list(self._listeners)]
        pending = [p.task for p in poll_tasks if p is not None and p.task is not None]

        # Let in-flight cycles finish, within limits
        if pending:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=self.config.shutdown_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Listeners didn't stop in time, cancelling")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self.filter_manager.destroy()

        if self.owns_gateway:
            await self.gateway.close()

        logger.info("Provider destroyed")


def create_robust_provider(
    endpoints: Union[str, list[str]],
    config: Optional[ProviderConfig] = None,
    **overrides,
) -> RobustProvider:
    """Build a RobustProvider backed by an aiohttp RPCClient it owns."""
    config = config or ProviderConfig()
    if overrides:
        config = ProviderConfig.model_validate({**config.model_dump(), **overrides})

    if isinstance(endpoints, str):
        endpoints = [endpoints]
    client = RPCClient(
        endpoints=endpoints,
        max_concurrent=config.max_concurrent,
        timeout=config.request_timeout,
    )
    return RobustProvider(client, config=config, owns_gateway=True)
