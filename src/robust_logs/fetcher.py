"""
Chunked log fetcher.

Fetches eth_getLogs results for a filter over a block range:
- Symbolic tags are resolved against the chain head once, up front
- Ranges wider than max_block_range are split into consecutive chunks,
  fetched strictly in ascending order
- Rate-limited or timed-out chunks are skipped; any other failure aborts
"""

import asyncio
from typing import Optional, Union

import structlog

from .models import FilterDefinition, LogEntry, is_symbolic, resolve_block, to_hex
from .retry import CallExecutor
from .rpc import FilterNotFoundError, RateLimitOrTimeoutError

logger = structlog.get_logger()


class LogFetcher:
    def __init__(
        self,
        executor: CallExecutor,
        max_block_range: int = 2000,
        chunk_delay: float = 0.1,
    ):
        if max_block_range < 1:
            raise ValueError("max_block_range must be at least 1")
        self.executor = executor
        self.max_block_range = max_block_range
        self.chunk_delay = chunk_delay

        self.skipped_chunks = 0

    async def get_block_number(self) -> int:
        return await self.executor.get_block_number()

    async def resolve_range(
        self,
        definition: FilterDefinition,
        head: Optional[int] = None,
    ) -> tuple[int, int]:
        """Resolve the definition's block range to absolute numbers."""
        if head is None and (is_symbolic(definition.from_block) or is_symbolic(definition.to_block)):
            head = await self.get_block_number()
        return (
            resolve_block(definition.from_block, head),
            resolve_block(definition.to_block, head),
        )

    def plan_chunks(self, from_block: int, to_block: int) -> list[tuple[int, int]]:
        """Split [from_block, to_block] into consecutive ranges of at most max_block_range blocks."""
        chunks = []
        start = from_block
        while start <= to_block:
            end = min(start + self.max_block_range - 1, to_block)
            chunks.append((start, end))
            start = end + 1
        return chunks

    async def _get_logs(self, definition: FilterDefinition, from_block: int, to_block: int) -> list[LogEntry]:
        params = definition.with_range(to_hex(from_block), to_hex(to_block)).to_rpc_params()
        raw_logs = await self.executor.execute("eth_getLogs", [params])
        return [LogEntry.from_rpc(raw) for raw in raw_logs or []]

    async def fetch_logs(
        self,
        definition: Union[FilterDefinition, dict],
        head: Optional[int] = None,
    ) -> list[LogEntry]:
        """
        Fetch logs for `definition`, in block then log-index order.

        Args:
            definition: FilterDefinition or raw eth_getLogs filter dict
            head: Known chain head, to skip the eth_blockNumber lookup

        Returns the full result or raises; there is no partial result on
        a hard failure.
        """
        definition = FilterDefinition.coerce(definition)
        from_block, to_block = await self.resolve_range(definition, head)

        if from_block > to_block:
            return []

        block_range = to_block - from_block + 1
        if block_range <= self.max_block_range:
            try:
                return await self._get_logs(definition, from_block, to_block)
            except FilterNotFoundError:
                logger.warning(
                    "Filter not found on eth_getLogs, retrying once",
                    from_block=from_block,
                    to_block=to_block,
                )
                return await self._get_logs(definition, from_block, to_block)

        chunks = self.plan_chunks(from_block, to_block)
        logger.info(
            "Chunking large log request",
            blocks=block_range,
            chunks=len(chunks),
            max_block_range=self.max_block_range,
        )

        all_logs: list[LogEntry] = []
        for start, end in chunks:
            try:
                logs = await self._get_logs(definition, start, end)
            except RateLimitOrTimeoutError as e:
                self.skipped_chunks += 1
                logger.warning(
                    "Skipping chunk after rate limit or timeout",
                    from_block=start,
                    to_block=end,
                    error=str(e),
                )
                continue

            all_logs.extend(logs)
            logger.debug("Fetched chunk", from_block=start, to_block=end, logs=len(logs))

            if end < to_block and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

        return all_logs
