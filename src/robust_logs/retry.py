"""
Retrying call executor.

Wraps gateway calls with bounded retries and linear backoff:
the wait after failed attempt n (0-based) is retry_delay * (n + 1).

With several endpoints configured, every endpoint gets one try per
attempt (starting from a rotating offset) before the executor waits.
"""

import asyncio
from typing import Any, Optional, Protocol

import structlog

from .models import parse_quantity
from .rpc import RPCError
from .tracking import ErrorTracker

logger = structlog.get_logger()


class Gateway(Protocol):
    async def send(self, method: str, params: list[Any], endpoint: Optional[str] = None) -> Any:
        ...


class CallExecutor:
    def __init__(
        self,
        gateway: Gateway,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        error_tracker: Optional[ErrorTracker] = None,
    ):
        self.gateway = gateway
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.error_tracker = error_tracker or ErrorTracker()

        self._endpoint_offset = 0
        self.total_calls = 0
        self.failed_attempts = 0

    def _endpoint_order(self) -> list[Optional[str]]:
        """Endpoints for one attempt, starting from the rotating offset."""
        endpoints = list(getattr(self.gateway, "endpoints", None) or [])
        if len(endpoints) <= 1:
            return [None]

        start = self._endpoint_offset % len(endpoints)
        self._endpoint_offset = (start + 1) % len(endpoints)
        return endpoints[start:] + endpoints[:start]

    async def execute(
        self,
        method: str,
        params: Optional[list[Any]] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> Any:
        """
        Call `method` until it succeeds or max_retries + 1 attempts have failed.

        Raises the last underlying error. Params are sent unchanged on every attempt.
        """
        params = params if params is not None else []
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_delay = self.retry_delay if retry_delay is None else retry_delay

        self.total_calls += 1
        endpoints = self._endpoint_order()
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            for endpoint in endpoints:
                try:
                    return await self.gateway.send(method, params, endpoint=endpoint)
                except RPCError as e:
                    last_error = e
                    self.failed_attempts += 1
                    self.error_tracker.track(e, method=method, endpoint=endpoint, attempt=attempt)
                    logger.debug(
                        "RPC attempt failed",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        kind=e.kind.value,
                        error=str(e),
                    )

            if attempt < max_retries:
                wait_time = retry_delay * (attempt + 1)
                logger.warning(
                    "RPC call failed, retrying",
                    method=method,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    wait_time=wait_time,
                    error=str(last_error),
                )
                await asyncio.sleep(wait_time)

        logger.error(
            "RPC call failed after retries",
            method=method,
            attempts=max_retries + 1,
            error=str(last_error),
        )
        raise last_error

    async def get_block_number(self) -> int:
        """Get the latest block number."""
        result = await self.execute("eth_blockNumber", [])
        return parse_quantity(result)
