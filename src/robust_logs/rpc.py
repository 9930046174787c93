"""
RPC client for EVM JSON-RPC endpoints.

Supports:
- Multiple RPC endpoints (callers pick one per request, or round-robin)
- Bounded in-flight requests with a semaphore
- Classified errors, so callers never parse message text

Retries live one layer up, in `robust_logs.retry.CallExecutor`.
"""

import asyncio
from enum import Enum
from typing import Any, Optional

import aiohttp
import structlog

logger = structlog.get_logger()


class ErrorKind(Enum):
    TRANSPORT = "transport"
    RATE_LIMIT_OR_TIMEOUT = "rate_limit_or_timeout"
    FILTER_NOT_FOUND = "filter_not_found"
    UNKNOWN = "unknown"


class RPCError(Exception):
    """RPC call failed."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.endpoint = endpoint


class TransportError(RPCError):
    """Network or HTTP failure."""

    kind = ErrorKind.TRANSPORT


class RateLimitOrTimeoutError(RPCError):
    """Node throttled the request or it timed out."""

    kind = ErrorKind.RATE_LIMIT_OR_TIMEOUT


class FilterNotFoundError(RPCError):
    """Server-side filter expired or was never installed."""

    kind = ErrorKind.FILTER_NOT_FOUND


class UnknownRPCError(RPCError):
    kind = ErrorKind.UNKNOWN


_ERROR_CLASSES = {
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.RATE_LIMIT_OR_TIMEOUT: RateLimitOrTimeoutError,
    ErrorKind.FILTER_NOT_FOUND: FilterNotFoundError,
    ErrorKind.UNKNOWN: UnknownRPCError,
}

# JSON-RPC "limit exceeded" (EIP-1474)
LIMIT_EXCEEDED_CODE = -32005

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "timeout", "timed out")


def classify_rpc_error(message: str, code: Optional[int] = None) -> ErrorKind:
    """
    Map a JSON-RPC error to an ErrorKind.

    This is the only place in the package that looks at error text.
    """
    text = (message or "").lower()
    if "filter not found" in text:
        return ErrorKind.FILTER_NOT_FOUND
    if code == LIMIT_EXCEEDED_CODE or any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT_OR_TIMEOUT
    return ErrorKind.UNKNOWN


def rpc_error_from(
    message: str,
    code: Optional[int] = None,
    endpoint: Optional[str] = None,
    kind: Optional[ErrorKind] = None,
) -> RPCError:
    """Build the RPCError subclass matching the classified kind."""
    if kind is None:
        kind = classify_rpc_error(message, code)
    return _ERROR_CLASSES[kind](message, code=code, endpoint=endpoint)


class RPCClient:
    """
    Async JSON-RPC client for EVM nodes.

    Features:
    - Connection pooling via aiohttp
    - Round-robin across multiple endpoints when none is requested
    - One attempt per send(); failures are raised as classified RPCErrors
    - Request ID tracking
    """

    def __init__(
        self,
        endpoints: list[str],
        max_concurrent: int = 10,
        timeout: float = 30.0,
    ):
        if not endpoints:
            raise ValueError("RPCClient needs at least one endpoint")
        self.endpoints = list(endpoints)
        self.max_concurrent = max_concurrent
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._request_id = 0
        self._endpoint_index = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _next_endpoint(self) -> str:
        """Round-robin endpoint selection."""
        endpoint = self.endpoints[self._endpoint_index]
        self._endpoint_index = (self._endpoint_index + 1) % len(self.endpoints)
        return endpoint

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def send(self, method: str, params: list[Any], endpoint: Optional[str] = None) -> Any:
        """Make a single RPC call. Raises a classified RPCError on failure."""
        await self.open()
        endpoint = endpoint or self._next_endpoint()

        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._next_request_id(),
        }

        try:
            async with self._semaphore:
                async with self._session.post(endpoint, json=payload) as resp:
                    if resp.status == 429:
                        raise RateLimitOrTimeoutError(
                            f"HTTP 429: {await resp.text()}", endpoint=endpoint
                        )
                    if resp.status != 200:
                        raise TransportError(
                            f"HTTP {resp.status}: {await resp.text()}", endpoint=endpoint
                        )

                    data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RateLimitOrTimeoutError(f"Request timed out: {method}", endpoint=endpoint) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{type(e).__name__}: {e}", endpoint=endpoint) from e
        except ValueError as e:
            # 200 with a non-JSON body, e.g. a proxy error page
            raise TransportError(f"Malformed JSON-RPC response: {e}", endpoint=endpoint) from e

        if not isinstance(data, dict):
            raise TransportError(f"Malformed JSON-RPC response: {data!r}", endpoint=endpoint)

        if data.get("error") is not None:
            error = data["error"]
            if isinstance(error, dict):
                message = str(error.get("message", error))
                code = error.get("code")
            else:
                message, code = str(error), None
            logger.debug("RPC returned error", method=method, endpoint=endpoint, code=code, error=message)
            raise rpc_error_from(f"RPC error: {message}", code=code, endpoint=endpoint)

        return data.get("result")
