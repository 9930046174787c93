"""
Event-log polling for JSON-RPC endpoints with unreliable server-side filters.
"""

from .config import ProviderConfig
from .models import FilterDefinition, LogEntry
from .rpc import (
    ErrorKind,
    FilterNotFoundError,
    RateLimitOrTimeoutError,
    RPCClient,
    RPCError,
    TransportError,
    UnknownRPCError,
)
from .retry import CallExecutor
from .fetcher import LogFetcher
from .provider import ProviderDestroyedError, ProviderStats, RobustProvider, create_robust_provider

__all__ = [
    "ProviderConfig",
    "FilterDefinition",
    "LogEntry",
    "ErrorKind",
    "FilterNotFoundError",
    "RateLimitOrTimeoutError",
    "RPCClient",
    "RPCError",
    "TransportError",
    "UnknownRPCError",
    "CallExecutor",
    "LogFetcher",
    "ProviderDestroyedError",
    "ProviderStats",
    "RobustProvider",
    "create_robust_provider",
]
