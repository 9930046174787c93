"""
Error tracker: bounded history of failed RPC attempts.

Feeds the error section of RobustProvider.get_stats(), so failures that
the library tolerates silently still show up somewhere.
"""

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from .rpc import RPCError


@dataclass
class TrackedError:
    message: str
    kind: str
    code: Optional[int]
    endpoint: Optional[str]
    method: Optional[str]
    attempt: Optional[int]
    timestamp: float


class ErrorTracker:
    def __init__(
        self,
        max_errors: int = 100,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._errors: deque[TrackedError] = deque(maxlen=max_errors)

    def track(
        self,
        error: Exception,
        method: Optional[str] = None,
        endpoint: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> None:
        if isinstance(error, RPCError):
            kind, code = error.kind.value, error.code
            endpoint = endpoint or error.endpoint
        else:
            kind, code = type(error).__name__, None

        self._errors.append(
            TrackedError(
                message=str(error),
                kind=kind,
                code=code,
                endpoint=endpoint,
                method=method,
                attempt=attempt,
                timestamp=self._clock(),
            )
        )

    def get_stats(self) -> dict:
        cutoff = self._clock() - self.window_seconds
        recent = [e for e in self._errors if e.timestamp > cutoff]

        by_endpoint: dict[str, int] = {}
        by_method: dict[str, int] = {}
        by_kind: dict[str, int] = {}
        for e in recent:
            by_endpoint[str(e.endpoint)] = by_endpoint.get(str(e.endpoint), 0) + 1
            by_method[str(e.method)] = by_method.get(str(e.method), 0) + 1
            by_kind[e.kind] = by_kind.get(e.kind, 0) + 1

        return {
            "total": len(self._errors),
            "recent": len(recent),
            "by_endpoint": by_endpoint,
            "by_method": by_method,
            "by_kind": by_kind,
            "recent_errors": [asdict(e) for e in list(self._errors)[-10:]],
        }

    def clear(self) -> None:
        self._errors.clear()
