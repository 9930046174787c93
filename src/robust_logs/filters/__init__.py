"""
Filter lifecycle: registry, manager and listener poll loops.
"""

from .registry import FilterRegistry, FilterKind, FilterStatus, FilterStats, TrackedFilter
from .listener import PollTask
from .manager import CreatedFilter, FilterManager

__all__ = [
    "FilterRegistry",
    "FilterKind",
    "FilterStatus",
    "FilterStats",
    "TrackedFilter",
    "PollTask",
    "CreatedFilter",
    "FilterManager",
]
