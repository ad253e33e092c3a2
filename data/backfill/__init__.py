"""
Gap Backfill System

Keeps the bar store gap-free while the live stream runs.

Key Components:
- GapRegistry: Symbols waiting for a backfill, with atomic claiming
- RangeResolver: Finds where a gap starts
- BackfillScheduler: Fixed-interval, bounded-concurrency driver
- BarsBackfiller: Fetches and writes a resolved range
"""

from .errors import (
    BackfillError,
    ConfigurationError,
    TransientStoreError,
    FetchError
)

from .gap_registry import (
    GapRegistry,
    GapState
)

from .range_resolver import (
    RangeResolver,
    parse_query_start,
    QUERY_START_LAYOUTS
)

from .executor import (
    BarsBackfiller,
    ResolvedRange
)

from .scheduler import (
    BackfillScheduler,
    CycleReport,
    SchedulerMetrics,
    concurrency_ceiling
)

__all__ = [
    # Errors
    "BackfillError",
    "ConfigurationError",
    "TransientStoreError",
    "FetchError",

    # Registry
    "GapRegistry",
    "GapState",

    # Resolution
    "RangeResolver",
    "parse_query_start",
    "QUERY_START_LAYOUTS",

    # Execution
    "BarsBackfiller",
    "ResolvedRange",

    # Scheduling
    "BackfillScheduler",
    "CycleReport",
    "SchedulerMetrics",
    "concurrency_ceiling"
]
