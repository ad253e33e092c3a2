"""
Backfill error taxonomy.

Every per-symbol failure on the backfill path is one of these. The scheduler
contains them inside the symbol's task; only startup configuration errors are
allowed to stop the process.
"""


class BackfillError(Exception):
    """Base class for backfill failures."""
    pass


class ConfigurationError(BackfillError, ValueError):
    """Invalid configuration: no usable data type or an unparseable start time."""
    pass


class TransientStoreError(BackfillError):
    """The store could not be queried for the last record of a symbol."""
    pass


class FetchError(BackfillError):
    """Remote fetch or local write of a backfill range failed."""

    def __init__(self, message: str, symbol: str = None):
        super().__init__(message)
        self.symbol = symbol
