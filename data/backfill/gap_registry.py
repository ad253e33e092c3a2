"""
Gap Registry

Concurrent-safe map from symbol to a pending backfill marker. The live stream
writes markers whenever a symbol resumes after a possible gap; the backfill
scheduler claims them in bulk.

An entry is in one of three states:

- absent: the symbol is clean
- a timestamp: a gap ends at that timestamp and nobody has claimed it yet
- ``None``: a backfill task owns the symbol (in flight)
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)


class GapState(Enum):
    """State of a symbol in the registry."""
    CLEAN = "clean"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class GapRegistry:
    """
    Owned replacement for a process-wide sync map.

    Both the stream router and the scheduler hold a reference to the same
    instance. Claiming happens inside a single critical section, so a symbol
    can never be handed to two tasks at once.
    """

    def __init__(self):
        self._markers: Dict[str, Optional[datetime]] = {}
        self._lock = threading.Lock()

    def mark_pending(self, symbol: str, last_known_timestamp: datetime) -> None:
        """
        Register a possible gap for a symbol.

        Last write wins, including over the in-flight sentinel: a marker
        written while a task runs is claimed on a later cycle.
        """
        with self._lock:
            previous = self._markers.get(symbol, GapState.CLEAN)
            self._markers[symbol] = last_known_timestamp

        if previous is GapState.CLEAN:
            logger.debug(f"[polygon] gap registered for {symbol} at {last_known_timestamp}")

    def claim_all(self, limit: int) -> List[Tuple[str, datetime]]:
        """
        Claim up to ``limit`` pending symbols.

        Each claimed entry is swapped for the in-flight sentinel before the
        lock is released.

        Args:
            limit: Maximum number of claims in this scan

        Returns:
            List of (symbol, last_known_timestamp) pairs
        """
        claimed: List[Tuple[str, datetime]] = []
        if limit <= 0:
            return claimed

        with self._lock:
            for symbol, timestamp in self._markers.items():
                if timestamp is None:
                    continue
                self._markers[symbol] = None
                claimed.append((symbol, timestamp))
                if len(claimed) >= limit:
                    break

        return claimed

    def release(self, symbol: str) -> bool:
        """
        Drop the in-flight sentinel once a task is done.

        Returns:
            True if the symbol became clean, False if it was re-marked
            pending while the task ran (or was never claimed)
        """
        with self._lock:
            if symbol in self._markers and self._markers[symbol] is None:
                del self._markers[symbol]
                return True
            return False

    def requeue(self, symbol: str, last_known_timestamp: datetime) -> bool:
        """
        Put an in-flight symbol back to pending with its old timestamp.

        A fresher marker written by the stream is kept as is.
        """
        with self._lock:
            if symbol in self._markers and self._markers[symbol] is None:
                self._markers[symbol] = last_known_timestamp
                return True
            return False

    def state(self, symbol: str) -> GapState:
        with self._lock:
            if symbol not in self._markers:
                return GapState.CLEAN
            if self._markers[symbol] is None:
                return GapState.IN_FLIGHT
            return GapState.PENDING

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for ts in self._markers.values() if ts is not None)

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for ts in self._markers.values() if ts is None)

    def snapshot(self) -> Dict[str, Optional[datetime]]:
        """Copy of the current markers (``None`` means in flight)."""
        with self._lock:
            return dict(self._markers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._markers)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._markers
