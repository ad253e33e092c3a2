"""
Bounded Backfill Scheduler

Fixed-interval driver that drains the gap registry. Each cycle claims at most
``max_concurrency`` pending symbols, runs one backfill task per claim in
parallel, and joins all of them before the next scan. Gap signals that arrive
in between simply accumulate in the registry.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Any

from .errors import BackfillError
from .gap_registry import GapRegistry

# Configure logging
logger = logging.getLogger(__name__)


DEFAULT_CONCURRENCY_PER_CPU = 10


def concurrency_ceiling(per_cpu: int = DEFAULT_CONCURRENCY_PER_CPU) -> int:
    """Ceiling that scales with the host: ``per_cpu`` tasks per logical CPU."""
    return (os.cpu_count() or 1) * per_cpu


@dataclass
class CycleReport:
    """Outcome of one scheduling cycle."""
    cycle: int
    claimed: int = 0
    succeeded: int = 0
    no_gap: int = 0
    failed: int = 0
    requeued: int = 0
    bars_written: int = 0
    duration: float = 0.0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycle': self.cycle,
            'claimed': self.claimed,
            'succeeded': self.succeeded,
            'no_gap': self.no_gap,
            'failed': self.failed,
            'requeued': self.requeued,
            'bars_written': self.bars_written,
            'duration': self.duration,
            'errors': dict(self.errors),
        }


@dataclass
class SchedulerMetrics:
    """Running totals across cycles."""
    cycles: int = 0
    symbols_claimed: int = 0
    bars_written: int = 0
    no_gap: int = 0
    failures: Dict[str, int] = field(default_factory=dict)
    peak_active_tasks: int = 0
    last_cycle: Optional[CycleReport] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record(self, report: CycleReport) -> None:
        self.cycles += 1
        self.symbols_claimed += report.claimed
        self.bars_written += report.bars_written
        self.no_gap += report.no_gap
        self.last_cycle = report


@dataclass
class _TaskOutcome:
    symbol: str
    bars_written: int = 0
    no_gap: bool = False
    error: Optional[BaseException] = None
    requeued: bool = False


class BackfillScheduler:
    """
    Polling scheduler with a per-cycle join barrier.

    The claim-and-clear step of the registry is the only thing that keeps two
    tasks off the same symbol; there is no extra lock around the store.
    """

    def __init__(self,
                 registry: GapRegistry,
                 resolver,
                 executor,
                 interval: float = 30.0,
                 max_concurrency: Optional[int] = None,
                 concurrency_per_cpu: int = DEFAULT_CONCURRENCY_PER_CPU,
                 max_requeue_attempts: int = 0,
                 shutdown_timeout: float = 60.0):
        """
        Args:
            registry: Shared gap registry
            resolver: Object with ``async resolve(symbol, end)``
            executor: Object with ``async fetch_and_persist(symbol, start, end)``
            interval: Seconds between claim scans
            max_concurrency: Explicit ceiling; defaults to CPUs times
                ``concurrency_per_cpu``
            max_requeue_attempts: Consecutive failures after which a symbol
                is no longer put back to pending (0 keeps failures dropped)
            shutdown_timeout: Seconds ``stop()`` waits for a running cycle
        """
        self.registry = registry
        self.resolver = resolver
        self.executor = executor
        self.interval = interval
        self.max_concurrency = max_concurrency or concurrency_ceiling(concurrency_per_cpu)
        self.max_requeue_attempts = max_requeue_attempts
        self.shutdown_timeout = shutdown_timeout

        self.metrics = SchedulerMetrics()
        self._failure_counts: Dict[str, int] = {}
        self._cycle_count = 0
        self._active = 0

        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

        logger.info(f"BackfillScheduler initialized: interval={interval}s, "
                    f"max_concurrency={self.max_concurrency}")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_tasks(self) -> int:
        return self._active

    async def start(self) -> None:
        """Start the polling loop in the background."""
        if self.is_running:
            logger.warning("BackfillScheduler is already running")
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self.run(), name="backfill-scheduler")

    async def stop(self) -> None:
        """
        Stop polling and drain the running cycle.

        Waits up to ``shutdown_timeout`` for in-flight backfills; anything
        still running after that is cancelled and its symbol goes back to
        pending.
        """
        self._stop_event.set()

        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            logger.info(f"[polygon] waiting up to {self.shutdown_timeout}s for {self._active} backfill tasks")
            done, pending = await asyncio.wait({cycle}, timeout=self.shutdown_timeout)
            if pending:
                logger.warning("[polygon] shutdown timeout, cancelling outstanding backfills")
                cycle.cancel()
                await asyncio.gather(cycle, return_exceptions=True)

        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        logger.info("BackfillScheduler stopped")

    async def run(self) -> None:
        """Idle for one interval, drain, join, repeat until stopped."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break

            self._cycle_task = asyncio.create_task(self.run_cycle())
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                if self._stop_event.is_set():
                    break
                raise
            finally:
                self._cycle_task = None

    async def run_cycle(self) -> CycleReport:
        """
        Run one claim scan and wait for every task it launched.

        Per-symbol failures never escape this method.
        """
        self._cycle_count += 1
        report = CycleReport(cycle=self._cycle_count)
        started = time.monotonic()

        claims = self.registry.claim_all(self.max_concurrency)
        report.claimed = len(claims)

        if claims:
            logger.info(f"[polygon] cycle {report.cycle}: backfilling {len(claims)} symbols")
            tasks = [
                asyncio.create_task(self._backfill(symbol, last_known), name=f"backfill:{symbol}")
                for symbol, last_known in claims
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            for (symbol, _), result in zip(claims, results):
                if isinstance(result, BaseException):
                    # _backfill contains its own errors, this is a bug guard
                    report.failed += 1
                    report.errors[symbol] = repr(result)
                    continue
                if result.error is not None:
                    report.failed += 1
                    report.errors[symbol] = str(result.error)
                    name = type(result.error).__name__
                    self.metrics.failures[name] = self.metrics.failures.get(name, 0) + 1
                    if result.requeued:
                        report.requeued += 1
                elif result.no_gap:
                    report.no_gap += 1
                else:
                    report.succeeded += 1
                    report.bars_written += result.bars_written

        report.duration = time.monotonic() - started
        self.metrics.record(report)

        if claims:
            logger.info(f"[polygon] cycle {report.cycle} done in {report.duration:.2f}s: "
                        f"{report.succeeded} filled, {report.no_gap} without gap, {report.failed} failed")
        return report

    async def _backfill(self, symbol: str, last_known: datetime) -> _TaskOutcome:
        """Resolve then fetch one symbol; the registry entry is settled in every path."""
        outcome = _TaskOutcome(symbol=symbol)
        self._active += 1
        self.metrics.peak_active_tasks = max(self.metrics.peak_active_tasks, self._active)
        try:
            start = await self.resolver.resolve(symbol, last_known)
            if start is None:
                outcome.no_gap = True
            else:
                outcome.bars_written = await self.executor.fetch_and_persist(symbol, start, None)
            self._failure_counts.pop(symbol, None)

        except asyncio.CancelledError:
            self.registry.requeue(symbol, last_known)
            raise

        except BackfillError as e:
            logger.error(f"[polygon] backfill failure for {symbol} ({type(e).__name__}: {e})")
            outcome.error = e

        except Exception as e:
            logger.exception(f"[polygon] unexpected backfill failure for {symbol}: {e}")
            outcome.error = e

        finally:
            self._active -= 1

        if outcome.error is not None and self._should_requeue(symbol):
            outcome.requeued = self.registry.requeue(symbol, last_known)
        else:
            self.registry.release(symbol)

        return outcome

    def _should_requeue(self, symbol: str) -> bool:
        if self.max_requeue_attempts <= 0:
            return False
        failures = self._failure_counts.get(symbol, 0) + 1
        if failures > self.max_requeue_attempts:
            self._failure_counts.pop(symbol, None)
            logger.warning(f"[polygon] giving up on {symbol} after {failures - 1} requeues")
            return False
        self._failure_counts[symbol] = failures
        return True

    def get_stats(self) -> Dict[str, Any]:
        last = self.metrics.last_cycle
        return {
            'running': self.is_running,
            'interval': self.interval,
            'max_concurrency': self.max_concurrency,
            'active_tasks': self._active,
            'peak_active_tasks': self.metrics.peak_active_tasks,
            'cycles': self.metrics.cycles,
            'symbols_claimed': self.metrics.symbols_claimed,
            'bars_written': self.metrics.bars_written,
            'no_gap': self.metrics.no_gap,
            'failures': dict(self.metrics.failures),
            'pending': self.registry.pending_count(),
            'in_flight': self.registry.in_flight_count(),
            'last_cycle': last.to_dict() if last else None,
        }
