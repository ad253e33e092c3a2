"""
Polygon Backfill Worker

Background worker that runs the live stream and the gap backfill scheduler
side by side. The stream writes what it receives and reports gaps; the
scheduler fills them from the REST API.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from config.settings import FetcherConfig
from data.fetchers.polygon_io import PolygonFetcher
from data.streaming.handlers import PolygonStreamRouter
from data.streaming.polygon_stream import PolygonStreamClient, build_subscription
from .executor import BarsBackfiller
from .gap_registry import GapRegistry
from .range_resolver import RangeResolver
from .scheduler import BackfillScheduler

# Configure logging
logger = logging.getLogger(__name__)


class PolygonBackfillWorker:
    """
    Wires configuration, store, REST fetcher, stream and scheduler.

    Collaborators can be injected for tests; anything not given is built
    from the configuration.
    """

    def __init__(self,
                 config: FetcherConfig,
                 store,
                 fetcher: Optional[PolygonFetcher] = None,
                 registry: Optional[GapRegistry] = None,
                 stream: Optional[PolygonStreamClient] = None):
        """
        Args:
            config: Validated fetcher configuration
            store: MarketDataService (or anything with the same methods)
            fetcher: REST fetcher, built from ``config`` when omitted
            registry: Gap registry shared by stream and scheduler
            stream: Stream client, built from ``config`` when omitted
        """
        self.config = config
        self.store = store
        self.registry = registry or GapRegistry()
        self.fetcher = fetcher or PolygonFetcher(api_key=config.api_key, base_url=config.base_url)

        self.resolver = RangeResolver(store, query_start=config.query_start)
        self.executor = BarsBackfiller(self.fetcher, store, add_tick_count=config.add_bar_tick_count)
        self.scheduler = BackfillScheduler(
            self.registry,
            self.resolver,
            self.executor,
            interval=config.backfill_interval,
            max_concurrency=config.max_concurrency,
            concurrency_per_cpu=config.concurrency_per_cpu,
            max_requeue_attempts=config.max_requeue_attempts,
            shutdown_timeout=config.shutdown_timeout,
        )

        self.router = PolygonStreamRouter(
            store,
            self.registry,
            symbols=config.symbols,
            add_bar_tick_count=config.add_bar_tick_count,
        )
        self.stream = stream or PolygonStreamClient(
            url=config.stream_url,
            api_key=config.api_key,
            subscription=build_subscription(config.data_types, config.symbols),
            bar_handler=self.router.handle_bar if "bars" in config.data_types else None,
            quote_handler=self.router.handle_quote if "quotes" in config.data_types else None,
            trade_handler=self.router.handle_trade if "trades" in config.data_types else None,
            on_reconnect=self.router.reset,
        )

        self._stream_task: Optional[asyncio.Task] = None
        logger.info(f"PolygonBackfillWorker initialized: data_types={config.data_types}, "
                    f"symbols={config.symbols or '*'}")

    def notify_gap(self, symbol: str, last_known_timestamp: datetime) -> None:
        """Register a possible gap for ``symbol`` ending at ``last_known_timestamp``."""
        self.registry.mark_pending(symbol, last_known_timestamp)

    async def start(self) -> None:
        """Start streaming and backfilling in the background."""
        await self.fetcher.start()
        await self.scheduler.start()
        self._stream_task = asyncio.create_task(self.stream.listen(), name="polygon-stream")
        self._stream_task.add_done_callback(self._on_stream_done)
        logger.info("[polygon] worker started")

    def _on_stream_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[polygon] stream task died, no new gaps will be detected: {error!r}")
        else:
            logger.warning("[polygon] stream task exited")

    @property
    def stream_running(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    @property
    def is_running(self) -> bool:
        """True while both the stream and the backfill scheduler are alive."""
        return self.stream_running and self.scheduler.is_running

    async def stop(self) -> None:
        """Stop the stream, drain the scheduler, close the HTTP session."""
        await self.stream.close()
        if self._stream_task is not None:
            self._stream_task.cancel()
            await asyncio.gather(self._stream_task, return_exceptions=True)
            self._stream_task = None

        await self.scheduler.stop()
        await self.fetcher.stop()
        logger.info("[polygon] worker stopped")

    async def run(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await self._stream_task
        finally:
            await self.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            'data_types': list(self.config.data_types),
            'symbols': list(self.config.symbols),
            'query_start': self.config.query_start,
            'running': self.is_running,
            'stream_running': self.stream_running,
            'scheduler': self.scheduler.get_stats(),
            'stream': self.stream.get_stats(),
            'router': self.router.get_stats(),
            'fetcher': self.fetcher.get_metrics(),
        }
