"""
Stream handlers

Turns decoded Polygon events into store records and tells the gap registry
when a symbol resumes streaming after a possible gap.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from data.backfill.gap_registry import GapRegistry

logger = logging.getLogger(__name__)


BAR_SECONDS = 60


class PolygonStreamRouter:
    """
    Handler set for the bars, quotes and trades channels.

    A bar marks its symbol pending when it is the first one seen since start
    or reconnect, or when it starts more than one bar after the previous
    bar's end. The marker is the bar's start time: everything before it may
    be missing.
    """

    def __init__(self,
                 store,
                 registry: GapRegistry,
                 symbols: Optional[Iterable[str]] = None,
                 add_bar_tick_count: bool = False):
        self.store = store
        self.registry = registry
        self.symbols = {s.upper() for s in symbols or []}
        self.add_bar_tick_count = add_bar_tick_count

        # symbol -> end epoch of the last streamed bar
        self._last_bar_end: Dict[str, int] = {}

        self.bars_received = 0
        self.quotes_received = 0
        self.trades_received = 0
        self.write_errors = 0

    def reset(self) -> None:
        """Forget continuity; called on reconnect so every symbol is re-checked."""
        self._last_bar_end.clear()

    def _allowed(self, symbol: str) -> bool:
        return bool(symbol) and (not self.symbols or symbol in self.symbols)

    async def handle_bar(self, msg: Dict[str, Any]) -> None:
        symbol = msg.get("sym", "")
        if not self._allowed(symbol):
            return
        self.bars_received += 1

        start_epoch = int(msg.get("s", 0)) // 1000
        end_epoch = int(msg.get("e", 0)) // 1000 or start_epoch + BAR_SECONDS

        previous_end = self._last_bar_end.get(symbol)
        if previous_end is None or start_epoch > previous_end + BAR_SECONDS:
            self.registry.mark_pending(symbol, datetime.fromtimestamp(start_epoch, tz=timezone.utc))
        if previous_end is None or end_epoch > previous_end:
            self._last_bar_end[symbol] = end_epoch

        record = {
            "symbol": symbol,
            "timeframe": "1Min",
            "epoch": start_epoch,
            "open": float(msg.get("o", 0)),
            "high": float(msg.get("h", 0)),
            "low": float(msg.get("l", 0)),
            "close": float(msg.get("c", 0)),
            "volume": float(msg.get("v", 0)),
            "data_source": "stream",
        }
        if self.add_bar_tick_count:
            record["tick_count"] = int(msg.get("n", 0) or 0)

        await self._write(self.store.write_bars, record)

    async def handle_quote(self, msg: Dict[str, Any]) -> None:
        symbol = msg.get("sym", "")
        if not self._allowed(symbol):
            return
        self.quotes_received += 1

        epoch, nanos = _split_millis(msg.get("t", 0))
        await self._write(self.store.write_quotes, {
            "symbol": symbol,
            "epoch": epoch,
            "nanos": nanos,
            "bid_price": float(msg.get("bp", 0)),
            "ask_price": float(msg.get("ap", 0)),
            "bid_size": float(msg.get("bs", 0)),
            "ask_size": float(msg.get("as", 0)),
        })

    async def handle_trade(self, msg: Dict[str, Any]) -> None:
        symbol = msg.get("sym", "")
        if not self._allowed(symbol):
            return
        self.trades_received += 1

        epoch, nanos = _split_millis(msg.get("t", 0))
        await self._write(self.store.write_trades, {
            "symbol": symbol,
            "epoch": epoch,
            "nanos": nanos,
            "price": float(msg.get("p", 0)),
            "size": float(msg.get("s", 0)),
            "exchange": msg.get("x"),
        })

    async def _write(self, write, record: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(write, [record])
        except SQLAlchemyError as e:
            self.write_errors += 1
            logger.error(f"[polygon] failed to write {record.get('symbol')} record: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'bars_received': self.bars_received,
            'quotes_received': self.quotes_received,
            'trades_received': self.trades_received,
            'write_errors': self.write_errors,
            'tracked_symbols': len(self._last_bar_end),
        }


def _split_millis(millis: Any) -> tuple:
    millis = int(millis or 0)
    return millis // 1000, (millis % 1000) * 1_000_000
