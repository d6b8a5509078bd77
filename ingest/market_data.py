import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterator, Deque, List, Optional, Set, Tuple

from config import config
from strategy.gateway import ExchangeGateway
from strategy.models import OrderBookSnapshot, TradePrint


logger = logging.getLogger(__name__)


class MarketDataCache:
    """Bounded per-symbol windows of order-book snapshots and trade prints."""

    def __init__(self, gateway: ExchangeGateway, symbol: str, depth: Optional[int] = None,
                 trade_limit: Optional[int] = None, stop_event: Optional[asyncio.Event] = None):
        md_cfg = config.section("market_data")
        self.gateway = gateway
        self.symbol = symbol
        self.depth = int(depth or md_cfg.get("orderbook_depth", 15))
        self.trade_limit = int(trade_limit or md_cfg.get("trade_limit", 15))
        self.collection_duration_s = float(md_cfg.get("collection_duration_s", 15))
        self.orderbook_interval_s = float(md_cfg.get("orderbook_interval_s", 0.2))
        self.trade_interval_s = float(md_cfg.get("trade_interval_s", 1.0))
        self.stop_event = stop_event

        self._snapshots: Deque[OrderBookSnapshot] = deque(maxlen=int(md_cfg.get("max_snapshots", 500)))
        self._trades: Deque[TradePrint] = deque(maxlen=int(md_cfg.get("max_trades", 2000)))
        self._seen: Set[Tuple[int, str, float, float]] = set()
        self.window_start_ms = 0
        self.dropped_crossed = 0

    # Window access ------------------------------------------------------
    def trades(self) -> List[TradePrint]:
        return list(self._trades)

    def snapshots(self) -> List[OrderBookSnapshot]:
        return list(self._snapshots)

    def latest_snapshot(self) -> Optional[OrderBookSnapshot]:
        return self._snapshots[-1] if self._snapshots else None

    def reset(self) -> None:
        self._snapshots.clear()
        self._trades.clear()
        self._seen.clear()
        self.window_start_ms = int(time.time() * 1000)

    # Streams ------------------------------------------------------------
    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def order_book_stream(self, duration_s: Optional[float] = None,
                                interval_s: Optional[float] = None) -> AsyncIterator[OrderBookSnapshot]:
        duration = self.collection_duration_s if duration_s is None else duration_s
        interval = self.orderbook_interval_s if interval_s is None else interval_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        while not self._stopped():
            snapshot = await self.gateway.get_order_book(self.symbol, self.depth)
            if snapshot.is_crossed:
                self.dropped_crossed += 1
                logger.warning(
                    "%s: dropping crossed book (bid %.8g >= ask %.8g)",
                    self.symbol, snapshot.best_bid, snapshot.best_ask,
                )
            elif snapshot.bids or snapshot.asks:
                self._snapshots.append(snapshot)
                yield snapshot
            if loop.time() + interval > deadline:
                break
            await asyncio.sleep(interval)

    async def trade_stream(self, duration_s: Optional[float] = None, interval_s: Optional[float] = None,
                           since_ms: Optional[int] = None) -> AsyncIterator[TradePrint]:
        duration = self.collection_duration_s if duration_s is None else duration_s
        interval = self.trade_interval_s if interval_s is None else interval_s
        start_ms = self.window_start_ms if since_ms is None else since_ms
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        while not self._stopped():
            batch = await self.gateway.get_recent_trades(self.symbol, self.trade_limit)
            for trade in sorted(batch, key=lambda t: t.timestamp_ms):
                if trade.timestamp_ms < start_ms or trade.key in self._seen:
                    continue
                self._seen.add(trade.key)
                self._trades.append(trade)
                yield trade
            if loop.time() + interval > deadline:
                break
            await asyncio.sleep(interval)

    async def collect(self, duration_s: Optional[float] = None,
                      since_ms: Optional[int] = None) -> Tuple[List[OrderBookSnapshot], List[TradePrint]]:
        """Refresh both windows for one collection period and return (snapshots, trades)."""
        self.reset()
        if since_ms is not None:
            self.window_start_ms = since_ms

        async def drain(stream) -> int:
            count = 0
            async for _ in stream:
                count += 1
            return count

        tasks = [
            asyncio.create_task(drain(self.order_book_stream(duration_s)), name=f"books-{self.symbol}"),
            asyncio.create_task(drain(self.trade_stream(duration_s)), name=f"trades-{self.symbol}"),
        ]
        try:
            books, prints = await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("%s: collected %d snapshots and %d trades", self.symbol, books, prints)
        return self.snapshots(), self.trades()
