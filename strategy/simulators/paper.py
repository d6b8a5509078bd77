import time
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from ingest.rest_client import OrderlyAPIError

from strategy.execution_types import FillEvent, OrderAck, OrderRequest, OrderType
from strategy.gateway import ExchangeGateway, FillHandler
from strategy.models import OrderBookSnapshot, Position, Side, TradePrint


@dataclass
class PaperPosition:
    quantity: float = 0.0
    average_price: float = 0.0


@dataclass
class PaperOrder:
    order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    price: float
    quantity: float
    reduce_only: bool


class PaperExchange(ExchangeGateway):
    """In-memory venue: resting orders, touch fills and position bookkeeping.

    With a ``market_source`` the book and trade tape are read from that gateway
    (live public data) while orders and positions stay simulated.
    """

    def __init__(self, market_source: Optional[ExchangeGateway] = None) -> None:
        self.market_source = market_source
        self._books: Dict[str, OrderBookSnapshot] = {}
        self._tapes: Dict[str, List[TradePrint]] = {}
        self._marks: Dict[str, float] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._orders: Dict[str, PaperOrder] = {}
        self._handlers: List[FillHandler] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.placed: List[OrderAck] = []
        self.cancel_all_calls = 0

    # Test and paper-mode controls -------------------------------------
    @property
    def open_orders(self) -> Mapping[str, PaperOrder]:
        return MappingProxyType(self._orders)

    def inject_failure(self, method: str, error: Optional[Exception] = None) -> None:
        self._failures.setdefault(method, []).append(
            error or OrderlyAPIError(503, None, "injected failure", "")
        )

    def set_position(self, symbol: str, quantity: float, average_price: float,
                     mark_price: Optional[float] = None) -> None:
        self._positions[symbol] = PaperPosition(quantity, average_price)
        if mark_price is not None:
            self._marks[symbol] = mark_price

    def set_mark_price(self, symbol: str, price: float) -> None:
        self._marks[symbol] = price

    def add_trades(self, symbol: str, trades: Iterable[TradePrint]) -> None:
        self._tapes.setdefault(symbol, []).extend(trades)

    async def update_book(self, symbol: str, snapshot: OrderBookSnapshot) -> None:
        self._books[symbol] = snapshot
        if snapshot.mid_price is not None:
            self._marks[symbol] = snapshot.mid_price
        await self._match_resting(symbol)

    # ExchangeGateway --------------------------------------------------
    def on_fill_push(self, callback: FillHandler) -> None:
        self._handlers.append(callback)

    async def get_open_position(self, symbol: str) -> Position:
        self._maybe_fail("get_open_position")
        pos = self._positions.get(symbol, PaperPosition())
        mark = self._marks.get(symbol, pos.average_price)
        return Position(symbol, pos.quantity, pos.average_price, mark)

    async def get_order_book(self, symbol: str, max_levels: int) -> OrderBookSnapshot:
        self._maybe_fail("get_order_book")
        if self.market_source is not None:
            snapshot = await self.market_source.get_order_book(symbol, max_levels)
            await self.update_book(symbol, snapshot)
            return snapshot
        book = self._books.get(symbol)
        if book is None:
            return OrderBookSnapshot(int(time.time() * 1000), (), ())
        return OrderBookSnapshot(int(time.time() * 1000), book.bids[:max_levels], book.asks[:max_levels])

    async def get_recent_trades(self, symbol: str, limit: int) -> List[TradePrint]:
        self._maybe_fail("get_recent_trades")
        if self.market_source is not None:
            return await self.market_source.get_recent_trades(symbol, limit)
        tape = self._tapes.get(symbol, [])
        return list(reversed(tape[-limit:]))

    async def place_order(self, symbol: str, request: OrderRequest) -> OrderAck:
        self._maybe_fail("place_order")
        if request.quantity <= 0:
            raise OrderlyAPIError(400, -1102, "quantity must be positive", "")
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ack = OrderAck(
            order_id=order_id,
            symbol=symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            status="NEW",
        )
        book = self._books.get(symbol)
        order_type = request.order_type

        if order_type is OrderType.MARKET:
            price = self._touch(symbol, request.side, taker=True)
            self.placed.append(ack)
            await self._fill(PaperOrder(order_id, symbol, request.side, order_type, price,
                                        request.quantity, request.reduce_only))
            return ack

        if order_type.is_marketable:
            price = self._touch(symbol, request.side, taker=False)
        else:
            price = float(request.price)
            if order_type is OrderType.POST_ONLY and book is not None and self._crosses(book, request.side, price):
                raise OrderlyAPIError(400, -1, "post-only order would take liquidity", "")

        order = PaperOrder(order_id, symbol, request.side, order_type, price, request.quantity, request.reduce_only)
        self._orders[order_id] = order
        self.placed.append(ack)
        await self._match_resting(symbol)
        return ack

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        self._maybe_fail("cancel_order")
        order = self._orders.pop(order_id, None)
        if order is not None:
            await self._emit(order, "CANCELLED")

    async def cancel_all_orders(self, symbol: str) -> None:
        self._maybe_fail("cancel_all_orders")
        self.cancel_all_calls += 1
        for order_id in [oid for oid, o in self._orders.items() if o.symbol == symbol]:
            order = self._orders.pop(order_id)
            await self._emit(order, "CANCELLED")

    async def cancel_batch(self, order_ids: Iterable[str]) -> None:
        self._maybe_fail("cancel_batch")
        for order_id in list(order_ids):
            order = self._orders.pop(order_id, None)
            if order is not None:
                await self._emit(order, "CANCELLED")

    async def close(self) -> None:
        if self.market_source is not None:
            await self.market_source.close()

    # Internal helpers -------------------------------------------------
    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    def _touch(self, symbol: str, side: Side, taker: bool) -> float:
        book = self._books.get(symbol)
        if book is not None and book.best_bid is not None and book.best_ask is not None:
            if taker:
                return book.best_ask if side is Side.BUY else book.best_bid
            return book.best_bid if side is Side.BUY else book.best_ask
        mark = self._marks.get(symbol)
        if mark is None:
            raise OrderlyAPIError(400, -1, "no market to price order against", "")
        return mark

    @staticmethod
    def _crosses(book: OrderBookSnapshot, side: Side, price: float) -> bool:
        if side is Side.BUY:
            return book.best_ask is not None and price >= book.best_ask
        return book.best_bid is not None and price <= book.best_bid

    async def _match_resting(self, symbol: str) -> None:
        book = self._books.get(symbol)
        if book is None:
            return
        for order_id in [oid for oid, o in self._orders.items() if o.symbol == symbol]:
            order = self._orders.get(order_id)
            if order is None or not self._crosses(book, order.side, order.price):
                continue
            self._orders.pop(order_id, None)
            await self._fill(order)

    async def _fill(self, order: PaperOrder) -> None:
        pos = self._positions.setdefault(order.symbol, PaperPosition())
        qty = order.quantity
        if order.reduce_only:
            reducible = -pos.quantity if order.side is Side.BUY else pos.quantity
            qty = min(qty, max(reducible, 0.0))
        if qty > 0:
            signed = qty if order.side is Side.BUY else -qty
            self._apply_fill(pos, signed, order.price)
        await self._emit(order, "FILLED", executed_quantity=qty)

    @staticmethod
    def _apply_fill(pos: PaperPosition, signed_qty: float, price: float) -> None:
        new_qty = pos.quantity + signed_qty
        if pos.quantity == 0 or (pos.quantity > 0) == (signed_qty > 0):
            total = abs(pos.quantity) + abs(signed_qty)
            pos.average_price = (abs(pos.quantity) * pos.average_price + abs(signed_qty) * price) / total
        elif abs(signed_qty) > abs(pos.quantity):
            pos.average_price = price
        if abs(new_qty) < 1e-12:
            new_qty = 0.0
            pos.average_price = 0.0
        pos.quantity = new_qty

    async def _emit(self, order: PaperOrder, status: str, executed_quantity: float = 0.0) -> None:
        event = FillEvent(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            status=status,
            executed_quantity=executed_quantity,
            executed_price=order.price if executed_quantity else None,
        )
        for handler in self._handlers:
            await handler(event)
