import logging
import time
from collections import OrderedDict
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from api.metrics import metrics
from ingest.rest_client import OrderlyAPIError
from strategy.execution_types import (
    FillEvent,
    ManagedOrder,
    MarketableOrder,
    MarketOrder,
    OrderRequest,
    OrderStatus,
    OrderType,
    QuoteLevel,
)
from strategy.gateway import ExchangeGateway
from strategy.models import Position, Side


logger = logging.getLogger(__name__)

_EARLY_PUSH_LIMIT = 256


class OrderLedger:
    """Track the orders this process placed for one symbol and keep them in step with the venue."""

    def __init__(self, gateway: ExchangeGateway, symbol: str, marketable_level: int = 0):
        self.gateway = gateway
        self.symbol = symbol
        self.marketable_level = marketable_level
        self._orders: Dict[str, ManagedOrder] = {}
        # terminal pushes that arrived before the placement ack
        self._early_pushes: "OrderedDict[str, FillEvent]" = OrderedDict()
        self.filled_orders = 0
        self.filled_volume = 0.0
        self.cancelled_orders = 0

    @property
    def open_orders(self) -> Mapping[str, ManagedOrder]:
        return MappingProxyType(self._orders)

    async def cancel_all(self) -> bool:
        """Cancel every order for the symbol at the venue; False when the venue call failed."""
        try:
            await self.gateway.cancel_all_orders(self.symbol)
        except Exception as exc:
            self._log_transport_error("cancel-all", exc, "cancel_all")
            return False
        dropped = len(self._orders)
        for order in self._orders.values():
            order.status = OrderStatus.CANCELED
        self._orders.clear()
        if dropped:
            self.cancelled_orders += dropped
            metrics.record_order_cancelled(self.symbol, dropped)
            logger.info("%s: cancel-all dropped %s tracked orders", self.symbol, dropped)
        metrics.update_open_orders(self.symbol, 0)
        return True

    async def submit(self, request: OrderRequest) -> Optional[ManagedOrder]:
        started = time.perf_counter()
        try:
            ack = await self.gateway.place_order(self.symbol, request)
        except Exception as exc:
            metrics.record_order_failure(self.symbol)
            self._log_transport_error(f"{request.order_type.value} {request.side.value} order", exc)
            return None

        order = ManagedOrder(
            exchange_order_id=ack.order_id,
            symbol=self.symbol,
            side=request.side,
            order_type=request.order_type,
            price=request.price,
            quantity=request.quantity,
        )
        metrics.record_order_placed(self.symbol, request.order_type.value, time.perf_counter() - started)
        logger.debug(
            "%s: placed %s %s %s @ %s (id=%s)",
            self.symbol, request.order_type.value, request.side.value, request.quantity,
            request.price, order.exchange_order_id,
        )
        self._orders[order.exchange_order_id] = order
        early = self._early_pushes.pop(order.exchange_order_id, None)
        if early is not None:
            await self.handle_fill(early)
        metrics.update_open_orders(self.symbol, len(self._orders))
        return order

    async def replace_ladder(self, levels: Iterable[QuoteLevel]) -> List[ManagedOrder]:
        await self.cancel_all()
        placed: List[ManagedOrder] = []
        for level in levels:
            order = await self.submit(level.to_request(self.marketable_level))
            if order is not None:
                placed.append(order)
        return placed

    async def cancel(self, order_id: str) -> bool:
        try:
            await self.gateway.cancel_order(self.symbol, order_id)
        except Exception as exc:
            self._log_transport_error(f"cancel order {order_id}", exc, "cancel")
            return False
        self._drop(order_id, OrderStatus.CANCELED)
        return True

    async def cancel_batch(self, order_ids: Iterable[str]) -> bool:
        ids = [str(oid) for oid in order_ids]
        if not ids:
            return True
        try:
            await self.gateway.cancel_batch(ids)
        except Exception as exc:
            self._log_transport_error(f"batch-cancel of {len(ids)} orders", exc, "cancel_batch")
            return False
        for order_id in ids:
            self._drop(order_id, OrderStatus.CANCELED)
        return True

    async def handle_fill(self, event: FillEvent) -> None:
        """Push-channel callback; venue state always wins over the local view."""
        if event.symbol and event.symbol != self.symbol:
            return
        status = event.ledger_status
        order = self._orders.get(event.order_id)
        if order is None:
            if status is not None and status.is_terminal:
                self._remember_early_push(event)
            logger.debug("%s: %s push for untracked order %s", self.symbol, event.status, event.order_id)
            return
        if event.executed_quantity:
            order.filled_quantity = max(order.filled_quantity, event.executed_quantity)
        if status is None or not status.is_terminal:
            return
        if status is OrderStatus.FILLED:
            filled = order.filled_quantity or order.quantity
            self.filled_orders += 1
            self.filled_volume += filled
            metrics.record_order_filled(self.symbol, filled)
            logger.info(
                "%s: %s %s filled %s @ %s",
                self.symbol, order.order_type.value, order.side.value, filled, event.executed_price,
            )
        self._drop(event.order_id, status)

    async def flatten(self, position: Position, kind: OrderType = OrderType.MARKET) -> Optional[ManagedOrder]:
        """Cancel everything, then close exactly |quantity| with a reduce-only order."""
        await self.cancel_all()
        if position.quantity == 0:
            return None
        side = Side.SELL if position.quantity > 0 else Side.BUY
        qty = abs(position.quantity)
        if kind is OrderType.MARKET:
            request: OrderRequest = MarketOrder(side, qty, reduce_only=True)
        elif kind.is_marketable:
            request = MarketableOrder(side, qty, reduce_only=True, level=self.marketable_level)
        else:
            raise ValueError(f"flatten supports MARKET or marketable orders, got {kind.value}")
        logger.warning("%s: flattening %s with reduce-only %s %s", self.symbol, position.quantity,
                       request.order_type.value, side.value)
        return await self.submit(request)

    def stats(self) -> Dict[str, float]:
        return {
            'open_orders': len(self._orders),
            'filled_orders': self.filled_orders,
            'filled_volume': self.filled_volume,
            'cancelled_orders': self.cancelled_orders,
        }

    def _remember_early_push(self, event: FillEvent) -> None:
        self._early_pushes[event.order_id] = event
        while len(self._early_pushes) > _EARLY_PUSH_LIMIT:
            self._early_pushes.popitem(last=False)

    def _drop(self, order_id: str, status: OrderStatus) -> None:
        order = self._orders.pop(order_id, None)
        if order is None:
            return
        order.status = status
        if status is OrderStatus.CANCELED:
            self.cancelled_orders += 1
            metrics.record_order_cancelled(self.symbol)
        metrics.update_open_orders(self.symbol, len(self._orders))

    def _log_transport_error(self, action: str, error: Exception, operation: str = "place_order") -> None:
        metrics.record_transport_error(operation)
        if isinstance(error, OrderlyAPIError):
            logger.error(
                "%s: %s failed (status=%s, code=%s, msg=%s)",
                self.symbol, action, error.status, error.code, error.msg,
            )
        else:
            logger.error("%s: %s failed: %s", self.symbol, action, error)
