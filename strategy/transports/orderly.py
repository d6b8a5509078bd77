import logging
import time
from typing import Any, Iterable, List, Optional

from ingest.private_stream import PrivateStreamClient
from ingest.rest_client import OrderlyAPIError, OrderlyRESTClient, RequestSigner

from strategy.execution_types import OrderAck, OrderRequest, OrderType
from strategy.gateway import ExchangeGateway, FillHandler
from strategy.models import OrderBookSnapshot, Position, Side, TradePrint


__all__ = ["OrderlyTransport", "OrderlyAPIError"]

logger = logging.getLogger(__name__)


class OrderlyTransport(ExchangeGateway):
    """Thin adapter around the Orderly REST API and private stream with typed responses."""

    def __init__(self, signer: Optional[RequestSigner] = None,
                 stream: Optional[PrivateStreamClient] = None,
                 rest: Optional[OrderlyRESTClient] = None) -> None:
        self._rest = rest or OrderlyRESTClient(signer=signer)
        self._stream = stream

    def on_fill_push(self, callback: FillHandler) -> None:
        if self._stream is None:
            logger.warning("No private stream configured; fills will only be seen via position queries")
            return
        self._stream.register_handler(callback)

    async def start(self) -> None:
        if self._stream is not None:
            await self._stream.start()

    async def get_open_position(self, symbol: str) -> Position:
        data = await self._rest.get(f"/v1/position/{symbol}", signed=True)
        return self._parse_position(symbol, data)

    async def get_order_book(self, symbol: str, max_levels: int) -> OrderBookSnapshot:
        data = await self._rest.get(f"/v1/orderbook/{symbol}", params={"max_level": max_levels}, signed=True)
        return self._parse_order_book(data)

    async def get_recent_trades(self, symbol: str, limit: int) -> List[TradePrint]:
        data = await self._rest.get("/v1/public/market_trades", params={"symbol": symbol, "limit": limit})
        rows = data.get("rows", []) if isinstance(data, dict) else []
        trades: List[TradePrint] = []
        for row in rows:
            trade = self._parse_trade(row)
            if trade is not None:
                trades.append(trade)
        return trades

    async def place_order(self, symbol: str, request: OrderRequest) -> OrderAck:
        data = await self._rest.post("/v1/order", body=request.to_payload(symbol))
        return self._parse_order_ack(symbol, request, data)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._rest.delete("/v1/order", params={"order_id": order_id, "symbol": symbol})

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._rest.delete("/v1/orders", params={"symbol": symbol})

    async def cancel_batch(self, order_ids: Iterable[str]) -> None:
        ids = [str(oid) for oid in order_ids]
        if not ids:
            return
        await self._rest.delete("/v1/batch-order", params={"order_ids": ",".join(ids)})

    async def close(self) -> None:
        if self._stream is not None:
            await self._stream.stop()
        await self._rest.close()

    def _parse_position(self, symbol: str, payload: Any) -> Position:
        payload = payload if isinstance(payload, dict) else {}
        return Position(
            symbol=payload.get("symbol", symbol),
            quantity=self._as_float(payload.get("position_qty")) or 0.0,
            average_entry_price=self._as_float(payload.get("average_open_price")) or 0.0,
            mark_price=self._as_float(payload.get("mark_price")) or 0.0,
        )

    def _parse_order_book(self, payload: Any) -> OrderBookSnapshot:
        payload = payload if isinstance(payload, dict) else {}
        bids = [self._level(item) for item in payload.get("bids") or []]
        asks = [self._level(item) for item in payload.get("asks") or []]
        timestamp = self._as_int(payload.get("timestamp")) or int(time.time() * 1000)
        return OrderBookSnapshot.from_levels(
            timestamp,
            [lvl for lvl in bids if lvl is not None],
            [lvl for lvl in asks if lvl is not None],
        )

    def _parse_trade(self, row: Any) -> Optional[TradePrint]:
        if not isinstance(row, dict):
            return None
        price = self._as_float(row.get("executed_price"))
        qty = self._as_float(row.get("executed_quantity"))
        ts = self._as_int(row.get("executed_timestamp"))
        side = row.get("side")
        if price is None or qty is None or ts is None or side not in ("BUY", "SELL"):
            return None
        return TradePrint(timestamp_ms=ts, side=Side(side), price=price, quantity=qty)

    def _parse_order_ack(self, symbol: str, request: OrderRequest, payload: Any) -> OrderAck:
        payload = payload if isinstance(payload, dict) else {}
        order_id = payload.get("order_id")
        if order_id is None:
            raise OrderlyAPIError(200, None, "order acknowledgement without order_id", str(payload))
        order_type = request.order_type
        raw_type = payload.get("order_type")
        if raw_type:
            try:
                order_type = OrderType(raw_type)
            except ValueError:
                pass
        return OrderAck(
            order_id=str(order_id),
            symbol=symbol,
            side=request.side,
            order_type=order_type,
            quantity=self._as_float(payload.get("order_quantity")) or request.quantity,
            price=self._as_float(payload.get("order_price")) or request.price,
            status=payload.get("status"),
            raw=payload,
        )

    def _level(self, item: Any) -> Optional[tuple]:
        if isinstance(item, dict):
            price = self._as_float(item.get("price"))
            qty = self._as_float(item.get("quantity"))
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            price = self._as_float(item[0])
            qty = self._as_float(item[1])
        else:
            return None
        if price is None or qty is None:
            return None
        return price, qty

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
