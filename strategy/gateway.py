from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List

from strategy.execution_types import FillEvent, OrderAck, OrderRequest
from strategy.models import OrderBookSnapshot, Position, TradePrint

FillHandler = Callable[[FillEvent], Awaitable[None]]


class ExchangeGateway(ABC):
    """Capabilities the quoting engine needs from a venue."""

    @abstractmethod
    async def get_open_position(self, symbol: str) -> Position:
        ...

    @abstractmethod
    async def get_order_book(self, symbol: str, max_levels: int) -> OrderBookSnapshot:
        ...

    @abstractmethod
    async def get_recent_trades(self, symbol: str, limit: int) -> List[TradePrint]:
        ...

    @abstractmethod
    async def place_order(self, symbol: str, request: OrderRequest) -> OrderAck:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        ...

    @abstractmethod
    async def cancel_batch(self, order_ids: Iterable[str]) -> None:
        ...

    @abstractmethod
    def on_fill_push(self, callback: FillHandler) -> None:
        ...

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None
