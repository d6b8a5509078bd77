from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from strategy.models import Side


class OrderType(Enum):
    LIMIT = "LIMIT"
    POST_ONLY = "POST_ONLY"
    MARKET = "MARKET"
    MARKETABLE_BID = "BID"
    MARKETABLE_ASK = "ASK"

    @property
    def is_marketable(self) -> bool:
        return self in (OrderType.MARKETABLE_BID, OrderType.MARKETABLE_ASK)

    @property
    def has_price(self) -> bool:
        return self in (OrderType.LIMIT, OrderType.POST_ONLY)


class OrderStatus(Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.OPEN


@dataclass(frozen=True)
class OrderRequest:
    """Base of the closed set of order variants the venue accepts."""

    side: Side
    quantity: float
    reduce_only: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_type(self) -> OrderType:
        raise NotImplementedError

    @property
    def price(self) -> Optional[float]:
        return None

    def to_payload(self, symbol: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "symbol": symbol,
            "order_type": self.order_type.value,
            "side": self.side.value,
            "order_quantity": self.quantity,
        }
        if self.price is not None:
            body["order_price"] = self.price
        if self.reduce_only:
            body["reduce_only"] = True
        body.update(self.extra)
        return body


@dataclass(frozen=True)
class LimitOrder(OrderRequest):
    limit_price: float = 0.0

    @property
    def order_type(self) -> OrderType:
        return OrderType.LIMIT

    @property
    def price(self) -> Optional[float]:
        return self.limit_price


@dataclass(frozen=True)
class PostOnlyOrder(OrderRequest):
    limit_price: float = 0.0

    @property
    def order_type(self) -> OrderType:
        return OrderType.POST_ONLY

    @property
    def price(self) -> Optional[float]:
        return self.limit_price

    def to_payload(self, symbol: str) -> Dict[str, Any]:
        body = super().to_payload(symbol)
        body.setdefault("post_only_adjust", False)
        return body


@dataclass(frozen=True)
class MarketOrder(OrderRequest):
    @property
    def order_type(self) -> OrderType:
        return OrderType.MARKET


@dataclass(frozen=True)
class MarketableOrder(OrderRequest):
    """Joins the venue's best bid (buy) or best ask (sell) at acceptance time."""

    level: int = 0

    def __post_init__(self):
        if not 0 <= self.level <= 4:
            raise ValueError(f"marketable depth level must be within 0..4, got {self.level}")

    @property
    def order_type(self) -> OrderType:
        return OrderType.MARKETABLE_BID if self.side is Side.BUY else OrderType.MARKETABLE_ASK

    def to_payload(self, symbol: str) -> Dict[str, Any]:
        body = super().to_payload(symbol)
        body.setdefault("level", self.level)
        return body


def build_order(order_type: OrderType, side: Side, quantity: float, price: Optional[float] = None,
                reduce_only: bool = False, level: int = 0,
                extra: Optional[Dict[str, Any]] = None) -> OrderRequest:
    extra = dict(extra or {})
    if order_type.has_price and price is None:
        raise ValueError(f"{order_type.value} orders require a price")
    if order_type is OrderType.LIMIT:
        return LimitOrder(side, quantity, reduce_only, extra, limit_price=price)
    if order_type is OrderType.POST_ONLY:
        return PostOnlyOrder(side, quantity, reduce_only, extra, limit_price=price)
    if order_type is OrderType.MARKET:
        return MarketOrder(side, quantity, reduce_only, extra)
    expected = Side.BUY if order_type is OrderType.MARKETABLE_BID else Side.SELL
    if side is not expected:
        raise ValueError(f"{order_type.name} orders must be {expected.value} orders")
    return MarketableOrder(side, quantity, reduce_only, extra, level=level)


@dataclass(frozen=True)
class QuoteLevel:
    level: int
    side: Side
    order_type: OrderType
    price: Optional[float]
    quantity: float

    def to_request(self, marketable_level: int = 0) -> OrderRequest:
        return build_order(self.order_type, self.side, self.quantity, price=self.price, level=marketable_level)


@dataclass
class ManagedOrder:
    exchange_order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    price: Optional[float]
    quantity: float
    status: OrderStatus = OrderStatus.OPEN
    filled_quantity: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.exchange_order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "price": self.price,
            "quantity": self.quantity,
            "status": self.status.value,
            "filled_quantity": self.filled_quantity,
        }


@dataclass
class OrderAck:
    """Normalized view of an order acknowledgement across live and paper flows."""

    order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    quantity: float
    price: Optional[float] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FillEvent:
    order_id: str
    symbol: str
    side: Side
    status: str
    executed_quantity: float = 0.0
    executed_price: Optional[float] = None

    @property
    def ledger_status(self) -> Optional[OrderStatus]:
        status = self.status.upper()
        if status == "FILLED":
            return OrderStatus.FILLED
        if status in ("CANCELLED", "CANCELED", "REJECTED", "EXPIRED"):
            return OrderStatus.CANCELED
        if status in ("NEW", "PARTIAL_FILLED", "REPLACED"):
            return OrderStatus.OPEN
        return None
