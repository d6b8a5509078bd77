from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        if isinstance(value, Side):
            return value
        return cls(str(value).upper())


class Prediction(Enum):
    UP = "UP"
    DOWN = "DOWN"
    STABLE = "STABLE"


PriceLevel = Tuple[float, float]


@dataclass(frozen=True)
class StrategyConfig:
    """Per-symbol quoting and risk parameters, fixed for the lifetime of a run."""

    symbol: str
    price_precision: int
    base_order_quantity: float
    trade_period_ms: int
    volatility_window_size: int
    order_levels: int
    level_spacing_ratio: float
    take_profit_ratio_pct: float
    stop_loss_ratio_pct: float
    risk_aversion: float
    liquidity_constant: float
    volatility_threshold: float
    directional_threshold_pct: float

    def __post_init__(self):
        if not self.symbol:
            raise ValueError("symbol is required")
        if self.price_precision < 0:
            raise ValueError(f"{self.symbol}: price_precision must be >= 0")
        if self.base_order_quantity <= 0:
            raise ValueError(f"{self.symbol}: base_order_quantity must be positive")
        if self.trade_period_ms <= 0:
            raise ValueError(f"{self.symbol}: trade_period_ms must be positive")
        if self.order_levels < 1:
            raise ValueError(f"{self.symbol}: order_levels must be >= 1")
        if self.risk_aversion <= 0 or self.liquidity_constant <= 0:
            raise ValueError(f"{self.symbol}: risk_aversion and liquidity_constant must be positive")
        if self.stop_loss_ratio_pct < 0 or self.take_profit_ratio_pct < 0:
            raise ValueError(f"{self.symbol}: profit/loss ratios must be non-negative")
        if not 0 <= self.directional_threshold_pct <= 100:
            raise ValueError(f"{self.symbol}: directional_threshold_pct must be within 0..100")

    @property
    def gamma(self) -> float:
        return self.risk_aversion

    @property
    def k(self) -> float:
        return self.liquidity_constant

    @property
    def trade_period_s(self) -> float:
        return self.trade_period_ms / 1000.0

    @classmethod
    def from_dict(cls, symbol: str, data: Dict[str, Any]) -> "StrategyConfig":
        return cls(
            symbol=data.get('symbol', symbol),
            price_precision=int(data['price_precision']),
            base_order_quantity=float(data['base_order_quantity']),
            trade_period_ms=int(data['trade_period_ms']),
            volatility_window_size=int(data.get('volatility_window_size', 10)),
            order_levels=int(data['order_levels']),
            level_spacing_ratio=float(data['level_spacing_ratio']),
            take_profit_ratio_pct=float(data['take_profit_ratio_pct']),
            stop_loss_ratio_pct=float(data['stop_loss_ratio_pct']),
            risk_aversion=float(data['risk_aversion']),
            liquidity_constant=float(data['liquidity_constant']),
            volatility_threshold=float(data.get('volatility_threshold', float('inf'))),
            directional_threshold_pct=float(data.get('directional_threshold_pct', 60.0)),
        )


def load_strategies(section: Any) -> Dict[str, StrategyConfig]:
    """Build one StrategyConfig per entry of the ``strategies`` config section."""
    strategies: Dict[str, StrategyConfig] = {}
    if not section:
        return strategies
    for symbol in section:
        raw = section[symbol]
        data = raw.to_dict() if hasattr(raw, 'to_dict') else dict(raw)
        strategies[symbol] = StrategyConfig.from_dict(symbol, data)
    return strategies


@dataclass(frozen=True)
class Position:
    symbol: str
    quantity: float
    average_entry_price: float
    mark_price: float

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    @property
    def notional(self) -> float:
        return abs(self.quantity * self.average_entry_price)

    @property
    def unrealized_pnl_pct(self) -> float:
        if self.quantity == 0 or self.average_entry_price <= 0:
            return 0.0
        change = (self.mark_price - self.average_entry_price) / self.average_entry_price * 100
        return change if self.quantity > 0 else -change

    def is_dust(self, dust_notional: float) -> bool:
        return self.quantity == 0 or self.notional < dust_notional


@dataclass(frozen=True)
class OrderBookSnapshot:
    timestamp_ms: int
    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]

    @classmethod
    def from_levels(cls, timestamp_ms: int, bids: Sequence[Sequence[float]],
                    asks: Sequence[Sequence[float]]) -> "OrderBookSnapshot":
        bid_levels = sorted(((float(p), float(q)) for p, q in bids), key=lambda lvl: lvl[0], reverse=True)
        ask_levels = sorted(((float(p), float(q)) for p, q in asks), key=lambda lvl: lvl[0])
        return cls(int(timestamp_ms), tuple(bid_levels), tuple(ask_levels))

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def mid_price(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2.0

    @property
    def is_crossed(self) -> bool:
        if self.best_bid is None or self.best_ask is None:
            return False
        return self.best_bid >= self.best_ask

    def bid_quantity(self, depth: Optional[int] = None) -> float:
        return sum(qty for _, qty in self.bids[:depth])

    def ask_quantity(self, depth: Optional[int] = None) -> float:
        return sum(qty for _, qty in self.asks[:depth])


@dataclass(frozen=True)
class TradePrint:
    timestamp_ms: int
    side: Side
    price: float
    quantity: float

    @property
    def key(self) -> Tuple[int, str, float, float]:
        return (self.timestamp_ms, self.side.value, self.price, self.quantity)


@dataclass
class MarketSignal:
    volatility: float
    prediction: Prediction
    trade_flow: Prediction
    order_book: Prediction
    mid_price: float
    best_bid: float
    best_ask: float
    extras: Dict[str, Any] = field(default_factory=dict)
