import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from api.metrics import metrics
from config import config
from strategy.execution_types import (
    LimitOrder,
    MarketableOrder,
    MarketOrder,
    OrderRequest,
    OrderType,
)
from strategy.models import Position, Side, StrategyConfig
from strategy.order_ledger import OrderLedger


logger = logging.getLogger(__name__)


class RiskState(Enum):
    FLAT = "FLAT"
    NEUTRAL = "NEUTRAL"
    STANDARD_LOSS = "STANDARD_LOSS"
    AGGRESSIVE_LOSS = "AGGRESSIVE_LOSS"
    STANDARD_PROFIT = "STANDARD_PROFIT"
    AGGRESSIVE_PROFIT = "AGGRESSIVE_PROFIT"


@dataclass(frozen=True)
class RiskDecision:
    symbol: str
    state: RiskState
    pnl_pct: float
    cancel_orders: bool
    order: Optional[OrderRequest] = None

    @property
    def is_flat(self) -> bool:
        return self.state is RiskState.FLAT


def pnl_pct(position: Position) -> float:
    """Unrealized PnL in percent of entry; positive means profitable."""
    return position.unrealized_pnl_pct


def classify(quantity: float, average_price: float, mark_price: float, stop_loss_pct: float,
             take_profit_pct: float, dust_notional: float = 10.0) -> RiskState:
    if quantity == 0 or abs(quantity * average_price) < dust_notional:
        return RiskState.FLAT
    if average_price <= 0 or mark_price <= 0:
        return RiskState.NEUTRAL
    change = (mark_price - average_price) / average_price * 100
    pnl = change if quantity > 0 else -change
    if pnl < 0:
        return RiskState.STANDARD_LOSS if abs(pnl) < stop_loss_pct else RiskState.AGGRESSIVE_LOSS
    return RiskState.STANDARD_PROFIT if pnl < take_profit_pct else RiskState.AGGRESSIVE_PROFIT


class RiskManager:
    """Maps a position snapshot onto a risk state and the order that works it off."""

    def __init__(self, strategy: StrategyConfig, dust_notional: Optional[float] = None,
                 breakeven_offset_pct: Optional[float] = None,
                 aggressive_loss_order: Optional[OrderType] = None,
                 aggressive_profit_order: Optional[OrderType] = None,
                 marketable_level: int = 0):
        risk_cfg = config.section("risk")
        self.strategy = strategy
        self.dust_notional = float(
            dust_notional if dust_notional is not None else risk_cfg.get("dust_notional", 10.0)
        )
        self.breakeven_offset_pct = float(
            breakeven_offset_pct if breakeven_offset_pct is not None else risk_cfg.get("breakeven_offset_pct", 0.0)
        )
        self.aggressive_loss_order = aggressive_loss_order or self.flatten_kind(
            risk_cfg.get("aggressive_loss_order", "MARKET"))
        self.aggressive_profit_order = aggressive_profit_order or self.flatten_kind(
            risk_cfg.get("aggressive_profit_order", "MARKET"))
        self.marketable_level = marketable_level

    @staticmethod
    def flatten_kind(name: str) -> OrderType:
        name = str(name).upper()
        if name in ("MARKETABLE", "BID", "ASK", "MARKETABLE_BID", "MARKETABLE_ASK"):
            return OrderType.MARKETABLE_BID
        if name != "MARKET":
            raise ValueError(f"flattening orders must be MARKET or MARKETABLE, got {name}")
        return OrderType.MARKET

    def classify(self, position: Position) -> RiskState:
        return classify(
            position.quantity,
            position.average_entry_price,
            position.mark_price,
            self.strategy.stop_loss_ratio_pct,
            self.strategy.take_profit_ratio_pct,
            self.dust_notional,
        )

    def evaluate(self, position: Position) -> RiskDecision:
        state = self.classify(position)
        pnl = pnl_pct(position)
        symbol = position.symbol
        if state in (RiskState.FLAT, RiskState.NEUTRAL):
            return RiskDecision(symbol, state, pnl, cancel_orders=state is RiskState.FLAT)

        side = Side.SELL if position.quantity > 0 else Side.BUY
        qty = abs(position.quantity)
        if state is RiskState.STANDARD_LOSS:
            order: OrderRequest = LimitOrder(
                side, qty, reduce_only=True, limit_price=self._breakeven_price(position)
            )
        elif state is RiskState.AGGRESSIVE_LOSS:
            order = self._flatten_order(self.aggressive_loss_order, side, qty)
        elif state is RiskState.STANDARD_PROFIT:
            order = MarketableOrder(side, qty, reduce_only=True, level=self.marketable_level)
        else:
            order = self._flatten_order(self.aggressive_profit_order, side, qty)
        return RiskDecision(symbol, state, pnl, cancel_orders=True, order=order)

    def _breakeven_price(self, position: Position) -> float:
        offset = position.average_entry_price * self.breakeven_offset_pct / 100.0
        # longs exit just below entry, shorts just above
        price = position.average_entry_price - offset if position.quantity > 0 else position.average_entry_price + offset
        return round(price, self.strategy.price_precision)

    def _flatten_order(self, kind: OrderType, side: Side, qty: float) -> OrderRequest:
        if kind is OrderType.MARKET:
            return MarketOrder(side, qty, reduce_only=True)
        return MarketableOrder(side, qty, reduce_only=True, level=self.marketable_level)

    async def apply(self, decision: RiskDecision, ledger: OrderLedger, quantity: float = 0.0) -> None:
        metrics.update_risk(decision.symbol, decision.state.value, decision.pnl_pct, quantity)
        if decision.cancel_orders:
            await ledger.cancel_all()
        if decision.order is None:
            return
        logger.info(
            "%s: %s at %.4f%%, placing reduce-only %s %s %s",
            decision.symbol, decision.state.value, decision.pnl_pct,
            decision.order.order_type.value, decision.order.side.value, decision.order.quantity,
        )
        placed = await ledger.submit(decision.order)
        if placed is not None:
            metrics.record_flatten(decision.symbol, decision.state.value)

    async def check(self, position: Position, ledger: OrderLedger) -> RiskDecision:
        decision = self.evaluate(position)
        await self.apply(decision, ledger, position.quantity)
        return decision
