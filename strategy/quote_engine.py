import logging
import math
from typing import List, Optional, Sequence, Tuple

from config import config
from strategy.execution_types import OrderType, QuoteLevel
from strategy.models import MarketSignal, Prediction, Side, StrategyConfig


logger = logging.getLogger(__name__)


def optimal_spread(volatility: float, gamma: float, k: float, T: float = 1.0, t: float = 0.0) -> float:
    """Avellaneda-Stoikov optimal total spread."""
    return gamma * volatility ** 2 * (T - t) + (2.0 / gamma) * math.log(1.0 + gamma / k)


def skewed_mid_price(reference_mid: float, inventory_qty: float, volatility: float, gamma: float,
                     T: float = 1.0, t: float = 0.0) -> float:
    """Reservation price: the mid shifted against current inventory."""
    return reference_mid - inventory_qty * gamma * volatility ** 2 * (T - t)


def spacing_multipliers(
    inventory_qty: float,
    long_spacing: Sequence[float] = (1.5, 0.5),
    short_spacing: Sequence[float] = (0.5, 1.5),
    flat_spacing: Sequence[float] = (1.0, 1.0),
) -> Tuple[float, float]:
    """(bid_mult, ask_mult) for the current inventory sign."""
    if inventory_qty > 0:
        bid, ask = long_spacing
    elif inventory_qty < 0:
        bid, ask = short_spacing
    else:
        bid, ask = flat_spacing
    return float(bid), float(ask)


def dynamic_spacing(base_spacing: float, volatility: float, threshold: float, widen: float = 1.3) -> float:
    if volatility > threshold:
        return base_spacing * widen
    return base_spacing


def round_price(price: float, precision: int) -> float:
    return round(price, precision)


class QuoteEngine:
    """Turns a market signal and inventory into a laddered set of quotes."""

    def __init__(self, min_notional: Optional[float] = None, ladder_order_type: Optional[OrderType] = None,
                 stable_touch_orders: Optional[bool] = None):
        q_cfg = config.section("quoting")
        self.min_notional = float(min_notional if min_notional is not None else q_cfg.get("min_notional", 10.0))
        self.ladder_order_type = ladder_order_type or OrderType(q_cfg.get("ladder_order_type", "POST_ONLY"))
        if self.ladder_order_type not in (OrderType.POST_ONLY, OrderType.LIMIT):
            raise ValueError(f"ladder orders must be POST_ONLY or LIMIT, got {self.ladder_order_type.value}")
        if stable_touch_orders is None:
            stable_touch_orders = bool(q_cfg.get("stable_touch_orders", True))
        self.stable_touch_orders = stable_touch_orders
        self.long_spacing = tuple(q_cfg.get("long_spacing", [1.5, 0.5]))
        self.short_spacing = tuple(q_cfg.get("short_spacing", [0.5, 1.5]))
        self.flat_spacing = tuple(q_cfg.get("flat_spacing", [1.0, 1.0]))
        self.volatility_widen = float(q_cfg.get("volatility_widen", 1.3))

    def build_ladder(self, strategy: StrategyConfig, signal: MarketSignal, inventory_qty: float = 0.0) -> List[QuoteLevel]:
        spread = optimal_spread(signal.volatility, strategy.gamma, strategy.k)
        mid = skewed_mid_price(signal.mid_price, inventory_qty, signal.volatility, strategy.gamma)
        spacing = dynamic_spacing(
            strategy.level_spacing_ratio, signal.volatility, strategy.volatility_threshold, self.volatility_widen
        )
        bid_mult, ask_mult = spacing_multipliers(
            inventory_qty, self.long_spacing, self.short_spacing, self.flat_spacing
        )
        qty = strategy.base_order_quantity
        precision = strategy.price_precision

        levels: List[QuoteLevel] = []
        levels.extend(self._directional_level(signal, mid, qty, precision))
        for level in range(1, strategy.order_levels + 1):
            offset = spread / 2.0 * level * spacing
            bid_price = round_price(mid - offset * bid_mult, precision)
            ask_price = round_price(mid + offset * ask_mult, precision)
            levels.append(QuoteLevel(level, Side.BUY, self.ladder_order_type, bid_price, qty))
            levels.append(QuoteLevel(level, Side.SELL, self.ladder_order_type, ask_price, qty))

        accepted = [lvl for lvl in levels if self._acceptable(lvl, signal)]
        logger.info(
            "%s: %s ladder spread=%.6f mid=%.*f levels=%d (%d skipped)",
            strategy.symbol, signal.prediction.value, spread, precision, mid,
            len(accepted), len(levels) - len(accepted),
        )
        return accepted

    def _directional_level(self, signal: MarketSignal, mid: float, qty: float, precision: int) -> List[QuoteLevel]:
        price = round_price(mid, precision)
        if signal.prediction is Prediction.UP:
            return [
                QuoteLevel(0, Side.BUY, OrderType.LIMIT, price, qty),
                QuoteLevel(0, Side.BUY, OrderType.MARKETABLE_BID, None, qty),
            ]
        if signal.prediction is Prediction.DOWN:
            return [
                QuoteLevel(0, Side.SELL, OrderType.LIMIT, price, qty),
                QuoteLevel(0, Side.SELL, OrderType.MARKETABLE_ASK, None, qty),
            ]
        if not self.stable_touch_orders:
            return []
        return [
            QuoteLevel(0, Side.BUY, OrderType.MARKETABLE_BID, None, qty),
            QuoteLevel(0, Side.SELL, OrderType.MARKETABLE_ASK, None, qty),
        ]

    def _acceptable(self, level: QuoteLevel, signal: MarketSignal) -> bool:
        if level.price is not None:
            price = level.price
        else:
            price = signal.best_bid if level.side is Side.BUY else signal.best_ask
        if price is None or price <= 0:
            return False
        return price * level.quantity >= self.min_notional
