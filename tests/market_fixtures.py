import time
from typing import List, Sequence, Tuple

from strategy.models import OrderBookSnapshot, Side, StrategyConfig, TradePrint


def make_strategy(**overrides) -> StrategyConfig:
    params = dict(
        symbol='PERP_TEST_USDC',
        price_precision=3,
        base_order_quantity=1.0,
        trade_period_ms=60_000,
        volatility_window_size=0,
        order_levels=3,
        level_spacing_ratio=0.05,
        take_profit_ratio_pct=0.5,
        stop_loss_ratio_pct=0.5,
        risk_aversion=0.2,
        liquidity_constant=6.0,
        volatility_threshold=1.0,
        directional_threshold_pct=60.0,
    )
    params.update(overrides)
    return StrategyConfig(**params)


def make_book(bids: Sequence[Tuple[float, float]], asks: Sequence[Tuple[float, float]],
              ts_ms: int = None) -> OrderBookSnapshot:
    return OrderBookSnapshot.from_levels(ts_ms or int(time.time() * 1000), bids, asks)


def make_trades(rows: Sequence[Tuple[str, float, float]], start_ms: int = None) -> List[TradePrint]:
    """rows of (side, price, quantity), one millisecond apart."""
    start_ms = start_ms or int(time.time() * 1000)
    return [
        TradePrint(timestamp_ms=start_ms + i, side=Side(side), price=price, quantity=qty)
        for i, (side, price, qty) in enumerate(rows)
    ]


def build_signer(exchange_cfg):
    def sign(method, path, body):
        return {}
    return sign
