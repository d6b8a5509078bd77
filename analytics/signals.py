import logging
from typing import Optional, Sequence, Union

import numpy as np

from config import config
from strategy.models import MarketSignal, OrderBookSnapshot, Prediction, Side, StrategyConfig, TradePrint


logger = logging.getLogger(__name__)

DEFAULT_ORDERBOOK_DECAY = 0.85


class InsufficientDataError(Exception):
    """Raised when a collection window holds too little data to estimate from."""


def compute_volatility(trades: Sequence[TradePrint]) -> float:
    """Population standard deviation of execution prices in the window."""
    if not trades:
        raise InsufficientDataError("no trades in volatility window")
    prices = np.fromiter((t.price for t in trades), dtype=float, count=len(trades))
    return float(np.std(prices, ddof=0))


def predict_from_order_book(
    snapshots: Union[OrderBookSnapshot, Sequence[OrderBookSnapshot]],
    imbalance_threshold_pct: float,
    decay: float = DEFAULT_ORDERBOOK_DECAY,
    depth: Optional[int] = None,
) -> Prediction:
    if isinstance(snapshots, OrderBookSnapshot):
        snapshots = [snapshots]
    if not snapshots:
        raise InsufficientDataError("no order-book snapshots")

    # age 0 is the most recent snapshot
    ordered = list(reversed(snapshots))
    weights = decay ** np.arange(len(ordered), dtype=float)
    bids = np.array([s.bid_quantity(depth) for s in ordered], dtype=float)
    asks = np.array([s.ask_quantity(depth) for s in ordered], dtype=float)
    total_weight = weights.sum()
    bid_volume = float((bids * weights).sum() / total_weight)
    ask_volume = float((asks * weights).sum() / total_weight)

    total = bid_volume + ask_volume
    if total <= 0:
        return Prediction.STABLE
    bid_share = bid_volume / total * 100.0
    ask_share = ask_volume / total * 100.0
    if bid_share > imbalance_threshold_pct:
        return Prediction.UP
    if ask_share > imbalance_threshold_pct:
        return Prediction.DOWN
    return Prediction.STABLE


def predict_from_trade_flow(trades: Sequence[TradePrint]) -> Prediction:
    buy_volume = sum(t.quantity for t in trades if t.side is Side.BUY)
    sell_volume = sum(t.quantity for t in trades if t.side is Side.SELL)
    if buy_volume <= 0 or sell_volume <= 0:
        return Prediction.STABLE

    buy_vwap = sum(t.price * t.quantity for t in trades if t.side is Side.BUY) / buy_volume
    sell_vwap = sum(t.price * t.quantity for t in trades if t.side is Side.SELL) / sell_volume
    if buy_volume > sell_volume and buy_vwap > sell_vwap:
        return Prediction.UP
    if sell_volume > buy_volume and sell_vwap > buy_vwap:
        return Prediction.DOWN
    return Prediction.STABLE


def combine(trade_flow: Prediction, order_book: Prediction) -> Prediction:
    if {trade_flow, order_book} == {Prediction.UP, Prediction.DOWN}:
        return Prediction.STABLE
    if trade_flow is not Prediction.STABLE:
        return trade_flow
    return order_book


def estimate(
    trades: Sequence[TradePrint],
    snapshots: Sequence[OrderBookSnapshot],
    strategy: StrategyConfig,
    decay: Optional[float] = None,
) -> MarketSignal:
    if not snapshots:
        raise InsufficientDataError(f"{strategy.symbol}: no order-book snapshots collected")
    if not trades:
        raise InsufficientDataError(f"{strategy.symbol}: no trades collected")

    latest = snapshots[-1]
    if latest.mid_price is None:
        raise InsufficientDataError(f"{strategy.symbol}: latest book is one-sided")

    if decay is None:
        decay = float(config.section("signals").get("orderbook_decay", DEFAULT_ORDERBOOK_DECAY))

    window = list(trades)[-strategy.volatility_window_size:] if strategy.volatility_window_size > 0 else list(trades)
    volatility = compute_volatility(window)
    book_view = predict_from_order_book(snapshots, strategy.directional_threshold_pct, decay=decay)
    flow_view = predict_from_trade_flow(trades)
    prediction = combine(flow_view, book_view)

    logger.debug(
        "%s: sigma=%.6f flow=%s book=%s -> %s",
        strategy.symbol, volatility, flow_view.value, book_view.value, prediction.value,
    )
    return MarketSignal(
        volatility=volatility,
        prediction=prediction,
        trade_flow=flow_view,
        order_book=book_view,
        mid_price=latest.mid_price,
        best_bid=latest.best_bid,
        best_ask=latest.best_ask,
        extras={"trades": len(trades), "snapshots": len(snapshots)},
    )
