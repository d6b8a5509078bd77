import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from risk.risk_manager import RiskManager, RiskState, classify, pnl_pct
from strategy.execution_types import LimitOrder, MarketableOrder, MarketOrder, OrderType
from strategy.models import Position, Side
from strategy.order_ledger import OrderLedger
from strategy.simulators.paper import PaperExchange
from tests.market_fixtures import make_book, make_strategy

SYMBOL = 'PERP_TEST_USDC'


def _manager(**kwargs):
    params = dict(dust_notional=10.0, breakeven_offset_pct=0.0,
                  aggressive_loss_order=OrderType.MARKET, aggressive_profit_order=OrderType.MARKET)
    params.update(kwargs)
    return RiskManager(make_strategy(stop_loss_ratio_pct=0.5, take_profit_ratio_pct=0.5), **params)


def test_pnl_pct_long_and_short():
    assert pnl_pct(Position(SYMBOL, 10.0, 100.0, 99.0)) == pytest.approx(-1.0)
    assert pnl_pct(Position(SYMBOL, -10.0, 100.0, 99.0)) == pytest.approx(1.0)
    assert pnl_pct(Position(SYMBOL, 0.0, 100.0, 99.0)) == 0.0
    assert pnl_pct(Position(SYMBOL, 5.0, 0.0, 99.0)) == 0.0


def test_classify_reference_cases():
    assert classify(10.0, 100.0, 99.0, 0.5, 0.5) is RiskState.AGGRESSIVE_LOSS
    assert classify(10.0, 100.0, 99.8, 0.5, 0.5) is RiskState.STANDARD_LOSS
    assert classify(10.0, 100.0, 100.2, 0.5, 0.5) is RiskState.STANDARD_PROFIT
    assert classify(10.0, 100.0, 101.0, 0.5, 0.5) is RiskState.AGGRESSIVE_PROFIT
    assert classify(-10.0, 100.0, 101.0, 0.5, 0.5) is RiskState.AGGRESSIVE_LOSS


def test_classify_zero_pnl_counts_as_profit_side():
    assert classify(10.0, 100.0, 100.0, 0.5, 0.5) is RiskState.STANDARD_PROFIT


def test_classify_flat_regardless_of_mark():
    for mark in (0.0, 50.0, 100.0, 1e9):
        assert classify(0.0, 100.0, mark, 0.5, 0.5) is RiskState.FLAT


def test_classify_dust_is_flat():
    assert classify(0.05, 100.0, 50.0, 0.5, 0.5, dust_notional=10.0) is RiskState.FLAT
    assert classify(0.2, 100.0, 50.0, 0.5, 0.5, dust_notional=10.0) is RiskState.AGGRESSIVE_LOSS


def test_classify_unknown_mark_is_neutral():
    assert classify(1.0, 100.0, 0.0, 0.5, 0.5) is RiskState.NEUTRAL


def test_classify_is_pure():
    args = (3.0, 100.0, 99.7, 0.5, 0.5, 10.0)
    assert {classify(*args) for _ in range(5)} == {RiskState.STANDARD_LOSS}


def test_evaluate_standard_loss_places_passive_limit_at_entry():
    decision = _manager().evaluate(Position(SYMBOL, 10.0, 100.0, 99.8))
    assert decision.state is RiskState.STANDARD_LOSS
    assert decision.cancel_orders
    assert isinstance(decision.order, LimitOrder)
    assert decision.order.side is Side.SELL
    assert decision.order.price == 100.0
    assert decision.order.quantity == 10.0
    assert decision.order.reduce_only


def test_evaluate_standard_loss_with_breakeven_offset():
    decision = _manager(breakeven_offset_pct=0.02).evaluate(Position(SYMBOL, -10.0, 100.0, 100.2))
    assert decision.order.side is Side.BUY
    assert decision.order.price == pytest.approx(100.02)


def test_evaluate_aggressive_states_use_market_orders():
    loss = _manager().evaluate(Position(SYMBOL, 10.0, 100.0, 99.0))
    profit = _manager().evaluate(Position(SYMBOL, -4.0, 100.0, 99.0))
    assert isinstance(loss.order, MarketOrder)
    assert loss.order.side is Side.SELL and loss.order.quantity == 10.0
    assert profit.state is RiskState.AGGRESSIVE_PROFIT
    assert isinstance(profit.order, MarketOrder)
    assert profit.order.side is Side.BUY and profit.order.quantity == 4.0
    assert loss.order.reduce_only and profit.order.reduce_only


def test_evaluate_aggressive_loss_can_use_marketable():
    decision = _manager(aggressive_loss_order=OrderType.MARKETABLE_BID).evaluate(
        Position(SYMBOL, 10.0, 100.0, 99.0))
    assert isinstance(decision.order, MarketableOrder)
    assert decision.order.order_type is OrderType.MARKETABLE_ASK


def test_evaluate_standard_profit_queues_at_touch():
    decision = _manager().evaluate(Position(SYMBOL, 10.0, 100.0, 100.1))
    assert decision.state is RiskState.STANDARD_PROFIT
    assert isinstance(decision.order, MarketableOrder)
    assert decision.order.order_type is OrderType.MARKETABLE_ASK
    assert decision.order.reduce_only


def test_evaluate_flat_cancels_without_order():
    decision = _manager().evaluate(Position(SYMBOL, 0.0, 0.0, 100.0))
    assert decision.state is RiskState.FLAT
    assert decision.cancel_orders
    assert decision.order is None


def test_apply_cancels_then_submits_reduce_only_order():
    async def _run():
        venue = PaperExchange()
        await venue.update_book(SYMBOL, make_book([(98.9, 50.0)], [(99.1, 50.0)]))
        venue.set_position(SYMBOL, 10.0, 100.0, mark_price=99.0)
        ledger = OrderLedger(venue, SYMBOL)
        venue.on_fill_push(ledger.handle_fill)
        await venue.place_order(SYMBOL, LimitOrder(Side.BUY, 1.0, limit_price=90.0))

        manager = _manager()
        position = await venue.get_open_position(SYMBOL)
        decision = await manager.check(position, ledger)
        assert decision.state is RiskState.AGGRESSIVE_LOSS
        assert venue.cancel_all_calls == 1
        assert not venue.open_orders
        flat = await venue.get_open_position(SYMBOL)
        assert flat.quantity == 0.0
        assert ledger.filled_orders == 1

    asyncio.run(_run())
