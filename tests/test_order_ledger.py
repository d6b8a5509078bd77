import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from strategy.execution_types import (
    FillEvent,
    LimitOrder,
    OrderStatus,
    OrderType,
    PostOnlyOrder,
    QuoteLevel,
)
from strategy.models import Position, Side
from strategy.order_ledger import OrderLedger
from strategy.simulators.paper import PaperExchange
from tests.market_fixtures import make_book

SYMBOL = 'PERP_TEST_USDC'


async def _setup():
    venue = PaperExchange()
    await venue.update_book(SYMBOL, make_book([(99.0, 10.0)], [(101.0, 10.0)]))
    ledger = OrderLedger(venue, SYMBOL)
    venue.on_fill_push(ledger.handle_fill)
    return venue, ledger


def test_cancel_all_with_no_orders_is_safe():
    async def _run():
        venue, ledger = await _setup()
        assert await ledger.cancel_all()
        assert await ledger.cancel_all()
        assert dict(ledger.open_orders) == {}
        assert venue.cancel_all_calls == 2

    asyncio.run(_run())


def test_submit_tracks_open_order():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.submit(PostOnlyOrder(Side.BUY, 1.0, limit_price=98.0))
        assert order is not None
        assert order.status is OrderStatus.OPEN
        assert ledger.open_orders[order.exchange_order_id] is order
        assert order.exchange_order_id in venue.open_orders

    asyncio.run(_run())


def test_cancel_all_drops_tracked_orders():
    async def _run():
        venue, ledger = await _setup()
        first = await ledger.submit(PostOnlyOrder(Side.BUY, 1.0, limit_price=98.0))
        second = await ledger.submit(PostOnlyOrder(Side.SELL, 1.0, limit_price=102.0))
        assert len(ledger.open_orders) == 2
        await ledger.cancel_all()
        assert len(ledger.open_orders) == 0
        assert first.status is OrderStatus.CANCELED
        assert second.status is OrderStatus.CANCELED
        assert not venue.open_orders

    asyncio.run(_run())


def test_cancel_all_failure_is_logged_and_tolerated():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.submit(PostOnlyOrder(Side.BUY, 1.0, limit_price=98.0))
        venue.inject_failure('cancel_all_orders')
        assert await ledger.cancel_all() is False
        assert order.exchange_order_id in ledger.open_orders

    asyncio.run(_run())


def test_submit_failure_returns_none():
    async def _run():
        venue, ledger = await _setup()
        venue.inject_failure('place_order')
        assert await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=98.0)) is None
        assert not ledger.open_orders

    asyncio.run(_run())


def test_rejected_post_only_is_not_tracked():
    async def _run():
        venue, ledger = await _setup()
        assert await ledger.submit(PostOnlyOrder(Side.BUY, 1.0, limit_price=101.5)) is None

    asyncio.run(_run())


def test_fill_push_marks_order_terminal_and_counts_volume():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.submit(LimitOrder(Side.BUY, 2.0, limit_price=99.5))
        await venue.update_book(SYMBOL, make_book([(98.0, 10.0)], [(99.4, 10.0)]))
        assert order.status is OrderStatus.FILLED
        assert order.exchange_order_id not in ledger.open_orders
        assert ledger.filled_orders == 1
        assert ledger.filled_volume == pytest.approx(2.0)
        position = await venue.get_open_position(SYMBOL)
        assert position.quantity == 2.0
        assert position.average_entry_price == 99.5

    asyncio.run(_run())


def test_partial_fill_keeps_order_open():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.submit(LimitOrder(Side.SELL, 3.0, limit_price=102.0))
        await ledger.handle_fill(FillEvent(order.exchange_order_id, SYMBOL, Side.SELL, 'PARTIAL_FILLED', 1.0, 102.0))
        assert ledger.open_orders[order.exchange_order_id].status is OrderStatus.OPEN
        assert order.filled_quantity == 1.0
        await ledger.handle_fill(FillEvent(order.exchange_order_id, SYMBOL, Side.SELL, 'FILLED', 3.0, 102.0))
        assert order.exchange_order_id not in ledger.open_orders
        assert ledger.filled_volume == pytest.approx(3.0)

    asyncio.run(_run())


def test_rejected_and_expired_pushes_are_terminal():
    async def _run():
        venue, ledger = await _setup()
        a = await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=97.0))
        b = await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=96.0))
        await ledger.handle_fill(FillEvent(a.exchange_order_id, SYMBOL, Side.BUY, 'REJECTED'))
        await ledger.handle_fill(FillEvent(b.exchange_order_id, SYMBOL, Side.BUY, 'EXPIRED'))
        assert not ledger.open_orders
        assert a.status is OrderStatus.CANCELED and b.status is OrderStatus.CANCELED

    asyncio.run(_run())


def test_unknown_fill_ids_are_ignored():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=97.0))
        await ledger.handle_fill(FillEvent('nope', SYMBOL, Side.BUY, 'FILLED', 1.0, 97.0))
        await ledger.handle_fill(FillEvent(order.exchange_order_id, 'PERP_OTHER_USDC', Side.BUY, 'FILLED', 1.0, 97.0))
        assert list(ledger.open_orders) == [order.exchange_order_id]
        assert ledger.filled_orders == 0

    asyncio.run(_run())


def test_replace_ladder_cancels_before_placing():
    async def _run():
        venue, ledger = await _setup()
        stale = await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=95.0))
        levels = [
            QuoteLevel(1, Side.BUY, OrderType.POST_ONLY, 98.5, 1.0),
            QuoteLevel(1, Side.SELL, OrderType.POST_ONLY, 101.5, 1.0),
        ]
        placed = await ledger.replace_ladder(levels)
        assert len(placed) == 2
        assert stale.exchange_order_id not in venue.open_orders
        assert set(ledger.open_orders) == {o.exchange_order_id for o in placed}

    asyncio.run(_run())


def test_cancel_and_cancel_batch():
    async def _run():
        venue, ledger = await _setup()
        orders = [await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=90.0 + i)) for i in range(3)]
        assert await ledger.cancel(orders[0].exchange_order_id)
        assert await ledger.cancel_batch([o.exchange_order_id for o in orders[1:]])
        assert not ledger.open_orders
        assert not venue.open_orders
        assert await ledger.cancel_batch([])

    asyncio.run(_run())


def test_flatten_sends_reduce_only_for_exact_quantity():
    async def _run():
        venue, ledger = await _setup()
        venue.set_position(SYMBOL, -3.5, 100.0, mark_price=100.0)
        await ledger.submit(LimitOrder(Side.BUY, 1.0, limit_price=95.0))
        order = await ledger.flatten(Position(SYMBOL, -3.5, 100.0, 100.0), OrderType.MARKET)
        assert order.side is Side.BUY
        assert order.quantity == 3.5
        assert order.order_type is OrderType.MARKET
        assert (await venue.get_open_position(SYMBOL)).quantity == 0.0
        assert not venue.open_orders

    asyncio.run(_run())


def test_flatten_with_marketable_order_joins_touch():
    async def _run():
        venue, ledger = await _setup()
        order = await ledger.flatten(Position(SYMBOL, 2.0, 100.0, 100.0), OrderType.MARKETABLE_ASK)
        assert order.order_type is OrderType.MARKETABLE_ASK
        assert order.exchange_order_id in ledger.open_orders
        assert venue.open_orders[order.exchange_order_id].price == 101.0

    asyncio.run(_run())


def test_flatten_flat_position_only_cancels():
    async def _run():
        venue, ledger = await _setup()
        assert await ledger.flatten(Position(SYMBOL, 0.0, 0.0, 100.0)) is None
        assert venue.cancel_all_calls == 1

    asyncio.run(_run())
