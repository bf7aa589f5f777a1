from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from trade_journal.analytics.trade_builder import (
    FIFOTradeBuilder,
    Fill,
    TradeAggregator,
    classify_holding_period,
)
from trade_journal.db.models import (
    AllocationRole,
    HoldingPeriod,
    OrderSide,
    Trade,
    TradeOrder,
    TradeSide,
    TradeStatus,
)

T0 = datetime(2024, 3, 4, 9, 30)


def _fill(order_id: int, side: str, quantity: float, price: float, minutes: int = 0, **costs) -> Fill:
    return Fill(
        order_id=order_id,
        symbol="AAPL",
        side=OrderSide(side),
        quantity=quantity,
        price=price,
        executed_at=T0 + timedelta(minutes=minutes),
        **costs,
    )


def _allocations(draft) -> list[tuple[int, str, float]]:
    return [(a.order_id, a.role.value, a.quantity) for a in draft.allocations]


@pytest.mark.parametrize(
    "held, expected",
    [
        (timedelta(minutes=14, seconds=59), HoldingPeriod.SCALP),
        (timedelta(minutes=15), HoldingPeriod.INTRADAY),
        (timedelta(hours=24), HoldingPeriod.INTRADAY),
        (timedelta(hours=24, seconds=1), HoldingPeriod.SWING),
        (timedelta(days=30), HoldingPeriod.SWING),
        (timedelta(days=31), HoldingPeriod.POSITION),
        (timedelta(days=365), HoldingPeriod.POSITION),
        (timedelta(days=366), HoldingPeriod.LONG_TERM),
    ],
)
def test_classify_holding_period_boundaries(held: timedelta, expected: HoldingPeriod) -> None:
    assert classify_holding_period(T0, T0 + held) == expected


def test_multiple_entries_close_at_volume_weighted_price() -> None:
    drafts = FIFOTradeBuilder("AAPL").process(
        [
            _fill(1, "BUY", 100, 10.0),
            _fill(2, "BUY", 100, 12.0, minutes=5),
            _fill(3, "SELL", 200, 13.0, minutes=30),
        ]
    )

    (trade,) = drafts
    assert trade.side == TradeSide.LONG
    assert trade.status == TradeStatus.CLOSED
    assert trade.quantity == 200
    assert trade.entry_price == 11.0
    assert trade.exit_price == 13.0
    assert trade.pnl == 400.0
    assert trade.entry_date == T0
    assert trade.holding_period == HoldingPeriod.INTRADAY
    assert _allocations(trade) == [(1, "ENTRY", 100), (2, "ENTRY", 100), (3, "EXIT", 200)]


def test_partial_exits_each_close_their_own_trade_and_leave_remainder_open() -> None:
    drafts = FIFOTradeBuilder("AAPL").process(
        [
            _fill(1, "BUY", 100, 10.0, commission=1.0),
            _fill(2, "SELL", 40, 11.0, minutes=10, commission=0.5),
        ]
    )

    closed, still_open = drafts
    assert closed.quantity == 40
    assert closed.commission == 0.9
    assert closed.pnl == 39.1
    assert closed.holding_period == HoldingPeriod.SCALP
    assert still_open.status == TradeStatus.OPEN
    assert still_open.quantity == 60
    assert still_open.entry_price == 10.0
    assert still_open.commission == 0.6
    assert still_open.pnl == 0.0
    assert still_open.exit_date is None
    assert still_open.holding_period is None
    assert _allocations(still_open) == [(1, "ENTRY", 60)]


def test_short_round_trip_profits_when_price_falls() -> None:
    (trade,) = FIFOTradeBuilder("AAPL").process(
        [_fill(1, "SELL", 50, 20.0), _fill(2, "BUY", 50, 18.0, minutes=60, fees=0.25)]
    )

    assert trade.side == TradeSide.SHORT
    assert trade.pnl == 99.75
    assert trade.fees == 0.25


def test_reversal_fill_closes_and_opens_with_split_costs() -> None:
    drafts = FIFOTradeBuilder("AAPL").process(
        [
            _fill(1, "BUY", 100, 10.0),
            _fill(2, "SELL", 150, 12.0, minutes=10, commission=3.0),
            _fill(3, "BUY", 50, 11.0, minutes=90),
        ]
    )

    long_trade, short_trade = drafts
    assert long_trade.side == TradeSide.LONG
    assert long_trade.commission == 2.0
    assert long_trade.pnl == 198.0
    assert _allocations(long_trade) == [(1, "ENTRY", 100), (2, "EXIT", 100)]
    assert short_trade.side == TradeSide.SHORT
    assert short_trade.entry_price == 12.0
    assert short_trade.commission == 1.0
    assert short_trade.pnl == 49.0
    assert _allocations(short_trade) == [(2, "ENTRY", 50), (3, "EXIT", 50)]


def test_simultaneous_fills_replay_in_order_id_order() -> None:
    drafts = FIFOTradeBuilder("AAPL").process(
        [_fill(5, "SELL", 10, 11.0), _fill(4, "BUY", 10, 10.0)]
    )

    (trade,) = drafts
    assert trade.side == TradeSide.LONG
    assert trade.pnl == 10.0
    assert trade.opening_order_id == 4


def test_rebuild_is_idempotent(db_session, order_factory, events) -> None:
    order_factory(db_session, symbol="AAPL", side="BUY", quantity=100, price=10.0, executed_at=T0)
    order_factory(
        db_session, symbol="AAPL", side="SELL", quantity=40, price=11.0, executed_at=T0 + timedelta(minutes=30)
    )
    aggregator = TradeAggregator(events=events)

    first = aggregator.rebuild(db_session, "user-1", ["AAPL"])
    second = aggregator.rebuild(db_session, "user-1", ["AAPL", "AAPL"])

    assert first.created == 2
    assert second.created == 0
    assert second.unchanged == 2
    assert sorted(second.trade_ids) == sorted(first.trade_ids)
    assert len(db_session.scalars(select(TradeOrder)).all()) == 3
    assert events.count("aggregate.completed") == 2


def test_rebuild_updates_open_trade_in_place_when_it_closes(db_session, order_factory) -> None:
    buy = order_factory(db_session, symbol="AAPL", side="BUY", quantity=100, price=10.0, executed_at=T0)
    order_factory(
        db_session, symbol="AAPL", side="SELL", quantity=40, price=11.0, executed_at=T0 + timedelta(minutes=30)
    )
    aggregator = TradeAggregator()
    aggregator.rebuild(db_session, "user-1", ["AAPL"])
    open_trade = db_session.scalars(select(Trade).where(Trade.status == TradeStatus.OPEN)).one()
    open_trade.notes = "waiting for earnings"
    open_trade_id = open_trade.id

    exit_order = order_factory(
        db_session, symbol="AAPL", side="SELL", quantity=60, price=12.0, executed_at=T0 + timedelta(days=2)
    )
    result = aggregator.rebuild(db_session, "user-1", ["AAPL"])

    assert result.updated == 1
    assert result.unchanged == 1
    assert result.created == 0
    assert result.removed == 0
    trade = db_session.get(Trade, open_trade_id)
    assert trade.status == TradeStatus.CLOSED
    assert trade.notes == "waiting for earnings"
    assert trade.quantity == 60
    assert trade.pnl == 120.0
    assert trade.holding_period == HoldingPeriod.SWING
    links = db_session.scalars(select(TradeOrder).where(TradeOrder.trade_id == open_trade_id)).all()
    assert sorted((link.order_id, AllocationRole(link.role).value) for link in links) == [
        (buy.id, "ENTRY"),
        (exit_order.id, "EXIT"),
    ]


def test_rebuild_keeps_trade_whose_first_entry_has_the_higher_order_id(db_session, order_factory) -> None:
    later = order_factory(
        db_session, symbol="AAPL", side="BUY", quantity=10, price=11.0, executed_at=T0 + timedelta(hours=1)
    )
    earlier = order_factory(db_session, symbol="AAPL", side="BUY", quantity=10, price=10.0, executed_at=T0)
    aggregator = TradeAggregator()
    aggregator.rebuild(db_session, "user-1", ["AAPL"])
    open_trade = db_session.scalars(select(Trade)).one()
    open_trade.notes = "scaling in"
    open_trade_id = open_trade.id
    assert earlier.id > later.id

    order_factory(
        db_session, symbol="AAPL", side="SELL", quantity=20, price=12.0, executed_at=T0 + timedelta(hours=2)
    )
    result = aggregator.rebuild(db_session, "user-1", ["AAPL"])

    assert (result.updated, result.created, result.removed) == (1, 0, 0)
    trade = db_session.scalars(select(Trade)).one()
    assert trade.id == open_trade_id
    assert trade.notes == "scaling in"
    assert trade.status == TradeStatus.CLOSED
    assert trade.pnl == 30.0


def test_rebuild_only_reads_the_users_own_orders(db_session, order_factory) -> None:
    order_factory(db_session, symbol="AAPL", side="BUY", quantity=10, price=10.0, executed_at=T0)
    order_factory(
        db_session,
        symbol="AAPL",
        side="SELL",
        quantity=10,
        price=11.0,
        executed_at=T0 + timedelta(minutes=1),
        user_id="user-2",
    )

    TradeAggregator().rebuild(db_session, "user-1", ["AAPL"])

    (trade,) = db_session.scalars(select(Trade)).all()
    assert trade.user_id == "user-1"
    assert trade.status == TradeStatus.OPEN
