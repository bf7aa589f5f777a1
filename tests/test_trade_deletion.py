from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from trade_journal.analytics.trade_builder import TradeAggregator
from trade_journal.analytics.trade_deletion import delete_trades, find_deletion_conflicts
from trade_journal.db.models import Order, Trade, TradeOrder
from trade_journal.ingest.errors import DeletionConflictError, TradeNotFoundError

T0 = datetime(2024, 3, 4, 9, 30)


@pytest.fixture
def partial_close(db_session, order_factory):
    """One TSLA buy closed by two sells, plus an unrelated MSFT round trip."""
    buy = order_factory(db_session, symbol="TSLA", side="BUY", quantity=1000, price=200.0, executed_at=T0)
    order_factory(
        db_session, symbol="TSLA", side="SELL", quantity=400, price=205.0, executed_at=T0 + timedelta(minutes=30)
    )
    order_factory(
        db_session, symbol="TSLA", side="SELL", quantity=600, price=210.0, executed_at=T0 + timedelta(days=1)
    )
    order_factory(db_session, symbol="MSFT", side="BUY", quantity=10, price=400.0, executed_at=T0)
    order_factory(
        db_session, symbol="MSFT", side="SELL", quantity=10, price=401.0, executed_at=T0 + timedelta(hours=1)
    )
    TradeAggregator().rebuild(db_session, "user-1", ["TSLA", "MSFT"])

    tsla = db_session.scalars(select(Trade).where(Trade.symbol == "TSLA").order_by(Trade.exit_date)).all()
    msft = db_session.scalars(select(Trade).where(Trade.symbol == "MSFT")).one()
    return {"buy_id": buy.id, "first": tsla[0].id, "second": tsla[1].id, "msft": msft.id}


def test_conflict_report_names_shared_orders_and_other_trades(db_session, partial_close) -> None:
    report = find_deletion_conflicts(db_session, "user-1", [partial_close["first"]])

    assert report.has_conflicts is True
    assert report.shared_order_ids == [partial_close["buy_id"]]
    assert report.conflicting_trade_ids == [partial_close["second"]]
    assert report.all_affected_trade_ids == sorted([partial_close["first"], partial_close["second"]])
    (detail,) = report.conflict_details
    assert detail.symbol == "TSLA"
    assert detail.selected_trade_ids == [partial_close["first"]]

    payload = report.to_payload()
    assert payload["sharedOrderCount"] == 1
    assert payload["totalConflictingTrades"] == 1
    assert payload["conflictDetails"][0]["orderId"] == partial_close["buy_id"]


def test_selecting_every_sharing_trade_clears_the_conflict(db_session, partial_close) -> None:
    report = find_deletion_conflicts(
        db_session, "user-1", [partial_close["first"], partial_close["second"]]
    )
    assert report.has_conflicts is False
    assert report.shared_order_ids == []


def test_delete_refuses_when_orders_are_shared(db_session, partial_close, events) -> None:
    with pytest.raises(DeletionConflictError) as excinfo:
        delete_trades(db_session, "user-1", [partial_close["second"]], events=events)

    assert excinfo.value.report.conflicting_trade_ids == [partial_close["first"]]
    assert db_session.get(Trade, partial_close["second"]) is not None
    assert events.count("trades.delete_conflict") == 1


def test_delete_removes_trades_links_and_orders(db_session, partial_close, events) -> None:
    selected = [partial_close["second"], partial_close["first"]]

    result = delete_trades(db_session, "user-1", selected, events=events)

    assert result.deleted_trade_ids == sorted(selected)
    assert len(result.deleted_order_ids) == 3
    assert db_session.scalars(select(Trade.symbol)).all() == ["MSFT"]
    assert sorted(set(db_session.scalars(select(Order.symbol)).all())) == ["MSFT"]
    assert db_session.scalars(select(TradeOrder).where(TradeOrder.trade_id.in_(selected))).all() == []
    assert result.to_payload()["deletedOrders"] == 3
    assert events.count("trades.deleted") == 1


def test_exclusive_trade_deletes_alone(db_session, partial_close) -> None:
    result = delete_trades(db_session, "user-1", [partial_close["msft"]])

    assert result.deleted_trade_ids == [partial_close["msft"]]
    assert len(result.deleted_order_ids) == 2
    assert len(db_session.scalars(select(Trade)).all()) == 2


def test_unknown_or_foreign_trades_are_not_found(db_session, partial_close) -> None:
    with pytest.raises(TradeNotFoundError) as excinfo:
        delete_trades(db_session, "user-1", [partial_close["msft"], 9999])
    assert excinfo.value.trade_ids == [9999]

    with pytest.raises(TradeNotFoundError):
        find_deletion_conflicts(db_session, "user-2", [partial_close["msft"]])


@pytest.mark.parametrize("trade_ids", [[], ["abc"], None])
def test_selection_must_be_integer_ids(db_session, trade_ids) -> None:
    with pytest.raises(ValueError):
        find_deletion_conflicts(db_session, "user-1", trade_ids)
