from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import func, inspect, select, text
from sqlalchemy.exc import IntegrityError

from trade_journal.db.migrate import migrate
from trade_journal.db.models import Broker, Order, Trade, TradeSide, TradeStatus
from trade_journal.db.repository import (
    insert_orders,
    record_upload,
    save_trade_notes,
    stage_trade_notes,
    update_order_tags,
)
from trade_journal.ingest.errors import OrderNotFoundError, TradeNotFoundError


def _sqlite_index_columns(conn, *, table_name: str, index_name: str) -> tuple[str, ...] | None:
    index_rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings()  # noqa: S608
    if not any(row.get("name") == index_name for row in index_rows):
        return None
    return tuple(
        str(item.get("name"))
        for item in conn.execute(text(f"PRAGMA index_info('{index_name}')")).mappings()  # noqa: S608
    )


def _order_row(dedupe_key: str, *, user_id: str = "user-1", **overrides) -> dict:
    row = {
        "user_id": user_id,
        "import_batch_id": None,
        "dedupe_key": dedupe_key,
        "broker_order_id": None,
        "execution_id": None,
        "symbol": "AAPL",
        "side": "BUY",
        "quantity": 10.0,
        "price": 150.0,
        "executed_at": datetime(2024, 3, 4, 9, 30),
        "placed_at": None,
        "commission": 0.0,
        "fees": 0.0,
        "order_type": None,
        "time_in_force": None,
        "account": None,
        "currency": "USD",
        "broker_metadata": {},
        "tags": [],
    }
    row.update(overrides)
    return row


def test_migrate_creates_schema_in_new_directory(tmp_path):
    db_file = tmp_path / "nested" / "journal.sqlite"

    engine = migrate(f"sqlite:///{db_file.as_posix()}")
    try:
        assert db_file.exists()
        table_names = set(inspect(engine).get_table_names())
        assert {
            "brokers",
            "broker_aliases",
            "broker_csv_formats",
            "import_batches",
            "orders",
            "trades",
            "trade_orders",
            "ai_ingest_checks",
            "ai_ingest_feedback_items",
            "user_upload_usage",
        } <= table_names
        with engine.connect() as conn:
            assert _sqlite_index_columns(
                conn, table_name="orders", index_name="ix_orders_user_symbol_exec"
            ) == ("user_id", "symbol", "executed_at", "id")
            assert _sqlite_index_columns(
                conn, table_name="broker_csv_formats", index_name="ix_broker_formats_fingerprint"
            ) == ("header_fingerprint",)
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
    finally:
        engine.dispose()


def test_savepoint_rollback_keeps_outer_transaction(database):
    with database.unit_of_work() as session:
        session.add(Broker(name="Webull"))
        session.flush()
        with pytest.raises(IntegrityError):
            with session.begin_nested():
                session.add(Broker(name="Webull"))
                session.flush()
        session.add(Broker(name="Fidelity"))

    with database.unit_of_work() as session:
        names = session.scalars(select(Broker.name).order_by(Broker.name)).all()
    assert names == ["Fidelity", "Webull"]


def test_insert_orders_skips_known_and_repeated_keys(db_session):
    first = insert_orders(db_session, [_order_row("SIG:1"), _order_row("SIG:2")])
    second = insert_orders(
        db_session, [_order_row("SIG:2"), _order_row("SIG:3"), _order_row("SIG:3", price=151.0)]
    )

    assert len(first) == 2
    assert len(second) == 1
    assert db_session.scalar(select(func.count()).select_from(Order)) == 3
    assert insert_orders(db_session, []) == []


def test_insert_orders_keeps_dedupe_keys_per_user(db_session):
    insert_orders(db_session, [_order_row("SIG:1")])
    assert len(insert_orders(db_session, [_order_row("SIG:1", user_id="user-2")])) == 1

    with pytest.raises(ValueError):
        insert_orders(db_session, [_order_row("SIG:9"), _order_row("SIG:9", user_id="user-3")])


def test_record_upload_counts_per_user(db_session):
    assert record_upload(db_session, "user-1") == 1
    assert record_upload(db_session, "user-1") == 2
    assert record_upload(db_session, "user-2") == 1


def test_update_order_tags_normalizes_and_checks_owner(db_session):
    (order_id,) = insert_orders(db_session, [_order_row("SIG:1")])

    order = update_order_tags(db_session, "user-1", order_id, [" IRA", "Margin", "IRA", ""])

    assert order.tags == ["IRA", "Margin"]
    with pytest.raises(OrderNotFoundError):
        update_order_tags(db_session, "user-2", order_id, ["IRA"])


def test_trade_notes_are_staged_then_saved(db_session):
    trade = Trade(
        user_id="user-1",
        symbol="AAPL",
        side=TradeSide.LONG,
        status=TradeStatus.OPEN,
        quantity=10.0,
        entry_date=datetime(2024, 3, 4, 9, 30),
        entry_price=150.0,
        tags=[],
    )
    db_session.add(trade)
    db_session.flush()

    stage_trade_notes(db_session, "user-1", trade.id, "Chased the open")
    assert trade.notes is None
    assert trade.notes_changes == "Chased the open"

    save_trade_notes(db_session, "user-1", trade.id)
    assert trade.notes == "Chased the open"
    assert trade.notes_changes is None

    with pytest.raises(TradeNotFoundError):
        stage_trade_notes(db_session, "user-2", trade.id, "not mine")
