from __future__ import annotations

import logging
from datetime import datetime

from trade_journal.utils.dates import isoformat_or_none, utcnow
from trade_journal.utils.logging import EventLogger
from trade_journal.utils.money import round_money, round_price, round_quantity


def test_dates_helpers_return_naive_utc():
    assert utcnow().tzinfo is None
    assert isoformat_or_none(datetime(2024, 3, 4, 9, 30, 15, 123456)) == "2024-03-04T09:30:15"
    assert isoformat_or_none(None) is None


def test_rounding_is_half_up_and_float_safe():
    assert round_money(2.675) == 2.68
    assert round_money(None) == 0.0
    assert round_money(0.1 + 0.2) == 0.3
    assert round_price("11.0000004") == 11.0
    assert round_quantity(1 / 3) == 0.333333


def test_event_logger_keeps_recent_events(caplog):
    events = EventLogger("trade_journal.tests.events", keep=2)

    with caplog.at_level(logging.INFO, logger="trade_journal.tests.events"):
        events.emit("ingest.parsed", rows=3, filename="my trades.csv")
        events.emit("ingest.parsed", rows=1)
        events.emit("ingest.failed", level=logging.WARNING, error="boom")

    assert [record["event"] for record in events.events] == ["ingest.parsed", "ingest.failed"]
    assert events.count("ingest.parsed") == 1
    assert "filename='my trades.csv' rows=3" in caplog.records[0].getMessage()
    assert caplog.records[-1].levelno == logging.WARNING
