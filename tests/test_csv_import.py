from __future__ import annotations

from datetime import datetime

import pytest

from trade_journal.ingest.csv_import import (
    csv_template,
    normalize_order_records,
    parse_csv_text,
    standard_layout_mappings,
)
from trade_journal.ingest.csv_mapping import BROKER_METADATA, FieldMapping
from trade_journal.ingest.dedupe import assign_dedupe_keys, order_dedupe_key
from trade_journal.ingest.errors import ParseError
from trade_journal.ingest.validators import (
    combine_date_time,
    detect_decimal_separator,
    normalize_side,
    parse_datetime,
    parse_decimal,
)


def _mappings(**fields: str) -> dict[str, FieldMapping]:
    return {header: FieldMapping(field_name, 1.0) for header, field_name in fields.items()}


def test_parse_csv_text_strips_bom_blank_lines_and_trailing_empty_columns() -> None:
    content = b"\xef\xbb\xbfSymbol,Qty,\n\nAAPL,10,\n  \nMSFT,5,\n"

    parsed = parse_csv_text(content)

    assert parsed.headers == ["Symbol", "Qty"]
    assert parsed.total_records == 2
    assert parsed.sample_rows(1) == [{"Symbol": "AAPL", "Qty": "10"}]


def test_parse_csv_text_renames_duplicate_headers() -> None:
    parsed = parse_csv_text("Symbol,Price,Price\nAAPL,1,2\n")
    assert parsed.headers == ["Symbol", "Price", "Price (2)"]


def test_parse_csv_text_rejects_inconsistent_column_counts_with_line_number() -> None:
    with pytest.raises(ParseError) as excinfo:
        parse_csv_text("Symbol,Qty,Price\nAAPL,1,2\nMSFT,3\n")

    assert excinfo.value.line_number == 3
    assert excinfo.value.message.startswith("Line 3: expected 3 columns")


def test_parse_csv_text_rejects_unterminated_quotes() -> None:
    with pytest.raises(ParseError):
        parse_csv_text('Symbol,Qty\n"AAPL,1\n')


@pytest.mark.parametrize("content", ["", "\n\n", "Symbol,Qty\n"])
def test_parse_csv_text_rejects_files_without_data(content: str) -> None:
    with pytest.raises(ParseError):
        parse_csv_text(content)


def test_parse_csv_text_rejects_non_utf8_bytes() -> None:
    with pytest.raises(ParseError, match="UTF-8"):
        parse_csv_text(b"Symbol,Qty\n\xff\xfe,1\n")


def test_csv_template_parses_with_its_own_headers() -> None:
    parsed = parse_csv_text(csv_template())
    assert parsed.headers[0] == "Date/Time"
    assert parsed.total_records == 4


def test_standard_layout_maps_template_columns_and_keeps_extras_as_metadata() -> None:
    mappings = standard_layout_mappings(
        [" date/time ", "Symbol", "SIDE", "Quantity", "Price", "Fees", "Notes", "symbol"]
    )

    assert {header: m.field for header, m in mappings.items()} == {
        " date/time ": "executed_at",
        "Symbol": "symbol",
        "SIDE": "side",
        "Quantity": "quantity",
        "Price": "price",
        "Fees": "fees",
        "Notes": BROKER_METADATA,
        "symbol": BROKER_METADATA,
    }
    assert mappings["Symbol"].confidence == 1.0


@pytest.mark.parametrize(
    "headers",
    [
        ["Time", "Symbol", "Side", "Quantity", "Price", "Order ID"],
        ["Date/Time", "Symbol", "Side", "Quantity", "Price"],
    ],
)
def test_standard_layout_needs_required_columns_and_most_template_columns(headers) -> None:
    assert standard_layout_mappings(headers) is None


def test_parse_datetime_handles_timezone_abbreviations_as_utc() -> None:
    assert parse_datetime("03/04/2024 09:30:00 EST") == datetime(2024, 3, 4, 14, 30, 0)
    assert parse_datetime("2024-03-04 09:30:00") == datetime(2024, 3, 4, 9, 30, 0)
    assert parse_datetime("03/04/2024 02:15 PM") == datetime(2024, 3, 4, 14, 15)
    assert parse_datetime("09:30") is None
    assert parse_datetime("not a date") is None


def test_combine_date_time_joins_separate_columns() -> None:
    assert combine_date_time("2024-03-04", "09:30:15") == datetime(2024, 3, 4, 9, 30, 15)
    assert combine_date_time("2024-03-04", "") == datetime(2024, 3, 4)


def test_parse_decimal_understands_broker_number_conventions() -> None:
    assert parse_decimal("$1,234.50") == 1234.5
    assert parse_decimal("(12.50)") == -12.5
    assert parse_decimal("1.234,56", decimal_separator=",") == 1234.56
    assert parse_decimal("", default=0.0) == 0.0
    assert parse_decimal("n/a") is None


def test_detect_decimal_separator_votes_on_sample_values() -> None:
    assert detect_decimal_separator(["1.234,56", "12,5", "7"]) == ","
    assert detect_decimal_separator(["1,234.56", "12.50"]) == "."
    assert detect_decimal_separator(["100", ""]) == "."


@pytest.mark.parametrize(
    "raw, expected",
    [("BOT", "BUY"), ("you bought", "BUY"), ("Buy to Cover", "BUY"), ("SLD", "SELL"), ("Sell Short", "SELL")],
)
def test_normalize_side_aliases(raw: str, expected: str) -> None:
    assert normalize_side(raw) == expected


def test_normalize_order_records_coerces_rows_and_collects_issues() -> None:
    parsed = parse_csv_text(
        "Time,Symbol,Side,Qty,Price,Commission,Status,Venue\n"
        "2024-03-04 09:30:00,aapl,BOT,100,150.25,1.00,Filled,ARCA\n"
        "2024-03-04 09:31:00,AAPL,,-50,151.00,1.00,Filled,\n"
        "2024-03-04 09:32:00,AAPL,BUY,10,150.00,0,Cancelled,ARCA\n"
        "2024-03-04 09:33:00,AAPL,BUY,abc,150.00,0,Filled,ARCA\n"
        "2024-03-04 09:34:00,,BUY,10,150.00,0,Filled,ARCA\n"
        "unknown,AAPL,BUY,10,150.00,0,Filled,ARCA\n"
    )
    mappings = _mappings(
        Time="executed_at",
        Symbol="symbol",
        Side="side",
        Qty="quantity",
        Price="price",
        Commission="commission",
        Status="order_status",
    )
    mappings["Venue"] = FieldMapping(BROKER_METADATA, 0.0)

    rows, issues = normalize_order_records(
        parsed.frame, mappings, user_id="user-1", import_batch_id="batch-1", account_tags=["Margin"]
    )

    assert len(rows) == 2
    first, second = rows
    assert first["symbol"] == "AAPL"
    assert first["side"] == "BUY"
    assert first["quantity"] == 100.0
    assert first["broker_metadata"] == {"Venue": "ARCA"}
    assert first["tags"] == ["Margin"]
    assert first["user_id"] == "user-1"
    assert first["import_batch_id"] == "batch-1"
    assert second["side"] == "SELL"
    assert second["quantity"] == 50.0
    assert second["broker_metadata"] == {}
    assert issues == [
        "Row 3: skipped cancelled order",
        "Row 4: invalid quantity 'abc'",
        "Row 5: missing symbol",
        "Row 6: invalid execution time",
    ]


def test_normalize_order_records_combines_trade_date_and_time() -> None:
    parsed = parse_csv_text(
        "Trade Date,Trade Time,Symbol,Side,Qty,Price\n"
        "03/04/2024,10:15:00,MSFT,SELL,5,\"1.234,50\"\n"
    )
    mappings = _mappings(
        **{"Trade Date": "trade_date", "Trade Time": "trade_time"},
        Symbol="symbol",
        Side="side",
        Qty="quantity",
        Price="price",
    )

    rows, issues = normalize_order_records(
        parsed.frame, mappings, user_id="user-1", decimal_separator=","
    )

    assert issues == []
    assert rows[0]["executed_at"] == datetime(2024, 3, 4, 10, 15, 0)
    assert rows[0]["price"] == 1234.5


def test_dedupe_key_prefers_execution_id_then_order_id() -> None:
    base = {
        "symbol": "AAPL",
        "side": "BUY",
        "executed_at": datetime(2024, 3, 4, 9, 30),
        "quantity": 100.0,
        "price": 150.0,
    }
    assert order_dedupe_key({**base, "execution_id": "X-1"}).startswith("EXEC:")
    assert order_dedupe_key({**base, "broker_order_id": "O-1"}).startswith("OID:")
    assert order_dedupe_key(base).startswith("SIG:")
    assert order_dedupe_key(base) == order_dedupe_key({**base, "symbol": " aapl "})


def test_assign_dedupe_keys_numbers_repeated_fills_in_one_file() -> None:
    row = {
        "symbol": "AAPL",
        "side": "BUY",
        "executed_at": datetime(2024, 3, 4, 9, 30),
        "quantity": 100.0,
        "price": 150.0,
    }
    rows = assign_dedupe_keys([dict(row), dict(row), {**row, "price": 151.0}])

    first, second, third = (item["dedupe_key"] for item in rows)
    assert second == f"{first}#2"
    assert "#" not in third
    assert len({first, second, third}) == 3
