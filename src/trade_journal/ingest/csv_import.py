from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from typing import Any

import pandas as pd

from trade_journal.ingest.csv_mapping import BROKER_METADATA, FieldMapping, field_to_header
from trade_journal.ingest.dedupe import assign_dedupe_keys
from trade_journal.ingest.errors import ParseError, RowValidationError
from trade_journal.ingest.validators import (
    UNFILLED_STATUSES,
    combine_date_time,
    normalize_order_status,
    normalize_order_type,
    normalize_side,
    normalize_symbol,
    normalize_time_in_force,
    parse_datetime,
    parse_decimal,
)

CSV_TEMPLATE_HEADERS = [
    "Date/Time",
    "Symbol",
    "Side",
    "Quantity",
    "Price",
    "Commission",
    "Fees",
    "Order ID",
    "Account",
]

CSV_TEMPLATE_ROWS = [
    ["2024-03-04 09:31:05", "AAPL", "BUY", "100", "175.20", "0.00", "0.02", "10001", "Margin"],
    ["2024-03-04 10:12:44", "AAPL", "SELL", "100", "176.05", "0.00", "0.03", "10002", "Margin"],
    ["2024-03-05 14:03:10", "MSFT", "SELL", "50", "410.10", "0.00", "0.01", "10003", "Margin"],
    ["2024-03-05 15:42:31", "MSFT", "BUY", "50", "408.55", "0.00", "0.01", "10004", "Margin"],
]

# template column -> canonical field
STANDARD_LAYOUT = {
    "date/time": "executed_at",
    "symbol": "symbol",
    "side": "side",
    "quantity": "quantity",
    "price": "price",
    "commission": "commission",
    "fees": "fees",
    "order id": "order_id",
    "account": "account",
}
STANDARD_REQUIRED_COLUMNS = ("date/time", "symbol", "side", "quantity", "price")
STANDARD_MIN_COVERAGE = 0.6

TAG_SPLIT_RE = re.compile(r"[,;|]")


@dataclass(frozen=True)
class ParsedCsv:
    headers: list[str]
    frame: pd.DataFrame

    @property
    def total_records(self) -> int:
        return int(len(self.frame))

    def sample_rows(self, limit: int) -> list[dict[str, str]]:
        return self.frame.head(limit).to_dict(orient="records")


def decode_upload(content: str | bytes) -> str:
    if isinstance(content, str):
        return content
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError("File is not UTF-8 encoded text. Export the CSV as UTF-8 and retry.") from exc


def _unique_headers(raw_headers: list[str]) -> list[str]:
    headers: list[str] = []
    seen: dict[str, int] = {}
    for index, raw in enumerate(raw_headers, start=1):
        header = raw.replace("\ufeff", "").strip() or f"Column {index}"
        count = seen.get(header, 0)
        seen[header] = count + 1
        headers.append(header if count == 0 else f"{header} ({count + 1})")
    return headers


def parse_csv_text(content: str | bytes) -> ParsedCsv:
    """Parse CSV text strictly; any structural problem rejects the whole file."""
    text = decode_upload(content).lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)

    raw_headers: list[str] | None = None
    rows: list[list[str]] = []
    try:
        for record in reader:
            if not any(cell.strip() for cell in record):
                continue
            if raw_headers is None:
                raw_headers = list(record)
                while raw_headers and not raw_headers[-1].strip():
                    raw_headers.pop()
                continue
            cells = [cell.strip() for cell in record]
            while len(cells) > len(raw_headers) and not cells[-1]:
                cells.pop()
            if len(cells) != len(raw_headers):
                raise ParseError(
                    f"expected {len(raw_headers)} columns but found {len(cells)}",
                    line_number=reader.line_num,
                )
            rows.append(cells)
    except csv.Error as exc:
        raise ParseError(f"malformed CSV ({exc})", line_number=reader.line_num) from exc

    if not raw_headers:
        raise ParseError("CSV file is empty.")
    if not rows:
        raise ParseError("CSV file has a header row but no data rows.")

    headers = _unique_headers(raw_headers)
    frame = pd.DataFrame(rows, columns=headers, dtype=str).fillna("")
    return ParsedCsv(headers=headers, frame=frame)


def csv_template() -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_TEMPLATE_HEADERS)
    writer.writerows(CSV_TEMPLATE_ROWS)
    return buffer.getvalue()


def standard_layout_mappings(headers: list[str]) -> dict[str, FieldMapping] | None:
    """Mappings for uploads laid out like the downloadable template, else None.

    Every required template column must be present and most of the template
    columns overall. Extra columns are kept as broker metadata.
    """
    lowered = {header: str(header).strip().lower() for header in headers}
    present = set(lowered.values())
    if not all(column in present for column in STANDARD_REQUIRED_COLUMNS):
        return None
    if len(present & STANDARD_LAYOUT.keys()) / len(STANDARD_LAYOUT) < STANDARD_MIN_COVERAGE:
        return None

    mappings: dict[str, FieldMapping] = {}
    claimed: set[str] = set()
    for header in headers:
        field = STANDARD_LAYOUT.get(lowered[header])
        if field is None or field in claimed:
            mappings[header] = FieldMapping(field=BROKER_METADATA, confidence=0.0)
            continue
        claimed.add(field)
        mappings[header] = FieldMapping(field=field, confidence=1.0, reasoning="standard template column")
    return mappings


def _split_tags(value: Any) -> list[str]:
    return [tag.strip() for tag in TAG_SPLIT_RE.split(str(value or "")) if tag.strip()]


def _normalize_order_row(
    row_number: int,
    row: dict[str, Any],
    headers_by_field: dict[str, str],
    metadata_headers: list[str],
    *,
    decimal_separator: str,
    account_tags: list[str],
) -> dict[str, Any]:
    def get(field_name: str) -> Any:
        header = headers_by_field.get(field_name)
        return row.get(header) if header is not None else None

    symbol = normalize_symbol(get("symbol"))
    if not symbol:
        raise RowValidationError(row_number, "missing symbol")

    status = normalize_order_status(get("order_status"))
    if status in UNFILLED_STATUSES:
        raise RowValidationError(row_number, f"skipped {status.lower()} order")

    raw_quantity = parse_decimal(get("quantity"), decimal_separator=decimal_separator)
    if raw_quantity is None:
        raise RowValidationError(row_number, f"invalid quantity '{get('quantity')}'")
    quantity = abs(raw_quantity)
    if quantity == 0:
        raise RowValidationError(row_number, "quantity is zero")

    raw_side = get("side")
    side = normalize_side(raw_side)
    if side not in {"BUY", "SELL"}:
        if not side and raw_quantity < 0:
            side = "SELL"
        elif not side:
            raise RowValidationError(row_number, "missing side")
        else:
            raise RowValidationError(row_number, f"unrecognized side '{raw_side}'")

    price = parse_decimal(get("price"), decimal_separator=decimal_separator)
    if price is None:
        raise RowValidationError(row_number, f"invalid price '{get('price')}'")
    if price < 0:
        raise RowValidationError(row_number, "price cannot be negative")

    executed_at = parse_datetime(get("executed_at"))
    if executed_at is None and "trade_date" in headers_by_field:
        executed_at = combine_date_time(get("trade_date"), get("trade_time"))
    if executed_at is None:
        raise RowValidationError(row_number, "invalid execution time")

    commission = parse_decimal(get("commission"), default=0.0, decimal_separator=decimal_separator)
    fees = parse_decimal(get("fees"), default=0.0, decimal_separator=decimal_separator)

    tags = list(dict.fromkeys([*account_tags, *_split_tags(get("tags"))]))
    metadata = {
        header: str(row.get(header))
        for header in metadata_headers
        if str(row.get(header, "") or "").strip()
    }
    return {
        "broker_order_id": str(get("order_id") or "").strip() or None,
        "execution_id": str(get("execution_id") or "").strip() or None,
        "symbol": symbol,
        "side": side,
        "quantity": quantity,
        "price": price,
        "executed_at": executed_at,
        "placed_at": parse_datetime(get("placed_at")),
        "commission": abs(commission or 0.0),
        "fees": abs(fees or 0.0),
        "order_type": normalize_order_type(get("order_type")),
        "time_in_force": normalize_time_in_force(get("time_in_force")),
        "account": str(get("account") or "").strip() or None,
        "currency": str(get("currency") or "").strip().upper() or "USD",
        "broker_metadata": metadata,
        "tags": tags,
    }


def normalize_order_records(
    frame: pd.DataFrame,
    mappings: dict[str, FieldMapping],
    *,
    user_id: str,
    import_batch_id: str | None = None,
    decimal_separator: str = ".",
    account_tags: list[str] | None = None,
) -> tuple[list[dict], list[str]]:
    """Coerce mapped CSV rows into order rows; bad rows become ``Row N: ...`` issues."""
    headers_by_field = field_to_header(mappings)
    metadata_headers = [header for header, mapping in mappings.items() if mapping.is_metadata]
    tags = [tag.strip() for tag in account_tags or [] if tag.strip()]

    rows: list[dict] = []
    issues: list[str] = []
    for row_number, row in enumerate(frame.fillna("").to_dict(orient="records"), start=1):
        try:
            normalized = _normalize_order_row(
                row_number,
                row,
                headers_by_field,
                metadata_headers,
                decimal_separator=decimal_separator,
                account_tags=tags,
            )
        except RowValidationError as exc:
            issues.append(exc.message)
            continue
        normalized["user_id"] = user_id
        normalized["import_batch_id"] = import_batch_id
        rows.append(normalized)

    return assign_dedupe_keys(rows), issues
