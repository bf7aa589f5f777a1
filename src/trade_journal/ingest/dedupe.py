from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from hashlib import sha256
from typing import Any


def _normalize_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().upper()


def _normalize_float(value: Any) -> str:
    if value is None or value == "":
        return ""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return ""
    if parsed == 0:
        return "0"
    return f"{parsed:.10f}".rstrip("0").rstrip(".")


def _normalize_datetime(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None).isoformat(sep=" ", timespec="seconds")
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _digest(parts: list[str]) -> str:
    return sha256("|".join(parts).encode("utf-8")).hexdigest()


def order_dedupe_key(row: Mapping[str, Any]) -> str:
    """Identity of one execution for a user, stable across re-uploads of the same export."""
    execution_id = _normalize_text(row.get("execution_id"))
    if execution_id:
        return f"EXEC:{_digest([_normalize_text(row.get('symbol')), execution_id])[:40]}"

    fill_parts = [
        _normalize_text(row.get("symbol")),
        _normalize_text(row.get("side")),
        _normalize_datetime(row.get("executed_at")),
        _normalize_float(row.get("quantity")),
        _normalize_float(row.get("price")),
    ]
    order_id = _normalize_text(row.get("broker_order_id"))
    if order_id:
        # one broker order can fill in several pieces, so the fill details stay in the key
        return f"OID:{_digest([order_id, *fill_parts])[:40]}"

    parts = [
        *fill_parts,
        _normalize_float(row.get("commission")),
        _normalize_float(row.get("fees")),
        _normalize_text(row.get("account")),
    ]
    return f"SIG:{_digest(parts)[:40]}"


def assign_dedupe_keys(rows: list[dict]) -> list[dict]:
    """Set ``dedupe_key`` on each row; repeats of an identical fill within one file are numbered."""
    occurrences: dict[str, int] = {}
    for row in rows:
        base = order_dedupe_key(row)
        seen = occurrences.get(base, 0)
        occurrences[base] = seen + 1
        row["dedupe_key"] = base if seen == 0 else f"{base}#{seen + 1}"
    return rows
